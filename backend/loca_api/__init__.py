"""Loca place matching API"""

__version__ = "0.1.0"
