"""Configuration and settings"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Google Maps API (Places v1 + Geocoding)
    google_maps_api_key: str = Field(default="", alias="GOOGLE_MAPS_API_KEY")

    # OpenAI API
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_reasoning_model: str = Field(default="gpt-4o-mini", alias="OPENAI_REASONING_MODEL")
    openai_vision_model: str = Field(default="gpt-4o-mini", alias="OPENAI_VISION_MODEL")

    # Rate limiting
    rate_limit_max_searches: int = Field(default=10, alias="RATE_LIMIT_MAX_SEARCHES")
    rate_limit_window_hours: float = Field(default=12, alias="RATE_LIMIT_WINDOW_HOURS")
    rate_limit_db_path: str = Field(default="./data/rate_limits.sqlite", alias="RATE_LIMIT_DB_PATH")

    # Interaction history service (empty disables penalization)
    interaction_history_url: str = Field(default="", alias="INTERACTION_HISTORY_URL")

    # Pipeline tuning
    image_analysis_timeout_s: float = Field(default=3.0, alias="IMAGE_ANALYSIS_TIMEOUT_S")
    max_candidates: int = Field(default=40, alias="MAX_CANDIDATES")
    places_page_size: int = Field(default=20, alias="PLACES_PAGE_SIZE")
    results_page_size: int = Field(default=10, alias="RESULTS_PAGE_SIZE")
    penalty_multiplier: float = Field(default=0.5, alias="PENALTY_MULTIPLIER")
    results_cache_max_entries: int = Field(default=1, alias="RESULTS_CACHE_MAX_ENTRIES")

    # Search sessions (one orchestrator each)
    max_sessions: int = Field(default=500, alias="MAX_SESSIONS")
    session_idle_minutes: float = Field(default=30, alias="SESSION_IDLE_MINUTES")

    # Frontend
    frontend_url: str = Field(default="http://localhost:5173", alias="FRONTEND_URL")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # API Configuration
    api_title: str = "Loca Place Matching API"
    api_version: str = "0.1.0"


# Global settings instance
settings = Settings()
