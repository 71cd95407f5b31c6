"""FastAPI application entry point"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loca_api.core.config import settings
from loca_api.api import rate_limit, search

# Configure logging early with force=True to override any existing config
logging.basicConfig(
    level=logging.DEBUG if settings.environment == "development" else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    force=True,
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
# httpx logs every request at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log startup diagnostics, close search sessions on shutdown"""
    logger.info("=" * 60)
    logger.info("LOCA API STARTING")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Rate limit: {settings.rate_limit_max_searches} searches / {settings.rate_limit_window_hours}h")
    logger.info(f"Interaction history: {settings.interaction_history_url or 'disabled'}")
    logger.info(f"Sessions: max {settings.max_sessions}, idle expiry {settings.session_idle_minutes} min")
    if not settings.google_maps_api_key:
        logger.warning("GOOGLE_MAPS_API_KEY not set - searches will fail")
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set - free-text keywords and enrichment will use defaults")

    yield

    logger.info("Shutting down Loca API...")
    try:
        await search.registry.close()
    except Exception as e:
        logger.warning(f"Error closing search sessions: {e}")
    logger.info("Loca API shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {"status": "healthy", "version": settings.api_version}


@app.get("/health")
async def health():
    """Health check for monitoring"""
    return {"status": "healthy"}


# Register API routes
app.include_router(search.router, prefix="/api", tags=["search"])
app.include_router(rate_limit.router, prefix="/api", tags=["rate-limit"])
