"""Main FastAPI application for Seadexerr."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI

from seadexerr import __version__
from seadexerr.config import settings
from seadexerr.api import torznab
from seadexerr.services.mapping import mapping_store
from seadexerr.services.radarr import radarr_client
from seadexerr.services.sonarr import sonarr_client

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Seadexerr...")

    if not (settings.sonarr_enabled or settings.radarr_enabled):
        raise RuntimeError(
            "At least one of Sonarr (SONARR_URL/SONARR_API_KEY) or "
            "Radarr (RADARR_URL/RADARR_API_KEY) must be configured"
        )

    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)

    # Title resolvers load their persisted caches here
    logger.info("Initializing title resolvers...")
    sonarr_client.configure(
        settings.SONARR_URL, settings.SONARR_API_KEY, timeout=settings.SONARR_TIMEOUT
    )
    radarr_client.configure(
        settings.RADARR_URL, settings.RADARR_API_KEY, timeout=settings.RADARR_TIMEOUT
    )

    # The service cannot answer anything without a mapping table
    logger.info("Initializing mapping dataset...")
    await mapping_store.bootstrap()

    logger.info(
        f"Seadexerr {__version__} started successfully on {settings.HOST}:{settings.PORT}"
    )
    logger.info(f"Torznab API: {settings.public_base_url}api")

    yield

    # Shutdown
    logger.info("Shutting down Seadexerr...")
    await mapping_store.close()


# Create FastAPI app
app = FastAPI(
    title="Seadexerr",
    description="Torznab indexer bridging Sonarr/Radarr to SeaDex releases via AniList mappings",
    version=__version__,
    lifespan=lifespan,
)

# Include routers
app.include_router(torznab.router, tags=["Torznab"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "seadexerr.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=False,
        log_level=settings.LOG_LEVEL.lower(),
    )
