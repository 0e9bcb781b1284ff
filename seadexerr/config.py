"""Configuration management for Seadexerr."""

from typing import Optional
from pydantic_settings import BaseSettings
from pathlib import Path

DEFAULT_MAPPING_REFRESH_INTERVAL = 21600  # 6 hours in seconds


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    API_KEY: Optional[str] = None  # No key check when unset
    HOST: str = "0.0.0.0"
    PORT: int = 6767
    PUBLIC_BASE_URL: Optional[str] = None  # e.g., "https://seadexerr.example.com/"

    # Torznab channel metadata
    APP_TITLE: str = "Seadexerr"
    APP_DESCRIPTION: str = "Indexer bridge for releases.moe"
    DEFAULT_LIMIT: int = 100  # Default and maximum page size

    # releases.moe Settings
    RELEASES_URL: str = "https://releases.moe/api/"
    RELEASES_TIMEOUT: float = 10.0

    # Mapping dataset Settings
    DATA_DIR: Path = Path("data")
    MAPPING_SOURCE_URL: str = "https://raw.githubusercontent.com/eliasbenb/PlexAniBridge-Mappings/refs/heads/v2/mappings.json"
    MAPPING_REFRESH_INTERVAL: int = DEFAULT_MAPPING_REFRESH_INTERVAL
    MAPPING_TIMEOUT: float = 30.0

    # AniList API Settings
    ANILIST_API_URL: str = "https://graphql.anilist.co"
    ANILIST_TIMEOUT: float = 10.0
    ANILIST_BATCH_SIZE: int = 50  # ids per GraphQL page
    ANILIST_RATE_LIMIT: int = 90  # requests per minute

    # Sonarr Settings (series title lookup)
    SONARR_URL: Optional[str] = None  # e.g., "http://localhost:8989"
    SONARR_API_KEY: Optional[str] = None
    SONARR_TIMEOUT: float = 10.0

    # Radarr Settings (movie title lookup)
    RADARR_URL: Optional[str] = None  # e.g., "http://localhost:7878"
    RADARR_API_KEY: Optional[str] = None
    RADARR_TIMEOUT: float = 10.0

    # Title cache Settings
    TITLE_CACHE_RETAIN_ON_SEARCH: bool = True  # Browse always sweeps

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def sonarr_enabled(self) -> bool:
        return bool(self.SONARR_URL and self.SONARR_API_KEY)

    @property
    def radarr_enabled(self) -> bool:
        return bool(self.RADARR_URL and self.RADARR_API_KEY)

    @property
    def mapping_refresh_seconds(self) -> int:
        """Refresh interval, falling back to the default for non-positive values."""
        if self.MAPPING_REFRESH_INTERVAL <= 0:
            return DEFAULT_MAPPING_REFRESH_INTERVAL
        return self.MAPPING_REFRESH_INTERVAL

    @property
    def public_base_url(self) -> str:
        """Externally visible base URL, always ending in a slash."""
        base = self.PUBLIC_BASE_URL or f"http://{self.HOST}:{self.PORT}"
        return base if base.endswith("/") else base + "/"


settings = Settings()
