"""Radarr API client for movie title lookup."""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from seadexerr.config import settings
from seadexerr.errors import MovieNotFoundError
from seadexerr.services.titles import TitleResolver

logger = logging.getLogger(__name__)

RADARR_CACHE_FILENAME = "radarr_titles.json"


class MovieInfo:
    """Movie information from Radarr API."""

    def __init__(self, title: str, year: Optional[int] = None):
        self.title = title
        self.year = year

    @classmethod
    def from_radarr_response(cls, data: Dict[str, Any]) -> Optional["MovieInfo"]:
        """Create MovieInfo from Radarr API response, or None without a title."""
        title = data.get("title")
        if not title:
            return None
        year = data.get("year")
        return cls(title=title, year=year if isinstance(year, int) and year > 0 else None)

    @property
    def display_title(self) -> str:
        """Title with the release year appended, e.g. "Your Name (2016)"."""
        if self.year:
            return f"{self.title} ({self.year})"
        return self.title


class RadarrClient(TitleResolver):
    """Client for Radarr API v3.

    Resolves TMDB ids to "Title (Year)" strings with
    ``/api/v3/movie/lookup/tmdb``.
    """

    service = "Radarr"
    id_label = "TMDB"

    def __init__(
        self,
        cache_path: Optional[Path] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            cache_path or settings.DATA_DIR / RADARR_CACHE_FILENAME,
            timeout=timeout or settings.RADARR_TIMEOUT,
            transport=transport,
        )

    async def _fetch_title(self, tmdb_id: int) -> str:
        response = await self._get("api/v3/movie/lookup/tmdb", {"tmdbId": tmdb_id})
        if response.status_code == 404:
            raise MovieNotFoundError(tmdb_id)

        payload = self._json(self.service, response)
        # Some Radarr versions wrap the single result in a list
        if isinstance(payload, list):
            payload = payload[0] if payload else {}

        movie = MovieInfo.from_radarr_response(payload) if isinstance(payload, dict) else None
        if movie is None:
            raise MovieNotFoundError(tmdb_id)
        return movie.display_title


# Singleton instance
radarr_client = RadarrClient()
