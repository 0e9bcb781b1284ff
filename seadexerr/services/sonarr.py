"""Sonarr API client for series title lookup."""

import logging
from pathlib import Path
from typing import Optional

import httpx

from seadexerr.config import settings
from seadexerr.errors import SeriesNotFoundError
from seadexerr.services.titles import TitleResolver

logger = logging.getLogger(__name__)

SONARR_CACHE_FILENAME = "sonarr_titles.json"


class SonarrClient(TitleResolver):
    """Client for Sonarr API v3.

    Resolves TVDB ids to series titles with ``/api/v3/series/lookup``, which
    answers for any series TVDB knows about, not only those in the library.
    """

    service = "Sonarr"
    id_label = "TVDB"

    def __init__(
        self,
        cache_path: Optional[Path] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            cache_path or settings.DATA_DIR / SONARR_CACHE_FILENAME,
            timeout=timeout or settings.SONARR_TIMEOUT,
            transport=transport,
        )

    async def _fetch_title(self, tvdb_id: int) -> str:
        response = await self._get("api/v3/series/lookup", {"term": f"tvdb:{tvdb_id}"})
        if response.status_code == 404:
            raise SeriesNotFoundError(tvdb_id)

        payload = self._json(self.service, response)
        entries = payload if isinstance(payload, list) else []
        logger.debug(f"Sonarr lookup for TVDB {tvdb_id} returned {len(entries)} entries")

        for entry in entries:
            title = entry.get("title") if isinstance(entry, dict) else None
            if title:
                return title

        raise SeriesNotFoundError(tvdb_id)


# Singleton instance
sonarr_client = SonarrClient()
