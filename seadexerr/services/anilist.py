"""AniList API client for batched media format classification."""
import asyncio
import logging
import time
from enum import Enum
from typing import Dict, Iterable, List, Optional
import httpx

from seadexerr import __version__
from seadexerr.config import settings
from seadexerr.errors import UpstreamError

logger = logging.getLogger(__name__)


class MediaFormat(str, Enum):
    """AniList media formats."""

    TV = "TV"
    TV_SHORT = "TV_SHORT"
    ONA = "ONA"
    MOVIE = "MOVIE"
    SPECIAL = "SPECIAL"
    OVA = "OVA"
    MUSIC = "MUSIC"
    MANGA = "MANGA"
    NOVEL = "NOVEL"
    ONE_SHOT = "ONE_SHOT"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["MediaFormat"]:
        try:
            return cls(value)
        except ValueError:
            return None


# Formats with a release-manager target; everything else is never served
SERIES_FORMATS = frozenset({MediaFormat.TV, MediaFormat.TV_SHORT, MediaFormat.ONA})
MOVIE_FORMATS = frozenset({MediaFormat.MOVIE})


def is_series_format(media_format: Optional[MediaFormat]) -> bool:
    return media_format in SERIES_FORMATS


def is_movie_format(media_format: Optional[MediaFormat]) -> bool:
    return media_format in MOVIE_FORMATS


class AniListClient:
    """AniList GraphQL API client."""

    QUERY_FORMATS = """
    query ($idIn: [Int], $perPage: Int) {
      Page(perPage: $perPage) {
        media(id_in: $idIn) {
          id
          type
          format
        }
      }
    }
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        batch_size: Optional[int] = None,
        rate_limit: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url or settings.ANILIST_API_URL
        self.timeout = timeout or settings.ANILIST_TIMEOUT
        self.batch_size = max(1, batch_size or settings.ANILIST_BATCH_SIZE)
        self.rate_limit = rate_limit or settings.ANILIST_RATE_LIMIT
        self.rate_limit_tokens = self.rate_limit
        self.rate_limit_window = 60  # seconds
        self.last_reset = time.monotonic()
        self._lock = asyncio.Lock()
        self._transport = transport

    async def _wait_for_rate_limit(self):
        """Handle rate limiting."""
        async with self._lock:
            now = time.monotonic()
            if now - self.last_reset >= self.rate_limit_window:
                self.rate_limit_tokens = self.rate_limit
                self.last_reset = now

            if self.rate_limit_tokens <= 0:
                wait_time = self.rate_limit_window - (now - self.last_reset)
                if wait_time > 0:
                    logger.warning(f"Rate limit reached, waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)
                self.rate_limit_tokens = self.rate_limit
                self.last_reset = time.monotonic()

            self.rate_limit_tokens -= 1

    async def _query(self, query: str, variables: Dict) -> Dict:
        """
        Execute GraphQL query with rate limiting.

        Raises:
            UpstreamError: On transport errors, GraphQL errors or a missing data node
        """
        await self._wait_for_rate_limit()

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.api_url,
                    json={"query": query, "variables": variables},
                    headers={
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                        "User-Agent": f"seadexerr/{__version__}",
                    },
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                "AniList", str(e), status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError("AniList", f"request failed: {e}") from e
        except ValueError as e:
            raise UpstreamError("AniList", f"invalid JSON response: {e}") from e

        errors = data.get("errors") if isinstance(data, dict) else None
        if errors:
            messages = ", ".join(
                str(err.get("message", err)) if isinstance(err, dict) else str(err)
                for err in errors
            )
            raise UpstreamError("AniList", f"GraphQL error(s): {messages}")

        payload = data.get("data") if isinstance(data, dict) else None
        if not isinstance(payload, dict) or not payload:
            raise UpstreamError("AniList", "response missing data node")
        return payload

    async def classify(self, anilist_ids: Iterable[int]) -> Dict[int, MediaFormat]:
        """
        Look up the media format of many AniList ids.

        Ids are de-duplicated and sent in pages of ``batch_size``. Ids that
        AniList does not return, or returns with an unknown format, are absent
        from the result.

        Args:
            anilist_ids: AniList ids, duplicates allowed

        Returns:
            Mapping of AniList id to MediaFormat
        """
        unique: List[int] = sorted(set(anilist_ids))
        formats: Dict[int, MediaFormat] = {}
        if not unique:
            return formats

        for start in range(0, len(unique), self.batch_size):
            chunk = unique[start : start + self.batch_size]
            payload = await self._query(
                self.QUERY_FORMATS, {"idIn": chunk, "perPage": self.batch_size}
            )
            page = payload.get("Page")
            if not isinstance(page, dict):
                raise UpstreamError("AniList", "response missing Page node")

            media_list = page.get("media") or []
            if not isinstance(media_list, list):
                raise UpstreamError("AniList", "Page.media is not a list")
            for media in media_list:
                if not isinstance(media, dict):
                    continue
                media_format = MediaFormat.parse(media.get("format"))
                media_id = media.get("id")
                if media_format is None or not isinstance(media_id, int):
                    continue
                formats.setdefault(media_id, media_format)

            logger.debug(
                f"Fetched AniList media batch: {len(chunk)} ids, {len(media_list)} matches"
            )

        return formats


# Singleton instance
anilist_client = AniListClient()
