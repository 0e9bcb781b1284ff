"""Shared behaviour of the cached Sonarr/Radarr title resolvers."""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import httpx

from seadexerr import __version__
from seadexerr.errors import UpstreamError
from seadexerr.services.storage import TitleCache

logger = logging.getLogger(__name__)


class TitleResolver(ABC):
    """Resolves an external id to a display title through a persisted cache.

    Subclasses implement ``_fetch_title`` against their provider and raise a
    ``NotFoundError`` subclass when the provider has no record for the id.
    """

    service = "provider"
    id_label = "id"

    def __init__(
        self,
        cache_path: Path,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url: Optional[str] = None
        self._api_key: Optional[str] = None
        self.timeout = timeout
        self._transport = transport
        self.cache = TitleCache(cache_path, label=f"{self.service} title")

    def configure(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        cache_path: Optional[Path] = None,
        timeout: Optional[float] = None,
    ):
        """
        Configure the provider connection and load the persisted title cache.

        Raises:
            CorruptStateError: If the cache file exists but cannot be parsed
        """
        if base_url and api_key:
            self._base_url = base_url.rstrip("/")
            self._api_key = api_key
            logger.info(f"{self.service} client configured: {self._base_url}")
        else:
            self._base_url = None
            self._api_key = None
            logger.info(f"{self.service} client not configured (missing URL or API key)")

        if timeout:
            self.timeout = timeout
        if cache_path is not None:
            self.cache = TitleCache(cache_path, label=f"{self.service} title")
        self.cache.load()

    def is_configured(self) -> bool:
        """Check if the integration is enabled and configured."""
        return bool(self._base_url and self._api_key)

    async def resolve_name(self, external_id: int) -> str:
        """
        Get the display title for an external id, asking the provider on a miss.

        A fetched title is written through to the cache file before returning.

        Raises:
            NotFoundError: If the provider has no record for the id
            UpstreamError: On transport errors or if the client is unconfigured
            CorruptStateError: If the cache file cannot be written
        """
        cached = self.cache.get(external_id)
        if cached is not None:
            logger.debug(f"Using cached {self.service} title for {self.id_label} {external_id}")
            return cached

        if not self.is_configured():
            raise UpstreamError(self.service, "integration is not configured")

        title = await self._fetch_title(external_id)
        self.cache.store(external_id, title)
        logger.info(f"Resolved {self.id_label} {external_id} via {self.service}: '{title}'")
        return title

    def retain(self, keep_ids: Iterable[int]) -> bool:
        """Evict cached titles whose ids are not in ``keep_ids``."""
        return self.cache.retain(keep_ids)

    @abstractmethod
    async def _fetch_title(self, external_id: int) -> str:
        """Ask the provider for a title, raising a NotFoundError if it has none."""

    async def _get(self, path: str, params: Dict[str, Any]) -> httpx.Response:
        """
        GET a provider endpoint. A 404 response is returned to the caller;
        any other failure raises.

        Raises:
            UpstreamError: On transport errors and non-2xx statuses other than 404
        """
        url = f"{self._base_url}/{path.lstrip('/')}"
        logger.debug(f"{self.service} request: GET {url} {params}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"User-Agent": f"seadexerr/{__version__}"},
            ) as client:
                response = await client.get(
                    url, params=params, headers={"X-Api-Key": self._api_key}
                )
                if response.status_code == 404:
                    return response
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                self.service, str(e), status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(self.service, f"request failed: {e}") from e

    @staticmethod
    def _json(service: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(service, f"invalid JSON response: {e}") from e
