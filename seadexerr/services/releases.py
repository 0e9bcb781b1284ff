"""releases.moe (SeaDex) client for torrent candidates."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx

from seadexerr import __version__
from seadexerr.config import settings
from seadexerr.errors import UpstreamError
from seadexerr.models import Torrent

logger = logging.getLogger(__name__)

# Only public Nyaa releases can be handed to a download client
NYAA_TRACKER = "Nyaa"
NYAA_DOWNLOAD_URL = "https://nyaa.si/download/{id}.torrent"

# Record ids per reverse lookup request (bounded by PocketBase filter length)
REVERSE_LOOKUP_CHUNK_SIZE = 20


def extract_nyaa_id(url: str) -> Optional[str]:
    """
    Extract the numeric Nyaa id from a ``.../view/<id>`` URL.

    Examples:
        "https://nyaa.si/view/1234567" -> "1234567"
        "https://nyaa.si/view/1234567?x=1" -> "1234567"
        "https://nyaa.si/user/foo" -> None
    """
    needle = "/view/"
    start = url.find(needle)
    if start < 0:
        return None
    rest = url[start + len(needle) :]
    for sep in "?#/":
        rest = rest.split(sep, 1)[0]
    if not rest or not all("0" <= ch <= "9" for ch in rest):
        return None
    return rest


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse RFC 3339 or PocketBase ("2024-01-02 03:04:05.678Z") timestamps."""
    if not value:
        return None
    normalized = value.strip().replace(" ", "T", 1)
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def torrent_from_record(
    record: Dict[str, Any], anilist_id: Optional[int] = None
) -> Optional[Torrent]:
    """Build a Torrent from a torrents record, or None if it is not a public Nyaa release."""
    if not isinstance(record, dict) or record.get("tracker") != NYAA_TRACKER:
        return None
    record_id = record.get("id")
    source_url = record.get("url") or ""
    nyaa_id = extract_nyaa_id(source_url)
    if not record_id or nyaa_id is None:
        return None

    files = [f for f in record.get("files") or [] if isinstance(f, dict)]
    size_bytes = sum(f.get("length") or 0 for f in files)

    return Torrent(
        id=record_id,
        anilist_id=anilist_id,
        download_url=NYAA_DOWNLOAD_URL.format(id=nyaa_id),
        source_url=source_url,
        info_hash=record.get("infoHash") or None,
        published_at=parse_timestamp(record.get("updated"))
        or parse_timestamp(record.get("created")),
        file_count=len(files),
        size_bytes=size_bytes,
        is_best=bool(record.get("isBest")),
    )


def _items(payload: Dict[str, Any]) -> List[Any]:
    items = payload.get("items") or []
    if not isinstance(items, list):
        raise UpstreamError("releases.moe", "expected an items list")
    return items


def _expanded_torrents(entry: Any) -> List[Dict[str, Any]]:
    """The torrent records expanded into an entries record, dicts only."""
    expand = entry.get("expand") if isinstance(entry, dict) else None
    records = expand.get("trs") if isinstance(expand, dict) else None
    if not isinstance(records, list):
        return []
    return [record for record in records if isinstance(record, dict)]


class ReleasesClient:
    """Client for the releases.moe PocketBase API.

    ``entries`` records are keyed by AniList id and expand to their torrents;
    ``torrents`` records carry no AniList id of their own.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        default_limit: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        base = base_url or settings.RELEASES_URL
        self.base_url = base if base.endswith("/") else base + "/"
        self.timeout = timeout or settings.RELEASES_TIMEOUT
        self.default_limit = default_limit or settings.DEFAULT_LIMIT
        self._transport = transport

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        GET a collection endpoint and return its decoded JSON body.

        Raises:
            UpstreamError: On transport errors, non-2xx statuses or invalid JSON
        """
        url = f"{self.base_url}{path}"
        logger.debug(f"releases.moe request: GET {url} {params}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"User-Agent": f"seadexerr/{__version__}"},
            ) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                "releases.moe", str(e), status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError("releases.moe", f"request failed: {e}") from e
        except ValueError as e:
            raise UpstreamError("releases.moe", f"invalid JSON response: {e}") from e

        if not isinstance(payload, dict):
            raise UpstreamError("releases.moe", "expected a JSON object")
        return payload

    async def search(self, anilist_id: int, limit: int) -> List[Torrent]:
        """
        Get the torrents SeaDex lists for an AniList id.

        Args:
            anilist_id: AniList id of the entry
            limit: Maximum number of torrents to return

        Returns:
            Torrents carrying ``anilist_id``, in entry order
        """
        params = {
            "filter": f"(alID={anilist_id})",
            "expand": "trs",
            "page": 1,
            "perPage": max(1, min(limit, self.default_limit)),
        }
        payload = await self._get("collections/entries/records", params)

        torrents: List[Torrent] = []
        for entry in _items(payload):
            records = _expanded_torrents(entry)
            entry_anilist_id = entry.get("alID") if records else None
            if not isinstance(entry_anilist_id, int):
                continue
            for record in records:
                torrent = torrent_from_record(record, entry_anilist_id)
                if torrent is not None:
                    torrents.append(torrent)

        logger.debug(
            f"releases.moe search for AniList {anilist_id}: {len(torrents)} torrents"
        )
        return torrents[:limit]

    async def recent(self, limit: int) -> List[Torrent]:
        """Get the most recently updated public torrents (no AniList ids)."""
        params = {
            "filter": f"(tracker='{NYAA_TRACKER}')",
            "sort": "-updated",
            "page": 1,
            "perPage": max(1, min(limit, self.default_limit)),
        }
        payload = await self._get("collections/torrents/records", params)

        torrents = [
            torrent
            for torrent in (
                torrent_from_record(record) for record in _items(payload)
            )
            if torrent is not None
        ]
        logger.debug(f"releases.moe recent feed: {len(torrents)} torrents")
        return torrents[:limit]

    async def reverse_lookup(self, record_ids: Iterable[str]) -> Dict[str, int]:
        """
        Find the AniList id of the entry each torrent record belongs to.

        Args:
            record_ids: releases.moe torrent record ids, duplicates allowed

        Returns:
            Mapping of record id to AniList id; unresolved ids are absent
        """
        unique = sorted({record_id for record_id in record_ids if record_id})
        result: Dict[str, int] = {}

        for start in range(0, len(unique), REVERSE_LOOKUP_CHUNK_SIZE):
            chunk = unique[start : start + REVERSE_LOOKUP_CHUNK_SIZE]
            params = {
                "filter": " || ".join(f"(trs~'{record_id}')" for record_id in chunk),
                "expand": "trs",
                "perPage": max(self.default_limit, len(chunk)),
            }
            payload = await self._get("collections/entries/records", params)

            requested = set(chunk)
            for entry in _items(payload):
                records = _expanded_torrents(entry)
                anilist_id = entry.get("alID") if records else None
                if not isinstance(anilist_id, int):
                    continue
                for record in records:
                    if record.get("tracker") != NYAA_TRACKER:
                        continue
                    if record.get("id") in requested:
                        result[record["id"]] = anilist_id

        logger.debug(
            f"releases.moe reverse lookup: {len(result)}/{len(unique)} records resolved"
        )
        return result


# Singleton instance
releases_client = ReleasesClient()
