"""PlexAniBridge mapping index: AniList ids <-> TVDB seasons <-> TMDB movies."""

import asyncio
import json
import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, TypeVar

import httpx

from seadexerr import __version__
from seadexerr.config import settings
from seadexerr.errors import (
    CorruptStateError,
    MappingUnavailableError,
    UpstreamError,
)
from seadexerr.services.storage import write_atomic

logger = logging.getLogger(__name__)

MAPPING_FILENAME = "mappings.json"
ETAG_FILENAME = "mappings.etag"

T = TypeVar("T")


def parse_season_key(key: str) -> Optional[int]:
    """
    Parse a season marker of the form ``s<N>``.

    Returns:
        The season number, or None if the key does not match the format
        ("s", "S1", "s-1", "s1a" and "e1" are all rejected)
    """
    if not isinstance(key, str) or len(key) < 2 or key[0] != "s":
        return None
    digits = key[1:]
    if not all("0" <= ch <= "9" for ch in digits):
        return None
    return int(digits)


def season_key(season: int) -> str:
    return f"s{season}"


def min_season(season_keys: Iterable[str]) -> float:
    """Smallest parseable season number, or infinity if none parse."""
    seasons = [parse_season_key(key) for key in season_keys]
    parsed = [season for season in seasons if season is not None]
    return min(parsed) if parsed else math.inf


def _pick_earliest(
    items: Iterable[T],
    season_keys_of: Callable[[T], FrozenSet[str]],
    id_of: Callable[[T], int],
) -> Optional[T]:
    """
    Pick the item whose earliest season is smallest.

    Ties keep the first item seen. If no item has a parseable season the
    item with the smallest id wins, so the result does not depend on the
    order the dataset was iterated in.
    """
    best: Optional[T] = None
    best_season = math.inf
    for item in items:
        item_season = min_season(season_keys_of(item))
        if best is None or item_season < best_season:
            best, best_season = item, item_season
        elif best_season == math.inf and item_season == math.inf:
            if id_of(item) < id_of(best):
                best = item
    return best


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class MappingRecord:
    """One AniList entry of the mapping dataset."""

    anilist_id: int
    tvdb_id: Optional[int]
    tmdb_movie_id: Optional[int]
    season_keys: FrozenSet[str]

    @classmethod
    def from_raw(cls, anilist_key: str, raw: Dict) -> Optional["MappingRecord"]:
        """Build a record from one dataset entry, or None if it is unusable."""
        anilist_id = _as_int(anilist_key)
        if anilist_id is None or not isinstance(raw, dict):
            return None

        tmdb_raw = raw.get("tmdb_movie_id")
        if isinstance(tmdb_raw, list):
            tmdb_raw = tmdb_raw[0] if tmdb_raw else None

        seasons = raw.get("tvdb_mappings") or {}
        if not isinstance(seasons, dict):
            seasons = {}

        return cls(
            anilist_id=anilist_id,
            tvdb_id=_as_int(raw.get("tvdb_id")),
            tmdb_movie_id=_as_int(tmdb_raw),
            season_keys=frozenset(seasons.keys()),
        )


def parse_mapping_payload(payload: bytes) -> List[MappingRecord]:
    """
    Parse the raw dataset document into records, in document order.

    Raises:
        ValueError: If the payload is not a JSON object
    """
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError("mapping document must be a JSON object")

    records = []
    skipped = 0
    for anilist_key, raw in data.items():
        record = MappingRecord.from_raw(anilist_key, raw)
        if record is None:
            skipped += 1
            continue
        records.append(record)

    if skipped:
        logger.debug(f"Skipped {skipped} mapping entries with non-numeric AniList ids")
    return records


@dataclass(frozen=True)
class MappingEntry:
    """An AniList id and the TVDB seasons it covers."""

    anilist_id: int
    season_keys: FrozenSet[str]


@dataclass(frozen=True)
class TvdbMapping:
    """A TVDB series and the seasons an AniList id covers in it."""

    tvdb_id: int
    season_keys: FrozenSet[str]

    @property
    def earliest_season(self) -> Optional[int]:
        season = min_season(self.season_keys)
        return None if season == math.inf else int(season)


@dataclass(frozen=True)
class MappingIndex:
    """Lookup tables derived from exactly one dataset snapshot.

    Never mutated after construction; a refresh builds a new index.
    """

    by_tvdb: Dict[int, Tuple[MappingEntry, ...]]
    by_anilist: Dict[int, Tuple[TvdbMapping, ...]]
    tmdb_to_anilist: Dict[int, int]
    anilist_to_tmdb: Dict[int, int]

    @classmethod
    def from_records(cls, records: Iterable[MappingRecord]) -> "MappingIndex":
        by_tvdb: Dict[int, List[MappingEntry]] = {}
        by_anilist: Dict[int, List[TvdbMapping]] = {}
        tmdb_to_anilist: Dict[int, int] = {}
        anilist_to_tmdb: Dict[int, int] = {}

        for record in records:
            if record.tmdb_movie_id is not None:
                tmdb_to_anilist[record.tmdb_movie_id] = record.anilist_id
                anilist_to_tmdb[record.anilist_id] = record.tmdb_movie_id

            # Series entries without season data cannot answer any lookup
            if record.tvdb_id is None or not record.season_keys:
                continue

            by_tvdb.setdefault(record.tvdb_id, []).append(
                MappingEntry(record.anilist_id, record.season_keys)
            )
            by_anilist.setdefault(record.anilist_id, []).append(
                TvdbMapping(record.tvdb_id, record.season_keys)
            )

        return cls(
            by_tvdb={k: tuple(v) for k, v in by_tvdb.items()},
            by_anilist={k: tuple(v) for k, v in by_anilist.items()},
            tmdb_to_anilist=tmdb_to_anilist,
            anilist_to_tmdb=anilist_to_tmdb,
        )

    @classmethod
    def from_bytes(cls, payload: bytes) -> "MappingIndex":
        return cls.from_records(parse_mapping_payload(payload))

    @property
    def series_count(self) -> int:
        return len(self.by_tvdb)

    @property
    def entry_count(self) -> int:
        return sum(len(entries) for entries in self.by_tvdb.values())

    def lookup_by_tvdb_season(self, tvdb_id: int, season: int) -> Optional[int]:
        key = season_key(season)
        for entry in self.by_tvdb.get(tvdb_id, ()):
            if key in entry.season_keys:
                return entry.anilist_id
        return None

    def lookup_best_for_tvdb(self, tvdb_id: int) -> Optional[int]:
        entry = _pick_earliest(
            self.by_tvdb.get(tvdb_id, ()),
            lambda e: e.season_keys,
            lambda e: e.anilist_id,
        )
        return entry.anilist_id if entry else None

    def best_tvdb_for_anilist(self, anilist_id: int) -> Optional[TvdbMapping]:
        return _pick_earliest(
            self.by_anilist.get(anilist_id, ()),
            lambda m: m.season_keys,
            lambda m: m.tvdb_id,
        )


@dataclass(frozen=True)
class MappingSnapshot:
    """The live index together with the validators of the file it came from."""

    last_modified: float  # mtime of the persisted payload
    etag: Optional[str]
    index: MappingIndex


class MappingStore:
    """Owns the mapping dataset: download, persistence, refresh and lookups.

    Readers borrow the current ``MappingSnapshot`` under a lock held only for
    the reference read; a refresh builds a complete new snapshot off the event
    loop and installs it under the same lock. Neither side holds the lock
    across I/O or parsing.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        source_url: Optional[str] = None,
        refresh_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.data_dir = Path(data_dir) if data_dir else settings.DATA_DIR
        self.path = self.data_dir / MAPPING_FILENAME
        self.etag_path = self.data_dir / ETAG_FILENAME
        self.source_url = source_url or settings.MAPPING_SOURCE_URL
        self.refresh_interval = (
            refresh_interval
            if refresh_interval and refresh_interval > 0
            else settings.mapping_refresh_seconds
        )
        self.timeout = timeout or settings.MAPPING_TIMEOUT
        self._transport = transport
        self._snapshot: Optional[MappingSnapshot] = None
        self._swap_lock = threading.Lock()
        self._refresh_lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="mapping-refresh"
        )
        self._refresh_task: Optional[asyncio.Task] = None

    async def bootstrap(self):
        """
        Load the dataset for the first time and start the periodic refresh.

        Raises:
            UpstreamError: If the initial download fails
            CorruptStateError: If the payload cannot be persisted or reloaded
        """
        await self.refresh()
        if self.current() is None:
            raise MappingUnavailableError("mapping dataset could not be loaded")

        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info(
            f"Mapping refresh scheduled every {self.refresh_interval}s "
            f"from {self.source_url}"
        )

    async def close(self):
        """Stop the periodic refresh and the parse worker."""
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        self._executor.shutdown(wait=False)

    async def _refresh_loop(self):
        while True:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh()
            except Exception as e:
                logger.warning(
                    f"Failed to refresh mappings from {self.source_url}: {e}",
                    exc_info=True,
                )

    async def refresh(self) -> bool:
        """
        Conditionally re-download the dataset and swap in a new index.

        Returns:
            True if a new snapshot was installed, False if the source was
            unchanged and the current snapshot kept

        Raises:
            UpstreamError: On transport failures or an unparseable payload
            CorruptStateError: If persisting or reloading the payload fails
        """
        async with self._refresh_lock:
            etag = self._read_etag() if self.path.exists() else None
            headers = {"If-None-Match": etag} if etag else {}

            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout,
                    follow_redirects=True,
                    transport=self._transport,
                    headers={"User-Agent": f"seadexerr/{__version__}"},
                ) as client:
                    logger.debug(f"Requesting mappings from {self.source_url}")
                    response = await client.get(self.source_url, headers=headers)
                    if response.status_code != 304:
                        response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise UpstreamError(
                    "mappings", str(e), status_code=e.response.status_code
                ) from e
            except httpx.HTTPError as e:
                raise UpstreamError("mappings", f"download failed: {e}") from e

            if response.status_code == 304:
                if self.current() is not None:
                    logger.debug("Mapping source unchanged, keeping current index")
                    return False
                logger.info("Mapping source unchanged, loading persisted copy")
                await self.load_from_disk()
                return True

            payload = response.content
            loop = asyncio.get_running_loop()
            try:
                index = await loop.run_in_executor(
                    self._executor, MappingIndex.from_bytes, payload
                )
            except ValueError as e:
                raise UpstreamError("mappings", f"invalid mapping payload: {e}") from e

            await loop.run_in_executor(self._executor, write_atomic, self.path, payload)
            new_etag = response.headers.get("ETag")
            self._write_etag(new_etag)

            self._swap(
                MappingSnapshot(
                    last_modified=self._mtime(),
                    etag=new_etag,
                    index=index,
                )
            )
            logger.info(
                f"Refreshed mappings: {index.series_count} series, "
                f"{index.entry_count} season entries, "
                f"{len(index.tmdb_to_anilist)} movies"
            )
            return True

    async def load_from_disk(self) -> MappingSnapshot:
        """
        Rebuild the index from the persisted payload without downloading.

        Raises:
            CorruptStateError: If the file is missing, unreadable or invalid
        """
        loop = asyncio.get_running_loop()
        try:
            payload = await loop.run_in_executor(self._executor, self.path.read_bytes)
        except OSError as e:
            raise CorruptStateError(self.path, f"failed to read mappings: {e}") from e

        try:
            index = await loop.run_in_executor(
                self._executor, MappingIndex.from_bytes, payload
            )
        except ValueError as e:
            raise CorruptStateError(self.path, f"invalid mapping file: {e}") from e

        snapshot = MappingSnapshot(
            last_modified=self._mtime(), etag=self._read_etag(), index=index
        )
        self._swap(snapshot)
        logger.info(
            f"Loaded mappings from disk: {index.series_count} series, "
            f"{index.entry_count} season entries"
        )
        return snapshot

    def current(self) -> Optional[MappingSnapshot]:
        with self._swap_lock:
            return self._snapshot

    def _swap(self, snapshot: MappingSnapshot):
        with self._swap_lock:
            self._snapshot = snapshot

    def _index(self) -> MappingIndex:
        snapshot = self.current()
        if snapshot is None:
            raise MappingUnavailableError("mapping dataset has not been loaded")
        return snapshot.index

    def _mtime(self) -> float:
        try:
            return self.path.stat().st_mtime
        except OSError as e:
            raise CorruptStateError(self.path, f"failed to stat mappings: {e}") from e

    def _read_etag(self) -> Optional[str]:
        try:
            etag = self.etag_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Failed to read mapping ETag at {self.etag_path}: {e}")
            return None
        return etag or None

    def _write_etag(self, etag: Optional[str]):
        if etag:
            write_atomic(self.etag_path, etag.encode("utf-8"))
            return
        try:
            self.etag_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CorruptStateError(self.etag_path, f"failed to remove ETag: {e}") from e

    # Lookups

    def lookup_by_tvdb_season(self, tvdb_id: int, season: int) -> Optional[int]:
        """AniList id whose season set contains exactly ``s<season>``."""
        anilist_id = self._index().lookup_by_tvdb_season(tvdb_id, season)
        logger.debug(f"Mapping TVDB {tvdb_id} S{season} -> AniList {anilist_id}")
        return anilist_id

    def lookup_best_for_tvdb(self, tvdb_id: int) -> Optional[int]:
        """AniList id of the entry covering the earliest season of a series."""
        anilist_id = self._index().lookup_best_for_tvdb(tvdb_id)
        logger.debug(f"Mapping TVDB {tvdb_id} (any season) -> AniList {anilist_id}")
        return anilist_id

    def lookup_anilist_for_tmdb(self, tmdb_id: int) -> Optional[int]:
        return self._index().tmdb_to_anilist.get(tmdb_id)

    def lookup_tmdb_for_anilist(self, anilist_id: int) -> Optional[int]:
        return self._index().anilist_to_tmdb.get(anilist_id)

    def lookup_tvdb_mappings_for_anilist(self, anilist_id: int) -> List[TvdbMapping]:
        return list(self._index().by_anilist.get(anilist_id, ()))

    def lookup_best_tvdb_for_anilist(self, anilist_id: int) -> Optional[TvdbMapping]:
        """TVDB series and seasons for an AniList id, earliest season first."""
        return self._index().best_tvdb_for_anilist(anilist_id)


# Singleton instance
mapping_store = MappingStore()
