"""Feed assembly: turns a Torznab query into title-annotated, filtered results.

Every entry point runs the same stages in order:

    resolve target -> fetch candidates -> resolve missing AniList ids
        -> classify formats -> filter and paginate -> resolve titles -> emit

Missing or malformed identifiers and ids unknown to a provider end the run
with an empty ``FeedResult``. Upstream and persistence failures propagate.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Set, Tuple, Union

from seadexerr.config import settings
from seadexerr.errors import MalformedQueryError, NotFoundError
from seadexerr.models import (
    MOVIE_CATEGORIES,
    SERIES_CATEGORIES,
    FeedResult,
    TitleRetention,
    Torrent,
    TorznabItem,
)
from seadexerr.services.anilist import (
    MOVIE_FORMATS,
    SERIES_FORMATS,
    AniListClient,
    MediaFormat,
    anilist_client,
    is_movie_format,
    is_series_format,
)
from seadexerr.services.mapping import MappingStore, mapping_store
from seadexerr.services.radarr import RadarrClient, radarr_client
from seadexerr.services.releases import ReleasesClient, releases_client
from seadexerr.services.sonarr import SonarrClient, sonarr_client

logger = logging.getLogger(__name__)

Identifier = Union[int, str, None]


def parse_identifier(value: Identifier, parameter: str) -> Optional[int]:
    """
    Parse a numeric query parameter.

    Returns:
        The non-negative integer, or None if the parameter is absent or blank

    Raises:
        MalformedQueryError: If the value is present but not a non-negative integer
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedQueryError(parameter, str(value))
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if not all("0" <= ch <= "9" for ch in text):
            raise MalformedQueryError(parameter, text)
        number = int(text)
    if number < 0:
        raise MalformedQueryError(parameter, str(value))
    return number


def format_series_title(name: str, season: Optional[int]) -> str:
    """Append the season marker, e.g. ("Frieren", 2) -> "Frieren S02"."""
    if season is None:
        return name
    return f"{name} S{season:02d}"


def placeholder_title(torrent: Torrent) -> str:
    return f"Torrent {torrent.id}"


@dataclass(frozen=True)
class ResolvedTitle:
    """A display title and the external ids it was resolved through."""

    title: str
    tvdb_id: Optional[int] = None
    season: Optional[int] = None
    tmdb_id: Optional[int] = None


@dataclass
class TitleContext:
    """Per-request memo of resolved titles and the external ids used."""

    memo: Dict[Tuple[str, int, Optional[int]], Optional[ResolvedTitle]]
    series_ids: Set[int]
    movie_ids: Set[int]

    @classmethod
    def new(cls) -> "TitleContext":
        return cls(memo={}, series_ids=set(), movie_ids=set())


class FeedService:
    """Runs the feed pipeline against the mapping store and upstream clients."""

    def __init__(
        self,
        mappings: MappingStore,
        releases: ReleasesClient,
        anilist: AniListClient,
        sonarr: SonarrClient,
        radarr: RadarrClient,
        default_limit: Optional[int] = None,
        retain_on_search: Optional[bool] = None,
    ):
        self.mappings = mappings
        self.releases = releases
        self.anilist = anilist
        self.sonarr = sonarr
        self.radarr = radarr
        self.default_limit = default_limit or settings.DEFAULT_LIMIT
        self.retain_on_search = (
            settings.TITLE_CACHE_RETAIN_ON_SEARCH
            if retain_on_search is None
            else retain_on_search
        )

    def _window(self, limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
        """Clamp limit to [1, default_limit] and offset to >= 0."""
        if limit is None:
            limit = self.default_limit
        limit = max(1, min(limit, self.default_limit))
        offset = max(0, offset or 0)
        return limit, offset

    # Entry points

    async def search_series(
        self,
        tvdbid: Identifier,
        season: Identifier = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> FeedResult:
        """
        Season packs for a TVDB series season.

        Without a season the AniList entry covering the series' earliest
        season is used.
        """
        limit, offset = self._window(limit, offset)
        try:
            tvdb_id = parse_identifier(tvdbid, "tvdbid")
            season_number = parse_identifier(season, "season")
        except MalformedQueryError as e:
            logger.info(f"Series search with malformed query, returning empty feed: {e}")
            return FeedResult.empty(f"malformed query: {e}", offset)

        if tvdb_id is None:
            logger.debug("Series search without tvdbid, returning empty feed")
            return FeedResult.empty("missing tvdbid", offset)

        if season_number is None:
            anilist_id = self.mappings.lookup_best_for_tvdb(tvdb_id)
            if anilist_id is not None:
                season_number = self._earliest_season(anilist_id, tvdb_id)
        else:
            anilist_id = self.mappings.lookup_by_tvdb_season(tvdb_id, season_number)

        if anilist_id is None:
            logger.info(f"No AniList mapping for TVDB {tvdb_id} season {season_number}")
            return FeedResult.empty("no mapping for series season", offset)

        logger.info(
            f"Series search: TVDB {tvdb_id} S{season_number} -> AniList {anilist_id}"
        )
        candidates = await self.releases.search(anilist_id, self.default_limit)
        candidates = await self._resolve_missing_identities(candidates)
        classified = await self._classify(candidates, SERIES_FORMATS)
        total, page = self._filter_and_paginate(classified, limit, offset)

        retention = (
            TitleRetention(series_ids={tvdb_id}) if self.retain_on_search else None
        )
        if not page:
            return FeedResult(total=total, offset=offset, retention=retention)

        if not self.sonarr.is_configured():
            logger.warning("Sonarr integration disabled, cannot title series results")
            return FeedResult.empty("series titles unavailable", offset)

        try:
            name = await self.sonarr.resolve_name(tvdb_id)
        except NotFoundError as e:
            logger.info(f"Returning empty feed: {e}")
            return FeedResult.empty("series not found", offset)

        title = format_series_title(name, season_number)
        items = [
            self._build_item(
                torrent,
                title,
                SERIES_CATEGORIES,
                tvdb_id=tvdb_id,
                season=season_number,
            )
            for torrent, _ in page
        ]
        logger.info(f"Series search TVDB {tvdb_id}: {len(items)} of {total} results")
        return FeedResult(items=items, total=total, offset=offset, retention=retention)

    async def search_movie(
        self,
        tmdbid: Identifier,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> FeedResult:
        """Releases for a TMDB movie."""
        limit, offset = self._window(limit, offset)
        try:
            tmdb_id = parse_identifier(tmdbid, "tmdbid")
        except MalformedQueryError as e:
            logger.info(f"Movie search with malformed query, returning empty feed: {e}")
            return FeedResult.empty(f"malformed query: {e}", offset)

        if tmdb_id is None:
            logger.debug("Movie search without tmdbid, returning empty feed")
            return FeedResult.empty("missing tmdbid", offset)

        anilist_id = self.mappings.lookup_anilist_for_tmdb(tmdb_id)
        if anilist_id is None:
            logger.info(f"No AniList mapping for TMDB {tmdb_id}")
            return FeedResult.empty("no mapping for movie", offset)

        logger.info(f"Movie search: TMDB {tmdb_id} -> AniList {anilist_id}")
        candidates = await self.releases.search(anilist_id, self.default_limit)
        candidates = await self._resolve_missing_identities(candidates)
        classified = await self._classify(candidates, MOVIE_FORMATS)
        total, page = self._filter_and_paginate(classified, limit, offset)

        retention = (
            TitleRetention(movie_ids={tmdb_id}) if self.retain_on_search else None
        )
        if not page:
            return FeedResult(total=total, offset=offset, retention=retention)

        if not self.radarr.is_configured():
            logger.warning("Radarr integration disabled, cannot title movie results")
            return FeedResult.empty("movie titles unavailable", offset)

        try:
            title = await self.radarr.resolve_name(tmdb_id)
        except NotFoundError as e:
            logger.info(f"Returning empty feed: {e}")
            return FeedResult.empty("movie not found", offset)

        items = [
            self._build_item(torrent, title, MOVIE_CATEGORIES, tmdb_id=tmdb_id)
            for torrent, _ in page
        ]
        logger.info(f"Movie search TMDB {tmdb_id}: {len(items)} of {total} results")
        return FeedResult(items=items, total=total, offset=offset, retention=retention)

    async def browse(
        self, limit: Optional[int] = None, offset: Optional[int] = None
    ) -> FeedResult:
        """Recent releases of every servable format (the RSS sync feed)."""
        limit, offset = self._window(limit, offset)

        candidates = await self.releases.recent(self.default_limit)
        candidates = await self._resolve_missing_identities(candidates)
        classified = await self._classify(candidates, SERIES_FORMATS | MOVIE_FORMATS)
        total, page = self._filter_and_paginate(classified, limit, offset)

        context = TitleContext.new()
        items = []
        for torrent, media_format in page:
            resolved = await self.resolve_title(torrent.anilist_id, media_format, context)
            if resolved is None:
                items.append(
                    self._build_item(
                        torrent,
                        placeholder_title(torrent),
                        MOVIE_CATEGORIES
                        if is_movie_format(media_format)
                        else SERIES_CATEGORIES,
                    )
                )
                continue
            items.append(
                self._build_item(
                    torrent,
                    resolved.title,
                    MOVIE_CATEGORIES if resolved.tmdb_id else SERIES_CATEGORIES,
                    tvdb_id=resolved.tvdb_id,
                    season=resolved.season,
                    tmdb_id=resolved.tmdb_id,
                )
            )

        retention = TitleRetention(
            series_ids=context.series_ids if self.sonarr.is_configured() else None,
            movie_ids=context.movie_ids if self.radarr.is_configured() else None,
        )
        logger.info(f"Browse feed: {len(items)} of {total} results")
        return FeedResult(items=items, total=total, offset=offset, retention=retention)

    async def resolve_title(
        self,
        anilist_id: int,
        media_format: Optional[MediaFormat] = None,
        context: Optional[TitleContext] = None,
    ) -> Optional[ResolvedTitle]:
        """
        Find a display title for an AniList id through the mapping dataset.

        Movies resolve through their TMDB id and Radarr; series through the
        TVDB mapping with the earliest season and Sonarr. Without a format,
        a series mapping is preferred over a movie mapping.

        Returns:
            The resolved title, or None if no mapping or provider record exists

        Raises:
            UpstreamError: If a provider request fails
        """
        if context is None:
            context = TitleContext.new()

        if is_movie_format(media_format):
            return await self._resolve_movie_title(anilist_id, context)
        if is_series_format(media_format):
            return await self._resolve_series_title(anilist_id, context)

        resolved = await self._resolve_series_title(anilist_id, context)
        if resolved is None:
            resolved = await self._resolve_movie_title(anilist_id, context)
        return resolved

    def apply_retention(self, retention: Optional[TitleRetention]):
        """
        Evict title cache entries not referenced by the latest response.

        Raises:
            CorruptStateError: If a cache file cannot be rewritten
        """
        if retention is None:
            return
        if retention.series_ids is not None:
            self.sonarr.retain(retention.series_ids)
        if retention.movie_ids is not None:
            self.radarr.retain(retention.movie_ids)

    # Stages

    async def _resolve_missing_identities(self, candidates: List[Torrent]) -> List[Torrent]:
        """Fill in AniList ids via one reverse lookup; drop unresolved candidates."""
        missing = [t.id for t in candidates if t.anilist_id is None]
        if not missing:
            return candidates

        resolved = await self.releases.reverse_lookup(missing)
        result = []
        for torrent in candidates:
            if torrent.anilist_id is not None:
                result.append(torrent)
            elif torrent.id in resolved:
                result.append(torrent.model_copy(update={"anilist_id": resolved[torrent.id]}))

        dropped = len(candidates) - len(result)
        if dropped:
            logger.debug(f"Dropped {dropped} candidates without an AniList id")
        return result

    async def _classify(
        self, candidates: List[Torrent], allowed: FrozenSet[MediaFormat]
    ) -> List[Tuple[Torrent, MediaFormat]]:
        """Pair candidates with their AniList format, keeping allowed formats only."""
        if not candidates:
            return []

        formats = await self.anilist.classify(t.anilist_id for t in candidates)
        classified = []
        for torrent in candidates:
            media_format = formats.get(torrent.anilist_id)
            if media_format is None or media_format not in allowed:
                continue
            classified.append((torrent, media_format))

        logger.debug(f"Classification kept {len(classified)}/{len(candidates)} candidates")
        return classified

    @staticmethod
    def _filter_and_paginate(
        classified: List[Tuple[Torrent, MediaFormat]], limit: int, offset: int
    ) -> Tuple[int, List[Tuple[Torrent, MediaFormat]]]:
        """
        Apply the season pack rule, then the offset/limit window.

        Returns:
            Tuple of (post-filter total, page of candidates)
        """
        filtered = [
            (torrent, media_format)
            for torrent, media_format in classified
            if not is_series_format(media_format) or torrent.is_season_pack
        ]
        return len(filtered), filtered[offset : offset + limit]

    # Title helpers

    def _earliest_season(self, anilist_id: int, tvdb_id: int) -> Optional[int]:
        for mapping in self.mappings.lookup_tvdb_mappings_for_anilist(anilist_id):
            if mapping.tvdb_id == tvdb_id:
                return mapping.earliest_season
        return None

    async def _resolve_series_title(
        self, anilist_id: int, context: TitleContext
    ) -> Optional[ResolvedTitle]:
        mapping = self.mappings.lookup_best_tvdb_for_anilist(anilist_id)
        if mapping is None or not self.sonarr.is_configured():
            return None

        season = mapping.earliest_season
        key = ("tvdb", mapping.tvdb_id, season)
        if key not in context.memo:
            try:
                name = await self.sonarr.resolve_name(mapping.tvdb_id)
            except NotFoundError as e:
                logger.debug(f"No series title for AniList {anilist_id}: {e}")
                context.memo[key] = None
            else:
                context.memo[key] = ResolvedTitle(
                    title=format_series_title(name, season),
                    tvdb_id=mapping.tvdb_id,
                    season=season,
                )
                context.series_ids.add(mapping.tvdb_id)
        return context.memo[key]

    async def _resolve_movie_title(
        self, anilist_id: int, context: TitleContext
    ) -> Optional[ResolvedTitle]:
        tmdb_id = self.mappings.lookup_tmdb_for_anilist(anilist_id)
        if tmdb_id is None or not self.radarr.is_configured():
            return None

        key = ("tmdb", tmdb_id, None)
        if key not in context.memo:
            try:
                title = await self.radarr.resolve_name(tmdb_id)
            except NotFoundError as e:
                logger.debug(f"No movie title for AniList {anilist_id}: {e}")
                context.memo[key] = None
            else:
                context.memo[key] = ResolvedTitle(title=title, tmdb_id=tmdb_id)
                context.movie_ids.add(tmdb_id)
        return context.memo[key]

    @staticmethod
    def _build_item(
        torrent: Torrent,
        title: str,
        categories: List[int],
        tvdb_id: Optional[int] = None,
        season: Optional[int] = None,
        tmdb_id: Optional[int] = None,
    ) -> TorznabItem:
        return TorznabItem(
            title=title,
            guid=torrent.id,
            link=torrent.download_url,
            comments=torrent.source_url or None,
            description="SeaDex best release"
            if torrent.is_best
            else "SeaDex alternative release",
            published=torrent.published_at,
            infohash=torrent.info_hash,
            size=torrent.size_bytes,
            files=torrent.file_count,
            categories=list(categories),
            tvdbid=tvdb_id,
            season=season,
            tmdbid=tmdb_id,
        )


# Singleton instance
feed_service = FeedService(
    mapping_store, releases_client, anilist_client, sonarr_client, radarr_client
)
