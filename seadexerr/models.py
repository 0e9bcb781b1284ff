"""Pydantic models for data validation and serialization."""

from typing import Optional, List, Set
from pydantic import BaseModel, Field
from datetime import datetime, timezone

# Torznab category ids
CATEGORY_MOVIES = 2000
CATEGORY_TV = 5000
CATEGORY_TV_ANIME = 5070

SERIES_CATEGORIES = [CATEGORY_TV, CATEGORY_TV_ANIME]
MOVIE_CATEGORIES = [CATEGORY_MOVIES]


class Torrent(BaseModel):
    """A release candidate returned by releases.moe."""

    id: str  # releases.moe record id
    anilist_id: Optional[int] = None  # Absent for the recent feed
    download_url: str
    source_url: str = ""  # Tracker details page
    info_hash: Optional[str] = None
    published_at: Optional[datetime] = None
    file_count: int = 0
    size_bytes: int = 0
    is_best: bool = False

    @property
    def is_season_pack(self) -> bool:
        """True if the release bundles more than one file."""
        return self.file_count > 1


class TorznabItem(BaseModel):
    """Torznab RSS item (search result)."""

    title: str
    guid: str
    link: str
    comments: Optional[str] = None  # Info/details page URL
    description: Optional[str] = None
    published: Optional[datetime] = None
    size: int = 0
    infohash: Optional[str] = None
    files: Optional[int] = None
    categories: List[int] = Field(default_factory=lambda: list(SERIES_CATEGORIES))
    tvdbid: Optional[int] = None
    season: Optional[int] = None
    tmdbid: Optional[int] = None

    @property
    def pub_date(self) -> Optional[str]:
        """RFC 2822 publication date in UTC as used by RSS."""
        if self.published is None:
            return None
        published = self.published
        if published.tzinfo is None:
            published = published.replace(tzinfo=timezone.utc)
        return published.astimezone(timezone.utc).strftime(
            "%a, %d %b %Y %H:%M:%S +0000"
        )


class TitleRetention(BaseModel):
    """Ids to keep in each title cache after a response.

    ``None`` leaves the corresponding cache untouched; an empty set clears it.
    """

    series_ids: Optional[Set[int]] = None
    movie_ids: Optional[Set[int]] = None


class FeedResult(BaseModel):
    """Outcome of one feed pipeline run."""

    items: List[TorznabItem] = Field(default_factory=list)
    total: int = 0  # Post-filter, pre-pagination count
    offset: int = 0
    empty_reason: Optional[str] = None  # Set when empty by design, not by error
    retention: Optional[TitleRetention] = None

    @classmethod
    def empty(cls, reason: str, offset: int = 0) -> "FeedResult":
        return cls(items=[], total=0, offset=offset, empty_reason=reason)

    @property
    def is_empty(self) -> bool:
        return not self.items


class ChannelMetadata(BaseModel):
    """Channel level fields of a Torznab document."""

    title: str
    description: str
    site_link: str
    api_link: str
