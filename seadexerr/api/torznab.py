"""Torznab API endpoints for Sonarr/Radarr integration."""

import logging
from typing import List, Optional
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response
from xml.etree.ElementTree import Element, SubElement, tostring

from seadexerr import __version__
from seadexerr.config import settings
from seadexerr.errors import (
    CorruptStateError,
    MappingUnavailableError,
    UpstreamError,
)
from seadexerr.models import (
    CATEGORY_MOVIES,
    CATEGORY_TV,
    CATEGORY_TV_ANIME,
    ChannelMetadata,
    FeedResult,
    TorznabItem,
)
from seadexerr.services.feed import FeedService, feed_service

logger = logging.getLogger(__name__)

router = APIRouter()

RSS_MEDIA_TYPE = "application/rss+xml; charset=utf-8"
XML_MEDIA_TYPE = "application/xml; charset=utf-8"

SUPPORTED_CATEGORIES = {CATEGORY_TV, CATEGORY_TV_ANIME, CATEGORY_MOVIES}

TV_SEARCH_OPERATIONS = {"tvsearch", "tv-search"}
MOVIE_SEARCH_OPERATIONS = {"movie", "movie-search"}


def get_feed_service() -> FeedService:
    """Dependency returning the process-wide feed service."""
    return feed_service


def get_channel_metadata() -> ChannelMetadata:
    base = settings.public_base_url
    return ChannelMetadata(
        title=settings.APP_TITLE,
        description=settings.APP_DESCRIPTION,
        site_link=base,
        api_link=f"{base}api",
    )


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/api")
@router.get("/torznab/api")
async def torznab_api(
    background_tasks: BackgroundTasks,
    t: Optional[str] = Query(None, description="Query type"),
    q: Optional[str] = Query(None, description="Search query"),
    cat: Optional[str] = Query(None, description="Comma separated category ids"),
    tvdbid: Optional[str] = Query(None, description="TVDB ID"),
    season: Optional[str] = Query(None, description="Season number"),
    tmdbid: Optional[str] = Query(None, description="TMDB ID"),
    apikey: Optional[str] = Query(None, description="API key"),
    limit: Optional[int] = Query(None, description="Result limit"),
    offset: Optional[int] = Query(0, description="Result offset"),
    service: FeedService = Depends(get_feed_service),
):
    """
    Main Torznab API endpoint.

    Handles:
    - caps: Return capabilities
    - search: Recent releases (RSS sync)
    - tvsearch: Season packs for a TVDB id and season
    - movie: Releases for a TMDB id
    """
    operation = (t or "tvsearch").strip().lower()
    logger.info(
        f"Torznab request: t={operation} tvdbid={tvdbid} season={season} "
        f"tmdbid={tmdbid} limit={limit} offset={offset}"
    )

    # Capabilities are public
    if operation == "caps":
        return Response(content=create_caps_xml(), media_type=XML_MEDIA_TYPE)

    if settings.API_KEY and apikey != settings.API_KEY:
        logger.debug(f"Invalid API key attempt: {apikey}")
        raise HTTPException(status_code=403, detail="Invalid API key")

    if operation not in {"search"} | TV_SEARCH_OPERATIONS | MOVIE_SEARCH_OPERATIONS:
        logger.warning(f"Unknown query type: {operation}")
        raise HTTPException(status_code=400, detail=f"Unsupported query type: {t}")

    offset = max(0, offset or 0)

    if q and q.strip():
        logger.debug("Free-text queries are not supported, returning empty feed")
        return create_empty_rss(offset)

    if not category_filter_matches(cat):
        logger.debug(f"Category filter {cat} not supported, returning empty feed")
        return create_empty_rss(offset)

    try:
        if operation == "search":
            result = await service.browse(limit=limit, offset=offset)
        elif operation in TV_SEARCH_OPERATIONS:
            result = await service.search_series(
                tvdbid, season, limit=limit, offset=offset
            )
        else:
            result = await service.search_movie(tmdbid, limit=limit, offset=offset)
    except UpstreamError as e:
        logger.error(f"Upstream failure for t={operation}: {e}")
        raise HTTPException(status_code=502, detail=f"Upstream unavailable: {e.service}")
    except (CorruptStateError, MappingUnavailableError) as e:
        logger.error(f"Persisted state unavailable for t={operation}: {e}")
        raise HTTPException(status_code=502, detail="Mapping or title cache unavailable")

    if result.empty_reason:
        logger.info(f"Empty feed for t={operation}: {result.empty_reason}")

    # Cache eviction runs after the response has been sent
    if result.retention is not None:
        background_tasks.add_task(service.apply_retention, result.retention)

    return Response(content=create_torznab_rss(result), media_type=RSS_MEDIA_TYPE)


def category_filter_matches(cat: Optional[str]) -> bool:
    """
    Check a ``cat`` parameter against the supported categories.

    An absent or blank filter, or one containing 0, matches everything.
    """
    if cat is None:
        return True

    any_values = False
    for part in cat.split(","):
        value = part.strip()
        if not value:
            continue
        any_values = True
        if value == "0":
            return True
        if value.isdigit() and int(value) in SUPPORTED_CATEGORIES:
            return True
    return not any_values


def create_caps_xml() -> str:
    """Return Torznab capabilities."""
    metadata = get_channel_metadata()
    caps = Element("caps")
    SubElement(
        caps,
        "server",
        version=__version__,
        title=metadata.title,
        description=metadata.description,
    )
    SubElement(
        caps,
        "limits",
        min="1",
        max=str(settings.DEFAULT_LIMIT),
        default=str(settings.DEFAULT_LIMIT),
    )
    SubElement(caps, "registration", available="no", open="no")

    searching = SubElement(caps, "searching")
    SubElement(searching, "search", available="yes", supportedParams="q")
    SubElement(
        searching, "tv-search", available="yes", supportedParams="q,tvdbid,season"
    )
    SubElement(searching, "movie-search", available="yes", supportedParams="q,tmdbid")

    categories = SubElement(caps, "categories")
    tv = SubElement(categories, "category", id=str(CATEGORY_TV), name="TV")
    SubElement(tv, "subcat", id=str(CATEGORY_TV_ANIME), name="Anime")
    SubElement(categories, "category", id=str(CATEGORY_MOVIES), name="Movies")

    return '<?xml version="1.0" encoding="UTF-8"?>\n' + tostring(
        caps, encoding="unicode"
    )


def _add_item(channel: Element, item: TorznabItem):
    element = SubElement(channel, "item")

    SubElement(element, "title").text = item.title
    SubElement(element, "guid", isPermaLink="false").text = item.guid
    SubElement(element, "link").text = item.link
    # Sonarr uses <comments> element for the clickable info/details page link
    if item.comments:
        SubElement(element, "comments").text = item.comments
    if item.description:
        SubElement(element, "description").text = item.description
    if item.pub_date:
        SubElement(element, "pubDate").text = item.pub_date
    SubElement(element, "size").text = str(item.size)
    for category in item.categories:
        SubElement(element, "category").text = str(category)

    SubElement(
        element,
        "enclosure",
        url=item.link,
        length=str(item.size),
        type="application/x-bittorrent",
    )

    attributes: List[tuple] = [("size", item.size)]
    attributes.extend(("category", category) for category in item.categories)
    if item.infohash:
        attributes.append(("infohash", item.infohash))
    if item.files is not None:
        attributes.append(("files", item.files))
    if item.tvdbid is not None:
        attributes.append(("tvdbid", item.tvdbid))
    if item.season is not None:
        attributes.append(("season", item.season))
    if item.tmdbid is not None:
        attributes.append(("tmdbid", item.tmdbid))
    # Required by some clients
    attributes.append(("downloadvolumefactor", 1))
    attributes.append(("uploadvolumefactor", 1))

    for name, value in attributes:
        SubElement(element, "torznab:attr", name=name, value=str(value))


def create_torznab_rss(result: FeedResult) -> str:
    """Create Torznab-compliant RSS XML from a feed result."""
    metadata = get_channel_metadata()

    rss = Element("rss", version="2.0")
    rss.set("xmlns:atom", "http://www.w3.org/2005/Atom")
    rss.set("xmlns:torznab", "http://torznab.com/schemas/2015/feed")
    rss.set("xmlns:newznab", "http://www.newznab.com/DTD/2010/feeds/attributes/")

    channel = SubElement(rss, "channel")
    SubElement(channel, "title").text = metadata.title
    SubElement(channel, "description").text = metadata.description
    SubElement(channel, "link").text = metadata.site_link
    SubElement(
        channel,
        "atom:link",
        href=metadata.api_link,
        rel="self",
        type="application/rss+xml",
    )
    SubElement(
        channel, "newznab:response", offset=str(result.offset), total=str(result.total)
    )

    for item in result.items:
        _add_item(channel, item)

    return '<?xml version="1.0" encoding="UTF-8"?>\n' + tostring(
        rss, encoding="unicode"
    )


def create_empty_rss(offset: int = 0) -> Response:
    """Create empty RSS response."""
    empty_xml = create_torznab_rss(FeedResult.empty("no results", offset))
    return Response(content=empty_xml, media_type=RSS_MEDIA_TYPE)
