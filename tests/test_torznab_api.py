"""Tests for the Torznab HTTP surface."""

from datetime import datetime, timezone
from xml.etree import ElementTree

import pytest
from fastapi.testclient import TestClient

from seadexerr.api.torznab import category_filter_matches, get_feed_service
from seadexerr.config import settings
from seadexerr.errors import CorruptStateError, UpstreamError
from seadexerr.main import app
from seadexerr.models import FeedResult, TitleRetention, TorznabItem

TORZNAB_NS = "{http://torznab.com/schemas/2015/feed}"
NEWZNAB_NS = "{http://www.newznab.com/DTD/2010/feeds/attributes/}"


class StubFeedService:
    """Records calls and returns a canned result."""

    def __init__(self, result=None, error=None):
        self.result = result or FeedResult()
        self.error = error
        self.calls = []
        self.retained = []

    async def _answer(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if self.error:
            raise self.error
        return self.result

    async def browse(self, limit=None, offset=None):
        return await self._answer("browse", limit=limit, offset=offset)

    async def search_series(self, tvdbid, season=None, limit=None, offset=None):
        return await self._answer("search_series", tvdbid, season, limit=limit, offset=offset)

    async def search_movie(self, tmdbid, limit=None, offset=None):
        return await self._answer("search_movie", tmdbid, limit=limit, offset=offset)

    def apply_retention(self, retention):
        self.retained.append(retention)


def series_item(guid: str) -> TorznabItem:
    return TorznabItem(
        title="Frieren S01",
        guid=guid,
        link=f"https://nyaa.si/download/{guid}.torrent",
        comments=f"https://nyaa.si/view/{guid}",
        description="SeaDex best release",
        published=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        size=1200,
        infohash="0123abcd",
        files=12,
        tvdbid=100,
        season=1,
    )


@pytest.fixture
def stub():
    return StubFeedService()


@pytest.fixture
def client(stub):
    app.dependency_overrides[get_feed_service] = lambda: stub
    # Lifespan is not entered: no mapping download happens in tests
    yield TestClient(app)
    app.dependency_overrides.clear()


def parse_channel(response):
    root = ElementTree.fromstring(response.content)
    assert root.tag == "rss"
    return root.find("channel")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_caps(client, stub):
    response = client.get("/api", params={"t": "caps"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    root = ElementTree.fromstring(response.content)
    assert root.tag == "caps"
    searching = root.find("searching")
    assert searching.find("tv-search").get("supportedParams") == "q,tvdbid,season"
    assert searching.find("movie-search").get("supportedParams") == "q,tmdbid"
    category_ids = {c.get("id") for c in root.iter("category")}
    assert category_ids == {"5000", "2000"}
    assert root.find("categories/category/subcat").get("id") == "5070"
    assert stub.calls == []


def test_tvsearch_renders_items(client, stub):
    stub.result = FeedResult(items=[series_item("abc")], total=7, offset=3)

    response = client.get(
        "/api", params={"t": "tvsearch", "tvdbid": "100", "season": "1", "offset": "3"}
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/rss+xml")
    assert stub.calls == [
        ("search_series", ("100", "1"), {"limit": None, "offset": 3})
    ]

    channel = parse_channel(response)
    paging = channel.find(f"{NEWZNAB_NS}response")
    assert paging.get("offset") == "3"
    assert paging.get("total") == "7"

    item = channel.find("item")
    assert item.findtext("title") == "Frieren S01"
    assert item.findtext("guid") == "abc"
    assert item.findtext("link") == "https://nyaa.si/download/abc.torrent"
    assert item.findtext("comments") == "https://nyaa.si/view/abc"
    assert item.findtext("pubDate") == "Tue, 02 Jan 2024 03:04:05 +0000"
    assert item.find("enclosure").get("type") == "application/x-bittorrent"
    attrs = {a.get("name"): a.get("value") for a in item.iter(f"{TORZNAB_NS}attr")}
    assert attrs["tvdbid"] == "100"
    assert attrs["season"] == "1"
    assert attrs["files"] == "12"
    assert attrs["size"] == "1200"
    assert attrs["infohash"] == "0123abcd"
    assert "seeders" not in attrs
    assert "tmdbid" not in attrs


def test_torznab_prefix_and_movie_search(client, stub):
    response = client.get("/torznab/api", params={"t": "movie", "tmdbid": "9000"})

    assert response.status_code == 200
    assert stub.calls[0][0] == "search_movie"
    assert stub.calls[0][1] == ("9000",)


def test_search_without_query_browses(client, stub):
    stub.result = FeedResult(retention=TitleRetention(series_ids={100}))

    response = client.get("/api", params={"t": "search", "limit": "5"})

    assert response.status_code == 200
    assert stub.calls == [("browse", (), {"limit": 5, "offset": 0})]
    # Background tasks run before TestClient returns
    assert stub.retained == [TitleRetention(series_ids={100})]


def test_free_text_query_returns_empty_feed(client, stub):
    response = client.get("/api", params={"t": "search", "q": "frieren"})

    assert response.status_code == 200
    channel = parse_channel(response)
    assert channel.findall("item") == []
    assert channel.find(f"{NEWZNAB_NS}response").get("total") == "0"
    assert stub.calls == []


def test_unsupported_category_returns_empty_feed(client, stub):
    response = client.get("/api", params={"t": "tvsearch", "tvdbid": "1", "cat": "7000"})

    assert response.status_code == 200
    assert parse_channel(response).findall("item") == []
    assert stub.calls == []


def test_unknown_operation(client):
    response = client.get("/api", params={"t": "music"})
    assert response.status_code == 400


def test_upstream_failure_is_bad_gateway(client, stub):
    stub.error = UpstreamError("AniList", "timed out")

    response = client.get("/api", params={"t": "tvsearch", "tvdbid": "100"})

    assert response.status_code == 502
    assert "AniList" in response.json()["detail"]
    assert stub.retained == []


def test_corrupt_state_is_bad_gateway(client, stub, tmp_path):
    stub.error = CorruptStateError(tmp_path / "sonarr_titles.json", "invalid JSON")

    response = client.get("/api", params={"t": "search"})
    assert response.status_code == 502


def test_api_key_is_enforced(client, monkeypatch):
    monkeypatch.setattr(settings, "API_KEY", "secret")

    assert client.get("/api", params={"t": "search"}).status_code == 403
    assert client.get("/api", params={"t": "search", "apikey": "secret"}).status_code == 200
    # Capabilities stay public
    assert client.get("/api", params={"t": "caps"}).status_code == 200


@pytest.mark.parametrize(
    "cat,expected",
    [
        (None, True),
        ("", True),
        ("5070", True),
        ("5000,2000", True),
        ("0", True),
        ("7000,8000", False),
        ("abc", False),
    ],
)
def test_category_filter(cat, expected):
    assert category_filter_matches(cat) is expected
