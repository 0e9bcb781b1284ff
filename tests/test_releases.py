"""Tests for the releases.moe client."""

from datetime import datetime, timezone

import httpx
import pytest

from seadexerr.errors import UpstreamError
from seadexerr.models import TorznabItem
from seadexerr.services.releases import (
    ReleasesClient,
    extract_nyaa_id,
    parse_timestamp,
    torrent_from_record,
)


def torrent_record(record_id, nyaa_id=None, files=1, tracker="Nyaa", best=False):
    return {
        "id": record_id,
        "tracker": tracker,
        "url": f"https://nyaa.si/view/{nyaa_id or 1000}",
        "infoHash": "abc123",
        "isBest": best,
        "updated": "2024-03-05 10:20:30.123Z",
        "files": [{"name": f"ep{i}.mkv", "length": 100} for i in range(files)],
    }


def make_client(handler) -> ReleasesClient:
    return ReleasesClient(
        base_url="https://releases.test/api",
        timeout=5,
        default_limit=100,
        transport=httpx.MockTransport(handler),
    )


class TestParsing:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://nyaa.si/view/1234567", "1234567"),
            ("https://nyaa.si/view/1234567?x=1", "1234567"),
            ("https://nyaa.si/view/1234567/", "1234567"),
            ("https://nyaa.si/user/foo", None),
            ("https://nyaa.si/view/abc", None),
            ("", None),
        ],
    )
    def test_extract_nyaa_id(self, url, expected):
        assert extract_nyaa_id(url) == expected

    def test_pocketbase_timestamp(self):
        assert parse_timestamp("2024-03-05 10:20:30.123Z") == datetime(
            2024, 3, 5, 10, 20, 30, 123000, tzinfo=timezone.utc
        )
        assert parse_timestamp("") is None
        assert parse_timestamp("yesterday") is None

    def test_offset_timestamp_renders_in_utc(self):
        published = parse_timestamp("2024-01-02T05:04:05+02:00")
        item = TorznabItem(title="x", guid="x", link="x", published=published)

        assert item.pub_date == "Tue, 02 Jan 2024 03:04:05 +0000"

    def test_torrent_from_record(self):
        torrent = torrent_from_record(torrent_record("rec1", 42, files=3, best=True), 555)

        assert torrent.id == "rec1"
        assert torrent.anilist_id == 555
        assert torrent.download_url == "https://nyaa.si/download/42.torrent"
        assert torrent.source_url == "https://nyaa.si/view/42"
        assert torrent.file_count == 3
        assert torrent.size_bytes == 300
        assert torrent.is_best
        assert torrent.is_season_pack
        assert torrent.info_hash == "abc123"

    def test_private_tracker_is_skipped(self):
        assert torrent_from_record(torrent_record("rec1", tracker="AB")) is None

    def test_falls_back_to_created(self):
        record = torrent_record("rec1")
        record["updated"] = ""
        record["created"] = "2023-01-01 00:00:00.000Z"
        torrent = torrent_from_record(record)
        assert torrent.published_at.year == 2023


pytestmark = pytest.mark.anyio


async def test_search_by_anilist_id():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "items": [
                    {
                        "alID": 555,
                        "expand": {
                            "trs": [
                                torrent_record("a", 1, files=12, best=True),
                                torrent_record("b", 2, tracker="AnimeBytes"),
                                torrent_record("c", 3, files=1),
                            ]
                        },
                    }
                ]
            },
        )

    torrents = await make_client(handler).search(555, limit=10)

    assert [t.id for t in torrents] == ["a", "c"]
    assert all(t.anilist_id == 555 for t in torrents)
    params = requests[0].url.params
    assert requests[0].url.path == "/api/collections/entries/records"
    assert params["filter"] == "(alID=555)"
    assert params["expand"] == "trs"


async def test_recent_has_no_anilist_ids():
    def handler(request):
        assert request.url.path == "/api/collections/torrents/records"
        assert request.url.params["sort"] == "-updated"
        return httpx.Response(
            200, json={"items": [torrent_record("x", 7), torrent_record("y", 8)]}
        )

    torrents = await make_client(handler).recent(limit=1)

    assert [t.id for t in torrents] == ["x"]
    assert torrents[0].anilist_id is None


async def test_reverse_lookup():
    filters = []

    def handler(request):
        filters.append(request.url.params["filter"])
        return httpx.Response(
            200,
            json={
                "items": [
                    {"alID": 777, "expand": {"trs": [torrent_record("m1", 1)]}},
                    {
                        "alID": 555,
                        "expand": {
                            "trs": [
                                torrent_record("s1", 2),
                                torrent_record("unrequested", 3),
                            ]
                        },
                    },
                ]
            },
        )

    result = await make_client(handler).reverse_lookup(["s1", "m1", "s1", "gone"])

    assert result == {"m1": 777, "s1": 555}
    assert filters == ["(trs~'gone') || (trs~'m1') || (trs~'s1')"]


async def test_reverse_lookup_chunks_requests():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"items": []})

    ids = [f"r{i:02d}" for i in range(45)]
    assert await make_client(handler).reverse_lookup(ids) == {}
    assert len(calls) == 3


async def test_upstream_failure():
    def handler(request):
        return httpx.Response(502)

    with pytest.raises(UpstreamError):
        await make_client(handler).recent(limit=5)


async def test_malformed_entries_are_skipped():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "items": [
                    "junk",
                    {"alID": 1, "expand": ["not", "a", "dict"]},
                    {"alID": 2, "expand": {"trs": ["junk", torrent_record("ok", 5)]}},
                ]
            },
        )

    client = make_client(handler)
    assert [t.id for t in await client.search(2, limit=10)] == ["ok"]
    assert await client.reverse_lookup(["ok"]) == {"ok": 2}


async def test_items_must_be_a_list():
    def handler(request):
        return httpx.Response(200, json={"items": {"id": "x"}})

    with pytest.raises(UpstreamError):
        await make_client(handler).recent(limit=5)
