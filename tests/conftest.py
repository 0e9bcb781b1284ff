"""Pytest configuration for Seadexerr tests."""

import json
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set up environment variables for testing
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="seadexerr-test-"))
os.environ.setdefault("SONARR_URL", "http://sonarr.test")
os.environ.setdefault("SONARR_API_KEY", "test")
os.environ.setdefault("RADARR_URL", "http://radarr.test")
os.environ.setdefault("RADARR_API_KEY", "test")


# AniList 555 covers seasons 1-2 of TVDB 100, AniList 556 its specials,
# AniList 777 is a movie with TMDB 9000.
SAMPLE_MAPPINGS = {
    "555": {"tvdb_id": 100, "tvdb_mappings": {"s1": "", "s2": ""}},
    "556": {"tvdb_id": 100, "tvdb_mappings": {"s0": "e1-e2"}},
    "600": {"tvdb_id": 200, "tvdb_mappings": {"s3": ""}},
    "601": {"tvdb_id": 200, "tvdb_mappings": {"s1": ""}},
    "777": {"tmdb_movie_id": [9000, 9001]},
    "778": {"tmdb_movie_id": 9100, "tvdb_id": 300},
    "$meta": {"version": 2},
}


def to_json_bytes(data) -> bytes:
    return json.dumps(data).encode("utf-8")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def sample_payload() -> bytes:
    return to_json_bytes(SAMPLE_MAPPINGS)


@pytest.fixture
def sample_mappings() -> dict:
    return json.loads(json.dumps(SAMPLE_MAPPINGS))
