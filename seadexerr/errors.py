"""Exception hierarchy shared by the Seadexerr services.

Hierarchy:
    SeadexerrError (base)
    ├── UpstreamError            - network, timeout, non-2xx or undecodable upstream reply
    ├── NotFoundError            - an upstream has no record for a specific id
    │   ├── SeriesNotFoundError
    │   └── MovieNotFoundError
    ├── MalformedQueryError      - unparseable identifiers in an incoming query
    ├── CorruptStateError        - persisted cache or mapping file unreadable/unwritable
    └── MappingUnavailableError  - lookup before any mapping snapshot was loaded

UpstreamError and CorruptStateError propagate to the HTTP layer. NotFoundError
and MalformedQueryError are absorbed by the feed pipeline into empty results.
"""

from pathlib import Path
from typing import Optional, Union


class SeadexerrError(Exception):
    """Base exception for Seadexerr."""


class UpstreamError(SeadexerrError):
    """An upstream service could not be reached or returned an unusable reply."""

    def __init__(
        self, service: str, message: str, status_code: Optional[int] = None
    ):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class NotFoundError(SeadexerrError):
    """An upstream service has no record for the requested id."""

    def __init__(self, service: str, identifier: Union[int, str]):
        self.service = service
        self.identifier = identifier
        super().__init__(f"{service}: no record found for {identifier}")


class SeriesNotFoundError(NotFoundError):
    def __init__(self, tvdb_id: int):
        super().__init__("Sonarr", f"tvdb:{tvdb_id}")
        self.tvdb_id = tvdb_id


class MovieNotFoundError(NotFoundError):
    def __init__(self, tmdb_id: int):
        super().__init__("Radarr", f"tmdb:{tmdb_id}")
        self.tmdb_id = tmdb_id


class MalformedQueryError(SeadexerrError):
    """A query parameter could not be parsed."""

    def __init__(self, parameter: str, value: str):
        self.parameter = parameter
        self.value = value
        super().__init__(f"invalid value for '{parameter}': {value!r}")


class CorruptStateError(SeadexerrError):
    """A persisted file could not be read, parsed or written."""

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class MappingUnavailableError(SeadexerrError):
    """No mapping snapshot has been loaded yet."""
