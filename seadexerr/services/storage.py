"""Crash-safe file persistence and the persisted id -> title caches."""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional

from seadexerr.errors import CorruptStateError

logger = logging.getLogger(__name__)


def write_atomic(path: Path, data: bytes):
    """
    Write ``data`` to ``path`` without ever exposing a partially written file.

    The payload goes to a temporary file in the same directory, is flushed to
    disk and then renamed over the target. ``os.replace`` overwrites an
    existing target on every platform.

    Raises:
        CorruptStateError: If the directory cannot be created or the write fails
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
    except OSError as e:
        raise CorruptStateError(path, f"failed to prepare write: {e}") from e

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise CorruptStateError(path, f"failed to write file: {e}") from e


class TitleCache:
    """Persisted mapping of external id to display title.

    The in-memory map is guarded by a lock that is held only while the map is
    read or mutated. Writes to the file are serialised by a second lock held
    across copying the map and replacing the file, so the last write always
    reflects the latest map. Every mutation rewrites the whole file.
    """

    def __init__(self, path: Path, label: str = "title"):
        self.path = path
        self.label = label
        self._titles: Dict[int, str] = {}
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()

    def load(self):
        """
        Load cached titles from disk. A missing or empty file is an empty cache.

        Raises:
            CorruptStateError: If the file cannot be read or is not a flat
                object of integer keys to string titles
        """
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            logger.info(f"No {self.label} cache at {self.path}, starting empty")
            return
        except OSError as e:
            raise CorruptStateError(self.path, f"failed to read cache: {e}") from e

        titles: Dict[int, str] = {}
        if raw.strip():
            try:
                data = json.loads(raw)
            except ValueError as e:
                raise CorruptStateError(self.path, f"invalid JSON: {e}") from e
            if not isinstance(data, dict):
                raise CorruptStateError(self.path, "expected a JSON object")
            for key, title in data.items():
                try:
                    external_id = int(key)
                except ValueError:
                    raise CorruptStateError(self.path, f"non-numeric id {key!r}")
                if not isinstance(title, str):
                    raise CorruptStateError(self.path, f"non-string title for {key}")
                titles[external_id] = title

        with self._lock:
            self._titles = titles
        logger.info(f"Loaded {len(titles)} cached {self.label}s from {self.path}")

    def get(self, external_id: int) -> Optional[str]:
        with self._lock:
            return self._titles.get(external_id)

    def store(self, external_id: int, title: str):
        """Insert a title and write the cache through to disk."""
        with self._lock:
            self._titles[external_id] = title
        self._persist()

    def retain(self, keep_ids: Iterable[int]) -> bool:
        """
        Drop every cached id not in ``keep_ids``. An empty ``keep_ids`` clears
        the cache.

        Returns:
            True if anything was removed (and the file rewritten)
        """
        keep = set(keep_ids)
        with self._lock:
            before = len(self._titles)
            if keep:
                self._titles = {
                    external_id: title
                    for external_id, title in self._titles.items()
                    if external_id in keep
                }
            else:
                self._titles = {}
            removed = before - len(self._titles)

        if not removed:
            return False

        logger.debug(f"Evicted {removed} {self.label}s from cache")
        self._persist()
        return True

    def snapshot(self) -> Dict[int, str]:
        with self._lock:
            return dict(self._titles)

    def __len__(self) -> int:
        with self._lock:
            return len(self._titles)

    def __contains__(self, external_id: int) -> bool:
        with self._lock:
            return external_id in self._titles

    def _persist(self):
        with self._persist_lock:
            data = {str(k): v for k, v in sorted(self.snapshot().items())}
            payload = json.dumps(data, ensure_ascii=False, indent=2).encode("utf-8")
            write_atomic(self.path, payload)
