"""
Out-of-line bookmark storage ("server mode").

A stored record maps a short random identifier to a bookmark token. Records are
written once and never updated, so readers need no coordination with writers.
"""

import datetime
import json
import logging
import os
import re
import secrets
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, TypeVar, Union

from statemark.errors import NotFoundError, StorageError
from statemark.util import CONFIG, MAX_ID_BYTES, MIN_ID_BYTES

logger = logging.getLogger(__name__)

T = TypeVar("T")

# identifiers we hand out are lowercase hex; anything else is foreign
_ID_PATTERN = re.compile(rf"^[0-9a-f]{{{2 * MIN_ID_BYTES},{2 * MAX_ID_BYTES}}}$")

RECORD_FILE = "record.json"


@dataclass(frozen=True)
class StoredRecord:
    id: str
    token: str
    created: datetime.datetime

    def for_json(self) -> dict:
        return {"token": self.token, "created": self.created.isoformat()}


def new_id(nbytes: Optional[int] = None) -> str:
    return secrets.token_hex(nbytes or CONFIG["id_bytes"])


def valid_id(id: str) -> bool:
    return isinstance(id, str) and bool(_ID_PATTERN.match(id))


class BookmarkStore:
    """Interface for server-side bookmark storage."""

    def store(self, token: str) -> str:
        """Persist `token` under a fresh identifier and return the identifier."""
        raise NotImplementedError("Subclasses must implement store method")

    def record(self, id: str) -> StoredRecord:
        raise NotImplementedError("Subclasses must implement record method")

    def resolve(self, id: str) -> str:
        """
        Look up the token stored under `id`.

        Raises:
            NotFoundError: if no record exists (evicted, corrupted or foreign id).
        """
        return self.record(id).token


class MemoryBookmarkStore(BookmarkStore):
    """Thread-safe, process-local store. Useful for tests and single-process servers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, StoredRecord] = {}

    def store(self, token: str) -> str:
        created = datetime.datetime.now(datetime.timezone.utc)
        with self._lock:
            id = new_id()
            while id in self._records:
                id = new_id()
            self._records[id] = StoredRecord(id, token, created)
        logger.debug("Stored bookmark %s in memory", id)
        return id

    def record(self, id: str) -> StoredRecord:
        with self._lock:
            record = self._records.get(id) if valid_id(id) else None
        if record is None:
            raise NotFoundError(f"No bookmark stored under {id!r}")
        return record

    def __len__(self) -> int:
        return len(self._records)


class FileBookmarkStore(BookmarkStore):
    """
    Stores each bookmark as `<directory>/<id>/record.json`.

    Identifier uniqueness across threads and processes comes from creating the
    record directory exclusively. The record file is written to a temporary file
    and renamed into place, so concurrent readers see either nothing or the
    complete record. Every filesystem call is bounded by `timeout` seconds.
    """

    def __init__(
        self,
        directory: Union[str, os.PathLike, None] = None,
        timeout: Optional[float] = None,
        max_workers: int = 4,
    ):
        self.directory = Path(directory or CONFIG["store_dir"])
        self.timeout = CONFIG["store_timeout"] if timeout is None else timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="statemark-store"
        )

    def _bounded(self, fn: Callable[..., T], *args) -> T:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise StorageError(
                f"Bookmark storage timed out after {self.timeout}s"
            ) from e

    def record_dir(self, id: str) -> Path:
        return self.directory / id

    def _write(self, token: str) -> str:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            while True:
                id = new_id()
                try:
                    self.record_dir(id).mkdir()
                    break
                except FileExistsError:
                    continue
            record = StoredRecord(
                id, token, datetime.datetime.now(datetime.timezone.utc)
            )
            fd, tmp_path = tempfile.mkstemp(dir=self.record_dir(id), suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(record.for_json(), f)
                os.replace(tmp_path, self.record_dir(id) / RECORD_FILE)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StorageError(f"Could not store bookmark: {e}") from e
        return id

    def _read(self, id: str) -> StoredRecord:
        path = self.record_dir(id) / RECORD_FILE
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except FileNotFoundError as e:
            raise NotFoundError(f"No bookmark stored under {id!r}") from e
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise NotFoundError(f"Bookmark {id!r} is corrupted") from e
        except OSError as e:
            raise StorageError(f"Could not read bookmark {id!r}: {e}") from e
        try:
            return StoredRecord(
                id,
                payload["token"],
                datetime.datetime.fromisoformat(payload["created"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise NotFoundError(f"Bookmark {id!r} is corrupted") from e

    def store(self, token: str) -> str:
        id = self._bounded(self._write, token)
        logger.debug("Stored bookmark %s under %s", id, self.directory)
        return id

    def record(self, id: str) -> StoredRecord:
        if not valid_id(id):
            raise NotFoundError(f"No bookmark stored under {id!r}")
        return self._bounded(self._read, id)

    def close(self) -> None:
        self._executor.shutdown(wait=False)


def make_store(
    mode: Union[str, BookmarkStore, None] = None,
) -> Optional[BookmarkStore]:
    """
    Returns the store backing a bookmarking mode: None for "url" and "disable",
    a FileBookmarkStore on CONFIG["store_dir"] for "server". A BookmarkStore
    instance is returned unchanged.
    """
    mode = CONFIG["bookmark_store"] if mode is None else mode
    if isinstance(mode, BookmarkStore):
        return mode
    if mode in ("url", "disable"):
        return None
    if mode == "server":
        return FileBookmarkStore()
    raise ValueError(
        f"bookmark store must be 'url', 'server', 'disable' or a BookmarkStore, got {mode!r}"
    )
