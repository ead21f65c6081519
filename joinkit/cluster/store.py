"""Keyed JSON record stores with per-key locking.

Both stores expose the same small surface: ``read``, ``write``, ``delete``,
``keys`` and a ``lock(key)`` context manager. Callers that need a
read-modify-write step hold ``lock(key)`` around it; operations on different
keys never contend for the same lock.
"""

from __future__ import annotations

import copy
import fcntl
import json
import os
import re
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TextIO

from ..errors import JoinkitError

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_key(key: str) -> str:
    if not _KEY_PATTERN.match(key) or ".." in key:
        raise ValueError(f"invalid record key: {key!r}")
    return key


class _KeyLocks:
    """Lazily created ``threading.Lock`` per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


class MemoryStore:
    """Process-local store used by tests and embedded coordinators."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._records_guard = threading.Lock()
        self._locks = _KeyLocks()

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._locks.get(validate_key(key)):
            yield

    def read(self, key: str) -> dict[str, Any] | None:
        with self._records_guard:
            record = self._records.get(validate_key(key))
            return copy.deepcopy(record) if record is not None else None

    def write(self, key: str, data: dict[str, Any]) -> None:
        with self._records_guard:
            self._records[validate_key(key)] = copy.deepcopy(data)

    def delete(self, key: str) -> bool:
        with self._records_guard:
            return self._records.pop(validate_key(key), None) is not None

    def keys(self) -> list[str]:
        with self._records_guard:
            return sorted(self._records)


def _open_locked(path: Path) -> TextIO:
    """Open ``path`` and take an exclusive ``flock`` on it.

    ``DirectoryStore.delete`` unlinks lock files, so a waiter that wakes up
    holding an unlinked file retries on the file now at ``path``.
    """

    while True:
        handle = open(path, "a", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            if os.path.samestat(os.fstat(handle.fileno()), os.stat(path)):
                return handle
        except FileNotFoundError:
            pass
        except BaseException:
            handle.close()
            raise
        handle.close()


class DirectoryStore:
    """One JSON file per key under ``root``.

    Locking combines a per-key ``threading.Lock`` with ``fcntl.flock`` on a
    sibling ``<key>.lock`` file so the CLI and a running discovery server can
    share the same directory. Writes go through a temporary file and
    ``os.replace``.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._locks = _KeyLocks()

    def _ensure_root(self) -> None:
        self.root.mkdir(mode=0o700, parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / f"{validate_key(key)}.json"

    def _lock_path(self, key: str) -> Path:
        return self.root / f"{validate_key(key)}.lock"

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        self._ensure_root()
        lock_path = self._lock_path(key)
        with self._locks.get(key):
            handle = _open_locked(lock_path)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                handle.close()

    def read(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise JoinkitError(f"Corrupt record {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise JoinkitError(f"Corrupt record {path}: expected a JSON object")
        return data

    def write(self, key: str, data: dict[str, Any]) -> None:
        self._ensure_root()
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self.root)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def delete(self, key: str) -> bool:
        """Remove the record and its lock file.

        Callers hold ``lock(key)`` and make this the last step under it.
        """

        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        finally:
            self._lock_path(key).unlink(missing_ok=True)
        return True

    def keys(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            path.stem for path in self.root.glob("*.json") if not path.name.startswith(".")
        )


__all__ = ["DirectoryStore", "MemoryStore", "validate_key"]
