"""Shared key-value datastore interface and implementations.

The clustered store itself is an external collaborator; this module only
defines the operations the encryption subsystem needs from it, plus an
in-memory store and a directory-backed store.
"""

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import quote, unquote

from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.file_manager import FileManager


class Datastore(ABC):
    """Key-value store shared by every control-plane node.

    Writes are atomic per record.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the value stored under key, or None."""

    @abstractmethod
    def put(self, key: str, value: bytes) -> None:
        """Store value under key, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key if present."""

    @abstractmethod
    def list(
        self,
        prefix: str,
        *,
        start_after: Optional[str] = None,
        limit: int = Constants.LIST_PAGE_SIZE()
    ) -> list[tuple[str, bytes]]:
        """Return up to limit records under prefix, ordered by key.

        Args:
            prefix: Key prefix to list
            start_after: Only return keys sorting after this one
            limit: Maximum number of records to return
        """

    def compare_and_put(
        self,
        key: str,
        expected: Optional[bytes],
        value: bytes
    ) -> bool:
        """Store value only if key still holds expected (None: key must be absent).

        Returns:
            True if the value was written, False on a conflicting update
        """
        current = self.get(key)
        if current != expected:
            return False
        self.put(key, value)
        return True

    def iter_prefix(
        self,
        prefix: str,
        *,
        page_size: int = Constants.LIST_PAGE_SIZE()
    ) -> Iterator[tuple[str, bytes]]:
        """Stream every record under prefix one page at a time."""
        start_after = None
        while True:
            page = self.list(prefix, start_after=start_after, limit=page_size)
            if not page:
                return
            yield from page
            if len(page) < page_size:
                return
            start_after = page[-1][0]


class MemoryDatastore(Datastore):
    """Thread-safe in-process datastore."""

    def __init__(self) -> None:
        self._records: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._records.get(key)

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._records[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def compare_and_put(
        self,
        key: str,
        expected: Optional[bytes],
        value: bytes
    ) -> bool:
        with self._lock:
            if self._records.get(key) != expected:
                return False
            self._records[key] = bytes(value)
            return True

    def list(
        self,
        prefix: str,
        *,
        start_after: Optional[str] = None,
        limit: int = Constants.LIST_PAGE_SIZE()
    ) -> list[tuple[str, bytes]]:
        with self._lock:
            keys = sorted(
                key for key in self._records
                if key.startswith(prefix) and (start_after is None or key > start_after)
            )
            return [(key, self._records[key]) for key in keys[:limit]]

    def snapshot(self) -> dict[str, bytes]:
        """Return a copy of every record (used by tests and diagnostics)."""
        with self._lock:
            return dict(self._records)


class FileDatastore(Datastore):
    """Datastore keeping one file per record in a shared directory."""

    def __init__(
        self,
        data_dir: str | Path,
        *,
        secure_permissions: bool = True
    ):
        """Initialize the file datastore.

        Args:
            data_dir: Directory holding the record files
            secure_permissions: Restrict record files to owner read/write
        """
        self._file_manager = FileManager(data_dir, secure_permissions=secure_permissions)
        self._file_manager.ensure_directory()
        self._lock = threading.Lock()

    @property
    def data_directory(self) -> Path:
        return self._file_manager.data_directory

    def _path_for(self, key: str) -> Path:
        return self._file_manager.data_directory / (quote(key, safe="") + ".record")

    @staticmethod
    def _key_for(file_name: str) -> Optional[str]:
        if not file_name.endswith(".record"):
            return None
        return unquote(file_name[:-len(".record")])

    def get(self, key: str) -> Optional[bytes]:
        return self._file_manager.read_bytes(self._path_for(key))

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._file_manager.write_bytes_atomic(self._path_for(key), value)

    def compare_and_put(
        self,
        key: str,
        expected: Optional[bytes],
        value: bytes
    ) -> bool:
        # Atomic against writers in this process only
        with self._lock:
            if self.get(key) != expected:
                return False
            self._file_manager.write_bytes_atomic(self._path_for(key), value)
            return True

    def delete(self, key: str) -> None:
        self._file_manager.delete_file(self._path_for(key))

    def list(
        self,
        prefix: str,
        *,
        start_after: Optional[str] = None,
        limit: int = Constants.LIST_PAGE_SIZE()
    ) -> list[tuple[str, bytes]]:
        keys = []
        for file_name in self._file_manager.list_files():
            key = self._key_for(file_name)
            if key is None or not key.startswith(prefix):
                continue
            if start_after is not None and key <= start_after:
                continue
            keys.append(key)

        records = []
        for key in sorted(keys):
            if len(records) >= limit:
                break
            value = self.get(key)
            # Deleted between listing and reading
            if value is not None:
                records.append((key, value))
        return records
