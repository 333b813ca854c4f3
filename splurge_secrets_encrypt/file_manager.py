"""File management utilities with atomic write-to-temp-then-rename semantics."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from splurge_secrets_encrypt.exceptions import PersistenceFailureError

logger = logging.getLogger(__name__)


class FileManager:
    """Manages file operations for a directory with atomic operations."""

    def __init__(
        self,
        data_dir: str | Path,
        *,
        secure_permissions: bool = True
    ):
        """Initialize the file manager.

        Args:
            data_dir: Directory the managed files live in
            secure_permissions: Restrict written files to owner read/write
        """
        self._data_dir = Path(data_dir)
        self._secure_permissions = secure_permissions

    def ensure_directory(self) -> None:
        """Ensure the data directory exists (owner-only when secured)."""
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
            if self._secure_permissions:
                self._set_secure_permissions(self._data_dir, 0o700)
        except OSError as e:
            raise PersistenceFailureError(f"Failed to create directory {self._data_dir}: {e}") from e

    def write_bytes_atomic(
        self,
        file_path: Path,
        data: bytes
    ) -> None:
        """Write bytes atomically using a temporary file in the same directory.

        A concurrent reader sees either the previous content or the new
        content, never a partial write.

        Args:
            file_path: Path to the target file
            data: Data to write

        Raises:
            PersistenceFailureError: If write operation fails
        """
        temp_name = None
        try:
            # Ensure parent directory exists for atomic operation
            file_path.parent.mkdir(parents=True, exist_ok=True)

            fd, temp_name = tempfile.mkstemp(
                dir=str(file_path.parent),
                prefix=f".{file_path.name}.",
                suffix=".temp",
            )
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            if self._secure_permissions:
                self._set_secure_permissions(Path(temp_name), 0o600)

            # Rename temporary file over the target file
            os.replace(temp_name, file_path)
            temp_name = None

        except OSError as e:
            raise PersistenceFailureError(f"Failed to write file {file_path}: {e}") from e
        finally:
            # Clean up temporary file if it is still around
            if temp_name is not None and os.path.exists(temp_name):
                os.unlink(temp_name)

    def write_json_atomic(
        self,
        file_path: Path,
        data: dict[str, Any]
    ) -> None:
        """Write JSON data atomically.

        Args:
            file_path: Path to the target file
            data: Data to write

        Raises:
            PersistenceFailureError: If write operation fails
        """
        payload = json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8")
        self.write_bytes_atomic(file_path, payload)

    def read_bytes(self, file_path: Path) -> Optional[bytes]:
        """Read a file's content.

        Args:
            file_path: Path to the file to read

        Returns:
            File content, or None if file doesn't exist

        Raises:
            PersistenceFailureError: If read operation fails
        """
        try:
            return file_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceFailureError(f"Failed to read file {file_path}: {e}") from e

    def delete_file(self, file_path: Path) -> None:
        """Delete a file if it exists.

        Raises:
            PersistenceFailureError: If delete operation fails
        """
        try:
            file_path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise PersistenceFailureError(f"Failed to delete file {file_path}: {e}") from e

    def list_files(self) -> list[str]:
        """List regular file names in the data directory, skipping temp files."""
        if not self._data_dir.exists():
            return []
        return [
            entry.name
            for entry in self._data_dir.iterdir()
            if entry.is_file() and not entry.name.endswith(".temp")
        ]

    def _set_secure_permissions(self, file_path: Path, mode: int) -> None:
        """Set secure file permissions (owner only).

        Args:
            file_path: Path to the file to secure
            mode: Permission bits to apply
        """
        try:
            os.chmod(file_path, mode)
        except OSError as e:
            # Some filesystems do not support POSIX modes
            logger.warning("Could not restrict permissions", extra={
                "path": str(file_path),
                "error": str(e),
                "event": "secure_permissions_failed"
            })

    @property
    def data_directory(self) -> Path:
        """Get the data directory path."""
        return self._data_dir


def _lock_handle(handle) -> None:
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        return
    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_handle(handle) -> None:
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class FileLock:
    """Exclusive, non-blocking lock on a file, held across processes.

    Every open of the lock file is a separate holder, so two lock objects
    on the same path exclude each other even inside one process.
    """

    def __init__(self, lock_path: str | Path):
        self._lock_path = Path(lock_path)
        self._handle = None

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> bool:
        """Try to take the lock without waiting.

        Returns:
            True if the lock was taken, False if another holder has it

        Raises:
            PersistenceFailureError: If the lock file cannot be opened
        """
        if self._handle is not None:
            return False
        try:
            self._lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._lock_path, os.O_RDWR | os.O_CREAT, 0o600)
            handle = os.fdopen(fd, "r+b")
        except OSError as e:
            raise PersistenceFailureError(f"Failed to open lock file {self._lock_path}: {e}") from e

        try:
            _lock_handle(handle)
        except OSError:
            handle.close()
            return False

        self._handle = handle
        return True

    def release(self) -> None:
        """Release the lock if held."""
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            _unlock_handle(handle)
        finally:
            handle.close()
