"""Local per-node encryption config file store."""

import json
import logging
from pathlib import Path

from splurge_secrets_encrypt.exceptions import (
    ConfigCorruptError,
    ConfigMissingError,
)
from splurge_secrets_encrypt.file_manager import FileManager
from splurge_secrets_encrypt.models import EncryptionConfig

logger = logging.getLogger(__name__)


class EncryptionConfigStore:
    """Sole owner of a node's encryption config file.

    The file holds raw key material, so it is written with owner-only
    permissions and replaced atomically on every save.
    """

    def __init__(
        self,
        config_path: str | Path,
        *,
        secure_permissions: bool = True
    ):
        """Initialize the config store.

        Args:
            config_path: Path of the encryption config file
            secure_permissions: Restrict the file to owner read/write
        """
        self._config_path = Path(config_path)
        self._file_manager = FileManager(
            self._config_path.parent,
            secure_permissions=secure_permissions
        )

    @property
    def config_path(self) -> Path:
        """Get the config file path."""
        return self._config_path

    def exists(self) -> bool:
        """Check whether encryption was ever bootstrapped on this node."""
        return self._config_path.exists()

    def load(self) -> EncryptionConfig:
        """Load the encryption config.

        Returns:
            The persisted EncryptionConfig

        Raises:
            ConfigMissingError: If the config file does not exist
            ConfigCorruptError: If the config file cannot be parsed
            PersistenceFailureError: If the file cannot be read
        """
        raw = self._file_manager.read_bytes(self._config_path)
        if raw is None:
            raise ConfigMissingError(
                f"Encryption config {self._config_path} not found; encryption was never bootstrapped"
            )

        try:
            data = json.loads(raw.decode("utf-8"))
            return EncryptionConfig.from_dict(data)
        except (UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error("Encryption config is corrupt", extra={
                "path": str(self._config_path),
                "error": str(e),
                "event": "encryption_config_corrupt"
            })
            raise ConfigCorruptError(f"Failed to parse encryption config {self._config_path}: {e}") from e

    def save(self, config: EncryptionConfig) -> None:
        """Save the encryption config atomically.

        Args:
            config: Config to persist

        Raises:
            PersistenceFailureError: If save operation fails
        """
        self._file_manager.ensure_directory()
        self._file_manager.write_json_atomic(self._config_path, config.to_dict())
        logger.debug("Encryption config saved", extra={
            "path": str(self._config_path),
            "stage": config.stage.value,
            "event": "encryption_config_saved"
        })

    def delete(self) -> None:
        """Remove the config file, returning the node to the never-bootstrapped state.

        Raises:
            PersistenceFailureError: If delete operation fails
        """
        self._file_manager.delete_file(self._config_path)

    def hash(self) -> str:
        """Hash of the persisted config's canonical serialization.

        Raises:
            ConfigMissingError: If the config file does not exist
            ConfigCorruptError: If the config file cannot be parsed
        """
        return self.load().hash()
