"""Stage transition transaction with local rollback."""

import logging
from typing import Optional

from splurge_secrets_encrypt.exceptions import (
    ConfigMissingError,
    PersistenceFailureError,
)
from splurge_secrets_encrypt.models import EncryptionConfig
from splurge_secrets_encrypt.services.config_store import EncryptionConfigStore

logger = logging.getLogger(__name__)


class RotationTransaction:
    """Guards a stage transition so a failed step restores the previous config.

    The previous config (or its absence) is captured when the transaction
    begins. Leaving the context with an exception rolls back unless the
    transaction was committed.
    """

    def __init__(self, store: EncryptionConfigStore):
        """Initialize rotation transaction.

        Args:
            store: Config store the transition writes to
        """
        self._store = store
        self._previous: Optional[EncryptionConfig] = None
        self._had_config = False
        self._is_committed = False
        self._is_rolled_back = False

    def begin(self) -> None:
        """Capture the currently persisted config."""
        try:
            self._previous = self._store.load()
            self._had_config = True
        except ConfigMissingError:
            self._previous = None
            self._had_config = False

    @property
    def previous(self) -> Optional[EncryptionConfig]:
        return self._previous

    def commit(self) -> None:
        """Commit the transaction - no rollback possible after this."""
        self._is_committed = True
        self._previous = None

    def rollback(self) -> None:
        """Restore the config captured by begin()."""
        if self._is_committed:
            raise PersistenceFailureError("Cannot rollback committed transaction")

        if self._is_rolled_back:
            return

        self._is_rolled_back = True

        try:
            if self._had_config and self._previous is not None:
                self._store.save(self._previous)
            else:
                self._store.delete()
            logger.info("Rotation transaction rolled back", extra={
                "restored_stage": self._previous.stage.value if self._previous else None,
                "event": "rotation_rolled_back"
            })
        except Exception as e:
            logger.error(f"Failed to rollback rotation transaction: {e}", extra={
                "event": "rotation_rollback_failed"
            })
            raise PersistenceFailureError(f"Rollback failed: {e}") from e

    def __enter__(self):
        """Enter transaction context."""
        self.begin()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit transaction context - rollback on exception."""
        if exc_type is not None and not self._is_committed:
            logger.warning("Exception occurred during transition, rolling back transaction")
            self.rollback()
