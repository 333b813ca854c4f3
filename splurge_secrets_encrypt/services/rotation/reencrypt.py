"""Bulk re-encryption of stored records under the primary key."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.crypto_utils import CryptoUtils
from splurge_secrets_encrypt.exceptions import (
    EncryptionError,
    ReencryptionAbortedError,
    ReencryptionFailureError,
)
from splurge_secrets_encrypt.models import EncryptionConfig
from splurge_secrets_encrypt.services.datastore import Datastore

logger = logging.getLogger(__name__)


@dataclass
class ReencryptionResult:
    """Outcome of a completed re-encryption pass."""

    total: int = 0
    rewritten: int = 0
    already_current: int = 0  # already stored under the primary key
    conflicts: int = 0  # updated concurrently by a regular writer
    keys_used: dict[str, int] = field(default_factory=dict)


class ReencryptionEngine:
    """Streams every encrypted record and rewrites it with the primary key.

    A pass is resumable: records already stored under the primary key are
    left untouched, so re-running an interrupted pass only rewrites the
    remainder. Any record that no configured key can decrypt aborts the
    whole pass.
    """

    def __init__(
        self,
        *,
        resource_prefixes: Iterable[str] = (Constants.SECRETS_RESOURCE_PREFIX(),),
        page_size: int = Constants.LIST_PAGE_SIZE(),
        progress_interval: int = Constants.PROGRESS_INTERVAL(),
        stop_event: Optional[threading.Event] = None
    ):
        """Initialize the engine.

        Args:
            resource_prefixes: Datastore key prefixes holding encrypted records
            page_size: Records fetched per list call
            progress_interval: Log progress every this many records
            stop_event: Set to abort a running pass between records
        """
        self._resource_prefixes = tuple(resource_prefixes)
        self._page_size = page_size
        self._progress_interval = progress_interval
        self._stop_event = stop_event or threading.Event()

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def cancel(self) -> None:
        """Request that the running pass stop after the current record.

        With no pass running, the next pass stops before its first record.
        The request is cleared once that pass ends, so a later run resumes.
        """
        self._stop_event.set()

    def run(
        self,
        datastore: Datastore,
        config: EncryptionConfig
    ) -> ReencryptionResult:
        """Rewrite every record under the config's primary key.

        Args:
            datastore: Shared datastore holding the records
            config: Config whose primary key becomes the only key in use

        Returns:
            ReencryptionResult with per-pass counts

        Raises:
            ReencryptionFailureError: If any record cannot be decrypted or rewritten
            ReencryptionAbortedError: If the pass was cancelled
        """
        try:
            return self._run(datastore, config)
        finally:
            # A cancellation applies to one pass only
            self._stop_event.clear()

    def _run(
        self,
        datastore: Datastore,
        config: EncryptionConfig
    ) -> ReencryptionResult:
        result = ReencryptionResult()
        primary = config.primary

        logger.info("Re-encryption pass started", extra={
            "primary_key": primary.name,
            "legacy_keys": [key.name for key in config.legacy_keys],
            "event": "reencryption_started"
        })

        for prefix in self._resource_prefixes:
            try:
                for record_key, stored in datastore.iter_prefix(prefix, page_size=self._page_size):
                    if self._stop_event.is_set():
                        raise ReencryptionAbortedError(
                            f"Re-encryption cancelled after {result.total} records"
                        )
                    self._reencrypt_record(datastore, config, record_key, stored, result)
                    result.total += 1
                    if result.total % self._progress_interval == 0:
                        logger.info(f"Re-encrypted {result.total} records", extra={
                            "records": result.total,
                            "event": "reencryption_progress"
                        })
            except ReencryptionFailureError:
                logger.error("Re-encryption pass failed", extra={
                    "records": result.total,
                    "event": "reencryption_failed"
                })
                raise
            except Exception as e:
                logger.error("Re-encryption pass failed", extra={
                    "records": result.total,
                    "error": str(e),
                    "event": "reencryption_failed"
                })
                raise ReencryptionFailureError(f"Failed to list records under {prefix}: {e}") from e

        logger.info(f"Re-encrypted {result.total} records", extra={
            "records": result.total,
            "rewritten": result.rewritten,
            "already_current": result.already_current,
            "conflicts": result.conflicts,
            "event": "reencryption_completed"
        })
        return result

    def _reencrypt_record(
        self,
        datastore: Datastore,
        config: EncryptionConfig,
        record_key: str,
        stored: bytes,
        result: ReencryptionResult
    ) -> None:
        context = record_key.encode("utf-8")
        try:
            plaintext, used_key = CryptoUtils.decrypt_record(config.keys, stored, context=context)
        except EncryptionError as e:
            raise ReencryptionFailureError(f"Record {record_key} could not be decrypted: {e}") from e

        result.keys_used[used_key.name] = result.keys_used.get(used_key.name, 0) + 1
        if used_key == config.primary:
            result.already_current += 1
            return

        try:
            rewritten = CryptoUtils.encrypt_record(config.primary, plaintext, context=context)
            written = datastore.compare_and_put(record_key, stored, rewritten)
        except Exception as e:
            raise ReencryptionFailureError(f"Record {record_key} could not be rewritten: {e}") from e

        if written:
            result.rewritten += 1
        else:
            # A regular writer replaced it; regular writes always use the primary key
            result.conflicts += 1
            logger.debug("Record changed during re-encryption", extra={
                "record": record_key,
                "event": "reencryption_conflict"
            })
