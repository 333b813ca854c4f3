"""Rotation controller that validates and executes stage transitions."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Iterable, Optional

from splurge_secrets_encrypt.config import DEFAULT_CONFIG, SecretsEncryptConfig
from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.crypto_utils import CryptoUtils
from splurge_secrets_encrypt.exceptions import (
    IllegalTransitionError,
    PersistenceFailureError,
)
from splurge_secrets_encrypt.file_manager import FileLock
from splurge_secrets_encrypt.models import EncryptionConfig, Key, Stage
from splurge_secrets_encrypt.services.config_store import EncryptionConfigStore
from splurge_secrets_encrypt.services.datastore import Datastore
from splurge_secrets_encrypt.services.marker_service import GenerationMarkerService
from splurge_secrets_encrypt.services.rotation.reencrypt import (
    ReencryptionEngine,
    ReencryptionResult,
)
from splurge_secrets_encrypt.services.rotation.transaction import RotationTransaction

logger = logging.getLogger(__name__)

_PREPARE_FROM = (Stage.START, Stage.REENCRYPT_FINISHED)
_ROTATE_FROM = (Stage.PREPARE,)
_REENCRYPT_FROM = (Stage.ROTATE, Stage.REENCRYPT_ACTIVE)
_TOGGLE_FROM = (Stage.REENCRYPT_FINISHED,)


class RotationController:
    """Validates and executes stage transitions for one node.

    Every transition loads the local config, checks the transition is legal,
    saves the new config locally and publishes it as the next generation
    marker. A failed publish restores the previous local config. Transitions
    and re-encryption passes on the same node are mutually exclusive; a
    request made while another is running is rejected.
    """

    def __init__(
        self,
        store: EncryptionConfigStore,
        datastore: Datastore,
        node_id: str,
        *,
        config: SecretsEncryptConfig = DEFAULT_CONFIG,
        engine: Optional[ReencryptionEngine] = None
    ):
        """Initialize the rotation controller.

        Args:
            store: This node's config store
            datastore: Shared datastore
            node_id: Name of this node
            config: Subsystem settings
            engine: Re-encryption engine (built from config if omitted)
        """
        self._store = store
        self._datastore = datastore
        self._node_id = node_id
        self._config = config
        self._markers = GenerationMarkerService(datastore)
        self._engine = engine or ReencryptionEngine(
            resource_prefixes=config.resource_prefixes,
            page_size=config.page_size,
            progress_interval=config.progress_interval,
        )
        self._lock = threading.Lock()
        # Serializes transitions across processes sharing this data directory
        self._file_lock = FileLock(store.config_path.parent / Constants.LOCK_FILE_NAME())
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="reencrypt")

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def engine(self) -> ReencryptionEngine:
        return self._engine

    @property
    def busy(self) -> bool:
        """True while a transition or re-encryption pass holds this node."""
        return self._lock.locked()

    def current_config(self) -> EncryptionConfig:
        """Load this node's persisted config.

        Raises:
            ConfigMissingError: If encryption was never bootstrapped
            ConfigCorruptError: If the config file cannot be parsed
        """
        return self._store.load()

    def shutdown(self, wait: bool = True, *, cancel_pass: bool = False) -> None:
        """Stop the background worker.

        Args:
            wait: Block until a running pass has ended
            cancel_pass: Ask a running pass to stop after its current record
        """
        if cancel_pass and self.busy:
            logger.info("Cancelling re-encryption pass for shutdown", extra={
                "node_id": self._node_id,
                "event": "reencryption_cancel_requested"
            })
            self._engine.cancel()
        self._executor.shutdown(wait=wait)

    @contextmanager
    def exclusive(self, operation: str):
        """Hold this node's transition lock, or fail if it is already held.

        Raises:
            IllegalTransitionError: If a transition or pass is in progress
        """
        self._acquire(operation)
        try:
            yield
        finally:
            self._release()

    def _acquire(self, operation: str) -> None:
        if not self._lock.acquire(blocking=False):
            raise IllegalTransitionError(
                f"Cannot {operation}: another transition or re-encryption pass is in progress on {self._node_id}"
            )
        try:
            taken = self._file_lock.acquire()
        except Exception:
            self._lock.release()
            raise
        if not taken:
            self._lock.release()
            raise IllegalTransitionError(
                f"Cannot {operation}: another transition or re-encryption pass is in progress on {self._node_id} "
                f"(lock {self._file_lock.lock_path} is held by another process)"
            )

    def _release(self) -> None:
        try:
            self._file_lock.release()
        finally:
            self._lock.release()

    @staticmethod
    def _check_stage(
        operation: str,
        config: EncryptionConfig,
        allowed: Iterable[Stage],
        force: bool = False
    ) -> None:
        allowed = tuple(allowed)
        if config.stage in allowed:
            return
        if force:
            logger.warning(f"Forcing {operation} from stage {config.stage.value}", extra={
                "operation": operation,
                "stage": config.stage.value,
                "event": "transition_forced"
            })
            return
        expected = " or ".join(stage.value for stage in allowed)
        raise IllegalTransitionError(
            f"Cannot {operation} from stage {config.stage.value}; expected {expected}"
        )

    def _apply(self, config: EncryptionConfig, operation: str) -> EncryptionConfig:
        """Save config locally, then publish it; restore the old file if publishing fails."""
        with RotationTransaction(self._store) as transaction:
            self._store.save(config)
            self._markers.publish_marker(config, self._node_id)
            transaction.commit()

        try:
            self._markers.publish_node_state(self._node_id, config)
        except PersistenceFailureError as e:
            # The transition stands; the next reload republishes node state
            logger.warning(f"Could not publish node state: {e}", extra={
                "node_id": self._node_id,
                "event": "node_state_publish_failed"
            })

        logger.info(f"Secrets encryption {operation} complete", extra={
            "operation": operation,
            "stage": config.stage.value,
            "enabled": config.enabled,
            "primary_key": config.primary.name,
            "node_id": self._node_id,
            "event": "transition_applied"
        })
        return config

    def bootstrap(self) -> EncryptionConfig:
        """Create the first config with one generated primary key.

        Returns:
            The new config at stage start

        Raises:
            IllegalTransitionError: If a config already exists on this node
            PersistenceFailureError: If the config cannot be saved or published
        """
        with self.exclusive("bootstrap"):
            if self._store.exists():
                raise IllegalTransitionError(
                    f"Encryption config {self._store.config_path} already exists"
                )
            key = CryptoUtils.generate_key(self._config.provider)
            keys = arrange_keys([key], enabled=True)
            return self._apply(EncryptionConfig(keys=keys, stage=Stage.START), "bootstrap")

    def prepare(self, *, force: bool = False) -> EncryptionConfig:
        """Add a freshly generated key as the second real key.

        The primary key is unchanged, so every node can decrypt with the new
        key before any node writes with it.

        Raises:
            IllegalTransitionError: If not at start or reencrypt_finished (unless forced)
        """
        with self.exclusive("prepare"):
            return self._prepare(self._store.load(), force)

    def _prepare(self, current: EncryptionConfig, force: bool) -> EncryptionConfig:
        self._check_stage("prepare", current, _PREPARE_FROM, force)
        new_key = CryptoUtils.generate_key(
            self._config.provider,
            existing_names=[key.name for key in current.keys]
        )
        real_keys = current.real_keys()
        real_keys.insert(1, new_key)
        keys = arrange_keys(real_keys, enabled=current.enabled)
        return self._apply(EncryptionConfig(keys=keys, stage=Stage.PREPARE), "prepare")

    def rotate(self, *, force: bool = False) -> EncryptionConfig:
        """Promote the second real key to primary.

        Raises:
            IllegalTransitionError: If not at prepare (unless forced) or fewer than two keys
        """
        with self.exclusive("rotate"):
            return self._rotate(self._store.load(), force)

    def _rotate(self, current: EncryptionConfig, force: bool) -> EncryptionConfig:
        self._check_stage("rotate", current, _ROTATE_FROM, force)
        real_keys = current.real_keys()
        if len(real_keys) < 2:
            raise IllegalTransitionError("Cannot rotate: config holds fewer than two keys")
        keys = arrange_keys([real_keys[1], real_keys[0]] + real_keys[2:], enabled=current.enabled)
        return self._apply(EncryptionConfig(keys=keys, stage=Stage.ROTATE), "rotate")

    def reencrypt(
        self,
        *,
        force: bool = False,
        skip: bool = False,
        wait: bool = True
    ) -> Optional[ReencryptionResult] | Future:
        """Rewrite every record under the primary key, then drop legacy keys.

        Args:
            force: Run regardless of the current stage
            skip: Mark re-encryption finished without rewriting records or dropping keys
            wait: Run the pass in the caller; otherwise return a Future

        Returns:
            ReencryptionResult (None when skipped), or a Future for it when wait is False

        Raises:
            IllegalTransitionError: If not at rotate or reencrypt_active (unless forced)
            ReencryptionFailureError: If a record cannot be rewritten (stage stays reencrypt_active)
        """
        self._acquire("reencrypt")

        handed_off = False
        try:
            current = self._store.load()
            self._check_stage("reencrypt", current, _REENCRYPT_FROM, force)

            if skip:
                self._apply(current_with_stage(current, Stage.REENCRYPT_FINISHED), "reencrypt (skipped)")
                if wait:
                    return None
                future: Future = Future()
                future.set_result(None)
                return future

            active = self._apply(current_with_stage(current, Stage.REENCRYPT_ACTIVE), "reencrypt start")
            if wait:
                return self._run_pass(active)

            future = self._executor.submit(self._run_pass_and_release, active)
            handed_off = True
            return future
        finally:
            if not handed_off:
                self._release()

    def _run_pass_and_release(self, active: EncryptionConfig) -> ReencryptionResult:
        try:
            return self._run_pass(active)
        except Exception as e:
            logger.error(f"Background re-encryption failed: {e}", extra={
                "node_id": self._node_id,
                "event": "reencryption_background_failed"
            })
            raise
        finally:
            self._release()

    def _run_pass(self, active: EncryptionConfig) -> ReencryptionResult:
        # Stage stays reencrypt_active on failure so the pass can be resumed
        result = self._engine.run(self._datastore, active)
        finished = EncryptionConfig(keys=retained_keys(active), stage=Stage.REENCRYPT_FINISHED)
        dropped = [key.name for key in active.keys if not finished.has_key(key.name)]
        self._apply(finished, "reencrypt")
        if dropped:
            logger.info("Removed legacy keys", extra={
                "keys": dropped,
                "event": "legacy_keys_removed"
            })
        return result

    def rotate_keys(self) -> ReencryptionResult:
        """Prepare, rotate and re-encrypt in one call.

        Each intermediate stage is saved and published before the next.

        Raises:
            IllegalTransitionError: If not at start or reencrypt_finished
            ReencryptionFailureError: If the re-encryption pass fails
        """
        with self.exclusive("rotate keys"):
            current = self._store.load()
            self._check_stage("rotate keys", current, _PREPARE_FROM)
            prepared = self._prepare(current, force=False)
            rotated = self._rotate(prepared, force=False)
            active = self._apply(current_with_stage(rotated, Stage.REENCRYPT_ACTIVE), "reencrypt start")
            return self._run_pass(active)

    def disable(self) -> EncryptionConfig:
        """Make the identity key primary so new writes are stored unencrypted.

        Real keys are kept so existing records stay readable. Disabling an
        already disabled config changes nothing.

        Raises:
            IllegalTransitionError: If not at reencrypt_finished
        """
        with self.exclusive("disable"):
            current = self._store.load()
            self._check_stage("disable", current, _TOGGLE_FROM)
            if not current.enabled:
                logger.info("Secrets encryption already disabled", extra={
                    "node_id": self._node_id,
                    "event": "encryption_already_disabled"
                })
                return current

            keys = arrange_keys(current.real_keys(), enabled=False)
            return self._apply(EncryptionConfig(keys=keys, stage=current.stage), "disable")

    def enable(self) -> EncryptionConfig:
        """Make the first real key primary again, keeping identity as the last key.

        Raises:
            IllegalTransitionError: If not at reencrypt_finished or no real key exists
        """
        with self.exclusive("enable"):
            current = self._store.load()
            self._check_stage("enable", current, _TOGGLE_FROM)
            if current.enabled:
                logger.info("Secrets encryption already enabled", extra={
                    "node_id": self._node_id,
                    "event": "encryption_already_enabled"
                })
                return current

            real_keys = current.real_keys()
            if not real_keys:
                raise IllegalTransitionError("Cannot enable secrets encryption: no keys found")

            keys = arrange_keys(real_keys, enabled=True)
            return self._apply(EncryptionConfig(keys=keys, stage=current.stage), "enable")


def current_with_stage(config: EncryptionConfig, stage: Stage) -> EncryptionConfig:
    """Return a copy of config at a new stage with the same keys."""
    return EncryptionConfig(keys=list(config.keys), stage=stage)


def arrange_keys(real_keys: list[Key], *, enabled: bool) -> list[Key]:
    """Place the identity key around the real keys.

    Enabled configs keep identity last so records stored before encryption
    was turned on stay readable. Disabled configs put identity first so new
    writes are stored unencrypted.
    """
    if enabled:
        return list(real_keys) + [Key.identity()]
    return [Key.identity()] + list(real_keys)


def retained_keys(config: EncryptionConfig) -> list[Key]:
    """Keys kept once every record is stored under the primary key.

    Only the primary and the identity fallback are needed. When the primary
    is the identity key, the first real key is kept too so encryption can
    be re-enabled.
    """
    return arrange_keys(config.real_keys()[:1], enabled=config.enabled)
