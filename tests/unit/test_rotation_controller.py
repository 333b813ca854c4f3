"""Unit tests for the RotationController."""

import tempfile
import threading
from concurrent.futures import Future
from pathlib import Path
from unittest.mock import patch

import pytest

from splurge_secrets_encrypt.config import SecretsEncryptConfig
from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.exceptions import (
    ConfigMissingError,
    IllegalTransitionError,
    PersistenceFailureError,
    ReencryptionAbortedError,
    ReencryptionFailureError,
)
from splurge_secrets_encrypt.file_manager import FileLock
from splurge_secrets_encrypt.models import Key, KeyMode, Stage
from splurge_secrets_encrypt.services.config_store import EncryptionConfigStore
from splurge_secrets_encrypt.services.datastore import MemoryDatastore
from splurge_secrets_encrypt.services.marker_service import GenerationMarkerService
from splurge_secrets_encrypt.services.rotation.controller import RotationController, retained_keys
from splurge_secrets_encrypt.services.rotation.reencrypt import ReencryptionEngine
from tests.test_utility import TestDataHelper


class BlockingEngine(ReencryptionEngine):
    """Engine that waits for a release signal before running."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def run(self, datastore, config):
        self.started.set()
        self.release.wait(timeout=10)
        return super().run(datastore, config)


class TestRotationController:
    """Test stage transitions."""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary directory for testing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            yield temp_dir

    @pytest.fixture
    def datastore(self):
        return MemoryDatastore()

    @pytest.fixture
    def store(self, temp_dir):
        return EncryptionConfigStore(Path(temp_dir) / "cred" / "encryption-config.json")

    @pytest.fixture
    def controller(self, store, datastore):
        controller = RotationController(store, datastore, "node-1")
        yield controller
        controller.shutdown()

    @pytest.fixture
    def markers(self, datastore):
        return GenerationMarkerService(datastore)

    @pytest.fixture
    def bootstrapped(self, controller):
        controller.bootstrap()
        return controller

    # Bootstrap

    def test_bootstrap(self, controller, markers):
        config = controller.bootstrap()

        assert config.stage == Stage.START
        assert len(config.keys) == 2
        assert config.primary.mode == KeyMode.AESCBC
        assert config.keys[1].is_identity
        assert config.enabled
        assert markers.read_marker().config.hash() == config.hash()
        assert markers.read_node_state("node-1").config_hash == config.hash()

    def test_bootstrap_uses_configured_provider(self, store, datastore):
        controller = RotationController(
            store, datastore, "node-1", config=SecretsEncryptConfig(provider=KeyMode.AESGCM)
        )
        try:
            assert controller.bootstrap().primary.mode == KeyMode.AESGCM
        finally:
            controller.shutdown()

    def test_bootstrap_twice_rejected(self, bootstrapped, store):
        before = store.hash()

        with pytest.raises(IllegalTransitionError, match="already exists"):
            bootstrapped.bootstrap()

        assert store.hash() == before

    @pytest.mark.parametrize("operation", ["prepare", "rotate", "reencrypt", "rotate_keys", "disable", "enable"])
    def test_transitions_need_a_config(self, controller, operation):
        with pytest.raises(ConfigMissingError):
            getattr(controller, operation)()

    # Prepare

    def test_prepare_adds_second_key(self, bootstrapped, markers):
        before = bootstrapped.current_config()

        config = bootstrapped.prepare()

        assert config.stage == Stage.PREPARE
        assert config.primary == before.primary
        assert len(config.keys) == 3
        assert config.keys[1].name != before.primary.name
        assert config.keys[2].is_identity
        assert markers.read_marker().generation == 2
        assert bootstrapped.current_config().hash() == config.hash()

    def test_prepare_twice_rejected_without_mutation(self, bootstrapped, store, markers):
        bootstrapped.prepare()
        before = store.hash()
        generation = markers.read_marker().generation

        with pytest.raises(IllegalTransitionError, match="Cannot prepare from stage prepare"):
            bootstrapped.prepare()

        assert store.hash() == before
        assert markers.read_marker().generation == generation

    def test_prepare_force(self, bootstrapped):
        bootstrapped.prepare()
        bootstrapped.rotate()

        config = bootstrapped.prepare(force=True)

        assert config.stage == Stage.PREPARE
        assert len(config.real_keys()) == 3
        assert config.keys[-1].is_identity

    def test_prepare_after_finished(self, bootstrapped):
        bootstrapped.rotate_keys()
        config = bootstrapped.prepare()
        assert config.stage == Stage.PREPARE

    # Rotate

    def test_rotate_swaps_first_two_keys(self, bootstrapped):
        prepared = bootstrapped.prepare()

        config = bootstrapped.rotate()

        assert config.stage == Stage.ROTATE
        assert [key.name for key in config.keys] == [
            prepared.keys[1].name, prepared.keys[0].name, "identity"
        ]

    def test_rotate_from_start_rejected(self, bootstrapped, store):
        before = store.hash()

        with pytest.raises(IllegalTransitionError):
            bootstrapped.rotate()

        assert store.hash() == before

    def test_rotate_force_needs_two_keys(self, bootstrapped, store):
        before = store.hash()

        with pytest.raises(IllegalTransitionError, match="fewer than two keys"):
            bootstrapped.rotate(force=True)

        assert store.hash() == before

    # Reencrypt

    def test_reencrypt_rewrites_and_drops_old_key(self, bootstrapped, datastore):
        original = bootstrapped.current_config().primary
        plaintexts = TestDataHelper.seed_secrets(datastore, original, 25)
        bootstrapped.prepare()
        rotated = bootstrapped.rotate()

        result = bootstrapped.reencrypt()

        config = bootstrapped.current_config()
        assert result.rewritten == 25
        assert config.stage == Stage.REENCRYPT_FINISHED
        assert [key.name for key in config.keys] == [rotated.primary.name, "identity"]
        assert TestDataHelper.decrypt_all(datastore, config) == plaintexts

    def test_reencrypt_from_prepare_rejected(self, bootstrapped, store):
        bootstrapped.prepare()
        before = store.hash()

        with pytest.raises(IllegalTransitionError):
            bootstrapped.reencrypt()

        assert store.hash() == before

    def test_reencrypt_force(self, bootstrapped):
        bootstrapped.prepare()
        bootstrapped.reencrypt(force=True)

        config = bootstrapped.current_config()
        assert config.stage == Stage.REENCRYPT_FINISHED
        assert len(config.real_keys()) == 1

    def test_reencrypt_skip_keeps_keys_and_records(self, bootstrapped, datastore):
        TestDataHelper.seed_secrets(datastore, bootstrapped.current_config().primary, 3)
        bootstrapped.prepare()
        rotated = bootstrapped.rotate()
        before = datastore.snapshot()

        result = bootstrapped.reencrypt(skip=True)

        config = bootstrapped.current_config()
        assert result is None
        assert config.stage == Stage.REENCRYPT_FINISHED
        assert config.keys == rotated.keys
        assert {key: value for key, value in datastore.snapshot().items() if key.startswith("/registry/")} == \
            {key: value for key, value in before.items() if key.startswith("/registry/")}

    def test_reencrypt_failure_leaves_stage_active(self, bootstrapped, datastore):
        TestDataHelper.seed_secrets(datastore, bootstrapped.current_config().primary, 3)
        TestDataHelper.seed_secrets(datastore, TestDataHelper.key("stray"), 1, start=3)
        bootstrapped.prepare()
        rotated = bootstrapped.rotate()

        with pytest.raises(ReencryptionFailureError):
            bootstrapped.reencrypt()

        config = bootstrapped.current_config()
        assert config.stage == Stage.REENCRYPT_ACTIVE
        assert config.keys == rotated.keys

    def test_reencrypt_resumes_from_active(self, bootstrapped, datastore):
        plaintexts = TestDataHelper.seed_secrets(datastore, bootstrapped.current_config().primary, 3)
        TestDataHelper.seed_secrets(datastore, TestDataHelper.key("stray"), 1, start=3)
        bootstrapped.prepare()
        bootstrapped.rotate()
        with pytest.raises(ReencryptionFailureError):
            bootstrapped.reencrypt()
        datastore.delete(TestDataHelper.secret_key(3))

        result = bootstrapped.reencrypt()

        config = bootstrapped.current_config()
        assert result.already_current == 3
        assert config.stage == Stage.REENCRYPT_FINISHED
        assert TestDataHelper.decrypt_all(datastore, config) == {
            key: value for key, value in plaintexts.items()
        }

    def test_cancelled_pass_resumes(self, bootstrapped, datastore):
        plaintexts = TestDataHelper.seed_secrets(datastore, bootstrapped.current_config().primary, 4)
        bootstrapped.prepare()
        bootstrapped.rotate()
        bootstrapped.engine.cancel()

        with pytest.raises(ReencryptionAbortedError):
            bootstrapped.reencrypt()
        assert bootstrapped.current_config().stage == Stage.REENCRYPT_ACTIVE
        assert not bootstrapped.busy

        result = bootstrapped.reencrypt()

        config = bootstrapped.current_config()
        assert result.rewritten == 4
        assert config.stage == Stage.REENCRYPT_FINISHED
        assert TestDataHelper.decrypt_all(datastore, config) == plaintexts

    def test_shutdown_cancels_running_pass(self, store, datastore):
        engine = BlockingEngine()
        controller = RotationController(store, datastore, "node-1", engine=engine)
        try:
            controller.bootstrap()
            TestDataHelper.seed_secrets(datastore, controller.current_config().primary, 3)
            controller.prepare()
            controller.rotate()

            future = controller.reencrypt(wait=False)
            assert engine.started.wait(timeout=10)
            controller.shutdown(wait=False, cancel_pass=True)
            engine.release.set()

            with pytest.raises(ReencryptionAbortedError):
                future.result(timeout=10)
            assert controller.current_config().stage == Stage.REENCRYPT_ACTIVE
        finally:
            engine.release.set()
            controller.shutdown()

    def test_reencrypt_in_background(self, store, datastore):
        engine = BlockingEngine()
        controller = RotationController(store, datastore, "node-1", engine=engine)
        try:
            controller.bootstrap()
            controller.prepare()
            controller.rotate()

            future = controller.reencrypt(wait=False)
            assert isinstance(future, Future)
            assert engine.started.wait(timeout=10)
            assert controller.busy
            assert controller.current_config().stage == Stage.REENCRYPT_ACTIVE

            with pytest.raises(IllegalTransitionError, match="in progress"):
                controller.prepare(force=True)
            with pytest.raises(IllegalTransitionError, match="in progress"):
                controller.reencrypt()

            engine.release.set()
            future.result(timeout=10)

            assert not controller.busy
            assert controller.current_config().stage == Stage.REENCRYPT_FINISHED
        finally:
            engine.release.set()
            controller.shutdown()

    def test_background_failure_surfaces_in_future(self, bootstrapped, datastore):
        TestDataHelper.seed_secrets(datastore, TestDataHelper.key("stray"), 1)
        bootstrapped.prepare()
        bootstrapped.rotate()

        future = bootstrapped.reencrypt(wait=False)

        with pytest.raises(ReencryptionFailureError):
            future.result(timeout=10)
        assert not bootstrapped.busy
        assert bootstrapped.current_config().stage == Stage.REENCRYPT_ACTIVE

    def test_skip_in_background_returns_completed_future(self, bootstrapped):
        bootstrapped.prepare()
        bootstrapped.rotate()

        future = bootstrapped.reencrypt(skip=True, wait=False)

        assert future.done()
        assert future.result() is None
        assert not bootstrapped.busy

    # Rotate keys

    def test_rotate_keys(self, bootstrapped, datastore, markers):
        original = bootstrapped.current_config().primary
        plaintexts = TestDataHelper.seed_secrets(datastore, original, 5)
        generation = markers.read_marker().generation

        result = bootstrapped.rotate_keys()

        config = bootstrapped.current_config()
        assert result.rewritten == 5
        assert config.stage == Stage.REENCRYPT_FINISHED
        assert len(config.real_keys()) == 1
        assert config.primary.name != original.name
        # prepare, rotate, reencrypt_active, reencrypt_finished
        assert markers.read_marker().generation == generation + 4
        assert TestDataHelper.decrypt_all(datastore, config) == plaintexts

    def test_rotate_keys_reads_records_stored_before_bootstrap(self, controller, datastore):
        plaintexts = TestDataHelper.seed_secrets(datastore, Key.identity(), 3)
        controller.bootstrap()

        result = controller.rotate_keys()

        config = controller.current_config()
        assert result.rewritten == 3
        assert config.stage == Stage.REENCRYPT_FINISHED
        assert config.keys[-1].is_identity
        assert TestDataHelper.keys_in_use(datastore, config) == {config.primary.name}
        assert TestDataHelper.decrypt_all(datastore, config) == plaintexts

    def test_rotate_keys_from_rotate_rejected(self, bootstrapped, store):
        bootstrapped.prepare()
        bootstrapped.rotate()
        before = store.hash()

        with pytest.raises(IllegalTransitionError):
            bootstrapped.rotate_keys()

        assert store.hash() == before

    # Disable / enable

    def test_disable_and_enable(self, bootstrapped):
        bootstrapped.rotate_keys()
        real_key = bootstrapped.current_config().primary

        disabled = bootstrapped.disable()
        assert not disabled.enabled
        assert disabled.primary.is_identity
        assert disabled.keys[1] == real_key
        assert disabled.stage == Stage.REENCRYPT_FINISHED

        enabled = bootstrapped.enable()
        assert enabled.enabled
        assert enabled.primary == real_key
        assert enabled.keys[1].is_identity

    def test_disable_requires_finished(self, bootstrapped):
        with pytest.raises(IllegalTransitionError):
            bootstrapped.disable()

    def test_disable_twice_is_a_no_op(self, bootstrapped, store, markers):
        bootstrapped.rotate_keys()
        bootstrapped.disable()
        before = store.hash()
        generation = markers.read_marker().generation

        bootstrapped.disable()

        assert store.hash() == before
        assert markers.read_marker().generation == generation

    def test_enable_when_enabled_is_a_no_op(self, bootstrapped, store):
        bootstrapped.rotate_keys()
        before = store.hash()

        config = bootstrapped.enable()

        assert config.enabled
        assert store.hash() == before

    def test_enable_without_real_key(self, store, datastore):
        store.save(TestDataHelper.config(Key.identity(), stage=Stage.REENCRYPT_FINISHED))
        controller = RotationController(store, datastore, "node-1")
        try:
            with pytest.raises(IllegalTransitionError, match="no keys found"):
                controller.enable()
        finally:
            controller.shutdown()

    def test_reencrypt_after_disable_keeps_real_key(self, bootstrapped, datastore):
        bootstrapped.rotate_keys()
        real_key = bootstrapped.current_config().primary
        plaintexts = TestDataHelper.seed_secrets(datastore, real_key, 2)
        bootstrapped.disable()

        bootstrapped.reencrypt(force=True)

        config = bootstrapped.current_config()
        assert config.primary.is_identity
        assert config.real_keys() == [real_key]
        assert datastore.get(TestDataHelper.secret_key(0)) == plaintexts[TestDataHelper.secret_key(0)]

    # Locking

    def test_lock_held_by_another_process(self, bootstrapped, store):
        other = FileLock(store.config_path.parent / Constants.LOCK_FILE_NAME())
        assert other.acquire()
        try:
            before = store.hash()
            with pytest.raises(IllegalTransitionError, match="held by another process"):
                bootstrapped.prepare()
            assert store.hash() == before
            assert not bootstrapped.busy
        finally:
            other.release()

        assert bootstrapped.prepare().stage == Stage.PREPARE

    # Persistence failures

    def test_failed_publish_restores_local_config(self, bootstrapped, store, markers):
        before = store.hash()
        generation = markers.read_marker().generation

        with patch.object(GenerationMarkerService, "publish_marker", side_effect=PersistenceFailureError("datastore down")):
            with pytest.raises(PersistenceFailureError, match="datastore down"):
                bootstrapped.prepare()

        assert store.hash() == before
        assert bootstrapped.current_config().stage == Stage.START
        assert markers.read_marker().generation == generation

    def test_failed_bootstrap_publish_leaves_no_config(self, controller, store):
        with patch.object(GenerationMarkerService, "publish_marker", side_effect=PersistenceFailureError("datastore down")):
            with pytest.raises(PersistenceFailureError):
                controller.bootstrap()

        assert not store.exists()

    def test_failed_save_changes_nothing(self, bootstrapped, store, markers):
        before = store.hash()
        generation = markers.read_marker().generation

        with patch.object(EncryptionConfigStore, "save", side_effect=PersistenceFailureError("read-only")):
            with pytest.raises(PersistenceFailureError):
                bootstrapped.prepare()

        assert store.hash() == before
        assert markers.read_marker().generation == generation

    def test_failed_node_state_publish_keeps_transition(self, bootstrapped, caplog):
        with patch.object(GenerationMarkerService, "publish_node_state", side_effect=PersistenceFailureError("down")):
            config = bootstrapped.prepare()

        assert bootstrapped.current_config().hash() == config.hash()
        assert "Could not publish node state" in caplog.text


class TestRetainedKeys:
    """Test which keys survive a completed pass."""

    def test_only_primary_kept(self):
        config = TestDataHelper.two_key_config(stage=Stage.REENCRYPT_ACTIVE)
        assert [key.name for key in retained_keys(config)] == ["key-a", "identity"]

    def test_identity_primary_keeps_first_real_key(self):
        config = TestDataHelper.config(
            Key.identity(),
            TestDataHelper.key("key-a", TestDataHelper.SECRET_A),
            TestDataHelper.key("key-b", TestDataHelper.SECRET_B),
        )
        assert [key.name for key in retained_keys(config)] == ["identity", "key-a"]
