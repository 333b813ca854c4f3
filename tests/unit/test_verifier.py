"""Unit tests for the ConsistencyVerifier."""

import tempfile
import threading
import time
from pathlib import Path

import pytest

from splurge_secrets_encrypt.models import Key, NodeReport, Stage
from splurge_secrets_encrypt.services.config_store import EncryptionConfigStore
from splurge_secrets_encrypt.services.datastore import MemoryDatastore
from splurge_secrets_encrypt.services.marker_service import GenerationMarkerService
from splurge_secrets_encrypt.services.verifier import (
    ConsistencyVerifier,
    DatastoreNodeHandle,
    LocalNodeHandle,
    NodeHandle,
)
from tests.test_utility import TestDataHelper


class StaticHandle(NodeHandle):
    """Handle returning a fixed report."""

    def __init__(self, node_id, config_hash, stage=Stage.START, enabled=True):
        super().__init__(node_id)
        self._report = NodeReport(
            node_id=node_id, reachable=True, stage=stage, enabled=enabled, config_hash=config_hash
        )

    def report(self):
        return self._report


class FailingHandle(NodeHandle):
    def report(self):
        raise ConnectionError("connection refused")


class SlowHandle(NodeHandle):
    def __init__(self, node_id, release):
        super().__init__(node_id)
        self._release = release

    def report(self):
        self._release.wait(timeout=10)
        return NodeReport(node_id=self.node_id, reachable=True, config_hash="late")


class TestConsistencyVerifier:
    """Test cluster report aggregation."""

    @pytest.fixture
    def verifier(self):
        return ConsistencyVerifier(timeout=0.5)

    def test_all_hashes_match(self, verifier):
        nodes = [StaticHandle("node-1", "aaa"), StaticHandle("node-2", "aaa"), StaticHandle("node-3", "aaa")]

        report = verifier.status(nodes, "node-1")

        assert report.hashes_match
        assert report.hash_summary() == "All hashes match"
        assert [entry.node_id for entry in report.reports] == ["node-1", "node-2", "node-3"]

    def test_mismatch_names_both_nodes(self, verifier):
        nodes = [
            StaticHandle("node-1", "aaa", stage=Stage.PREPARE),
            StaticHandle("node-2", "aaa", stage=Stage.PREPARE),
            StaticHandle("node-3", "bbb", stage=Stage.START),
        ]

        report = verifier.status(nodes, "node-1")

        assert not report.hashes_match
        assert report.hash_summary() == "hash does not match between node-1 and node-3"
        # Each node's true stage is still reported
        assert [entry.stage for entry in report.reports] == [Stage.PREPARE, Stage.PREPARE, Stage.START]

    def test_reference_is_the_local_node(self, verifier):
        nodes = [StaticHandle("node-1", "aaa"), StaticHandle("node-2", "bbb"), StaticHandle("node-3", "bbb")]

        report = verifier.status(nodes, "node-2")

        assert report.mismatch == "hash does not match between node-2 and node-1"

    def test_unreachable_node_is_reported_not_compared(self, verifier):
        nodes = [StaticHandle("node-1", "aaa"), FailingHandle("node-2"), StaticHandle("node-3", "aaa")]

        report = verifier.status(nodes, "node-1")

        assert report.hashes_match
        assert report.unreachable_nodes == ["node-2"]
        assert report.reports[1].error == "connection refused"

    def test_slow_node_times_out(self):
        release = threading.Event()
        verifier = ConsistencyVerifier(timeout=0.2)
        nodes = [StaticHandle("node-1", "aaa"), SlowHandle("node-2", release)]
        try:
            started = time.monotonic()
            report = verifier.status(nodes, "node-1")
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert report.unreachable_nodes == ["node-2"]
        assert "no response" in report.reports[1].error
        assert elapsed < 5

    def test_reachable_node_without_hash_is_a_mismatch(self, verifier):
        nodes = [StaticHandle("node-1", "aaa"), StaticHandle("node-2", None)]

        report = verifier.status(nodes, "node-1")

        assert not report.hashes_match

    def test_local_node_without_hash_is_a_mismatch(self, verifier):
        nodes = [StaticHandle("node-1", None, enabled=False), StaticHandle("node-2", "aaa")]

        report = verifier.status(nodes, "node-1")

        assert not report.hashes_match
        assert report.mismatch == "hash does not match between node-1 and node-2"
        assert not report.enabled

    def test_no_node_has_a_hash(self, verifier):
        nodes = [StaticHandle("node-1", None, enabled=False), StaticHandle("node-2", None, enabled=False)]

        report = verifier.status(nodes, "node-1")

        assert report.hashes_match
        assert report.mismatch is None

    def test_empty_cluster(self, verifier):
        report = verifier.status([], "node-1")
        assert report.reports == []
        assert report.hashes_match

    def test_key_listing(self, verifier):
        config = TestDataHelper.two_key_config()

        report = verifier.status([StaticHandle("node-1", config.hash())], "node-1", config)

        assert report.active_key == "AES-CBC key-a"
        assert report.inactive_keys == ["AES-CBC key-b"]

    def test_identity_fallback_not_listed(self, verifier):
        config = TestDataHelper.config(TestDataHelper.key("key-a", TestDataHelper.SECRET_A), Key.identity())

        report = verifier.status([StaticHandle("node-1", config.hash())], "node-1", config)

        assert report.active_key == "AES-CBC key-a"
        assert report.inactive_keys == []


class TestNodeHandles:
    """Test the concrete node handles."""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary directory for testing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            yield temp_dir

    def test_local_handle(self, temp_dir):
        store = EncryptionConfigStore(Path(temp_dir) / "encryption-config.json")
        config = TestDataHelper.two_key_config(stage=Stage.ROTATE)
        store.save(config)

        report = LocalNodeHandle("node-1", store).report()

        assert report.reachable
        assert report.stage == Stage.ROTATE
        assert report.config_hash == config.hash()

    def test_local_handle_without_config(self, temp_dir):
        store = EncryptionConfigStore(Path(temp_dir) / "encryption-config.json")

        report = LocalNodeHandle("node-1", store).report()

        assert report.reachable
        assert report.enabled is False
        assert report.stage is None
        assert report.config_hash is None

    def test_datastore_handle(self):
        markers = GenerationMarkerService(MemoryDatastore())
        config = TestDataHelper.config(stage=Stage.PREPARE)
        markers.publish_node_state("node-2", config)

        report = DatastoreNodeHandle("node-2", markers).report()

        assert report.reachable
        assert report.stage == Stage.PREPARE
        assert report.config_hash == config.hash()

    def test_datastore_handle_without_state(self):
        markers = GenerationMarkerService(MemoryDatastore())

        report = DatastoreNodeHandle("node-2", markers).report()

        assert not report.reachable
        assert report.error == "no state published"
