"""Cluster-wide consistency verification of node encryption state."""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional, Sequence

from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.crypto_utils import CryptoUtils
from splurge_secrets_encrypt.exceptions import ConfigMissingError
from splurge_secrets_encrypt.models import (
    ClusterReport,
    EncryptionConfig,
    NodeReport,
)
from splurge_secrets_encrypt.services.config_store import EncryptionConfigStore
from splurge_secrets_encrypt.services.marker_service import GenerationMarkerService

logger = logging.getLogger(__name__)


class NodeHandle(ABC):
    """A node the verifier can ask for its current (stage, hash) pair."""

    def __init__(self, node_id: str):
        self._node_id = node_id

    @property
    def node_id(self) -> str:
        return self._node_id

    @abstractmethod
    def report(self) -> NodeReport:
        """Return the node's current state.

        Raises:
            Exception: Any failure marks the node unreachable
        """


class LocalNodeHandle(NodeHandle):
    """Reads state straight from a node's own config store.

    A node that was never bootstrapped reports stage start with encryption
    disabled and no hash.
    """

    def __init__(self, node_id: str, store: EncryptionConfigStore):
        super().__init__(node_id)
        self._store = store

    def report(self) -> NodeReport:
        try:
            config = self._store.load()
        except ConfigMissingError:
            return NodeReport(node_id=self.node_id, reachable=True, enabled=False)
        return NodeReport(
            node_id=self.node_id,
            reachable=True,
            stage=config.stage,
            enabled=config.enabled,
            config_hash=config.hash(),
        )


class DatastoreNodeHandle(NodeHandle):
    """Reads a remote node's last published state from the shared datastore."""

    def __init__(self, node_id: str, markers: GenerationMarkerService):
        super().__init__(node_id)
        self._markers = markers

    def report(self) -> NodeReport:
        state = self._markers.read_node_state(self.node_id)
        if state is None:
            return NodeReport.unreachable(self.node_id, "no state published")
        return NodeReport.from_state(state)


class ConsistencyVerifier:
    """Aggregates per-node state into a cluster report.

    Every node is queried in parallel with a per-node timeout and no
    retries. A node that fails or times out is reported unreachable and
    left out of the hash comparison. A mismatch is reported, never raised.
    """

    def __init__(self, *, timeout: float = Constants.NODE_TIMEOUT_SECONDS()):
        """Initialize the verifier.

        Args:
            timeout: Seconds to wait for each node
        """
        self._timeout = timeout

    def status(
        self,
        nodes: Sequence[NodeHandle],
        local_node_id: str,
        local_config: Optional[EncryptionConfig] = None
    ) -> ClusterReport:
        """Collect every node's state and compare hashes against the local node.

        Args:
            nodes: Handles for every control-plane node, local one included
            local_node_id: Node whose hash is the reference
            local_config: Local config used to list active and inactive keys

        Returns:
            ClusterReport covering every node
        """
        reports = self._collect(nodes)
        report = ClusterReport(local_node_id=local_node_id, reports=reports)

        if local_config is not None:
            report.active_key = local_config.primary.display_name
            # The identity fallback is not listed as a key
            report.inactive_keys = [
                key.display_name for key in local_config.legacy_keys if not key.is_identity
            ]

        reference = report.local_report
        if reference is None or not reference.reachable:
            # Nothing to compare against
            return report

        for other in reports:
            if other is reference or not other.reachable:
                continue
            if not _same_hash(reference.config_hash, other.config_hash):
                report.hashes_match = False
                report.mismatch = (
                    f"hash does not match between {reference.node_id} and {other.node_id}"
                )
                logger.warning("Encryption config hashes diverge", extra={
                    "reference_node": reference.node_id,
                    "other_node": other.node_id,
                    "event": "hash_mismatch"
                })
                break

        return report

    def _collect(self, nodes: Sequence[NodeHandle]) -> list[NodeReport]:
        if not nodes:
            return []

        executor = ThreadPoolExecutor(max_workers=len(nodes), thread_name_prefix="status")
        try:
            futures = [(node, executor.submit(node.report)) for node in nodes]
            reports = []
            for node, future in futures:
                try:
                    reports.append(future.result(timeout=self._timeout))
                except FutureTimeoutError:
                    reports.append(NodeReport.unreachable(
                        node.node_id, f"no response within {self._timeout}s"
                    ))
                except Exception as e:
                    reports.append(NodeReport.unreachable(node.node_id, str(e) or type(e).__name__))
        finally:
            # Do not wait on nodes that timed out
            executor.shutdown(wait=False)

        unreachable = [report.node_id for report in reports if not report.reachable]
        if unreachable:
            logger.info("Some nodes did not report", extra={
                "nodes": unreachable,
                "event": "nodes_unreachable"
            })
        return reports


def _same_hash(reference: Optional[str], other: Optional[str]) -> bool:
    """Compare two config hashes; a node without a config only matches another one."""
    if not reference or not other:
        return not reference and not other
    return CryptoUtils.constant_time_compare(reference.encode("ascii"), other.encode("ascii"))
