"""Control-plane node: one secrets-encryption subsystem instance."""

import logging
from pathlib import Path
from typing import Iterable, Optional

from splurge_secrets_encrypt.config import DEFAULT_CONFIG, SecretsEncryptConfig
from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.exceptions import ConfigMissingError
from splurge_secrets_encrypt.models import (
    ClusterReport,
    EncryptionConfig,
    NodeReport,
    NodeState,
)
from splurge_secrets_encrypt.services import (
    ConsistencyVerifier,
    Datastore,
    DatastoreNodeHandle,
    EncryptionConfigStore,
    GenerationMarkerService,
    LocalNodeHandle,
    NodeHandle,
    RotationController,
)
from splurge_secrets_encrypt.validation_utils import validate_data_dir, validate_node_id

logger = logging.getLogger(__name__)


class ControlPlaneNode:
    """One node's view of secrets encryption.

    Owns the node's config file (under ``<data_dir>/cred/``), a rotation
    controller, and the node's entry in the shared datastore. ``reload()``
    stands in for a process restart: it pulls the latest generation marker
    and adopts it if the local config differs.
    """

    def __init__(
        self,
        node_id: str,
        data_dir: str | Path,
        datastore: Datastore,
        *,
        config: SecretsEncryptConfig = DEFAULT_CONFIG
    ):
        """Initialize the node.

        Args:
            node_id: Unique name of this node
            data_dir: Node-local data directory
            datastore: Datastore shared by every node
            config: Subsystem settings

        Raises:
            ValidationError: If node_id or data_dir is invalid
        """
        validate_node_id(node_id)
        validate_data_dir(str(data_dir))

        self._node_id = node_id
        self._data_dir = Path(data_dir)
        self._datastore = datastore
        self._config = config
        self._store = EncryptionConfigStore(
            self._data_dir / Constants.CONFIG_DIR_NAME() / Constants.CONFIG_FILE_NAME(),
            secure_permissions=config.secure_permissions,
        )
        self._markers = GenerationMarkerService(datastore)
        self._controller = RotationController(
            self._store, datastore, node_id, config=config
        )
        self._verifier = ConsistencyVerifier(timeout=config.node_timeout)

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def store(self) -> EncryptionConfigStore:
        return self._store

    @property
    def datastore(self) -> Datastore:
        return self._datastore

    @property
    def controller(self) -> RotationController:
        return self._controller

    def close(self) -> None:
        """Cancel any background re-encryption pass and stop the worker.

        A cancelled pass leaves the stage at reencrypt_active; running
        ``reencrypt`` again resumes it.
        """
        self._controller.shutdown(wait=True, cancel_pass=True)

    def load_config(self) -> Optional[EncryptionConfig]:
        """Load the local config, or None if this node was never bootstrapped.

        Raises:
            ConfigCorruptError: If the config file cannot be parsed
        """
        try:
            return self._store.load()
        except ConfigMissingError:
            return None

    def reload(self) -> Optional[EncryptionConfig]:
        """Converge on the cluster's latest generation marker.

        The marker's config replaces the local one when their hashes differ.
        The node then publishes its (stage, hash) pair.

        Returns:
            The config in effect after reloading, or None if neither a local
            config nor a marker exists

        Raises:
            IllegalTransitionError: If a transition or pass is running on this node
            ConfigCorruptError: If the local config or the marker cannot be parsed
            PersistenceFailureError: If saving or publishing fails
        """
        with self._controller.exclusive("reload"):
            return self._reload()

    def _reload(self) -> Optional[EncryptionConfig]:
        marker = self._markers.read_marker()
        local = self.load_config()

        if marker is not None and (local is None or local.hash() != marker.config.hash()):
            self._store.save(marker.config)
            logger.info("Adopted encryption config from generation marker", extra={
                "node_id": self._node_id,
                "generation": marker.generation,
                "written_by": marker.written_by,
                "stage": marker.config.stage.value,
                "event": "generation_marker_adopted"
            })
            local = marker.config

        if local is None:
            logger.debug("Nothing to reload; encryption was never bootstrapped", extra={
                "node_id": self._node_id,
                "event": "reload_no_config"
            })
            return None

        self._markers.publish_node_state(self._node_id, local)
        return local

    def state(self) -> Optional[NodeState]:
        """Current (stage, hash) pair, or None if never bootstrapped."""
        config = self.load_config()
        if config is None:
            return None
        return NodeState.from_config(self._node_id, config)

    def handle(self) -> NodeHandle:
        """Handle that lets a verifier read this node's state directly."""
        return LocalNodeHandle(self._node_id, self._store)

    def report(self) -> NodeReport:
        return self.handle().report()

    def status(self, peers: Optional[Iterable[NodeHandle]] = None) -> ClusterReport:
        """Report every node's stage and whether their hashes match this node's.

        Args:
            peers: Handles for the other nodes; defaults to every node that
                published state to the shared datastore

        Returns:
            ClusterReport with this node as the reference

        Raises:
            ConfigCorruptError: If the local config cannot be parsed
        """
        local_config = self.load_config()

        if peers is None:
            peers = [
                DatastoreNodeHandle(node_id, self._markers)
                for node_id in self._markers.list_node_ids()
                if node_id != self._node_id
            ]

        nodes = [self.handle()]
        nodes.extend(peer for peer in peers if peer.node_id != self._node_id)
        return self._verifier.status(nodes, self._node_id, local_config)
