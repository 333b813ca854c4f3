"""Generation marker and node-state records in the shared datastore."""

import json
import logging
from typing import Optional

from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.exceptions import (
    ConfigCorruptError,
    PersistenceFailureError,
)
from splurge_secrets_encrypt.models import (
    EncryptionConfig,
    GenerationMarker,
    NodeState,
)
from splurge_secrets_encrypt.services.datastore import Datastore

logger = logging.getLogger(__name__)


class GenerationMarkerService:
    """Service for reading and publishing shared convergence records.

    The generation marker holds the config every node should adopt on its
    next reload. Node-state records hold each node's last known
    ``(stage, hash)`` pair so any node can report on the others.
    """

    def __init__(self, datastore: Datastore):
        """Initialize the marker service.

        Args:
            datastore: Shared datastore
        """
        self._datastore = datastore

    @staticmethod
    def node_state_key(node_id: str) -> str:
        return f"{Constants.NODE_STATE_PREFIX()}{node_id}"

    def _read_marker_record(self) -> Optional[bytes]:
        try:
            return self._datastore.get(Constants.GENERATION_MARKER_KEY())
        except PersistenceFailureError:
            raise
        except Exception as e:
            raise PersistenceFailureError(f"Failed to read generation marker: {e}") from e

    @staticmethod
    def _parse_marker(raw: bytes) -> GenerationMarker:
        try:
            return GenerationMarker.from_dict(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
            raise ConfigCorruptError(f"Failed to parse generation marker: {e}") from e

    def read_marker(self) -> Optional[GenerationMarker]:
        """Read the current generation marker.

        Returns:
            GenerationMarker, or None if no transition was ever published

        Raises:
            ConfigCorruptError: If the marker record cannot be parsed
            PersistenceFailureError: If the datastore read fails
        """
        raw = self._read_marker_record()
        if raw is None:
            return None
        return self._parse_marker(raw)

    def publish_marker(
        self,
        config: EncryptionConfig,
        node_id: str
    ) -> GenerationMarker:
        """Publish config as the cluster's next generation.

        The write only succeeds if the marker is still the one this call
        read, so two nodes can never publish the same generation.

        Args:
            config: Config every node should converge on
            node_id: Node performing the transition

        Returns:
            The published marker

        Raises:
            PersistenceFailureError: If the datastore write fails or another
                node published a marker in the meantime
        """
        raw = self._read_marker_record()
        previous = None
        if raw is not None:
            try:
                previous = self._parse_marker(raw)
            except ConfigCorruptError:
                logger.warning("Replacing unreadable generation marker", extra={
                    "node_id": node_id,
                    "event": "generation_marker_replaced"
                })

        marker = GenerationMarker(
            generation=previous.generation + 1 if previous else 1,
            config=config.copy(),
            written_by=node_id,
        )
        payload = json.dumps(marker.to_dict(), ensure_ascii=False).encode("utf-8")

        try:
            written = self._datastore.compare_and_put(Constants.GENERATION_MARKER_KEY(), raw, payload)
        except PersistenceFailureError:
            raise
        except Exception as e:
            raise PersistenceFailureError(f"Failed to publish generation marker: {e}") from e

        if not written:
            logger.warning("Generation marker changed during publish", extra={
                "node_id": node_id,
                "generation": marker.generation,
                "event": "generation_marker_conflict"
            })
            raise PersistenceFailureError(
                f"Generation marker {marker.generation} was published concurrently by another node; "
                "reload and retry"
            )

        logger.info("Generation marker published", extra={
            "generation": marker.generation,
            "stage": config.stage.value,
            "node_id": node_id,
            "event": "generation_marker_published"
        })
        return marker

    def publish_node_state(
        self,
        node_id: str,
        config: EncryptionConfig
    ) -> NodeState:
        """Publish a node's current (stage, hash) pair.

        Raises:
            PersistenceFailureError: If the datastore write fails
        """
        state = NodeState.from_config(node_id, config)
        payload = json.dumps(state.to_dict()).encode("utf-8")
        try:
            self._datastore.put(self.node_state_key(node_id), payload)
        except PersistenceFailureError:
            raise
        except Exception as e:
            raise PersistenceFailureError(f"Failed to publish state for node {node_id}: {e}") from e
        return state

    def read_node_state(self, node_id: str) -> Optional[NodeState]:
        """Read a node's last published state.

        Raises:
            ConfigCorruptError: If the record cannot be parsed
            PersistenceFailureError: If the datastore read fails
        """
        try:
            raw = self._datastore.get(self.node_state_key(node_id))
        except PersistenceFailureError:
            raise
        except Exception as e:
            raise PersistenceFailureError(f"Failed to read state for node {node_id}: {e}") from e

        if raw is None:
            return None

        try:
            return NodeState.from_dict(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
            raise ConfigCorruptError(f"Failed to parse state for node {node_id}: {e}") from e

    def list_node_ids(self) -> list[str]:
        """List every node that ever published its state."""
        prefix = Constants.NODE_STATE_PREFIX()
        try:
            return [key[len(prefix):] for key, _ in self._datastore.iter_prefix(prefix)]
        except PersistenceFailureError:
            raise
        except Exception as e:
            raise PersistenceFailureError(f"Failed to list node states: {e}") from e
