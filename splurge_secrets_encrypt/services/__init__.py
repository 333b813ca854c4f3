"""Services package for Splurge Secrets Encrypt."""

from splurge_secrets_encrypt.services.config_store import EncryptionConfigStore
from splurge_secrets_encrypt.services.datastore import (
    Datastore,
    FileDatastore,
    MemoryDatastore,
)
from splurge_secrets_encrypt.services.marker_service import GenerationMarkerService
from splurge_secrets_encrypt.services.rotation import (
    ReencryptionEngine,
    ReencryptionResult,
    RotationController,
    RotationTransaction,
)
from splurge_secrets_encrypt.services.verifier import (
    ConsistencyVerifier,
    DatastoreNodeHandle,
    LocalNodeHandle,
    NodeHandle,
)

__all__ = [
    "ConsistencyVerifier",
    "Datastore",
    "DatastoreNodeHandle",
    "EncryptionConfigStore",
    "FileDatastore",
    "GenerationMarkerService",
    "LocalNodeHandle",
    "MemoryDatastore",
    "NodeHandle",
    "ReencryptionEngine",
    "ReencryptionResult",
    "RotationController",
    "RotationTransaction",
]
