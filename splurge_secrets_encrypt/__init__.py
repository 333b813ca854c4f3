"""Splurge Secrets Encrypt - staged rotation of at-rest encryption keys.

This package manages the keys that protect secrets in a shared key-value
datastore across control-plane nodes. Keys are rotated in stages (prepare,
rotate, reencrypt) that every node converges on independently through a
generation marker in the datastore.
"""

from splurge_secrets_encrypt.config import DEFAULT_CONFIG, SecretsEncryptConfig
from splurge_secrets_encrypt.exceptions import (
    ConfigCorruptError,
    ConfigMissingError,
    EncryptionError,
    IllegalTransitionError,
    PersistenceFailureError,
    ReencryptionAbortedError,
    ReencryptionFailureError,
    SecretsEncryptError,
    ValidationError,
)
from splurge_secrets_encrypt.models import (
    ClusterReport,
    EncryptionConfig,
    GenerationMarker,
    Key,
    KeyMode,
    NodeReport,
    NodeState,
    Stage,
)
from splurge_secrets_encrypt.node import ControlPlaneNode

try:
    from importlib.metadata import PackageNotFoundError, version
    __version__ = version("splurge-secrets-encrypt")
except PackageNotFoundError:
    # Running from a source checkout that was never installed
    __version__ = "unknown"

__all__ = [
    "ClusterReport",
    "ConfigCorruptError",
    "ConfigMissingError",
    "ControlPlaneNode",
    "DEFAULT_CONFIG",
    "EncryptionConfig",
    "EncryptionError",
    "GenerationMarker",
    "IllegalTransitionError",
    "Key",
    "KeyMode",
    "NodeReport",
    "NodeState",
    "PersistenceFailureError",
    "ReencryptionAbortedError",
    "ReencryptionFailureError",
    "SecretsEncryptConfig",
    "SecretsEncryptError",
    "Stage",
    "ValidationError",
]
