"""Rotation services package for Splurge Secrets Encrypt."""

from splurge_secrets_encrypt.services.rotation.controller import RotationController
from splurge_secrets_encrypt.services.rotation.reencrypt import (
    ReencryptionEngine,
    ReencryptionResult,
)
from splurge_secrets_encrypt.services.rotation.transaction import RotationTransaction

__all__ = [
    "ReencryptionEngine",
    "ReencryptionResult",
    "RotationController",
    "RotationTransaction",
]
