"""Custom exceptions for the Splurge Secrets Encrypt system."""


class SecretsEncryptError(Exception):
    """Base exception for all Secrets Encrypt errors."""


class ConfigMissingError(SecretsEncryptError):
    """Raised when encryption was never bootstrapped on this node."""


class ConfigCorruptError(SecretsEncryptError):
    """Raised when the on-disk encryption config cannot be parsed."""


class IllegalTransitionError(SecretsEncryptError):
    """Raised when a requested stage change is not valid from the current stage."""


class PersistenceFailureError(SecretsEncryptError):
    """Raised when a local save or a datastore write fails."""


class ReencryptionFailureError(SecretsEncryptError):
    """Raised when a record could not be decrypted or rewritten."""


class ReencryptionAbortedError(ReencryptionFailureError):
    """Raised when a re-encryption pass is cancelled before completion."""


class EncryptionError(SecretsEncryptError):
    """Raised when encryption/decryption of a single record fails."""


class ValidationError(SecretsEncryptError):
    """Raised when data validation fails."""
