"""Library-wide constants.

These constants centralize tunable values used across modules to keep
behavior consistent and avoid duplication.
"""



class Constants:

    # Key material
    _KEY_SIZE_BYTES: int = 32
    _GCM_NONCE_SIZE: int = 12
    _CBC_IV_SIZE: int = 16
    _MAX_KEY_NAME_LENGTH: int = 253
    _MAX_NODE_ID_LENGTH: int = 253

    # Record framing
    _ENVELOPE_PREFIX: str = "k8s:enc:"
    _ENVELOPE_VERSION: str = "v1"
    _IDENTITY_KEY_NAME: str = "identity"

    # Shared datastore layout
    _SECRETS_RESOURCE_PREFIX: str = "/registry/secrets/"
    _GENERATION_MARKER_KEY: str = "/bootstrap/secrets-encryption/generation-marker"
    _NODE_STATE_PREFIX: str = "/bootstrap/secrets-encryption/nodes/"

    # Local files
    _CONFIG_FILE_NAME: str = "encryption-config.json"
    _LOCK_FILE_NAME: str = "encryption-config.lock"
    _CONFIG_DIR_NAME: str = "cred"
    _DATASTORE_DIR_NAME: str = "datastore"

    # Re-encryption pass
    _LIST_PAGE_SIZE: int = 20
    _PROGRESS_INTERVAL: int = 50

    # Status fan-out
    _NODE_TIMEOUT_SECONDS: float = 5.0

    @classmethod
    def KEY_SIZE_BYTES(cls) -> int:
        return cls._KEY_SIZE_BYTES

    @classmethod
    def GCM_NONCE_SIZE(cls) -> int:
        return cls._GCM_NONCE_SIZE

    @classmethod
    def CBC_IV_SIZE(cls) -> int:
        return cls._CBC_IV_SIZE

    @classmethod
    def MAX_KEY_NAME_LENGTH(cls) -> int:
        return cls._MAX_KEY_NAME_LENGTH

    @classmethod
    def MAX_NODE_ID_LENGTH(cls) -> int:
        return cls._MAX_NODE_ID_LENGTH

    # Prefix shared by every encrypted record
    @classmethod
    def ENVELOPE_PREFIX(cls) -> str:
        return cls._ENVELOPE_PREFIX

    @classmethod
    def ENVELOPE_VERSION(cls) -> str:
        return cls._ENVELOPE_VERSION

    @classmethod
    def IDENTITY_KEY_NAME(cls) -> str:
        return cls._IDENTITY_KEY_NAME

    @classmethod
    def SECRETS_RESOURCE_PREFIX(cls) -> str:
        return cls._SECRETS_RESOURCE_PREFIX

    @classmethod
    def GENERATION_MARKER_KEY(cls) -> str:
        return cls._GENERATION_MARKER_KEY

    @classmethod
    def NODE_STATE_PREFIX(cls) -> str:
        return cls._NODE_STATE_PREFIX

    @classmethod
    def CONFIG_FILE_NAME(cls) -> str:
        return cls._CONFIG_FILE_NAME

    @classmethod
    def LOCK_FILE_NAME(cls) -> str:
        return cls._LOCK_FILE_NAME

    @classmethod
    def CONFIG_DIR_NAME(cls) -> str:
        return cls._CONFIG_DIR_NAME

    @classmethod
    def DATASTORE_DIR_NAME(cls) -> str:
        return cls._DATASTORE_DIR_NAME

    # Re-encryption pass
    @classmethod
    def LIST_PAGE_SIZE(cls) -> int:
        return cls._LIST_PAGE_SIZE

    @classmethod
    def PROGRESS_INTERVAL(cls) -> int:
        return cls._PROGRESS_INTERVAL

    @classmethod
    def NODE_TIMEOUT_SECONDS(cls) -> float:
        return cls._NODE_TIMEOUT_SECONDS
