"""Configuration management for the Splurge Secrets Encrypt system."""

from dataclasses import dataclass

from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.models import KeyMode


@dataclass
class SecretsEncryptConfig:
    """Configuration for a node's encryption subsystem."""

    # Key settings
    provider: KeyMode = KeyMode.AESCBC  # mode used for newly generated keys

    # Re-encryption settings
    page_size: int = Constants.LIST_PAGE_SIZE()
    progress_interval: int = Constants.PROGRESS_INTERVAL()
    resource_prefixes: tuple[str, ...] = (Constants.SECRETS_RESOURCE_PREFIX(),)

    # Status settings
    node_timeout: float = Constants.NODE_TIMEOUT_SECONDS()  # seconds

    # File settings
    secure_permissions: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if isinstance(self.provider, str):
            self.provider = KeyMode(self.provider)

        if self.provider == KeyMode.IDENTITY:
            raise ValueError("provider must be a real cipher, not identity")

        # Validate re-encryption settings
        if self.page_size < 1:
            raise ValueError("page_size must be at least 1")
        if self.progress_interval < 1:
            raise ValueError("progress_interval must be at least 1")
        if not self.resource_prefixes:
            raise ValueError("resource_prefixes cannot be empty")
        self.resource_prefixes = tuple(self.resource_prefixes)

        # Validate status settings
        if self.node_timeout <= 0:
            raise ValueError("node_timeout must be positive")


# Default configuration instance
DEFAULT_CONFIG = SecretsEncryptConfig()
