"""Data models for the Splurge Secrets Encrypt system."""

import base64
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from cryptography.hazmat.primitives import hashes

from splurge_secrets_encrypt.constants import Constants

_AES_KEY_SIZES = (16, 24, 32)


class KeyMode(str, Enum):
    """Cipher a key is used with."""

    AESCBC = "aescbc"
    AESGCM = "aesgcm"
    IDENTITY = "identity"

    @property
    def display_name(self) -> str:
        """Human readable key type used in status output."""
        return {
            KeyMode.AESCBC: "AES-CBC",
            KeyMode.AESGCM: "AES-GCM",
            KeyMode.IDENTITY: "Identity",
        }[self]


class Stage(str, Enum):
    """Rotation protocol stage."""

    START = "start"
    PREPARE = "prepare"
    ROTATE = "rotate"
    REENCRYPT_ACTIVE = "reencrypt_active"
    REENCRYPT_FINISHED = "reencrypt_finished"


def _parse_datetime(value: str) -> datetime:
    """Parse datetime string to datetime object."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class Key:
    """A named symmetric key, or the identity pseudo-key."""

    name: str
    secret: bytes
    mode: KeyMode

    def __post_init__(self) -> None:
        """Validate fields after initialization."""
        if not self.name:
            raise ValueError("name cannot be empty")
        if ":" in self.name:
            raise ValueError("name cannot contain ':'")
        if not isinstance(self.mode, KeyMode):
            object.__setattr__(self, "mode", KeyMode(self.mode))

        if self.mode == KeyMode.IDENTITY:
            if self.secret:
                raise ValueError("identity key cannot carry a secret")
        elif len(self.secret) not in _AES_KEY_SIZES:
            raise ValueError(f"{self.mode.value} secret must be 16, 24 or 32 bytes")

    @classmethod
    def identity(cls) -> "Key":
        """Return the identity pseudo-key (records stored unencrypted)."""
        return cls(name=Constants.IDENTITY_KEY_NAME(), secret=b"", mode=KeyMode.IDENTITY)

    @property
    def is_identity(self) -> bool:
        return self.mode == KeyMode.IDENTITY

    @property
    def display_name(self) -> str:
        return f"{self.mode.display_name} {self.name}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary; the secret is base64 encoded."""
        return {
            "name": self.name,
            "mode": self.mode.value,
            "secret": base64.b64encode(self.secret).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Key":
        """Create Key from dictionary."""
        return cls(
            name=data["name"],
            secret=base64.b64decode(data.get("secret", ""), validate=True),
            mode=KeyMode(data["mode"]),
        )

    def __repr__(self) -> str:
        return f"Key(name={self.name!r}, mode={self.mode.value!r})"


@dataclass
class EncryptionConfig:
    """Ordered key list plus the current rotation stage.

    The first key is the primary key used for all new writes. Every other
    key is a legacy key kept only to decrypt existing records.
    """

    keys: list[Key]
    stage: Stage = Stage.START

    def __post_init__(self) -> None:
        """Validate and process fields after initialization."""
        if not self.keys:
            raise ValueError("keys cannot be empty")
        if isinstance(self.stage, str) and not isinstance(self.stage, Stage):
            self.stage = Stage(self.stage)
        self.keys = list(self.keys)

        names = [key.name for key in self.keys]
        if len(set(names)) != len(names):
            raise ValueError("key names must be unique")

    @property
    def primary(self) -> Key:
        return self.keys[0]

    @property
    def legacy_keys(self) -> list[Key]:
        return self.keys[1:]

    @property
    def enabled(self) -> bool:
        """Encryption is enabled when the primary key is a real cipher key."""
        return not self.primary.is_identity

    def real_keys(self) -> list[Key]:
        """Return the keys that carry key material, in order."""
        return [key for key in self.keys if not key.is_identity]

    def has_key(self, name: str) -> bool:
        return any(key.name == name for key in self.keys)

    def copy(self) -> "EncryptionConfig":
        return EncryptionConfig(keys=list(self.keys), stage=self.stage)

    def canonical_bytes(self) -> bytes:
        """Serialize keys and stage with fixed field order and no whitespace."""
        canonical = {
            "keys": [key.to_dict() for key in self.keys],
            "stage": self.stage.value,
        }
        return json.dumps(canonical, separators=(",", ":"), ensure_ascii=True).encode("ascii")

    def hash(self) -> str:
        """SHA-256 hex digest of the canonical serialization."""
        digest = hashes.Hash(hashes.SHA256())
        digest.update(self.canonical_bytes())
        return digest.finalize().hex()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with proper serialization."""
        return {
            "kind": "EncryptionConfiguration",
            "version": "1.0",
            "stage": self.stage.value,
            "keys": [key.to_dict() for key in self.keys],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptionConfig":
        """Create EncryptionConfig from dictionary."""
        if not isinstance(data, dict):
            raise ValueError("encryption config must be a JSON object")
        if data.get("kind", "EncryptionConfiguration") != "EncryptionConfiguration":
            raise ValueError(f"unexpected kind {data.get('kind')!r}")
        return cls(
            keys=[Key.from_dict(key_data) for key_data in data["keys"]],
            stage=Stage(data["stage"]),
        )


@dataclass
class GenerationMarker:
    """Shared record announcing the config every node should converge on."""

    generation: int
    config: EncryptionConfig
    written_by: str
    written_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        """Validate and process fields after initialization."""
        if self.generation < 1:
            raise ValueError("generation must be at least 1")
        if not self.written_by:
            raise ValueError("written_by cannot be empty")

        # Parse datetime string if provided
        if isinstance(self.written_at, str):
            self.written_at = _parse_datetime(self.written_at)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with proper serialization."""
        return {
            "generation": self.generation,
            "config": self.config.to_dict(),
            "config_hash": self.config.hash(),
            "written_by": self.written_by,
            "written_at": self.written_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GenerationMarker":
        """Create GenerationMarker from dictionary."""
        return cls(
            generation=data["generation"],
            config=EncryptionConfig.from_dict(data["config"]),
            written_by=data["written_by"],
            written_at=data.get("written_at") or datetime.now(timezone.utc),
        )


@dataclass
class NodeState:
    """A node's last published (stage, hash) pair."""

    node_id: str
    stage: Stage
    enabled: bool
    config_hash: str
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        """Validate and process fields after initialization."""
        if not self.node_id:
            raise ValueError("node_id cannot be empty")
        if not self.config_hash:
            raise ValueError("config_hash cannot be empty")
        if not isinstance(self.stage, Stage):
            self.stage = Stage(self.stage)

        # Parse datetime string if provided
        if isinstance(self.updated_at, str):
            self.updated_at = _parse_datetime(self.updated_at)

    @classmethod
    def from_config(cls, node_id: str, config: EncryptionConfig) -> "NodeState":
        return cls(
            node_id=node_id,
            stage=config.stage,
            enabled=config.enabled,
            config_hash=config.hash(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with proper serialization."""
        return {
            "node_id": self.node_id,
            "stage": self.stage.value,
            "enabled": self.enabled,
            "config_hash": self.config_hash,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeState":
        """Create NodeState from dictionary."""
        return cls(
            node_id=data["node_id"],
            stage=Stage(data["stage"]),
            enabled=bool(data["enabled"]),
            config_hash=data["config_hash"],
            updated_at=data.get("updated_at") or datetime.now(timezone.utc),
        )


@dataclass
class NodeReport:
    """One node's entry in a cluster status report. Never persisted."""

    node_id: str
    reachable: bool
    stage: Optional[Stage] = None
    enabled: Optional[bool] = None
    config_hash: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_state(cls, state: NodeState) -> "NodeReport":
        return cls(
            node_id=state.node_id,
            reachable=True,
            stage=state.stage,
            enabled=state.enabled,
            config_hash=state.config_hash,
        )

    @classmethod
    def unreachable(cls, node_id: str, error: str) -> "NodeReport":
        return cls(node_id=node_id, reachable=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "reachable": self.reachable,
            "stage": self.stage.value if self.stage else None,
            "enabled": self.enabled,
            "config_hash": self.config_hash,
            "error": self.error,
        }


@dataclass
class ClusterReport:
    """Cluster-wide convergence report produced by the consistency verifier."""

    local_node_id: str
    reports: list[NodeReport] = field(default_factory=list)
    hashes_match: bool = True
    mismatch: Optional[str] = None  # e.g. "hash does not match between a and b"
    active_key: Optional[str] = None
    inactive_keys: list[str] = field(default_factory=list)

    @property
    def local_report(self) -> Optional[NodeReport]:
        for report in self.reports:
            if report.node_id == self.local_node_id:
                return report
        return None

    @property
    def enabled(self) -> bool:
        local = self.local_report
        return bool(local and local.reachable and local.enabled)

    @property
    def stage(self) -> Optional[Stage]:
        local = self.local_report
        return local.stage if local else None

    @property
    def unreachable_nodes(self) -> list[str]:
        return [report.node_id for report in self.reports if not report.reachable]

    def hash_summary(self) -> str:
        if self.hashes_match:
            return "All hashes match"
        return self.mismatch or "hash does not match"

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "stage": self.stage.value if self.stage else None,
            "hashes_match": self.hashes_match,
            "hash_error": None if self.hashes_match else self.hash_summary(),
            "local_node_id": self.local_node_id,
            "active_key": self.active_key,
            "inactive_keys": list(self.inactive_keys),
            "nodes": [report.to_dict() for report in self.reports],
        }
