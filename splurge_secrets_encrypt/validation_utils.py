"""Validation utilities for the secrets encrypt package."""

from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.exceptions import ValidationError


def validate_node_id(node_id: str) -> None:
    """Validate a control-plane node identifier.

    Node ids become part of datastore record keys, so path separators and
    whitespace are rejected.

    Args:
        node_id: Node identifier to validate

    Raises:
        ValidationError: If node_id doesn't meet requirements
    """
    if node_id is None:
        raise ValidationError("Node id cannot be None")

    if node_id == "":
        raise ValidationError("Node id cannot be empty")

    if node_id.strip() == "":
        raise ValidationError("Node id cannot contain only whitespace")

    if len(node_id) > Constants.MAX_NODE_ID_LENGTH():
        raise ValidationError(
            f"Node id is too long (maximum {Constants.MAX_NODE_ID_LENGTH()} characters)"
        )

    if "/" in node_id or "\x00" in node_id:
        raise ValidationError("Node id cannot contain '/' or null bytes")

    if any(c.isspace() for c in node_id):
        raise ValidationError("Node id cannot contain whitespace")


def validate_data_dir(data_dir: str) -> None:
    """Validate a data directory argument.

    Args:
        data_dir: Directory path to validate

    Raises:
        ValidationError: If data_dir is missing or blank
    """
    if data_dir is None:
        raise ValidationError("Data directory cannot be None")

    if data_dir == "":
        raise ValidationError("Data directory cannot be empty")

    if data_dir.strip() == "":
        raise ValidationError("Data directory cannot contain only whitespace")
