"""
Utility functions for generating and validating engine identifiers.
"""
import re
import uuid
from typing import Any

_ID_PATTERN = re.compile(r"^[a-z]+_[0-9a-f]{12}$")


def generate_id(prefix: str) -> str:
    """
    Generate a prefixed identifier.

    Format: {prefix}_[0-9a-f]{12}
    Examples: "sl_3f2a9c1b7d4e", "alert_0c9d8e7f6a5b"
    """
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def is_valid_id(value: Any, prefix: str | None = None) -> bool:
    """Check that a value looks like an identifier from generate_id."""
    if not isinstance(value, str):
        return False
    if not _ID_PATTERN.match(value):
        return False
    if prefix is not None and not value.startswith(f"{prefix}_"):
        return False
    return True
