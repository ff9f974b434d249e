"""ULID generation and validation."""

from __future__ import annotations

import re

from ulid import ULID

# Crockford Base32 alphabet: 0-9 A-Z excluding I, L, O, U
_CROCKFORD_B32_RE = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$", re.IGNORECASE)

# Prefix of ids minted on the client before the server has seen the entity.
LOCAL_ENTITY_PREFIX = "loc"


def generate_client_id() -> str:
    """Generate a new device ID with the dev_ prefix."""
    return f"dev_{ULID()}"


def generate_mutation_id() -> str:
    """Generate a new queue item ID with the mut_ prefix.

    The same value is sent to the server as the idempotency key, so it must
    never be regenerated for an item that is being retried.
    """
    return f"mut_{ULID()}"


def generate_local_entity_id() -> str:
    """Generate a provisional entity ID used until the server assigns one."""
    return f"{LOCAL_ENTITY_PREFIX}_{ULID()}"


def is_local_entity_id(id_str: str) -> bool:
    """Return ``True`` if *id_str* is a client-minted provisional entity ID."""
    return validate_id(id_str, LOCAL_ENTITY_PREFIX)


def validate_id(id_str: str, expected_prefix: str) -> bool:
    """Validate a ``<prefix>_<ulid>`` identifier.

    The ULID portion must be exactly 26 characters of valid Crockford
    Base32 (0-9, A-Z excluding I, L, O, U -- case insensitive).
    """
    if not isinstance(id_str, str) or not isinstance(expected_prefix, str):
        return False

    parts = id_str.split("_", maxsplit=1)
    if len(parts) != 2:
        return False

    prefix, ulid_part = parts
    if prefix != expected_prefix:
        return False

    return bool(_CROCKFORD_B32_RE.match(ulid_part))
