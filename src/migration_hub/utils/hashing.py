"""Content hashing and deterministic identifier helpers."""

import hashlib
import json
import uuid
from typing import Any, Mapping

# Fixed namespace so identifiers are stable across runs and hosts
MIGRATION_NAMESPACE = uuid.UUID("6f0c1f4e-8d5a-4b8e-9a57-2f6f1d0c9b31")


def content_hash(row: Mapping[str, Any]) -> str:
    """
    Hash a source row as canonical JSON (sorted keys, ``str`` fallback).

    Example:
        >>> content_hash({"b": 1, "a": 2}) == content_hash({"a": 2, "b": 1})
        True
    """
    payload = json.dumps(dict(row), sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def hash_prefix(digest: str) -> int:
    """First 64 bits of a hex digest as an unsigned int."""
    return int(digest[:16], 16)


def new_identifier(entity_type: str, legacy_id: int) -> str:
    """Deterministic UUIDv5 for an (entity_type, legacy_id) pair."""
    return str(uuid.uuid5(MIGRATION_NAMESPACE, f"{entity_type}:{legacy_id}"))
