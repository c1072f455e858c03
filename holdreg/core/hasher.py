"""
Canonical Hashing

Deterministic serialization and SHA-256 hashing for the registration
audit log, plus the prefixed digest used for attestation signatures.

Every registration event is hashed over its canonical payload and
chained to the previous event hash. If these rules change, the audit
chain of every existing deployment stops verifying, so changes must be
versioned through SERIALIZATION_VERSION.

CANONICAL SERIALIZATION RULES:
1. "__canon_v" version marker injected into every canonical output
2. Dictionary keys sorted recursively
3. Nulls omitted entirely
4. Empty strings and empty containers preserved
5. Datetimes: ISO 8601, forced to UTC, microseconds, Z suffix
6. UUIDs: lowercase strings
7. Enums: their value
8. Integers of any size: JSON numbers
9. Floats: BANNED
10. Top-level must be a dict

PERSONAL MESSAGE DIGEST:
    SHA256(PERSONAL_MESSAGE_PREFIX + str(len(message_bytes)) + message_bytes)
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing.

    Same logical input gives the same hash, across platforms and
    Python versions.
    """

    SERIALIZATION_VERSION = 1

    # Domain tag for attestation messages; the decimal byte length follows it
    PERSONAL_MESSAGE_PREFIX = b"\x19Holding Registry Signed Message:\n"

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        if isinstance(value, UUID):
            return str(value).lower()

        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise CanonicalSerializationError(
                    f"Datetime at {path} is timezone-naive. "
                    "All datetimes must be timezone-aware."
                )
            utc_dt = value.astimezone(timezone.utc)
            return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

        if isinstance(value, Enum):
            return value.value

        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Amounts are integers; floats are banned in canonical payloads."
            )

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys()):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Convert a dict (or pydantic model) to its canonical JSON string.

        Raises:
            CanonicalSerializationError: If data cannot be deterministically serialized
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict/object, "
                f"got {type(data).__name__}."
            )

        canonical_dict = {"__canon_v": cls.SERIALIZATION_VERSION, **cls._to_canonical_dict(data)}

        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        """SHA-256 of the canonical form, hex encoded."""
        canonical = cls.canonicalize(data)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def hash_event(cls, payload: dict[str, Any], previous_hash: str | None = None) -> str:
        """
        Hash an event payload with chain linkage.

        FORMAT:
        - Genesis: SHA256(canonical_payload)
        - Chained: SHA256(previous_hash + ":" + canonical_payload)
        """
        canonical_payload = cls.canonicalize(payload)

        if previous_hash is None:
            chain_input = canonical_payload
        else:
            if len(previous_hash) != 64 or not all(
                c in "0123456789abcdef" for c in previous_hash.lower()
            ):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash}. "
                    "Must be 64 hex characters."
                )
            chain_input = f"{previous_hash.lower()}:{canonical_payload}"

        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def personal_message_digest(cls, message: str | bytes) -> bytes:
        """
        Digest an attestation message the way signers are expected to.

        The raw message bytes are prefixed with the domain tag and their
        decimal length before hashing, so a signature over an attestation
        can never be replayed as a signature over some other structure.
        """
        raw = message.encode("utf-8") if isinstance(message, str) else message
        prefixed = cls.PERSONAL_MESSAGE_PREFIX + str(len(raw)).encode("ascii") + raw
        return hashlib.sha256(prefixed).digest()
