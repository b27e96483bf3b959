"""
Fingerprints and transaction hashes

A fingerprint is SHA-256 over the UTF-8 bytes of the raw alert log,
taken exactly as received: no trimming, no newline or Unicode
normalization. Fingerprints are 32 bytes and are shown as 0x-prefixed
lowercase hex. Every committed alert's fingerprint was produced by
Hasher.digest, so changing it breaks verification of the whole ledger.

Transaction hashes cover the canonical JSON form of a commit:

- "__canon_v" carries the serialization version
- keys sorted at every depth, None values dropped
- datetimes must be timezone-aware; rendered UTC with microseconds and Z
- bytes rendered as 0x hex
- floats rejected
- compact separators, ASCII only

Bump SERIALIZATION_VERSION before changing any of these.
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class CanonicalSerializationError(Exception):
    """A value has no single deterministic JSON rendering."""
    pass


def to_hex(raw: bytes) -> str:
    """0x-prefixed lowercase hex."""
    return "0x" + raw.hex()


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


# ============================================================
# CANONICAL FORM
# ============================================================

def _canonical_datetime(value: datetime, path: str) -> str:
    if value.tzinfo is None:
        raise CanonicalSerializationError(f"{path or 'value'}: naive datetime, attach a timezone")
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _canonical(value: Any, path: str) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        raise CanonicalSerializationError(f"{path or 'value'}: floats are not allowed, use int or str")
    if isinstance(value, bytes):
        return to_hex(value)
    if isinstance(value, datetime):
        return _canonical_datetime(value, path)
    if isinstance(value, Enum):
        return _canonical(value.value, path)
    if isinstance(value, (list, tuple)):
        return [_canonical(item, f"{path}[{index}]") for index, item in enumerate(value)]
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="python")
    if isinstance(value, dict):
        return _canonical_object(value, path)
    raise CanonicalSerializationError(f"{path or 'value'}: cannot serialize {type(value).__name__}")


def _canonical_object(data: dict, path: str) -> dict:
    rendered = {}
    for key in data:
        if not isinstance(key, str):
            raise CanonicalSerializationError(f"{path or 'value'}: key {key!r} is not a string")
    for key in sorted(data):
        item = _canonical(data[key], f"{path}.{key}" if path else key)
        if item is not None:
            rendered[key] = item
    return rendered


class Hasher:
    """Stateless hashing helpers. Everything here is deterministic."""

    SERIALIZATION_VERSION = 1
    DIGEST_SIZE = 32

    # ================================================================
    # CONTENT FINGERPRINTS
    # ================================================================

    @staticmethod
    def digest(payload: str) -> bytes:
        """
        Fingerprint a raw log payload.

        Args:
            payload: The raw log exactly as received

        Returns:
            32-byte SHA-256 digest
        """
        if not isinstance(payload, str):
            raise TypeError(f"payload must be str, got {type(payload).__name__}")
        return _sha256(payload.encode("utf-8"))

    @classmethod
    def digest_hex(cls, payload: str) -> str:
        return to_hex(cls.digest(payload))

    @classmethod
    def parse_digest(cls, value: Union[str, bytes]) -> bytes:
        """
        Accept raw 32 bytes, or 64 hex characters with or without 0x.

        Raises:
            ValueError: If the value is not a 32-byte digest
        """
        if isinstance(value, bytes):
            raw = value
        elif isinstance(value, str):
            text = value[2:] if value[:2].lower() == "0x" else value
            try:
                raw = bytes.fromhex(text)
            except ValueError as e:
                raise ValueError(f"Digest is not valid hex: {value!r}") from e
        else:
            raise ValueError(f"Digest must be str or bytes, got {type(value).__name__}")

        if len(raw) != cls.DIGEST_SIZE:
            raise ValueError(f"Digest must be {cls.DIGEST_SIZE} bytes, got {len(raw)}")
        return raw

    @staticmethod
    def topic_digest(log_id: str) -> str:
        """
        Digest of a logId as carried in an indexed event topic.

        Identifies a log; says nothing about its content.
        """
        return to_hex(_sha256(log_id.encode("utf-8")))

    @staticmethod
    def placeholder(identifier: str) -> str:
        """
        Stand-in shown when the ledger cannot supply a fingerprint:
        hex of the identifier's UTF-8 bytes. Never a fingerprint, so it
        must stay labelled as a placeholder wherever it is shown.
        """
        return to_hex(identifier.encode("utf-8"))

    @staticmethod
    def matches(a: bytes, b: bytes) -> bool:
        """Constant-time digest comparison."""
        return hmac.compare_digest(a, b)

    # ================================================================
    # TRANSACTIONS
    # ================================================================

    @classmethod
    def canonicalize(cls, data: Any) -> str:
        """
        Canonical JSON for a transaction dict (or pydantic model).

        Raises:
            CanonicalSerializationError: If any value has no deterministic form
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")
        if not isinstance(data, dict):
            raise CanonicalSerializationError(f"transaction must be a dict, got {type(data).__name__}")

        body = {"__canon_v": cls.SERIALIZATION_VERSION, **_canonical_object(data, "")}
        return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=True, allow_nan=False)

    @classmethod
    def hash_transaction(cls, transaction: Any) -> str:
        """SHA-256 of the canonical transaction, 0x hex (66 characters)."""
        return to_hex(_sha256(cls.canonicalize(transaction).encode("utf-8")))
