"""
Utility functions for the keyring signer.

Provides canonical JSON serialization, hashing, encoding, and time utilities.
"""

import base64
import binascii
import hashlib
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Union


def canonicalize(obj: Any) -> bytes:
    """
    Convert object to canonical JSON bytes.

    Canonical JSON:
    - Lexicographically sorted keys
    - No whitespace
    - UTF-8 encoded
    """
    s = json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return s.encode('utf-8')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def chain_entry_hash(prev_entry_hash: str, payload_hash: str) -> str:
    """Hash linking an entry to its predecessor ("" for the first entry)."""
    data = (prev_entry_hash or "").encode("utf-8") + payload_hash.encode("utf-8")
    return sha256_hex(data)


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Base64 decode string to bytes."""
    return base64.b64decode(s.encode('ascii'))


def strip_0x(s: str) -> str:
    """Remove a leading 0x/0X prefix."""
    if s[:2] in ("0x", "0X"):
        return s[2:]
    return s


def decode_text_bytes(s: str) -> bytes:
    """
    Decode a hex (optionally 0x-prefixed) or base64 string to bytes.

    Hex is tried first; mirror node key prefixes are base64.
    """
    text = s.strip()
    candidate = strip_0x(text)
    if candidate and len(candidate) % 2 == 0:
        try:
            return bytes.fromhex(candidate)
        except ValueError:
            pass
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"not hex or base64: {text[:16]}...") from e


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def generate_id(length: int = 8) -> str:
    """Generate a cryptographically secure random ID."""
    return secrets.token_hex(length)
