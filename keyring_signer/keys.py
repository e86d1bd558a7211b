"""
Key handling for the keyring signer.

PublicKey normalizes the many textual forms a ledger key arrives in (raw
hex, DER-wrapped hex, base64 signature prefixes) to one canonical 32-byte
value. KeyProvider implementations sign relay requests with a local file
key or an AWS KMS key.
"""

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import KeyFormatError, SigningError
from .util import b64d, b64e, decode_text_bytes

RAW_KEY_SIZE = 32
ED25519_DER_PREFIX = bytes.fromhex("302a300506032b6570032100")


@dataclass(frozen=True)
class PublicKey:
    """
    An Ed25519 public key compared by its canonical raw bytes.

    Any wrapper (DER prefix, longer encodings) is dropped; the last 32
    bytes are the key.
    """
    raw: bytes

    def __post_init__(self):
        if len(self.raw) != RAW_KEY_SIZE:
            raise KeyFormatError(f"public key must be {RAW_KEY_SIZE} bytes, got {len(self.raw)}")

    @classmethod
    def from_bytes(cls, data: bytes) -> "PublicKey":
        data = bytes(data)
        if len(data) < RAW_KEY_SIZE:
            raise KeyFormatError(f"key material too short: {len(data)} bytes")
        return cls(data[-RAW_KEY_SIZE:])

    @classmethod
    def from_string(cls, text: str) -> "PublicKey":
        """Parse hex (0x optional, any case), DER hex, or base64."""
        try:
            return cls.from_bytes(decode_text_bytes(text))
        except ValueError as e:
            if isinstance(e, KeyFormatError):
                raise
            raise KeyFormatError(f"unrecognized key encoding: {e}") from e

    @classmethod
    def from_any(cls, value: Union["PublicKey", bytes, str]) -> "PublicKey":
        if isinstance(value, PublicKey):
            return value
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls.from_bytes(bytes(value))
        if isinstance(value, str):
            return cls.from_string(value)
        raise KeyFormatError(f"cannot build a public key from {type(value).__name__}")

    def raw_hex(self) -> str:
        return self.raw.hex()

    def der_hex(self) -> str:
        return (ED25519_DER_PREFIX + self.raw).hex()

    def to_verify_key(self) -> VerifyKey:
        return VerifyKey(self.raw)

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            self.to_verify_key().verify(message, signature)
            return True
        except BadSignatureError:
            return False

    def __str__(self) -> str:
        return self.raw_hex()

    def __repr__(self) -> str:
        return f"PublicKey({self.raw_hex()[:8]}...{self.raw_hex()[-8:]})"


def keys_match(a: Any, b: Any) -> bool:
    """True when two key encodings denote the same canonical key."""
    return PublicKey.from_any(a) == PublicKey.from_any(b)


def verify_ed25519(public_key: Union[PublicKey, bytes, str], message: bytes, sig_b64: str) -> bool:
    """Verify an Ed25519 signature given as base64."""
    return PublicKey.from_any(public_key).verify(message, b64d(sig_b64))


class KeyProvider(ABC):
    """Abstract interface for signing relay requests."""

    @abstractmethod
    def sign(self, payload: bytes) -> Tuple[str, str]:
        """
        Sign a payload and return (kid, signature_b64).

        Args:
            payload: The canonical JSON bytes to sign
        """
        pass

    @abstractmethod
    def get_kid(self) -> str:
        """Get the key ID used for signing."""
        pass

    def public_key(self) -> Optional[PublicKey]:
        """Public half of the signing key, when the provider can expose it."""
        return None


class FileKeyProvider(KeyProvider):
    """Ed25519 key stored as {"kid", "private_key_b64"} in a JSON file."""

    def __init__(self, signing_key_path: str):
        self._signing_key_path = signing_key_path
        try:
            with open(signing_key_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            self._kid = raw["kid"]
            self._sk = SigningKey(b64d(raw["private_key_b64"]))
        except (OSError, KeyError, ValueError) as e:
            raise SigningError(f"cannot load signing key from {signing_key_path}: {e}") from e

    def sign(self, payload: bytes) -> Tuple[str, str]:
        sig = self._sk.sign(payload).signature
        return self._kid, b64e(sig)

    def get_kid(self) -> str:
        return self._kid

    def public_key(self) -> PublicKey:
        return PublicKey(bytes(self._sk.verify_key))


class AwsKmsEd25519Provider(KeyProvider):
    """
    AWS KMS signing provider using Ed25519 keys.

    Requires a SIGN_VERIFY KMS key with ED25519 support.
    Uses KMS Sign API with SigningAlgorithm ED25519_SHA_512 and MessageType RAW.

    Docs: https://docs.aws.amazon.com/kms/latest/APIReference/API_Sign.html
    """

    def __init__(self, kms_key_id: str, region: Optional[str] = None, kid: Optional[str] = None):
        self._kms_key_id = kms_key_id
        self._region = region
        self._kid = kid or "aws-kms-ed25519"
        self._client = None
        self._lock = threading.RLock()

    def _get_client(self):
        """Lazy-load boto3 client."""
        with self._lock:
            if self._client is None:
                import boto3
                self._client = boto3.client("kms", region_name=self._region or None)
            return self._client

    def sign(self, payload: bytes) -> Tuple[str, str]:
        client = self._get_client()
        resp = client.sign(
            KeyId=self._kms_key_id,
            Message=payload,
            MessageType="RAW",
            SigningAlgorithm="ED25519_SHA_512"
        )
        return self._kid, b64e(resp["Signature"])

    def get_kid(self) -> str:
        return self._kid


def generate_key_file(path: str, kid: str) -> PublicKey:
    """Write a fresh Ed25519 key file and return its public key."""
    sk = SigningKey.generate()
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"kid": kid, "private_key_b64": b64e(bytes(sk))}, f, indent=2)
    return PublicKey(bytes(sk.verify_key))


def get_key_provider(
    provider_type: str,
    signing_key_path: str = "",
    kms_key_id: str = "",
    region: Optional[str] = None,
    kid: Optional[str] = None
) -> KeyProvider:
    """
    Factory function to get the appropriate key provider.

    Args:
        provider_type: "file" or "aws_kms"
    """
    if provider_type == "aws_kms":
        if not kms_key_id:
            raise SigningError("AWS_KMS_KEY_ID is required for the aws_kms key provider")
        return AwsKmsEd25519Provider(kms_key_id, region=region, kid=kid)
    if provider_type == "file":
        return FileKeyProvider(signing_key_path)
    raise SigningError(f"Unknown key provider: {provider_type}")
