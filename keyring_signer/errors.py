"""
Error taxonomy for the keyring signer.

Every failure raised by the decode, reconcile, classify and act pipeline
derives from KeyringSignerError. The orchestrator converts per-transaction
failures into ERRORED outcomes; only PolicyConfigError aborts a run.
"""

from enum import Enum
from typing import Optional


class DecodeFailure(str, Enum):
    """Reasons a transaction envelope could not be decoded."""
    MISSING_INNER_TRANSACTION = "MISSING_INNER_TRANSACTION"
    VARINT_OVERFLOW = "VARINT_OVERFLOW"
    TRUNCATED = "TRUNCATED"
    UNSUPPORTED_WIRE_TYPE = "UNSUPPORTED_WIRE_TYPE"
    INVALID_TAG = "INVALID_TAG"


class KeyringSignerError(Exception):
    """Base class for all keyring signer errors."""


class DecodeError(KeyringSignerError):
    """Envelope bytes are structurally invalid. Never retried."""

    def __init__(self, reason: DecodeFailure, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        message = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(message)


class InterpretError(KeyringSignerError):
    """Function arguments could not be decoded against a known signature."""


class ReconcileError(KeyringSignerError):
    """Threshold account or key material is inconsistent."""


class KeyFormatError(ReconcileError, ValueError):
    """A public key string is in none of the supported encodings."""


class TransientIOError(KeyringSignerError):
    """Network or ledger query failure that may succeed on retry."""


class LedgerQueryError(KeyringSignerError):
    """Ledger query failed in a way retrying will not fix."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class SigningError(KeyringSignerError):
    """Signer is misconfigured or the signing transport failed."""


class PolicyConfigError(KeyringSignerError):
    """Policy or interface table is malformed. Fatal at load time."""
