"""
Key reconciler.

Decides whether the local key still has to sign a scheduled transaction by
comparing the threshold account's member keys with the keys that have
already signed. Keys are compared by canonical bytes, never by text.
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Tuple

from .errors import DecodeError, KeyFormatError, ReconcileError
from .keys import PublicKey
from .transactions import PendingTransaction, TransactionStatus
from .wire import WireType, iter_fields

# Key
FIELD_KEY_ED25519 = 2
FIELD_KEY_THRESHOLD = 5
FIELD_KEY_LIST = 6
# ThresholdKey
FIELD_THRESHOLD = 1
FIELD_THRESHOLD_KEYS = 2
# KeyList
FIELD_KEYS = 1


@dataclass(frozen=True)
class ThresholdAccount:
    """An account that needs required_signature_count of member_keys."""
    account_id: str
    required_signature_count: int
    member_keys: FrozenSet[PublicKey]

    def __post_init__(self):
        if not 1 <= self.required_signature_count <= len(self.member_keys):
            raise ReconcileError(
                f"{self.account_id}: threshold {self.required_signature_count} "
                f"not within 1..{len(self.member_keys)} member keys"
            )

    @classmethod
    def build(cls, account_id: str, required: int, keys: Iterable[Any]) -> "ThresholdAccount":
        return cls(
            account_id=account_id,
            required_signature_count=required,
            member_keys=frozenset(PublicKey.from_any(k) for k in keys),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "required_signature_count": self.required_signature_count,
            "member_keys": sorted(k.raw_hex() for k in self.member_keys),
        }


@dataclass(frozen=True)
class Reconciliation:
    requires_local_signature: bool
    already_signed_by_local: bool
    legitimate_signature_count: int
    local_is_member: bool
    foreign_signature_count: int
    threshold_met: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requires_local_signature": self.requires_local_signature,
            "already_signed_by_local": self.already_signed_by_local,
            "legitimate_signature_count": self.legitimate_signature_count,
            "local_is_member": self.local_is_member,
            "foreign_signature_count": self.foreign_signature_count,
            "threshold_met": self.threshold_met,
        }


def reconcile(
    account: ThresholdAccount,
    tx: PendingTransaction,
    local_key: PublicKey
) -> Reconciliation:
    """Work out whether local_key must still sign tx for account."""
    signers = tx.signer_keys()
    legitimate = signers & account.member_keys
    is_member = local_key in account.member_keys
    already_signed = local_key in signers

    return Reconciliation(
        requires_local_signature=(
            is_member and not already_signed and tx.status == TransactionStatus.PENDING
        ),
        already_signed_by_local=already_signed,
        legitimate_signature_count=len(legitimate),
        local_is_member=is_member,
        foreign_signature_count=len(signers - account.member_keys),
        threshold_met=len(legitimate) >= account.required_signature_count,
    )


def _key_list(data: bytes) -> List[PublicKey]:
    keys = []
    for field_number, wire_type, value in iter_fields(data):
        if field_number == FIELD_KEYS and wire_type == WireType.LENGTH_DELIMITED:
            keys.append(_leaf_key(value))
    return keys


def _leaf_key(data: bytes) -> PublicKey:
    for field_number, wire_type, value in iter_fields(data):
        if field_number == FIELD_KEY_ED25519 and wire_type == WireType.LENGTH_DELIMITED:
            return PublicKey.from_bytes(value)
        if field_number in (FIELD_KEY_THRESHOLD, FIELD_KEY_LIST):
            raise ReconcileError("nested threshold keys are not supported")
    raise ReconcileError("key list member is not an ED25519 key")


def decode_key_structure(data: bytes) -> Tuple[int, FrozenSet[PublicKey]]:
    """
    Parse a protobuf-encoded ledger Key into (required count, member keys).

    A single ED25519 key needs 1 signature, a KeyList needs every member,
    a ThresholdKey needs its declared threshold.
    """
    try:
        for field_number, wire_type, value in iter_fields(data):
            if wire_type != WireType.LENGTH_DELIMITED:
                continue
            if field_number == FIELD_KEY_ED25519:
                return 1, frozenset([PublicKey.from_bytes(value)])
            if field_number == FIELD_KEY_LIST:
                keys = frozenset(_key_list(value))
                return len(keys), keys
            if field_number == FIELD_KEY_THRESHOLD:
                threshold = 0
                keys = frozenset()
                for inner_field, inner_type, inner_value in iter_fields(value):
                    if inner_field == FIELD_THRESHOLD and inner_type == WireType.VARINT:
                        threshold = inner_value
                    elif inner_field == FIELD_THRESHOLD_KEYS and inner_type == WireType.LENGTH_DELIMITED:
                        keys = frozenset(_key_list(inner_value))
                return threshold, keys
    except DecodeError as e:
        raise ReconcileError(f"malformed key structure: {e}") from e
    except KeyFormatError as e:
        raise ReconcileError(f"malformed key in structure: {e}") from e
    raise ReconcileError("key structure carries no supported key")


def account_from_key_bytes(account_id: str, data: bytes) -> ThresholdAccount:
    required, keys = decode_key_structure(data)
    return ThresholdAccount(account_id=account_id, required_signature_count=required, member_keys=keys)
