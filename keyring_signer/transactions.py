"""
Pending scheduled transaction as observed on the ledger.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .keys import PublicKey


class TransactionStatus(str, Enum):
    """Lifecycle of a scheduled transaction.

    SIGNED and REJECTED are set by the orchestrator. EXECUTED and DELETED
    are only ever observed on the ledger.
    """
    PENDING = "PENDING"
    SIGNED = "SIGNED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class ExistingSignature:
    public_key: PublicKey
    signature: bytes = b""
    consensus_timestamp: Optional[str] = None


@dataclass(frozen=True)
class PendingTransaction:
    schedule_id: str
    creator_account_id: str
    payer_account_id: str
    envelope: bytes
    existing_signatures: Tuple[ExistingSignature, ...] = ()
    status: TransactionStatus = TransactionStatus.PENDING
    memo: str = ""

    def signer_keys(self) -> FrozenSet[PublicKey]:
        return frozenset(sig.public_key for sig in self.existing_signatures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "creator_account_id": self.creator_account_id,
            "payer_account_id": self.payer_account_id,
            "envelope_size": len(self.envelope),
            "signers": sorted(k.raw_hex() for k in self.signer_keys()),
            "status": self.status.value,
            "memo": self.memo,
        }
