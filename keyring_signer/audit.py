"""
Audit records and publishers.

Every reviewed transaction produces exactly one ValidationRecord, whatever
the outcome. Records are wrapped in an HCS-2 style topic message keyed by
schedule id and appended to an append-only channel. Rejections are also
published to a separate rejection channel.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .util import canonicalize, chain_entry_hash, sha256_hex

logger = logging.getLogger(__name__)

HCS2_PROTOCOL = "hcs-2"
HCS2_OP_REGISTER = "register"

CHAIN_FIELDS = frozenset({"seq", "payload_hash", "prev_entry_hash", "entry_hash", "message"})


class ReviewAction(str, Enum):
    """What the signer did with a transaction."""
    SIGNED = "SIGNED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"
    ERRORED = "ERRORED"


@dataclass(frozen=True)
class ValidationRecord:
    """
    Immutable audit record for one reviewed transaction.

    Field names are stable; downstream consumers index by schedule_id.
    """
    schedule_id: str
    reviewer: str
    action: ReviewAction
    timestamp: str
    function_name: Optional[str] = None
    risk_tier: Optional[str] = None
    rationale: str = ""
    rule_id: Optional[str] = None
    error: Optional[str] = None
    contract_id: Optional[str] = None
    memo: str = ""
    project_registration_tx_id: str = ""
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "reviewer": self.reviewer,
            "function_name": self.function_name,
            "risk_tier": self.risk_tier,
            "rationale": self.rationale,
            "rule_id": self.rule_id,
            "action": self.action.value,
            "error": self.error,
            "timestamp": self.timestamp,
            "contract_id": self.contract_id,
            "memo": self.memo,
            "project_registration_tx_id": self.project_registration_tx_id,
            "dry_run": self.dry_run,
        }

    def topic_message(self) -> Dict[str, Any]:
        """HCS-2 validation message."""
        tier = self.risk_tier or "n/a"
        prefix = "DRY-RUN " if self.dry_run else ""
        return {
            "p": HCS2_PROTOCOL,
            "op": HCS2_OP_REGISTER,
            "t_id": self.schedule_id,
            "metadata": self.to_dict(),
            "m": f"{prefix}{self.action.value} {self.schedule_id} ({self.function_name or 'n/a'}, risk {tier})",
        }

    def rejection_message(self) -> Dict[str, Any]:
        """HCS-2 rejection message carrying the reviewer's feedback."""
        prefix = "DRY-RUN " if self.dry_run else ""
        return {
            "p": HCS2_PROTOCOL,
            "op": HCS2_OP_REGISTER,
            "t_id": self.schedule_id,
            "metadata": {
                "type": "rejection",
                "schedule_id": self.schedule_id,
                "signer": self.reviewer,
                "feedback": self.rationale,
                "risk_tier": self.risk_tier,
                "function_name": self.function_name,
                "timestamp": self.timestamp,
                "project_registration_tx_id": self.project_registration_tx_id,
                "dry_run": self.dry_run,
            },
            "m": f"{prefix}Rejected {self.schedule_id}: {self.rationale}",
        }


class AuditPublisher(ABC):
    """Append-only audit channel."""

    @abstractmethod
    def publish(self, message: Dict[str, Any]) -> str:
        """Append a message and return a reference to it."""
        pass


class InMemoryAuditPublisher(AuditPublisher):
    """In-memory channel for testing."""

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def publish(self, message: Dict[str, Any]) -> str:
        with self._lock:
            self.messages.append(message)
            return str(len(self.messages))

    def for_schedule(self, schedule_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [m for m in self.messages if m.get("t_id") == schedule_id]


class HashChainFilePublisher(AuditPublisher):
    """
    Append-only JSONL file with a SHA-256 hash chain.

    Each line is {"seq", "payload_hash", "prev_entry_hash", "entry_hash",
    "message"}; entry_hash = sha256(prev_entry_hash + payload_hash).
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._seq, self._prev = self._tail()

    def _tail(self) -> Tuple[int, str]:
        seq, prev = 0, ""
        if not os.path.exists(self.path):
            return seq, prev
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    entry = json.loads(line)
                    seq, prev = entry["seq"], entry["entry_hash"]
        return seq, prev

    def publish(self, message: Dict[str, Any]) -> str:
        payload_hash = sha256_hex(canonicalize(message))
        with self._lock:
            entry_hash = chain_entry_hash(self._prev, payload_hash)
            entry = {
                "seq": self._seq + 1,
                "payload_hash": payload_hash,
                "prev_entry_hash": self._prev,
                "entry_hash": entry_hash,
                "message": message,
            }
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, sort_keys=True) + "\n")
            self._seq += 1
            self._prev = entry_hash
        return entry_hash


def verify_chain(path: str) -> Tuple[bool, int, Optional[str]]:
    """
    Verify a hash-chain log file.

    Returns:
        Tuple of (valid, entries_checked, failure_reason)
    """
    prev = ""
    count = 0
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            count += 1
            try:
                entry = json.loads(line)
            except ValueError:
                return False, count, f"malformed entry at line {count}"
            if not isinstance(entry, dict) or not CHAIN_FIELDS.issubset(entry):
                return False, count, f"malformed entry at line {count}"
            if sha256_hex(canonicalize(entry["message"])) != entry["payload_hash"]:
                return False, count, f"payload hash mismatch at seq {entry['seq']}"
            if entry["prev_entry_hash"] != prev:
                return False, count, f"broken link at seq {entry['seq']}"
            if chain_entry_hash(prev, entry["payload_hash"]) != entry["entry_hash"]:
                return False, count, f"chain mismatch at seq {entry['seq']}"
            prev = entry["entry_hash"]
    return True, count, None


class S3ObjectLockPublisher(AuditPublisher):
    """Writes each message as a separate immutable object to an S3 bucket with Object Lock.
    Requires bucket with Object Lock enabled.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """

    def __init__(self, bucket: str, prefix: str, retention_days: int, legal_hold: str = "OFF", client=None):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = retention_days
        self.legal_hold = legal_hold
        self._client = client

    def _get_client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("s3")
        return self._client

    def publish(self, message: Dict[str, Any]) -> str:
        body = canonicalize(message)
        digest = sha256_hex(body)
        now = datetime.now(timezone.utc)
        key = f"{self.prefix}{now.strftime('%Y%m%dT%H%M%S')}-{message.get('t_id', 'unknown')}-{digest[:16]}.json"
        self._get_client().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType="application/json",
            ObjectLockMode="COMPLIANCE",
            ObjectLockRetainUntilDate=now + timedelta(days=int(self.retention_days)),
            ObjectLockLegalHoldStatus=self.legal_hold
        )
        return key


def get_audit_publisher(
    backend: str,
    channel: str,
    file_path: str = "",
    bucket: str = "",
    prefix: str = "keyring-signer/",
    retention_days: int = 365,
    legal_hold: str = "OFF"
) -> AuditPublisher:
    """
    Factory function for an audit channel.

    Args:
        backend: "file", "s3_object_lock" or "memory"
        channel: "validation" or "rejection"; used as the S3 key prefix
    """
    if backend == "s3_object_lock":
        if not bucket:
            raise ValueError("S3_BUCKET is required for the s3_object_lock audit backend")
        return S3ObjectLockPublisher(
            bucket=bucket,
            prefix=f"{prefix.rstrip('/')}/{channel}/",
            retention_days=retention_days,
            legal_hold=legal_hold,
        )
    if backend == "memory":
        return InMemoryAuditPublisher()
    if backend == "file":
        return HashChainFilePublisher(file_path)
    raise ValueError(f"Unknown audit backend: {backend}")
