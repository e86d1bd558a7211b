"""
Ledger query adapters.

LedgerQuery is the read side of the ledger the orchestrator depends on.
MirrorNodeClient implements it over the mirror node REST API;
InMemoryLedger serves tests and offline replays.

Error mapping:
- connection failures, timeouts, HTTP 429 and 5xx raise TransientIOError
- any other non-success response raises LedgerQueryError
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from .errors import KeyFormatError, LedgerQueryError, ReconcileError, TransientIOError
from .keys import PublicKey
from .models import MirrorAccount, MirrorSchedule, MirrorScheduleList, MirrorTopicMessageList
from .reconciler import ThresholdAccount, account_from_key_bytes
from .transactions import ExistingSignature, PendingTransaction, TransactionStatus
from .util import b64d

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 50
DEFAULT_MAX_PAGES = 10
REGISTRY_MESSAGE_LIMIT = 10


class LedgerQuery(ABC):
    """Read-only view of scheduled transactions and account keys."""

    @abstractmethod
    def list_pending_schedule_ids(self, creator_account_id: str) -> List[str]:
        """IDs of schedules created by the account that are neither executed nor deleted."""
        pass

    @abstractmethod
    def get_pending_transaction(self, schedule_id: str) -> PendingTransaction:
        pass

    @abstractmethod
    def get_threshold_account(self, account_id: str) -> ThresholdAccount:
        pass

    @abstractmethod
    def resolve_operator_account(self, topic_id: str) -> str:
        """Operator account recorded in the newest registration on a project registry topic."""
        pass


def _schedule_status(schedule: MirrorSchedule) -> TransactionStatus:
    if schedule.deleted:
        return TransactionStatus.DELETED
    if schedule.executed_timestamp:
        return TransactionStatus.EXECUTED
    return TransactionStatus.PENDING


def transaction_from_mirror(schedule: MirrorSchedule) -> PendingTransaction:
    """Convert a mirror node schedule to a PendingTransaction."""
    signatures = []
    for sig in schedule.signatures:
        try:
            key = PublicKey.from_string(sig.public_key_prefix)
        except KeyFormatError:
            logger.warning(
                "Ignoring signature with unusable key prefix on %s", schedule.schedule_id
            )
            continue
        signatures.append(ExistingSignature(
            public_key=key,
            signature=b64d(sig.signature) if sig.signature else b"",
            consensus_timestamp=sig.consensus_timestamp,
        ))
    try:
        envelope = b64d(schedule.transaction_body) if schedule.transaction_body else b""
    except ValueError as e:
        raise LedgerQueryError(f"{schedule.schedule_id}: transaction_body is not base64") from e
    return PendingTransaction(
        schedule_id=schedule.schedule_id,
        creator_account_id=schedule.creator_account_id,
        payer_account_id=schedule.payer_account_id,
        envelope=envelope,
        existing_signatures=tuple(signatures),
        status=_schedule_status(schedule),
        memo=schedule.memo,
    )


def operator_from_registry_message(message: str) -> Optional[str]:
    """
    Extract metadata.operatorAccountId from a base64 registry topic message.

    Returns None for messages that are not JSON registrations.
    """
    try:
        entry = json.loads(b64d(message).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(entry, dict) or not isinstance(entry.get("metadata"), dict):
        return None
    operator = entry["metadata"].get("operatorAccountId")
    return operator if isinstance(operator, str) and operator else None


def account_from_mirror(account: MirrorAccount) -> ThresholdAccount:
    """Convert a mirror node account to its ThresholdAccount."""
    if account.key is None:
        raise ReconcileError(f"{account.account}: account has no key")
    key_type = account.key.type.upper()
    if key_type == "ED25519":
        return ThresholdAccount.build(account.account, 1, [account.key.key])
    if key_type == "PROTOBUFENCODED":
        try:
            raw = bytes.fromhex(account.key.key)
        except ValueError as e:
            raise ReconcileError(f"{account.account}: key is not hex") from e
        return account_from_key_bytes(account.account, raw)
    raise ReconcileError(f"{account.account}: unsupported key type {account.key.type}")


class MirrorNodeClient(LedgerQuery):
    """
    Mirror node REST client.

    Docs: https://docs.hedera.com/hedera/sdks-and-apis/rest-api
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        page_limit: int = DEFAULT_PAGE_LIMIT,
        max_pages: int = DEFAULT_MAX_PAGES
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.page_limit = page_limit
        self.max_pages = max_pages

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            r = self.session.get(url, params=params, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientIOError(f"GET {url}: {e}") from e
        if r.status_code == 429 or r.status_code >= 500:
            raise TransientIOError(f"GET {url}: HTTP {r.status_code}")
        if r.status_code != 200:
            raise LedgerQueryError(f"GET {url}: HTTP {r.status_code}", status_code=r.status_code)
        try:
            return r.json()
        except ValueError as e:
            raise LedgerQueryError(f"GET {url}: response is not JSON") from e

    def list_pending_schedule_ids(self, creator_account_id: str) -> List[str]:
        ids: List[str] = []
        path: Optional[str] = "/api/v1/schedules"
        params: Optional[Dict[str, Any]] = {
            "account.id": creator_account_id,
            "order": "desc",
            "limit": self.page_limit,
        }
        pages = 0
        while path and pages < self.max_pages:
            try:
                page = MirrorScheduleList.model_validate(self._get(path, params))
            except ValidationError as e:
                raise LedgerQueryError(f"schedule list has unexpected shape: {e}") from e
            for schedule in page.schedules:
                if schedule.creator_account_id != creator_account_id:
                    continue
                if _schedule_status(schedule) == TransactionStatus.PENDING:
                    ids.append(schedule.schedule_id)
            path, params = page.links.next, None
            pages += 1
        logger.debug("Found %d pending schedules for %s", len(ids), creator_account_id)
        return ids

    def get_pending_transaction(self, schedule_id: str) -> PendingTransaction:
        try:
            schedule = MirrorSchedule.model_validate(self._get(f"/api/v1/schedules/{schedule_id}"))
        except ValidationError as e:
            raise LedgerQueryError(f"schedule {schedule_id} has unexpected shape: {e}") from e
        return transaction_from_mirror(schedule)

    def get_threshold_account(self, account_id: str) -> ThresholdAccount:
        try:
            account = MirrorAccount.model_validate(self._get(f"/api/v1/accounts/{account_id}"))
        except ValidationError as e:
            raise LedgerQueryError(f"account {account_id} has unexpected shape: {e}") from e
        return account_from_mirror(account)

    def resolve_operator_account(self, topic_id: str) -> str:
        path = f"/api/v1/topics/{topic_id}/messages"
        params = {"limit": REGISTRY_MESSAGE_LIMIT, "order": "desc"}
        try:
            page = MirrorTopicMessageList.model_validate(self._get(path, params))
        except ValidationError as e:
            raise LedgerQueryError(f"topic {topic_id} messages have unexpected shape: {e}") from e
        for message in page.messages:
            operator = operator_from_registry_message(message.message)
            if operator:
                logger.info(
                    "Resolved project operator %s from topic %s (sequence %d)",
                    operator, topic_id, message.sequence_number
                )
                return operator
        raise LedgerQueryError(f"topic {topic_id}: no registration carries an operator account")


class InMemoryLedger(LedgerQuery):
    """
    In-memory ledger for testing and offline replay.

    add_signature lets a dry-run signer write back, so a second run
    observes the first run's signatures.
    """

    def __init__(self):
        self._transactions: Dict[str, PendingTransaction] = {}
        self._accounts: Dict[str, ThresholdAccount] = {}
        self._registry: Dict[str, str] = {}
        self._lock = threading.Lock()

    def add_transaction(self, tx: PendingTransaction) -> None:
        with self._lock:
            self._transactions[tx.schedule_id] = tx

    def add_account(self, account: ThresholdAccount) -> None:
        with self._lock:
            self._accounts[account.account_id] = account

    def add_registry_entry(self, topic_id: str, operator_account_id: str) -> None:
        with self._lock:
            self._registry[topic_id] = operator_account_id

    def add_signature(self, schedule_id: str, public_key: PublicKey, signature: bytes = b"") -> None:
        with self._lock:
            tx = self._transactions[schedule_id]
            self._transactions[schedule_id] = PendingTransaction(
                schedule_id=tx.schedule_id,
                creator_account_id=tx.creator_account_id,
                payer_account_id=tx.payer_account_id,
                envelope=tx.envelope,
                existing_signatures=tx.existing_signatures + (ExistingSignature(public_key, signature),),
                status=tx.status,
                memo=tx.memo,
            )

    def list_pending_schedule_ids(self, creator_account_id: str) -> List[str]:
        with self._lock:
            return [
                tx.schedule_id for tx in self._transactions.values()
                if tx.creator_account_id == creator_account_id
                and tx.status == TransactionStatus.PENDING
            ]

    def get_pending_transaction(self, schedule_id: str) -> PendingTransaction:
        with self._lock:
            if schedule_id not in self._transactions:
                raise LedgerQueryError(f"schedule {schedule_id} not found", status_code=404)
            return self._transactions[schedule_id]

    def get_threshold_account(self, account_id: str) -> ThresholdAccount:
        with self._lock:
            if account_id not in self._accounts:
                raise LedgerQueryError(f"account {account_id} not found", status_code=404)
            return self._accounts[account_id]

    def resolve_operator_account(self, topic_id: str) -> str:
        with self._lock:
            if topic_id not in self._registry:
                raise LedgerQueryError(f"topic {topic_id} not found", status_code=404)
            return self._registry[topic_id]
