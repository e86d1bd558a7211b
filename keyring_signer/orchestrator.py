"""
Signing orchestrator.

Drives each pending scheduled transaction through the review state machine:

    FETCHED -> DECODED -> CLASSIFIED -> ACTED -> RECORDED
    (any stage) -> ERRORED

Invariants:
- At most one action (sign or reject) per schedule id per orchestrator
- Never signs a transaction the local key has already signed
- Every reviewed transaction gets a ValidationRecord, errors included
- One failed transaction never stops the rest of the batch
"""

import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .abi import InterfaceTable
from .audit import AuditPublisher, ReviewAction, ValidationRecord
from .errors import DecodeError, KeyringSignerError, TransientIOError
from .keys import PublicKey
from .ledger import LedgerQuery
from .logging_config import audit_log, schedule_id_var, set_run_id
from .policy import PolicyEngine, RiskAssessment
from .reconciler import Reconciliation, reconcile
from .signer import ScheduleSigner
from .transactions import TransactionStatus
from .util import utc_now_iso
from .wire import FIELD_CONTRACT_CALL, DecodedCall, decode_envelope

logger = logging.getLogger(__name__)


class ReviewStage(str, Enum):
    """Review state machine stages."""
    FETCHED = "FETCHED"
    DECODED = "DECODED"
    CLASSIFIED = "CLASSIFIED"
    ACTED = "ACTED"
    RECORDED = "RECORDED"
    ERRORED = "ERRORED"


@dataclass
class ReviewOutcome:
    """Result of reviewing one scheduled transaction."""
    schedule_id: str
    stage: ReviewStage
    action: ReviewAction
    call: Optional[DecodedCall] = None
    reconciliation: Optional[Reconciliation] = None
    assessment: Optional[RiskAssessment] = None
    error: Optional[str] = None
    record: Optional[ValidationRecord] = None
    record_published: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "schedule_id": self.schedule_id,
            "stage": self.stage.value,
            "action": self.action.value,
            "record_published": self.record_published,
        }
        if self.assessment:
            d["assessment"] = self.assessment.to_dict()
        if self.reconciliation:
            d["reconciliation"] = self.reconciliation.to_dict()
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class RunReport:
    """Summary of one batch run."""
    run_id: str
    started_at: str
    finished_at: str = ""
    outcomes: List[ReviewOutcome] = field(default_factory=list)
    not_started: List[str] = field(default_factory=list)
    stopped: bool = False

    def counts(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in ReviewAction}
        for outcome in self.outcomes:
            counts[outcome.action.value] += 1
        return counts

    def has_errors(self) -> bool:
        return any(o.action == ReviewAction.ERRORED for o in self.outcomes)

    def outcome_for(self, schedule_id: str) -> Optional[ReviewOutcome]:
        for outcome in self.outcomes:
            if outcome.schedule_id == schedule_id:
                return outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "counts": self.counts(),
            "stopped": self.stopped,
            "not_started": self.not_started,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class _ReviewFailed(Exception):
    """Internal: ends a review in ERRORED at a known stage."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SigningOrchestrator:
    """
    Reviews pending scheduled transactions and signs or rejects them.

    Reference data (interface table, policy engine, local key) is read-only
    and shared by all review threads. The only mutable shared state is the
    set of schedule ids this orchestrator has acted on, guarded by a lock.
    """

    def __init__(
        self,
        ledger: LedgerQuery,
        signer: ScheduleSigner,
        policy_engine: PolicyEngine,
        interface_table: InterfaceTable,
        validation_publisher: AuditPublisher,
        rejection_publisher: AuditPublisher,
        local_key: PublicKey,
        reviewer: str,
        creator_account_id: str = "",
        project_registration_tx_id: str = "",
        concurrency: int = 4,
        retry_attempts: int = 3,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        inner_field: int = FIELD_CONTRACT_CALL,
        dry_run: bool = False
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self.ledger = ledger
        self.signer = signer
        self.policy_engine = policy_engine
        self.interface_table = interface_table
        self.validation_publisher = validation_publisher
        self.rejection_publisher = rejection_publisher
        self.local_key = local_key
        self.reviewer = reviewer
        self.creator_account_id = creator_account_id
        self.project_registration_tx_id = project_registration_tx_id
        self.concurrency = concurrency
        self.retry_attempts = retry_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.inner_field = inner_field
        self.dry_run = dry_run

        self._claimed: set = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()

    # ------------------------------------------------------------
    # Control
    # ------------------------------------------------------------

    def stop(self) -> None:
        """Stop before the next review starts. Reviews in flight finish."""
        self._stop.set()

    def _call_with_retry(self, fn: Callable, *args):
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception_type(TransientIOError),
            reraise=True,
        )
        return retrying(fn, *args)

    def _claim(self, schedule_id: str) -> bool:
        with self._lock:
            if schedule_id in self._claimed:
                return False
            self._claimed.add(schedule_id)
            return True

    def _release(self, schedule_id: str) -> None:
        with self._lock:
            self._claimed.discard(schedule_id)

    # ------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------

    def run(self, schedule_ids: Optional[Iterable[str]] = None) -> RunReport:
        """
        Review one batch.

        Args:
            schedule_ids: Explicit ids to review. When omitted, the pending
                schedules of creator_account_id are listed once at start.
        """
        self._stop.clear()
        report = RunReport(run_id=set_run_id(), started_at=utc_now_iso())

        if schedule_ids is None:
            schedule_ids = self._call_with_retry(
                self.ledger.list_pending_schedule_ids, self.creator_account_id
            )
        batch = list(dict.fromkeys(schedule_ids))
        logger.info(
            "Reviewing %d scheduled transactions%s", len(batch), " (dry run)" if self.dry_run else ""
        )

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = {}
            for schedule_id in batch:
                ctx = contextvars.copy_context()
                futures[pool.submit(ctx.run, self.review, schedule_id)] = schedule_id
            for future in as_completed(futures):
                outcome = future.result()
                if outcome is None:
                    report.not_started.append(futures[future])
                else:
                    report.outcomes.append(outcome)

        report.stopped = self._stop.is_set()
        report.finished_at = utc_now_iso()
        audit_log.run_complete(len(report.outcomes), report.counts())
        return report

    # ------------------------------------------------------------
    # Single review
    # ------------------------------------------------------------

    def review(self, schedule_id: str) -> Optional[ReviewOutcome]:
        """
        Review one scheduled transaction.

        Returns None only when the orchestrator was stopped before the
        review began. Never raises for per-transaction failures.
        """
        if self._stop.is_set():
            return None
        schedule_id_var.set(schedule_id)
        audit_log.review_started(schedule_id)

        if not self._claim(schedule_id):
            outcome = ReviewOutcome(
                schedule_id=schedule_id,
                stage=ReviewStage.RECORDED,
                action=ReviewAction.SKIPPED,
                error=None,
            )
            audit_log.transaction_skipped(schedule_id, "already reviewed by this signer")
            return self._record(outcome, rationale="already reviewed by this signer")

        outcome = ReviewOutcome(
            schedule_id=schedule_id,
            stage=ReviewStage.FETCHED,
            action=ReviewAction.ERRORED,
        )
        try:
            self._advance(outcome)
        except _ReviewFailed as e:
            outcome.action = ReviewAction.ERRORED
            outcome.error = e.reason
        except KeyringSignerError as e:
            outcome.action = ReviewAction.ERRORED
            outcome.error = f"{type(e).__name__}: {e}"
        except Exception as e:
            # Fail closed: unexpected errors never sign
            logger.exception("Unexpected error reviewing %s", schedule_id)
            outcome.action = ReviewAction.ERRORED
            outcome.error = f"{type(e).__name__}: {e}"

        if outcome.action == ReviewAction.ERRORED:
            outcome.stage = ReviewStage.ERRORED
            audit_log.review_errored(schedule_id, outcome.error or "")
        if outcome.action not in (ReviewAction.SIGNED, ReviewAction.REJECTED):
            self._release(schedule_id)

        rationale = outcome.assessment.rationale if outcome.assessment else ""
        if outcome.action == ReviewAction.SKIPPED:
            rationale = self._skip_reason(outcome.reconciliation)
        return self._record(outcome, rationale=rationale)

    def _advance(self, outcome: ReviewOutcome) -> None:
        schedule_id = outcome.schedule_id
        tx = self._call_with_retry(self.ledger.get_pending_transaction, schedule_id)

        try:
            call = decode_envelope(tx.envelope, self.interface_table, self.inner_field)
        except DecodeError as e:
            audit_log.decode_failed(schedule_id, str(e))
            raise _ReviewFailed(f"DecodeError: {e}") from e
        outcome.call = call
        outcome.stage = ReviewStage.DECODED

        account = self._call_with_retry(self.ledger.get_threshold_account, tx.payer_account_id)
        reconciliation = reconcile(account, tx, self.local_key)
        outcome.reconciliation = reconciliation
        if not reconciliation.requires_local_signature:
            outcome.action = ReviewAction.SKIPPED
            outcome.stage = ReviewStage.RECORDED
            if tx.status != TransactionStatus.PENDING or reconciliation.already_signed_by_local:
                audit_log.transaction_skipped(schedule_id, self._skip_reason(reconciliation))
            else:
                audit_log.security_event(
                    "local key not a member of payer threshold list",
                    severity="low",
                    schedule_id=schedule_id,
                    payer_account_id=tx.payer_account_id,
                )
            return

        assessment = self.policy_engine.classify(call, schedule_id)
        outcome.assessment = assessment
        outcome.stage = ReviewStage.CLASSIFIED
        audit_log.risk_assessed(schedule_id, call.function_name, assessment.tier.value, assessment.rule_id)

        if assessment.tier.permits_signing():
            receipt = self._call_with_retry(self.signer.sign, schedule_id)
            audit_log.signature_requested(schedule_id, receipt.status, receipt.transaction_id)
            if not receipt.success:
                raise _ReviewFailed(f"signing failed with status {receipt.status}")
            outcome.action = ReviewAction.SIGNED
        else:
            record = self._build_record(outcome, ReviewAction.REJECTED, assessment.rationale)
            self._call_with_retry(self.rejection_publisher.publish, record.rejection_message())
            audit_log.transaction_rejected(schedule_id, assessment.tier.value, assessment.rationale)
            outcome.action = ReviewAction.REJECTED
        outcome.stage = ReviewStage.ACTED

    @staticmethod
    def _skip_reason(reconciliation: Optional[Reconciliation]) -> str:
        if reconciliation is None:
            return "already reviewed by this signer"
        if reconciliation.already_signed_by_local:
            return "already signed by local key"
        if not reconciliation.local_is_member:
            return "local key is not a member of the threshold list"
        return "transaction is no longer pending"

    # ------------------------------------------------------------
    # Records
    # ------------------------------------------------------------

    def _build_record(self, outcome: ReviewOutcome, action: ReviewAction, rationale: str) -> ValidationRecord:
        call = outcome.call
        assessment = outcome.assessment
        return ValidationRecord(
            schedule_id=outcome.schedule_id,
            reviewer=self.reviewer,
            action=action,
            timestamp=utc_now_iso(),
            function_name=call.function_name if call else None,
            risk_tier=assessment.tier.value if assessment else None,
            rationale=rationale,
            rule_id=assessment.rule_id if assessment else None,
            error=outcome.error,
            contract_id=str(call.contract_id) if call else None,
            memo=call.memo if call else "",
            project_registration_tx_id=self.project_registration_tx_id,
            dry_run=self.dry_run,
        )

    def _record(self, outcome: ReviewOutcome, rationale: str) -> ReviewOutcome:
        record = self._build_record(outcome, outcome.action, rationale)
        outcome.record = record
        try:
            self._call_with_retry(self.validation_publisher.publish, record.topic_message())
            outcome.record_published = True
            if outcome.stage != ReviewStage.ERRORED:
                outcome.stage = ReviewStage.RECORDED
        except Exception as e:
            logger.error(
                "Could not publish validation record for %s: %s",
                outcome.schedule_id, e
            )
            outcome.error = (outcome.error + "; " if outcome.error else "") + f"record not published: {e}"
        return outcome
