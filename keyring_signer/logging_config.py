"""
Logging configuration for the keyring signer.

Provides structured JSON logging tagged with the current run and schedule.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variables for run and transaction tracking
run_id_var: ContextVar[str] = ContextVar('run_id', default='')
schedule_id_var: ContextVar[str] = ContextVar('schedule_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        run_id = run_id_var.get()
        if run_id:
            log_data["run_id"] = run_id
        schedule_id = schedule_id_var.get()
        if schedule_id:
            log_data["schedule_id"] = schedule_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for review events.

    One method per pipeline event so log consumers can filter on event_type.
    """

    def __init__(self, name: str = "keyring_signer.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "run_id": run_id_var.get(),
            "schedule_id": kwargs.pop("schedule_id", None) or schedule_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def review_started(self, schedule_id: str) -> None:
        self._log(
            logging.INFO,
            "REVIEW_STARTED",
            schedule_id=schedule_id,
            message=f"Reviewing {schedule_id}"
        )

    def decode_failed(self, schedule_id: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "DECODE_FAILED",
            schedule_id=schedule_id,
            reason=reason,
            message=f"Could not decode {schedule_id}: {reason}"
        )

    def risk_assessed(self, schedule_id: str, function_name: str, tier: str, rule_id: Optional[str]) -> None:
        """Log a policy classification."""
        level = logging.INFO if tier in ("LOW", "MEDIUM") else logging.WARNING
        self._log(
            level,
            "RISK_ASSESSED",
            schedule_id=schedule_id,
            function_name=function_name,
            tier=tier,
            rule_id=rule_id,
            message=f"{function_name} assessed {tier}"
        )

    def signature_requested(self, schedule_id: str, status: str, transaction_id: Optional[str]) -> None:
        level = logging.INFO if status == "SUCCESS" else logging.ERROR
        self._log(
            level,
            "SIGNATURE_REQUESTED",
            schedule_id=schedule_id,
            status=status,
            transaction_id=transaction_id,
            message=f"Signature {status} for {schedule_id}"
        )

    def transaction_rejected(self, schedule_id: str, tier: str, rationale: str) -> None:
        self._log(
            logging.WARNING,
            "TRANSACTION_REJECTED",
            schedule_id=schedule_id,
            tier=tier,
            rationale=rationale,
            message=f"Rejected {schedule_id}: {rationale}"
        )

    def transaction_skipped(self, schedule_id: str, reason: str) -> None:
        self._log(
            logging.INFO,
            "TRANSACTION_SKIPPED",
            schedule_id=schedule_id,
            reason=reason,
            message=f"Skipped {schedule_id}: {reason}"
        )

    def review_errored(self, schedule_id: str, reason: str) -> None:
        self._log(
            logging.ERROR,
            "REVIEW_ERRORED",
            schedule_id=schedule_id,
            reason=reason,
            message=f"Review of {schedule_id} failed: {reason}"
        )

    def run_complete(self, total: int, counts: dict) -> None:
        self._log(
            logging.INFO,
            "RUN_COMPLETE",
            total=total,
            counts=counts,
            message=f"Reviewed {total} transactions"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    # Console handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set the run ID for the current context, generating one if not given."""
    if run_id is None:
        run_id = str(uuid.uuid4())
    run_id_var.set(run_id)
    return run_id


def get_run_id() -> str:
    return run_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
