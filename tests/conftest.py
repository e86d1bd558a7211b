"""
Pytest fixtures shared by the CLI tests.
"""

import pytest

from keyring_signer import config
from keyring_signer.ledger import InMemoryLedger

from builders import CREATOR, REVIEWER, load_interface_table, public_key, threshold_account


@pytest.fixture
def interface_table():
    return load_interface_table()


@pytest.fixture
def ledger():
    """In-memory ledger holding the 2-of-3 payer account."""
    ledger = InMemoryLedger()
    ledger.add_account(threshold_account())
    return ledger


@pytest.fixture
def review_env(monkeypatch, tmp_path, ledger):
    """Dry-run review settings writing hash-chained logs under tmp_path."""
    monkeypatch.setattr(config, "HEDERA_ACCOUNT_ID", REVIEWER)
    monkeypatch.setattr(config, "OPERATOR_PUBLIC_KEY", public_key(1).der_hex())
    monkeypatch.setattr(config, "PROJECT_OPERATOR_ACCOUNT_ID", CREATOR)
    monkeypatch.setattr(config, "SIGNER_TYPE", "dry_run")
    monkeypatch.setattr(config, "AUDIT_BACKEND", "file")
    monkeypatch.setattr(config, "VALIDATION_LOG_PATH", str(tmp_path / "validations.jsonl"))
    monkeypatch.setattr(config, "REJECTION_LOG_PATH", str(tmp_path / "rejections.jsonl"))
    monkeypatch.setattr(config, "RETRY_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(config, "LOG_FILE", "")
    monkeypatch.setattr("keyring_signer.ledger.MirrorNodeClient", lambda *args, **kwargs: ledger)
    return tmp_path
