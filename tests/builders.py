"""
Shared builders for the keyring signer test suite.
"""

import json

from nacl.signing import SigningKey

from keyring_signer.abi import InterfaceTable, encode_call
from keyring_signer.audit import InMemoryAuditPublisher
from keyring_signer.config import TABLES_DIR
from keyring_signer.keys import PublicKey
from keyring_signer.orchestrator import SigningOrchestrator
from keyring_signer.policy import PolicyEngine, PolicyTable
from keyring_signer.reconciler import ThresholdAccount
from keyring_signer.signer import DryRunScheduleSigner
from keyring_signer.transactions import ExistingSignature, PendingTransaction, TransactionStatus
from keyring_signer.wire import ContractId, encode_envelope

INTERFACE_PATH = TABLES_DIR / "interfaces" / "deposit_minter_v2.json"
POLICY_PATH = TABLES_DIR / "policy" / "deposit_minter_v2.json"

CONTRACT = ContractId(0, 0, 5123456)
CREATOR = "0.0.4001"
PAYER = "0.0.4002"
REVIEWER = "0.0.4100"

CURRENT_RATIOS = [59, 1, 30, 1, 9]
ONE_HBAR = 100_000_000


def load_interface_table() -> InterfaceTable:
    with open(INTERFACE_PATH, "r", encoding="utf-8") as f:
        return InterfaceTable.from_dict(json.load(f))


def load_policy_dict() -> dict:
    with open(POLICY_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


def load_policy_engine(table: InterfaceTable = None) -> PolicyEngine:
    table = table or load_interface_table()
    return PolicyEngine(PolicyTable.from_dict(load_policy_dict()), table.function_names())


def signing_key(seed: int) -> SigningKey:
    return SigningKey(bytes([seed]) * 32)


def public_key(seed: int) -> PublicKey:
    return PublicKey(bytes(signing_key(seed).verify_key))


def call_payload(table: InterfaceTable, name: str, values) -> bytes:
    return encode_call(table.by_name(name), values)


def envelope(table: InterfaceTable, name: str, values, amount: int = 0, memo: str = "") -> bytes:
    return encode_envelope(
        contract_id=CONTRACT,
        gas=400_000,
        amount=amount,
        function_parameters=call_payload(table, name, values),
        memo=memo,
        transaction_fee=200_000_000,
    )


def valid_mint_envelope(table: InterfaceTable) -> bytes:
    return envelope(
        table,
        "mintWithDeposits",
        [1, 100_000, 300_000, 100_000, 900_000],
        amount=590_000_000,
    )


def pending_tx(schedule_id: str, body: bytes, signers=(), status=TransactionStatus.PENDING) -> PendingTransaction:
    return PendingTransaction(
        schedule_id=schedule_id,
        creator_account_id=CREATOR,
        payer_account_id=PAYER,
        envelope=body,
        existing_signatures=tuple(ExistingSignature(public_key=k) for k in signers),
        status=status,
    )


def threshold_account(member_seeds=(1, 2, 3), required: int = 2) -> ThresholdAccount:
    return ThresholdAccount(
        account_id=PAYER,
        required_signature_count=required,
        member_keys=frozenset(public_key(s) for s in member_seeds),
    )


def make_orchestrator(ledger, local_seed: int = 1, signer=None, **kwargs):
    """Orchestrator with in-memory publishers and no retry backoff."""
    table = kwargs.pop("interface_table", None) or load_interface_table()
    local = public_key(local_seed)
    signer = signer or DryRunScheduleSigner(ledger=ledger, public_key=local)
    validation = InMemoryAuditPublisher()
    rejection = InMemoryAuditPublisher()
    options = dict(
        creator_account_id=CREATOR,
        project_registration_tx_id="0.0.4001@1700000000.000000000",
        concurrency=3,
        retry_attempts=3,
        backoff_seconds=0,
        backoff_max_seconds=0,
    )
    options.update(kwargs)
    orchestrator = SigningOrchestrator(
        ledger=ledger,
        signer=signer,
        policy_engine=load_policy_engine(table),
        interface_table=table,
        validation_publisher=validation,
        rejection_publisher=rejection,
        local_key=local,
        reviewer=REVIEWER,
        **options
    )
    return orchestrator, signer, validation, rejection
