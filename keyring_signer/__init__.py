"""
Keyring Signer

Automated co-signer for multi-signature scheduled ledger transactions.

Each pending scheduled transaction goes through one pipeline:
    decode -> reconcile -> classify -> act

The binary transaction body is decoded into a contract call, the signer
checks whether its key still has to sign, a declarative policy table
assigns a risk tier, and the transaction is signed (LOW, MEDIUM) or
rejected (HIGH, CRITICAL). Every review is written to an append-only
audit channel, whatever the outcome.

Usage:
    from keyring_signer import (
        InterfaceTable,
        PolicyEngine,
        PolicyTable,
        decode_envelope,
    )
    from keyring_signer.config import load_json, INTERFACE_TABLE_PATH, POLICY_TABLE_PATH

    table = InterfaceTable.from_dict(load_json(INTERFACE_TABLE_PATH))
    engine = PolicyEngine(
        PolicyTable.from_dict(load_json(POLICY_TABLE_PATH)),
        table.function_names(),
    )

    call = decode_envelope(body_bytes, table)
    assessment = engine.classify(call, "0.0.5012345")

    if assessment.tier.permits_signing():
        ...
"""

__version__ = "1.0.0"

# Errors
from .errors import (
    KeyringSignerError,
    DecodeError,
    DecodeFailure,
    InterpretError,
    ReconcileError,
    KeyFormatError,
    TransientIOError,
    LedgerQueryError,
    SigningError,
    PolicyConfigError,
)

# Wire decoding and call interpretation
from .wire import (
    ContractId,
    DecodedCall,
    WireCursor,
    decode_envelope,
    encode_envelope,
)
from .abi import (
    FunctionSignature,
    InterfaceTable,
    Parameter,
    interpret,
    encode_call,
    compute_selector,
)

# Keys and reconciliation
from .keys import PublicKey, keys_match
from .transactions import ExistingSignature, PendingTransaction, TransactionStatus
from .reconciler import ThresholdAccount, Reconciliation, reconcile, decode_key_structure

# Policy
from .policy import (
    RiskTier,
    RiskAssessment,
    PolicyTable,
    PolicyEngine,
    RULE_TYPES,
)

# Orchestration and adapters
from .ledger import LedgerQuery, MirrorNodeClient, InMemoryLedger
from .signer import ScheduleSigner, SignReceipt, DryRunScheduleSigner, RelayScheduleSigner
from .audit import (
    ReviewAction,
    ValidationRecord,
    AuditPublisher,
    InMemoryAuditPublisher,
    HashChainFilePublisher,
    S3ObjectLockPublisher,
)
from .orchestrator import SigningOrchestrator, ReviewOutcome, ReviewStage, RunReport

__all__ = [
    # Version
    "__version__",

    # Errors
    "KeyringSignerError",
    "DecodeError",
    "DecodeFailure",
    "InterpretError",
    "ReconcileError",
    "KeyFormatError",
    "TransientIOError",
    "LedgerQueryError",
    "SigningError",
    "PolicyConfigError",

    # Wire / ABI
    "ContractId",
    "DecodedCall",
    "WireCursor",
    "decode_envelope",
    "encode_envelope",
    "FunctionSignature",
    "InterfaceTable",
    "Parameter",
    "interpret",
    "encode_call",
    "compute_selector",

    # Keys
    "PublicKey",
    "keys_match",
    "ExistingSignature",
    "PendingTransaction",
    "TransactionStatus",
    "ThresholdAccount",
    "Reconciliation",
    "reconcile",
    "decode_key_structure",

    # Policy
    "RiskTier",
    "RiskAssessment",
    "PolicyTable",
    "PolicyEngine",
    "RULE_TYPES",

    # Orchestration
    "LedgerQuery",
    "MirrorNodeClient",
    "InMemoryLedger",
    "ScheduleSigner",
    "SignReceipt",
    "DryRunScheduleSigner",
    "RelayScheduleSigner",
    "ReviewAction",
    "ValidationRecord",
    "AuditPublisher",
    "InMemoryAuditPublisher",
    "HashChainFilePublisher",
    "S3ObjectLockPublisher",
    "SigningOrchestrator",
    "ReviewOutcome",
    "ReviewStage",
    "RunReport",
]
