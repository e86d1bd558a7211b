"""
Configuration module for the keyring signer.

Centralizes all configuration with environment variable support and
validation. Reference data (interface and policy tables) is loaded once
per run.
"""

import os
import json
from typing import Dict, Any
from pathlib import Path

from .abi import InterfaceTable
from .errors import PolicyConfigError
from .policy import PolicyTable

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("KEYRING_ENV", "dev")  # dev|stage|prod

MIRROR_NODE_URLS = {
    "testnet": "https://testnet.mirrornode.hedera.com",
    "mainnet": "https://mainnet.mirrornode.hedera.com",
    "previewnet": "https://previewnet.mirrornode.hedera.com",
}

HEDERA_NETWORK = os.getenv("HEDERA_NETWORK", "testnet")
MIRROR_NODE_URL = os.getenv("MIRROR_NODE_URL", MIRROR_NODE_URLS.get(HEDERA_NETWORK, MIRROR_NODE_URLS["testnet"]))

# Identities
HEDERA_ACCOUNT_ID = os.getenv("HEDERA_ACCOUNT_ID", "")
OPERATOR_PUBLIC_KEY = os.getenv("OPERATOR_PUBLIC_KEY", "")
PROJECT_OPERATOR_ACCOUNT_ID = os.getenv("PROJECT_OPERATOR_ACCOUNT_ID", "")
PROJECT_REGISTRATION_TX = os.getenv("PROJECT_REGISTRATION_TX", "")
PROJECT_REGISTRY_TOPIC = os.getenv("PROJECT_REGISTRY_TOPIC", "")

# Reference data, shipped inside the package
TABLES_DIR = Path(__file__).resolve().parent / "tables"
INTERFACE_TABLE_PATH = os.getenv("INTERFACE_TABLE_PATH", str(TABLES_DIR / "interfaces" / "deposit_minter_v2.json"))
POLICY_TABLE_PATH = os.getenv("POLICY_TABLE_PATH", str(TABLES_DIR / "policy" / "deposit_minter_v2.json"))

# Review execution
REVIEW_CONCURRENCY = int(os.getenv("REVIEW_CONCURRENCY", "4"))
RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", "3"))
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", "0.5"))
RETRY_BACKOFF_MAX_SECONDS = float(os.getenv("RETRY_BACKOFF_MAX_SECONDS", "8"))
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "10"))

# Signing configuration
SIGNER_TYPE = os.getenv("KEYRING_SIGNER", "dry_run")  # dry_run|relay
SIGNING_RELAY_URL = os.getenv("SIGNING_RELAY_URL", "")
KEY_PROVIDER = os.getenv("KEY_PROVIDER", "file")  # file|aws_kms
SIGNING_KEY_PATH = os.getenv("SIGNING_KEY_PATH", "secrets/keyring_signing_key.json")
AWS_KMS_KEY_ID = os.getenv("AWS_KMS_KEY_ID", "")
AWS_REGION = os.getenv("AWS_REGION", "")
AWS_KMS_KID = os.getenv("AWS_KMS_KID", "aws-kms-ed25519")

# Audit channels
AUDIT_BACKEND = os.getenv("AUDIT_BACKEND", "file")  # file|s3_object_lock
VALIDATION_LOG_PATH = os.getenv("VALIDATION_LOG_PATH", "audit/validations.jsonl")
REJECTION_LOG_PATH = os.getenv("REJECTION_LOG_PATH", "audit/rejections.jsonl")
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "keyring-signer/")
S3_RETENTION_DAYS = int(os.getenv("S3_RETENTION_DAYS", "365"))
S3_LEGAL_HOLD = os.getenv("S3_LEGAL_HOLD", "OFF")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")
LOG_FILE = os.getenv("LOG_FILE", "")


# ============================================================
# Reference Data Loaders
# ============================================================

def load_json(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_interface_table(path: str = None) -> InterfaceTable:
    """Load the contract interface table."""
    path = path or INTERFACE_TABLE_PATH
    try:
        return InterfaceTable.from_dict(load_json(path))
    except (OSError, json.JSONDecodeError) as e:
        raise PolicyConfigError(f"cannot load interface table {path}: {e}") from e


def load_policy_table(path: str = None) -> PolicyTable:
    """Load the policy rule table."""
    path = path or POLICY_TABLE_PATH
    try:
        return PolicyTable.from_dict(load_json(path))
    except (OSError, json.JSONDecodeError) as e:
        raise PolicyConfigError(f"cannot load policy table {path}: {e}") from e


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that all required configuration files exist.
    Returns dict of name -> exists.
    """
    paths = {
        "interface_table": INTERFACE_TABLE_PATH,
        "policy_table": POLICY_TABLE_PATH,
    }

    if SIGNER_TYPE == "relay" and KEY_PROVIDER == "file":
        paths["signing_key"] = SIGNING_KEY_PATH

    return {name: Path(path).exists() for name, path in paths.items()}


def missing_settings() -> Dict[str, str]:
    """Required environment settings that are empty, with a hint for each."""
    required = {
        "HEDERA_ACCOUNT_ID": HEDERA_ACCOUNT_ID,
        "OPERATOR_PUBLIC_KEY": OPERATOR_PUBLIC_KEY,
    }
    if not PROJECT_REGISTRY_TOPIC:
        required["PROJECT_OPERATOR_ACCOUNT_ID"] = PROJECT_OPERATOR_ACCOUNT_ID
    if SIGNER_TYPE == "relay":
        required["SIGNING_RELAY_URL"] = SIGNING_RELAY_URL
    return {name: "not set" for name, value in required.items() if not value}


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("KEYRING_DEBUG", "").lower() in ("1", "true", "yes")
