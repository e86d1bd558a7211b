#!/usr/bin/env python3
"""
Keyring Signer Command Line Interface

Usage:
    keyring-signer review [--schedule-id <id> ...] [--dry-run] [--concurrency N]
    keyring-signer decode --body <base64|hex> [--interfaces <file>]
    keyring-signer classify --body <base64|hex> [--interfaces <file>] [--policy <file>]
    keyring-signer compare-keys <key> <key>
    keyring-signer verify-log --file <jsonl>
    keyring-signer keygen --output <file> [--key-id <kid>]
"""

import argparse
import json
import logging
import sys

from . import config
from .errors import KeyFormatError, KeyringSignerError, PolicyConfigError
from .logging_config import configure_logging
from .util import decode_text_bytes

logger = logging.getLogger(__name__)


def save_json(data: dict, path: str):
    """Save JSON to file."""
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def print_json(data: dict):
    print(json.dumps(data, indent=2, default=str))


def _read_body(args) -> bytes:
    if args.file:
        with open(args.file, 'r', encoding='utf-8') as f:
            text = f.read().strip()
    else:
        text = args.body or ""
    if not text:
        raise ValueError("provide --body or --file")
    return decode_text_bytes(text)


def build_orchestrator(args):
    """Wire the orchestrator from environment configuration."""
    from .audit import get_audit_publisher
    from .keys import PublicKey, get_key_provider
    from .ledger import InMemoryLedger, MirrorNodeClient
    from .orchestrator import SigningOrchestrator
    from .policy import PolicyEngine
    from .signer import get_schedule_signer

    interface_table = config.load_interface_table(args.interfaces)
    policy_table = config.load_policy_table(args.policy)
    engine = PolicyEngine(policy_table, interface_table.function_names())
    local_key = PublicKey.from_string(config.OPERATOR_PUBLIC_KEY)
    ledger = MirrorNodeClient(config.MIRROR_NODE_URL, timeout=config.HTTP_TIMEOUT)
    creator_account_id = config.PROJECT_OPERATOR_ACCOUNT_ID or ledger.resolve_operator_account(
        config.PROJECT_REGISTRY_TOPIC
    )

    signer_type = "dry_run" if args.dry_run else config.SIGNER_TYPE
    key_provider = None
    if signer_type == "relay":
        key_provider = get_key_provider(
            config.KEY_PROVIDER,
            signing_key_path=config.SIGNING_KEY_PATH,
            kms_key_id=config.AWS_KMS_KEY_ID,
            region=config.AWS_REGION,
            kid=config.AWS_KMS_KID,
        )
    signer = get_schedule_signer(
        signer_type,
        relay_url=config.SIGNING_RELAY_URL,
        key_provider=key_provider,
        account_id=config.HEDERA_ACCOUNT_ID,
        timeout=config.HTTP_TIMEOUT,
        ledger=ledger if isinstance(ledger, InMemoryLedger) else None,
        public_key=local_key,
    )

    publisher_options = dict(
        bucket=config.S3_BUCKET,
        prefix=config.S3_PREFIX,
        retention_days=config.S3_RETENTION_DAYS,
        legal_hold=config.S3_LEGAL_HOLD,
    )
    return SigningOrchestrator(
        ledger=ledger,
        signer=signer,
        policy_engine=engine,
        interface_table=interface_table,
        validation_publisher=get_audit_publisher(
            config.AUDIT_BACKEND, "validation", file_path=config.VALIDATION_LOG_PATH, **publisher_options
        ),
        rejection_publisher=get_audit_publisher(
            config.AUDIT_BACKEND, "rejection", file_path=config.REJECTION_LOG_PATH, **publisher_options
        ),
        local_key=local_key,
        reviewer=config.HEDERA_ACCOUNT_ID,
        creator_account_id=creator_account_id,
        project_registration_tx_id=config.PROJECT_REGISTRATION_TX,
        concurrency=args.concurrency or config.REVIEW_CONCURRENCY,
        retry_attempts=config.RETRY_ATTEMPTS,
        backoff_seconds=config.RETRY_BACKOFF_SECONDS,
        backoff_max_seconds=config.RETRY_BACKOFF_MAX_SECONDS,
        dry_run=signer_type == "dry_run",
    )


def cmd_review(args):
    """Review one batch of pending scheduled transactions."""
    missing = config.missing_settings()
    if missing:
        for name in missing:
            print(f"Missing setting: {name}", file=sys.stderr)
        return 2
    try:
        orchestrator = build_orchestrator(args)
    except PolicyConfigError as e:
        print(f"Policy configuration error: {e}", file=sys.stderr)
        return 2
    except (KeyringSignerError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    try:
        report = orchestrator.run(args.schedule_id or None)
    except KeyringSignerError as e:
        logger.error("Run aborted: %s", e)
        return 1

    if args.output:
        save_json(report.to_dict(), args.output)
    print_json({"run_id": report.run_id, "counts": report.counts()})
    for outcome in report.outcomes:
        tier = outcome.assessment.tier.value if outcome.assessment else "-"
        print(f"  {outcome.schedule_id}: {outcome.action.value} (risk {tier})")
        if outcome.error:
            print(f"    error: {outcome.error}")
    return 1 if report.has_errors() else 0


def cmd_decode(args):
    """Decode a scheduled transaction body."""
    from .wire import decode_envelope

    try:
        table = config.load_interface_table(args.interfaces)
        call = decode_envelope(_read_body(args), table)
    except (KeyringSignerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print_json(call.to_dict())
    return 0


def cmd_classify(args):
    """Decode then classify a scheduled transaction body."""
    from .policy import PolicyEngine
    from .wire import decode_envelope

    try:
        table = config.load_interface_table(args.interfaces)
        engine = PolicyEngine(config.load_policy_table(args.policy), table.function_names())
        call = decode_envelope(_read_body(args), table)
    except PolicyConfigError as e:
        print(f"Policy configuration error: {e}", file=sys.stderr)
        return 2
    except (KeyringSignerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    assessment = engine.classify(call, args.schedule_id or "")
    print_json({"call": call.to_dict(), "assessment": assessment.to_dict()})
    return 0 if assessment.tier.permits_signing() else 3


def cmd_compare_keys(args):
    """Check whether two key encodings are the same key."""
    from .keys import PublicKey

    try:
        a = PublicKey.from_string(args.key_a)
        b = PublicKey.from_string(args.key_b)
    except KeyFormatError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    match = a == b
    print_json({"match": match, "key_a": a.raw_hex(), "key_b": b.raw_hex()})
    return 0 if match else 1


def cmd_verify_log(args):
    """Verify a hash-chained audit log."""
    from .audit import verify_chain

    try:
        valid, count, reason = verify_chain(args.file)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if valid:
        print(f"PASS: {count} entries, chain valid")
        return 0
    print(f"FAIL: {reason}")
    return 1


def cmd_keygen(args):
    """Generate an Ed25519 relay signing key file."""
    from .keys import generate_key_file

    public_key = generate_key_file(args.output, args.key_id)
    print(f"Generated signing key: {args.output}")
    print(f"Key ID: {args.key_id}")
    print(f"Public key (raw): {public_key.raw_hex()}")
    print(f"Public key (DER): {public_key.der_hex()}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Keyring Signer CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  keyring-signer review --dry-run
  keyring-signer review -s 0.0.5012345 -s 0.0.5012346
  keyring-signer decode -b "GhQKAhgD..."
  keyring-signer classify -b 1a2b0a0318c90e... -p my_policy.json
  keyring-signer compare-keys 302a300506032b6570032100<hex> <hex>
  keyring-signer keygen -o secrets/keyring_signing_key.json
        """
    )
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Log level")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # review
    review_parser = subparsers.add_parser("review", help="Review pending scheduled transactions")
    review_parser.add_argument("-s", "--schedule-id", action="append", help="Review only this schedule (repeatable)")
    review_parser.add_argument("--dry-run", action="store_true", help="Do not submit signatures")
    review_parser.add_argument("-c", "--concurrency", type=int, help="Concurrent reviews")
    review_parser.add_argument("-i", "--interfaces", help="Interface table JSON file")
    review_parser.add_argument("-p", "--policy", help="Policy table JSON file")
    review_parser.add_argument("-o", "--output", help="Write the run report to this file")

    # decode / classify
    for name, help_text in (("decode", "Decode a transaction body"), ("classify", "Classify a transaction body")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("-b", "--body", help="Transaction body, base64 or hex")
        sub.add_argument("-f", "--file", help="File containing the transaction body")
        sub.add_argument("-i", "--interfaces", help="Interface table JSON file")
        if name == "classify":
            sub.add_argument("-p", "--policy", help="Policy table JSON file")
            sub.add_argument("-s", "--schedule-id", help="Schedule id to report")

    # compare-keys
    compare_parser = subparsers.add_parser("compare-keys", help="Compare two public key encodings")
    compare_parser.add_argument("key_a")
    compare_parser.add_argument("key_b")

    # verify-log
    verify_parser = subparsers.add_parser("verify-log", help="Verify a hash-chained audit log")
    verify_parser.add_argument("-f", "--file", required=True, help="JSONL audit log")

    # keygen
    keygen_parser = subparsers.add_parser("keygen", help="Generate relay signing key")
    keygen_parser.add_argument("-o", "--output", required=True, help="Output key file")
    keygen_parser.add_argument("-k", "--key-id", default="keyring-signer-01", help="Key identifier")

    args = parser.parse_args(argv)
    configure_logging(args.log_level, json_format=config.LOG_JSON, log_file=config.LOG_FILE or None)

    commands = {
        "review": cmd_review,
        "decode": cmd_decode,
        "classify": cmd_classify,
        "compare-keys": cmd_compare_keys,
        "verify-log": cmd_verify_log,
        "keygen": cmd_keygen,
    }
    if args.command not in commands:
        parser.print_help()
        return 0
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
