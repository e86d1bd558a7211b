"""
Ledger Query Adapter Test Suite

The mirror node HTTP session is mocked; no network access.
"""

import base64
import json
import unittest
from unittest import mock

import requests

from keyring_signer.errors import LedgerQueryError, ReconcileError, TransientIOError
from keyring_signer.ledger import InMemoryLedger, MirrorNodeClient
from keyring_signer.transactions import TransactionStatus
from keyring_signer.wire import encode_field

from builders import CREATOR, PAYER, pending_tx, public_key


def response(status: int, body=None):
    r = mock.Mock()
    r.status_code = status
    r.json.return_value = body if body is not None else {}
    return r


def topic_message(sequence_number, payload):
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return {
        "consensus_timestamp": f"1700000000.00000000{sequence_number}",
        "sequence_number": sequence_number,
        "message": base64.b64encode(raw).decode(),
    }


def registration(operator):
    return {
        "p": "hcs-2",
        "op": "register",
        "t_id": "0.0.7001",
        "metadata": {"operatorAccountId": operator, "projectName": "deposit minter"},
    }


def schedule_json(schedule_id, executed=None, deleted=False, creator=CREATOR, signers=()):
    return {
        "schedule_id": schedule_id,
        "creator_account_id": creator,
        "payer_account_id": PAYER,
        "transaction_body": base64.b64encode(b"\x1a\x00").decode(),
        "signatures": [
            {
                "public_key_prefix": base64.b64encode(k.raw).decode(),
                "signature": base64.b64encode(b"\x01" * 64).decode(),
                "type": "ED25519",
                "consensus_timestamp": "1700000000.000000001",
            }
            for k in signers
        ],
        "executed_timestamp": executed,
        "deleted": deleted,
        "memo": "TEST: mint",
    }


class TestMirrorNodeClient(unittest.TestCase):
    """REST parsing and error mapping."""

    def setUp(self):
        self.session = mock.Mock()
        self.client = MirrorNodeClient("https://mirror.test/", timeout=2, session=self.session)

    def test_list_pending_follows_pages_and_filters(self):
        self.session.get.side_effect = [
            response(200, {
                "schedules": [
                    schedule_json("0.0.11"),
                    schedule_json("0.0.12", executed="1700000000.1"),
                    schedule_json("0.0.13", deleted=True),
                ],
                "links": {"next": "/api/v1/schedules?account.id=0.0.4001&limit=50&schedule.id=lt:0.0.11"},
            }),
            response(200, {
                "schedules": [schedule_json("0.0.9"), schedule_json("0.0.8", creator="0.0.999")],
                "links": {"next": None},
            }),
        ]

        ids = self.client.list_pending_schedule_ids(CREATOR)

        self.assertEqual(ids, ["0.0.11", "0.0.9"])
        first_call = self.session.get.call_args_list[0]
        self.assertEqual(first_call.args[0], "https://mirror.test/api/v1/schedules")
        self.assertEqual(first_call.kwargs["params"]["account.id"], CREATOR)
        self.assertEqual(
            self.session.get.call_args_list[1].args[0],
            "https://mirror.test/api/v1/schedules?account.id=0.0.4001&limit=50&schedule.id=lt:0.0.11"
        )

    def test_get_pending_transaction(self):
        signer = public_key(2)
        self.session.get.return_value = response(200, schedule_json("0.0.11", signers=[signer]))

        tx = self.client.get_pending_transaction("0.0.11")

        self.assertEqual(tx.schedule_id, "0.0.11")
        self.assertEqual(tx.payer_account_id, PAYER)
        self.assertEqual(tx.envelope, b"\x1a\x00")
        self.assertEqual(tx.status, TransactionStatus.PENDING)
        self.assertEqual(tx.signer_keys(), frozenset({signer}))
        self.assertEqual(tx.memo, "TEST: mint")

    def test_executed_and_deleted_status(self):
        self.session.get.return_value = response(200, schedule_json("0.0.1", executed="1700000000.1"))
        self.assertEqual(self.client.get_pending_transaction("0.0.1").status, TransactionStatus.EXECUTED)
        self.session.get.return_value = response(200, schedule_json("0.0.1", deleted=True))
        self.assertEqual(self.client.get_pending_transaction("0.0.1").status, TransactionStatus.DELETED)

    def test_short_key_prefix_ignored(self):
        body = schedule_json("0.0.11")
        body["signatures"] = [{"public_key_prefix": base64.b64encode(b"\x01\x02").decode()}]
        self.session.get.return_value = response(200, body)
        self.assertEqual(self.client.get_pending_transaction("0.0.11").existing_signatures, ())

    def test_threshold_account_from_protobuf_key(self):
        keys = b"".join(encode_field(1, encode_field(2, public_key(s).raw)) for s in (1, 2, 3))
        key_bytes = encode_field(5, encode_field(1, 2) + encode_field(2, keys))
        self.session.get.return_value = response(200, {
            "account": PAYER,
            "key": {"_type": "ProtobufEncoded", "key": key_bytes.hex()},
        })

        account = self.client.get_threshold_account(PAYER)

        self.assertEqual(account.required_signature_count, 2)
        self.assertIn(public_key(3), account.member_keys)
        self.assertEqual(self.session.get.call_args.args[0], f"https://mirror.test/api/v1/accounts/{PAYER}")

    def test_single_ed25519_account(self):
        self.session.get.return_value = response(200, {
            "account": PAYER,
            "key": {"_type": "ED25519", "key": public_key(1).raw_hex()},
        })
        account = self.client.get_threshold_account(PAYER)
        self.assertEqual(account.required_signature_count, 1)

    def test_account_without_key(self):
        self.session.get.return_value = response(200, {"account": PAYER, "key": None})
        with self.assertRaises(ReconcileError):
            self.client.get_threshold_account(PAYER)

    def test_server_error_is_transient(self):
        self.session.get.return_value = response(503)
        with self.assertRaises(TransientIOError):
            self.client.get_pending_transaction("0.0.11")

    def test_rate_limit_is_transient(self):
        self.session.get.return_value = response(429)
        with self.assertRaises(TransientIOError):
            self.client.get_pending_transaction("0.0.11")

    def test_connection_error_is_transient(self):
        self.session.get.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(TransientIOError):
            self.client.list_pending_schedule_ids(CREATOR)

    def test_not_found_is_permanent(self):
        self.session.get.return_value = response(404, {"_status": {"messages": [{"message": "Not found"}]}})
        with self.assertRaises(LedgerQueryError) as ctx:
            self.client.get_pending_transaction("0.0.11")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_unexpected_shape(self):
        self.session.get.return_value = response(200, {"schedule_id": "0.0.11"})
        with self.assertRaises(LedgerQueryError):
            self.client.get_pending_transaction("0.0.11")

    def test_resolve_operator_from_newest_registration(self):
        self.session.get.return_value = response(200, {
            "messages": [
                topic_message(4, b"not json"),
                topic_message(3, {"p": "hcs-2", "op": "delete", "uid": "2"}),
                topic_message(2, registration(CREATOR)),
                topic_message(1, registration("0.0.1")),
            ],
            "links": {"next": None},
        })
        self.assertEqual(self.client.resolve_operator_account("0.0.7000"), CREATOR)
        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "https://mirror.test/api/v1/topics/0.0.7000/messages")
        self.assertEqual(kwargs["params"], {"limit": 10, "order": "desc"})

    def test_resolve_operator_without_registration(self):
        self.session.get.return_value = response(200, {
            "messages": [topic_message(1, {"metadata": {"operatorAccountId": 42}})],
        })
        with self.assertRaises(LedgerQueryError):
            self.client.resolve_operator_account("0.0.7000")

    def test_resolve_operator_empty_topic(self):
        self.session.get.return_value = response(200, {"messages": []})
        with self.assertRaises(LedgerQueryError):
            self.client.resolve_operator_account("0.0.7000")


class TestInMemoryLedger(unittest.TestCase):
    """Offline ledger."""

    def test_add_signature_is_observed(self):
        ledger = InMemoryLedger()
        ledger.add_transaction(pending_tx("0.0.5", b""))
        ledger.add_signature("0.0.5", public_key(1))
        self.assertEqual(ledger.get_pending_transaction("0.0.5").signer_keys(), frozenset({public_key(1)}))

    def test_lists_only_pending_for_creator(self):
        ledger = InMemoryLedger()
        ledger.add_transaction(pending_tx("0.0.5", b""))
        ledger.add_transaction(pending_tx("0.0.6", b"", status=TransactionStatus.EXECUTED))
        self.assertEqual(ledger.list_pending_schedule_ids(CREATOR), ["0.0.5"])
        self.assertEqual(ledger.list_pending_schedule_ids("0.0.1"), [])

    def test_missing_schedule(self):
        with self.assertRaises(LedgerQueryError):
            InMemoryLedger().get_pending_transaction("0.0.404")

    def test_registry_entry(self):
        ledger = InMemoryLedger()
        ledger.add_registry_entry("0.0.7000", CREATOR)
        self.assertEqual(ledger.resolve_operator_account("0.0.7000"), CREATOR)
        with self.assertRaises(LedgerQueryError):
            ledger.resolve_operator_account("0.0.7001")


if __name__ == "__main__":
    unittest.main()
