"""
Signing Adapter Test Suite
"""

import unittest
from unittest import mock

import requests

from keyring_signer.errors import SigningError, TransientIOError
from keyring_signer.keys import KeyProvider, verify_ed25519
from keyring_signer.ledger import InMemoryLedger
from keyring_signer.signer import (
    DryRunScheduleSigner,
    RelayScheduleSigner,
    get_schedule_signer,
)
from keyring_signer.util import b64e, canonicalize

from builders import REVIEWER, pending_tx, public_key, signing_key


class SeededKeyProvider(KeyProvider):
    """Key provider over a deterministic test key."""

    def __init__(self, seed: int):
        self._sk = signing_key(seed)

    def sign(self, payload):
        return "test-kid", b64e(self._sk.sign(payload).signature)

    def get_kid(self):
        return "test-kid"


def response(status: int, body=None):
    r = mock.Mock()
    r.status_code = status
    r.json.return_value = body or {}
    return r


class TestRelayScheduleSigner(unittest.TestCase):
    """Signed sign-requests to the relay."""

    def setUp(self):
        self.session = mock.Mock()
        self.signer = RelayScheduleSigner(
            "https://relay.test/",
            SeededKeyProvider(5),
            REVIEWER,
            timeout=3,
            session=self.session,
        )

    def test_request_is_signed(self):
        self.session.post.return_value = response(200, {"status": "SUCCESS", "transaction_id": "0.0.4100@1.2"})

        receipt = self.signer.sign("0.0.77")

        self.assertTrue(receipt.success)
        self.assertEqual(receipt.transaction_id, "0.0.4100@1.2")
        url = self.session.post.call_args.args[0]
        body = self.session.post.call_args.kwargs["json"]
        self.assertEqual(url, "https://relay.test/sign")
        self.assertEqual(body["schedule_id"], "0.0.77")
        self.assertEqual(body["account_id"], REVIEWER)
        unsigned = {k: v for k, v in body.items() if k not in ("kid", "signature")}
        self.assertTrue(verify_ed25519(public_key(5), canonicalize(unsigned), body["signature"]))

    def test_non_success_status(self):
        self.session.post.return_value = response(200, {"status": "INVALID_SCHEDULE_ID"})
        receipt = self.signer.sign("0.0.77")
        self.assertFalse(receipt.success)
        self.assertEqual(receipt.status, "INVALID_SCHEDULE_ID")

    def test_server_error_is_transient(self):
        self.session.post.return_value = response(502)
        with self.assertRaises(TransientIOError):
            self.signer.sign("0.0.77")

    def test_timeout_is_transient(self):
        self.session.post.side_effect = requests.Timeout("slow")
        with self.assertRaises(TransientIOError):
            self.signer.sign("0.0.77")

    def test_client_error_is_signing_error(self):
        self.session.post.return_value = response(401)
        with self.assertRaises(SigningError):
            self.signer.sign("0.0.77")

    def test_relay_url_required(self):
        with self.assertRaises(SigningError):
            RelayScheduleSigner("", SeededKeyProvider(5), REVIEWER)


class TestDryRunScheduleSigner(unittest.TestCase):
    """Offline signer."""

    def test_records_and_writes_back(self):
        ledger = InMemoryLedger()
        ledger.add_transaction(pending_tx("0.0.5", b""))
        signer = DryRunScheduleSigner(ledger=ledger, public_key=public_key(1))

        receipt = signer.sign("0.0.5")

        self.assertTrue(receipt.success)
        self.assertEqual(signer.requests, ["0.0.5"])
        self.assertIn(public_key(1), ledger.get_pending_transaction("0.0.5").signer_keys())

    def test_factory(self):
        self.assertIsInstance(get_schedule_signer("dry_run"), DryRunScheduleSigner)
        self.assertIsInstance(
            get_schedule_signer("relay", relay_url="https://r", key_provider=SeededKeyProvider(1)),
            RelayScheduleSigner,
        )
        with self.assertRaises(SigningError):
            get_schedule_signer("relay", relay_url="https://r")
        with self.assertRaises(SigningError):
            get_schedule_signer("sdk")


if __name__ == "__main__":
    unittest.main()
