"""
Key Handling Test Suite

Key equality must hold across every encoding a key arrives in.
"""

import base64
import json
import os
import tempfile
import unittest
from unittest import mock

from keyring_signer.errors import KeyFormatError, SigningError
from keyring_signer.keys import (
    ED25519_DER_PREFIX,
    AwsKmsEd25519Provider,
    FileKeyProvider,
    PublicKey,
    generate_key_file,
    get_key_provider,
    keys_match,
    verify_ed25519,
)
from keyring_signer.util import b64e

from builders import public_key, signing_key


class TestPublicKey(unittest.TestCase):
    """Canonical key comparison."""

    def setUp(self):
        self.key = public_key(7)
        self.raw_hex = self.key.raw_hex()

    def test_raw_and_der_are_equal(self):
        """A raw key and the same key behind the DER prefix are one key."""
        der = (ED25519_DER_PREFIX + self.key.raw).hex()
        self.assertEqual(PublicKey.from_string(self.raw_hex), PublicKey.from_string(der))
        self.assertTrue(keys_match(self.key.raw, der))

    def test_last_byte_difference_is_unequal(self):
        other = self.key.raw[:-1] + bytes([self.key.raw[-1] ^ 0x01])
        self.assertNotEqual(PublicKey.from_bytes(self.key.raw), PublicKey.from_bytes(other))

    def test_hex_case_and_prefix_ignored(self):
        self.assertEqual(PublicKey.from_string("0x" + self.raw_hex.upper()), self.key)

    def test_base64_prefix_matches_hex(self):
        """Mirror node signature prefixes are base64."""
        self.assertEqual(PublicKey.from_string(base64.b64encode(self.key.raw).decode()), self.key)

    def test_hash_uses_canonical_bytes(self):
        der = PublicKey.from_string(self.key.der_hex())
        self.assertEqual(len({self.key, der}), 1)

    def test_short_key_rejected(self):
        with self.assertRaises(KeyFormatError):
            PublicKey.from_bytes(b"\x01" * 16)

    def test_garbage_rejected(self):
        with self.assertRaises(KeyFormatError):
            PublicKey.from_string("not a key!")

    def test_key_format_error_is_value_error(self):
        with self.assertRaises(ValueError):
            PublicKey.from_string("zz")

    def test_der_hex_round_trip(self):
        self.assertTrue(self.key.der_hex().startswith("302a300506032b6570032100"))
        self.assertEqual(PublicKey.from_string(self.key.der_hex()), self.key)

    def test_verify_signature(self):
        sk = signing_key(7)
        sig = sk.sign(b"payload").signature
        self.assertTrue(self.key.verify(b"payload", sig))
        self.assertFalse(self.key.verify(b"other", sig))
        self.assertTrue(verify_ed25519(self.key, b"payload", b64e(sig)))


class TestKeyProviders(unittest.TestCase):
    """Relay request signing keys."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "key.json")

    def tearDown(self):
        self.tmp.cleanup()

    def test_generated_file_key_signs(self):
        public = generate_key_file(self.path, "relay-01")
        provider = FileKeyProvider(self.path)
        kid, sig = provider.sign(b"request")
        self.assertEqual(kid, "relay-01")
        self.assertEqual(provider.public_key(), public)
        self.assertTrue(verify_ed25519(public, b"request", sig))

    def test_missing_key_file(self):
        with self.assertRaises(SigningError):
            FileKeyProvider(os.path.join(self.tmp.name, "absent.json"))

    def test_malformed_key_file(self):
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({"kid": "x"}, f)
        with self.assertRaises(SigningError):
            FileKeyProvider(self.path)

    def test_kms_provider_signs_with_ed25519(self):
        provider = AwsKmsEd25519Provider("alias/keyring", region="us-east-1", kid="kms-01")
        client = mock.Mock()
        client.sign.return_value = {"Signature": b"\x01\x02"}
        provider._client = client

        kid, sig = provider.sign(b"body")

        self.assertEqual(kid, "kms-01")
        self.assertEqual(sig, b64e(b"\x01\x02"))
        client.sign.assert_called_once_with(
            KeyId="alias/keyring",
            Message=b"body",
            MessageType="RAW",
            SigningAlgorithm="ED25519_SHA_512"
        )

    def test_factory(self):
        generate_key_file(self.path, "relay-01")
        self.assertIsInstance(get_key_provider("file", signing_key_path=self.path), FileKeyProvider)
        self.assertIsInstance(
            get_key_provider("aws_kms", kms_key_id="alias/k"), AwsKmsEd25519Provider
        )
        with self.assertRaises(SigningError):
            get_key_provider("aws_kms")
        with self.assertRaises(SigningError):
            get_key_provider("hsm")


if __name__ == "__main__":
    unittest.main()
