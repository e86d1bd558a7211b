"""
Function-Call Interpreter Test Suite
"""

import unittest

from keyring_signer.abi import (
    FunctionSignature,
    InterfaceTable,
    Parameter,
    compute_selector,
    decode_arguments,
    encode_call,
    interpret,
)
from keyring_signer.errors import InterpretError, PolicyConfigError

from builders import load_interface_table


def word(value: int) -> bytes:
    return value.to_bytes(32, "big")


class TestSelectors(unittest.TestCase):
    """Selector derivation."""

    def test_known_erc20_selectors(self):
        """Selectors are the first 4 bytes of keccak256 of the signature text."""
        self.assertEqual(compute_selector("transfer(address,uint256)").hex(), "a9059cbb")
        self.assertEqual(compute_selector("balanceOf(address)").hex(), "70a08231")

    def test_signature_text(self):
        sig = FunctionSignature("transfer", (Parameter("to", "address"), Parameter("value", "uint256")))
        self.assertEqual(sig.text, "transfer(address,uint256)")
        self.assertEqual(sig.selector.hex(), "a9059cbb")


class TestInterpret(unittest.TestCase):
    """Payload interpretation."""

    def setUp(self):
        self.table = InterfaceTable(contract="Test")
        self.sig = FunctionSignature(
            name="configure",
            inputs=(
                Parameter("small", "uint8"),
                Parameter("big", "uint256"),
                Parameter("delta", "int256"),
                Parameter("owner", "address"),
                Parameter("enabled", "bool"),
                Parameter("tag", "bytes4"),
            ),
            selector=bytes.fromhex("11223344"),
        )
        self.table.add(self.sig)

    def test_static_types(self):
        payload = encode_call(
            self.sig,
            [7, 2 ** 200, -5, "0x" + "ab" * 20, True, "0xcafebabe"],
        )
        result = interpret(payload, self.table)
        self.assertEqual(result.function_name, "configure")
        args = dict(result.arguments)
        self.assertEqual(args["small"], 7)
        self.assertEqual(args["big"], str(2 ** 200))
        self.assertEqual(args["delta"], "-5")
        self.assertEqual(args["owner"], "0x" + "ab" * 20)
        self.assertIs(args["enabled"], True)
        self.assertEqual(args["tag"], "0xcafebabe")

    def test_unknown_selector_returns_raw_hex(self):
        payload = bytes.fromhex("99999999") + word(1)
        result = interpret(payload, self.table)
        self.assertEqual(result.function_name, "unknown")
        self.assertEqual(result.arguments, (("rawHex", "0x" + payload.hex()),))

    def test_short_payload_is_unknown(self):
        result = interpret(b"\x11\x22", self.table)
        self.assertEqual(result.function_name, "unknown")
        self.assertEqual(result.arguments, (("rawHex", "0x1122"),))

    def test_truncated_arguments_raise(self):
        payload = encode_call(self.sig, [1, 2, 3, "0x" + "00" * 20, False, "0x00000000"])
        with self.assertRaises(InterpretError):
            interpret(payload[:-1], self.table)

    def test_invalid_bool_raises(self):
        sig = FunctionSignature("flag", (Parameter("on", "bool"),), selector=b"\x00\x00\x00\x01")
        with self.assertRaises(InterpretError):
            decode_arguments(sig, word(2))

    def test_dirty_address_padding_raises(self):
        sig = FunctionSignature("owner", (Parameter("who", "address"),), selector=b"\x00\x00\x00\x02")
        with self.assertRaises(InterpretError):
            decode_arguments(sig, b"\x01" + b"\x00" * 31)

    def test_uint8_out_of_range_raises(self):
        sig = FunctionSignature("small", (Parameter("v", "uint8"),), selector=b"\x00\x00\x00\x03")
        with self.assertRaises(InterpretError):
            decode_arguments(sig, word(256))


class TestDynamicTypes(unittest.TestCase):
    """Head/tail encoded parameters."""

    def test_array_and_string(self):
        sig = FunctionSignature(
            "batch",
            (Parameter("ids", "uint64[]"), Parameter("note", "string"), Parameter("flag", "bool")),
            selector=b"\xaa\xbb\xcc\xdd",
        )
        data = (
            word(96)          # ids offset
            + word(192)       # note offset
            + word(1)         # flag
            + word(2) + word(10) + word(20)
            + word(5) + b"hello".ljust(32, b"\x00")
        )
        args = dict(decode_arguments(sig, data))
        self.assertEqual(args["ids"], (10, 20))
        self.assertEqual(args["note"], "hello")
        self.assertIs(args["flag"], True)

    def test_encode_then_interpret_dynamic(self):
        sig = FunctionSignature(
            "store",
            (Parameter("blob", "bytes"), Parameter("owners", "address[]")),
            selector=b"\x01\x02\x03\x04",
        )
        table = InterfaceTable(contract="T")
        table.add(sig)
        owners = ("0x" + "11" * 20, "0x" + "22" * 20)
        payload = encode_call(sig, [b"\x00\x01\x02", owners])
        args = dict(interpret(payload, table).arguments)
        self.assertEqual(args["blob"], "0x000102")
        self.assertEqual(args["owners"], owners)

    def test_offset_out_of_range_raises(self):
        sig = FunctionSignature("s", (Parameter("x", "string"),), selector=b"\x00\x00\x00\x05")
        with self.assertRaises(InterpretError):
            decode_arguments(sig, word(4096))


class TestInterfaceTable(unittest.TestCase):
    """Loading interface tables."""

    def test_default_table_functions(self):
        table = load_interface_table()
        self.assertEqual(
            table.function_names(),
            frozenset({
                "mintWithDeposits",
                "updateRatios",
                "adminUpdateRatios",
                "adjustSupply",
                "setGovernanceAddress",
            })
        )
        self.assertTrue(table.by_name("mintWithDeposits").payable)

    def test_uint_alias_canonicalized(self):
        table = InterfaceTable.from_dict({
            "functions": [{"name": "f", "inputs": [{"name": "a", "type": "uint"}]}]
        })
        self.assertEqual(table.by_name("f").text, "f(uint256)")

    def test_unsupported_type_rejected(self):
        with self.assertRaises(PolicyConfigError):
            InterfaceTable.from_dict({
                "functions": [{"name": "f", "inputs": [{"name": "a", "type": "tuple"}]}]
            })

    def test_declared_selector_must_match(self):
        with self.assertRaises(PolicyConfigError):
            InterfaceTable.from_dict({
                "functions": [{
                    "name": "transfer",
                    "inputs": [{"name": "to", "type": "address"}, {"name": "v", "type": "uint256"}],
                    "selector": "0x00000000",
                }]
            })

    def test_matching_declared_selector_accepted(self):
        table = InterfaceTable.from_dict({
            "functions": [{
                "name": "transfer",
                "inputs": [{"name": "to", "type": "address"}, {"name": "v", "type": "uint256"}],
                "selector": "0xa9059cbb",
            }]
        })
        self.assertIsNotNone(table.lookup(bytes.fromhex("a9059cbb")))

    def test_duplicate_function_rejected(self):
        entry = {"name": "f", "inputs": []}
        with self.assertRaises(PolicyConfigError):
            InterfaceTable.from_dict({"functions": [entry, entry]})

    def test_missing_functions_list_rejected(self):
        with self.assertRaises(PolicyConfigError):
            InterfaceTable.from_dict({"contract": "X"})


if __name__ == "__main__":
    unittest.main()
