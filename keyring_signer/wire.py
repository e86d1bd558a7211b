"""
Wire decoder for scheduled transaction bodies.

Parses the length-delimited protobuf encoding of a schedulable transaction
body and extracts the contract call it wraps. Only the fields needed to
review a contract call are interpreted; every other field is skipped by
wire type, so newer ledger fields never break decoding. Structural damage
(truncation, oversize varints, group wire types) is a hard DecodeError.

Usage:
    from keyring_signer.wire import decode_envelope

    call = decode_envelope(body_bytes, interface_table)
    print(call.contract_id, call.function_name, call.arguments)
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Iterator, Optional, Tuple, Union

from .abi import InterfaceTable, interpret, UNKNOWN_FUNCTION
from .errors import DecodeError, DecodeFailure, InterpretError

MAX_VARINT_BYTES = 10
UINT64_MASK = (1 << 64) - 1

# SchedulableTransactionBody
FIELD_TRANSACTION_FEE = 1
FIELD_MEMO = 2
FIELD_CONTRACT_CALL = 3

# ContractCallTransactionBody
FIELD_CONTRACT_ID = 1
FIELD_GAS = 2
FIELD_AMOUNT = 3
FIELD_FUNCTION_PARAMETERS = 4

# ContractID
FIELD_SHARD = 1
FIELD_REALM = 2
FIELD_NUM = 3
FIELD_EVM_ADDRESS = 4

EVM_ADDRESS_LENGTH = 20


class WireType(IntEnum):
    """Protobuf wire types."""
    VARINT = 0
    FIXED64 = 1
    LENGTH_DELIMITED = 2
    START_GROUP = 3
    END_GROUP = 4
    FIXED32 = 5


SUPPORTED_WIRE_TYPES = {
    WireType.VARINT,
    WireType.FIXED64,
    WireType.LENGTH_DELIMITED,
    WireType.FIXED32,
}


class WireCursor:
    """Bounds-checked forward reader over an immutable byte buffer."""

    def __init__(self, data: Union[bytes, bytearray, memoryview]):
        self._data = memoryview(bytes(data))
        self._pos = 0

    @property
    def position(self) -> int:
        return self._pos

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def read_varint(self) -> int:
        """Read a little-endian base-128 varint, at most 10 bytes long."""
        result = 0
        for index in range(MAX_VARINT_BYTES):
            if self._pos >= len(self._data):
                raise DecodeError(
                    DecodeFailure.TRUNCATED,
                    f"varint ends at offset {self._pos}"
                )
            byte = self._data[self._pos]
            self._pos += 1
            result |= (byte & 0x7F) << (7 * index)
            if not byte & 0x80:
                return result & UINT64_MASK
        raise DecodeError(
            DecodeFailure.VARINT_OVERFLOW,
            f"varint longer than {MAX_VARINT_BYTES} bytes at offset {self._pos - MAX_VARINT_BYTES}"
        )

    def read_bytes(self, length: int) -> bytes:
        if length < 0 or length > self.remaining:
            raise DecodeError(
                DecodeFailure.TRUNCATED,
                f"need {length} bytes at offset {self._pos}, have {self.remaining}"
            )
        chunk = self._data[self._pos:self._pos + length].tobytes()
        self._pos += length
        return chunk

    def read_length_delimited(self) -> bytes:
        return self.read_bytes(self.read_varint())

    def read_fixed(self, width: int) -> int:
        return int.from_bytes(self.read_bytes(width), "little")

    def read_tag(self) -> Tuple[int, WireType]:
        key = self.read_varint()
        field_number = key >> 3
        raw_type = key & 0x07
        if field_number == 0:
            raise DecodeError(DecodeFailure.INVALID_TAG, f"field number 0 at offset {self._pos}")
        if raw_type not in SUPPORTED_WIRE_TYPES:
            raise DecodeError(
                DecodeFailure.UNSUPPORTED_WIRE_TYPE,
                f"wire type {raw_type} for field {field_number}"
            )
        return field_number, WireType(raw_type)

    def read_value(self, wire_type: WireType) -> Union[int, bytes]:
        if wire_type == WireType.VARINT:
            return self.read_varint()
        if wire_type == WireType.FIXED64:
            return self.read_fixed(8)
        if wire_type == WireType.FIXED32:
            return self.read_fixed(4)
        return self.read_length_delimited()


def iter_fields(data: Union[bytes, memoryview]) -> Iterator[Tuple[int, WireType, Union[int, bytes]]]:
    """
    Yield (field_number, wire_type, value) for each field of a message.

    Varint and fixed values are ints; length-delimited values are bytes.
    Raises DecodeError as soon as the structure is invalid.
    """
    cursor = WireCursor(data)
    while not cursor.at_end():
        field_number, wire_type = cursor.read_tag()
        yield field_number, wire_type, cursor.read_value(wire_type)


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as a varint."""
    if value < 0:
        value &= UINT64_MASK
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def encode_field(field_number: int, value: Union[int, bytes]) -> bytes:
    """Encode one varint (int) or length-delimited (bytes) field."""
    if isinstance(value, int):
        return encode_varint(field_number << 3 | WireType.VARINT) + encode_varint(value)
    return (
        encode_varint(field_number << 3 | WireType.LENGTH_DELIMITED)
        + encode_varint(len(value))
        + bytes(value)
    )


@dataclass(frozen=True)
class ContractId:
    """
    Ledger contract identifier.

    Either shard.realm.num or, for contracts addressed by alias,
    shard.realm plus a 20-byte EVM address (num stays 0).
    """
    shard: int = 0
    realm: int = 0
    num: int = 0
    evm_address: bytes = b""

    def __str__(self) -> str:
        if self.evm_address:
            return f"{self.shard}.{self.realm}.{self.evm_address.hex()}"
        return f"{self.shard}.{self.realm}.{self.num}"

    @classmethod
    def parse(cls, text: str) -> "ContractId":
        parts = text.strip().split(".")
        if len(parts) == 3 and parts[0].isdigit() and parts[1].isdigit():
            tail = parts[2]
            if tail.isdigit():
                return cls(int(parts[0]), int(parts[1]), int(tail))
            address = tail[2:] if tail[:2] in ("0x", "0X") else tail
            if len(address) == EVM_ADDRESS_LENGTH * 2:
                try:
                    return cls(int(parts[0]), int(parts[1]), evm_address=bytes.fromhex(address))
                except ValueError:
                    pass
        raise ValueError(f"contract id must be shard.realm.num or shard.realm.<evm address>: {text!r}")

    @classmethod
    def from_bytes(cls, data: bytes) -> "ContractId":
        values = {FIELD_SHARD: 0, FIELD_REALM: 0, FIELD_NUM: 0}
        evm_address = b""
        for field_number, wire_type, value in iter_fields(data):
            if field_number in values and wire_type == WireType.VARINT:
                values[field_number] = value
            elif field_number == FIELD_EVM_ADDRESS and wire_type == WireType.LENGTH_DELIMITED:
                evm_address = bytes(value)
        return cls(values[FIELD_SHARD], values[FIELD_REALM], values[FIELD_NUM], evm_address)

    def to_bytes(self) -> bytes:
        data = encode_field(FIELD_SHARD, self.shard) + encode_field(FIELD_REALM, self.realm)
        if self.evm_address:
            return data + encode_field(FIELD_EVM_ADDRESS, self.evm_address)
        return data + encode_field(FIELD_NUM, self.num)


@dataclass(frozen=True)
class DecodedCall:
    """A decoded scheduled contract call. Replaced, never mutated, on re-decode."""
    contract_id: ContractId
    gas_limit: int
    payable_amount: int
    function_name: str
    arguments: Tuple[Tuple[str, Any], ...] = ()
    raw_payload: bytes = b""
    memo: str = ""
    transaction_fee: int = 0
    interpret_error: Optional[str] = None

    def is_unknown(self) -> bool:
        return self.function_name == UNKNOWN_FUNCTION

    def argument_map(self) -> Dict[str, Any]:
        return dict(self.arguments)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "contract_id": str(self.contract_id),
            "gas_limit": self.gas_limit,
            "payable_amount": self.payable_amount,
            "function_name": self.function_name,
            "arguments": [[name, _jsonable(value)] for name, value in self.arguments],
            "raw_payload": self.raw_payload.hex(),
            "memo": self.memo,
            "transaction_fee": self.transaction_fee,
        }
        if self.interpret_error:
            d["interpret_error"] = self.interpret_error
        return d


def _jsonable(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_jsonable(v) for v in value]
    return value


def decode_envelope(
    envelope: bytes,
    interface_table: InterfaceTable,
    inner_field: int = FIELD_CONTRACT_CALL
) -> DecodedCall:
    """
    Decode a schedulable transaction body into a DecodedCall.

    Args:
        envelope: Raw protobuf bytes of the scheduled transaction body
        interface_table: Known function signatures for the target contract
        inner_field: Field number carrying the contract-call body

    Raises:
        DecodeError: If the envelope is structurally invalid or carries no
            contract-call body. An unrecognized function is not an error.
    """
    fee = 0
    memo = ""
    inner: Optional[bytes] = None

    for field_number, wire_type, value in iter_fields(envelope):
        if field_number == inner_field and wire_type == WireType.LENGTH_DELIMITED:
            inner = value
        elif field_number == FIELD_TRANSACTION_FEE and wire_type == WireType.VARINT:
            fee = value
        elif field_number == FIELD_MEMO and wire_type == WireType.LENGTH_DELIMITED:
            memo = value.decode("utf-8", errors="replace")

    if inner is None:
        raise DecodeError(
            DecodeFailure.MISSING_INNER_TRANSACTION,
            f"no length-delimited field {inner_field} in {len(envelope)} byte body"
        )

    contract_id = ContractId()
    gas = 0
    amount = 0
    payload = b""
    for field_number, wire_type, value in iter_fields(inner):
        if field_number == FIELD_CONTRACT_ID and wire_type == WireType.LENGTH_DELIMITED:
            contract_id = ContractId.from_bytes(value)
        elif field_number == FIELD_GAS and wire_type == WireType.VARINT:
            gas = value
        elif field_number == FIELD_AMOUNT and wire_type == WireType.VARINT:
            amount = value
        elif field_number == FIELD_FUNCTION_PARAMETERS and wire_type == WireType.LENGTH_DELIMITED:
            payload = value

    function_name = UNKNOWN_FUNCTION
    arguments: Tuple[Tuple[str, Any], ...] = ()
    interpret_error = None
    try:
        interpretation = interpret(payload, interface_table)
        if interpretation.function_name != UNKNOWN_FUNCTION:
            function_name = interpretation.function_name
            arguments = interpretation.arguments
    except InterpretError as e:
        interpret_error = str(e)

    return DecodedCall(
        contract_id=contract_id,
        gas_limit=gas,
        payable_amount=amount,
        function_name=function_name,
        arguments=arguments,
        raw_payload=payload,
        memo=memo,
        transaction_fee=fee,
        interpret_error=interpret_error,
    )


def encode_envelope(
    contract_id: ContractId,
    gas: int,
    amount: int,
    function_parameters: bytes,
    memo: str = "",
    transaction_fee: int = 0
) -> bytes:
    """Build a schedulable transaction body wrapping a contract call."""
    inner = (
        encode_field(FIELD_CONTRACT_ID, contract_id.to_bytes())
        + encode_field(FIELD_GAS, gas)
        + encode_field(FIELD_AMOUNT, amount)
        + encode_field(FIELD_FUNCTION_PARAMETERS, function_parameters)
    )
    body = b""
    if transaction_fee:
        body += encode_field(FIELD_TRANSACTION_FEE, transaction_fee)
    if memo:
        body += encode_field(FIELD_MEMO, memo.encode("utf-8"))
    return body + encode_field(FIELD_CONTRACT_CALL, inner)
