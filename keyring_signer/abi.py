"""
Function-call interpreter for contract call payloads.

Maps the 4-byte selector at the head of a call payload to a known function
signature and decodes the arguments using the contract ABI head/tail layout.

Supported parameter types:
- uint8..uint256, int8..int256
- address, bool, bytes1..bytes32
- bytes, string
- T[] where T is one of the static types above

Integers of types wider than 64 bits are returned as decimal strings.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from Crypto.Hash import keccak

from .errors import InterpretError, PolicyConfigError

UNKNOWN_FUNCTION = "unknown"
WORD = 32
SELECTOR_SIZE = 4
NATIVE_INT_BITS = 64

_INT_RE = re.compile(r"^(u?)int(\d{0,3})$")
_BYTES_N_RE = re.compile(r"^bytes(\d{1,2})$")
_NAME_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")


def keccak256(data: bytes) -> bytes:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def compute_selector(signature_text: str) -> bytes:
    """First 4 bytes of keccak256 over the canonical signature text."""
    return keccak256(signature_text.encode("ascii"))[:SELECTOR_SIZE]


def _int_width(abi_type: str) -> Optional[Tuple[bool, int]]:
    m = _INT_RE.match(abi_type)
    if not m:
        return None
    bits = int(m.group(2) or "256")
    if bits == 0 or bits > 256 or bits % 8:
        return None
    return m.group(1) != "u", bits


def _is_static(abi_type: str) -> bool:
    if abi_type in ("address", "bool"):
        return True
    if _int_width(abi_type):
        return True
    m = _BYTES_N_RE.match(abi_type)
    return bool(m) and 1 <= int(m.group(1)) <= 32


def is_supported_type(abi_type: str) -> bool:
    if _is_static(abi_type) or abi_type in ("bytes", "string"):
        return True
    return abi_type.endswith("[]") and _is_static(abi_type[:-2])


def canonical_type(abi_type: str) -> str:
    """Expand uint/int aliases to their 256-bit canonical form."""
    if abi_type.endswith("[]"):
        return canonical_type(abi_type[:-2]) + "[]"
    if abi_type == "uint":
        return "uint256"
    if abi_type == "int":
        return "int256"
    return abi_type


@dataclass(frozen=True)
class Parameter:
    name: str
    abi_type: str


@dataclass(frozen=True)
class FunctionSignature:
    """A typed function signature and its selector."""
    name: str
    inputs: Tuple[Parameter, ...]
    selector: bytes = b""
    payable: bool = False

    def __post_init__(self):
        if not self.selector:
            object.__setattr__(self, "selector", compute_selector(self.text))

    @property
    def text(self) -> str:
        return f"{self.name}({','.join(p.abi_type for p in self.inputs)})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "inputs": [{"name": p.name, "type": p.abi_type} for p in self.inputs],
            "selector": "0x" + self.selector.hex(),
            "payable": self.payable,
        }


@dataclass
class Interpretation:
    function_name: str
    arguments: Tuple[Tuple[str, Any], ...] = ()
    signature: Optional[FunctionSignature] = None


@dataclass
class InterfaceTable:
    """
    Selector-indexed contract interface.

    Loaded once per run and never mutated while a run is in progress.
    """
    contract: str
    functions: Dict[bytes, FunctionSignature] = field(default_factory=dict)

    def add(self, signature: FunctionSignature) -> None:
        if signature.selector in self.functions:
            existing = self.functions[signature.selector]
            raise PolicyConfigError(
                f"Selector collision 0x{signature.selector.hex()}: "
                f"{existing.text} and {signature.text}"
            )
        self.functions[signature.selector] = signature

    def lookup(self, selector: bytes) -> Optional[FunctionSignature]:
        return self.functions.get(bytes(selector))

    def function_names(self) -> frozenset:
        return frozenset(sig.name for sig in self.functions.values())

    def by_name(self, name: str) -> Optional[FunctionSignature]:
        for sig in self.functions.values():
            if sig.name == name:
                return sig
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract": self.contract,
            "functions": [sig.to_dict() for sig in self.functions.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InterfaceTable":
        """
        Build a table from its JSON form.

        Each function needs a name and typed inputs. A declared selector is
        used as given when it is the only way to identify the function;
        otherwise it must match the computed keccak selector.
        """
        if not isinstance(data, dict) or not isinstance(data.get("functions"), list):
            raise PolicyConfigError("Interface table must be an object with a 'functions' list")
        table = cls(contract=str(data.get("contract", "")))
        for entry in data["functions"]:
            table.add(_signature_from_dict(entry))
        return table


def _signature_from_dict(entry: Dict[str, Any]) -> FunctionSignature:
    name = entry.get("name", "") if isinstance(entry, dict) else ""
    if not _NAME_RE.match(name or ""):
        raise PolicyConfigError(f"Invalid function name: {name!r}")
    params = []
    for i, raw in enumerate(entry.get("inputs", [])):
        abi_type = canonical_type(str(raw.get("type", "")))
        if not is_supported_type(abi_type):
            raise PolicyConfigError(f"{name}: unsupported parameter type {abi_type!r}")
        params.append(Parameter(name=raw.get("name") or f"arg{i}", abi_type=abi_type))

    signature = FunctionSignature(
        name=name,
        inputs=tuple(params),
        payable=bool(entry.get("payable", False)),
    )
    declared = entry.get("selector")
    if declared:
        try:
            declared_bytes = bytes.fromhex(declared[2:] if declared.startswith("0x") else declared)
        except ValueError as e:
            raise PolicyConfigError(f"{name}: selector is not hex: {declared!r}") from e
        if len(declared_bytes) != SELECTOR_SIZE:
            raise PolicyConfigError(f"{name}: selector must be 4 bytes")
        if declared_bytes != signature.selector and not entry.get("selector_override", False):
            raise PolicyConfigError(
                f"{name}: declared selector {declared} does not match "
                f"computed 0x{signature.selector.hex()} for {signature.text}"
            )
        signature = FunctionSignature(
            name=signature.name,
            inputs=signature.inputs,
            selector=declared_bytes,
            payable=signature.payable,
        )
    return signature


# ------------------------------------------------------------
# Decoding
# ------------------------------------------------------------

class _ArgumentReader:
    """Reads ABI words from the argument region (payload minus selector)."""

    def __init__(self, data: bytes):
        self.data = data

    def word(self, offset: int) -> bytes:
        if offset < 0 or offset + WORD > len(self.data):
            raise InterpretError(
                f"argument data truncated: word at {offset} past {len(self.data)} bytes"
            )
        return self.data[offset:offset + WORD]

    def uint(self, offset: int) -> int:
        return int.from_bytes(self.word(offset), "big")

    def span(self, offset: int, length: int) -> bytes:
        if offset < 0 or length < 0 or offset + length > len(self.data):
            raise InterpretError(
                f"argument data truncated: {length} bytes at {offset} past {len(self.data)} bytes"
            )
        return self.data[offset:offset + length]


def _decode_static(reader: _ArgumentReader, offset: int, abi_type: str) -> Any:
    word = reader.word(offset)

    int_info = _int_width(abi_type)
    if int_info:
        signed, bits = int_info
        if signed:
            value = int.from_bytes(word, "big", signed=True)
            if not -(1 << (bits - 1)) <= value < (1 << (bits - 1)):
                raise InterpretError(f"{abi_type} value out of range")
        else:
            value = int.from_bytes(word, "big")
            if value >> bits:
                raise InterpretError(f"{abi_type} value out of range")
        return str(value) if bits > NATIVE_INT_BITS else value

    if abi_type == "address":
        if any(word[:12]):
            raise InterpretError("address has non-zero padding")
        return "0x" + word[12:].hex()

    if abi_type == "bool":
        value = int.from_bytes(word, "big")
        if value not in (0, 1):
            raise InterpretError(f"bool word is {value}")
        return bool(value)

    size = int(_BYTES_N_RE.match(abi_type).group(1))
    return "0x" + word[:size].hex()


def _decode_dynamic(reader: _ArgumentReader, head_offset: int, abi_type: str) -> Any:
    start = reader.uint(head_offset)
    length = reader.uint(start)
    body = start + WORD

    if abi_type in ("bytes", "string"):
        raw = reader.span(body, length)
        if abi_type == "bytes":
            return "0x" + raw.hex()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InterpretError("string argument is not valid UTF-8") from e

    element_type = abi_type[:-2]
    if length * WORD > len(reader.data):
        raise InterpretError(f"array length {length} exceeds payload")
    return tuple(
        _decode_static(reader, body + i * WORD, element_type) for i in range(length)
    )


def decode_arguments(signature: FunctionSignature, data: bytes) -> Tuple[Tuple[str, Any], ...]:
    """Decode the argument region of a call against its signature."""
    reader = _ArgumentReader(bytes(data))
    out = []
    for index, param in enumerate(signature.inputs):
        head = index * WORD
        if _is_static(param.abi_type):
            value = _decode_static(reader, head, param.abi_type)
        else:
            value = _decode_dynamic(reader, head, param.abi_type)
        out.append((param.name, value))
    return tuple(out)


def interpret(payload: bytes, interface_table: InterfaceTable) -> Interpretation:
    """
    Interpret a contract call payload.

    Returns an Interpretation named "unknown" carrying the payload as
    rawHex when the selector is missing or unrecognized.

    Raises:
        InterpretError: If the selector is known but its arguments cannot
            be decoded.
    """
    payload = bytes(payload)
    signature = None
    if len(payload) >= SELECTOR_SIZE:
        signature = interface_table.lookup(payload[:SELECTOR_SIZE])
    if signature is None:
        return Interpretation(
            function_name=UNKNOWN_FUNCTION,
            arguments=(("rawHex", "0x" + payload.hex()),),
        )
    try:
        arguments = decode_arguments(signature, payload[SELECTOR_SIZE:])
    except InterpretError as e:
        raise InterpretError(f"{signature.text}: {e}") from e
    return Interpretation(
        function_name=signature.name,
        arguments=arguments,
        signature=signature,
    )


# ------------------------------------------------------------
# Encoding
# ------------------------------------------------------------

def _encode_static(abi_type: str, value: Any) -> bytes:
    int_info = _int_width(abi_type)
    if int_info:
        signed, _bits = int_info
        return int(value).to_bytes(WORD, "big", signed=signed)
    if abi_type == "address":
        raw = bytes.fromhex(str(value)[2:] if str(value).startswith("0x") else str(value))
        return raw.rjust(WORD, b"\x00")
    if abi_type == "bool":
        return int(bool(value)).to_bytes(WORD, "big")
    raw = value if isinstance(value, bytes) else bytes.fromhex(str(value)[2:])
    return raw.ljust(WORD, b"\x00")


def _pad(raw: bytes) -> bytes:
    remainder = len(raw) % WORD
    return raw + b"\x00" * ((WORD - remainder) % WORD)


def encode_call(signature: FunctionSignature, values: Sequence[Any]) -> bytes:
    """Encode a call payload (selector plus arguments) for a signature."""
    if len(values) != len(signature.inputs):
        raise ValueError(f"{signature.text} takes {len(signature.inputs)} arguments")
    heads: List[bytes] = []
    tails: List[bytes] = []
    tail_offset = WORD * len(signature.inputs)
    for param, value in zip(signature.inputs, values):
        if _is_static(param.abi_type):
            heads.append(_encode_static(param.abi_type, value))
            continue
        if param.abi_type == "string":
            raw = str(value).encode("utf-8")
            tail = len(raw).to_bytes(WORD, "big") + _pad(raw)
        elif param.abi_type == "bytes":
            raw = value if isinstance(value, bytes) else bytes.fromhex(str(value)[2:])
            tail = len(raw).to_bytes(WORD, "big") + _pad(raw)
        else:
            element_type = param.abi_type[:-2]
            tail = len(value).to_bytes(WORD, "big") + b"".join(
                _encode_static(element_type, v) for v in value
            )
        heads.append(tail_offset.to_bytes(WORD, "big"))
        tails.append(tail)
        tail_offset += len(tail)
    return signature.selector + b"".join(heads) + b"".join(tails)
