"""
Clarity typed values: constructors, canonical wire serialization and a
schema-checked decoder.

Wire format (consensus serialization):
- 1-byte type prefix (see ClarityType)
- int/uint: 16 bytes big-endian (int is two's complement)
- buffer, string-ascii, string-utf8: 4-byte length + bytes
- standard principal: version(1) + hash160(20)
- contract principal: standard principal + name length(1) + name
- ok/err/some: the wrapped value
- list: 4-byte count + values
- tuple: 4-byte count + (name length(1) + name + value), names sorted
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Mapping

from c32check import c32_address, decode_c32_address
from pox_errors import DecodingError, EncodingError, InvalidAddress, TypeMismatch

MAX_U128 = (1 << 128) - 1
MIN_I128 = -(1 << 127)
MAX_I128 = (1 << 127) - 1
MAX_NAME_LENGTH = 128
# Deepest nesting of list, tuple, optional and response values a node accepts
MAX_DEPTH = 32


class ClarityType(IntEnum):
    INT = 0x00
    UINT = 0x01
    BUFFER = 0x02
    BOOL_TRUE = 0x03
    BOOL_FALSE = 0x04
    PRINCIPAL_STANDARD = 0x05
    PRINCIPAL_CONTRACT = 0x06
    RESPONSE_OK = 0x07
    RESPONSE_ERR = 0x08
    OPTIONAL_NONE = 0x09
    OPTIONAL_SOME = 0x0A
    LIST = 0x0B
    TUPLE = 0x0C
    STRING_ASCII = 0x0D
    STRING_UTF8 = 0x0E


@dataclass(frozen=True)
class ClarityValue:
    """
    One node of a Clarity value tree.

    ``value`` depends on ``type_id``: int for int/uint, bytes for buffers,
    bool for booleans, the address string for principals, a ClarityValue for
    ok/err/some, None for none, a tuple of ClarityValue for lists, a dict of
    name -> ClarityValue for tuples and str for strings.

    Values compare by content but are not hashable, since tuple and list
    payloads are containers.
    """

    type_id: ClarityType
    value: Any = None

    __hash__ = None  # type: ignore[assignment]

    @property
    def type_name(self) -> str:
        return _TYPE_NAMES[self.type_id]


_TYPE_NAMES = {
    ClarityType.INT: "int",
    ClarityType.UINT: "uint",
    ClarityType.BUFFER: "buffer",
    ClarityType.BOOL_TRUE: "bool",
    ClarityType.BOOL_FALSE: "bool",
    ClarityType.PRINCIPAL_STANDARD: "principal",
    ClarityType.PRINCIPAL_CONTRACT: "principal",
    ClarityType.RESPONSE_OK: "response-ok",
    ClarityType.RESPONSE_ERR: "response-err",
    ClarityType.OPTIONAL_NONE: "optional-none",
    ClarityType.OPTIONAL_SOME: "optional-some",
    ClarityType.LIST: "list",
    ClarityType.TUPLE: "tuple",
    ClarityType.STRING_ASCII: "string-ascii",
    ClarityType.STRING_UTF8: "string-utf8",
}


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def uint_cv(value: int) -> ClarityValue:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingError(f"uint requires an integer, got {value!r}", value)
    if value < 0:
        raise EncodingError(f"uint cannot be negative: {value}", value)
    if value > MAX_U128:
        raise EncodingError(f"uint exceeds 128 bits: {value}", value)
    return ClarityValue(ClarityType.UINT, value)


def int_cv(value: int) -> ClarityValue:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingError(f"int requires an integer, got {value!r}", value)
    if not MIN_I128 <= value <= MAX_I128:
        raise EncodingError(f"int outside 128-bit range: {value}", value)
    return ClarityValue(ClarityType.INT, value)


def buffer_cv(data: bytes) -> ClarityValue:
    return ClarityValue(ClarityType.BUFFER, bytes(data))


def bool_cv(flag: bool) -> ClarityValue:
    return ClarityValue(ClarityType.BOOL_TRUE if flag else ClarityType.BOOL_FALSE, bool(flag))


def none_cv() -> ClarityValue:
    return ClarityValue(ClarityType.OPTIONAL_NONE)


def some_cv(value: ClarityValue) -> ClarityValue:
    return ClarityValue(ClarityType.OPTIONAL_SOME, value)


def ok_cv(value: ClarityValue) -> ClarityValue:
    return ClarityValue(ClarityType.RESPONSE_OK, value)


def err_cv(value: ClarityValue) -> ClarityValue:
    return ClarityValue(ClarityType.RESPONSE_ERR, value)


def list_cv(values: list[ClarityValue]) -> ClarityValue:
    return ClarityValue(ClarityType.LIST, tuple(values))


def tuple_cv(fields: Mapping[str, ClarityValue]) -> ClarityValue:
    """Wrap named values as a tuple; insertion order of ``fields`` is kept."""
    data = dict(fields)
    for name in data:
        _encode_name(name)
    return ClarityValue(ClarityType.TUPLE, data)


def string_ascii_cv(text: str) -> ClarityValue:
    try:
        text.encode("ascii")
    except UnicodeEncodeError as exc:
        raise EncodingError(f"string-ascii contains non-ASCII text: {text!r}", text) from exc
    return ClarityValue(ClarityType.STRING_ASCII, text)


def string_utf8_cv(text: str) -> ClarityValue:
    return ClarityValue(ClarityType.STRING_UTF8, text)


def standard_principal_cv(address: str) -> ClarityValue:
    """Wrap a Stacks account address ('SP...'/'ST...') as a principal."""
    try:
        decode_c32_address(address)
    except InvalidAddress as exc:
        raise EncodingError(f"Invalid principal address: {address!r}", address) from exc
    return ClarityValue(ClarityType.PRINCIPAL_STANDARD, address)


def contract_principal_cv(contract_id: str) -> ClarityValue:
    address, _, name = contract_id.partition(".")
    standard_principal_cv(address)
    if not name:
        raise EncodingError(f"Contract principal needs a name: {contract_id!r}", contract_id)
    _encode_name(name)
    return ClarityValue(ClarityType.PRINCIPAL_CONTRACT, contract_id)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _encode_name(name: str) -> bytes:
    try:
        raw = name.encode("ascii")
    except (AttributeError, UnicodeEncodeError) as exc:
        raise EncodingError(f"Clarity name must be ASCII text: {name!r}", name) from exc
    if not raw or len(raw) > MAX_NAME_LENGTH:
        raise EncodingError(f"Clarity name length out of range: {name!r}", name)
    return struct.pack("B", len(raw)) + raw


def _encode_principal_body(address: str) -> bytes:
    try:
        version, hash160_bytes = decode_c32_address(address)
    except InvalidAddress as exc:
        raise EncodingError(f"Invalid principal address: {address!r}", address) from exc
    return struct.pack("B", version) + hash160_bytes


def _encode_128(value: int) -> bytes:
    if value < 0:
        value += 1 << 128
    return value.to_bytes(16, "big")


def serialize_cv(cv: ClarityValue) -> bytes:
    """Render a Clarity value in its canonical consensus byte form."""
    t = cv.type_id
    prefix = struct.pack("B", t)

    if t in (ClarityType.INT, ClarityType.UINT):
        return prefix + _encode_128(cv.value)

    if t == ClarityType.BUFFER:
        return prefix + struct.pack(">I", len(cv.value)) + cv.value

    if t in (
        ClarityType.BOOL_TRUE,
        ClarityType.BOOL_FALSE,
        ClarityType.OPTIONAL_NONE,
    ):
        return prefix

    if t == ClarityType.PRINCIPAL_STANDARD:
        return prefix + _encode_principal_body(cv.value)

    if t == ClarityType.PRINCIPAL_CONTRACT:
        address, _, name = cv.value.partition(".")
        return prefix + _encode_principal_body(address) + _encode_name(name)

    if t in (
        ClarityType.RESPONSE_OK,
        ClarityType.RESPONSE_ERR,
        ClarityType.OPTIONAL_SOME,
    ):
        return prefix + serialize_cv(cv.value)

    if t == ClarityType.LIST:
        body = b"".join(serialize_cv(item) for item in cv.value)
        return prefix + struct.pack(">I", len(cv.value)) + body

    if t == ClarityType.TUPLE:
        # Consensus form orders fields by name
        body = b"".join(
            _encode_name(name) + serialize_cv(cv.value[name])
            for name in sorted(cv.value)
        )
        return prefix + struct.pack(">I", len(cv.value)) + body

    if t == ClarityType.STRING_ASCII:
        raw = cv.value.encode("ascii")
        return prefix + struct.pack(">I", len(raw)) + raw

    if t == ClarityType.STRING_UTF8:
        raw = cv.value.encode("utf-8")
        return prefix + struct.pack(">I", len(raw)) + raw

    raise EncodingError(f"Unknown Clarity type: {t!r}", cv)


def serialize_cv_hex(cv: ClarityValue) -> str:
    """Serialize to a 0x-prefixed hex string, the form the node API expects."""
    return "0x" + serialize_cv(cv).hex()


# ---------------------------------------------------------------------------
# Deserialization
# ---------------------------------------------------------------------------


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def read(self, n: int) -> bytes:
        end = self.offset + n
        if end > len(self.data):
            raise DecodingError(
                f"Unexpected end of Clarity data at offset {self.offset} "
                f"(need {n} bytes, have {len(self.data) - self.offset})"
            )
        chunk = self.data[self.offset : end]
        self.offset = end
        return chunk

    def read_byte(self) -> int:
        return self.read(1)[0]

    def read_u32(self) -> int:
        return struct.unpack(">I", self.read(4))[0]


def _read_principal(reader: _Reader) -> str:
    version = reader.read_byte()
    hash160_bytes = reader.read(20)
    try:
        return c32_address(version, hash160_bytes)
    except InvalidAddress as exc:
        raise DecodingError(f"Invalid principal version byte: {version}") from exc


def _read_name(reader: _Reader) -> str:
    raw = reader.read(reader.read_byte())
    try:
        return raw.decode("ascii")
    except UnicodeDecodeError as exc:
        raise DecodingError(f"Non-ASCII Clarity name: {raw!r}") from exc


def _read_value(reader: _Reader, depth: int = 0) -> ClarityValue:
    if depth > MAX_DEPTH:
        raise DecodingError(f"Clarity value nested deeper than {MAX_DEPTH} levels")
    tag = reader.read_byte()
    try:
        t = ClarityType(tag)
    except ValueError as exc:
        raise DecodingError(f"Unknown Clarity type prefix 0x{tag:02x}") from exc

    if t == ClarityType.UINT:
        return ClarityValue(t, int.from_bytes(reader.read(16), "big"))

    if t == ClarityType.INT:
        value = int.from_bytes(reader.read(16), "big")
        if value > MAX_I128:
            value -= 1 << 128
        return ClarityValue(t, value)

    if t == ClarityType.BUFFER:
        return ClarityValue(t, reader.read(reader.read_u32()))

    if t == ClarityType.BOOL_TRUE:
        return ClarityValue(t, True)
    if t == ClarityType.BOOL_FALSE:
        return ClarityValue(t, False)
    if t == ClarityType.OPTIONAL_NONE:
        return ClarityValue(t)

    if t == ClarityType.PRINCIPAL_STANDARD:
        return ClarityValue(t, _read_principal(reader))

    if t == ClarityType.PRINCIPAL_CONTRACT:
        address = _read_principal(reader)
        return ClarityValue(t, f"{address}.{_read_name(reader)}")

    if t in (
        ClarityType.RESPONSE_OK,
        ClarityType.RESPONSE_ERR,
        ClarityType.OPTIONAL_SOME,
    ):
        return ClarityValue(t, _read_value(reader, depth + 1))

    if t == ClarityType.LIST:
        count = reader.read_u32()
        items = tuple(_read_value(reader, depth + 1) for _ in range(count))
        return ClarityValue(t, items)

    if t == ClarityType.TUPLE:
        count = reader.read_u32()
        fields: dict[str, ClarityValue] = {}
        for _ in range(count):
            name = _read_name(reader)
            if name in fields:
                raise DecodingError(f"Duplicate tuple field: {name!r}")
            fields[name] = _read_value(reader, depth + 1)
        return ClarityValue(t, fields)

    # string-ascii / string-utf8
    raw = reader.read(reader.read_u32())
    encoding = "ascii" if t == ClarityType.STRING_ASCII else "utf-8"
    try:
        return ClarityValue(t, raw.decode(encoding))
    except UnicodeDecodeError as exc:
        raise DecodingError(f"Invalid {encoding} in {_TYPE_NAMES[t]} value") from exc


def deserialize_cv(data: bytes) -> ClarityValue:
    """Parse canonical Clarity bytes into a value tree."""
    reader = _Reader(bytes(data))
    cv = _read_value(reader)
    if reader.offset != len(reader.data):
        raise DecodingError(
            f"{len(reader.data) - reader.offset} trailing bytes after Clarity value"
        )
    return cv


def deserialize_cv_hex(hex_str: str) -> ClarityValue:
    """Parse a (optionally 0x-prefixed) hex string of Clarity bytes."""
    if not isinstance(hex_str, str):
        raise DecodingError(f"Expected a hex string, got {type(hex_str).__name__}")
    if hex_str.startswith(("0x", "0X")):
        hex_str = hex_str[2:]
    try:
        data = bytes.fromhex(hex_str)
    except ValueError as exc:
        raise DecodingError(f"Invalid hex in Clarity value: {exc}") from exc
    return deserialize_cv(data)


# ---------------------------------------------------------------------------
# Narrowing
# ---------------------------------------------------------------------------


def _expect(cv: ClarityValue, *types: ClarityType, expected: str) -> None:
    if not isinstance(cv, ClarityValue):
        raise TypeMismatch(expected, type(cv).__name__)
    if cv.type_id not in types:
        raise TypeMismatch(expected, cv.type_name)


def as_uint(cv: ClarityValue) -> int:
    _expect(cv, ClarityType.UINT, expected="uint")
    return cv.value


def as_buffer(cv: ClarityValue) -> bytes:
    _expect(cv, ClarityType.BUFFER, expected="buffer")
    return cv.value


def as_tuple(cv: ClarityValue) -> dict[str, ClarityValue]:
    _expect(cv, ClarityType.TUPLE, expected="tuple")
    return dict(cv.value)


def as_principal(cv: ClarityValue) -> str:
    _expect(
        cv,
        ClarityType.PRINCIPAL_STANDARD,
        ClarityType.PRINCIPAL_CONTRACT,
        expected="principal",
    )
    return cv.value


def as_optional(cv: ClarityValue) -> ClarityValue | None:
    """Unwrap an optional: the inner value for (some x), None for none."""
    _expect(
        cv,
        ClarityType.OPTIONAL_NONE,
        ClarityType.OPTIONAL_SOME,
        expected="optional",
    )
    return cv.value


def narrow_tuple(
    cv: ClarityValue, schema: Mapping[str, Callable[[ClarityValue], Any]]
) -> dict[str, Any]:
    """
    Narrow a tuple value field by field.

    ``schema`` maps each required field name to the narrowing function for
    that field. Extra fields in the tuple are ignored.
    """
    fields = as_tuple(cv)
    missing = [name for name in schema if name not in fields]
    if missing:
        raise DecodingError(f"Tuple is missing fields: {', '.join(missing)}")
    return {name: narrow(fields[name]) for name, narrow in schema.items()}


# ---------------------------------------------------------------------------
# Contract ABI types
# ---------------------------------------------------------------------------


def matches_abi_type(cv: ClarityValue, abi_type: Any) -> bool:
    """
    Check a value against a type from a contract interface.

    ``abi_type`` is the JSON form the node's /v2/contracts/interface
    endpoint uses: a name such as "uint128", or a one-key object such as
    {"buffer": {"length": 20}} or {"tuple": [{"name": ..., "type": ...}]}.
    Lengths are maxima. Raises KeyError or TypeError on a malformed type.
    """
    t = cv.type_id
    if isinstance(abi_type, str):
        if abi_type == "uint128":
            return t == ClarityType.UINT
        if abi_type == "int128":
            return t == ClarityType.INT
        if abi_type == "bool":
            return t in (ClarityType.BOOL_TRUE, ClarityType.BOOL_FALSE)
        if abi_type in ("principal", "trait_reference"):
            return t in (ClarityType.PRINCIPAL_STANDARD, ClarityType.PRINCIPAL_CONTRACT)
        return False

    if not isinstance(abi_type, dict) or len(abi_type) != 1:
        raise TypeError(f"Malformed ABI type: {abi_type!r}")
    ((kind, inner),) = abi_type.items()

    if kind == "buffer":
        return t == ClarityType.BUFFER and len(cv.value) <= inner["length"]
    if kind == "string-ascii":
        return t == ClarityType.STRING_ASCII and len(cv.value) <= inner["length"]
    if kind == "string-utf8":
        return t == ClarityType.STRING_UTF8 and len(cv.value) <= inner["length"]
    if kind == "optional":
        if t == ClarityType.OPTIONAL_NONE:
            return True
        return t == ClarityType.OPTIONAL_SOME and matches_abi_type(cv.value, inner)
    if kind == "response":
        if t == ClarityType.RESPONSE_OK:
            return matches_abi_type(cv.value, inner["ok"])
        return t == ClarityType.RESPONSE_ERR and matches_abi_type(cv.value, inner["error"])
    if kind == "list":
        return (
            t == ClarityType.LIST
            and len(cv.value) <= inner["length"]
            and all(matches_abi_type(item, inner["type"]) for item in cv.value)
        )
    if kind == "tuple":
        if t != ClarityType.TUPLE:
            return False
        field_types = {f["name"]: f["type"] for f in inner}
        if set(field_types) != set(cv.value):
            return False
        return all(matches_abi_type(cv.value[n], ft) for n, ft in field_types.items())
    return False
