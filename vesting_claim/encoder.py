"""Canonical ARC-4 encoding of typed argument tuples.

The oracle and the claim authority recompute digests over the bytes produced
here, so ``encode`` must be a pure function of its typed inputs and
``decode`` only accepts the one canonical encoding of a value.
"""
import functools
from typing import Any, Sequence

from algosdk import abi, encoding, error
from Crypto.Hash import SHA512

from .errors import EncodingError

# errors algosdk can surface from a bad value or a truncated/garbled byte string
_CODEC_ERRORS = (
    error.ABIEncodingError,
    error.ABITypeError,
    ValueError,
    TypeError,
    IndexError,
    AttributeError,
    OverflowError,
)


@functools.lru_cache(maxsize=None)
def abi_type(type_string: str) -> abi.ABIType:
    try:
        return abi.ABIType.from_string(type_string)
    except _CODEC_ERRORS as exc:
        raise EncodingError(f"unknown ABI type {type_string!r}: {exc}") from exc


def tuple_type(types: Sequence[str]) -> abi.TupleType:
    return abi.TupleType([abi_type(t) for t in types])


def _is_byte_array(t: abi.ABIType) -> bool:
    return isinstance(t, (abi.ArrayDynamicType, abi.ArrayStaticType)) and isinstance(t.child_type, abi.ByteType)


def _check(t: abi.ABIType, value: Any, path: str):
    # reject anything algosdk would coerce, e.g. True for a uint
    if isinstance(t, abi.UintType):
        if isinstance(value, bool) or not isinstance(value, int):
            raise EncodingError(f"{path}: expected {t}, got {type(value).__name__}")
        if value < 0 or value >= 2 ** t.bit_size:
            raise EncodingError(f"{path}: {value} out of range for {t}")
    elif isinstance(t, abi.BoolType):
        if not isinstance(value, bool):
            raise EncodingError(f"{path}: expected bool, got {type(value).__name__}")
    elif isinstance(t, abi.AddressType):
        if isinstance(value, str):
            if not encoding.is_valid_address(value):
                raise EncodingError(f"{path}: {value!r} is not a valid address")
        elif not isinstance(value, (bytes, bytearray)) or len(value) != 32:
            raise EncodingError(f"{path}: expected an address, got {value!r}")
    elif isinstance(t, abi.StringType):
        if not isinstance(value, str):
            raise EncodingError(f"{path}: expected string, got {type(value).__name__}")
    elif _is_byte_array(t):
        if not isinstance(value, (bytes, bytearray)):
            raise EncodingError(f"{path}: expected bytes, got {type(value).__name__}")
        if isinstance(t, abi.ArrayStaticType) and len(value) != t.static_length:
            raise EncodingError(f"{path}: expected {t.static_length} bytes, got {len(value)}")
    elif isinstance(t, abi.TupleType):
        if not isinstance(value, (list, tuple)) or len(value) != len(t.child_types):
            raise EncodingError(f"{path}: expected a {len(t.child_types)}-tuple for {t}")
        for index, (child, item) in enumerate(zip(t.child_types, value)):
            _check(child, item, f"{path}.{index}")
    elif isinstance(t, (abi.ArrayDynamicType, abi.ArrayStaticType)):
        if not isinstance(value, (list, tuple)):
            raise EncodingError(f"{path}: expected a list for {t}")
        if isinstance(t, abi.ArrayStaticType) and len(value) != t.static_length:
            raise EncodingError(f"{path}: expected {t.static_length} items for {t}")
        for index, item in enumerate(value):
            _check(t.child_type, item, f"{path}[{index}]")


def _normalize(t: abi.ABIType, value: Any) -> Any:
    # algosdk hands back byte arrays as lists of ints and tuples as lists
    if _is_byte_array(t):
        return bytes(value)
    if isinstance(t, abi.TupleType):
        return tuple(_normalize(child, item) for child, item in zip(t.child_types, value))
    if isinstance(t, (abi.ArrayDynamicType, abi.ArrayStaticType)):
        return [_normalize(t.child_type, item) for item in value]
    return value


def encode(types: Sequence[str], values: Sequence[Any]) -> bytes:
    """Encode ``values`` as the ARC-4 tuple described by ``types``."""
    t = tuple_type(types)
    _check(t, values, "args")
    try:
        return t.encode(list(values))
    except _CODEC_ERRORS as exc:
        raise EncodingError(f"cannot encode {values!r} as {t}: {exc}") from exc


def decode(types: Sequence[str], data: bytes) -> tuple:
    """Inverse of ``encode``. Fails closed on any non-canonical input."""
    if not isinstance(data, (bytes, bytearray)):
        raise EncodingError(f"expected bytes, got {type(data).__name__}")
    t = tuple_type(types)
    try:
        values = _normalize(t, t.decode(bytes(data)))
    except _CODEC_ERRORS as exc:
        raise EncodingError(f"cannot decode {len(data)} bytes as {t}: {exc}") from exc

    # trailing garbage or overlapping offsets decode "successfully" but do not round trip
    if encode(types, values) != bytes(data):
        raise EncodingError(f"input is not the canonical encoding of {t}")
    return values


def digest(*parts: bytes) -> bytes:
    h = SHA512.new(truncate="256")
    for part in parts:
        h.update(part)
    return h.digest()


def address_bytes(address: str) -> bytes:
    try:
        return encoding.decode_address(address)
    except _CODEC_ERRORS + (error.WrongChecksumError, error.WrongKeyLengthError) as exc:
        raise EncodingError(f"{address!r} is not a valid address") from exc


def to_hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def from_hex(text: str) -> bytes:
    if not isinstance(text, str):
        raise EncodingError(f"expected a hex string, got {type(text).__name__}")
    body = text[2:] if text[:2] in ("0x", "0X") else text
    try:
        return bytes.fromhex(body)
    except ValueError as exc:
        raise EncodingError(f"invalid hex string {text!r}") from exc
