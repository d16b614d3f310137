"""Typed attribute values and their DynamoDB JSON encoding.

Every cell of a DynamoDB item is one of ten tagged variants. Each variant is
a frozen dataclass here, and ``AttributeValue`` is the union of them. The
wire form is the service's verbose typed JSON::

    {"S": "text"}  {"N": "42"}  {"B": "<base64>"}  {"BOOL": true}
    {"NULL": true} {"L": [...]} {"M": {...}}
    {"SS": [...]}  {"NS": [...]} {"BS": [...]}
"""

import base64
import binascii
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Union

from .errors import DecodeError


def _check_not_empty(value: Any) -> None:
    if not value.values:
        raise ValueError(f"{type(value).__name__} must not be empty")


@dataclass(frozen=True)
class AttrString:
    value: str

    @property
    def tag(self) -> str:
        return "S"


@dataclass(frozen=True)
class AttrNumber:
    """A number, kept as the decimal string the service sends."""

    value: str

    @property
    def tag(self) -> str:
        return "N"

    @classmethod
    def of(cls, number: int | float | Decimal) -> "AttrNumber":
        return cls(str(number))

    def as_int(self) -> int:
        """Interpret the number as an integer.

        Raises:
            DecodeError: If the value is not an integral decimal.
        """
        try:
            parsed = Decimal(self.value)
        except ArithmeticError as e:
            raise DecodeError(f"Not a number: {self.value!r}") from e
        if not parsed.is_finite() or parsed != parsed.to_integral_value():
            raise DecodeError(f"Not an integer: {self.value!r}")
        return int(parsed)


@dataclass(frozen=True)
class AttrBinary:
    value: bytes

    @property
    def tag(self) -> str:
        return "B"


@dataclass(frozen=True)
class AttrBool:
    value: bool

    @property
    def tag(self) -> str:
        return "BOOL"


@dataclass(frozen=True)
class AttrNull:
    @property
    def tag(self) -> str:
        return "NULL"


@dataclass(frozen=True)
class AttrList:
    values: list["AttributeValue"] = field(default_factory=list)

    @property
    def tag(self) -> str:
        return "L"


@dataclass(frozen=True)
class AttrMap:
    values: dict[str, "AttributeValue"] = field(default_factory=dict)

    @property
    def tag(self) -> str:
        return "M"


@dataclass(frozen=True)
class AttrStringSet:
    """A non-empty set of strings; the service rejects empty sets."""

    values: list[str]

    def __post_init__(self):
        _check_not_empty(self)

    @property
    def tag(self) -> str:
        return "SS"


@dataclass(frozen=True)
class AttrNumberSet:
    values: list[str]

    def __post_init__(self):
        _check_not_empty(self)

    @property
    def tag(self) -> str:
        return "NS"


@dataclass(frozen=True)
class AttrBinarySet:
    values: list[bytes]

    def __post_init__(self):
        _check_not_empty(self)

    @property
    def tag(self) -> str:
        return "BS"


AttributeValue = Union[
    AttrString,
    AttrNumber,
    AttrBinary,
    AttrBool,
    AttrNull,
    AttrList,
    AttrMap,
    AttrStringSet,
    AttrNumberSet,
    AttrBinarySet,
]

Item = dict[str, AttributeValue]


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: Any) -> bytes:
    if not isinstance(text, str):
        raise DecodeError(f"Expected base64 string, got {type(text).__name__}")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64: {text!r}") from e


def encode_value(value: AttributeValue) -> dict[str, Any]:
    """Encode one attribute value to its typed JSON form."""
    if isinstance(value, (AttrString, AttrNumber, AttrBool)):
        return {value.tag: value.value}
    if isinstance(value, AttrBinary):
        return {"B": _b64(value.value)}
    if isinstance(value, AttrNull):
        return {"NULL": True}
    if isinstance(value, AttrList):
        return {"L": [encode_value(v) for v in value.values]}
    if isinstance(value, AttrMap):
        return {"M": {k: encode_value(v) for k, v in value.values.items()}}
    if isinstance(value, (AttrStringSet, AttrNumberSet)):
        return {value.tag: list(value.values)}
    if isinstance(value, AttrBinarySet):
        return {"BS": [_b64(v) for v in value.values]}
    raise TypeError(f"Not an attribute value: {value!r}")


def _string_list(tag: str, payload: Any) -> list[str]:
    if not isinstance(payload, list) or not all(isinstance(s, str) for s in payload):
        raise DecodeError(f"{tag} expects a list of strings")
    if not payload:
        raise DecodeError(f"{tag} must not be empty")
    return list(payload)


def _decimal_string(payload: Any) -> str:
    if not isinstance(payload, str):
        raise DecodeError("N expects a decimal string")
    try:
        parsed = Decimal(payload)
    except ArithmeticError as e:
        raise DecodeError(f"Not a number: {payload!r}") from e
    if not parsed.is_finite():
        raise DecodeError(f"Not a finite number: {payload!r}")
    return payload


def decode_value(data: Any) -> AttributeValue:
    """Decode one typed JSON value.

    Raises:
        DecodeError: If ``data`` is not a single known tag with a payload of
            the right type.
    """
    if not isinstance(data, dict) or len(data) != 1:
        raise DecodeError(f"Attribute value must have exactly one type tag: {data!r}")

    tag, payload = next(iter(data.items()))

    if tag == "S":
        if not isinstance(payload, str):
            raise DecodeError("S expects a string")
        return AttrString(payload)
    if tag == "N":
        return AttrNumber(_decimal_string(payload))
    if tag == "B":
        return AttrBinary(_unb64(payload))
    if tag == "BOOL":
        if not isinstance(payload, bool):
            raise DecodeError("BOOL expects a boolean")
        return AttrBool(payload)
    if tag == "NULL":
        if payload is not True:
            raise DecodeError("NULL expects true")
        return AttrNull()
    if tag == "L":
        if not isinstance(payload, list):
            raise DecodeError("L expects a list")
        return AttrList([decode_value(v) for v in payload])
    if tag == "M":
        if not isinstance(payload, dict):
            raise DecodeError("M expects an object")
        return AttrMap({k: decode_value(v) for k, v in payload.items()})
    if tag == "SS":
        return AttrStringSet(_string_list(tag, payload))
    if tag == "NS":
        return AttrNumberSet([_decimal_string(n) for n in _string_list(tag, payload)])
    if tag == "BS":
        if not isinstance(payload, list) or not payload:
            raise DecodeError("BS expects a non-empty list")
        return AttrBinarySet([_unb64(v) for v in payload])

    raise DecodeError(f"Unknown attribute type tag: {tag!r}")


def encode_item(item: Item) -> dict[str, Any]:
    """Encode a whole item (attribute name -> value)."""
    return {name: encode_value(value) for name, value in item.items()}


def decode_item(data: Any) -> Item:
    """Decode a whole item.

    Raises:
        DecodeError: If ``data`` is not an object of typed values.
    """
    if not isinstance(data, dict):
        raise DecodeError(f"Item must be an object, got {type(data).__name__}")
    return {name: decode_value(value) for name, value in data.items()}
