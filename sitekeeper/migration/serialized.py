# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Length-prefixed serialization codec and the recursive rewrite.

Text columns of PHP applications often hold values in PHP's serialize()
format, where every string declares its byte length:

    a:1:{s:3:"url";s:18:"http://old.example";}

A plain substring replace that changes a string's length corrupts such a
value. Values are therefore decoded into a tagged union, string leaves
are rewritten, and the whole value is re-encoded from scratch so every
declared length matches again.
"""

import re
from dataclasses import dataclass
from typing import Tuple, Union

import structlog

logger = structlog.get_logger()

ENCODING = "utf-8"
ERRORS = "surrogateescape"

_INT_RE = re.compile(rb"-?\d+")
_FLOAT_RE = re.compile(rb"-?(?:\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|INF|NAN)")


class SerializedFormatError(ValueError):
    """Raised when bytes do not follow the serialization grammar."""


@dataclass(frozen=True)
class Null:
    pass


@dataclass(frozen=True)
class Bool:
    value: bool


@dataclass(frozen=True)
class Int:
    value: int


@dataclass(frozen=True)
class Float:
    literal: bytes  # Kept verbatim so re-encoding never changes precision

    @property
    def value(self) -> float:
        return float(self.literal)


@dataclass(frozen=True)
class String:
    value: bytes


@dataclass(frozen=True)
class Array:
    items: Tuple[Tuple["Key", "Value"], ...]


@dataclass(frozen=True)
class Object:
    class_name: bytes
    properties: Tuple[Tuple["Key", "Value"], ...]


@dataclass(frozen=True)
class Custom:
    """Object with its own serialize() payload; opaque to the rewrite."""

    class_name: bytes
    payload: bytes


@dataclass(frozen=True)
class Reference:
    kind: str  # "r" (value reference) or "R" (variable reference)
    index: int


Key = Union[Int, String]
Value = Union[Null, Bool, Int, Float, String, Array, Object, Custom, Reference]


class _Parser:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def parse(self) -> Value:
        value = self.value()
        if self.pos != len(self.data):
            raise SerializedFormatError(f"Trailing data at offset {self.pos}")
        return value

    def expect(self, token: bytes) -> None:
        if not self.data.startswith(token, self.pos):
            raise SerializedFormatError(f"Expected {token!r} at offset {self.pos}")
        self.pos += len(token)

    def match(self, pattern: re.Pattern) -> bytes:
        m = pattern.match(self.data, self.pos)
        if not m:
            raise SerializedFormatError(f"Malformed number at offset {self.pos}")
        self.pos = m.end()
        return m.group(0)

    def length(self) -> int:
        raw = self.match(_INT_RE)
        n = int(raw)
        if n < 0:
            raise SerializedFormatError(f"Negative length at offset {self.pos}")
        return n

    def raw_string(self) -> bytes:
        n = self.length()
        self.expect(b':"')
        end = self.pos + n
        if end > len(self.data):
            raise SerializedFormatError("String length runs past end of data")
        value = self.data[self.pos:end]
        self.pos = end
        self.expect(b'"')
        return value

    def pairs(self, count: int) -> Tuple[Tuple[Key, Value], ...]:
        self.expect(b"{")
        items = []
        for _ in range(count):
            key = self.value()
            if not isinstance(key, (Int, String)):
                raise SerializedFormatError(f"Invalid key type at offset {self.pos}")
            items.append((key, self.value()))
        self.expect(b"}")
        return tuple(items)

    def value(self) -> Value:
        tag = self.data[self.pos:self.pos + 1]

        if tag == b"N":
            self.expect(b"N;")
            return Null()

        if tag == b"b":
            self.expect(b"b:")
            flag = self.data[self.pos:self.pos + 1]
            if flag not in (b"0", b"1"):
                raise SerializedFormatError(f"Invalid boolean at offset {self.pos}")
            self.pos += 1
            self.expect(b";")
            return Bool(flag == b"1")

        if tag == b"i":
            self.expect(b"i:")
            number = int(self.match(_INT_RE))
            self.expect(b";")
            return Int(number)

        if tag == b"d":
            self.expect(b"d:")
            literal = self.match(_FLOAT_RE)
            self.expect(b";")
            return Float(literal)

        if tag == b"s":
            self.expect(b"s:")
            value = self.raw_string()
            self.expect(b";")
            return String(value)

        if tag == b"a":
            self.expect(b"a:")
            count = self.length()
            self.expect(b":")
            return Array(self.pairs(count))

        if tag == b"O":
            self.expect(b"O:")
            class_name = self.raw_string()
            self.expect(b":")
            count = self.length()
            self.expect(b":")
            return Object(class_name, self.pairs(count))

        if tag == b"C":
            self.expect(b"C:")
            class_name = self.raw_string()
            self.expect(b":")
            n = self.length()
            self.expect(b":{")
            end = self.pos + n
            if end > len(self.data):
                raise SerializedFormatError("Payload length runs past end of data")
            payload = self.data[self.pos:end]
            self.pos = end
            self.expect(b"}")
            return Custom(class_name, payload)

        if tag in (b"r", b"R"):
            self.pos += 1
            self.expect(b":")
            index = int(self.match(_INT_RE))
            self.expect(b";")
            return Reference(tag.decode(), index)

        raise SerializedFormatError(f"Unknown type tag {tag!r} at offset {self.pos}")


def loads(data: bytes) -> Value:
    """
    Decode serialized bytes.

    Raises:
        SerializedFormatError: If data does not follow the grammar exactly
    """
    return _Parser(data).parse()


def parse(text: str) -> Value:
    """loads() for a text column value."""
    return loads(text.encode(ENCODING, ERRORS))


def dumps(value: Value) -> bytes:
    """Encode a value, computing every length prefix from the content."""
    if isinstance(value, Null):
        return b"N;"
    if isinstance(value, Bool):
        return b"b:1;" if value.value else b"b:0;"
    if isinstance(value, Int):
        return b"i:%d;" % value.value
    if isinstance(value, Float):
        return b"d:" + value.literal + b";"
    if isinstance(value, String):
        return b's:%d:"' % len(value.value) + value.value + b'";'
    if isinstance(value, Array):
        return b"a:%d:{" % len(value.items) + _dump_pairs(value.items) + b"}"
    if isinstance(value, Object):
        return (
            b'O:%d:"' % len(value.class_name)
            + value.class_name
            + b'":%d:{' % len(value.properties)
            + _dump_pairs(value.properties)
            + b"}"
        )
    if isinstance(value, Custom):
        return (
            b'C:%d:"' % len(value.class_name)
            + value.class_name
            + b'":%d:{' % len(value.payload)
            + value.payload
            + b"}"
        )
    if isinstance(value, Reference):
        return value.kind.encode() + b":%d;" % value.index
    raise TypeError(f"Not a serialized value: {value!r}")


def _dump_pairs(items: Tuple[Tuple[Key, Value], ...]) -> bytes:
    return b"".join(dumps(k) + dumps(v) for k, v in items)


def _looks_serialized(data: bytes) -> bool:
    """Cheap token check before attempting a full decode."""
    if data == b"N;":
        return True
    if len(data) < 4 or data[1:2] != b":":
        return False
    tag = data[0:1]
    if tag == b"s":
        return data.endswith(b'";')
    if tag in (b"a", b"O", b"C"):
        return data.endswith(b"}")
    if tag in (b"b", b"i", b"d"):
        return data.endswith(b";")
    return False


def try_loads(data: bytes) -> Value | None:
    if not _looks_serialized(data):
        return None
    try:
        return loads(data)
    except SerializedFormatError:
        return None


def is_serialized(text: str) -> bool:
    """True if text decodes completely as a serialized value."""
    return try_loads(text.encode(ENCODING, ERRORS)) is not None


def rewrite(value: Value, search: bytes, replace: bytes) -> Value:
    """
    Replace search with replace in every string leaf of value.

    Array keys, class names, custom payloads and references are left
    alone. A string leaf that is itself serialized is rewritten
    recursively and re-encoded.
    """
    if isinstance(value, String):
        return String(_rewrite_bytes(value.value, search, replace))
    if isinstance(value, Array):
        return Array(tuple((k, rewrite(v, search, replace)) for k, v in value.items))
    if isinstance(value, Object):
        return Object(
            value.class_name,
            tuple((k, rewrite(v, search, replace)) for k, v in value.properties),
        )
    return value


def _rewrite_bytes(data: bytes, search: bytes, replace: bytes) -> bytes:
    if search not in data:
        return data
    nested = try_loads(data)
    if nested is not None:
        return dumps(rewrite(nested, search, replace))
    return data.replace(search, replace)


def recursive_rewrite(text: str, search: str, replace: str) -> str:
    """
    Rewrite one column value.

    Serialized values are decoded, rewritten leaf by leaf and re-encoded;
    anything else gets a plain substring replace.

    Args:
        text: Column value
        search: Literal search string (non-empty)
        replace: Literal replacement

    Returns:
        The rewritten value (text itself when search does not occur)
    """
    if not search or search not in text:
        return text
    data = text.encode(ENCODING, ERRORS)
    result = _rewrite_bytes(data, search.encode(ENCODING, ERRORS), replace.encode(ENCODING, ERRORS))
    return result.decode(ENCODING, ERRORS)
