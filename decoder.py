"""
Row decoder: turn one raw result row into typed event fields.

Drivers do not agree on how they hand back column values. Oracle NUMBER
columns, for example, often arrive as decimal text. Each column is resolved
on its own by trial-parsing text into int, then float, and keeping the text
otherwise. Unsupported types drop that column only.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_INT64_DIGITS = 19
_NON_FINITE_WORDS = frozenset({"inf", "infinity", "nan"})


class ValueKind(str, Enum):
    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"
    TIMESTAMP = "timestamp"
    NULL = "null"
    UNSUPPORTED = "unsupported"


@dataclass
class DecodeIssue:
    column: str
    type_name: str
    reason: str

    def message(self) -> str:
        return f"cannot decode {self.type_name} value: {self.reason}"


@dataclass
class DecodedRow:
    fields: dict[str, Any] = field(default_factory=dict)
    issues: list[DecodeIssue] = field(default_factory=list)


def parse_int(text: str) -> int | None:
    """Strict base-10 int that fits in 64 bits, else None."""
    if not _INT_RE.fullmatch(text):
        return None
    # bounds int() input; anything longer cannot fit in 64 bits
    if len(text.lstrip("+-").lstrip("0")) > _INT64_DIGITS:
        return None
    value = int(text)
    if value < _INT64_MIN or value > _INT64_MAX:
        return None
    return value


def parse_float(text: str) -> float | None:
    # float() tolerates padding and digit separators; decimal text from a driver has neither
    if not text or text != text.strip() or "_" in text:
        return None
    try:
        value = float(text)
    except ValueError:
        return None
    # out-of-range text such as 1e400 stays text; only spelled-out inf/nan are non-finite
    if not math.isfinite(value) and text.lstrip("+-").lower() not in _NON_FINITE_WORDS:
        return None
    return value


def decode_text(text: str) -> tuple[ValueKind, Any]:
    as_int = parse_int(text)
    if as_int is not None:
        return ValueKind.INTEGER, as_int
    as_float = parse_float(text)
    if as_float is not None:
        return ValueKind.FLOAT, as_float
    return ValueKind.TEXT, text


def decode_value(value: Any) -> tuple[ValueKind, Any]:
    """Resolve one raw column value to ``(kind, decoded)``.

    Unsupported values come back as ``(ValueKind.UNSUPPORTED, reason)``.
    """
    if value is None:
        return ValueKind.NULL, None
    if isinstance(value, str):
        return decode_text(value)
    if isinstance(value, int):
        return ValueKind.INTEGER, value
    if isinstance(value, float):
        return ValueKind.FLOAT, value
    if isinstance(value, Decimal):
        return decode_text(str(value))
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            return ValueKind.TEXT, bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            return ValueKind.UNSUPPORTED, f"invalid UTF-8 ({exc.reason})"
    if isinstance(value, (datetime, date, time)):
        return ValueKind.TIMESTAMP, value
    return ValueKind.UNSUPPORTED, "unsupported type"


def decode_row(raw: Mapping[str, Any]) -> DecodedRow:
    """Decode every column of ``raw``; bad columns are reported, never fatal."""
    row = DecodedRow()
    for column, value in raw.items():
        kind, decoded = decode_value(value)
        if kind is ValueKind.NULL:
            continue
        if kind is ValueKind.UNSUPPORTED:
            row.issues.append(DecodeIssue(column=column, type_name=type(value).__name__, reason=decoded))
            continue
        row.fields[column.lower()] = decoded
    return row
