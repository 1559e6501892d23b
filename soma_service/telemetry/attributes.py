from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

AttributeValue = Union[str, int, float, bool]


class AttributeKind(str, Enum):
    STRING = "string"
    INT64 = "int64"
    FLOAT64 = "float64"
    BOOL = "bool"


@dataclass(frozen=True)
class SpanAttribute:
    """A key/value pair whose span type is fixed by the constructor used.

    Build instances with :meth:`string`, :meth:`int64`, :meth:`float64` or
    :meth:`bool_`; the same pair is written to the log record and, when a
    span is recording, to the span.
    """

    key: str
    value: AttributeValue
    kind: AttributeKind

    @classmethod
    def string(cls, key: str, value: str) -> SpanAttribute:
        if not isinstance(value, str):
            raise TypeError(f"{key}: expected str, got {type(value).__name__}")
        return cls(key, value, AttributeKind.STRING)

    @classmethod
    def int64(cls, key: str, value: int) -> SpanAttribute:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"{key}: expected int, got {type(value).__name__}")
        if not _INT64_MIN <= value <= _INT64_MAX:
            raise ValueError(f"{key}: {value} does not fit in 64 bits")
        return cls(key, value, AttributeKind.INT64)

    @classmethod
    def float64(cls, key: str, value: float) -> SpanAttribute:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"{key}: expected float, got {type(value).__name__}")
        return cls(key, float(value), AttributeKind.FLOAT64)

    @classmethod
    def bool_(cls, key: str, value: bool) -> SpanAttribute:
        if not isinstance(value, bool):
            raise TypeError(f"{key}: expected bool, got {type(value).__name__}")
        return cls(key, value, AttributeKind.BOOL)
