"""General Utility Functions."""

from __future__ import annotations

import math
from collections.abc import Iterator, Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Protocol, TypeVar, Union, runtime_checkable

__all__ = ["JsonValue", "chunked", "convert_to_json_safe"]

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Type definitions
# ---------------------------------------------------------------------------

JsonValue = Union[
    str,
    int,
    float,
    bool,
    None,
    Dict[str, "JsonValue"],
    List["JsonValue"],
]
"""The set of types that are natively representable in JSON."""


@runtime_checkable
class PydanticLike(Protocol):
    """Protocol for objects that expose a Pydantic-style ``model_dump`` method."""

    def model_dump(self) -> Dict[str, "JsonInputType"]: ...  # noqa: E704


JsonInputType = Union[
    None,
    str,
    int,
    bool,
    float,
    Decimal,
    datetime,
    date,
    Dict[str, "JsonInputType"],
    List["JsonInputType"],
    PydanticLike,
]
"""All types accepted as input to :func:`convert_to_json_safe`."""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def convert_to_json_safe(data: JsonInputType) -> JsonValue:
    """Recursively convert a data structure to JSON-safe types.

    Handles:
    - ``datetime`` / ``date`` objects -> ISO-format strings
    - ``Decimal`` -> ``str`` (amounts must not lose precision on the wire)
    - ``float`` NaN / Inf -> ``None``
    - Nested dicts, lists and tuples
    - Pydantic models (via ``.model_dump()``)
    """
    if data is None:
        return None

    if isinstance(data, (str, int, bool)):
        return data

    if isinstance(data, float):
        if math.isnan(data) or math.isinf(data):
            return None
        return data

    if isinstance(data, Decimal):
        return str(data)

    # datetime MUST be checked before date because datetime is a subclass of date.
    if isinstance(data, datetime):
        return data.isoformat()

    if isinstance(data, date):
        return data.isoformat()

    if isinstance(data, dict):
        return {key: convert_to_json_safe(value) for key, value in data.items()}

    if isinstance(data, (list, tuple)):
        return [convert_to_json_safe(item) for item in data]

    if isinstance(data, PydanticLike):
        return convert_to_json_safe(data.model_dump())

    # Unknown types (UUID, Path, StrEnum subclasses of str are already handled).
    return str(data)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of *items* of at most *size* elements."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    for start in range(0, len(items), size):
        yield items[start:start + size]
