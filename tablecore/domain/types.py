"""
Native type coercion for field values.

`typecast_to_native` converts a client-supplied value into the Python type that
matches a field's simple type. Values that cannot be converted raise
`BadRequestError` so they surface as per-record failures.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from tablecore.domain.errors import BadRequestError
from tablecore.domain.models import FieldDescriptor, FieldType

_INTEGER_TYPES = {
    FieldType.ID,
    FieldType.REFERENCE,
    FieldType.INTEGER,
    FieldType.BIGINT,
    FieldType.USER_ID,
    FieldType.USER_ID_ON_CREATE,
    FieldType.USER_ID_ON_UPDATE,
}
_FLOAT_TYPES = {FieldType.FLOAT, FieldType.DOUBLE}
_DATETIME_TYPES = {
    FieldType.DATETIME,
    FieldType.TIMESTAMP,
    FieldType.TIMESTAMP_ON_CREATE,
    FieldType.TIMESTAMP_ON_UPDATE,
}

_TRUE_STRINGS = {"true", "1", "yes", "on", "t", "y"}
_FALSE_STRINGS = {"false", "0", "no", "off", "f", "n", ""}


@dataclass(frozen=True)
class RawExpression:
    """A database-side expression to be inlined instead of bound as a literal."""

    expression: str

    def __str__(self) -> str:
        return self.expression


def current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"not a boolean: {value!r}")


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise ValueError(f"not an integer: {value!r}")


def _is_integer_text(value: str) -> bool:
    text = value.strip()
    if text.startswith("-"):
        text = text[1:]
    return text.isdigit()


def typecast_to_native(value: Any, field: FieldDescriptor) -> Any:
    """
    Convert `value` into the native type for `field`.

    Parameters
    ----------
    value : Any
        Raw value from a request payload, id list or filter.
    field : FieldDescriptor
        Descriptor whose simple type drives the conversion.

    Returns
    -------
    Any
        The converted value. None, raw expressions and containers pass through.
    """
    if value is None or isinstance(value, (RawExpression, list, dict)):
        return value

    kind = field.type
    try:
        if kind in _INTEGER_TYPES:
            # string keys (uuids, codes) are legal identifiers
            if kind in (FieldType.ID, FieldType.REFERENCE) and isinstance(value, str):
                if not _is_integer_text(value):
                    return value
            return _to_int(value)
        if kind in _FLOAT_TYPES:
            return float(value)
        if kind == FieldType.DECIMAL:
            return Decimal(str(value))
        if kind == FieldType.BOOLEAN:
            return to_bool(value)
        if kind in (FieldType.STRING, FieldType.TEXT):
            return value if isinstance(value, str) else str(value)
        if kind in _DATETIME_TYPES:
            if isinstance(value, datetime):
                return value
            if isinstance(value, (int, float)):
                return datetime.fromtimestamp(value, tz=timezone.utc)
            return datetime.fromisoformat(str(value))
        if kind == FieldType.DATE:
            if isinstance(value, date):
                return value
            return date.fromisoformat(str(value))
        if kind == FieldType.TIME:
            if isinstance(value, time):
                return value
            return time.fromisoformat(str(value))
        if kind == FieldType.JSON and isinstance(value, str):
            return json.loads(value)
    except (ValueError, TypeError, InvalidOperation) as exc:
        raise BadRequestError(
            f"Field '{field.get_name()}' value {value!r} is not a valid {kind.value}."
        ) from exc
    return value


__all__ = ["RawExpression", "current_timestamp", "to_bool", "typecast_to_native"]
