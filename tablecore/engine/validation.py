"""
Field-level validation rules.

A field's `validation` mapping names rules (``not_null``, ``email``, ``int``,
``picklist`` ...) each with an optional config. A rule failure yields an explicit
outcome instead of raising: `Reject(reason)` when the record must be refused, or
`Drop()` when the rule's ``on_fail`` is ``ignore_field`` and the field should be
silently removed from the record. Any other ``on_fail`` string replaces the
default rejection message.

Broken rule configuration (a ``match`` rule without a pattern, a picklist rule on
a field without picklist values) is not a per-record problem and raises
`InternalServerError`.
"""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlsplit

from pydantic import AnyUrl, EmailStr, TypeAdapter, ValidationError

from tablecore.domain.errors import InternalServerError
from tablecore.domain.models import FieldDescriptor
from tablecore.domain.types import to_bool

ON_FAIL_DROP = "ignore_field"


@dataclass(frozen=True)
class Reject:
    """The value is unacceptable; the record fails with `reason`."""

    reason: str


@dataclass(frozen=True)
class Drop:
    """The value is unacceptable; the field is removed and the record proceeds."""


ValidationOutcome = Union[Reject, Drop]


@lru_cache(maxsize=None)
def _email_adapter() -> TypeAdapter:
    return TypeAdapter(EmailStr)


@lru_cache(maxsize=None)
def _url_adapter() -> TypeAdapter:
    return TypeAdapter(AnyUrl)


def _is_empty(value: Any) -> bool:
    """Emptiness in the loose sense clients expect: "", "0", 0, False, empty containers."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == "" or value == "0"
    if isinstance(value, (bool, int, float, Decimal)):
        return not value
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _is_email(value: Any) -> bool:
    try:
        _email_adapter().validate_python(str(value))
    except ValidationError:
        return False
    return True


def _is_url(value: Any, sections: List[str]) -> bool:
    text = str(value)
    try:
        _url_adapter().validate_python(text)
    except ValidationError:
        return False
    parts = urlsplit(text)
    if not parts.scheme or not parts.netloc:
        return False
    wanted = {section.lower() for section in sections}
    if "path" in wanted and not parts.path:
        return False
    if "query" in wanted and not parts.query:
        return False
    return True


_INT_RE = re.compile(r"^[+-]?\d+$")
_HEX_RE = re.compile(r"^0[xX][0-9a-fA-F]+$")
_OCTAL_RE = re.compile(r"^0[oO]?[0-7]+$")


def _parse_int(value: Any, formats: List[str]) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    allowed = {fmt.lower() for fmt in formats}
    if _INT_RE.match(text):
        return int(text)
    if "hex" in allowed and _HEX_RE.match(text):
        return int(text, 16)
    if "octal" in allowed and _OCTAL_RE.match(text):
        digits = text[2:] if text[1:2] in ("o", "O") else text[1:]
        return int(digits, 8)
    return None


def _is_float(value: Any, decimal: str) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float, Decimal)):
        return True
    if not isinstance(value, str):
        return False
    text = value.strip()
    if decimal != ".":
        if "." in text:
            return False
        text = text.replace(decimal, ".")
    try:
        float(text)
    except ValueError:
        return False
    return True


def _is_boolean(value: Any) -> bool:
    try:
        to_bool(value)
    except ValueError:
        return False
    return True


_PATTERN_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


def compile_pattern(encoded: str, name: str) -> "re.Pattern[str]":
    """
    Decode a base64-encoded ``match`` pattern.

    Patterns may be written bare (``^[a-z]+$``) or delimited with trailing flags
    (``/^[a-z]+$/i``).
    """
    try:
        pattern = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise InternalServerError(
            f"Invalid validation configuration: Field '{name}' has an undecodable 'regexp'."
        ) from exc
    flags = 0
    if len(pattern) > 2 and not pattern[0].isalnum() and pattern[0] not in "\\^([.":
        delimiter = pattern[0]
        end = pattern.rfind(delimiter)
        if end > 0:
            for flag in pattern[end + 1 :]:
                flags |= _PATTERN_FLAGS.get(flag, 0)
            pattern = pattern[1:end]
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        raise InternalServerError(
            f"Invalid validation configuration: Field '{name}' has an invalid 'regexp'."
        ) from exc


def _picklist(name: str, field_info: Optional[FieldDescriptor]) -> List[str]:
    if field_info is None or not field_info.picklist:
        raise InternalServerError(
            f"Invalid validation configuration: Field '{name}' has no 'picklist' options in schema settings."
        )
    return list(field_info.picklist)


def _selections(value: Any, delimiter: str) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value).split(delimiter) if item.strip()]


# each rule returns None when the value passes, else its default failure message
RuleCheck = Callable[[str, Any, Dict[str, Any], bool, Optional[FieldDescriptor]], Optional[str]]


def _api_read_only(name, value, config, for_update, field_info):
    return f"Field '{name}' is read only."


def _create_only(name, value, config, for_update, field_info):
    if for_update:
        return f"Field '{name}' can only be set during record creation."
    return None


def _not_null(name, value, config, for_update, field_info):
    if value is None:
        return f"Field '{name}' value can not be null."
    return None


def _not_empty(name, value, config, for_update, field_info):
    if value is not None and _is_empty(value):
        return f"Field '{name}' value can not be empty."
    return None


def _email(name, value, config, for_update, field_info):
    if not _is_empty(value) and not _is_email(value):
        return f"Field '{name}' value must be a valid email address."
    return None


def _url(name, value, config, for_update, field_info):
    sections = config.get("sections") or []
    if isinstance(sections, str):
        sections = [sections]
    if not _is_empty(value) and not _is_url(value, list(sections)):
        return f"Field '{name}' value must be a valid URL."
    return None


def _int(name, value, config, for_update, field_info):
    if value is None:
        return None
    formats = config.get("formats") or []
    if isinstance(formats, str):
        formats = [formats]
    number = _parse_int(value, list(formats))
    range_config = config.get("range") or {}
    low, high = range_config.get("min"), range_config.get("max")
    if number is None:
        return f"Field '{name}' value is not in the valid range."
    if isinstance(low, int) and number < low:
        return f"Field '{name}' value is not in the valid range."
    if isinstance(high, int) and number > high:
        return f"Field '{name}' value is not in the valid range."
    return None


def _float(name, value, config, for_update, field_info):
    if value is not None and not _is_float(value, str(config.get("decimal", "."))):
        return f"Field '{name}' value is not an acceptable float value."
    return None


def _boolean(name, value, config, for_update, field_info):
    if value is not None and not _is_boolean(value):
        return f"Field '{name}' value is not an acceptable boolean value."
    return None


def _match(name, value, config, for_update, field_info):
    encoded = config.get("regexp")
    if not encoded:
        raise InternalServerError(f"Invalid validation configuration: Field '{name}' has no 'regexp'.")
    pattern = compile_pattern(encoded, name)
    if not _is_empty(value) and pattern.search(str(value)) is None:
        return f"Field '{name}' value is invalid."
    return None


def _single_picklist(name, value, config, for_update, field_info):
    allowed = _picklist(name, field_info)
    if not _is_empty(value) and str(value) not in allowed:
        return f"Field '{name}' value is invalid."
    return None


def _multi_picklist(name, value, config, for_update, field_info):
    allowed = _picklist(name, field_info)
    if _is_empty(value):
        return None
    selections = _selections(value, str(config.get("delimiter", ",")))
    low = config.get("min", 1)
    high = config.get("max")
    if low is not None and len(selections) < int(low):
        return f"Field '{name}' value does not contain enough selections."
    if high and len(selections) > int(high):
        return f"Field '{name}' value contains too many selections."
    if any(selection not in allowed for selection in selections):
        return f"Field '{name}' value is invalid."
    return None


RULES: Dict[str, RuleCheck] = {
    "api_read_only": _api_read_only,
    "create_only": _create_only,
    "not_null": _not_null,
    "not_empty": _not_empty,
    "not_zero": _not_empty,
    "email": _email,
    "url": _url,
    "int": _int,
    "float": _float,
    "boolean": _boolean,
    "match": _match,
    "picklist": _single_picklist,
    "multi_picklist": _multi_picklist,
}


def validate_field_value(
    name: str,
    value: Any,
    validations: Optional[Mapping[str, Any]],
    for_update: bool = False,
    field_info: Optional[FieldDescriptor] = None,
) -> Optional[ValidationOutcome]:
    """
    Run every configured rule for one field value.

    Parameters
    ----------
    name : str
        Client-facing field name, used in messages.
    value : Any
        The submitted value.
    validations : Mapping | None
        Rule name to rule config (a mapping, or any truthy marker for rules
        without options). Unknown rule names are ignored.
    for_update : bool
        Whether the record is being updated rather than created.
    field_info : FieldDescriptor | None
        Descriptor supplying picklist values.

    Returns
    -------
    ValidationOutcome | None
        None when every rule passes; otherwise the outcome of the first
        failing rule.
    """
    for rule, raw_config in (validations or {}).items():
        check = RULES.get(str(rule).lower())
        if check is None:
            continue
        config: Dict[str, Any] = dict(raw_config) if isinstance(raw_config, Mapping) else {}
        message = check(name, value, config, for_update, field_info)
        if message is None:
            continue
        on_fail = config.get("on_fail")
        if isinstance(on_fail, str) and on_fail.strip():
            if on_fail.strip().lower() == ON_FAIL_DROP:
                return Drop()
            return Reject(on_fail)
        return Reject(message)
    return None


__all__ = [
    "Reject",
    "Drop",
    "ValidationOutcome",
    "RULES",
    "compile_pattern",
    "validate_field_value",
]
