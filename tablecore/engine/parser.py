"""
Record validation and coercion.

`RecordParser.parse` turns a client-submitted record into the storage-ready
form handed to a persistence provider: generated fields are stamped, virtual and
read-only fields stripped, field rules applied, values coerced to native types,
and server-side filter policies enforced last.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from tablecore.domain.errors import BadRequestError
from tablecore.domain.models import DbFunctionUse, FieldDescriptor, FieldType, FilterPolicy
from tablecore.domain.types import RawExpression, current_timestamp, typecast_to_native
from tablecore.engine.filters import Lookup, check_filter_policy, interpret_record_values
from tablecore.engine.validation import Drop, Reject, validate_field_value
from tablecore.utils.logging import get_logger

log = get_logger(__name__)

Typecaster = Callable[[Any, FieldDescriptor], Any]

_VALUE_TOKEN = re.compile(r"\{value\}", re.IGNORECASE)


def _sql_literal(value: Any) -> str:
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if value is None:
        return "NULL"
    if isinstance(value, datetime):
        return f"'{value.isoformat()}'"
    return str(value)


def apply_db_function(value: Any, field: FieldDescriptor, use: DbFunctionUse) -> Any:
    """Wrap `value` in the field's database-side expression for `use`, if any."""
    function = field.get_db_function(use)
    if not function:
        return value
    literal = _sql_literal(value)
    return RawExpression(_VALUE_TOKEN.sub(lambda _: literal, function))


def to_client_record(record: Mapping, fields: Sequence[FieldDescriptor]) -> Dict[str, Any]:
    """Rename physical column names to their client-facing aliases."""
    aliases = {field.name.lower(): field.get_name() for field in fields if field.alias}
    return {aliases.get(str(key).lower(), key): value for key, value in record.items()}


class RecordParser:
    """
    Converts client records into storage records for one table.

    Parameters
    ----------
    typecast : callable
        Native type coercion, normally the metadata provider's.
    lookup : callable | None
        Session lookup substitution for string values.
    current_user_id : callable | None
        Returns the acting user's id, or None when unknown.
    restrict_fields_to_defined : bool
        Drop input keys that match no field descriptor instead of passing them
        through untouched.
    clock : callable
        Source of generated timestamps.
    """

    def __init__(
        self,
        typecast: Typecaster = typecast_to_native,
        lookup: Optional[Lookup] = None,
        current_user_id: Optional[Callable[[], Any]] = None,
        restrict_fields_to_defined: bool = True,
        clock: Callable[[], datetime] = current_timestamp,
    ) -> None:
        self.typecast = typecast
        self.lookup = lookup
        self.current_user_id = current_user_id
        self.restrict_fields_to_defined = restrict_fields_to_defined
        self.clock = clock

    def _user_id(self) -> Any:
        return self.current_user_id() if self.current_user_id is not None else None

    def parse_value_for_set(self, value: Any, field: FieldDescriptor, for_update: bool = False) -> Any:
        value = self.typecast(value, field)
        return apply_db_function(value, field, DbFunctionUse.UPDATE if for_update else DbFunctionUse.INSERT)

    def parse(
        self,
        record: Mapping,
        fields: Sequence[FieldDescriptor],
        filter_policy: Optional[FilterPolicy] = None,
        for_update: bool = False,
        old_record: Optional[Mapping] = None,
    ) -> Dict[str, Any]:
        """
        Parse one record.

        Parameters
        ----------
        record : Mapping
            Client payload, keyed by client-facing field names (any case).
        fields : sequence of FieldDescriptor
            The table's field descriptors, processed in order.
        filter_policy : FilterPolicy | None
            Server-side filters enforced against the parsed result.
        for_update : bool
            Update/patch rather than create.
        old_record : Mapping | None
            Stored state of the record, consulted by the policy on update.

        Returns
        -------
        dict
            The storage record keyed by physical column names.

        Raises
        ------
        BadRequestError
            On a null value for a non-nullable field, a missing required field
            on create, or a rejecting validation rule.
        ForbiddenError
            When the filter policy denies the record.
        """
        values = interpret_record_values(record, self.lookup)
        remaining: Dict[str, Any] = {str(key).lower(): value for key, value in values.items()}
        original_keys = {str(key).lower(): key for key in values}
        parsed: Dict[str, Any] = {}

        for field in fields:
            kind = field.type
            if kind == FieldType.TIMESTAMP_ON_CREATE:
                if not for_update:
                    parsed[field.name] = self.clock()
                continue
            if kind == FieldType.TIMESTAMP_ON_UPDATE:
                parsed[field.name] = self.clock()
                continue
            if kind in (FieldType.USER_ID_ON_CREATE, FieldType.USER_ID_ON_UPDATE):
                if kind == FieldType.USER_ID_ON_UPDATE or not for_update:
                    user_id = self._user_id()
                    if user_id is not None:
                        parsed[field.name] = user_id
                continue

            name = field.get_name().lower()
            keys = {name, field.name.lower()}
            if field.is_virtual or field.is_api_read_only:
                for key in keys:
                    remaining.pop(key, None)
                continue
            if for_update and kind == FieldType.ID:
                for key in keys:
                    remaining.pop(key, None)
                continue

            present = name in remaining or field.name.lower() in remaining
            if not present:
                if field.is_required and not for_update:
                    raise BadRequestError(f"Required field '{field.get_name()}' can not be NULL.")
                continue

            value = remaining[name] if name in remaining else remaining[field.name.lower()]
            for key in keys:
                remaining.pop(key, None)

            if value is None and not field.allow_null:
                raise BadRequestError(f"Field '{field.get_name()}' can not be NULL.")

            outcome = validate_field_value(field.get_name(), value, field.validation, for_update, field)
            if isinstance(outcome, Drop):
                log.debug(
                    f"Dropping field '{field.get_name()}' after failed validation",
                    extra={"field": field.get_name()},
                )
                continue
            if isinstance(outcome, Reject):
                raise BadRequestError(outcome.reason)

            parsed[field.name] = self.parse_value_for_set(value, field, for_update)

        if not self.restrict_fields_to_defined or not fields:
            for key, value in remaining.items():
                parsed.setdefault(original_keys[key], value)

        check_filter_policy(parsed, filter_policy, for_update, old_record, self.lookup)
        return parsed


def parse_record(
    record: Mapping,
    fields: Sequence[FieldDescriptor],
    filter_policy: Optional[FilterPolicy] = None,
    for_update: bool = False,
    old_record: Optional[Mapping] = None,
    **parser_options: Any,
) -> Dict[str, Any]:
    """Shorthand for `RecordParser(**parser_options).parse(...)`."""
    return RecordParser(**parser_options).parse(record, fields, filter_policy, for_update, old_record)


def split_relation_payload(record: Mapping, relation_names: List[str]) -> Dict[str, Any]:
    """Pop nested relation payloads (keyed by relation name) out of `record`."""
    wanted = {name.lower() for name in relation_names}
    found: Dict[str, Any] = {}
    if not isinstance(record, dict):
        return found
    for key in [k for k in record if isinstance(k, str) and k.lower() in wanted]:
        found[key.lower()] = record.pop(key)
    return found


__all__ = [
    "RecordParser",
    "parse_record",
    "apply_db_function",
    "to_client_record",
    "split_relation_payload",
]
