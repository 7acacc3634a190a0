"""
Identifier resolution.

Extracts primary-key values from records or raw ids for a table's identifier set,
coercing them to native types. Also hosts the small id/record helpers used by the
coordinator and the relationship engine (id lists, field trimming, lookups).
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from tablecore.domain.errors import BadRequestError
from tablecore.domain.models import FIELDS_ALL, FieldDescriptor, RecordOptions
from tablecore.domain.records import discard_field, field_value
from tablecore.domain.types import typecast_to_native

Typecaster = Callable[[Any, FieldDescriptor], Any]

# False: a required identifier is missing on create and nothing can supply it.
# None: no identifier present (server-generated or simply absent).
ResolvedId = Union[Any, Dict[str, Any], None, bool]


def _extra(extras: Union[RecordOptions, Mapping, None], name: str) -> Any:
    if extras is None:
        return None
    if isinstance(extras, RecordOptions):
        return extras.extra_value(name)
    return field_value(extras, name)


def resolve_id(
    record: Any,
    ids_info: Sequence[FieldDescriptor],
    extras: Union[RecordOptions, Mapping, None] = None,
    on_create: bool = False,
    remove: bool = False,
    typecast: Typecaster = typecast_to_native,
) -> ResolvedId:
    """
    Resolve the identifier of `record` against `ids_info`.

    Parameters
    ----------
    record : Any
        A record mapping, or a scalar id when the table has a single id field.
    ids_info : sequence of FieldDescriptor
        The table's identifier set.
    extras : RecordOptions | Mapping | None
        Request options; a key named after an id field supplies that value for
        every record.
    on_create : bool
        Whether the operation is a create.
    remove : bool
        Strip the id field(s) from a record mapping.
    typecast : callable
        Native type coercion, normally the metadata provider's.

    Returns
    -------
    Any
        The scalar id (single field), a field-to-value mapping (composite),
        ``False`` when a required id is missing on create, or ``None`` when no
        identifier is present.
    """
    if not ids_info:
        return None

    is_record = isinstance(record, Mapping)

    def value_for(info: FieldDescriptor) -> Any:
        name = info.get_name()
        if is_record:
            value = field_value(record, name)
            if value is None and info.alias:
                value = field_value(record, info.name)
            if remove and isinstance(record, MutableMapping):
                discard_field(record, name)
                if info.alias:
                    discard_field(record, info.name)
        else:
            value = record
        if value is None:
            value = _extra(extras, name)
        if value is not None and not isinstance(value, (list, dict, Mapping)):
            value = typecast(value, info)
        return value

    if len(ids_info) == 1:
        info = ids_info[0]
        value = value_for(info)
        if value is None:
            if on_create and info.is_required:
                return False
            return None
        return value

    resolved: Dict[str, Any] = {}
    for info in ids_info:
        value = value_for(info)
        if value is None:
            if on_create:
                if info.is_required:
                    return False
                continue
            return None
        resolved[info.get_name()] = value
    return resolved or None


def records_as_ids(
    records: Sequence[Any],
    ids_info: Sequence[FieldDescriptor],
    extras: Union[RecordOptions, Mapping, None] = None,
    on_create: bool = False,
    remove: bool = False,
    typecast: Typecaster = typecast_to_native,
) -> List[ResolvedId]:
    return [resolve_id(record, ids_info, extras, on_create, remove, typecast) for record in records or []]


def ids_as_records(ids: Sequence[Any], id_fields: Sequence[str]) -> List[Dict[str, Any]]:
    """Turn scalar or composite ids back into minimal records."""
    if not id_fields:
        return []
    out: List[Dict[str, Any]] = []
    for id_value in ids:
        if len(id_fields) > 1 and isinstance(id_value, Mapping):
            out.append({name: field_value(id_value, name) for name in id_fields})
        elif len(id_fields) > 1 and isinstance(id_value, (list, tuple)):
            out.append(dict(zip(id_fields, id_value)))
        else:
            out.append({id_fields[0]: id_value})
    return out


def remove_ids(record: MutableMapping, id_fields: Sequence[str]) -> None:
    for name in id_fields or []:
        discard_field(record, name)


def contains_id_fields(record: Mapping, id_fields: Sequence[str]) -> bool:
    if not id_fields:
        return False
    return all(field_value(record, name) not in (None, "") for name in id_fields)


def require_more_fields(fields: Optional[Sequence[str]], id_fields: Sequence[str]) -> bool:
    """Whether the requested output needs more than the identifier fields."""
    if fields is None or not id_fields:
        return True
    wanted = {name.lower() for name in fields}
    return bool(wanted - {name.lower() for name in id_fields})


def clean_record(
    record: Mapping, include: Optional[Sequence[str]] = None, id_fields: Sequence[str] = ()
) -> Dict[str, Any]:
    """Trim `record` to `include` (None or "*" keeps everything), always keeping ids."""
    if include is None or list(include) == [FIELDS_ALL]:
        return dict(record.items())
    names = list(include)
    for name in id_fields:
        if name.lower() not in {n.lower() for n in names}:
            names.append(name)
    return {name: field_value(record, name) for name in names}


def clean_records(
    records: Sequence[Mapping], include: Optional[Sequence[str]] = None, id_fields: Sequence[str] = ()
) -> List[Dict[str, Any]]:
    return [clean_record(record, include, id_fields) for record in records]


def record_array_merge(first: List[Dict[str, Any]], second: Sequence[Mapping], id_field: str) -> List[Dict[str, Any]]:
    """Merge records of `second` into `first` where their `id_field` values match."""
    if not id_field:
        return []
    merged = [dict(record) for record in first]
    for index, record in enumerate(merged):
        for other in second:
            if field_value(record, id_field) == field_value(other, id_field):
                merged[index] = {**record, **dict(other)}
    return merged


def find_record_by_name_value(data: Optional[Sequence[Mapping]], field: str, value: Any) -> Optional[Mapping]:
    for record in data or []:
        if field_value(record, field) == value:
            return record
    return None


def as_list(
    data: Any,
    delimiter: Optional[str] = None,
    wrap_single: bool = False,
    error_message: Optional[str] = None,
) -> List[Any]:
    """
    Normalize a payload into a list.

    Comma-delimited strings are split when `delimiter` is given; a lone mapping or
    scalar is wrapped when `wrap_single` is set. An empty result raises
    `BadRequestError(error_message)` when a message is supplied.
    """
    if isinstance(data, str) and delimiter is not None:
        items: List[Any] = [part.strip() for part in data.split(delimiter) if part.strip()]
    elif isinstance(data, (list, tuple)):
        items = list(data)
    elif data is None or data == "":
        items = []
    elif isinstance(data, Mapping):
        if "resource" in data and isinstance(data["resource"], list):
            items = list(data["resource"])
        elif wrap_single:
            items = [data] if data else []
        else:
            raise BadRequestError(error_message or "The request contains no valid record sets.")
    elif wrap_single:
        items = [data]
    else:
        items = []

    if not items and error_message:
        raise BadRequestError(error_message)
    return items


def split_id_list(ids: Any) -> List[Any]:
    """Split comma-delimited id strings; lists pass through, scalars are wrapped."""
    return as_list(ids, ",", wrap_single=True)


__all__ = [
    "ResolvedId",
    "resolve_id",
    "records_as_ids",
    "ids_as_records",
    "remove_ids",
    "contains_id_fields",
    "require_more_fields",
    "clean_record",
    "clean_records",
    "record_array_merge",
    "find_record_by_name_value",
    "as_list",
    "split_id_list",
]
