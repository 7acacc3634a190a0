"""
Provider contracts for the record engine.

The engine never touches storage or sessions directly. It talks to three narrow
collaborators, each independently replaceable and mockable:

- `MetadataProvider` describes tables (fields, identifiers, relations) and
  coerces values to native types;
- `PersistenceProvider` executes staged reads and writes against one store;
- `SessionProvider` supplies server-side filter policies, the acting user and
  lookup substitution.

Persistence providers work with physical column names. Identifier values are
passed as produced by the identifier resolver (a scalar for single-field keys,
a mapping keyed by client-facing names for composite keys) together with the
identifier descriptors; `id_columns` translates between the two.
"""

from __future__ import annotations

import abc
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from tablecore.domain.errors import InternalServerError
from tablecore.domain.models import (
    FieldDescriptor,
    FieldType,
    FilterPolicy,
    IdentifierSet,
    Operation,
    RelationDescriptor,
    TableSchema,
)
from tablecore.domain.types import typecast_to_native
from tablecore.engine.filters import Filter

Row = Dict[str, Any]

_TYPE_ALIASES = {"int": FieldType.INTEGER, "str": FieldType.STRING, "uuid": FieldType.STRING}


def _id_type(name: Optional[str]) -> FieldType:
    if not name:
        return FieldType.STRING
    lowered = name.lower()
    if lowered in _TYPE_ALIASES:
        return _TYPE_ALIASES[lowered]
    try:
        return FieldType(lowered)
    except ValueError:
        return FieldType.STRING


def id_columns(id_value: Any, ids_info: Sequence[FieldDescriptor]) -> Dict[str, Any]:
    """
    Map a resolved id onto physical column names.

    Raises
    ------
    InternalServerError
        If a composite key is given as a scalar.
    """
    if len(ids_info) == 1 and not isinstance(id_value, Mapping):
        return {ids_info[0].name: id_value}
    if not isinstance(id_value, Mapping):
        raise InternalServerError("Composite identifier values must be mappings.")
    lowered = {str(key).lower(): value for key, value in id_value.items()}
    columns: Dict[str, Any] = {}
    for info in ids_info:
        for key in (info.get_name().lower(), info.name.lower()):
            if key in lowered:
                columns[info.name] = lowered[key]
                break
    return columns


@runtime_checkable
class MetadataProvider(Protocol):
    """
    Describes the tables of one service.

    `get_table_schema` raises `NotFoundError` for unknown tables.
    """

    def list_tables(self) -> List[str]:
        ...

    def get_table_schema(self, table: str) -> TableSchema:
        ...

    def get_field_descriptors(self, table: str) -> List[FieldDescriptor]:
        ...

    def get_identifier_set(
        self,
        table: str,
        requested_fields: Optional[Sequence[str]] = None,
        requested_types: Optional[Sequence[str]] = None,
    ) -> IdentifierSet:
        ...

    def get_relation_descriptors(self, table: str) -> List[RelationDescriptor]:
        ...

    def typecast_to_native(self, value: Any, field: FieldDescriptor) -> Any:
        ...


@runtime_checkable
class PersistenceProvider(Protocol):
    """
    Executes reads and writes against one store.

    Attributes
    ----------
    supports_transactions : bool
        True when `begin`/`commit`/`rollback` give a real transactional
        boundary. When False the coordinator undoes changes itself.
    """

    supports_transactions: bool

    def begin(self) -> None:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...

    def select(
        self,
        table: str,
        filter: Optional[Filter] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        order: Optional[str] = None,
    ) -> List[Row]:
        ...

    def select_by_ids(
        self, table: str, ids_info: Sequence[FieldDescriptor], ids: Sequence[Any]
    ) -> List[Optional[Row]]:
        """Rows aligned with `ids`; None where no row matches."""
        ...

    def insert(self, table: str, records: Sequence[Row]) -> List[Row]:
        """Insert and return the stored rows, generated values included."""
        ...

    def update(
        self, table: str, ids_info: Sequence[FieldDescriptor], changes: Sequence[Tuple[Any, Row]]
    ) -> List[Optional[Row]]:
        """Apply `(id, values)` pairs; rows aligned with input, None where missing."""
        ...

    def delete(self, table: str, ids_info: Sequence[FieldDescriptor], ids: Sequence[Any]) -> List[Optional[Row]]:
        """Delete by id and return the prior rows, None where missing."""
        ...


@runtime_checkable
class SessionProvider(Protocol):
    """Request-scoped session facts used by the record engine."""

    def get_filter_policy(self, operation: Operation, service: str, table: str) -> Optional[FilterPolicy]:
        ...

    def current_user_id(self) -> Optional[Any]:
        ...

    def lookup(self, value: Any) -> Any:
        """Replace lookup keys in `value`; non-strings pass through."""
        ...


class AbstractMetadataProvider(abc.ABC):
    """
    Optional ABC helper for class-based metadata providers.

    Subclasses implement `list_tables` and `get_table_schema`; the remaining
    lookups derive from the schema.
    """

    @abc.abstractmethod
    def list_tables(self) -> List[str]:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def get_table_schema(self, table: str) -> TableSchema:  # pragma: no cover - interface only
        raise NotImplementedError

    def get_field_descriptors(self, table: str) -> List[FieldDescriptor]:
        return list(self.get_table_schema(table).fields)

    def get_identifier_set(
        self,
        table: str,
        requested_fields: Optional[Sequence[str]] = None,
        requested_types: Optional[Sequence[str]] = None,
    ) -> IdentifierSet:
        """
        Resolve the identifier fields of `table`.

        Parameters
        ----------
        table : str
            Table name.
        requested_fields : sequence of str | None
            Explicit identifier override (the `id_field` option). Names that
            are not described fields become ad-hoc string-typed descriptors.
        requested_types : sequence of str | None
            Types for ad-hoc override fields (the `id_type` option), aligned
            with `requested_fields`.

        Returns
        -------
        IdentifierSet
            The override fields when given, otherwise the primary key fields.
        """
        schema = self.get_table_schema(table)
        if not requested_fields:
            return schema.primary_key_fields()
        requested_types = list(requested_types or [])
        result: IdentifierSet = []
        for index, name in enumerate(requested_fields):
            descriptor = schema.get_field(name)
            if descriptor is None:
                kind = requested_types[index] if index < len(requested_types) else None
                descriptor = FieldDescriptor(name=name, type=_id_type(kind), allow_null=False)
            result.append(descriptor)
        return result

    def get_relation_descriptors(self, table: str) -> List[RelationDescriptor]:
        return list(self.get_table_schema(table).relations)

    def typecast_to_native(self, value: Any, field: FieldDescriptor) -> Any:
        return typecast_to_native(value, field)


__all__ = [
    "Row",
    "id_columns",
    "MetadataProvider",
    "PersistenceProvider",
    "SessionProvider",
    "AbstractMetadataProvider",
]
