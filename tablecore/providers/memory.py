"""
In-memory metadata and persistence providers.

`InMemoryMetadata` serves table schemas registered up front; `InMemoryStore`
keeps rows in plain lists. The store is deliberately non-transactional
(`supports_transactions = False`), so batch rollback on top of it is performed
by the coordinator's own undo log. Useful for tests, demos and for fronting
small reference tables without a database.
"""

from __future__ import annotations

import copy
from itertools import count
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from tablecore.domain.errors import BadRequestError, NotFoundError
from tablecore.domain.models import FieldDescriptor, TableSchema
from tablecore.domain.records import field_value
from tablecore.domain.types import RawExpression
from tablecore.engine.filters import Filter
from tablecore.providers.abstract import AbstractMetadataProvider, Row, id_columns
from tablecore.utils.logging import get_logger

log = get_logger(__name__)


class InMemoryMetadata(AbstractMetadataProvider):
    """Metadata provider over a fixed set of `TableSchema` objects."""

    def __init__(self, schemas: Optional[Sequence[TableSchema]] = None) -> None:
        self._schemas: Dict[str, TableSchema] = {}
        for schema in schemas or []:
            self.add_table(schema)

    def add_table(self, schema: TableSchema) -> None:
        self._schemas[schema.name.lower()] = schema

    def list_tables(self) -> List[str]:
        return [schema.name for schema in self._schemas.values()]

    def get_table_schema(self, table: str) -> TableSchema:
        schema = self._schemas.get(table.lower())
        if schema is None:
            for candidate in self._schemas.values():
                if candidate.alias and candidate.alias.lower() == table.lower():
                    return candidate
            raise NotFoundError(f"Table '{table}' does not exist in the database.")
        return schema


def _stored_value(value: Any) -> Any:
    # no database to evaluate expressions; keep their text
    if isinstance(value, RawExpression):
        return str(value)
    return copy.deepcopy(value)


def _sort_key(value: Any) -> Tuple[int, Any]:
    if value is None:
        return (1, "")
    if isinstance(value, (int, float)):
        return (0, value)
    return (0, str(value))


class InMemoryStore:
    """
    Non-transactional row store keyed by table name.

    Parameters
    ----------
    metadata : InMemoryMetadata
        Supplies table schemas for defaults, auto-increment keys and
        uniqueness checks.
    """

    supports_transactions = False

    def __init__(self, metadata: InMemoryMetadata) -> None:
        self.metadata = metadata
        self._rows: Dict[str, List[Row]] = {}
        self._counters: Dict[str, Iterator[int]] = {}

    def _table(self, table: str) -> Tuple[TableSchema, List[Row]]:
        schema = self.metadata.get_table_schema(table)
        return schema, self._rows.setdefault(schema.name.lower(), [])

    def _next_id(self, schema: TableSchema) -> int:
        key = schema.name.lower()
        if key not in self._counters:
            existing = [
                field_value(row, field.name)
                for row in self._rows.get(key, [])
                for field in schema.fields
                if field.auto_increment
            ]
            start = max([value for value in existing if isinstance(value, int)], default=0) + 1
            self._counters[key] = count(start)
        return next(self._counters[key])

    def begin(self) -> None:
        return None

    def commit(self) -> None:
        return None

    def rollback(self) -> None:
        return None

    def all_rows(self, table: str) -> List[Row]:
        """Snapshot of every stored row of `table`."""
        _, rows = self._table(table)
        return copy.deepcopy(rows)

    def _find(self, rows: List[Row], columns: Dict[str, Any]) -> Optional[int]:
        if not columns:
            return None
        for index, row in enumerate(rows):
            if all(field_value(row, column) == value for column, value in columns.items()):
                return index
        return None

    def _check_unique(self, schema: TableSchema, rows: List[Row], row: Row, skip: Optional[int] = None) -> None:
        keys = [field for field in schema.fields if field.is_primary_key]
        checks: List[List[FieldDescriptor]] = [keys] if keys else []
        checks.extend([field] for field in schema.fields if field.is_unique and not field.is_primary_key)
        for fields in checks:
            values = {field.name: field_value(row, field.name) for field in fields}
            if any(value is None for value in values.values()):
                continue
            index = self._find(rows, values)
            if index is not None and index != skip:
                names = ", ".join(values)
                raise BadRequestError(
                    f"Duplicate key value violates unique constraint on '{schema.name}' ({names})."
                )

    def select(
        self,
        table: str,
        filter: Optional[Filter] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        order: Optional[str] = None,
    ) -> List[Row]:
        _, rows = self._table(table)
        found = [row for row in rows if filter is None or filter.matches(row)]
        for clause in reversed([part.strip() for part in (order or "").split(",") if part.strip()]):
            pieces = clause.split()
            descending = len(pieces) > 1 and pieces[1].lower() == "desc"
            found.sort(key=lambda row: _sort_key(field_value(row, pieces[0])), reverse=descending)
        if offset:
            found = found[offset:]
        if limit is not None:
            found = found[:limit]
        return copy.deepcopy(found)

    def select_by_ids(
        self, table: str, ids_info: Sequence[FieldDescriptor], ids: Sequence[Any]
    ) -> List[Optional[Row]]:
        _, rows = self._table(table)
        out: List[Optional[Row]] = []
        for id_value in ids:
            index = self._find(rows, id_columns(id_value, ids_info))
            out.append(copy.deepcopy(rows[index]) if index is not None else None)
        return out

    def insert(self, table: str, records: Sequence[Row]) -> List[Row]:
        schema, rows = self._table(table)
        created: List[Row] = []
        for record in records:
            row: Row = {}
            for field in schema.fields:
                if field.is_virtual:
                    continue
                value = field_value(record, field.name)
                if value is None and field.auto_increment:
                    value = self._next_id(schema)
                elif value is None and field.default is not None:
                    value = field.default
                row[field.name] = _stored_value(value)
            described = {field.name.lower() for field in schema.fields}
            for key, value in record.items():
                if key.lower() not in described:
                    row[key] = _stored_value(value)
            self._check_unique(schema, rows, row)
            rows.append(row)
            created.append(copy.deepcopy(row))
        log.debug(f"Inserted {len(created)} row(s) into {schema.name}", extra={"table": schema.name})
        return created

    def update(
        self, table: str, ids_info: Sequence[FieldDescriptor], changes: Sequence[Tuple[Any, Row]]
    ) -> List[Optional[Row]]:
        schema, rows = self._table(table)
        out: List[Optional[Row]] = []
        for id_value, values in changes:
            index = self._find(rows, id_columns(id_value, ids_info))
            if index is None:
                out.append(None)
                continue
            updated = dict(rows[index])
            for key, value in values.items():
                existing = next((k for k in updated if k.lower() == key.lower()), key)
                updated[existing] = _stored_value(value)
            self._check_unique(schema, rows, updated, skip=index)
            rows[index] = updated
            out.append(copy.deepcopy(updated))
        return out

    def delete(self, table: str, ids_info: Sequence[FieldDescriptor], ids: Sequence[Any]) -> List[Optional[Row]]:
        _, rows = self._table(table)
        out: List[Optional[Row]] = []
        for id_value in ids:
            index = self._find(rows, id_columns(id_value, ids_info))
            out.append(rows.pop(index) if index is not None else None)
        return out


__all__ = ["InMemoryMetadata", "InMemoryStore"]
