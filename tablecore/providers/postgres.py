"""
PostgreSQL metadata and persistence providers.

`PostgresMetadata` introspects ``information_schema`` for columns, keys and
foreign keys, deriving the four relation kinds:

- a foreign key on the table itself is a ``belongs_to``;
- a foreign key in another table pointing here is a ``has_many`` (``has_one``
  when the referencing column is unique);
- a table holding exactly two foreign keys is treated as a junction and yields
  ``many_to_many`` relations between the tables it references.

Per-table extras (aliases, validation rules, picklists, db functions, virtual
relations) can be layered on top of the introspected schema.

`PostgresStore` executes reads and writes with ``psycopg.sql`` composition and
``RETURNING *``. Outside an explicit `begin()` every statement commits on its
own; between `begin()` and `commit()`/`rollback()` statements share one
transaction.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import psycopg
from psycopg import Connection, errors as pg_errors, sql
from psycopg.pq import TransactionStatus
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from tablecore.domain.errors import BadRequestError, InternalServerError, NotFoundError, RestError
from tablecore.domain.models import FieldDescriptor, FieldType, RelationDescriptor, RelationKind, TableSchema
from tablecore.domain.types import RawExpression
from tablecore.engine.filters import ComparisonOperator, Condition, Filter, modify_value_by_operator
from tablecore.providers.abstract import AbstractMetadataProvider, Row, id_columns
from tablecore.utils.logging import get_logger

log = get_logger(__name__)

_TYPE_MAP = {
    "smallint": FieldType.INTEGER,
    "integer": FieldType.INTEGER,
    "bigint": FieldType.BIGINT,
    "numeric": FieldType.DECIMAL,
    "real": FieldType.FLOAT,
    "double precision": FieldType.DOUBLE,
    "boolean": FieldType.BOOLEAN,
    "date": FieldType.DATE,
    "time without time zone": FieldType.TIME,
    "time with time zone": FieldType.TIME,
    "timestamp without time zone": FieldType.DATETIME,
    "timestamp with time zone": FieldType.TIMESTAMP,
    "json": FieldType.JSON,
    "jsonb": FieldType.JSON,
    "bytea": FieldType.BINARY,
    "text": FieldType.TEXT,
}

_COLUMNS_SQL = """
SELECT column_name, data_type, udt_name, is_nullable, column_default, is_identity
FROM information_schema.columns
WHERE table_schema = %s AND table_name = %s
ORDER BY ordinal_position
"""

_KEYS_SQL = """
SELECT tc.constraint_name, tc.constraint_type, kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.table_schema = kcu.table_schema
 AND tc.table_name = kcu.table_name
WHERE tc.table_schema = %s AND tc.table_name = %s
  AND tc.constraint_type IN ('PRIMARY KEY', 'UNIQUE')
"""

_FOREIGN_KEYS_SQL = """
SELECT tc.constraint_name, tc.table_name, kcu.column_name,
       ccu.table_name AS ref_table, ccu.column_name AS ref_column
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.table_schema = kcu.table_schema
JOIN information_schema.constraint_column_usage ccu
  ON ccu.constraint_name = tc.constraint_name
 AND ccu.table_schema = tc.table_schema
WHERE tc.constraint_type = 'FOREIGN KEY' AND tc.table_schema = %s
ORDER BY tc.table_name, tc.constraint_name
"""

_TABLES_SQL = """
SELECT table_name
FROM information_schema.tables
WHERE table_schema = %s AND table_type IN ('BASE TABLE', 'VIEW')
ORDER BY table_name
"""

ForeignKey = Tuple[str, str, str, str]  # table, column, ref_table, ref_column


def _translate(exc: psycopg.Error) -> RestError:
    detail = getattr(getattr(exc, "diag", None), "message_primary", None) or str(exc)
    if isinstance(exc, pg_errors.UndefinedTable):
        return NotFoundError(detail)
    if isinstance(exc, (psycopg.IntegrityError, psycopg.DataError)):
        return BadRequestError(detail)
    return InternalServerError(f"Database error: {detail}")


class PostgresMetadata(AbstractMetadataProvider):
    """
    Schema introspection for one PostgreSQL schema.

    Parameters
    ----------
    conn : psycopg.Connection
        Connection used for catalog queries.
    schema : str
        Database schema holding the tables.
    extras : Mapping | None
        Table name to overrides: ``alias``, ``label``, ``fields`` (column name
        to descriptor attributes), ``relations`` (extra virtual relation
        dicts) and ``relation_options`` (relation name to attributes such as
        ``always_fetch`` or ``alias``).
    """

    def __init__(
        self, conn: Connection, schema: str = "public", extras: Optional[Mapping[str, Mapping[str, Any]]] = None
    ) -> None:
        self.conn = conn
        self.schema = schema
        self.extras = {name.lower(): dict(value) for name, value in (extras or {}).items()}
        self._cache: Dict[str, TableSchema] = {}
        self._foreign_keys: Optional[List[ForeignKey]] = None

    def _query(self, statement: str, params: Sequence[Any]) -> List[Row]:
        # catalog reads must not end a transaction the store has open
        idle = self.conn.info.transaction_status == TransactionStatus.IDLE
        try:
            with self.conn.cursor(row_factory=dict_row) as cur:
                cur.execute(statement, params)
                rows = cur.fetchall()
        except psycopg.Error as exc:
            if idle:
                self.conn.rollback()
            raise _translate(exc) from exc
        if idle and not self.conn.autocommit:
            self.conn.commit()
        return rows

    def refresh(self) -> None:
        """Drop cached schemas after DDL changes."""
        self._cache.clear()
        self._foreign_keys = None

    def list_tables(self) -> List[str]:
        return [row["table_name"] for row in self._query(_TABLES_SQL, (self.schema,))]

    def foreign_keys(self) -> List[ForeignKey]:
        if self._foreign_keys is None:
            rows = self._query(_FOREIGN_KEYS_SQL, (self.schema,))
            self._foreign_keys = [
                (row["table_name"], row["column_name"], row["ref_table"], row["ref_column"]) for row in rows
            ]
        return self._foreign_keys

    def get_table_schema(self, table: str) -> TableSchema:
        key = table.lower()
        if key in self._cache:
            return self._cache[key]
        for cached in self._cache.values():
            if cached.alias and cached.alias.lower() == key:
                return cached

        columns = self._query(_COLUMNS_SQL, (self.schema, table))
        if not columns:
            raise NotFoundError(f"Table '{table}' does not exist in the database.")
        schema = self._build_schema(table, columns)
        self._cache[key] = schema
        log.debug(
            f"Introspected {table}: {len(schema.fields)} field(s), {len(schema.relations)} relation(s)",
            extra={"table": table},
        )
        return schema

    def _build_schema(self, table: str, columns: List[Row]) -> TableSchema:
        keys = self._query(_KEYS_SQL, (self.schema, table))
        primary = {row["column_name"] for row in keys if row["constraint_type"] == "PRIMARY KEY"}
        unique_groups: Dict[str, List[str]] = defaultdict(list)
        for row in keys:
            if row["constraint_type"] == "UNIQUE":
                unique_groups[row["constraint_name"]].append(row["column_name"])
        unique = {names[0] for names in unique_groups.values() if len(names) == 1}

        outgoing = {
            column: (ref_table, ref_column) for t, column, ref_table, ref_column in self.foreign_keys() if t == table
        }
        extras = self.extras.get(table.lower(), {})
        overrides = {name.lower(): value for name, value in (extras.get("fields") or {}).items()}

        fields: List[FieldDescriptor] = []
        for column in columns:
            name = column["column_name"]
            default = column["column_default"]
            auto = column.get("is_identity") == "YES" or (isinstance(default, str) and default.startswith("nextval("))
            is_pk = name in primary
            if auto and is_pk:
                kind = FieldType.ID
            elif name in outgoing:
                kind = FieldType.REFERENCE
            else:
                kind = _TYPE_MAP.get(column["data_type"], FieldType.STRING)
            attributes: Dict[str, Any] = {
                "name": name,
                "type": kind,
                "db_type": column["udt_name"],
                "allow_null": column["is_nullable"] == "YES",
                "default": None if auto else default,
                "auto_increment": auto,
                "is_primary_key": is_pk,
                "is_unique": name in unique,
                "is_foreign_key": name in outgoing,
                "ref_table": outgoing[name][0] if name in outgoing else None,
                "ref_field": outgoing[name][1] if name in outgoing else None,
            }
            attributes.update(overrides.get(name.lower(), {}))
            fields.append(FieldDescriptor.model_validate(attributes))

        relations = self._derive_relations(table, unique | (primary if len(primary) == 1 else set()))
        options = {name.lower(): value for name, value in (extras.get("relation_options") or {}).items()}
        relations = [
            relation.model_copy(update=options.get(relation.get_name().lower(), {})) for relation in relations
        ]
        for extra in extras.get("relations") or []:
            relations.append(RelationDescriptor.model_validate({"is_virtual": True, **extra}))

        return TableSchema(
            name=table,
            alias=extras.get("alias"),
            label=extras.get("label"),
            fields=fields,
            relations=relations,
        )

    def _derive_relations(self, table: str, unique_columns: set) -> List[RelationDescriptor]:
        foreign_keys = self.foreign_keys()
        by_table: Dict[str, List[ForeignKey]] = defaultdict(list)
        for fk in foreign_keys:
            by_table[fk[0]].append(fk)

        relations: List[RelationDescriptor] = []
        for _, column, ref_table, ref_column in by_table.get(table, []):
            relations.append(
                RelationDescriptor(type=RelationKind.BELONGS_TO, field=[column], ref_table=ref_table, ref_field=[ref_column])
            )

        for other, keys in by_table.items():
            for _, column, ref_table, ref_column in keys:
                if ref_table != table:
                    continue
                child_unique = self._is_unique_column(other, column) if other != table else column in unique_columns
                relations.append(
                    RelationDescriptor(
                        type=RelationKind.HAS_ONE if child_unique else RelationKind.HAS_MANY,
                        field=[ref_column],
                        ref_table=other,
                        ref_field=[column],
                    )
                )
            if len(keys) != 2 or other == table:
                continue
            for index, (_, column, ref_table, ref_column) in enumerate(keys):
                if ref_table != table:
                    continue
                _, far_column, far_table, far_ref = keys[1 - index]
                relations.append(
                    RelationDescriptor(
                        type=RelationKind.MANY_TO_MANY,
                        field=[ref_column],
                        ref_table=far_table,
                        ref_field=[far_ref],
                        junction_table=other,
                        junction_field=[column],
                        junction_ref_field=[far_column],
                    )
                )
        return relations

    def _is_unique_column(self, table: str, column: str) -> bool:
        rows = self._query(_KEYS_SQL, (self.schema, table))
        groups: Dict[str, List[str]] = defaultdict(list)
        for row in rows:
            groups[row["constraint_name"]].append(row["column_name"])
        return any(names == [column] for names in groups.values())


def _value_sql(value: Any) -> Tuple[sql.Composable, List[Any]]:
    if isinstance(value, RawExpression):
        return sql.SQL(value.expression), []
    if isinstance(value, (dict, list)):
        return sql.Placeholder(), [Jsonb(value)]
    return sql.Placeholder(), [value]


def filter_sql(filter: Union[Filter, Condition]) -> Tuple[sql.Composable, List[Any]]:
    """
    Render a `Filter` as a parameterized SQL predicate.

    Returns
    -------
    tuple
        The composed predicate and its bound parameters in order.
    """
    if isinstance(filter, Condition):
        return _condition_sql(filter)
    parts: List[sql.Composable] = []
    params: List[Any] = []
    for item in filter.conditions:
        rendered, values = filter_sql(item)
        parts.append(sql.SQL("({})").format(rendered))
        params.extend(values)
    if not parts:
        return sql.SQL("TRUE"), []
    joiner = sql.SQL(" AND ") if filter.combiner == "and" else sql.SQL(" OR ")
    return joiner.join(parts), params


def _condition_sql(condition: Condition) -> Tuple[sql.Composable, List[Any]]:
    column = sql.Identifier(condition.field)
    op = condition.operator
    value = condition.value
    if op in (ComparisonOperator.IS_NULL, ComparisonOperator.DOES_NOT_EXIST):
        return sql.SQL("{} IS NULL").format(column), []
    if op in (ComparisonOperator.IS_NOT_NULL, ComparisonOperator.DOES_EXIST):
        return sql.SQL("{} IS NOT NULL").format(column), []
    if op in (ComparisonOperator.IN, ComparisonOperator.NOT_IN):
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        elif not isinstance(value, (list, tuple, set, frozenset)):
            value = [value]
        value = list(value)
        if not value:
            return sql.SQL("FALSE" if op == ComparisonOperator.IN else "TRUE"), []
        template = "{} = ANY(%s)" if op == ComparisonOperator.IN else "NOT ({} = ANY(%s))"
        return sql.SQL(template).format(column), [value]
    if op in (
        ComparisonOperator.LIKE,
        ComparisonOperator.STARTS_WITH,
        ComparisonOperator.ENDS_WITH,
        ComparisonOperator.CONTAINS,
    ):
        return sql.SQL("{}::text LIKE %s").format(column), [modify_value_by_operator(op, value)]
    if value is None and op == ComparisonOperator.EQ:
        return sql.SQL("{} IS NULL").format(column), []
    if value is None and op == ComparisonOperator.NE:
        return sql.SQL("{} IS NOT NULL").format(column), []
    return sql.SQL("{} " + op.value + " %s").format(column), [value]


def _order_sql(order: str) -> sql.Composable:
    items: List[sql.Composable] = []
    for clause in [part.strip() for part in order.split(",") if part.strip()]:
        pieces = clause.split()
        direction = pieces[1].upper() if len(pieces) > 1 else "ASC"
        if direction not in ("ASC", "DESC") or len(pieces) > 2:
            raise BadRequestError(f"Invalid order clause '{clause}'.")
        items.append(sql.SQL("{} {}").format(sql.Identifier(pieces[0]), sql.SQL(direction)))
    return sql.SQL(", ").join(items)


class PostgresStore:
    """
    Transactional persistence over one connection.

    Parameters
    ----------
    conn : psycopg.Connection
        Connection owned by the caller (pooled or dedicated).
    metadata : PostgresMetadata
        Resolves table names and aliases.
    """

    supports_transactions = True

    def __init__(self, conn: Connection, metadata: PostgresMetadata) -> None:
        if conn.autocommit:
            conn.autocommit = False
        self.conn = conn
        self.metadata = metadata
        self._explicit = False

    def _table(self, table: str) -> Tuple[str, sql.Composable]:
        name = self.metadata.get_table_schema(table).name
        return name, sql.Identifier(self.metadata.schema, name)

    def _execute(self, query: sql.Composable, params: Sequence[Any] = ()) -> List[Row]:
        try:
            with self.conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, list(params))
                rows = cur.fetchall() if cur.description else []
        except psycopg.Error as exc:
            if not self._explicit:
                self.conn.rollback()
            raise _translate(exc) from exc
        if not self._explicit:
            self.conn.commit()
        return rows

    def begin(self) -> None:
        self._explicit = True

    def commit(self) -> None:
        self.conn.commit()
        self._explicit = False

    def rollback(self) -> None:
        self.conn.rollback()
        self._explicit = False

    def _where_ids(self, ids_info: Sequence[FieldDescriptor], id_value: Any) -> Tuple[sql.Composable, List[Any]]:
        columns = id_columns(id_value, ids_info)
        if not columns:
            raise BadRequestError("No identifier values given.")
        parts = [sql.SQL("{} = %s").format(sql.Identifier(name)) for name in columns]
        return sql.SQL(" AND ").join(parts), list(columns.values())

    def select(
        self,
        table: str,
        filter: Optional[Filter] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        order: Optional[str] = None,
    ) -> List[Row]:
        _, identifier = self._table(table)
        query = sql.SQL("SELECT * FROM {}").format(identifier)
        params: List[Any] = []
        if filter:
            predicate, params = filter_sql(filter)
            query = query + sql.SQL(" WHERE ") + predicate
        if order:
            query = query + sql.SQL(" ORDER BY ") + _order_sql(order)
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params.append(limit)
        if offset:
            query = query + sql.SQL(" OFFSET %s")
            params.append(offset)
        return self._execute(query, params)

    def select_by_ids(
        self, table: str, ids_info: Sequence[FieldDescriptor], ids: Sequence[Any]
    ) -> List[Optional[Row]]:
        _, identifier = self._table(table)
        out: List[Optional[Row]] = []
        for id_value in ids:
            where, params = self._where_ids(ids_info, id_value)
            rows = self._execute(sql.SQL("SELECT * FROM {} WHERE {}").format(identifier, where), params)
            out.append(rows[0] if rows else None)
        return out

    def insert(self, table: str, records: Sequence[Row]) -> List[Row]:
        name, identifier = self._table(table)
        created: List[Row] = []
        for record in records:
            if not record:
                query = sql.SQL("INSERT INTO {} DEFAULT VALUES RETURNING *").format(identifier)
                created.extend(self._execute(query))
                continue
            values: List[sql.Composable] = []
            params: List[Any] = []
            for value in record.values():
                rendered, bound = _value_sql(value)
                values.append(rendered)
                params.extend(bound)
            query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
                identifier,
                sql.SQL(", ").join(sql.Identifier(column) for column in record),
                sql.SQL(", ").join(values),
            )
            created.extend(self._execute(query, params))
        log.debug(f"Inserted {len(created)} row(s) into {name}", extra={"table": name})
        return created

    def update(
        self, table: str, ids_info: Sequence[FieldDescriptor], changes: Sequence[Tuple[Any, Row]]
    ) -> List[Optional[Row]]:
        _, identifier = self._table(table)
        out: List[Optional[Row]] = []
        for id_value, values in changes:
            assignments: List[sql.Composable] = []
            params: List[Any] = []
            for column, value in values.items():
                rendered, bound = _value_sql(value)
                assignments.append(sql.SQL("{} = {}").format(sql.Identifier(column), rendered))
                params.extend(bound)
            where, id_params = self._where_ids(ids_info, id_value)
            query = sql.SQL("UPDATE {} SET {} WHERE {} RETURNING *").format(
                identifier, sql.SQL(", ").join(assignments), where
            )
            rows = self._execute(query, params + id_params)
            out.append(rows[0] if rows else None)
        return out

    def delete(self, table: str, ids_info: Sequence[FieldDescriptor], ids: Sequence[Any]) -> List[Optional[Row]]:
        _, identifier = self._table(table)
        out: List[Optional[Row]] = []
        for id_value in ids:
            where, params = self._where_ids(ids_info, id_value)
            rows = self._execute(sql.SQL("DELETE FROM {} WHERE {} RETURNING *").format(identifier, where), params)
            out.append(rows[0] if rows else None)
        return out


__all__ = ["PostgresMetadata", "PostgresStore", "filter_sql"]
