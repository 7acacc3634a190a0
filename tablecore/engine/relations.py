"""
Relationship engine.

Reads and writes the four relation kinds of a table:

- ``belongs_to``: the owning record carries the foreign key;
- ``has_one`` / ``has_many``: the child records carry the foreign key;
- ``many_to_many``: a junction table carries both keys.

Every related table is reached through the `VirtualDispatchGateway`, whether
it lives in this service or another one. Related reads are batched: all
owning key values of a result set are collected first and fetched with one
``IN`` filter per relation.

Filters name physical columns; record payloads and results use client-facing
field names (aliases where declared).

Configuration problems (multi-column keys, missing key metadata) raise
`NotImplementedFeatureError` / `InternalServerError` unchanged, including when a
related service answers with status 500 or 501; any other failure while
writing related records is reported as `BadRequestError`.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from tablecore.domain.errors import (
    CONFIGURATION_ERRORS,
    BadRequestError,
    InternalServerError,
    NotImplementedFeatureError,
    RemoteOperationError,
    RestError,
)
from tablecore.domain.models import FIELDS_ALL, FieldDescriptor, RelationDescriptor, RelationKind, TableSchema
from tablecore.domain.records import discard_field, field_value, has_field
from tablecore.engine.dispatch import VirtualDispatchGateway
from tablecore.engine.filters import ComparisonOperator, Condition, Filter
from tablecore.engine.identifiers import find_record_by_name_value
from tablecore.providers.abstract import MetadataProvider
from tablecore.utils.logging import get_logger

log = get_logger(__name__)

# explicit "remove from this parent" marker in many_to_many child payloads
DETACH_MARKER = "_detach"

RelatedRequests = Union[str, Dict[str, Dict[str, Any]], None]

_MULTI_COLUMN_FK = "Relating records with multi-column foreign keys is not currently supported."
_MULTI_COLUMN_PK = "Relating records with multiple field primary keys is not currently supported."


def _same(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    return left == right or str(left) == str(right)


def _nullish(value: Any) -> bool:
    return value is None or value == ""


def _single(names: Sequence[str]) -> str:
    if len(names) > 1:
        raise NotImplementedFeatureError(_MULTI_COLUMN_FK)
    if not names:
        raise InternalServerError("Incorrect relationship configuration detected. No field declared.")
    return names[0]


def _column(schema: TableSchema, name: str) -> FieldDescriptor:
    descriptor = schema.get_field(name)
    if descriptor is None:
        raise InternalServerError(f"Incorrect relationship configuration detected. Field '{name}' not found.")
    return descriptor


def _primary_key(schema: TableSchema) -> FieldDescriptor:
    keys = schema.primary_key_fields()
    if len(keys) > 1:
        raise NotImplementedFeatureError(_MULTI_COLUMN_PK)
    if not keys:
        raise InternalServerError("Incorrect relationship configuration detected. No primary key detected.")
    return keys[0]


def _add_to_fields(fields: Any, name: str) -> Tuple[Any, bool]:
    """Make sure `name` is among requested `fields`; report whether it was added."""
    if fields is None or fields == FIELDS_ALL or fields == [FIELDS_ALL]:
        return fields, False
    names = [part.strip() for part in fields.split(",")] if isinstance(fields, str) else list(fields)
    if any(part.lower() == name.lower() for part in names):
        return names, False
    return names + [name], True


class RelationshipEngine:
    """
    Resolves related records for one owning service.

    Parameters
    ----------
    gateway : VirtualDispatchGateway
        Carries every related read and write.
    metadata : MetadataProvider
        Schemas of the owning service's own tables.
    service_name : str
        Name of the owning service.
    service_id : int | None
        Id of the owning service; relations naming this id (or none) stay local.
    max_records : int
        Limit applied to related fetches that do not set their own.
    """

    def __init__(
        self,
        gateway: VirtualDispatchGateway,
        metadata: MetadataProvider,
        service_name: str,
        service_id: Optional[int] = None,
        max_records: int = 1000,
    ) -> None:
        self.gateway = gateway
        self.metadata = metadata
        self.service_name = service_name
        self.service_id = service_id
        self.max_records = max_records
        self._schemas: Dict[Tuple[str, str], TableSchema] = {}

    # -- lookups -----------------------------------------------------------

    def service_for(self, service_id: Optional[int]) -> str:
        if service_id is None or service_id == self.service_id:
            return self.service_name
        return self.gateway.service_name(service_id)

    def get_table_schema(self, service: str, table: str) -> TableSchema:
        key = (service.lower(), table.lower())
        if key not in self._schemas:
            if service.lower() == self.service_name.lower():
                self._schemas[key] = self.metadata.get_table_schema(table)
            else:
                self._schemas[key] = self.gateway.get_table_schema(service, table)
        return self._schemas[key]

    # -- reads -------------------------------------------------------------

    def retrieve_related_records(
        self,
        schema: TableSchema,
        relations: Mapping[str, RelationDescriptor],
        requests: RelatedRequests,
        data: List[Dict[str, Any]],
    ) -> None:
        """
        Expand relations into `data` in place.

        Parameters
        ----------
        schema : TableSchema
            The owning table.
        relations : Mapping
            Relation name (lowercase) to descriptor.
        requests : str | dict | None
            ``"*"`` for every relation, or relation name to sub-options
            (``fields``, ``limit``, ``related`` ...). Relations flagged
            ``always_fetch`` are expanded regardless.
        data : list of dict
            Result records of the owning table.
        """
        defaults = {"limit": self.max_records, "fields": FIELDS_ALL}
        lowered_requests = (
            {str(key).lower(): value for key, value in requests.items()} if isinstance(requests, Mapping) else {}
        )
        for key, relation in relations.items():
            if relation is None:
                raise BadRequestError("Empty relationship found.")
            if key.lower() in lowered_requests:
                extras = dict(lowered_requests[key.lower()] or {})
                extras.setdefault("limit", self.max_records)
                self.retrieve_relation_records(schema, relation, data, extras)
            elif requests == FIELDS_ALL or relation.always_fetch:
                self.retrieve_relation_records(schema, relation, data, dict(defaults))

    def retrieve_relation_records(
        self,
        schema: TableSchema,
        relation: RelationDescriptor,
        data: List[Dict[str, Any]],
        extras: Dict[str, Any],
    ) -> None:
        name = relation.get_name()
        local_field = _column(schema, _single(relation.field)).get_name()

        values: List[Any] = []
        for record in data:
            record[name] = None if relation.type in (RelationKind.BELONGS_TO, RelationKind.HAS_ONE) else []
            value = field_value(record, local_field)
            if value is not None and not any(_same(value, seen) for seen in values):
                values.append(value)
        if not values:
            return

        log.debug(
            f"Fetching related '{name}' for {len(values)} key(s)",
            extra={"table": schema.get_name(), "relation": name},
        )

        if relation.type == RelationKind.MANY_TO_MANY:
            self._retrieve_through_junction(relation, data, local_field, values, extras)
            return
        if relation.type not in (RelationKind.BELONGS_TO, RelationKind.HAS_ONE, RelationKind.HAS_MANY):
            raise InternalServerError("Invalid relationship type detected.")

        ref_service = self.service_for(relation.ref_service_id)
        ref_schema = self.get_table_schema(ref_service, relation.ref_table)
        ref_field = _column(ref_schema, _single(relation.ref_field))
        ref_alias = ref_field.get_name()

        params = dict(extras)
        params["fields"], remove_later = _add_to_fields(params.get("fields"), ref_alias)
        related = self.gateway.retrieve_records(
            ref_service, ref_schema.get_name(), Filter.where_in(ref_field.name, values), params
        )

        single = relation.type != RelationKind.HAS_MANY
        for record in data:
            value = field_value(record, local_field)
            if value is None:
                continue
            for item in related:
                if not _same(value, field_value(item, ref_alias)):
                    continue
                item = dict(item)
                if remove_later:
                    discard_field(item, ref_alias)
                if single:
                    record[name] = item
                    break
                record[name].append(item)

    def _retrieve_through_junction(
        self,
        relation: RelationDescriptor,
        data: List[Dict[str, Any]],
        local_field: str,
        values: List[Any],
        extras: Dict[str, Any],
    ) -> None:
        name = relation.get_name()
        junction_service = self.service_for(relation.junction_service_id)
        if not relation.junction_table:
            raise InternalServerError("Many to many relationship not configured properly.")
        junction_schema = self.get_table_schema(junction_service, relation.junction_table)
        junction_field = _column(junction_schema, _single(relation.junction_field))
        junction_ref_field = _column(junction_schema, _single(relation.junction_ref_field))
        jf_alias, jrf_alias = junction_field.get_name(), junction_ref_field.get_name()

        junction_filter = Filter(
            [
                Condition(junction_field.name, ComparisonOperator.IN, values),
                Condition(junction_ref_field.name, ComparisonOperator.IS_NOT_NULL),
            ]
        )
        maps = self.gateway.retrieve_records(
            junction_service,
            junction_schema.get_name(),
            junction_filter,
            {"fields": [jf_alias, jrf_alias]},
        )
        related_ids: List[Any] = []
        for row in maps:
            right = field_value(row, jrf_alias)
            if right is not None and not any(_same(right, seen) for seen in related_ids):
                related_ids.append(right)
        if not related_ids:
            return

        ref_service = self.service_for(relation.ref_service_id)
        ref_schema = self.get_table_schema(ref_service, relation.ref_table)
        ref_field = _column(ref_schema, _single(relation.ref_field))
        ref_alias = ref_field.get_name()

        params = dict(extras)
        params["fields"], remove_later = _add_to_fields(params.get("fields"), ref_alias)
        related = self.gateway.retrieve_records(
            ref_service, ref_schema.get_name(), Filter.where_in(ref_field.name, related_ids), params
        )

        for record in data:
            value = field_value(record, local_field)
            if value is None:
                continue
            for row in maps:
                if not _same(value, field_value(row, jf_alias)):
                    continue
                right = field_value(row, jrf_alias)
                for item in related:
                    if _same(right, field_value(item, ref_alias)):
                        item = dict(item)
                        if remove_later:
                            discard_field(item, ref_alias)
                        record[name].append(item)

    # -- writes ------------------------------------------------------------

    def update_pre_relations(
        self, record: Dict[str, Any], payloads: Mapping[str, Any], relations: Mapping[str, RelationDescriptor]
    ) -> None:
        """Apply belongs_to payloads, writing the resulting keys into `record`."""
        for key, relation in relations.items():
            payload = payloads.get(key)
            if relation.type == RelationKind.BELONGS_TO and payload:
                self.update_belongs_to(relation, record, payload)

    def update_post_relations(
        self,
        schema: TableSchema,
        record: Mapping[str, Any],
        payloads: Mapping[str, Any],
        relations: Mapping[str, RelationDescriptor],
        allow_delete: bool = False,
    ) -> None:
        """Apply has_one, has_many and many_to_many payloads for a committed `record`."""
        for key, relation in relations.items():
            if key not in payloads:
                continue
            payload = payloads[key]
            if relation.type == RelationKind.HAS_ONE:
                self.assign_one_to_one(schema, record, relation, payload, allow_delete)
            elif relation.type == RelationKind.HAS_MANY:
                self.assign_many_to_one(schema, record, relation, payload or [], allow_delete)
            elif relation.type == RelationKind.MANY_TO_MANY:
                self.assign_many_to_one_by_junction(schema, record, relation, payload or [], allow_delete)

    def _wrap(self, exc: RestError, message: str) -> RestError:
        # a related service that failed on its own configuration aborts the caller too
        if isinstance(exc, RemoteOperationError) and exc.status_code == NotImplementedFeatureError.status_code:
            return NotImplementedFeatureError(exc.message)
        if isinstance(exc, RemoteOperationError) and exc.status_code == InternalServerError.status_code:
            return InternalServerError(exc.message)
        return BadRequestError(f"{message}\n{exc.message}")

    def update_belongs_to(self, relation: RelationDescriptor, record: Dict[str, Any], parent: Any) -> None:
        """
        Create or update the referenced (parent) record and link `record` to it.
        """
        if not isinstance(parent, Mapping):
            raise BadRequestError(f"Relationship '{relation.get_name()}' requires a record.")
        try:
            ref_service = self.service_for(relation.ref_service_id)
            ref_schema = self.get_table_schema(ref_service, relation.ref_table)
            ref_field = _column(ref_schema, _single(relation.ref_field))
            local_field = _single(relation.field)
            pk = _primary_key(ref_schema)
            pk_alias = pk.get_name()
            table = ref_schema.get_name()
            parent = dict(parent)

            id_value = field_value(parent, pk_alias)
            exists = False
            if id_value is None:
                if not pk.auto_increment:
                    raise BadRequestError(f"Related record has no primary key value for '{pk_alias}'.")
            else:
                matches = self.gateway.retrieve_records(ref_service, table, Filter.equals(pk.name, id_value))
                exists = find_record_by_name_value(matches, pk_alias, id_value) is not None

            if exists:
                self.gateway.update_records(ref_service, table, [parent])
                link_value = field_value(parent, ref_field.get_name())
                if link_value is None and ref_field.name.lower() == pk.name.lower():
                    link_value = id_value
            else:
                created = self.gateway.create_records(ref_service, table, [parent])
                if ref_field.name.lower() == pk.name.lower():
                    link_value = field_value(created[0], pk_alias) if created else id_value
                else:
                    link_value = field_value(parent, ref_field.get_name())
            if link_value is not None:
                discard_field(record, local_field)
                record[local_field] = link_value
            log.debug(
                f"Resolved belongs-to '{relation.get_name()}' ({'update' if exists else 'insert'})",
                extra={"relation": relation.get_name(), "table": table},
            )
        except CONFIGURATION_ERRORS:
            raise
        except RestError as exc:
            raise self._wrap(exc, "Failed to update belongs-to assignment.") from exc

    def assign_one_to_one(
        self,
        schema: TableSchema,
        parent_record: Mapping[str, Any],
        relation: RelationDescriptor,
        child: Any,
        allow_delete: bool = False,
    ) -> None:
        local_field = _column(schema, _single(relation.field)).get_name()
        parent_id = field_value(parent_record, local_field)
        if _nullish(parent_id):
            raise BadRequestError(f"The {schema.get_name()} id can not be empty.")
        try:
            ref_service = self.service_for(relation.ref_service_id)
            ref_schema = self.get_table_schema(ref_service, relation.ref_table)
            ref_field = _column(ref_schema, _single(relation.ref_field))
            pk = _primary_key(ref_schema)
            pk_alias, ref_alias = pk.get_name(), ref_field.get_name()
            table = ref_schema.get_name()
            delete_related = (not ref_field.allow_null) and allow_delete

            if not child:
                matches = self.gateway.retrieve_records(
                    ref_service, table, Filter.equals(ref_field.name, parent_id), {"fields": [pk_alias]}
                )
                ids = [field_value(item, pk_alias) for item in matches if field_value(item, pk_alias) is not None]
                if ids:
                    self._disown_or_delete(ref_service, table, pk_alias, ref_alias, ids, delete_related)
                return

            if not isinstance(child, Mapping):
                raise BadRequestError(f"Relationship '{relation.get_name()}' requires a record.")
            child = dict(child)
            id_value = field_value(child, pk_alias)
            if id_value is None:
                if not pk.auto_increment:
                    raise BadRequestError(f"Related record has no primary key value for '{pk_alias}'.")
                discard_field(child, ref_alias)
                child[ref_alias] = parent_id
                self.gateway.create_records(ref_service, table, [child])
                return

            if has_field(child, ref_alias) and _nullish(field_value(child, ref_alias)):
                if delete_related:
                    self.gateway.delete_records(ref_service, table, ids=[id_value], id_field=pk_alias)
                elif len(child) > 2:
                    discard_field(child, ref_alias)
                    child[ref_alias] = None
                    self.gateway.update_records(ref_service, table, [child])
                else:
                    self.gateway.update_records_by_ids(
                        ref_service, table, {ref_alias: None}, [id_value], id_field=pk_alias
                    )
                return

            if len(child) > 1:
                discard_field(child, ref_alias)
                child[ref_alias] = parent_id
                if pk.auto_increment or self._exists(ref_service, table, pk, [id_value]):
                    self.gateway.update_records(ref_service, table, [child])
                else:
                    self.gateway.create_records(ref_service, table, [child])
            else:
                self.gateway.update_records_by_ids(
                    ref_service, table, {ref_alias: parent_id}, [id_value], id_field=pk_alias
                )
        except CONFIGURATION_ERRORS:
            raise
        except RestError as exc:
            raise self._wrap(exc, "Failed to update one to one assignment.") from exc

    def assign_many_to_one(
        self,
        schema: TableSchema,
        one_record: Mapping[str, Any],
        relation: RelationDescriptor,
        many_records: Sequence[Any],
        allow_delete: bool = False,
    ) -> None:
        """
        Reconcile a has_many payload.

        Children are partitioned into insert (no key), delete (explicit null
        link with delete-on-null policy), update (explicit null link, or data
        beyond the key on an auto-increment key), upsert (data beyond a
        client-supplied key), relate (key only) and disown (key plus null
        link only). Upserts are resolved with one existence check, then the
        batches run as insert, delete, update, relate, disown.
        """
        local_field = _column(schema, _single(relation.field)).get_name()
        one_id = field_value(one_record, local_field)
        if _nullish(one_id):
            raise BadRequestError(f"The {schema.get_name()} referencing field {local_field} can not be empty.")
        if isinstance(many_records, Mapping):
            many_records = [many_records]
        try:
            ref_service = self.service_for(relation.ref_service_id)
            ref_schema = self.get_table_schema(ref_service, relation.ref_table)
            ref_field = _column(ref_schema, _single(relation.ref_field))
            pk = _primary_key(ref_schema)
            pk_alias, ref_alias = pk.get_name(), ref_field.get_name()
            table = ref_schema.get_name()
            delete_related = (not ref_field.allow_null) and allow_delete

            relate: List[Any] = []
            disown: List[Any] = []
            insert: List[Dict[str, Any]] = []
            update: List[Dict[str, Any]] = []
            upsert: Dict[Any, Dict[str, Any]] = {}
            delete: List[Any] = []

            for item in many_records:
                if not isinstance(item, Mapping):
                    raise BadRequestError(f"Relationship '{relation.get_name()}' requires a list of records.")
                item = dict(item)
                id_value = field_value(item, pk_alias)
                if id_value is None:
                    if not pk.auto_increment:
                        raise BadRequestError(f"Related record has no primary key value for '{pk_alias}'.")
                    discard_field(item, ref_alias)
                    item[ref_alias] = one_id
                    insert.append(item)
                    continue

                if has_field(item, ref_alias) and _nullish(field_value(item, ref_alias)):
                    if delete_related:
                        delete.append(id_value)
                    elif len(item) > 2:
                        discard_field(item, ref_alias)
                        item[ref_alias] = None
                        update.append(item)
                    else:
                        disown.append(id_value)
                    continue

                if len(item) > 1:
                    discard_field(item, ref_alias)
                    item[ref_alias] = one_id
                    if pk.auto_increment:
                        update.append(item)
                    else:
                        upsert[id_value] = item
                else:
                    relate.append(id_value)

            if upsert:
                matches = self._fetch_by_key(ref_service, table, pk, list(upsert))
                for key, item in upsert.items():
                    if find_record_by_name_value(matches, pk_alias, key) is not None:
                        update.append(item)
                    else:
                        insert.append(item)

            log.debug(
                f"has_many '{relation.get_name()}': insert={len(insert)} delete={len(delete)} "
                f"update={len(update)} relate={len(relate)} disown={len(disown)}",
                extra={"relation": relation.get_name(), "table": table},
            )
            if insert:
                self.gateway.create_records(ref_service, table, insert)
            if delete:
                self.gateway.delete_records(ref_service, table, ids=delete, id_field=pk_alias)
            if update:
                self.gateway.update_records(ref_service, table, update)
            if relate:
                self.gateway.update_records_by_ids(ref_service, table, {ref_alias: one_id}, relate, id_field=pk_alias)
            if disown:
                self.gateway.update_records_by_ids(ref_service, table, {ref_alias: None}, disown, id_field=pk_alias)
        except CONFIGURATION_ERRORS:
            raise
        except RestError as exc:
            raise self._wrap(exc, "Failed to update many to one assignment.") from exc

    def assign_many_to_one_by_junction(
        self,
        schema: TableSchema,
        one_record: Mapping[str, Any],
        relation: RelationDescriptor,
        many_records: Sequence[Any],
        for_update: bool = False,
    ) -> None:
        """
        Reconcile a many_to_many payload.

        Children are inserted, updated or upserted as for has_many, and junction
        rows are created for every child not yet linked. A child carrying
        ``"_detach": true`` has its junction row removed. On update the payload
        is the complete membership: junction rows for children absent from it
        are removed too. Children themselves are never deleted.
        """
        local_field = _column(schema, _single(relation.field)).get_name()
        one_id = field_value(one_record, local_field)
        if _nullish(one_id):
            raise BadRequestError(f"The {schema.get_name()} id can not be empty.")
        if isinstance(many_records, Mapping):
            many_records = [many_records]
        try:
            one_pk = _primary_key(schema)
            ref_service = self.service_for(relation.ref_service_id)
            ref_schema = self.get_table_schema(ref_service, relation.ref_table)
            _column(ref_schema, _single(relation.ref_field))
            ref_pk = _primary_key(ref_schema)
            ref_pk_alias = ref_pk.get_name()
            table = ref_schema.get_name()

            if not relation.junction_table:
                raise InternalServerError("Many to many relationship not configured properly.")
            junction_service = self.service_for(relation.junction_service_id)
            junction_schema = self.get_table_schema(junction_service, relation.junction_table)
            junction_table = junction_schema.get_name()
            junction_field = _column(junction_schema, _single(relation.junction_field))
            junction_ref_field = _column(junction_schema, _single(relation.junction_ref_field))
            jf_alias, jrf_alias = junction_field.get_name(), junction_ref_field.get_name()

            maps = self.gateway.retrieve_records(
                junction_service,
                junction_table,
                Filter(
                    [
                        Condition(junction_field.name, ComparisonOperator.EQ, one_id),
                        Condition(junction_ref_field.name, ComparisonOperator.IS_NOT_NULL),
                    ]
                ),
                {"fields": [jrf_alias]},
            )
            linked = [field_value(row, jrf_alias) for row in maps]
            legacy_marker = f"{schema.get_name()}.{one_pk.get_name()}"

            create_map: List[Dict[str, Any]] = []
            delete_map: List[Any] = []
            insert: List[Dict[str, Any]] = []
            update: List[Dict[str, Any]] = []
            upsert: Dict[Any, Dict[str, Any]] = {}
            kept: List[Any] = []

            for item in many_records:
                if not isinstance(item, Mapping):
                    raise BadRequestError(f"Relationship '{relation.get_name()}' requires a list of records.")
                item = dict(item)
                detach = bool(field_value(item, DETACH_MARKER)) or (
                    has_field(item, legacy_marker) and _nullish(field_value(item, legacy_marker))
                )
                discard_field(item, DETACH_MARKER)
                discard_field(item, legacy_marker)

                id_value = field_value(item, ref_pk_alias)
                if id_value is None:
                    if not ref_pk.auto_increment:
                        raise BadRequestError(f"Related record has no primary key value for '{ref_pk_alias}'.")
                    insert.append(item)
                    continue
                if detach:
                    delete_map.append(id_value)
                    continue

                kept.append(id_value)
                if len(item) > 1:
                    if ref_pk.auto_increment:
                        update.append(item)
                    else:
                        upsert[id_value] = item
                if not any(_same(id_value, existing) for existing in linked):
                    create_map.append({jrf_alias: id_value, jf_alias: one_id})

            if for_update:
                for existing in linked:
                    if existing is None:
                        continue
                    if any(_same(existing, other) for other in kept + delete_map):
                        continue
                    delete_map.append(existing)

            if upsert:
                matches = self._fetch_by_key(ref_service, table, ref_pk, list(upsert))
                for key, item in upsert.items():
                    if find_record_by_name_value(matches, ref_pk_alias, key) is not None:
                        update.append(item)
                    else:
                        insert.append(item)

            log.debug(
                f"many_to_many '{relation.get_name()}': insert={len(insert)} update={len(update)} "
                f"link={len(create_map)} unlink={len(delete_map)}",
                extra={"relation": relation.get_name(), "table": table},
            )
            if insert:
                created = self.gateway.create_records(ref_service, table, insert)
                for row in created:
                    new_id = field_value(row, ref_pk_alias)
                    if new_id is not None:
                        create_map.append({jrf_alias: new_id, jf_alias: one_id})
            if update:
                self.gateway.update_records(ref_service, table, update)
            if create_map:
                self.gateway.create_records(junction_service, junction_table, create_map)
            if delete_map:
                unlink = Filter(
                    [
                        Condition(junction_ref_field.name, ComparisonOperator.IN, delete_map),
                        Condition(junction_field.name, ComparisonOperator.EQ, one_id),
                    ]
                )
                self.gateway.delete_records(junction_service, junction_table, filter=unlink)
        except CONFIGURATION_ERRORS:
            raise
        except RestError as exc:
            raise self._wrap(exc, "Failed to update many to one map assignment.") from exc

    # -- helpers -----------------------------------------------------------

    def _fetch_by_key(
        self, service: str, table: str, pk: FieldDescriptor, ids: List[Any]
    ) -> List[Dict[str, Any]]:
        if len(ids) > 1:
            key_filter = Filter.where_in(pk.name, ids)
        else:
            key_filter = Filter.equals(pk.name, ids[0])
        return self.gateway.retrieve_records(service, table, key_filter)

    def _exists(self, service: str, table: str, pk: FieldDescriptor, ids: List[Any]) -> bool:
        matches = self._fetch_by_key(service, table, pk, ids)
        return find_record_by_name_value(matches, pk.get_name(), ids[0]) is not None

    def _disown_or_delete(
        self, service: str, table: str, pk_alias: str, ref_alias: str, ids: List[Any], delete: bool
    ) -> None:
        if delete:
            self.gateway.delete_records(service, table, ids=ids, id_field=pk_alias)
        else:
            self.gateway.update_records_by_ids(service, table, {ref_alias: None}, ids, id_field=pk_alias)


__all__ = ["DETACH_MARKER", "RelatedRequests", "RelationshipEngine"]
