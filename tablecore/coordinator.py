"""
Batch/transaction coordinator and the public record API.

`RecordService` turns a list of record operations against one table into an
atomic-or-partial result set:

- ``rollback=True``: the first failure aborts and every staged change is undone
  (a real transaction when the store supports one, the batch's undo log
  otherwise; related-record writes dispatched in process join that log);
- ``continue=True``: every item is attempted and failures are recorded at their
  index;
- neither: processing stops at the first failure, earlier successes stay.

Whenever an item fails the batch raises `BatchError` carrying the per-index
results. Configuration errors abort the whole operation immediately.
"""

from __future__ import annotations

from collections.abc import Mapping
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

from tablecore.config import Settings, get_settings
from tablecore.domain.errors import (
    CONFIGURATION_ERRORS,
    BadRequestError,
    BatchError,
    InternalServerError,
    NotFoundError,
    RestError,
)
from tablecore.domain.models import (
    FIELDS_ALL,
    FilterPolicy,
    IdentifierSet,
    Operation,
    RecordOptions,
    RelationDescriptor,
    TableSchema,
)
from tablecore.engine.dispatch import VirtualDispatchGateway
from tablecore.engine.filters import Condition, Filter, check_filter_policy, interpret_filter_value
from tablecore.engine.identifiers import (
    as_list,
    clean_record,
    ids_as_records,
    remove_ids,
    resolve_id,
    split_id_list,
)
from tablecore.engine.parser import RecordParser, split_relation_payload, to_client_record
from tablecore.engine.relations import RelatedRequests, RelationshipEngine
from tablecore.providers.abstract import MetadataProvider, PersistenceProvider, Row, SessionProvider
from tablecore.providers.session import StaticSession
from tablecore.utils.logging import get_logger

log = get_logger(__name__)

Item = Tuple[Any, Any]
Stage = Callable[["BatchContext", int, Item], Any]

_PAST_TENSE = {
    Operation.CREATE: "created",
    Operation.RETRIEVE: "retrieved",
    Operation.UPDATE: "updated",
    Operation.PATCH: "patched",
    Operation.DELETE: "deleted",
}

# staged item whose write is deferred to commit
_PENDING = object()


class Change(NamedTuple):
    """One undoable write: ``action`` is ``insert``, ``update`` or ``delete``."""

    store: PersistenceProvider
    table: str
    ids_info: IdentifierSet
    action: str
    id_value: Any
    prior: Optional[Row] = None


# undo log of the outermost rollback batch; nested in-process batches append to it
_UNDO_JOURNAL: ContextVar[Optional[List[Change]]] = ContextVar("tablecore_undo_journal", default=None)


@dataclass
class BatchContext:
    """
    State of one batch. Created per call, never shared.

    Attributes
    ----------
    results : dict
        Index to result record or error.
    pending : list
        Deferred items, flushed to the store in one call at commit.
    undo : list of Change
        Writes replayed in reverse on rollback when the store has no
        transactions. Batches nested inside such a rollback (related-record
        writes dispatched in process) share the outer list from `undo_start`.
    """

    table: str
    operation: Operation
    schema: TableSchema
    ids_info: IdentifierSet
    options: RecordOptions
    single: bool = False
    results: Dict[int, Any] = field(default_factory=dict)
    pending: List[Tuple[int, Any]] = field(default_factory=list)
    undo: List[Change] = field(default_factory=list)
    undo_start: int = 0
    journaled: bool = False
    owns_journal: bool = False
    in_transaction: bool = False

    @property
    def id_fields(self) -> List[str]:
        return [info.get_name() for info in self.ids_info]

    @property
    def rollback(self) -> bool:
        return self.options.rollback

    @property
    def continue_(self) -> bool:
        return self.options.continue_

    @property
    def deferred(self) -> bool:
        return not (self.rollback or self.continue_ or self.single or self.journaled)

    @property
    def errors(self) -> Dict[int, Exception]:
        return {index: item for index, item in self.results.items() if isinstance(item, Exception)}


def _related_requests(value: Any) -> RelatedRequests:
    if value is None or value == "":
        return None
    if value == FIELDS_ALL or value == [FIELDS_ALL]:
        return FIELDS_ALL
    if isinstance(value, Mapping):
        return {str(key).lower(): dict(extras or {}) for key, extras in value.items()}
    return {str(name).lower(): {} for name in as_list(value, ",", wrap_single=True)}


def _policy_filter(policy: Optional[FilterPolicy], lookup: Callable[[Any], Any]) -> Optional[Filter]:
    if policy is None or not policy.filters:
        return None
    conditions = [
        Condition(item.name, item.operator, interpret_filter_value(item.value, lookup)) for item in policy.filters
    ]
    return Filter(conditions, policy.filter_op or "and")


class RecordService:
    """
    Record operations over one service's tables.

    Parameters
    ----------
    metadata : MetadataProvider
        Table schemas and identifier sets.
    persistence : PersistenceProvider
        Store executing reads and writes.
    session : SessionProvider | None
        Filter policies, acting user and lookups; defaults to an empty
        `StaticSession`.
    gateway : VirtualDispatchGateway | None
        Required for nested relation payloads and related-record expansion.
    settings : Settings | None
        Engine settings; defaults to `get_settings()`.
    service_name : str | None
        Overrides ``settings.service_name``.
    service_id : int | None
        Overrides ``settings.service_id``.
    """

    def __init__(
        self,
        metadata: MetadataProvider,
        persistence: PersistenceProvider,
        session: Optional[SessionProvider] = None,
        gateway: Optional[VirtualDispatchGateway] = None,
        settings: Optional[Settings] = None,
        service_name: Optional[str] = None,
        service_id: Optional[int] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.metadata = metadata
        self.persistence = persistence
        self.session = session or StaticSession()
        self.service_name = service_name or self.settings.service_name
        self.service_id = service_id if service_id is not None else self.settings.service_id
        self.relations: Optional[RelationshipEngine] = None
        if gateway is not None:
            self.relations = RelationshipEngine(
                gateway,
                metadata,
                self.service_name,
                self.service_id,
                max_records=self.settings.max_records_returned,
            )
        self.parser = RecordParser(
            typecast=metadata.typecast_to_native,
            lookup=self.session.lookup,
            current_user_id=self.session.current_user_id,
            restrict_fields_to_defined=self.settings.restrict_fields_to_defined,
        )

    # -- batch machinery ---------------------------------------------------

    def _context(
        self,
        table: str,
        operation: Operation,
        options: Union[RecordOptions, Dict[str, Any], None],
        single: bool = False,
        require_ids: bool = True,
    ) -> BatchContext:
        options = RecordOptions.coerce(options)
        if options.rollback and options.continue_:
            raise BadRequestError("Rollback and continue operations can not be requested at the same time.")
        schema = self.metadata.get_table_schema(table)
        ids_info = self.metadata.get_identifier_set(schema.name, options.id_field_list(), options.id_type_list())
        if require_ids and not ids_info:
            raise InternalServerError("Identifying field(s) could not be determined.")
        return BatchContext(schema.name, operation, schema, ids_info, options, single=single)

    def _run(self, ctx: BatchContext, items: Sequence[Item], stage: Stage) -> List[Any]:
        log.info(
            f"Starting {ctx.operation.value} batch of {len(items)} item(s) on {ctx.table}",
            extra={"table": ctx.table, "operation": ctx.operation.value, "rollback": ctx.rollback},
        )
        if ctx.rollback and self.persistence.supports_transactions:
            self.persistence.begin()
            ctx.in_transaction = True
        token = self._open_journal(ctx)
        try:
            return self._process(ctx, items, stage)
        finally:
            if token is not None:
                _UNDO_JOURNAL.reset(token)

    def _open_journal(self, ctx: BatchContext) -> Any:
        outer = _UNDO_JOURNAL.get()
        if outer is not None:
            ctx.undo = outer
            ctx.undo_start = len(outer)
            ctx.journaled = True
            return None
        if ctx.rollback and not ctx.in_transaction:
            ctx.journaled = ctx.owns_journal = True
            return _UNDO_JOURNAL.set(ctx.undo)
        return None

    def _process(self, ctx: BatchContext, items: Sequence[Item], stage: Stage) -> List[Any]:
        for index, item in enumerate(items):
            try:
                result = stage(ctx, index, item)
            except CONFIGURATION_ERRORS as exc:
                log.error(
                    f"Aborting {ctx.operation.value} on {ctx.table}: {exc.message}",
                    extra={"table": ctx.table, "operation": ctx.operation.value, "index": index},
                )
                ctx.pending.clear()
                self._abort(ctx)
                raise
            except RestError as exc:
                ctx.results[index] = exc
                log.warning(
                    f"Item {index} failed on {ctx.table}: {exc.message}",
                    extra={"table": ctx.table, "operation": ctx.operation.value, "index": index},
                )
                if ctx.rollback or not ctx.continue_:
                    break
            except Exception:
                self._abort(ctx)
                raise
            else:
                if result is not _PENDING:
                    ctx.results[index] = result

        message = f"Batch Error: Not all requested records could be {_PAST_TENSE[ctx.operation]}."
        if ctx.errors and ctx.rollback:
            self._rollback(ctx)
            raise BatchError(dict(ctx.results), message + " All changes rolled back.")

        self._flush(ctx)
        self._commit(ctx)
        if ctx.errors:
            raise BatchError(dict(ctx.results), message)

        out = [ctx.results.get(index) for index in range(len(items))]
        self._expand_related(ctx, out)
        log.info(
            f"Finished {ctx.operation.value} batch on {ctx.table}",
            extra={"table": ctx.table, "operation": ctx.operation.value, "count": len(out)},
        )
        return out

    def _abort(self, ctx: BatchContext) -> None:
        if ctx.rollback:
            self._rollback(ctx)

    def _commit(self, ctx: BatchContext) -> None:
        if ctx.in_transaction:
            self.persistence.commit()
            ctx.in_transaction = False
        if ctx.owns_journal or not ctx.journaled:
            ctx.undo.clear()

    def _rollback(self, ctx: BatchContext) -> None:
        changes = ctx.undo[ctx.undo_start:]
        del ctx.undo[ctx.undo_start:]
        log.warning(
            f"Rolling back {ctx.operation.value} batch on {ctx.table}",
            extra={"table": ctx.table, "operation": ctx.operation.value, "changes": len(changes)},
        )
        if ctx.in_transaction:
            self.persistence.rollback()
            ctx.in_transaction = False
            return
        failures = 0
        for change in reversed(changes):
            try:
                if change.action == "insert":
                    change.store.delete(change.table, change.ids_info, [change.id_value])
                elif change.action == "update" and change.prior is not None:
                    change.store.update(change.table, change.ids_info, [(change.id_value, change.prior)])
                elif change.action == "delete" and change.prior is not None:
                    change.store.insert(change.table, [change.prior])
            except RestError as exc:
                failures += 1
                log.error(
                    f"Failed to undo {change.action} of {change.id_value!r} on {change.table}: {exc.message}",
                    extra={"table": change.table, "operation": ctx.operation.value},
                )
        if failures:
            raise InternalServerError(f"Failed to roll back {failures} change(s) on '{ctx.table}'.")

    def _record_undo(self, ctx: BatchContext, action: str, id_value: Any, prior: Optional[Row] = None) -> None:
        if ctx.journaled:
            ctx.undo.append(Change(self.persistence, ctx.table, ctx.ids_info, action, id_value, prior))

    def _stop_at(self, ctx: BatchContext, index: int, exc: RestError) -> None:
        log.warning(
            f"Deferred {ctx.operation.value} of item {index} failed on {ctx.table}: {exc.message}",
            extra={"table": ctx.table, "operation": ctx.operation.value, "index": index},
        )
        ctx.results[index] = exc
        for later in [key for key in ctx.results if key > index]:
            del ctx.results[later]

    def _flush(self, ctx: BatchContext) -> None:
        """
        Write or read the deferred items in index order.

        Only fail-fast batches defer, so the first failing item ends the batch:
        earlier items keep their results and later ones count as unattempted.
        """
        if not ctx.pending:
            return
        pending, ctx.pending = ctx.pending, []
        if ctx.operation == Operation.CREATE:
            for index, parsed in pending:
                try:
                    row = self.persistence.insert(ctx.table, [parsed])[0]
                except CONFIGURATION_ERRORS:
                    raise
                except RestError as exc:
                    self._stop_at(ctx, index, exc)
                    return
                ctx.results[index] = self._shape(ctx, row, parsed)
            return

        try:
            rows = self.persistence.select_by_ids(ctx.table, ctx.ids_info, [id_value for _, id_value in pending])
        except CONFIGURATION_ERRORS:
            raise
        except RestError as exc:
            self._stop_at(ctx, pending[0][0], exc)
            return
        for (index, id_value), row in zip(pending, rows):
            try:
                ctx.results[index] = self._shape(ctx, self._visible(ctx, row, id_value), None)
            except NotFoundError as exc:
                self._stop_at(ctx, index, exc)
                return

    # -- helpers -----------------------------------------------------------

    def _typecast(self, value: Any, info: Any) -> Any:
        return self.metadata.typecast_to_native(value, info)

    def _policy(self, ctx: BatchContext, operation: Optional[Operation] = None) -> Optional[FilterPolicy]:
        return self.session.get_filter_policy(operation or ctx.operation, self.service_name, ctx.table)

    def _relations(self, ctx: BatchContext) -> Dict[str, RelationDescriptor]:
        return {
            relation.get_name().lower(): relation for relation in self.metadata.get_relation_descriptors(ctx.table)
        }

    def _split_relations(self, ctx: BatchContext, record: Dict[str, Any]) -> Dict[str, Any]:
        relations = self._relations(ctx)
        if not relations:
            return {}
        payloads = split_relation_payload(record, list(relations))
        if payloads and self.relations is None:
            raise InternalServerError("Related record payloads require a virtual dispatch gateway.")
        return payloads

    def _payload(self, record: Any, index: int) -> Dict[str, Any]:
        if not isinstance(record, Mapping):
            raise BadRequestError(f"Record {index} is not a valid record.")
        return dict(record)

    def _item_id(self, ctx: BatchContext, index: int, record: Dict[str, Any], given: Any) -> Any:
        if given is not None:
            id_value = resolve_id(given, ctx.ids_info, ctx.options, typecast=self._typecast)
            remove_ids(record, ctx.id_fields)
        else:
            id_value = resolve_id(record, ctx.ids_info, ctx.options, remove=True, typecast=self._typecast)
        if id_value is None or id_value is False:
            raise BadRequestError(f"Required id field(s) not found in record {index}: {record!r}")
        return id_value

    def _visible(self, ctx: BatchContext, row: Optional[Row], id_value: Any) -> Row:
        if row is not None:
            policy = _policy_filter(self._policy(ctx, Operation.RETRIEVE), self.session.lookup)
            if policy is None or policy.matches(row):
                return row
        raise NotFoundError(f"Record with identifier '{id_value}' not found.")

    def _shape(self, ctx: BatchContext, row: Row, echo: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """
        Render a stored row for the caller.

        Requested ``fields`` win; ``"*"`` or a read returns the whole row;
        otherwise writes echo the identifier fields and the written fields.
        """
        client = to_client_record(row, ctx.schema.fields)
        fields = ctx.options.field_list()
        if fields is not None:
            return clean_record(client, fields, ctx.id_fields)
        if ctx.options.fields == FIELDS_ALL or echo is None:
            return client
        written = list(to_client_record(echo, ctx.schema.fields))
        return clean_record(client, written, ctx.id_fields)

    def _expand_related(self, ctx: BatchContext, results: List[Any]) -> None:
        if self.relations is None or ctx.operation == Operation.DELETE:
            return
        relations = self._relations(ctx)
        requests = _related_requests(ctx.options.related)
        if not relations or (requests is None and not any(r.always_fetch for r in relations.values())):
            return
        records = [item for item in results if isinstance(item, dict)]
        if records:
            self.relations.retrieve_related_records(ctx.schema, relations, requests, records)

    def _new_row(
        self, ctx: BatchContext, index: int, record: Dict[str, Any], payloads: Dict[str, Any], source: Any
    ) -> Any:
        id_value = resolve_id(record, ctx.ids_info, ctx.options, on_create=True, typecast=self._typecast)
        if id_value is False:
            raise BadRequestError(f"Required id field(s) not found in record {index}: {source!r}")
        relations = self._relations(ctx) if payloads else {}
        if payloads:
            self.relations.update_pre_relations(record, payloads, relations)
        parsed = self.parser.parse(record, ctx.schema.fields, self._policy(ctx, Operation.CREATE))
        if ctx.deferred and ctx.operation == Operation.CREATE and not payloads:
            ctx.pending.append((index, parsed))
            return _PENDING
        row = self.persistence.insert(ctx.table, [parsed])[0]
        client = to_client_record(row, ctx.schema.fields)
        self._record_undo(ctx, "insert", resolve_id(client, ctx.ids_info, typecast=self._typecast))
        if payloads:
            self.relations.update_post_relations(ctx.schema, client, payloads, relations, allow_delete=False)
        return self._shape(ctx, row, parsed)

    # -- staging -----------------------------------------------------------

    def _stage_create(self, ctx: BatchContext, index: int, item: Item) -> Any:
        record = self._payload(item[0], index)
        payloads = self._split_relations(ctx, record)
        return self._new_row(ctx, index, record, payloads, item[0])

    def _stage_update(self, ctx: BatchContext, index: int, item: Item) -> Any:
        source, given = item
        record = self._payload(source, index)
        id_value = self._item_id(ctx, index, record, given)
        payloads = self._split_relations(ctx, record)

        old = self.persistence.select_by_ids(ctx.table, ctx.ids_info, [id_value])[0]
        if old is None:
            if ctx.operation == Operation.UPDATE and self._allow_upsert(ctx):
                log.debug(f"Upserting missing record {id_value!r}", extra={"table": ctx.table, "index": index})
                full = {**ids_as_records([id_value], ctx.id_fields)[0], **record}
                return self._new_row(ctx, index, full, payloads, source)
            raise NotFoundError(f"Record with identifier '{id_value}' not found.")

        relations = self._relations(ctx) if payloads else {}
        if payloads:
            self.relations.update_pre_relations(record, payloads, relations)
        parsed = self.parser.parse(
            record, ctx.schema.fields, self._policy(ctx), for_update=True, old_record=old
        )
        row: Optional[Row] = old
        if parsed:
            row = self.persistence.update(ctx.table, ctx.ids_info, [(id_value, parsed)])[0]
            if row is None:
                raise NotFoundError(f"Record with identifier '{id_value}' not found.")
            self._record_undo(ctx, "update", id_value, old)
        if payloads:
            client = to_client_record(row, ctx.schema.fields)
            self.relations.update_post_relations(ctx.schema, client, payloads, relations, allow_delete=True)
        return self._shape(ctx, row, parsed)

    def _stage_delete(self, ctx: BatchContext, index: int, item: Item) -> Any:
        source, given = item
        record = self._payload(source, index) if given is None else {}
        id_value = self._item_id(ctx, index, record, given)
        old = self.persistence.select_by_ids(ctx.table, ctx.ids_info, [id_value])[0]
        if old is None:
            raise NotFoundError(f"Record with identifier '{id_value}' not found.")
        check_filter_policy(old, self._policy(ctx), lookup=self.session.lookup)
        prior = self.persistence.delete(ctx.table, ctx.ids_info, [id_value])[0]
        if prior is None:
            raise NotFoundError(f"Record with identifier '{id_value}' not found.")
        self._record_undo(ctx, "delete", id_value, prior)
        return self._shape(ctx, prior, {})

    def _stage_retrieve(self, ctx: BatchContext, index: int, item: Item) -> Any:
        source, given = item
        record = self._payload(source, index) if given is None else {}
        id_value = self._item_id(ctx, index, record, given)
        if ctx.deferred:
            ctx.pending.append((index, id_value))
            return _PENDING
        row = self.persistence.select_by_ids(ctx.table, ctx.ids_info, [id_value])[0]
        return self._shape(ctx, self._visible(ctx, row, id_value), None)

    def _allow_upsert(self, ctx: BatchContext) -> bool:
        if ctx.options.allow_upsert is not None:
            return ctx.options.allow_upsert
        return self.settings.allow_upsert

    # -- batch entry points --------------------------------------------------

    def _records_batch(
        self, table: str, operation: Operation, records: Any, options: Any, stage: Stage, require_ids: bool = True
    ) -> List[Any]:
        items = as_list(records, error_message="The request contains no valid record sets.")
        ctx = self._context(table, operation, options, single=len(items) == 1, require_ids=require_ids)
        return self._run(ctx, [(record, None) for record in items], stage)

    def _ids_batch(
        self, table: str, operation: Operation, record: Any, ids: Any, options: Any, stage: Stage
    ) -> List[Any]:
        ctx = self._context(table, operation, options)
        id_list = split_id_list(ids)
        if not id_list:
            raise BadRequestError(
                f"Identifying values for '{','.join(ctx.id_fields)}' can not be empty for {operation.value} request."
            )
        ctx.single = len(id_list) == 1
        if operation in (Operation.UPDATE, Operation.PATCH):
            if not isinstance(record, Mapping) or not record:
                raise BadRequestError("No record fields were passed in the request.")
            items = [(dict(record), id_value) for id_value in id_list]
        else:
            items = [(None, id_value) for id_value in id_list]
        return self._run(ctx, items, stage)

    def _single(self, table: str, operation: Operation, call: Callable[[], List[Any]]) -> Any:
        try:
            return call()[0]
        except BatchError as exc:
            response = exc.pick_response(0)
            if isinstance(response, Exception):
                raise response
            return response
        except RestError:
            raise
        except Exception as exc:
            raise InternalServerError(
                f"Failed to {operation.value} records from '{table}'.\n{exc}"
            ) from exc

    def _matching_ids(self, table: str, filter: Any, params: Any, options: Any) -> List[Any]:
        ctx = self._context(table, Operation.RETRIEVE, options)
        query = Filter.coerce(filter, params or ctx.options.params, self.session.lookup)
        query = query.and_(_policy_filter(self._policy(ctx), self.session.lookup))
        rows = self.persistence.select(ctx.table, query if query else None)
        ids = []
        for row in rows:
            id_value = resolve_id(to_client_record(row, ctx.schema.fields), ctx.ids_info, typecast=self._typecast)
            if id_value is not None:
                ids.append(id_value)
        return ids

    # -- create ------------------------------------------------------------

    def create_records(self, table: str, records: Any, options: Any = None) -> List[Any]:
        return self._records_batch(table, Operation.CREATE, records, options, self._stage_create, require_ids=False)

    def create_record(self, table: str, record: Any, options: Any = None) -> Any:
        records = as_list(record, wrap_single=True, error_message="The request contains no valid record fields.")
        return self._single(table, Operation.CREATE, lambda: self.create_records(table, records[:1], options))

    # -- retrieve ----------------------------------------------------------

    def retrieve_records(self, table: str, records: Any, options: Any = None) -> List[Any]:
        return self._records_batch(table, Operation.RETRIEVE, records, options, self._stage_retrieve)

    def retrieve_records_by_ids(self, table: str, ids: Any, options: Any = None) -> List[Any]:
        return self._ids_batch(table, Operation.RETRIEVE, None, ids, options, self._stage_retrieve)

    def retrieve_record_by_id(self, table: str, id_value: Any, options: Any = None) -> Any:
        return self._single(
            table, Operation.RETRIEVE, lambda: self.retrieve_records_by_ids(table, [id_value], options)
        )

    def retrieve_record(self, table: str, record: Any, options: Any = None) -> Any:
        return self._single(table, Operation.RETRIEVE, lambda: self.retrieve_records(table, [record], options))

    def retrieve_records_by_filter(
        self, table: str, filter: Any = None, params: Optional[Mapping[str, Any]] = None, options: Any = None
    ) -> List[Dict[str, Any]]:
        """
        Read every record matching `filter`.

        Parameters
        ----------
        table : str
            Table name or alias.
        filter : Filter | str | None
            Structured filter or filter-grammar text over column names; None
            reads the whole table.
        params : Mapping | None
            Values for ``:name`` parameters in `filter`.
        options : RecordOptions | dict | None
            ``limit`` (defaults to ``max_records_returned``), ``offset``,
            ``order``, ``fields`` and ``related`` apply.
        """
        ctx = self._context(table, Operation.RETRIEVE, options, require_ids=False)
        query = Filter.coerce(filter, params or ctx.options.params, self.session.lookup)
        query = query.and_(_policy_filter(self._policy(ctx), self.session.lookup))
        rows = self.persistence.select(
            ctx.table,
            query if query else None,
            limit=ctx.options.limit or self.settings.max_records_returned,
            offset=ctx.options.offset,
            order=ctx.options.order,
        )
        log.debug(f"Filter matched {len(rows)} row(s) on {ctx.table}", extra={"table": ctx.table})
        out = [self._shape(ctx, row, None) for row in rows]
        self._expand_related(ctx, out)
        return out

    # -- update / patch ----------------------------------------------------

    def update_records(self, table: str, records: Any, options: Any = None) -> List[Any]:
        return self._records_batch(table, Operation.UPDATE, records, options, self._stage_update)

    def update_record(self, table: str, record: Any, options: Any = None) -> Any:
        return self._single(table, Operation.UPDATE, lambda: self.update_records(table, [record], options))

    def update_records_by_ids(self, table: str, record: Any, ids: Any, options: Any = None) -> List[Any]:
        return self._ids_batch(table, Operation.UPDATE, record, ids, options, self._stage_update)

    def update_record_by_id(self, table: str, record: Any, id_value: Any, options: Any = None) -> Any:
        return self._single(
            table, Operation.UPDATE, lambda: self.update_records_by_ids(table, record, [id_value], options)
        )

    def update_records_by_filter(
        self, table: str, record: Any, filter: Any, params: Optional[Mapping[str, Any]] = None, options: Any = None
    ) -> List[Any]:
        ids = self._matching_ids(table, filter, params, options)
        if not ids:
            return []
        return self.update_records_by_ids(table, record, ids, options)

    def patch_records(self, table: str, records: Any, options: Any = None) -> List[Any]:
        return self._records_batch(table, Operation.PATCH, records, options, self._stage_update)

    def patch_record(self, table: str, record: Any, options: Any = None) -> Any:
        return self._single(table, Operation.PATCH, lambda: self.patch_records(table, [record], options))

    def patch_records_by_ids(self, table: str, record: Any, ids: Any, options: Any = None) -> List[Any]:
        return self._ids_batch(table, Operation.PATCH, record, ids, options, self._stage_update)

    def patch_record_by_id(self, table: str, record: Any, id_value: Any, options: Any = None) -> Any:
        return self._single(
            table, Operation.PATCH, lambda: self.patch_records_by_ids(table, record, [id_value], options)
        )

    def patch_records_by_filter(
        self, table: str, record: Any, filter: Any, params: Optional[Mapping[str, Any]] = None, options: Any = None
    ) -> List[Any]:
        ids = self._matching_ids(table, filter, params, options)
        if not ids:
            return []
        return self.patch_records_by_ids(table, record, ids, options)

    # -- delete ------------------------------------------------------------

    def delete_records(self, table: str, records: Any, options: Any = None) -> List[Any]:
        return self._records_batch(table, Operation.DELETE, records, options, self._stage_delete)

    def delete_record(self, table: str, record: Any, options: Any = None) -> Any:
        return self._single(table, Operation.DELETE, lambda: self.delete_records(table, [record], options))

    def delete_records_by_ids(self, table: str, ids: Any, options: Any = None) -> List[Any]:
        return self._ids_batch(table, Operation.DELETE, None, ids, options, self._stage_delete)

    def delete_record_by_id(self, table: str, id_value: Any, options: Any = None) -> Any:
        return self._single(table, Operation.DELETE, lambda: self.delete_records_by_ids(table, [id_value], options))

    def delete_records_by_filter(
        self, table: str, filter: Any, params: Optional[Mapping[str, Any]] = None, options: Any = None
    ) -> List[Any]:
        if not filter:
            if RecordOptions.coerce(options).force:
                return self.truncate_table(table, options)
            raise BadRequestError("No filter or records given for delete request.")
        ids = self._matching_ids(table, filter, params, options)
        if not ids:
            return []
        return self.delete_records_by_ids(table, ids, options)

    def truncate_table(self, table: str, options: Any = None) -> List[Any]:
        """Delete every record of `table`; requires ``force``."""
        if not RecordOptions.coerce(options).force:
            raise BadRequestError("No filter or records given for delete request.")
        ids = self._matching_ids(table, None, None, options)
        log.info(f"Truncating {table} ({len(ids)} record(s))", extra={"table": table})
        if not ids:
            return []
        return self.delete_records_by_ids(table, ids, options)


__all__ = ["BatchContext", "RecordService"]
