"""
Batch semantics of the record API over the in-memory store.
"""

from __future__ import annotations

from typing import List

import pytest

from conftest import build_service, demo_schemas
from tablecore.config import Settings
from tablecore.coordinator import RecordService
from tablecore.domain.errors import (
    BadRequestError,
    BatchError,
    ForbiddenError,
    InternalServerError,
    NotFoundError,
)
from tablecore.domain.models import FieldDescriptor, FieldType, Operation, TableSchema
from tablecore.providers.memory import InMemoryMetadata, InMemoryStore
from tablecore.providers.session import StaticSession

SETTINGS = Settings(log_level="DEBUG", max_records_returned=100)


def _seed_orders(store: InMemoryStore) -> None:
    store.insert(
        "orders",
        [
            {"id": 1, "customer_id": 1, "status": "open", "total": 10.5},
            {"id": 2, "customer_id": 1, "status": "shipped", "total": 99.0},
            {"id": 3, "customer_id": 2, "status": "open", "total": 5.0},
        ],
    )


class TransactionalStore(InMemoryStore):
    """In-memory store that reports transaction boundaries."""

    supports_transactions = True

    def __init__(self, metadata: InMemoryMetadata) -> None:
        super().__init__(metadata)
        self.events: List[str] = []

    def begin(self) -> None:
        self.events.append("begin")

    def commit(self) -> None:
        self.events.append("commit")

    def rollback(self) -> None:
        self.events.append("rollback")


class TestCreate:
    def test_single_create_echoes_written_fields_and_id(self, service, store) -> None:
        result = service.create_record("orders", {"status": "open", "total": "12.5"})
        assert result == {"status": "open", "total": 12.5, "id": 1}
        assert store.all_rows("orders")[0]["customer_id"] is None

    def test_generated_fields_are_stamped(self, service, store) -> None:
        service.create_record("customers", {"name": "Ann"})
        row = store.all_rows("customers")[0]
        assert row["created_by"] == 7
        assert row["created_at"] is not None

    def test_fields_option_controls_the_result(self, service) -> None:
        full = service.create_record("orders", {"status": "open"}, {"fields": "*"})
        assert full == {"id": 1, "customer_id": None, "status": "open", "total": None}
        trimmed = service.create_record("orders", {"status": "open"}, {"fields": "status"})
        assert trimmed == {"status": "open", "id": 2}

    def test_batch_create_is_written_in_order(self, service, store) -> None:
        results = service.create_records("tags", [{"label": "a"}, {"label": "b"}])
        assert results == [{"label": "a", "id": 1}, {"label": "b", "id": 2}]
        assert [row["label"] for row in store.all_rows("tags")] == ["a", "b"]

    def test_resource_envelope_is_accepted(self, service) -> None:
        assert len(service.create_records("tags", {"resource": [{"label": "a"}]})) == 1

    def test_empty_batch_is_rejected(self, service) -> None:
        with pytest.raises(BadRequestError, match="no valid record sets"):
            service.create_records("tags", [])

    def test_unknown_table(self, service) -> None:
        with pytest.raises(NotFoundError, match="does not exist"):
            service.create_record("nope", {"a": 1})

    def test_invalid_field_value_is_bad_request(self, service) -> None:
        with pytest.raises(BadRequestError, match="valid email"):
            service.create_record("customers", {"name": "Ann", "email": "nope"})

    def test_duplicate_unique_value(self, service) -> None:
        service.create_record("customers", {"name": "Ann", "email": "ann@example.com"})
        with pytest.raises(BadRequestError, match="Duplicate key value"):
            service.create_record("customers", {"name": "Other", "email": "ann@example.com"})

    def test_unexpected_store_failure_is_internal_error(self, service, store, monkeypatch) -> None:
        def boom(table, records):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store, "insert", boom)
        with pytest.raises(InternalServerError, match="Failed to create records from 'orders'.\ndisk on fire"):
            service.create_record("orders", {"status": "open"})


class TestBatchModes:
    def test_rollback_and_continue_are_exclusive(self, service) -> None:
        with pytest.raises(BadRequestError, match="can not be requested at the same time"):
            service.create_records("tags", [{"label": "a"}], {"rollback": True, "continue": True})

    def test_fail_fast_keeps_earlier_successes(self, service, store) -> None:
        with pytest.raises(BatchError) as info:
            service.create_records("customers", [{"name": "A"}, {"name": None}, {"name": "C"}])
        error = info.value
        assert error.message == "Batch Error: Not all requested records could be created."
        assert set(error.results) == {0, 1}
        assert error.pick_response(0)["name"] == "A"
        assert isinstance(error.pick_response(1), BadRequestError)
        assert error.pick_response(2) is None
        assert [row["name"] for row in store.all_rows("customers")] == ["A"]

    def test_continue_attempts_every_item(self, service, store) -> None:
        store.insert("orders", [{"id": 5, "status": "open"}, {"id": 9, "status": "open"}])
        with pytest.raises(BatchError) as info:
            service.update_records_by_ids("orders", {"status": "shipped"}, "5,6,9", {"continue": True})
        error = info.value
        assert error.message == "Batch Error: Not all requested records could be updated."
        assert error.results[0] == {"status": "shipped", "id": 5}
        assert isinstance(error.results[1], NotFoundError)
        assert error.results[1].message == "Record with identifier '6' not found."
        assert error.results[2] == {"status": "shipped", "id": 9}
        assert {row["id"]: row["status"] for row in store.all_rows("orders")} == {5: "shipped", 9: "shipped"}

    def test_rollback_undoes_inserts(self, service, store) -> None:
        with pytest.raises(BatchError) as info:
            service.create_records("customers", [{"name": "A"}, {"name": None}], {"rollback": True})
        assert info.value.message.endswith("All changes rolled back.")
        assert store.all_rows("customers") == []

    def test_rollback_restores_updated_rows(self, service, store) -> None:
        _seed_orders(store)
        with pytest.raises(BatchError):
            service.update_records(
                "orders", [{"id": 1, "status": "closed"}, {"id": 42, "status": "closed"}], {"rollback": True}
            )
        assert store.all_rows("orders")[0]["status"] == "open"

    def test_rollback_restores_deleted_rows(self, service, store) -> None:
        _seed_orders(store)
        with pytest.raises(BatchError):
            service.delete_records_by_ids("orders", [1, 42], {"rollback": True})
        assert sorted(row["id"] for row in store.all_rows("orders")) == [1, 2, 3]

    def test_rollback_undoes_related_children(self, service, store) -> None:
        records = [
            {"name": "B", "orders_by_customer_id": [{"status": "open"}, {"status": "open"}]},
            {"name": None},
        ]
        with pytest.raises(BatchError):
            service.create_records("customers", records, {"rollback": True})
        assert store.all_rows("customers") == []
        assert store.all_rows("orders") == []

    def test_rollback_undoes_junction_links(self, service, store) -> None:
        records = [{"status": "new", "tags_by_order_tags": [{"label": "red"}]}, {"status": None}]
        with pytest.raises(BatchError):
            service.create_records("orders", records, {"rollback": True})
        assert store.all_rows("orders") == []
        assert store.all_rows("tags") == []
        assert store.all_rows("order_tags") == []

    def test_rollback_after_a_failing_child(self, service, store) -> None:
        records = [{"name": "B", "orders_by_customer_id": [{"status": "a"}, {"status": None}]}]
        with pytest.raises(BatchError):
            service.create_records("customers", records, {"rollback": True})
        assert store.all_rows("customers") == []
        assert store.all_rows("orders") == []

    def test_deferred_create_stops_at_the_failing_row(self, service, store) -> None:
        records = [
            {"name": "A", "email": "a@example.com"},
            {"name": "B", "email": "a@example.com"},
            {"name": None},
        ]
        with pytest.raises(BatchError) as info:
            service.create_records("customers", records)
        error = info.value
        assert set(error.results) == {0, 1}
        assert error.results[0]["name"] == "A"
        assert isinstance(error.results[1], BadRequestError)
        assert [row["name"] for row in store.all_rows("customers")] == ["A"]

    def test_deferred_create_keeps_rows_before_a_late_failure(self, service, store) -> None:
        records = [
            {"name": "A", "email": "a@example.com"},
            {"name": "B"},
            {"name": "C", "email": "a@example.com"},
            {"name": "D"},
        ]
        with pytest.raises(BatchError) as info:
            service.create_records("customers", records)
        error = info.value
        assert set(error.results) == {0, 1, 2}
        assert isinstance(error.results[2], BadRequestError)
        assert [row["name"] for row in store.all_rows("customers")] == ["A", "B"]

    def test_failed_undo_is_an_internal_error(self, service, store, monkeypatch) -> None:
        def refuse(table, ids_info, ids):
            raise BadRequestError("locked")

        monkeypatch.setattr(store, "delete", refuse)
        with pytest.raises(InternalServerError, match="Failed to roll back 1 change"):
            service.create_records("customers", [{"name": "A"}, {"name": None}], {"rollback": True})

    def test_transactional_store_uses_real_transactions(self) -> None:
        metadata = InMemoryMetadata(demo_schemas())
        store = TransactionalStore(metadata)
        service = RecordService(metadata, store, settings=SETTINGS)

        service.create_records("tags", [{"label": "a"}, {"label": "b"}], {"rollback": True})
        assert store.events == ["begin", "commit"]

        store.events.clear()
        with pytest.raises(BatchError):
            service.create_records("tags", [{"label": "a"}, {"label": None}], {"rollback": True})
        assert store.events == ["begin", "rollback"]

        store.events.clear()
        service.create_records("tags", [{"label": "c"}])
        assert store.events == []

    def test_configuration_error_aborts_without_batch_error(self, store) -> None:
        metadata = store.metadata
        bare = RecordService(metadata, InMemoryStore(metadata), settings=SETTINGS)
        with pytest.raises(InternalServerError, match="virtual dispatch gateway"):
            bare.create_records("orders", [{"status": "x", "tags_by_order_tags": [{"label": "a"}]}])


class TestRetrieve:
    def test_by_id_returns_full_row(self, service, store) -> None:
        _seed_orders(store)
        assert service.retrieve_record_by_id("orders", "2") == {
            "id": 2,
            "customer_id": 1,
            "status": "shipped",
            "total": 99.0,
        }

    def test_missing_record(self, service) -> None:
        with pytest.raises(NotFoundError, match="Record with identifier '4' not found."):
            service.retrieve_record_by_id("orders", 4)

    def test_by_ids_reports_partial_misses(self, service, store) -> None:
        _seed_orders(store)
        with pytest.raises(BatchError) as info:
            service.retrieve_records_by_ids("orders", "1,99")
        assert info.value.results[0]["id"] == 1
        assert isinstance(info.value.results[1], NotFoundError)

    def test_by_ids_stops_at_the_first_miss(self, service, store) -> None:
        store.insert("tags", [{"label": "a"}, {"label": "b"}])
        with pytest.raises(BatchError) as info:
            service.retrieve_records_by_ids("tags", "1,42,2")
        assert set(info.value.results) == {0, 1}
        assert info.value.results[0]["label"] == "a"
        assert isinstance(info.value.results[1], NotFoundError)

    def test_by_records(self, service, store) -> None:
        _seed_orders(store)
        results = service.retrieve_records("orders", [{"id": 3}, {"id": 1}], {"fields": "status"})
        assert results == [{"status": "open", "id": 3}, {"status": "open", "id": 1}]

    def test_empty_id_list(self, service) -> None:
        with pytest.raises(BadRequestError, match="Identifying values for 'id' can not be empty for retrieve request."):
            service.retrieve_records_by_ids("orders", "")

    def test_by_filter_with_order_limit_and_offset(self, service, store) -> None:
        _seed_orders(store)
        rows = service.retrieve_records_by_filter("orders", "status = 'open'", options={"order": "total desc"})
        assert [row["id"] for row in rows] == [1, 3]
        rows = service.retrieve_records_by_filter("orders", None, options={"order": "id", "limit": 1, "offset": 1})
        assert [row["id"] for row in rows] == [2]

    def test_by_filter_with_bound_params(self, service, store) -> None:
        _seed_orders(store)
        rows = service.retrieve_records_by_filter("orders", "customer_id = :customer", {"customer": 2})
        assert [row["id"] for row in rows] == [3]


class TestUpdate:
    def test_update_merges_fields(self, service, store) -> None:
        _seed_orders(store)
        result = service.update_record("orders", {"id": 1, "total": 11})
        assert result == {"total": 11.0, "id": 1}
        row = store.all_rows("orders")[0]
        assert (row["status"], row["total"]) == ("open", 11.0)

    def test_patch_by_id(self, service, store) -> None:
        _seed_orders(store)
        assert service.patch_record_by_id("orders", {"status": "closed"}, 3) == {"status": "closed", "id": 3}

    def test_ids_batch_requires_fields(self, service) -> None:
        with pytest.raises(BadRequestError, match="No record fields were passed in the request."):
            service.update_records_by_ids("orders", {}, "1")

    def test_update_by_filter(self, service, store) -> None:
        _seed_orders(store)
        results = service.update_records_by_filter("orders", {"status": "held"}, "customer_id = 1")
        assert [r["id"] for r in results] == [1, 2]
        assert service.patch_records_by_filter("orders", {"status": "x"}, "customer_id = 77") == []

    def test_missing_record_without_upsert(self, service) -> None:
        with pytest.raises(NotFoundError):
            service.update_record("orders", {"id": 7, "status": "new"})

    def test_upsert_on_update_when_allowed(self, service, store) -> None:
        result = service.update_record("orders", {"id": 7, "status": "new"}, {"allow_upsert": True})
        assert result == {"id": 7, "status": "new"}
        assert store.all_rows("orders")[0]["id"] == 7

    def test_upsert_from_settings_but_never_on_patch(self, registry) -> None:
        settings = Settings(log_level="DEBUG", allow_upsert=True)
        service = build_service(demo_schemas(), registry=registry, settings=settings)
        service.update_record("orders", {"id": 7, "status": "new"})
        with pytest.raises(NotFoundError):
            service.patch_record("orders", {"id": 8, "status": "new"})

    def test_missing_id_in_record(self, service) -> None:
        with pytest.raises(BadRequestError, match="Required id field"):
            service.update_record("orders", {"status": "x"})


class TestDelete:
    def test_delete_echoes_ids_only(self, service, store) -> None:
        _seed_orders(store)
        assert service.delete_record_by_id("orders", 2) == {"id": 2}
        assert service.delete_record("orders", {"id": 1}) == {"id": 1}
        assert [row["id"] for row in store.all_rows("orders")] == [3]

    def test_delete_by_filter(self, service, store) -> None:
        _seed_orders(store)
        assert service.delete_records_by_filter("orders", "status = 'open'") == [{"id": 1}, {"id": 3}]

    def test_unfiltered_delete_needs_force(self, service, store) -> None:
        _seed_orders(store)
        with pytest.raises(BadRequestError, match="No filter or records given for delete request."):
            service.delete_records_by_filter("orders", None)
        assert len(service.delete_records_by_filter("orders", None, options={"force": True})) == 3
        assert store.all_rows("orders") == []

    def test_truncate_requires_force(self, service) -> None:
        with pytest.raises(BadRequestError):
            service.truncate_table("orders")
        assert service.truncate_table("orders", {"force": True}) == []


class TestFilterPolicies:
    @pytest.fixture
    def guarded(self, registry):
        open_only = {"filters": [{"name": "status", "operator": "=", "value": "open"}]}
        session = StaticSession(
            user_id=7,
            policies={
                (Operation.CREATE, "db", "orders"): open_only,
                (Operation.RETRIEVE, "db", "orders"): open_only,
                ("delete", "db", "*"): open_only,
            },
        )
        service = build_service(demo_schemas(), registry=registry, session=session)
        _seed_orders(service.persistence)
        return service

    def test_create_is_denied_by_policy(self, guarded) -> None:
        with pytest.raises(ForbiddenError):
            guarded.create_record("orders", {"status": "closed"})
        assert guarded.create_record("orders", {"status": "open"})["id"] == 4

    def test_reads_hide_rows_outside_policy(self, guarded) -> None:
        with pytest.raises(NotFoundError):
            guarded.retrieve_record_by_id("orders", 2)
        assert [row["id"] for row in guarded.retrieve_records_by_filter("orders")] == [1, 3]

    def test_delete_is_judged_by_stored_row(self, guarded) -> None:
        with pytest.raises(ForbiddenError):
            guarded.delete_record_by_id("orders", 2)
        assert len(guarded.persistence.all_rows("orders")) == 3


class TestCompositeKeys:
    @pytest.fixture
    def prices(self, registry) -> RecordService:
        schema = TableSchema(
            name="prices",
            fields=[
                FieldDescriptor(name="sku", type=FieldType.STRING, allow_null=False, is_primary_key=True),
                FieldDescriptor(name="region", type=FieldType.STRING, allow_null=False, is_primary_key=True),
                FieldDescriptor(name="amount", type=FieldType.FLOAT),
            ],
        )
        return build_service([schema], registry=registry)

    def test_create_and_retrieve_by_record(self, prices) -> None:
        prices.create_records("prices", [{"sku": "A", "region": "eu", "amount": 1}, {"sku": "A", "region": "us"}])
        assert prices.retrieve_record("prices", {"sku": "A", "region": "us"})["amount"] is None

    def test_shared_id_part_from_options(self, prices) -> None:
        prices.create_record("prices", {"sku": "A", "region": "eu", "amount": 1})
        result = prices.update_record("prices", {"sku": "A", "amount": 2}, {"region": "eu"})
        assert result == {"amount": 2.0, "sku": "A", "region": "eu"}

    def test_missing_key_part(self, prices) -> None:
        with pytest.raises(BadRequestError, match="Required id field"):
            prices.create_record("prices", {"sku": "A"})
        with pytest.raises(BadRequestError, match="Required id field"):
            prices.retrieve_record("prices", {"sku": "A"})

    def test_id_field_override(self, prices) -> None:
        prices.create_records("prices", [{"sku": "A", "region": "eu"}, {"sku": "B", "region": "eu"}])
        results = prices.retrieve_records_by_ids("prices", "A,B", {"id_field": "sku"})
        assert [row["region"] for row in results] == ["eu", "eu"]
