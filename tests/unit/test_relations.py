"""
Relationship reads and writes through the in-process dispatch gateway.
"""

from __future__ import annotations

import pytest

from conftest import build_service
from tablecore.domain.errors import BadRequestError, NotImplementedFeatureError
from tablecore.domain.models import FieldDescriptor, FieldType, RelationDescriptor, RelationKind, TableSchema
from tablecore.engine.dispatch import RemoteResponse, ServiceRegistry


def _labels(store, table: str = "tags") -> list:
    return sorted(row["label"] for row in store.all_rows(table))


def _links(store) -> list:
    return sorted((row["order_id"], row["tag_id"]) for row in store.all_rows("order_tags"))


class TestRelationNames:
    """Relations without an explicit name get one derived from their keys."""

    def test_default_names(self, service) -> None:
        names = {r.get_name() for r in service.metadata.get_relation_descriptors("orders")}
        assert names == {"customers_by_customer_id", "tags_by_order_tags"}
        names = {r.get_name() for r in service.metadata.get_relation_descriptors("customers")}
        assert names == {"orders_by_customer_id", "customer_profiles_by_customer_id"}


class TestBelongsTo:
    def test_create_with_new_parent_links_foreign_key(self, service, store) -> None:
        order = service.create_record(
            "orders",
            {"status": "new", "customers_by_customer_id": {"name": "Ann", "email": "ann@example.com"}},
        )
        customers = store.all_rows("customers")
        assert [c["name"] for c in customers] == ["Ann"]
        assert order["customer_id"] == customers[0]["id"]

    def test_existing_parent_is_updated(self, service, store) -> None:
        store.insert("customers", [{"name": "Ann"}])
        service.create_record("orders", {"status": "new", "customers_by_customer_id": {"id": 1, "name": "Anna"}})
        assert store.all_rows("customers")[0]["name"] == "Anna"
        assert store.all_rows("orders")[0]["customer_id"] == 1

    def test_parent_failure_is_reported_as_bad_request(self, service) -> None:
        with pytest.raises(BadRequestError, match="Failed to update belongs-to assignment."):
            service.create_record("orders", {"status": "new", "customers_by_customer_id": {"email": "x@example.com"}})

    def test_read_expands_parent(self, service, store) -> None:
        store.insert("customers", [{"name": "Ann"}])
        store.insert("orders", [{"customer_id": 1, "status": "open"}, {"status": "open"}])
        first, second = service.retrieve_records_by_ids("orders", "1,2", {"related": "customers_by_customer_id"})
        assert first["customers_by_customer_id"]["name"] == "Ann"
        assert second["customers_by_customer_id"] is None


class TestHasMany:
    def test_create_parent_with_children(self, service, store) -> None:
        service.create_record("customers", {"name": "Bob", "orders_by_customer_id": [{"status": "a"}, {"status": "b"}]})
        orders = store.all_rows("orders")
        assert [(o["status"], o["customer_id"]) for o in orders] == [("a", 1), ("b", 1)]

        customer = service.retrieve_record_by_id("customers", 1, {"related": "orders_by_customer_id"})
        assert sorted(o["status"] for o in customer["orders_by_customer_id"]) == ["a", "b"]

    def test_children_without_parent_get_empty_list(self, service, store) -> None:
        store.insert("customers", [{"name": "Solo"}])
        customer = service.retrieve_record_by_id("customers", 1, {"related": "*"})
        assert customer["orders_by_customer_id"] == []
        assert customer["customer_profiles_by_customer_id"] is None

    def test_disown_nulls_the_link(self, service, store) -> None:
        service.create_record("customers", {"name": "Bob", "orders_by_customer_id": [{"status": "a"}, {"status": "b"}]})
        result = service.update_record("customers", {"id": 1, "orders_by_customer_id": [{"id": 2, "customer_id": None}]})
        assert result == {"id": 1}
        orders = {o["id"]: o["customer_id"] for o in store.all_rows("orders")}
        assert orders == {1: 1, 2: None}

    def test_relate_existing_child_by_key(self, service, store) -> None:
        store.insert("customers", [{"name": "Bob"}])
        store.insert("orders", [{"status": "loose"}])
        service.patch_record("customers", {"id": 1, "orders_by_customer_id": [{"id": 1}]})
        assert store.all_rows("orders")[0]["customer_id"] == 1

    def test_update_child_data(self, service, store) -> None:
        service.create_record("customers", {"name": "Bob", "orders_by_customer_id": [{"status": "a"}]})
        service.update_record("customers", {"id": 1, "orders_by_customer_id": [{"id": 1, "status": "shipped"}]})
        assert store.all_rows("orders")[0]["status"] == "shipped"

    def test_child_failure_is_reported_as_bad_request(self, service) -> None:
        with pytest.raises(BadRequestError, match="Failed to update many to one assignment."):
            service.create_record("customers", {"name": "Bob", "orders_by_customer_id": [{"status": None}]})


class TestHasOne:
    def test_create_and_read_single_child(self, service, store) -> None:
        service.create_record("customers", {"name": "Cy", "customer_profiles_by_customer_id": {"bio": "hi"}})
        assert store.all_rows("customer_profiles")[0]["customer_id"] == 1
        customer = service.retrieve_record_by_id("customers", 1, {"related": "customer_profiles_by_customer_id"})
        assert customer["customer_profiles_by_customer_id"]["bio"] == "hi"

    def test_empty_payload_disowns_on_update(self, service, store) -> None:
        service.create_record("customers", {"name": "Cy", "customer_profiles_by_customer_id": {"bio": "hi"}})
        service.update_record("customers", {"id": 1, "customer_profiles_by_customer_id": None})
        assert store.all_rows("customer_profiles")[0]["customer_id"] is None


class TestManyToMany:
    def test_create_with_new_children_links_through_junction(self, service, store) -> None:
        order = service.create_record("orders", {"status": "new", "tags_by_order_tags": [{"label": "red"}]})
        assert order == {"status": "new", "id": 1}
        assert _links(store) == [(1, 1)]

        fetched = service.retrieve_record_by_id("orders", 1, {"related": "tags_by_order_tags"})
        assert fetched["tags_by_order_tags"] == [{"id": 1, "label": "red"}]

    def test_existing_children_are_linked_once(self, service, store) -> None:
        store.insert("tags", [{"label": "gift"}, {"label": "priority"}])
        service.create_record("orders", {"status": "new", "tags_by_order_tags": [{"id": 1}, {"id": 2}]})
        service.patch_record("orders", {"id": 1, "tags_by_order_tags": [{"id": 1}, {"id": 2}]})
        assert _links(store) == [(1, 1), (1, 2)]

    def test_update_payload_is_the_full_membership(self, service, store) -> None:
        service.create_record("orders", {"status": "new", "tags_by_order_tags": [{"label": "A"}, {"label": "B"}]})
        service.update_record("orders", {"id": 1, "tags_by_order_tags": [{"id": 1}]})
        assert _links(store) == [(1, 1)]
        assert _labels(store) == ["A", "B"]

    @pytest.mark.parametrize("marker", [{"_detach": True}, {"orders.id": None}])
    def test_detach_markers_remove_only_the_link(self, service, store, marker) -> None:
        service.create_record("orders", {"status": "new", "tags_by_order_tags": [{"label": "A"}, {"label": "B"}]})
        service.patch_record("orders", {"id": 1, "tags_by_order_tags": [{"id": 1}, {"id": 2, **marker}]})
        assert _links(store) == [(1, 1)]
        assert _labels(store) == ["A", "B"]

    def test_child_data_is_updated(self, service, store) -> None:
        service.create_record("orders", {"status": "new", "tags_by_order_tags": [{"label": "A"}]})
        service.patch_record("orders", {"id": 1, "tags_by_order_tags": [{"id": 1, "label": "AA"}]})
        assert _labels(store) == ["AA"]


def _contacts_schema() -> TableSchema:
    return TableSchema(
        name="contacts",
        fields=[
            FieldDescriptor(name="id", type=FieldType.ID, allow_null=False, auto_increment=True, is_primary_key=True),
            FieldDescriptor(name="account_id", type=FieldType.REFERENCE, is_foreign_key=True),
            FieldDescriptor(name="name", type=FieldType.STRING),
        ],
        relations=[
            RelationDescriptor(
                type=RelationKind.BELONGS_TO,
                field="account_id",
                ref_service_id=2,
                ref_table="accounts",
                ref_field="id",
            )
        ],
    )


class TestRemoteService:
    """Relations pointing at another service travel through the registry."""

    @pytest.fixture
    def crm_registry(self) -> ServiceRegistry:
        registry = ServiceRegistry()
        accounts = TableSchema(
            name="accounts",
            fields=[
                FieldDescriptor(name="id", type=FieldType.ID, allow_null=False, auto_increment=True, is_primary_key=True),
                FieldDescriptor(name="title", type=FieldType.STRING, allow_null=False),
            ],
        )
        build_service([accounts], registry=registry, service_name="crm", service_id=2)
        return registry

    @pytest.fixture
    def contacts(self, crm_registry):
        return build_service([_contacts_schema()], registry=crm_registry)

    def test_create_and_read_across_services(self, contacts, crm_registry) -> None:
        contacts.create_record("contacts", {"name": "Eve", "accounts_by_account_id": {"title": "Acme"}})
        crm = crm_registry.get_handler("crm").service
        assert crm.persistence.all_rows("accounts")[0]["title"] == "Acme"

        contact = contacts.retrieve_record_by_id("contacts", 1, {"related": "accounts_by_account_id"})
        assert contact["account_id"] == 1
        assert contact["accounts_by_account_id"] == {"id": 1, "title": "Acme"}


def test_related_service_configuration_failure_aborts_a_continue_batch(registry) -> None:
    def unsupported(request):
        error = {"code": 501, "message": "Multi-column keys are not supported.", "status_code": 501}
        return RemoteResponse(501, {"error": error})

    registry.register("crm", unsupported, service_id=2)
    contacts = build_service([_contacts_schema()], registry=registry)
    records = [{"name": "Eve", "accounts_by_account_id": {"title": "Acme"}}, {"name": "Bob"}]

    with pytest.raises(NotImplementedFeatureError):
        contacts.create_records("contacts", records, {"continue": True})
    assert contacts.persistence.all_rows("contacts") == []


def test_multi_column_keys_are_not_supported(registry) -> None:
    schema = TableSchema(
        name="lines",
        fields=[
            FieldDescriptor(name="id", type=FieldType.ID, allow_null=False, auto_increment=True, is_primary_key=True),
            FieldDescriptor(name="a", type=FieldType.INTEGER),
            FieldDescriptor(name="b", type=FieldType.INTEGER),
        ],
        relations=[
            RelationDescriptor(type=RelationKind.BELONGS_TO, field=["a", "b"], ref_table="lines", ref_field=["id"]),
        ],
    )
    service = build_service([schema], registry=registry)
    service.persistence.insert("lines", [{"a": 1, "b": 2}])
    with pytest.raises(NotImplementedFeatureError):
        service.retrieve_record_by_id("lines", 1, {"related": "*"})
