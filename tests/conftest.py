"""
Pytest configuration for tablecore.

Provides fixtures for:
- Settings override for unit and integration tests
- An in-memory customers/orders/tags service wired through the dispatch gateway
- Database connection management and the demo schema for integration tests
"""

from __future__ import annotations

import os
from typing import Generator, Optional, Sequence

import psycopg
import pytest

from tablecore.config import Settings
from tablecore.coordinator import RecordService
from tablecore.domain.models import (
    FieldDescriptor,
    FieldType,
    RelationDescriptor,
    RelationKind,
    TableSchema,
)
from tablecore.engine.dispatch import InProcessTransport, ServiceRegistry, VirtualDispatchGateway
from tablecore.providers.memory import InMemoryMetadata, InMemoryStore
from tablecore.providers.session import StaticSession
from tablecore.router import RequestRouter

SERVICE_NAME = "db"
SERVICE_ID = 1


def _key(name: str = "id") -> FieldDescriptor:
    return FieldDescriptor(
        name=name, type=FieldType.ID, allow_null=False, auto_increment=True, is_primary_key=True
    )


def _reference(name: str, ref_table: str, allow_null: bool = True) -> FieldDescriptor:
    return FieldDescriptor(
        name=name,
        type=FieldType.REFERENCE,
        allow_null=allow_null,
        is_foreign_key=True,
        ref_table=ref_table,
        ref_field="id",
    )


def demo_schemas() -> list:
    """Table schemas of the in-memory demo service."""
    customers = TableSchema(
        name="customers",
        fields=[
            _key(),
            FieldDescriptor(name="name", type=FieldType.STRING, allow_null=False),
            FieldDescriptor(name="email", type=FieldType.STRING, is_unique=True, validation={"email": None}),
            FieldDescriptor(name="region", type=FieldType.STRING),
            FieldDescriptor(name="created_at", type=FieldType.TIMESTAMP_ON_CREATE),
            FieldDescriptor(name="created_by", type=FieldType.USER_ID_ON_CREATE),
        ],
        relations=[
            RelationDescriptor(
                type=RelationKind.HAS_MANY, field=["id"], ref_table="orders", ref_field=["customer_id"]
            ),
            RelationDescriptor(
                type=RelationKind.HAS_ONE,
                field=["id"],
                ref_table="customer_profiles",
                ref_field=["customer_id"],
            ),
        ],
    )
    profiles = TableSchema(
        name="customer_profiles",
        fields=[
            _key(),
            FieldDescriptor(
                name="customer_id",
                type=FieldType.REFERENCE,
                is_unique=True,
                is_foreign_key=True,
                ref_table="customers",
                ref_field="id",
            ),
            FieldDescriptor(name="bio", type=FieldType.TEXT),
        ],
    )
    orders = TableSchema(
        name="orders",
        fields=[
            _key(),
            _reference("customer_id", "customers"),
            FieldDescriptor(name="status", type=FieldType.STRING, allow_null=False, default="open"),
            FieldDescriptor(name="total", type=FieldType.FLOAT),
        ],
        relations=[
            RelationDescriptor(
                type=RelationKind.BELONGS_TO, field=["customer_id"], ref_table="customers", ref_field=["id"]
            ),
            RelationDescriptor(
                type=RelationKind.MANY_TO_MANY,
                field=["id"],
                ref_table="tags",
                ref_field=["id"],
                junction_table="order_tags",
                junction_field=["order_id"],
                junction_ref_field=["tag_id"],
            ),
        ],
    )
    tags = TableSchema(
        name="tags",
        fields=[_key(), FieldDescriptor(name="label", type=FieldType.STRING, allow_null=False)],
    )
    order_tags = TableSchema(
        name="order_tags",
        fields=[
            _key(),
            _reference("order_id", "orders", allow_null=False),
            _reference("tag_id", "tags", allow_null=False),
        ],
    )
    return [customers, profiles, orders, tags, order_tags]


def build_service(
    schemas: Sequence[TableSchema],
    registry: Optional[ServiceRegistry] = None,
    session: Optional[StaticSession] = None,
    settings: Optional[Settings] = None,
    service_name: str = SERVICE_NAME,
    service_id: int = SERVICE_ID,
) -> RecordService:
    """
    Wire an in-memory `RecordService` and register its router.

    Services sharing a `registry` can reach each other's tables through the
    gateway.
    """
    registry = registry or ServiceRegistry()
    metadata = InMemoryMetadata(schemas)
    store = InMemoryStore(metadata)
    gateway = VirtualDispatchGateway(InProcessTransport(registry), registry, default_service=service_name)
    service = RecordService(
        metadata,
        store,
        session=session or StaticSession(),
        gateway=gateway,
        settings=settings or Settings(log_level="DEBUG", max_records_returned=100),
        service_name=service_name,
        service_id=service_id,
    )
    registry.register(service_name, RequestRouter(service), service_id=service_id)
    return service


@pytest.fixture
def session() -> StaticSession:
    return StaticSession(user_id=7)


@pytest.fixture
def registry() -> ServiceRegistry:
    return ServiceRegistry()


@pytest.fixture
def service(registry: ServiceRegistry, session: StaticSession) -> RecordService:
    """In-memory demo service with relation support."""
    return build_service(demo_schemas(), registry=registry, session=session)


@pytest.fixture
def store(service: RecordService) -> InMemoryStore:
    return service.persistence


@pytest.fixture
def router(service: RecordService, registry: ServiceRegistry) -> RequestRouter:
    return registry.get_handler(SERVICE_NAME)


# -- integration fixtures -------------------------------------------------


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "tablecore"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    """
    Database connection string for tests.
    """
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False


@pytest.fixture
def db_connection(test_dsn: str, db_connection_available: bool) -> Generator[psycopg.Connection, None, None]:
    """
    Provide a database connection for integration tests.

    Skips tests if database is not available.
    """
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")

    conn = psycopg.connect(test_dsn)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def demo_schema(db_connection: psycopg.Connection) -> psycopg.Connection:
    """
    Recreate and seed the demo tables before each test.
    """
    from scripts.demo_schema import create_schema, seed

    create_schema(db_connection, drop=True)
    seed(db_connection)
    return db_connection
