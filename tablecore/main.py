from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

import typer

from tablecore.config import get_settings
from tablecore.coordinator import RecordService
from tablecore.domain.errors import RestError
from tablecore.engine.dispatch import InProcessTransport, ServiceRegistry, VirtualDispatchGateway
from tablecore.infrastructure.db_factory import get_sync_connection
from tablecore.infrastructure.transport import HttpTransport
from tablecore.providers.postgres import PostgresMetadata, PostgresStore
from tablecore.reporter import print_error, print_records, print_schema
from tablecore.router import RequestRouter
from tablecore.utils.logging import configure_logging

app = typer.Typer(help="tablecore record engine CLI.")


@contextmanager
def open_service() -> Generator[RecordService, None, None]:
    """
    Wire a `RecordService` over PostgreSQL.

    The local service is registered with an in-process transport; other
    services are reached over HTTP when ``REMOTE_BASE_URL`` is set.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json, service=settings.service_name)
    conn = get_sync_connection(settings)
    fallback = HttpTransport.from_settings(settings) if settings.remote_base_url else None
    try:
        metadata = PostgresMetadata(conn, schema=settings.db_schema)
        store = PostgresStore(conn, metadata)
        registry = ServiceRegistry()
        gateway = VirtualDispatchGateway(
            InProcessTransport(registry, fallback=fallback), registry, default_service=settings.service_name
        )
        service = RecordService(metadata, store, gateway=gateway, settings=settings)
        registry.register(settings.service_name, RequestRouter(service), service_id=settings.service_id)
        yield service
    finally:
        if fallback is not None:
            fallback.close()
        conn.close()


def _json_arg(value: Optional[str], name: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError:
        raise typer.BadParameter(f"{name} must be valid JSON.") from None


def _options(**values: Any) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value not in (None, False)}


def _show(result: Any, title: str) -> None:
    if isinstance(result, dict):
        result = [result]
    print_records(result or [], title=title)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} "
        f"schema={settings.db_schema} | service={settings.service_name}#{settings.service_id} "
        f"max_records={settings.max_records_returned} upsert={settings.allow_upsert} "
        f"remote={settings.remote_base_url or '-'}"
    )


@app.command()
def describe(table: Optional[str] = typer.Argument(None, help="Table to describe; omit to list tables.")) -> None:
    """
    List tables, or show one table's fields and relations.
    """
    with open_service() as service:
        if table is None:
            for name in service.metadata.list_tables():
                typer.echo(name)
            return
        print_schema(service.metadata.get_table_schema(table))


@app.command()
def get(
    table: str = typer.Argument(..., help="Table name."),
    ids: Optional[str] = typer.Option(None, "--ids", help="Comma-separated identifiers."),
    filter: Optional[str] = typer.Option(None, "--filter", "-f", help="Filter, e.g. \"(status = 'open')\"."),
    fields: Optional[str] = typer.Option(None, "--fields", help="Comma-separated fields or '*'."),
    related: Optional[str] = typer.Option(None, "--related", "-r", help="Relations to expand, or '*'."),
    limit: Optional[int] = typer.Option(None, "--limit", "-l"),
    offset: Optional[int] = typer.Option(None, "--offset"),
    order: Optional[str] = typer.Option(None, "--order", help="e.g. 'name desc'."),
) -> None:
    """
    Retrieve records by ids or by filter.
    """
    options = _options(fields=fields, related=related, limit=limit, offset=offset, order=order)
    with open_service() as service:
        if ids:
            records = service.retrieve_records_by_ids(table, ids, options)
        else:
            records = service.retrieve_records_by_filter(table, filter, None, options)
    _show(records, table)


@app.command()
def create(
    table: str = typer.Argument(..., help="Table name."),
    data: str = typer.Argument(..., help="JSON record or list of records."),
    rollback: bool = typer.Option(False, "--rollback", help="Undo every change if any record fails."),
    continue_: bool = typer.Option(False, "--continue", help="Attempt every record and report each outcome."),
    fields: Optional[str] = typer.Option(None, "--fields"),
) -> None:
    """
    Create one or more records.
    """
    records = _json_arg(data, "data")
    options = _options(rollback=rollback, fields=fields, **{"continue": continue_})
    with open_service() as service:
        result = service.create_records(table, records if isinstance(records, list) else [records], options)
    _show(result, table)


def _write(operation: str, table: str, data: str, ids: Optional[str], filter: Optional[str], options: Dict[str, Any]) -> None:
    payload = _json_arg(data, "data")
    with open_service() as service:
        if ids:
            result = getattr(service, f"{operation}_records_by_ids")(table, payload, ids, options)
        elif filter:
            result = getattr(service, f"{operation}_records_by_filter")(table, payload, filter, None, options)
        else:
            records = payload if isinstance(payload, list) else [payload]
            result = getattr(service, f"{operation}_records")(table, records, options)
    _show(result, table)


@app.command()
def update(
    table: str = typer.Argument(..., help="Table name."),
    data: str = typer.Argument(..., help="JSON record(s); with --ids/--filter the fields to set."),
    ids: Optional[str] = typer.Option(None, "--ids"),
    filter: Optional[str] = typer.Option(None, "--filter", "-f"),
    rollback: bool = typer.Option(False, "--rollback"),
    continue_: bool = typer.Option(False, "--continue"),
    upsert: bool = typer.Option(False, "--upsert", help="Create records that do not exist."),
) -> None:
    """
    Update (PUT) records.
    """
    options = _options(rollback=rollback, allow_upsert=upsert, **{"continue": continue_})
    _write("update", table, data, ids, filter, options)


@app.command()
def patch(
    table: str = typer.Argument(..., help="Table name."),
    data: str = typer.Argument(..., help="JSON record(s); with --ids/--filter the fields to set."),
    ids: Optional[str] = typer.Option(None, "--ids"),
    filter: Optional[str] = typer.Option(None, "--filter", "-f"),
    rollback: bool = typer.Option(False, "--rollback"),
    continue_: bool = typer.Option(False, "--continue"),
) -> None:
    """
    Patch records.
    """
    options = _options(rollback=rollback, **{"continue": continue_})
    _write("patch", table, data, ids, filter, options)


@app.command()
def delete(
    table: str = typer.Argument(..., help="Table name."),
    ids: Optional[str] = typer.Option(None, "--ids"),
    filter: Optional[str] = typer.Option(None, "--filter", "-f"),
    force: bool = typer.Option(False, "--force", help="Required to delete every record."),
    rollback: bool = typer.Option(False, "--rollback"),
    continue_: bool = typer.Option(False, "--continue"),
) -> None:
    """
    Delete records by ids or filter; --force with neither truncates the table.
    """
    options = _options(force=force, rollback=rollback, **{"continue": continue_})
    with open_service() as service:
        if ids:
            result = service.delete_records_by_ids(table, ids, options)
        else:
            result = service.delete_records_by_filter(table, filter, None, options)
    _show(result, table)


def main() -> None:
    try:
        app()
    except RestError as exc:
        print_error(exc)
        sys.exit(1)
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
