from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from tablecore.domain.errors import BatchError, RestError
from tablecore.domain.models import TableSchema


def _cell(value: Any) -> str:
    if value is None:
        return "[dim]null[/dim]"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def print_records(records: List[Dict[str, Any]], title: Optional[str] = None, console: Optional[Console] = None) -> None:
    """
    Render records as a rich table.

    Columns are the union of the records' keys in first-seen order; nested
    related records are shown as JSON.
    """
    console = console or Console()

    if not records:
        console.print("[yellow]No records to display.[/yellow]")
        return

    columns: List[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)

    table = Table(title=title, box=box.ROUNDED, caption=f"{len(records)} record(s)")
    for index, name in enumerate(columns):
        table.add_column(name, style="cyan" if index == 0 else None, no_wrap=index == 0)
    for record in records:
        table.add_row(*(_cell(record.get(name)) for name in columns))

    console.print(table)


def print_schema(schema: TableSchema, console: Optional[Console] = None) -> None:
    """Render a table's fields and relations."""
    console = console or Console()

    fields = Table(title=f"{schema.get_name()} fields", box=box.ROUNDED)
    fields.add_column("Name", style="cyan", no_wrap=True)
    fields.add_column("Type", style="magenta")
    fields.add_column("DB Type")
    fields.add_column("Null", justify="center")
    fields.add_column("Key", justify="center", style="bold green")
    fields.add_column("References", style="yellow")
    for field in schema.fields:
        key = "PK" if field.is_primary_key else ("UQ" if field.is_unique else "")
        reference = f"{field.ref_table}.{field.ref_field}" if field.is_foreign_key else ""
        fields.add_row(
            field.get_name(),
            field.type.value,
            field.db_type or "",
            "yes" if field.allow_null else "no",
            key,
            reference,
        )
    console.print(fields)

    if not schema.relations:
        return
    relations = Table(title=f"{schema.get_name()} relations", box=box.ROUNDED)
    relations.add_column("Name", style="cyan", no_wrap=True)
    relations.add_column("Kind", style="magenta")
    relations.add_column("Field")
    relations.add_column("References", style="yellow")
    relations.add_column("Junction", style="blue")
    for relation in schema.relations:
        junction = ""
        if relation.junction_table:
            junction = (
                f"{relation.junction_table}({','.join(relation.junction_field)} -> "
                f"{','.join(relation.junction_ref_field)})"
            )
        relations.add_row(
            relation.get_name(),
            relation.type.value,
            ",".join(relation.field),
            f"{relation.ref_table}.{','.join(relation.ref_field)}",
            junction,
        )
    console.print(relations)


def print_error(error: RestError, console: Optional[Console] = None) -> None:
    """
    Render an engine error; batch errors get one row per attempted index.
    """
    console = console or Console(stderr=True)

    console.print(f"[bold red]{type(error).__name__} ({error.status_code}):[/bold red] {error.message}")
    if not isinstance(error, BatchError):
        return

    table = Table(box=box.ROUNDED, caption="Items missing from the table were not attempted")
    table.add_column("Index", justify="right", style="cyan")
    table.add_column("Outcome", justify="center")
    table.add_column("Detail")
    for index in sorted(error.results):
        item = error.results[index]
        if isinstance(item, RestError):
            table.add_row(str(index), "[red]failed[/red]", item.message)
        elif isinstance(item, Exception):
            table.add_row(str(index), "[red]failed[/red]", str(item))
        else:
            table.add_row(str(index), "[green]ok[/green]", _cell(item))
    console.print(table)


__all__ = ["print_records", "print_schema", "print_error"]
