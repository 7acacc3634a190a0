"""
Demo schema bootstrap for tablecore.

Creates a small customers/orders/tags schema (with an order_tags junction and
a one-to-one customer_profiles table) so every relation kind can be exercised
against PostgreSQL, and optionally seeds a few rows.
"""

from __future__ import annotations

import sys
import time

import psycopg
import typer

from tablecore.config import build_dsn

app = typer.Typer(help="Create (and optionally seed) the tablecore demo schema in Postgres.")

DEMO_TABLES = ("order_tags", "customer_profiles", "orders", "tags", "customers")

DDL = """
CREATE TABLE IF NOT EXISTS {schema}.customers (
    id          SERIAL PRIMARY KEY,
    name        TEXT NOT NULL,
    email       TEXT UNIQUE,
    region      TEXT,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS {schema}.customer_profiles (
    id           SERIAL PRIMARY KEY,
    customer_id  INTEGER UNIQUE REFERENCES {schema}.customers (id) ON DELETE CASCADE,
    bio          TEXT
);

CREATE TABLE IF NOT EXISTS {schema}.orders (
    id           SERIAL PRIMARY KEY,
    customer_id  INTEGER REFERENCES {schema}.customers (id) ON DELETE SET NULL,
    status       TEXT NOT NULL DEFAULT 'open',
    total        NUMERIC(12, 2),
    meta         JSONB
);

CREATE TABLE IF NOT EXISTS {schema}.tags (
    id     SERIAL PRIMARY KEY,
    label  TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS {schema}.order_tags (
    id        SERIAL PRIMARY KEY,
    order_id  INTEGER NOT NULL REFERENCES {schema}.orders (id) ON DELETE CASCADE,
    tag_id    INTEGER NOT NULL REFERENCES {schema}.tags (id) ON DELETE CASCADE
);
"""

SEED = """
INSERT INTO {schema}.customers (name, email, region) VALUES
    ('Daniel', 'daniel@example.com', 'eu'),
    ('Maya', 'maya@example.com', 'us');
INSERT INTO {schema}.orders (customer_id, status, total) VALUES
    (1, 'open', 10.50),
    (1, 'shipped', 99.00),
    (2, 'open', 5.00);
INSERT INTO {schema}.tags (label) VALUES ('gift'), ('priority');
INSERT INTO {schema}.order_tags (order_id, tag_id) VALUES (1, 1), (1, 2), (3, 2);
"""


def create_schema(conn: psycopg.Connection, schema: str = "public", drop: bool = False) -> None:
    """Create the demo tables, dropping existing ones first when `drop` is set."""
    with conn.cursor() as cur:
        if drop:
            for table in DEMO_TABLES:
                cur.execute(f"DROP TABLE IF EXISTS {schema}.{table} CASCADE")
        cur.execute(DDL.format(schema=schema))
    conn.commit()


def seed(conn: psycopg.Connection, schema: str = "public") -> None:
    """Empty the demo tables and insert the sample rows."""
    with conn.cursor() as cur:
        cur.execute(
            "TRUNCATE TABLE "
            + ", ".join(f"{schema}.{table}" for table in DEMO_TABLES)
            + " RESTART IDENTITY CASCADE"
        )
        cur.execute(SEED.format(schema=schema))
    conn.commit()


@app.command()
def main(
    dsn: str | None = typer.Option(
        None,
        "--dsn",
        help="Optional DSN override for Postgres.",
    ),
    schema: str = typer.Option(
        "public",
        "--schema",
        help="Database schema to create the tables in.",
    ),
    drop: bool = typer.Option(
        False,
        "--drop",
        help="Drop existing demo tables first.",
    ),
    with_seed: bool = typer.Option(
        True,
        "--seed/--no-seed",
        help="Insert sample rows after creating the tables.",
    ),
) -> None:
    """
    Create the demo schema and optionally seed it.
    """
    start = time.perf_counter()
    with psycopg.connect(dsn or build_dsn()) as conn:
        create_schema(conn, schema=schema, drop=drop)
        typer.echo(f"Created demo tables in schema '{schema}'.")
        if with_seed:
            seed(conn, schema=schema)
            typer.echo("Seeded sample rows.")
    typer.echo(f"Done in {time.perf_counter() - start:.2f}s.")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
