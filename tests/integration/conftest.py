"""
Integration test fixtures — PostgreSQL testcontainer and schema setup.

Provides a real PostgreSQL instance for each test session via testcontainers.
The documents table is created once by the adapter itself (ensure_schema DDL).
Each test gets a clean table via truncation.
"""

from __future__ import annotations

import psycopg
import pytest
from psycopg import sql
from testcontainers.postgres import PostgresContainer

from cert_renewal.adapters.repository import DDL, PsycopgDocumentStore

TABLE = "documents"

TRUNCATE_ALL = sql.SQL("TRUNCATE {table}").format(table=sql.Identifier(TABLE))


def psycopg_dsn(container: PostgresContainer) -> str:
    return container.get_connection_url().replace("postgresql+psycopg2", "postgresql")


def create_schema(dsn: str) -> None:
    with psycopg.connect(dsn) as conn:
        conn.execute(sql.SQL(DDL).format(table=sql.Identifier(TABLE)))
        conn.commit()


def truncate(dsn: str) -> None:
    with psycopg.connect(dsn) as conn:
        conn.execute(TRUNCATE_ALL)
        conn.commit()


@pytest.fixture(scope="session")
def postgres_container() -> PostgresContainer:
    """Start a PostgreSQL container for the entire test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        create_schema(psycopg_dsn(pg))
        yield pg


@pytest.fixture()
def dsn(postgres_container: PostgresContainer) -> str:
    """Return a psycopg-compatible DSN and truncate the documents table before each test."""
    connection_url = psycopg_dsn(postgres_container)
    truncate(connection_url)
    return connection_url


@pytest.fixture()
def document_store(dsn: str) -> PsycopgDocumentStore:
    return PsycopgDocumentStore(dsn, table=TABLE)
