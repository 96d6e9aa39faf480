"""
Acceptance test fixtures — PostgreSQL testcontainer for end-to-end tests.

Reuses the same schema helpers as the integration tests but scoped for acceptance.
"""

from __future__ import annotations

import pytest
from testcontainers.postgres import PostgresContainer

from cert_renewal.adapters.repository import PsycopgDocumentStore
from tests.integration.conftest import TABLE, create_schema, psycopg_dsn, truncate


@pytest.fixture(scope="session")
def acceptance_pg() -> PostgresContainer:
    """Start a PostgreSQL container for the acceptance test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        create_schema(psycopg_dsn(pg))
        yield pg


@pytest.fixture()
def acceptance_store(acceptance_pg: PostgresContainer) -> PsycopgDocumentStore:
    """A document store over a freshly truncated table."""
    connection_url = psycopg_dsn(acceptance_pg)
    truncate(connection_url)
    return PsycopgDocumentStore(connection_url, table=TABLE)
