"""
Shared test fixtures for the cert-renewal test suite.

Fixtures hand out fresh in-memory ports per test; builders for domain
objects live in tests/builders.py.
"""

from __future__ import annotations

import pytest

from tests.fakes import InMemoryDocumentStore, InMemoryObjectStorage, StubFeeScheduleSource


@pytest.fixture()
def documents() -> InMemoryDocumentStore:
    """A document store with no certificates and no applications."""
    return InMemoryDocumentStore()


@pytest.fixture()
def storage() -> InMemoryObjectStorage:
    """An empty object store."""
    return InMemoryObjectStorage()


@pytest.fixture()
def fee_source() -> StubFeeScheduleSource:
    """A fee settings source that has never been saved to (NOT_FOUND)."""
    return StubFeeScheduleSource()
