"""Shared fixtures for the Procore integration tests.

Every fixture returns a fresh in-memory double from tests/fakes.py. The
credential store starts with company "C1" connected to Procore company 1001.
"""

from __future__ import annotations

import pytest

from tests.fakes import (
    FakeProcoreClient,
    InMemoryAuditSink,
    InMemoryCredentialStore,
    InMemoryEntityStore,
    InMemoryMappingStore,
    InMemoryPushHistory,
    InMemorySyncLog,
    make_connection,
)


@pytest.fixture
def credentials() -> InMemoryCredentialStore:
    store = InMemoryCredentialStore()
    store.add(make_connection())
    return store


@pytest.fixture
def mappings() -> InMemoryMappingStore:
    return InMemoryMappingStore()


@pytest.fixture
def entities() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def push_history() -> InMemoryPushHistory:
    return InMemoryPushHistory()


@pytest.fixture
def sync_log() -> InMemorySyncLog:
    return InMemorySyncLog()


@pytest.fixture
def audit() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def fake_client() -> FakeProcoreClient:
    return FakeProcoreClient()
