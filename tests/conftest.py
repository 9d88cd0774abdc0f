"""Pytest fixtures shared across the suite. Nothing here needs Postgres or Redis."""

import pytest

from tests.fakes import (
    FakeContainment,
    FakeJobQueue,
    InMemoryBindingStore,
    InMemoryDispatchLedger,
    InMemoryExecutionStore,
)
from vigil.services.actions.registry import build_default_registry
from vigil.services.bindings import BindingRegistry


@pytest.fixture
def binding_store():
    store = InMemoryBindingStore()
    store.add_playbook(1, 7)
    store.add_playbook(1, 8)
    store.add_playbook(2, 9)
    return store


@pytest.fixture
def registry(binding_store):
    return BindingRegistry(binding_store)


@pytest.fixture
def executions():
    return InMemoryExecutionStore()


@pytest.fixture
def ledger():
    return InMemoryDispatchLedger()


@pytest.fixture
def job_queue():
    return FakeJobQueue()


@pytest.fixture
def containment():
    return FakeContainment()


@pytest.fixture
def actions(containment):
    return build_default_registry(containment=containment)
