from __future__ import annotations

import pytest

from backend.app.container import ServiceContainer
from backend.app.tests.fakes import FakeStore, FakeStripe, make_container


@pytest.fixture
def gateway() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def container(gateway: FakeStripe, store: FakeStore) -> ServiceContainer:
    return make_container(gateway, store)
