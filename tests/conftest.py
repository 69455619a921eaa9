from __future__ import annotations

import pytest

from lexgate.common.settings import GatewaySettings
from lexgate.common.stores import LocalStore
from lexgate.content_gateway.storage import LocalObjectStore

from tests.utils.gateway import CountingObjectStore, FakeCatalog, FakeIdentity, FakeMembership, make_settings


@pytest.fixture
def settings(tmp_path) -> GatewaySettings:
    return make_settings(local_storage_path=tmp_path)


@pytest.fixture
def shared_store() -> LocalStore:
    return LocalStore(max_entries=1000)


@pytest.fixture
def object_store(settings, tmp_path) -> CountingObjectStore:
    return CountingObjectStore(LocalObjectStore(settings, tmp_path))


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def membership() -> FakeMembership:
    return FakeMembership()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()
