"""Tests for cally.services wiring."""

from __future__ import annotations

import pytest

from cally import services as services_module
from cally.config import CallyConfig
from cally.events.catalog import EventCatalog
from cally.services import open_services

pytestmark = pytest.mark.unit


class FakeDatabase:
    instances: list[FakeDatabase] = []

    def __init__(self, db_name: str) -> None:
        self.db_name = db_name
        self.calls: list[str] = []
        self.pool = object()
        FakeDatabase.instances.append(self)

    @classmethod
    def from_env(cls, db_name: str) -> FakeDatabase:
        return cls(db_name)

    async def provision(self) -> None:
        self.calls.append("provision")

    async def connect(self):
        self.calls.append("connect")
        return self.pool

    async def close(self) -> None:
        self.calls.append("close")


@pytest.fixture
def fake_db(monkeypatch: pytest.MonkeyPatch):
    FakeDatabase.instances = []
    schema_pools: list[object] = []

    async def _ensure_schema(pool) -> None:
        schema_pools.append(pool)

    monkeypatch.setattr(services_module, "Database", FakeDatabase)
    monkeypatch.setattr(services_module, "ensure_schema", _ensure_schema)
    return schema_pools


class TestOpenServices:
    async def test_connects_without_provisioning(self, fake_db):
        async with open_services(CallyConfig(db_name="cally_test")) as services:
            assert isinstance(services.events, EventCatalog)

        (db,) = FakeDatabase.instances
        assert db.db_name == "cally_test"
        assert db.calls == ["connect", "close"]
        assert fake_db == [db.pool]

    async def test_pool_is_closed_when_the_body_raises(self, fake_db):
        with pytest.raises(RuntimeError):
            async with open_services(CallyConfig()):
                raise RuntimeError("boom")

        (db,) = FakeDatabase.instances
        assert db.calls == ["connect", "close"]
