"""Tests for the processed-session store and checkout flow flags."""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from checkout_reconciler.app.checkout import InMemoryCheckoutStorage, JsonFileCheckoutStorage
from checkout_reconciler.app.checkout.storage import FLAG_COMPLETED, FLAG_ERROR_RECOVERY


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.mark.asyncio
async def test_mark_processed_is_idempotent():
    storage = InMemoryCheckoutStorage()

    assert await storage.is_processed("sess_1") is False
    await storage.mark_processed("sess_1")
    await storage.mark_processed("sess_1")

    assert await storage.is_processed("sess_1") is True
    assert await storage.processed_sessions() == ["sess_1"]


@pytest.mark.asyncio
async def test_empty_session_id_is_never_processed():
    storage = InMemoryCheckoutStorage()
    await storage.mark_processed("")

    assert await storage.is_processed("") is False
    assert await storage.processed_sessions() == []


@pytest.mark.asyncio
async def test_extended_bypass_expires():
    clock = FakeClock()
    storage = InMemoryCheckoutStorage(bypass_ttl=timedelta(hours=2), clock=clock)

    assert await storage.is_bypass_active() is False
    await storage.set_extended_bypass()
    assert await storage.is_bypass_active() is True

    flag = await storage.get_bypass()
    assert flag is not None
    assert flag.expires_at == clock.now + timedelta(hours=2)

    clock.advance(hours=2)
    assert await storage.is_bypass_active() is False


@pytest.mark.asyncio
async def test_extended_bypass_overwrites_previous_expiry():
    clock = FakeClock()
    storage = InMemoryCheckoutStorage(bypass_ttl=timedelta(hours=1), clock=clock)

    await storage.set_extended_bypass()
    clock.advance(minutes=50)
    await storage.set_extended_bypass()
    clock.advance(minutes=30)

    assert await storage.is_bypass_active() is True


def test_bypass_ttl_must_be_positive():
    with pytest.raises(ValueError):
        InMemoryCheckoutStorage(bypass_ttl=timedelta(0))


@pytest.mark.asyncio
async def test_checkout_flow_flags():
    clock = FakeClock()
    storage = InMemoryCheckoutStorage(clock=clock)

    assert await storage.in_checkout_flow() is False
    await storage.start_checkout_flow()
    assert await storage.in_checkout_flow() is True

    await storage.clear_checkout_flow()
    assert await storage.in_checkout_flow() is False

    await storage.mark_processed("sess_flow")
    assert await storage.in_checkout_flow() is True
    clock.advance(seconds=6)
    assert await storage.in_checkout_flow() is False


@pytest.mark.asyncio
async def test_error_recovery_flag_is_cleared_independently_of_bypass():
    clock = FakeClock()
    storage = InMemoryCheckoutStorage(clock=clock)

    await storage.set_extended_bypass()
    await storage.clear_error_recovery()

    assert await storage.is_bypass_active() is True
    assert await storage.in_checkout_flow() is True


@pytest.mark.asyncio
async def test_json_storage_survives_new_instance(tmp_path):
    path = tmp_path / "state" / "checkout.json"
    first = JsonFileCheckoutStorage(path)
    await first.mark_processed("sess_reload")
    await first.set_extended_bypass()

    second = JsonFileCheckoutStorage(path)
    assert await second.is_processed("sess_reload") is True
    assert await second.is_bypass_active() is True

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["checkout"]["processed_sessions"] == ["sess_reload"]
    assert FLAG_COMPLETED in data["checkout"]["flags"]
    assert FLAG_ERROR_RECOVERY in data["checkout"]["flags"]


@pytest.mark.asyncio
async def test_json_storage_namespaces_are_isolated(tmp_path):
    path = tmp_path / "checkout.json"
    tenant_a = JsonFileCheckoutStorage(path, namespace="a")
    tenant_b = JsonFileCheckoutStorage(path, namespace="b")

    await tenant_a.mark_processed("sess_a")
    await tenant_b.mark_processed("sess_b")

    assert await tenant_a.is_processed("sess_b") is False
    assert await tenant_b.is_processed("sess_a") is False
    assert await JsonFileCheckoutStorage(path, namespace="a").is_processed("sess_a") is True


@pytest.mark.asyncio
async def test_corrupt_json_reads_as_not_processed(tmp_path):
    path = tmp_path / "checkout.json"
    path.write_text("{not json", encoding="utf-8")
    storage = JsonFileCheckoutStorage(path)

    assert await storage.is_processed("sess_1") is False
    assert await storage.is_bypass_active() is False

    await storage.mark_processed("sess_1")
    assert await storage.is_processed("sess_1") is True


@pytest.mark.asyncio
async def test_concurrent_marks_are_all_persisted(tmp_path):
    path = tmp_path / "checkout.json"
    storage = JsonFileCheckoutStorage(path)

    await asyncio.gather(*(storage.mark_processed(f"sess_{i}") for i in range(10)))

    reloaded = JsonFileCheckoutStorage(path)
    assert sorted(await reloaded.processed_sessions()) == sorted(f"sess_{i}" for i in range(10))
    assert [p.name for p in tmp_path.iterdir()] == ["checkout.json"]


@pytest.mark.asyncio
async def test_concurrent_writes_across_namespaces_share_one_file(tmp_path):
    path = tmp_path / "checkout.json"
    tenant_a = JsonFileCheckoutStorage(path, namespace="a")
    tenant_b = JsonFileCheckoutStorage(path, namespace="b")

    await asyncio.gather(
        *(tenant_a.mark_processed(f"a_{i}") for i in range(5)),
        *(tenant_b.mark_processed(f"b_{i}") for i in range(5)),
        tenant_a.set_extended_bypass(),
        tenant_b.start_checkout_flow(),
    )

    data = json.loads(path.read_text(encoding="utf-8"))
    assert sorted(data["a"]["processed_sessions"]) == [f"a_{i}" for i in range(5)]
    assert sorted(data["b"]["processed_sessions"]) == [f"b_{i}" for i in range(5)]
    assert await tenant_a.is_bypass_active() is True
    assert await tenant_b.in_checkout_flow() is True
