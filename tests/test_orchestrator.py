from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import make_order
from shipledger.errors import RemoteMirrorError, StoreUnavailableError
from shipledger.fallback_store import VolatileFallbackStore
from shipledger.orchestrator import ReconciliationOrchestrator, build_orchestrator
from shipledger.record_store import SqliteRecordStore
from shipledger.remote_mirror import InMemoryRemoteMirror
from shipledger.schemas import OrderStatus, WarningStatus
from shipledger.settings import LedgerSettings


class FailingMirror(InMemoryRemoteMirror):
    async def put_all(self, records):
        raise RemoteMirrorError("mirror offline")


def _unavailable_store(tmp_path: Path) -> SqliteRecordStore:
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")
    return SqliteRecordStore(blocker / "orders.sqlite3")


def test_add_orders_writes_record_store_and_mirror(tmp_path: Path):
    mirror = InMemoryRemoteMirror()

    async def scenario():
        ledger = ReconciliationOrchestrator(
            [SqliteRecordStore(tmp_path / "orders.sqlite3"), VolatileFallbackStore()],
            mirror=mirror,
        )
        result = await ledger.add_orders([make_order("A1"), make_order("A2")])
        local = await ledger.get_all_orders()
        remote = await mirror.get_all()
        await ledger.close()
        return result, local, remote

    result, local, remote = asyncio.run(scenario())
    assert (result.created, result.updated, result.failed) == (2, 0, 0)
    assert sorted(o.key for o in local) == ["a1", "a2"]
    assert {o.id: o.created_at for o in remote} == {o.id: o.created_at for o in local}


def test_mirror_failure_never_fails_the_local_write(tmp_path: Path):
    async def scenario():
        ledger = ReconciliationOrchestrator(
            [SqliteRecordStore(tmp_path / "orders.sqlite3")],
            mirror=FailingMirror(),
        )
        result = await ledger.add_orders([make_order("A1")])
        count = len(await ledger.get_all_orders())
        await ledger.close()
        return result, count

    result, count = asyncio.run(scenario())
    assert result.created == 1
    assert count == 1


class BrokenMirror(InMemoryRemoteMirror):
    async def put_all(self, records):
        raise RuntimeError("unexpected mirror bug")

    async def delete(self, order_ids):
        raise RuntimeError("unexpected mirror bug")

    async def clear(self):
        raise RuntimeError("unexpected mirror bug")


def test_unexpected_mirror_errors_never_escape_local_operations(tmp_path: Path):
    async def scenario():
        ledger = ReconciliationOrchestrator(
            [SqliteRecordStore(tmp_path / "orders.sqlite3")],
            mirror=BrokenMirror(),
        )
        result = await ledger.add_orders([make_order("A1"), make_order("A2")])
        removed = await ledger.delete_order("ord_a1")
        remaining = len(await ledger.get_all_orders())
        await ledger.clear_all()
        after_clear = len(await ledger.get_all_orders())
        await ledger.close()
        return result, removed, remaining, after_clear

    result, removed, remaining, after_clear = asyncio.run(scenario())
    assert result.created == 2
    assert removed is True
    assert remaining == 1
    assert after_clear == 0


def test_raising_mirror_subscriber_does_not_fail_the_write(tmp_path: Path):
    mirror = InMemoryRemoteMirror()
    seen: list[int] = []

    def boom(_orders):
        raise RuntimeError("subscriber exploded")

    mirror.subscribe(boom)
    mirror.subscribe(lambda orders: seen.append(len(orders)))

    async def scenario():
        ledger = ReconciliationOrchestrator([SqliteRecordStore(tmp_path / "orders.sqlite3")], mirror=mirror)
        result = await ledger.add_orders([make_order("A1")])
        local = await ledger.get_all_orders()
        await ledger.close()
        return result, local, await mirror.get_all()

    result, local, remote = asyncio.run(scenario())
    assert result.created == 1
    assert [o.key for o in local] == ["a1"]
    assert [o.key for o in remote] == ["a1"]
    assert seen == [1]


def test_unavailable_record_store_degrades_to_fallback(tmp_path: Path):
    fallback = VolatileFallbackStore()

    async def scenario():
        ledger = ReconciliationOrchestrator([_unavailable_store(tmp_path), fallback])
        await ledger.open()
        result = await ledger.add_orders([make_order("A1"), make_order("A2")])
        again = await ledger.add_orders([make_order("a1", cod=1.0)])
        orders = await ledger.get_all_orders()
        return result, again, orders, await fallback.count()

    result, again, orders, fallback_count = asyncio.run(scenario())
    assert result.created == 2
    assert again.updated == 1
    assert len(orders) == 2
    assert fallback_count == 2


def test_require_durable_rejects_unavailable_record_store(tmp_path: Path):
    async def scenario():
        ledger = ReconciliationOrchestrator(
            [_unavailable_store(tmp_path), VolatileFallbackStore()],
            require_durable=True,
        )
        await ledger.open()

    with pytest.raises(StoreUnavailableError):
        asyncio.run(scenario())


def test_all_backends_unavailable_propagates(tmp_path: Path):
    async def scenario():
        ledger = ReconciliationOrchestrator([_unavailable_store(tmp_path)])
        await ledger.add_orders([make_order("A1")])

    with pytest.raises(StoreUnavailableError):
        asyncio.run(scenario())


def test_first_read_migrates_fallback_records_into_empty_record_store(tmp_path: Path):
    fallback_path = tmp_path / "fallback.json"

    async def seed():
        fallback = VolatileFallbackStore(snapshot_path=fallback_path)
        await fallback.put_many([make_order("A1", id="ord_a1"), make_order("A2", id="ord_a2")])

    async def scenario():
        record_store = SqliteRecordStore(tmp_path / "orders.sqlite3")
        ledger = ReconciliationOrchestrator([record_store, VolatileFallbackStore(snapshot_path=fallback_path)])
        orders = await ledger.get_all_orders()
        count = await record_store.count()
        await ledger.get_all_orders()
        count_again = await record_store.count()
        await ledger.close()
        return orders, count, count_again

    asyncio.run(seed())
    orders, count, count_again = asyncio.run(scenario())
    assert sorted(o.id for o in orders) == ["ord_a1", "ord_a2"]
    assert count == 2
    assert count_again == 2


def test_empty_record_store_repopulates_from_mirror(tmp_path: Path):
    mirror = InMemoryRemoteMirror()

    async def scenario():
        await mirror.put_all([make_order("M1", id="ord_m1", created_at="2024-01-01T00:00:00+00:00")])
        record_store = SqliteRecordStore(tmp_path / "orders.sqlite3")
        ledger = ReconciliationOrchestrator([record_store], mirror=mirror)
        orders = await ledger.get_all_orders()
        stored = await record_store.get_all()
        await ledger.close()
        return orders, stored

    orders, stored = asyncio.run(scenario())
    assert [o.id for o in orders] == ["ord_m1"]
    assert [o.created_at for o in stored] == ["2024-01-01T00:00:00+00:00"]


def test_update_status_touches_only_existing_keys(tmp_path: Path):
    async def scenario():
        ledger = ReconciliationOrchestrator([SqliteRecordStore(tmp_path / "orders.sqlite3")])
        await ledger.add_orders([make_order("A1"), make_order("A2"), make_order("A3")])
        updated = await ledger.update_status(["A1", "a2", "A3", "X1", "X2"], OrderStatus.DELIVERED)
        orders = await ledger.get_all_orders()
        single = await ledger.update_status("A1", OrderStatus.RETURNED)
        a1 = await ledger.get_order("a1")
        await ledger.close()
        return updated, orders, single, a1

    updated, orders, single, a1 = asyncio.run(scenario())
    assert updated == 3
    assert len(orders) == 3
    assert {o.status for o in orders} == {OrderStatus.DELIVERED}
    assert all(o.customer_name == "Nguyen Van A" for o in orders)
    assert single == 1
    assert a1 is not None and a1.status is OrderStatus.RETURNED


def test_update_warning_and_delete(tmp_path: Path):
    mirror = InMemoryRemoteMirror()

    async def scenario():
        ledger = ReconciliationOrchestrator([SqliteRecordStore(tmp_path / "orders.sqlite3")], mirror=mirror)
        await ledger.add_orders([make_order("A1", id="ord_a1")])
        annotated = await ledger.update_warning("A1", WarningStatus.TRACKING, "carrier contacted")
        unknown = await ledger.update_warning("ZZ", WarningStatus.PENDING)
        removed = await ledger.delete_order("ord_a1")
        remote = await mirror.get_all()
        await ledger.close()
        return annotated, unknown, removed, remote

    annotated, unknown, removed, remote = asyncio.run(scenario())
    assert annotated is not None
    assert annotated.warning_status is WarningStatus.TRACKING
    assert annotated.warning_note == "carrier contacted"
    assert unknown is None
    assert removed is True
    assert remote == []


def test_check_duplicates_and_storage_info(tmp_path: Path):
    async def scenario():
        ledger = ReconciliationOrchestrator([SqliteRecordStore(tmp_path / "orders.sqlite3")])
        await ledger.add_orders([make_order("A1"), make_order("A2")])
        dupes = await ledger.check_duplicates(["A1", "B1"])
        info = await ledger.get_storage_info()
        await ledger.clear_all()
        after = await ledger.get_storage_info()
        await ledger.close()
        return dupes, info, after

    dupes, info, after = asyncio.run(scenario())
    assert dupes.present == ["A1"]
    assert dupes.absent == ["B1"]
    assert info["count"] == 2
    assert info["estimated_size_bytes"] > 0
    assert info["backend"] == "sqlite"
    assert after["count"] == 0


def test_check_duplicates_reports_all_absent_when_no_backend(tmp_path: Path):
    async def scenario():
        ledger = ReconciliationOrchestrator([_unavailable_store(tmp_path)])
        return await ledger.check_duplicates(["A1", "B1"])

    result = asyncio.run(scenario())
    assert result.present == []
    assert result.absent == ["A1", "B1"]


def test_build_orchestrator_uses_settings(tmp_path: Path):
    settings = LedgerSettings(sqlite_path=str(tmp_path / "x.sqlite3"), mirror_backend="memory")
    ledger = build_orchestrator(settings)
    assert [b.name for b in ledger.backends] == ["sqlite", "fallback"]
    assert isinstance(ledger.mirror, InMemoryRemoteMirror)
