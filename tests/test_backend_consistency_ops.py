from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import make_order
from shipledger.ops.backend_consistency import compare_order_sets, load_sqlite_orders
from shipledger.record_store import SqliteRecordStore


def test_compare_order_sets_reports_match_ignoring_updated_at():
    local = [make_order("A1", updated_at="2024-01-01T00:00:00+00:00")]
    remote = [make_order("A1", updated_at="2024-03-01T00:00:00+00:00")]
    result = compare_order_sets(local, remote)
    assert result["all_matched"] is True
    assert result["mismatched"] == []


def test_compare_order_sets_reports_each_kind_of_drift():
    local = [make_order("A1", cod=1.0), make_order("A2")]
    remote = [make_order("A1", cod=2.0), make_order("A3")]
    result = compare_order_sets(local, remote)
    assert result["all_matched"] is False
    assert result["missing_in_mirror"] == ["a2"]
    assert result["missing_locally"] == ["a3"]
    assert result["mismatched"] == [{"tracking_number": "A1", "fields": ["cod"]}]


def test_load_sqlite_orders_reads_record_store_file(tmp_path: Path):
    db_path = tmp_path / "orders.sqlite3"

    async def seed():
        store = SqliteRecordStore(db_path)
        await store.put_many([make_order("A1"), make_order("A2")])
        await store.close()

    asyncio.run(seed())
    assert sorted(o.key for o in load_sqlite_orders(str(db_path))) == ["a1", "a2"]


def test_load_sqlite_orders_requires_existing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_sqlite_orders(str(tmp_path / "missing.sqlite3"))
