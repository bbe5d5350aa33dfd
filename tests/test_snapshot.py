from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from conftest import make_order
from shipledger.errors import SnapshotFormatError
from shipledger.orchestrator import ReconciliationOrchestrator
from shipledger.record_store import SqliteRecordStore
from shipledger.snapshot import SNAPSHOT_VERSION, build_snapshot, parse_snapshot


def test_build_snapshot_uses_wrapped_camel_case_format():
    snapshot = build_snapshot([make_order("A1", region="North")], now=datetime(2024, 1, 2, tzinfo=UTC))
    assert snapshot["version"] == SNAPSHOT_VERSION == "1.0"
    assert snapshot["exportDate"] == "2024-01-02T00:00:00+00:00"
    row = snapshot["orders"][0]
    assert row["trackingNumber"] == "A1"
    assert row["sendDate"]
    assert "tracking_number" not in row


def test_parse_snapshot_accepts_bare_array_and_rejects_incomplete_records():
    rows = [
        {"id": "ord_1", "trackingNumber": "A1", "sendDate": "2024-01-01"},
        {"id": "ord_2", "trackingNumber": "A2"},
        {"trackingNumber": "A3", "sendDate": "2024-01-01"},
        "not an order",
        {"id": "ord_5", "trackingNumber": "A5", "sendDate": "2024-01-01", "cod": "abc"},
    ]
    parsed = parse_snapshot(json.dumps(rows))
    assert [o.id for o in parsed.orders] == ["ord_1"]
    assert parsed.rejected == 4
    assert parsed.version is None
    assert "sendDate" in parsed.errors[0]


@pytest.mark.parametrize("payload", ["{not json", json.dumps({"version": "1.0"}), json.dumps(42)])
def test_parse_snapshot_rejects_structurally_invalid_documents(payload: str):
    with pytest.raises(SnapshotFormatError):
        parse_snapshot(payload)


def test_export_then_import_round_trips_into_empty_store(tmp_path: Path):
    async def scenario():
        source = ReconciliationOrchestrator([SqliteRecordStore(tmp_path / "source.sqlite3")])
        await source.add_orders(
            [
                make_order("A1", region="North", raw_data={"Ghi chu": "fragile"}),
                make_order("A2", status="delivered", source="delivered", actual_cod=100.0),
                make_order("A3", warning_status="tracking", warning_note="late"),
            ]
        )
        snapshot = await source.export_snapshot()
        original = sorted(await source.get_all_orders(), key=lambda o: o.id)
        await source.close()

        target = ReconciliationOrchestrator([SqliteRecordStore(tmp_path / "target.sqlite3")])
        result = await target.import_snapshot(json.dumps(snapshot))
        restored = sorted(await target.get_all_orders(), key=lambda o: o.id)
        await target.close()
        return result, original, restored

    result, original, restored = asyncio.run(scenario())
    assert result["created"] == 3
    assert result["rejected"] == 0
    assert [o.model_dump() for o in restored] == [o.model_dump() for o in original]


def test_import_snapshot_counts_rejected_records_without_blocking_others(tmp_path: Path):
    doc = {
        "version": "1.0",
        "exportDate": "2024-01-01T00:00:00+00:00",
        "orders": [
            {"id": "ord_1", "trackingNumber": "A1", "sendDate": "2024-01-01"},
            {"id": "ord_2", "trackingNumber": "A2", "sendDate": ""},
        ],
    }

    async def scenario():
        ledger = ReconciliationOrchestrator([SqliteRecordStore(tmp_path / "orders.sqlite3")], snapshot_batch_size=1)
        result = await ledger.import_snapshot(doc)
        count = len(await ledger.get_all_orders())
        await ledger.close()
        return result, count

    result, count = asyncio.run(scenario())
    assert result["imported"] == 1
    assert result["rejected"] == 1
    assert result["error_count"] == 1
    assert count == 1
