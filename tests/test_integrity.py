from __future__ import annotations

import asyncio
from pathlib import Path

from conftest import days_ago, make_order
from shipledger.fallback_store import VolatileFallbackStore
from shipledger.integrity import check_integrity, plan_auto_fix
from shipledger.orchestrator import ReconciliationOrchestrator
from shipledger.record_store import SqliteRecordStore
from shipledger.schemas import OrderSource, OrderStatus


def _sent(tracking: str, **fields):
    fields.setdefault("was_sent", True)
    fields.setdefault("source", "sent")
    return make_order(tracking, **fields)


def _reference_set():
    orders = [_sent(f"S{i}") for i in range(3)]
    orders += [_sent(f"D{i}", status="delivered", source="delivered", actual_cod=250000.0) for i in range(4)]
    orders += [_sent(f"R{i}", status="returned", source="returned") for i in range(2)]
    orders.append(
        _sent(
            "P0",
            status="delivered",
            source="delivered",
            is_partial_delivery=True,
            actual_cod=150000.0,
            returned_cod=100000.0,
        )
    )
    return orders


def test_accounting_identity_holds_for_reference_set():
    report = check_integrity(_reference_set())

    assert report.counts == {
        "total_sent": 10,
        "total_delivered": 4,
        "total_returned": 2,
        "partial_delivery": 1,
        "abnormal": 0,
        "in_transit": 3,
        "warning": 0,
        "lost": 0,
    }
    assert report.formula_check.left_side == 10
    assert report.formula_check.right_side == 10
    assert report.is_valid is True
    assert report.errors == []
    assert report.warnings == []


def test_stale_and_abnormal_orders_keep_identity_balanced():
    orders = _reference_set()
    orders.append(_sent("W0", send_date=days_ago(12)))
    orders.append(_sent("L0", send_date=days_ago(20)))
    orders.append(_sent("N0", send_date=None))
    orders.append(make_order("X0", status="delivered", source="delivered", actual_cod=1.0))
    orders.append(make_order("C0", status="cancelled", was_sent=True, source="sent"))

    report = check_integrity(orders)
    assert report.counts["warning"] == 3
    assert report.counts["lost"] == 2
    assert report.counts["abnormal"] == 1
    assert report.counts["total_sent"] == 13
    assert report.formula_check.is_valid is True


def test_identity_mismatch_is_reported_not_raised():
    orders = [
        _sent("Q0", status="returned", source="delivered", is_partial_delivery=True, actual_cod=250000.0),
    ]
    report = check_integrity(orders)
    assert report.is_valid is False
    assert report.formula_check.difference == 1
    assert any("accounting identity mismatch" in e for e in report.errors)


def test_provenance_mismatches_are_warnings():
    orders = [
        _sent("A0", status="delivered"),
        _sent("A1", status="returned", source="delivered"),
        _sent("A2", actual_cod=1000.0),
    ]
    report = check_integrity(orders)
    assert report.inconsistent_data == 3
    assert len(report.warnings) == 3
    assert report.duplicate_tracking == 0


def test_plan_auto_fix_keeps_latest_and_rewrites_provenance():
    older = make_order("K1", id="ord_old", updated_at="2024-01-01T00:00:00+00:00")
    newer = make_order("k1", id="ord_new", updated_at="2024-02-01T00:00:00+00:00", status="delivered")
    clean = make_order("K2", id="ord_clean")
    to_write, to_remove = plan_auto_fix([newer, older, clean])

    assert [o.id for o in to_remove] == ["ord_old"]
    assert [o.id for o in to_write] == ["ord_new"]
    assert to_write[0].source is OrderSource.DELIVERED


def test_duplicate_key_is_flagged_once_and_auto_fix_keeps_later_record():
    fallback = VolatileFallbackStore()
    fallback._records["ord_old"] = make_order("DUP1", id="ord_old", cod=1.0, updated_at="2024-01-01T00:00:00+00:00")
    fallback._records["ord_new"] = make_order("dup1", id="ord_new", cod=2.0, updated_at="2024-02-01T00:00:00+00:00")

    async def scenario():
        ledger = ReconciliationOrchestrator([fallback])
        before = await ledger.run_integrity_check()
        fix = await ledger.auto_fix_integrity()
        after = await ledger.run_integrity_check()
        return before, fix, after, await ledger.get_all_orders()

    before, fix, after, orders = asyncio.run(scenario())
    assert before.duplicate_tracking == 1
    assert len([e for e in before.errors if "duplicate" in e]) == 1
    assert fix.removed_ids == ["ord_old"]
    assert [o.id for o in fix.fixed] == ["ord_new"]
    assert fix.errors == []
    assert after.duplicate_tracking == 0
    assert len(orders) == 1
    assert orders[0].id == "ord_new"
    assert orders[0].cod == 2.0


def test_auto_fix_writes_provenance_through_orchestrator(tmp_path: Path):
    async def scenario():
        ledger = ReconciliationOrchestrator([SqliteRecordStore(tmp_path / "orders.sqlite3")])
        await ledger.add_orders(
            [
                _sent("A0", status="delivered"),
                _sent("A1", source="returned", is_partial_delivery=True),
                _sent("A2"),
            ]
        )
        fix = await ledger.auto_fix_integrity()
        orders = {o.key: o for o in await ledger.get_all_orders()}
        report = await ledger.run_integrity_check()
        await ledger.close()
        return fix, orders, report

    fix, orders, report = asyncio.run(scenario())
    assert sorted(o.key for o in fix.fixed) == ["a0", "a1"]
    assert orders["a0"].source is OrderSource.DELIVERED
    assert orders["a1"].source is OrderSource.DELIVERED
    assert orders["a1"].status is OrderStatus.DELIVERED
    assert orders["a2"].source is OrderSource.SENT
    assert report.warnings == []
