from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from shipledger.schemas import Order, order_to_wire

# Fields that legitimately differ between a local record and its mirrored copy.
VOLATILE_FIELDS = frozenset({"updatedAt"})


def _canonical_hash(value: Any) -> str:
    blob = json.dumps(value, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
    return blob


def _comparable(order: Order) -> dict[str, Any]:
    wire = order_to_wire(order)
    return {k: v for k, v in wire.items() if k not in VOLATILE_FIELDS}


def compare_order_sets(local: list[Order], remote: list[Order]) -> dict[str, Any]:
    left = {order.key: order for order in local}
    right = {order.key: order for order in remote}
    missing_in_mirror = sorted(key for key in left if key not in right)
    missing_locally = sorted(key for key in right if key not in left)
    mismatched: list[dict[str, Any]] = []
    for key in sorted(left.keys() & right.keys()):
        local_wire = _comparable(left[key])
        remote_wire = _comparable(right[key])
        if _canonical_hash(local_wire) == _canonical_hash(remote_wire):
            continue
        fields = sorted(
            name
            for name in local_wire.keys() | remote_wire.keys()
            if local_wire.get(name) != remote_wire.get(name)
        )
        mismatched.append({"tracking_number": left[key].tracking_number, "fields": fields})
    return {
        "all_matched": not (missing_in_mirror or missing_locally or mismatched),
        "local_count": len(left),
        "mirror_count": len(right),
        "missing_in_mirror": missing_in_mirror,
        "missing_locally": missing_locally,
        "mismatched": mismatched,
    }


def load_sqlite_orders(sqlite_path: str) -> list[Order]:
    path = Path(sqlite_path)
    if not path.exists():
        raise FileNotFoundError(f"sqlite db not found: {path}")
    with sqlite3.connect(str(path)) as conn:
        rows = conn.execute("SELECT payload FROM orders").fetchall()
    orders: list[Order] = []
    for (payload,) in rows:
        if isinstance(payload, str):
            orders.append(Order.model_validate(json.loads(payload)))
    return orders
