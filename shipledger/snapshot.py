from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from shipledger.errors import SnapshotFormatError
from shipledger.schemas import Order, order_to_wire, utcnow_iso

SNAPSHOT_VERSION = "1.0"

# (wire name, attribute name) pairs a snapshot record must carry.
REQUIRED_FIELDS = (
    ("id", "id"),
    ("trackingNumber", "tracking_number"),
    ("sendDate", "send_date"),
)


@dataclass
class ParsedSnapshot:
    orders: list[Order] = field(default_factory=list)
    rejected: int = 0
    errors: list[str] = field(default_factory=list)
    version: str | None = None
    export_date: str | None = None


def build_snapshot(orders: list[Order], *, now: datetime | None = None) -> dict[str, Any]:
    return {
        "version": SNAPSHOT_VERSION,
        "exportDate": now.isoformat() if now is not None else utcnow_iso(),
        "orders": [order_to_wire(order) for order in orders],
    }


def _missing_fields(row: dict[str, Any]) -> list[str]:
    missing: list[str] = []
    for wire, attr in REQUIRED_FIELDS:
        value = row.get(wire, row.get(attr))
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(wire)
    return missing


def parse_snapshot(data: str | bytes | dict[str, Any] | list[Any]) -> ParsedSnapshot:
    """Parse a snapshot document, wrapped or bare array.

    Malformed JSON or an unexpected top-level shape raises
    ``SnapshotFormatError``. Individual records missing a required field are
    rejected and counted; they never fail the whole document.
    """
    if isinstance(data, str | bytes):
        try:
            doc: Any = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise SnapshotFormatError(f"snapshot is not valid JSON: {exc}") from exc
    else:
        doc = data

    parsed = ParsedSnapshot()
    if isinstance(doc, dict):
        rows = doc.get("orders")
        if not isinstance(rows, list):
            raise SnapshotFormatError("snapshot object must contain an 'orders' array")
        parsed.version = str(doc["version"]) if doc.get("version") is not None else None
        parsed.export_date = str(doc["exportDate"]) if doc.get("exportDate") is not None else None
    elif isinstance(doc, list):
        rows = doc
    else:
        raise SnapshotFormatError("snapshot must be an object or an array of orders")

    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            parsed.rejected += 1
            parsed.errors.append(f"orders[{index}]: not an object")
            continue
        missing = _missing_fields(row)
        if missing:
            parsed.rejected += 1
            parsed.errors.append(f"orders[{index}]: missing {', '.join(missing)}")
            continue
        try:
            parsed.orders.append(Order.model_validate(row))
        except ValidationError as exc:
            parsed.rejected += 1
            parsed.errors.append(f"orders[{index}]: {exc.error_count()} invalid field(s)")
    return parsed
