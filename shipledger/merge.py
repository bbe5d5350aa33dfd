from __future__ import annotations

from datetime import UTC, datetime

from shipledger.schemas import Order, utcnow_iso

# Fields an incoming record can never overwrite on an existing business key.
PROTECTED_FIELDS = frozenset({"id", "created_at"})


def updated_at_timestamp(order: Order) -> float:
    raw = (order.updated_at or "").strip()
    if not raw:
        return 0.0
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.timestamp()


def prepare_new(record: Order, *, now: str | None = None) -> Order:
    """Stamp creation provenance on a record seen for the first time."""
    stamp = now or utcnow_iso()
    update: dict[str, object] = {}
    if not record.created_at:
        update["created_at"] = stamp
    if not record.updated_at:
        update["updated_at"] = stamp
    if record.raw_data is not None and not record.raw_data:
        update["raw_data"] = None
    if not update:
        return record
    return record.model_copy(update=update)


def merge_records(existing: Order, incoming: Order, *, updated_at: str | None = None) -> Order:
    """Overlay the explicitly provided fields of ``incoming`` onto ``existing``.

    ``id`` and ``created_at`` always come from ``existing``; ``updated_at`` is
    set to ``updated_at`` or the current time.
    """
    merged = existing.model_dump()
    merged.update(incoming.model_dump(exclude_unset=True))
    for name in PROTECTED_FIELDS:
        merged[name] = getattr(existing, name)
    merged["updated_at"] = updated_at or utcnow_iso()
    if merged.get("raw_data") == {}:
        merged["raw_data"] = None
    return Order.model_validate(merged)
