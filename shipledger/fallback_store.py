from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from shipledger.backends import BatchWriteResult, ExistsResult, WriteOutcome, unique_keys
from shipledger.errors import RecordWriteError, StoreError, StoreQuotaExceededError
from shipledger.merge import merge_records, prepare_new
from shipledger.schemas import Order, business_key, order_to_wire, utcnow_iso

logger = logging.getLogger(__name__)


class VolatileFallbackStore:
    """Size-limited store used while the embedded record store is unavailable.

    Records live in memory keyed by id. When ``snapshot_path`` is set the whole
    set is written as one JSON blob after every mutation, and a mutation whose
    blob would exceed ``max_bytes`` is rejected without changing state.
    """

    name = "fallback"

    def __init__(self, *, snapshot_path: str | Path | None = None, max_bytes: int = 5 * 1024 * 1024) -> None:
        self._snapshot_path = Path(snapshot_path).expanduser() if snapshot_path else None
        self._max_bytes = max(1, int(max_bytes))
        self._lock = threading.RLock()
        self._records: dict[str, Order] = {}
        self._loaded = False

    @property
    def available(self) -> bool:
        return True

    async def open(self) -> None:
        with self._lock:
            if self._loaded:
                return
            self._loaded = True
            if self._snapshot_path is None or not self._snapshot_path.exists():
                return
            try:
                rows = json.loads(self._snapshot_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("fallback_store_unreadable path=%s error=%s", self._snapshot_path, exc)
                return
            if not isinstance(rows, list):
                return
            for row in rows:
                if not isinstance(row, dict):
                    continue
                try:
                    order = Order.model_validate(row)
                except ValidationError:
                    continue
                self._records[order.id] = order

    async def close(self) -> None:
        return None

    def _index(self, records: dict[str, Order]) -> dict[str, str]:
        return {order.key: order_id for order_id, order in records.items()}

    def _encoded_size(self, records: dict[str, Order]) -> tuple[int, str]:
        blob = json.dumps([order_to_wire(x) for x in records.values()], ensure_ascii=False)
        return len(blob.encode("utf-8")), blob

    def _commit(self, staged: dict[str, Order]) -> None:
        size, blob = self._encoded_size(staged)
        if size > self._max_bytes:
            raise StoreQuotaExceededError(
                f"fallback store quota exceeded: {size} bytes > {self._max_bytes} bytes"
            )
        if self._snapshot_path is not None:
            self._snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._snapshot_path.with_suffix(self._snapshot_path.suffix + ".tmp")
            try:
                tmp_path.write_text(blob, encoding="utf-8")
                os.replace(tmp_path, self._snapshot_path)
            except OSError as exc:
                raise StoreError(f"fallback store write failed: {exc}") from exc
        self._records = staged

    async def get_all(self) -> list[Order]:
        await self.open()
        with self._lock:
            return list(self._records.values())

    async def count(self) -> int:
        await self.open()
        with self._lock:
            return len(self._records)

    async def find_by_tracking_numbers(self, tracking_numbers: Iterable[str]) -> dict[str, Order]:
        await self.open()
        wanted = set(unique_keys(business_key(x) for x in tracking_numbers))
        with self._lock:
            return {order.key: order for order in self._records.values() if order.key in wanted}

    async def get_by_tracking_number(self, tracking_number: str) -> Order | None:
        found = await self.find_by_tracking_numbers([tracking_number])
        return found.get(business_key(tracking_number))

    async def exists(self, tracking_numbers: Iterable[str]) -> ExistsResult:
        keys = unique_keys(tracking_numbers)
        found = await self.find_by_tracking_numbers(keys)
        result = ExistsResult()
        for key in keys:
            (result.present if business_key(key) in found else result.absent).append(key)
        return result

    async def put_many(self, records: list[Order]) -> BatchWriteResult:
        result = BatchWriteResult()
        if not records:
            return result
        await self.open()
        now = utcnow_iso()
        with self._lock:
            staged = dict(self._records)
            index = self._index(staged)
            for record in records:
                existing_id = index.get(record.key)
                try:
                    if existing_id is None:
                        stored = prepare_new(record, now=now)
                        if stored.id in staged:
                            raise ValueError(f"id {stored.id} already belongs to another tracking number")
                        outcome = WriteOutcome.CREATED
                    else:
                        stored = merge_records(staged[existing_id], record, updated_at=now)
                        outcome = WriteOutcome.UPDATED
                except ValueError as exc:
                    result.record_failure(record.tracking_number, str(exc))
                    continue
                staged[stored.id] = stored
                index[stored.key] = stored.id
                result.record(outcome)
            self._commit(staged)
        return result

    async def put(self, record: Order) -> WriteOutcome:
        result = await self.put_many([record])
        if result.failed:
            raise RecordWriteError(result.errors[0] if result.errors else "record write failed")
        return WriteOutcome.CREATED if result.created else WriteOutcome.UPDATED

    async def delete(self, order_id: str) -> bool:
        await self.open()
        with self._lock:
            if order_id not in self._records:
                return False
            staged = dict(self._records)
            staged.pop(order_id, None)
            self._commit(staged)
            return True

    async def clear(self) -> None:
        await self.open()
        with self._lock:
            self._commit({})
