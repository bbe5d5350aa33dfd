from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, TypeVar

from shipledger.backends import BatchWriteResult, ExistsResult, WriteOutcome, unique_keys
from shipledger.errors import RecordWriteError, StoreError, StoreUnavailableError
from shipledger.merge import merge_records, prepare_new
from shipledger.schemas import Order, business_key, order_to_wire, utcnow_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on host parameters per IN (...) lookup.
_LOOKUP_BATCH = 500


class SqliteRecordStore:
    """Embedded durable record store keyed by order id.

    The business key (normalized tracking number) carries a UNIQUE constraint,
    so at most one live record exists per tracking number. All database work
    runs on a single worker thread; an asyncio lock serializes transactions.
    """

    name = "sqlite"

    def __init__(self, db_path: str | Path, *, tx_timeout_s: float = 30.0) -> None:
        self._db_path = Path(db_path).expanduser()
        self._tx_timeout_s = tx_timeout_s
        self._conn: sqlite3.Connection | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._open_error: str | None = None
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def available(self) -> bool:
        return self._open_error is None

    def _connect_and_init(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False, isolation_level=None)
        try:
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS orders (
                  id TEXT PRIMARY KEY,
                  business_key TEXT NOT NULL UNIQUE,
                  tracking_number TEXT NOT NULL,
                  status TEXT NOT NULL,
                  send_date TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  payload TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_send_date ON orders(send_date)")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    async def open(self) -> None:
        if self._conn is not None:
            return
        if self._open_error is not None:
            raise StoreUnavailableError(self._open_error)
        async with self._lock:
            if self._conn is not None:
                return
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="shipledger-sqlite")
            loop = asyncio.get_running_loop()
            try:
                conn = await loop.run_in_executor(executor, self._connect_and_init)
            except (sqlite3.Error, OSError) as exc:
                executor.shutdown(wait=False)
                self._open_error = f"record store unavailable at {self._db_path}: {exc}"
                logger.error("record_store_unavailable path=%s error=%s", self._db_path, exc)
                raise StoreUnavailableError(self._open_error) from exc
            self._conn = conn
            self._executor = executor
            logger.info("record_store_opened path=%s", self._db_path)

    async def close(self) -> None:
        async with self._lock:
            conn, executor = self._conn, self._executor
            self._conn = None
            self._executor = None
            if conn is not None and executor is not None:
                await asyncio.get_running_loop().run_in_executor(executor, conn.close)
            if executor is not None:
                executor.shutdown(wait=True)

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreUnavailableError(self._open_error or "record store is closed")
        return self._conn

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        await self.open()
        async with self._lock:
            self._require_conn()
            loop = asyncio.get_running_loop()
            try:
                return await loop.run_in_executor(self._executor, fn, *args)
            except (sqlite3.Error, ValueError) as exc:
                raise StoreError(f"record store call failed: {exc}") from exc

    @staticmethod
    def _row_to_order(payload: str) -> Order:
        return Order.model_validate(json.loads(payload))

    @staticmethod
    def _row_params(order: Order) -> tuple[Any, ...]:
        return (
            order.id,
            order.key,
            order.tracking_number,
            order.status.value,
            order.send_date,
            order.created_at,
            order.updated_at,
            json.dumps(order_to_wire(order), ensure_ascii=False, sort_keys=True),
        )

    def _select_all(self) -> list[Order]:
        conn = self._require_conn()
        rows = conn.execute("SELECT payload FROM orders ORDER BY created_at, id").fetchall()
        return [self._row_to_order(row[0]) for row in rows]

    def _select_count(self) -> int:
        conn = self._require_conn()
        row = conn.execute("SELECT COUNT(*) FROM orders").fetchone()
        return int(row[0]) if row else 0

    def _select_by_keys(self, keys: list[str]) -> dict[str, Order]:
        conn = self._require_conn()
        found: dict[str, Order] = {}
        for start in range(0, len(keys), _LOOKUP_BATCH):
            batch = keys[start : start + _LOOKUP_BATCH]
            marks = ",".join("?" for _ in batch)
            rows = conn.execute(
                f"SELECT business_key, payload FROM orders WHERE business_key IN ({marks})",
                batch,
            ).fetchall()
            for key, payload in rows:
                found[str(key)] = self._row_to_order(payload)
        return found

    def _apply_batch(self, records: list[Order], now: str) -> BatchWriteResult:
        conn = self._require_conn()
        result = BatchWriteResult()
        conn.execute("BEGIN")
        try:
            for record in records:
                conn.execute("SAVEPOINT put_record")
                try:
                    row = conn.execute(
                        "SELECT payload FROM orders WHERE business_key = ?",
                        (record.key,),
                    ).fetchone()
                    if row is None:
                        stored = prepare_new(record, now=now)
                        conn.execute(
                            """
                            INSERT INTO orders(
                              id, business_key, tracking_number, status, send_date, created_at, updated_at, payload
                            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            self._row_params(stored),
                        )
                        outcome = WriteOutcome.CREATED
                    else:
                        stored = merge_records(self._row_to_order(row[0]), record, updated_at=now)
                        params = self._row_params(stored)
                        conn.execute(
                            """
                            UPDATE orders
                            SET business_key = ?, tracking_number = ?, status = ?, send_date = ?,
                                created_at = ?, updated_at = ?, payload = ?
                            WHERE id = ?
                            """,
                            (*params[1:], params[0]),
                        )
                        outcome = WriteOutcome.UPDATED
                    conn.execute("RELEASE SAVEPOINT put_record")
                except (sqlite3.Error, ValueError) as exc:
                    conn.execute("ROLLBACK TO SAVEPOINT put_record")
                    conn.execute("RELEASE SAVEPOINT put_record")
                    result.record_failure(record.tracking_number, str(exc))
                    continue
                result.record(outcome)
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        return result

    def _commit(self) -> None:
        self._require_conn().execute("COMMIT")

    def _rollback(self) -> None:
        conn = self._require_conn()
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def _delete_by_id(self, order_id: str) -> bool:
        conn = self._require_conn()
        cur = conn.execute("DELETE FROM orders WHERE id = ?", (order_id,))
        return cur.rowcount > 0

    def _delete_all(self) -> None:
        self._require_conn().execute("DELETE FROM orders")

    async def get_all(self) -> list[Order]:
        return await self._call(self._select_all)

    async def count(self) -> int:
        return await self._call(self._select_count)

    async def find_by_tracking_numbers(self, tracking_numbers: Iterable[str]) -> dict[str, Order]:
        keys = unique_keys(business_key(x) for x in tracking_numbers)
        if not keys:
            return {}
        return await self._call(self._select_by_keys, keys)

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
        if not records:
            return BatchWriteResult()
        await self.open()
        async with self._lock:
            self._require_conn()
            loop = asyncio.get_running_loop()
            try:
                result = await loop.run_in_executor(self._executor, self._apply_batch, list(records), utcnow_iso())
            except sqlite3.Error as exc:
                raise StoreError(f"record batch failed: {exc}") from exc
            commit = loop.run_in_executor(self._executor, self._commit)
            try:
                await asyncio.wait_for(commit, timeout=self._tx_timeout_s)
            except TimeoutError:
                # The commit keeps running on the worker thread; the batch is reported as written.
                logger.warning(
                    "record_store_commit_timeout records=%s timeout_s=%s",
                    len(records),
                    self._tx_timeout_s,
                )
            except sqlite3.Error as exc:
                await loop.run_in_executor(self._executor, self._rollback)
                raise StoreError(f"record batch commit failed: {exc}") from exc
        if result.failed:
            logger.warning("record_store_partial_batch failed=%s errors=%s", result.failed, result.errors[:10])
        return result

    async def put(self, record: Order) -> WriteOutcome:
        result = await self.put_many([record])
        if result.failed:
            raise RecordWriteError(result.errors[0] if result.errors else "record write failed")
        return WriteOutcome.CREATED if result.created else WriteOutcome.UPDATED

    async def delete(self, order_id: str) -> bool:
        return await self._call(self._delete_by_id, order_id)

    async def clear(self) -> None:
        await self._call(self._delete_all)
