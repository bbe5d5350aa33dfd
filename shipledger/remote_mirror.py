from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

from pydantic import ValidationError

from shipledger.errors import RemoteMirrorError
from shipledger.merge import merge_records, updated_at_timestamp
from shipledger.schemas import Order, order_to_wire

logger = logging.getLogger(__name__)

MirrorCallback = Callable[[list[Order]], None]


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for SHIPLEDGER_MIRROR_BACKEND=redis; install redis>=5") from exc
    return redis


def merge_into_mirror(current: Mapping[str, Order], incoming: Iterable[Order]) -> dict[str, Order]:
    """Return the id->record entries that ``incoming`` changes in ``current``.

    Records are matched by business key. A matching record is replaced only when
    the incoming ``updatedAt`` is not older than the mirrored one.
    """
    by_key = {order.key: order for order in current.values()}
    changes: dict[str, Order] = {}
    for order in incoming:
        existing = by_key.get(order.key)
        if existing is None:
            changes[order.id] = order
            by_key[order.key] = order
            continue
        if updated_at_timestamp(order) < updated_at_timestamp(existing):
            continue
        merged = merge_records(existing, order, updated_at=order.updated_at or existing.updated_at or None)
        changes[merged.id] = merged
        by_key[order.key] = merged
    return changes


class RemoteMirror(Protocol):
    async def get_all(self) -> list[Order]: ...

    async def put_all(self, records: list[Order]) -> int: ...

    async def delete(self, order_ids: Iterable[str]) -> int: ...

    async def clear(self) -> None: ...

    def subscribe(self, callback: MirrorCallback) -> Callable[[], None]: ...


class InMemoryRemoteMirror:
    """Process-local mirror used in development and tests."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, Order] = {}
        self._subscribers: list[MirrorCallback] = []

    def _notify(self) -> None:
        snapshot = list(self._records.values())
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as exc:
                logger.warning("remote_mirror_subscriber_failed error=%s", exc)

    async def get_all(self) -> list[Order]:
        with self._lock:
            return list(self._records.values())

    async def put_all(self, records: list[Order]) -> int:
        with self._lock:
            changes = merge_into_mirror(self._records, records)
            self._records.update(changes)
            if changes:
                self._notify()
            return len(changes)

    async def delete(self, order_ids: Iterable[str]) -> int:
        with self._lock:
            removed = 0
            for order_id in order_ids:
                if self._records.pop(order_id, None) is not None:
                    removed += 1
            if removed:
                self._notify()
            return removed

    async def clear(self) -> None:
        with self._lock:
            self._records = {}
            self._notify()

    def subscribe(self, callback: MirrorCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe


class RedisRemoteMirror:
    """Best-effort mirror of the order set in a Redis hash (id -> JSON record)."""

    def __init__(
        self,
        *,
        dsn: str,
        namespace: str = "shipledger",
        max_attempts: int = 3,
        retry_delay_s: float = 1.0,
    ) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis mirror backend")
        self._dsn = dsn.strip()
        self._namespace = namespace.strip() or "shipledger"
        self._max_attempts = max(1, int(max_attempts))
        self._retry_delay_s = max(0.0, float(retry_delay_s))
        self._lock = threading.RLock()
        redis = _import_redis()
        self._driver_errors: tuple[type[BaseException], ...] = (redis.RedisError, OSError)
        self._client = redis.Redis.from_url(self._dsn, decode_responses=True)

    def _orders_key(self) -> str:
        return f"{self._namespace}:orders"

    def _channel(self) -> str:
        return f"{self._namespace}:orders:changed"

    def _load_all(self) -> dict[str, Order]:
        raw = self._client.hgetall(self._orders_key()) or {}
        records: dict[str, Order] = {}
        for order_id, blob in raw.items():
            try:
                records[str(order_id)] = Order.model_validate(json.loads(blob))
            except (json.JSONDecodeError, ValidationError, TypeError):
                logger.warning("remote_mirror_invalid_record id=%s", order_id)
        return records

    def _load_with_retry(self) -> dict[str, Order]:
        last_exc: BaseException | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return self._load_all()
            except self._driver_errors as exc:
                last_exc = exc
                logger.warning("remote_mirror_read_retry attempt=%s error=%s", attempt, exc)
                if attempt < self._max_attempts:
                    time.sleep(attempt * self._retry_delay_s)
        raise RemoteMirrorError(f"remote mirror read failed: {last_exc}")

    def _store(self, records: list[Order]) -> int:
        with self._lock:
            try:
                changes = merge_into_mirror(self._load_all(), records)
                if not changes:
                    return 0
                self._client.hset(
                    self._orders_key(),
                    mapping={
                        order_id: json.dumps(order_to_wire(order), ensure_ascii=False, sort_keys=True)
                        for order_id, order in changes.items()
                    },
                )
                self._client.publish(self._channel(), json.dumps({"changed": len(changes)}))
            except self._driver_errors as exc:
                raise RemoteMirrorError(f"remote mirror write failed: {exc}") from exc
            return len(changes)

    def _remove(self, order_ids: list[str]) -> int:
        with self._lock:
            try:
                removed = int(self._client.hdel(self._orders_key(), *order_ids) or 0)
                if removed:
                    self._client.publish(self._channel(), json.dumps({"removed": removed}))
            except self._driver_errors as exc:
                raise RemoteMirrorError(f"remote mirror delete failed: {exc}") from exc
            return removed

    async def get_all(self) -> list[Order]:
        records = await asyncio.to_thread(self._load_with_retry)
        return list(records.values())

    async def put_all(self, records: list[Order]) -> int:
        if not records:
            return 0
        return await asyncio.to_thread(self._store, list(records))

    async def delete(self, order_ids: Iterable[str]) -> int:
        ids = [str(x) for x in order_ids if str(x)]
        if not ids:
            return 0
        return await asyncio.to_thread(self._remove, ids)

    def _drop(self) -> None:
        with self._lock:
            try:
                self._client.delete(self._orders_key())
                self._client.publish(self._channel(), json.dumps({"cleared": True}))
            except self._driver_errors as exc:
                raise RemoteMirrorError(f"remote mirror clear failed: {exc}") from exc

    async def clear(self) -> None:
        await asyncio.to_thread(self._drop)

    def subscribe(self, callback: MirrorCallback) -> Callable[[], None]:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)

        def _on_message(_message: dict[str, Any]) -> None:
            try:
                snapshot = list(self._load_all().values())
            except self._driver_errors as exc:
                logger.warning("remote_mirror_subscription_reload_failed error=%s", exc)
                return
            try:
                callback(snapshot)
            except Exception as exc:
                logger.warning("remote_mirror_subscriber_failed error=%s", exc)

        pubsub.subscribe(**{self._channel(): _on_message})
        worker = pubsub.run_in_thread(sleep_time=0.5, daemon=True)

        def _unsubscribe() -> None:
            worker.stop()
            pubsub.close()

        return _unsubscribe


def create_mirror_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryRemoteMirror | RedisRemoteMirror | None:
    env = os.environ if environ is None else environ
    backend = env.get("SHIPLEDGER_MIRROR_BACKEND", "none").strip().lower() or "none"
    if backend == "none":
        return None
    if backend == "memory":
        return InMemoryRemoteMirror()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when SHIPLEDGER_MIRROR_BACKEND=redis")
        namespace = env.get("SHIPLEDGER_MIRROR_KEY_PREFIX", "shipledger")
        return RedisRemoteMirror(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported mirror backend: {backend}")
