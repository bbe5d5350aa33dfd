from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any, TypeVar

from shipledger.backends import BatchWriteResult, ExistsResult, OrderBackend, unique_keys
from shipledger.errors import StoreError, StoreUnavailableError
from shipledger.fallback_store import VolatileFallbackStore
from shipledger.integrity import AutoFixResult, IntegrityReport, IntegrityVerifier
from shipledger.record_store import SqliteRecordStore
from shipledger.remote_mirror import RemoteMirror, create_mirror_from_env
from shipledger.schemas import Order, OrderStatus, WarningStatus, order_to_wire
from shipledger.settings import LedgerSettings
from shipledger.snapshot import build_snapshot, parse_snapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReconciliationOrchestrator:
    """Single entry point over the ordered local backends and the optional mirror.

    Local backends are tried in order; a backend that reports
    ``StoreUnavailableError`` is skipped and the next one serves the call.
    Mirror writes happen after the local write and never fail the call.
    """

    def __init__(
        self,
        backends: list[OrderBackend],
        *,
        mirror: RemoteMirror | None = None,
        snapshot_batch_size: int = 500,
        warning_days: int = 10,
        lost_days: int = 14,
        require_durable: bool = False,
    ) -> None:
        if not backends:
            raise ValueError("at least one local backend is required")
        self._backends = list(backends)
        self._mirror = mirror
        self._snapshot_batch_size = max(1, int(snapshot_batch_size))
        self._require_durable = require_durable
        self._migrated = False
        self._verifier = IntegrityVerifier(self, warning_days=warning_days, lost_days=lost_days)

    @property
    def backends(self) -> list[OrderBackend]:
        return list(self._backends)

    @property
    def mirror(self) -> RemoteMirror | None:
        return self._mirror

    async def open(self) -> None:
        for backend in self._backends:
            try:
                await backend.open()
            except StoreUnavailableError:
                if self._require_durable and backend is self._backends[0]:
                    raise
                logger.warning("orchestrator_backend_degraded backend=%s", backend.name)

    async def close(self) -> None:
        for backend in self._backends:
            await backend.close()

    async def _on_first_available(self, action: str, fn: Callable[[OrderBackend], Awaitable[T]]) -> T:
        for index, backend in enumerate(self._backends):
            if not backend.available:
                continue
            try:
                result = await fn(backend)
            except StoreUnavailableError as exc:
                logger.warning("orchestrator_backend_skipped backend=%s action=%s error=%s", backend.name, action, exc)
                continue
            if index > 0:
                logger.debug("orchestrator_degraded_call backend=%s action=%s", backend.name, action)
            return result
        raise StoreUnavailableError(f"no local backend available for {action}")

    async def _mirror_put(self, records: list[Order]) -> None:
        if self._mirror is None or not records:
            return
        try:
            await self._mirror.put_all(records)
        except Exception as exc:
            logger.warning("remote_mirror_write_failed records=%s error=%s", len(records), exc)

    async def _mirror_delete(self, order_ids: list[str]) -> None:
        if self._mirror is None or not order_ids:
            return
        try:
            await self._mirror.delete(order_ids)
        except Exception as exc:
            logger.warning("remote_mirror_delete_failed ids=%s error=%s", len(order_ids), exc)

    async def _migrate_once(self) -> None:
        if self._migrated or len(self._backends) < 2:
            self._migrated = True
            return
        self._migrated = True
        primary, *rest = self._backends
        try:
            if await primary.count() > 0:
                return
            for other in rest:
                records = await other.get_all()
                if not records:
                    continue
                result = await primary.put_many(records)
                logger.info(
                    "orchestrator_migrated source=%s target=%s created=%s updated=%s failed=%s",
                    other.name,
                    primary.name,
                    result.created,
                    result.updated,
                    result.failed,
                )
                return
        except StoreUnavailableError:
            return

    async def get_all_orders(self) -> list[Order]:
        await self._migrate_once()

        async def _read(backend: OrderBackend) -> list[Order]:
            orders = await backend.get_all()
            if orders or self._mirror is None:
                return orders
            try:
                remote = await self._mirror.get_all()
            except Exception as exc:
                logger.warning("remote_mirror_read_failed error=%s", exc)
                return orders
            if not remote:
                return orders
            result = await backend.put_many(remote)
            logger.info(
                "orchestrator_repopulated_from_mirror backend=%s created=%s failed=%s",
                backend.name,
                result.created,
                result.failed,
            )
            return await backend.get_all()

        return await self._on_first_available("get_all", _read)

    async def get_order(self, tracking_number: str) -> Order | None:
        return await self._on_first_available(
            "get_order", lambda backend: backend.get_by_tracking_number(tracking_number)
        )

    async def add_orders(self, batch: list[Order]) -> BatchWriteResult:
        if not batch:
            return BatchWriteResult()

        async def _write(backend: OrderBackend) -> tuple[BatchWriteResult, list[Order]]:
            result = await backend.put_many(batch)
            stored: list[Order] = []
            if self._mirror is not None and result.created + result.updated > 0:
                found = await backend.find_by_tracking_numbers(o.tracking_number for o in batch)
                stored = list(found.values())
            return result, stored

        result, stored = await self._on_first_available("add_orders", _write)
        await self._mirror_put(stored)
        return result

    async def update_status(self, tracking_numbers: str | Iterable[str], status: OrderStatus) -> int:
        """Set ``status`` on every existing record among ``tracking_numbers``; unknown keys are ignored."""
        keys = [tracking_numbers] if isinstance(tracking_numbers, str) else list(tracking_numbers)
        wanted = unique_keys(keys)
        if not wanted:
            return 0
        found = await self._on_first_available("find", lambda backend: backend.find_by_tracking_numbers(wanted))
        if not found:
            return 0
        changed = [
            Order.model_validate({"id": o.id, "tracking_number": o.tracking_number, "status": status})
            for o in found.values()
        ]
        result = await self.add_orders(changed)
        return result.created + result.updated

    async def update_warning(
        self,
        tracking_number: str,
        warning_status: WarningStatus,
        warning_note: str | None = None,
    ) -> Order | None:
        existing = await self.get_order(tracking_number)
        if existing is None:
            return None
        patch = Order.model_validate(
            {
                "id": existing.id,
                "tracking_number": existing.tracking_number,
                "warning_status": warning_status,
                "warning_note": warning_note,
            }
        )
        await self.add_orders([patch])
        return await self.get_order(tracking_number)

    async def delete_order(self, order_id: str) -> bool:
        removed = False
        for backend in self._backends:
            if not backend.available:
                continue
            try:
                removed = await backend.delete(order_id) or removed
            except StoreUnavailableError:
                continue
        if removed:
            await self._mirror_delete([order_id])
        return removed

    async def check_duplicates(self, tracking_numbers: Iterable[str]) -> ExistsResult:
        keys = unique_keys(tracking_numbers)
        try:
            return await self._on_first_available("exists", lambda backend: backend.exists(keys))
        except StoreError as exc:
            logger.warning("check_duplicates_failed keys=%s error=%s", len(keys), exc)
            return ExistsResult(present=[], absent=keys)

    async def export_snapshot(self, *, now: datetime | None = None) -> dict[str, Any]:
        return build_snapshot(await self.get_all_orders(), now=now)

    async def import_snapshot(self, data: str | bytes | dict[str, Any] | list[Any]) -> dict[str, Any]:
        parsed = parse_snapshot(data)
        totals = BatchWriteResult()
        for start in range(0, len(parsed.orders), self._snapshot_batch_size):
            totals.merge(await self.add_orders(parsed.orders[start : start + self._snapshot_batch_size]))
        logger.info(
            "snapshot_imported records=%s created=%s updated=%s failed=%s rejected=%s",
            len(parsed.orders),
            totals.created,
            totals.updated,
            totals.failed,
            parsed.rejected,
        )
        return {
            "imported": totals.created + totals.updated,
            "created": totals.created,
            "updated": totals.updated,
            "failed": totals.failed,
            "rejected": parsed.rejected,
            "error_count": totals.failed + parsed.rejected,
            "errors": (parsed.errors + totals.errors)[:10],
        }

    async def clear_all(self) -> None:
        for backend in self._backends:
            if not backend.available:
                continue
            try:
                await backend.clear()
            except StoreUnavailableError:
                continue
        if self._mirror is not None:
            try:
                await self._mirror.clear()
            except Exception as exc:
                logger.warning("remote_mirror_clear_failed error=%s", exc)
        logger.warning("orchestrator_cleared_all backends=%s", [b.name for b in self._backends])

    async def get_storage_info(self) -> dict[str, Any]:
        orders = await self.get_all_orders()
        blob = json.dumps([order_to_wire(o) for o in orders], ensure_ascii=False)
        backend = next((b.name for b in self._backends if b.available), None)
        return {
            "count": len(orders),
            "estimated_size_bytes": len(blob.encode("utf-8")),
            "backend": backend,
            "mirror_configured": self._mirror is not None,
        }

    async def run_integrity_check(self, *, now: datetime | None = None) -> IntegrityReport:
        return await self._verifier.run(now=now)

    async def auto_fix_integrity(self) -> AutoFixResult:
        return await self._verifier.auto_fix()


def create_record_store(settings: LedgerSettings) -> SqliteRecordStore:
    return SqliteRecordStore(settings.sqlite_path, tx_timeout_s=settings.store_tx_timeout_s)


def create_fallback_store(settings: LedgerSettings) -> VolatileFallbackStore:
    return VolatileFallbackStore(
        snapshot_path=settings.fallback_path or None,
        max_bytes=settings.fallback_max_bytes,
    )


def build_orchestrator(
    settings: LedgerSettings | None = None,
    *,
    mirror: RemoteMirror | None = None,
) -> ReconciliationOrchestrator:
    cfg = settings or LedgerSettings.from_env()
    if mirror is None:
        mirror = create_mirror_from_env(
            {
                "SHIPLEDGER_MIRROR_BACKEND": cfg.mirror_backend,
                "REDIS_DSN": cfg.redis_dsn,
                "SHIPLEDGER_MIRROR_KEY_PREFIX": cfg.mirror_key_prefix,
            }
        )
    return ReconciliationOrchestrator(
        [create_record_store(cfg), create_fallback_store(cfg)],
        mirror=mirror,
        snapshot_batch_size=cfg.snapshot_batch_size,
        warning_days=cfg.stale_warning_days,
        lost_days=cfg.stale_lost_days,
        require_durable=cfg.require_durable,
    )
