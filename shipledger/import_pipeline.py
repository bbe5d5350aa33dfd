from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from shipledger.errors import StoreError
from shipledger.schemas import Order, business_key

if TYPE_CHECKING:
    from shipledger.orchestrator import ReconciliationOrchestrator

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 500


@dataclass
class FailedChunk:
    offset: int
    size: int
    error: str

    def as_dict(self) -> dict[str, Any]:
        return {"offset": self.offset, "size": self.size, "error": self.error}


@dataclass
class ImportSummary:
    total: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    duplicates: int = 0
    existing_before: int | None = None
    failed_chunks: list[FailedChunk] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "existing_before": self.existing_before,
            "failed_chunks": [chunk.as_dict() for chunk in self.failed_chunks],
        }


def dedupe_last_wins(chunk: list[Order]) -> list[Order]:
    """Collapse repeated business keys in a chunk, keeping the last occurrence in its position."""
    by_key: dict[str, Order] = {}
    for order in chunk:
        by_key.pop(order.key, None)
        by_key[order.key] = order
    return list(by_key.values())


class BatchImportPipeline:
    """Feeds an input sequence to the orchestrator in bounded chunks.

    Chunks are submitted strictly one after another. A chunk is retried with a
    linearly growing delay; once its attempts are exhausted it is recorded as
    failed and the import moves on to the next chunk.
    """

    def __init__(
        self,
        orchestrator: ReconciliationOrchestrator,
        *,
        chunk_size: int = 50,
        max_attempts: int = 3,
        retry_base_delay_s: float = 1.0,
        yield_s: float = 0.01,
    ) -> None:
        self._orchestrator = orchestrator
        self._chunk_size = max(1, int(chunk_size))
        self._max_attempts = max(1, int(max_attempts))
        self._retry_base_delay_s = max(0.0, float(retry_base_delay_s))
        self._yield_s = max(0.0, float(yield_s))

    async def _submit_chunk(self, chunk: list[Order], offset: int, summary: ImportSummary) -> None:
        pending = dedupe_last_wins(chunk)
        written = 0
        last_error = ""
        for attempt in range(1, self._max_attempts + 1):
            try:
                result = await self._orchestrator.add_orders(pending)
            except StoreError as exc:
                last_error = exc.message
                logger.warning(
                    "import_chunk_attempt_failed offset=%s attempt=%s error=%s",
                    offset,
                    attempt,
                    exc,
                )
            else:
                summary.created += result.created
                summary.updated += result.updated
                written += result.created + result.updated
                if not result.failed:
                    return
                failed_keys = {business_key(x) for x in result.failed_keys}
                pending = [order for order in pending if order.key in failed_keys]
                last_error = result.errors[0] if result.errors else "record write failed"
            if attempt < self._max_attempts:
                await asyncio.sleep(attempt * self._retry_base_delay_s)

        failed = len(pending) if written else len(chunk)
        summary.failed += failed
        summary.failed_chunks.append(FailedChunk(offset=offset, size=failed, error=last_error))
        logger.warning(
            "import_chunk_exhausted offset=%s size=%s attempts=%s error=%s",
            offset,
            failed,
            self._max_attempts,
            last_error,
        )

    async def run(self, records: Iterable[Order], *, preflight: bool = False) -> ImportSummary:
        summary = ImportSummary()
        if preflight:
            records = list(records)
            if records:
                existing = await self._orchestrator.check_duplicates(o.tracking_number for o in records)
                summary.existing_before = len(existing.present)
                if existing.present:
                    logger.info("import_preflight_existing count=%s", len(existing.present))

        seen: set[str] = set()
        iterator = iter(records)
        offset = 0
        while True:
            chunk = list(itertools.islice(iterator, self._chunk_size))
            if not chunk:
                break
            if offset:
                await asyncio.sleep(self._yield_s)
            for order in chunk:
                if order.key in seen:
                    summary.duplicates += 1
                else:
                    seen.add(order.key)
            await self._submit_chunk(chunk, offset, summary)
            previous = offset
            offset += len(chunk)
            summary.total = offset
            if offset // PROGRESS_LOG_EVERY > previous // PROGRESS_LOG_EVERY:
                logger.info(
                    "import_progress processed=%s created=%s updated=%s failed=%s",
                    offset,
                    summary.created,
                    summary.updated,
                    summary.failed,
                )

        if summary.total:
            logger.info(
                "import_finished total=%s created=%s updated=%s failed=%s duplicates=%s",
                summary.total,
                summary.created,
                summary.updated,
                summary.failed,
                summary.duplicates,
            )
        return summary
