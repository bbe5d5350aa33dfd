from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from shipledger.schemas import Order


class WriteOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"


@dataclass
class BatchWriteResult:
    created: int = 0
    updated: int = 0
    failed: int = 0
    duplicates_seen: int = 0
    failed_keys: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def record(self, outcome: WriteOutcome) -> None:
        if outcome is WriteOutcome.CREATED:
            self.created += 1
        else:
            self.updated += 1
            self.duplicates_seen += 1

    def record_failure(self, tracking_number: str, error: str) -> None:
        self.failed += 1
        self.failed_keys.append(tracking_number)
        self.errors.append(f"{tracking_number}: {error}")

    def merge(self, other: "BatchWriteResult") -> None:
        self.created += other.created
        self.updated += other.updated
        self.failed += other.failed
        self.duplicates_seen += other.duplicates_seen
        self.failed_keys.extend(other.failed_keys)
        self.errors.extend(other.errors)

    def as_dict(self) -> dict[str, object]:
        return {
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "duplicates_seen": self.duplicates_seen,
            "errors": list(self.errors[:10]),
        }


@dataclass
class ExistsResult:
    present: list[str] = field(default_factory=list)
    absent: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, list[str]]:
        return {"present": list(self.present), "absent": list(self.absent)}


def unique_keys(keys: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in keys:
        key = str(raw).strip()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(key)
    return out


class OrderBackend(Protocol):
    """Capability interface shared by the local backends."""

    name: str

    @property
    def available(self) -> bool: ...

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def get_all(self) -> list[Order]: ...

    async def count(self) -> int: ...

    async def get_by_tracking_number(self, tracking_number: str) -> Order | None: ...

    async def find_by_tracking_numbers(self, tracking_numbers: Iterable[str]) -> dict[str, Order]: ...

    async def put(self, record: Order) -> WriteOutcome: ...

    async def put_many(self, records: list[Order]) -> BatchWriteResult: ...

    async def exists(self, tracking_numbers: Iterable[str]) -> ExistsResult: ...

    async def delete(self, order_id: str) -> bool: ...

    async def clear(self) -> None: ...
