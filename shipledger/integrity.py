from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from shipledger.errors import StoreError
from shipledger.merge import updated_at_timestamp
from shipledger.schemas import Order, OrderSource, OrderStatus
from shipledger.stats import (
    days_since_sent,
    in_delivered_stream,
    in_returned_stream,
    is_active,
    is_partial_return,
    is_sent,
)

if TYPE_CHECKING:
    from shipledger.orchestrator import ReconciliationOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class FormulaCheck:
    is_valid: bool
    left_side: int
    right_side: int
    difference: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "left_side": self.left_side,
            "right_side": self.right_side,
            "difference": self.difference,
        }


@dataclass
class IntegrityReport:
    total_orders: int
    counts: dict[str, int]
    formula_check: FormulaCheck
    duplicate_tracking: int = 0
    inconsistent_data: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors and self.formula_check.is_valid

    def as_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "total_orders": self.total_orders,
            "counts": dict(self.counts),
            "validation": {
                "formula_check": self.formula_check.as_dict(),
                "duplicate_tracking": self.duplicate_tracking,
                "inconsistent_data": self.inconsistent_data,
            },
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class AutoFixResult:
    fixed: list[Order] = field(default_factory=list)
    removed_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "fixed": [order.tracking_number for order in self.fixed],
            "fixed_count": len(self.fixed),
            "removed_ids": list(self.removed_ids),
            "errors": list(self.errors),
        }


def group_by_key(orders: list[Order]) -> dict[str, list[Order]]:
    groups: dict[str, list[Order]] = {}
    for order in orders:
        if order.key:
            groups.setdefault(order.key, []).append(order)
    return groups


def provenance_issues(order: Order) -> list[str]:
    issues: list[str] = []
    source = order.source.value if order.source is not None else None
    if order.status is OrderStatus.DELIVERED and order.source is not OrderSource.DELIVERED and not order.is_partial_delivery:
        issues.append(f"order {order.tracking_number}: status=delivered but source={source}")
    if order.status is OrderStatus.RETURNED and order.source is not OrderSource.RETURNED and not order.is_partial_delivery:
        issues.append(f"order {order.tracking_number}: status=returned but source={source}")
    if order.actual_cod is not None and order.actual_cod > 0 and not in_delivered_stream(order):
        issues.append(f"order {order.tracking_number}: actualCod present without delivered provenance")
    if order.is_partial_delivery and order.source is not OrderSource.DELIVERED:
        issues.append(f"order {order.tracking_number}: partial delivery but source={source}")
    return issues


def check_integrity(
    orders: list[Order],
    *,
    now: datetime | None = None,
    warning_days: int = 10,
    lost_days: int = 14,
) -> IntegrityReport:
    """Cross-check the record set against the shipment accounting identity.

    ``sent + abnormal == delivered + in_transit + returned + partial + warning``

    A mismatch is reported as an error in the returned report; nothing is
    raised and nothing is corrected here.
    """
    errors: list[str] = []
    warnings: list[str] = []

    groups = group_by_key(orders)
    duplicate_count = 0
    for records in groups.values():
        if len(records) > 1:
            duplicate_count += 1
            errors.append(f"duplicate tracking number: {records[0].tracking_number} ({len(records)} records)")

    active = [o for o in orders if is_active(o)]
    sent = [o for o in active if is_sent(o)]
    sent_keys = {o.key for o in sent}
    delivered_keys = {o.key for o in active if in_delivered_stream(o)}
    returned_keys = {o.key for o in active if in_returned_stream(o) or o.is_partial_delivery is True}
    partial_return_keys = {o.key for o in active if is_partial_return(o)}

    total_delivered = sum(1 for o in active if in_delivered_stream(o) and o.is_partial_delivery is not True)
    total_returned = sum(1 for o in active if in_returned_stream(o) and o.key not in partial_return_keys)
    partial = sum(
        1
        for o in active
        if o.is_partial_delivery is True and o.key in delivered_keys and o.key in returned_keys
    )
    abnormal = sum(
        1
        for o in active
        if o.key not in sent_keys
        and o.was_sent is not True
        and (in_delivered_stream(o) or in_returned_stream(o))
    )

    in_transit = warning = lost = 0
    for order in sent:
        if order.key in delivered_keys or order.key in returned_keys:
            continue
        age = days_since_sent(order, now=now)
        if age is not None and age < warning_days:
            in_transit += 1
            continue
        warning += 1
        if age is None or age > lost_days:
            lost += 1

    left = len(sent) + abnormal
    right = total_delivered + in_transit + total_returned + partial + warning
    formula = FormulaCheck(is_valid=left == right, left_side=left, right_side=right, difference=abs(left - right))
    if not formula.is_valid:
        errors.append(f"accounting identity mismatch: left={left} right={right} difference={formula.difference}")

    inconsistent = 0
    for order in orders:
        issues = provenance_issues(order)
        inconsistent += len(issues)
        warnings.extend(issues)

    return IntegrityReport(
        total_orders=len(orders),
        counts={
            "total_sent": len(sent),
            "total_delivered": total_delivered,
            "total_returned": total_returned,
            "partial_delivery": partial,
            "abnormal": abnormal,
            "in_transit": in_transit,
            "warning": warning,
            "lost": lost,
        },
        formula_check=formula,
        duplicate_tracking=duplicate_count,
        inconsistent_data=inconsistent,
        errors=errors,
        warnings=warnings,
    )


def fix_provenance(order: Order) -> Order:
    update: dict[str, Any] = {}
    if order.is_partial_delivery and order.source is not OrderSource.DELIVERED:
        update = {"source": OrderSource.DELIVERED, "status": OrderStatus.DELIVERED}
    elif order.status is OrderStatus.DELIVERED and order.source is not OrderSource.DELIVERED and not order.is_partial_delivery:
        update = {"source": OrderSource.DELIVERED}
    elif order.status is OrderStatus.RETURNED and order.source is not OrderSource.RETURNED and not order.is_partial_delivery:
        update = {"source": OrderSource.RETURNED}
    if not update:
        return order
    # Re-validate so the changed fields count as explicitly set for merge-on-write.
    return Order.model_validate({**order.model_dump(exclude_unset=True), **update})


def plan_auto_fix(orders: list[Order]) -> tuple[list[Order], list[Order]]:
    """Return ``(records_to_write, records_to_remove)``.

    Within a business key the record with the latest ``updatedAt`` survives;
    on a tie the later one in ``orders`` wins.
    """
    to_write: list[Order] = []
    to_remove: list[Order] = []
    for records in group_by_key(orders).values():
        winner = records[0]
        for candidate in records[1:]:
            if updated_at_timestamp(candidate) >= updated_at_timestamp(winner):
                winner = candidate
        losers = [o for o in records if o is not winner]
        to_remove.extend(losers)
        fixed = fix_provenance(winner)
        if losers or fixed is not winner:
            to_write.append(fixed)
    return to_write, to_remove


class IntegrityVerifier:
    def __init__(
        self,
        orchestrator: ReconciliationOrchestrator,
        *,
        warning_days: int = 10,
        lost_days: int = 14,
    ) -> None:
        self._orchestrator = orchestrator
        self._warning_days = warning_days
        self._lost_days = lost_days

    async def run(self, *, now: datetime | None = None) -> IntegrityReport:
        orders = await self._orchestrator.get_all_orders()
        report = check_integrity(orders, now=now, warning_days=self._warning_days, lost_days=self._lost_days)
        if not report.is_valid:
            logger.warning(
                "integrity_check_failed errors=%s duplicates=%s difference=%s",
                len(report.errors),
                report.duplicate_tracking,
                report.formula_check.difference,
            )
        return report

    async def auto_fix(self) -> AutoFixResult:
        orders = await self._orchestrator.get_all_orders()
        to_write, to_remove = plan_auto_fix(orders)
        result = AutoFixResult()
        for loser in to_remove:
            try:
                if await self._orchestrator.delete_order(loser.id):
                    result.removed_ids.append(loser.id)
            except StoreError as exc:
                result.errors.append(f"delete {loser.id}: {exc.message}")
        if to_write:
            try:
                outcome = await self._orchestrator.add_orders(to_write)
            except StoreError as exc:
                result.errors.append(f"write fixed records: {exc.message}")
            else:
                failed = {key.strip().lower() for key in outcome.failed_keys}
                result.fixed = [o for o in to_write if o.key not in failed]
                result.errors.extend(outcome.errors)
        logger.info(
            "integrity_auto_fix fixed=%s removed=%s errors=%s",
            len(result.fixed),
            len(result.removed_ids),
            len(result.errors),
        )
        return result
