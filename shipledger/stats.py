from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from shipledger.schemas import Order, OrderSource, OrderStatus

logger = logging.getLogger(__name__)

RETURN_SHIPPING_FEE_PER_ORDER = 10000
UNKNOWN_REGION = "Unknown"
COD_EPSILON = 0.01


@dataclass
class OrderStats:
    total_sent: int = 0
    total_delivered: int = 0
    total_returned: int = 0
    total_cancelled: int = 0
    partial_delivery_count: int = 0
    delivery_rate: float = 0.0
    total_cod: float = 0.0
    total_shipping_fee: float = 0.0
    total_cod_delivered: float = 0.0
    total_cod_returned: float = 0.0
    total_return_shipping_fee: float = 0.0
    cod_difference: float = 0.0
    remaining_amount: float = 0.0
    final_remaining_amount: float = 0.0
    cod_from_remaining_orders: float = 0.0
    shipping_fee_from_remaining_orders: float = 0.0
    total_cod_delivered_from_sent: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RegionStats:
    region: str
    order_count: int
    delivery_rate: float

    def as_dict(self) -> dict[str, Any]:
        return {"region": self.region, "order_count": self.order_count, "delivery_rate": self.delivery_rate}


@dataclass
class WarningOrders:
    yellow: list[Order] = field(default_factory=list)
    red: list[Order] = field(default_factory=list)

    @property
    def warning_count(self) -> int:
        return len(self.yellow) + len(self.red)


@dataclass
class AbnormalOrders:
    from_delivered_file: list[Order] = field(default_factory=list)
    from_returned_file: list[Order] = field(default_factory=list)
    total_cod_from_delivered_file: float = 0.0
    total_actual_cod_from_delivered_file: float = 0.0

    @property
    def count(self) -> int:
        return len(self.from_delivered_file) + len(self.from_returned_file)


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(UTC)


def days_since_sent(order: Order, *, now: datetime | None = None) -> int | None:
    """Whole days between ``sendDate`` and ``now``; ``None`` when the date is missing or unparseable."""
    raw = (order.send_date or "").strip()
    if not raw:
        return None
    try:
        sent = date.fromisoformat(raw[:10])
    except ValueError:
        return None
    return (_now(now).date() - sent).days


def is_active(order: Order) -> bool:
    return order.status is not OrderStatus.CANCELLED


def is_sent(order: Order) -> bool:
    return order.was_sent is True or order.source is OrderSource.SENT


def in_delivered_stream(order: Order) -> bool:
    return order.source is OrderSource.DELIVERED or order.status is OrderStatus.DELIVERED


def in_returned_stream(order: Order) -> bool:
    return order.source is OrderSource.RETURNED or order.status is OrderStatus.RETURNED


def is_partial_return(order: Order) -> bool:
    """Delivered with a COD shortfall: the reconciliation file reported less than was sent."""
    if order.is_partial_delivery is not True or not in_delivered_stream(order):
        return False
    if order.actual_cod is not None:
        return abs(order.cod - order.actual_cod) >= COD_EPSILON
    return order.returned_cod is not None and order.returned_cod > 0


def _keys(orders: list[Order]) -> set[str]:
    return {order.key for order in orders if order.key}


def calculate_order_stats(
    orders: list[Order],
    *,
    now: datetime | None = None,
    warning_days: int = 10,
) -> OrderStats:
    active = [o for o in orders if is_active(o)]
    sent = [o for o in active if is_sent(o)]
    sent_keys = _keys(sent)

    delivered = [o for o in active if in_delivered_stream(o) and o.is_partial_delivery is not True]
    delivered_keys = _keys(delivered)

    with_actual_cod = [o for o in active if o.actual_cod is not None and o.actual_cod > 0]
    if len(with_actual_cod) > len(delivered):
        logger.warning(
            "order_stats_actual_cod_without_delivery with_actual_cod=%s delivered=%s",
            len(with_actual_cod),
            len(delivered),
        )

    partial = [o for o in active if is_partial_return(o)]
    partial_keys = _keys(partial)
    returned = [o for o in active if in_returned_stream(o) and o.key not in partial_keys]
    returned_keys = _keys(returned)

    in_transit = []
    for order in sent:
        if order.key in delivered_keys or order.key in returned_keys or order.key in partial_keys:
            continue
        age = days_since_sent(order, now=now)
        if age is not None and age < warning_days:
            in_transit.append(order)

    total_cod_from_sent = sum(o.cod for o in sent)
    total_cod_delivered = sum(o.actual_cod for o in delivered if o.actual_cod is not None)

    cod_difference = 0.0
    cod_from_partial = 0.0
    for order in partial:
        if order.returned_cod is not None:
            cod_difference += order.cod - order.returned_cod
            cod_from_partial += order.returned_cod
        else:
            if order.actual_cod is not None:
                cod_difference += order.cod - order.actual_cod
            cod_from_partial += order.cod
    total_cod_returned = sum(o.cod for o in returned) + cod_from_partial

    total_shipping_fee = sum(o.shipping_fee for o in sent)
    total_return_shipping_fee = float(RETURN_SHIPPING_FEE_PER_ORDER * len(returned))
    remaining_amount = (
        total_cod_from_sent - total_cod_delivered - total_cod_returned - total_shipping_fee - total_return_shipping_fee
    )
    cod_from_remaining = sum(o.cod for o in in_transit)
    fee_from_remaining = sum(o.shipping_fee for o in in_transit)

    denominator = len(returned) + len(partial)
    delivery_rate = (len(delivered) / denominator) * 100 if denominator > 0 else 0.0

    return OrderStats(
        total_sent=len(sent),
        total_delivered=len(delivered),
        total_returned=len(returned),
        total_cancelled=len(orders) - len(active),
        partial_delivery_count=len(partial),
        delivery_rate=round(delivery_rate, 2),
        total_cod=sum(o.cod for o in active),
        total_shipping_fee=total_shipping_fee,
        total_cod_delivered=total_cod_delivered,
        total_cod_returned=total_cod_returned,
        total_return_shipping_fee=total_return_shipping_fee,
        cod_difference=cod_difference,
        remaining_amount=remaining_amount,
        final_remaining_amount=cod_from_remaining - fee_from_remaining,
        cod_from_remaining_orders=cod_from_remaining,
        shipping_fee_from_remaining_orders=fee_from_remaining,
        total_cod_delivered_from_sent=sum(o.cod for o in delivered if o.key in sent_keys),
    )


def calculate_region_stats(orders: list[Order]) -> list[RegionStats]:
    counted = {OrderStatus.SENT, OrderStatus.DELIVERED, OrderStatus.RETURNED}
    totals: dict[str, list[int]] = {}
    for order in orders:
        if order.status not in counted:
            continue
        bucket = totals.setdefault(order.region or UNKNOWN_REGION, [0, 0])
        bucket[0] += 1
        if order.status is OrderStatus.DELIVERED:
            bucket[1] += 1
    rows = [
        RegionStats(region=region, order_count=total, delivery_rate=(delivered / total) * 100 if total else 0.0)
        for region, (total, delivered) in totals.items()
    ]
    rows.sort(key=lambda row: row.order_count, reverse=True)
    return rows


def get_warning_orders(
    orders: list[Order],
    *,
    now: datetime | None = None,
    warning_days: int = 10,
    lost_days: int = 14,
) -> WarningOrders:
    """Flag sent orders that neither the reconciliation nor the return stream has seen.

    Yellow: ``warning_days`` to ``lost_days`` days since ``sendDate``.
    Red: more than ``lost_days`` days, or no usable ``sendDate``.
    """
    active = [o for o in orders if is_active(o)]
    settled = _keys([o for o in active if in_delivered_stream(o) or in_returned_stream(o)])
    settled |= _keys([o for o in active if o.is_partial_delivery is True])

    result = WarningOrders()
    for order in active:
        if not is_sent(order) or order.key in settled:
            continue
        age = days_since_sent(order, now=now)
        if age is None or age > lost_days:
            result.red.append(order)
        elif age >= warning_days:
            result.yellow.append(order)
    return result


def calculate_orders_from_other_files(orders: list[Order]) -> AbnormalOrders:
    sent_keys = _keys([o for o in orders if is_active(o) and is_sent(o)])

    def _abnormal(order: Order) -> bool:
        return is_active(order) and order.key not in sent_keys and order.was_sent is not True

    result = AbnormalOrders(
        from_delivered_file=[o for o in orders if in_delivered_stream(o) and _abnormal(o)],
        from_returned_file=[o for o in orders if in_returned_stream(o) and _abnormal(o)],
    )
    result.total_cod_from_delivered_file = sum(o.cod for o in result.from_delivered_file)
    result.total_actual_cod_from_delivered_file = sum(o.actual_cod or 0.0 for o in result.from_delivered_file)
    return result
