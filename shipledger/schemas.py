from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    RETURNED = "returned"
    PENDING = "pending"
    CANCELLED = "cancelled"


class WarningStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    TRACKING = "tracking"
    COMPENSATED = "compensated"


class OrderSource(str, Enum):
    """Import stream that last touched a record."""

    SENT = "sent"
    DELIVERED = "delivered"
    RETURNED = "returned"


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def business_key(tracking_number: str | None) -> str:
    if not tracking_number:
        return ""
    return str(tracking_number).strip().lower()


class Order(BaseModel):
    """Shipment order as persisted by every backend.

    Wire names are camelCase (snapshot files, mirror payloads); attributes are
    snake_case. Only fields that were explicitly provided take part in a merge,
    see ``shipledger.merge.merge_records``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=lambda: f"ord_{uuid.uuid4().hex}", min_length=1)
    tracking_number: str = Field(min_length=1)
    order_status: str | None = None
    send_date: str | None = None
    pickup_date: str | None = None
    status: OrderStatus = OrderStatus.SENT

    customer_name: str = ""
    customer_phone: str = ""
    customer_address: str = ""
    administrative_address: str | None = None

    sender_name: str | None = None
    sender_phone: str | None = None
    sender_address: str | None = None

    goods_content: str | None = None
    goods_type: str | None = None
    chargeable_weight: float | None = None

    cod: float = 0.0
    actual_cod: float | None = None
    partial_delivery: float | None = None
    returned_cod: float | None = None
    is_partial_delivery: bool | None = None
    returned_in_delivered_file: bool | None = None
    returned_from_file: bool | None = None
    shipping_fee: float = 0.0
    payment_method: str | None = None

    region: str | None = None
    created_at: str = ""
    updated_at: str = ""

    warning_status: WarningStatus | None = None
    warning_note: str | None = None

    raw_data: dict[str, Any] | None = None
    source: OrderSource | None = None
    was_sent: bool | None = None

    @property
    def key(self) -> str:
        return business_key(self.tracking_number)


def order_to_wire(order: Order) -> dict[str, Any]:
    return order.model_dump(mode="json", by_alias=True, exclude_none=True)


class ImportOrdersRequest(BaseModel):
    orders: list[Order] = Field(default_factory=list)
    preflight: bool = False


class StatusUpdateRequest(BaseModel):
    tracking_numbers: list[str] = Field(min_length=1)
    status: OrderStatus


class WarningUpdateRequest(BaseModel):
    warning_status: WarningStatus
    warning_note: str | None = None


class CheckDuplicatesRequest(BaseModel):
    tracking_numbers: list[str] = Field(default_factory=list)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
