from __future__ import annotations

from fastapi import APIRouter, Query, Request

from shipledger.routes._deps import (
    not_found,
    orchestrator_from_request,
    pipeline_from_request,
    settings_from_request,
    trace_id_from_request,
)
from shipledger.schemas import (
    CheckDuplicatesRequest,
    ImportOrdersRequest,
    OrderStatus,
    StatusUpdateRequest,
    WarningUpdateRequest,
    order_to_wire,
    success_envelope,
)
from shipledger.stats import (
    calculate_order_stats,
    calculate_orders_from_other_files,
    calculate_region_stats,
    get_warning_orders,
)

router = APIRouter(prefix="/api/v1", tags=["orders"])

# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@router.get("/orders")
async def list_orders(request: Request, status: OrderStatus | None = Query(default=None)):
    orders = await orchestrator_from_request(request).get_all_orders()
    if status is not None:
        orders = [o for o in orders if o.status is status]
    items = [order_to_wire(o) for o in orders]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/orders/{tracking_number}")
async def get_order(tracking_number: str, request: Request):
    order = await orchestrator_from_request(request).get_order(tracking_number)
    if order is None:
        raise not_found(f"order not found: {tracking_number}")
    return success_envelope(order_to_wire(order), trace_id_from_request(request))


@router.post("/orders/import")
async def import_orders(payload: ImportOrdersRequest, request: Request):
    summary = await pipeline_from_request(request).run(payload.orders, preflight=payload.preflight)
    return success_envelope(summary.as_dict(), trace_id_from_request(request))


@router.post("/orders/status")
async def update_status(payload: StatusUpdateRequest, request: Request):
    updated = await orchestrator_from_request(request).update_status(payload.tracking_numbers, payload.status)
    return success_envelope(
        {"updated": updated, "requested": len(payload.tracking_numbers)},
        trace_id_from_request(request),
    )


@router.put("/orders/{tracking_number}/warning")
async def update_warning(tracking_number: str, payload: WarningUpdateRequest, request: Request):
    order = await orchestrator_from_request(request).update_warning(
        tracking_number,
        payload.warning_status,
        payload.warning_note,
    )
    if order is None:
        raise not_found(f"order not found: {tracking_number}")
    return success_envelope(order_to_wire(order), trace_id_from_request(request))


@router.delete("/orders/{order_id}")
async def delete_order(order_id: str, request: Request):
    removed = await orchestrator_from_request(request).delete_order(order_id)
    if not removed:
        raise not_found(f"order id not found: {order_id}")
    return success_envelope({"order_id": order_id, "deleted": True}, trace_id_from_request(request))


@router.post("/orders/check-duplicates")
async def check_duplicates(payload: CheckDuplicatesRequest, request: Request):
    result = await orchestrator_from_request(request).check_duplicates(payload.tracking_numbers)
    return success_envelope(result.as_dict(), trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Derived statistics
# ---------------------------------------------------------------------------


@router.get("/stats/orders")
async def order_stats(request: Request):
    orders = await orchestrator_from_request(request).get_all_orders()
    cfg = settings_from_request(request)
    data = calculate_order_stats(orders, warning_days=cfg.stale_warning_days).as_dict()
    abnormal = calculate_orders_from_other_files(orders)
    data["abnormal_count"] = abnormal.count
    data["abnormal_cod_from_delivered_file"] = abnormal.total_cod_from_delivered_file
    return success_envelope(data, trace_id_from_request(request))


@router.get("/stats/regions")
async def region_stats(request: Request):
    orders = await orchestrator_from_request(request).get_all_orders()
    items = [row.as_dict() for row in calculate_region_stats(orders)]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/stats/warnings")
async def warning_orders(request: Request):
    cfg = settings_from_request(request)
    orders = await orchestrator_from_request(request).get_all_orders()
    flagged = get_warning_orders(orders, warning_days=cfg.stale_warning_days, lost_days=cfg.stale_lost_days)
    return success_envelope(
        {
            "yellow": [order_to_wire(o) for o in flagged.yellow],
            "red": [order_to_wire(o) for o in flagged.red],
            "warning_count": flagged.warning_count,
        },
        trace_id_from_request(request),
    )
