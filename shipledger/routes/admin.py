from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Query, Request

from shipledger.errors import ApiError
from shipledger.ops.backend_consistency import compare_order_sets
from shipledger.routes._deps import orchestrator_from_request, trace_id_from_request
from shipledger.schemas import success_envelope

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/snapshot")
async def export_snapshot(request: Request):
    snapshot = await orchestrator_from_request(request).export_snapshot()
    return success_envelope(snapshot, trace_id_from_request(request))


@router.post("/snapshot")
async def import_snapshot(request: Request, payload: Any = Body(...)):
    result = await orchestrator_from_request(request).import_snapshot(payload)
    return success_envelope(result, trace_id_from_request(request))


@router.delete("/orders")
async def clear_orders(request: Request, confirm: bool = Query(default=False)):
    if not confirm:
        raise ApiError(
            code="CLEAR_CONFIRM_REQUIRED",
            message="clearing all orders requires confirm=true",
            error_class="business_rule",
            retryable=False,
            http_status=400,
        )
    await orchestrator_from_request(request).clear_all()
    return success_envelope({"cleared": True}, trace_id_from_request(request))


@router.get("/storage")
async def storage_info(request: Request):
    info = await orchestrator_from_request(request).get_storage_info()
    return success_envelope(info, trace_id_from_request(request))


@router.get("/integrity")
async def run_integrity_check(request: Request):
    report = await orchestrator_from_request(request).run_integrity_check()
    return success_envelope(report.as_dict(), trace_id_from_request(request))


@router.post("/integrity/fix")
async def auto_fix_integrity(request: Request):
    result = await orchestrator_from_request(request).auto_fix_integrity()
    return success_envelope(result.as_dict(), trace_id_from_request(request))


@router.get("/mirror/consistency")
async def mirror_consistency(request: Request):
    orchestrator = orchestrator_from_request(request)
    if orchestrator.mirror is None:
        raise ApiError(
            code="MIRROR_NOT_CONFIGURED",
            message="no remote mirror is configured",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
    local = await orchestrator.get_all_orders()
    remote = await orchestrator.mirror.get_all()
    return success_envelope(compare_order_sets(local, remote), trace_id_from_request(request))
