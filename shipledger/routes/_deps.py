from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from shipledger.errors import ApiError
from shipledger.import_pipeline import BatchImportPipeline
from shipledger.orchestrator import ReconciliationOrchestrator
from shipledger.schemas import error_envelope
from shipledger.settings import LedgerSettings


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def orchestrator_from_request(request: Request) -> ReconciliationOrchestrator:
    return request.app.state.orchestrator


def settings_from_request(request: Request) -> LedgerSettings:
    return request.app.state.settings


def pipeline_from_request(request: Request) -> BatchImportPipeline:
    cfg = settings_from_request(request)
    return BatchImportPipeline(
        orchestrator_from_request(request),
        chunk_size=cfg.import_chunk_size,
        max_attempts=cfg.import_max_attempts,
        retry_base_delay_s=cfg.import_retry_base_delay_s,
        yield_s=cfg.import_yield_s,
    )


def not_found(message: str) -> ApiError:
    return ApiError(
        code="ORDER_NOT_FOUND",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=404,
    )
