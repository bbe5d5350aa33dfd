from __future__ import annotations

import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from shipledger.errors import ApiError, SnapshotFormatError, StoreError, StoreUnavailableError
from shipledger.orchestrator import ReconciliationOrchestrator, build_orchestrator
from shipledger.routes import admin, orders
from shipledger.routes._deps import error_response, request_id_from_request, trace_id_from_request
from shipledger.schemas import success_envelope
from shipledger.settings import LedgerSettings

logger = logging.getLogger(__name__)


def _store_error_status(exc: StoreError) -> int:
    if isinstance(exc, SnapshotFormatError):
        return 400
    if isinstance(exc, StoreUnavailableError):
        return 503
    return 500


def create_app(
    orchestrator: ReconciliationOrchestrator | None = None,
    *,
    settings: LedgerSettings | None = None,
) -> FastAPI:
    cfg = settings or LedgerSettings.from_env()
    ledger = orchestrator or build_orchestrator(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await ledger.open()
        try:
            yield
        finally:
            await ledger.close()

    app = FastAPI(title="Shipment Ledger API", version="0.1.0", lifespan=lifespan)
    app.state.orchestrator = ledger
    app.state.settings = cfg

    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        status_code = _store_error_status(exc)
        if status_code >= 500:
            logger.error("store_error code=%s message=%s", exc.code, exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class="validation" if status_code == 400 else "transient",
            retryable=exc.retryable,
            status_code=status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(orders.router)
    app.include_router(admin.router)
    return app


app = create_app()
