from __future__ import annotations

from contextlib import asynccontextmanager
import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from consortium.apps.api.errors import (
    consortium_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from consortium.apps.api.response import API_VERSION, is_versioned_request
from consortium.apps.api.routes.access_requests import router as access_requests_router
from consortium.apps.api.routes.health import router as health_router
from consortium.apps.api.routes.ops import router as ops_router
from consortium.apps.api.routes.sync import router as sync_router
from consortium.core.config import get_settings
from consortium.core.errors import ConsortiumError
from consortium.core.logging import configure_logging
from consortium.services.jobs import cancel_background_jobs
from consortium.services.telemetry import record_request


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("api_started app=%s", get_settings().app_name)
    yield
    # Stop detached inline jobs so they do not outlive the process.
    cancelled = await cancel_background_jobs()
    logger.info("api_stopped cancelled_jobs=%s", cancelled)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Consortium Hub API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        # Wrap versioned JSON responses in the standardized success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                if payload is not None:
                    is_enveloped = (
                        isinstance(payload, dict)
                        and "data" in payload
                        and "meta" in payload
                        and isinstance(payload.get("meta"), dict)
                        and payload["meta"].get("api_version") == API_VERSION
                    )
                    if not is_enveloped:
                        wrapped_response = JSONResponse(
                            content={
                                "data": payload,
                                "meta": {"request_id": request_id, "api_version": API_VERSION},
                            },
                            status_code=response.status_code,
                        )
                        for key, value in response.headers.items():
                            if key.lower() in {"content-length", "content-type"}:
                                continue
                            wrapped_response.headers[key] = value
                        response = wrapped_response

        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(ConsortiumError)
    async def _consortium_exception_handler(request: Request, exc: ConsortiumError):
        return await consortium_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(access_requests_router, prefix=f"/{API_VERSION}")
    # Admin-only catalog sync and reconciliation triggers.
    app.include_router(sync_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
