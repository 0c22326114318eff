from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from portier_broker.api.error_handling import register_exception_handlers
from portier_broker.api.routes import router
from portier_broker.api.schemas import Envelope, ErrorBody, HealthResponse
from portier_broker.logging import get_logger, set_correlation_id
from portier_broker.service.keys import KeyManagerState
from portier_broker.service.runtime import get_runtime
from portier_broker.storage.errors import StoreError

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the runtime before serving; a broker without keys must not start."""
    runtime = get_runtime()
    await runtime.start()
    try:
        yield
    finally:
        await runtime.close()
        logger.info("runtime_cleanup_complete")


app = FastAPI(title="Portier Broker", version=__version__, lifespan=lifespan)

# Relying parties fetch keys and metadata from browsers
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Add correlation ID to each request for tracing.

    The ID is taken from the X-Request-ID header if provided, otherwise
    generated, and is returned in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    if request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def healthz():
    runtime = get_runtime()
    store_status = "ok"
    try:
        await runtime.store.ping()
    except StoreError as exc:
        logger.warning("healthz_store_unavailable", error=exc.message)
        store_status = "unavailable"
    keys_status = runtime.keys.state.value
    healthy = store_status == "ok" and runtime.keys.state in (
        KeyManagerState.READY,
        KeyManagerState.ROTATING,
    )
    body = HealthResponse(
        status="ok" if healthy else "degraded", store=store_status, keys=keys_status
    )
    if healthy:
        return JSONResponse(Envelope(status="ok", data=body.model_dump()).model_dump())
    error = ErrorBody(code="server_error", message="broker not ready", details=body.model_dump())
    return JSONResponse(Envelope(status="error", error=error).model_dump(), status_code=503)
