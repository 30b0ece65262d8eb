# Tracr API - FastAPI Backend
#
# HTTP/JSON surface for two clients:
#   - agents on managed endpoints (device-token auth, /v1/agents/*)
#   - the fleet dashboard (session-token auth, everything else)
#
# Errors leave as {"error": "<message>"}. Store-level errors carry their
# own status (core.errors); unexpected exceptions become a generic 500
# with the traceback kept in the server log.

import logging
import time
import uuid

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..core.config import get_settings
from ..core.errors import DeviceNotRegistered, Internal, TracrError
from ..core.logging_config import configure_logging
from ..fleet.manager import get_fleet
from .agent_routes import router as agent_router
from .audit_routes import router as audit_router
from .auth_routes import router as auth_router
from .device_routes import router as device_router
from .software_routes import router as software_router
from .user_routes import router as user_router

logger = logging.getLogger(__name__)
access_logger = structlog.get_logger("tracr.access")

app = FastAPI(
    title="Tracr API",
    description="Device fleet registry and command bus",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pure ASGI middleware (not BaseHTTPMiddleware) so the wrapped app's
# exception handling and streaming behave normally.
class PayloadLimitMiddleware:
    """Reject request bodies larger than the configured limit (413).

    A declared Content-Length is checked up front. Bodies without one
    (chunked uploads) are counted as they stream in, and the read fails
    with a 413 once the running total passes the limit.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        limit = get_settings().max_payload_size
        for name, value in scope.get("headers", []):
            if name == b"content-length":
                try:
                    declared = int(value)
                except ValueError:
                    declared = 0
                if declared > limit:
                    response = JSONResponse(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        content={"error": _too_large_message(limit)},
                    )
                    await response(scope, receive, send)
                    return
                break

        received = 0

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    raise HTTPException(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        detail=_too_large_message(limit),
                    )
            return message

        await self.app(scope, limited_receive, send)


def _too_large_message(limit: int) -> str:
    return f"Payload too large (max {limit} bytes)"


class RequestContextMiddleware:
    """Attach an X-Request-ID to every response and emit one access log line."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = None
        for name, value in scope.get("headers", []):
            if name == b"x-request-id":
                request_id = value.decode("latin-1")[:128]
                break
        if not request_id:
            request_id = uuid.uuid4().hex
        scope.setdefault("state", {})["request_id"] = request_id

        started = time.perf_counter()
        status_code = 500

        async def send_with_request_id(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            access_logger.info(
                "request",
                method=scope.get("method"),
                path=scope.get("path"),
                status=status_code,
                latency_ms=round((time.perf_counter() - started) * 1000, 2),
                request_id=request_id,
            )


app.add_middleware(PayloadLimitMiddleware)
app.add_middleware(RequestContextMiddleware)

# Register routers
app.include_router(agent_router)
app.include_router(auth_router)
app.include_router(device_router)
app.include_router(software_router)
app.include_router(user_router)
app.include_router(audit_router)


# ── Error mapping ────────────────────────────────────────────────────


@app.exception_handler(DeviceNotRegistered)
async def device_not_registered_handler(request: Request, exc: DeviceNotRegistered):
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"success": False, "reregister": True, "error": exc.message},
    )


@app.exception_handler(TracrError)
async def tracr_error_handler(request: Request, exc: TracrError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation failed: " + "; ".join(problems)},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": Internal.default_message},
    )


# ── Lifecycle ────────────────────────────────────────────────────────


@app.on_event("startup")
async def startup_event():
    """Configure logging, seed the first admin, start background workers."""
    settings = get_settings()
    configure_logging(settings.log_level)
    fleet = get_fleet()
    fleet.bootstrap_admin()
    fleet.start()
    logger.info("Tracr API %s started (db=%s)", __version__, fleet.db.db_path)


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the sweeper and drain the audit queue."""
    get_fleet().stop()
    logger.info("Tracr API stopped")


@app.get("/health")
async def health():
    return {"status": "ok"}


def start_api_server(host: str = "0.0.0.0", port: int = 8443):
    """
    Start FastAPI server.

    Args:
        host: Host to bind to
        port: Port to listen on
    """
    uvicorn.run(app, host=host, port=port, log_level=get_settings().log_level.lower())


if __name__ == "__main__":
    start_api_server()
