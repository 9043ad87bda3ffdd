"""
FastAPI Application — Entry Point

Chat AI Prime API Gateway

Architecture:
  - OpenAI-compatible routes under /v1/, plus /upload and /health
  - A single LLMGateway per process, created in the lifespan and stored on
    app.state; it owns the HTTP client, response cache and file reaper
  - Stored uploads are served read-only at /uploads/<name> so the upstream
    provider can fetch image references
  - Structured JSON error responses on all gateway-generated 4xx/5xx;
    upstream errors are relayed verbatim

Middleware stack (innermost → outermost):
  1. Maintenance gate — 503 on every request while maintenance_mode is on
  2. Request ID injection + request logging with latency
  3. CORS
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from chatprime.api.v1.chat import router as chat_router
from chatprime.api.v1.uploads import router as uploads_router
from chatprime.core.config import Settings, get_settings
from chatprime.core.errors import GatewayError, UpstreamError
from chatprime.llm.gateway import LLMGateway
from chatprime.schemas.chat import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

SERVICE_NAME    = "Chat AI Prime API"
SERVICE_VERSION = "2.0.0"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(settings: Settings | None = None, gateway: LLMGateway | None = None) -> FastAPI:
    """
    Build the application. Tests pass their own settings and a gateway wired
    to a mock upstream; production uses the environment.
    """
    settings = settings or get_settings()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Run on startup: build the gateway, start the stale-upload sweep.
        Run on shutdown: cancel pending deletions, close the HTTP client.
        """
        app.state.gateway = gateway or LLMGateway.from_settings(settings)
        app.state.gateway.start()

        logger.info(
            "Starting %s | env=%s upstream=%s credentials=%s upload_dir=%s",
            SERVICE_NAME, settings.app_env, settings.openai_base_url,
            settings.has_upstream_credentials, app.state.gateway.store.root,
        )
        if not settings.has_upstream_credentials:
            logger.warning("OPENAI_API_KEY not set; chat requests will fail with CONFIGURATION_ERROR")

        yield

        logger.info("Shutting down %s", SERVICE_NAME)
        await app.state.gateway.aclose()

    app = FastAPI(
        title=SERVICE_NAME,
        description=(
            "OpenAI-compatible gateway with file attachments, automatic model selection, "
            "response caching, retries and streaming relay."
        ),
        version=SERVICE_VERSION,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    if gateway is not None:
        app.state.gateway = gateway

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added is outermost)
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def maintenance_gate(request: Request, call_next):
        if settings.maintenance_mode:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"message": "The API is under maintenance. Please try again later."},
            )
        return await call_next(request)

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | model=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            response.headers.get("X-Model-Used", "-"),
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Model-Used"],
    )

    # ----------------------------------------------------------------
    # Exception handlers: structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(GatewayError)
    async def gateway_exception_handler(request: Request, exc: GatewayError):
        request_id = _request_id(request)
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "Gateway error | code=%s path=%s request_id=%s: %s",
            exc.error_code, request.url.path, request_id, exc.message,
        )
        details = [ErrorDetail(field=exc.field, message=exc.message, code=exc.error_code)] if exc.field else []
        body = ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=details,
            request_id=request_id,
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(UpstreamError)
    async def upstream_exception_handler(request: Request, exc: UpstreamError):
        """Relay a non-200 provider response unchanged."""
        logger.warning("Upstream error relayed | status=%d path=%s", exc.status_code, request.url.path)
        return Response(content=exc.body, status_code=exc.status_code, media_type=exc.content_type)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = _request_id(request)
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message=str(exc) if settings.debug else "Something went wrong.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers + static uploads
    # ----------------------------------------------------------------

    app.include_router(chat_router)
    app.include_router(uploads_router)

    upload_root = gateway.store.root if gateway is not None else settings.upload_dir
    app.mount(
        "/uploads",
        StaticFiles(directory=str(upload_root), check_dir=False),
        name="uploads",
    )

    # ----------------------------------------------------------------
    # Service banner + health (no upstream call)
    # ----------------------------------------------------------------

    @app.get("/", tags=["Operations"], summary="Service banner")
    async def root() -> dict:
        return {
            "message":     SERVICE_NAME,
            "version":     SERVICE_VERSION,
            "endpoints": {
                "chat":        "POST /v1/chat/completions",
                "completions": "POST /v1/completions",
                "moderations": "POST /v1/moderations",
                "upload":      "POST /upload",
                "health":      "GET /health",
                "models":      "GET /v1/models",
            },
            "environment": settings.app_env,
            "timestamp":   datetime.now(timezone.utc).isoformat(),
        }

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health(request: Request) -> dict:
        gw: LLMGateway | None = getattr(request.app.state, "gateway", None)
        body = {
            "status":      "healthy",
            "service":     SERVICE_NAME,
            "version":     SERVICE_VERSION,
            "environment": settings.app_env,
            "timestamp":   datetime.now(timezone.utc).isoformat(),
        }
        if gw is not None:
            stats = gw.cache.stats()
            body.update(
                cacheSize=stats["size"],
                cacheHits=stats["hits"],
                uploadDirSize=gw.store.count(),
                pendingDeletions=gw.reaper.pending,
            )
        return body

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "chatprime.main:app",
        host="0.0.0.0",
        port=8000,
        reload=_settings.app_env == "development",
        log_level="debug" if _settings.debug else "info",
        access_log=True,
    )
