"""
FastAPI Application: Entry Point

Invoice Processing Job Tracker API

Architecture:
  - All routes are versioned under /api/v1/
  - Authentication is JWT-based (any RS256 OIDC issuer) enforced per-route
  - Job state lives in-process: JobServices is built in the lifespan and
    injected into routes; one instance owns its jobs (no shared store)
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS: restrict to configured origins
  2. Request ID injection: X-Request-ID header on every response
  3. Trusted host: reject unexpected Host headers in production
  4. Request logging: one log line per request with latency

No GZip middleware: it buffers text/event-stream responses.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.jobs import router as jobs_router
from app.core.config import settings
from app.jobs.container import build_services
from app.schemas.jobs import ErrorDetail, ErrorResponse, JobErrors

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: build the job services and log a config summary.
    Shutdown: cancel live jobs and close the shared HTTP client.
    """
    logger.info(
        "Starting Invoice Job Tracker | env=%s openai=%s privacy=%s",
        settings.app_env,
        "configured" if settings.openai_api_key else "missing",
        settings.privacy_api_url or "not configured",
    )
    logger.info("Auth issuer: %s", settings.auth_issuer or "not configured")

    app.state.services = build_services(settings)

    yield

    logger.info("Shutting down Invoice Job Tracker")
    await app.state.services.aclose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Invoice Processing Job Tracker",
        description=(
            "Starts invoice extraction jobs, streams their progress over "
            "Server-Sent Events and relays cancellation to the processing service."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    allowed_origins = ["*"] if settings.app_env == "development" else settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "Cache-Control", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )

    if settings.is_production and settings.allowed_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    # ----------------------------------------------------------------
    # Request ID + logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        # For SSE this is time-to-headers, not stream duration
        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

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
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions: never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=JobErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(jobs_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Liveness (no auth: used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "invoice-job-tracker"}

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

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
