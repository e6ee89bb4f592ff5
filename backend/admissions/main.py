"""
Admissions document pipeline API.

The HTTP process only does intake, status reads, cancellation, verification
and the admin signals. Extraction, outcome fan-out and channel delivery run
in the Celery workers (admissions.workers); they share the database and
object store with this process but nothing else.

Every error leaves as an ErrorResponse body carrying the X-Request-ID of the
request, so a parent's support ticket can be matched to the log line.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from admissions.api.v1.jobs import router as jobs_router
from admissions.core.config import settings
from admissions.core.exceptions import PipelineError
from admissions.db.session import check_db_health
from admissions.schemas.jobs import ErrorDetail, ErrorResponse, PipelineErrors

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

SERVICE_NAME = "admissions-pipeline-api"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "API starting | env=%s bucket=%s extraction=%s channels=%s",
        settings.app_env,
        settings.s3_bucket,
        settings.extraction_base_url,
        ",".join(settings.notification_channels),
    )
    db = await check_db_health()
    if db["status"] != "ok":
        logger.critical("Refusing to start, database unreachable | detail=%s", db.get("detail"))
        raise RuntimeError("database unreachable")

    yield

    from admissions.db.session import engine
    await engine.dispose()
    logger.info("API stopped")


def _request_id(request: Request) -> str:
    return request.headers.get("X-Request-ID") or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------

def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(PipelineError)
    async def on_pipeline_error(request: Request, exc: PipelineError):
        body = exc.error.model_copy(update={"request_id": request.headers.get("X-Request-ID")})
        if exc.status_code >= 500:
            logger.error("Request failed | path=%s code=%s", request.url.path, body.error_code)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=".".join(str(part) for part in err["loc"]),
                    message=err["msg"],
                    code="VALIDATION_ERROR",
                )
                for err in exc.errors()
            ],
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=PipelineErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )


# ---------------------------------------------------------------------------
# Probes (unauthenticated)
# ---------------------------------------------------------------------------

def _register_probes(app: FastAPI) -> None:

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe (database reachable)")
    async def readiness() -> JSONResponse:
        db = await check_db_health()
        ready = db["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if ready else "not_ready", "database": db},
        )


def create_app() -> FastAPI:
    public_docs = not settings.is_production
    app = FastAPI(
        title="Admissions Document Pipeline",
        description="Intake, extraction, verification and notification of admission documents.",
        version="1.0.0",
        docs_url="/api/docs" if public_docs else None,
        redoc_url="/api/redoc" if public_docs else None,
        openapi_url="/api/openapi.json" if public_docs else None,
        lifespan=lifespan,
    )

    # last added runs outermost
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )
    if settings.is_production:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        request_id = _request_id(request)
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000, request_id,
        )
        return response

    _register_error_handlers(app)
    _register_probes(app)
    app.include_router(jobs_router, prefix="/api/v1")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "admissions.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
