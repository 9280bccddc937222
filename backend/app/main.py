"""Token authority HTTP service"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api.v1 import admin, auth
from app.config import settings
from app.core.clock import utcnow
from app.core.database import SessionLocal, init_db
from app.core.exceptions import AuthorityUnavailableError, BaseAPIException, CredentialInvalidError
from app.services.token_sweeper import token_sweeper
from app.services.user_service import user_service

# Logging goes to stderr and the configured log file
Path(settings.get_log_file()).parent.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.get_log_file()),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

HTTP_REQUESTS = Counter(
    "contentforge_http_requests_total",
    "HTTP requests by route and status",
    ["method", "route", "status"],
)
HTTP_LATENCY = Histogram(
    "contentforge_http_request_duration_seconds",
    "HTTP request latency by route",
    ["method", "route"],
)
SWEEPER_UP = Gauge("contentforge_token_sweeper_up", "1 while the embedded sweeper thread runs")


def _bootstrap_admin() -> None:
    db = SessionLocal()
    try:
        created = user_service.ensure_admin_user(db, settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD)
        if created:
            logger.info("Bootstrap admin created: %s", created.email)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Admin bootstrap failed: %s", exc.__class__.__name__)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings.validate_security_settings()
    logger.info("Starting %s v%s (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)

    init_db()
    _bootstrap_admin()

    if settings.RUN_EMBEDDED_SWEEPER:
        token_sweeper.start()
        SWEEPER_UP.set(1)

    yield

    if token_sweeper.is_running():
        token_sweeper.stop()
    SWEEPER_UP.set(0)
    logger.info("%s stopped", settings.APP_NAME)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url=None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)


@app.middleware("http")
async def observe_request(request: Request, call_next):
    """Request id, no-store headers for credentials, and per-route metrics"""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Cache-Control"] = "no-store"

    route = getattr(request.scope.get("route"), "path", "unmatched")
    HTTP_REQUESTS.labels(request.method, route, str(response.status_code)).inc()
    HTTP_LATENCY.labels(request.method, route).observe(elapsed)
    if elapsed > 1.0:
        logger.warning("Slow request %s %s: %.2fs (request_id=%s)", request.method, route, elapsed, request_id)

    return response


def _error_response(request: Request, status_code: int, message: str, details=None, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": message,
            "details": details if details is not None else {},
            "path": request.url.path,
            "timestamp": utcnow().isoformat(),
        },
        headers=headers,
    )


@app.exception_handler(BaseAPIException)
async def api_exception_handler(request: Request, exc: BaseAPIException):
    if isinstance(exc, CredentialInvalidError):
        # Internal reason was logged where it was raised
        logger.info("401 on %s %s", request.method, request.url.path)
    elif isinstance(exc, AuthorityUnavailableError):
        logger.error("503 on %s %s: %s unavailable", request.method, request.url.path, exc.operation)
    else:
        logger.warning("%s on %s %s: %s", exc.status_code, request.method, request.url.path, exc.message)

    retry_after = exc.details.get("retry_after")
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return _error_response(request, exc.status_code, exc.message, exc.details, headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(loc) for loc in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation failed", errors)


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    """Database errors outside the token store are still reported as retryable"""
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return _error_response(request, status.HTTP_503_SERVICE_UNAVAILABLE, "Something went wrong, please try again")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.critical("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Something went wrong, please try again")


@app.get("/health")
def health_check():
    database = {"ok": True, "error": None}
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        database = {"ok": False, "error": exc.__class__.__name__}
    finally:
        db.close()

    sweeper = token_sweeper.status()
    SWEEPER_UP.set(1 if sweeper["running"] else 0)
    return {
        "status": "healthy" if database["ok"] else "degraded",
        "version": settings.APP_VERSION,
        "timestamp": utcnow().isoformat(),
        "readiness": {"database": database, "sweeper": sweeper},
    }


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(auth.router, prefix="/api/v1/auth", tags=["Authentication"])
app.include_router(admin.router, prefix="/api/v1/admin", tags=["Admin"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
    )
