"""
FastAPI 主入口
"""
import logging
import time
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Response, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from points_ledger.config import get_settings
from points_ledger.database import init_db
from points_ledger.routers import points
from points_ledger.services.exceptions import (
    EnrollmentCreateFailed,
    IdempotencyConflict,
    InsufficientPoints,
    InvalidAmount,
    InvalidRequest,
    LedgerError,
    LimitExceeded,
    NotEnrolled,
    ProgramNotFound,
    StorageError,
)
from points_ledger.utils.request_context import request_id_ctx_var, RequestIdFilter, JsonFormatter
from points_ledger.utils.metrics import REQUEST_COUNT, REQUEST_LATENCY, IN_PROGRESS, get_route_name

# Initialize settings
settings = get_settings()
logger = logging.getLogger(__name__)

# 账本错误 -> HTTP 状态码（先匹配子类）
LEDGER_ERROR_STATUS = [
    (InvalidRequest, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidAmount, status.HTTP_400_BAD_REQUEST),
    (LimitExceeded, status.HTTP_400_BAD_REQUEST),
    (ProgramNotFound, status.HTTP_404_NOT_FOUND),
    (NotEnrolled, status.HTTP_404_NOT_FOUND),
    (InsufficientPoints, status.HTTP_409_CONFLICT),
    (IdempotencyConflict, status.HTTP_409_CONFLICT),
    (EnrollmentCreateFailed, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def ledger_error_status(exc: LedgerError) -> int:
    for error_class, status_code in LEDGER_ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时初始化数据库
    settings.validate_secrets()
    await init_db()
    yield


app = FastAPI(
    title="Points Ledger API",
    description="积分账本与兑换服务",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    status_code = ledger_error_status(exc)
    if status_code >= 500:
        logger.error(f"Ledger storage error: {exc.message}", exc_info=exc)
    else:
        logger.warning(f"Ledger request rejected [{exc.error_code}]: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "error",
            "message": exc.message,
            "code": exc.error_code,
            "retryable": exc.retryable,
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "status": "error",
            "message": exc.detail,
            "code": exc.status_code
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "status": "error",
            "message": "Validation Error",
            "details": jsonable_errors(exc),
            "code": 422
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx 中可能包含异常对象，无法直接序列化
    return [
        {key: value for key, value in error.items() if key in ("loc", "msg", "type")}
        for error in exc.errors()
    ]


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "status": "error",
            "message": "Internal Server Error",
            "code": 500
        },
    )


@app.middleware("http")
async def request_context_middleware(request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    token = request_id_ctx_var.set(request_id)
    response = None
    start = time.perf_counter()
    if settings.metrics_enabled:
        IN_PROGRESS.inc()

    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.perf_counter() - start
        path = get_route_name(request.scope)
        status_code = response.status_code if response else 500
        if settings.metrics_enabled:
            REQUEST_COUNT.labels(request.method, path, str(status_code)).inc()
            REQUEST_LATENCY.labels(request.method, path).observe(duration)
            IN_PROGRESS.dec()
        request_id_ctx_var.reset(token)
        if response is not None:
            response.headers["X-Request-ID"] = request_id


API_V1_PREFIX = "/api/v1"

app.include_router(points.router, prefix=f"{API_V1_PREFIX}/points", tags=["V1-积分"])


@app.get("/api/v1/health")
async def health_check():
    """
    健康检查端点

    Returns:
        服务状态信息
    """
    return {
        "status": "ok",
        "service": "points-ledger",
        "version": "1.0.0",
        "api_version": "v1"
    }


@app.get("/metrics")
async def metrics():
    """Prometheus 指标端点"""
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    if settings.log_format == "standard":
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(request_id)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
    else:
        handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(name)
        logger.handlers = [handler]
        logger.setLevel(settings.log_level)
        logger.propagate = False


def init_sentry() -> None:
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            integrations=[FastApiIntegration()],
            traces_sample_rate=settings.sentry_traces_sample_rate,
        )


configure_logging()
init_sentry()
