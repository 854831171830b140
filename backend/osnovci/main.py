import os
import logging
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session
from osnovci.api.admin import router as admin_router
from osnovci.api.auth import router as auth_router
from osnovci.api.events import router as events_router
from osnovci.api.family import router as family_router
from osnovci.core.admin_sync import get_runtime_admin_emails, sync_admin_users
from osnovci.core.api_response import error_json_response, get_request_id
from osnovci.core.errors import AppError
from osnovci.core.kv_store import get_kv_store
from osnovci.core.metrics import increment_counter, prometheus_text
from osnovci.core.sweeper import build_default_sweeper, sweeper_enabled
from osnovci.db.session import SessionLocal

logger = logging.getLogger(__name__)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

CORS_ORIGINS = [x.strip() for x in os.getenv("CORS_ORIGINS", "*").split(",") if x.strip()]


@asynccontextmanager
async def lifespan(_: FastAPI):
    admin_emails = get_runtime_admin_emails()
    if admin_emails:
        db: Session = SessionLocal()
        try:
            sync_admin_users(db, admin_emails, os.getenv("ADMIN_PASSWORD"))
        finally:
            db.close()

    sweeper = None
    if sweeper_enabled():
        sweeper = build_default_sweeper(get_kv_store())
        sweeper.start()

    yield

    if sweeper is not None:
        await sweeper.stop()


app = FastAPI(title="Osnovci API", lifespan=lifespan)
app.include_router(auth_router)
app.include_router(admin_router)
app.include_router(family_router)
app.include_router(events_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    request.state.request_id = request_id
    started_at = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started_at) * 1000
    response.headers["X-Request-ID"] = request_id
    if request.url.path != "/metrics/prometheus":
        increment_counter(
            "http_requests_total",
            method=request.method.upper(),
            path=request.url.path,
            status=str(response.status_code),
        )
    logger.info(
        "http_request request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


def _count_error(request: Request, status_code: int) -> None:
    increment_counter(
        "http_errors_total",
        code=str(status_code),
        path=request.url.path,
        method=request.method.upper(),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    _count_error(request, exc.status_code)
    if exc.status_code >= 500:
        logger.error("Request failed request_id=%s code=%s message=%s", get_request_id(request), exc.code, exc.message)
    return error_json_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=exc.headers(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    message = detail if isinstance(detail, str) else "Request failed"
    _count_error(request, exc.status_code)
    return error_json_response(
        request,
        status_code=exc.status_code,
        code=f"http_{exc.status_code}",
        message=message,
        details=detail,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    _count_error(request, 400)
    return error_json_response(
        request,
        status_code=400,
        code="validation_error",
        message="Validation error",
        details=[{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()],
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _count_error(request, 500)
    logger.exception("Unhandled error request_id=%s", get_request_id(request), exc_info=exc)
    return error_json_response(request, status_code=500, code="internal_error", message="Internal server error")


@app.get("/health")
def health(request: Request):
    return {"ok": True, "status": "ok", "request_id": get_request_id(request)}


@app.get("/metrics/prometheus")
def metrics_prometheus():
    return PlainTextResponse(content=prometheus_text(), media_type="text/plain; version=0.0.4; charset=utf-8")
