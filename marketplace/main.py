import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root wherever uvicorn is started from
_PROJ_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJ_ROOT / ".env")

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from marketplace.api.payments import router as payments_router
from marketplace.core.config import cors_origins_list, settings
from marketplace.core.database import engine, init_db
from marketplace.core.errors import PaymentError, ValidationError
from marketplace.core.rate_limit import limiter
from marketplace.logging import setup_logging
from marketplace.models import ErrorLog
from marketplace.services.gateways import build_gateways
from marketplace.services.payment import PaymentService
from marketplace.services.payment_repository import OrderPaymentRepository

setup_logging(level=logging.INFO)
log = logging.getLogger("marketplace")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    gateways = build_gateways(settings)
    app.state.payment_service = PaymentService(
        gateways,
        OrderPaymentRepository(engine),
        priority=settings.gateway_priority,
    )
    log.info("Payment gateways enabled: %s", ", ".join(g.value for g in gateways))
    yield


app = FastAPI(
    title="Marketplace Payments API",
    description="Payment orchestration over Razorpay, Stripe, PayPal and cash on delivery",
    lifespan=lifespan,
)
app.state.limiter = limiter


def _error_response(request: Request, status_code: int, detail: str, code: str | None = None, **extra) -> JSONResponse:
    body = {"success": False, "error": detail, "status_code": status_code}
    if code:
        body["code"] = code
    rid = getattr(request.state, "request_id", None)
    if rid:
        body["request_id"] = rid
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.exception_handler(PaymentError)
def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    if exc.status_code >= 500:
        log.warning("Payment error %s on %s: %s", exc.code, request.url.path, exc.message)
    return _error_response(request, exc.status_code, exc.message, exc.code, retryable=exc.retryable)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    log.warning("Rate limit exceeded: path=%s detail=%s", request.url.path, exc.detail)
    return _error_response(request, 429, "Too many requests. Please wait a minute.", "rate_limited")


app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errs = exc.errors()
    log.info("Request validation error: path=%s method=%s detail=%s", request.url.path, request.method, errs)
    first = errs[0] if errs else {}
    loc = [str(p) for p in first.get("loc") or [] if p != "body"]
    msg = first.get("msg") or "Invalid request."
    if loc:
        msg = f"{'.'.join(loc)}: {msg}"
    return _error_response(request, ValidationError.status_code, msg, "invalid_request", errors=errs)


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    response = _error_response(request, exc.status_code, detail)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled exception: path=%s %s", request.url.path, exc, exc_info=exc)
    try:
        with Session(engine) as db:
            db.add(ErrorLog(
                user_id=None,
                endpoint=request.url.path,
                method=request.method,
                error_message=str(exc)[:2000],
                stack_trace="".join(traceback.format_exception(exc))[:10000],
            ))
            db.commit()
    except SQLAlchemyError as e:
        log.warning("ErrorLog write failed: %s", e)
    return _error_response(request, 500, "Unexpected server error.", "internal_error")


@app.middleware("http")
async def request_id_and_latency(request: Request, call_next):
    request.state.request_id = str(uuid.uuid4())
    start = time.perf_counter()
    response = await call_next(request)
    latency_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request.state.request_id
    log.info(
        "request_id=%s method=%s path=%s status=%s latency_ms=%.2f",
        request.state.request_id,
        request.method,
        request.url.path,
        response.status_code,
        latency_ms,
    )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(payments_router)


@app.get("/health")
def health(request: Request):
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        log.warning("Health check database error: %s", e)
        database = "error"
    service = getattr(request.app.state, "payment_service", None)
    gateways = [m["id"] for m in service.get_available_payment_methods()] if service else []
    return {"status": "ok", "database": database, "gateways": gateways}
