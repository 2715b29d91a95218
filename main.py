from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterator, List, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from billing import (
    BillingConfig,
    BillingError,
    MalformedEventError,
    MissingUserReferenceError,
    PolarClient,
    SubscriptionReconciler,
    SubscriptionRepository,
    SubscriptionWebhookError,
    WebhookUnauthorizedError,
    check_database,
    create_checkout,
    init_billing_db,
    list_plan_catalog,
    load_billing_config,
    request_cancellation,
    resolve_user_plan,
    session_scope,
    verify_polar_webhook,
)
from billing.db import SessionFactory
from config import API_HOST, API_PORT, APP_VERSION, CORS_ORIGINS, LOG_LEVEL, ROOT_PATH, STARTUP_BOOTSTRAP_ENABLED
from errors import explain_error
from observability import configure_json_logging, get_logger, log_event

configure_json_logging(level=LOG_LEVEL)
APP_LOGGER = get_logger("sharebox.api")

BILLING_CONFIG: BillingConfig = load_billing_config()
# None means the default engine from config.DATABASE_URL.
SESSION_FACTORY: Optional[SessionFactory] = None
# None means real network calls to POLAR_API_BASE_URL.
POLAR_TRANSPORT: Optional[httpx.BaseTransport] = None


class WebhookAckResponse(BaseModel):
    message: str = "success"


class CheckoutRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=128)
    customer_email: Optional[str] = Field(default=None, max_length=320)
    customer_name: Optional[str] = Field(default=None, max_length=256)


class CheckoutResponse(BaseModel):
    checkout_id: str
    checkout_url: str


class CancelSubscriptionResponse(BaseModel):
    message: str = "success"
    cancel_requested: bool
    subscription_id: Optional[str] = None


class PlanCatalogItem(BaseModel):
    plan: str
    interval: Optional[str] = None
    product_id: Optional[str] = None
    benefits: List[str]


class UserPlanResponse(BaseModel):
    user_id: str
    plan: str
    status: str
    benefits: List[str]
    subscription_id: Optional[str] = None
    product_id: Optional[str] = None
    interval: Optional[str] = None
    current_period_end: Optional[str] = None
    cancel_at_period_end: bool = False


class HealthResponse(BaseModel):
    ok: bool
    database: bool


@asynccontextmanager
async def lifespan(app: FastAPI):
    if STARTUP_BOOTSTRAP_ENABLED:
        init_billing_db()
    if not BILLING_CONFIG.webhook_secret:
        log_event(APP_LOGGER, logging.ERROR, "billing.config.webhook_secret_missing")
    if not BILLING_CONFIG.products:
        log_event(APP_LOGGER, logging.ERROR, "billing.config.product_map_empty")
    app.state.reconciler = SubscriptionReconciler(BILLING_CONFIG, session_factory=SESSION_FACTORY)
    yield


app = FastAPI(title="Sharebox Billing", version=APP_VERSION, root_path=ROOT_PATH, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Trace-Id", "X-User-Id"],
)


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
    )
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    trace_id = _request_trace_id(request)
    explained = explain_error(exc.error_code) or {}
    log_event(
        APP_LOGGER,
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "billing.webhook.rejected" if isinstance(exc, SubscriptionWebhookError) else "billing.request.rejected",
        trace_id=trace_id,
        error_code=exc.error_code,
        status_code=exc.status_code,
        event_type=exc.event_type,
        subscription_id=exc.subscription_id,
        detail=str(exc),
    )
    # Callers get the catalogue message; the exception detail stays in the log.
    message = explained.get("message") or str(exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": message,
            "hint": explained.get("hint"),
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


def _audit_outcome(exc: SubscriptionWebhookError) -> str:
    if isinstance(exc, WebhookUnauthorizedError):
        return "rejected_signature"
    if isinstance(exc, MalformedEventError):
        return "rejected_payload"
    if isinstance(exc, MissingUserReferenceError):
        return "rejected_validation"
    return "error"


def _record_delivery(
    *,
    raw_text: str,
    outcome: str,
    event_type: Optional[str],
    webhook_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    signature_valid: bool = False,
    detail: Optional[str] = None,
) -> None:
    with session_scope(SESSION_FACTORY) as session:
        SubscriptionRepository(session).record_audit_log(
            event_type=event_type or "polar.webhook",
            raw_payload=raw_text,
            outcome=outcome,
            webhook_id=webhook_id,
            provider_subscription_id=subscription_id,
            signature_valid=signature_valid,
            detail=detail,
        )


def _record_rejection(**fields: Any) -> None:
    # The audit row must never mask the typed error the provider is waiting for.
    try:
        _record_delivery(**fields)
    except SQLAlchemyError as exc:
        log_event(
            APP_LOGGER,
            logging.ERROR,
            "billing.webhook.audit_failed",
            outcome=fields.get("outcome"),
            event_type=fields.get("event_type"),
            webhook_id=fields.get("webhook_id"),
            exception_type=type(exc).__name__,
            exception_message=str(exc),
        )


def _process_polar_delivery(reconciler: SubscriptionReconciler, raw: bytes, headers: Dict[str, str]) -> Dict[str, Any]:
    raw_text = raw.decode("utf-8", errors="replace")
    webhook_id = headers.get("webhook-id") or None
    signature_valid = False
    event_type: Optional[str] = None
    try:
        verified = verify_polar_webhook(
            raw,
            headers,
            BILLING_CONFIG.webhook_secret,
            tolerance_seconds=BILLING_CONFIG.webhook_tolerance_seconds,
        )
        signature_valid = True
        event_type = verified.event_type
        result = reconciler.reconcile(verified.event_type, verified.payload, verified.event_at)
    except SubscriptionWebhookError as exc:
        # Body parsing only happens once the signature has matched.
        signature_valid = signature_valid or isinstance(exc, MalformedEventError)
        _record_rejection(
            raw_text=raw_text,
            outcome=_audit_outcome(exc),
            event_type=exc.event_type or event_type,
            webhook_id=webhook_id,
            subscription_id=exc.subscription_id,
            signature_valid=signature_valid,
            detail=str(exc),
        )
        raise
    except Exception as exc:
        _record_rejection(
            raw_text=raw_text,
            outcome="error",
            event_type=event_type,
            webhook_id=webhook_id,
            signature_valid=signature_valid,
            detail=f"{type(exc).__name__}: {exc}",
        )
        raise
    _record_delivery(
        raw_text=raw_text,
        outcome=result.status,
        event_type=result.event_type,
        webhook_id=webhook_id,
        subscription_id=result.subscription_id,
        signature_valid=True,
        detail=result.reason,
    )
    return result.as_dict()


def get_reconciler(request: Request) -> SubscriptionReconciler:
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        raise RuntimeError("subscription reconciler not initialised")
    return reconciler


def get_polar_client() -> Iterator[PolarClient]:
    client = PolarClient.from_config(BILLING_CONFIG, transport=POLAR_TRANSPORT)
    try:
        yield client
    finally:
        client.close()


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # Set by the upstream auth gateway after session validation.
    user_id = str(x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="missing user identity")
    return user_id


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(ok=True, database=check_database(SESSION_FACTORY))


@app.post("/webhooks/subscriptions/polar", status_code=201, response_model=WebhookAckResponse)
async def polar_webhook(
    request: Request,
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> WebhookAckResponse:
    # Verification must see the exact bytes the provider signed.
    raw = await request.body()
    headers = {key.lower(): value for key, value in request.headers.items()}
    result = await run_in_threadpool(_process_polar_delivery, reconciler, raw, headers)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "billing.webhook.acknowledged",
        trace_id=_request_trace_id(request),
        **result,
    )
    return WebhookAckResponse(message="success")


@app.get("/billing/plans", response_model=List[PlanCatalogItem])
def billing_plans() -> List[PlanCatalogItem]:
    return [PlanCatalogItem(**item) for item in list_plan_catalog(BILLING_CONFIG.products)]


@app.get("/billing/subscription/me", response_model=UserPlanResponse)
def my_subscription(user_id: str = Depends(get_current_user_id)) -> UserPlanResponse:
    with session_scope(SESSION_FACTORY) as session:
        user_plan = resolve_user_plan(SubscriptionRepository(session), user_id, products=BILLING_CONFIG.products)
    return UserPlanResponse(
        user_id=user_plan.user_id,
        plan=user_plan.plan.value,
        status=user_plan.status,
        benefits=list(user_plan.benefits),
        subscription_id=user_plan.subscription_id,
        product_id=user_plan.product_id,
        interval=user_plan.interval,
        current_period_end=user_plan.current_period_end.isoformat() if user_plan.current_period_end else None,
        cancel_at_period_end=user_plan.cancel_at_period_end,
    )


@app.post("/billing/checkout/polar", response_model=CheckoutResponse)
def polar_checkout(
    req: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    client: PolarClient = Depends(get_polar_client),
) -> CheckoutResponse:
    session = create_checkout(
        client,
        BILLING_CONFIG,
        user_id=user_id,
        product_id=req.product_id,
        customer_email=req.customer_email,
        customer_name=req.customer_name,
        session_factory=SESSION_FACTORY,
    )
    return CheckoutResponse(checkout_id=session.checkout_id, checkout_url=session.checkout_url)


@app.post("/billing/subscription/cancel", response_model=CancelSubscriptionResponse)
def cancel_my_subscription(
    user_id: str = Depends(get_current_user_id),
    client: PolarClient = Depends(get_polar_client),
) -> CancelSubscriptionResponse:
    outcome = request_cancellation(client, user_id=user_id, session_factory=SESSION_FACTORY)
    return CancelSubscriptionResponse(cancel_requested=outcome.requested, subscription_id=outcome.subscription_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=API_HOST, port=API_PORT, log_config=None)
