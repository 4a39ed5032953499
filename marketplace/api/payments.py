"""Payment routes: checkout (create/verify), admin refunds and reports, processor webhooks."""
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from marketplace.api.deps import get_current_user, get_payment_service, require_admin
from marketplace.core.config import settings
from marketplace.core.errors import SignatureError
from marketplace.core.rate_limit import limiter
from marketplace.models import User
from marketplace.schemas import (
    CreatePaymentOrderRequest,
    RefundRequest,
    SubscriptionRequest,
    VerifyPaymentRequest,
)
from marketplace.services.payment import PaymentService

log = logging.getLogger("marketplace.payments")

router = APIRouter(prefix="/payments", tags=["payments"])
_CHECKOUT_LIMIT = f"{settings.rate_limit_per_minute}/minute"


@router.get("/methods")
def payment_methods(service: PaymentService = Depends(get_payment_service)):
    return {"success": True, "methods": service.get_available_payment_methods()}


@router.post("/create-order")
@limiter.limit(_CHECKOUT_LIMIT)
def create_order(
    request: Request,
    body: CreatePaymentOrderRequest,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.create_payment_order(
        gateway=body.gateway,
        amount=body.amount,
        order_id=body.order_id,
        currency=body.currency,
        items=[item.model_dump() for item in body.items] if body.items else None,
        customer_data=body.customer_data.model_dump() if body.customer_data else None,
        user_id=user.id,
    )


@router.post("/verify")
@limiter.limit(_CHECKOUT_LIMIT)
def verify(
    request: Request,
    body: VerifyPaymentRequest,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.verify_payment(body.model_dump(exclude_none=True), user_id=user.id)


@router.post("/refund")
def refund(
    body: RefundRequest,
    admin: User = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    log.info("Refund requested by admin %s for order %s", admin.id, body.order_id)
    return service.process_refund(body.order_id, amount=body.amount, reason=body.reason)


@router.get("/history")
def history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.payment_history(user.id, page=page, limit=limit)


@router.get("/stats")
def stats(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    admin: User = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_payment_stats(start_date, end_date)


async def _webhook(gateway: str, request: Request, service: PaymentService):
    # Exact bytes: signatures are computed over the body as the processor sent it
    raw_body = await request.body()
    try:
        return await run_in_threadpool(service.handle_webhook, gateway, raw_body, request.headers)
    except SignatureError:
        # 400 so the processor retries; nothing was written
        return JSONResponse(status_code=400, content={"success": False, "error": "invalid signature"})


@router.post("/webhook/razorpay")
async def razorpay_webhook(request: Request, service: PaymentService = Depends(get_payment_service)):
    return await _webhook("razorpay", request, service)


@router.post("/webhook/stripe")
async def stripe_webhook(request: Request, service: PaymentService = Depends(get_payment_service)):
    return await _webhook("stripe", request, service)


@router.post("/webhook/paypal")
async def paypal_webhook(request: Request, service: PaymentService = Depends(get_payment_service)):
    return await _webhook("paypal", request, service)


@router.get("/test/{gateway}")
def test_gateway(
    gateway: str,
    admin: User = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    return service.test_connection(gateway)


@router.post("/subscriptions")
def create_subscription(
    body: SubscriptionRequest,
    admin: User = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    return service.create_subscription(body.gateway, body.data)
