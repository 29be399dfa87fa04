"""
Payment API routes.

- POST /api/payments/intent: Create payment intent + ephemeral key
- POST /api/payments/webhook: Handle Stripe webhooks (signed)
- POST /api/payments/verify: Manual verification fallback
- GET  /api/payments/prices: Price catalogue
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

from paygate.core.config import settings
from paygate.core.errors import BillingDisabledError
from paygate.core.ratelimit import FixedWindowRateLimiter
from paygate.features.billing.intents import PaymentIntentIssuer
from paygate.features.billing.prices import get_prices
from paygate.features.billing.provider import PaymentProvider
from paygate.features.billing.stripe_provider import StripeProvider
from paygate.features.billing.validators import validate_intent_request, validate_verify_request
from paygate.features.billing.verification import ManualVerifier
from paygate.features.billing.webhook import WebhookReconciler
from paygate.features.entitlements.store import EntitlementStore


router = APIRouter(prefix="/payments", tags=["payments"])


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def require_provider() -> PaymentProvider:
    if not billing_enabled():
        raise BillingDisabledError("Billing disabled: STRIPE_SECRET_KEY is not configured")
    return StripeProvider()


def get_store() -> EntitlementStore:
    return EntitlementStore()


def get_rate_limiter(request: Request) -> FixedWindowRateLimiter:
    return request.app.state.rate_limiter


class IntentRequestBody(BaseModel):
    """Request to create a payment intent."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Optional[StrictInt] = None
    currency: Optional[StrictStr] = None
    plan_id: Optional[StrictStr] = Field(None, alias="planId")
    device_id: Optional[StrictStr] = Field(None, alias="deviceId")
    user_id: Optional[StrictStr] = Field(None, alias="userId")
    chat_id: Optional[StrictStr] = Field(None, alias="chatId")
    idempotency_key: Optional[StrictStr] = Field(None, alias="idempotencyKey")


class IntentResponse(BaseModel):
    paymentIntent: str
    ephemeralKey: str
    customer: str


class VerifyRequestBody(BaseModel):
    """Request to verify a payment directly against the provider."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    payment_intent_id: Optional[StrictStr] = Field(None, alias="paymentIntentId")
    device_id: Optional[StrictStr] = Field(None, alias="deviceId")
    plan_id: Optional[StrictStr] = Field(None, alias="planId")
    chat_id: Optional[StrictStr] = Field(None, alias="chatId")


@router.post("/intent", response_model=IntentResponse)
def create_payment_intent(
    body: IntentRequestBody,
    provider: PaymentProvider = Depends(require_provider),
    store: EntitlementStore = Depends(get_store),
    rate_limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
):
    """
    Create a payment intent for an in-app purchase.

    Errors:
        400: Invalid input / card error
        429: Rate limited (Retry-After header set)
        502: Stripe unreachable
        503: Billing disabled
    """
    request = validate_intent_request(
        amount=body.amount,
        currency=body.currency,
        plan_id=body.plan_id,
        device_id=body.device_id,
        user_id=body.user_id,
        chat_id=body.chat_id,
        idempotency_key=body.idempotency_key,
    )
    issued = PaymentIntentIssuer(provider, store, rate_limiter).issue(request)
    return issued.to_response()


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    provider: PaymentProvider = Depends(require_provider),
    store: EntitlementStore = Depends(get_store),
):
    """
    Handle Stripe webhook events.

    Returns 200 for processed, duplicate and uninteresting events alike;
    5xx only when processing genuinely failed so Stripe retries.
    """
    body = await request.body()
    WebhookReconciler(provider, store).handle(body, stripe_signature)
    return {"received": True}


@router.post("/verify")
def verify_payment(
    body: VerifyRequestBody,
    provider: PaymentProvider = Depends(require_provider),
    store: EntitlementStore = Depends(get_store),
):
    request = validate_verify_request(
        payment_intent_id=body.payment_intent_id,
        device_id=body.device_id,
        plan_id=body.plan_id,
        chat_id=body.chat_id,
    )
    return ManualVerifier(provider, store).verify(request).to_response()


@router.get("/prices")
def list_prices(provider: PaymentProvider = Depends(require_provider)):
    return get_prices(provider).to_response()
