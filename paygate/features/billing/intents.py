"""
Payment-intent issuer.

Validates the purchase request, applies the per-caller rate limit, resolves
the provider customer, mints an ephemeral key and creates the payment intent
with the reconciliation metadata the webhook later depends on.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from paygate.core.config import settings
from paygate.core.errors import RateLimitError
from paygate.core.logging import log_event, mask_id
from paygate.core.metrics import payment_intents_created_total, ratelimit_block_total
from paygate.core.ratelimit import FixedWindowRateLimiter
from paygate.features.billing.provider import PaymentProvider
from paygate.features.billing.validators import IntentRequest
from paygate.features.entitlements.models import Owner, PlanId
from paygate.features.entitlements.store import EntitlementStore

logger = logging.getLogger("paygate")


@dataclass(frozen=True)
class IssuedIntent:
    client_secret: str
    ephemeral_key_secret: str
    customer_id: str
    payment_intent_id: str

    def to_response(self) -> Dict[str, str]:
        # Only client-side credentials leave the service
        return {
            "paymentIntent": self.client_secret,
            "ephemeralKey": self.ephemeral_key_secret,
            "customer": self.customer_id,
        }


def build_intent_metadata(request: IntentRequest, environment: str) -> Dict[str, str]:
    """The webhook learns what to create from this metadata alone."""
    metadata = {
        "planId": request.plan.value,
        "deviceId": request.device_id,
        "environment": environment,
    }
    if request.user_id:
        metadata["userId"] = request.user_id
    if request.plan is PlanId.ONE_TIME and request.chat_id:
        metadata["chatId"] = request.chat_id
    return metadata


class PaymentIntentIssuer:
    def __init__(
        self,
        provider: PaymentProvider,
        store: EntitlementStore,
        rate_limiter: FixedWindowRateLimiter,
        environment: Optional[str] = None,
    ):
        self.provider = provider
        self.store = store
        self.rate_limiter = rate_limiter
        self.environment = environment or settings.ENV

    def issue(self, request: IntentRequest) -> IssuedIntent:
        identifier = request.user_id or request.device_id
        verdict = self.rate_limiter.check(identifier)
        if not verdict.allowed:
            ratelimit_block_total.inc(labels={"scope": "payment_intent"})
            log_event(
                "warning",
                "intent.rate_limited",
                device_id=request.device_id,
                user_id=request.user_id,
                error_code="rate_limited",
            )
            raise RateLimitError(retry_after=verdict.retry_after, limit=self.rate_limiter.max_requests)

        customer_id = self._resolve_customer(request)
        ephemeral_key = self.provider.create_ephemeral_key(customer_id)

        idempotency_key = None
        if request.idempotency_key:
            idempotency_key = f"{request.device_id}-{request.idempotency_key}"

        intent = self.provider.create_payment_intent(
            amount=request.amount,
            currency=request.currency,
            customer_id=customer_id,
            metadata=build_intent_metadata(request, self.environment),
            description=f"{request.plan.value} plan purchase",
            idempotency_key=idempotency_key,
        )
        payment_intents_created_total.inc(labels={"plan_id": request.plan.value})
        log_event(
            "info",
            "intent.created",
            device_id=request.device_id,
            user_id=request.user_id,
            payment_intent_id=intent.id,
            extra={"plan_id": request.plan.value, "amount": request.amount},
        )

        return IssuedIntent(
            client_secret=intent.client_secret or "",
            ephemeral_key_secret=ephemeral_key,
            customer_id=customer_id,
            payment_intent_id=intent.id,
        )

    def _resolve_customer(self, request: IntentRequest) -> str:
        owner = Owner.preferring_user(request.device_id, request.user_id)
        known = self.store.latest_customer_id(owner)
        if known:
            existing = self.provider.retrieve_customer(known)
            if existing:
                logger.info("intent.customer_reused", extra={"customer_id": mask_id(existing, 10)})
                return existing
            logger.info("intent.customer_gone", extra={"customer_id": mask_id(known, 10)})

        metadata = {
            "deviceId": request.device_id,
            "planId": request.plan.value,
            "environment": self.environment,
        }
        if request.user_id:
            metadata["userId"] = request.user_id
        customer_id = self.provider.create_customer(metadata)
        logger.info("intent.customer_created", extra={"customer_id": mask_id(customer_id, 10)})
        return customer_id
