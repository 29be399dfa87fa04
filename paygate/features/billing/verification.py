"""
Manual payment verification.

Client-invoked fallback once polling gives up on the webhook. The provider is
the source of truth for the payment status; nothing the client declares
beyond identifiers is trusted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from paygate.core.errors import ValidationError
from paygate.core.logging import log_event
from paygate.core.metrics import entitlements_created_total
from paygate.features.billing.provider import PaymentProvider
from paygate.features.billing.validators import VerifyRequest
from paygate.features.entitlements.models import (
    Inserted,
    Owner,
    build_new_entitlement,
    utcnow,
)
from paygate.features.entitlements.store import EntitlementStore

logger = logging.getLogger("paygate")


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    entitlement_exists: bool = False
    entitlement_created: bool = False
    entitlement_id: Optional[str] = None
    reason: Optional[str] = None
    status: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success}
        if self.entitlement_exists:
            body["entitlementExists"] = True
        if self.entitlement_created:
            body["entitlementCreated"] = True
        if self.entitlement_id:
            body["entitlementId"] = self.entitlement_id
        if self.reason:
            body["reason"] = self.reason
        if self.status:
            body["status"] = self.status
        return body


class ManualVerifier:
    def __init__(
        self,
        provider: PaymentProvider,
        store: EntitlementStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.provider = provider
        self.store = store
        self.clock = clock

    def verify(self, request: VerifyRequest) -> VerificationResult:
        existing = self.store.find_by_payment_intent_id(request.payment_intent_id)
        if existing:
            log_event(
                "info",
                "verify.already_exists",
                device_id=request.device_id,
                payment_intent_id=request.payment_intent_id,
            )
            return VerificationResult(success=True, entitlement_exists=True, entitlement_id=existing.id)

        intent = self.provider.retrieve_payment_intent(request.payment_intent_id)

        if intent.status != "succeeded":
            # Still pending is a normal outcome, not an error
            log_event(
                "info",
                "verify.not_succeeded",
                device_id=request.device_id,
                payment_intent_id=request.payment_intent_id,
                extra={"status": intent.status},
            )
            return VerificationResult(success=False, reason="Payment not succeeded", status=intent.status)

        declared_plan = intent.metadata.get("planId")
        declared_device = intent.metadata.get("deviceId")
        if declared_plan != request.plan.value or declared_device != request.device_id:
            log_event(
                "warning",
                "verify.metadata_mismatch",
                device_id=request.device_id,
                payment_intent_id=request.payment_intent_id,
                error_code="metadata_mismatch",
            )
            raise ValidationError("Payment metadata mismatch", field="paymentIntentId", code="metadata_mismatch")

        user_id = intent.metadata.get("userId")
        new = build_new_entitlement(
            owner=Owner.preferring_user(request.device_id, user_id),
            plan=request.plan,
            payment_intent_id=intent.id,
            customer_id=intent.customer,
            purchased_at=self.clock(),
            chat_id=request.chat_id or intent.metadata.get("chatId"),
        )
        result = self.store.insert(new)

        if isinstance(result, Inserted):
            entitlements_created_total.inc(labels={"source": "verify", "plan_id": request.plan.value})
            log_event(
                "info",
                "verify.entitlement_created",
                device_id=request.device_id,
                user_id=user_id,
                payment_intent_id=intent.id,
                extra={"entitlement_id": result.entitlement_id, "plan_id": request.plan.value},
            )
            return VerificationResult(success=True, entitlement_created=True, entitlement_id=result.entitlement_id)

        # The webhook won the race between the existence check and our insert
        return VerificationResult(success=True, entitlement_exists=True, entitlement_id=result.entitlement_id)
