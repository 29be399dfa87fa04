"""
Client purchase orchestrator.

issue intent -> present checkout -> poll access -> manual verification.

User cancellation and a still-pending payment are not failures. Polling is
bounded (first wait 500 ms, then 1000 ms between checks); when it runs out
the manual verifier decides, and a negative answer becomes a recoverable
verification timeout rather than a generic failure.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from paygate.core.config import settings
from paygate.features.entitlements.models import PlanId

logger = logging.getLogger("paygate")

VERIFICATION_TIMEOUT_MESSAGE = (
    "Your payment is still being confirmed. Please check again in a moment."
)


class CheckoutStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class CheckoutResult:
    status: CheckoutStatus
    error: Optional[str] = None


@dataclass(frozen=True)
class IntentHandle:
    """What the client needs from the issuer to open checkout."""
    client_secret: str
    ephemeral_key: str
    customer_id: str

    @property
    def payment_intent_id(self) -> str:
        # client secrets look like "pi_123_secret_abc"
        return self.client_secret.split("_secret_")[0]


class PurchaseOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"
    VERIFICATION_TIMEOUT = "verification_timeout"


@dataclass(frozen=True)
class PurchaseResult:
    outcome: PurchaseOutcome
    error: Optional[str] = None
    payment_intent_id: Optional[str] = None
    verified_manually: bool = False

    @property
    def is_failure(self) -> bool:
        return self.outcome in (PurchaseOutcome.FAILED, PurchaseOutcome.VERIFICATION_TIMEOUT)


class PurchaseOrchestrator:
    def __init__(
        self,
        issue_intent: Callable[[PlanId, Optional[str]], IntentHandle],
        present_checkout: Callable[[IntentHandle], CheckoutResult],
        has_access: Callable[[Optional[str]], bool],
        verify_payment: Callable[[str, PlanId, Optional[str]], bool],
        sleep: Callable[[float], None] = time.sleep,
        attempts: Optional[int] = None,
        first_delay_ms: Optional[int] = None,
        interval_ms: Optional[int] = None,
    ):
        self.issue_intent = issue_intent
        self.present_checkout = present_checkout
        self.has_access = has_access
        self.verify_payment = verify_payment
        self.sleep = sleep
        self.attempts = attempts if attempts is not None else settings.PURCHASE_POLL_ATTEMPTS
        self.first_delay_ms = first_delay_ms if first_delay_ms is not None else settings.PURCHASE_POLL_FIRST_DELAY_MS
        self.interval_ms = interval_ms if interval_ms is not None else settings.PURCHASE_POLL_INTERVAL_MS

    def purchase(self, plan: PlanId, chat_id: Optional[str] = None) -> PurchaseResult:
        try:
            intent = self.issue_intent(plan, chat_id)
        except Exception as exc:
            logger.warning("purchase.intent_failed", extra={"plan_id": plan.value, "error": str(exc)})
            return PurchaseResult(PurchaseOutcome.FAILED, error=str(exc) or "Payment failed")

        checkout = self.present_checkout(intent)
        if checkout.status is CheckoutStatus.CANCELLED:
            logger.info("purchase.cancelled", extra={"plan_id": plan.value})
            return PurchaseResult(PurchaseOutcome.CANCELLED, payment_intent_id=intent.payment_intent_id)
        if checkout.status is CheckoutStatus.FAILED:
            return PurchaseResult(
                PurchaseOutcome.FAILED,
                error=checkout.error or "Payment failed",
                payment_intent_id=intent.payment_intent_id,
            )

        if self._poll_access(chat_id):
            return PurchaseResult(PurchaseOutcome.SUCCEEDED, payment_intent_id=intent.payment_intent_id)

        return self._fallback(intent, plan, chat_id)

    def _poll_access(self, chat_id: Optional[str]) -> bool:
        for attempt in range(1, self.attempts + 1):
            delay_ms = self.first_delay_ms if attempt == 1 else self.interval_ms
            self.sleep(delay_ms / 1000.0)
            try:
                if self.has_access(chat_id):
                    logger.info("purchase.access_confirmed", extra={"attempt": attempt})
                    return True
            except Exception as exc:
                # A failed tick counts as "not yet"; the loop stays bounded
                logger.warning("purchase.poll_error", extra={"attempt": attempt, "error": str(exc)})
        return False

    def _fallback(self, intent: IntentHandle, plan: PlanId, chat_id: Optional[str]) -> PurchaseResult:
        payment_intent_id = intent.payment_intent_id
        try:
            verified = self.verify_payment(payment_intent_id, plan, chat_id)
        except Exception as exc:
            logger.warning("purchase.verify_failed", extra={"error": str(exc)})
            verified = False

        if verified:
            return PurchaseResult(
                PurchaseOutcome.SUCCEEDED,
                payment_intent_id=payment_intent_id,
                verified_manually=True,
            )
        return PurchaseResult(
            PurchaseOutcome.VERIFICATION_TIMEOUT,
            error=VERIFICATION_TIMEOUT_MESSAGE,
            payment_intent_id=payment_intent_id,
        )
