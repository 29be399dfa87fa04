"""
Webhook reconciler.

Stateless per delivery:
1. Verify signature (the only authentication on this endpoint)
2. Record the delivery in the payment_events ledger
3. Dispatch on event type
4. Mark the ledger row processed, or store the error and re-raise

Idempotency is keyed on the payment-intent id, not the event id: the same
payment can arrive as several events and the entitlement store guarantees
one row per payment. Only genuine processing failures escape as errors, so
the provider's retry-with-backoff is engaged for those and nothing else.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from paygate.core.config import settings
from paygate.core.database import get_db_session, payment_events
from paygate.core.errors import AppError, DatabaseError, PaymentProviderError, WebhookError
from paygate.core.logging import log_event
from paygate.core.metrics import entitlements_created_total, webhook_events_total
from paygate.features.billing.provider import PaymentProvider, ProviderEvent
from paygate.features.entitlements.models import (
    Inserted,
    Owner,
    PlanId,
    build_new_entitlement,
    utcnow,
)
from paygate.features.entitlements.store import EntitlementStore

logger = logging.getLogger("paygate")

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
PAYMENT_CANCELED = "payment_intent.canceled"


class WebhookOutcome(str, Enum):
    CREATED = "created"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    NOT_SUCCEEDED = "not_succeeded"
    CANCELLED = "cancelled"
    FAILED_LOGGED = "failed_logged"


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: WebhookOutcome
    entitlement_id: Optional[str] = None


class WebhookReconciler:
    def __init__(
        self,
        provider: PaymentProvider,
        store: EntitlementStore,
        session_factory: Callable = get_db_session,
        clock: Callable[[], datetime] = utcnow,
        assign_chat_from_metadata: Optional[bool] = None,
    ):
        self.provider = provider
        self.store = store
        self.session_factory = session_factory
        self.clock = clock
        if assign_chat_from_metadata is None:
            assign_chat_from_metadata = settings.WEBHOOK_ASSIGN_CHAT_ID
        self.assign_chat_from_metadata = assign_chat_from_metadata

    def handle(self, body: bytes, signature: Optional[str]) -> WebhookResult:
        event = self.provider.construct_event(body, signature)
        payload_hash = hashlib.sha256(body).hexdigest()
        self._record_event(event, payload_hash)

        try:
            result = self._dispatch(event)
        except Exception as exc:
            self._mark_failed(event, exc)
            webhook_events_total.inc(labels={"event_type": event.type, "outcome": "error"})
            raise

        self._mark_processed(event, result.outcome)
        webhook_events_total.inc(labels={"event_type": event.type, "outcome": result.outcome.value})
        return result

    def _dispatch(self, event: ProviderEvent) -> WebhookResult:
        if event.type == PAYMENT_SUCCEEDED:
            return self._handle_succeeded(event)
        if event.type == PAYMENT_FAILED:
            log_event(
                "warning",
                "webhook.payment_failed",
                payment_intent_id=event.payment_intent_id,
                event_type=event.type,
                extra={"last_payment_error": (event.object.get("last_payment_error") or {}).get("message")},
            )
            return WebhookResult(event.id, event.type, WebhookOutcome.FAILED_LOGGED)
        if event.type == PAYMENT_CANCELED:
            cancelled = 0
            if event.payment_intent_id:
                cancelled = self.store.cancel_by_payment_intent_id(event.payment_intent_id)
            log_event(
                "warning",
                "webhook.payment_canceled",
                payment_intent_id=event.payment_intent_id,
                event_type=event.type,
                extra={"entitlements_cancelled": cancelled},
            )
            return WebhookResult(event.id, event.type, WebhookOutcome.CANCELLED)

        logger.info("webhook.ignored", extra={"event_type": event.type})
        return WebhookResult(event.id, event.type, WebhookOutcome.IGNORED)

    def _handle_succeeded(self, event: ProviderEvent) -> WebhookResult:
        payment_intent_id = event.payment_intent_id
        if not payment_intent_id:
            raise WebhookError("Event has no payment intent id", code="invalid_event")

        metadata = event.metadata
        plan_value = metadata.get("planId")
        device_id = metadata.get("deviceId")
        if not plan_value or not device_id:
            raise WebhookError("Missing planId or deviceId in metadata", code="invalid_metadata")
        try:
            plan = PlanId.parse(plan_value)
        except ValueError:
            raise WebhookError(f"Unknown planId in metadata: {plan_value}", code="invalid_metadata")

        existing = self.store.find_by_payment_intent_id(payment_intent_id)
        if existing:
            log_event(
                "info",
                "webhook.already_processed",
                payment_intent_id=payment_intent_id,
                event_type=event.type,
                extra={"entitlement_id": existing.id},
            )
            return WebhookResult(event.id, event.type, WebhookOutcome.ALREADY_PROCESSED, existing.id)

        # Never trust the event body alone for the payment status
        try:
            intent = self.provider.retrieve_payment_intent(payment_intent_id)
        except PaymentProviderError as exc:
            raise PaymentProviderError(
                f"Could not confirm payment intent: {exc.message}", code=exc.code, status_code=502
            ) from exc

        if intent.status != "succeeded":
            log_event(
                "warning",
                "webhook.not_succeeded",
                payment_intent_id=payment_intent_id,
                event_type=event.type,
                extra={"status": intent.status},
            )
            return WebhookResult(event.id, event.type, WebhookOutcome.NOT_SUCCEEDED)

        user_id = intent.metadata.get("userId") or metadata.get("userId")
        chat_id = None
        if self.assign_chat_from_metadata:
            chat_id = intent.metadata.get("chatId") or metadata.get("chatId")

        new = build_new_entitlement(
            owner=Owner.preferring_user(device_id, user_id),
            plan=plan,
            payment_intent_id=payment_intent_id,
            customer_id=intent.customer or event.customer,
            purchased_at=self.clock(),
            chat_id=chat_id,
        )
        result = self.store.insert(new)

        if isinstance(result, Inserted):
            entitlements_created_total.inc(labels={"source": "webhook", "plan_id": plan.value})
            log_event(
                "info",
                "webhook.entitlement_created",
                device_id=device_id,
                user_id=user_id,
                payment_intent_id=payment_intent_id,
                event_type=event.type,
                extra={"entitlement_id": result.entitlement_id, "plan_id": plan.value},
            )
            return WebhookResult(event.id, event.type, WebhookOutcome.CREATED, result.entitlement_id)

        log_event(
            "info",
            "webhook.already_processed",
            payment_intent_id=payment_intent_id,
            event_type=event.type,
            extra={"entitlement_id": result.entitlement_id},
        )
        return WebhookResult(event.id, event.type, WebhookOutcome.ALREADY_PROCESSED, result.entitlement_id)

    def _record_event(self, event: ProviderEvent, payload_hash: str) -> None:
        try:
            with self.session_factory() as session:
                existing = session.execute(
                    select(payment_events.c.id).where(payment_events.c.stripe_event_id == event.id)
                ).fetchone()
                if existing:
                    return
                session.execute(
                    payment_events.insert().values(
                        id=str(uuid4()),
                        stripe_event_id=event.id,
                        event_type=event.type,
                        payment_intent_id=event.payment_intent_id,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
        except IntegrityError:
            # Concurrent redelivery recorded it first
            return
        except SQLAlchemyError as exc:
            raise DatabaseError("Could not record payment event") from exc

    def _mark_processed(self, event: ProviderEvent, outcome: WebhookOutcome) -> None:
        try:
            with self.session_factory() as session:
                session.execute(
                    update(payment_events)
                    .where(payment_events.c.stripe_event_id == event.id)
                    # First successful processing wins; redeliveries keep the original outcome
                    .where(payment_events.c.processed.is_(False))
                    .values(processed=True, processed_at=self.clock(), outcome=outcome.value, error=None)
                )
        except SQLAlchemyError as exc:
            raise DatabaseError("Could not update payment event") from exc

    def _mark_failed(self, event: ProviderEvent, exc: Exception) -> None:
        message = exc.message if isinstance(exc, AppError) else str(exc)
        try:
            with self.session_factory() as session:
                session.execute(
                    update(payment_events)
                    .where(payment_events.c.stripe_event_id == event.id)
                    .where(payment_events.c.processed.is_(False))
                    .values(error=message[:1000])
                )
        except SQLAlchemyError as ledger_exc:
            # The original failure is re-raised by the caller
            logger.error(
                "webhook.ledger_update_failed",
                extra={"event_id": event.id, "error": str(ledger_exc)},
            )
