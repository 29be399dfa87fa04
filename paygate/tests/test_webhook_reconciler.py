"""
Webhook reconciliation: signature, idempotency, event types and the ledger.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from paygate.core.database import entitlements, get_db_session, payment_events
from paygate.core.errors import DatabaseError, PaymentProviderError, WebhookError
from paygate.core.metrics import entitlements_created_total, webhook_events_total
from paygate.features.billing.webhook import WebhookOutcome, WebhookReconciler
from paygate.features.entitlements.models import EntitlementStatus, Owner, PlanId
from paygate.tests.fakes import VALID_SIGNATURE, event_body
from paygate.tests.helpers import DEVICE_1, USER_1

SUCCEEDED = "payment_intent.succeeded"


@pytest.fixture
def reconciler(provider, store, clock):
    return WebhookReconciler(provider, store, clock=clock, assign_chat_from_metadata=False)


def _count(table):
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(table)).scalar()


def _ledger(event_id):
    with get_db_session() as session:
        return session.execute(
            select(payment_events).where(payment_events.c.stripe_event_id == event_id)
        ).mappings().fetchone()


def test_missing_signature_rejected(reconciler):
    with pytest.raises(WebhookError) as exc:
        reconciler.handle(event_body(SUCCEEDED, "pi_1", {"planId": "one-time", "deviceId": DEVICE_1}), None)
    assert exc.value.status_code == 400
    assert _count(entitlements) == 0
    assert _count(payment_events) == 0


def test_invalid_signature_rejected(reconciler):
    with pytest.raises(WebhookError):
        reconciler.handle(event_body(SUCCEEDED, "pi_1", {"planId": "one-time", "deviceId": DEVICE_1}), "t=1,v1=forged")
    assert _count(entitlements) == 0


def test_succeeded_creates_entitlement(reconciler, provider, store, clock):
    metadata = {"planId": "weekly", "deviceId": DEVICE_1}
    provider.add_intent("pi_1", metadata=metadata, customer="cus_9")

    result = reconciler.handle(event_body(SUCCEEDED, "pi_1", metadata), VALID_SIGNATURE)

    assert result.outcome is WebhookOutcome.CREATED
    row = store.find_by_payment_intent_id("pi_1")
    assert row.id == result.entitlement_id
    assert row.owner == Owner.device(DEVICE_1)
    assert row.plan_id is PlanId.WEEKLY
    assert row.status is EntitlementStatus.ACTIVE
    assert row.stripe_customer_id == "cus_9"
    assert row.purchased_at == clock.now
    assert row.expires_at == clock.now + timedelta(days=7)
    assert entitlements_created_total.value({"source": "webhook", "plan_id": "weekly"}) == 1


def test_duplicate_delivery_creates_one_row(reconciler, provider):
    metadata = {"planId": "monthly", "deviceId": DEVICE_1}
    provider.add_intent("pi_dup", metadata=metadata)
    body = event_body(SUCCEEDED, "pi_dup", metadata)

    first = reconciler.handle(body, VALID_SIGNATURE)
    second = reconciler.handle(body, VALID_SIGNATURE)

    assert first.outcome is WebhookOutcome.CREATED
    assert second.outcome is WebhookOutcome.ALREADY_PROCESSED
    assert second.entitlement_id == first.entitlement_id
    assert _count(entitlements) == 1
    assert _count(payment_events) == 1


def test_distinct_events_for_same_payment_create_one_row(reconciler, provider):
    metadata = {"planId": "one-time", "deviceId": DEVICE_1}
    provider.add_intent("pi_same", metadata=metadata)
    reconciler.handle(event_body(SUCCEEDED, "pi_same", metadata, event_id="evt_a"), VALID_SIGNATURE)
    reconciler.handle(event_body(SUCCEEDED, "pi_same", metadata, event_id="evt_b"), VALID_SIGNATURE)
    assert _count(entitlements) == 1
    assert _count(payment_events) == 2


def test_owner_is_user_when_metadata_has_user(reconciler, provider, store):
    metadata = {"planId": "one-time", "deviceId": DEVICE_1, "userId": USER_1}
    provider.add_intent("pi_u", metadata=metadata)
    reconciler.handle(event_body(SUCCEEDED, "pi_u", metadata), VALID_SIGNATURE)
    assert store.find_by_payment_intent_id("pi_u").owner == Owner.user(USER_1)


def test_chat_id_not_applied_by_default(reconciler, provider, store):
    metadata = {"planId": "one-time", "deviceId": DEVICE_1, "chatId": "chat-42"}
    provider.add_intent("pi_c", metadata=metadata)
    reconciler.handle(event_body(SUCCEEDED, "pi_c", metadata), VALID_SIGNATURE)
    row = store.find_by_payment_intent_id("pi_c")
    assert row.chat_id is None
    assert row.expires_at is None


def test_chat_id_applied_when_enabled(provider, store, clock):
    reconciler = WebhookReconciler(provider, store, clock=clock, assign_chat_from_metadata=True)
    metadata = {"planId": "one-time", "deviceId": DEVICE_1, "chatId": "chat-42"}
    provider.add_intent("pi_c2", metadata=metadata)
    reconciler.handle(event_body(SUCCEEDED, "pi_c2", metadata), VALID_SIGNATURE)
    assert store.find_by_payment_intent_id("pi_c2").chat_id == "chat-42"


@pytest.mark.parametrize(
    "metadata",
    [
        {"deviceId": DEVICE_1},
        {"planId": "weekly"},
        {"planId": "lifetime", "deviceId": DEVICE_1},
    ],
)
def test_bad_metadata_is_400_and_recorded(reconciler, metadata):
    body = event_body(SUCCEEDED, "pi_bad", metadata, event_id="evt_bad")
    with pytest.raises(WebhookError) as exc:
        reconciler.handle(body, VALID_SIGNATURE)
    assert exc.value.status_code == 400
    assert exc.value.code == "invalid_metadata"
    ledger = _ledger("evt_bad")
    assert ledger["processed"] is False or ledger["processed"] == 0
    assert "metadata" in ledger["error"]


def test_authoritative_status_checked_before_write(reconciler, provider):
    metadata = {"planId": "weekly", "deviceId": DEVICE_1}
    provider.add_intent("pi_p", status="processing", metadata=metadata)
    result = reconciler.handle(event_body(SUCCEEDED, "pi_p", metadata), VALID_SIGNATURE)
    assert result.outcome is WebhookOutcome.NOT_SUCCEEDED
    assert _count(entitlements) == 0


def test_already_processed_skips_provider_lookup(reconciler, provider):
    metadata = {"planId": "weekly", "deviceId": DEVICE_1}
    provider.add_intent("pi_x", metadata=metadata)
    body = event_body(SUCCEEDED, "pi_x", metadata)
    reconciler.handle(body, VALID_SIGNATURE)
    reconciler.handle(body, VALID_SIGNATURE)
    assert provider.retrieve_calls == ["pi_x"]


def test_provider_failure_surfaces_as_5xx(reconciler, provider):
    metadata = {"planId": "weekly", "deviceId": DEVICE_1}
    provider.fail_with = PaymentProviderError("boom", code="invalid_provider_request", status_code=400)
    with pytest.raises(PaymentProviderError) as exc:
        reconciler.handle(event_body(SUCCEEDED, "pi_f", metadata, event_id="evt_f"), VALID_SIGNATURE)
    assert exc.value.status_code == 502
    assert _ledger("evt_f")["error"]
    assert webhook_events_total.value({"event_type": SUCCEEDED, "outcome": "error"}) == 1


def test_store_failure_surfaces_as_database_error(reconciler, provider, store):
    metadata = {"planId": "weekly", "deviceId": DEVICE_1}
    provider.add_intent("pi_db", metadata=metadata)
    with patch.object(store, "insert", side_effect=DatabaseError("store down")):
        with pytest.raises(DatabaseError):
            reconciler.handle(event_body(SUCCEEDED, "pi_db", metadata, event_id="evt_db"), VALID_SIGNATURE)
    assert _ledger("evt_db")["error"] == "store down"

    # Provider retries the same event once the store recovers
    result = reconciler.handle(event_body(SUCCEEDED, "pi_db", metadata, event_id="evt_db"), VALID_SIGNATURE)
    assert result.outcome is WebhookOutcome.CREATED
    ledger = _ledger("evt_db")
    assert ledger["error"] is None
    assert ledger["outcome"] == "created"


def test_unrelated_event_ignored(reconciler):
    result = reconciler.handle(event_body("customer.created", "cus_1", {}), VALID_SIGNATURE)
    assert result.outcome is WebhookOutcome.IGNORED
    assert _count(entitlements) == 0


def test_payment_failed_only_logged(reconciler, provider):
    metadata = {"planId": "weekly", "deviceId": DEVICE_1}
    result = reconciler.handle(event_body("payment_intent.payment_failed", "pi_ff", metadata), VALID_SIGNATURE)
    assert result.outcome is WebhookOutcome.FAILED_LOGGED
    assert _count(entitlements) == 0
    assert provider.retrieve_calls == []


def test_canceled_marks_entitlement_cancelled(reconciler, provider, store):
    metadata = {"planId": "one-time", "deviceId": DEVICE_1}
    provider.add_intent("pi_cx", metadata=metadata)
    reconciler.handle(event_body(SUCCEEDED, "pi_cx", metadata), VALID_SIGNATURE)

    result = reconciler.handle(event_body("payment_intent.canceled", "pi_cx", metadata), VALID_SIGNATURE)
    assert result.outcome is WebhookOutcome.CANCELLED
    assert store.find_by_payment_intent_id("pi_cx").status is EntitlementStatus.CANCELLED
    assert _count(entitlements) == 1


def test_ledger_records_processed_event(reconciler, provider, clock):
    metadata = {"planId": "weekly", "deviceId": DEVICE_1}
    provider.add_intent("pi_l", metadata=metadata)
    reconciler.handle(event_body(SUCCEEDED, "pi_l", metadata, event_id="evt_l"), VALID_SIGNATURE)
    ledger = _ledger("evt_l")
    assert ledger["event_type"] == SUCCEEDED
    assert ledger["payment_intent_id"] == "pi_l"
    assert len(ledger["payload_hash"]) == 64
    assert bool(ledger["processed"]) is True
    assert ledger["outcome"] == "created"
    assert ledger["processed_at"].replace(tzinfo=timezone.utc) == clock.now


def test_redelivery_keeps_first_ledger_outcome(reconciler, provider, clock):
    metadata = {"planId": "weekly", "deviceId": DEVICE_1}
    provider.add_intent("pi_re", metadata=metadata)
    body = event_body(SUCCEEDED, "pi_re", metadata, event_id="evt_re")
    reconciler.handle(body, VALID_SIGNATURE)
    first_processed_at = clock.now

    clock.advance(minutes=5)
    second = reconciler.handle(body, VALID_SIGNATURE)

    assert second.outcome is WebhookOutcome.ALREADY_PROCESSED
    ledger = _ledger("evt_re")
    assert ledger["outcome"] == "created"
    assert ledger["processed_at"].replace(tzinfo=timezone.utc) == first_processed_at
    assert webhook_events_total.value({"event_type": SUCCEEDED, "outcome": "already_processed"}) == 1


def test_ledger_leaves_payment_intent_empty_for_other_objects(reconciler):
    body = event_body("charge.succeeded", "ch_1", {}, event_id="evt_ch", object_type="charge")
    result = reconciler.handle(body, VALID_SIGNATURE)

    assert result.outcome is WebhookOutcome.IGNORED
    ledger = _ledger("evt_ch")
    assert ledger["event_type"] == "charge.succeeded"
    assert ledger["payment_intent_id"] is None
