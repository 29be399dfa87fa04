"""
Access resolution, lazy expiry and chat assignment.
"""
from datetime import datetime, timedelta, timezone

from paygate.core.metrics import access_checks_total
from paygate.features.entitlements.access import AccessResolver, AssignmentService
from paygate.features.entitlements.models import EntitlementStatus, Owner, PlanId
from paygate.tests.helpers import DEVICE_1, DEVICE_2, USER_1, insert_row

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
OWNER = Owner.device(DEVICE_1)


def _resolver(store, clock=None):
    return AccessResolver(store, clock=clock or (lambda: NOW))


def test_no_entitlements_denies(store):
    assert _resolver(store).has_access(OWNER, "chat-1") is False
    assert access_checks_total.value({"result": "denied"}) == 1


def test_row_without_payment_reference_never_grants(store):
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1, payment_intent_id=None)
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1, payment_intent_id="", chat_id="chat-1")
    insert_row(plan=PlanId.MONTHLY, device_id=DEVICE_1, payment_intent_id="   ", expires_at=NOW + timedelta(days=10))
    resolver = _resolver(store)
    for chat in ("chat-1", "chat-2", None):
        assert resolver.has_access(OWNER, chat) is False
    assert resolver.has_active_subscription(OWNER) is False


def test_one_time_requires_chat_context(store):
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1)
    assert _resolver(store).has_access(OWNER) is False


def test_one_time_scoping(store):
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1)
    resolver = _resolver(store)
    assigner = AssignmentService(store)

    assert resolver.has_access(OWNER, "chat-a") is True
    assert assigner.assign_to_chat(OWNER, "chat-a") is not None
    assert resolver.has_access(OWNER, "chat-b") is False
    assert resolver.has_access(OWNER, "chat-a") is True


def test_one_time_bound_elsewhere_falls_through_to_next_candidate(store):
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1, chat_id="chat-a", purchased_at=NOW - timedelta(days=1))
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1, purchased_at=NOW - timedelta(days=2))
    assert _resolver(store).has_access(OWNER, "chat-b") is True


def test_subscription_grants_any_chat(store):
    insert_row(plan=PlanId.WEEKLY, device_id=DEVICE_1, expires_at=NOW + timedelta(days=3))
    resolver = _resolver(store)
    assert resolver.has_access(OWNER, "chat-1") is True
    assert resolver.has_access(OWNER, "chat-2") is True
    assert resolver.has_access(OWNER) is True
    assert resolver.has_active_subscription(OWNER) is True


def test_lazy_expiry(store):
    entitlement_id = insert_row(plan=PlanId.MONTHLY, device_id=DEVICE_1, expires_at=NOW - timedelta(seconds=1))
    resolver = _resolver(store)

    assert resolver.has_access(OWNER, "chat-1") is False
    row = store.find_by_owner(OWNER)[0]
    assert row.id == entitlement_id
    assert row.status is EntitlementStatus.EXPIRED

    # Second read: row is no longer a candidate, no second transition
    assert resolver.has_access(OWNER, "chat-1") is False
    assert store.find_by_owner(OWNER)[0].status is EntitlementStatus.EXPIRED


def test_expiry_boundary_is_exclusive(store):
    insert_row(plan=PlanId.WEEKLY, device_id=DEVICE_1, expires_at=NOW)
    assert _resolver(store).has_access(OWNER) is False


def test_expired_subscription_does_not_hide_valid_one_time(store):
    insert_row(plan=PlanId.WEEKLY, device_id=DEVICE_1, expires_at=NOW - timedelta(days=1), purchased_at=NOW - timedelta(days=8))
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1, purchased_at=NOW - timedelta(days=30))
    resolver = _resolver(store)
    assert resolver.has_access(OWNER, "chat-9") is True
    assert resolver.has_active_subscription(OWNER) is False


def test_subscription_missing_expiry_is_skipped(store, caplog):
    insert_row(plan=PlanId.MONTHLY, device_id=DEVICE_1, expires_at=None)
    with caplog.at_level("WARNING", logger="paygate"):
        assert _resolver(store).has_access(OWNER, "chat-1") is False
    assert any(r.getMessage() == "access.subscription_missing_expiry" for r in caplog.records)


def test_cancelled_rows_never_grant(store):
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1, status="cancelled")
    assert _resolver(store).has_access(OWNER, "chat-1") is False


def test_owners_are_isolated(store):
    insert_row(plan=PlanId.WEEKLY, device_id=DEVICE_2, expires_at=NOW + timedelta(days=1))
    insert_row(plan=PlanId.WEEKLY, user_id=USER_1, expires_at=NOW + timedelta(days=1))
    assert _resolver(store).has_access(OWNER) is False
    assert _resolver(store).has_access(Owner.user(USER_1)) is True


def test_assign_without_unassigned_entitlement_is_noop(store):
    insert_row(plan=PlanId.WEEKLY, device_id=DEVICE_1, expires_at=NOW + timedelta(days=1))
    assert AssignmentService(store).assign_to_chat(OWNER, "chat-1") is None


def test_reassigning_same_chat_does_not_consume_second_purchase(store):
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1, purchased_at=NOW - timedelta(days=2))
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1, purchased_at=NOW - timedelta(days=1))
    assigner = AssignmentService(store)

    first = assigner.assign_to_chat(OWNER, "chat-a")
    again = assigner.assign_to_chat(OWNER, "chat-a")
    assert again == first
    unbound = store.find_active_by_owner(OWNER, plan=PlanId.ONE_TIME, unassigned_only=True)
    assert len(unbound) == 1


def test_two_chats_racing_for_one_purchase(store):
    insert_row(plan=PlanId.ONE_TIME, device_id=DEVICE_1)
    resolver = _resolver(store)
    assigner = AssignmentService(store)

    # Both chats observed the unbound purchase
    assert resolver.has_access(OWNER, "chat-a") is True
    assert resolver.has_access(OWNER, "chat-b") is True

    winner = assigner.assign_to_chat(OWNER, "chat-a")
    loser = assigner.assign_to_chat(OWNER, "chat-b")
    assert winner is not None
    assert loser is None
    assert resolver.has_access(OWNER, "chat-b") is False
