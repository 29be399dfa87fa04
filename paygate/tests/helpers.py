"""Row builders shared by the store and resolver tests."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from paygate.core.database import entitlements, get_db_session
from paygate.features.entitlements.models import PlanId

DEVICE_1 = "11111111-1111-4111-8111-111111111111"
DEVICE_2 = "22222222-2222-4222-8222-222222222222"
DEVICE_3 = "33333333-3333-4333-8333-333333333333"
USER_1 = "aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa"


def insert_row(
    *,
    plan: PlanId,
    device_id: Optional[str] = None,
    user_id: Optional[str] = None,
    payment_intent_id: Optional[str] = "auto",
    customer_id: Optional[str] = None,
    status: str = "active",
    purchased_at: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
    chat_id: Optional[str] = None,
) -> str:
    """Write a row directly, bypassing the store's invariants."""
    entitlement_id = str(uuid4())
    if payment_intent_id == "auto":
        payment_intent_id = f"pi_{uuid4().hex[:16]}"
    with get_db_session() as session:
        session.execute(
            entitlements.insert().values(
                id=entitlement_id,
                device_id=device_id,
                user_id=user_id,
                plan_id=plan.value,
                stripe_payment_intent_id=payment_intent_id,
                stripe_customer_id=customer_id,
                status=status,
                purchased_at=purchased_at or datetime(2025, 1, 1, tzinfo=timezone.utc),
                expires_at=expires_at,
                chat_id=chat_id,
            )
        )
    return entitlement_id
