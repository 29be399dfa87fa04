"""
Entitlement data model.

Plans are a closed enum; every branch over them is exhaustive and an
unknown plan string is rejected at the boundary (PlanId.parse).
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union


class PlanId(str, Enum):
    ONE_TIME = "one-time"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def is_subscription(self) -> bool:
        return self in (PlanId.WEEKLY, PlanId.MONTHLY)

    @classmethod
    def parse(cls, value: object) -> "PlanId":
        """Return the PlanId for ``value`` or raise ValueError."""
        if isinstance(value, cls):
            return value
        for plan in cls:
            if plan.value == value:
                return plan
        raise ValueError(f"Unknown plan: {value!r}")


class EntitlementStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Owner:
    """Either a device or a user, never both. Build via Owner.device / Owner.user."""

    device_id: Optional[str] = None
    user_id: Optional[str] = None

    def __post_init__(self):
        if bool(self.device_id) == bool(self.user_id):
            raise ValueError("Owner requires exactly one of device_id or user_id")

    @classmethod
    def device(cls, device_id: str) -> "Owner":
        return cls(device_id=device_id)

    @classmethod
    def user(cls, user_id: str) -> "Owner":
        return cls(user_id=user_id)

    @classmethod
    def preferring_user(cls, device_id: Optional[str], user_id: Optional[str]) -> "Owner":
        return cls.user(user_id) if user_id else cls.device(device_id)

    @property
    def is_user(self) -> bool:
        return self.user_id is not None

    @property
    def identifier(self) -> str:
        return self.user_id if self.user_id is not None else self.device_id


@dataclass(frozen=True)
class Entitlement:
    id: str
    owner: Owner
    plan_id: PlanId
    stripe_payment_intent_id: Optional[str]
    stripe_customer_id: Optional[str]
    status: EntitlementStatus
    purchased_at: datetime
    expires_at: Optional[datetime] = None
    chat_id: Optional[str] = None

    @property
    def has_payment_reference(self) -> bool:
        return bool(self.stripe_payment_intent_id and self.stripe_payment_intent_id.strip())


@dataclass(frozen=True)
class NewEntitlement:
    """Values for a row about to be created by a reconciliation path."""
    owner: Owner
    plan_id: PlanId
    stripe_payment_intent_id: str
    stripe_customer_id: Optional[str]
    purchased_at: datetime
    expires_at: Optional[datetime] = None
    chat_id: Optional[str] = None
    status: EntitlementStatus = EntitlementStatus.ACTIVE


@dataclass(frozen=True)
class Inserted:
    entitlement_id: str


@dataclass(frozen=True)
class AlreadyExists:
    entitlement_id: str


InsertResult = Union[Inserted, AlreadyExists]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_calendar_month(moment: datetime) -> datetime:
    """Same day next month, clamped to that month's last day (Jan 31 -> Feb 28/29)."""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    last_day = calendar.monthrange(year, month)[1]
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))


def calculate_expiry(plan: PlanId, purchased_at: datetime) -> Optional[datetime]:
    if plan is PlanId.ONE_TIME:
        return None
    if plan is PlanId.WEEKLY:
        return purchased_at + timedelta(days=7)
    if plan is PlanId.MONTHLY:
        return add_calendar_month(purchased_at)
    raise ValueError(f"Unhandled plan: {plan!r}")


def build_new_entitlement(
    *,
    owner: Owner,
    plan: PlanId,
    payment_intent_id: str,
    customer_id: Optional[str],
    purchased_at: datetime,
    chat_id: Optional[str] = None,
) -> NewEntitlement:
    """Plan parameters shared by the webhook and manual verification paths."""
    return NewEntitlement(
        owner=owner,
        plan_id=plan,
        stripe_payment_intent_id=payment_intent_id,
        stripe_customer_id=customer_id,
        purchased_at=purchased_at,
        expires_at=calculate_expiry(plan, purchased_at),
        # chat scoping only exists for one-time purchases
        chat_id=chat_id if plan is PlanId.ONE_TIME and chat_id else None,
    )
