"""
Request validation for the payment endpoints.

Every check raises ValidationError before any side effect happens.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from paygate.core.config import settings
from paygate.core.errors import ValidationError
from paygate.features.entitlements.models import PlanId

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

MAX_CHAT_ID_LENGTH = 255
MAX_IDEMPOTENCY_KEY_LENGTH = 200


@dataclass(frozen=True)
class IntentRequest:
    amount: int
    currency: str
    plan: PlanId
    device_id: str
    user_id: Optional[str] = None
    chat_id: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class VerifyRequest:
    payment_intent_id: str
    device_id: str
    plan: PlanId
    chat_id: Optional[str] = None


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_RE.match(value))


def validate_amount(amount: Any, min_amount: Optional[int] = None, max_amount: Optional[int] = None) -> int:
    low = settings.PAYMENT_MIN_AMOUNT if min_amount is None else min_amount
    high = settings.PAYMENT_MAX_AMOUNT if max_amount is None else max_amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Amount must be an integer (in minor units)", field="amount")
    if amount < low:
        raise ValidationError(f"Amount must be at least {low}", field="amount")
    if amount > high:
        raise ValidationError(f"Amount cannot exceed {high}", field="amount")
    return amount


def validate_currency(currency: Any, supported: Optional[Iterable[str]] = None) -> str:
    allowed = [c.lower() for c in (supported if supported is not None else settings.supported_currencies())]
    if not isinstance(currency, str) or not currency:
        raise ValidationError("currency must be a string", field="currency")
    if currency.lower() not in allowed:
        raise ValidationError(f"Invalid currency. Supported currencies: {', '.join(allowed)}", field="currency")
    return currency.lower()


def validate_plan_id(plan_id: Any) -> PlanId:
    try:
        return PlanId.parse(plan_id)
    except ValueError:
        valid = ", ".join(plan.value for plan in PlanId)
        raise ValidationError(f"Invalid plan. Valid plans: {valid}", field="planId")


def validate_uuid(value: Any, field: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field)
    if not is_valid_uuid(value):
        raise ValidationError(f"Invalid {field} format (must be UUID)", field=field)
    return value


def validate_chat_id(chat_id: Any) -> Optional[str]:
    if chat_id is None:
        return None
    if not isinstance(chat_id, str) or not chat_id.strip():
        raise ValidationError("chatId must be a non-empty string", field="chatId")
    if len(chat_id) > MAX_CHAT_ID_LENGTH:
        raise ValidationError("chatId is too long", field="chatId")
    return chat_id


def validate_payment_intent_id(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("paymentIntentId must be a string", field="paymentIntentId")
    if not value.startswith("pi_"):
        raise ValidationError("Invalid paymentIntentId format (must start with pi_)", field="paymentIntentId")
    return value


def validate_idempotency_key(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("idempotencyKey must be a non-empty string", field="idempotencyKey")
    if len(value) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError("idempotencyKey is too long", field="idempotencyKey")
    return value


def validate_intent_request(
    *,
    amount: Any,
    currency: Any,
    plan_id: Any,
    device_id: Any,
    user_id: Any = None,
    chat_id: Any = None,
    idempotency_key: Any = None,
) -> IntentRequest:
    missing = [
        name
        for name, value in (("amount", amount), ("currency", currency), ("planId", plan_id), ("deviceId", device_id))
        if value is None or value == ""
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", field=missing[0])

    return IntentRequest(
        amount=validate_amount(amount),
        currency=validate_currency(currency),
        plan=validate_plan_id(plan_id),
        device_id=validate_uuid(device_id, "deviceId"),
        user_id=validate_uuid(user_id, "userId") if user_id is not None else None,
        chat_id=validate_chat_id(chat_id),
        idempotency_key=validate_idempotency_key(idempotency_key),
    )


def validate_verify_request(
    *,
    payment_intent_id: Any,
    device_id: Any,
    plan_id: Any,
    chat_id: Any = None,
) -> VerifyRequest:
    if not payment_intent_id or not device_id or not plan_id:
        raise ValidationError("Missing required fields: paymentIntentId, deviceId, planId")
    return VerifyRequest(
        payment_intent_id=validate_payment_intent_id(payment_intent_id),
        device_id=validate_uuid(device_id, "deviceId"),
        plan=validate_plan_id(plan_id),
        chat_id=validate_chat_id(chat_id),
    )
