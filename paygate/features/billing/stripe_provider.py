"""
Stripe payment provider implementation.

Implements PaymentProvider using the Stripe API. Upstream errors are mapped
to PaymentProviderError with the HTTP status the API should surface.
"""
import json
from typing import Any, Dict, List, Optional

import stripe

from paygate.core.config import settings
from paygate.core.errors import PaymentProviderError, WebhookError
from paygate.features.billing.provider import (
    ProviderEvent,
    ProviderPaymentIntent,
    ProviderPrice,
)


def map_stripe_error(exc: Exception) -> PaymentProviderError:
    """Card errors and invalid requests -> 400, auth -> 401, rate limits -> 429, the rest -> 502."""
    message = getattr(exc, "user_message", None) or str(exc) or "Payment provider error"
    if isinstance(exc, stripe.CardError):
        return PaymentProviderError(message, code="card_error", status_code=400)
    if isinstance(exc, stripe.RateLimitError):
        return PaymentProviderError("Payment provider rate limit exceeded", code="provider_rate_limited", status_code=429)
    if isinstance(exc, stripe.InvalidRequestError):
        return PaymentProviderError(message, code="invalid_provider_request", status_code=400)
    if isinstance(exc, stripe.AuthenticationError):
        return PaymentProviderError("Payment provider authentication failed", code="provider_auth_error", status_code=401)
    if isinstance(exc, stripe.APIConnectionError):
        return PaymentProviderError("Could not reach payment provider", code="provider_unavailable", status_code=502)
    return PaymentProviderError("Payment provider error", code="payment_provider_error", status_code=502)


def _as_dict(obj: Any) -> Dict[str, Any]:
    """SDK objects are not mappings; convert them before reading keys."""
    if not obj:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _metadata(obj: Any) -> Dict[str, str]:
    return {str(key): str(value) for key, value in _as_dict(obj).items()}


def _customer_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None, api_version: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to settings.STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to settings.STRIPE_WEBHOOK_SECRET)
            api_version: API version pinned for ephemeral keys
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.api_version = api_version or settings.STRIPE_API_VERSION

        if not self.secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured", status_code=500)

        stripe.api_key = self.secret_key

    def retrieve_customer(self, customer_id: str) -> Optional[str]:
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise map_stripe_error(e) from e
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e
        if getattr(customer, "deleted", False):
            return None
        return customer.id

    def create_customer(self, metadata: Dict[str, str]) -> str:
        try:
            customer = stripe.Customer.create(metadata=metadata)
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e
        return customer.id

    def create_ephemeral_key(self, customer_id: str) -> str:
        try:
            key = stripe.EphemeralKey.create(customer=customer_id, stripe_version=self.api_version)
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e
        return key.secret

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        metadata: Dict[str, str],
        description: str,
        idempotency_key: Optional[str] = None,
    ) -> ProviderPaymentIntent:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "customer": customer_id,
            "metadata": metadata,
            "description": description,
            "automatic_payment_methods": {"enabled": True},
            "setup_future_usage": "off_session",
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e
        return self._to_intent(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> ProviderPaymentIntent:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e
        return self._to_intent(intent)

    def construct_event(self, body: bytes, signature: Optional[str]) -> ProviderEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise WebhookError("STRIPE_WEBHOOK_SECRET not configured", status_code=500)
        if not signature:
            raise WebhookError("Missing stripe-signature header", code="missing_signature")

        try:
            stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except ValueError as e:
            raise WebhookError(f"Invalid payload: {e}", code="invalid_payload")
        except stripe.SignatureVerificationError:
            raise WebhookError("Invalid signature", code="invalid_signature")

        # Signature is over the raw body; parse it into plain dicts
        event = json.loads(body)
        return ProviderEvent(
            id=event["id"],
            type=event["type"],
            object=event.get("data", {}).get("object", {}) or {},
        )

    def list_prices(self) -> List[ProviderPrice]:
        try:
            products = stripe.Product.list(active=True, limit=100, expand=["data.default_price"])
        except stripe.StripeError as e:
            raise map_stripe_error(e) from e

        prices: List[ProviderPrice] = []
        for product in products.data:
            price = getattr(product, "default_price", None)
            if not price or isinstance(price, str):
                continue
            prices.append(
                ProviderPrice(
                    product_name=getattr(product, "name", None) or "",
                    unit_amount=getattr(price, "unit_amount", None),
                    currency=getattr(price, "currency", None) or "",
                )
            )
        return prices

    def _to_intent(self, intent: Any) -> ProviderPaymentIntent:
        return ProviderPaymentIntent(
            id=intent.id,
            status=intent.status,
            amount=getattr(intent, "amount", None) or 0,
            currency=getattr(intent, "currency", None) or "",
            customer=_customer_id(getattr(intent, "customer", None)),
            metadata=_metadata(getattr(intent, "metadata", None)),
            client_secret=getattr(intent, "client_secret", None),
        )
