"""
Payment provider protocol.

Defines the interface the reconciliation paths use to talk to the payment
provider (Stripe). Results come back as plain dataclasses so business logic
never touches SDK objects.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol


@dataclass
class ProviderPaymentIntent:
    """Provider-side view of a payment intent."""
    id: str
    status: str  # requires_payment_method, processing, succeeded, canceled, ...
    amount: int
    currency: str
    customer: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)
    client_secret: Optional[str] = None


@dataclass
class ProviderEvent:
    """A verified webhook event."""
    id: str
    type: str
    object: Dict[str, Any]

    @property
    def payment_intent_id(self) -> Optional[str]:
        if self.object.get("object") != "payment_intent":
            return None
        return self.object.get("id")

    @property
    def metadata(self) -> Dict[str, str]:
        return self.object.get("metadata") or {}

    @property
    def customer(self) -> Optional[str]:
        customer = self.object.get("customer")
        if isinstance(customer, dict):
            return customer.get("id")
        return customer


@dataclass
class ProviderPrice:
    product_name: str
    unit_amount: Optional[int]
    currency: str


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must raise paygate.core.errors.PaymentProviderError
    (with a mapped HTTP status) for upstream failures and
    paygate.core.errors.WebhookError for signature problems.
    """

    def retrieve_customer(self, customer_id: str) -> Optional[str]:
        """
        Return the customer id if it still exists upstream.

        Returns None when the customer was deleted or is unknown, so the
        caller can fall back to creating a new one.
        """
        ...

    def create_customer(self, metadata: Dict[str, str]) -> str:
        ...

    def create_ephemeral_key(self, customer_id: str) -> str:
        """Mint a short-lived customer credential; returns its secret."""
        ...

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
        ...

    def retrieve_payment_intent(self, payment_intent_id: str) -> ProviderPaymentIntent:
        ...

    def construct_event(self, body: bytes, signature: Optional[str]) -> ProviderEvent:
        """Verify the signature over the raw body and parse the event."""
        ...

    def list_prices(self) -> List[ProviderPrice]:
        """Active products with their default prices."""
        ...
