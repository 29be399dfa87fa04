"""HTTP client for the payment endpoints, used by the purchase flow."""

from typing import Any, Dict, Optional

import httpx

from paygate.features.entitlements.models import PlanId
from paygate.features.purchase.orchestrator import IntentHandle


class PaymentsApiError(RuntimeError):
    def __init__(self, status_code: int, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class PaymentsApiClient:
    def __init__(
        self,
        base_url: str,
        device_id: str,
        user_id: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.device_id = device_id
        self.user_id = user_id
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def create_intent(
        self,
        plan: PlanId,
        amount: int,
        currency: str,
        chat_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> IntentHandle:
        payload: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "planId": plan.value,
            "deviceId": self.device_id,
        }
        if self.user_id:
            payload["userId"] = self.user_id
        if chat_id:
            payload["chatId"] = chat_id
        if idempotency_key:
            payload["idempotencyKey"] = idempotency_key

        body = self._post("/api/payments/intent", payload)
        return IntentHandle(
            client_secret=body["paymentIntent"],
            ephemeral_key=body["ephemeralKey"],
            customer_id=body["customer"],
        )

    def verify_payment(self, payment_intent_id: str, plan: PlanId, chat_id: Optional[str] = None) -> bool:
        payload: Dict[str, Any] = {
            "paymentIntentId": payment_intent_id,
            "deviceId": self.device_id,
            "planId": plan.value,
        }
        if chat_id:
            payload["chatId"] = chat_id
        body = self._post("/api/payments/verify", payload)
        return bool(body.get("success"))

    def get_prices(self) -> Dict[str, Any]:
        response = self._client.get("/api/payments/prices")
        return self._parse(response)

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._client.post(path, json=payload)
        return self._parse(response)

    def _parse(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 300:
            message = body.get("error") if isinstance(body, dict) else None
            code = body.get("code") if isinstance(body, dict) else None
            raise PaymentsApiError(response.status_code, message or f"HTTP {response.status_code}", code)
        return body
