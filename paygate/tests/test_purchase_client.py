"""
HTTP client for the payment endpoints, against a mocked transport.
"""
import json

import httpx
import pytest

from paygate.features.entitlements.models import PlanId
from paygate.features.purchase.client import PaymentsApiClient, PaymentsApiError
from paygate.tests.helpers import DEVICE_1, USER_1


def _client(handler, user_id=None):
    transport = httpx.MockTransport(handler)
    http = httpx.Client(base_url="http://payments.test", transport=transport)
    return PaymentsApiClient("http://payments.test", DEVICE_1, user_id=user_id, client=http)


def test_create_intent_sends_camel_case_payload():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"paymentIntent": "pi_9_secret_x", "ephemeralKey": "ek_9", "customer": "cus_9"},
        )

    handle = _client(handler, user_id=USER_1).create_intent(
        PlanId.ONE_TIME, 299, "eur", chat_id="chat-1", idempotency_key="k1"
    )

    assert seen["path"] == "/api/payments/intent"
    assert seen["body"] == {
        "amount": 299,
        "currency": "eur",
        "planId": "one-time",
        "deviceId": DEVICE_1,
        "userId": USER_1,
        "chatId": "chat-1",
        "idempotencyKey": "k1",
    }
    assert handle.payment_intent_id == "pi_9"
    assert handle.customer_id == "cus_9"


def test_verify_payment_reads_success_flag():
    def handler(request):
        body = json.loads(request.content)
        assert body == {"paymentIntentId": "pi_9", "deviceId": DEVICE_1, "planId": "weekly"}
        return httpx.Response(200, json={"success": False, "reason": "Payment not succeeded", "status": "processing"})

    assert _client(handler).verify_payment("pi_9", PlanId.WEEKLY) is False


def test_error_body_becomes_api_error():
    def handler(request):
        return httpx.Response(
            429,
            json={"error": "Too many requests. Please try again later.", "code": "rate_limited", "request_id": "r1"},
            headers={"Retry-After": "60"},
        )

    with pytest.raises(PaymentsApiError) as exc:
        _client(handler).create_intent(PlanId.ONE_TIME, 299, "eur")
    assert exc.value.status_code == 429
    assert exc.value.code == "rate_limited"
    assert str(exc.value) == "Too many requests. Please try again later."


def test_non_json_error_body():
    def handler(request):
        return httpx.Response(502, text="Bad Gateway")

    with pytest.raises(PaymentsApiError) as exc:
        _client(handler).get_prices()
    assert exc.value.status_code == 502
    assert str(exc.value) == "HTTP 502"
