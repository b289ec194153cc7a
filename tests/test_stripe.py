import pytest
import requests

from shopease.errors import PaymentProcessorError
from shopease.payments import StripeClient


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def test_create_payment_intent_posts_amount_and_metadata(monkeypatch):
    captured = {}

    def fake_post(url, data=None, headers=None, timeout=None):
        captured.update(url=url, data=data, headers=headers, timeout=timeout)
        return FakeResponse(200, {"id": "pi_1", "client_secret": "pi_1_secret"})

    monkeypatch.setattr(requests, "post", fake_post)
    client = StripeClient("sk_test_123", currency="USD", timeout=3)

    intent = client.create_payment_intent(1000, metadata={"orderId": "abc", "skip": None})

    assert intent["client_secret"] == "pi_1_secret"
    assert captured["url"] == "https://api.stripe.com/v1/payment_intents"
    assert captured["data"]["amount"] == 1000
    assert captured["data"]["currency"] == "usd"
    assert captured["data"]["metadata[orderId]"] == "abc"
    assert "metadata[skip]" not in captured["data"]
    assert captured["headers"]["Authorization"] == "Bearer sk_test_123"
    assert captured["timeout"] == 3


def test_missing_secret_key_fails_before_any_request(monkeypatch):
    monkeypatch.setattr(requests, "post", lambda *args, **kwargs: pytest.fail("unexpected request"))

    with pytest.raises(PaymentProcessorError):
        StripeClient("").create_payment_intent(1000)


def test_processor_error_response(monkeypatch):
    monkeypatch.setattr(
        requests, "post", lambda *args, **kwargs: FakeResponse(402, {"error": {"message": "declined"}})
    )

    with pytest.raises(PaymentProcessorError):
        StripeClient("sk_test_123").create_payment_intent(1000)


def test_network_failure(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(requests, "post", boom)

    with pytest.raises(PaymentProcessorError):
        StripeClient("sk_test_123").create_payment_intent(1000)
