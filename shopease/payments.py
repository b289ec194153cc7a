from typing import Dict, Optional

import requests

from shopease.errors import PaymentProcessorError

DEFAULT_STRIPE_API_BASE = "https://api.stripe.com"


class StripeClient:
    """Creates PaymentIntents through the Stripe REST API."""

    def __init__(
        self,
        secret_key: Optional[str],
        api_base: str = DEFAULT_STRIPE_API_BASE,
        currency: str = "usd",
        timeout: float = 10.0,
        logger=None,
    ):
        self.secret_key = (secret_key or "").strip()
        self.api_base = (api_base or DEFAULT_STRIPE_API_BASE).rstrip("/")
        self.currency = (currency or "usd").strip().lower()
        self.timeout = timeout
        self.logger = logger

    def create_payment_intent(self, amount_in_cents: int, metadata: Optional[Dict[str, str]] = None) -> Dict:
        if not self.secret_key:
            raise PaymentProcessorError("Payment configuration is incomplete. Please contact support.")

        payload = {
            "amount": int(amount_in_cents),
            "currency": self.currency,
            "payment_method_types[]": "card",
        }
        for key, value in (metadata or {}).items():
            if value is not None:
                payload[f"metadata[{key}]"] = str(value)

        url = f"{self.api_base}/v1/payment_intents"
        try:
            response = requests.post(
                url,
                data=payload,
                headers={"Authorization": f"Bearer {self.secret_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            if self.logger:
                self.logger.error("Stripe request failed: %s", exc)
            raise PaymentProcessorError("Failed to reach payment provider.") from exc

        if response.status_code >= 300:
            if self.logger:
                self.logger.error("Stripe PaymentIntent failed: %s", response.text)
            raise PaymentProcessorError("Failed to create payment intent.")

        intent = response.json()
        if not intent.get("client_secret"):
            raise PaymentProcessorError("Payment provider returned no client secret.")
        return intent
