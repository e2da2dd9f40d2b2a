import requests


class PaymentProcessorError(Exception):
    """Raised when the processor cannot stage a charge."""


class StripeClient:
    def __init__(self, secret_key, api_base="https://api.stripe.com", currency="usd", timeout=10):
        self.secret_key = (secret_key or "").strip()
        self.api_base = api_base.rstrip("/")
        self.currency = currency
        self.timeout = timeout

    def create_payment_intent(self, price: float) -> str:
        """Stage a card charge for ``price`` dollars and return its client secret."""
        if not self.secret_key:
            raise PaymentProcessorError("Payment processor is not configured.")

        amount = round(price * 100)
        try:
            response = requests.post(
                f"{self.api_base}/v1/payment_intents",
                data={
                    "amount": amount,
                    "currency": self.currency,
                    "payment_method_types[]": "card",
                },
                headers={"Authorization": f"Bearer {self.secret_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise PaymentProcessorError(f"Payment processor unreachable: {exc}") from exc

        if response.status_code != 200:
            raise PaymentProcessorError(
                f"Payment processor rejected the request ({response.status_code}): {response.text}"
            )

        client_secret = response.json().get("client_secret")
        if not client_secret:
            raise PaymentProcessorError("Payment processor returned no client secret.")
        return client_secret
