"""
Payment provider integration.

The reconciliation service talks to a `PaymentProvider`; production uses
Stripe Checkout. A checkout session id is the provider transaction id.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import NamedTuple

import stripe

from .models import CustomerInfo
from .settings import settings

logger = logging.getLogger(__name__)


class ProviderCheckout(NamedTuple):
    redirect_url: str
    transaction_id: str


class ProviderOutcome(NamedTuple):
    transaction_id: str
    success: bool


class PaymentProviderError(Exception):
    """The provider could not be reached or rejected the request."""


class PaymentProvider(ABC):
    name: str

    @abstractmethod
    def initiate(
        self, order_id: int, amount_cents: int, customer_info: CustomerInfo | None
    ) -> ProviderCheckout:
        """Start a payment; raises PaymentProviderError on failure or timeout."""

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: str | None) -> bool:
        """Check that a webhook body was signed by the provider."""

    @abstractmethod
    def parse_event(self, payload: bytes) -> ProviderOutcome | None:
        """Extract a final outcome from a verified webhook body, None if irrelevant."""

    @abstractmethod
    def fetch_outcome(self, transaction_id: str) -> bool | None:
        """Ask the provider how a transaction ended; None while it is still open."""


# Checkout events that settle a payment one way or the other
_SUCCESS_EVENTS = {"checkout.session.async_payment_succeeded"}
_FAILURE_EVENTS = {"checkout.session.async_payment_failed", "checkout.session.expired"}


class StripeCheckoutProvider(PaymentProvider):
    name = "stripe"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        currency: str,
        api_url: str,
        client_url: str,
        timeout: float,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.api_url = api_url.rstrip("/")
        self.client_url = client_url.rstrip("/")
        # Bounded provider calls; a timeout surfaces as APIConnectionError
        self.http_client = stripe.RequestsClient(timeout=timeout)

    def _client(self) -> stripe.StripeClient:
        if not self.secret_key:
            raise PaymentProviderError("Stripe is not configured")
        # No automatic retries, so one call never outlasts the timeout
        return stripe.StripeClient(
            self.secret_key, http_client=self.http_client, max_network_retries=0
        )

    def initiate(
        self, order_id: int, amount_cents: int, customer_info: CustomerInfo | None
    ) -> ProviderCheckout:
        client = self._client()
        params = {
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": self.currency,
                    "product_data": {"name": f"Order #{order_id}"},
                    "unit_amount": amount_cents,
                },
                "quantity": 1,
            }],
            "client_reference_id": str(order_id),
            "metadata": {"order_id": str(order_id)},
            "success_url": f"{self.api_url}/payments/callback?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.client_url}/payment/status?orderId={order_id}&status=cancelled",
        }
        if customer_info and customer_info.email:
            params["customer_email"] = customer_info.email

        try:
            checkout = client.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            raise PaymentProviderError(str(e)) from e
        return ProviderCheckout(redirect_url=checkout.url, transaction_id=checkout.id)

    def verify_signature(self, payload: bytes, signature: str | None) -> bool:
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured; rejecting webhook")
            return False
        if not signature:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

    def parse_event(self, payload: bytes) -> ProviderOutcome | None:
        event = json.loads(payload)
        if not isinstance(event, dict):
            raise ValueError("Webhook payload must be a JSON object")
        event_type = event.get("type")
        data = event.get("data")
        checkout = data.get("object") if isinstance(data, dict) else None
        if not isinstance(checkout, dict):
            return None
        session_id = checkout.get("id")
        if not session_id:
            return None

        if event_type == "checkout.session.completed":
            # Delayed methods complete as "unpaid" and settle in a later event
            if checkout.get("payment_status") == "paid":
                return ProviderOutcome(session_id, True)
            return None
        if event_type in _SUCCESS_EVENTS:
            return ProviderOutcome(session_id, True)
        if event_type in _FAILURE_EVENTS:
            return ProviderOutcome(session_id, False)
        return None

    def fetch_outcome(self, transaction_id: str) -> bool | None:
        try:
            checkout = self._client().checkout.sessions.retrieve(transaction_id)
        except stripe.StripeError as e:
            raise PaymentProviderError(str(e)) from e
        if checkout.payment_status in ("paid", "no_payment_required"):
            return True
        if checkout.status == "expired":
            return False
        return None


_provider: PaymentProvider | None = None


def get_payment_provider() -> PaymentProvider:
    global _provider
    if _provider is None:
        _provider = StripeCheckoutProvider(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            currency=settings.stripe_currency,
            api_url=settings.api_url,
            client_url=settings.client_url,
            timeout=settings.payment_provider_timeout_seconds,
        )
    return _provider
