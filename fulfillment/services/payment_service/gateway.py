"""Payment gateway adapter (Stripe)."""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

import stripe
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from fulfillment.shared.exceptions import GatewayUnverified, PaymentGatewayError

from .models import PaymentOutcome

logger = logging.getLogger(__name__)

# Stripe event types that settle an intent
EVENT_OUTCOMES: Dict[str, PaymentOutcome] = {
    "payment_intent.succeeded": PaymentOutcome.SUCCEEDED,
    "payment_intent.payment_failed": PaymentOutcome.FAILED,
    "payment_intent.canceled": PaymentOutcome.CANCELLED,
}

# Intent statuses that are final when read back by polling
STATUS_OUTCOMES: Dict[str, PaymentOutcome] = {
    "succeeded": PaymentOutcome.SUCCEEDED,
    "canceled": PaymentOutcome.CANCELLED,
}


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to cents."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class GatewayIntent:
    """Gateway view of a payment intent."""
    intent_id: str
    amount: int  # minor units
    currency: str
    status: str
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def outcome(self) -> Optional[PaymentOutcome]:
        return STATUS_OUTCOMES.get(self.status)


@dataclass(frozen=True)
class GatewayEvent:
    """A verified webhook event."""
    event_id: str
    event_type: str
    intent_id: str
    status: str

    @property
    def outcome(self) -> Optional[PaymentOutcome]:
        return EVENT_OUTCOMES.get(self.event_type)


class PaymentGateway(ABC):
    """Outbound calls to the gateway and verification of its callbacks."""

    @abstractmethod
    async def create_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> GatewayIntent:
        ...

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        ...

    @abstractmethod
    async def cancel_intent(self, intent_id: str) -> GatewayIntent:
        ...

    @abstractmethod
    def verify_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        """Return the event if authentic, raise GatewayUnverified otherwise."""


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents. SDK calls are blocking and run in a worker thread."""

    def __init__(self, api_key: str, webhook_secret: str, tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    async def create_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> GatewayIntent:
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        logger.info(f"Created Stripe payment intent {intent.id} (key={idempotency_key})")
        return self._to_intent(intent)

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        intent = await self._call(stripe.PaymentIntent.retrieve, intent_id)
        return self._to_intent(intent)

    async def cancel_intent(self, intent_id: str) -> GatewayIntent:
        intent = await self._call(stripe.PaymentIntent.cancel, intent_id)
        logger.info(f"Cancelled Stripe payment intent {intent_id}")
        return self._to_intent(intent)

    def verify_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not signature:
            raise GatewayUnverified("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise GatewayUnverified("Webhook secret is not configured")

        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            raise GatewayUnverified(f"Payload is not valid UTF-8: {e}")

        try:
            stripe.WebhookSignature.verify_header(
                text, signature, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise GatewayUnverified(f"Invalid signature: {e}")

        try:
            data = json.loads(text)
            intent = data["data"]["object"]
            return GatewayEvent(
                event_id=data["id"],
                event_type=data["type"],
                intent_id=intent["id"],
                status=intent.get("status", ""),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise GatewayUnverified(f"Malformed event payload: {e}")

    @retry(
        retry=retry_if_exception_type(stripe.APIConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _call_with_retry(self, func, *args, **kwargs):
        return await asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs)

    async def _call(self, func, *args, **kwargs):
        try:
            return await self._call_with_retry(func, *args, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe call {func.__qualname__} failed: {e}")
            raise PaymentGatewayError(f"Payment gateway error: {e.user_message or e}")

    @staticmethod
    def _to_intent(intent) -> GatewayIntent:
        metadata = {}
        try:
            metadata["order_id"] = intent.metadata["order_id"]
        except (AttributeError, KeyError, TypeError):
            pass

        return GatewayIntent(
            intent_id=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
            client_secret=intent.client_secret,
            metadata=metadata,
        )
