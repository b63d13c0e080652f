"""In-memory fakes for testing.

``FakeGateway`` keeps intents in a dict instead of calling Stripe, but inherits
the real webhook verification, so events it signs go through the same
``stripe.WebhookSignature`` check as production traffic.
"""
import dataclasses
import hashlib
import hmac
import itertools
import json
import time
from typing import Dict, List, Optional, Tuple

from fulfillment.services.inventory_service.catalog import seed_catalog
from fulfillment.services.order_service.schemas import CheckoutRequest
from fulfillment.services.payment_service.gateway import GatewayIntent, StripeGateway
from fulfillment.shared.exceptions import PaymentGatewayError

WEBHOOK_SECRET = "whsec_test_secret"

ACCOUNT_ID = "acct-wholesale-1"

SHIPPING_ADDRESS = {
    "name": "Dana Reyes",
    "company_name": "Reyes Textiles",
    "address": "12 Mill Lane",
    "city": "Fall River",
    "state": "MA",
    "zip_code": "02720",
    "country": "US",
    "phone_number": "+1 508 555 0100",
}

TEST_CATALOG = [
    {"sku_id": "cotton-white", "name": "Premium Cotton (White)", "price": "12.99", "available": 100, "reorder_point": 10},
    {"sku_id": "linen-natural", "name": "Linen Blend (Natural)", "price": "15.50", "available": 50, "reorder_point": 5},
    {"sku_id": "silk-ivory", "name": "Silk Satin (Ivory)", "price": "29.99", "available": 300, "reorder_point": 30},
    {
        "sku_id": "polo-navy",
        "name": "Custom Polo Shirt (Navy)",
        "kind": "clothing",
        "price": "18.00",
        "available": 500,
        "min_order_quantity": 12,
    },
    {"sku_id": "wool-grey", "name": "Wool Flannel (Grey)", "price": "22.00", "available": 40, "status": "discontinued"},
]

# Intent status Stripe reports alongside each settling event
EVENT_STATUSES = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "requires_payment_method",
    "payment_intent.canceled": "canceled",
}


def make_checkout_request(*lines, **overrides) -> CheckoutRequest:
    """Build a checkout from ``(sku_id, quantity)`` pairs."""
    payload = {
        "line_items": [{"sku_id": sku_id, "quantity": quantity} for sku_id, quantity in lines],
        "shipping_address": SHIPPING_ADDRESS,
    }
    payload.update(overrides)
    return CheckoutRequest.model_validate(payload)


async def seed_test_catalog(session_factory, items=None):
    async with session_factory() as session:
        await seed_catalog(session, items or TEST_CATALOG)
        await session.commit()


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


class FakeGateway(StripeGateway):

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        super().__init__(api_key="sk_test_fake", webhook_secret=webhook_secret)
        self.intents: Dict[str, GatewayIntent] = {}
        self.create_calls: List[str] = []
        self.cancelled: List[str] = []
        self.fail_create = False
        self._by_key: Dict[str, str] = {}
        self._ids = itertools.count(1)
        self._event_ids = itertools.count(1)

    async def create_intent(self, amount, currency, idempotency_key, metadata) -> GatewayIntent:
        self.create_calls.append(idempotency_key)
        if self.fail_create:
            raise PaymentGatewayError("Payment gateway error: upstream unavailable")

        if idempotency_key in self._by_key:
            return self.intents[self._by_key[idempotency_key]]

        intent_id = f"pi_test_{next(self._ids)}"
        intent = GatewayIntent(
            intent_id=intent_id,
            amount=amount,
            currency=currency,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret_abc",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        self._by_key[idempotency_key] = intent_id
        return intent

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        try:
            return self.intents[intent_id]
        except KeyError:
            raise PaymentGatewayError(f"No such payment_intent: '{intent_id}'")

    async def cancel_intent(self, intent_id: str) -> GatewayIntent:
        intent = await self.retrieve_intent(intent_id)
        if intent.status == "succeeded":
            raise PaymentGatewayError("You cannot cancel this PaymentIntent because it has a status of succeeded")
        self.cancelled.append(intent_id)
        return self.set_status(intent_id, "canceled")

    def set_status(self, intent_id: str, status: str) -> GatewayIntent:
        intent = dataclasses.replace(self.intents[intent_id], status=status)
        self.intents[intent_id] = intent
        return intent

    def intent_for_order(self, order_id) -> GatewayIntent:
        return self.intents[self._by_key[f"order-{order_id}"]]

    def settle(
        self,
        intent_id: str,
        event_type: str = "payment_intent.succeeded",
        event_id: Optional[str] = None,
        secret: Optional[str] = None,
    ) -> Tuple[bytes, str]:
        """Move the intent as the customer's payment would and return a signed webhook."""
        status = EVENT_STATUSES[event_type]
        self.set_status(intent_id, status)

        payload = json.dumps({
            "id": event_id or f"evt_test_{next(self._event_ids)}",
            "object": "event",
            "type": event_type,
            "data": {"object": {"id": intent_id, "object": "payment_intent", "status": status}},
        })
        return payload.encode("utf-8"), sign_payload(payload, secret or self.webhook_secret)


class FakeMessageBroker:

    def __init__(self, fail: bool = False):
        self.published = []
        self.connected = False
        self.fail = fail

    async def connect(self):
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def publish_event(self, event, routing_key=None):
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.published.append(event)

    def types(self) -> List[str]:
        return [event.event_type.value for event in self.published]
