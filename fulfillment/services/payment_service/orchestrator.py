"""Payment orchestrator: adapts the saga to the external gateway."""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from fulfillment.shared.audit import SagaStep, StepStatus, log_saga_step
from fulfillment.shared.events import PaymentUnverifiedEvent
from fulfillment.shared.exceptions import GatewayUnverified, NotFound, PaymentGatewayError
from fulfillment.shared.outbox import save_event_to_outbox

from .gateway import GatewayEvent, PaymentGateway, from_minor_units, to_minor_units
from .models import ConfirmationOutcome, PaymentIntentRecord, PaymentOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentConfirmation:
    """A trusted payment outcome for one order."""
    order_id: UUID
    intent_id: str
    outcome: PaymentOutcome
    event_id: Optional[str] = None


ConfirmationHandler = Callable[[PaymentConfirmation], Awaitable[ConfirmationOutcome]]


class PaymentOrchestrator:
    """
    Creates intents (idempotent per order) and turns gateway reports into
    trusted confirmations for the saga coordinator.

    Gateway calls never run inside a database transaction.
    """

    def __init__(self, session_factory, gateway: PaymentGateway):
        self.session_factory = session_factory
        self.gateway = gateway
        self._handler: Optional[ConfirmationHandler] = None

    def set_confirmation_handler(self, handler: ConfirmationHandler):
        self._handler = handler

    async def create_intent(self, order_id: UUID, amount: Decimal, currency: str) -> PaymentIntentRecord:
        """Return the order's intent, creating it at the gateway on first call."""
        existing = await self.get_by_order(order_id)
        if existing:
            logger.info(f"Payment intent for order {order_id} already exists ({existing.intent_id})")
            return existing

        intent = await self.gateway.create_intent(
            amount=to_minor_units(amount),
            currency=currency,
            idempotency_key=f"order-{order_id}",
            metadata={"order_id": str(order_id)},
        )

        record = PaymentIntentRecord(
            intent_id=intent.intent_id,
            order_id=order_id,
            amount=amount,
            currency=currency,
            status=intent.status,
            client_secret=intent.client_secret,
        )

        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent retry for the same order stored it first
                await session.rollback()
                existing = await self.get_by_order(order_id)
                if existing:
                    return existing
                raise

        logger.info(f"Stored payment intent {intent.intent_id} for order {order_id}")
        return record

    async def get_by_order(self, order_id: UUID) -> Optional[PaymentIntentRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentIntentRecord).where(PaymentIntentRecord.order_id == order_id)
            )
            return result.scalar_one_or_none()

    async def resolve_order(self, intent_id: str) -> UUID:
        """Map an intent to its order, rebuilding the local record from the gateway if lost."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentIntentRecord).where(PaymentIntentRecord.intent_id == intent_id)
            )
            record = result.scalar_one_or_none()
            if record:
                return record.order_id

        intent = await self.gateway.retrieve_intent(intent_id)
        order_ref = intent.metadata.get("order_id")
        if not order_ref:
            raise NotFound(f"Payment intent {intent_id} is not linked to an order")

        order_id = UUID(order_ref)
        async with self.session_factory() as session:
            session.add(PaymentIntentRecord(
                intent_id=intent.intent_id,
                order_id=order_id,
                amount=from_minor_units(intent.amount),
                currency=intent.currency,
                status=intent.status,
                client_secret=intent.client_secret,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()

        logger.warning(f"Rebuilt local record for intent {intent_id} (order {order_id})")
        return order_id

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[ConfirmationOutcome]:
        """
        Verify and apply a gateway webhook.

        Returns None for event types that do not settle an intent.

        Raises:
            GatewayUnverified: the payload failed its authenticity check
        """
        try:
            event = self.gateway.verify_event(payload, signature)
        except GatewayUnverified as e:
            await self._audit_unverified(e.message)
            raise

        logger.info(f"Received verified gateway event {event.event_id} ({event.event_type})")
        return await self._apply_event(event)

    async def on_confirmation(
        self,
        intent_id: str,
        outcome: PaymentOutcome,
        event_id: Optional[str] = None,
        gateway_status: Optional[str] = None,
    ) -> ConfirmationOutcome:
        """Hand a trusted outcome for ``intent_id`` to the coordinator."""
        if self._handler is None:
            raise RuntimeError("No confirmation handler registered")

        order_id = await self.resolve_order(intent_id)
        await self._mirror_status(intent_id, gateway_status or outcome.value, event_id)

        return await self._handler(PaymentConfirmation(
            order_id=order_id,
            intent_id=intent_id,
            outcome=outcome,
            event_id=event_id,
        ))

    async def poll(self, intent_id: str) -> Optional[ConfirmationOutcome]:
        """Read the intent back from the gateway; None while it is still open."""
        intent = await self.gateway.retrieve_intent(intent_id)
        if intent.outcome is None:
            await self._mirror_status(intent_id, intent.status, None)
            return None
        return await self.on_confirmation(intent_id, intent.outcome, gateway_status=intent.status)

    async def cancel_intent(self, intent_id: str):
        """Best-effort cancellation so an abandoned order cannot be paid."""
        try:
            intent = await self.gateway.cancel_intent(intent_id)
        except PaymentGatewayError as e:
            logger.warning(f"Could not cancel payment intent {intent_id}: {e.message}")
            return
        await self._mirror_status(intent_id, intent.status, None)

    async def _apply_event(self, event: GatewayEvent) -> Optional[ConfirmationOutcome]:
        if event.outcome is None:
            logger.info(f"Ignoring gateway event type {event.event_type}")
            return None
        return await self.on_confirmation(
            event.intent_id,
            event.outcome,
            event_id=event.event_id,
            gateway_status=event.status,
        )

    async def _mirror_status(self, intent_id: str, status: str, event_id: Optional[str]):
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentIntentRecord).where(PaymentIntentRecord.intent_id == intent_id)
            )
            record = result.scalar_one_or_none()
            if not record:
                return
            record.status = status
            if event_id:
                record.last_event_id = event_id
            record.updated_at = datetime.utcnow()
            await session.commit()

    async def _audit_unverified(self, reason: str):
        logger.warning(f"Dropped unverified payment event: {reason}")
        async with self.session_factory() as session:
            await log_saga_step(
                session,
                order_id=None,
                step=SagaStep.PAYMENT_CONFIRMATION,
                event_type="payment.unverified",
                status=StepStatus.REJECTED,
                error_message=reason,
            )
            await save_event_to_outbox(
                session,
                PaymentUnverifiedEvent(aggregate_id="payment-webhook", reason=reason),
            )
            await session.commit()
