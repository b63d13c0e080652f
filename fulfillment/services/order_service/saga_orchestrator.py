"""Saga orchestrator for order fulfillment."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.services.inventory_service.catalog import Catalog, SkuQuote
from fulfillment.services.inventory_service.models import Reservation
from fulfillment.services.inventory_service.reservation_manager import ReservationManager
from fulfillment.services.payment_service.models import ConfirmationOutcome, PaymentIntentRecord, PaymentOutcome
from fulfillment.services.payment_service.orchestrator import PaymentConfirmation, PaymentOrchestrator
from fulfillment.shared.audit import SagaStep, StepStatus, log_saga_step
from fulfillment.shared.config import Settings
from fulfillment.shared.events import (
    OperatorAlertEvent,
    OrderAwaitingPaymentEvent,
    OrderCancelledEvent,
    OrderFailedEvent,
    OrderFulfillingEvent,
    OrderPaidEvent,
    OrderPlacedEvent,
)
from fulfillment.shared.exceptions import (
    ConsistencyFault,
    InvalidState,
    NotFound,
    PaymentGatewayError,
    PostPaymentCancellationAttempted,
    ValidationError,
)
from fulfillment.shared.outbox import save_event_to_outbox

from .models import PAID_STATUSES, TERMINAL_STATUSES, Order, OrderStatus
from .pricing import PricingPolicy
from .schemas import CheckoutRequest, LineItemRequest
from .store import OrderDraft, OrderLineDraft, OrderStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    order_id: UUID
    payment_intent_client_secret: Optional[str]


class SagaOrchestrator:
    """
    Orchestrates the fulfillment saga.

    Checkout (steps 1-4) runs request-scoped: price, reserve, create the order,
    create the payment intent. Confirmation (steps 5-7) runs from the payment
    orchestrator's callback, possibly in another process, and either commits
    the reservations and marks the order paid or releases them and marks the
    order failed/cancelled. Every failure after a reservation exists is
    compensated before the error reaches the caller.
    """

    def __init__(self, session_factory, payments: PaymentOrchestrator, settings: Settings):
        self.session_factory = session_factory
        self.payments = payments
        self.currency = settings.currency
        self.reservation_ttl = timedelta(seconds=settings.reservation_ttl_seconds)
        self.delivery_estimate = timedelta(days=settings.delivery_estimate_days)
        self.pricing = PricingPolicy(
            tax_rate=settings.tax_rate,
            free_shipping_threshold=settings.free_shipping_threshold,
            flat_shipping_cost=settings.flat_shipping_cost,
        )

        payments.set_confirmation_handler(self.handle_payment_outcome)

    # Checkout

    async def place_order(self, account_id: str, request: CheckoutRequest) -> CheckoutResult:
        """
        Run checkout for ``account_id``.

        Returns:
            The new order id and the client secret the storefront confirms payment with

        Raises:
            InsufficientStock: a line could not be reserved; nothing stays held
            NotFound / ValidationError: the cart does not match the catalog
            PaymentGatewayError: the intent could not be created; the order is failed

        Any failure once the order exists fails the order and releases its
        reservations before the error propagates.
        """
        order_id = uuid4()
        logger.info(f"Starting checkout {order_id} for account {account_id}")

        quotes = await self._price_lines(request.line_items)
        reservations = await self._reserve_all(order_id, request.line_items)

        try:
            order = await self._create_order(order_id, account_id, request, quotes, reservations)
        except Exception as e:
            logger.error(f"Could not create order {order_id}: {str(e)}", exc_info=True)
            await self._compensate_reservations(order_id, reservations, f"Order creation failed: {e}")
            raise

        intent = None
        try:
            intent = await self.payments.create_intent(order_id, order.total, order.currency)
            await self._await_payment(order_id, intent)
        except Exception as e:
            if isinstance(e, PaymentGatewayError):
                reason = f"Payment intent creation failed: {e.message}"
            else:
                logger.error(f"Checkout {order_id} failed after order creation: {str(e)}", exc_info=True)
                reason = f"Checkout failed: {e}"
            await self._roll_back_order(order_id, OrderStatus.FAILED, reason, SagaStep.PAYMENT_INTENT)
            if intent is not None:
                await self.payments.cancel_intent(intent.intent_id)
            raise

        logger.info(f"Order {order_id} awaiting payment on intent {intent.intent_id}")
        return CheckoutResult(order_id=order_id, payment_intent_client_secret=intent.client_secret)

    async def _await_payment(self, order_id: UUID, intent: PaymentIntentRecord):
        async with self.session_factory() as session:
            await OrderStore(session).attach_payment_intent(order_id, intent.intent_id)

            await log_saga_step(
                session,
                order_id=order_id,
                step=SagaStep.PAYMENT_INTENT,
                event_type="order.awaiting_payment",
                status=StepStatus.COMPLETED,
                detail={"payment_intent_id": intent.intent_id},
            )
            await save_event_to_outbox(session, OrderAwaitingPaymentEvent(
                aggregate_id=str(order_id),
                correlation_id=order_id,
                order_id=order_id,
                payment_intent_id=intent.intent_id,
            ))
            await session.commit()

    async def _price_lines(self, line_items: Sequence[LineItemRequest]) -> List[SkuQuote]:
        async with self.session_factory() as session:
            catalog = Catalog(session)
            quotes = []
            for line in line_items:
                quote = await catalog.get_sku(line.sku_id)
                if not quote.orderable:
                    raise ValidationError(
                        f"SKU {line.sku_id} is not available for ordering ({quote.status})",
                        details={"sku_id": line.sku_id},
                    )
                if line.quantity < quote.min_order_quantity:
                    raise ValidationError(
                        f"Minimum order quantity for {line.sku_id} is {quote.min_order_quantity}",
                        details={"sku_id": line.sku_id, "min_order_quantity": quote.min_order_quantity},
                    )
                if quote.currency.lower() != self.currency.lower():
                    raise ValidationError(
                        f"SKU {line.sku_id} is priced in {quote.currency}, checkout is in {self.currency}",
                        details={"sku_id": line.sku_id},
                    )
                quotes.append(quote)
            return quotes

    async def _reserve_all(self, order_id: UUID, line_items: Sequence[LineItemRequest]) -> List[Reservation]:
        held: List[Reservation] = []
        for line in line_items:
            try:
                async with self.session_factory() as session:
                    manager = ReservationManager(session, ttl=self.reservation_ttl)
                    reservation = await manager.reserve(line.sku_id, line.quantity, order_id)
                    await session.commit()
            except Exception as e:
                logger.warning(f"Checkout {order_id} could not reserve {line.sku_id}: {e}")
                await self._compensate_reservations(order_id, held, str(e), failed_sku=line.sku_id)
                raise
            held.append(reservation)
        return held

    async def _compensate_reservations(
        self,
        order_id: UUID,
        reservations: Sequence[Reservation],
        reason: str,
        failed_sku: Optional[str] = None,
    ):
        """Release every hold taken in this checkout attempt."""
        async with self.session_factory() as session:
            manager = ReservationManager(session)
            for reservation in reservations:
                await manager.release(reservation.id)

            await log_saga_step(
                session,
                order_id=order_id,
                step=SagaStep.INVENTORY_RESERVATION,
                event_type="inventory.reserve.failed",
                status=StepStatus.COMPENSATED,
                detail={
                    "failed_sku": failed_sku,
                    "released": [str(r.id) for r in reservations],
                },
                error_message=reason,
            )
            await session.commit()

        if reservations:
            logger.info(f"Released {len(reservations)} reservations for abandoned checkout {order_id}")

    async def _create_order(
        self,
        order_id: UUID,
        account_id: str,
        request: CheckoutRequest,
        quotes: Sequence[SkuQuote],
        reservations: Sequence[Reservation],
    ) -> Order:
        totals = self.pricing.totals(
            (quote.price, line.quantity) for quote, line in zip(quotes, request.line_items)
        )
        draft = OrderDraft(
            order_id=order_id,
            account_id=account_id,
            shipping_address=request.shipping_address.model_dump(),
            totals=totals,
            currency=self.currency,
            estimated_delivery=datetime.utcnow() + self.delivery_estimate,
            lines=[
                OrderLineDraft(
                    sku_id=line.sku_id,
                    reservation_id=reservation.id,
                    quantity=line.quantity,
                    unit_price=quote.price,
                    kind=quote.kind,
                    customizations=line.customizations.model_dump(exclude_none=True) if line.customizations else None,
                )
                for line, quote, reservation in zip(request.line_items, quotes, reservations)
            ],
        )

        async with self.session_factory() as session:
            order = await OrderStore(session).create(draft)

            await log_saga_step(
                session,
                order_id=order_id,
                step=SagaStep.ORDER_PLACED,
                event_type="order.placed",
                status=StepStatus.COMPLETED,
                detail={"total": str(order.total), "reservations": [str(r.id) for r in reservations]},
            )
            await save_event_to_outbox(session, OrderPlacedEvent(
                aggregate_id=str(order_id),
                correlation_id=order_id,
                order_id=order_id,
                account_id=account_id,
                items=[
                    {"sku_id": line.sku_id, "quantity": line.quantity, "unit_price": str(line.unit_price)}
                    for line in draft.lines
                ],
                total=str(order.total),
            ))
            await session.commit()

        return order

    # Confirmation

    async def handle_payment_outcome(self, confirmation: PaymentConfirmation) -> ConfirmationOutcome:
        """Apply a trusted payment outcome. Safe to call repeatedly for the same event."""
        if confirmation.outcome == PaymentOutcome.SUCCEEDED:
            return await self._finalize_paid(confirmation)

        if confirmation.outcome == PaymentOutcome.FAILED:
            target, reason = OrderStatus.FAILED, "Payment failed at gateway"
        else:
            target, reason = OrderStatus.CANCELLED, "Payment cancelled at gateway"

        try:
            outcome = await self._roll_back_order(
                confirmation.order_id, target, reason, SagaStep.PAYMENT_CONFIRMATION
            )
        except PostPaymentCancellationAttempted as e:
            logger.warning(
                f"Ignoring {confirmation.outcome.value} report for paid order {confirmation.order_id}"
            )
            async with self.session_factory() as session:
                await self._raise_alert(session, confirmation.order_id, e.kind, e.message)
                await session.commit()
            return ConfirmationOutcome.REJECTED

        if outcome == ConfirmationOutcome.APPLIED and confirmation.outcome == PaymentOutcome.FAILED:
            # The customer may not retry on an intent whose order is gone
            await self.payments.cancel_intent(confirmation.intent_id)
        return outcome

    async def _finalize_paid(self, confirmation: PaymentConfirmation) -> ConfirmationOutcome:
        order_id = confirmation.order_id

        async with self.session_factory() as session:
            store = OrderStore(session)
            order = await store.get(order_id)

            if order.requires_attention:
                await self._reject_halted(session, order, SagaStep.PAYMENT_CONFIRMATION, confirmation.event_id)
                return ConfirmationOutcome.REJECTED

            if order.status == OrderStatus.PENDING.value:
                # Checkout has not attached the intent yet; the gateway retries on 409
                raise InvalidState("Order", order_id, order.status, OrderStatus.PAID.value)

            if order.payment_intent_id != confirmation.intent_id:
                await self._raise_alert(
                    session,
                    order_id,
                    "payment_intent_mismatch",
                    f"Intent {confirmation.intent_id} succeeded but order {order_id} is "
                    f"bound to {order.payment_intent_id}; refund required",
                )
                await log_saga_step(
                    session,
                    order_id=order_id,
                    step=SagaStep.PAYMENT_CONFIRMATION,
                    event_type="payment.succeeded",
                    status=StepStatus.REJECTED,
                    detail={"event_id": confirmation.event_id, "payment_intent_id": confirmation.intent_id},
                    error_message="Payment intent does not belong to order",
                )
                await session.commit()
                return ConfirmationOutcome.REJECTED

            if OrderStatus(order.status) in PAID_STATUSES:
                logger.info(f"Payment for order {order_id} already applied")
                return ConfirmationOutcome.ALREADY_PROCESSED

            if OrderStatus(order.status) in TERMINAL_STATUSES:
                await self._raise_alert(
                    session,
                    order_id,
                    "payment_after_rollback",
                    f"Intent {confirmation.intent_id} succeeded but order {order_id} is "
                    f"{order.status}; refund required",
                )
                await log_saga_step(
                    session,
                    order_id=order_id,
                    step=SagaStep.PAYMENT_CONFIRMATION,
                    event_type="payment.succeeded",
                    status=StepStatus.REJECTED,
                    detail={"event_id": confirmation.event_id},
                    error_message=f"Order already {order.status}",
                )
                await session.commit()
                return ConfirmationOutcome.REJECTED

            if order.status != OrderStatus.AWAITING_PAYMENT.value:
                raise InvalidState("Order", order_id, order.status, OrderStatus.PAID.value)

            manager = ReservationManager(session)
            try:
                await store.mark_paid(order_id)
                for line in order.lines:
                    await manager.commit(line.reservation_id)
            except InvalidState as e:
                await session.rollback()
                if e.entity == "Order":
                    # Lost the order row to a concurrent transition; re-read and classify
                    return await self._finalize_paid(confirmation)
                fault = ConsistencyFault(
                    f"Reservation could not be committed for paid order {order_id}: {e.message}",
                    details={"order_id": str(order_id)},
                )
                await self._halt(order_id, fault, SagaStep.PAYMENT_CONFIRMATION)
                raise fault
            except ConsistencyFault as fault:
                await session.rollback()
                await self._halt(order_id, fault, SagaStep.PAYMENT_CONFIRMATION)
                raise

            await log_saga_step(
                session,
                order_id=order_id,
                step=SagaStep.PAYMENT_CONFIRMATION,
                event_type="order.paid",
                status=StepStatus.COMPLETED,
                detail={"event_id": confirmation.event_id, "payment_intent_id": confirmation.intent_id},
            )
            await save_event_to_outbox(session, OrderPaidEvent(
                aggregate_id=str(order_id),
                correlation_id=order_id,
                order_id=order_id,
                payment_intent_id=confirmation.intent_id,
                total=str(order.total),
                currency=order.currency,
            ))
            await session.commit()

        logger.info(f"Order {order_id} paid; {len(order.lines)} reservations committed")
        return ConfirmationOutcome.APPLIED

    async def _roll_back_order(
        self,
        order_id: UUID,
        target: OrderStatus,
        reason: str,
        step: SagaStep,
    ) -> ConfirmationOutcome:
        """
        Move an open order to ``target`` and release its reservations in one transaction.

        Orders halted for operator attention are left untouched and yield REJECTED.

        Raises:
            PostPaymentCancellationAttempted: the order is already paid
            ConsistencyFault: a reservation could not be released
        """
        async with self.session_factory() as session:
            store = OrderStore(session)
            order = await store.get(order_id)

            if OrderStatus(order.status) in TERMINAL_STATUSES:
                logger.info(f"Order {order_id} already {order.status}")
                return ConfirmationOutcome.ALREADY_PROCESSED

            if order.requires_attention:
                await self._reject_halted(session, order, step)
                return ConfirmationOutcome.REJECTED

            try:
                if target == OrderStatus.CANCELLED:
                    order = await store.mark_cancelled(order_id, reason)
                else:
                    order = await store.mark_failed(order_id, reason)
            except InvalidState as e:
                await session.rollback()
                if OrderStatus(e.current) in TERMINAL_STATUSES:
                    return ConfirmationOutcome.ALREADY_PROCESSED
                raise

            manager = ReservationManager(session)
            released = []
            try:
                for line in order.lines:
                    if await manager.release(line.reservation_id):
                        released.append(line.reservation_id)
            except (InvalidState, ConsistencyFault) as e:
                await session.rollback()
                fault = ConsistencyFault(
                    f"Reservation could not be released for order {order_id}: {e.message}",
                    details={"order_id": str(order_id)},
                )
                await self._halt(order_id, fault, step)
                raise fault

            event_class = OrderCancelledEvent if target == OrderStatus.CANCELLED else OrderFailedEvent
            await log_saga_step(
                session,
                order_id=order_id,
                step=step,
                event_type=f"order.{target.value}",
                status=StepStatus.COMPENSATED,
                detail={"released": [str(rid) for rid in released]},
                error_message=reason,
            )
            await save_event_to_outbox(session, event_class(
                aggregate_id=str(order_id),
                correlation_id=order_id,
                order_id=order_id,
                reason=reason,
                released_reservations=released,
            ))
            await session.commit()

        logger.info(f"Order {order_id} {target.value}: {reason} (released {len(released)})")
        return ConfirmationOutcome.APPLIED

    # Cancellation and expiry

    async def cancel_order(self, order_id: UUID, account_id: str) -> Order:
        """Customer cancellation of an unpaid order."""
        order = await self.get_order(order_id, account_id)

        try:
            outcome = await self._roll_back_order(
                order_id, OrderStatus.CANCELLED, "Cancelled by customer", SagaStep.CANCELLATION
            )
        except PostPaymentCancellationAttempted as e:
            async with self.session_factory() as session:
                await self._raise_alert(session, order_id, e.kind, e.message)
                await session.commit()
            raise

        if outcome in (ConfirmationOutcome.ALREADY_PROCESSED, ConfirmationOutcome.REJECTED):
            raise InvalidState("Order", order_id, order.status, OrderStatus.CANCELLED.value)

        if order.payment_intent_id:
            await self.payments.cancel_intent(order.payment_intent_id)
        return await self.get_order(order_id)

    async def expire_order(self, order_id: UUID) -> ConfirmationOutcome:
        """Cancel an order whose reservations outlived their hold."""
        try:
            outcome = await self._roll_back_order(
                order_id,
                OrderStatus.CANCELLED,
                "Reservation expired before payment",
                SagaStep.EXPIRY,
            )
        except PostPaymentCancellationAttempted:
            logger.warning(f"Expiry skipped for order {order_id}: already paid")
            return ConfirmationOutcome.REJECTED

        if outcome == ConfirmationOutcome.APPLIED:
            order = await self.get_order(order_id)
            if order.payment_intent_id:
                await self.payments.cancel_intent(order.payment_intent_id)
        return outcome

    async def release_orphaned(self, reservations: Sequence[Reservation]) -> int:
        """Release expired holds whose checkout never created an order."""
        released = 0
        async with self.session_factory() as session:
            manager = ReservationManager(session)
            for reservation in reservations:
                try:
                    if await manager.release(reservation.id):
                        released += 1
                except InvalidState:
                    # Committed by a confirmation that got there first
                    continue
            await session.commit()
        return released

    # Fulfillment

    async def start_fulfillment(self, order_id: UUID) -> Order:
        """Hand a paid order to the warehouse (``Paid -> Fulfilling``)."""
        async with self.session_factory() as session:
            order = await OrderStore(session).mark_fulfilling(order_id)

            await log_saga_step(
                session,
                order_id=order_id,
                step=SagaStep.FULFILLMENT,
                event_type="order.fulfilling",
                status=StepStatus.COMPLETED,
            )
            await save_event_to_outbox(session, OrderFulfillingEvent(
                aggregate_id=str(order_id),
                correlation_id=order_id,
                order_id=order_id,
            ))
            await session.commit()

        logger.info(f"Order {order_id} handed to fulfillment")
        return order

    # Queries

    async def get_order(self, order_id: UUID, account_id: Optional[str] = None) -> Order:
        async with self.session_factory() as session:
            order = await OrderStore(session).get(order_id)
        if account_id is not None and order.account_id != account_id:
            raise NotFound(f"Order not found: {order_id}")
        return order

    async def refresh_payment(self, order_id: UUID, account_id: str) -> Order:
        """Poll the gateway for an order whose webhook has not arrived."""
        order = await self.get_order(order_id, account_id)
        if not order.payment_intent_id:
            raise InvalidState("Order", order_id, order.status, "payment refresh")
        await self.payments.poll(order.payment_intent_id)
        return await self.get_order(order_id)

    # Operator escalation

    async def _halt(self, order_id: UUID, fault: ConsistencyFault, step: SagaStep):
        async with self.session_factory() as session:
            await OrderStore(session).flag_for_attention(order_id, fault.message)
            await self._raise_alert(session, order_id, fault.kind, fault.message)
            await log_saga_step(
                session,
                order_id=order_id,
                step=step,
                event_type="operator.alert",
                status=StepStatus.FAILED,
                error_message=fault.message,
            )
            await session.commit()

    async def _reject_halted(
        self,
        session: AsyncSession,
        order: Order,
        step: SagaStep,
        event_id: Optional[str] = None,
    ):
        logger.warning(f"Order {order.id} is held for operator attention; {step.value} not applied")
        await log_saga_step(
            session,
            order_id=order.id,
            step=step,
            event_type="order.halted",
            status=StepStatus.REJECTED,
            detail={"event_id": event_id} if event_id else None,
            error_message=order.failure_reason,
        )
        await session.commit()

    async def _raise_alert(self, session: AsyncSession, order_id: UUID, kind: str, message: str):
        logger.critical(f"Operator alert [{kind}] order {order_id}: {message}")
        await save_event_to_outbox(session, OperatorAlertEvent(
            aggregate_id=str(order_id),
            correlation_id=order_id,
            alert_kind=kind,
            order_id=order_id,
            message=message,
        ))
