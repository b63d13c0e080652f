"""Background release of reservations whose hold has lapsed."""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from fulfillment.services.inventory_service.models import Reservation
from fulfillment.services.inventory_service.reservation_manager import ReservationManager
from fulfillment.services.payment_service.models import ConfirmationOutcome
from fulfillment.shared.exceptions import FulfillmentError

from .saga_orchestrator import SagaOrchestrator
from .store import OrderStore

logger = logging.getLogger(__name__)


class ReservationExpirySweeper:
    """
    Periodically cancels unpaid orders whose reservations expired.

    Expiry goes through the same order-row transition as payment confirmation,
    so an expiry racing a confirmation either wins (order cancelled, stock
    released) or loses (order paid, reservations left committed). Holds with
    no order row belong to a checkout that died before creating its order and
    are released directly. Orders flagged for operator attention are skipped.
    """

    def __init__(self, session_factory, saga: SagaOrchestrator, interval: int = 60, batch_size: int = 500):
        """
        Initialize the sweeper.

        Args:
            session_factory: Async session factory for database access
            saga: Coordinator that owns order transitions
            interval: Seconds to wait between sweeps
            batch_size: Maximum expired reservations examined per sweep
        """
        self.session_factory = session_factory
        self.saga = saga
        self.interval = interval
        self.batch_size = batch_size
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the sweeper."""
        if self._running:
            logger.warning("Expiry sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_and_sweep())
        logger.info("Expiry sweeper started")

    async def stop(self):
        """Stop the sweeper."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Expiry sweeper stopped")

    async def _poll_and_sweep(self):
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Error in expiry sweeper: {str(e)}", exc_info=True)

            await asyncio.sleep(self.interval)

    async def sweep_once(self, now: Optional[datetime] = None) -> int:
        """
        Run one sweep.

        Returns:
            Number of orders cancelled plus orphaned holds released
        """
        async with self.session_factory() as session:
            expired = await ReservationManager(session).expired_held(now, limit=self.batch_size)
            if not expired:
                return 0

            by_order: Dict[UUID, List[Reservation]] = defaultdict(list)
            for reservation in expired:
                by_order[reservation.order_id].append(reservation)

            store = OrderStore(session)
            orphaned: List[Reservation] = []
            order_ids: List[UUID] = []
            halted = 0
            for order_id, reservations in by_order.items():
                order = await store.find(order_id)
                if order is None:
                    orphaned.extend(reservations)
                elif order.requires_attention:
                    halted += 1
                else:
                    order_ids.append(order_id)

        logger.info(
            f"Found {len(expired)} expired reservations "
            f"({len(order_ids)} orders, {len(orphaned)} orphaned, {halted} held for operator attention)"
        )

        swept = 0
        for order_id in order_ids:
            try:
                outcome = await self.saga.expire_order(order_id)
            except FulfillmentError as e:
                logger.error(f"Could not expire order {order_id}: {e.message}")
                continue
            if outcome == ConfirmationOutcome.APPLIED:
                swept += 1

        if orphaned:
            swept += await self.saga.release_orphaned(orphaned)

        if swept:
            logger.info(f"Expiry sweep released stock for {swept} orders/holds")
        return swept
