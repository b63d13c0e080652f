"""Fulfillment Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.services.inventory_service.catalog import DEFAULT_CATALOG, Catalog, seed_catalog
from fulfillment.services.inventory_service.ledger import InventoryLedger
from fulfillment.services.payment_service.gateway import PaymentGateway, StripeGateway
from fulfillment.services.payment_service.orchestrator import PaymentOrchestrator
from fulfillment.shared.audit import SagaLog
from fulfillment.shared.config import Settings
from fulfillment.shared.database import Database
from fulfillment.shared.exceptions import FulfillmentError, ValidationError
from fulfillment.shared.message_broker import MessageBroker
from fulfillment.shared.outbox import OutboxPublisher

from .expiry_sweeper import ReservationExpirySweeper
from .saga_orchestrator import SagaOrchestrator
from .schemas import (
    AdjustStockRequest,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmationResponse,
    OrderResponse,
    OrderStatsResponse,
    SagaLogResponse,
    SkuResponse,
    StockResponse,
)
from .store import OrderStore

logger = logging.getLogger(__name__)

router = APIRouter()


# Dependencies
async def get_session(request: Request) -> AsyncSession:
    """Get database session."""
    async with request.app.state.database.session_factory() as session:
        yield session


def get_saga(request: Request) -> SagaOrchestrator:
    return request.app.state.saga


def get_payments(request: Request) -> PaymentOrchestrator:
    return request.app.state.payments


def get_account_id(x_account_id: Optional[str] = Header(default=None)) -> str:
    """The caller's opaque account id."""
    if not x_account_id:
        raise ValidationError("X-Account-Id header is required")
    return x_account_id


# Checkout and payment
@router.post("/checkout", response_model=CheckoutResponse, status_code=201)
async def checkout(
    request: CheckoutRequest,
    account_id: str = Depends(get_account_id),
    saga: SagaOrchestrator = Depends(get_saga),
):
    """
    Start the fulfillment saga.

    Reserves stock for every line, creates the order and its payment intent,
    and returns the client secret the storefront confirms payment with.
    """
    result = await saga.place_order(account_id, request)
    return CheckoutResponse(
        order_id=result.order_id,
        payment_intent_client_secret=result.payment_intent_client_secret,
    )


@router.post("/payments/webhook", response_model=ConfirmationResponse)
async def payment_webhook(request: Request, payments: PaymentOrchestrator = Depends(get_payments)):
    """Receive a gateway event. The raw body is needed for signature verification."""
    payload = await request.body()
    outcome = await payments.handle_webhook(payload, request.headers.get("Stripe-Signature"))
    return ConfirmationResponse(outcome=outcome.value if outcome else None)


@router.post("/orders/{order_id}/payment/refresh", response_model=OrderResponse)
async def refresh_payment(
    order_id: UUID,
    account_id: str = Depends(get_account_id),
    saga: SagaOrchestrator = Depends(get_saga),
):
    """Poll the gateway when the webhook is late."""
    order = await saga.refresh_payment(order_id, account_id)
    return OrderResponse.from_order(order)


# Orders
@router.get("/orders", response_model=List[OrderResponse])
async def list_orders(
    account_id: str = Depends(get_account_id),
    session: AsyncSession = Depends(get_session),
):
    """Get the caller's orders, newest first."""
    orders = await OrderStore(session).list_for_account(account_id)
    return [OrderResponse.from_order(order) for order in orders]


@router.get("/orders/stats", response_model=OrderStatsResponse)
async def order_stats(
    account_id: str = Depends(get_account_id),
    session: AsyncSession = Depends(get_session),
):
    """Get order statistics for the caller."""
    stats = await OrderStore(session).account_stats(account_id)
    return OrderStatsResponse(**stats)


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: UUID,
    account_id: str = Depends(get_account_id),
    saga: SagaOrchestrator = Depends(get_saga),
):
    """Get order by ID."""
    order = await saga.get_order(order_id, account_id)
    return OrderResponse.from_order(order)


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: UUID,
    account_id: str = Depends(get_account_id),
    saga: SagaOrchestrator = Depends(get_saga),
):
    """Cancel an unpaid order and release its stock."""
    order = await saga.cancel_order(order_id, account_id)
    return OrderResponse.from_order(order)


@router.get("/orders/{order_id}/saga-logs", response_model=List[SagaLogResponse])
async def get_saga_logs(
    order_id: UUID,
    account_id: str = Depends(get_account_id),
    saga: SagaOrchestrator = Depends(get_saga),
    session: AsyncSession = Depends(get_session),
):
    """Get saga execution logs for an order."""
    await saga.get_order(order_id, account_id)

    result = await session.execute(
        select(SagaLog)
        .where(SagaLog.order_id == order_id)
        .order_by(SagaLog.created_at)
    )
    return [SagaLogResponse.model_validate(log) for log in result.scalars().all()]


# Fulfillment
@router.post("/orders/{order_id}/fulfill", response_model=OrderResponse)
async def start_fulfillment(order_id: UUID, saga: SagaOrchestrator = Depends(get_saga)):
    """Hand a paid order to the warehouse."""
    order = await saga.start_fulfillment(order_id)
    return OrderResponse.from_order(order)


# Catalog
@router.get("/catalog", response_model=List[SkuResponse])
async def list_catalog(kind: Optional[str] = None, session: AsyncSession = Depends(get_session)):
    """Orderable SKUs with current price and sellable quantity."""
    quotes = await Catalog(session).list_skus(kind)
    return [SkuResponse.model_validate(quote) for quote in quotes]


@router.get("/catalog/{sku_id}", response_model=SkuResponse)
async def get_sku(sku_id: str, session: AsyncSession = Depends(get_session)):
    quote = await Catalog(session).get_sku(sku_id)
    return SkuResponse.model_validate(quote)


# Inventory administration
@router.get("/inventory/low-stock", response_model=List[StockResponse])
async def low_stock(session: AsyncSession = Depends(get_session)):
    """SKUs at or below their reorder point."""
    records = await InventoryLedger(session).list_low_stock()
    return [StockResponse.model_validate(record) for record in records]


@router.get("/inventory/{sku_id}", response_model=StockResponse)
async def get_stock(sku_id: str, session: AsyncSession = Depends(get_session)):
    record = await InventoryLedger(session).get_record(sku_id)
    return StockResponse.model_validate(record)


@router.post("/inventory/{sku_id}/adjust", response_model=StockResponse)
async def adjust_stock(
    sku_id: str,
    request: AdjustStockRequest,
    session: AsyncSession = Depends(get_session),
):
    """Restock or correct owned stock."""
    record = await InventoryLedger(session).adjust_available(sku_id, request.delta)
    response = StockResponse.model_validate(record)
    await session.commit()
    return response


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    return {"status": "healthy", "service": request.app.state.settings.service_name}


# Error handlers
async def handle_fulfillment_error(request: Request, exc: FulfillmentError):
    if exc.http_status >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    messages = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=ValidationError.http_status,
        content={"kind": ValidationError.kind, "message": "; ".join(messages)},
    )


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
    message_broker=None,
) -> FastAPI:
    """
    Build the application and its collaborators.

    Args:
        settings: Service settings; read from the environment when omitted
        gateway: Payment gateway; Stripe when omitted
        message_broker: Event broker; RabbitMQ when omitted
    """
    settings = settings or Settings()
    database = Database(settings.database_url, echo=settings.database_echo)
    message_broker = message_broker or MessageBroker(settings.rabbitmq_url)
    gateway = gateway or StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)

    payments = PaymentOrchestrator(database.session_factory, gateway)
    saga = SagaOrchestrator(database.session_factory, payments, settings)

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
        poll_interval=settings.outbox_poll_interval,
        batch_size=settings.outbox_batch_size,
    )
    sweeper = ReservationExpirySweeper(
        database.session_factory,
        saga,
        interval=settings.sweep_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for the application."""
        # Startup
        logger.info(f"Starting {settings.service_name}...")

        await database.create_tables()

        if settings.seed_catalog_on_startup:
            async with database.session_factory() as session:
                await seed_catalog(session, DEFAULT_CATALOG)
                await session.commit()

        await message_broker.connect()
        await outbox_publisher.start()
        await sweeper.start()

        logger.info(f"{settings.service_name} started successfully")

        yield

        # Shutdown
        logger.info(f"Shutting down {settings.service_name}...")
        await sweeper.stop()
        await outbox_publisher.stop()
        await message_broker.disconnect()
        await database.close()

    app = FastAPI(title="Fulfillment Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.payments = payments
    app.state.saga = saga
    app.state.outbox_publisher = outbox_publisher
    app.state.sweeper = sweeper

    app.add_exception_handler(FulfillmentError, handle_fulfillment_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.include_router(router)
    return app


settings = Settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
