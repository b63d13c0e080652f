import pytest

from fulfillment.services.order_service.saga_orchestrator import SagaOrchestrator
from fulfillment.services.payment_service.orchestrator import PaymentOrchestrator
from fulfillment.shared.config import Settings
from fulfillment.shared.database import Database
from tests.fakes import WEBHOOK_SECRET, FakeGateway, FakeMessageBroker, seed_test_catalog


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}"


@pytest.fixture
def settings(database_url):
    return Settings(
        _env_file=None,
        database_dsn=database_url,
        stripe_webhook_secret=WEBHOOK_SECRET,
        seed_catalog_on_startup=False,
        sweep_interval_seconds=3600,
        outbox_poll_interval=3600,
    )


@pytest.fixture
async def database(database_url):
    db = Database(database_url)
    await db.create_tables()
    yield db
    await db.drop_tables()
    await db.close()


@pytest.fixture
async def session_factory(database):
    await seed_test_catalog(database.session_factory)
    return database.session_factory


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def broker():
    return FakeMessageBroker()


@pytest.fixture
def payments(session_factory, gateway):
    return PaymentOrchestrator(session_factory, gateway)


@pytest.fixture
def saga(session_factory, payments, settings):
    return SagaOrchestrator(session_factory, payments, settings)
