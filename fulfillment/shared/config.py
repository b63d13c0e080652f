"""Shared configuration."""
from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the fulfillment service."""

    # Service info
    service_name: str = "fulfillment-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "fulfillment"
    database_dsn: Optional[str] = None
    database_echo: bool = False

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Logging
    log_level: str = "INFO"

    # Payment gateway
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    currency: str = "usd"

    # Reservations
    reservation_ttl_seconds: int = 15 * 60
    sweep_interval_seconds: int = 60

    # Catalog
    seed_catalog_on_startup: bool = True

    # Pricing
    tax_rate: Decimal = Decimal("0.08")
    free_shipping_threshold: Decimal = Decimal("500")
    flat_shipping_cost: Decimal = Decimal("25")
    delivery_estimate_days: int = 14

    # Outbox
    outbox_poll_interval: int = 1
    outbox_batch_size: int = 100

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)
