"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

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

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Outbox
    outbox_poll_interval: int = 1
    outbox_batch_size: int = 100

    # Payment gateway
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""

    # Inventory ledger
    inventory_max_retries: int = 3
    inventory_retry_base_delay: float = 0.1
    inventory_retry_max_delay: float = 2.0
    max_inventory: int = 999999

    # Webhook idempotency
    webhook_claim_ttl_seconds: int = 300
    webhook_retry_max_attempts: int = 3

    # Catalog collaborator
    catalog_service_url: Optional[str] = None
    catalog_timeout: float = 2.0

    # Logging
    log_level: str = "INFO"

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

    class Config:
        env_file = ".env"
        case_sensitive = False
