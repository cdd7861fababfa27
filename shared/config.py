"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings for the order service and its collaborators."""

    # Service info
    service_name: str = "order-service"
    service_port: int = 8084

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "order_db"
    database_url_override: Optional[str] = None
    store_max_write_attempts: int = 3

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    broker_enabled: bool = True

    # Collaborator services
    cart_service_url: str = "http://cart-service:8083"
    product_service_url: str = "http://product-service:8082"
    user_service_url: str = "http://user-service:8081"
    payment_service_url: str = "http://payment-service:8085"
    delivery_service_url: str = "http://delivery-service:8087"
    notification_service_url: str = "http://notification-service:8086"
    collaborator_timeout_seconds: float = 5.0
    delivery_eta_days: int = 3

    # Compensation reconciler
    reconciler_poll_interval: float = 5.0
    reconciler_batch_size: int = 50
    reconciler_max_attempts: int = 8
    reconciler_base_delay_seconds: float = 2.0
    reconciler_max_delay_seconds: float = 300.0

    # Event outbox
    outbox_poll_interval: float = 1.0
    outbox_batch_size: int = 100
    outbox_max_retries: int = 5

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_url_override:
            return self.database_url_override
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
