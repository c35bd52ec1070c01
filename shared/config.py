"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings for the payment service."""

    # Service info
    service_name: str = "payment-service"
    service_port: int = 8003
    app_url: str = "http://localhost:3000"

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "storefront"
    # Full SQLAlchemy URL; takes precedence over the postgres_* fields
    sqlalchemy_url: Optional[str] = None

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    outbox_enabled: bool = True

    # Redis (order status view cache)
    redis_host: str = "localhost"
    redis_port: int = 6379
    order_cache_ttl_seconds: int = 30

    # Paystack
    paystack_secret_key: str = ""
    paystack_public_key: str = ""
    paystack_webhook_secret: Optional[str] = None
    paystack_base_url: str = "https://api.paystack.co"
    paystack_channels: str = "card,bank,bank_transfer"
    paystack_timeout_seconds: float = 15.0
    gateway_max_attempts: int = 3
    payment_currency: str = "NGN"
    payment_reference_prefix: str = "FS"

    # Email (Resend)
    resend_api_key: str = ""
    resend_base_url: str = "https://api.resend.com"
    resend_from_email: str = "onboarding@resend.dev"
    support_email: str = "support@example.com"
    admin_email: str = "admin@example.com"

    # Orders
    order_cancellation_window_minutes: int = 10
    payment_poll_interval_seconds: int = 3
    payment_poll_timeout_seconds: int = 300

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.sqlalchemy_url:
            return self.sqlalchemy_url
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

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL."""
        return f"redis://{self.redis_host}:{self.redis_port}"

    @property
    def webhook_secret(self) -> str:
        """Paystack signs webhooks with the secret key unless overridden."""
        return self.paystack_webhook_secret or self.paystack_secret_key

    @property
    def channels(self) -> list[str]:
        """Enabled Paystack payment channels."""
        return [c.strip() for c in self.paystack_channels.split(",") if c.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = False
