"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

    # Service info
    service_name: str = "fee-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "school_fees"
    database_url_override: Optional[str] = None

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Paystack
    paystack_secret_key: str = "sk_test_change_me"
    paystack_base_url: str = "https://api.paystack.co"
    paystack_callback_url: str = "http://localhost:3000/payments/callback"

    # Fraud oracle (anomaly detection)
    fraud_oracle_url: str = "https://fps-anomaly-api.onrender.com/predict"
    fraud_oracle_timeout: float = 10.0

    # Receipts and invoices
    document_service_url: str = "http://document-service:8010"

    # Timeout for outbound HTTP calls (gateway, documents)
    http_timeout: float = 30.0

    # JWT
    jwt_secret: str = "school-secret-change-me"
    student_jwt_secret: str = "student-secret-change-me"
    jwt_algorithm: str = "HS256"

    # Background workers
    outbox_poll_interval: int = 1
    fraud_retry_poll_interval: int = 30
    fraud_retry_batch_size: int = 50
    fraud_retry_max_attempts: int = 5

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def database_url(self) -> str:
        """Get async PostgreSQL connection URL."""
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
