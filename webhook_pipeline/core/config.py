# core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional, List


class Settings(BaseSettings):
    """
    Centralized application configuration.
    Static startup configuration; nothing here changes at runtime.
    """

    # ------------------------------------------------------------
    # Project / Runtime
    # ------------------------------------------------------------
    PROJECT_NAME: str = "Webhook Ingestion Pipeline"
    DEBUG: bool = False
    LOG_LEVEL: Optional[str] = None
    ENABLE_CORS: bool = True

    # HTTP / API
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_PER_MIN: str = "120"
    TRUST_FORWARDED_FOR: bool = False

    """
    Request headers copied into queue message attributes so the
    workflow authenticity check can see them. The body is never rewritten.
    """
    FORWARDED_HEADERS: List[str] = ["Authorization", "X-Webhook-Signature"]

    # ------------------------------------------------------------
    # AWS Core
    # ------------------------------------------------------------
    AWS_REGION: str = "us-east-1"
    AWS_ACCOUNT_ID: Optional[str] = None
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_SESSION_TOKEN: Optional[str] = None

    # ------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------
    QUEUE_BACKEND: str = Field(
        default="memory",
        description="Queue backend: memory (dev/tests), redis (durable) or sqs (managed)"
    )
    QUEUE_NAME: str = "webhook-queue"
    DLQ_NAME: str = "webhook-dlq"

    """
    Retention is a data-loss boundary: unacknowledged messages older than
    this are purged from the queue and the purge is logged.
    """
    QUEUE_RETENTION_DAYS: int = 7
    DLQ_RETENTION_DAYS: int = 14
    MAX_RECEIVE_COUNT: int = Field(
        default=3,
        ge=1,
        description="Deliveries allowed before a message is moved to the dead-letter queue"
    )
    VISIBILITY_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        gt=0,
        description="Must exceed worst-case workflow latency to avoid duplicate delivery"
    )

    # ------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------
    DISPATCHER_ENABLED: bool = True
    DISPATCH_BATCH_SIZE: int = Field(default=10, ge=1, le=10)
    DISPATCH_WORKERS: int = Field(default=1, ge=1)
    DISPATCH_POLL_INTERVAL_SECONDS: float = 0.5
    DISPATCH_MAX_POLL_INTERVAL_SECONDS: float = 10.0

    # ------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------
    WORKFLOW_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        gt=0,
        description="Deadline for one validate-then-process execution"
    )
    AUTHENTICITY_CHECK: str = Field(
        default="none",
        description="Authenticity check run by ValidateMessage: none, hmac, basic or jwt"
    )
    AUTHENTICITY_FAILURE_POLICY: str = Field(
        default="dead_letter",
        description="dead_letter: isolate immediately; retry: normal redelivery"
    )

    # HMAC signatures
    WEBHOOK_HMAC_SECRET: Optional[str] = None
    WEBHOOK_SIGNATURE_HEADER: str = "X-Webhook-Signature"

    # Basic authentication
    WEBHOOK_BASIC_USERNAME: Optional[str] = None
    WEBHOOK_BASIC_PASSWORD: Optional[str] = None

    # Bearer tokens
    JWT_SECRET_KEY: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: Optional[str] = None
    JWT_ISSUER: Optional[str] = None
    JWT_LEEWAY_SECONDS: int = 30

    # ------------------------------------------------------------
    # Redis Configuration
    # ------------------------------------------------------------
    REDIS_HOST: str = Field(
        default="localhost",
        description="Redis server hostname (ElastiCache endpoint in production)"
    )
    REDIS_PORT: int = Field(
        default=6379,
        description="Redis server port"
    )
    REDIS_DB: int = Field(
        default=0,
        description="Redis database number (0-15)"
    )
    REDIS_PASSWORD: Optional[str] = Field(
        default=None,
        description="Redis password (optional, not needed with security groups)"
    )
    REDIS_SSL: bool = Field(
        default=False,
        description="Use TLS/SSL for Redis connection (required for ElastiCache with encryption)"
    )
    REDIS_SOCKET_TIMEOUT: int = Field(
        default=5,
        description="Socket timeout in seconds"
    )
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(
        default=5,
        description="Socket connect timeout in seconds"
    )
    REDIS_MAX_CONNECTIONS: int = Field(
        default=50,
        description="Maximum connections in the pool"
    )

    # ------------------------------------------------------------
    # Messaging (SQS)
    # ------------------------------------------------------------
    SQS_QUEUE_URL: Optional[str] = None
    SQS_DLQ_URL: Optional[str] = None
    SQS_REGION: str = "us-east-1"

    @property
    def QUEUE_RETENTION_SECONDS(self) -> float:
        return self.QUEUE_RETENTION_DAYS * 86400

    @property
    def DLQ_RETENTION_SECONDS(self) -> float:
        return self.DLQ_RETENTION_DAYS * 86400

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
