"""Application Configuration"""

from pydantic_settings import BaseSettings
from pydantic import ConfigDict, field_validator
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = ConfigDict(env_file=".env", case_sensitive=True)

    # Application
    APP_NAME: str = "Lab Platform API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"  # development, staging, production

    # Database - SQL
    DATABASE_URL: str = "mysql+aiomysql://root:@localhost:3306/lab_platform"
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # Database - MongoDB (event sink)
    MONGODB_URL: Optional[str] = None
    MONGODB_DATABASE: str = "lab_platform"
    MONGODB_EVENTS_COLLECTION: str = "lab_events"

    # Database - Redis (reservation lock backend)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # Reservation locking
    LOCK_BACKEND: str = "memory"  # memory or redis
    LOCK_TIMEOUT_SECONDS: float = 5.0
    LOCK_RETRY_INTERVAL_SECONDS: float = 1.0
    LOCK_TTL_SECONDS: int = 30

    # Provisioning
    CONTAINER_IMAGE: str = "ubuntu:24.04"
    CONTAINER_NAME_PREFIX: str = "lab"
    READINESS_TIMEOUT_SECONDS: float = 120.0
    READINESS_POLL_INTERVAL_SECONDS: float = 2.0
    PROVISION_WAIT_TIMEOUT_SECONDS: float = 900.0
    SSH_USER: str = "labuser"
    SSH_PORT: int = 22

    # Container runtime
    LXC_ENABLED: bool = False
    LXC_BINARY: str = "lxc"
    LXC_COMMAND_TIMEOUT_SECONDS: float = 300.0

    # Operation queue
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_WORKER_CONCURRENCY: int = 4
    QUEUE_POLL_INTERVAL_SECONDS: float = 1.0
    QUEUE_RETRY_BACKOFF_SECONDS: float = 2.0
    QUEUE_RETRY_BACKOFF_MAX_SECONDS: float = 60.0
    STALLED_SWEEP_INTERVAL_SECONDS: float = 60.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @field_validator('REDIS_PORT', 'SSH_PORT')
    @classmethod
    def validate_port(cls, v: int, info) -> int:
        """Validate that port numbers are in the valid range (1-65535)"""
        if v < 1 or v > 65535:
            raise ValueError(f'{info.field_name} must be between 1 and 65535, got {v}')
        return v

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log level is one of the standard Python logging levels"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f'LOG_LEVEL must be one of {valid_levels}, got {v}')
        return v.upper()

    @field_validator('LOCK_BACKEND')
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        """Validate that the lock backend is a known implementation"""
        valid_backends = ["memory", "redis"]
        if v.lower() not in valid_backends:
            raise ValueError(f'LOCK_BACKEND must be one of {valid_backends}, got {v}')
        return v.lower()

    @field_validator(
        'LOCK_TIMEOUT_SECONDS',
        'LOCK_RETRY_INTERVAL_SECONDS',
        'READINESS_TIMEOUT_SECONDS',
        'READINESS_POLL_INTERVAL_SECONDS',
        'QUEUE_POLL_INTERVAL_SECONDS',
    )
    @classmethod
    def validate_positive_interval(cls, v: float, info) -> float:
        """Validate that timeouts and polling intervals are positive"""
        if v <= 0:
            raise ValueError(f'{info.field_name} must be positive, got {v}')
        return v

    @field_validator('QUEUE_MAX_ATTEMPTS', 'QUEUE_WORKER_CONCURRENCY')
    @classmethod
    def validate_at_least_one(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f'{info.field_name} must be at least 1, got {v}')
        return v


settings = Settings()
