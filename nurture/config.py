from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_JITTER_SECONDS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PAUSED_RECHECK_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    REDIS_KEY_PREFIX,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis work queue."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = REDIS_KEY_PREFIX


class QueueConfig(BaseModel):
    """Work queue configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class SchedulerConfig(BaseModel):
    """Polling, lease and retry settings for the scheduler."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_jitter_seconds: float = DEFAULT_BACKOFF_JITTER_SECONDS
    lease_seconds: int = DEFAULT_LEASE_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    batch_size: int = DEFAULT_BATCH_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    paused_recheck_seconds: int = DEFAULT_PAUSED_RECHECK_SECONDS


class EmailDefaults(BaseModel):
    """Sender defaults for email steps that do not set their own."""

    default_from_email: str = "no-reply@example.com"
    default_from_name: str = "Nurture"


class NurtureConfig(BaseModel):
    """Top-level configuration model."""

    queue: QueueConfig = QueueConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    email: EmailDefaults = EmailDefaults()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> NurtureConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to NURTURE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("NURTURE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = NurtureConfig(**data)
    else:
        config = NurtureConfig()

    env_db_url = os.getenv("NURTURE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_queue = os.getenv("NURTURE_QUEUE")
    if env_queue:
        config.queue.backend = env_queue.lower()  # type: ignore[assignment]
    return config
