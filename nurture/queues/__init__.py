"""Work queue factory and initialization."""

from __future__ import annotations

from typing import Optional

from ..config import NurtureConfig, load_config
from .base import BaseWorkQueue
from .inmemory import InMemoryWorkQueue


def get_queue(
    backend: Optional[str] = None, config: Optional[NurtureConfig] = None
) -> BaseWorkQueue:
    """Factory function to get the configured work queue."""

    config = config or load_config()
    backend = (backend or config.queue.backend).lower()

    if backend == "inmemory":
        return InMemoryWorkQueue()
    elif backend == "redis":
        from .redis import RedisWorkQueue

        redis_conf = config.queue.redis
        return RedisWorkQueue(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            prefix=redis_conf.prefix,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = ["BaseWorkQueue", "InMemoryWorkQueue", "get_queue"]
