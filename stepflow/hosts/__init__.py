"""Host factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepflowConfig, load_config
from .base import TIMED_OUT, BaseHost
from .inmemory import InMemoryHost


def get_host(
    backend: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> BaseHost:
    """Factory function to get the configured host."""

    config = config or load_config()
    backend = (backend or os.getenv("STEPFLOW_HOST") or config.host.backend).lower()

    if backend == "inmemory":
        return InMemoryHost()
    elif backend == "redis":
        from .redis import RedisHost

        redis_conf = config.host.redis
        return RedisHost(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key_prefix=redis_conf.key_prefix,
            ttl_seconds=config.store.ttl_seconds,
        )
    else:
        raise ValueError(f"Unsupported host backend: {backend}")


__all__ = ["BaseHost", "InMemoryHost", "TIMED_OUT", "get_host"]
