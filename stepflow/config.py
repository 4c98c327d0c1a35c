from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_HOOK_TIMEOUT,
    DEFAULT_KEY_PREFIX,
    DEFAULT_STORE_TTL_SECONDS,
    DEFAULT_WORKER_POLL_INTERVAL_MS,
    DEFAULT_WORKER_POLL_MAX_RETRIES,
    DEFAULT_WORKER_POLL_TIMEOUT_MS,
)


class RedisConfig(BaseModel):
    """Connection settings for Redis-backed stores and hosts."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = DEFAULT_KEY_PREFIX


class StoreConfig(BaseModel):
    """Persistence backend settings."""

    database_url: Optional[str] = None
    redis: RedisConfig = RedisConfig()
    ttl_seconds: int = DEFAULT_STORE_TTL_SECONDS


class DispatchConfig(BaseModel):
    """Addresses and credentials for remote capabilities."""

    base_url: str = "http://localhost:3000"
    agent_path: str = "/api/studio/chat/agent"
    workflow_path: str = "/api/workflows"
    worker_trigger_url: Optional[str] = None
    worker_status_path: str = "/api/workflows/workers"
    trigger_api_key: Optional[str] = None
    webhook_base_url: Optional[str] = None
    timeout_seconds: float = 60.0


class HostConfig(BaseModel):
    """Event-wait and timer substrate settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class WorkerPollDefaults(BaseModel):
    interval_ms: int = DEFAULT_WORKER_POLL_INTERVAL_MS
    timeout_ms: int = DEFAULT_WORKER_POLL_TIMEOUT_MS
    max_retries: int = DEFAULT_WORKER_POLL_MAX_RETRIES


class StepflowConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreConfig = StoreConfig()
    dispatch: DispatchConfig = DispatchConfig()
    host: HostConfig = HostConfig()
    worker_poll: WorkerPollDefaults = WorkerPollDefaults()
    hook_timeout: str = DEFAULT_HOOK_TIMEOUT
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> StepflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPFLOW_CONFIG env
            variable or 'stepflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPFLOW_CONFIG", "stepflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepflowConfig(**data)
    else:
        config = StepflowConfig()

    env_db_url = os.getenv("STEPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.store.database_url = env_db_url
    env_base_url = os.getenv("STEPFLOW_BASE_URL")
    if env_base_url:
        config.dispatch.base_url = env_base_url
    env_trigger_key = os.getenv("WORKERS_TRIGGER_API_KEY")
    if env_trigger_key:
        config.dispatch.trigger_api_key = env_trigger_key
    env_webhook = os.getenv("WORKFLOW_WEBHOOK_BASE_URL")
    if env_webhook:
        config.dispatch.webhook_base_url = env_webhook
    env_host = os.getenv("STEPFLOW_HOST")
    if env_host:
        config.host.backend = env_host.lower()
    return config
