from __future__ import annotations

import logging
import os
from typing import Optional

import yaml
from pydantic import BaseModel


class EngineConfig(BaseModel):
    """Settings for the workflow step loop."""

    max_steps_per_run: int = 100
    # condition waits without an explicit timeout expire after this long
    default_wait_timeout_seconds: float = 7 * 24 * 3600


class DeliveryConfig(BaseModel):
    """Settings for outbound webhook delivery and retries."""

    initial_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 3600.0
    default_timeout_seconds: float = 30.0
    default_max_retries: int = 3
    retry_batch_size: int = 100
    user_agent: str = "Salesflow-Webhook/1.0"
    event_retention_days: int = 90
    max_response_body_chars: int = 2000


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 8000


class SalesflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    delivery: DeliveryConfig = DeliveryConfig()
    server: ServerConfig = ServerConfig()
    database_url: Optional[str] = None
    cron_secret: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> SalesflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SALESFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SALESFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SalesflowConfig(**data)
    else:
        config = SalesflowConfig()

    env_db_url = os.getenv("SALESFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_secret = os.getenv("SALESFLOW_CRON_SECRET") or os.getenv("CRON_SECRET")
    if env_secret:
        config.cron_secret = env_secret
    env_level = os.getenv("SALESFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler for CLI and server entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
