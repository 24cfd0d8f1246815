from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Event transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    topic: str = "events"


class ProcessorConfig(BaseModel):
    """Tuning knobs for the job processor and step executor."""

    concurrency: int = Field(default=4, ge=1, le=256)
    poll_interval: float = Field(default=0.5, gt=0)
    visibility_timeout: float = Field(default=300.0, ge=0)
    step_timeout: float = Field(default=30.0, gt=0)
    capability_retries: int = Field(default=2, ge=0, le=10)
    backoff_base: float = Field(default=1.5, ge=1.0)
    backoff_max: float = Field(default=30.0, gt=0)
    max_store_failures: int = Field(default=5, ge=1)
    max_conflict_retries: int = Field(default=10, ge=1)


class RetentionConfig(BaseModel):
    """Default retention windows used by ``cadence cleanup``."""

    instance_days: int = Field(default=30, ge=0, le=3650)
    job_days: int = Field(default=30, ge=0, le=3650)


class CadenceConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    definitions_path: Optional[str] = None
    processor: ProcessorConfig = ProcessorConfig()
    retention: RetentionConfig = RetentionConfig()
    status_url_template: str = "/api/workflows/{job_id}"
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> CadenceConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CADENCE_CONFIG env
            variable or 'cadence.yaml' in the current directory.
    """

    config_path = path or os.getenv("CADENCE_CONFIG", "cadence.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CadenceConfig(**data)
    else:
        config = CadenceConfig()

    env_db_url = os.getenv("CADENCE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("CADENCE_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport
    env_definitions = os.getenv("CADENCE_DEFINITIONS")
    if env_definitions:
        config.definitions_path = env_definitions
    return config
