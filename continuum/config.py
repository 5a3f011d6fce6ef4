from __future__ import annotations

import os
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_CACHE_TTL, DEFAULT_EXECUTOR_TIMEOUT


class CacheConfig(BaseModel):
    """Template cache settings."""

    ttl_seconds: Optional[float] = DEFAULT_CACHE_TTL


class EngineConfig(BaseModel):
    """Continuation engine settings."""

    executor_timeout: Optional[float] = DEFAULT_EXECUTOR_TIMEOUT
    executor_modules: List[str] = Field(default_factory=list)


class ContinuumConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    cache: CacheConfig = CacheConfig()
    engine: EngineConfig = EngineConfig()


def load_config(path: Optional[str] = None) -> ContinuumConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CONTINUUM_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CONTINUUM_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ContinuumConfig(**data)
    else:
        config = ContinuumConfig()

    env_db_url = os.getenv("CONTINUUM_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
