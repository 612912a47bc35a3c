"""
Configuration loading: YAML file, then .env / environment overrides.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)

ENV_PREFIX = "CHANGEWATCH_"


class DeliverySettings(BaseModel):
    max_attempts: int = Field(5, ge=1)
    retry_base_seconds: float = Field(60.0, gt=0)
    retry_max_seconds: float = Field(7200.0, gt=0)
    claim_lease_seconds: float = Field(300.0, gt=0)
    send_timeout_seconds: float = Field(30.0, gt=0)
    batch_size: int = Field(50, ge=1)


class Settings(BaseModel):
    """Validated runtime settings."""
    db_path: str = "changewatch.db"
    log_level: str = "INFO"
    timezone: str = "UTC"
    scheduler_mode: str = "enabled"  # "disabled" runs every loop once and exits

    schedule_poll_seconds: int = Field(30, ge=1)
    delivery_poll_seconds: int = Field(10, ge=1)
    match_poll_seconds: int = Field(60, ge=1)
    reaper_poll_seconds: int = Field(300, ge=1)

    max_concurrent_runs: int = Field(5, ge=1)
    max_concurrent_deliveries: int = Field(3, ge=1)
    max_consecutive_failures: int = Field(3, ge=1)
    extraction_timeout_seconds: float = Field(120.0, gt=0)
    stale_run_seconds: float = Field(3600.0, gt=0)

    worker_url: str = "http://localhost:8081"
    worker_api_key: Optional[str] = None

    resend_api_key: Optional[str] = None
    resend_from_email: str = "Changewatch <notifications@example.com>"

    delivery: DeliverySettings = Field(default_factory=DeliverySettings)


def load_config(path: str = "config.yaml") -> Dict[str, Any]:
    """Load configuration from YAML file."""
    config_path = Path(path)
    if not config_path.exists():
        logger.warning(f"Config file not found: {path}, using defaults")
        return {}
    with config_path.open() as f:
        return yaml.safe_load(f) or {}


def _env_overrides() -> Dict[str, Any]:
    """Collect CHANGEWATCH_* variables; DELIVERY__X maps into the delivery block."""
    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if "__" in name:
            section, field = name.split("__", 1)
            overrides.setdefault(section, {})[field] = value
        else:
            overrides[name] = value
    return overrides


def load_settings(path: Optional[str] = None) -> Settings:
    """Build Settings from config.yaml (or CHANGEWATCH_CONFIG) plus env vars."""
    load_dotenv()
    config_path = path or os.getenv("CHANGEWATCH_CONFIG", "config.yaml")
    data = load_config(config_path)

    for key, value in _env_overrides().items():
        if key == "config":
            continue
        if isinstance(value, dict):
            data.setdefault(key, {}).update(value)
        else:
            data[key] = value

    return Settings(**data)
