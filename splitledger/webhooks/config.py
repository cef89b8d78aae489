"""Webhook delivery settings loader."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookSettings:
    """Delivery tuning shared by the dispatcher, worker and test path.

    The retry defaults are part of the public contract: five attempts,
    then ``min(30s * 2**attempt_count, 1h)`` between them.
    """

    max_attempts: int = 5
    retry_base_delay_seconds: float = 30.0
    retry_max_delay_seconds: float = 3600.0
    retry_jitter_ratio: float = 0.0
    delivery_timeout_seconds: float = 10.0
    test_timeout_seconds: float = 10.0
    response_body_max_length: int = 1000
    worker_concurrency: int = 4
    poll_interval_seconds: float = 1.0
    scheduler_interval_seconds: float = 1.0
    visibility_timeout_seconds: float = 60.0
    idempotency_ttl_seconds: int = 86400


# Lower bounds for each setting; values below them are rejected
_MINIMUMS: dict[str, float] = {
    "max_attempts": 1,
    "retry_base_delay_seconds": 0,
    "retry_max_delay_seconds": 0,
    "retry_jitter_ratio": 0,
    "delivery_timeout_seconds": 0.1,
    "test_timeout_seconds": 0.1,
    "response_body_max_length": 1,
    "worker_concurrency": 1,
    "poll_interval_seconds": 0.1,
    "scheduler_interval_seconds": 0.1,
    "visibility_timeout_seconds": 1,
    "idempotency_ttl_seconds": 1,
}

# Exclusive upper bounds
_UPPER_BOUNDS: dict[str, float] = {
    "retry_jitter_ratio": 1.0,
}


def parse_webhook_settings(raw: dict[str, Any]) -> WebhookSettings:
    """Build settings from a mapping, skipping invalid values with a warning."""
    defaults = WebhookSettings()
    values: dict[str, Any] = {}

    for f in fields(WebhookSettings):
        if f.name not in raw:
            continue
        default_value = getattr(defaults, f.name)
        try:
            value = type(default_value)(raw[f.name])
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid webhook setting %s=%r", f.name, raw[f.name])
            continue
        if value < _MINIMUMS[f.name]:
            logger.warning(
                "Ignoring webhook setting %s=%r (minimum %s)",
                f.name,
                value,
                _MINIMUMS[f.name],
            )
            continue
        if f.name in _UPPER_BOUNDS and value >= _UPPER_BOUNDS[f.name]:
            logger.warning(
                "Ignoring webhook setting %s=%r (must be below %s)",
                f.name,
                value,
                _UPPER_BOUNDS[f.name],
            )
            continue
        values[f.name] = value

    unknown = set(raw) - {f.name for f in fields(WebhookSettings)}
    for name in sorted(unknown):
        logger.warning("Unknown webhook setting: %s", name)

    return WebhookSettings(**values)


def load_webhook_settings(path: str | Path) -> WebhookSettings:
    """Load settings from the ``settings`` section of a YAML file.

    A missing or unparsable file yields the defaults.
    """
    config_path = Path(path)
    if not config_path.exists():
        logger.info(
            "Webhook configuration not found at %s. Using default delivery settings.",
            config_path,
        )
        return WebhookSettings()

    try:
        with open(config_path) as f:
            raw_config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error("Failed to parse webhook configuration: %s", e)
        return WebhookSettings()

    settings = parse_webhook_settings(raw_config.get("settings") or {})
    logger.info(
        "Loaded webhook settings from %s (max_attempts=%d, base_delay=%ss, timeout=%ss)",
        config_path,
        settings.max_attempts,
        settings.retry_base_delay_seconds,
        settings.delivery_timeout_seconds,
    )
    return settings
