"""Monitoring package exports and helpers."""

from __future__ import annotations

from typing import Optional

from ..config.settings import AppConfig, get_app_config
from .logger import configure_logging, get_logger
from .metrics import METRICS
from .notifications import BaseNotifier, NotificationService, RecordingNotifier


def bootstrap_observability(config: Optional[AppConfig] = None) -> BaseNotifier:
    """Configure logging and return the notifier for the configured channels.

    Without any delivery channel the notifier keeps messages in memory.
    """

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring, force=True)
    service = NotificationService(app_config.notifications)
    if service.has_channels:
        return service
    get_logger(__name__).info("No notification channels configured; keeping notifications in memory")
    return RecordingNotifier(throttle_seconds=app_config.notifications.throttle_seconds)


__all__ = ["bootstrap_observability", "METRICS"]
