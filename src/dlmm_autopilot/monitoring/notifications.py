"""User-facing notifications for automation events."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import NotificationConfig, get_app_config
from ..datalake.schemas import PriceRange
from ..utils.constants import utc_now
from .logger import get_logger
from .metrics import METRICS

FOOTER_TEXT = "DLMM Autopilot"


class NotificationType(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


_EMOJI = {
    NotificationType.INFO: "ℹ️",
    NotificationType.WARNING: "⚠️",
    NotificationType.ERROR: "❌",
    NotificationType.SUCCESS: "✅",
}

_DISCORD_COLORS = {
    NotificationType.INFO: 3447003,
    NotificationType.WARNING: 16776960,
    NotificationType.ERROR: 15158332,
    NotificationType.SUCCESS: 3066993,
}


@dataclass(slots=True)
class NotificationMessage:
    """Structured message handed to the notifier."""

    type: NotificationType
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
        }


class Notifier(Protocol):
    async def notify(self, message: NotificationMessage, *, key: Optional[str] = None) -> None:
        ...


def _short(identifier: str) -> str:
    return f"{identifier[:8]}..."


def _range_payload(price_range: PriceRange) -> Dict[str, float]:
    return price_range.to_dict()


class BaseNotifier:
    """Throttled notifier with shortcuts for the common automation events.

    Messages sent with a ``key`` are suppressed while the same key was sent
    less than ``throttle_seconds`` ago.
    """

    def __init__(
        self,
        *,
        throttle_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._throttle_seconds = max(throttle_seconds, 0.0)
        self._clock = clock
        self._last_sent: Dict[str, float] = {}

    def _should_send(self, key: Optional[str]) -> bool:
        if key is None:
            return True
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self._throttle_seconds:
            return False
        self._last_sent[key] = now
        return True

    async def notify(self, message: NotificationMessage, *, key: Optional[str] = None) -> None:
        if not self._should_send(key):
            METRICS.increment("notifications.throttled")
            return
        await self._deliver(message)

    async def _deliver(self, message: NotificationMessage) -> None:
        raise NotImplementedError

    async def notify_position_out_of_range(self, position_id: str, current_price: float) -> None:
        await self.notify(
            NotificationMessage(
                type=NotificationType.WARNING,
                title="Position Out of Range",
                message=(
                    f"Your position {_short(position_id)} is out of range at price "
                    f"${current_price:.2f}. Consider rebalancing."
                ),
                data={"position_id": position_id, "current_price": current_price},
            ),
            key=f"out_of_range:{position_id}",
        )

    async def notify_rebalance_executed(
        self, position_id: str, old_range: PriceRange, new_range: PriceRange
    ) -> None:
        await self.notify(
            NotificationMessage(
                type=NotificationType.SUCCESS,
                title="Position Rebalanced",
                message=(
                    f"Position {_short(position_id)} has been rebalanced.\n"
                    f"Old range: ${old_range.lower:.2f} - ${old_range.upper:.2f}\n"
                    f"New range: ${new_range.lower:.2f} - ${new_range.upper:.2f}"
                ),
                data={
                    "position_id": position_id,
                    "old_range": _range_payload(old_range),
                    "new_range": _range_payload(new_range),
                },
            )
        )

    async def notify_order_executed(self, order_id: str, order_type: str, price: float) -> None:
        await self.notify(
            NotificationMessage(
                type=NotificationType.SUCCESS,
                title=f"{order_type} Order Executed",
                message=f"Your {order_type} order {_short(order_id)} was executed at price ${price:.2f}",
                data={"order_id": order_id, "order_type": order_type, "price": price},
            )
        )

    async def notify_high_fees(self, position_id: str, fees_earned: float) -> None:
        await self.notify(
            NotificationMessage(
                type=NotificationType.INFO,
                title="High Fees Earned",
                message=(
                    f"Position {_short(position_id)} has earned ${fees_earned:.2f} in fees. "
                    "Consider collecting them."
                ),
                data={"position_id": position_id, "fees_earned": fees_earned},
            ),
            key=f"high_fees:{position_id}",
        )

    async def notify_price_alert(self, pool_address: str, target_price: float, current_price: float) -> None:
        await self.notify(
            NotificationMessage(
                type=NotificationType.INFO,
                title="Price Alert Triggered",
                message=(
                    f"Price alert for pool {_short(pool_address)} has been triggered.\n"
                    f"Target: ${target_price:.2f}\nCurrent: ${current_price:.2f}"
                ),
                data={
                    "pool_address": pool_address,
                    "target_price": target_price,
                    "current_price": current_price,
                },
            )
        )

    async def notify_error(self, error: str, context: Optional[str] = None) -> None:
        prefix = f"[{context}] " if context else ""
        await self.notify(
            NotificationMessage(
                type=NotificationType.ERROR,
                title="Error Occurred",
                message=f"{prefix}{error}",
                data={"error": error, "context": context},
            )
        )


class NotificationService(BaseNotifier):
    """Fan notifications out to the configured email, Telegram and Discord endpoints.

    Delivery runs in a worker thread so the event loop is never blocked on
    HTTP. Failures are retried, then logged; they never propagate.
    """

    def __init__(
        self,
        config: Optional[NotificationConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or get_app_config().notifications
        super().__init__(throttle_seconds=self._config.throttle_seconds, clock=clock)
        self._session = session or requests.Session()
        self._logger = get_logger(__name__)

    @property
    def has_channels(self) -> bool:
        return bool(self._targets(NotificationMessage(NotificationType.INFO, "", "")))

    async def _deliver(self, message: NotificationMessage) -> None:
        await asyncio.to_thread(self.send, message)

    def send(self, message: NotificationMessage) -> int:
        """Deliver synchronously; returns the number of channels that accepted it."""

        delivered = 0
        for channel, url, payload in self._targets(message):
            if self._post(channel, url, payload):
                delivered += 1
                METRICS.increment(f"notifications.{channel}.sent")
            else:
                METRICS.increment(f"notifications.{channel}.failed")
        return delivered

    def _targets(self, message: NotificationMessage) -> List[Tuple[str, str, Dict[str, Any]]]:
        cfg = self._config
        targets: List[Tuple[str, str, Dict[str, Any]]] = []
        if cfg.email and cfg.email_endpoint:
            targets.append(
                (
                    "email",
                    str(cfg.email_endpoint),
                    {
                        "to": cfg.email,
                        "subject": f"[DLMM Alert] {message.title}",
                        "body": message.message,
                        "type": message.type.value,
                    },
                )
            )
        if cfg.telegram_bot_token and cfg.telegram_chat_id:
            targets.append(
                (
                    "telegram",
                    f"https://api.telegram.org/bot{cfg.telegram_bot_token}/sendMessage",
                    {
                        "chat_id": cfg.telegram_chat_id,
                        "text": f"{_EMOJI[message.type]} *{message.title}*\n\n{message.message}",
                        "parse_mode": "Markdown",
                    },
                )
            )
        if cfg.discord_webhook_url:
            targets.append(
                (
                    "discord",
                    str(cfg.discord_webhook_url),
                    {
                        "embeds": [
                            {
                                "title": message.title,
                                "description": message.message,
                                "color": _DISCORD_COLORS[message.type],
                                "timestamp": utc_now().isoformat(),
                                "footer": {"text": FOOTER_TEXT},
                            }
                        ]
                    },
                )
            )
        return targets

    def _post(self, channel: str, url: str, payload: Dict[str, Any]) -> bool:
        retrying = Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential(
                multiplier=self._config.retry_backoff_seconds,
                min=self._config.retry_backoff_seconds,
                max=10,
            ),
            retry=retry_if_exception_type(requests.RequestException),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    response = self._session.post(url, json=payload, timeout=self._config.request_timeout)
                    response.raise_for_status()
        except requests.RequestException as exc:
            # Exception text can embed the URL, and the Telegram URL carries the bot token.
            status = getattr(getattr(exc, "response", None), "status_code", None)
            self._logger.warning(
                "Failed to deliver %s notification: %s (status %s)", channel, type(exc).__name__, status
            )
            return False
        return True


class RecordingNotifier(BaseNotifier):
    """Keeps delivered messages in memory; used by dry runs and tests."""

    def __init__(
        self,
        *,
        throttle_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(throttle_seconds=throttle_seconds, clock=clock)
        self.messages: List[NotificationMessage] = []
        self.delivered_at: List[datetime] = []

    async def _deliver(self, message: NotificationMessage) -> None:
        self.messages.append(message)
        self.delivered_at.append(utc_now())

    def titles(self) -> List[str]:
        return [message.title for message in self.messages]


__all__ = [
    "BaseNotifier",
    "NotificationMessage",
    "NotificationService",
    "NotificationType",
    "Notifier",
    "RecordingNotifier",
]
