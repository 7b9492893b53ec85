"""Position health alerts and user-defined price alerts."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..config.settings import AlertConfig, get_app_config
from ..datalake.schemas import Position
from ..datalake.storage import AutomationStore
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..monitoring.notifications import BaseNotifier, NotificationType
from ..utils.constants import PRICE_ALERTS_KEY, utc_now
from .rebalance_monitor import PoolsArg, index_pools


@dataclass(slots=True)
class PositionAlert:
    id: str
    type: NotificationType
    title: str
    message: str
    position_id: str
    action_required: bool
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "position_id": self.position_id,
            "action_required": self.action_required,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class PriceAlert:
    """Fires once when the pool price crosses ``target_price`` in ``direction``."""

    id: str
    pool_address: str
    target_price: float
    direction: str
    created_at: datetime
    triggered_at: Optional[datetime] = None

    def is_crossed(self, price: float) -> bool:
        if self.direction == "above":
            return price >= self.target_price
        return price <= self.target_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pool_address": self.pool_address,
            "target_price": self.target_price,
            "direction": self.direction,
            "created_at": self.created_at.isoformat(),
            "triggered_at": self.triggered_at.isoformat() if self.triggered_at else None,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PriceAlert":
        triggered = payload.get("triggered_at")
        return cls(
            id=str(payload["id"]),
            pool_address=str(payload["pool_address"]),
            target_price=float(payload["target_price"]),
            direction=str(payload.get("direction", "above")),
            created_at=datetime.fromisoformat(payload["created_at"]),
            triggered_at=datetime.fromisoformat(triggered) if triggered else None,
        )


class PositionAlertMonitor:
    """Derives alerts from position snapshots and fires price alerts."""

    def __init__(
        self,
        store: AutomationStore,
        *,
        notifier: Optional[BaseNotifier] = None,
        config: Optional[AlertConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._config = config or get_app_config().alerts
        self._clock = clock
        self._logger = get_logger(__name__)

    def evaluate(self, positions: Iterable[Position], pools: PoolsArg) -> List[PositionAlert]:
        pool_index = index_pools(pools)
        now = self._clock()
        alerts: List[PositionAlert] = []
        for position in positions:
            pool = pool_index.get(position.pool_address)
            if self._config.out_of_range_alerts and pool is not None and not position.is_in_range(pool.current_price):
                alerts.append(
                    PositionAlert(
                        id=f"out-of-range-{position.id}",
                        type=NotificationType.WARNING,
                        title="Position Out of Range",
                        message="Your position may be earning reduced fees",
                        position_id=position.id,
                        action_required=True,
                        timestamp=now,
                    )
                )
            if position.fees_earned > self._config.high_fees_threshold:
                alerts.append(
                    PositionAlert(
                        id=f"high-fees-{position.id}",
                        type=NotificationType.SUCCESS,
                        title="High Fee Earnings",
                        message=f"You've earned {position.fees_earned:.2f} in fees!",
                        position_id=position.id,
                        action_required=False,
                        timestamp=now,
                    )
                )
            if position.apy < self._config.low_apy_threshold:
                alerts.append(
                    PositionAlert(
                        id=f"low-apy-{position.id}",
                        type=NotificationType.INFO,
                        title="Consider Rebalancing",
                        message=f"Position APY is {position.apy:.1f}% - consider adjusting range",
                        position_id=position.id,
                        action_required=True,
                        timestamp=now,
                    )
                )
        METRICS.gauge("alerts.active", len(alerts))
        return alerts

    # Price alerts -------------------------------------------------------
    def list_price_alerts(self) -> List[PriceAlert]:
        payload = self._store.get_document(PRICE_ALERTS_KEY, [])
        alerts: List[PriceAlert] = []
        for entry in payload if isinstance(payload, list) else []:
            try:
                alerts.append(PriceAlert.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                self._logger.warning("Skipping invalid price alert entry")
        return alerts

    def _save_price_alerts(self, alerts: List[PriceAlert]) -> None:
        self._store.set_document(PRICE_ALERTS_KEY, [alert.to_dict() for alert in alerts])

    def add_price_alert(self, pool_address: str, target_price: float, current_price: float) -> PriceAlert:
        if target_price <= 0:
            raise ValueError("Target price must be greater than 0")
        alert = PriceAlert(
            id=f"price_{uuid.uuid4().hex[:12]}",
            pool_address=pool_address,
            target_price=target_price,
            direction="above" if target_price > current_price else "below",
            created_at=self._clock(),
        )
        self._save_price_alerts([*self.list_price_alerts(), alert])
        return alert

    def remove_price_alert(self, alert_id: str) -> bool:
        alerts = self.list_price_alerts()
        remaining = [alert for alert in alerts if alert.id != alert_id]
        if len(remaining) == len(alerts):
            return False
        self._save_price_alerts(remaining)
        return True

    async def check(self, positions: Iterable[Position], pools: PoolsArg) -> List[PositionAlert]:
        """Evaluate alerts, then notify high fees and newly crossed price alerts."""

        pool_index = index_pools(pools)
        positions = list(positions)
        alerts = self.evaluate(positions, pool_index)
        if self._notifier is None:
            return alerts
        for position in positions:
            if position.fees_earned > self._config.high_fees_threshold:
                await self._notifier.notify_high_fees(position.id, position.fees_earned)
        price_alerts = self.list_price_alerts()
        fired = False
        for alert in price_alerts:
            if alert.triggered_at is not None:
                continue
            pool = pool_index.get(alert.pool_address)
            if pool is None or not alert.is_crossed(pool.current_price):
                continue
            alert.triggered_at = self._clock()
            fired = True
            METRICS.increment("alerts.price_triggered")
            await self._notifier.notify_price_alert(alert.pool_address, alert.target_price, pool.current_price)
        if fired:
            self._save_price_alerts(price_alerts)
        return alerts


__all__ = ["PositionAlert", "PositionAlertMonitor", "PriceAlert"]
