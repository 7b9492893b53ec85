"""Coordinator that wires the pool service, store and monitors onto a scheduler."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import Pool, Position
from ..datalake.storage import AutomationStore
from ..execution.pool_service import CachedPoolReader, PoolService
from ..execution.position_manager import PositionManager
from ..monitoring.logger import correlation_scope, get_logger, new_correlation_id
from ..monitoring.metrics import METRICS
from ..monitoring.notifications import BaseNotifier
from ..utils.constants import utc_now
from .order_monitor import OrderMonitor
from .position_alerts import PositionAlertMonitor
from .rebalance_monitor import AutoRebalanceMonitor
from .scheduler import AsyncioScheduler, CancelHandle, Scheduler


class AutomationCoordinator:
    """Runs the rebalance and order monitors on fixed timers.

    ``request_check`` schedules a debounced extra pass after state changes;
    repeated requests inside the delay collapse into one pass. Stopping only
    clears the timers, so actions already dispatched run to completion.
    """

    def __init__(
        self,
        service: PoolService,
        store: AutomationStore,
        *,
        scheduler: Optional[Scheduler] = None,
        notifier: Optional[BaseNotifier] = None,
        config: Optional[AppConfig] = None,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or get_app_config()
        self._service = service
        self._store = store
        self._scheduler = scheduler or AsyncioScheduler()
        self._owner = owner or self._config.mode.owner
        self._logger = get_logger(__name__)
        self.pools = CachedPoolReader(service, self._config.monitor)
        self.positions = PositionManager(
            service, store, pools=self.pools, config=self._config.validation, clock=clock
        )
        self.rebalance_monitor = AutoRebalanceMonitor(
            store,
            self.positions.rebalance,
            notifier=notifier,
            defaults=self._config.rebalance,
            clock=clock,
        )
        self.order_monitor = OrderMonitor(
            store,
            self.positions.open_position,
            self.positions.remove_liquidity,
            notifier=notifier,
            config=self._config.orders,
            clock=clock,
        )
        self.alerts = PositionAlertMonitor(store, notifier=notifier, config=self._config.alerts, clock=clock)
        self._handles: List[CancelHandle] = []
        self._pending_check: Optional[CancelHandle] = None
        self.ticks = 0

    @property
    def store(self) -> AutomationStore:
        return self._store

    @property
    def running(self) -> bool:
        return bool(self._handles)

    def start(self) -> None:
        if self._handles:
            return
        monitor_cfg = self._config.monitor
        self._handles.append(self._scheduler.schedule(monitor_cfg.rebalance_interval_seconds, self.rebalance_tick))
        self._handles.append(self._scheduler.schedule(monitor_cfg.order_interval_seconds, self.order_tick))
        self._logger.info(
            "Automation started",
            extra={
                "rebalance_interval": monitor_cfg.rebalance_interval_seconds,
                "order_interval": monitor_cfg.order_interval_seconds,
            },
        )
        self.request_check()

    def stop(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        if self._pending_check is not None:
            self._pending_check.cancel()
            self._pending_check = None
        self._logger.info("Automation stopped")

    def request_check(self) -> None:
        if self._pending_check is not None:
            self._pending_check.cancel()
        self._pending_check = self._scheduler.call_later(self._config.monitor.recheck_delay_seconds, self._debounced_tick)

    async def _debounced_tick(self) -> None:
        self._pending_check = None
        await self.tick()

    async def read_state(self) -> Tuple[List[Pool], List[Position]]:
        """Fetch pools and the owner's positions once."""

        pools = await self.pools.list_pools()
        positions = await self._service.list_positions(self._owner)
        METRICS.gauge("automation.positions", len(positions))
        METRICS.gauge("automation.pools", len(pools))
        METRICS.set_mapping("pools.price", {pool.address: pool.current_price for pool in pools})
        return pools, positions

    async def _snapshot(self) -> Optional[Tuple[List[Pool], List[Position]]]:
        try:
            return await self.read_state()
        except Exception as exc:  # noqa: BLE001 - a failed read skips this tick
            METRICS.increment("automation.read_errors")
            self._logger.warning("Failed to read pool state: %s", exc)
            return None

    async def rebalance_tick(self) -> None:
        snapshot = await self._snapshot()
        if snapshot is None:
            return
        pools, positions = snapshot
        await self.rebalance_monitor.check_and_rebalance(positions, pools)
        await self.alerts.check(positions, pools)

    async def order_tick(self) -> None:
        snapshot = await self._snapshot()
        if snapshot is None:
            return
        pools, positions = snapshot
        changed = await self.order_monitor.monitor_orders(pools, positions)
        if changed:
            self.pools.invalidate()

    async def tick(self) -> None:
        """One full pass: fetch state once and feed every monitor."""

        with correlation_scope(new_correlation_id("tick")):
            snapshot = await self._snapshot()
            if snapshot is None:
                return
            pools, positions = snapshot
            with METRICS.timer("automation.tick_ms"):
                events = await self.rebalance_monitor.check_and_rebalance(positions, pools)
                if any(event.success for event in events):
                    # Reopened positions carry new ids; orders must see them.
                    self.pools.invalidate()
                    snapshot = await self._snapshot()
                    if snapshot is None:
                        return
                    pools, positions = snapshot
                await self.order_monitor.monitor_orders(pools, positions)
                await self.alerts.check(positions, pools)
            self.ticks += 1
            METRICS.increment("automation.ticks")


__all__ = ["AutomationCoordinator"]
