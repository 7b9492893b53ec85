"""Strategy package exports."""

from .backtester import Backtester
from .manager import AutomationCoordinator
from .order_monitor import OrderMonitor
from .position_alerts import PositionAlertMonitor
from .rebalance_monitor import AutoRebalanceMonitor
from .scheduler import AsyncioScheduler, ManualScheduler, Scheduler

__all__ = [
    "AsyncioScheduler",
    "AutoRebalanceMonitor",
    "AutomationCoordinator",
    "Backtester",
    "ManualScheduler",
    "OrderMonitor",
    "PositionAlertMonitor",
    "Scheduler",
]
