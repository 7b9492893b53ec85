import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from dlmm_autopilot.config.settings import OrderConfig
from dlmm_autopilot.datalake.schemas import OrderKind, OrderStatus, Pool, Position, TokenInfo, TransactionResult
from dlmm_autopilot.datalake.storage import AutomationStore, InMemoryStore
from dlmm_autopilot.monitoring.notifications import RecordingNotifier
from dlmm_autopilot.strategy.order_monitor import OrderMonitor

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeVenue:
    def __init__(self) -> None:
        self.created: List[Tuple[str, float, float, float, float]] = []
        self.removed: List[Tuple[str, float]] = []
        self.remove_error: Optional[Exception] = None

    async def create_position(self, pool: str, lower: float, upper: float, x: float, y: float) -> TransactionResult:
        self.created.append((pool, lower, upper, x, y))
        return TransactionResult(True, f"tx-create-{len(self.created)}", f"pos-{len(self.created)}")

    async def remove_liquidity(self, position_id: str, percent: float) -> TransactionResult:
        self.removed.append((position_id, percent))
        if self.remove_error is not None:
            raise self.remove_error
        return TransactionResult(True, f"tx-remove-{len(self.removed)}", position_id)


def _pool(price: float) -> Pool:
    return Pool(
        address="pool-1",
        token_x=TokenInfo("SOL", "mint-sol"),
        token_y=TokenInfo("USDC", "mint-usdc", 6),
        current_price=price,
    )


def _position(position_id: str = "pos-a") -> Position:
    return Position(id=position_id, pool_address="pool-1", lower_price=90.0, upper_price=110.0)


def _monitor(
    clock: Optional[FakeClock] = None,
    notifier: Optional[RecordingNotifier] = None,
) -> Tuple[OrderMonitor, AutomationStore, FakeVenue, FakeClock]:
    clock = clock or FakeClock(T0)
    venue = FakeVenue()
    store = AutomationStore(InMemoryStore())
    monitor = OrderMonitor(
        store,
        venue.create_position,
        venue.remove_liquidity,
        notifier=notifier,
        config=OrderConfig(),
        clock=clock,
        rng=random.Random(3),
    )
    return monitor, store, venue, clock


def test_limit_order_executes_within_tolerance() -> None:
    notifier = RecordingNotifier()
    monitor, store, venue, _ = _monitor(notifier=notifier)
    order = monitor.create_limit_order(_pool(100.0), 95.0, 1.0, 100.0)
    assert order.id.startswith(f"limit_{int(T0.timestamp() * 1000)}_")
    assert order.status is OrderStatus.PENDING

    assert asyncio.run(monitor.monitor_orders([_pool(97.0)])) == []
    assert venue.created == []

    changed = asyncio.run(monitor.monitor_orders([_pool(95.2)]))
    assert [item.id for item in changed] == [order.id]
    pool, lower, upper, x, y = venue.created[0]
    assert pool == "pool-1"
    assert lower == pytest.approx(94.05)
    assert upper == pytest.approx(95.95)
    assert (x, y) == (1.0, 100.0)

    stored = store.get_order(order.id)
    assert stored.status is OrderStatus.EXECUTED
    assert stored.executed_at == T0
    assert stored.transaction_id == "tx-create-1"
    assert notifier.titles() == ["Limit Order Executed"]


def test_limit_order_creation_is_validated() -> None:
    monitor, store, _, _ = _monitor()
    with pytest.raises(ValueError, match="at least 0.1% different"):
        monitor.create_limit_order(_pool(100.0), 100.05, 1.0, 1.0)
    with pytest.raises(ValueError, match="negative"):
        monitor.create_limit_order(_pool(100.0), 95.0, -1.0, 1.0)
    assert store.get_orders() == []


def test_expiry_takes_precedence_over_trigger() -> None:
    monitor, store, venue, clock = _monitor()
    order = monitor.create_limit_order(_pool(100.0), 95.0, 1.0, 100.0, expires_in_hours=1)
    clock.advance(hours=1)

    asyncio.run(monitor.monitor_orders([_pool(95.0)]))

    assert store.get_order(order.id).status is OrderStatus.CANCELLED
    assert venue.created == []


def test_stop_loss_triggers_at_or_below_target() -> None:
    monitor, store, venue, _ = _monitor()
    order = monitor.create_stop_loss("pos-a", 90.0, positions=[_position()], pools=[_pool(100.0)])
    assert order.kind is OrderKind.STOP_LOSS
    assert order.position_id == "pos-a"

    asyncio.run(monitor.monitor_orders([_pool(90.01)], [_position()]))
    assert venue.removed == []

    asyncio.run(monitor.monitor_orders([_pool(90.0)], [_position()]))
    assert venue.removed == [("pos-a", 100.0)]
    assert store.get_order(order.id).status is OrderStatus.EXECUTED


def test_take_profit_triggers_at_or_above_target() -> None:
    monitor, store, venue, _ = _monitor()
    order = monitor.create_take_profit("pos-a", 120.0, positions=[_position()], pools=[_pool(100.0)])

    asyncio.run(monitor.monitor_orders([_pool(119.99)], [_position()]))
    assert venue.removed == []
    asyncio.run(monitor.monitor_orders([_pool(120.0)], [_position()]))
    assert venue.removed == [("pos-a", 100.0)]
    assert store.get_order(order.id).status is OrderStatus.EXECUTED


def test_exit_orders_require_existing_position_and_valid_side() -> None:
    monitor, _, _, _ = _monitor()
    with pytest.raises(LookupError):
        monitor.create_stop_loss("missing", 90.0, positions=[_position()], pools=[_pool(100.0)])
    with pytest.raises(ValueError, match="below current price"):
        monitor.create_stop_loss("pos-a", 101.0, positions=[_position()], pools=[_pool(100.0)])
    with pytest.raises(ValueError, match="above current price"):
        monitor.create_take_profit("pos-a", 99.0, positions=[_position()], pools=[_pool(100.0)])


def test_failed_execution_marks_order_failed_and_pass_continues() -> None:
    monitor, store, venue, _ = _monitor()
    stop = monitor.create_stop_loss("pos-a", 90.0, positions=[_position()], pools=[_pool(100.0)])
    limit = monitor.create_limit_order(_pool(100.0), 85.0, 1.0, 1.0)
    venue.remove_error = RuntimeError("rpc timeout")

    asyncio.run(monitor.monitor_orders([_pool(85.0)], [_position()]))

    failed = store.get_order(stop.id)
    assert failed.status is OrderStatus.FAILED
    assert failed.error == "rpc timeout"
    assert store.get_order(limit.id).status is OrderStatus.EXECUTED
    assert not store.is_order_in_flight(stop.id)

    venue.remove_error = None
    asyncio.run(monitor.monitor_orders([_pool(80.0)], [_position()]))
    assert store.get_order(stop.id).status is OrderStatus.FAILED
    assert len(venue.removed) == 1


def test_exit_order_for_closed_position_fails() -> None:
    monitor, store, venue, _ = _monitor()
    order = monitor.create_stop_loss("pos-a", 90.0, positions=[_position()], pools=[_pool(100.0)])
    asyncio.run(monitor.monitor_orders([_pool(85.0)], []))
    assert store.get_order(order.id).status is OrderStatus.FAILED
    assert venue.removed == []


def test_unknown_pool_leaves_order_pending() -> None:
    monitor, store, venue, _ = _monitor()
    order = monitor.create_limit_order(_pool(100.0), 95.0, 1.0, 1.0)
    asyncio.run(monitor.monitor_orders([]))
    assert store.get_order(order.id).status is OrderStatus.PENDING
    assert venue.created == []


def test_dca_order_executes_tranches_on_schedule() -> None:
    monitor, store, venue, clock = _monitor()
    order = monitor.create_dca_order(_pool(100.0), 2.0, 200.0, interval_hours=1, executions=2)
    assert order.interval_seconds == 3600
    assert order.executions_total == 2

    clock.advance(minutes=30)
    asyncio.run(monitor.monitor_orders([_pool(100.0)]))
    assert venue.created == []

    clock.advance(minutes=30)
    asyncio.run(monitor.monitor_orders([_pool(100.0)]))
    assert len(venue.created) == 1
    _, lower, upper, x, y = venue.created[0]
    assert (lower, upper) == (pytest.approx(99.0), pytest.approx(101.0))
    assert (x, y) == (1.0, 100.0)
    progress = store.get_order(order.id)
    assert progress.status is OrderStatus.PENDING
    assert progress.executions_done == 1
    assert progress.last_execution_at == clock.now

    asyncio.run(monitor.monitor_orders([_pool(100.0)]))
    assert len(venue.created) == 1

    clock.advance(hours=1)
    asyncio.run(monitor.monitor_orders([_pool(110.0)]))
    assert len(venue.created) == 2
    done = store.get_order(order.id)
    assert done.status is OrderStatus.EXECUTED
    assert done.executions_done == 2
    assert done.executed_at == clock.now


def test_dca_order_rejects_bad_schedule() -> None:
    monitor, _, _, _ = _monitor()
    with pytest.raises(ValueError):
        monitor.create_dca_order(_pool(100.0), 1.0, 1.0, interval_hours=0)
    with pytest.raises(ValueError):
        monitor.create_dca_order(_pool(100.0), 1.0, 1.0, executions=0)
    defaults = monitor.create_dca_order(_pool(100.0), 1.0, 1.0)
    assert defaults.interval_seconds == 24 * 3600
    assert defaults.executions_total == 7


def test_cancel_order_rules() -> None:
    monitor, store, _, _ = _monitor()
    order = monitor.create_limit_order(_pool(100.0), 95.0, 1.0, 1.0)
    busy = monitor.create_limit_order(_pool(100.0), 90.0, 1.0, 1.0)

    with pytest.raises(LookupError):
        monitor.cancel_order("missing")

    store.set_order_in_flight(busy.id, True)
    with pytest.raises(ValueError):
        monitor.cancel_order(busy.id)
    store.set_order_in_flight(busy.id, False)

    cancelled = monitor.cancel_order(order.id)
    assert cancelled.status is OrderStatus.CANCELLED
    assert monitor.cancel_order(order.id).status is OrderStatus.CANCELLED
    assert [pending.id for pending in monitor.pending_orders()] == [busy.id]


def test_terminal_orders_never_change() -> None:
    monitor, store, venue, _ = _monitor()
    order = monitor.create_limit_order(_pool(100.0), 95.0, 1.0, 1.0)
    monitor.cancel_order(order.id)

    asyncio.run(monitor.monitor_orders([_pool(95.0)]))

    assert store.get_order(order.id).status is OrderStatus.CANCELLED
    assert venue.created == []


def test_exit_order_waits_while_position_is_rebalancing() -> None:
    monitor, store, venue, _ = _monitor()
    order = monitor.create_stop_loss("pos-a", 90.0, positions=[_position()], pools=[_pool(100.0)])
    store.set_rebalancing("pos-a", True)

    assert asyncio.run(monitor.monitor_orders([_pool(85.0)], [_position()])) == []
    assert venue.removed == []
    assert store.get_order(order.id).status is OrderStatus.PENDING

    store.set_rebalancing("pos-a", False)
    asyncio.run(monitor.monitor_orders([_pool(85.0)], [_position()]))
    assert venue.removed == [("pos-a", 100.0)]
