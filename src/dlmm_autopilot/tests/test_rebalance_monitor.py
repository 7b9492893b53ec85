import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from dlmm_autopilot.config.settings import RebalanceDefaults
from dlmm_autopilot.datalake.schemas import (
    EMPTY_RANGE,
    Order,
    OrderKind,
    OrderStatus,
    Pool,
    Position,
    PriceRange,
    RebalanceResult,
    TokenInfo,
)
from dlmm_autopilot.datalake.storage import AutomationStore, InMemoryStore
from dlmm_autopilot.monitoring.metrics import METRICS
from dlmm_autopilot.monitoring.notifications import RecordingNotifier
from dlmm_autopilot.strategy.rebalance_monitor import AutoRebalanceMonitor, price_deviation

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeRebalance:
    def __init__(self, *, new_position_id: Optional[str] = None, error: Optional[Exception] = None) -> None:
        self.calls: List[Tuple[str, float]] = []
        self.compound: List[bool] = []
        self.new_position_id = new_position_id
        self.error = error
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, position_id: str, width: float, compound_fees: bool = True) -> RebalanceResult:
        self.calls.append((position_id, width))
        self.compound.append(compound_fees)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return RebalanceResult(
            success=True,
            transaction_id=f"tx-{len(self.calls)}",
            old_range=PriceRange(95.0, 105.0),
            new_range=PriceRange(99.9, 122.1),
            new_position_id=self.new_position_id,
        )


def _pool(price: float) -> Pool:
    return Pool(
        address="pool-1",
        token_x=TokenInfo("SOL", "mint-sol"),
        token_y=TokenInfo("USDC", "mint-usdc", 6),
        current_price=price,
    )


def _position(position_id: str = "pos-1") -> Position:
    return Position(id=position_id, pool_address="pool-1", lower_price=95.0, upper_price=105.0)


def _monitor(
    action: FakeRebalance,
    *,
    clock: Optional[FakeClock] = None,
    notifier: Optional[RecordingNotifier] = None,
) -> Tuple[AutoRebalanceMonitor, AutomationStore]:
    store = AutomationStore(InMemoryStore())
    monitor = AutoRebalanceMonitor(
        store,
        action,
        notifier=notifier,
        defaults=RebalanceDefaults(),
        clock=clock or FakeClock(T0),
    )
    return monitor, store


def test_price_deviation_is_relative_to_range_center() -> None:
    assert price_deviation(_position(), 110.0) == pytest.approx(10.0)
    assert price_deviation(_position(), 89.0) == pytest.approx(11.0)


def test_rebalances_when_deviation_reaches_threshold() -> None:
    METRICS.reset()
    action = FakeRebalance()
    notifier = RecordingNotifier()
    monitor, store = _monitor(action, notifier=notifier)
    monitor.configure("pos-1", price_deviation_threshold=10.0, new_range_width=20.0)

    events = asyncio.run(monitor.check_and_rebalance([_position()], [_pool(89.0)]))

    assert action.calls == [("pos-1", 20.0)]
    assert len(events) == 1
    event = events[0]
    assert event.success
    assert event.id == f"rebalance_pos-1_{int(T0.timestamp() * 1000)}"
    assert event.transaction_id == "tx-1"
    assert store.get_rebalance_history() == [event]
    assert store.get_rebalance_config("pos-1").last_rebalance_time == T0
    assert not store.is_rebalancing("pos-1")
    assert notifier.titles() == ["Position Rebalanced"]
    assert METRICS.get("rebalance.success") == 1


def test_out_of_range_below_threshold_only_warns() -> None:
    action = FakeRebalance()
    notifier = RecordingNotifier()
    monitor, store = _monitor(action, notifier=notifier)
    monitor.configure("pos-1", price_deviation_threshold=10.0)

    events = asyncio.run(monitor.check_and_rebalance([_position()], [_pool(91.0)]))

    assert events == []
    assert action.calls == []
    assert store.get_rebalance_history() == []
    assert notifier.titles() == ["Position Out of Range"]


def test_in_range_and_unknown_pool_are_skipped() -> None:
    action = FakeRebalance()
    monitor, _ = _monitor(action)
    monitor.configure("pos-1")
    stray = Position(id="pos-2", pool_address="missing", lower_price=1.0, upper_price=2.0)
    monitor.configure("pos-2")

    assert asyncio.run(monitor.check_and_rebalance([_position(), stray], {"pool-1": _pool(100.0)})) == []
    assert action.calls == []


def test_disabled_or_unconfigured_positions_are_never_rebalanced() -> None:
    action = FakeRebalance()
    notifier = RecordingNotifier(throttle_seconds=300, clock=lambda: 0.0)
    monitor, _ = _monitor(action, notifier=notifier)
    monitor.configure("pos-1", enabled=False)

    asyncio.run(monitor.check_and_rebalance([_position(), _position("pos-3")], [_pool(50.0)]))
    asyncio.run(monitor.check_and_rebalance([_position(), _position("pos-3")], [_pool(50.0)]))

    assert action.calls == []
    assert notifier.titles() == ["Position Out of Range", "Position Out of Range"]
    assert {message.data["position_id"] for message in notifier.messages} == {"pos-1", "pos-3"}


def test_cooldown_blocks_repeat_rebalances() -> None:
    clock = FakeClock(T0)
    action = FakeRebalance()
    monitor, _ = _monitor(action, clock=clock)
    monitor.configure("pos-1", min_time_between_rebalances=60.0)
    positions = [_position()]
    pools = [_pool(80.0)]

    asyncio.run(monitor.check_and_rebalance(positions, pools))
    clock.advance(minutes=30)
    asyncio.run(monitor.check_and_rebalance(positions, pools))
    assert len(action.calls) == 1

    clock.advance(minutes=31)
    asyncio.run(monitor.check_and_rebalance(positions, pools))
    assert len(action.calls) == 2


def test_failed_rebalance_is_recorded_without_cooldown() -> None:
    METRICS.reset()
    action = FakeRebalance(error=RuntimeError("venue unavailable"))
    notifier = RecordingNotifier()
    monitor, store = _monitor(action, notifier=notifier)
    monitor.configure("pos-1")

    events = asyncio.run(monitor.check_and_rebalance([_position()], [_pool(80.0)]))

    assert len(events) == 1
    failed = events[0]
    assert not failed.success
    assert failed.transaction_id == ""
    assert failed.new_range == EMPTY_RANGE
    assert failed.old_range == PriceRange(95.0, 105.0)
    assert store.get_rebalance_config("pos-1").last_rebalance_time is None
    assert not store.is_rebalancing("pos-1")
    assert notifier.titles() == ["Error Occurred"]
    assert "venue unavailable" in notifier.messages[0].message
    assert METRICS.get("rebalance.failed") == 1

    action.error = None
    asyncio.run(monitor.check_and_rebalance([_position()], [_pool(80.0)]))
    assert len(action.calls) == 2
    assert [event.success for event in store.get_rebalance_history()] == [True, False]


def test_unsuccessful_result_counts_as_failure() -> None:
    class Unconfirmed(FakeRebalance):
        async def __call__(self, position_id: str, width: float) -> RebalanceResult:
            self.calls.append((position_id, width))
            return RebalanceResult(False, "", PriceRange(95.0, 105.0), EMPTY_RANGE, error="not confirmed")

    monitor, store = _monitor(Unconfirmed())
    monitor.configure("pos-1")
    events = asyncio.run(monitor.check_and_rebalance([_position()], [_pool(80.0)]))
    assert [event.success for event in events] == [False]
    assert store.get_rebalance_config("pos-1").last_rebalance_time is None


def test_config_follows_reopened_position() -> None:
    action = FakeRebalance(new_position_id="pos-new")
    monitor, store = _monitor(action)
    monitor.configure("pos-1", new_range_width=25.0)

    asyncio.run(monitor.check_and_rebalance([_position()], [_pool(80.0)]))

    assert store.get_rebalance_config("pos-1") is None
    moved = store.get_rebalance_config("pos-new")
    assert moved.new_range_width == 25.0
    assert moved.last_rebalance_time == T0
    assert store.get_rebalance_history()[0].position_id == "pos-1"


def test_concurrent_passes_rebalance_a_position_once() -> None:
    action = FakeRebalance()
    monitor, store = _monitor(action)
    monitor.configure("pos-1")

    async def _exercise() -> Tuple[list, list]:
        action.gate = asyncio.Event()

        async def _release() -> None:
            await asyncio.sleep(0)
            assert store.is_rebalancing("pos-1")
            action.gate.set()

        first, second, _ = await asyncio.gather(
            monitor.check_and_rebalance([_position()], [_pool(80.0)]),
            monitor.check_and_rebalance([_position()], [_pool(80.0)]),
            _release(),
        )
        return first, second

    first, second = asyncio.run(_exercise())
    assert len(action.calls) == 1
    assert len(first) == 1
    assert second == []
    assert not store.is_rebalancing("pos-1")


def test_configure_validates_bounds_and_keeps_existing_values() -> None:
    monitor, store = _monitor(FakeRebalance())
    with pytest.raises(ValueError, match="Price deviation threshold"):
        monitor.configure("pos-1", price_deviation_threshold=0.5)
    assert store.get_rebalance_config("pos-1") is None

    monitor.configure("pos-1", price_deviation_threshold=15.0, new_range_width=30.0)
    updated = monitor.configure("pos-1", min_time_between_rebalances=120.0)
    assert updated.price_deviation_threshold == 15.0
    assert updated.new_range_width == 30.0
    assert updated.min_time_between_rebalances == 120.0
    assert monitor.disable("pos-1") is True
    assert store.get_rebalance_config("pos-1").enabled is False
    assert monitor.disable("unknown") is False


def test_boundary_around_ninety_to_one_hundred_ten_range() -> None:
    position = Position(id="pos-1", pool_address="pool-1", lower_price=90.0, upper_price=110.0)
    notifier = RecordingNotifier()

    action = FakeRebalance()
    monitor, _ = _monitor(action, notifier=notifier)
    monitor.configure("pos-1", price_deviation_threshold=10.0)
    assert asyncio.run(monitor.check_and_rebalance([position], [_pool(91.0)])) == []
    assert action.calls == []
    assert notifier.messages == []

    events = asyncio.run(monitor.check_and_rebalance([position], [_pool(89.0)]))
    assert [event.success for event in events] == [True]
    assert action.calls == [("pos-1", 20.0)]


def test_compound_fees_flag_reaches_the_rebalance_action() -> None:
    action = FakeRebalance()
    monitor, _ = _monitor(action)
    monitor.configure("pos-1", compound_fees=False)

    asyncio.run(monitor.check_and_rebalance([_position()], [_pool(80.0)]))

    assert action.compound == [False]


def _exit_order(order_id: str, position_id: str, status: OrderStatus = OrderStatus.PENDING) -> Order:
    return Order(
        id=order_id,
        kind=OrderKind.STOP_LOSS,
        pool_address="pool-1",
        target_price=70.0,
        created_at=T0,
        position_id=position_id,
        status=status,
    )


def test_pending_orders_follow_the_reopened_position() -> None:
    action = FakeRebalance(new_position_id="pos-new")
    monitor, store = _monitor(action)
    monitor.configure("pos-1")
    store.upsert_order(_exit_order("stop-1", "pos-1"))
    store.upsert_order(_exit_order("stop-old", "pos-1", OrderStatus.CANCELLED))
    store.upsert_order(_exit_order("stop-other", "pos-9"))

    asyncio.run(monitor.check_and_rebalance([_position()], [_pool(80.0)]))

    assert store.get_order("stop-1").position_id == "pos-new"
    assert store.get_order("stop-old").position_id == "pos-1"
    assert store.get_order("stop-other").position_id == "pos-9"


def test_position_with_exit_order_in_flight_is_not_rebalanced() -> None:
    action = FakeRebalance()
    monitor, store = _monitor(action)
    monitor.configure("pos-1")
    store.upsert_order(_exit_order("stop-1", "pos-1"))
    store.set_order_in_flight("stop-1", True)

    assert asyncio.run(monitor.check_and_rebalance([_position()], [_pool(80.0)])) == []
    assert action.calls == []

    store.set_order_in_flight("stop-1", False)
    assert len(asyncio.run(monitor.check_and_rebalance([_position()], [_pool(80.0)]))) == 1
