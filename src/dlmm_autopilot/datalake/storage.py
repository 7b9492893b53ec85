"""Persistence layer for automation configuration, history and orders."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Set

from ..config.settings import StorageConfig, get_app_config
from ..monitoring.logger import get_logger
from ..utils.constants import (
    ORDERS_KEY,
    POSITION_ENTRY_PREFIX,
    REBALANCE_CONFIGS_KEY,
    REBALANCE_HISTORY_KEY,
    REBALANCE_HISTORY_LIMIT,
    utc_now,
)
from .schemas import AutoRebalanceConfig, Order, PositionEntrySnapshot, RebalanceEvent


class KeyValueStore(Protocol):
    """Interface describing JSON key-value backends (memory, SQLite, browser storage, ...)."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> List[str]:
        ...


class InMemoryStore:
    """Dictionary-backed store used for tests and dry runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(key for key in self._data if key.startswith(prefix))


CREATE_KV_TABLE = """
CREATE TABLE IF NOT EXISTS kv_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SQLiteKeyValueStore:
    """SQLite-backed key-value store with one row per logical key."""

    def __init__(self, database_path: Path) -> None:
        self._database_path = Path(database_path)
        self._initialize()

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_KV_TABLE)
            con.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path)
        try:
            yield con
        finally:
            con.close()

    def get(self, key: str) -> Optional[str]:
        with self._connect() as con:
            row = con.execute("SELECT value FROM kv_state WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO kv_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, utc_now().isoformat()),
            )
            con.commit()

    def delete(self, key: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM kv_state WHERE key = ?", (key,))
            con.commit()

    def keys(self, prefix: str = "") -> List[str]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT key FROM kv_state WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [row[0] for row in rows]


def build_key_value_store(config: Optional[StorageConfig] = None) -> KeyValueStore:
    cfg = config or get_app_config().storage
    if cfg.in_memory:
        return InMemoryStore()
    return SQLiteKeyValueStore(cfg.database_path)


class AutomationStore:
    """Typed view over the logical persisted automation state.

    Missing keys read as empty collections. A value that fails to decode is
    logged and treated as missing so one corrupt entry cannot stop the
    monitors. The in-flight sets live only in memory and belong to this
    instance.
    """

    def __init__(
        self,
        backend: Optional[KeyValueStore] = None,
        *,
        history_limit: int = REBALANCE_HISTORY_LIMIT,
    ) -> None:
        self._backend = backend if backend is not None else build_key_value_store()
        self._history_limit = history_limit
        self._logger = get_logger(__name__)
        self._lock = threading.RLock()
        self._rebalancing: Set[str] = set()
        self._orders_in_flight: Set[str] = set()

    # JSON helpers -------------------------------------------------------
    def _read_json(self, key: str) -> Any:
        raw = self._backend.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            self._logger.warning("Discarding corrupt state for key %s", key)
            return None

    def _write_json(self, key: str, payload: Any) -> None:
        self._backend.set(key, json.dumps(payload, separators=(",", ":")))

    # Rebalance configuration -------------------------------------------
    def get_rebalance_configs(self) -> Dict[str, AutoRebalanceConfig]:
        payload = self._read_json(REBALANCE_CONFIGS_KEY)
        if not isinstance(payload, dict):
            return {}
        configs: Dict[str, AutoRebalanceConfig] = {}
        for position_id, entry in payload.items():
            if not isinstance(entry, dict):
                continue
            try:
                configs[position_id] = AutoRebalanceConfig.from_dict({"position_id": position_id, **entry})
            except (KeyError, TypeError, ValueError):
                self._logger.warning("Skipping invalid rebalance config for %s", position_id)
        return configs

    def get_rebalance_config(self, position_id: str) -> Optional[AutoRebalanceConfig]:
        return self.get_rebalance_configs().get(position_id)

    def set_rebalance_config(self, config: AutoRebalanceConfig) -> None:
        with self._lock:
            configs = self.get_rebalance_configs()
            configs[config.position_id] = config
            self._save_configs(configs)

    def remove_rebalance_config(self, position_id: str) -> bool:
        with self._lock:
            configs = self.get_rebalance_configs()
            if configs.pop(position_id, None) is None:
                return False
            self._save_configs(configs)
            return True

    def move_rebalance_config(self, old_position_id: str, new_position_id: str) -> Optional[AutoRebalanceConfig]:
        """Re-key a config after its position was reopened under a new id."""

        with self._lock:
            configs = self.get_rebalance_configs()
            config = configs.pop(old_position_id, None)
            if config is None:
                return None
            config.position_id = new_position_id
            configs[new_position_id] = config
            self._save_configs(configs)
            return config

    def _save_configs(self, configs: Dict[str, AutoRebalanceConfig]) -> None:
        self._write_json(
            REBALANCE_CONFIGS_KEY,
            {position_id: config.to_dict() for position_id, config in configs.items()},
        )

    # Rebalance history --------------------------------------------------
    def get_rebalance_history(self, position_id: Optional[str] = None) -> List[RebalanceEvent]:
        payload = self._read_json(REBALANCE_HISTORY_KEY)
        if not isinstance(payload, list):
            return []
        events: List[RebalanceEvent] = []
        for entry in payload:
            try:
                event = RebalanceEvent.from_dict(entry)
            except (KeyError, TypeError, ValueError):
                self._logger.warning("Skipping invalid rebalance history entry")
                continue
            if position_id is None or event.position_id == position_id:
                events.append(event)
        return events

    def add_rebalance_event(self, event: RebalanceEvent) -> None:
        """Prepend ``event`` to the bounded history.

        A successful event also advances the position's last rebalance time.
        The timestamp never moves backwards.
        """

        with self._lock:
            history = [event, *self.get_rebalance_history()][: self._history_limit]
            self._write_json(REBALANCE_HISTORY_KEY, [entry.to_dict() for entry in history])
            if not event.success:
                return
            configs = self.get_rebalance_configs()
            config = configs.get(event.position_id)
            if config is None:
                return
            if config.last_rebalance_time is None or event.timestamp > config.last_rebalance_time:
                config.last_rebalance_time = event.timestamp
                self._save_configs(configs)

    def clear_rebalance_history(self) -> None:
        self._backend.delete(REBALANCE_HISTORY_KEY)

    # Orders -------------------------------------------------------------
    def get_orders(self) -> List[Order]:
        payload = self._read_json(ORDERS_KEY)
        if not isinstance(payload, list):
            return []
        orders: List[Order] = []
        for entry in payload:
            try:
                orders.append(Order.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                self._logger.warning("Skipping invalid order entry")
        return orders

    def get_order(self, order_id: str) -> Optional[Order]:
        for order in self.get_orders():
            if order.id == order_id:
                return order
        return None

    def save_orders(self, orders: List[Order]) -> None:
        self._write_json(ORDERS_KEY, [order.to_dict() for order in orders])

    def upsert_order(self, order: Order) -> None:
        with self._lock:
            orders = self.get_orders()
            for index, existing in enumerate(orders):
                if existing.id == order.id:
                    orders[index] = order
                    break
            else:
                orders.append(order)
            self.save_orders(orders)

    def relink_orders(self, old_position_id: str, new_position_id: str) -> int:
        """Point pending orders on ``old_position_id`` at the reopened position."""

        with self._lock:
            orders = self.get_orders()
            moved = 0
            for order in orders:
                if order.position_id == old_position_id and not order.is_terminal:
                    order.position_id = new_position_id
                    moved += 1
            if moved:
                self.save_orders(orders)
            return moved

    def has_order_in_flight(self, position_id: str) -> bool:
        return any(
            order.position_id == position_id and order.id in self._orders_in_flight
            for order in self.get_orders()
        )

    # Entry snapshots ----------------------------------------------------
    def get_entry_snapshot(self, position_id: str) -> Optional[PositionEntrySnapshot]:
        payload = self._read_json(f"{POSITION_ENTRY_PREFIX}{position_id}")
        if not isinstance(payload, dict):
            return None
        try:
            return PositionEntrySnapshot.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            self._logger.warning("Skipping invalid entry snapshot for %s", position_id)
            return None

    def set_entry_snapshot(self, snapshot: PositionEntrySnapshot) -> None:
        self._write_json(f"{POSITION_ENTRY_PREFIX}{snapshot.position_id}", snapshot.to_dict())

    def delete_entry_snapshot(self, position_id: str) -> None:
        self._backend.delete(f"{POSITION_ENTRY_PREFIX}{position_id}")

    def list_entry_snapshots(self) -> Dict[str, PositionEntrySnapshot]:
        snapshots: Dict[str, PositionEntrySnapshot] = {}
        for key in self._backend.keys(POSITION_ENTRY_PREFIX):
            position_id = key[len(POSITION_ENTRY_PREFIX) :]
            snapshot = self.get_entry_snapshot(position_id)
            if snapshot is not None:
                snapshots[position_id] = snapshot
        return snapshots

    # Raw JSON documents -------------------------------------------------
    def get_document(self, key: str, default: Any = None) -> Any:
        payload = self._read_json(key)
        return default if payload is None else payload

    def set_document(self, key: str, payload: Any) -> None:
        self._write_json(key, payload)

    # In-flight guards ---------------------------------------------------
    def is_rebalancing(self, position_id: str) -> bool:
        return position_id in self._rebalancing

    def set_rebalancing(self, position_id: str, active: bool) -> None:
        if active:
            self._rebalancing.add(position_id)
        else:
            self._rebalancing.discard(position_id)

    def rebalancing_positions(self) -> Set[str]:
        return set(self._rebalancing)

    def is_order_in_flight(self, order_id: str) -> bool:
        return order_id in self._orders_in_flight

    def set_order_in_flight(self, order_id: str, active: bool) -> None:
        if active:
            self._orders_in_flight.add(order_id)
        else:
            self._orders_in_flight.discard(order_id)


__all__ = [
    "AutomationStore",
    "InMemoryStore",
    "KeyValueStore",
    "SQLiteKeyValueStore",
    "build_key_value_store",
]
