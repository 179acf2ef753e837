"""
Hub Storage
===========
SQLite persistence for devices, device history, automations and automation
execution logs.

All methods are synchronous and guarded by a lock; async callers run them in
the default executor. Every sqlite3 failure surfaces as StorageError so the
registry and the engine can leave their in-memory state untouched.
"""
import os
import json
import logging
import sqlite3
import threading
import functools
from typing import Dict, Any, List, Optional

from error_handler import StorageError
from json_helpers import prepare_for_json, safe_json_loads

logger = logging.getLogger("modules.storage")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    address TEXT UNIQUE,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    protocol TEXT NOT NULL,
    manufacturer TEXT,
    model TEXT,
    firmware_version TEXT,
    room_id TEXT,
    state JSON NOT NULL DEFAULT '{}',
    capabilities JSON NOT NULL DEFAULT '[]',
    metadata JSON NOT NULL DEFAULT '{}',
    online INTEGER NOT NULL DEFAULT 1,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    last_seen REAL
);

CREATE TABLE IF NOT EXISTS device_history (
    id TEXT PRIMARY KEY,
    device_id TEXT NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
    state JSON NOT NULL,
    triggered_by TEXT,
    timestamp REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_history_device_ts ON device_history(device_id, timestamp);

CREATE TABLE IF NOT EXISTS automations (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    trigger_type TEXT NOT NULL,
    trigger JSON NOT NULL,
    conditions JSON NOT NULL DEFAULT '[]',
    actions JSON NOT NULL DEFAULT '[]',
    enabled INTEGER NOT NULL DEFAULT 1,
    created_by TEXT,
    ai_generated INTEGER NOT NULL DEFAULT 0,
    ai_metadata JSON,
    last_triggered REAL,
    trigger_count INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS automation_logs (
    id TEXT PRIMARY KEY,
    automation_id TEXT NOT NULL,
    status TEXT NOT NULL,
    trigger_data JSON,
    actions_executed JSON,
    error TEXT,
    timestamp REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_logs_automation_ts ON automation_logs(automation_id, timestamp);
"""

_DEVICE_JSON_FIELDS = ('state', 'capabilities', 'metadata')
_AUTOMATION_JSON_FIELDS = ('trigger', 'conditions', 'actions', 'ai_metadata')
_LOG_JSON_FIELDS = ('trigger_data', 'actions_executed')


def _dumps(value: Any) -> str:
    return json.dumps(prepare_for_json(value))


def _storage_op(func):
    """Serialise access and translate sqlite3 failures into StorageError."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            try:
                return func(self, *args, **kwargs)
            except sqlite3.Error as e:
                logger.error(f"Storage failure in {func.__name__}: {e}")
                raise StorageError(f"{func.__name__} failed: {e}") from e

    return wrapper


class HubStorage:
    """
    Thin row-level store. Dicts in, dicts out.
    """

    def __init__(self, db_path: str = "./data/hub.db"):
        self.db_path = db_path
        self._lock = threading.RLock()
        if db_path != ":memory:":
            directory = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(directory, exist_ok=True)
        try:
            self._con = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
            self._con.row_factory = sqlite3.Row
            self._con.execute("PRAGMA foreign_keys=ON;")
            self._con.execute("PRAGMA busy_timeout=5000;")
            if db_path != ":memory:":
                self._con.execute("PRAGMA journal_mode=WAL;")
            self._con.executescript(SCHEMA_SQL)
            self._con.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {db_path}: {e}") from e
        logger.info(f"Storage ready at {db_path}")

    def close(self):
        with self._lock:
            self._con.close()

    # =========================================================================
    # ROW HELPERS
    # =========================================================================

    @staticmethod
    def _row_to_dict(row: sqlite3.Row, json_fields, bool_fields=()) -> Dict[str, Any]:
        data = dict(row)
        data.pop("seq", None)
        for key in json_fields:
            if key in data:
                data[key] = safe_json_loads(data[key])
        for key in bool_fields:
            if key in data:
                data[key] = bool(data[key])
        return data

    # =========================================================================
    # DEVICES
    # =========================================================================

    @_storage_op
    def load_devices(self) -> List[Dict[str, Any]]:
        rows = self._con.execute("SELECT * FROM devices ORDER BY created_at").fetchall()
        return [self._row_to_dict(r, _DEVICE_JSON_FIELDS, ('online',)) for r in rows]

    @_storage_op
    def insert_device(self, device: Dict[str, Any]):
        with self._con:
            self._con.execute(
                """INSERT INTO devices (id, address, name, type, protocol, manufacturer, model,
                       firmware_version, room_id, state, capabilities, metadata, online,
                       created_at, updated_at, last_seen)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (device['id'], device.get('address'), device['name'], device['type'],
                 device['protocol'], device.get('manufacturer'), device.get('model'),
                 device.get('firmware_version'), device.get('room_id'),
                 _dumps(device.get('state') or {}), _dumps(device.get('capabilities') or []),
                 _dumps(device.get('metadata') or {}), int(bool(device.get('online', True))),
                 device['created_at'], device['updated_at'], device.get('last_seen')),
            )

    @_storage_op
    def update_device_info(self, device_id: str, fields: Dict[str, Any], updated_at: float):
        columns = []
        values = []
        for key, value in fields.items():
            columns.append(f"{key} = ?")
            values.append(_dumps(value) if key in _DEVICE_JSON_FIELDS else value)
        columns.append("updated_at = ?")
        values.extend([updated_at, device_id])
        with self._con:
            self._con.execute(f"UPDATE devices SET {', '.join(columns)} WHERE id = ?", values)

    @_storage_op
    def save_state(self, device_id: str, state: Dict[str, Any], timestamp: float, history: Dict[str, Any]):
        """Persist merged state and append the history entry in one transaction."""
        with self._con:
            self._con.execute(
                "UPDATE devices SET state = ?, online = 1, last_seen = ?, updated_at = ? WHERE id = ?",
                (_dumps(state), timestamp, timestamp, device_id),
            )
            self._con.execute(
                "INSERT INTO device_history (id, device_id, state, triggered_by, timestamp) VALUES (?, ?, ?, ?, ?)",
                (history['id'], device_id, _dumps(history['state']), history.get('triggered_by'), history['timestamp']),
            )

    @_storage_op
    def set_online(self, device_id: str, online: bool, timestamp: float):
        with self._con:
            if online:
                self._con.execute(
                    "UPDATE devices SET online = 1, last_seen = ?, updated_at = ? WHERE id = ?",
                    (timestamp, timestamp, device_id),
                )
            else:
                self._con.execute(
                    "UPDATE devices SET online = 0, updated_at = ? WHERE id = ?",
                    (timestamp, device_id),
                )

    @_storage_op
    def delete_device(self, device_id: str):
        with self._con:
            self._con.execute("DELETE FROM devices WHERE id = ?", (device_id,))

    @_storage_op
    def get_history(self, device_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent ``limit`` entries, oldest first."""
        rows = self._con.execute(
            """SELECT * FROM (
                   SELECT *, rowid AS seq FROM device_history WHERE device_id = ?
                   ORDER BY timestamp DESC, seq DESC LIMIT ?
               ) ORDER BY timestamp ASC, seq ASC""",
            (device_id, limit),
        ).fetchall()
        return [self._row_to_dict(r, ('state',)) for r in rows]

    @_storage_op
    def purge_history(self, before: float) -> int:
        with self._con:
            cur = self._con.execute("DELETE FROM device_history WHERE timestamp < ?", (before,))
        return cur.rowcount

    # =========================================================================
    # AUTOMATIONS
    # =========================================================================

    @_storage_op
    def load_automations(self) -> List[Dict[str, Any]]:
        rows = self._con.execute("SELECT * FROM automations ORDER BY created_at").fetchall()
        return [self._row_to_dict(r, _AUTOMATION_JSON_FIELDS, ('enabled', 'ai_generated')) for r in rows]

    @_storage_op
    def upsert_automation(self, automation: Dict[str, Any]):
        with self._con:
            self._con.execute(
                """INSERT INTO automations (id, name, description, trigger_type, trigger, conditions,
                       actions, enabled, created_by, ai_generated, ai_metadata, last_triggered,
                       trigger_count, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name = excluded.name,
                       description = excluded.description,
                       trigger_type = excluded.trigger_type,
                       trigger = excluded.trigger,
                       conditions = excluded.conditions,
                       actions = excluded.actions,
                       enabled = excluded.enabled,
                       ai_metadata = excluded.ai_metadata,
                       updated_at = excluded.updated_at""",
                (automation['id'], automation['name'], automation.get('description'),
                 automation['trigger']['type'], _dumps(automation['trigger']),
                 _dumps(automation.get('conditions') or []), _dumps(automation.get('actions') or []),
                 int(bool(automation.get('enabled', True))), automation.get('created_by'),
                 int(bool(automation.get('ai_generated', False))),
                 _dumps(automation.get('ai_metadata')) if automation.get('ai_metadata') is not None else None,
                 automation.get('last_triggered'), automation.get('trigger_count', 0),
                 automation['created_at'], automation['updated_at']),
            )

    @_storage_op
    def record_trigger(self, automation_id: str, last_triggered: float) -> Optional[int]:
        """Bump the durable counter; returns the new count, None if the row is gone."""
        with self._con:
            self._con.execute(
                "UPDATE automations SET last_triggered = ?, trigger_count = trigger_count + 1 WHERE id = ?",
                (last_triggered, automation_id),
            )
            row = self._con.execute(
                "SELECT trigger_count FROM automations WHERE id = ?", (automation_id,)
            ).fetchone()
        return row["trigger_count"] if row else None

    @_storage_op
    def delete_automation(self, automation_id: str, purge_logs: bool = True):
        with self._con:
            self._con.execute("DELETE FROM automations WHERE id = ?", (automation_id,))
            if purge_logs:
                self._con.execute("DELETE FROM automation_logs WHERE automation_id = ?", (automation_id,))

    # =========================================================================
    # AUTOMATION LOGS
    # =========================================================================

    @_storage_op
    def append_log(self, entry: Dict[str, Any]):
        with self._con:
            self._con.execute(
                """INSERT INTO automation_logs (id, automation_id, status, trigger_data,
                       actions_executed, error, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (entry['id'], entry['automation_id'], entry['status'],
                 _dumps(entry.get('trigger_data')), _dumps(entry.get('actions_executed') or []),
                 entry.get('error'), entry['timestamp']),
            )

    @_storage_op
    def get_logs(self, automation_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent ``limit`` entries, oldest first."""
        rows = self._con.execute(
            """SELECT * FROM (
                   SELECT *, rowid AS seq FROM automation_logs WHERE automation_id = ?
                   ORDER BY timestamp DESC, seq DESC LIMIT ?
               ) ORDER BY timestamp ASC, seq ASC""",
            (automation_id, limit),
        ).fetchall()
        return [self._row_to_dict(r, _LOG_JSON_FIELDS) for r in rows]

    @_storage_op
    def purge_logs(self, before: float) -> int:
        with self._con:
            cur = self._con.execute("DELETE FROM automation_logs WHERE timestamp < ?", (before,))
        return cur.rowcount

    @_storage_op
    def count_rows(self, table: str) -> int:
        if table not in ('devices', 'device_history', 'automations', 'automation_logs'):
            raise ValueError(f"Unknown table {table}")
        return self._con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
