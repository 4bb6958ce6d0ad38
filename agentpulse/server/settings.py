from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

_DEFAULT_DB_PATH = Path.home() / ".agentpulse" / "agentpulse.db"

DEFAULTS: dict[str, Any] = {
    "agents.default": "beeper",
    # [{"id": "beeper", "heartbeat": {"every": "30m", "activeHours": {...}}}]
    "agents.list": [],
    "agents.defaults.heartbeat": {"every": "30m"},
    "agents.defaults.timeout_seconds": 600,
    # Per-agent HEARTBEAT.md lives at <workspace>/<agent>/HEARTBEAT.md
    "agents.defaults.workspace": "",
    "session.scope": "per-sender",  # "per-sender" | "global"
    "session.main_key": "main",
    "session.store": "",
    "messages.queue.mode": "collect",  # steer | followup | collect | steer-backlog | interrupt
    "messages.queue.debounce_ms": 1000,
    "messages.queue.cap": 20,
    "messages.queue.drop": "summarize",  # old | new | summarize
    "messages.queue.by_channel": {},
    "messages.queue.debounce_ms_by_channel": {},
    "channels.heartbeat.show_ok": False,
    "channels.heartbeat.show_alerts": True,
    "channels.heartbeat.use_indicator": True,
    "user.timezone": "",
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SettingsStore:
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    def get(self, key: str, default: Any = ...) -> Any:
        with self._lock:
            cur = self._conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            )
            row = cur.fetchone()
        if row is not None:
            return json.loads(row[0])
        if default is not ...:
            return default
        return DEFAULTS.get(key)

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, encoded),
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            self._conn.commit()

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            cur = self._conn.execute("SELECT key, value FROM settings")
            rows = {row[0]: json.loads(row[1]) for row in cur.fetchall()}
        result = dict(DEFAULTS)
        result.update(rows)
        return result

    def set_many(self, updates: dict[str, Any]) -> None:
        with self._lock:
            for key, value in updates.items():
                self._conn.execute(
                    "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                    (key, json.dumps(value)),
                )
            self._conn.commit()

    def get_effective(self, cli_overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        result = self.get_all()
        if cli_overrides:
            result.update(cli_overrides)
        return result


def unknown_keys(updates: dict[str, Any]) -> list[str]:
    return [key for key in updates if key not in DEFAULTS]


def mistyped_keys(updates: dict[str, Any]) -> list[str]:
    """Known keys whose value does not have the type of their default."""
    bad = []
    for key, value in updates.items():
        default = DEFAULTS.get(key)
        if key not in DEFAULTS or value is None:
            continue
        if isinstance(default, bool):
            ok = isinstance(value, bool)
        elif isinstance(default, int):
            ok = isinstance(value, int) and not isinstance(value, bool)
        else:
            ok = isinstance(value, type(default))
        if not ok:
            bad.append(key)
    return bad
