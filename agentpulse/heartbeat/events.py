from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace

log = logging.getLogger("agentpulse")

INDICATOR_OK = "ok"
INDICATOR_ALERT = "alert"
INDICATOR_ERROR = "error"


def resolve_indicator(status: str) -> str | None:
    if status in ("ok-empty", "ok-token"):
        return INDICATOR_OK
    if status == "sent":
        return INDICATOR_ALERT
    if status == "failed":
        return INDICATOR_ERROR
    return None


@dataclass
class HeartbeatEvent:
    ts: int
    status: str
    reason: str = ""
    channel: str = ""
    to: str = ""
    preview: str = ""
    duration_ms: int = 0
    silent: bool = False
    indicator: str | None = None

    def to_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value not in (None, "", 0, False) or key in ("ts", "status")}


class HeartbeatEventLog:
    """Keeps the latest heartbeat event and fans it out to listeners."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: HeartbeatEvent | None = None
        self._listeners: dict[int, Callable[[HeartbeatEvent], None]] = {}
        self._next_id = 0

    def emit(self, event: HeartbeatEvent) -> None:
        with self._lock:
            self._last = event
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                log.exception("heartbeat event listener failed")

    def subscribe(self, listener: Callable[[HeartbeatEvent], None]) -> Callable[[], None]:
        with self._lock:
            self._next_id += 1
            listener_id = self._next_id
            self._listeners[listener_id] = listener

        def _unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(listener_id, None)

        return _unsubscribe

    def last(self) -> HeartbeatEvent | None:
        with self._lock:
            return replace(self._last) if self._last is not None else None


@dataclass
class HeartbeatResult:
    status: str  # ok-token | ok-empty | sent | skipped | failed | ran
    reason: str = ""

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    def is_skip(self, reason: str) -> bool:
        return self.status == "skipped" and self.reason == reason

    def to_dict(self) -> dict:
        return {"status": self.status, "reason": self.reason}
