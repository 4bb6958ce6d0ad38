from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime

from .backend import StateBackend

log = logging.getLogger("agentpulse")

SYSTEM_EVENTS_PATH = "sessions/system_events.json"
MAX_SYSTEM_EVENTS = 20

_NODE_LAST_INPUT_RE = re.compile(r"\s*·\s*last input [^·]+", re.IGNORECASE)


@dataclass
class SystemEvent:
    text: str
    ts: int


@dataclass
class _EventQueue:
    events: list[SystemEvent] = field(default_factory=list)
    last_text: str = ""
    last_context_key: str = ""


class SystemEventQueues:
    """Per-session queues of system notices waiting for the next turn that can deliver them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: dict[str, _EventQueue] = {}

    def enqueue(self, session_key: str, text: str, context_key: str = "") -> bool:
        key = (session_key or "").strip()
        cleaned = (text or "").strip()
        if not key or not cleaned:
            return False
        with self._lock:
            queue = self._queues.setdefault(key, _EventQueue())
            queue.last_context_key = (context_key or "").strip().lower()
            if queue.last_text == cleaned:
                return False
            queue.last_text = cleaned
            queue.events.append(SystemEvent(text=cleaned, ts=int(time.time() * 1000)))
            if len(queue.events) > MAX_SYSTEM_EVENTS:
                queue.events = queue.events[-MAX_SYSTEM_EVENTS:]
        return True

    def drain(self, session_key: str) -> list[SystemEvent]:
        key = (session_key or "").strip()
        if not key:
            return []
        with self._lock:
            queue = self._queues.get(key)
            if queue is None or not queue.events:
                return []
            del self._queues[key]
            return list(queue.events)

    def peek(self, session_key: str) -> list[str]:
        key = (session_key or "").strip()
        with self._lock:
            queue = self._queues.get(key)
            return [evt.text for evt in queue.events] if queue else []

    def has(self, session_key: str) -> bool:
        key = (session_key or "").strip()
        with self._lock:
            queue = self._queues.get(key)
            return queue is not None and bool(queue.events)

    def drain_for_heartbeat(self, primary_key: str, secondary_key: str = "") -> list[SystemEvent]:
        entries = self.drain(primary_key)
        secondary = (secondary_key or "").strip()
        if secondary and secondary.lower() != (primary_key or "").strip().lower():
            entries.extend(self.drain(secondary))
        entries.sort(key=lambda evt: evt.ts)
        return entries

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "queues": {
                    key: {
                        "events": [{"text": evt.text, "ts": evt.ts} for evt in queue.events],
                        "lastText": queue.last_text,
                    }
                    for key, queue in self._queues.items()
                    if queue.events
                }
            }

    def persist(self, backend: StateBackend | None) -> None:
        if backend is None:
            return
        try:
            backend.write(SYSTEM_EVENTS_PATH, json.dumps(self.snapshot()).encode())
        except Exception:
            log.warning("system events: write failed during persist", exc_info=True)

    def restore(self, backend: StateBackend | None) -> int:
        """Load persisted queues into keys that have no live events. Returns keys restored."""
        if backend is None:
            return 0
        try:
            raw = backend.read(SYSTEM_EVENTS_PATH)
        except Exception:
            log.warning("system events: read failed during restore", exc_info=True)
            return 0
        if not raw:
            return 0
        try:
            snap = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            log.warning("system events: unmarshal failed during restore")
            return 0
        if not isinstance(snap, dict):
            return 0
        restored = 0
        with self._lock:
            for key, stored in (snap.get("queues") or {}).items():
                events = [
                    SystemEvent(text=str(item.get("text", "")), ts=int(item.get("ts", 0) or 0))
                    for item in (stored or {}).get("events") or []
                    if isinstance(item, dict)
                ]
                if not events:
                    continue
                existing = self._queues.get(key)
                if existing is not None and existing.events:
                    continue
                self._queues[key] = _EventQueue(events=events, last_text=stored.get("lastText", ""))
                restored += 1
        return restored


def compact_system_event(line: str) -> str:
    trimmed = (line or "").strip()
    if not trimmed:
        return ""
    lowered = trimmed.lower()
    if "reason periodic" in lowered:
        return ""
    # The heartbeat prompt itself, not cron jobs that mention heartbeats.
    if lowered.startswith("read heartbeat.md"):
        return ""
    if "heartbeat poll" in lowered or "heartbeat wake" in lowered:
        return ""
    if trimmed.startswith("Node:"):
        trimmed = _NODE_LAST_INPUT_RE.sub("", trimmed).strip()
    return trimmed


def format_system_event_timestamp(ts: int) -> str:
    if ts <= 0:
        return "unknown-time"
    return datetime.fromtimestamp(ts / 1000).astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")


def format_system_events(events: list[SystemEvent]) -> str:
    lines = []
    for evt in events:
        text = compact_system_event(evt.text)
        if text:
            lines.append(f"System: [{format_system_event_timestamp(evt.ts)}] {text}")
    return "\n".join(lines)
