from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, fields, replace

from .backend import MemoryStateBackend, StateBackend
from .keys import DEFAULT_AGENT_ID, normalize_agent_id

log = logging.getLogger("agentpulse")


class SessionStoreReadError(Exception):
    """The backend failed to return a session document."""


DEFAULT_STORE_PATH = "sessions/sessions.json"

# Persisted field names, in document order.
_WIRE_NAMES = {
    "session_id": "sessionId",
    "updated_at": "updatedAt",
    "last_heartbeat_text": "lastHeartbeatText",
    "last_heartbeat_sent_at": "lastHeartbeatSentAt",
    "last_channel": "lastChannel",
    "last_to": "lastTo",
    "last_account_id": "lastAccountId",
    "last_thread_id": "lastThreadId",
    "queue_mode": "queueMode",
    "queue_debounce_ms": "queueDebounceMs",
    "queue_cap": "queueCap",
    "queue_drop": "queueDrop",
    "model": "model",
    "prompt_tokens": "promptTokens",
    "completion_tokens": "completionTokens",
    "total_tokens": "totalTokens",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionEntry:
    session_id: str = ""
    updated_at: int = 0
    last_heartbeat_text: str = ""
    last_heartbeat_sent_at: int = 0
    last_channel: str = ""
    last_to: str = ""
    last_account_id: str = ""
    last_thread_id: str = ""
    queue_mode: str = ""
    queue_debounce_ms: int | None = None
    queue_cap: int | None = None
    queue_drop: str = ""
    # Cron run bookkeeping.
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict:
        out: dict = {}
        for name, wire in _WIRE_NAMES.items():
            value = getattr(self, name)
            if value is None or value == "":
                continue
            if value == 0 and name not in ("queue_debounce_ms", "queue_cap"):
                continue
            out[wire] = value
        return out

    @classmethod
    def from_dict(cls, data: dict) -> SessionEntry:
        if not isinstance(data, dict):
            return cls()
        kwargs = {}
        for f in fields(cls):
            wire = _WIRE_NAMES[f.name]
            if wire in data:
                kwargs[f.name] = data[wire]
            elif f.name in data:
                kwargs[f.name] = data[f.name]
        return cls(**kwargs)


def merge_entries(existing: SessionEntry | None, patch: SessionEntry) -> SessionEntry:
    """Field-wise last-writer-wins merge; ``updated_at`` never moves backwards."""
    base = existing or SessionEntry()
    session_id = patch.session_id or base.session_id or str(uuid.uuid4())
    updated_at = max(_now_ms(), base.updated_at, patch.updated_at)
    merged = replace(base)
    for f in fields(SessionEntry):
        if f.name in ("session_id", "updated_at"):
            continue
        value = getattr(patch, f.name)
        if f.name in ("queue_debounce_ms", "queue_cap"):
            if value is not None:
                setattr(merged, f.name, value)
        elif value:
            setattr(merged, f.name, value)
    merged.session_id = session_id
    merged.updated_at = updated_at
    return merged


@dataclass(frozen=True)
class StoreRef:
    agent_id: str
    path: str

    @property
    def key(self) -> str:
        agent = self.agent_id.strip() or "main"
        path = self.path.strip() or DEFAULT_STORE_PATH
        return f"{agent}|{path}"

    @property
    def document_path(self) -> str:
        agent = self.agent_id.strip() or "main"
        path = self.path.strip() or DEFAULT_STORE_PATH
        return f"agents/{agent}/{path}"


def resolve_store_path(template: str | None, agent_id: str | None) -> str:
    agent = normalize_agent_id(agent_id) or DEFAULT_AGENT_ID
    trimmed = (template or "").strip()
    if not trimmed:
        return DEFAULT_STORE_PATH
    expanded = trimmed.replace("{agentId}", agent)
    if expanded.startswith("~"):
        expanded = expanded[1:]
    expanded = expanded.strip().lstrip("/")
    return expanded or DEFAULT_STORE_PATH


class SessionStoreRegistry:
    """Process-scoped registry of session stores, one lock per StoreRef.

    Documents are cached after the first read and written through to the
    backend on every update.
    """

    def __init__(self, backend: StateBackend | None = None, store_template: str = "") -> None:
        self.backend = backend or MemoryStateBackend()
        self.store_template = store_template
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._cache: dict[str, dict[str, SessionEntry]] = {}

    def ref_for(self, agent_id: str | None) -> StoreRef:
        agent = normalize_agent_id(agent_id) or DEFAULT_AGENT_ID
        return StoreRef(agent_id=agent, path=resolve_store_path(self.store_template, agent))

    def _lock_for(self, ref: StoreRef) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(ref.key)
            if lock is None:
                lock = threading.Lock()
                self._locks[ref.key] = lock
            return lock

    def _load_locked(self, ref: StoreRef) -> dict[str, SessionEntry]:
        cached = self._cache.get(ref.key)
        if cached is not None:
            return cached
        sessions: dict[str, SessionEntry] = {}
        try:
            raw = self.backend.read(ref.document_path)
        except Exception as exc:
            raise SessionStoreReadError(ref.document_path) from exc
        if raw:
            try:
                doc = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError):
                log.warning("session store: ignoring malformed document %s", ref.document_path)
                doc = {}
            stored = doc.get("sessions") if isinstance(doc, dict) else None
            if isinstance(stored, dict):
                for key, value in stored.items():
                    sessions[key] = SessionEntry.from_dict(value)
        self._cache[ref.key] = sessions
        return sessions

    def _save_locked(self, ref: StoreRef, sessions: dict[str, SessionEntry]) -> None:
        self._cache[ref.key] = sessions
        doc = {"sessions": {key: entry.to_dict() for key, entry in sessions.items()}}
        try:
            self.backend.write(ref.document_path, json.dumps(doc, indent=2).encode())
        except Exception:
            log.warning("session store: write failed for %s", ref.document_path, exc_info=True)

    def _load_or_empty(self, ref: StoreRef) -> dict[str, SessionEntry]:
        try:
            return self._load_locked(ref)
        except SessionStoreReadError:
            log.warning("session store: read failed for %s", ref.document_path, exc_info=True)
            return {}

    def load(self, ref: StoreRef) -> dict[str, SessionEntry]:
        with self._lock_for(ref):
            return {key: replace(entry) for key, entry in self._load_or_empty(ref).items()}

    def get(self, ref: StoreRef, session_key: str) -> SessionEntry | None:
        if not session_key.strip():
            return None
        with self._lock_for(ref):
            entry = self._load_or_empty(ref).get(session_key)
            return replace(entry) if entry is not None else None

    def update(
        self,
        ref: StoreRef,
        session_key: str,
        updater: Callable[[SessionEntry], SessionEntry],
    ) -> SessionEntry | None:
        """Read-modify-write one entry under the StoreRef lock."""
        if not session_key.strip():
            return None
        with self._lock_for(ref):
            try:
                sessions = dict(self._load_locked(ref))
            except SessionStoreReadError:
                # A partial document must never overwrite the stored one.
                log.warning("session store: skipping update of %s, read failed", session_key, exc_info=True)
                return None
            current = sessions.get(session_key)
            entry = updater(replace(current) if current is not None else SessionEntry())
            sessions[session_key] = entry
            self._save_locked(ref, sessions)
            return replace(entry)

    def patch(self, ref: StoreRef, session_key: str, patch: SessionEntry) -> SessionEntry | None:
        return self.update(ref, session_key, lambda entry: merge_entries(entry, patch))

    def record_route(
        self,
        ref: StoreRef,
        session_key: str,
        room_id: str,
        channel: str = "matrix",
        account_id: str = "",
        thread_id: str = "",
    ) -> SessionEntry | None:
        """Remember where a session last talked, for later delivery routing."""
        return self.patch(
            ref,
            session_key,
            SessionEntry(last_channel=channel, last_to=room_id, last_account_id=account_id, last_thread_id=thread_id),
        )
