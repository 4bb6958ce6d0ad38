from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .sessions.keys import DEFAULT_AGENT_ID, SCOPE_PER_SENDER, normalize_agent_id

log = logging.getLogger("agentpulse")


def _pick(data: dict, *names: str) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return None


def _int_or(value: Any, default: int | None, name: str) -> int | None:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        log.warning("config: ignoring non-integer %s=%r", name, value)
        return default


def _dict_or_empty(value: Any, name: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        log.warning("config: ignoring non-mapping %s=%r", name, value)
        return {}
    return dict(value)


@dataclass
class ActiveHours:
    start: str = ""
    end: str = ""
    timezone: str = ""

    @classmethod
    def from_dict(cls, data: dict | None) -> ActiveHours | None:
        if not isinstance(data, dict):
            return None
        return cls(
            start=str(data.get("start") or ""),
            end=str(data.get("end") or ""),
            timezone=str(_pick(data, "timezone", "tz") or ""),
        )


@dataclass
class HeartbeatConfig:
    """Per-agent heartbeat settings. ``None`` means "inherit from defaults"."""

    every: str | None = None
    active_hours: ActiveHours | None = None
    model: str | None = None
    session: str | None = None
    target: str | None = None
    to: str | None = None
    prompt: str | None = None
    ack_max_chars: int | None = None
    include_reasoning: bool | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> HeartbeatConfig | None:
        if not isinstance(data, dict):
            return None
        ack = _pick(data, "ackMaxChars", "ack_max_chars")
        include = _pick(data, "includeReasoning", "include_reasoning")
        return cls(
            every=_pick(data, "every"),
            active_hours=ActiveHours.from_dict(_pick(data, "activeHours", "active_hours")),
            model=_pick(data, "model"),
            session=_pick(data, "session"),
            target=_pick(data, "target"),
            to=_pick(data, "to"),
            prompt=_pick(data, "prompt"),
            ack_max_chars=_int_or(ack, None, "ackMaxChars"),
            include_reasoning=bool(include) if include is not None else None,
        )


@dataclass
class AgentEntry:
    id: str
    heartbeat: HeartbeatConfig | None = None


@dataclass
class SessionConfig:
    scope: str = SCOPE_PER_SENDER
    main_key: str = "main"
    store: str = ""


@dataclass
class QueueConfig:
    mode: str = ""
    debounce_ms: int | None = None
    cap: int | None = None
    drop: str = ""
    by_channel: dict[str, str] = field(default_factory=dict)
    debounce_ms_by_channel: dict[str, int] = field(default_factory=dict)


@dataclass
class VisibilityConfig:
    show_ok: bool = False
    show_alerts: bool = True
    use_indicator: bool = True


@dataclass
class Config:
    default_agent_id: str = DEFAULT_AGENT_ID
    agents: list[AgentEntry] = field(default_factory=list)
    heartbeat_defaults: HeartbeatConfig | None = None
    agent_timeout_seconds: int = 0
    session: SessionConfig = field(default_factory=SessionConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    visibility: VisibilityConfig = field(default_factory=VisibilityConfig)
    user_timezone: str = ""
    workspace: str = ""

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> Config:
        """Build a typed config from the flat dotted-key settings mapping."""
        agents: list[AgentEntry] = []
        listed = settings.get("agents.list")
        if not isinstance(listed, list):
            listed = []
        for item in listed:
            if isinstance(item, str):
                agents.append(AgentEntry(id=normalize_agent_id(item)))
            elif isinstance(item, dict) and item.get("id"):
                agents.append(AgentEntry(
                    id=normalize_agent_id(item["id"]),
                    heartbeat=HeartbeatConfig.from_dict(item.get("heartbeat")),
                ))
        return cls(
            default_agent_id=normalize_agent_id(settings.get("agents.default")) or DEFAULT_AGENT_ID,
            agents=agents,
            heartbeat_defaults=HeartbeatConfig.from_dict(settings.get("agents.defaults.heartbeat")),
            agent_timeout_seconds=_int_or(
                settings.get("agents.defaults.timeout_seconds"), 0, "agents.defaults.timeout_seconds",
            ) or 0,
            session=SessionConfig(
                scope=settings.get("session.scope") or SCOPE_PER_SENDER,
                main_key=settings.get("session.main_key") or "main",
                store=settings.get("session.store") or "",
            ),
            queue=QueueConfig(
                mode=settings.get("messages.queue.mode") or "",
                debounce_ms=_int_or(settings.get("messages.queue.debounce_ms"), None, "messages.queue.debounce_ms"),
                cap=_int_or(settings.get("messages.queue.cap"), None, "messages.queue.cap"),
                drop=settings.get("messages.queue.drop") or "",
                by_channel=_dict_or_empty(settings.get("messages.queue.by_channel"), "messages.queue.by_channel"),
                debounce_ms_by_channel=_dict_or_empty(
                    settings.get("messages.queue.debounce_ms_by_channel"), "messages.queue.debounce_ms_by_channel",
                ),
            ),
            visibility=VisibilityConfig(
                show_ok=bool(settings.get("channels.heartbeat.show_ok", False)),
                show_alerts=bool(settings.get("channels.heartbeat.show_alerts", True)),
                use_indicator=bool(settings.get("channels.heartbeat.use_indicator", True)),
            ),
            user_timezone=settings.get("user.timezone") or "",
            workspace=settings.get("agents.defaults.workspace") or "",
        )
