from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import ActiveHours, Config, HeartbeatConfig, VisibilityConfig
from ..sessions.keys import DEFAULT_AGENT_ID, normalize_agent_id
from .tokens import (
    DEFAULT_HEARTBEAT_EVERY,
    DEFAULT_MAX_ACK_CHARS,
    parse_duration_ms,
    resolve_heartbeat_prompt,
)

log = logging.getLogger("agentpulse")

DEFAULT_HEARTBEAT_TARGET = "last"

_ACTIVE_HOURS_RE = re.compile(r"^([01]\d|2[0-3]|24):([0-5]\d)$")


def has_explicit_heartbeat_agents(config: Config) -> bool:
    return any(entry.heartbeat is not None for entry in config.agents)


def resolve_heartbeat_config(config: Config, agent_id: str) -> HeartbeatConfig | None:
    """Agent-level override fields win over the defaults block."""
    base = config.heartbeat_defaults
    normalized = normalize_agent_id(agent_id)
    override = None
    for entry in config.agents:
        if normalize_agent_id(entry.id) == normalized:
            override = entry.heartbeat
            break
    if base is None or override is None:
        return override or base

    merged = replace(base)
    for name in ("every", "model", "session", "target", "to", "prompt"):
        value = getattr(override, name)
        if value is not None and str(value).strip():
            setattr(merged, name, value)
    if override.active_hours is not None:
        merged.active_hours = override.active_hours
    if override.ack_max_chars is not None and override.ack_max_chars > 0:
        merged.ack_max_chars = override.ack_max_chars
    if override.include_reasoning is not None:
        merged.include_reasoning = override.include_reasoning
    return merged


def is_heartbeat_enabled_for_agent(config: Config, agent_id: str) -> bool:
    resolved = normalize_agent_id(agent_id)
    if has_explicit_heartbeat_agents(config):
        return any(
            entry.heartbeat is not None and normalize_agent_id(entry.id) == resolved
            for entry in config.agents
        )
    default_agent = normalize_agent_id(config.default_agent_id) or DEFAULT_AGENT_ID
    return resolved == default_agent


def enabled_heartbeat_agents(config: Config) -> list[str]:
    if has_explicit_heartbeat_agents(config):
        seen: list[str] = []
        for entry in config.agents:
            agent = normalize_agent_id(entry.id)
            if entry.heartbeat is not None and agent and agent not in seen:
                seen.append(agent)
        return seen
    return [normalize_agent_id(config.default_agent_id) or DEFAULT_AGENT_ID]


def resolve_heartbeat_interval_ms(
    config: Config,
    heartbeat: HeartbeatConfig | None,
    override_every: str = "",
) -> int:
    """Interval in ms; 0 when the configured value is unparseable or non-positive."""
    raw = (override_every or "").strip()
    if not raw and heartbeat is not None and heartbeat.every:
        raw = str(heartbeat.every).strip()
    if not raw and config.heartbeat_defaults is not None and config.heartbeat_defaults.every:
        raw = str(config.heartbeat_defaults.every).strip()
    if not raw:
        raw = DEFAULT_HEARTBEAT_EVERY
    try:
        ms = parse_duration_ms(raw, "m")
    except ValueError:
        log.warning("heartbeat: invalid interval %r", raw)
        return 0
    return ms if ms > 0 else 0


def resolve_prompt(config: Config, heartbeat: HeartbeatConfig | None) -> str:
    if heartbeat is not None and (heartbeat.prompt or "").strip():
        return resolve_heartbeat_prompt(heartbeat.prompt)
    if config.heartbeat_defaults is not None:
        return resolve_heartbeat_prompt(config.heartbeat_defaults.prompt)
    return resolve_heartbeat_prompt("")


def resolve_ack_max_chars(config: Config, heartbeat: HeartbeatConfig | None) -> int:
    if heartbeat is not None and heartbeat.ack_max_chars and heartbeat.ack_max_chars > 0:
        return heartbeat.ack_max_chars
    defaults = config.heartbeat_defaults
    if defaults is not None and defaults.ack_max_chars and defaults.ack_max_chars > 0:
        return defaults.ack_max_chars
    return DEFAULT_MAX_ACK_CHARS


def resolve_target(config: Config, heartbeat: HeartbeatConfig | None) -> str:
    if heartbeat is not None and (heartbeat.target or "").strip():
        return heartbeat.target.strip()
    defaults = config.heartbeat_defaults
    if defaults is not None and (defaults.target or "").strip():
        return defaults.target.strip()
    return DEFAULT_HEARTBEAT_TARGET


def resolve_visibility(config: Config) -> VisibilityConfig:
    return config.visibility or VisibilityConfig()


def _parse_active_minutes(allow_24: bool, raw: str) -> int | None:
    match = _ACTIVE_HOURS_RE.match((raw or "").strip())
    if match is None:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour == 24:
        if not allow_24 or minute != 0:
            return None
        return 24 * 60
    return hour * 60 + minute


def _resolve_timezone(raw: str, user_timezone: str) -> ZoneInfo | None:
    """None means the host's local timezone."""
    trimmed = (raw or "").strip()
    if not trimmed or trimmed == "user":
        trimmed = (user_timezone or "").strip()
    if not trimmed or trimmed == "local":
        return None
    try:
        return ZoneInfo(trimmed)
    except (ZoneInfoNotFoundError, ValueError):
        log.debug("heartbeat: unknown timezone %r, using local time", trimmed)
        return None


def is_within_active_hours(
    active: ActiveHours | None,
    now_ms: int,
    user_timezone: str = "",
) -> bool:
    """Whether ``now_ms`` falls inside the window. Malformed or empty windows mean always active."""
    if active is None:
        return True
    start = _parse_active_minutes(False, active.start)
    end = _parse_active_minutes(True, active.end)
    if start is None or end is None or start == end:
        return True

    tz = _resolve_timezone(active.timezone, user_timezone)
    moment = datetime.fromtimestamp(now_ms / 1000, tz=tz) if tz else datetime.fromtimestamp(now_ms / 1000)
    current = moment.hour * 60 + moment.minute
    if end > start:
        return start <= current < end
    return current >= start or current < end
