from __future__ import annotations

SCOPE_PER_SENDER = "per-sender"
SCOPE_GLOBAL = "global"
GLOBAL_SESSION_KEY = "global"
DEFAULT_MAIN_KEY = "main"
DEFAULT_AGENT_ID = "beeper"
ROOM_SIGIL = "!"

_AGENT_PREFIX = "agent:"
_SUBAGENT_PREFIX = "subagent:"


def normalize_agent_id(agent_id: str | None) -> str:
    return (agent_id or "").strip().lower()


def normalize_scope(raw: str | None) -> str:
    if (raw or "").strip().lower() == SCOPE_GLOBAL:
        return SCOPE_GLOBAL
    return SCOPE_PER_SENDER


def normalize_main_key(raw: str | None) -> str:
    return (raw or "").strip().lower() or DEFAULT_MAIN_KEY


def is_room_ref(raw: str | None) -> bool:
    return bool(raw) and raw.strip().startswith(ROOM_SIGIL)


def main_session_key(agent_id: str | None, main_key: str | None = None) -> str:
    agent = normalize_agent_id(agent_id) or DEFAULT_AGENT_ID
    return f"{_AGENT_PREFIX}{agent}:{normalize_main_key(main_key)}"


def agent_id_from_session_key(session_key: str | None) -> str:
    """Return the agent embedded in an ``agent:<id>:<rest>`` key, or the default agent."""
    trimmed = (session_key or "").strip()
    if not trimmed.startswith(_AGENT_PREFIX):
        return DEFAULT_AGENT_ID
    parts = trimmed.split(":")
    if len(parts) < 3 or not parts[1]:
        return DEFAULT_AGENT_ID
    return normalize_agent_id(parts[1])


def resolve_session_key(
    agent_id: str | None,
    scope: str | None,
    raw_ref: str | None,
    main_key: str | None = None,
) -> str:
    """Map a raw session reference to its canonical session key.

    Never fails: anything unrecognised lands on the agent's main session.
    Canonical keys resolve to themselves, so the mapping is a fixed point.
    """
    if normalize_scope(scope) == SCOPE_GLOBAL:
        return GLOBAL_SESSION_KEY

    agent = normalize_agent_id(agent_id) or DEFAULT_AGENT_ID
    main = normalize_main_key(main_key)
    raw = (raw_ref or "").strip()
    lowered = raw.lower()

    if not raw or lowered in (DEFAULT_MAIN_KEY, GLOBAL_SESSION_KEY, main):
        return main_session_key(agent, main)
    if raw.startswith(ROOM_SIGIL):
        return raw
    if lowered == main_session_key(agent, DEFAULT_MAIN_KEY):
        return main_session_key(agent, main)
    if lowered.startswith(_AGENT_PREFIX) or lowered.startswith(_SUBAGENT_PREFIX):
        if lowered.startswith(_AGENT_PREFIX) and len(lowered.split(":")) < 3:
            return main_session_key(agent, main)
        return lowered
    return f"{_AGENT_PREFIX}{agent}:{lowered}"


def cron_session_key(agent_id: str | None, job_id: str | None) -> str:
    agent = normalize_agent_id(agent_id) or DEFAULT_AGENT_ID
    job = (job_id or "").strip() or "job"
    return f"{_AGENT_PREFIX}{agent}:cron:{job}"
