from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .keys import (
    DEFAULT_AGENT_ID,
    DEFAULT_MAIN_KEY,
    GLOBAL_SESSION_KEY,
    SCOPE_GLOBAL,
    agent_id_from_session_key,
    is_room_ref,
    main_session_key,
    normalize_agent_id,
    normalize_scope,
    resolve_session_key,
)
from .store import SessionEntry, SessionStoreRegistry, StoreRef

if TYPE_CHECKING:
    from ..config import Config, HeartbeatConfig


@dataclass
class SessionResolution:
    ref: StoreRef
    session_key: str
    entry: SessionEntry | None = None


def main_session_ref(registry: SessionStoreRegistry, config: Config, agent_id: str) -> tuple[StoreRef, str]:
    """StoreRef and key of the agent's main session.

    Under global scope every agent shares the default agent's store.
    """
    agent = normalize_agent_id(agent_id) or DEFAULT_AGENT_ID
    if normalize_scope(config.session.scope) == SCOPE_GLOBAL:
        store_agent = normalize_agent_id(config.default_agent_id) or DEFAULT_AGENT_ID
        return registry.ref_for(store_agent), GLOBAL_SESSION_KEY
    return registry.ref_for(agent), main_session_key(agent, config.session.main_key)


def resolve_heartbeat_session(
    registry: SessionStoreRegistry,
    config: Config,
    agent_id: str,
    heartbeat: HeartbeatConfig | None,
) -> SessionResolution:
    """Session a heartbeat reports into. Keys owned by another agent fall back to main."""
    agent = normalize_agent_id(agent_id) or DEFAULT_AGENT_ID
    ref, main_key = main_session_ref(registry, config, agent)
    sessions = registry.load(ref)
    main = SessionResolution(ref=ref, session_key=main_key, entry=sessions.get(main_key))
    if main_key == GLOBAL_SESSION_KEY:
        return main

    raw = ((heartbeat.session if heartbeat else None) or "").strip()
    configured_main = (config.session.main_key or DEFAULT_MAIN_KEY).strip().lower()
    if not raw or raw.lower() in (DEFAULT_MAIN_KEY, GLOBAL_SESSION_KEY, configured_main):
        return main
    if is_room_ref(raw):
        return SessionResolution(ref=ref, session_key=raw, entry=sessions.get(raw))

    canonical = resolve_session_key(agent, config.session.scope, raw, config.session.main_key)
    if agent_id_from_session_key(canonical) == agent:
        return SessionResolution(ref=ref, session_key=canonical, entry=sessions.get(canonical))
    return main
