from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from ..config import Config, HeartbeatConfig
from ..sessions.routing import main_session_ref
from ..sessions.store import SessionStoreRegistry
from .config import enabled_heartbeat_agents, resolve_heartbeat_config, resolve_heartbeat_interval_ms
from .events import HeartbeatResult
from .wake import HeartbeatWake

log = logging.getLogger("agentpulse")

RunOnce = Callable[[str, HeartbeatConfig | None, str], Awaitable[HeartbeatResult]]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class AgentHeartbeatState:
    agent_id: str
    heartbeat: HeartbeatConfig | None
    interval_ms: int
    last_run_ms: int = 0
    next_due_ms: int = 0


class HeartbeatScheduler:
    """Arms one timer at the earliest due time across all enabled agents.

    The timer only wakes ``wake`` with reason ``"interval"``; ``run`` decides
    which agents are due and hands each to ``run_once``.
    """

    def __init__(
        self,
        config: Callable[[], Config],
        sessions: SessionStoreRegistry,
        run_once: RunOnce,
        wake: HeartbeatWake | None = None,
        override_every: str = "",
    ) -> None:
        self.config = config
        self.sessions = sessions
        self.run_once = run_once
        self.wake = wake or HeartbeatWake()
        self.override_every = override_every
        self._lock = threading.Lock()
        self._agents: dict[str, AgentHeartbeatState] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopped = False
        self.next_delay_ms: int | None = None
        self._last_sent = self._hydrate(config())

    def _hydrate(self, config: Config) -> dict[str, int]:
        """Persisted ``lastHeartbeatSentAt`` per enabled agent, for restart catch-up."""
        seeds: dict[str, int] = {}
        for agent_id in enabled_heartbeat_agents(config):
            seeds[agent_id] = self._persisted_last_sent(config, agent_id)
        return seeds

    def _persisted_last_sent(self, config: Config, agent_id: str) -> int:
        ref, key = main_session_ref(self.sessions, config, agent_id)
        try:
            entry = self.sessions.get(ref, key)
        except Exception:
            log.warning("heartbeat: could not read session for %s", agent_id, exc_info=True)
            return 0
        return entry.last_heartbeat_sent_at if entry is not None else 0

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stopped = False
        self.wake.set_handler(self.run)
        self.update_config(self.config())
        log.info("heartbeat scheduler started agents=%s", ",".join(self.agent_ids()) or "-")

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        self.wake.stop()

    def agent_ids(self) -> list[str]:
        with self._lock:
            return list(self._agents)

    def agent_state(self, agent_id: str) -> AgentHeartbeatState | None:
        with self._lock:
            state = self._agents.get(agent_id)
            return AgentHeartbeatState(**vars(state)) if state is not None else None

    def update_config(self, config: Config) -> None:
        now = _now_ms()
        with self._lock:
            previous = self._agents
        fresh: dict[str, AgentHeartbeatState] = {}
        for agent_id in enabled_heartbeat_agents(config):
            heartbeat = resolve_heartbeat_config(config, agent_id)
            interval = resolve_heartbeat_interval_ms(config, heartbeat, self.override_every)
            if interval <= 0:
                continue
            prev = previous.get(agent_id)
            if prev is None:
                # Startup seeds are used once; agents added later read the store.
                last_sent = self._last_sent.pop(agent_id, None)
                if last_sent is None:
                    last_sent = self._persisted_last_sent(config, agent_id)
                prev = AgentHeartbeatState(agent_id, heartbeat, interval, last_run_ms=last_sent)
            state = AgentHeartbeatState(agent_id, heartbeat, interval, last_run_ms=prev.last_run_ms)
            if state.last_run_ms > 0:
                state.next_due_ms = state.last_run_ms + interval
            elif prev.interval_ms == interval and prev.next_due_ms > now:
                state.next_due_ms = prev.next_due_ms
            else:
                state.next_due_ms = now + interval
            fresh[agent_id] = state
        with self._lock:
            self._agents = fresh
        self._rearm()

    def _rearm(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._stopped or not self._agents:
                self.next_delay_ms = None
                return
            earliest = min(state.next_due_ms for state in self._agents.values())
            delay = earliest - _now_ms()
            self.next_delay_ms = delay
            loop = self._loop
            if loop is None:
                return
            self._timer = loop.call_later(max(delay, 0) / 1000, self.wake.request, "interval")

    async def run(self, reason: str = "") -> HeartbeatResult:
        """Run due agents (or all agents for non-interval reasons)."""
        with self._lock:
            if self._stopped or not self._agents:
                return HeartbeatResult("skipped", "disabled")
            agents = list(self._agents.values())
        is_interval = reason == "interval"
        ran = False
        for state in agents:
            started = _now_ms()
            if is_interval and started < state.next_due_ms:
                continue
            try:
                result = await self.run_once(state.agent_id, state.heartbeat, reason)
            except Exception:
                log.exception("heartbeat run failed agent=%s", state.agent_id)
                result = HeartbeatResult("failed", "error")
            if result.is_skip("requests-in-flight"):
                return result
            if not result.is_skip("disabled"):
                self._advance(state.agent_id, started)
            if not result.skipped:
                ran = True
        self._rearm()
        if ran:
            return HeartbeatResult("ran")
        return HeartbeatResult("skipped", "not-due" if is_interval else "disabled")

    def _advance(self, agent_id: str, ran_at: int) -> None:
        with self._lock:
            state = self._agents.get(agent_id)
            if state is not None:
                state.last_run_ms = ran_at
                state.next_due_ms = ran_at + state.interval_ms
