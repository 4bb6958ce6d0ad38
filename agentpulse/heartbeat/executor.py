from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path

from ..bridge.base import DeliveryError, DeliverySink, Room, TurnConfig
from ..chat.dispatcher import RoomDispatcher
from ..config import Config, HeartbeatConfig
from ..delivery.target import DeliveryResolver, DeliveryTarget
from ..metrics import log_metric
from ..sessions.backend import StateBackend
from ..sessions.routing import resolve_heartbeat_session
from ..sessions.store import SessionStoreRegistry
from ..sessions.system_events import SystemEventQueues, format_system_events
from .config import (
    is_heartbeat_enabled_for_agent,
    is_within_active_hours,
    resolve_ack_max_chars,
    resolve_heartbeat_interval_ms,
    resolve_prompt,
    resolve_target,
    resolve_visibility,
)
from .events import HeartbeatEvent, HeartbeatEventLog, HeartbeatResult, resolve_indicator
from .tokens import (
    EXEC_EVENT_MARKER,
    EXEC_EVENT_PROMPT,
    HEARTBEAT_TOKEN,
    MODE_HEARTBEAT,
    is_heartbeat_content_effectively_empty,
    strip_heartbeat_token,
)

log = logging.getLogger("agentpulse")

HEARTBEAT_TIMEOUT_SECONDS = 120.0
HEARTBEAT_FILE = "HEARTBEAT.md"
DUPLICATE_WINDOW_MS = 24 * 60 * 60 * 1000
_PREVIEW_CHARS = 200


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _RunContext:
    agent_id: str
    heartbeat: HeartbeatConfig | None
    room: Room
    store_session_key: str
    target: DeliveryTarget
    ack_max_chars: int
    started_ms: int


class HeartbeatExecutor:
    """Decides whether one agent's heartbeat runs, runs it, and delivers the result."""

    def __init__(
        self,
        dispatcher: RoomDispatcher,
        resolver: DeliveryResolver,
        sessions: SessionStoreRegistry,
        system_events: SystemEventQueues,
        sink: DeliverySink,
        events: HeartbeatEventLog,
        config: Callable[[], Config],
        backend: StateBackend | None = None,
        timeout: float = HEARTBEAT_TIMEOUT_SECONDS,
        override_every: str = "",
    ) -> None:
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.sessions = sessions
        self.system_events = system_events
        self.sink = sink
        self.events = events
        self.config = config
        self.backend = backend
        self.timeout = timeout
        self.override_every = override_every

    async def read_heartbeat_file(self, agent_id: str) -> str | None:
        """Contents of the agent's HEARTBEAT.md, or None when there is none."""
        workspace = self.config().workspace.strip()
        if not workspace:
            return None
        path = Path(workspace).expanduser() / agent_id / HEARTBEAT_FILE

        def _read() -> str | None:
            try:
                return path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None

        try:
            return await asyncio.to_thread(_read)
        except OSError:
            log.warning("heartbeat: could not read %s", path, exc_info=True)
            return None

    async def run_once(
        self,
        agent_id: str,
        heartbeat: HeartbeatConfig | None,
        reason: str = "",
    ) -> HeartbeatResult:
        config = self.config()
        started = _now_ms()
        result = await self._run_once(config, agent_id, heartbeat, reason, started)
        log_metric(
            "heartbeat_run",
            agent_id=agent_id,
            reason=reason or "requested",
            status=result.status,
            detail=result.reason,
            duration_ms=_now_ms() - started,
        )
        return result

    async def _run_once(
        self,
        config: Config,
        agent_id: str,
        heartbeat: HeartbeatConfig | None,
        reason: str,
        started: int,
    ) -> HeartbeatResult:
        if not is_heartbeat_enabled_for_agent(config, agent_id):
            return HeartbeatResult("skipped", "disabled")
        if resolve_heartbeat_interval_ms(config, heartbeat, self.override_every) <= 0:
            return HeartbeatResult("skipped", "disabled")
        active = heartbeat.active_hours if heartbeat is not None else None
        if not is_within_active_hours(active, started, config.user_timezone):
            return HeartbeatResult("skipped", "quiet-hours")
        if self.dispatcher.has_inflight():
            return HeartbeatResult("skipped", "requests-in-flight")

        room, room_id, store_key = await self.resolver.resolve_heartbeat_session_room(agent_id, heartbeat)
        if room is None:
            return HeartbeatResult("skipped", "no-session")

        is_exec_event = reason == "exec-event"
        content = await self.read_heartbeat_file(agent_id)
        has_events = self.system_events.has(room_id) or self.system_events.has(store_key)
        if content is not None and is_heartbeat_content_effectively_empty(content) and not is_exec_event and not has_events:
            return HeartbeatResult("skipped", "empty-heartbeat-file")

        visibility = resolve_visibility(config)
        if not visibility.show_ok and not visibility.show_alerts and not visibility.use_indicator:
            return HeartbeatResult("skipped", "alerts-disabled")

        target = await self.resolver.resolve_heartbeat_target(agent_id, heartbeat, resolve_target(config, heartbeat))
        ctx = _RunContext(
            agent_id=agent_id,
            heartbeat=heartbeat,
            room=room,
            store_session_key=store_key,
            target=target,
            ack_max_chars=resolve_ack_max_chars(config, heartbeat),
            started_ms=started,
        )

        prompt = resolve_prompt(config, heartbeat)
        has_exec_completion = False
        if is_exec_event:
            pending = self.system_events.peek(room_id) + self.system_events.peek(store_key)
            has_exec_completion = any(EXEC_EVENT_MARKER in text for text in pending)
            if has_exec_completion:
                prompt = EXEC_EVENT_PROMPT
        if target.deliverable:
            drained = self.system_events.drain_for_heartbeat(room_id, store_key)
            if drained:
                await asyncio.to_thread(self.system_events.persist, self.backend)
                notice = format_system_events(drained)
                if notice:
                    prompt = f"{notice}\n\n{prompt}"

        turn_config = TurnConfig(
            agent_id=agent_id,
            model=((heartbeat.model if heartbeat else None) or room.model or "").strip(),
            reasoning_effort=room.reasoning_effort,
            disabled_tools=list(room.disabled_tools),
            source="heartbeat",
            include_reasoning=bool(heartbeat.include_reasoning) if heartbeat else False,
        )
        try:
            outcome = await asyncio.wait_for(
                self.dispatcher.run_detached_turn(room, prompt, turn_config),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            log.warning("heartbeat timed out agent=%s room=%s", agent_id, room.room_id)
            return self._emit(ctx, HeartbeatResult("failed", "timeout"))
        if outcome is None:
            return HeartbeatResult("skipped", "requests-in-flight")
        if outcome.status != "ok":
            return self._emit(ctx, HeartbeatResult("failed", outcome.reason or outcome.status))
        return await self._finalize(ctx, config, outcome.text, has_exec_completion)

    async def _finalize(self, ctx: _RunContext, config: Config, raw: str, exec_completion: bool) -> HeartbeatResult:
        visibility = resolve_visibility(config)
        stripped = strip_heartbeat_token(raw, MODE_HEARTBEAT, ctx.ack_max_chars)
        text = stripped.text.strip()
        if exec_completion and raw.strip() and not text:
            # Exec completions are relayed even when the model also acked.
            text = raw.strip()
        if stripped.should_skip and not text:
            status = "ok-empty" if not raw.strip() else "ok-token"
            silent = True
            if visibility.show_ok and ctx.target.deliverable:
                try:
                    await self.sink.send(ctx.target.room, HEARTBEAT_TOKEN)
                    silent = False
                except DeliveryError as exc:
                    log.warning("heartbeat: ok send failed agent=%s: %s", ctx.agent_id, exc)
            return self._emit(ctx, HeartbeatResult(status), silent=silent)

        resolution = await asyncio.to_thread(
            resolve_heartbeat_session, self.sessions, config, ctx.agent_id, ctx.heartbeat,
        )
        entry = resolution.entry
        now = _now_ms()
        if (
            entry is not None
            and entry.last_heartbeat_text.strip() == text
            and entry.last_heartbeat_sent_at > 0
            and now - entry.last_heartbeat_sent_at < DUPLICATE_WINDOW_MS
        ):
            return self._emit(ctx, HeartbeatResult("skipped", "duplicate"), preview=text)

        if not ctx.target.deliverable:
            return self._emit(ctx, HeartbeatResult("skipped", ctx.target.reason or "no-target"), preview=text)
        if not visibility.show_alerts:
            return self._emit(ctx, HeartbeatResult("skipped", "alerts-disabled"), preview=text)

        try:
            await self.sink.send(ctx.target.room, text)
        except DeliveryError as exc:
            log.warning("heartbeat: send failed agent=%s room=%s: %s", ctx.agent_id, ctx.target.room_id, exc)
            return self._emit(ctx, HeartbeatResult("failed", str(exc) or "send failed"), preview=text)

        def _record(current):
            # Keep updatedAt so a heartbeat does not count as session activity.
            return replace(current, last_heartbeat_text=text, last_heartbeat_sent_at=now)

        try:
            await asyncio.to_thread(self.sessions.update, resolution.ref, resolution.session_key, _record)
        except Exception:
            log.warning("heartbeat: could not record sent text agent=%s", ctx.agent_id, exc_info=True)
        return self._emit(ctx, HeartbeatResult("sent"), preview=text, silent=False)

    def _emit(
        self,
        ctx: _RunContext,
        result: HeartbeatResult,
        preview: str = "",
        silent: bool = True,
    ) -> HeartbeatResult:
        config = self.config()
        indicator = resolve_indicator(result.status) if resolve_visibility(config).use_indicator else None
        self.events.emit(HeartbeatEvent(
            ts=_now_ms(),
            status=result.status,
            reason=result.reason,
            channel=ctx.target.channel,
            to=ctx.target.room_id,
            preview=preview[:_PREVIEW_CHARS],
            duration_ms=_now_ms() - ctx.started_ms,
            silent=silent,
            indicator=indicator,
        ))
        return result
