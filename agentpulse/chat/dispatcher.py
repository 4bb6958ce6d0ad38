from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import replace

from ..bridge.base import MessageHistory, Provider, Room, RoomLookup, StoredMessage, TurnConfig, TurnOutcome
from ..config import Config
from ..sessions.keys import resolve_session_key
from ..sessions.store import SessionStoreRegistry
from .gate import Admission, RunHandle, TurnGate
from .queue import (
    COLLECT_TITLE,
    PendingItem,
    PendingMessage,
    QueueInlineOptions,
    QueueMode,
    build_collect_prompt,
    build_summary_line,
    resolve_queue_settings,
)

log = logging.getLogger("agentpulse")

_DEFAULT_HISTORY_LIMIT = 20
_MEDIA_KINDS = ("image", "pdf", "audio", "video")


def _now_ms() -> int:
    return int(time.time() * 1000)


class RoomDispatcher:
    """Admits inbound messages into per-room turns and drains deferred work."""

    def __init__(
        self,
        gate: TurnGate,
        rooms: RoomLookup,
        history: MessageHistory,
        provider: Provider,
        sessions: SessionStoreRegistry,
        config: Callable[[], Config],
        history_limit: int = _DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.gate = gate
        self.gate.on_release = self._schedule_drain
        self.rooms = rooms
        self.history = history
        self.provider = provider
        self.sessions = sessions
        self.config = config
        self.history_limit = history_limit
        self._tasks: dict[str, asyncio.Task] = {}
        self._drains: dict[str, asyncio.Task] = {}

    def has_inflight(self) -> bool:
        return self.gate.has_inflight()

    def _agent_for(self, room: Room, pending: PendingMessage | None = None) -> str:
        if pending is not None and pending.agent_id:
            return pending.agent_id
        return room.agent_id or self.config().default_agent_id

    async def handle_message(
        self,
        pending: PendingMessage,
        inline_mode: QueueMode | None = None,
        inline: QueueInlineOptions | None = None,
    ) -> Admission | None:
        """Start a turn for ``pending`` or fold it into the room's backlog.

        Returns None when the room does not exist.
        """
        room = await self.rooms.by_id(pending.room_id)
        if room is None:
            log.warning("message for unknown room %s dropped", pending.room_id)
            return None
        config = self.config()
        agent_id = self._agent_for(room, pending)
        session_key = resolve_session_key(agent_id, config.session.scope, room.room_id, config.session.main_key)
        ref = self.sessions.ref_for(agent_id)
        entry = await asyncio.to_thread(self.sessions.get, ref, session_key)
        settings = resolve_queue_settings(config.queue, pending.channel, inline_mode, inline, entry)

        item = PendingItem(
            pending=pending,
            message_id=pending.event_id,
            summary_line=build_summary_line(pending.body) if pending.body.strip() else "",
            allow_duplicate=pending.source != "user",
        )

        if settings.mode is QueueMode.INTERRUPT and self.gate.is_busy(room.room_id):
            cleared = self.gate.clear_queue(room.room_id)
            self.gate.interrupt(room.room_id)
            log.info("interrupting run room=%s cleared=%d", room.room_id, cleared)

        if settings.mode in (QueueMode.STEER, QueueMode.STEER_BACKLOG) and pending.kind == "text":
            if self.gate.steer(room.room_id, pending.body):
                log.debug("steered message into active run room=%s", room.room_id)
                if settings.mode is QueueMode.STEER:
                    return Admission.STEERED
                item.backlog_after = True

        admission = self.gate.try_acquire_or_enqueue(room.room_id, item, settings)
        if admission is Admission.STARTED:
            self._start(room.room_id, self._run_and_release(room, [item], ""))
        elif admission is Admission.QUEUED:
            log.debug("room busy; queued message room=%s mode=%s", room.room_id, settings.mode.value)
        elif admission is Admission.DROPPED:
            log.info("queue full; dropped message room=%s", room.room_id)
        return admission

    async def dispatch_internal_message(
        self,
        room: Room,
        body: str,
        source: str = "cron",
        config: TurnConfig | None = None,
    ) -> tuple[str, bool]:
        """Dispatch an automated prompt into ``room``. Returns (event id, queued)."""
        trimmed = body.strip()
        if not trimmed:
            raise ValueError("message body is required")
        event_id = f"${source or 'internal'}-{uuid.uuid4()}"
        pending = PendingMessage(
            room_id=room.room_id,
            body=trimmed,
            event_id=event_id,
            agent_id=config.agent_id if config else "",
            source=source,
            config=config,
        )
        item = PendingItem(pending=pending, message_id=event_id, allow_duplicate=True)
        admission = self.gate.try_acquire_or_enqueue(room.room_id, item)
        if admission is Admission.STARTED:
            self._start(room.room_id, self._run_and_release(room, [item], ""))
            return event_id, False
        return event_id, admission is Admission.QUEUED

    async def run_detached_turn(self, room: Room, prompt: str, config: TurnConfig) -> TurnOutcome | None:
        """Run one unsaved turn (heartbeats). None when the room is busy."""
        if not self.gate.acquire(room.room_id):
            return None
        try:
            outcome = await self._await_turn(room, prompt, config, persist=False)
        finally:
            self.gate.release(room.room_id)
        if outcome is None:
            return TurnOutcome(status="cancelled", reason="interrupted")
        return outcome

    def _start(self, room_id: str, coro) -> None:
        task = asyncio.create_task(coro, name=f"turn-{room_id}")
        self._tasks[room_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._tasks.get(room_id) is done:
                self._tasks.pop(room_id, None)

        task.add_done_callback(_forget)

    def _schedule_drain(self, room_id: str) -> None:
        existing = self._drains.get(room_id)
        if existing is not None and not existing.done():
            return
        task = asyncio.get_running_loop().create_task(self.process_pending_queue(room_id), name=f"drain-{room_id}")
        self._drains[room_id] = task

    async def _run_and_release(self, room: Room, items: list[PendingItem], summary: str) -> None:
        try:
            await self._run_batch(room, items, summary)
        except Exception:
            log.exception("turn failed room=%s", room.room_id)
        finally:
            self.gate.release(room.room_id)

    async def process_pending_queue(self, room_id: str) -> None:
        """Drain a room's backlog while it stays busy, one turn at a time."""
        try:
            while True:
                await self._wait_debounce(room_id)
                items, summary, _ = self.gate.take_batch(room_id)
                if not items and not summary:
                    return
                room = await self.rooms.by_id(room_id)
                if room is None:
                    log.warning("dropping backlog for vanished room %s", room_id)
                    self.gate.clear_queue(room_id)
                    continue
                try:
                    await self._run_batch(room, items, summary)
                except Exception:
                    log.exception("queued turn failed room=%s", room_id)
        finally:
            self._drains.pop(room_id, None)

    async def _wait_debounce(self, room_id: str) -> None:
        while True:
            last, debounce_ms = self.gate.last_enqueued_at(room_id)
            if debounce_ms <= 0:
                return
            since = _now_ms() - last
            if since >= debounce_ms:
                return
            await asyncio.sleep((debounce_ms - since) / 1000)

    async def _run_batch(self, room: Room, items: list[PendingItem], summary: str) -> TurnOutcome | None:
        if len(items) > 1 or (items and summary):
            for item in items:
                item.prompt = await self._render_pending(room, item.pending)
            prompt = build_collect_prompt(COLLECT_TITLE, items, summary)
        elif items:
            prompt = await self._render_pending(room, items[0].pending)
        else:
            prompt = summary
        if not prompt.strip():
            return None

        lead = items[-1].pending if items else None
        agent_id = self._agent_for(room, lead)
        if lead is not None and lead.config is not None:
            turn_config = replace(lead.config, agent_id=agent_id)
        else:
            turn_config = TurnConfig(
                agent_id=agent_id,
                model=room.model,
                reasoning_effort=room.reasoning_effort,
                disabled_tools=list(room.disabled_tools),
                source=lead.source if lead else "user",
            )

        outcome = await self._await_turn(room, prompt, turn_config)
        if outcome is None:
            log.info("turn cancelled room=%s", room.room_id)
            return None
        if lead is not None and lead.source == "user":
            await self._record_route(room, agent_id, lead)
        return outcome

    async def _await_turn(
        self,
        room: Room,
        prompt: str,
        config: TurnConfig,
        persist: bool = True,
    ) -> TurnOutcome | None:
        """Run the turn as its own task so an interrupt cancels only the turn.

        None when the turn was interrupted.
        """
        handle = RunHandle()
        turn = asyncio.create_task(
            self._run_turn(room, prompt, config, handle, persist=persist),
            name=f"run-{room.room_id}",
        )
        handle.task = turn
        self.gate.attach_run(room.room_id, handle)
        try:
            await asyncio.wait({turn})
        except asyncio.CancelledError:
            turn.cancel()
            await asyncio.gather(turn, return_exceptions=True)
            raise
        if turn.cancelled():
            return None
        return turn.result()

    async def _render_pending(self, room: Room, pending: PendingMessage) -> str:
        """Build the turn input from raw pending data against current history."""
        if pending.kind in _MEDIA_KINDS:
            header = f"[{pending.kind}: {pending.media_url or 'attachment'}"
            if pending.mime_type:
                header += f" ({pending.mime_type})"
            header += "]"
            return f"{header}\n{pending.body}".strip()
        if pending.kind in ("regenerate", "edit_regenerate") and pending.target_message_id:
            for message in reversed(await self.history.last_messages(room.room_id, 0)):
                if message.message_id == pending.target_message_id:
                    return pending.body.strip() or message.body
        return pending.body

    async def _history_prompt(self, room: Room, prompt: str) -> list[dict]:
        messages = [
            {"role": message.role, "content": message.body}
            for message in await self.history.last_messages(room.room_id, self.history_limit)
        ]
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _run_turn(
        self,
        room: Room,
        prompt: str,
        config: TurnConfig,
        handle: RunHandle,
        persist: bool = True,
    ) -> TurnOutcome:
        messages = await self._history_prompt(room, prompt)
        if persist:
            await self.history.append(room.room_id, StoredMessage(
                message_id="", role="user", body=prompt, sender=config.source,
            ))
        config = replace(config, steer_source=handle.drain_steer)
        chunks: list[str] = []
        outcome: TurnOutcome | None = None
        handle.streaming = True
        try:
            async for item in self.provider.stream_turn(room, config, messages):
                if isinstance(item, TurnOutcome):
                    outcome = item
                else:
                    chunks.append(item)
        except asyncio.CancelledError:
            partial = "".join(chunks)
            if persist and partial.strip():
                log.info("flushing partial output on cancel room=%s chars=%d", room.room_id, len(partial))
                await self.history.append(room.room_id, StoredMessage(
                    message_id="", role="assistant", body=partial, model=config.model,
                ))
            raise
        finally:
            handle.streaming = False

        text = "".join(chunks)
        if outcome is None:
            outcome = TurnOutcome(status="ok", text=text)
        elif not outcome.text:
            outcome.text = text
        if persist and outcome.status == "ok" and outcome.text.strip():
            await self.history.append(room.room_id, StoredMessage(
                message_id="",
                role="assistant",
                body=outcome.text,
                model=outcome.model or config.model,
                prompt_tokens=outcome.prompt_tokens,
                completion_tokens=outcome.completion_tokens,
            ))
        elif outcome.status != "ok":
            log.warning("turn failed room=%s reason=%s", room.room_id, outcome.reason)
        return outcome

    async def _record_route(self, room: Room, agent_id: str, pending: PendingMessage) -> None:
        config = self.config()
        main_key = resolve_session_key(agent_id, config.session.scope, "", config.session.main_key)
        agent_ref = self.sessions.ref_for(config.default_agent_id if main_key == "global" else agent_id)
        try:
            await asyncio.to_thread(
                self.sessions.record_route,
                agent_ref,
                main_key,
                room.room_id,
                pending.channel or "matrix",
                "",
                pending.thread_id,
            )
        except Exception:
            log.exception("failed to record route room=%s", room.room_id)
        await self.rooms.mark_active(agent_id, room.room_id)

    async def shutdown(self) -> None:
        tasks = [t for t in (*self._tasks.values(), *self._drains.values()) if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
