from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace

from ..bridge.base import DeliveryError, DeliverySink, MessageHistory, Room, RoomLookup, StoredMessage, TurnConfig
from ..chat.dispatcher import RoomDispatcher
from ..config import Config
from ..delivery.target import DeliveryResolver
from ..heartbeat.config import resolve_ack_max_chars, resolve_heartbeat_config
from ..heartbeat.tokens import is_heartbeat_only_response
from ..metrics import log_metric
from ..sessions.keys import DEFAULT_AGENT_ID, cron_session_key, normalize_agent_id
from ..sessions.store import SessionEntry, SessionStoreRegistry, StoreRef
from .message import build_cron_message, normalize_thinking_level, truncate_summary, wrap_external_content
from .models import DELIVERY_ANNOUNCE, CronDelivery, CronJob

log = logging.getLogger("agentpulse")

DEFAULT_TIMEOUT_SECONDS = 600
NO_TIMEOUT_SECONDS = 30 * 24 * 60 * 60
DELIVERY_TIMEOUT_SECONDS = 10.0
POLL_INTERVAL_SECONDS = 0.25
CRON_SESSION_STORE_PATH = "cron/sessions.json"
MESSAGE_TOOL = "message"
_POLL_WINDOW = 5


@dataclass
class CronRunResult:
    status: str  # ok | skipped | error
    summary: str = ""
    output: str = ""
    error: str = ""

    def to_dict(self) -> dict:
        return {"status": self.status, "summary": self.summary, "output": self.output, "error": self.error}


class CronError(Exception):
    def __init__(self, message: str, summary: str = "", output: str = "") -> None:
        super().__init__(message)
        self.summary = summary
        self.output = output


class CronTimeoutError(CronError):
    pass


class CronDeliveryError(CronError):
    def __init__(self, reason: str, summary: str = "", output: str = "") -> None:
        super().__init__(f"cron delivery failed: {reason}", summary=summary, output=output)
        self.reason = reason


def resolve_timeout_seconds(job: CronJob, config: Config) -> int:
    """Per-job override, else the configured agent timeout, else 600s. 0 means no timeout."""
    seconds = config.agent_timeout_seconds if config.agent_timeout_seconds > 0 else DEFAULT_TIMEOUT_SECONDS
    override = job.payload.timeout_seconds
    if override is not None:
        if override == 0:
            return NO_TIMEOUT_SECONDS
        if override > 0:
            seconds = override
    return max(seconds, 1)


def _is_newer(message: StoredMessage, last_id: str, last_ts: int) -> bool:
    if message.message_id == last_id:
        return False
    if message.timestamp_ms > last_ts:
        return True
    return message.timestamp_ms == last_ts and bool(last_id) and message.message_id != last_id


class CronRunner:
    """Runs one cron job in its own room and delivers the reply."""

    def __init__(
        self,
        dispatcher: RoomDispatcher,
        rooms: RoomLookup,
        history: MessageHistory,
        resolver: DeliveryResolver,
        sink: DeliverySink,
        sessions: SessionStoreRegistry,
        config: Callable[[], Config],
        shutdown: asyncio.Event | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        delivery_timeout: float = DELIVERY_TIMEOUT_SECONDS,
    ) -> None:
        self.dispatcher = dispatcher
        self.rooms = rooms
        self.history = history
        self.resolver = resolver
        self.sink = sink
        self.sessions = sessions
        self.config = config
        self.shutdown = shutdown or asyncio.Event()
        self.poll_interval = poll_interval
        self.delivery_timeout = delivery_timeout

    async def run(self, job: CronJob) -> CronRunResult:
        started = time.monotonic()
        try:
            result = await self._run(job)
        except CronError as exc:
            log.warning("cron job %s failed: %s", job.id, exc)
            result = CronRunResult(status="error", summary=exc.summary, output=exc.output, error=str(exc))
        log_metric(
            "cron_run",
            job_id=job.id,
            status=result.status,
            error=result.error,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    def _agent_for(self, job: CronJob, config: Config) -> str:
        return normalize_agent_id(job.agent_id) or normalize_agent_id(config.default_agent_id) or DEFAULT_AGENT_ID

    def _turn_config(self, room: Room, job: CronJob, agent_id: str, delivery: CronDelivery) -> TurnConfig:
        """Per-run snapshot; the room itself is never modified."""
        snapshot = TurnConfig(
            agent_id=agent_id,
            model=room.model,
            reasoning_effort=room.reasoning_effort,
            disabled_tools=list(room.disabled_tools),
            source="cron",
        )
        if job.payload.model.strip():
            snapshot.model = job.payload.model.strip()
        level = normalize_thinking_level(job.payload.thinking)
        if level:
            snapshot.reasoning_effort = "" if level == "off" else level
        if delivery.mode == DELIVERY_ANNOUNCE and MESSAGE_TOOL not in snapshot.disabled_tools:
            snapshot.disabled_tools.append(MESSAGE_TOOL)
        return snapshot

    async def _update_session(self, agent_id: str, job_id: str, updater: Callable[[SessionEntry], SessionEntry]) -> None:
        ref = StoreRef(agent_id=agent_id, path=CRON_SESSION_STORE_PATH)
        try:
            await asyncio.to_thread(self.sessions.update, ref, cron_session_key(agent_id, job_id), updater)
        except Exception:
            log.warning("cron: session update failed job=%s", job_id, exc_info=True)

    async def _run(self, job: CronJob) -> CronRunResult:
        config = self.config()
        agent_id = self._agent_for(job, config)
        room = await self.rooms.get_or_create_cron_room(agent_id, job.id, job.name)
        delivery = job.delivery or CronDelivery()
        turn_config = self._turn_config(room, job, agent_id, delivery)
        timeout = resolve_timeout_seconds(job, config)

        run_id = str(uuid.uuid4())
        await self._update_session(
            agent_id, job.id,
            lambda entry: replace(entry, session_id=run_id, updated_at=int(time.time() * 1000)),
        )

        message = build_cron_message(job.id, job.name, job.payload.body, config.user_timezone)
        if not job.payload.allow_unsafe_external_content:
            message = wrap_external_content(message)

        last_id, last_ts = await self._last_assistant(room)
        try:
            await self.dispatcher.dispatch_internal_message(room, message, source="cron", config=turn_config)
        except ValueError as exc:
            raise CronError(f"cron dispatch failed: {exc}") from exc

        reply = await self._wait_for_reply(room, last_id, last_ts, timeout)
        output = reply.body.strip() if reply is not None else ""
        if not output:
            raise CronTimeoutError("cron job timed out")
        summary = truncate_summary(output)
        await self._update_session(agent_id, job.id, lambda entry: replace(
            entry,
            model=reply.model.strip(),
            prompt_tokens=reply.prompt_tokens,
            completion_tokens=reply.completion_tokens,
            total_tokens=(reply.prompt_tokens + reply.completion_tokens) or entry.total_tokens,
            updated_at=int(time.time() * 1000),
        ))

        if delivery.mode != DELIVERY_ANNOUNCE:
            return CronRunResult(status="ok", summary=summary, output=output)
        ack_max = resolve_ack_max_chars(config, resolve_heartbeat_config(config, agent_id))
        if is_heartbeat_only_response(output, ack_max):
            log.debug("cron job %s produced only a heartbeat ack; not announcing", job.id)
            return CronRunResult(status="ok", summary=summary, output=output)

        try:
            await self._deliver(agent_id, delivery, output)
        except CronDeliveryError as exc:
            if delivery.best_effort:
                return CronRunResult(status="skipped", summary=f"Delivery skipped ({exc.reason}).", output=output)
            raise CronDeliveryError(exc.reason, summary=summary, output=output) from exc
        return CronRunResult(status="ok", summary=summary, output=output)

    async def _deliver(self, agent_id: str, delivery: CronDelivery, output: str) -> None:
        target = await self.resolver.resolve_delivery_target(agent_id, delivery.channel, delivery.to)
        if not target.deliverable:
            raise CronDeliveryError(target.reason or "no-target")
        try:
            await asyncio.wait_for(self.sink.send(target.room, output), timeout=self.delivery_timeout)
        except asyncio.TimeoutError as exc:
            raise CronDeliveryError("timeout") from exc
        except DeliveryError as exc:
            raise CronDeliveryError(str(exc) or "send failed") from exc

    async def _last_assistant(self, room: Room) -> tuple[str, int]:
        for message in reversed(await self.history.last_messages(room.room_id, _POLL_WINDOW)):
            if message.role == "assistant":
                return message.message_id, message.timestamp_ms
        return "", 0

    async def _wait_for_reply(self, room: Room, last_id: str, last_ts: int, timeout: float) -> StoredMessage | None:
        """Poll history until a newer assistant message shows up, the deadline passes, or shutdown."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            for message in reversed(await self.history.last_messages(room.room_id, _POLL_WINDOW)):
                if message.role != "assistant":
                    continue
                if _is_newer(message, last_id, last_ts):
                    return message
                break
            if self.shutdown.is_set():
                raise CronError("cron run cancelled: shutting down")
            try:
                await asyncio.wait_for(self.shutdown.wait(), timeout=min(self.poll_interval, max(deadline - loop.time(), 0)))
            except asyncio.TimeoutError:
                pass
        return None

