from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..bridge import Bridge, create_local_bridge
from ..chat.dispatcher import RoomDispatcher
from ..chat.gate import TurnGate
from ..config import Config
from ..cron.models import CronJob
from ..cron.runner import CronRunner, CronRunResult
from ..delivery.target import DeliveryResolver
from ..heartbeat.events import HeartbeatEventLog
from ..heartbeat.executor import HeartbeatExecutor
from ..heartbeat.scheduler import HeartbeatScheduler
from ..heartbeat.wake import HeartbeatWake
from ..sessions.backend import MemoryStateBackend, StateBackend
from ..sessions.store import SessionStoreRegistry
from ..sessions.system_events import SystemEventQueues
from .settings import SettingsStore

log = logging.getLogger("agentpulse")


class Runtime:
    """Owns the process-scoped registries and wires the components together."""

    def __init__(
        self,
        settings: SettingsStore,
        bridge: Bridge | None = None,
        backend: StateBackend | None = None,
        cli_overrides: dict[str, Any] | None = None,
        heartbeat_every: str = "",
    ) -> None:
        self.settings = settings
        self.cli_overrides = dict(cli_overrides or {})
        self._config = Config.from_settings(settings.get_effective(self.cli_overrides))
        self.bridge = bridge or create_local_bridge()
        self.backend = backend or MemoryStateBackend()
        self.sessions = SessionStoreRegistry(self.backend, self._config.session.store)
        self.system_events = SystemEventQueues()
        self.gate = TurnGate()
        self.dispatcher = RoomDispatcher(
            gate=self.gate,
            rooms=self.bridge.rooms,
            history=self.bridge.history,
            provider=self.bridge.provider,
            sessions=self.sessions,
            config=self.get_config,
        )
        self.resolver = DeliveryResolver(self.bridge.rooms, self.sessions, self.get_config)
        self.heartbeat_events = HeartbeatEventLog()
        self.wake = HeartbeatWake()
        self.executor = HeartbeatExecutor(
            dispatcher=self.dispatcher,
            resolver=self.resolver,
            sessions=self.sessions,
            system_events=self.system_events,
            sink=self.bridge.sink,
            events=self.heartbeat_events,
            config=self.get_config,
            backend=self.backend,
            override_every=heartbeat_every,
        )
        self.scheduler = HeartbeatScheduler(
            config=self.get_config,
            sessions=self.sessions,
            run_once=self.executor.run_once,
            wake=self.wake,
            override_every=heartbeat_every,
        )
        self.shutdown = asyncio.Event()
        self.cron = CronRunner(
            dispatcher=self.dispatcher,
            rooms=self.bridge.rooms,
            history=self.bridge.history,
            resolver=self.resolver,
            sink=self.bridge.sink,
            sessions=self.sessions,
            config=self.get_config,
            shutdown=self.shutdown,
        )
        self._started = False

    def get_config(self) -> Config:
        return self._config

    def reload_config(self) -> Config:
        """Re-read settings and reschedule heartbeats."""
        self._config = Config.from_settings(self.settings.get_effective(self.cli_overrides))
        if self._started:
            self.scheduler.update_config(self._config)
        return self._config

    async def start(self) -> None:
        if self._started:
            return
        self.shutdown.clear()
        restored = await asyncio.to_thread(self.system_events.restore, self.backend)
        if restored:
            log.info("restored system events for %d session(s)", restored)
        self.scheduler.start()
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.shutdown.set()
        self.scheduler.stop()
        await self.dispatcher.shutdown()
        await asyncio.to_thread(self.system_events.persist, self.backend)
        log.info("runtime stopped")

    async def enqueue_system_event(self, session_key: str, text: str, context_key: str = "") -> bool:
        queued = self.system_events.enqueue(session_key, text, context_key)
        if queued:
            await asyncio.to_thread(self.system_events.persist, self.backend)
        return queued

    async def run_cron_job(self, job: CronJob) -> CronRunResult:
        return await self.cron.run(job)
