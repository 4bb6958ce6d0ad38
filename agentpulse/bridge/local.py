from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Callable
from typing import AsyncIterator

from ..heartbeat.tokens import HEARTBEAT_TOKEN
from .base import (
    DeliveryError,
    DeliverySink,
    MessageHistory,
    Provider,
    Room,
    RoomLookup,
    StoredMessage,
    TurnConfig,
    TurnOutcome,
)

log = logging.getLogger("agentpulse")


class InMemoryRooms(RoomLookup):
    def __init__(self, default_room_id: str = "", logged_in: bool = True) -> None:
        self._lock = threading.Lock()
        self._rooms: dict[str, Room] = {}
        self._last_active: dict[str, str] = {}
        self.default_room_id = default_room_id
        self.logged_in = logged_in

    def add(self, room: Room) -> Room:
        with self._lock:
            self._rooms[room.room_id] = room
        return room

    def assign(self, room_id: str, agent_id: str) -> None:
        with self._lock:
            room = self._rooms.get(room_id)
            if room is not None:
                room.agent_id = agent_id

    def touch(self, agent_id: str, room_id: str) -> None:
        with self._lock:
            self._last_active[agent_id] = room_id

    async def mark_active(self, agent_id: str, room_id: str) -> None:
        self.touch(agent_id, room_id)

    async def by_id(self, room_id: str) -> Room | None:
        with self._lock:
            return self._rooms.get(room_id)

    async def last_active_room(self, agent_id: str) -> Room | None:
        with self._lock:
            room_id = self._last_active.get(agent_id)
            return self._rooms.get(room_id) if room_id else None

    async def default_chat_room(self) -> Room | None:
        with self._lock:
            return self._rooms.get(self.default_room_id) if self.default_room_id else None

    def is_logged_in(self) -> bool:
        return self.logged_in

    async def get_or_create_cron_room(self, agent_id: str, job_id: str, name: str) -> Room:
        room_id = f"!cron-{agent_id}-{job_id}:local"
        with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id, agent_id=agent_id, name=name or f"Cron {job_id}", is_cron=True)
                self._rooms[room_id] = room
            return room


class InMemoryHistory(MessageHistory):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: dict[str, list[StoredMessage]] = {}

    async def last_messages(self, room_id: str, limit: int) -> list[StoredMessage]:
        with self._lock:
            messages = self._messages.get(room_id, [])
            return list(messages[-limit:]) if limit > 0 else list(messages)

    async def append(self, room_id: str, message: StoredMessage) -> None:
        if not message.message_id:
            message.message_id = f"$local-{uuid.uuid4().hex[:12]}"
        if not message.timestamp_ms:
            message.timestamp_ms = int(time.time() * 1000)
        with self._lock:
            self._messages.setdefault(room_id, []).append(message)


class EchoProvider(Provider):
    """Development provider: echoes the last user message, acks heartbeats.

    ``responder`` overrides the reply text; ``delay`` sleeps between chunks.
    """

    def __init__(
        self,
        responder: Callable[[Room, TurnConfig, list[dict]], str] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.responder = responder
        self.delay = delay
        self.calls: list[tuple[str, TurnConfig, list[dict]]] = []

    def _reply(self, room: Room, config: TurnConfig, messages: list[dict]) -> str:
        if self.responder is not None:
            return self.responder(room, config, messages)
        if config.source == "heartbeat":
            return HEARTBEAT_TOKEN
        for message in reversed(messages):
            if message.get("role") == "user":
                return f"echo: {message.get('content', '')}"
        return ""

    async def stream_turn(
        self,
        room: Room,
        config: TurnConfig,
        messages: list[dict],
    ) -> AsyncIterator[str | TurnOutcome]:
        self.calls.append((room.room_id, config, messages))
        text = self._reply(room, config, messages)
        words = text.split(" ")
        for idx, word in enumerate(words):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield word if idx == 0 else " " + word
        yield TurnOutcome(status="ok", text=text, model=config.model or "echo")


class RecordingSink(DeliverySink):
    def __init__(self, fail_with: str = "") -> None:
        self.fail_with = fail_with
        self.sent: list[tuple[str, str]] = []

    async def send(self, room: Room, text: str) -> None:
        if self.fail_with:
            raise DeliveryError(self.fail_with)
        log.debug("local delivery room=%s chars=%d", room.room_id, len(text))
        self.sent.append((room.room_id, text))
