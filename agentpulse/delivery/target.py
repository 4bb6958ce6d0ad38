from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from ..bridge.base import Room, RoomLookup
from ..config import Config, HeartbeatConfig
from ..sessions.keys import ROOM_SIGIL, normalize_agent_id
from ..sessions.routing import main_session_ref, resolve_heartbeat_session
from ..sessions.store import SessionEntry, SessionStoreRegistry

log = logging.getLogger("agentpulse")

CHANNEL_MATRIX = "matrix"
CHANNEL_LAST = "last"

# Each strategy reports (found, room id); the first hit wins.
Strategy = Callable[[], Awaitable[tuple[bool, str]]]


@dataclass
class DeliveryTarget:
    room: Room | None = None
    channel: str = ""
    reason: str = ""

    @property
    def room_id(self) -> str:
        return self.room.room_id if self.room is not None else ""

    @property
    def deliverable(self) -> bool:
        return self.room is not None


async def first_found(strategies: list[Strategy]) -> str:
    for strategy in strategies:
        found, value = await strategy()
        if found:
            return value
    return ""


def _is_transport_channel(channel: str) -> bool:
    trimmed = (channel or "").strip()
    return not trimmed or trimmed.lower() == CHANNEL_MATRIX


class DeliveryResolver:
    """Resolves where automated output for an agent should go."""

    def __init__(
        self,
        rooms: RoomLookup,
        sessions: SessionStoreRegistry,
        config: Callable[[], Config],
    ) -> None:
        self.rooms = rooms
        self.sessions = sessions
        self.config = config

    def _owned_by(self, room: Room, agent_id: str) -> bool:
        assigned = normalize_agent_id(room.agent_id) or normalize_agent_id(self.config().default_agent_id)
        return assigned == normalize_agent_id(agent_id)

    def _session_last(self, agent_id: str, entry: SessionEntry | None = None, use_entry: bool = False) -> Strategy:
        async def strategy() -> tuple[bool, str]:
            current = entry
            if not use_entry:
                ref, key = main_session_ref(self.sessions, self.config(), agent_id)
                try:
                    current = await asyncio.to_thread(self.sessions.get, ref, key)
                except Exception:
                    log.warning("delivery: session lookup failed agent=%s", agent_id, exc_info=True)
                    return False, ""
            if current is None or not _is_transport_channel(current.last_channel):
                return False, ""
            candidate = current.last_to.strip()
            if not candidate.startswith(ROOM_SIGIL):
                return False, ""
            room = await self.rooms.by_id(candidate)
            if room is None:
                return False, ""
            if not self._owned_by(room, agent_id):
                log.info("delivery: stale route %s no longer assigned to %s", candidate, agent_id)
                return False, ""
            return True, candidate

        return strategy

    def _last_active(self, agent_id: str) -> Strategy:
        async def strategy() -> tuple[bool, str]:
            room = await self.rooms.last_active_room(agent_id)
            return (True, room.room_id) if room is not None and room.room_id else (False, "")

        return strategy

    def _default_room(self) -> Strategy:
        async def strategy() -> tuple[bool, str]:
            room = await self.rooms.default_chat_room()
            return (True, room.room_id) if room is not None and room.room_id else (False, "")

        return strategy

    async def _finish(self, target: str) -> DeliveryTarget:
        if not target:
            return DeliveryTarget(channel=CHANNEL_MATRIX, reason="no-target")
        if not target.startswith(ROOM_SIGIL):
            return DeliveryTarget(channel=CHANNEL_MATRIX, reason="invalid-target")
        room = await self.rooms.by_id(target)
        if room is None:
            return DeliveryTarget(channel=CHANNEL_MATRIX, reason="no-target")
        if not self.rooms.is_logged_in():
            return DeliveryTarget(channel=CHANNEL_MATRIX, reason="channel-not-ready")
        return DeliveryTarget(room=room, channel=CHANNEL_MATRIX)

    async def resolve_delivery_target(self, agent_id: str, channel: str = "", to: str = "") -> DeliveryTarget:
        """Explicit ``to`` first, then (for channel "last") session route, last active room, default room."""
        lowered = (channel or "").strip().lower() or CHANNEL_LAST
        if lowered not in (CHANNEL_LAST, CHANNEL_MATRIX):
            return DeliveryTarget(channel=lowered, reason="unsupported-channel")

        explicit = (to or "").strip()
        strategies: list[Strategy] = []
        if explicit:
            strategies.append(_const(explicit))
        elif lowered == CHANNEL_LAST:
            strategies += [
                self._session_last(agent_id),
                self._last_active(agent_id),
                self._default_room(),
            ]
        return await self._finish(await first_found(strategies))

    async def resolve_heartbeat_target(
        self,
        agent_id: str,
        heartbeat: HeartbeatConfig | None,
        target: str = CHANNEL_LAST,
    ) -> DeliveryTarget:
        if (target or "").strip().lower() == "none":
            return DeliveryTarget(reason="target-none")
        explicit = ((heartbeat.to if heartbeat else None) or "").strip()
        if not explicit and (target or "").strip().lower() not in ("", CHANNEL_LAST):
            explicit = target.strip()
        return await self.resolve_delivery_target(agent_id, CHANNEL_LAST, explicit)

    async def resolve_heartbeat_session_room(
        self,
        agent_id: str,
        heartbeat: HeartbeatConfig | None,
    ) -> tuple[Room | None, str, str]:
        """Room a heartbeat runs in, plus its room key and store session key."""
        resolution = await asyncio.to_thread(
            resolve_heartbeat_session, self.sessions, self.config(), agent_id, heartbeat,
        )
        strategies: list[Strategy] = []
        raw = ((heartbeat.session if heartbeat else None) or "").strip()
        if raw.startswith(ROOM_SIGIL):
            strategies.append(self._existing(raw))
        strategies += [
            self._session_last(agent_id, resolution.entry, use_entry=True),
            self._last_active(agent_id),
            self._default_room(),
        ]
        room_id = await first_found(strategies)
        room = await self.rooms.by_id(room_id) if room_id else None
        return room, room_id, resolution.session_key

    def _existing(self, room_id: str) -> Strategy:
        async def strategy() -> tuple[bool, str]:
            return (await self.rooms.by_id(room_id) is not None), room_id

        return strategy


def _const(value: str) -> Strategy:
    async def strategy() -> tuple[bool, str]:
        return True, value

    return strategy
