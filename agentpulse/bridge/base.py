from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import AsyncIterator


@dataclass
class Room:
    """A chat room as seen by the core. ``agent_id`` is the current assignment."""

    room_id: str
    agent_id: str = ""
    name: str = ""
    model: str = ""
    reasoning_effort: str = ""
    disabled_tools: list[str] = field(default_factory=list)
    is_cron: bool = False


@dataclass
class StoredMessage:
    message_id: str
    role: str  # user | assistant | system
    body: str
    timestamp_ms: int = 0
    sender: str = ""
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class TurnConfig:
    """Per-turn snapshot handed to the provider. Never written back to the room."""

    agent_id: str = ""
    model: str = ""
    reasoning_effort: str = ""
    disabled_tools: list[str] = field(default_factory=list)
    source: str = "user"  # user | heartbeat | cron
    include_reasoning: bool = False
    # Returns messages parked for the run since the last checkpoint.
    steer_source: Callable[[], list[str]] | None = None


@dataclass
class TurnOutcome:
    status: str = "ok"  # ok | error | cancelled
    text: str = ""
    reason: str = ""
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0


class DeliveryError(Exception):
    """Raised by a DeliverySink when a send could not be completed."""


class RoomLookup(ABC):
    @abstractmethod
    async def by_id(self, room_id: str) -> Room | None:
        """Return the room, or None when it does not exist."""

    @abstractmethod
    async def last_active_room(self, agent_id: str) -> Room | None:
        """Room the agent most recently talked in."""

    @abstractmethod
    async def default_chat_room(self) -> Room | None:
        """Process-wide fallback room."""

    @abstractmethod
    def is_logged_in(self) -> bool:
        """Whether the transport can currently deliver."""

    @abstractmethod
    async def get_or_create_cron_room(self, agent_id: str, job_id: str, name: str) -> Room:
        """Idempotently ensure the dedicated room for a cron job."""

    async def mark_active(self, agent_id: str, room_id: str) -> None:
        """Record the room the agent last talked in. No-op by default."""


class MessageHistory(ABC):
    @abstractmethod
    async def last_messages(self, room_id: str, limit: int) -> list[StoredMessage]:
        """Most recent messages of a room, oldest first. ``limit <= 0`` returns all."""

    @abstractmethod
    async def append(self, room_id: str, message: StoredMessage) -> None:
        ...


class Provider(ABC):
    """Model provider client. Streams text chunks, then yields one TurnOutcome."""

    @abstractmethod
    def stream_turn(
        self,
        room: Room,
        config: TurnConfig,
        messages: list[dict],
    ) -> AsyncIterator[str | TurnOutcome]:
        ...


class DeliverySink(ABC):
    @abstractmethod
    async def send(self, room: Room, text: str) -> None:
        """Push final text to a room. Raises DeliveryError on failure."""
