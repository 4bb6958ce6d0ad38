from dataclasses import dataclass

import pytest

from agentpulse.bridge.base import Room
from agentpulse.bridge.local import EchoProvider, InMemoryHistory, InMemoryRooms, RecordingSink
from agentpulse.chat.dispatcher import RoomDispatcher
from agentpulse.chat.gate import TurnGate
from agentpulse.config import Config, QueueConfig
from agentpulse.delivery.target import DeliveryResolver
from agentpulse.sessions.backend import MemoryStateBackend
from agentpulse.sessions.store import SessionStoreRegistry
from agentpulse.sessions.system_events import SystemEventQueues


@dataclass
class Env:
    """In-memory wiring of the core components for one test."""

    config: Config
    rooms: InMemoryRooms
    history: InMemoryHistory
    provider: EchoProvider
    sink: RecordingSink
    backend: MemoryStateBackend
    sessions: SessionStoreRegistry
    gate: TurnGate
    dispatcher: RoomDispatcher
    resolver: DeliveryResolver
    system_events: SystemEventQueues

    def get_config(self) -> Config:
        return self.config

    def add_room(self, room_id: str, agent_id: str = "beeper", **kwargs) -> Room:
        return self.rooms.add(Room(room_id=room_id, agent_id=agent_id, **kwargs))


@pytest.fixture
def env():
    config = Config(queue=QueueConfig(debounce_ms=0))
    rooms = InMemoryRooms()
    history = InMemoryHistory()
    provider = EchoProvider()
    backend = MemoryStateBackend()
    sessions = SessionStoreRegistry(backend)
    gate = TurnGate()
    holder: dict = {}

    def get_config() -> Config:
        return holder["env"].config

    dispatcher = RoomDispatcher(gate, rooms, history, provider, sessions, get_config)
    resolver = DeliveryResolver(rooms, sessions, get_config)
    built = Env(
        config=config,
        rooms=rooms,
        history=history,
        provider=provider,
        sink=RecordingSink(),
        backend=backend,
        sessions=sessions,
        gate=gate,
        dispatcher=dispatcher,
        resolver=resolver,
        system_events=SystemEventQueues(),
    )
    holder["env"] = built
    return built
