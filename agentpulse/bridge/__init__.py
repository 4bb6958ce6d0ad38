from dataclasses import dataclass

from .base import DeliverySink, MessageHistory, Provider, Room, RoomLookup
from .local import EchoProvider, InMemoryHistory, InMemoryRooms, RecordingSink


@dataclass
class Bridge:
    rooms: RoomLookup
    history: MessageHistory
    provider: Provider
    sink: DeliverySink


@dataclass
class LocalRoomSpec:
    room_id: str
    agent_id: str = ""
    name: str = ""


def create_local_bridge(
    rooms: list[str] | list[LocalRoomSpec] | list[dict] | None = None,
    default_room: str = "",
    provider: Provider | None = None,
) -> Bridge:
    specs: list[LocalRoomSpec] = []
    for item in rooms or []:
        if isinstance(item, str):
            specs.append(LocalRoomSpec(room_id=item))
        elif isinstance(item, dict):
            specs.append(LocalRoomSpec(
                room_id=item.get("room_id", item.get("id", "")),
                agent_id=item.get("agent_id", ""),
                name=item.get("name", ""),
            ))
        elif isinstance(item, LocalRoomSpec):
            specs.append(item)
        else:
            raise ValueError(f"Invalid room spec: {item!r}")

    invalid = [spec.room_id for spec in specs if not spec.room_id.startswith("!")]
    if invalid:
        raise ValueError(f"Invalid room id(s): {', '.join(invalid)}")

    lookup = InMemoryRooms(default_room_id=default_room)
    for spec in specs:
        lookup.add(Room(room_id=spec.room_id, agent_id=spec.agent_id, name=spec.name))
    return Bridge(
        rooms=lookup,
        history=InMemoryHistory(),
        provider=provider or EchoProvider(),
        sink=RecordingSink(),
    )
