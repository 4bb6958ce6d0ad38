import json
import threading

from agentpulse.config import Config, HeartbeatConfig, SessionConfig
from agentpulse.sessions.backend import MemoryStateBackend, SqliteStateBackend
from agentpulse.sessions.routing import main_session_ref, resolve_heartbeat_session
from agentpulse.sessions.store import (
    SessionEntry,
    SessionStoreRegistry,
    StoreRef,
    merge_entries,
    resolve_store_path,
)


def test_entry_serializes_camel_case_and_omits_empty():
    entry = SessionEntry(session_id="s1", updated_at=5, last_to="!r:x", queue_cap=0)
    data = entry.to_dict()
    assert data == {"sessionId": "s1", "updatedAt": 5, "lastTo": "!r:x", "queueCap": 0}
    assert SessionEntry.from_dict(data) == entry


def test_merge_keeps_existing_fields_and_never_moves_updated_at_back():
    existing = SessionEntry(session_id="s1", updated_at=10**15, last_channel="matrix", last_to="!a:x")
    merged = merge_entries(existing, SessionEntry(last_to="!b:x", updated_at=1))
    assert merged.session_id == "s1"
    assert merged.last_channel == "matrix"
    assert merged.last_to == "!b:x"
    assert merged.updated_at == 10**15


def test_merge_assigns_session_id_for_new_entries():
    merged = merge_entries(None, SessionEntry(last_to="!a:x"))
    assert merged.session_id
    assert merged.updated_at > 0


def test_resolve_store_path():
    assert resolve_store_path("", "ops") == "sessions/sessions.json"
    assert resolve_store_path("~/data/{agentId}.json", "Ops") == "data/ops.json"
    assert resolve_store_path("/abs/store.json", "ops") == "abs/store.json"


def test_record_route_round_trips_through_backend():
    backend = MemoryStateBackend()
    registry = SessionStoreRegistry(backend)
    ref = registry.ref_for("ops")
    registry.record_route(ref, "agent:ops:main", "!room:x", thread_id="t1")

    raw = json.loads(backend.read(ref.document_path))
    stored = raw["sessions"]["agent:ops:main"]
    assert stored["lastTo"] == "!room:x"
    assert stored["lastChannel"] == "matrix"
    assert stored["lastThreadId"] == "t1"

    fresh = SessionStoreRegistry(backend)
    assert fresh.get(ref, "agent:ops:main").last_to == "!room:x"


def test_malformed_document_loads_empty():
    backend = MemoryStateBackend()
    ref = StoreRef(agent_id="ops", path="sessions/sessions.json")
    backend.write(ref.document_path, b"{not json")
    registry = SessionStoreRegistry(backend)
    assert registry.load(ref) == {}


class FlakyBackend(MemoryStateBackend):
    def __init__(self):
        super().__init__()
        self.read_failures = 0

    def read(self, path):
        if self.read_failures:
            self.read_failures -= 1
            raise OSError("disk busy")
        return super().read(path)


def test_failed_read_skips_update_instead_of_overwriting():
    backend = FlakyBackend()
    seeded = SessionStoreRegistry(backend)
    ref = seeded.ref_for("beeper")
    seeded.record_route(ref, "agent:beeper:main", "!a:x")
    seeded.record_route(ref, "agent:beeper:other", "!b:x")

    registry = SessionStoreRegistry(backend)
    backend.read_failures = 1
    assert registry.record_route(ref, "agent:beeper:third", "!c:x") is None
    stored = json.loads(backend.read(ref.document_path))["sessions"]
    assert sorted(stored) == ["agent:beeper:main", "agent:beeper:other"]

    registry.record_route(ref, "agent:beeper:third", "!c:x")
    assert sorted(registry.load(ref)) == ["agent:beeper:main", "agent:beeper:other", "agent:beeper:third"]


def test_failed_read_degrades_to_empty_for_lookups():
    backend = FlakyBackend()
    SessionStoreRegistry(backend).record_route(StoreRef("ops", "sessions/sessions.json"), "agent:ops:main", "!a:x")
    registry = SessionStoreRegistry(backend)
    ref = registry.ref_for("ops")
    backend.read_failures = 1
    assert registry.get(ref, "agent:ops:main") is None
    assert registry.get(ref, "agent:ops:main").last_to == "!a:x"


def test_update_is_serialized_per_store_ref():
    registry = SessionStoreRegistry(MemoryStateBackend())
    ref = registry.ref_for("ops")

    def bump(entry):
        entry.total_tokens += 1
        return entry

    threads = [threading.Thread(target=lambda: [registry.update(ref, "k", bump) for _ in range(50)]) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert registry.get(ref, "k").total_tokens == 200


def test_sqlite_backend_persists(tmp_path):
    backend = SqliteStateBackend(tmp_path / "state.db")
    assert backend.read("a/b.json") is None
    backend.write("a/b.json", b'{"x": 1}')
    backend.write("a/b.json", b'{"x": 2}')
    reopened = SqliteStateBackend(tmp_path / "state.db")
    assert json.loads(reopened.read("a/b.json")) == {"x": 2}


def test_global_scope_uses_default_agent_store():
    registry = SessionStoreRegistry(MemoryStateBackend())
    config = Config(default_agent_id="beeper", session=SessionConfig(scope="global"))
    ref, key = main_session_ref(registry, config, "ops")
    assert ref.agent_id == "beeper"
    assert key == "global"


def test_heartbeat_session_rejects_foreign_agent_keys():
    registry = SessionStoreRegistry(MemoryStateBackend())
    config = Config()
    own = resolve_heartbeat_session(registry, config, "ops", HeartbeatConfig(session="agent:ops:work"))
    assert own.session_key == "agent:ops:work"
    foreign = resolve_heartbeat_session(registry, config, "ops", HeartbeatConfig(session="agent:other:work"))
    assert foreign.session_key == "agent:ops:main"
    room = resolve_heartbeat_session(registry, config, "ops", HeartbeatConfig(session="!r:x"))
    assert room.session_key == "!r:x"
