from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from .queue import PendingItem, PendingQueue, QueueMode, QueueSettings

log = logging.getLogger("agentpulse")


class Admission(Enum):
    STARTED = "started"
    QUEUED = "queued"
    STEERED = "steered"
    DROPPED = "dropped"
    DUPLICATE = "duplicate"


@dataclass
class RunHandle:
    """The in-flight turn of a room."""

    task: asyncio.Task | None = None
    streaming: bool = False
    steer: list[str] = field(default_factory=list)
    steer_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def push_steer(self, text: str) -> None:
        with self.steer_lock:
            self.steer.append(text)

    def drain_steer(self) -> list[str]:
        with self.steer_lock:
            out, self.steer = self.steer, []
        return out

    def cancel(self) -> bool:
        if self.task is not None and not self.task.done():
            self.task.cancel()
            return True
        return False


@dataclass
class RoomTurnState:
    busy: bool = False
    queue: PendingQueue = field(default_factory=PendingQueue)
    run: RunHandle | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    discarded: bool = False

    def is_idle(self) -> bool:
        return not self.busy and self.run is None and self.queue.is_empty()


class TurnGate:
    """Per-room mutual exclusion with a FIFO backlog of deferred turns.

    A room whose backlog is non-empty stays busy across ``release`` and is
    handed to ``on_release`` for draining, so newcomers queue behind it.
    """

    def __init__(self, on_release: Callable[[str], None] | None = None) -> None:
        self.on_release = on_release
        self._guard = threading.Lock()
        self._rooms: dict[str, RoomTurnState] = {}

    @contextmanager
    def _locked(self, room_id: str) -> Iterator[RoomTurnState]:
        """Yield the room's live state with its lock held, creating it on demand."""
        while True:
            with self._guard:
                state = self._rooms.get(room_id)
                if state is None:
                    state = RoomTurnState()
                    self._rooms[room_id] = state
            state.lock.acquire()
            if not state.discarded:
                break
            state.lock.release()
        try:
            yield state
        finally:
            state.lock.release()

    def _peek(self, room_id: str) -> RoomTurnState:
        with self._guard:
            return self._rooms.get(room_id) or RoomTurnState()

    def _prune_locked(self, room_id: str, state: RoomTurnState) -> None:
        # Caller holds state.lock.
        if not state.is_idle():
            return
        state.discarded = True
        with self._guard:
            if self._rooms.get(room_id) is state:
                del self._rooms[room_id]

    def tracked_rooms(self) -> list[str]:
        with self._guard:
            return sorted(self._rooms)

    def acquire(self, room_id: str) -> bool:
        with self._locked(room_id) as state:
            if state.busy:
                return False
            state.busy = True
            return True

    def try_acquire_or_enqueue(
        self,
        room_id: str,
        item: PendingItem,
        settings: QueueSettings | None = None,
    ) -> Admission:
        """Start a turn if the room is idle, otherwise admit ``item`` to the backlog."""
        with self._locked(room_id) as state:
            if settings is not None:
                state.queue.apply_settings(settings)
            if not state.busy:
                state.busy = True
                return Admission.STARTED
            if state.queue.is_duplicate(item):
                return Admission.DUPLICATE
            if not state.queue.admit(item):
                log.debug("queue full room=%s policy=new, dropping newcomer", room_id)
                return Admission.DROPPED
            return Admission.QUEUED

    def steer(self, room_id: str, text: str) -> bool:
        """Park ``text`` on the streaming run of the room. False when nothing is streaming."""
        state = self._peek(room_id)
        with state.lock:
            run = state.run
            if not state.busy or run is None or not run.streaming:
                return False
            run.push_steer(text)
            return True

    def interrupt(self, room_id: str) -> bool:
        state = self._peek(room_id)
        with state.lock:
            run = state.run
        return run.cancel() if run is not None else False

    def attach_run(self, room_id: str, handle: RunHandle | None) -> None:
        with self._locked(room_id) as state:
            state.run = handle

    def current_run(self, room_id: str) -> RunHandle | None:
        state = self._peek(room_id)
        with state.lock:
            return state.run

    def release(self, room_id: str) -> bool:
        """End the current turn. True when deferred work was handed to ``on_release``."""
        with self._locked(room_id) as state:
            state.run = None
            if state.queue.is_empty():
                state.busy = False
                state.queue.draining = False
                self._prune_locked(room_id, state)
                return False
            if state.queue.draining:
                return False
            state.queue.draining = True
        if self.on_release is not None:
            self.on_release(room_id)
        return True

    def take_batch(self, room_id: str) -> tuple[list[PendingItem], str, QueueMode]:
        """Pop the next deferred turn(s) for a draining room.

        Collect mode takes the leading run of items that share a thread. Other
        modes take one item, or only the overflow notice when drops are
        pending. An empty result means the backlog is exhausted and the room
        is now idle.
        """
        with self._locked(room_id) as state:
            queue = state.queue
            if queue.is_empty():
                queue.draining = False
                state.busy = False
                state.run = None
                self._prune_locked(room_id, state)
                return [], "", queue.mode
            if queue.mode is QueueMode.COLLECT and queue.items:
                thread = queue.items[0].pending.thread_id
                count = 1
                while count < len(queue.items) and queue.items[count].pending.thread_id == thread:
                    count += 1
                items = queue.pop(count)
                return items, queue.take_summary("message"), queue.mode
            summary = queue.take_summary("message")
            if summary:
                return [], summary, queue.mode
            return queue.pop(1), "", queue.mode

    def clear_queue(self, room_id: str) -> int:
        with self._locked(room_id) as state:
            dropped = len(state.queue.items)
            state.queue.items = []
            state.queue.dropped_count = 0
            state.queue.summary_lines = []
            self._prune_locked(room_id, state)
            return dropped

    def last_enqueued_at(self, room_id: str) -> tuple[int, int]:
        """(last enqueue ms, debounce ms) of the room's backlog."""
        state = self._peek(room_id)
        with state.lock:
            return state.queue.last_enqueued_at, state.queue.debounce_ms

    def is_busy(self, room_id: str) -> bool:
        state = self._peek(room_id)
        with state.lock:
            return state.busy

    def has_inflight(self) -> bool:
        with self._guard:
            states = list(self._rooms.values())
        for state in states:
            with state.lock:
                if state.busy or state.queue.items:
                    return True
        return False

    def snapshot(self, room_id: str) -> dict:
        state = self._peek(room_id)
        with state.lock:
            queue = state.queue
            return {
                "room_id": room_id,
                "busy": state.busy,
                "streaming": bool(state.run and state.run.streaming),
                "mode": queue.mode.value,
                "cap": queue.cap,
                "drop": queue.drop_policy.value,
                "debounce_ms": queue.debounce_ms,
                "dropped_count": queue.dropped_count,
                "items": [
                    {
                        "event_id": item.pending.event_id,
                        "kind": item.pending.kind,
                        "summary": item.summary_source(),
                        "enqueued_at": item.enqueued_at,
                    }
                    for item in queue.items
                ],
            }
