import threading

from agentpulse.chat.gate import Admission, RunHandle, TurnGate
from agentpulse.chat.queue import DropPolicy, PendingItem, PendingMessage, QueueMode, QueueSettings


def _item(body: str, thread_id: str = "") -> PendingItem:
    return PendingItem(pending=PendingMessage(room_id="!r:x", body=body, thread_id=thread_id))


def test_concurrent_acquire_admits_exactly_one():
    gate = TurnGate()
    barrier = threading.Barrier(16)
    wins: list[bool] = []
    lock = threading.Lock()

    def contender():
        barrier.wait()
        won = gate.acquire("!r:x")
        with lock:
            wins.append(won)

    threads = [threading.Thread(target=contender) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert wins.count(True) == 1
    assert not gate.acquire("!r:x")
    gate.release("!r:x")
    assert gate.acquire("!r:x")


def test_rooms_are_independent():
    gate = TurnGate()
    assert gate.acquire("!a:x")
    assert gate.acquire("!b:x")


def test_busy_room_queues_and_stays_busy_across_release():
    released: list[str] = []
    gate = TurnGate(on_release=released.append)
    assert gate.try_acquire_or_enqueue("!r:x", _item("first")) is Admission.STARTED
    assert gate.try_acquire_or_enqueue("!r:x", _item("second")) is Admission.QUEUED
    assert gate.try_acquire_or_enqueue("!r:x", _item("second")) is Admission.DUPLICATE

    assert gate.release("!r:x") is True
    assert released == ["!r:x"]
    # A newcomer must queue behind the backlog rather than jump ahead.
    assert gate.try_acquire_or_enqueue("!r:x", _item("third")) is Admission.QUEUED
    # A second release while the drain is pending does not hand off twice.
    assert gate.release("!r:x") is False
    assert released == ["!r:x"]


def test_take_batch_clears_busy_when_exhausted():
    gate = TurnGate()
    settings = QueueSettings(mode=QueueMode.FOLLOWUP, debounce_ms=0, cap=10, drop_policy=DropPolicy.SUMMARIZE)
    gate.try_acquire_or_enqueue("!r:x", _item("a"), settings)
    gate.try_acquire_or_enqueue("!r:x", _item("b"), settings)
    gate.try_acquire_or_enqueue("!r:x", _item("c"), settings)
    items, summary, mode = gate.take_batch("!r:x")
    assert [i.pending.body for i in items] == ["b"]
    assert summary == "" and mode is QueueMode.FOLLOWUP
    items, _, _ = gate.take_batch("!r:x")
    assert [i.pending.body for i in items] == ["c"]
    assert gate.is_busy("!r:x")
    assert gate.take_batch("!r:x")[0] == []
    assert not gate.is_busy("!r:x")


def test_collect_batch_groups_leading_thread():
    gate = TurnGate()
    settings = QueueSettings(mode=QueueMode.COLLECT, debounce_ms=0, cap=10, drop_policy=DropPolicy.SUMMARIZE)
    gate.try_acquire_or_enqueue("!r:x", _item("start"), settings)
    for body, thread in (("a", ""), ("b", ""), ("c", "t1"), ("d", "")):
        gate.try_acquire_or_enqueue("!r:x", _item(body, thread), settings)
    items, _, _ = gate.take_batch("!r:x")
    assert [i.pending.body for i in items] == ["a", "b"]
    items, _, _ = gate.take_batch("!r:x")
    assert [i.pending.body for i in items] == ["c"]


def test_overflow_notice_taken_before_items_in_followup_mode():
    gate = TurnGate()
    settings = QueueSettings(mode=QueueMode.FOLLOWUP, debounce_ms=0, cap=1, drop_policy=DropPolicy.SUMMARIZE)
    gate.try_acquire_or_enqueue("!r:x", _item("start"), settings)
    gate.try_acquire_or_enqueue("!r:x", _item("a"), settings)
    gate.try_acquire_or_enqueue("!r:x", _item("b"), settings)
    items, summary, _ = gate.take_batch("!r:x")
    assert items == []
    assert summary.startswith("[Queue overflow] Dropped 1 message due to cap.")
    items, summary, _ = gate.take_batch("!r:x")
    assert [i.pending.body for i in items] == ["b"] and summary == ""


def test_new_policy_drops_newcomer():
    gate = TurnGate()
    settings = QueueSettings(mode=QueueMode.FOLLOWUP, debounce_ms=0, cap=1, drop_policy=DropPolicy.NEW)
    gate.try_acquire_or_enqueue("!r:x", _item("start"), settings)
    assert gate.try_acquire_or_enqueue("!r:x", _item("a"), settings) is Admission.QUEUED
    assert gate.try_acquire_or_enqueue("!r:x", _item("b"), settings) is Admission.DROPPED


def test_steer_requires_streaming_run():
    gate = TurnGate()
    assert not gate.steer("!r:x", "hi")
    gate.acquire("!r:x")
    handle = RunHandle()
    gate.attach_run("!r:x", handle)
    assert not gate.steer("!r:x", "hi")
    handle.streaming = True
    assert gate.steer("!r:x", "hi")
    assert handle.drain_steer() == ["hi"]
    assert handle.drain_steer() == []


def test_has_inflight_and_snapshot():
    gate = TurnGate()
    assert not gate.has_inflight()
    gate.try_acquire_or_enqueue("!r:x", _item("a"))
    gate.try_acquire_or_enqueue("!r:x", _item("b"))
    assert gate.has_inflight()
    snap = gate.snapshot("!r:x")
    assert snap["busy"] is True
    assert [i["summary"] for i in snap["items"]] == ["b"]
    assert gate.clear_queue("!r:x") == 1


def test_idle_rooms_are_forgotten():
    gate = TurnGate(on_release=lambda room_id: None)
    assert not gate.is_busy("!quiet:x")
    gate.snapshot("!quiet:x")
    assert gate.tracked_rooms() == []

    assert gate.acquire("!r:x")
    gate.attach_run("!r:x", RunHandle())
    assert gate.tracked_rooms() == ["!r:x"]
    assert gate.release("!r:x") is False
    assert gate.tracked_rooms() == []
    assert gate.acquire("!r:x")

    gate.try_acquire_or_enqueue("!r:x", _item("queued"))
    assert gate.release("!r:x") is True
    assert gate.tracked_rooms() == ["!r:x"]
    assert [i.pending.body for i in gate.take_batch("!r:x")[0]] == ["queued"]
    assert gate.take_batch("!r:x")[0] == []
    assert gate.tracked_rooms() == []
