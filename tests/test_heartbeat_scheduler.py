import asyncio
import time
from unittest.mock import ANY, AsyncMock

import pytest

from agentpulse.config import AgentEntry, Config, HeartbeatConfig
from agentpulse.heartbeat.events import HeartbeatResult
from agentpulse.heartbeat.scheduler import HeartbeatScheduler
from agentpulse.heartbeat.wake import HeartbeatWake
from agentpulse.sessions.backend import MemoryStateBackend
from agentpulse.sessions.store import SessionEntry, SessionStoreRegistry


def _now_ms() -> int:
    return int(time.time() * 1000)


class FakeRunOnce:
    def __init__(self, results: dict[str, HeartbeatResult] | None = None):
        self.results = results or {}
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, agent_id, heartbeat, reason):
        self.calls.append((agent_id, reason))
        return self.results.get(agent_id, HeartbeatResult("sent"))


def _sessions(last_sent: int = 0, agent: str = "beeper") -> SessionStoreRegistry:
    sessions = SessionStoreRegistry(MemoryStateBackend())
    if last_sent:
        sessions.patch(sessions.ref_for(agent), f"agent:{agent}:main", SessionEntry(last_heartbeat_sent_at=last_sent))
    return sessions


def _config(every: str = "1m", agents: list[AgentEntry] | None = None) -> Config:
    return Config(heartbeat_defaults=HeartbeatConfig(every=every), agents=agents or [])


def test_persisted_send_time_makes_restart_catch_up():
    config = _config("1m")
    scheduler = HeartbeatScheduler(lambda: config, _sessions(_now_ms() - 90_000), FakeRunOnce())
    scheduler.update_config(config)
    state = scheduler.agent_state("beeper")
    assert state.interval_ms == 60_000
    assert state.next_due_ms <= _now_ms()


def test_fresh_agent_is_due_one_interval_from_now():
    config = _config("10m")
    scheduler = HeartbeatScheduler(lambda: config, _sessions(), FakeRunOnce())
    before = _now_ms()
    scheduler.update_config(config)
    state = scheduler.agent_state("beeper")
    assert before + 600_000 <= state.next_due_ms <= _now_ms() + 600_000
    assert scheduler.next_delay_ms > 0


def test_reload_keeps_future_due_time_when_interval_unchanged():
    config = _config("10m")
    scheduler = HeartbeatScheduler(lambda: config, _sessions(), FakeRunOnce())
    scheduler.update_config(config)
    first = scheduler.agent_state("beeper").next_due_ms
    scheduler.update_config(config)
    assert scheduler.agent_state("beeper").next_due_ms == first

    scheduler.update_config(_config("20m"))
    assert scheduler.agent_state("beeper").next_due_ms > first


def test_re_added_agent_reads_current_store_entry():
    sessions = _sessions(_now_ms() - 90_000)
    config = _config("1m")
    scheduler = HeartbeatScheduler(lambda: config, sessions, FakeRunOnce())
    scheduler.update_config(config)
    assert scheduler.agent_state("beeper").next_due_ms <= _now_ms()

    scheduler.update_config(_config("1m", agents=[AgentEntry(id="alpha", heartbeat=HeartbeatConfig())]))
    assert scheduler.agent_state("beeper") is None
    recent = _now_ms() - 10_000
    sessions.patch(sessions.ref_for("beeper"), "agent:beeper:main", SessionEntry(last_heartbeat_sent_at=recent))

    scheduler.update_config(config)
    state = scheduler.agent_state("beeper")
    assert state.last_run_ms == recent
    assert state.next_due_ms == recent + 60_000


def test_invalid_interval_disables_agent():
    config = _config("never")
    scheduler = HeartbeatScheduler(lambda: config, _sessions(), FakeRunOnce())
    scheduler.update_config(config)
    assert scheduler.agent_ids() == []
    assert scheduler.next_delay_ms is None


@pytest.mark.asyncio
async def test_overdue_agent_fires_right_after_start():
    config = _config("1m")
    run_once = FakeRunOnce()
    wake = HeartbeatWake(coalesce=0.01)
    scheduler = HeartbeatScheduler(lambda: config, _sessions(_now_ms() - 120_000), run_once, wake=wake)
    scheduler.start()
    try:
        assert scheduler.next_delay_ms <= 0
        await asyncio.sleep(0.2)
        assert run_once.calls == [("beeper", "interval")]
        assert scheduler.next_delay_ms > 50_000
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_interval_run_skips_agents_that_are_not_due():
    config = _config("10m")
    run_once = FakeRunOnce()
    scheduler = HeartbeatScheduler(lambda: config, _sessions(), run_once)
    scheduler.update_config(config)
    result = await scheduler.run("interval")
    assert result.is_skip("not-due")
    assert run_once.calls == []

    result = await scheduler.run("manual")
    assert result.status == "ran"
    assert run_once.calls == [("beeper", "manual")]
    assert scheduler.agent_state("beeper").last_run_ms > 0


@pytest.mark.asyncio
async def test_disabled_result_does_not_advance_schedule():
    config = _config("10m")
    scheduler = HeartbeatScheduler(
        lambda: config, _sessions(), FakeRunOnce({"beeper": HeartbeatResult("skipped", "disabled")}),
    )
    scheduler.update_config(config)
    due = scheduler.agent_state("beeper").next_due_ms
    result = await scheduler.run("manual")
    assert result.is_skip("disabled")
    assert scheduler.agent_state("beeper").next_due_ms == due
    assert scheduler.agent_state("beeper").last_run_ms == 0


@pytest.mark.asyncio
async def test_in_flight_skip_aborts_the_pass():
    config = _config("10m", agents=[
        AgentEntry(id="alpha", heartbeat=HeartbeatConfig()),
        AgentEntry(id="beta", heartbeat=HeartbeatConfig()),
    ])
    run_once = FakeRunOnce({"alpha": HeartbeatResult("skipped", "requests-in-flight")})
    scheduler = HeartbeatScheduler(lambda: config, _sessions(), run_once)
    scheduler.update_config(config)
    result = await scheduler.run("manual")
    assert result.is_skip("requests-in-flight")
    assert run_once.calls == [("alpha", "manual")]


@pytest.mark.asyncio
async def test_other_skips_still_advance():
    config = _config("10m")
    scheduler = HeartbeatScheduler(
        lambda: config, _sessions(), FakeRunOnce({"beeper": HeartbeatResult("skipped", "quiet-hours")}),
    )
    scheduler.update_config(config)
    result = await scheduler.run("manual")
    assert result.is_skip("disabled")
    assert scheduler.agent_state("beeper").last_run_ms > 0


@pytest.mark.asyncio
async def test_failing_agent_does_not_stop_others():
    config = _config("10m", agents=[
        AgentEntry(id="alpha", heartbeat=HeartbeatConfig()),
        AgentEntry(id="beta", heartbeat=HeartbeatConfig()),
    ])

    async def run_once(agent_id, heartbeat, reason):
        if agent_id == "alpha":
            raise RuntimeError("boom")
        return HeartbeatResult("sent")

    scheduler = HeartbeatScheduler(lambda: config, _sessions(), run_once)
    scheduler.update_config(config)
    assert (await scheduler.run("manual")).status == "ran"


@pytest.mark.asyncio
async def test_stopped_scheduler_reports_disabled():
    config = _config("10m")
    scheduler = HeartbeatScheduler(lambda: config, _sessions(), FakeRunOnce())
    scheduler.start()
    scheduler.stop()
    assert (await scheduler.run("manual")).is_skip("disabled")


@pytest.mark.asyncio
async def test_exec_event_runs_every_agent_with_its_reason():
    config = _config("10m", agents=[
        AgentEntry(id="alpha", heartbeat=HeartbeatConfig(every="5m")),
        AgentEntry(id="beta", heartbeat=HeartbeatConfig()),
    ])
    run_once = AsyncMock(return_value=HeartbeatResult("ok-token"))
    scheduler = HeartbeatScheduler(lambda: config, _sessions(), run_once)
    scheduler.update_config(config)
    assert scheduler.agent_state("alpha").interval_ms == 300_000
    assert scheduler.agent_state("beta").interval_ms == 600_000

    assert (await scheduler.run("exec-event")).status == "ran"
    run_once.assert_any_await("alpha", ANY, "exec-event")
    run_once.assert_any_await("beta", ANY, "exec-event")
    assert run_once.await_count == 2
