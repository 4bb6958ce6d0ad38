import asyncio
from datetime import datetime, timezone

import pytest

from agentpulse.bridge.base import StoredMessage
from agentpulse.bridge.local import EchoProvider, RecordingSink
from agentpulse.config import Config
from agentpulse.cron.message import (
    EXTERNAL_CONTENT_BOUNDARY,
    SUMMARY_MAX_CHARS,
    build_cron_message,
    format_cron_time,
    normalize_thinking_level,
    truncate_summary,
)
from agentpulse.cron.models import CronDelivery, CronJob, CronPayload
from agentpulse.cron.runner import NO_TIMEOUT_SECONDS, CronRunner, _is_newer, resolve_timeout_seconds
from agentpulse.sessions.store import StoreRef


def _runner(env, **kwargs) -> CronRunner:
    return CronRunner(
        env.dispatcher,
        env.rooms,
        env.history,
        env.resolver,
        env.sink,
        env.sessions,
        env.get_config,
        poll_interval=0.02,
        **kwargs,
    )


class StalledSink(RecordingSink):
    async def send(self, room, text):
        await asyncio.sleep(10)


def _job(delivery: CronDelivery | None = None, **payload) -> CronJob:
    payload.setdefault("message", "Summarize the inbox")
    return CronJob(id="job1", name="Inbox", payload=CronPayload(**payload), delivery=delivery)


# --- message building ---


def test_cron_time_format():
    moment = datetime(2025, 3, 3, 9, 5, tzinfo=timezone.utc)
    assert format_cron_time("", moment) == "Monday, March 3rd, 2025 - 9:05 AM (UTC)"
    assert format_cron_time("Not/AZone", moment).endswith("(UTC)")
    evening = datetime(2025, 3, 11, 21, 30, tzinfo=timezone.utc)
    assert format_cron_time("UTC", evening) == "Tuesday, March 11th, 2025 - 9:30 PM (UTC)"


def test_cron_message_header():
    message = build_cron_message("job1", "Inbox", "  Summarize  ")
    first, second = message.split("\n")
    assert first == "[cron:job1 Inbox] Summarize"
    assert second.startswith("Current time: ")
    assert build_cron_message("job1", "", "").startswith("[cron:job1 cron] cron")


def test_summary_truncation():
    assert truncate_summary("  short  ") == "short"
    long = "x" * (SUMMARY_MAX_CHARS + 50)
    out = truncate_summary(long)
    assert len(out) == SUMMARY_MAX_CHARS + 1
    assert out.endswith("…")


@pytest.mark.parametrize(
    "raw,expected",
    [("", ""), (None, ""), ("off", "off"), ("on", "low"), ("Think-Harder", "medium"), ("ultrathink", "high"), ("lots", None)],
)
def test_thinking_levels(raw, expected):
    assert normalize_thinking_level(raw) == expected


def test_timeout_resolution():
    assert resolve_timeout_seconds(_job(), Config()) == 600
    assert resolve_timeout_seconds(_job(), Config(agent_timeout_seconds=90)) == 90
    assert resolve_timeout_seconds(_job(timeout_seconds=5), Config(agent_timeout_seconds=90)) == 5
    assert resolve_timeout_seconds(_job(timeout_seconds=0), Config()) == NO_TIMEOUT_SECONDS
    assert resolve_timeout_seconds(_job(timeout_seconds=-3), Config()) == 600


def test_job_from_dict_legacy_delivery():
    job = CronJob.from_dict({
        "id": "j",
        "payload": {"kind": "agentTurn", "text": "hi", "deliver": False, "timeoutSeconds": 30},
    })
    assert job.payload.body == "hi"
    assert job.payload.timeout_seconds == 30
    assert job.delivery.mode == "none"
    assert CronJob.from_dict({"id": "k"}).delivery is None
    with pytest.raises(ValueError):
        CronJob.from_dict({"name": "no id"})


# --- runs ---


@pytest.mark.asyncio
async def test_run_announces_reply_to_default_room(env):
    env.add_room("!main:x")
    env.rooms.default_room_id = "!main:x"
    result = await _runner(env).run(_job())
    assert result.status == "ok"
    assert result.output.startswith("echo: ")
    assert result.summary == result.output
    assert env.sink.sent == [("!main:x", result.output)]


@pytest.mark.asyncio
async def test_prompt_is_wrapped_and_turn_config_is_a_snapshot(env):
    result = await _runner(env).run(_job(
        delivery=CronDelivery(mode="none"), model="m1", thinking="ultrathink",
    ))
    assert result.status == "ok"
    room_id, turn_config, messages = env.provider.calls[0]
    assert messages[-1]["content"].startswith(EXTERNAL_CONTENT_BOUNDARY)
    assert "[cron:job1 Inbox] Summarize the inbox" in messages[-1]["content"]
    assert turn_config.model == "m1"
    assert turn_config.reasoning_effort == "high"
    assert turn_config.source == "cron"
    assert "message" not in turn_config.disabled_tools

    room = await env.rooms.by_id(room_id)
    assert room.is_cron
    assert room.model == "" and room.disabled_tools == []

    entry = env.sessions.get(StoreRef("beeper", "cron/sessions.json"), "agent:beeper:cron:job1")
    assert entry.model == "m1"
    assert entry.session_id


@pytest.mark.asyncio
async def test_announce_disables_message_tool(env):
    await _runner(env).run(_job(delivery=CronDelivery(best_effort=True)))
    assert "message" in env.provider.calls[0][1].disabled_tools


@pytest.mark.asyncio
async def test_unsafe_content_opt_out(env):
    await _runner(env).run(_job(delivery=CronDelivery(mode="none"), allow_unsafe_external_content=True))
    assert env.provider.calls[0][2][-1]["content"].startswith("[cron:job1 Inbox]")


@pytest.mark.asyncio
async def test_no_reply_times_out_without_delivery(env):
    env.add_room("!main:x")
    env.rooms.default_room_id = "!main:x"
    env.dispatcher.provider = EchoProvider(responder=lambda *_: "")
    result = await _runner(env).run(_job(timeout_seconds=1))
    assert result.status == "error"
    assert result.error == "cron job timed out"
    assert env.sink.sent == []


@pytest.mark.asyncio
async def test_best_effort_delivery_failure_is_skipped(env):
    result = await _runner(env).run(_job(delivery=CronDelivery(best_effort=True)))
    assert result.status == "skipped"
    assert result.summary == "Delivery skipped (no-target)."
    assert result.output.startswith("echo: ")


@pytest.mark.asyncio
async def test_strict_delivery_failure_is_an_error_with_output(env):
    env.add_room("!main:x")
    env.rooms.default_room_id = "!main:x"
    env.sink = RecordingSink(fail_with="rate limited")
    result = await _runner(env).run(_job())
    assert result.status == "error"
    assert result.error == "cron delivery failed: rate limited"
    assert result.output.startswith("echo: ")
    assert result.summary == result.output


@pytest.mark.asyncio
@pytest.mark.parametrize("best_effort,status", [(True, "skipped"), (False, "error")])
async def test_stalled_delivery_is_bounded(env, best_effort, status):
    env.add_room("!main:x")
    env.rooms.default_room_id = "!main:x"
    env.sink = StalledSink()
    runner = _runner(env, delivery_timeout=0.05)
    result = await asyncio.wait_for(runner.run(_job(delivery=CronDelivery(best_effort=best_effort))), 2.0)
    assert result.status == status
    assert result.output.startswith("echo: ")
    if best_effort:
        assert result.summary == "Delivery skipped (timeout)."
    else:
        assert result.error == "cron delivery failed: timeout"


@pytest.mark.asyncio
async def test_heartbeat_ack_is_not_announced(env):
    env.add_room("!main:x")
    env.rooms.default_room_id = "!main:x"
    env.dispatcher.provider = EchoProvider(responder=lambda *_: "HEARTBEAT_OK")
    result = await _runner(env).run(_job())
    assert result.status == "ok"
    assert env.sink.sent == []


@pytest.mark.asyncio
async def test_second_run_waits_for_a_new_reply(env):
    runner = _runner(env)
    replies = iter(["first answer", "second answer"])
    env.dispatcher.provider = EchoProvider(responder=lambda *_: next(replies))
    job = _job(delivery=CronDelivery(mode="none"))
    assert (await runner.run(job)).output == "first answer"
    assert (await runner.run(job)).output == "second answer"


@pytest.mark.asyncio
async def test_shutdown_cancels_wait(env):
    shutdown = asyncio.Event()
    env.dispatcher.provider = EchoProvider(responder=lambda *_: "late " * 50, delay=0.05)
    task = asyncio.create_task(_runner(env, shutdown=shutdown).run(_job(delivery=CronDelivery(mode="none"))))
    await asyncio.sleep(0.1)
    shutdown.set()
    result = await asyncio.wait_for(task, 1.0)
    assert result.status == "error"
    assert "shutting down" in result.error
    await env.dispatcher.shutdown()


def test_reply_with_same_timestamp_counts_as_new():
    previous = StoredMessage(message_id="$a", role="assistant", body="old", timestamp_ms=1000)
    assert not _is_newer(previous, "$a", 1000)
    assert _is_newer(StoredMessage(message_id="$b", role="assistant", body="new", timestamp_ms=1000), "$a", 1000)
    assert not _is_newer(StoredMessage(message_id="$c", role="assistant", body="older", timestamp_ms=900), "$a", 1000)


@pytest.mark.asyncio
async def test_wait_accepts_reply_sharing_the_last_timestamp(env):
    room = env.add_room("!cron:x")
    await env.history.append("!cron:x", StoredMessage(message_id="$a", role="assistant", body="old", timestamp_ms=1000))
    await env.history.append("!cron:x", StoredMessage(message_id="$b", role="assistant", body="new", timestamp_ms=1000))
    reply = await _runner(env)._wait_for_reply(room, "$a", 1000, 0.5)
    assert reply is not None
    assert reply.message_id == "$b"
