import asyncio

import pytest

from agentpulse.heartbeat.events import HeartbeatResult
from agentpulse.heartbeat.wake import HeartbeatWake


@pytest.mark.asyncio
async def test_requests_coalesce_and_latest_reason_wins():
    wake = HeartbeatWake(coalesce=0.05)
    reasons: list[str] = []

    async def handler(reason):
        reasons.append(reason)
        return HeartbeatResult("ran")

    wake.set_handler(handler)
    wake.request("interval")
    wake.request("exec-event")
    wake.request("manual")
    assert wake.has_pending()
    await asyncio.sleep(0.15)
    assert reasons == ["manual"]
    assert not wake.has_pending()


@pytest.mark.asyncio
async def test_request_while_running_is_replayed():
    wake = HeartbeatWake(coalesce=0.01)
    reasons: list[str] = []
    gate = asyncio.Event()

    async def handler(reason):
        reasons.append(reason)
        if len(reasons) == 1:
            await gate.wait()
        return HeartbeatResult("ran")

    wake.set_handler(handler)
    wake.request("first")
    await asyncio.sleep(0.05)
    wake.request("second")
    await asyncio.sleep(0.05)
    assert reasons == ["first"]
    gate.set()
    await asyncio.sleep(0.1)
    assert reasons == ["first", "second"]


@pytest.mark.asyncio
async def test_in_flight_skip_is_retried_with_same_reason():
    wake = HeartbeatWake(coalesce=0.01, retry=0.05)
    reasons: list[str] = []

    async def handler(reason):
        reasons.append(reason)
        if len(reasons) == 1:
            return HeartbeatResult("skipped", "requests-in-flight")
        return HeartbeatResult("ran")

    wake.set_handler(handler)
    wake.request("exec-event")
    await asyncio.sleep(0.2)
    assert reasons == ["exec-event", "exec-event"]


@pytest.mark.asyncio
async def test_handler_errors_are_contained():
    wake = HeartbeatWake(coalesce=0.01)
    calls = 0

    async def handler(reason):
        nonlocal calls
        calls += 1
        raise RuntimeError("boom")

    wake.set_handler(handler)
    wake.request("manual")
    await asyncio.sleep(0.05)
    wake.request("manual")
    await asyncio.sleep(0.05)
    assert calls == 2


@pytest.mark.asyncio
async def test_request_before_handler_waits_for_it():
    wake = HeartbeatWake(coalesce=0.01)
    reasons: list[str] = []

    async def handler(reason):
        reasons.append(reason)
        return HeartbeatResult("ran")

    wake.request("early")
    await asyncio.sleep(0.05)
    assert reasons == []
    wake.set_handler(handler)
    await asyncio.sleep(0.05)
    assert reasons == ["early"]


@pytest.mark.asyncio
async def test_stop_cancels_pending_timer():
    wake = HeartbeatWake(coalesce=0.05)
    reasons: list[str] = []

    async def handler(reason):
        reasons.append(reason)
        return HeartbeatResult("ran")

    wake.set_handler(handler)
    wake.request("manual")
    wake.stop()
    await asyncio.sleep(0.1)
    assert reasons == []
    assert not wake.has_pending()
