from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable

from .events import HeartbeatResult

log = logging.getLogger("agentpulse")

DEFAULT_COALESCE_SECONDS = 0.25
DEFAULT_RETRY_SECONDS = 1.0

WakeHandler = Callable[[str], Awaitable[HeartbeatResult]]


class HeartbeatWake:
    """Coalesces heartbeat wake requests into a single pending timer.

    The latest reason wins. A request that lands while the handler is running
    is replayed once it finishes, and a ``requests-in-flight`` skip is retried
    with the same reason after ``retry`` seconds.
    """

    def __init__(
        self,
        coalesce: float = DEFAULT_COALESCE_SECONDS,
        retry: float = DEFAULT_RETRY_SECONDS,
    ) -> None:
        self.coalesce = coalesce
        self.retry = retry
        self._lock = threading.Lock()
        self._handler: WakeHandler | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending_reason = ""
        self._scheduled = False
        self._running = False
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    def set_handler(self, handler: WakeHandler | None) -> None:
        with self._lock:
            self._handler = handler
            pending = bool(self._pending_reason)
        if handler is not None and pending:
            self._schedule(self.coalesce)

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending_reason) or self._timer is not None or self._scheduled

    def request(self, reason: str = "", coalesce: float | None = None) -> None:
        with self._lock:
            self._pending_reason = (reason or "").strip() or self._pending_reason or "requested"
        self._schedule(self.coalesce if coalesce is None else coalesce)

    def _schedule(self, delay: float) -> None:
        loop = self._loop
        if loop is None:
            loop = asyncio.get_running_loop()
            self._loop = loop
        with self._lock:
            if self._timer is not None:
                return
            self._timer = loop.call_later(max(delay, 0.0), self._on_timer, delay)

    def _on_timer(self, delay: float) -> None:
        with self._lock:
            self._timer = None
            self._scheduled = False
            handler = self._handler
            if handler is None:
                return
            if self._running:
                self._scheduled = True
                rearm = True
            else:
                rearm = False
                reason = self._pending_reason or "requested"
                self._pending_reason = ""
                self._running = True
        if rearm:
            self._schedule(delay)
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(handler, reason, delay), name="heartbeat-wake",
        )

    async def _run(self, handler: WakeHandler, reason: str, delay: float) -> None:
        retry = False
        try:
            result = await handler(reason)
            if result is not None and result.is_skip("requests-in-flight"):
                with self._lock:
                    self._pending_reason = reason or "retry"
                retry = True
        except Exception:
            log.exception("heartbeat wake handler failed reason=%s", reason)
        finally:
            with self._lock:
                self._running = False
                replay = self._pending_reason != "" or self._scheduled
        if retry:
            self._schedule(self.retry)
        elif replay:
            self._schedule(delay)

    def stop(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
            self._pending_reason = ""
            self._scheduled = False
            self._handler = None
        if timer is not None:
            timer.cancel()
