from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from ..chat.queue import PendingMessage, QueueInlineOptions, normalize_drop_policy, normalize_queue_mode
from ..cron.models import CronJob
from ..sessions.keys import normalize_agent_id
from .runtime import Runtime
from ..config import Config
from .settings import SettingsStore, mistyped_keys, unknown_keys

log = logging.getLogger("agentpulse")

_MESSAGE_KINDS = frozenset({"text", "image", "pdf", "audio", "video", "regenerate", "edit_regenerate"})


def _bad_request(detail: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": detail})


def _validate_message(body: dict) -> str | None:
    """Validate a room message body. Returns error string or None."""
    if not isinstance(body, dict):
        return "Message must be a JSON object"
    text = body.get("text")
    if not isinstance(text, str):
        return "Missing or invalid 'text' field"
    kind = body.get("kind", "text")
    if kind not in _MESSAGE_KINDS:
        return f"Unknown message kind: {kind}"
    if kind == "text" and not text.strip():
        return "'text' must not be empty"
    for name in ("sender", "event_id", "thread_id", "media_url", "mime_type", "target_message_id", "queue_mode"):
        value = body.get(name)
        if value is not None and not isinstance(value, str):
            return f"'{name}' must be a string"
    for name in ("debounce_ms", "cap"):
        value = body.get(name)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
            return f"'{name}' must be an integer"
    if body.get("drop") and normalize_drop_policy(body["drop"]) is None:
        return f"Unknown drop policy: {body['drop']}"
    if body.get("queue_mode") and normalize_queue_mode(body["queue_mode"]) is None:
        return f"Unknown queue mode: {body['queue_mode']}"
    return None


def create_app(
    runtime: Runtime | None = None,
    settings_store: SettingsStore | None = None,
) -> FastAPI:
    settings = settings_store or (runtime.settings if runtime is not None else SettingsStore())
    rt = runtime or Runtime(settings)

    async def _store_call(fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await rt.start()
        try:
            yield
        finally:
            await rt.stop()

    app = FastAPI(title="agentpulse", lifespan=lifespan)
    app.state.runtime = rt

    @app.get("/api/health")
    async def health_check():
        config = rt.get_config()
        return {
            "status": "healthy",
            "heartbeat_agents": rt.scheduler.agent_ids(),
            "inflight": rt.dispatcher.has_inflight(),
            "default_agent": config.default_agent_id,
        }

    # --- Settings REST API ---

    @app.get("/api/settings")
    def get_settings():
        return settings.get_all()

    @app.put("/api/settings")
    async def update_settings(body: dict):
        invalid = unknown_keys(body)
        if invalid:
            return _bad_request(f"Unknown settings keys: {invalid}")
        mistyped = mistyped_keys(body)
        if mistyped:
            return _bad_request(f"Invalid values for settings keys: {mistyped}")
        candidate = await _store_call(settings.get_effective, rt.cli_overrides)
        candidate.update(body)
        try:
            Config.from_settings(candidate)
        except (TypeError, ValueError, AttributeError) as exc:
            return _bad_request(f"Invalid settings: {exc}")
        await _store_call(settings.set_many, body)
        rt.reload_config()
        return await _store_call(settings.get_all)

    # --- Sessions ---

    @app.get("/api/sessions/{agent_id}")
    async def get_agent_sessions(agent_id: str):
        agent = normalize_agent_id(agent_id)
        if not agent:
            return _bad_request("agent_id is required")
        ref = rt.sessions.ref_for(agent)
        sessions = await _store_call(rt.sessions.load, ref)
        return {
            "agent_id": agent,
            "path": ref.path,
            "sessions": {key: entry.to_dict() for key, entry in sessions.items()},
        }

    # --- Heartbeat ---

    @app.post("/api/heartbeat/wake")
    async def heartbeat_wake(body: dict | None = None):
        reason = (body or {}).get("reason", "")
        if not isinstance(reason, str):
            return _bad_request("'reason' must be a string")
        rt.wake.request(reason or "manual")
        return {"ok": True, "pending": rt.wake.has_pending()}

    @app.get("/api/heartbeat/last")
    def heartbeat_last():
        event = rt.heartbeat_events.last()
        return {"event": event.to_dict() if event is not None else None}

    # --- Rooms ---

    @app.post("/api/rooms/{room_id}/messages")
    async def post_message(room_id: str, body: dict):
        error = _validate_message(body)
        if error:
            return _bad_request(error)
        pending = PendingMessage(
            room_id=room_id,
            body=body["text"],
            kind=body.get("kind", "text"),
            event_id=body.get("event_id") or "",
            sender=body.get("sender") or "",
            media_url=body.get("media_url") or "",
            mime_type=body.get("mime_type") or "",
            target_message_id=body.get("target_message_id") or "",
            thread_id=body.get("thread_id") or "",
        )
        inline_mode = normalize_queue_mode(body.get("queue_mode")) if body.get("queue_mode") else None
        inline = None
        if any(name in body for name in ("debounce_ms", "cap", "drop")):
            inline = QueueInlineOptions(
                debounce_ms=body.get("debounce_ms"),
                cap=body.get("cap"),
                drop_policy=normalize_drop_policy(body.get("drop")),
            )
        admission = await rt.dispatcher.handle_message(pending, inline_mode, inline)
        if admission is None:
            return JSONResponse(status_code=404, content={"detail": "Room not found"})
        return {"admission": admission.value}

    @app.get("/api/rooms/{room_id}/queue")
    async def get_queue(room_id: str):
        if await rt.bridge.rooms.by_id(room_id) is None:
            return JSONResponse(status_code=404, content={"detail": "Room not found"})
        return rt.gate.snapshot(room_id)

    # --- Cron ---

    @app.post("/api/cron/run")
    async def run_cron(body: dict):
        try:
            job = CronJob.from_dict(body)
        except (TypeError, ValueError) as exc:
            return _bad_request(str(exc))
        result = await rt.run_cron_job(job)
        return result.to_dict()

    # --- System events ---

    @app.post("/api/system-events")
    async def post_system_event(body: dict):
        session_key = body.get("session_key")
        text = body.get("text")
        if not isinstance(session_key, str) or not session_key.strip():
            return _bad_request("Missing or invalid 'session_key' field")
        if not isinstance(text, str) or not text.strip():
            return _bad_request("Missing or invalid 'text' field")
        context_key = body.get("context_key") or ""
        if not isinstance(context_key, str):
            return _bad_request("'context_key' must be a string")
        queued = await rt.enqueue_system_event(session_key, text, context_key)
        return {"queued": queued}

    return app
