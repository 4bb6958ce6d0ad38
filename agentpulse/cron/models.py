from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DELIVERY_ANNOUNCE = "announce"
DELIVERY_NONE = "none"


def _opt_bool(value: Any) -> bool | None:
    return None if value is None else bool(value)


def _opt_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    return int(value)


@dataclass
class CronSchedule:
    kind: str = ""
    at_ms: int = 0
    every_ms: int = 0
    expr: str = ""
    tz: str = ""

    @classmethod
    def from_dict(cls, data: dict | None) -> CronSchedule:
        data = data or {}
        return cls(
            kind=str(data.get("kind") or ""),
            at_ms=int(data.get("atMs", data.get("at_ms", 0)) or 0),
            every_ms=int(data.get("everyMs", data.get("every_ms", 0)) or 0),
            expr=str(data.get("expr") or ""),
            tz=str(data.get("tz") or ""),
        )


@dataclass
class CronPayload:
    kind: str = "agentTurn"
    message: str = ""
    text: str = ""
    model: str = ""
    thinking: str = ""
    # None inherits the configured default; 0 means no timeout.
    timeout_seconds: int | None = None
    allow_unsafe_external_content: bool | None = None
    # Legacy delivery hints carried on the payload.
    deliver: bool | None = None
    channel: str = ""
    to: str = ""
    best_effort_deliver: bool | None = None

    @property
    def body(self) -> str:
        return (self.message or self.text).strip()

    @classmethod
    def from_dict(cls, data: dict | None) -> CronPayload:
        data = data or {}
        return cls(
            kind=str(data.get("kind") or "agentTurn"),
            message=str(data.get("message") or ""),
            text=str(data.get("text") or ""),
            model=str(data.get("model") or ""),
            thinking=str(data.get("thinking") or ""),
            timeout_seconds=_opt_int(data.get("timeoutSeconds", data.get("timeout_seconds"))),
            allow_unsafe_external_content=_opt_bool(
                data.get("allowUnsafeExternalContent", data.get("allow_unsafe_external_content"))
            ),
            deliver=_opt_bool(data.get("deliver")),
            channel=str(data.get("channel") or ""),
            to=str(data.get("to") or ""),
            best_effort_deliver=_opt_bool(data.get("bestEffortDeliver", data.get("best_effort_deliver"))),
        )


@dataclass
class CronDelivery:
    mode: str = DELIVERY_ANNOUNCE
    channel: str = ""
    to: str = ""
    best_effort: bool = False

    @classmethod
    def from_dict(cls, data: dict | None) -> CronDelivery | None:
        if not isinstance(data, dict):
            return None
        return cls(
            mode=str(data.get("mode") or DELIVERY_ANNOUNCE).strip().lower(),
            channel=str(data.get("channel") or ""),
            to=str(data.get("to") or ""),
            best_effort=bool(data.get("bestEffort", data.get("best_effort", False))),
        )

    @classmethod
    def from_payload(cls, payload: CronPayload) -> CronDelivery:
        mode = DELIVERY_NONE if payload.deliver is False else DELIVERY_ANNOUNCE
        return cls(
            mode=mode,
            channel=payload.channel,
            to=payload.to,
            best_effort=bool(payload.best_effort_deliver),
        )


@dataclass
class CronJob:
    id: str
    name: str = ""
    agent_id: str = ""
    description: str = ""
    enabled: bool = True
    schedule: CronSchedule = field(default_factory=CronSchedule)
    session_target: str = "isolated"
    payload: CronPayload = field(default_factory=CronPayload)
    delivery: CronDelivery | None = None

    @classmethod
    def from_dict(cls, data: dict) -> CronJob:
        """Accepts the camelCase JSON shape. Raises ValueError without an id."""
        if not isinstance(data, dict):
            raise ValueError("cron job must be an object")
        job_id = str(data.get("id") or "").strip()
        if not job_id:
            raise ValueError("cron job id is required")
        payload = CronPayload.from_dict(data.get("payload"))
        delivery = CronDelivery.from_dict(data.get("delivery"))
        if delivery is None and (payload.deliver is not None or payload.to or payload.channel):
            delivery = CronDelivery.from_payload(payload)
        return cls(
            id=job_id,
            name=str(data.get("name") or ""),
            agent_id=str(data.get("agentId", data.get("agent_id", "")) or ""),
            description=str(data.get("description") or ""),
            enabled=bool(data.get("enabled", True)),
            schedule=CronSchedule.from_dict(data.get("schedule")),
            session_target=str(data.get("sessionTarget", data.get("session_target", "isolated")) or "isolated"),
            payload=payload,
            delivery=delivery,
        )
