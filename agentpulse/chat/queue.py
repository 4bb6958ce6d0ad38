from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..bridge.base import TurnConfig
    from ..config import QueueConfig
    from ..sessions.store import SessionEntry


class QueueMode(Enum):
    """How messages that arrive during a busy turn are folded into later turns."""

    STEER = "steer"
    FOLLOWUP = "followup"
    COLLECT = "collect"
    STEER_BACKLOG = "steer-backlog"
    INTERRUPT = "interrupt"


class DropPolicy(Enum):
    OLD = "old"
    NEW = "new"
    SUMMARIZE = "summarize"


DEFAULT_QUEUE_MODE = QueueMode.COLLECT
DEFAULT_DROP_POLICY = DropPolicy.SUMMARIZE
DEFAULT_DEBOUNCE_MS = 1000
DEFAULT_CAP = 20
SUMMARY_LINE_CHARS = 160
COLLECT_TITLE = "[Queued messages while agent was busy]"

_MODE_ALIASES = {
    "queue": QueueMode.STEER,
    "queued": QueueMode.STEER,
    "interrupt": QueueMode.INTERRUPT,
    "interrupts": QueueMode.INTERRUPT,
    "abort": QueueMode.INTERRUPT,
    "steer": QueueMode.STEER,
    "steering": QueueMode.STEER,
    "followup": QueueMode.FOLLOWUP,
    "follow-ups": QueueMode.FOLLOWUP,
    "followups": QueueMode.FOLLOWUP,
    "collect": QueueMode.COLLECT,
    "coalesce": QueueMode.COLLECT,
    "steer+backlog": QueueMode.STEER_BACKLOG,
    "steer-backlog": QueueMode.STEER_BACKLOG,
    "steer_backlog": QueueMode.STEER_BACKLOG,
}

_DROP_ALIASES = {
    "old": DropPolicy.OLD,
    "oldest": DropPolicy.OLD,
    "new": DropPolicy.NEW,
    "newest": DropPolicy.NEW,
    "summarize": DropPolicy.SUMMARIZE,
    "summary": DropPolicy.SUMMARIZE,
}


def normalize_queue_mode(raw: str | QueueMode | None) -> QueueMode | None:
    if isinstance(raw, QueueMode):
        return raw
    return _MODE_ALIASES.get((raw or "").strip().lower())


def normalize_drop_policy(raw: str | DropPolicy | None) -> DropPolicy | None:
    if isinstance(raw, DropPolicy):
        return raw
    return _DROP_ALIASES.get((raw or "").strip().lower())


@dataclass
class QueueSettings:
    mode: QueueMode = DEFAULT_QUEUE_MODE
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    cap: int = DEFAULT_CAP
    drop_policy: DropPolicy = DEFAULT_DROP_POLICY


@dataclass
class QueueInlineOptions:
    debounce_ms: int | None = None
    cap: int | None = None
    drop_policy: DropPolicy | None = None


def resolve_queue_settings(
    config: QueueConfig | None = None,
    channel: str = "",
    inline_mode: QueueMode | None = None,
    inline: QueueInlineOptions | None = None,
    entry: SessionEntry | None = None,
) -> QueueSettings:
    """Resolve queue settings: inline > session override > per-channel config > config > defaults."""
    channel = (channel or "").strip().lower()
    inline = inline or QueueInlineOptions()

    mode = inline_mode
    if mode is None and entry is not None:
        mode = normalize_queue_mode(entry.queue_mode)
    if mode is None and config is not None:
        if channel and channel in config.by_channel:
            mode = normalize_queue_mode(config.by_channel[channel])
        if mode is None:
            mode = normalize_queue_mode(config.mode)
    mode = mode or DEFAULT_QUEUE_MODE

    debounce = inline.debounce_ms
    if debounce is None and entry is not None:
        debounce = entry.queue_debounce_ms
    if debounce is None and config is not None:
        if channel and channel in config.debounce_ms_by_channel:
            debounce = config.debounce_ms_by_channel[channel]
        if debounce is None:
            debounce = config.debounce_ms
    debounce_ms = DEFAULT_DEBOUNCE_MS if debounce is None else max(0, int(debounce))

    cap_value = inline.cap
    if cap_value is None and entry is not None:
        cap_value = entry.queue_cap
    if cap_value is None and config is not None:
        cap_value = config.cap
    cap = int(cap_value) if cap_value is not None and int(cap_value) > 0 else DEFAULT_CAP

    drop = inline.drop_policy
    if drop is None and entry is not None:
        drop = normalize_drop_policy(entry.queue_drop)
    if drop is None and config is not None:
        drop = normalize_drop_policy(config.drop)

    return QueueSettings(mode=mode, debounce_ms=debounce_ms, cap=cap, drop_policy=drop or DEFAULT_DROP_POLICY)


@dataclass
class PendingMessage:
    """Raw inputs of a deferred turn. The prompt is rebuilt from these at dequeue time."""

    room_id: str
    body: str = ""
    kind: str = "text"  # text | image | pdf | audio | video | regenerate | edit_regenerate
    event_id: str = ""
    sender: str = ""
    media_url: str = ""
    mime_type: str = ""
    target_message_id: str = ""
    thread_id: str = ""
    channel: str = "matrix"
    agent_id: str = ""
    source: str = "user"  # user | cron
    config: TurnConfig | None = None


@dataclass
class PendingItem:
    pending: PendingMessage
    message_id: str = ""
    summary_line: str = ""
    enqueued_at: int = 0
    prompt: str = ""
    backlog_after: bool = False
    allow_duplicate: bool = False

    def summary_source(self) -> str:
        return self.summary_line or self.pending.body.strip()


def elide_text(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    if limit <= 1:
        return text[:1]
    return text[: limit - 1].rstrip() + "…"


def build_summary_line(text: str, limit: int = SUMMARY_LINE_CHARS) -> str:
    return elide_text(" ".join(text.split()), limit)


@dataclass
class PendingQueue:
    """Bounded buffer of deferred turns for one room.

    Owns capacity and eviction only; merge strategy belongs to the caller.
    """

    cap: int = DEFAULT_CAP
    drop_policy: DropPolicy = DEFAULT_DROP_POLICY
    mode: QueueMode = DEFAULT_QUEUE_MODE
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    items: list[PendingItem] = field(default_factory=list)
    dropped_count: int = 0
    summary_lines: list[str] = field(default_factory=list)
    last_enqueued_at: int = 0
    last_item: PendingItem | None = None
    draining: bool = False

    def apply_settings(self, settings: QueueSettings) -> None:
        self.mode = settings.mode
        if settings.debounce_ms >= 0:
            self.debounce_ms = settings.debounce_ms
        if settings.cap > 0:
            self.cap = settings.cap
        self.drop_policy = settings.drop_policy

    def is_duplicate(self, item: PendingItem) -> bool:
        if item.allow_duplicate:
            return False
        for existing in self.items:
            if item.message_id and existing.message_id == item.message_id:
                return True
            if (
                not item.message_id
                and not existing.message_id
                and item.pending.body
                and existing.pending.body == item.pending.body
            ):
                return True
        return False

    def make_room(self) -> bool:
        """Apply the drop policy ahead of one admission. False means reject the newcomer."""
        if self.cap <= 0 or len(self.items) < self.cap:
            return True
        if self.drop_policy is DropPolicy.NEW:
            return False
        evict_count = len(self.items) - self.cap + 1
        dropped, self.items = self.items[:evict_count], self.items[evict_count:]
        self.dropped_count += len(dropped)
        if self.drop_policy is DropPolicy.SUMMARIZE:
            for item in dropped:
                summary = item.summary_source().strip()
                if summary:
                    self.summary_lines.append(build_summary_line(summary))
            limit = max(self.cap, 0)
            if len(self.summary_lines) > limit:
                self.summary_lines = self.summary_lines[len(self.summary_lines) - limit:]
        return True

    def admit(self, item: PendingItem) -> bool:
        self.last_enqueued_at = int(time.time() * 1000)
        self.last_item = item
        if not self.make_room():
            return False
        if not item.enqueued_at:
            item.enqueued_at = self.last_enqueued_at
        self.items.append(item)
        return True

    def pop(self, count: int) -> list[PendingItem]:
        if count <= 0 or not self.items:
            return []
        out, self.items = self.items[:count], self.items[count:]
        return out

    def take_summary(self, noun: str = "message") -> str:
        """Build the overflow notice and reset the drop accounting. One-shot."""
        if self.dropped_count <= 0:
            return ""
        if self.drop_policy is not DropPolicy.SUMMARIZE:
            # Only summarize announces drops.
            self.dropped_count = 0
            self.summary_lines = []
            return ""
        title = f"[Queue overflow] Dropped {self.dropped_count} {noun}"
        if self.dropped_count != 1:
            title += "s"
        title += " due to cap."
        lines = [title]
        if self.summary_lines:
            lines.append("Summary:")
            lines.extend(f"- {line}" for line in self.summary_lines)
        self.dropped_count = 0
        self.summary_lines = []
        return "\n".join(lines)

    def is_empty(self) -> bool:
        return not self.items and (self.dropped_count == 0 or self.drop_policy is not DropPolicy.SUMMARIZE)

    def snapshot(self) -> PendingQueue:
        return replace(self, items=list(self.items), summary_lines=list(self.summary_lines))


def build_collect_prompt(title: str, items: list[PendingItem], summary: str = "") -> str:
    blocks = [title]
    if summary.strip():
        blocks.append(summary)
    for idx, item in enumerate(items, start=1):
        blocks.append(f"---\nQueued #{idx}\n{item.prompt}".strip())
    return "\n\n".join(blocks)
