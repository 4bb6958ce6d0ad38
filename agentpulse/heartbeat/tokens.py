from __future__ import annotations

import math
import re
from dataclasses import dataclass

HEARTBEAT_TOKEN = "HEARTBEAT_OK"
DEFAULT_MAX_ACK_CHARS = 300
DEFAULT_HEARTBEAT_EVERY = "30m"
DEFAULT_HEARTBEAT_PROMPT = (
    "Read HEARTBEAT.md if it exists (workspace context). Follow it strictly. "
    "Do not infer or repeat old tasks from prior chats. If nothing needs attention, reply HEARTBEAT_OK."
)
EXEC_EVENT_PROMPT = (
    "An async command you ran earlier has completed. The result is shown in the system messages above. "
    "Please relay the command output to the user in a helpful way. If the command succeeded, share the "
    "relevant output. If it failed, explain what went wrong."
)
EXEC_EVENT_MARKER = "Exec finished"

MODE_HEARTBEAT = "heartbeat"
MODE_MESSAGE = "message"

_HEADER_RE = re.compile(r"^#+(\s|$)")
_EMPTY_LIST_ITEM_RE = re.compile(r"^[-*+]\s*(\[[\sXx]?\]\s*)?$")
_TAG_RE = re.compile(r"<[^>]*>")
_LEADING_MARKUP_RE = re.compile(r"^[*`~_]+")
_TRAILING_MARKUP_RE = re.compile(r"[*`~_]+$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)", re.IGNORECASE)
_UNIT_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}


@dataclass
class StripResult:
    should_skip: bool
    text: str
    did_strip: bool


def is_heartbeat_content_effectively_empty(content: str | None) -> bool:
    """True when HEARTBEAT.md holds nothing actionable (headers, blanks, empty list items)."""
    if not content:
        return True
    for line in content.split("\n"):
        trimmed = line.strip()
        if not trimmed:
            continue
        if _HEADER_RE.match(trimmed):
            continue
        if _EMPTY_LIST_ITEM_RE.match(trimmed):
            continue
        return False
    return True


def resolve_heartbeat_prompt(raw: str | None) -> str:
    return (raw or "").strip() or DEFAULT_HEARTBEAT_PROMPT


def _strip_markup(text: str) -> str:
    out = _TAG_RE.sub(" ", text).replace("&nbsp;", " ")
    out = _LEADING_MARKUP_RE.sub("", out)
    return _TRAILING_MARKUP_RE.sub("", out)


def _strip_token_at_edges(raw: str, token: str) -> tuple[str, bool]:
    text = raw.strip()
    if not text or token not in text:
        return text, False
    did_strip = False
    while True:
        current = text.strip()
        if current.startswith(token):
            text = current[len(token):].lstrip(" \t\r\n")
            did_strip = True
            continue
        if current.endswith(token):
            text = current[: len(current) - len(token)].rstrip(" \t\r\n")
            did_strip = True
            continue
        break
    return " ".join(text.split()), did_strip


def strip_heartbeat_token(
    text: str | None,
    mode: str = MODE_HEARTBEAT,
    max_ack_chars: int = DEFAULT_MAX_ACK_CHARS,
) -> StripResult:
    """Remove HEARTBEAT_OK from the edges of a reply.

    In heartbeat mode a reply whose remaining text fits in ``max_ack_chars``
    counts as a bare acknowledgement and should be skipped.
    """
    trimmed = (text or "").strip()
    if not trimmed:
        return StripResult(True, "", False)
    max_ack_chars = max(max_ack_chars, 0)

    normalized = _strip_markup(trimmed)
    if HEARTBEAT_TOKEN not in trimmed and HEARTBEAT_TOKEN not in normalized:
        return StripResult(False, trimmed, False)

    orig_text, orig_did = _strip_token_at_edges(trimmed, HEARTBEAT_TOKEN)
    norm_text, norm_did = _strip_token_at_edges(normalized, HEARTBEAT_TOKEN)
    if orig_did and orig_text:
        picked = orig_text
    elif norm_did:
        picked = norm_text
    else:
        return StripResult(False, trimmed, False)

    rest = picked.strip()
    if not rest:
        return StripResult(True, "", True)
    if mode == MODE_HEARTBEAT and len(rest) <= max_ack_chars:
        return StripResult(True, "", True)
    return StripResult(False, rest, True)


def is_heartbeat_only_response(text: str | None, max_ack_chars: int = DEFAULT_MAX_ACK_CHARS) -> bool:
    trimmed = (text or "").strip()
    if not trimmed:
        return False
    result = strip_heartbeat_token(trimmed, MODE_HEARTBEAT, max_ack_chars)
    return result.did_strip and result.should_skip


def parse_duration_ms(raw: str | int | float | None, default_unit: str = "m") -> int:
    """Parse ``500ms``/``30s``/``5m``/``1h``/``1d``, compounds like ``1h30m``, or a bare number.

    Raises ValueError on anything else.
    """
    if isinstance(raw, bool):
        raise ValueError(f"invalid duration: {raw!r}")
    if isinstance(raw, (int, float)):
        return _finite_ms(raw * _UNIT_MS[default_unit], raw)
    text = (raw or "").strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        number = float(text)
    except ValueError:
        pass
    else:
        return _finite_ms(number * _UNIT_MS[default_unit], raw)
    total = 0.0
    pos = 0
    compact = text.replace(" ", "")
    for match in _DURATION_PART_RE.finditer(compact):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {raw!r}")
        total += float(match.group(1)) * _UNIT_MS[match.group(2).lower()]
        pos = match.end()
    if pos != len(compact) or pos == 0:
        raise ValueError(f"invalid duration: {raw!r}")
    return _finite_ms(total, raw)


def _finite_ms(value: float, raw: object) -> int:
    if not math.isfinite(value):
        raise ValueError(f"invalid duration: {raw!r}")
    return int(value)
