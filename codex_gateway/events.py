"""Server-Sent Event records and the upstream Responses event vocabulary."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


@dataclass
class SSEEvent:
    """One SSE frame as received from, or sent to, a peer."""

    data: str = ""
    event: Optional[str] = None
    id: Optional[str] = None
    retry: Optional[int] = None

    def encode(self) -> str:
        lines: list[str] = []
        if self.event:
            lines.append(f"event: {self.event}")
        if self.id is not None:
            lines.append(f"id: {self.id}")
        if self.retry is not None:
            lines.append(f"retry: {self.retry}")
        lines.extend(f"data: {line}" for line in self.data.split("\n"))
        return "\n".join(lines) + "\n\n"


def format_data(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


DONE = "data: [DONE]\n\n"


class Target(str, Enum):
    """Client-facing wire shape: Chat-Completions or legacy Completions."""

    CHAT = "chat"
    COMPLETIONS = "completions"


@dataclass(frozen=True)
class TextDelta:
    delta: str
    response_id: Optional[str] = None


@dataclass(frozen=True)
class TextDone:
    response_id: Optional[str] = None


@dataclass(frozen=True)
class FunctionCallDone:
    call_id: str
    name: str
    arguments: str
    response_id: Optional[str] = None


@dataclass(frozen=True)
class Completed:
    usage: Optional[dict[str, Any]] = None
    response_id: Optional[str] = None


@dataclass(frozen=True)
class Failed:
    message: str
    raw: dict[str, Any] = field(default_factory=dict)
    response_id: Optional[str] = None


@dataclass(frozen=True)
class Unknown:
    type: str
    raw: dict[str, Any] = field(default_factory=dict)
    response_id: Optional[str] = None


UpstreamEvent = Union[TextDelta, TextDone, FunctionCallDone, Completed, Failed, Unknown]


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def parse_event(data: str) -> Optional[UpstreamEvent]:
    """Decode one SSE ``data`` payload; ``None`` when it is not a JSON object."""
    try:
        ev = json.loads(data)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(ev, dict):
        return None

    kind = _str(ev.get("type"))
    resp = ev.get("response") if isinstance(ev.get("response"), dict) else {}
    response_id = resp.get("id") if isinstance(resp.get("id"), str) else None

    if kind == "response.output_text.delta":
        delta = ev.get("delta")
        if isinstance(delta, dict):
            delta = delta.get("text")
        return TextDelta(_str(delta), response_id)

    if kind == "response.output_text.done":
        return TextDone(response_id)

    if kind == "response.output_item.done":
        item = ev.get("item")
        if isinstance(item, dict) and item.get("type") == "function_call":
            return FunctionCallDone(
                call_id=_str(item.get("call_id")) or _str(item.get("id")),
                name=_str(item.get("name")),
                arguments=_str(item.get("arguments")),
                response_id=response_id,
            )

    if kind == "response.completed":
        usage = resp.get("usage")
        return Completed(usage if isinstance(usage, dict) else None, response_id)

    if kind == "response.failed":
        err = resp.get("error")
        message = err.get("message") if isinstance(err, dict) else None
        return Failed(message if isinstance(message, str) and message else "response.failed", ev, response_id)

    return Unknown(kind, ev, response_id)
