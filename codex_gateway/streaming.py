"""Live re-encoding of upstream Responses events as OpenAI streaming chunks."""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

from .aggregate import usage_from_upstream
from .debug import DebugWriter
from .errors import BadGatewayError
from .events import (
    DONE,
    Completed,
    Failed,
    FunctionCallDone,
    SSEEvent,
    Target,
    TextDelta,
    TextDone,
    format_data,
    parse_event,
)

logger = logging.getLogger(__name__)


_PLACEHOLDER_ID = {Target.CHAT: "chatcmpl-stream", Target.COMPLETIONS: "cmpl-stream"}
_CHUNK_OBJECT = {Target.CHAT: "chat.completion.chunk", Target.COMPLETIONS: "text_completion.chunk"}


class StreamTranslator:
    """Per-request translation state: last seen response id and terminal flag."""

    def __init__(self, target: Target, model: str, created: int, include_usage: bool = False) -> None:
        self.target = target
        self.model = model
        self.created = created
        self.include_usage = include_usage
        self.response_id = _PLACEHOLDER_ID[target]
        self.finished = False

    def _chunk(self, choice: dict[str, Any], **extra: Any) -> str:
        data = {
            "id": self.response_id,
            "object": _CHUNK_OBJECT[self.target],
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, **choice}],
            **extra,
        }
        return format_data(data)

    def _text_chunk(self, text: Optional[str], finish_reason: Optional[str], **extra: Any) -> str:
        # None marks the stop and usage chunks, which carry an empty delta
        if self.target is Target.CHAT:
            delta = {"content": text} if text is not None else {}
            return self._chunk({"delta": delta, "finish_reason": finish_reason}, **extra)
        return self._chunk({"text": text or "", "finish_reason": finish_reason}, **extra)

    def _tool_chunk(self, ev: FunctionCallDone) -> str:
        call = {
            "index": 0,
            "id": ev.call_id,
            "type": "function",
            "function": {"name": ev.name, "arguments": ev.arguments},
        }
        return self._chunk({"delta": {"tool_calls": [call]}, "finish_reason": None})

    def translate(self, sse: SSEEvent) -> list[str]:
        """Map one upstream event to the outbound SSE frames it produces."""
        if sse.data.strip() == "[DONE]":
            self.finished = True
            return []

        ev = parse_event(sse.data)
        if ev is None:
            return [sse.encode()]
        if ev.response_id:
            self.response_id = ev.response_id

        if isinstance(ev, TextDelta):
            return [self._text_chunk(ev.delta, None)]
        if isinstance(ev, FunctionCallDone) and self.target is Target.CHAT:
            return [self._tool_chunk(ev)]
        if isinstance(ev, TextDone):
            return [self._text_chunk(None, "stop")]
        if isinstance(ev, Failed):
            self.finished = True
            return [format_data({"error": {"message": ev.message}})]
        if isinstance(ev, Completed):
            self.finished = True
            usage = usage_from_upstream(ev.usage)
            if self.include_usage and usage is not None:
                return [self._text_chunk(None, None, usage=usage.model_dump())]
        return [sse.encode()]


async def translate_stream(
    events: AsyncIterator[SSEEvent],
    translator: StreamTranslator,
    debug: Optional[DebugWriter] = None,
) -> AsyncIterator[str]:
    """Yield outbound frames in upstream order, ending with ``[DONE]``."""
    try:
        async for sse in events:
            if debug:
                debug(f"event: {sse.event or '<none>'} {sse.data[:300]}")
            for out in translator.translate(sse):
                yield out
            if translator.finished:
                break
    except BadGatewayError as exc:
        logger.warning("Upstream stream interrupted: %s", exc.message)
        yield format_data({"error": {"message": exc.message}})
    yield DONE
