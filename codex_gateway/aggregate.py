"""Collapse an upstream Responses event stream into one non-streaming response."""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Union

from .debug import DebugWriter
from .errors import UpstreamFailedError
from .events import (
    Completed,
    Failed,
    FunctionCallDone,
    SSEEvent,
    Target,
    TextDelta,
    parse_event,
)
from .schemas import (
    ChatCompletionsResponse,
    ChatResponseMessage,
    Choice,
    CompletionChoice,
    CompletionsResponse,
    ToolCall,
    ToolCallFunction,
    Usage,
)

logger = logging.getLogger(__name__)


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def usage_from_upstream(usage: Optional[dict[str, Any]]) -> Optional[Usage]:
    """Convert Responses usage (input/output tokens) into OpenAI usage fields."""
    if not isinstance(usage, dict):
        return None
    pt = _int(usage.get("input_tokens") or usage.get("prompt_tokens"))
    ct = _int(usage.get("output_tokens") or usage.get("completion_tokens"))
    tt = _int(usage.get("total_tokens")) or pt + ct
    extra: dict[str, Any] = {}
    input_details = usage.get("input_tokens_details")
    if isinstance(input_details, dict) and "cached_tokens" in input_details:
        extra["prompt_tokens_details"] = {"cached_tokens": _int(input_details["cached_tokens"])}
    output_details = usage.get("output_tokens_details")
    if isinstance(output_details, dict) and "reasoning_tokens" in output_details:
        extra["completion_tokens_details"] = {"reasoning_tokens": _int(output_details["reasoning_tokens"])}
    return Usage(prompt_tokens=pt, completion_tokens=ct, total_tokens=tt, **extra)


async def aggregate(
    events: AsyncIterator[SSEEvent],
    target: Target,
    model: str,
    created: int,
    debug: Optional[DebugWriter] = None,
) -> Union[ChatCompletionsResponse, CompletionsResponse]:
    """Consume events until ``response.completed`` and build the final response.

    Raises:
        UpstreamFailedError: on a ``response.failed`` event; partial text is dropped.
        BadGatewayError: when the upstream connection breaks mid-stream.
    """
    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    response_id = "chatcmpl" if target is Target.CHAT else "cmpl"
    usage: Optional[Usage] = None

    async for sse in events:
        ev = parse_event(sse.data)
        if ev is None:
            if debug:
                debug(f"event: parse_error {sse.data[:200]}")
            continue
        if debug:
            debug(f"event: {type(ev).__name__} {sse.data[:300]}")
        if ev.response_id:
            response_id = ev.response_id

        if isinstance(ev, TextDelta):
            text_parts.append(ev.delta)
        elif isinstance(ev, FunctionCallDone):
            tool_calls.append(
                ToolCall(id=ev.call_id, function=ToolCallFunction(name=ev.name, arguments=ev.arguments))
            )
        elif isinstance(ev, Completed):
            usage = usage_from_upstream(ev.usage)
            break
        elif isinstance(ev, Failed):
            raise UpstreamFailedError(ev.message, event=ev.raw)

    content = "".join(text_parts)
    if target is Target.CHAT:
        message = ChatResponseMessage(content=content, tool_calls=tool_calls or None)
        return ChatCompletionsResponse(
            id=response_id,
            created=created,
            model=model,
            choices=[Choice(index=0, message=message, finish_reason="stop")],
            usage=usage,
        )
    return CompletionsResponse(
        id=response_id,
        created=created,
        model=model,
        choices=[CompletionChoice(index=0, text=content, finish_reason="stop", logprobs=None)],
        usage=usage,
    )
