"""Chat message translation into Responses API input items.

System text is lifted out of the conversation into a single ``instructions``
string; everything else becomes an ordered list of upstream input items.
"""
from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Any, Iterable, Optional

from .schemas import (
    ChatMessage,
    ImageUrlBlock,
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5"

_EFFORT_RE = re.compile(r"[-_](minimal|low|medium|high)$", re.IGNORECASE)
_MODEL_ALIAS = {
    "gpt5": "gpt-5",
    "gpt-5-latest": "gpt-5",
    "gpt-5": "gpt-5",
    "codex": "codex-mini-latest",
    "codex-mini": "codex-mini-latest",
    "codex-mini-latest": "codex-mini-latest",
}

_EMPTY_PARAMETERS = {"type": "object", "properties": {}}


def normalize_model(model: str | None) -> tuple[str, str | None]:
    """Map a client model name onto an upstream model id.

    Returns the model and the reasoning effort stripped from its suffix, if any.
    """
    if not isinstance(model, str) or not model.strip():
        return DEFAULT_MODEL, None
    base = model.strip().split(":", 1)[0].strip()
    effort: str | None = None
    while True:
        m = _EFFORT_RE.search(base)
        if not m:
            break
        effort = effort or m.group(1).lower()
        base = base[: m.start()]
    return _MODEL_ALIAS.get(base, base), effort


def resolve_reasoning(
    reasoning: dict[str, Any] | None,
    reasoning_effort: str | None,
    suffix_effort: str | None,
) -> dict[str, Any] | None:
    if isinstance(reasoning, dict) and reasoning:
        return reasoning
    if isinstance(reasoning_effort, str) and reasoning_effort.strip():
        return {"effort": reasoning_effort.strip().lower()}
    if suffix_effort:
        return {"effort": suffix_effort, "summary": "auto"}
    return None


def _text_fragments(message: ChatMessage) -> Iterable[str]:
    if isinstance(message.content, str):
        yield message.content
        return
    for block in message.content:
        if isinstance(block, TextBlock):
            yield block.text


def system_instructions(messages: Iterable[ChatMessage]) -> Optional[str]:
    parts = [
        text
        for m in messages
        if m.role is Role.SYSTEM
        for text in _text_fragments(m)
        if text
    ]
    return "\n".join(parts) if parts else None


def normalize_data_url(url: str) -> str:
    """Rewrite a base64 image data URI into padded standard base64."""
    if not url.startswith("data:image/"):
        return url
    header, sep, data = url.partition(",")
    if not sep:
        return url
    payload = data.strip().replace("\n", "").replace("\r", "")
    payload = payload.replace("-", "+").replace("_", "/")
    payload += "=" * ((4 - len(payload) % 4) % 4)
    if not _decodes(payload):
        logger.warning("Invalid base64 image data; forwarding the original URL")
        return url
    return f"{header},{payload}"


def _decodes(payload: str) -> bool:
    for altchars in (b"-_", None):
        try:
            base64.b64decode(payload, altchars=altchars, validate=True)
        except (binascii.Error, ValueError):
            continue
        return True
    return False


def _message_item(role: str, parts: list[dict[str, Any]]) -> dict[str, Any]:
    return {"type": "message", "role": role, "content": parts}


def _assistant_items(message: ChatMessage) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    calls: list[dict[str, Any]] = []
    if isinstance(message.content, str):
        if message.content:
            parts.append({"type": "output_text", "text": message.content})
    else:
        for block in message.content:
            if isinstance(block, TextBlock) and block.text:
                parts.append({"type": "output_text", "text": block.text})
            elif isinstance(block, ToolUseBlock):
                calls.append({
                    "type": "function_call",
                    "call_id": block.id,
                    "name": block.name,
                    "arguments": block.arguments,
                })
    items = [_message_item("assistant", parts)] if parts else []
    return items + calls


def _user_items(message: ChatMessage) -> list[dict[str, Any]]:
    # user and tool messages both map to the upstream "user" role
    role = "user"
    if isinstance(message.content, str):
        if not message.content:
            return []
        return [_message_item(role, [{"type": "input_text", "text": message.content}])]

    items: list[dict[str, Any]] = []
    parts: list[dict[str, Any]] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            if block.text:
                parts.append({"type": "input_text", "text": block.text})
        elif isinstance(block, ImageUrlBlock):
            url = normalize_data_url(block.url)
            if url:
                parts.append({"type": "input_image", "image_url": url})
        elif isinstance(block, ToolResultBlock):
            if parts:
                items.append(_message_item(role, parts))
                parts = []
            items.append({
                "type": "function_call_output",
                "call_id": block.tool_use_id,
                "output": block.content,
            })
    if parts:
        items.append(_message_item(role, parts))
    return items


def messages_to_input(messages: Iterable[ChatMessage]) -> list[dict[str, Any]]:
    input_list: list[dict[str, Any]] = []
    for m in messages:
        if m.role is Role.SYSTEM:
            continue
        if m.role is Role.ASSISTANT:
            input_list.extend(_assistant_items(m))
        else:
            input_list.extend(_user_items(m))
    return input_list


def convert_tools(tools: Any) -> list[dict[str, Any]]:
    """Convert Chat-Completions function tools into Responses tool entries."""
    if not isinstance(tools, list):
        return []
    out: list[dict[str, Any]] = []
    for t in tools:
        if not isinstance(t, dict) or t.get("type") != "function":
            continue
        fn = t.get("function")
        if not isinstance(fn, dict):
            continue
        name = fn.get("name")
        if not isinstance(name, str) or not name:
            continue
        description = fn.get("description")
        parameters = fn.get("parameters")
        out.append({
            "type": "function",
            "name": name,
            "description": description if isinstance(description, str) else "",
            "strict": False,
            "parameters": parameters if isinstance(parameters, dict) else dict(_EMPTY_PARAMETERS),
        })
    return out
