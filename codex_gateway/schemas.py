"""Pydantic models for the OpenAI-compatible surface and the credential record."""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import BadRequestError


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrlBlock(BaseModel):
    type: Literal["image_url"] = "image_url"
    url: str


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    arguments: str = ""


ContentBlock = Union[TextBlock, ImageUrlBlock, ToolResultBlock, ToolUseBlock]


class ChatMessage(BaseModel):
    role: Role
    content: Union[str, List[ContentBlock]] = ""


_ROLE_ALIASES = {
    "system": Role.SYSTEM,
    "developer": Role.SYSTEM,
    "user": Role.USER,
    "assistant": Role.ASSISTANT,
    "tool": Role.TOOL,
    "function": Role.TOOL,
}


def _flatten_content(c: Any) -> str:
    if c is None:
        return ""
    if isinstance(c, str):
        return c
    if isinstance(c, list):
        parts: list[str] = []
        for item in c:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            elif isinstance(item, str):
                parts.append(item)
            else:
                parts.append(json.dumps(item, separators=(",", ":")))
        return " ".join(parts)
    return json.dumps(c, separators=(",", ":"))


def _parse_block(part: Any) -> Optional[ContentBlock]:
    if isinstance(part, str):
        return TextBlock(text=part)
    if not isinstance(part, dict):
        return None
    kind = part.get("type")
    if kind in ("text", "input_text", "output_text") and isinstance(part.get("text"), str):
        return TextBlock(text=part["text"])
    if kind in ("image_url", "input_image"):
        image = part.get("image_url")
        url = image.get("url") if isinstance(image, dict) else image
        if isinstance(url, str):
            return ImageUrlBlock(url=url)
        return None
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(part.get("tool_use_id") or ""),
            content=_flatten_content(part.get("content")),
        )
    return None


def _parse_tool_calls(tool_calls: Any) -> list[ToolUseBlock]:
    out: list[ToolUseBlock] = []
    if not isinstance(tool_calls, list):
        return out
    for call in tool_calls:
        if not isinstance(call, dict):
            continue
        fn = call.get("function")
        if not isinstance(fn, dict) or not isinstance(fn.get("name"), str):
            continue
        args = fn.get("arguments")
        if not isinstance(args, str):
            args = json.dumps(args if args is not None else {}, separators=(",", ":"))
        out.append(ToolUseBlock(id=str(call.get("id") or ""), name=fn["name"], arguments=args))
    return out


def parse_chat_message(raw: Any) -> Optional[ChatMessage]:
    """Convert one Chat-Completions message dict into a ``ChatMessage``."""

    if not isinstance(raw, dict):
        return None
    role = _ROLE_ALIASES.get(str(raw.get("role") or "").lower(), Role.USER)
    content = raw.get("content")

    if role is Role.TOOL:
        result = ToolResultBlock(
            tool_use_id=str(raw.get("tool_call_id") or ""),
            content=_flatten_content(content),
        )
        return ChatMessage(role=role, content=[result])

    tool_uses = _parse_tool_calls(raw.get("tool_calls")) if role is Role.ASSISTANT else []

    if isinstance(content, list):
        blocks: list[ContentBlock] = [b for b in map(_parse_block, content) if b is not None]
        return ChatMessage(role=role, content=[*blocks, *tool_uses])
    text = _flatten_content(content)
    if tool_uses:
        blocks = [TextBlock(text=text)] if text else []
        return ChatMessage(role=role, content=[*blocks, *tool_uses])
    return ChatMessage(role=role, content=text)


def parse_chat_messages(raw: Any) -> list[ChatMessage]:
    if not isinstance(raw, list):
        raise BadRequestError("'messages' must be an array")
    return [m for m in map(parse_chat_message, raw) if m is not None]


# ---------- Requests ----------


class StreamOptions(BaseModel):
    model_config = ConfigDict(extra="allow")
    include_usage: bool = False


class ChatCompletionsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")
    model: Optional[str] = "gpt-5"
    messages: List[Any]
    stream: Optional[bool] = None
    stream_options: Optional[StreamOptions] = None
    tools: Optional[List[Any]] = None
    tool_choice: Optional[Any] = Field(default=None, alias="tool_choice")
    parallel_tool_calls: Optional[bool] = None
    reasoning: Optional[dict[str, Any]] = None
    reasoning_effort: Optional[str] = None

    @property
    def include_usage(self) -> bool:
        return bool(self.stream_options and self.stream_options.include_usage)

    @property
    def requested_model(self) -> str:
        return self.model or "gpt-5"


class CompletionsRequest(BaseModel):
    model_config = ConfigDict(extra="allow")
    model: Optional[str] = "gpt-5"
    prompt: Union[str, List[Any], None] = None
    suffix: Optional[str] = None
    stream: Optional[bool] = None
    stream_options: Optional[StreamOptions] = None

    @property
    def include_usage(self) -> bool:
        return bool(self.stream_options and self.stream_options.include_usage)

    @property
    def requested_model(self) -> str:
        return self.model or "gpt-5"

    def prompt_text(self) -> str:
        prompt = ""
        if isinstance(self.prompt, str):
            prompt = self.prompt
        elif isinstance(self.prompt, list):
            prompt = "".join(p for p in self.prompt if isinstance(p, str))
        if not prompt:
            prompt = self.suffix or ""
        return prompt


# ---------- Responses ----------


class ToolCallFunction(BaseModel):
    name: str
    arguments: str


class ToolCall(BaseModel):
    id: str
    type: str = "function"
    function: ToolCallFunction


class ChatResponseMessage(BaseModel):
    role: str = "assistant"
    content: str = ""
    tool_calls: Optional[List[ToolCall]] = None


class Choice(BaseModel):
    index: int
    message: ChatResponseMessage
    finish_reason: Optional[str] = None


class CompletionChoice(BaseModel):
    index: int
    text: str
    finish_reason: Optional[str] = None
    logprobs: Optional[Any] = None


class Usage(BaseModel):
    model_config = ConfigDict(extra="allow")
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChatCompletionsResponse(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: List[Choice]
    usage: Optional[Usage] = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CompletionsResponse(BaseModel):
    id: str
    object: str = "text_completion"
    created: int
    model: str
    choices: List[CompletionChoice]
    usage: Optional[Usage] = None

    def to_dict(self) -> dict[str, Any]:
        # logprobs stays as an explicit null, usage is omitted when absent
        return self.model_dump(exclude={"usage"} if self.usage is None else None)


class ModelsList(BaseModel):
    object: str = "list"
    data: List[dict]


# ---------- Credentials ----------


class CodexTokens(BaseModel):
    """Persisted credential record; replaced wholesale, never mutated."""

    model_config = ConfigDict(frozen=True)

    id_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    account_id: Optional[str] = None
    last_refresh: Optional[str] = None
    api_key: Optional[str] = None

    @property
    def has_access_token(self) -> bool:
        return bool(self.access_token and self.access_token.strip())

    @property
    def is_authenticated(self) -> bool:
        return self.has_access_token and bool(self.account_id and self.account_id.strip())
