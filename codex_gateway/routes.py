"""OpenAI-compatible route handlers backed by the Codex Responses endpoint."""
from __future__ import annotations

import json
import logging
import time
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Optional, Type, TypeVar, Union

from aiohttp import ClientSession
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError
from starlette.background import BackgroundTask

from .aggregate import aggregate
from .auth import require_bearer
from .config import ProxySettings
from .debug import DebugWriter
from .deps import get_debugger, get_http_client, get_settings, get_token_store
from .errors import BadRequestError
from .events import Target
from .schemas import (
    ChatCompletionsRequest,
    ChatMessage,
    CompletionsRequest,
    ModelsList,
    Role,
    parse_chat_messages,
)
from .store import TokenStore
from .streaming import StreamTranslator, translate_stream
from .translate import (
    convert_tools,
    messages_to_input,
    normalize_model,
    resolve_reasoning,
    system_instructions,
)
from .upstream import CodexDispatcher, iter_sse_events

logger = logging.getLogger(__name__)
router = APIRouter()

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}

MODELS_PAYLOAD = ModelsList(
    data=[
        {"id": "gpt-5", "object": "model", "owned_by": "owner"},
        {"id": "codex-mini-latest", "object": "model", "owned_by": "owner"},
    ]
)

RequestT = TypeVar("RequestT", bound=BaseModel)


def _coerce_json_object_from_bytes(raw: bytes) -> dict[str, Any]:
    """Parse request body bytes into a JSON object, handling double-encoded strings.

    Raises:
        ValueError: If body is empty or resolves to empty string
        TypeError: If parsed result is not a JSON object (dict)
        json.JSONDecodeError: If JSON parsing fails
    """
    if not raw or raw.strip() == b"":
        raise ValueError("Empty request body")

    text = raw.decode("utf-8", errors="replace").strip()
    first = json.loads(text)

    # Handle double-encoded JSON: payload is a JSON string that itself contains JSON
    if isinstance(first, str):
        inner = first.strip()
        if not inner:
            raise ValueError("Body resolves to an empty string after decoding")
        second = json.loads(inner)
        if not isinstance(second, dict):
            raise TypeError("Decoded payload is not a JSON object")
        return second

    if not isinstance(first, dict):
        raise TypeError("Request body must be a JSON object")

    return first


async def _read_request(request: Request, model_cls: Type[RequestT]) -> RequestT:
    try:
        return model_cls(**_coerce_json_object_from_bytes(await request.body()))
    except json.JSONDecodeError as e:
        logger.error("Failed to parse JSON: %s", e)
        raise BadRequestError(f"Invalid JSON: {e.msg} at pos {e.pos}") from e
    except ValidationError as e:
        detail = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        logger.error("Invalid request body: %s", detail)
        raise BadRequestError(f"Invalid request body: {detail}") from e
    except (TypeError, ValueError) as e:
        logger.error("Invalid request body: %s", e)
        raise BadRequestError(str(e)) from e


async def _run(
    dispatcher: CodexDispatcher,
    target: Target,
    *,
    requested_model: str,
    stream: bool,
    include_usage: bool,
    debug: Optional[DebugWriter],
    **dispatch_args: Any,
) -> Union[JSONResponse, StreamingResponse]:
    """Open the upstream stream and either relay it live or aggregate it."""
    created = int(time.time())
    stack = AsyncExitStack()
    upstream = await stack.enter_async_context(dispatcher.dispatch(**dispatch_args))
    events = iter_sse_events(upstream, debug)

    if stream:
        translator = StreamTranslator(target, requested_model, created, include_usage)

        async def _stream() -> AsyncIterator[str]:
            async with stack:
                async for out in translate_stream(events, translator, debug):
                    yield out

        return StreamingResponse(
            _stream(),
            media_type="text/event-stream",
            headers={**CORS_HEADERS, "Cache-Control": "no-cache"},
            background=BackgroundTask(stack.aclose),
        )

    async with stack:
        result = await aggregate(events, target, requested_model, created, debug)
    return JSONResponse(content=result.to_dict(), headers=CORS_HEADERS)


# ---------- Routes ----------


@router.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"status": "ok", "service": "codex-gateway"})


@router.get("/codex/v1/models", dependencies=[Depends(require_bearer)])
async def models() -> JSONResponse:
    return JSONResponse(content=MODELS_PAYLOAD.model_dump(), headers=CORS_HEADERS)


@router.post("/codex/v1/chat/completions", response_model=None, dependencies=[Depends(require_bearer)])
async def chat_completions(
    request: Request,
    client: ClientSession = Depends(get_http_client),
    store: TokenStore = Depends(get_token_store),
    settings: ProxySettings = Depends(get_settings),
    debug: Optional[DebugWriter] = Depends(get_debugger),
) -> Union[JSONResponse, StreamingResponse]:
    payload = await _read_request(request, ChatCompletionsRequest)
    messages = parse_chat_messages(payload.messages)
    model, effort = normalize_model(payload.model)
    input_items = messages_to_input(messages)

    dispatcher = CodexDispatcher(client, store, settings, debug=debug)
    return await _run(
        dispatcher,
        Target.CHAT,
        requested_model=payload.requested_model,
        stream=bool(payload.stream),
        include_usage=payload.include_usage,
        debug=debug,
        model=model,
        instructions=system_instructions(messages) or settings.default_instructions,
        input_items=input_items,
        tools=convert_tools(payload.tools),
        tool_choice=payload.tool_choice if payload.tool_choice is not None else "auto",
        parallel_tool_calls=bool(payload.parallel_tool_calls),
        reasoning=resolve_reasoning(payload.reasoning, payload.reasoning_effort, effort),
        session_id=request.headers.get("session_id") or request.headers.get("x-session-id"),
    )


@router.post("/codex/v1/completions", response_model=None, dependencies=[Depends(require_bearer)])
async def completions(
    request: Request,
    client: ClientSession = Depends(get_http_client),
    store: TokenStore = Depends(get_token_store),
    settings: ProxySettings = Depends(get_settings),
    debug: Optional[DebugWriter] = Depends(get_debugger),
) -> Union[JSONResponse, StreamingResponse]:
    payload = await _read_request(request, CompletionsRequest)
    model, effort = normalize_model(payload.model)
    messages = [ChatMessage(role=Role.USER, content=payload.prompt_text())]

    dispatcher = CodexDispatcher(client, store, settings, debug=debug)
    return await _run(
        dispatcher,
        Target.COMPLETIONS,
        requested_model=payload.requested_model,
        stream=bool(payload.stream),
        include_usage=payload.include_usage,
        debug=debug,
        model=model,
        instructions=settings.default_instructions,
        input_items=messages_to_input(messages),
        tools=[],
        tool_choice="auto",
        parallel_tool_calls=False,
        reasoning=resolve_reasoning(None, None, effort),
    )
