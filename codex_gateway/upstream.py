"""Upstream dispatcher for the ChatGPT Codex Responses endpoint."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import aiohttp
from aiohttp import ClientError

from .config import ProxySettings
from .debug import DebugWriter
from .errors import BadGatewayError, NotAuthenticatedError
from .events import SSEEvent
from .schemas import CodexTokens
from .session import derive_session_id
from .store import TokenStore

logger = logging.getLogger(__name__)

# Upstream endpoint (ChatGPT Responses API)
CHATGPT_RESPONSES_URL = "https://chatgpt.com/backend-api/codex/responses"


def extract_upstream_error(body: str) -> str:
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return "Upstream error"
    err = data.get("error") if isinstance(data, dict) else None
    if not isinstance(err, dict):
        return "Upstream error"
    msg = err.get("message") if isinstance(err.get("message"), str) else None
    reset = err.get("resets_in_seconds")
    if reset is not None:
        return f"{msg or 'Upstream error'} (resets in {reset} seconds)"
    return msg or "Upstream error"


def build_payload(
    model: str,
    instructions: Optional[str],
    input_items: list[dict[str, Any]],
    tools: list[dict[str, Any]],
    tool_choice: Any,
    parallel_tool_calls: bool,
    reasoning: Optional[dict[str, Any]],
    session_id: str,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "instructions": instructions,
        "input": input_items,
        "tools": tools,
        "tool_choice": tool_choice,
        "parallel_tool_calls": parallel_tool_calls,
        "store": False,
        "stream": True,  # always request stream; non-streaming clients get an aggregate
        "prompt_cache_key": session_id,
    }
    if reasoning is not None:
        # When store=false and reasoning is present, request encrypted CoT
        payload["include"] = ["reasoning.encrypted_content"]
        payload["reasoning"] = reasoning
    return payload


def build_headers(tokens: CodexTokens, session_id: str) -> dict[str, str]:
    return {
        "Accept": "text/event-stream",
        "Content-Type": "application/json",
        "Authorization": f"Bearer {tokens.access_token}",
        "chatgpt-account-id": tokens.account_id or "",
        "OpenAI-Beta": "responses=experimental",
        "session_id": session_id,
    }


class CodexDispatcher:
    """Opens authenticated streaming requests against the Codex backend."""

    def __init__(
        self,
        client: aiohttp.ClientSession,
        store: TokenStore,
        settings: Optional[ProxySettings] = None,
        *,
        debug: Optional[DebugWriter] = None,
        url: str = CHATGPT_RESPONSES_URL,
    ) -> None:
        settings = settings or ProxySettings()
        self.client = client
        self.store = store
        self.url = url
        self.debug = debug
        self.max_retries = max(0, settings.upstream_max_retries)
        self.backoff_base = settings.retry_backoff_base

    def _credentials(self) -> CodexTokens:
        tokens = self.store.snapshot()
        if not tokens.has_access_token:
            raise NotAuthenticatedError("Codex not authenticated. Use /api/codex/oauth/start")
        if not (tokens.account_id and tokens.account_id.strip()):
            raise NotAuthenticatedError("Codex missing account_id")
        return tokens

    @asynccontextmanager
    async def dispatch(
        self,
        model: str,
        instructions: Optional[str],
        input_items: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        tool_choice: Any = "auto",
        parallel_tool_calls: bool = False,
        reasoning: Optional[dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """Yield the open upstream response; it is released when the block exits."""
        tokens = self._credentials()
        sid = session_id or derive_session_id(instructions, input_items)
        payload = build_payload(
            model, instructions, input_items, tools, tool_choice, parallel_tool_calls, reasoning, sid
        )
        response = await self._open(payload, build_headers(tokens, sid))
        try:
            yield response
        finally:
            response.release()

    async def _open(self, payload: dict[str, Any], headers: dict[str, str]) -> aiohttp.ClientResponse:
        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.post(self.url, json=payload, headers=headers)
            except (asyncio.TimeoutError, ClientError) as exc:
                if self.debug:
                    self.debug(f"upstream exception: {exc!r}")
                if attempt < self.max_retries:
                    await self._sleep_with_backoff(attempt)
                    continue
                raise BadGatewayError(f"Upstream request failed: {exc}") from exc

            if self.debug:
                self.debug(f"upstream status: {response.status}")
            if 200 <= response.status < 300:
                return response

            try:
                body = await response.text()
            except (asyncio.TimeoutError, ClientError) as exc:
                logger.warning("Failed to read upstream error body: %s", exc)
                body = ""
            finally:
                response.release()
            if self.debug:
                self.debug(f"upstream error body: {body[:500]}")
            if response.status >= 500 and attempt < self.max_retries:
                await self._sleep_with_backoff(attempt)
                continue
            logger.warning("Upstream returned %s: %s", response.status, body[:200])
            raise BadGatewayError(extract_upstream_error(body))
        raise BadGatewayError("Upstream error")  # pragma: no cover - loop always returns or raises

    async def _sleep_with_backoff(self, attempt: int) -> None:
        delay = self.backoff_base * (2 ** attempt)
        logger.info("Retrying upstream request after %.2fs (attempt %d)", delay, attempt + 1)
        if self.debug:
            self.debug(f"retrying upstream request after {delay:.2f}s (attempt {attempt + 1})")
        await asyncio.sleep(delay)


# ---------- SSE framing ----------


async def iter_sse_lines(
    byte_iter: AsyncIterator[bytes], *, max_buffer_bytes: int = 2 * 1024 * 1024
) -> AsyncIterator[bytes]:
    """Yield SSE lines without relying on upstream readline limits."""
    buffer = bytearray()

    async for chunk in byte_iter:
        if not chunk:
            continue
        buffer.extend(chunk)
        while True:
            newline_idx = buffer.find(b"\n")
            if newline_idx == -1:
                break
            line = bytes(buffer[: newline_idx + 1])
            yield line
            del buffer[: newline_idx + 1]
        if len(buffer) > max_buffer_bytes:
            # Safeguard against runaways when upstream omits newlines.
            yield bytes(buffer)
            buffer.clear()

    if buffer:
        yield bytes(buffer)


async def iter_sse_events(
    response: aiohttp.ClientResponse, debug: Optional[DebugWriter] = None
) -> AsyncIterator[SSEEvent]:
    """Frame the upstream byte stream into SSE events.

    Transport failures while reading surface as ``BadGatewayError``.
    """
    data_lines: list[str] = []
    event: Optional[str] = None
    event_id: Optional[str] = None
    retry: Optional[int] = None

    try:
        async for raw in iter_sse_lines(response.content.iter_chunked(1024)):
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if debug:
                debug(f"raw: {line[:500]}")
            if not line:
                if data_lines:
                    yield SSEEvent("\n".join(data_lines), event, event_id, retry)
                data_lines, event, event_id, retry = [], None, None, None
                continue
            if line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "data":
                data_lines.append(value)
            elif name == "event":
                event = value
            elif name == "id":
                event_id = value
            elif name == "retry" and value.isdigit():
                retry = int(value)
    except (asyncio.TimeoutError, ClientError) as exc:
        raise BadGatewayError(f"Upstream stream error: {exc}") from exc

    if data_lines:
        yield SSEEvent("\n".join(data_lines), event, event_id, retry)
