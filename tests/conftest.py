"""
Shared pytest configuration.

Puts the project root on sys.path and provides stand-ins for the aiohttp
session and response objects the gateway talks to.
"""

import json
import sys
from pathlib import Path
from typing import Any, Optional

import pytest


ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from codex_gateway.config import ProxySettings  # noqa: E402
from codex_gateway.schemas import CodexTokens  # noqa: E402
from codex_gateway.store import TokenStore  # noqa: E402


def sse_bytes(*events: Any) -> bytes:
    """Encode dicts (or raw strings) as ``data:`` SSE frames."""
    out = []
    for ev in events:
        data = ev if isinstance(ev, str) else json.dumps(ev)
        out.append(f"data: {data}\n\n")
    return "".join(out).encode("utf-8")


class FakeContent:
    def __init__(self, chunks: list[bytes], error: Optional[BaseException] = None) -> None:
        self._chunks = chunks
        self._error = error

    async def iter_chunked(self, n: int):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


class FakeResponse:
    def __init__(
        self,
        status: int = 200,
        body: str = "",
        chunks: Optional[list[bytes]] = None,
        error: Optional[BaseException] = None,
        body_error: Optional[BaseException] = None,
    ) -> None:
        self.status = status
        self._body = body
        self._body_error = body_error
        self.content = FakeContent(chunks or [], error)
        self.released = False

    async def text(self) -> str:
        if self._body_error is not None:
            raise self._body_error
        return self._body

    def release(self) -> None:
        self.released = True

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc: Any) -> bool:
        self.release()
        return False


class _PostCall:
    """Awaitable and async context manager, like ``aiohttp.ClientSession.post``."""

    def __init__(self, outcome: Any) -> None:
        self._outcome = outcome

    async def _resolve(self) -> FakeResponse:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    def __await__(self):
        return self._resolve().__await__()

    async def __aenter__(self) -> FakeResponse:
        return await self._resolve()

    async def __aexit__(self, *exc: Any) -> bool:
        if isinstance(self._outcome, FakeResponse):
            self._outcome.release()
        return False


class FakeSession:
    """Replays queued responses (or exceptions) for successive ``post`` calls."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def post(self, url: str, **kwargs: Any) -> _PostCall:
        self.calls.append({"url": url, **kwargs})
        if not self.outcomes:
            raise AssertionError(f"unexpected POST {url}")
        return _PostCall(self.outcomes.pop(0))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> ProxySettings:
    return ProxySettings(auth_path=None, retry_backoff_base=0.0)


@pytest.fixture
def authed_store(tmp_path: Path) -> TokenStore:
    return TokenStore(
        tmp_path / "auth.json",
        CodexTokens(access_token="at-123", account_id="acct-1", api_key="sk-old"),
    )
