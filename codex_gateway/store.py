"""Credential record storage backed by a Codex CLI style auth.json file.

Readers take the current immutable snapshot; writers publish a new one.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

from .errors import AuthConfigError
from .schemas import CodexTokens

logger = logging.getLogger(__name__)


def _read_tokens(path: Path) -> CodexTokens:
    if not path.exists():
        return CodexTokens()

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise AuthConfigError(f"Failed to read auth file {path}: {exc}") from exc

    if not content.strip():
        return CodexTokens()

    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise AuthConfigError(f"Auth file {path} is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise AuthConfigError(f"Auth file {path} must contain a JSON object")

    tokens_raw = data.get("tokens")
    if tokens_raw is None:
        tokens: dict[str, Any] = {}
    elif isinstance(tokens_raw, dict):
        tokens = tokens_raw
    else:
        raise AuthConfigError(f"Auth file {path} needs 'tokens' to be an object when present")

    def _str(value: Any) -> Optional[str]:
        return value if isinstance(value, str) and value.strip() else None

    return CodexTokens(
        id_token=_str(tokens.get("id_token")),
        access_token=_str(tokens.get("access_token")),
        refresh_token=_str(tokens.get("refresh_token")),
        account_id=_str(tokens.get("account_id")),
        last_refresh=_str(data.get("last_refresh")),
        api_key=_str(data.get("OPENAI_API_KEY") or data.get("api_key")),
    )


def _write_tokens(path: Path, tokens: CodexTokens) -> None:
    document = {
        "OPENAI_API_KEY": tokens.api_key,
        "tokens": {
            "id_token": tokens.id_token,
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "account_id": tokens.account_id,
        },
        "last_refresh": tokens.last_refresh,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
    tmp.replace(path)


class TokenStore:
    """Holds the active ``CodexTokens`` snapshot and persists replacements."""

    def __init__(self, path: Optional[Path] = None, tokens: Optional[CodexTokens] = None) -> None:
        self.path = path
        self._tokens = tokens or CodexTokens()
        self._version = 0
        self._write_lock = asyncio.Lock()

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> CodexTokens:
        return self._tokens

    async def load(self) -> CodexTokens:
        if self.path is None:
            return self._tokens
        tokens = await asyncio.to_thread(_read_tokens, self.path)
        self._tokens = tokens
        self._version += 1
        return tokens

    async def publish(self, tokens: CodexTokens) -> None:
        """Swap in ``tokens`` and persist them.

        The in-memory swap happens even when persisting fails; the OSError is
        re-raised for the caller to report.
        """
        async with self._write_lock:
            self._tokens = tokens
            self._version += 1
            if self.path is None:
                return
            await asyncio.to_thread(_write_tokens, self.path, tokens)
