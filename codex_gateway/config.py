"""Configuration helpers for the Codex gateway."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8111
DEFAULT_AUTH_PATH = "~/.codex/auth.json"
if os.name == "nt":
    DEFAULT_AUTH_PATH = r"%USERPROFILE%\\.codex\\auth.json"
DEFAULT_DEBUG_PATH = "/tmp/debug_codex_gateway.log"

# Public client id registered for the Codex CLI.
CODEX_CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"

_ENV_PREFIX = "CODEX_GATEWAY_"


def _env(name: str) -> str | None:
    value = os.getenv(_ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _bool_env(name: str, default: bool = False) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "y", "on"}


def _int_env(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer in %s%s=%r, using %d", _ENV_PREFIX, name, value, default)
        return default


@dataclass
class ProxySettings:
    """Runtime configuration values for the gateway service."""

    host: str | None = DEFAULT_HOST
    port: int | None = DEFAULT_PORT
    auth_path: str | None = DEFAULT_AUTH_PATH
    oauth_redirect_prefix: str | None = None
    client_id: str = CODEX_CLIENT_ID
    api_keys: list[str] = field(default_factory=list)
    admin_key: str | None = None
    default_instructions: str | None = None
    upstream_max_retries: int = 2
    retry_backoff_base: float = 0.5
    debug_sse_enabled: bool = False
    debug_sse_path: str | None = None

    @classmethod
    def from_env(cls) -> "ProxySettings":
        """Build settings from ``CODEX_GATEWAY_*`` environment variables."""

        api_keys = [k.strip() for k in (_env("API_KEYS") or "").split(",") if k.strip()]
        return cls(
            host=_env("HOST") or DEFAULT_HOST,
            port=_int_env("PORT", DEFAULT_PORT),
            auth_path=_env("AUTH_PATH") or DEFAULT_AUTH_PATH,
            oauth_redirect_prefix=_env("OAUTH_REDIRECT_PREFIX"),
            client_id=_env("CLIENT_ID") or CODEX_CLIENT_ID,
            api_keys=api_keys,
            admin_key=_env("ADMIN_KEY"),
            default_instructions=_env("DEFAULT_INSTRUCTIONS"),
            upstream_max_retries=max(0, _int_env("UPSTREAM_RETRIES", 2)),
            debug_sse_enabled=_bool_env("DEBUG_SSE", False),
            debug_sse_path=_env("DEBUG_SSE_PATH"),
        )

    def resolved_auth_path(self) -> Path:
        """Expand user and environment variables to obtain the auth file path."""

        if not self.auth_path:
            raise ValueError("auth_path is not configured; supply --auth-path")

        expanded = os.path.expanduser(os.path.expandvars(self.auth_path))
        return Path(expanded)

    def redirect_uri(self) -> str:
        """OAuth callback URL the provider redirects the browser to."""

        prefix = self.oauth_redirect_prefix or f"http://localhost:{self.port or DEFAULT_PORT}"
        return f"{prefix.rstrip('/')}/codex/oauth/callback"
