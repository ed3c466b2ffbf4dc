"""OAuth2 PKCE login against the OpenAI auth issuer.

``start`` stores a single pending flow (a newer start replaces it) and returns
the authorization URL. ``callback`` checks the state, exchanges the code at the
token endpoint and publishes the resulting credential record.

The ``account_id`` claim is read from the id token payload without verifying
its signature; the token arrives straight from the token endpoint over TLS.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from html import escape
from typing import Any, Optional
from urllib.parse import urlencode

import aiohttp
from aiohttp import ClientError

from .config import ProxySettings
from .errors import TokenExchangeError
from .schemas import CodexTokens
from .store import TokenStore

logger = logging.getLogger(__name__)

OAUTH_ISSUER = "https://auth.openai.com"
OAUTH_SCOPE = "openid profile email offline_access"
ACCOUNT_CLAIM_NAMESPACE = "https://api.openai.com/auth"
ACCOUNT_CLAIM_KEY = "chatgpt_account_id"


@dataclass(frozen=True)
class PendingOAuth:
    state: str
    code_verifier: str
    redirect_uri: str


class PendingSlot:
    """Holds at most one in-flight login; the last writer wins."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Optional[PendingOAuth] = None

    def replace(self, pending: PendingOAuth) -> Optional[PendingOAuth]:
        """Store ``pending`` and return the flow it superseded, if any."""
        with self._lock:
            previous, self._pending = self._pending, pending
        return previous

    def get(self) -> Optional[PendingOAuth]:
        with self._lock:
            return self._pending

    def clear(self, state: str) -> bool:
        """Drop the pending flow only if it is still the one for ``state``."""
        with self._lock:
            if self._pending is None or self._pending.state != state:
                return False
            self._pending = None
            return True


def rand_hex(nbytes: int) -> str:
    return secrets.token_hex(nbytes)


def code_challenge_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce() -> tuple[str, str]:
    verifier = rand_hex(64)
    return verifier, code_challenge_s256(verifier)


def parse_jwt_claim(token: str, namespace: str, key: str) -> Optional[str]:
    """Read ``payload[namespace][key]`` from a JWT without checking its signature."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (binascii.Error, ValueError):
        return None
    if not isinstance(claims, dict):
        return None
    ns = claims.get(namespace)
    value = ns.get(key) if isinstance(ns, dict) else None
    return value if isinstance(value, str) else None


def _non_empty(value: str) -> Optional[str]:
    return value if value.strip() else None


@dataclass
class CallbackResult:
    ok: bool
    title: str
    detail: str = ""
    status_code: int = 200
    preformatted: bool = False

    def render(self) -> str:
        body = f"<h2>{escape(self.title)}</h2>"
        if self.detail:
            if self.preformatted:
                body += f"<pre>{escape(self.detail)}</pre>"
            else:
                body += "".join(f"<p>{escape(line)}</p>" for line in self.detail.split("\n"))
        return f"<html><body>{body}</body></html>"


async def exchange_code(
    client: aiohttp.ClientSession, token_url: str, form: dict[str, str]
) -> dict[str, Any]:
    """POST the authorization code to the token endpoint and return its JSON body."""
    try:
        async with client.post(
            token_url,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        ) as resp:
            status = resp.status
            body = await resp.text()
    except (asyncio.TimeoutError, ClientError) as exc:
        raise TokenExchangeError(f"Token exchange failed: {exc}", detail=str(exc)) from exc

    if not 200 <= status < 300:
        raise TokenExchangeError(f"Token endpoint error {status}", detail=body)
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        payload = {}
    return payload if isinstance(payload, dict) else {}


class OAuthFlow:
    def __init__(
        self,
        settings: ProxySettings,
        store: TokenStore,
        slot: Optional[PendingSlot] = None,
        *,
        issuer: str = OAUTH_ISSUER,
    ) -> None:
        self.settings = settings
        self.store = store
        self.slot = slot or PendingSlot()
        self.issuer = issuer.rstrip("/")

    @property
    def token_url(self) -> str:
        return f"{self.issuer}/oauth/token"

    def start(self) -> str:
        """Begin a login and return the authorization URL for the browser."""
        redirect_uri = self.settings.redirect_uri()
        code_verifier, code_challenge = generate_pkce()
        state = rand_hex(32)
        params = {
            "response_type": "code",
            "client_id": self.settings.client_id,
            "redirect_uri": redirect_uri,
            "scope": OAUTH_SCOPE,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "id_token_add_organizations": "true",
            "codex_cli_simplified_flow": "true",
            "state": state,
        }
        previous = self.slot.replace(PendingOAuth(state, code_verifier, redirect_uri))
        if previous is not None:
            logger.info("Codex OAuth start: replaced an unfinished login")
        logger.info("Codex OAuth start: state set; redirect_uri=%s", redirect_uri)
        return f"{self.issuer}/oauth/authorize?{urlencode(params)}"

    async def callback(
        self,
        client: aiohttp.ClientSession,
        *,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> CallbackResult:
        if error:
            detail = error if not error_description else f"{error}\n{error_description}"
            return CallbackResult(False, "Login error", detail, status_code=400)
        if not code or not state:
            return CallbackResult(False, "Invalid callback", status_code=400)

        pending = self.slot.get()
        if pending is None:
            return CallbackResult(False, "No pending login or it expired", status_code=400)
        if pending.state != state:
            return CallbackResult(False, "State mismatch", status_code=400)

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": pending.redirect_uri,
            "client_id": self.settings.client_id,
            "code_verifier": pending.code_verifier,
        }
        try:
            payload = await exchange_code(client, self.token_url, form)
        except TokenExchangeError as exc:
            logger.error("%s: %s", exc.message, exc.detail[:500])
            return CallbackResult(False, exc.message, exc.detail, status_code=502, preformatted=True)

        def _field(name: str) -> str:
            value = payload.get(name)
            return value if isinstance(value, str) else ""

        id_token = _field("id_token")
        account_id = parse_jwt_claim(id_token, ACCOUNT_CLAIM_NAMESPACE, ACCOUNT_CLAIM_KEY) or ""
        tokens = CodexTokens(
            id_token=_non_empty(id_token),
            access_token=_non_empty(_field("access_token")),
            refresh_token=_non_empty(_field("refresh_token")),
            account_id=_non_empty(account_id),
            last_refresh=datetime.now(timezone.utc).isoformat(),
            api_key=self.store.snapshot().api_key,
        )
        try:
            await self.store.publish(tokens)
        except OSError as exc:
            logger.error("Failed to save credentials: %s", exc)

        self.slot.clear(state)
        logger.info("Codex OAuth login complete; account_id=%s", tokens.account_id)
        return CallbackResult(True, "Login successful", "You can close this window.")

    def status(self) -> dict[str, Any]:
        tokens = self.store.snapshot()
        return {
            "authenticated": tokens.is_authenticated,
            "account_id": tokens.account_id,
            "has_access_token": tokens.has_access_token,
            "last_refresh": tokens.last_refresh,
        }

    async def logout(self) -> None:
        try:
            await self.store.publish(CodexTokens())
        except OSError as exc:
            logger.error("Failed to save credentials: %s", exc)
        logger.info("Codex credentials cleared")
