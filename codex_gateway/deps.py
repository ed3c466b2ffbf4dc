"""FastAPI dependencies resolving per-app state."""
from __future__ import annotations

from typing import Optional

from aiohttp import ClientSession
from fastapi import Request

from .config import ProxySettings
from .debug import DebugWriter, make_debugger
from .errors import GatewayError
from .oauth import OAuthFlow
from .store import TokenStore


def get_settings(request: Request) -> ProxySettings:
    return request.app.state.settings


def get_http_client(request: Request) -> ClientSession:
    client: Optional[ClientSession] = getattr(request.app.state, "http_client", None)
    if client is None or client.closed:
        raise GatewayError("HTTP client is not initialized")
    return client


def get_token_store(request: Request) -> TokenStore:
    return request.app.state.token_store


def get_oauth_flow(request: Request) -> OAuthFlow:
    return request.app.state.oauth_flow


def get_debugger(request: Request) -> Optional[DebugWriter]:
    return make_debugger(getattr(request.app.state, "settings", None), request.query_params, request.headers)
