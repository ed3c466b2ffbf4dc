"""FastAPI application factory for the Codex gateway."""
from __future__ import annotations

import logging
from typing import Optional

from aiohttp import ClientSession, ClientTimeout
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .config import ProxySettings
from .errors import GatewayError
from .oauth import OAuthFlow
from .oauth_routes import router as oauth_router
from .routes import CORS_HEADERS, router
from .store import TokenStore

logger = logging.getLogger(__name__)

USER_AGENT = f"codex-gateway/{__version__}"


def create_app(settings: ProxySettings | None = None) -> FastAPI:
    """Build the FastAPI app with configured routers and lifespan hooks."""

    settings = settings or ProxySettings()

    app = FastAPI(
        title="Codex Gateway",
        description="OpenAI-compatible chat and completions endpoints backed by ChatGPT Codex.",
        version=__version__,
    )

    app.include_router(router)
    app.include_router(oauth_router)

    auth_path = settings.resolved_auth_path() if settings.auth_path else None
    store = TokenStore(auth_path)

    app.state.settings = settings
    app.state.http_client = None
    app.state.token_store = store
    app.state.oauth_flow = OAuthFlow(settings, store)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
        else:
            logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=CORS_HEADERS)

    @app.on_event("startup")
    async def on_startup() -> None:
        # Responses can stream for minutes; no overall or read timeout.
        app.state.http_client = ClientSession(
            timeout=ClientTimeout(total=None, sock_read=None),
            headers={"User-Agent": USER_AGENT},
        )
        tokens = await store.load()
        if tokens.is_authenticated:
            logger.info("✓ Loaded Codex credentials from %s", auth_path)
        else:
            logger.info("No Codex credentials yet; visit /api/codex/oauth/start to log in")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        client: Optional[ClientSession] = app.state.http_client
        if client and not client.closed:
            await client.close()

    return app
