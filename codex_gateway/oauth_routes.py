"""Login, callback and credential management routes."""
from __future__ import annotations

from typing import Optional

from aiohttp import ClientSession
from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse, JSONResponse

from .auth import require_admin
from .deps import get_http_client, get_oauth_flow
from .oauth import OAuthFlow

router = APIRouter()


@router.get("/api/codex/oauth/start", dependencies=[Depends(require_admin)])
async def oauth_start(flow: OAuthFlow = Depends(get_oauth_flow)) -> JSONResponse:
    return JSONResponse({"auth_url": flow.start()})


@router.get("/codex/oauth/callback", response_class=HTMLResponse)
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    flow: OAuthFlow = Depends(get_oauth_flow),
    client: ClientSession = Depends(get_http_client),
) -> HTMLResponse:
    result = await flow.callback(
        client,
        code=code,
        state=state,
        error=error,
        error_description=error_description,
    )
    return HTMLResponse(result.render(), status_code=result.status_code)


@router.get("/api/codex/tokens", dependencies=[Depends(require_admin)])
async def token_status(flow: OAuthFlow = Depends(get_oauth_flow)) -> JSONResponse:
    return JSONResponse(flow.status())


@router.post("/api/codex/logout", dependencies=[Depends(require_admin)])
async def logout(flow: OAuthFlow = Depends(get_oauth_flow)) -> JSONResponse:
    await flow.logout()
    return JSONResponse({"ok": True})
