"""Bearer and admin key guards for the gateway routes.

Both checks are disabled when no key is configured.
"""
from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from .config import ProxySettings
from .deps import get_settings


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _matches(token: str, candidates: list[str]) -> bool:
    return any(secrets.compare_digest(token, c) for c in candidates)


async def require_bearer(
    authorization: Optional[str] = Header(default=None),
    settings: ProxySettings = Depends(get_settings),
) -> None:
    if not settings.api_keys:
        return
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    if not _matches(token, settings.api_keys):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")


async def require_admin(
    authorization: Optional[str] = Header(default=None),
    x_admin_key: Optional[str] = Header(default=None, alias="x-admin-key"),
    settings: ProxySettings = Depends(get_settings),
) -> None:
    if not settings.admin_key:
        return
    token = _bearer_token(authorization) or (x_admin_key.strip() if x_admin_key else None)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing admin credentials")
    if not _matches(token, [settings.admin_key]):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin key")
