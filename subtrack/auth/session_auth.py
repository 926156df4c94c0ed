"""
Session Authentication
======================

Requests carry ``Authorization: Bearer <access token>`` issued by the
hosted auth platform. The token is validated by calling
``GET {auth_url}/auth/v1/user``; the returned user (id, email,
created_at) is cached per token for ``auth_cache_ttl`` seconds.

created_at matters: access provisioning classifies accounts as
existing/new by comparing it with the migration cutover.

WebSocket clients pass the same token as ``?token=``.
"""

import logging
import os
from datetime import datetime
from typing import Optional

import httpx
from cachetools import TTLCache
from fastapi import HTTPException, Request, WebSocket, status
from pydantic import BaseModel

from subtrack.config import settings
from subtrack.core.errors import AuthenticationRequired
from subtrack.core.structured_logging import user_id_var

logger = logging.getLogger(__name__)

DEV_USER_ID = "dev_user_auth_disabled"


class AuthenticatedUser(BaseModel):
    """The signed-in account as reported by the auth platform."""

    user_id: str
    email: Optional[str] = None
    created_at: Optional[datetime] = None


# In-memory cache of validated tokens
session_cache = TTLCache(maxsize=1000, ttl=settings.auth_cache_ttl)


def _is_auth_enabled() -> bool:
    """Auth can only be switched off in debug builds running in development."""
    if settings.auth_enabled:
        return True
    environment = os.environ.get("ENVIRONMENT", "production").lower()
    if settings.debug and environment == "development":
        logger.warning("AUTH DISABLED: requests run as %s. Do NOT use this in production.", DEV_USER_ID)
        return False
    logger.warning(
        "Ignoring SUBTRACK_AUTH_ENABLED=false because debug=%s and ENVIRONMENT=%s.",
        settings.debug,
        environment,
    )
    return True


def _dev_user() -> AuthenticatedUser:
    return AuthenticatedUser(user_id=DEV_USER_ID, email="dev@localhost")


_http_client: Optional[httpx.AsyncClient] = None


def _get_http_client() -> httpx.AsyncClient:
    """Return shared httpx.AsyncClient, creating on first use."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, connect=5.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
    return _http_client


async def _validate_token(token: str) -> Optional[AuthenticatedUser]:
    """Ask the auth platform who owns *token*. None if it is not valid."""
    if not settings.auth_url:
        logger.error("SUBTRACK_AUTH_URL is not configured; rejecting token")
        return None

    headers = {"Authorization": f"Bearer {token}"}
    if settings.auth_api_key:
        headers["apikey"] = settings.auth_api_key
    url = f"{settings.auth_url.rstrip('/')}/auth/v1/user"

    try:
        response = await _get_http_client().get(url, headers=headers)
    except httpx.RequestError as exc:
        logger.error("HTTP request to auth platform failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service is currently unavailable.",
        )

    if response.status_code in (401, 403):
        logger.warning("Rejected session token %s...", token[:7])
        return None
    if response.status_code != 200:
        logger.error(
            "Error validating session token. Auth platform returned status %s. Response: %s",
            response.status_code, response.text,
        )
        return None

    data = response.json()
    if not isinstance(data, dict) or not data.get("id"):
        return None
    return AuthenticatedUser(
        user_id=str(data["id"]),
        email=data.get("email"),
        created_at=data.get("created_at"),
    )


async def _resolve(token: str) -> Optional[AuthenticatedUser]:
    cached = session_cache.get(token)
    if cached:
        return cached
    user = await _validate_token(token)
    if user is not None:
        session_cache[token] = user
    return user


async def get_current_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency: the authenticated caller, or STK-AUTH-001."""
    if not _is_auth_enabled():
        user = _dev_user()
    else:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationRequired("Authorization bearer token is missing")
        user = await _resolve(token.strip())
        if user is None:
            raise AuthenticationRequired("session token rejected")

    request.state.user = user
    user_id_var.set(user.user_id)
    return user


async def get_current_user_ws(websocket: WebSocket) -> Optional[AuthenticatedUser]:
    """WebSocket variant. Returns None if auth fails; caller must close."""
    if not _is_auth_enabled():
        return _dev_user()

    token = websocket.query_params.get("token")
    if not token:
        return None
    try:
        return await _resolve(token)
    except HTTPException:
        return None


async def close_http_client():
    """Gracefully close the shared httpx client at shutdown."""
    global _http_client
    if _http_client and not _http_client.is_closed:
        await _http_client.aclose()
        _http_client = None
