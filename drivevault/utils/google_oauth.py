"""
Google OAuth Helpers
Authorization URL, code exchange and access-token refresh for Drive access
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from drivevault.config import settings
from drivevault.exceptions import RemoteStoreFailure

logger = logging.getLogger(__name__)

DRIVE_SCOPES = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/drive.appdata",
    "https://www.googleapis.com/auth/userinfo.email",
    "openid",
]


@dataclass
class OAuthTokens:
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None


def get_google_auth_url(state: str) -> str:
    """Build the consent URL; offline access + forced consent so a refresh token is issued"""
    params = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "redirect_uri": settings.GOOGLE_REDIRECT_URI,
        "response_type": "code",
        "scope": " ".join(DRIVE_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{settings.GOOGLE_AUTH_URL}?{urlencode(params)}"


async def _token_request(data: dict) -> dict:
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        raise RemoteStoreFailure("Google OAuth credentials not configured")

    payload = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "client_secret": settings.GOOGLE_CLIENT_SECRET,
        **data,
    }
    try:
        async with httpx.AsyncClient(timeout=settings.REMOTE_TIMEOUT_SECONDS) as client:
            response = await client.post(settings.GOOGLE_TOKEN_URL, data=payload)
    except httpx.HTTPError as e:
        raise RemoteStoreFailure(f"Google token endpoint unreachable: {e}") from e

    if response.status_code != 200:
        logger.error(f"Google token request failed: {response.status_code} {response.text}")
        raise RemoteStoreFailure("Google token request failed")

    body = response.json()
    if "access_token" not in body:
        raise RemoteStoreFailure("Google token response has no access_token")
    return body


def _expiry(body: dict) -> datetime:
    return datetime.utcnow() + timedelta(seconds=int(body.get("expires_in", 3600)))


async def exchange_code_for_token(code: str) -> OAuthTokens:
    body = await _token_request({
        "code": code,
        "redirect_uri": settings.GOOGLE_REDIRECT_URI,
        "grant_type": "authorization_code",
    })
    return OAuthTokens(
        access_token=body["access_token"],
        refresh_token=body.get("refresh_token"),
        expires_at=_expiry(body),
    )


async def refresh_access_token(refresh_token: str) -> OAuthTokens:
    body = await _token_request({
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    })
    return OAuthTokens(access_token=body["access_token"], expires_at=_expiry(body))
