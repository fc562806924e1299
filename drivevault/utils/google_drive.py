"""
Google Drive Blob Store
Stores encrypted file bodies in the user's Drive appDataFolder.

The core only sees the BlobStore interface: upload bytes, get a handle back,
download or delete by handle. Failures surface as RemoteStoreFailure.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Callable, Protocol
from uuid import UUID

import httpx
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from drivevault.config import settings
from drivevault.exceptions import DriveNotConnected, RemoteStoreFailure
from drivevault.models import GoogleToken
from drivevault.utils.google_oauth import refresh_access_token

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    async def upload(self, user_id: UUID, data: bytes, name: str) -> str: ...

    async def download(self, user_id: UUID, handle: str) -> bytes: ...

    async def delete(self, user_id: UUID, handle: str) -> None: ...


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class GoogleDriveStore:
    """BlobStore backed by the Drive v3 REST API, one OAuth token per user"""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _load_token(self, user_id: UUID):
        db = self._session_factory()
        try:
            token = db.query(GoogleToken).filter(GoogleToken.user_id == user_id).first()
            if token is None:
                return None
            return token.access_token, token.refresh_token, _as_naive_utc(token.expires_at)
        finally:
            db.close()

    def _save_token(self, user_id: UUID, access_token: str, expires_at: datetime) -> None:
        db = self._session_factory()
        try:
            token = db.query(GoogleToken).filter(GoogleToken.user_id == user_id).first()
            if token is not None:
                token.access_token = access_token
                token.expires_at = expires_at
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _access_token(self, user_id: UUID) -> str:
        """Return a valid access token, refreshing it when expired"""
        stored = await run_in_threadpool(self._load_token, user_id)
        if stored is None:
            raise DriveNotConnected(f"User {user_id} has no Google Drive token")

        access_token, refresh_token, expires_at = stored
        if datetime.utcnow() < expires_at:
            return access_token

        if not refresh_token:
            raise DriveNotConnected(f"Drive token for user {user_id} expired and cannot be refreshed")

        logger.info(f"Refreshing Google access token for user {user_id}")
        tokens = await refresh_access_token(refresh_token)
        await run_in_threadpool(self._save_token, user_id, tokens.access_token, tokens.expires_at)
        return tokens.access_token

    async def _request(self, user_id: UUID, method: str, url: str, **kwargs) -> httpx.Response:
        access_token = await self._access_token(user_id)
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            async with httpx.AsyncClient(timeout=settings.REMOTE_TIMEOUT_SECONDS) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteStoreFailure(f"Drive {method} {url} failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Drive {method} {url} returned {response.status_code}: {response.text}")
            raise RemoteStoreFailure(f"Drive {method} returned {response.status_code}")
        return response

    async def upload(self, user_id: UUID, data: bytes, name: str) -> str:
        metadata = {
            "name": f"{name}.encrypted",
            "parents": ["appDataFolder"],
            "properties": {"encrypted": "true", "uploadedBy": "drivevault"},
        }
        files = {
            "metadata": (None, json.dumps(metadata), "application/json"),
            "file": (f"{name}.encrypted", data, "application/octet-stream"),
        }
        response = await self._request(
            user_id, "POST", f"{settings.DRIVE_UPLOAD_URL}?uploadType=multipart", files=files
        )
        drive_file_id = response.json().get("id")
        if not drive_file_id:
            raise RemoteStoreFailure("Drive upload response has no file id")
        return drive_file_id

    async def download(self, user_id: UUID, handle: str) -> bytes:
        response = await self._request(
            user_id, "GET", f"{settings.DRIVE_API_URL}/files/{handle}", params={"alt": "media"}
        )
        return response.content

    async def delete(self, user_id: UUID, handle: str) -> None:
        await self._request(user_id, "DELETE", f"{settings.DRIVE_API_URL}/files/{handle}")
