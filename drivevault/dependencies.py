"""
Dependency Functions
FastAPI dependency injection for auth, database access, storage and jobs
"""

from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from drivevault.config import settings
from drivevault.database import SessionLocal, get_db
from drivevault.models import User
from drivevault.records import SqlRecordStore
from drivevault.reencryption import InMemoryJobStore, ReEncryptionEngine
from drivevault.utils.auth import decode_access_token
from drivevault.utils.google_drive import GoogleDriveStore

# Security scheme for bearer token
security = HTTPBearer()

# Process-wide collaborators. Job history is lost on restart.
record_store = SqlRecordStore(SessionLocal)
blob_store = GoogleDriveStore(SessionLocal)
job_store = InMemoryJobStore()
reencryption_engine = ReEncryptionEngine(
    record_store, blob_store, job_store, concurrency=settings.REENCRYPTION_CONCURRENCY
)


def get_record_store() -> SqlRecordStore:
    return record_store


def get_blob_store() -> GoogleDriveStore:
    return blob_store


def get_reencryption_engine() -> ReEncryptionEngine:
    return reencryption_engine


def get_user_by_external_id(db: Session, external_id: str) -> Optional[User]:
    return db.query(User).filter(User.external_id == external_id).first()


def get_token_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Dependency returning the verified claims of the bearer token

    Raises:
        HTTPException: If token is invalid or has no subject
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None or payload.get("sub") is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_user(
    claims: dict = Depends(get_token_claims),
    db: Session = Depends(get_db)
) -> User:
    """
    Dependency to get current authenticated user from JWT token

    Raises:
        HTTPException: 401 if the token is invalid, 404 if user-init was never called
    """
    user = get_user_by_external_id(db, claims["sub"])

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    return user
