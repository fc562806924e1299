"""
Authentication Routes
User initialization, encryption-password verification and Google Drive linking

Identity is external: the bearer token's subject identifies the user.

USER INIT:
  1. First authenticated call creates the users row
  2. A user_keys row is created from a random throwaway password
  3. The user sets a real password in settings before uploading

GOOGLE DRIVE:
  1. /google/url returns the consent URL; state is a short-lived signed token
  2. Google redirects to /google/callback?code=...&state=...
  3. The code is exchanged for tokens, stored in google_tokens
"""

import logging
from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from drivevault.config import settings
from drivevault.database import get_db
from drivevault.dependencies import (
    get_current_user, get_record_store, get_token_claims, get_user_by_external_id
)
from drivevault.models import User, UserKey, GoogleToken
from drivevault.records import SqlRecordStore
from drivevault.schemas import (
    UserResponse, UserInitResponse, VerifyPasswordRequest, VerifyPasswordResponse,
    GoogleAuthUrlResponse, GoogleStatusResponse
)
from drivevault.utils.auth import create_access_token, decode_access_token
from drivevault.utils.credentials import throwaway_credential, verify_password
from drivevault.utils.google_oauth import exchange_code_for_token, get_google_auth_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

OAUTH_STATE_PURPOSE = "google-oauth"


def already_initialized(user: User) -> UserInitResponse:
    return UserInitResponse(
        user=UserResponse.model_validate(user),
        created=False,
        message="User already initialized"
    )


@router.post("/user-init", response_model=UserInitResponse)
async def user_init(
    claims: dict = Depends(get_token_claims),
    db: Session = Depends(get_db)
):
    """
    Create the user and an initial credential record on first login.
    Idempotent: returns the existing user with 200, a new one with 201.
    A concurrent first call that loses the insert race also gets 200.
    """
    existing_user = get_user_by_external_id(db, claims["sub"])
    if existing_user:
        return already_initialized(existing_user)

    try:
        new_user = User(
            external_id=claims["sub"],
            email=claims.get("email"),
            name=claims.get("name") or "User",
        )
        db.add(new_user)
        db.flush()  # Get user ID without committing transaction

        credential = await run_in_threadpool(throwaway_credential, new_user.id)
        db.add(UserKey(
            user_id=new_user.id,
            salt=credential.salt,
            key_hash=credential.verification_hash,
        ))

        db.commit()
        db.refresh(new_user)
    except IntegrityError:
        db.rollback()
        existing_user = get_user_by_external_id(db, claims["sub"])
        if existing_user is None:
            raise
        return already_initialized(existing_user)
    except Exception:
        db.rollback()
        raise

    logger.info(f"Initialized user {new_user.id}")
    body = UserInitResponse(
        user=UserResponse.model_validate(new_user),
        created=True,
        message="User initialized"
    )
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=body.model_dump(mode="json"))


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current authenticated user info."""
    return current_user


@router.post("/verify-password", response_model=VerifyPasswordResponse)
async def verify_encryption_password(
    payload: VerifyPasswordRequest,
    current_user: User = Depends(get_current_user),
    records: SqlRecordStore = Depends(get_record_store)
):
    """
    Check the encryption password before the client starts an upload.
    Raises NoCredentialRecord (400) if no password was ever set.
    """
    is_valid = await run_in_threadpool(verify_password, records, current_user.id, payload.password)
    return VerifyPasswordResponse(is_valid=is_valid)


# ════════════════════════════════════════════════════════════
# Google Drive connection
# ════════════════════════════════════════════════════════════

@router.get("/google/url", response_model=GoogleAuthUrlResponse)
async def google_auth_url(current_user: User = Depends(get_current_user)):
    """Consent URL for connecting the user's Google Drive"""
    state = create_access_token(
        data={"sub": str(current_user.id), "purpose": OAUTH_STATE_PURPOSE},
        expires_delta=timedelta(minutes=10)
    )
    return GoogleAuthUrlResponse(url=get_google_auth_url(state))


@router.get("/google/callback")
async def google_callback(
    code: str = Query(..., min_length=1),
    state: str = Query(..., min_length=1),
    db: Session = Depends(get_db)
):
    """
    OAuth redirect target. The browser arrives without a bearer token,
    so the user is identified by the signed state issued by /google/url.
    """
    claims = decode_access_token(state)
    if claims is None or claims.get("purpose") != OAUTH_STATE_PURPOSE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired OAuth state"
        )

    try:
        user_id = UUID(claims["sub"])
    except (KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired OAuth state"
        )

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    tokens = await exchange_code_for_token(code)

    existing = db.query(GoogleToken).filter(GoogleToken.user_id == user.id).first()
    if existing:
        existing.access_token = tokens.access_token
        existing.refresh_token = tokens.refresh_token or existing.refresh_token
        existing.expires_at = tokens.expires_at
    else:
        db.add(GoogleToken(
            user_id=user.id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
        ))
    db.commit()

    logger.info(f"Google Drive connected for user {user.id}")
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/dashboard")


@router.get("/check-google-status", response_model=GoogleStatusResponse)
async def check_google_status(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    token = db.query(GoogleToken.id).filter(GoogleToken.user_id == current_user.id).first()
    return GoogleStatusResponse(connected=token is not None)


@router.post("/disconnect-google")
async def disconnect_google(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db.query(GoogleToken).filter(GoogleToken.user_id == current_user.id).delete()
    db.commit()
    return {"success": True}
