"""
Settings Routes
Encryption password management, re-encryption progress and account deletion

PASSWORD CHANGE:
  1. Old password must verify against user_keys
  2. A re-encryption job is created (file list snapshot, status pending)
  3. user_keys gets a new salt + verifier
  4. The job is launched in the background; the job id is returned at once
  5. The client polls /reencryption/{job_id} until completed or failed
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from drivevault.database import get_db
from drivevault.dependencies import (
    get_current_user, get_record_store, get_blob_store, get_reencryption_engine
)
from drivevault.models import User, File
from drivevault.records import SqlRecordStore
from drivevault.reencryption import ReEncryptionEngine
from drivevault.schemas import (
    SetPasswordRequest, ChangePasswordRequest, ChangePasswordResponse,
    ReEncryptionJobResponse, ReEncryptionJobList
)
from drivevault.utils.credentials import rotate_credentials, verify_password
from drivevault.utils.google_drive import BlobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["Settings"])


@router.post("/set-password")
async def set_password(
    payload: SetPasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    records: SqlRecordStore = Depends(get_record_store),
    engine: ReEncryptionEngine = Depends(get_reencryption_engine)
):
    """
    Replace the throwaway password from user-init.
    Only allowed while the user has no files; afterwards the old password
    is needed to re-encrypt them, so change-password must be used.
    """
    async with engine.user_lock(current_user.id):
        has_files = db.query(File.id).filter(File.user_id == current_user.id).first() is not None
        if has_files or engine.has_active_job(current_user.id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Files already exist. Use change-password with your current password."
            )

        await run_in_threadpool(rotate_credentials, records, current_user.id, payload.new_password)

    return {"success": True, "message": "Encryption password set"}


@router.post("/change-password", response_model=ChangePasswordResponse,
             status_code=status.HTTP_202_ACCEPTED)
async def change_password(
    payload: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    records: SqlRecordStore = Depends(get_record_store),
    engine: ReEncryptionEngine = Depends(get_reencryption_engine)
):
    """
    Rotate the encryption password and re-encrypt every file in the background.

    The whole check -> verify -> snapshot -> rotate -> launch sequence runs
    under the user's lock, so a second request sees the first job and gets
    409, and no upload can commit between the snapshot and the rotation.
    """
    async with engine.user_lock(current_user.id):
        if engine.has_active_job(current_user.id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A re-encryption job is already running"
            )

        if not await run_in_threadpool(verify_password, records, current_user.id, payload.old_password):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Incorrect password"
            )

        job = await engine.create_job(current_user.id)
        try:
            await run_in_threadpool(rotate_credentials, records, current_user.id, payload.new_password)
        except Exception:
            engine.abandon(job.job_id)
            raise

        engine.launch(job.job_id, payload.old_password, payload.new_password)

    logger.info(f"Password changed for user {current_user.id}, job {job.job_id} started")

    return ChangePasswordResponse(
        job_id=job.job_id,
        total_files=job.total_files,
        message="Password changed. Files are being re-encrypted."
    )


@router.get("/reencryption", response_model=ReEncryptionJobList)
async def list_reencryption_jobs(
    current_user: User = Depends(get_current_user),
    engine: ReEncryptionEngine = Depends(get_reencryption_engine)
):
    return {"jobs": engine.jobs.list_for_user(current_user.id)}


@router.get("/reencryption/{job_id}", response_model=ReEncryptionJobResponse)
async def get_reencryption_status(
    job_id: str,
    current_user: User = Depends(get_current_user),
    engine: ReEncryptionEngine = Depends(get_reencryption_engine)
):
    """Progress of a re-encryption job owned by the caller."""
    job = engine.get_status(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )

    # Verify job belongs to authenticated user
    if job.user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view this job"
        )

    return job


@router.delete("/account")
async def delete_account(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
    engine: ReEncryptionEngine = Depends(get_reencryption_engine)
):
    """
    Delete every Drive object (best effort), then the user and all their rows.
    Refused while a re-encryption job could still upload new objects.
    """
    async with engine.user_lock(current_user.id):
        if engine.has_active_job(current_user.id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Files are being re-encrypted. Delete the account when it finishes."
            )

        files = db.query(File).filter(File.user_id == current_user.id).all()

        for file_record in files:
            if not file_record.drive_file_id:
                continue
            try:
                await blobs.delete(current_user.id, file_record.drive_file_id)
            except Exception as e:
                # Continue with next file
                logger.error(f"Failed to delete Drive file {file_record.drive_file_id}: {e}")

        user_id = current_user.id
        db.delete(current_user)
        db.commit()

    logger.info(f"Deleted account {user_id}")
    return {"success": True}
