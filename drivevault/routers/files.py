"""
File Routes
Upload, list, download and delete encrypted files.

Two ways in and out:

  /upload-encrypted, /download-encrypted
      The client encrypts and decrypts. The server only sees ciphertext
      plus the base64 iv, salt and auth_tag, and never the password.

  /upload, /download
      Server-side convenience for clients that cannot run the cipher.
      The password and plaintext travel in the request, so these are only
      for trusted deployments.

Every new row is committed under the owner's rotation lock (see
ReEncryptionEngine.user_lock) and refused while a password change is
pending or running, or if the credential changed since the request
started.
"""

import logging
from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status, UploadFile, File as FileParam, Form
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from sqlalchemy.orm import Session

from drivevault.config import settings
from drivevault.database import get_db
from drivevault.dependencies import (
    get_current_user, get_record_store, get_blob_store, get_reencryption_engine
)
from drivevault.exceptions import NoCredentialRecord
from drivevault.models import User, File
from drivevault.records import SqlRecordStore
from drivevault.reencryption import ReEncryptionEngine
from drivevault.schemas import (
    FileListResponse, FileUploadResponse, FileDownloadRequest,
    EncryptedDownloadRequest, EncryptedDownloadResponse
)
from drivevault.utils.credentials import verify_password
from drivevault.utils.crypto import (
    TAG_SIZE, EncryptedPayload, b64encode, decrypt_from_storage, encrypt_for_storage, parse_envelope
)
from drivevault.utils.google_drive import BlobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/files", tags=["Files"])

ROTATION_IN_PROGRESS = "Files are being re-encrypted after a password change. Try again when it finishes."


def get_owned_file(db: Session, file_id: UUID, user: User) -> File:
    """Load a file row owned by the user or raise 404"""
    file_record = db.query(File).filter(
        File.id == file_id,
        File.user_id == user.id
    ).first()

    if not file_record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found"
        )
    return file_record


def ensure_no_rotation(engine: ReEncryptionEngine, user_id: UUID) -> None:
    if engine.has_active_job(user_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=ROTATION_IN_PROGRESS
        )


async def current_credential_salt(records: SqlRecordStore, user_id: UUID) -> str:
    """Salt of the credential the request is working against"""
    credential = await run_in_threadpool(records.get_credential, user_id)
    if credential is None:
        raise NoCredentialRecord(f"No credential record for user {user_id}")
    return credential.salt


async def read_upload(file: UploadFile) -> bytes:
    data = await file.read()
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.MAX_UPLOAD_BYTES} bytes"
        )
    return data


async def store_encrypted_file(
    db: Session,
    user: User,
    records: SqlRecordStore,
    blobs: BlobStore,
    engine: ReEncryptionEngine,
    payload: EncryptedPayload,
    file_name: str,
    mime_type: str,
    file_size: int,
    credential_salt: str
) -> File:
    """
    Upload ciphertext to Drive, then insert its row under the rotation lock.
    The Drive object is removed again if the row cannot be committed.
    """
    drive_file_id = await blobs.upload(user.id, payload.ciphertext, file_name)
    logger.info(f"File uploaded to Google Drive: {drive_file_id}")

    try:
        async with engine.user_lock(user.id):
            ensure_no_rotation(engine, user.id)
            if await current_credential_salt(records, user.id) != credential_salt:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Encryption password changed during upload. Please upload again."
                )

            new_file = File(
                user_id=user.id,
                drive_file_id=drive_file_id,
                iv=payload.iv_b64,
                salt=payload.salt_b64,
                auth_tag=payload.auth_tag_b64,
                file_name=file_name,
                mime_type=mime_type,
                file_size=file_size,
            )
            db.add(new_file)
            db.commit()
            db.refresh(new_file)
    except Exception:
        db.rollback()
        try:
            await blobs.delete(user.id, drive_file_id)
        except Exception as cleanup_error:
            logger.warning(f"Could not remove orphaned Drive file {drive_file_id}: {cleanup_error}")
        raise

    return new_file


@router.get("", response_model=FileListResponse)
async def list_files(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List the user's files, newest first (metadata only)."""
    files = db.query(File).filter(
        File.user_id == current_user.id
    ).order_by(File.created_at.desc()).all()

    return {"files": files}


@router.post("/upload-encrypted", response_model=FileUploadResponse,
             status_code=status.HTTP_201_CREATED)
async def upload_encrypted_file(
    file: UploadFile = FileParam(...),
    iv: str = Form(...),
    salt: str = Form(...),
    auth_tag: str = Form(...),
    original_file_name: str = Form(None),
    original_mime_type: str = Form(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    records: SqlRecordStore = Depends(get_record_store),
    blobs: BlobStore = Depends(get_blob_store),
    engine: ReEncryptionEngine = Depends(get_reencryption_engine)
):
    """
    Store a file the client already encrypted.

    `file` is the AES-GCM output (body || tag); iv, salt and auth_tag are
    base64. The recorded size is the plaintext size.
    """
    ensure_no_rotation(engine, current_user.id)
    credential_salt = await current_credential_salt(records, current_user.id)

    ciphertext = await read_upload(file)
    payload = parse_envelope(ciphertext, iv, salt, auth_tag)

    new_file = await store_encrypted_file(
        db, current_user, records, blobs, engine, payload,
        file_name=original_file_name or file.filename or "file",
        mime_type=original_mime_type or file.content_type or "application/octet-stream",
        file_size=len(ciphertext) - TAG_SIZE,
        credential_salt=credential_salt,
    )

    return FileUploadResponse(
        file_id=new_file.id,
        message="File uploaded successfully"
    )


@router.post("/upload", response_model=FileUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = FileParam(...),
    password: str = Form(..., min_length=1),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    records: SqlRecordStore = Depends(get_record_store),
    blobs: BlobStore = Depends(get_blob_store),
    engine: ReEncryptionEngine = Depends(get_reencryption_engine)
):
    """
    Encrypt a file on the server with the user's password and store it.

    The password is checked against the stored verifier first, so nothing
    is ever encrypted under a password that will not match later.
    """
    plaintext = await read_upload(file)
    ensure_no_rotation(engine, current_user.id)

    # Read before verifying: a rotation in between is caught at commit
    credential_salt = await current_credential_salt(records, current_user.id)
    if not await run_in_threadpool(verify_password, records, current_user.id, password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Incorrect password"
        )

    payload = await run_in_threadpool(encrypt_for_storage, plaintext, password)

    new_file = await store_encrypted_file(
        db, current_user, records, blobs, engine, payload,
        file_name=file.filename or "file",
        mime_type=file.content_type or "application/octet-stream",
        file_size=len(plaintext),
        credential_salt=credential_salt,
    )

    return FileUploadResponse(
        file_id=new_file.id,
        message="File uploaded and encrypted successfully"
    )


def ensure_uploaded(file_record: File) -> None:
    if not file_record.drive_file_id:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="File has not been uploaded"
        )


@router.post("/download-encrypted", response_model=EncryptedDownloadResponse)
async def download_encrypted_file(
    request_data: EncryptedDownloadRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store)
):
    """Return the stored ciphertext and its metadata for local decryption."""
    file_record = get_owned_file(db, request_data.file_id, current_user)
    ensure_uploaded(file_record)

    ciphertext = await blobs.download(current_user.id, file_record.drive_file_id)

    return EncryptedDownloadResponse(
        file_id=file_record.id,
        file_name=file_record.file_name,
        mime_type=file_record.mime_type,
        iv=file_record.iv,
        salt=file_record.salt,
        auth_tag=file_record.auth_tag,
        encrypted_data=b64encode(ciphertext),
    )


@router.post("/download")
async def download_file(
    request_data: FileDownloadRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store)
):
    """Fetch a file from Drive and return the bytes decrypted on the server."""
    file_record = get_owned_file(db, request_data.file_id, current_user)
    ensure_uploaded(file_record)

    ciphertext = await blobs.download(current_user.id, file_record.drive_file_id)
    plaintext = await run_in_threadpool(
        decrypt_from_storage, ciphertext, request_data.password, file_record.iv, file_record.salt
    )

    return Response(
        content=plaintext,
        media_type=file_record.mime_type,
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(file_record.file_name)}"
        }
    )



@router.delete("/{file_id}")
async def delete_file(
    file_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store)
):
    """Delete the Drive object (best effort) and the file record."""
    file_record = get_owned_file(db, file_id, current_user)

    if file_record.drive_file_id:
        try:
            await blobs.delete(current_user.id, file_record.drive_file_id)
            logger.info(f"File deleted from Google Drive: {file_record.drive_file_id}")
        except Exception as e:
            # Continue with database deletion even if Drive deletion fails
            logger.error(f"Failed to delete from Google Drive: {e}")

    db.delete(file_record)
    db.commit()

    return {"success": True}
