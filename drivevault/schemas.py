"""
Pydantic Schemas
Request/Response models for API validation

Binary encryption metadata (iv, salt, auth_tag) always crosses the API as
base64 text. Passwords are accepted in request bodies only and are never
echoed back.
"""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime
from uuid import UUID

from drivevault.reencryption import JobStatus


# ════════════════════════════════════════════════════════════
# User Schemas
# ════════════════════════════════════════════════════════════

class UserResponse(BaseModel):
    id: UUID
    email: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UserInitResponse(BaseModel):
    success: bool = True
    user: UserResponse
    created: bool
    message: str


# ════════════════════════════════════════════════════════════
# Password Schemas
# ════════════════════════════════════════════════════════════

class VerifyPasswordRequest(BaseModel):
    password: str = Field(..., min_length=1)


class VerifyPasswordResponse(BaseModel):
    success: bool = True
    is_valid: bool


class SetPasswordRequest(BaseModel):
    """First real encryption password, replacing the random one from user-init."""
    new_password: str = Field(..., min_length=8, max_length=256)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=256)


class ChangePasswordResponse(BaseModel):
    success: bool = True
    job_id: str
    total_files: int
    message: str


# ════════════════════════════════════════════════════════════
# Re-encryption Job Schemas
# ════════════════════════════════════════════════════════════

class ReEncryptionJobResponse(BaseModel):
    job_id: str
    user_id: UUID
    total_files: int
    processed_files: int
    failed_files: int
    status: JobStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    errors: Dict[str, str] = {}

    class Config:
        from_attributes = True


class ReEncryptionJobList(BaseModel):
    jobs: List[ReEncryptionJobResponse]


# ════════════════════════════════════════════════════════════
# File Schemas
# ════════════════════════════════════════════════════════════

class FileResponse(BaseModel):
    """File metadata; the body stays encrypted in Drive"""
    id: UUID
    file_name: str
    mime_type: str
    file_size: int
    drive_file_id: Optional[str] = None
    iv: str
    salt: str
    auth_tag: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class FileListResponse(BaseModel):
    files: List[FileResponse]


class FileUploadResponse(BaseModel):
    success: bool = True
    file_id: UUID
    message: str


class FileDownloadRequest(BaseModel):
    file_id: UUID
    password: str = Field(..., min_length=1)


class EncryptedDownloadRequest(BaseModel):
    file_id: UUID


class EncryptedDownloadResponse(BaseModel):
    """Everything a client needs to decrypt locally; encrypted_data is base64"""
    file_id: UUID
    file_name: str
    mime_type: str
    iv: str
    salt: str
    auth_tag: str
    encrypted_data: str


# ════════════════════════════════════════════════════════════
# Google Drive Schemas
# ════════════════════════════════════════════════════════════

class GoogleAuthUrlResponse(BaseModel):
    url: str


class GoogleStatusResponse(BaseModel):
    connected: bool
