"""
SQLAlchemy Models
Database table definitions for users, encryption keys, files and Drive tokens

Encryption Design:
  - File bodies are encrypted (AES-256-GCM) before they reach Google Drive.
  - Only the metadata needed to reverse the encryption is stored here:
      files:      iv (nonce), salt, auth_tag          -> base64 text
      user_keys:  salt, key_hash (password verifier)  -> base64 text
  - The encryption key itself is never stored; it is re-derived from the
    user's password and the per-file salt on every access.
  - file_name, mime_type and file_size stay plaintext (listing and display).
"""

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid

from drivevault.database import Base


class User(Base):
    """User model, one row per identity-provider subject"""
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    external_id = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow,
                        onupdate=datetime.utcnow, nullable=False)

    # Relationships
    key = relationship("UserKey", back_populates="user", uselist=False,
                       cascade="all, delete-orphan")
    files = relationship("File", back_populates="user", cascade="all, delete-orphan")
    google_token = relationship("GoogleToken", back_populates="user", uselist=False,
                                cascade="all, delete-orphan")


class UserKey(Base):
    """
    Password verification record.

    salt:     base64 16-byte PBKDF2 salt, regenerated on every password change
    key_hash: base64 verifier derived from (password, salt); never an encryption key

    Exactly one row per user. salt and key_hash are always written together.
    """
    __tablename__ = "user_keys"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"),
                     unique=True, nullable=False, index=True)
    salt = Column(Text, nullable=False)
    key_hash = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow,
                        onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="key")


class File(Base):
    """
    Encrypted file stored in the owner's Google Drive.

    drive_file_id: remote handle; null only before the upload completes
    iv:            base64 12-byte AES-GCM nonce, fresh per encryption
    salt:          base64 16-byte salt for this file's key (independent of user_keys.salt)
    auth_tag:      base64 GCM tag (also the last 16 bytes of the stored ciphertext)
    """
    __tablename__ = "files"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"),
                     nullable=False, index=True)
    drive_file_id = Column(String(255), nullable=True)
    iv = Column(Text, nullable=False)
    salt = Column(Text, nullable=False)
    auth_tag = Column(Text, nullable=False)
    file_name = Column(String(500), nullable=False)
    mime_type = Column(String(255), nullable=False, default="application/octet-stream")
    file_size = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow,
                        nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow,
                        onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="files")


class GoogleToken(Base):
    """OAuth tokens for the user's Google Drive (drive.file + drive.appdata scopes)"""
    __tablename__ = "google_tokens"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"),
                     unique=True, nullable=False, index=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow,
                        onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="google_token")
