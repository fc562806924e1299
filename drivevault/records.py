"""
Record Store
Detached value objects for the encryption core and the SQLAlchemy-backed
store that loads and saves them.

The re-encryption worker runs outside any request, so it never holds an
ORM session across awaits. Every store call opens its own short session
and returns plain dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from drivevault.exceptions import RecordNotFound
from drivevault.models import User, UserKey, File


@dataclass(frozen=True)
class CredentialRecord:
    """Password verification record (salt and verifier are base64 text)"""
    user_id: UUID
    salt: str
    verification_hash: str


@dataclass(frozen=True)
class EncryptedFileRecord:
    """Metadata needed to locate and decrypt one stored file"""
    file_id: UUID
    user_id: UUID
    remote_handle: Optional[str]
    nonce: str
    salt: str
    auth_tag: str
    file_name: str
    mime_type: str
    file_size: int

    @classmethod
    def from_row(cls, row: File) -> "EncryptedFileRecord":
        return cls(
            file_id=row.id,
            user_id=row.user_id,
            remote_handle=row.drive_file_id,
            nonce=row.iv,
            salt=row.salt,
            auth_tag=row.auth_tag,
            file_name=row.file_name,
            mime_type=row.mime_type,
            file_size=row.file_size,
        )


# Record field name -> files column
_FILE_COLUMNS = {
    "remote_handle": "drive_file_id",
    "nonce": "iv",
    "salt": "salt",
    "auth_tag": "auth_tag",
    "file_name": "file_name",
    "mime_type": "mime_type",
    "file_size": "file_size",
}


class SqlRecordStore:
    """Record store over the relational database"""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def user_exists(self, user_id: UUID) -> bool:
        db = self._session_factory()
        try:
            return db.query(User.id).filter(User.id == user_id).first() is not None
        finally:
            db.close()

    def get_credential(self, user_id: UUID) -> Optional[CredentialRecord]:
        db = self._session_factory()
        try:
            row = db.query(UserKey).filter(UserKey.user_id == user_id).first()
            if row is None:
                return None
            return CredentialRecord(user_id=row.user_id, salt=row.salt,
                                    verification_hash=row.key_hash)
        finally:
            db.close()

    def put_credential(self, record: CredentialRecord) -> None:
        """Insert or replace the user's credential; salt and hash change together"""
        db = self._session_factory()
        try:
            row = db.query(UserKey).filter(UserKey.user_id == record.user_id).first()
            if row is None:
                db.add(UserKey(user_id=record.user_id, salt=record.salt,
                               key_hash=record.verification_hash))
            else:
                row.salt = record.salt
                row.key_hash = record.verification_hash
                row.updated_at = datetime.utcnow()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_file(self, file_id: UUID) -> Optional[EncryptedFileRecord]:
        db = self._session_factory()
        try:
            row = db.query(File).filter(File.id == file_id).first()
            return EncryptedFileRecord.from_row(row) if row is not None else None
        finally:
            db.close()

    def list_files(self, user_id: UUID) -> List[EncryptedFileRecord]:
        db = self._session_factory()
        try:
            rows = db.query(File).filter(File.user_id == user_id).order_by(File.created_at).all()
            return [EncryptedFileRecord.from_row(row) for row in rows]
        finally:
            db.close()

    def update_file(self, file_id: UUID, **fields) -> EncryptedFileRecord:
        """
        Atomically update a subset of a file's fields (one transaction).

        Raises:
            RecordNotFound: the file row no longer exists
            ValueError: unknown field name
        """
        unknown = set(fields) - set(_FILE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown file fields: {sorted(unknown)}")

        db = self._session_factory()
        try:
            row = db.query(File).filter(File.id == file_id).first()
            if row is None:
                raise RecordNotFound(f"File {file_id} not found")
            for name, value in fields.items():
                setattr(row, _FILE_COLUMNS[name], value)
            row.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(row)
            return EncryptedFileRecord.from_row(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
