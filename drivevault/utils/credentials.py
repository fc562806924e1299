"""
Password Verification
Checks a supplied encryption password against the user's stored verifier,
and creates or rotates that verifier.

The verifier is derived with a different HKDF context than file keys
(see utils/crypto.py), so the user_keys table never holds anything that
can decrypt a file.
"""

import hmac
import logging
import secrets
from uuid import UUID

from drivevault.exceptions import InvalidCredentialInput, NoCredentialRecord
from drivevault.records import CredentialRecord
from drivevault.utils.crypto import (
    SALT_SIZE, b64decode, b64encode, derive_verifier, generate_salt
)

logger = logging.getLogger(__name__)


def build_credential(user_id: UUID, password: str) -> CredentialRecord:
    """Create a fresh salt + verifier pair for a password"""
    salt = generate_salt()
    verifier = derive_verifier(password, salt)
    return CredentialRecord(
        user_id=user_id,
        salt=b64encode(salt),
        verification_hash=b64encode(verifier),
    )


def verify_password(records, user_id: UUID, password: str) -> bool:
    """
    Check a password against the stored verifier in constant time.

    Args:
        records: Record store (get_credential)
        user_id: Owner of the credential
        password: Supplied password

    Returns:
        True on match, False otherwise (including an empty password)

    Raises:
        NoCredentialRecord: user has never set a password
        InvalidCredentialInput: stored salt is malformed
    """
    record = records.get_credential(user_id)
    if record is None:
        raise NoCredentialRecord(f"No credential record for user {user_id}")

    salt = b64decode(record.salt)
    if len(salt) != SALT_SIZE:
        raise InvalidCredentialInput(f"Stored salt for user {user_id} has wrong length")
    stored = b64decode(record.verification_hash)

    if not password:
        return False

    candidate = derive_verifier(password, salt)
    return hmac.compare_digest(candidate, stored)


def throwaway_credential(user_id: UUID) -> CredentialRecord:
    """
    Initial credential for a new user, built from a random password nobody
    knows. Uploads stay impossible until the user sets a real password.
    """
    return build_credential(user_id, secrets.token_urlsafe(24))


def rotate_credentials(records, user_id: UUID, new_password: str) -> CredentialRecord:
    """Replace salt and verifier in a single store write"""
    if records.get_credential(user_id) is None:
        raise NoCredentialRecord(f"No credential record for user {user_id}")
    record = build_credential(user_id, new_password)
    records.put_credential(record)
    logger.info(f"Rotated encryption credentials for user {user_id}")
    return record
