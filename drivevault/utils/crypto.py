"""
File Encryption Primitives

Implements the password-based envelope used for every stored file:
- PBKDF2-HMAC-SHA256 key stretching (>= 100,000 iterations)
- HKDF-SHA256 domain separation between the file key and the password verifier
- AES-256-GCM authenticated encryption with a random 96-bit nonce per call

Stored metadata per file:
    salt (16) | iv (12) | auth_tag (16)   -> base64 text columns
The ciphertext uploaded to Drive is AES-GCM output, i.e. body || tag.

Everything here is pure and CPU-bound. Async callers must run it on the
thread pool (see reencryption.py).
"""

import base64
import binascii
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from drivevault.config import settings
from drivevault.exceptions import AuthenticationFailure, InvalidCredentialInput


# Constants
SALT_SIZE = 16              # 128-bit salt
NONCE_SIZE = 12             # 96-bit nonce for GCM
TAG_SIZE = 16               # 128-bit GCM tag
KEY_SIZE = 32               # 256-bit keys
MIN_PBKDF2_ITERATIONS = 100_000

# HKDF info strings, one per use of the stretched password
FILE_KEY_INFO = b"drivevault/file-key/v1"
VERIFIER_INFO = b"drivevault/password-verifier/v1"


@dataclass(frozen=True)
class EncryptedPayload:
    """Output of encrypt_for_storage: ciphertext plus the metadata to reverse it."""
    ciphertext: bytes
    nonce: bytes
    salt: bytes
    auth_tag: bytes

    @property
    def iv_b64(self) -> str:
        return b64encode(self.nonce)

    @property
    def salt_b64(self) -> str:
        return b64encode(self.salt)

    @property
    def auth_tag_b64(self) -> str:
        return b64encode(self.auth_tag)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    """Decode base64 text, raising InvalidCredentialInput on malformed input."""
    if not value:
        raise InvalidCredentialInput("Missing base64 value")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidCredentialInput(f"Malformed base64 value: {e}") from e


def generate_salt() -> bytes:
    return secrets.token_bytes(SALT_SIZE)


def generate_nonce() -> bytes:
    return secrets.token_bytes(NONCE_SIZE)


def _check_derivation_input(password: str, salt: bytes) -> None:
    if not isinstance(password, str) or not password:
        raise InvalidCredentialInput("Password must be a non-empty string")
    if not isinstance(salt, (bytes, bytearray)) or len(salt) != SALT_SIZE:
        raise InvalidCredentialInput(f"Salt must be exactly {SALT_SIZE} bytes")


def _stretch(password: str, salt: bytes, iterations: Optional[int]) -> bytes:
    """Slow step shared by both derivations."""
    _check_derivation_input(password, salt)
    rounds = iterations or settings.PBKDF2_ITERATIONS
    if rounds < MIN_PBKDF2_ITERATIONS:
        raise InvalidCredentialInput(
            f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}"
        )
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=bytes(salt),
        iterations=rounds,
    )
    return kdf.derive(password.encode("utf-8"))


def _expand(stretched: bytes, info: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=info,
    ).derive(stretched)


def derive_key(password: str, salt: bytes, iterations: Optional[int] = None) -> bytes:
    """
    Derive the AES-256 file key from a password and a 16-byte salt.

    Args:
        password: User's encryption password
        salt: Random per-file salt
        iterations: PBKDF2 rounds (defaults to settings.PBKDF2_ITERATIONS)

    Returns:
        32-byte key, only ever used with AES-GCM
    """
    return _expand(_stretch(password, salt, iterations), FILE_KEY_INFO)


def derive_verifier(password: str, salt: bytes, iterations: Optional[int] = None) -> bytes:
    """
    Derive the storable password verifier.
    Uses a different HKDF info string than derive_key, so the stored
    verifier reveals nothing about any file key.
    """
    return _expand(_stretch(password, salt, iterations), VERIFIER_INFO)


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise InvalidCredentialInput(f"Key must be exactly {KEY_SIZE} bytes")


def encrypt(plaintext: bytes, key: bytes) -> Tuple[bytes, bytes]:
    """
    Encrypt a buffer with AES-256-GCM under a fresh random nonce.

    Returns:
        Tuple of (ciphertext with trailing tag, nonce)
    """
    _check_key(key)
    nonce = generate_nonce()
    ciphertext = AESGCM(bytes(key)).encrypt(nonce, bytes(plaintext), None)
    return ciphertext, nonce


def decrypt(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """
    Decrypt and authenticate an AES-256-GCM buffer.

    Raises:
        AuthenticationFailure: tag mismatch (wrong key, wrong nonce, tampering)
        InvalidCredentialInput: malformed key or nonce
    """
    _check_key(key)
    if not isinstance(nonce, (bytes, bytearray)) or len(nonce) != NONCE_SIZE:
        raise InvalidCredentialInput(f"Nonce must be exactly {NONCE_SIZE} bytes")
    if len(ciphertext) < TAG_SIZE:
        raise AuthenticationFailure("Ciphertext is shorter than the GCM tag")
    try:
        return AESGCM(bytes(key)).decrypt(bytes(nonce), bytes(ciphertext), None)
    except InvalidTag as e:
        raise AuthenticationFailure("Authentication tag did not verify") from e


def encrypt_for_storage(plaintext: bytes, password: str,
                        iterations: Optional[int] = None) -> EncryptedPayload:
    """Encrypt a whole file under a key derived from password and a fresh salt."""
    salt = generate_salt()
    key = derive_key(password, salt, iterations)
    ciphertext, nonce = encrypt(plaintext, key)
    return EncryptedPayload(
        ciphertext=ciphertext,
        nonce=nonce,
        salt=salt,
        auth_tag=ciphertext[-TAG_SIZE:],
    )


def parse_envelope(ciphertext: bytes, iv_b64: str, salt_b64: str,
                   auth_tag_b64: str) -> EncryptedPayload:
    """
    Validate a payload that was encrypted on the client.

    The server cannot check the tag without the password, so only the
    shape is enforced: 12-byte iv, 16-byte salt, 16-byte tag equal to the
    last 16 bytes of the ciphertext.

    Raises:
        InvalidCredentialInput: any field is malformed
    """
    nonce = b64decode(iv_b64)
    salt = b64decode(salt_b64)
    auth_tag = b64decode(auth_tag_b64)
    if len(nonce) != NONCE_SIZE:
        raise InvalidCredentialInput(f"iv must be exactly {NONCE_SIZE} bytes")
    if len(salt) != SALT_SIZE:
        raise InvalidCredentialInput(f"salt must be exactly {SALT_SIZE} bytes")
    if len(auth_tag) != TAG_SIZE:
        raise InvalidCredentialInput(f"authTag must be exactly {TAG_SIZE} bytes")
    if len(ciphertext) < TAG_SIZE or not secrets.compare_digest(ciphertext[-TAG_SIZE:], auth_tag):
        raise InvalidCredentialInput("Ciphertext does not end with the given authTag")
    return EncryptedPayload(ciphertext=bytes(ciphertext), nonce=nonce, salt=salt, auth_tag=auth_tag)


def decrypt_from_storage(ciphertext: bytes, password: str, iv_b64: str, salt_b64: str,
                         iterations: Optional[int] = None) -> bytes:
    """Reverse encrypt_for_storage using the base64 metadata kept on the file record."""
    nonce = b64decode(iv_b64)
    salt = b64decode(salt_b64)
    key = derive_key(password, salt, iterations)
    return decrypt(ciphertext, key, nonce)
