"""
Domain Exceptions
Error taxonomy for the encryption and re-encryption core.

Synchronous paths (upload, download, verify) let these propagate to the
exception handlers registered in main.py. The re-encryption worker absorbs
per-file errors into job counters instead.
"""


class DriveVaultError(Exception):
    """Base class for all domain errors"""

    status_code = 500
    error_code = "INTERNAL_ERROR"
    public_message = "An unexpected error occurred"


class InvalidCredentialInput(DriveVaultError):
    """Malformed key-derivation or cipher input (empty password, bad salt/nonce length)"""

    status_code = 400
    error_code = "INVALID_CREDENTIAL_INPUT"
    public_message = "Invalid encryption input"


class NoCredentialRecord(DriveVaultError):
    """The user has no password verification record yet"""

    status_code = 400
    error_code = "NO_ENCRYPTION_PASSWORD"
    public_message = "No encryption password set. Please set one in settings."


class AuthenticationFailure(DriveVaultError):
    """AES-GCM tag did not verify: wrong password, wrong nonce or tampered data"""

    status_code = 400
    error_code = "INCORRECT_PASSWORD"
    public_message = "Incorrect password"


class RemoteStoreFailure(DriveVaultError):
    """Upload, download or delete against Google Drive failed"""

    status_code = 502
    error_code = "REMOTE_STORAGE_ERROR"
    public_message = "Google Drive request failed"


class DriveNotConnected(RemoteStoreFailure):
    """The user has not connected a Google Drive account"""

    status_code = 409
    error_code = "DRIVE_NOT_CONNECTED"
    public_message = "Google Drive not connected. Please connect your Google Drive in settings."


class JobOrchestrationFailure(DriveVaultError):
    """A re-encryption job could not continue (e.g. the user disappeared)"""

    error_code = "REENCRYPTION_FAILED"
    public_message = "Re-encryption job failed"


class RecordNotFound(DriveVaultError):
    """A record the caller expected to update no longer exists"""

    status_code = 404
    error_code = "NOT_FOUND"
    public_message = "Record not found"
