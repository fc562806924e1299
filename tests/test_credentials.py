"""
Password verifier and record store tests
"""

import uuid

import pytest

from drivevault.exceptions import InvalidCredentialInput, NoCredentialRecord, RecordNotFound
from drivevault.models import UserKey
from drivevault.records import CredentialRecord
from drivevault.utils.credentials import (
    build_credential, rotate_credentials, throwaway_credential, verify_password
)
from drivevault.utils.crypto import b64decode
from tests.conftest import make_file, make_user


def test_verify_correct_and_wrong_passwords(db_session, records):
    """Correct password verifies; empty, one-character-off and unrelated ones do not"""
    user = make_user(db_session, password="OldPass123")

    assert verify_password(records, user.id, "OldPass123") is True
    for wrong in ("", "OldPass124", "oldpass123", "NewPass456"):
        assert verify_password(records, user.id, wrong) is False


def test_verify_without_record_raises(records):
    with pytest.raises(NoCredentialRecord):
        verify_password(records, uuid.uuid4(), "anything")


def test_verify_with_malformed_salt_raises(db_session, records):
    user = make_user(db_session)
    key = db_session.query(UserKey).filter(UserKey.user_id == user.id).first()
    key.salt = "c2hvcnQ="  # "short"
    db_session.commit()

    with pytest.raises(InvalidCredentialInput):
        verify_password(records, user.id, "OldPass123")


def test_build_credential_never_stores_password_material():
    user_id = uuid.uuid4()
    first = build_credential(user_id, "same-password")
    second = build_credential(user_id, "same-password")

    assert len(b64decode(first.salt)) == 16
    assert len(b64decode(first.verification_hash)) == 32
    assert first.salt != second.salt
    assert first.verification_hash != second.verification_hash


def test_rotate_replaces_salt_and_hash_together(db_session, records):
    user = make_user(db_session, password="OldPass123")
    before = records.get_credential(user.id)

    rotate_credentials(records, user.id, "NewPass456")
    after = records.get_credential(user.id)

    assert after.salt != before.salt
    assert after.verification_hash != before.verification_hash
    assert verify_password(records, user.id, "NewPass456") is True
    assert verify_password(records, user.id, "OldPass123") is False
    assert db_session.query(UserKey).filter(UserKey.user_id == user.id).count() == 1


def test_rotate_without_record_raises(records):
    with pytest.raises(NoCredentialRecord):
        rotate_credentials(records, uuid.uuid4(), "NewPass456")


def test_throwaway_credential_is_random(db_session, records):
    user = make_user(db_session)
    record = throwaway_credential(user.id)
    records.put_credential(record)

    assert records.get_credential(user.id) == record
    assert verify_password(records, user.id, "OldPass123") is False


def test_put_credential_inserts_for_new_user(db_session, records):
    user = make_user(db_session)
    db_session.query(UserKey).delete()
    db_session.commit()

    record = CredentialRecord(user_id=user.id, salt="AAAAAAAAAAAAAAAAAAAAAA==",
                              verification_hash="AAAA")
    records.put_credential(record)
    assert records.get_credential(user.id) == record


def test_file_records_round_trip(db_session, records, blobs):
    user = make_user(db_session)
    row = make_file(db_session, blobs, user, b"contents", "OldPass123", name="a.txt")

    listed = records.list_files(user.id)
    assert [record.file_id for record in listed] == [row.id]
    assert listed[0].remote_handle == row.drive_file_id

    updated = records.update_file(row.id, remote_handle="drive-new", nonce="bm9uY2U=")
    assert updated.remote_handle == "drive-new"
    assert updated.nonce == "bm9uY2U="
    assert records.get_file(row.id).remote_handle == "drive-new"


def test_update_missing_file_raises(records):
    with pytest.raises(RecordNotFound):
        records.update_file(uuid.uuid4(), remote_handle="x")


def test_update_rejects_unknown_fields(db_session, records, blobs):
    user = make_user(db_session)
    row = make_file(db_session, blobs, user, b"contents", "OldPass123")
    with pytest.raises(ValueError):
        records.update_file(row.id, user_id=uuid.uuid4())
