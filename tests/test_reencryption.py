"""
Re-encryption engine tests
Runs the engine directly on an event loop against SQLite and the blob fake.
"""

import asyncio
import uuid

import pytest

from drivevault.exceptions import AuthenticationFailure, JobOrchestrationFailure
from drivevault.models import File
from drivevault.reencryption import JobStatus
from drivevault.utils.crypto import decrypt_from_storage
from tests.conftest import make_file, make_user

OLD = "OldPass123"
NEW = "NewPass456"


def run_job(engine, user_id, old=OLD, new=NEW):
    async def scenario():
        job_id = await engine.start(user_id, old, new)
        return await engine.wait(job_id)
    return asyncio.run(scenario())


def decrypt_current(records, blobs, file_id, password):
    record = records.get_file(file_id)
    return decrypt_from_storage(blobs.objects[record.remote_handle], password,
                                record.nonce, record.salt)


def test_password_change_re_encrypts_every_file(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    contents = {}
    originals = {}
    for index in range(3):
        data = f"file number {index}".encode() * (index + 1)
        row = make_file(db_session, blobs, user, data, OLD, name=f"f{index}.txt")
        contents[row.id] = data
        originals[row.id] = records.get_file(row.id)

    job = run_job(engine, user.id)

    assert job.status == JobStatus.COMPLETED
    assert (job.total_files, job.processed_files, job.failed_files) == (3, 3, 0)
    assert job.completed_at is not None
    assert job.errors == {}

    for file_id, data in contents.items():
        old = originals[file_id]
        new = records.get_file(file_id)
        assert new.remote_handle != old.remote_handle
        assert new.salt != old.salt
        assert new.nonce != old.nonce
        assert decrypt_current(records, blobs, file_id, NEW) == data

        # New ciphertext under the old password and old salt must not open
        with pytest.raises(AuthenticationFailure):
            decrypt_from_storage(blobs.objects[new.remote_handle], OLD, new.nonce, old.salt)

        # Old objects are gone from Drive
        assert old.remote_handle not in blobs.objects


def test_corrupted_file_does_not_block_others(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    rows = [make_file(db_session, blobs, user, f"payload {i}".encode(), OLD) for i in range(4)]
    corrupted = rows[2]
    tampered = bytearray(blobs.objects[corrupted.drive_file_id])
    tampered[0] ^= 0x01
    blobs.objects[corrupted.drive_file_id] = bytes(tampered)

    job = run_job(engine, user.id)

    assert job.status == JobStatus.COMPLETED
    assert job.processed_files == 4
    assert job.failed_files == 1
    assert job.errors[str(corrupted.id)].startswith("AuthenticationFailure")

    for i, row in enumerate(rows):
        if row.id == corrupted.id:
            # Record untouched, old object still in place
            assert records.get_file(row.id).remote_handle == corrupted.drive_file_id
            assert corrupted.drive_file_id in blobs.objects
        else:
            assert decrypt_current(records, blobs, row.id, NEW) == f"payload {i}".encode()


def test_wrong_old_password_fails_each_file(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    rows = [make_file(db_session, blobs, user, b"data", OLD) for _ in range(2)]

    job = run_job(engine, user.id, old="NotTheOldPass")

    assert job.status == JobStatus.COMPLETED
    assert (job.processed_files, job.failed_files) == (2, 2)
    for row in rows:
        assert decrypt_current(records, blobs, row.id, OLD) == b"data"


def test_download_failure_is_isolated(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    ok = make_file(db_session, blobs, user, b"fine", OLD)
    broken = make_file(db_session, blobs, user, b"unreachable", OLD)
    blobs.fail_download.add(broken.drive_file_id)

    job = run_job(engine, user.id)

    assert (job.status, job.processed_files, job.failed_files) == (JobStatus.COMPLETED, 2, 1)
    assert "RemoteStoreFailure" in job.errors[str(broken.id)]
    assert decrypt_current(records, blobs, ok.id, NEW) == b"fine"


def test_upload_failure_keeps_old_data(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    rows = [make_file(db_session, blobs, user, b"keep me", OLD) for _ in range(2)]
    blobs.fail_upload = True

    job = run_job(engine, user.id)

    assert (job.status, job.processed_files, job.failed_files) == (JobStatus.COMPLETED, 2, 2)
    for row in rows:
        assert row.drive_file_id in blobs.objects
        assert decrypt_current(records, blobs, row.id, OLD) == b"keep me"


def test_old_object_delete_failure_is_not_fatal(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    row = make_file(db_session, blobs, user, b"orphan old copy", OLD)
    blobs.fail_delete = True

    job = run_job(engine, user.id)

    assert (job.status, job.processed_files, job.failed_files) == (JobStatus.COMPLETED, 1, 0)
    assert decrypt_current(records, blobs, row.id, NEW) == b"orphan old copy"
    assert row.drive_file_id in blobs.objects


def test_upload_happens_before_old_object_is_deleted(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    row = make_file(db_session, blobs, user, b"ordering", OLD)

    run_job(engine, user.id)

    operations = [call[0] for call in blobs.calls]
    assert operations == ["download", "upload", "delete"]
    assert blobs.calls[2] == ("delete", row.drive_file_id)


def test_record_update_failure_discards_new_object(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    row = make_file(db_session, blobs, user, b"vanishing row", OLD)

    async def scenario():
        job = await engine.create_job(user.id)
        # Row disappears between enumeration and processing
        db_session.query(File).filter(File.id == row.id).delete()
        db_session.commit()
        engine.launch(job.job_id, OLD, NEW)
        return await engine.wait(job.job_id)

    job = asyncio.run(scenario())

    assert (job.status, job.processed_files, job.failed_files) == (JobStatus.COMPLETED, 1, 1)
    assert "RecordNotFound" in job.errors[str(row.id)]
    # Only the original object remains; the freshly uploaded one was removed
    assert list(blobs.objects) == [row.drive_file_id]


def test_file_without_drive_handle_is_skipped(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    row = make_file(db_session, blobs, user, b"never uploaded", OLD)
    records.update_file(row.id, remote_handle=None)

    job = run_job(engine, user.id)

    assert (job.status, job.processed_files, job.failed_files) == (JobStatus.COMPLETED, 1, 0)
    assert blobs.calls == []


def test_user_without_files_completes_immediately(db_session, engine):
    user = make_user(db_session, password=OLD)

    job = run_job(engine, user.id)

    assert (job.status, job.total_files, job.processed_files) == (JobStatus.COMPLETED, 0, 0)


def test_user_vanishing_fails_the_job(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    for _ in range(3):
        make_file(db_session, blobs, user, b"data", OLD)

    async def scenario():
        job = await engine.create_job(user.id)
        assert job.status == JobStatus.PENDING
        db_session.delete(user)
        db_session.commit()
        engine.launch(job.job_id, OLD, NEW)
        return await engine.wait(job.job_id)

    job = asyncio.run(scenario())

    assert job.status == JobStatus.FAILED
    assert job.completed_at is not None
    assert job.processed_files == 0


def test_create_job_for_unknown_user(engine):
    with pytest.raises(JobOrchestrationFailure):
        asyncio.run(engine.create_job(uuid.uuid4()))


def test_launch_requires_pending_job(engine):
    with pytest.raises(JobOrchestrationFailure):
        engine.launch("reencrypt-unknown", OLD, NEW)


def test_abandoned_job_is_failed(db_session, engine):
    user = make_user(db_session, password=OLD)

    async def scenario():
        job = await engine.create_job(user.id)
        engine.abandon(job.job_id)
        return job.job_id

    job_id = asyncio.run(scenario())
    assert engine.get_status(job_id).status == JobStatus.FAILED
    with pytest.raises(JobOrchestrationFailure):
        engine.launch(job_id, OLD, NEW)


def test_progress_is_monotonic_while_running(db_session, records, blobs, engine):
    user = make_user(db_session, password=OLD)
    rows = [make_file(db_session, blobs, user, f"{i}".encode(), OLD) for i in range(6)]
    blobs.fail_download.add(rows[1].drive_file_id)
    blobs.upload_delay = 0.02

    async def scenario():
        job_id = await engine.start(user.id, OLD, NEW)
        polls = []
        while True:
            snapshot = engine.get_status(job_id)
            polls.append(snapshot)
            if snapshot.is_finished:
                return polls
            await asyncio.sleep(0.005)

    polls = asyncio.run(scenario())

    processed = [poll.processed_files for poll in polls]
    failed = [poll.failed_files for poll in polls]
    assert processed == sorted(processed)
    assert failed == sorted(failed)
    for poll in polls:
        assert poll.failed_files <= poll.processed_files <= poll.total_files
    assert polls[-1].status == JobStatus.COMPLETED
    assert (polls[-1].processed_files, polls[-1].failed_files) == (6, 1)
    assert any(poll.status == JobStatus.IN_PROGRESS for poll in polls)
