"""
Background re-encryption of a user's files after a password change.

The change-password request creates a job, rewrites the user's credential
and returns the job id immediately. The files are then migrated by a
detached asyncio task owned by ReEncryptionEngine:

    download -> decrypt(old) -> encrypt(new) -> upload new
             -> update record -> delete old object

The new object is uploaded and recorded before the old one is deleted, so a
crash at any point leaves every file decryptable with one of the two
passwords. A failure on one file is recorded on the job and the worker moves
on; only orchestration errors (e.g. the user disappearing) fail the job.

Job records live in a JobStore. The in-memory store is process-scoped and is
emptied on restart.
"""

import asyncio
import dataclasses
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Protocol
from uuid import UUID

from fastapi.concurrency import run_in_threadpool

from drivevault.exceptions import JobOrchestrationFailure
from drivevault.records import EncryptedFileRecord, SqlRecordStore
from drivevault.utils.crypto import EncryptedPayload, decrypt_from_storage, encrypt_for_storage
from drivevault.utils.google_drive import BlobStore

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class ReEncryptionJob:
    """Progress record of one password-change migration"""
    job_id: str
    user_id: UUID
    total_files: int
    processed_files: int = 0
    failed_files: int = 0
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES


def new_job_id(user_id: UUID) -> str:
    """Owner + millisecond timestamp + 64 random bits"""
    return f"reencrypt-{user_id}-{int(time.time() * 1000)}-{secrets.token_hex(8)}"


class JobStore(Protocol):
    def create(self, job: ReEncryptionJob) -> None: ...

    def get(self, job_id: str) -> Optional[ReEncryptionJob]: ...

    def list_for_user(self, user_id: UUID) -> List[ReEncryptionJob]: ...

    def mark_in_progress(self, job_id: str) -> None: ...

    def record_success(self, job_id: str) -> None: ...

    def record_failure(self, job_id: str, file_id: str, reason: str) -> None: ...

    def finish(self, job_id: str, status: JobStatus) -> None: ...


class InMemoryJobStore:
    """
    Process-lifetime job store.

    All mutations happen under one lock and readers get copies, so a poller
    never sees a half-applied update. Counters only move forward and a job in
    a terminal state is never modified again.
    """

    def __init__(self):
        self._jobs: Dict[str, ReEncryptionJob] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _snapshot(job: ReEncryptionJob) -> ReEncryptionJob:
        return dataclasses.replace(job, errors=dict(job.errors))

    def _require(self, job_id: str) -> ReEncryptionJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return job

    def create(self, job: ReEncryptionJob) -> None:
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Job {job.job_id} already exists")
            self._jobs[job.job_id] = self._snapshot(job)

    def get(self, job_id: str) -> Optional[ReEncryptionJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return self._snapshot(job) if job is not None else None

    def list_for_user(self, user_id: UUID) -> List[ReEncryptionJob]:
        with self._lock:
            jobs = [self._snapshot(job) for job in self._jobs.values() if job.user_id == user_id]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def mark_in_progress(self, job_id: str) -> None:
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.PENDING:
                raise ValueError(f"Job {job_id} is {job.status.value}, expected pending")
            job.status = JobStatus.IN_PROGRESS

    def _count(self, job: ReEncryptionJob) -> bool:
        if job.is_finished:
            logger.warning(f"Ignoring progress for finished job {job.job_id}")
            return False
        if job.processed_files >= job.total_files:
            raise ValueError(f"Job {job.job_id} already processed all {job.total_files} files")
        job.processed_files += 1
        return True

    def record_success(self, job_id: str) -> None:
        with self._lock:
            self._count(self._require(job_id))

    def record_failure(self, job_id: str, file_id: str, reason: str) -> None:
        with self._lock:
            job = self._require(job_id)
            if self._count(job):
                job.failed_files += 1
                job.errors[file_id] = reason

    def finish(self, job_id: str, status: JobStatus) -> None:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal status")
        with self._lock:
            job = self._require(job_id)
            if job.is_finished:
                return
            job.status = status
            job.completed_at = datetime.utcnow()


def reencrypt_payload(ciphertext: bytes, record: EncryptedFileRecord,
                      old_password: str, new_password: str) -> EncryptedPayload:
    """Decrypt with the old password and file salt, encrypt under a fresh salt and nonce"""
    plaintext = decrypt_from_storage(ciphertext, old_password, record.nonce, record.salt)
    return encrypt_for_storage(plaintext, new_password)


class ReEncryptionEngine:
    """
    Creates and runs re-encryption jobs.

    One instance per process (see dependencies.py). Task handles are kept
    until the task finishes, which also keeps them from being garbage
    collected mid-run. Callers that rotate a credential hold user_lock()
    from the active-job check until launch().
    """

    def __init__(self, records: SqlRecordStore, blobs: BlobStore, jobs: JobStore,
                 concurrency: int = 4):
        self.records = records
        self.blobs = blobs
        self.jobs = jobs
        self.concurrency = max(1, concurrency)
        self._pending: Dict[str, List[EncryptedFileRecord]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._locks: Dict[UUID, asyncio.Lock] = {}

    def user_lock(self, user_id: UUID) -> asyncio.Lock:
        """
        Per-user lock held while a credential is rotated and while a new
        file row is committed. A file is therefore either part of the next
        job's snapshot or refused, never left under a password the user
        no longer has.
        """
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def create_job(self, user_id: UUID) -> ReEncryptionJob:
        """Enumerate the user's files and register a pending job"""
        if not await run_in_threadpool(self.records.user_exists, user_id):
            raise JobOrchestrationFailure(f"User {user_id} not found")

        files = await run_in_threadpool(self.records.list_files, user_id)
        job = ReEncryptionJob(job_id=new_job_id(user_id), user_id=user_id,
                              total_files=len(files))
        self.jobs.create(job)
        self._pending[job.job_id] = files
        logger.info(f"[Re-encryption] Job {job.job_id} created with {len(files)} files")
        return job

    def launch(self, job_id: str, old_password: str, new_password: str) -> asyncio.Task:
        """Start the worker for a pending job without waiting for it"""
        files = self._pending.pop(job_id, None)
        job = self.jobs.get(job_id)
        if files is None or job is None:
            raise JobOrchestrationFailure(f"Job {job_id} is not pending")

        task = asyncio.create_task(
            self._run(job_id, job.user_id, files, old_password, new_password),
            name=job_id,
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return task

    async def start(self, user_id: UUID, old_password: str, new_password: str) -> str:
        job = await self.create_job(user_id)
        self.launch(job.job_id, old_password, new_password)
        return job.job_id

    def abandon(self, job_id: str) -> None:
        """Fail a job that was created but will never be launched"""
        self._pending.pop(job_id, None)
        self.jobs.finish(job_id, JobStatus.FAILED)
        logger.warning(f"[Re-encryption] Job {job_id} abandoned before start")

    def has_active_job(self, user_id: UUID) -> bool:
        return any(not job.is_finished for job in self.jobs.list_for_user(user_id))

    def get_status(self, job_id: str) -> Optional[ReEncryptionJob]:
        return self.jobs.get(job_id)

    async def wait(self, job_id: str) -> Optional[ReEncryptionJob]:
        """Wait for a running job to finish and return its final state"""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return self.jobs.get(job_id)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Give running jobs a chance to finish (application shutdown)"""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info(f"[Re-encryption] Waiting for {len(tasks)} running job(s)")
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning(f"[Re-encryption] Job {task.get_name()} still running at shutdown")

    async def _run(self, job_id: str, user_id: UUID, files: List[EncryptedFileRecord],
                   old_password: str, new_password: str) -> None:
        try:
            self.jobs.mark_in_progress(job_id)
            abort = asyncio.Event()
            queue: Iterator[EncryptedFileRecord] = iter(files)

            async def worker():
                for record in queue:
                    if abort.is_set():
                        return
                    if not await run_in_threadpool(self.records.user_exists, user_id):
                        raise JobOrchestrationFailure(f"User {user_id} disappeared during job {job_id}")
                    await self._process_file(job_id, user_id, record, old_password, new_password)

            workers = [asyncio.create_task(worker())
                       for _ in range(min(self.concurrency, len(files)))]
            try:
                await asyncio.gather(*workers)
            except Exception:
                # Let in-flight files finish, start no new ones
                abort.set()
                await asyncio.gather(*workers, return_exceptions=True)
                raise

        except Exception as e:
            logger.error(f"[Re-encryption] Job {job_id} failed: {e}", exc_info=True)
            self.jobs.finish(job_id, JobStatus.FAILED)
            return

        self.jobs.finish(job_id, JobStatus.COMPLETED)
        job = self.jobs.get(job_id)
        logger.info(
            f"[Re-encryption] Job {job_id} completed. "
            f"Processed: {job.processed_files}, Failed: {job.failed_files}"
        )

    async def _process_file(self, job_id: str, user_id: UUID, record: EncryptedFileRecord,
                            old_password: str, new_password: str) -> None:
        file_id = str(record.file_id)
        try:
            if not record.remote_handle:
                logger.warning(f"[Re-encryption] File {file_id} has no Drive file, skipping")
                self.jobs.record_success(job_id)
                return

            ciphertext = await self.blobs.download(user_id, record.remote_handle)
            payload = await run_in_threadpool(
                reencrypt_payload, ciphertext, record, old_password, new_password
            )
            new_handle = await self.blobs.upload(user_id, payload.ciphertext, record.file_name)

            try:
                await run_in_threadpool(
                    self.records.update_file,
                    record.file_id,
                    remote_handle=new_handle,
                    nonce=payload.iv_b64,
                    salt=payload.salt_b64,
                    auth_tag=payload.auth_tag_b64,
                )
            except Exception:
                await self._discard(user_id, new_handle)
                raise

            await self._discard(user_id, record.remote_handle)
            self.jobs.record_success(job_id)
            logger.info(f"[Re-encryption] Successfully re-encrypted file {file_id}")

        except Exception as e:
            logger.error(f"[Re-encryption] Failed to re-encrypt file {file_id}: {e}")
            self.jobs.record_failure(job_id, file_id, f"{type(e).__name__}: {e}")

    async def _discard(self, user_id: UUID, handle: str) -> None:
        """Delete a Drive object; failures only leave an orphan behind"""
        try:
            await self.blobs.delete(user_id, handle)
        except Exception as e:
            logger.warning(f"[Re-encryption] Could not delete Drive file {handle}: {e}")
