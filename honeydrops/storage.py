import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Hashable, Iterator, Optional, Protocol
from uuid import UUID

import structlog

from .errors import BusyError, JobNotFoundError

logger = structlog.get_logger(__name__)


class KeyedLocks:
    """One lock per key, acquired with bounded retries and exponential backoff.

    Keys never share a lock, so contention on one balance or job does not
    stall any other. A key's lock is dropped once nobody holds or waits on it.
    """

    def __init__(self, name: str, lock_timeout: float = 0.05, max_attempts: int = 5, backoff_base: float = 0.01):
        self.name = name
        self.lock_timeout = lock_timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        # key -> [lock, number of holders and waiters]
        self._locks: dict[Hashable, list] = {}
        self._registry_lock = threading.Lock()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._registry_lock:
            slot = self._locks.get(key)
            if slot is None:
                slot = self._locks[key] = [threading.Lock(), 0]
            slot[1] += 1
            return slot[0]

    def _checkin(self, key: Hashable) -> None:
        with self._registry_lock:
            slot = self._locks[key]
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            for attempt in range(self.max_attempts):
                if lock.acquire(timeout=self.lock_timeout):
                    break
                delay = self.backoff_base * (2 ** attempt)
                logger.debug("lock_contended", lock=self.name, key=str(key), attempt=attempt + 1, delay=delay)
                time.sleep(delay)
            else:
                logger.warning("lock_busy", lock=self.name, key=str(key), attempts=self.max_attempts)
                raise BusyError(f"{self.name}:{key}", retry_after=self.backoff_base * (2 ** self.max_attempts))
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


class JobCatalog(Protocol):
    def is_job_open(self, job_id: UUID) -> bool: ...

    def get_owner(self, job_id: UUID) -> UUID: ...


@dataclass
class JobRecord:
    id: UUID
    owner_id: UUID
    is_open: bool = True


class InMemoryJobCatalog:
    def __init__(self):
        self.jobs: dict[UUID, JobRecord] = {}

    def add_job(self, job_id: UUID, owner_id: UUID, is_open: bool = True) -> JobRecord:
        job = JobRecord(id=job_id, owner_id=owner_id, is_open=is_open)
        self.jobs[job_id] = job
        return job

    def close_job(self, job_id: UUID) -> None:
        self._get(job_id).is_open = False

    def is_job_open(self, job_id: UUID) -> bool:
        job = self.jobs.get(job_id)
        return bool(job and job.is_open)

    def get_owner(self, job_id: UUID) -> UUID:
        return self._get(job_id).owner_id

    def _get(self, job_id: UUID) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job


class InMemoryStorage:
    def __init__(self):
        self.balances: dict[UUID, dict] = {}
        self.transactions: list[dict] = []
        self.ledger_entries: dict[UUID, dict] = {}
        self.applications: dict[UUID, dict] = {}
        self.payment_index: dict[str, UUID] = {}

    def add_application(self, application_data: dict) -> None:
        self.applications[application_data["id"]] = application_data

    def applications_for_job(self, job_id: UUID) -> list[dict]:
        return [a for a in list(self.applications.values()) if a["job_id"] == job_id]

    def find_application(self, job_id: UUID, applicant_id: UUID, status: Optional[str] = None) -> Optional[dict]:
        for app in list(self.applications.values()):
            if app["job_id"] == job_id and app["applicant_id"] == applicant_id:
                if status is None or app["status"] == status:
                    return app
        return None
