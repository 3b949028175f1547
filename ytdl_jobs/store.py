"""Owns the authoritative in-memory map of job id to job record."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from .exceptions import JobNotFoundError
from .jobs import DownloadJob


class JobStore:
    """
    A concurrency-safe job map.

    The map itself is guarded by one lock; every job additionally has its own
    lock so that launcher write-backs, queue operations, and cleanup sweeps
    touching the same job are serialized without blocking other jobs.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._jobs: Dict[str, DownloadJob] = {}
        self._job_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._map_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    async def add(self, job: DownloadJob):
        async with self._map_lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Duplicate job id: {job.job_id}")
            self._jobs[job.job_id] = job
            self._job_locks.setdefault(job.job_id, asyncio.Lock())

    async def get(self, job_id: str) -> Optional[DownloadJob]:
        async with self._map_lock:
            return self._jobs.get(job_id)

    async def require(self, job_id: str) -> DownloadJob:
        """
        Returns the job for `job_id`.

        Raises:
            JobNotFoundError: If the id is unknown.
        """
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def snapshot(self) -> List[DownloadJob]:
        """The current jobs, oldest first."""
        async with self._map_lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda j: j.created_at)

    async def ids(self) -> List[str]:
        async with self._map_lock:
            return list(self._jobs)

    async def discard(self, job_id: str) -> Optional[DownloadJob]:
        """Drops the record; the job's lock is kept while any caller still holds or awaits it."""
        async with self._map_lock:
            if not self._lock_users.get(job_id):
                self._job_locks.pop(job_id, None)
            return self._jobs.pop(job_id, None)

    @asynccontextmanager
    async def locked(self, job_id: str) -> AsyncIterator[Optional[DownloadJob]]:
        """
        Holds the job's lock and yields the job, or None if it no longer exists.

        The record is looked up again after the lock is acquired, so a job
        removed while the caller was waiting is seen as gone. The lock object
        lives until its last user leaves, so every caller shares the same one.
        """
        async with self._map_lock:
            lock = self._job_locks.setdefault(job_id, asyncio.Lock())
            self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        try:
            async with lock:
                async with self._map_lock:
                    job = self._jobs.get(job_id)
                yield job
        finally:
            async with self._map_lock:
                remaining = self._lock_users[job_id] - 1
                if remaining:
                    self._lock_users[job_id] = remaining
                else:
                    del self._lock_users[job_id]
                    if job_id not in self._jobs:
                        self._job_locks.pop(job_id, None)
