"""Periodic, deferred and manual removal of stale jobs and their folders."""
import time
import asyncio
import logging
from typing import Callable, Dict, Iterable, Optional

from .jobs import JobStatus, TERMINAL_STATUSES
from .persistence import JobPersistence
from .store import JobStore


class CleanupScheduler:
    """
    Removes finished jobs from the store and from disk.

    All removals go through the store's per-job lock, the same discipline the
    queue operations use, so a sweep never races a cancel or a launcher
    write-back for the same job.
    """

    def __init__(self, store: JobStore, persistence: JobPersistence, interval: float, max_age: float,
                 enabled: bool = True, purge_orphans: bool = False):
        """
        Initializes the CleanupScheduler.

        Args:
            store: The shared job store.
            persistence: Owner of the job directories.
            interval: Seconds between periodic sweeps.
            max_age: Seconds a completed job is kept.
            enabled: Whether periodic and deferred cleanup run at all.
            purge_orphans: Whether periodic sweeps delete folders with no record in memory.
        """
        self.store = store
        self.persistence = persistence
        self.logger = logging.getLogger(__name__)
        self.interval = interval
        self.max_age = max_age
        self.enabled = enabled
        self.purge_orphans = purge_orphans
        self._loop_task: Optional[asyncio.Task] = None
        self._deferred_tasks: Dict[str, asyncio.Task] = {}

    def configure(self, interval: float, max_age: float, enabled: bool, purge_orphans: bool):
        self.interval, self.max_age = interval, max_age
        self.enabled, self.purge_orphans = enabled, purge_orphans

    def start(self):
        """Starts the periodic sweep loop in the background."""
        if self._loop_task and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._periodic_loop(), name="cleanup-loop")
        self._loop_task.add_done_callback(self._log_task_exception)
        self.logger.info(f"Started periodic cleanup task (every {self.interval:.0f}s, max age {self.max_age:.0f}s)")

    async def stop(self):
        """Cancels the loop and any pending deferred deletions."""
        tasks = list(self._deferred_tasks.values())
        if self._loop_task:
            tasks.append(self._loop_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._deferred_tasks.clear()
        self._loop_task = None

    def _log_task_exception(self, task: asyncio.Task) -> None:
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    async def _periodic_loop(self):
        while True:
            await asyncio.sleep(self.interval)
            if not self.enabled:
                continue
            try:
                await self.run_periodic()
            except Exception:
                self.logger.exception("Error in cleanup task")

    async def remove_job(self, job_id: str, allowed: Iterable[JobStatus] = TERMINAL_STATUSES,
                         predicate: Optional[Callable] = None) -> bool:
        """
        Removes a job's folder and record if it is still in an allowed state.

        Returns:
            True if the job was removed.
        """
        allowed = frozenset(allowed)
        async with self.store.locked(job_id) as job:
            if job is None or job.status not in allowed:
                return False
            if predicate is not None and not predicate(job):
                return False
            await self.persistence.delete_job_dir(job_id)
            await self.store.discard(job_id)
        self.logger.info(f"Cleaned up job {job_id}")
        return True

    async def _remove_orphans(self) -> int:
        count = 0
        for folder in await self.persistence.orphan_dirs(await self.store.ids()):
            # Re-checked per folder: a submission may have claimed the id meanwhile.
            if folder.name in self.store:
                continue
            if await self.persistence.delete_job_dir(folder.name):
                count += 1
                self.logger.info(f"Cleaned up orphaned folder {folder.name}")
        return count

    async def run_periodic(self) -> int:
        """
        One periodic pass: expire old completed jobs, then orphans if enabled.

        Returns:
            The number of jobs and folders removed.
        """
        now = time.time()
        expired = lambda job: now - job.created_at > self.max_age
        removed = 0
        for job in await self.store.snapshot():
            if job.status == JobStatus.COMPLETED and expired(job):
                if await self.remove_job(job.job_id, {JobStatus.COMPLETED}, expired):
                    removed += 1
        if self.purge_orphans:
            removed += await self._remove_orphans()
        if removed:
            self.logger.info(f"Periodic cleanup removed {removed} item(s)")
        return removed

    def schedule_deletion(self, job_id: str) -> bool:
        """
        Deletes a completed job once `max_age` has passed, at most once per job.

        Returns:
            True if a new deletion was scheduled.
        """
        if not self.enabled:
            return False
        existing = self._deferred_tasks.get(job_id)
        if existing and not existing.done():
            return False
        task = asyncio.create_task(self._deferred_delete(job_id), name=f"cleanup-{job_id}")
        self._deferred_tasks[job_id] = task
        task.add_done_callback(self._log_task_exception)
        return True

    async def _deferred_delete(self, job_id: str):
        try:
            await asyncio.sleep(self.max_age)
            if await self.remove_job(job_id, {JobStatus.COMPLETED}):
                self.logger.info(f"Removed served job {job_id} after {self.max_age:.0f}s")
        finally:
            if self._deferred_tasks.get(job_id) is asyncio.current_task():
                del self._deferred_tasks[job_id]

    async def sweep_now(self) -> int:
        """
        Removes every terminal job and every orphaned folder immediately.

        Returns:
            The number of jobs and folders removed.
        """
        removed = 0
        for job in await self.store.snapshot():
            if job.is_terminal and await self.remove_job(job.job_id):
                removed += 1
        removed += await self._remove_orphans()
        self.logger.info(f"Manual cleanup removed {removed} item(s)")
        return removed
