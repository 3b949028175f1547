"""
Mirrors job records to disk and rebuilds them at startup.

Every job owns a directory named after its id holding two documents:
`metadata.json` for the slow-changing fields and `status.json` for the status
and numeric progress, so frequent progress writes stay small.
"""
import re
import json
import time
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiofiles
import aiofiles.os

from .constants import (
    METADATA_FILE, STATUS_FILE, JOB_DOCUMENTS, PARTIAL_SUFFIXES, SIDECAR_SUFFIXES,
    STATUS_WRITE_INTERVAL, MISSING_OUTPUT_MESSAGE,
)
from .jobs import DownloadJob, JobStatus, ACTIVE_STATUSES

_FORMAT_FRAGMENT_RE = re.compile(r'\.f\d+\.\w+$')


def find_media_files(directory: Path) -> List[Path]:
    """
    Lists the finished media files in a job directory, sorted by name.

    Partial and temporary downloads, zero-byte files, sidecars such as
    thumbnails, and the job's own documents are never candidates.
    """
    try:
        entries = list(directory.iterdir())
    except OSError:
        return []
    candidates = []
    for entry in entries:
        name = entry.name
        lowered = name.lower()
        if name in JOB_DOCUMENTS or name.startswith('.'):
            continue
        if entry.suffix.lower() in PARTIAL_SUFFIXES | SIDECAR_SUFFIXES:
            continue
        if '.part-frag' in lowered or '.temp.' in lowered or _FORMAT_FRAGMENT_RE.search(lowered):
            continue
        try:
            if not entry.is_file() or entry.stat().st_size == 0:
                continue
        except OSError:
            continue
        candidates.append(entry)
    return sorted(candidates, key=lambda p: p.name)


def find_archives(directory: Path) -> List[Path]:
    """Lists non-empty zip bundles in a job directory, sorted by name."""
    try:
        return sorted(
            (p for p in directory.glob('*.zip') if p.is_file() and p.stat().st_size > 0),
            key=lambda p: p.name,
        )
    except OSError:
        return []


class JobPersistence:
    """Reads and writes the per-job documents under a download root."""

    def __init__(self, root: Path, status_interval: float = STATUS_WRITE_INTERVAL):
        """
        Initializes the JobPersistence.

        Args:
            root: Directory holding one sub-directory per job.
            status_interval: Minimum seconds between throttled status writes.
        """
        self.root = Path(root)
        self.status_interval = status_interval
        self.logger = logging.getLogger(__name__)
        self._last_status_write: Dict[str, float] = {}
        self._high_water: Dict[str, float] = {}

    def job_dir(self, job_id: str) -> Path:
        return self.root / job_id

    async def ensure_job_dir(self, job_id: str) -> Path:
        job_dir = self.job_dir(job_id)
        await aiofiles.os.makedirs(job_dir, exist_ok=True)
        return job_dir

    async def _write_json(self, path: Path, document: Dict[str, Any]) -> bool:
        """
        Writes a document atomically; failures are logged, never raised.

        The job directory is not recreated here, so a write racing a
        deletion cannot resurrect the directory.
        """
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(document, indent=2, ensure_ascii=False))
            await aiofiles.os.replace(tmp_path, path)
            return True
        except (OSError, TypeError, ValueError) as e:
            self.logger.error(f"Failed to write {path}: {e}")
            return False

    async def _read_json(self, path: Path) -> Dict[str, Any]:
        async with aiofiles.open(path, 'r', encoding='utf-8') as f:
            document = json.loads(await f.read())
        if not isinstance(document, dict):
            raise ValueError(f"{path.name} is not a JSON object")
        return document

    async def save_metadata(self, job: DownloadJob) -> bool:
        return await self._write_json(self.job_dir(job.job_id) / METADATA_FILE, job.to_metadata())

    async def save_status(self, job: DownloadJob, force: bool = False) -> bool:
        """
        Writes the status document.

        Unforced writes are throttled per job. The stored progress is a
        high-water mark for the current run, so it never moves backwards
        while the job is being downloaded.

        Returns:
            True if the document was written.
        """
        now = time.monotonic()
        last = self._last_status_write.get(job.job_id)
        if not force and last is not None and now - last < self.status_interval:
            return False

        progress = job.overall_progress()
        if job.status in ACTIVE_STATUSES or job.status in (JobStatus.FAILED, JobStatus.INTERRUPTED):
            progress = max(progress, self._high_water.get(job.job_id, 0.0))
        self._high_water[job.job_id] = progress
        self._last_status_write[job.job_id] = now
        return await self._write_json(self.job_dir(job.job_id) / STATUS_FILE, job.to_status(progress))

    async def save(self, job: DownloadJob) -> bool:
        """Writes metadata first, then a forced status write."""
        metadata_ok = await self.save_metadata(job)
        status_ok = await self.save_status(job, force=True)
        return metadata_ok and status_ok

    def start_run(self, job_id: str):
        """Forgets the previous run's progress mark before a (re)dispatch."""
        self._high_water.pop(job_id, None)
        self._last_status_write.pop(job_id, None)

    def forget(self, job_id: str):
        self.start_run(job_id)

    async def delete_job_dir(self, job_id: str) -> bool:
        """Deletes a job's directory. Returns True if something was removed."""
        self.forget(job_id)
        job_dir = self.job_dir(job_id)
        if not await aiofiles.os.path.isdir(job_dir):
            return False
        try:
            await asyncio.to_thread(shutil.rmtree, job_dir)
            return True
        except OSError as e:
            self.logger.error(f"Failed to delete directory for job {job_id}: {e}")
            return False

    async def list_job_dirs(self) -> List[Path]:
        if not await aiofiles.os.path.isdir(self.root):
            return []
        entries = await asyncio.to_thread(lambda: [p for p in self.root.iterdir() if p.is_dir()])
        return sorted(entries, key=lambda p: p.name)

    async def orphan_dirs(self, known_ids: Iterable[str]) -> List[Path]:
        """Job directories with no record in memory."""
        known = set(known_ids)
        return [p for p in await self.list_job_dirs() if p.name not in known]

    async def purge_all(self) -> int:
        """Deletes every job directory. Returns the number removed."""
        count = 0
        for job_dir in await self.list_job_dirs():
            if await self.delete_job_dir(job_dir.name):
                count += 1
        return count

    async def load_job(self, job_dir: Path) -> Optional[DownloadJob]:
        """Rebuilds one job from its directory, or returns None if it cannot be read."""
        try:
            metadata = await self._read_json(job_dir / METADATA_FILE)
            status = await self._read_json(job_dir / STATUS_FILE)
            job = DownloadJob.from_documents(metadata, status)
        except FileNotFoundError as e:
            self.logger.warning(f"Skipping {job_dir.name}: missing {Path(e.filename or '').name or 'document'}")
            return None
        except (OSError, json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            self.logger.warning(f"Skipping {job_dir.name}: unreadable job documents ({e})")
            return None
        if job.job_id != job_dir.name:
            self.logger.warning(f"Skipping {job_dir.name}: metadata id {job.job_id} does not match directory")
            return None
        return job

    async def _reconcile(self, job: DownloadJob, job_dir: Path) -> bool:
        """Adjusts a loaded job to what is possible after a restart. Returns True if it changed."""
        if job.status == JobStatus.PENDING or job.status in ACTIVE_STATUSES:
            self.logger.info(f"Job {job.job_id} was mid-download at shutdown; marking interrupted.")
            job.status = JobStatus.INTERRUPTED
            return True

        if job.status != JobStatus.COMPLETED:
            return False

        if job.output_path and await aiofiles.os.path.isfile(job.output_path):
            return False

        finder = find_archives if job.is_playlist else find_media_files
        candidates = await asyncio.to_thread(finder, job_dir)
        if candidates:
            found = candidates[0]
            self.logger.info(f"Job {job.job_id}: output relocated to {found.name}")
            job.output_path, job.output_name = str(found), found.name
            return True

        self.logger.warning(f"Job {job.job_id}: output {job.output_path} missing; marking failed.")
        job.status = JobStatus.FAILED
        job.error_message = MISSING_OUTPUT_MESSAGE
        return True

    async def recover(self, purge: bool) -> List[DownloadJob]:
        """
        Rebuilds job records from disk.

        Args:
            purge: Delete every job directory instead of loading anything.

        Returns:
            The recovered jobs; never raises for a single bad directory.
        """
        if purge:
            count = await self.purge_all()
            self.logger.info(f"Startup cleanup: removed {count} job folder(s).")
            return []

        jobs = []
        for job_dir in await self.list_job_dirs():
            job = await self.load_job(job_dir)
            if job is None:
                continue
            if await self._reconcile(job, job_dir):
                await self.save(job)
            jobs.append(job)
        self.logger.info(f"Recovered {len(jobs)} job(s) from {self.root}")
        return jobs
