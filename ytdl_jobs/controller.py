"""
Defines the JobController class, the queue API the HTTP layer talks to.
"""
import asyncio
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

import aiofiles.os
from pydantic import ValidationError

from .app_updater import YtDlpUpdateChecker
from .cleanup import CleanupScheduler
from .config import ConfigManager, Settings, is_valid_quality
from .constants import CANCELLED_MESSAGE
from .dependencies import DependencyManager
from .downloads import DownloadManager, JobOutcome
from .exceptions import JobNotFoundError, InvalidJobStateError, InvalidJobRequestError
from .jobs import DownloadJob, JobStatus, CANCELLABLE_STATUSES, new_job_id
from .persistence import JobPersistence
from .progress import ProgressEvent
from .store import JobStore
from .streaming import ArtifactSlice, parse_range
from .url_extractor import URLInfoExtractor, SearchResult, is_playlist_url


class JobController:
    """The central controller for job submission, control, and cleanup."""

    def __init__(self, config: Settings, config_manager: Optional[ConfigManager] = None):
        """
        Initializes the JobController.

        Args:
            config: The loaded service settings.
            config_manager: The manager for handling configuration persistence, if settings can change.
        """
        self.config_manager = config_manager
        self.config = config
        self.logger = logging.getLogger(__name__)

        # Service State
        self.store = JobStore()
        self.persistence = JobPersistence(config.download_dir)
        self.is_ready: bool = False
        self.is_shutting_down: bool = False

        # Backend Managers
        self.dep_manager = DependencyManager(yt_dlp_override=config.yt_dlp_path, ffmpeg_override=config.ffmpeg_path)
        self.download_manager = DownloadManager(self._on_manager_event, config.download_dir)
        self.cleanup = CleanupScheduler(
            self.store, self.persistence,
            interval=config.cleanup_interval * 60,
            max_age=config.cleanup_max_age * 60,
            enabled=config.cleanup_enabled,
            purge_orphans=config.startup_cleanup,
        )
        self.update_checker = YtDlpUpdateChecker()

    def _apply_config(self):
        self.download_manager.set_config(
            self.config.max_concurrent_downloads,
            self.dep_manager.yt_dlp_path,
            self.dep_manager.ffmpeg_path,
            cookies_file=self.config.cookies_file,
            max_duration=self.config.max_duration,
            max_file_size_mb=self.config.max_file_size_mb,
        )
        self.cleanup.configure(
            interval=self.config.cleanup_interval * 60,
            max_age=self.config.cleanup_max_age * 60,
            enabled=self.config.cleanup_enabled,
            purge_orphans=self.config.startup_cleanup,
        )

    async def start(self):
        """Finds dependencies, rebuilds the store from disk, and starts the cleanup loop."""
        await aiofiles.os.makedirs(self.config.download_dir, exist_ok=True)
        await self.dep_manager.initialize()
        if not self.dep_manager.yt_dlp_path:
            self.logger.error("yt-dlp was not found; downloads will fail until it is installed.")
        self._apply_config()

        for job in await self.persistence.recover(purge=self.config.startup_cleanup):
            await self.store.add(job)

        self.cleanup.start()
        self.is_ready = True
        self.logger.info(f"Job controller ready with {len(self.store)} recovered job(s).")

    async def shutdown(self):
        """Stops cleanup and terminates running downloads, leaving them resumable."""
        self.logger.info("Job controller shutting down.")
        self.is_shutting_down = True
        self.is_ready = False
        await self.cleanup.stop()
        await self.download_manager.stop_all_downloads()

    # --- Launcher events ---

    async def _on_manager_event(self, event: Tuple[str, Any]):
        """
        Handles events from the download manager and applies them to the store.
        Every mutation happens under the job's lock.
        """
        msg_type, value = event
        handler_map = {
            'started': self._handle_started,
            'update_job': self._handle_update_job,
            'done': self._handle_done,
        }
        handler = handler_map.get(msg_type)
        if handler:
            await handler(value)
        else:
            self.logger.warning(f"Unhandled manager event type: {msg_type}")

    async def _handle_started(self, value: Tuple[str, asyncio.subprocess.Process]):
        job_id, process = value
        async with self.store.locked(job_id) as job:
            if job is None or job.status != JobStatus.PENDING:
                return
            job.status = job.active_status
            job.process = process
            await self.persistence.save(job)

    async def _handle_update_job(self, value: Tuple[str, ProgressEvent]):
        job_id, progress_event = value
        async with self.store.locked(job_id) as job:
            if job is None or not job.is_active:
                return
            progress_event.apply(job)
            if progress_event.touches_metadata:
                await self.persistence.save_metadata(job)
            await self.persistence.save_status(job, force=progress_event.force_write)

    async def _handle_done(self, value: Tuple[str, JobOutcome]):
        job_id, outcome = value
        if self.is_shutting_down:
            self.logger.info(f"Job {job_id} stopped by shutdown; it will be resumable after restart.")
            return
        async with self.store.locked(job_id) as job:
            if job is None or job.is_terminal:
                self.logger.debug(f"Dropping late completion for job {job_id}")
                return
            job.process = None
            if outcome.success and outcome.output_path is not None:
                job.status = JobStatus.COMPLETED
                job.set_percent(100)
                job.output_path, job.output_name = str(outcome.output_path), outcome.output_path.name
                job.error_message = None
                self.logger.info(f"Download completed for job {job_id}: {job.output_name}"
                                 + (f" ({len(job.skipped_titles)} skipped)" if job.skipped_titles else ""))
            else:
                job.status = JobStatus.FAILED
                job.error_message = outcome.error_message or "Download failed"
                self.logger.error(f"Download failed for job {job_id}: {job.error_message}")
            await self.persistence.save(job)

    # --- Queue API ---

    async def submit(self, url: str, format: Optional[str] = None, quality: Optional[str] = None,
                     playlist: Optional[bool] = None) -> str:
        """
        Creates a pending job and dispatches its download in the background.

        Args:
            url: The source URL; allow-listing is the caller's concern.
            format: "audio" or "video"; defaults to the configured format.
            quality: "best", a height like "720", or a bitrate like "192K".
            playlist: Force playlist handling on or off; None infers it from the URL.

        Returns:
            The new job's id.

        Raises:
            InvalidJobRequestError: If the url, format, or quality is unusable.
            RuntimeError: If called before start() finished recovery.
        """
        if not self.is_ready:
            raise RuntimeError("Job controller is not started")
        url = (url or '').strip()
        if not url:
            raise InvalidJobRequestError("A URL is required")
        format = (format or self.config.default_format).lower()
        if format not in ('audio', 'video'):
            raise InvalidJobRequestError(f"Unsupported format: {format}")
        quality = quality or self.config.default_quality
        if not is_valid_quality(quality):
            raise InvalidJobRequestError(f"Unsupported quality: {quality}")

        job = DownloadJob(
            job_id=new_job_id(),
            url=url,
            format=format,
            quality=quality,
            is_playlist=is_playlist_url(url) if playlist is None else bool(playlist),
        )
        await self.store.add(job)
        async with self.store.locked(job.job_id):
            try:
                await self.persistence.ensure_job_dir(job.job_id)
            except OSError as e:
                self.logger.error(f"Could not create directory for job {job.job_id}: {e}")
            self.persistence.start_run(job.job_id)
            await self.persistence.save(job)
            self.download_manager.dispatch(job)

        self.logger.info(f"Queued {'playlist' if job.is_playlist else 'single'} {format} job {job.job_id}: {url}")
        return job.job_id

    async def list_jobs(self) -> List[Dict[str, Any]]:
        return [job.to_summary() for job in await self.store.snapshot()]

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        return (await self.store.require(job_id)).to_summary()

    async def cancel(self, job_id: str):
        """
        Stops an active job, deletes its folder, and marks it failed.

        Raises:
            JobNotFoundError: If the id is unknown.
            InvalidJobStateError: If the job is not pending or downloading.
        """
        async with self.store.locked(job_id) as job:
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status not in CANCELLABLE_STATUSES:
                raise InvalidJobStateError(job_id, job.status.value, 'cancel')
            job.status = JobStatus.FAILED
            job.error_message = CANCELLED_MESSAGE
            job.process = None
        await self.download_manager.cancel(job_id)
        await self.persistence.delete_job_dir(job_id)
        self.logger.info(f"Cancelled job {job_id}")

    async def resume(self, job_id: str):
        """
        Re-dispatches an interrupted job so yt-dlp continues partial files.

        Raises:
            JobNotFoundError: If the id is unknown.
            InvalidJobStateError: If the job is not interrupted; nothing is changed.
        """
        if not self.is_ready:
            raise RuntimeError("Job controller is not started")
        async with self.store.locked(job_id) as job:
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != JobStatus.INTERRUPTED:
                raise InvalidJobStateError(job_id, job.status.value, 'resume')
            job.status = JobStatus.PENDING
            job.reset_progress()
            self.persistence.start_run(job_id)
            await self.persistence.save(job)
        self.logger.info(f"Resuming job {job_id}")
        self.download_manager.dispatch(job, resume=True)

    async def remove(self, job_id: str):
        """
        Deletes a finished job's folder and record.

        Raises:
            JobNotFoundError: If the id is unknown.
            InvalidJobStateError: If the job is not completed or failed.
        """
        async with self.store.locked(job_id) as job:
            if job is None:
                raise JobNotFoundError(job_id)
            if not job.is_terminal:
                raise InvalidJobStateError(job_id, job.status.value, 'remove')
            await self.persistence.delete_job_dir(job_id)
            await self.store.discard(job_id)
        self.logger.info(f"Removed job {job_id}")

    async def open_artifact(self, job_id: str, range_header: Optional[str] = None) -> ArtifactSlice:
        """
        Opens a completed job's artifact for (ranged) reading.

        Reading a slice through to the end of the file schedules the job's
        deferred cleanup.

        Raises:
            JobNotFoundError: If the id is unknown.
            InvalidJobStateError: If the job has not completed.
            FileNotFoundError: If the artifact vanished from disk.
            RangeNotSatisfiableError: If the range is invalid for the file.
        """
        job = await self.store.require(job_id)
        if job.status != JobStatus.COMPLETED or not job.output_path:
            raise InvalidJobStateError(job_id, job.status.value, 'download')
        path = Path(job.output_path)
        size = (await aiofiles.os.stat(path)).st_size
        byte_range = parse_range(range_header, size)
        start, end = byte_range if byte_range else (0, max(size - 1, 0))

        async def served():
            if end >= size - 1:
                self.cleanup.schedule_deletion(job_id)

        return ArtifactSlice(
            job_id=job_id, path=path, name=job.output_name or path.name, size=size,
            start=start, end=end, partial=byte_range is not None, on_complete=served,
        )

    # --- Operator surface ---

    async def sweep_now(self) -> int:
        """Removes all finished jobs and orphaned folders right away."""
        return await self.cleanup.sweep_now()

    async def search(self, query: str) -> List[SearchResult]:
        if not self.dep_manager.yt_dlp_path:
            return []
        return await URLInfoExtractor(self.dep_manager.yt_dlp_path).search(query, self.config.search_results)

    async def ytdlp_status(self, check_latest: bool = True) -> Dict[str, Any]:
        """Reports the yt-dlp path and version, optionally compared with the latest release."""
        version = await self.dep_manager.get_version(self.dep_manager.yt_dlp_path)
        status: Dict[str, Any] = {
            'path': str(self.dep_manager.yt_dlp_path) if self.dep_manager.yt_dlp_path else None,
            'version': version,
            'ffmpeg_path': str(self.dep_manager.ffmpeg_path) if self.dep_manager.ffmpeg_path else None,
        }
        if check_latest and self.dep_manager.yt_dlp_path:
            status['update'] = await asyncio.to_thread(self.update_checker.check, version)
        return status

    async def update_ytdlp(self) -> Dict[str, Any]:
        if not self.dep_manager.yt_dlp_path:
            result = await self.dep_manager.install_yt_dlp()
            self._apply_config()
            return result
        return await self.dep_manager.update_yt_dlp()

    def save_settings(self, new_settings_data: Dict[str, Any]) -> Tuple[bool, str]:
        """Validates and saves new settings; the download directory applies after a restart."""
        try:
            new_settings = Settings.model_validate({**self.config.model_dump(), **new_settings_data})
        except ValidationError as e:
            error_details = e.errors()[0]
            field, msg = error_details['loc'][0], error_details['msg']
            return False, f"Error in field '{field}': {msg}"
        if self.config_manager:
            self.config_manager.save(new_settings)
        self.config.__dict__.update(new_settings.model_dump())
        self._apply_config()
        return True, "Settings have been saved."
