"""Launches yt-dlp per job, streams its output, and decides the job's outcome."""
import asyncio
import os
import sys
import signal
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, List, Optional, Callable, Tuple, Coroutine

from .archiver import create_archive
from .constants import SUBPROCESS_CREATION_FLAGS, PROCESS_STOP_TIMEOUT, READ_CHUNK_SIZE, NO_FILES_MESSAGE
from .exceptions import ArchiveError
from .jobs import DownloadJob
from .persistence import find_media_files
from .progress import LineBuffer, ProgressExtractor, ProgressEvent, PlaylistName

EventCallback = Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]]


@dataclass
class JobOutcome:
    """What a finished run reports back to the controller."""
    success: bool
    output_path: Optional[Path] = None
    error_message: Optional[str] = None
    return_code: Optional[int] = None
    files: List[Path] = field(default_factory=list)

    @classmethod
    def failed(cls, message: str, return_code: Optional[int] = None) -> 'JobOutcome':
        return cls(False, error_message=message, return_code=return_code)


@dataclass
class _RunState:
    """Facts a single run learns from its own output."""
    playlist_title: Optional[str] = None

    def observe(self, event: ProgressEvent):
        if isinstance(event, PlaylistName):
            self.playlist_title = event.title


class DownloadManager:
    """
    Manages yt-dlp processes for individual jobs.

    The manager never mutates job records. It reads a job's immutable request
    fields and reports everything else through the event callback:
    `('started', (job_id, process))`, `('update_job', (job_id, event))` and
    `('done', (job_id, JobOutcome))`.
    """
    def __init__(self, event_callback: EventCallback, download_root: Path):
        """
        Initializes the DownloadManager.

        Args:
            event_callback: The async function to call with manager events.
            download_root: Directory under which each job gets its own folder.
        """
        self.event_callback = event_callback
        self.download_root = Path(download_root)
        self.logger = logging.getLogger(__name__)
        self.worker_tasks: set[asyncio.Task] = set()
        self.active_processes_lock = asyncio.Lock()
        self.active_processes: Dict[str, asyncio.subprocess.Process] = {}
        self.cancelled_jobs: set[str] = set()
        self.dispatched_jobs: set[str] = set()
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None
        self.cookies_file: Optional[Path] = None
        self.max_duration: int = 0
        self.max_file_size_mb: int = 0
        self._slots: Optional[asyncio.Semaphore] = None

    def set_config(self, max_concurrent: int, yt_dlp_path: Optional[Path], ffmpeg_path: Optional[Path],
                   cookies_file: Optional[Path] = None, max_duration: int = 0, max_file_size_mb: int = 0):
        """Sets runtime configuration for the manager."""
        self._slots = asyncio.Semaphore(max_concurrent) if max_concurrent > 0 else None
        self.yt_dlp_path = yt_dlp_path
        self.ffmpeg_path = ffmpeg_path
        self.cookies_file = cookies_file
        self.max_duration = max_duration
        self.max_file_size_mb = max_file_size_mb

    def dispatch(self, job: DownloadJob, resume: bool = False) -> asyncio.Task:
        """Starts a job in a detached task and returns immediately."""
        self.dispatched_jobs.add(job.job_id)
        task = asyncio.create_task(self.run_job(job, resume), name=f"download-{job.job_id}")
        self.worker_tasks.add(task)
        task.add_done_callback(self._task_done_callback(self.worker_tasks))
        return task

    async def wait_idle(self):
        """Waits until every dispatched job task has finished."""
        while self.worker_tasks:
            await asyncio.gather(*list(self.worker_tasks), return_exceptions=True)

    def _task_done_callback(self, task_set: set) -> Callable:
        """Creates a callback to remove a task from a set and log exceptions."""
        def callback(task: asyncio.Task):
            task_set.discard(task)
            try:
                task.result()
            except asyncio.CancelledError:
                pass # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback

    def build_command(self, job: DownloadJob, job_dir: Path, resume: bool = False) -> List[str]:
        """Builds the full yt-dlp command list for a job."""
        assert self.yt_dlp_path is not None
        command = [str(self.yt_dlp_path), '--newline', '--no-mtime']
        if self.ffmpeg_path: command.extend(['--ffmpeg-location', str(self.ffmpeg_path.parent)])
        if self.cookies_file and self.cookies_file.is_file(): command.extend(['--cookies', str(self.cookies_file)])
        if self.max_file_size_mb > 0: command.extend(['--max-filesize', f'{self.max_file_size_mb}M'])
        if self.max_duration > 0: command.extend(['--match-filter', f'duration <= {self.max_duration}'])
        if resume: command.append('--continue')

        if job.is_playlist:
            command.extend(['--yes-playlist', '--ignore-errors', '-o', str(job_dir / '%(playlist_index)03d - %(title)s.%(ext)s')])
        else:
            command.extend(['--no-playlist', '-o', str(job_dir / '%(title)s.%(ext)s')])

        quality = job.quality.lower()
        if job.format == 'video':
            if quality == 'best':
                f_str = 'bestvideo+bestaudio/best'
            else:
                f_str = f'bestvideo[height<={quality}]+bestaudio/best[height<={quality}]'
            command.extend(['-f', f_str, '--merge-output-format', 'mp4'])
        else:
            audio_quality = '0' if quality == 'best' else job.quality.upper()
            command.extend(['-f', 'bestaudio/best', '-x', '--audio-format', 'mp3', '--audio-quality', audio_quality])
        command.extend(['--embed-thumbnail', '--embed-metadata'])
        command.extend(['--', job.url])
        return command

    async def run_job(self, job: DownloadJob, resume: bool = False):
        """Runs one job from spawn to outcome; always reports a 'done' event."""
        outcome = JobOutcome.failed("An unexpected error occurred")
        slots = self._slots
        acquired = False
        try:
            if slots:
                await slots.acquire()
                acquired = True
            outcome = await self._run_download_process(job, resume)
        except asyncio.CancelledError:
            outcome = JobOutcome.failed("Download task cancelled")
            raise
        except Exception:
            self.logger.exception(f"Unexpected error during download for job {job.job_id}")
        finally:
            if acquired: slots.release()
            async with self.active_processes_lock:
                self.active_processes.pop(job.job_id, None)
                self.cancelled_jobs.discard(job.job_id)
                self.dispatched_jobs.discard(job.job_id)
            await self.event_callback(('done', (job.job_id, outcome)))

    async def _run_download_process(self, job: DownloadJob, resume: bool) -> JobOutcome:
        """Executes the yt-dlp subprocess for a single job."""
        if not self.yt_dlp_path:
            return JobOutcome.failed("yt-dlp executable not found")

        job_dir = self.download_root / job.job_id
        command = self.build_command(job, job_dir, resume)

        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['preexec_fn'] = os.setsid

        async with self.active_processes_lock:
            if job.job_id in self.cancelled_jobs:
                return JobOutcome.failed("Cancelled before start")
            # A cancelled job's folder must stay deleted.
            await asyncio.to_thread(job_dir.mkdir, parents=True, exist_ok=True)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    **kwargs
                )
            except FileNotFoundError:
                return JobOutcome.failed("yt-dlp executable not found")
            except OSError as e:
                return JobOutcome.failed(f"OS error: {e}")
            self.active_processes[job.job_id] = process

        self.logger.info(f"Started yt-dlp for job {job.job_id} (PID: {process.pid}): {job.url}")
        await self.event_callback(('started', (job.job_id, process)))

        extractor = ProgressExtractor()
        run_state = _RunState()
        assert process.stdout is not None and process.stderr is not None
        # Both pipes are drained together.
        await asyncio.gather(
            self._drain(job.job_id, process.stdout, extractor, run_state),
            self._drain(job.job_id, process.stderr, extractor, run_state),
        )
        return_code = await process.wait()
        self.logger.info(f"yt-dlp for job {job.job_id} exited with code {return_code}")
        return await self._finalize(job, job_dir, return_code, extractor, run_state)

    async def _drain(self, job_id: str, stream: asyncio.StreamReader, extractor: ProgressExtractor, run_state: _RunState):
        """Reads one output stream until EOF, forwarding recognised events."""
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk: break
            for line in buffer.feed(chunk):
                await self._handle_line(job_id, line, extractor, run_state)
        for line in buffer.flush():
            await self._handle_line(job_id, line, extractor, run_state)

    async def _handle_line(self, job_id: str, line: str, extractor: ProgressExtractor, run_state: _RunState):
        self.logger.debug(f"[{job_id}] {line}")
        event = extractor.classify(line)
        if event is not None:
            run_state.observe(event)
            await self.event_callback(('update_job', (job_id, event)))

    async def _finalize(self, job: DownloadJob, job_dir: Path, return_code: int,
                        extractor: ProgressExtractor, run_state: _RunState) -> JobOutcome:
        """Applies the completion policy: produced files, not the exit code, decide success."""
        candidates = await asyncio.to_thread(find_media_files, job_dir)
        if not candidates:
            message = extractor.error_message or NO_FILES_MESSAGE
            self.logger.error(f"Job {job.job_id} produced no files: {message}")
            return JobOutcome.failed(message, return_code)

        if return_code != 0:
            self.logger.warning(f"Job {job.job_id} exited with code {return_code} but produced {len(candidates)} file(s); keeping them.")

        if not job.is_playlist:
            return JobOutcome(True, output_path=candidates[0], return_code=return_code, files=candidates)

        playlist_title = run_state.playlist_title or job.playlist_title or 'playlist'
        try:
            archive_path = await create_archive(job_dir, candidates, playlist_title)
        except ArchiveError as e:
            self.logger.error(f"Archiving failed for job {job.job_id}: {e}")
            return JobOutcome.failed(f"Failed to create archive: {e}", return_code)
        return JobOutcome(True, output_path=archive_path, return_code=return_code, files=candidates)

    async def cancel(self, job_id: str) -> bool:
        """
        Stops a job's process, or prevents it from starting.

        Jobs whose task has already finished are ignored.

        Returns:
            True if a running process was terminated.
        """
        async with self.active_processes_lock:
            if job_id not in self.dispatched_jobs and job_id not in self.active_processes:
                return False
            self.cancelled_jobs.add(job_id)
            process = self.active_processes.get(job_id)
        if process is None or process.returncode is not None:
            return False
        await self._terminate(job_id, process)
        return True

    async def _terminate(self, job_id: str, process: asyncio.subprocess.Process):
        """Interrupts the process group, then kills it if it will not exit."""
        self.logger.info(f"Terminating process for {job_id} (PID: {process.pid})...")
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_C_EVENT)
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGINT)
            await asyncio.wait_for(process.wait(), timeout=PROCESS_STOP_TIMEOUT)
        except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
            self.logger.warning(f"Graceful shutdown for {job_id} failed: {e}. Forcing termination...")
            try:
                if sys.platform == 'win32':
                    process.kill()
                else:
                    os.killpg(os.getpgid(process.pid), signal.SIGKILL)
            except (ProcessLookupError, OSError): pass # Already gone
            try:
                await asyncio.wait_for(process.wait(), timeout=PROCESS_STOP_TIMEOUT)
            except asyncio.TimeoutError:
                self.logger.error(f"Process for {job_id} did not exit after kill")

    async def stop_all_downloads(self):
        """
        Terminates every running process and waits for the job tasks to report.

        Jobs still waiting for a concurrency slot are marked cancelled too, so
        none of them spawns once a running job frees its slot.
        """
        self.logger.info("STOP signal received. Terminating downloads...")
        async with self.active_processes_lock:
            self.cancelled_jobs.update(self.dispatched_jobs, self.active_processes)
            procs_to_terminate = list(self.active_processes.items())

        await asyncio.gather(*(self._terminate(job_id, process) for job_id, process in procs_to_terminate))
        await self.wait_idle()
