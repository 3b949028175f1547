"""
Defines the data class for a download job and its on-disk documents.
"""

import time
import uuid
import asyncio
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional


class JobStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    PLAYLIST_PROCESSING = 'playlist-processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    INTERRUPTED = 'interrupted'


ACTIVE_STATUSES = frozenset({JobStatus.PROCESSING, JobStatus.PLAYLIST_PROCESSING})
CANCELLABLE_STATUSES = ACTIVE_STATUSES | {JobStatus.PENDING}
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# status.json uses its own vocabulary.
_DISK_STATUS = {
    JobStatus.PENDING: 'queued',
    JobStatus.PROCESSING: 'downloading',
    JobStatus.PLAYLIST_PROCESSING: 'downloading',
    JobStatus.COMPLETED: 'complete',
    JobStatus.FAILED: 'failed',
    JobStatus.INTERRUPTED: 'interrupted',
}
DISK_STATUSES = frozenset(_DISK_STATUS.values())


def new_job_id() -> str:
    return uuid.uuid4().hex


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


@dataclass
class DownloadJob:
    """
    Represents a single media-retrieval task.

    Attributes:
        job_id: A unique identifier for the job, also its directory name.
        url: The URL provided by the client (can be a playlist).
        format: Either "audio" or "video".
        quality: "best", a video height ("1080") or an audio bitrate ("192K").
        is_playlist: Whether the URL is downloaded as a playlist.
        status: The current lifecycle status.
        percent: Progress of the current file, 0-100.
        track_titles: Display titles in the order yt-dlp reached them.
        skipped_titles: Titles yt-dlp reported as unavailable.
        process: The live yt-dlp process; never persisted.
    """
    job_id: str
    url: str
    format: str = 'audio'
    quality: str = 'best'
    is_playlist: bool = False
    created_at: float = field(default_factory=time.time)
    status: JobStatus = JobStatus.PENDING
    percent: float = 0.0
    speed: Optional[str] = None
    eta: Optional[str] = None
    size_label: Optional[str] = None
    current_title: Optional[str] = None
    playlist_title: Optional[str] = None
    total_tracks: int = 0
    current_track_index: int = 0
    track_titles: List[str] = field(default_factory=list)
    skipped_titles: List[str] = field(default_factory=list)
    output_path: Optional[str] = None
    output_name: Optional[str] = None
    error_message: Optional[str] = None
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def active_status(self) -> JobStatus:
        """The status this job takes while its process is running."""
        return JobStatus.PLAYLIST_PROCESSING if self.is_playlist else JobStatus.PROCESSING

    @property
    def title(self) -> Optional[str]:
        return self.playlist_title if self.is_playlist else (self.current_title or (self.track_titles[0] if self.track_titles else None))

    def set_percent(self, value: float):
        self.percent = clamp_percent(value)

    def overall_progress(self) -> float:
        """Progress across the whole run; playlists count finished tracks."""
        if self.status == JobStatus.COMPLETED:
            return 100.0
        if self.is_playlist and self.total_tracks > 0 and self.current_track_index > 0:
            done = min(self.current_track_index, self.total_tracks) - 1
            return clamp_percent((done + self.percent / 100) / self.total_tracks * 100)
        return self.percent

    def reset_progress(self):
        """Clears per-run progress before a (re)dispatch."""
        self.percent = 0.0
        self.speed = self.eta = self.size_label = None
        self.current_title = None
        self.error_message = None

    def to_metadata(self) -> Dict[str, Any]:
        return {
            'id': self.job_id,
            'url': self.url,
            'title': self.title,
            'createdAt': self.created_at,
            'outputPath': self.output_path,
            'outputName': self.output_name,
            'format': self.format,
            'quality': self.quality,
            'isPlaylist': self.is_playlist,
            'playlistTitle': self.playlist_title,
            'totalTracks': self.total_tracks,
            'currentTrackIndex': self.current_track_index,
            'trackTitles': list(self.track_titles),
            'skippedTitles': list(self.skipped_titles),
            'errorMessage': self.error_message,
        }

    def to_status(self, progress: Optional[float] = None) -> Dict[str, Any]:
        value = self.overall_progress() if progress is None else progress
        return {'status': _DISK_STATUS[self.status], 'progress': round(clamp_percent(value), 1)}

    def to_summary(self) -> Dict[str, Any]:
        """A read-only snapshot for status polling."""
        return {
            'id': self.job_id,
            'status': self.status.value,
            'url': self.url,
            'format': self.format,
            'quality': self.quality,
            'is_playlist': self.is_playlist,
            'created_at': self.created_at,
            'title': self.title,
            'percent': self.percent,
            'progress': self.overall_progress(),
            'speed': self.speed,
            'eta': self.eta,
            'size_label': self.size_label,
            'current_title': self.current_title,
            'playlist_title': self.playlist_title,
            'total_tracks': self.total_tracks,
            'current_track_index': self.current_track_index,
            'track_titles': list(self.track_titles),
            'skipped_titles': list(self.skipped_titles),
            'output_name': self.output_name,
            'error_message': self.error_message,
        }

    @classmethod
    def from_documents(cls, metadata: Dict[str, Any], status: Dict[str, Any]) -> 'DownloadJob':
        """
        Rebuilds a job from its metadata and status documents.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field has an unusable value.
        """
        disk_status = status['status']
        if disk_status not in DISK_STATUSES:
            raise ValueError(f"Unknown stored status '{disk_status}'")
        is_playlist = bool(metadata.get('isPlaylist', False))
        job = cls(
            job_id=str(metadata['id']),
            url=str(metadata['url']),
            format=metadata.get('format', 'audio'),
            quality=str(metadata.get('quality', 'best')),
            is_playlist=is_playlist,
            created_at=float(metadata.get('createdAt') or time.time()),
            playlist_title=metadata.get('playlistTitle'),
            total_tracks=int(metadata.get('totalTracks') or 0),
            current_track_index=int(metadata.get('currentTrackIndex') or 0),
            track_titles=list(metadata.get('trackTitles') or []),
            skipped_titles=list(metadata.get('skippedTitles') or []),
            output_path=metadata.get('outputPath'),
            output_name=metadata.get('outputName'),
            error_message=metadata.get('errorMessage'),
        )
        if not is_playlist and metadata.get('title'):
            job.current_title = metadata['title']
        job.status = {
            'queued': JobStatus.PENDING,
            'downloading': job.active_status,
            'complete': JobStatus.COMPLETED,
            'failed': JobStatus.FAILED,
            'interrupted': JobStatus.INTERRUPTED,
        }[disk_status]
        job.set_percent(status.get('progress', 0) or 0)
        return job
