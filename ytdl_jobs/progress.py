"""
Turns free-text yt-dlp output into structured progress events.

Output arrives as raw byte chunks from two pipes. `LineBuffer` reassembles
complete lines per stream, and `ProgressExtractor` classifies each line
against an ordered, first-match-wins rule table. Each rule maps a line to an
optional `ProgressEvent`; the event knows how to apply itself to a job and
whether its arrival should force an immediate status write.
"""

import codecs
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ClassVar, List, Optional, Sequence, Tuple

# --- yt-dlp output patterns ---
_PROGRESS_RE = re.compile(
    r'^\[download\]\s+(?P<percent>\d+(?:\.\d+)?)%'
    r'(?:\s+of\s+~?\s*(?P<size>\S+))?'
    r'(?:\s+in\s+\S+)?'
    r'(?:\s+at\s+(?P<speed>Unknown B/s|\S+))?'
    r'(?:\s+ETA\s+(?P<eta>\S+))?'
)
_TRACK_RE = re.compile(r'^\[download\]\s+Downloading\s+(?:item|video)\s+(?P<index>\d+)\s+of\s+(?P<total>\d+)', re.IGNORECASE)
_DESTINATION_RES = (
    re.compile(r'^\[(?:download|ExtractAudio)\]\s+Destination:\s+(?P<path>.+)$'),
    re.compile(r'^\[Merger\]\s+Merging formats into\s+"(?P<path>.+)"$'),
    re.compile(r'^\[download\]\s+(?P<path>.+?) has already been downloaded'),
)
_PLAYLIST_RE = re.compile(r'^\[download\]\s+Downloading playlist:\s*(?P<name>.+)$')
_FORMAT_ID_SUFFIX_RE = re.compile(r'\.f\d+$')
_ERROR_PREFIX_RE = re.compile(r'^\[[^\]]+\]\s*(?:[\w-]+:\s+)?')

# Substrings of yt-dlp errors that mean one entry was skipped.
SKIP_MARKERS: Tuple[str, ...] = (
    'video unavailable',
    'private video',
    'geo-blocked',
    'not available in your country',
    'has been removed',
    'members-only',
    'sign in to confirm your age',
)

MAX_ERROR_LENGTH = 200


class LineBuffer:
    """Incrementally decodes a byte stream into complete text lines."""

    def __init__(self, encoding: str = 'utf-8'):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors='replace')
        self._pending = ''

    def feed(self, data: bytes) -> List[str]:
        """Returns the lines completed by `data`; the trailing fragment is held back."""
        text = self._pending + self._decoder.decode(data)
        parts = re.split(r'\r\n|\r|\n', text)
        self._pending = parts.pop()
        return [line.strip() for line in parts if line.strip()]

    def flush(self) -> List[str]:
        """Returns whatever is left once the stream has closed."""
        text = (self._pending + self._decoder.decode(b'', final=True)).strip()
        self._pending = ''
        return [text] if text else []


@dataclass(frozen=True)
class ProgressEvent:
    """Base class for anything the extractor can recognise in a line."""
    force_write: ClassVar[bool] = False
    touches_metadata: ClassVar[bool] = False

    def apply(self, job) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class ProgressUpdate(ProgressEvent):
    percent: float
    speed: Optional[str] = None
    eta: Optional[str] = None
    size_label: Optional[str] = None

    def apply(self, job) -> None:
        job.set_percent(self.percent)
        if self.speed: job.speed = self.speed
        if self.eta: job.eta = self.eta
        if self.size_label: job.size_label = self.size_label


@dataclass(frozen=True)
class TrackBoundary(ProgressEvent):
    index: int
    total: int
    force_write: ClassVar[bool] = True
    touches_metadata: ClassVar[bool] = True

    def apply(self, job) -> None:
        job.current_track_index = self.index
        job.total_tracks = self.total
        # A new track starts from zero with no title until its destination line.
        job.set_percent(0)
        job.current_title = None
        job.speed = job.eta = None


@dataclass(frozen=True)
class Destination(ProgressEvent):
    title: str
    touches_metadata: ClassVar[bool] = True

    def apply(self, job) -> None:
        job.current_title = self.title
        if self.title not in job.track_titles:
            job.track_titles.append(self.title)


@dataclass(frozen=True)
class PlaylistName(ProgressEvent):
    title: str
    force_write: ClassVar[bool] = True
    touches_metadata: ClassVar[bool] = True

    def apply(self, job) -> None:
        job.playlist_title = self.title


@dataclass(frozen=True)
class TrackSkipped(ProgressEvent):
    line: str
    touches_metadata: ClassVar[bool] = True

    def apply(self, job) -> None:
        title = job.current_title or (f"Track {job.current_track_index}" if job.current_track_index else None)
        if title and title not in job.skipped_titles:
            job.skipped_titles.append(title)


Rule = Callable[[str], Optional[ProgressEvent]]


def match_progress(line: str) -> Optional[ProgressEvent]:
    match = _PROGRESS_RE.match(line)
    if not match:
        return None
    speed = match.group('speed')
    return ProgressUpdate(
        percent=float(match.group('percent')),
        speed=None if speed == 'Unknown B/s' else speed,
        eta=match.group('eta') if match.group('eta') != 'Unknown' else None,
        size_label=match.group('size'),
    )


def match_track_boundary(line: str) -> Optional[ProgressEvent]:
    match = _TRACK_RE.match(line)
    if not match:
        return None
    return TrackBoundary(index=int(match.group('index')), total=int(match.group('total')))


def match_destination(line: str) -> Optional[ProgressEvent]:
    for pattern in _DESTINATION_RES:
        match = pattern.match(line)
        if match:
            title = display_title(match.group('path'))
            return Destination(title) if title else None
    return None


def match_playlist_name(line: str) -> Optional[ProgressEvent]:
    match = _PLAYLIST_RE.match(line)
    if not match:
        return None
    return PlaylistName(match.group('name').strip())


def match_skip_marker(line: str) -> Optional[ProgressEvent]:
    lowered = line.lower()
    if any(marker in lowered for marker in SKIP_MARKERS):
        return TrackSkipped(line)
    return None


def display_title(path_str: str) -> str:
    """The file name without directory, extension, or yt-dlp's `.fNNN` format suffix."""
    stem = Path(path_str.strip().strip('"')).stem
    return _FORMAT_ID_SUFFIX_RE.sub('', stem).strip()


def condense_error(line: str) -> str:
    """Strips `ERROR:` and the `[extractor] id:` prefix from a yt-dlp error line."""
    message = line.strip()
    if message.upper().startswith('ERROR:'):
        message = message[6:].strip()
    message = _ERROR_PREFIX_RE.sub('', message, count=1).strip() or message
    return message[:MAX_ERROR_LENGTH] + "..." if len(message) > MAX_ERROR_LENGTH else message


class ProgressExtractor:
    """
    Classifies yt-dlp output lines for a single job run.

    Stateless apart from remembering the last error line, which the launcher
    uses as the failure message when a run produces no files.
    """
    RULES: Sequence[Rule] = (
        match_progress,
        match_track_boundary,
        match_destination,
        match_playlist_name,
        match_skip_marker,
    )

    def __init__(self, rules: Optional[Sequence[Rule]] = None):
        self.rules = tuple(rules) if rules is not None else tuple(self.RULES)
        self.last_error: Optional[str] = None

    def classify(self, line: str) -> Optional[ProgressEvent]:
        """Returns the event produced by the first matching rule, if any."""
        if line.startswith('ERROR:'):
            self.last_error = line
        for rule in self.rules:
            event = rule(line)
            if event is not None:
                return event
        return None

    @property
    def error_message(self) -> Optional[str]:
        return condense_error(self.last_error) if self.last_error else None
