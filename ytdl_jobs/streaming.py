"""Byte-range read access to a completed job's artifact."""
import re
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

import aiofiles

from .exceptions import RangeNotSatisfiableError

STREAM_CHUNK_SIZE = 64 * 1024

_RANGE_RE = re.compile(r'^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$', re.IGNORECASE)


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """
    Parses a single-range `Range` header into inclusive byte offsets.

    Args:
        header: The header value, e.g. "bytes=0-1023", "bytes=500-" or "bytes=-500".
        size: The artifact size in bytes.

    Returns:
        (start, end) inclusive, or None when no range was requested.

    Raises:
        RangeNotSatisfiableError: If the header is malformed or outside the file.
    """
    if not header:
        return None
    match = _RANGE_RE.match(header)
    if not match or (not match.group(1) and not match.group(2)):
        raise RangeNotSatisfiableError(f"Unsupported range: {header}")
    first, last = match.group(1), match.group(2)
    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiableError(f"Empty suffix range: {header}")
        return max(0, size - suffix), size - 1
    start = int(first)
    end = min(int(last), size - 1) if last else size - 1
    if start >= size or end < start:
        raise RangeNotSatisfiableError(f"Range {header} not satisfiable for {size} bytes")
    return start, end


@dataclass
class ArtifactSlice:
    """
    A readable window onto a job's output file.

    Iterating `chunks()` to the end calls `on_complete` once, which the
    controller uses to schedule the post-download cleanup.
    """
    job_id: str
    path: Path
    name: str
    size: int
    start: int
    end: int
    partial: bool
    on_complete: Optional[Callable[[], Awaitable[None]]] = None

    @property
    def length(self) -> int:
        return self.end - self.start + 1 if self.size else 0

    @property
    def content_type(self) -> str:
        return mimetypes.guess_type(self.name)[0] or 'application/octet-stream'

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.size}"

    async def chunks(self, chunk_size: int = STREAM_CHUNK_SIZE) -> AsyncIterator[bytes]:
        remaining = self.length
        async with aiofiles.open(self.path, 'rb') as f:
            await f.seek(self.start)
            while remaining > 0:
                chunk = await f.read(min(chunk_size, remaining))
                if not chunk: break
                remaining -= len(chunk)
                yield chunk
        if self.on_complete is not None:
            await self.on_complete()

    async def read(self) -> bytes:
        return b''.join([chunk async for chunk in self.chunks()])
