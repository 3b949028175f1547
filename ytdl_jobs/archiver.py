"""Bundles a finished playlist into one archive using the platform's archiver."""
import sys
import asyncio
import logging
from pathlib import Path
from typing import List, Sequence

from .constants import SUBPROCESS_CREATION_FLAGS, sanitize_filename
from .exceptions import ArchiveError

logger = logging.getLogger(__name__)

ARCHIVE_TIMEOUT = 600


def build_archive_command(archive_name: str, file_names: Sequence[str]) -> List[str]:
    """Builds the archiver command, to be run from inside the job directory."""
    if sys.platform == 'win32':
        paths = ",".join("'" + name.replace("'", "''") + "'" for name in file_names)
        destination = archive_name.replace("'", "''")
        return [
            'powershell', '-NoProfile', '-NonInteractive', '-Command',
            f"Compress-Archive -LiteralPath {paths} -DestinationPath '{destination}' -Force",
        ]
    return ['zip', '-q', '-j', archive_name, *file_names]


async def create_archive(directory: Path, files: Sequence[Path], playlist_title: str) -> Path:
    """
    Compresses `files` into `<sanitized playlist title>.zip` inside `directory`.

    Args:
        directory: The job directory; the archiver runs with it as working directory.
        files: The media files to bundle, in playback order.
        playlist_title: Used to name the archive.

    Returns:
        The path of the created archive.

    Raises:
        ArchiveError: If the archiver is missing, fails, or produces nothing.
    """
    archive_path = directory / f"{sanitize_filename(playlist_title)}.zip"
    command = build_archive_command(archive_path.name, [f.name for f in files])

    kwargs = {}
    if sys.platform == 'win32':
        kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(directory),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs
        )
        _, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=ARCHIVE_TIMEOUT)
    except FileNotFoundError:
        raise ArchiveError(f"Archiver not found: {command[0]}")
    except asyncio.TimeoutError:
        process.kill()
        raise ArchiveError("Archiving timed out")
    except OSError as e:
        raise ArchiveError(f"OS error while archiving: {e}")

    if process.returncode != 0:
        detail = stderr_bytes.decode('utf-8', 'replace').strip().splitlines()
        raise ArchiveError(f"Archiver exited with code {process.returncode}" + (f": {detail[-1]}" if detail else ""))
    if not archive_path.is_file() or archive_path.stat().st_size == 0:
        raise ArchiveError("Archiver produced no output")

    logger.info(f"Created archive {archive_path.name} with {len(files)} file(s)")
    return archive_path
