"""
Provides methods to extract information from URLs using yt-dlp.
"""

import json
import asyncio
import sys
import logging
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from .exceptions import URLExtractionError, DownloadCancelledError
from .constants import SUBPROCESS_CREATION_FLAGS
from .progress import condense_error


def is_playlist_url(url: str) -> bool:
    """
    Guesses whether a URL should be downloaded as a playlist.

    A `list=` query parameter makes it a playlist unless a `v=` parameter
    names a single video inside that list.
    """
    query = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
    return 'list' in query and 'v' not in query


@dataclass
class SearchResult:
    id: str
    title: str
    url: str
    thumbnail: str
    duration: float
    channel: str


class URLInfoExtractor:
    """
    Provides methods to extract information from URLs using yt-dlp.

    This class uses flat-playlist queries so no media is ever fetched.
    """
    def __init__(self, yt_dlp_path: Path):
        """
        Initializes the URLInfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
        """
        self.yt_dlp_path = yt_dlp_path
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                return condense_error(line)

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, command: List[str], timeout: int) -> Tuple[str, str]:
        """
        A robust wrapper for running a yt-dlp command.

        Args:
            command: The command and its arguments as a list of strings.
            timeout: The timeout in seconds for the command.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            URLExtractionError: On any failure (e.g., timeout, non-zero exit code).
            DownloadCancelledError: If the task is cancelled.
        """
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')

        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise URLExtractionError("yt-dlp executable not found.")
        except asyncio.TimeoutError:
            if process: process.kill()
            self.logger.error(f"yt-dlp command timed out: {' '.join(command)}")
            raise URLExtractionError("yt-dlp command timed out.")
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise URLExtractionError(f"OS error: {e}")
        except asyncio.CancelledError:
             if process: process.kill()
             raise DownloadCancelledError("URL processing cancelled.")

        if process.returncode != 0:
            error_msg = self._parse_yt_dlp_error(stderr)
            self.logger.error(f"yt-dlp command failed for '{command[-1]}'. Stderr: {stderr.strip()}")
            raise URLExtractionError(error_msg)

        return stdout, stderr

    async def search(self, query: str, limit: int = 40) -> List[SearchResult]:
        """
        Searches YouTube and returns flat results.

        Args:
            query: Free-text search terms.
            limit: Maximum number of results.

        Returns:
            The parsed results; lines that are not valid JSON are skipped.

        Raises:
            URLExtractionError: If the yt-dlp command fails.
        """
        self.logger.info(f"Searching YouTube for: {query}")
        command = [str(self.yt_dlp_path), '--dump-json', '--flat-playlist', '--skip-download', '--no-warnings', f'ytsearch{limit}:{query}']
        stdout, _ = await self._run_command(command, timeout=60)

        results: List[SearchResult] = []
        for line in stdout.splitlines():
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                self.logger.warning(f"Failed to parse search result: {e}")
                continue
            video_id = data.get('id') or ''
            results.append(SearchResult(
                id=video_id,
                title=data.get('title') or 'Unknown',
                url=data.get('webpage_url') or data.get('url') or f'https://youtube.com/watch?v={video_id}',
                thumbnail=data.get('thumbnail') or f'https://img.youtube.com/vi/{video_id}/hqdefault.jpg',
                duration=data.get('duration') or 0,
                channel=data.get('uploader') or data.get('channel') or 'Unknown',
            ))
        self.logger.info(f"Found {len(results)} search results")
        return results
