"""
Defines service-wide constants, paths, and utility functions.

This module centralizes configuration for paths, URLs, and subprocess behavior,
adapting to whether the service is running from source or as a frozen executable.
"""

import os
import re
import sys
import subprocess
from pathlib import Path

# --- Service Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the service is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'ytdl_jobs').
    APP_PATH = Path(__file__).resolve().parent.parent

BIN_DIR: Path = APP_PATH / 'bin'

# Config, logs and downloads live under the user data directory.
USER_DATA_DIR: Path = Path(os.environ.get('YTDL_JOBS_HOME') or Path.home() / '.ytdl-jobs')
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
DOWNLOAD_DIR: Path = USER_DATA_DIR / 'downloads'
COOKIES_FILE: Path = USER_DATA_DIR / 'cookies.txt'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Job directory layout ---
METADATA_FILE = 'metadata.json'
STATUS_FILE = 'status.json'
JOB_DOCUMENTS = frozenset({METADATA_FILE, STATUS_FILE})

# Files yt-dlp leaves behind mid-download, or writes next to the media.
PARTIAL_SUFFIXES = frozenset({'.part', '.ytdl', '.temp', '.tmp'})
SIDECAR_SUFFIXES = frozenset({
    '.json', '.jpg', '.jpeg', '.png', '.webp', '.vtt', '.srt', '.ass',
    '.description', '.annotations', '.zip', '.bak',
})

# --- Progress handling ---
STATUS_WRITE_INTERVAL = 1.5  # seconds between throttled status writes
PROCESS_STOP_TIMEOUT = 10  # seconds of grace before a cancelled process is killed
READ_CHUNK_SIZE = 4096

CANCELLED_MESSAGE = "Cancelled by user"
MISSING_OUTPUT_MESSAGE = "Output file missing after restart"
NO_FILES_MESSAGE = "No files downloaded"

# --- yt-dlp maintenance ---
YT_DLP_URLS = {
    'win32': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp.exe',
    'linux': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp',
    'darwin': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp_macos'
}
YT_DLP_RELEASES_API_URL = 'https://api.github.com/repos/yt-dlp/yt-dlp/releases/latest'
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}
REQUEST_TIMEOUTS = (10, 60)  # (connect_timeout, read_timeout)

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')


def sanitize_filename(name: str, fallback: str = 'playlist', max_length: int = 120) -> str:
    """
    Makes a string safe to use as a single path component on every platform.

    Args:
        name: The raw name, typically a playlist or track title.
        fallback: The name to use when nothing usable is left.
        max_length: The maximum length of the result.

    Returns:
        A sanitized file name without a directory part.
    """
    cleaned = _UNSAFE_FILENAME_CHARS.sub('_', name or '')
    cleaned = re.sub(r'\s+', ' ', cleaned).strip().strip('.')
    cleaned = cleaned[:max_length].rstrip(' .')
    return cleaned or fallback
