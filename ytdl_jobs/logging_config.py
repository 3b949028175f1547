"""
Configures the service's logging setup.

This module sets up a root logger that directs messages to both a rotating
file log and the process's standard error stream.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import LOG_DIR

def setup_logging(file_log_level_str: str = 'INFO', log_dir: Optional[Path] = None, console: bool = True):
    """
    Configures the root logger for file and console logging.

    Implements a "Minecraft-style" log rotation where `latest.log` is renamed
    to a timestamped file on service startup.

    Args:
        file_log_level_str: The minimum logging level for both handlers (e.g., 'INFO').
        log_dir: Directory for the log files; defaults to the user data log directory.
        console: Whether to also log to standard error.
    """
    log_dir = log_dir or LOG_DIR

    # 1. Ensure Log Directory Exists
    log_dir.mkdir(parents=True, exist_ok=True)

    # 2. Implement Log Rotation
    latest_log_path = log_dir / 'latest.log'
    if latest_log_path.exists():
        try:
            mod_time = latest_log_path.stat().st_mtime
            timestamp_str = datetime.fromtimestamp(mod_time).strftime('%Y-%m-%d_%H-%M-%S')

            archive_log_path = log_dir / f"{timestamp_str}.log"
            latest_log_path.rename(archive_log_path)
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)

    # 3. Configure Root Logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG) # Capture all levels at the root

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # 4. Define a Formatter
    log_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'
    )

    # 5. Configure File Handler
    file_log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)

    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(log_formatter)
    root_logger.addHandler(file_handler)

    # 6. Configure Console Handler
    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setLevel(file_log_level)
        stream_handler.setFormatter(log_formatter)
        root_logger.addHandler(stream_handler)

    logging.info("--- Logging initialized ---")
    logging.debug(f"Log level set to: {logging.getLevelName(file_log_level)}")
