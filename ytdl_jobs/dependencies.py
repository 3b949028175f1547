"""Manages the discovery, version checks and updates for yt-dlp and FFmpeg."""
import os
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Optional, List, Dict, Any

import aiohttp
import aiofiles

from .constants import YT_DLP_URLS, REQUEST_HEADERS, BIN_DIR, SUBPROCESS_CREATION_FLAGS
from .exceptions import DownloadCancelledError


class DependencyManager:
    """Manages the discovery, version checks and updates for yt-dlp and FFmpeg."""
    DOWNLOAD_RETRY_ATTEMPTS = 3
    UPDATE_TIMEOUT = 120

    def __init__(self, bin_dir: Path = BIN_DIR, yt_dlp_override: Optional[Path] = None,
                 ffmpeg_override: Optional[Path] = None):
        """
        Initializes the DependencyManager.

        Args:
            bin_dir: Directory holding locally managed executables.
            yt_dlp_override: A configured yt-dlp path that takes precedence over discovery.
            ffmpeg_override: A configured ffmpeg path that takes precedence over discovery.
        """
        self.logger = logging.getLogger(__name__)
        self.bin_dir = bin_dir
        self.yt_dlp_override = yt_dlp_override
        self.ffmpeg_override = ffmpeg_override
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None

    async def initialize(self):
        """Asynchronously finds paths to dependencies to avoid blocking the event loop."""
        self.logger.info("Initializing dependency paths...")
        self.yt_dlp_path, self.ffmpeg_path = await asyncio.gather(
            asyncio.to_thread(self.find_yt_dlp),
            asyncio.to_thread(self.find_ffmpeg)
        )
        self.logger.info(f"yt-dlp path: {self.yt_dlp_path}")
        self.logger.info(f"FFmpeg path: {self.ffmpeg_path}")

    def find_yt_dlp(self) -> Optional[Path]:
        """Finds the yt-dlp executable: config, then $YT_DLP_PATH, then bin/, then PATH."""
        env_path = os.environ.get('YT_DLP_PATH', '').strip()
        self.yt_dlp_path = self._find_executable('yt-dlp', self.yt_dlp_override or (Path(env_path) if env_path else None))
        return self.yt_dlp_path

    def find_ffmpeg(self) -> Optional[Path]:
        """Finds the ffmpeg executable."""
        self.ffmpeg_path = self._find_executable('ffmpeg', self.ffmpeg_override)
        return self.ffmpeg_path

    def _find_executable(self, name: str, override: Optional[Path] = None) -> Optional[Path]:
        """Finds an executable, preferring an explicit path, then a locally managed one."""
        if override is not None:
            if override.exists():
                return override
            self.logger.warning(f"Configured {name} path does not exist: {override}")
        local_path = self.bin_dir / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.exists():
            return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def _run(self, command: List[str], timeout: float):
        kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS
        process = await asyncio.create_subprocess_exec(*command, **kwargs)
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            raise
        return process.returncode, stdout_bytes.decode('utf-8', 'replace'), stderr_bytes.decode('utf-8', 'replace')

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Asynchronously returns the version of an executable by running it with '--version'."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        try:
            command: List[str] = [str(executable_path)]
            if 'ffmpeg' in executable_path.name.lower():
                command.append('-version')
            else:
                command.append('--version')

            return_code, stdout, _ = await self._run(command, timeout=15)
            if return_code != 0:
                return "Cannot execute"

            return stdout.strip().split('\n')[0]
        except FileNotFoundError:
            return "Not found or no permission"
        except asyncio.TimeoutError:
            return "Version check timed out"
        except OSError:
            return "Cannot execute"
        except Exception:
            self.logger.exception(f"Error checking version for {executable_path}")
            return "Error checking version"

    async def update_yt_dlp(self) -> Dict[str, Any]:
        """Runs yt-dlp's self-updater and reports the resulting version."""
        if not self.yt_dlp_path:
            return {'success': False, 'version': 'Not found', 'message': 'yt-dlp executable not found'}
        try:
            return_code, stdout, stderr = await self._run([str(self.yt_dlp_path), '-U'], timeout=self.UPDATE_TIMEOUT)
        except asyncio.TimeoutError:
            return {'success': False, 'version': await self.get_version(self.yt_dlp_path), 'message': 'Update timed out'}
        except OSError as e:
            return {'success': False, 'version': 'unknown', 'message': str(e)}

        version = await self.get_version(self.yt_dlp_path)
        self.logger.info(f"yt-dlp self-update finished with code {return_code}; version {version}")
        return {
            'success': return_code == 0,
            'version': version,
            'message': stdout.strip() or stderr.strip() or 'Update completed',
        }

    async def _download_file(self, session: aiohttp.ClientSession, url: str, save_path: Path):
        """Downloads a file as a single stream, with retries."""
        for attempt in range(self.DOWNLOAD_RETRY_ATTEMPTS):
            try:
                async with session.get(url, headers=REQUEST_HEADERS, timeout=aiohttp.ClientTimeout(total=None, sock_read=60)) as r:
                    r.raise_for_status()
                    total_size = int(r.headers.get('Content-Length', 0))
                    bytes_downloaded = 0
                    async with aiofiles.open(save_path, 'wb') as f_out:
                        async for chunk in r.content.iter_chunked(8192):
                            await f_out.write(chunk)
                            bytes_downloaded += len(chunk)
                    self.logger.info(f"Downloaded {bytes_downloaded/1024/1024:.1f} MB" + (f" of {total_size/1024/1024:.1f} MB" if total_size else ""))
                return
            except aiohttp.ClientError as e:
                self.logger.error(f"Download error on attempt {attempt + 1}: {e}")
                if attempt < self.DOWNLOAD_RETRY_ATTEMPTS - 1: await asyncio.sleep(2 ** attempt)
                else: raise e

    async def install_yt_dlp(self) -> Dict[str, Any]:
        """
        Downloads the latest yt-dlp release into the local bin directory.

        Returns the same shape as `update_yt_dlp`, plus 'path' on success.
        """
        platform = sys.platform
        if platform not in YT_DLP_URLS:
            return {'success': False, 'version': 'Not found', 'message': f"Unsupported OS: {platform}"}

        save_path = self.bin_dir / ('yt-dlp.exe' if platform == 'win32' else 'yt-dlp')
        try:
            await asyncio.to_thread(self.bin_dir.mkdir, parents=True, exist_ok=True)
            async with aiohttp.ClientSession() as session:
                await self._download_file(session, YT_DLP_URLS[platform], save_path)

            if platform in ['linux', 'darwin']:
                await asyncio.to_thread(save_path.chmod, 0o755)
        except asyncio.CancelledError:
            self.logger.info("yt-dlp download cancelled.")
            raise DownloadCancelledError("Download cancelled.")
        except aiohttp.ClientError as e:
            return {'success': False, 'version': 'Not found', 'message': f"Network error: {e}"}
        except (IOError, OSError) as e:
            return {'success': False, 'version': 'Not found', 'message': f"File error: {e}"}

        self.yt_dlp_path = save_path
        version = await self.get_version(save_path)
        self.logger.info(f"Installed yt-dlp {version} to {save_path}")
        return {'success': True, 'version': version, 'message': f"Installed yt-dlp to {save_path}", 'path': str(save_path)}
