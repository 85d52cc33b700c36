"""Locates yt-dlp and FFmpeg, and installs the official yt-dlp release when missing."""
import os
import sys
import shutil
import asyncio
import time
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

import aiohttp
import aiofiles

from .constants import YT_DLP_URLS, REQUEST_HEADERS, APP_PATH, SUBPROCESS_CREATION_FLAGS
from .exceptions import DependencyError, DownloadCancelledError
from .progress import format_bytes

# ffmpeg predates GNU-style long options.
VERSION_FLAGS: Dict[str, str] = {'ffmpeg': '-version'}
VERSION_TIMEOUT = 15
CHUNK_SIZE = 64 * 1024


def executable_name(name: str) -> str:
    return f'{name}.exe' if sys.platform == 'win32' else name


class DependencyManager:
    """Finds the external binaries the download queue runs."""
    DOWNLOAD_RETRY_ATTEMPTS = 3

    def __init__(self, install_dir: Path = APP_PATH):
        """
        Initializes the DependencyManager.

        Args:
            install_dir: Where a locally managed yt-dlp lives and is installed to.
        """
        self.install_dir = install_dir
        self.logger = logging.getLogger(__name__)
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None

    async def initialize(self, yt_dlp_override: Optional[Path] = None, ffmpeg_override: Optional[Path] = None) -> Tuple[Optional[Path], Optional[Path]]:
        """
        Finds both executables off the event loop.

        A configured path wins when it exists, then a copy in the install
        directory, then whatever is on PATH.
        """
        self.yt_dlp_path, self.ffmpeg_path = await asyncio.gather(
            asyncio.to_thread(self.find_executable, 'yt-dlp', yt_dlp_override),
            asyncio.to_thread(self.find_executable, 'ffmpeg', ffmpeg_override)
        )
        self.logger.info(f"yt-dlp: {self.yt_dlp_path or 'not found'}, FFmpeg: {self.ffmpeg_path or 'not found'}")
        return self.yt_dlp_path, self.ffmpeg_path

    def find_executable(self, name: str, override: Optional[Path] = None) -> Optional[Path]:
        if override:
            if override.is_file():
                return override
            self.logger.warning(f"Configured {name} path does not exist: {override}")
        local_path = self.install_dir / executable_name(name)
        if local_path.is_file():
            return local_path
        found = shutil.which(name)
        return Path(found) if found else None

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Returns the first line an executable prints for its version flag, or a short reason it could not."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        flag = VERSION_FLAGS.get(executable_path.stem.lower(), '--version')
        kwargs = {'creationflags': SUBPROCESS_CREATION_FLAGS} if sys.platform == 'win32' else {}
        try:
            process = await asyncio.create_subprocess_exec(
                str(executable_path), flag,
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.DEVNULL, **kwargs
            )
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=VERSION_TIMEOUT)
        except asyncio.TimeoutError:
            return "Version check timed out"
        except OSError as e:
            self.logger.debug(f"Could not run {executable_path} {flag}: {e}")
            return "Cannot execute"
        if process.returncode != 0:
            return "Cannot execute"
        lines = stdout_bytes.decode('utf-8', 'replace').strip().splitlines()
        return lines[0] if lines else "Unknown version"

    async def _fetch(self, session: aiohttp.ClientSession, url: str, target: Path) -> int:
        """Streams `url` into `target`, retrying network errors with backoff. Returns the byte count."""
        attempt = 1
        while True:
            try:
                return await self._fetch_once(session, url, target)
            except aiohttp.ClientError as e:
                if attempt >= self.DOWNLOAD_RETRY_ATTEMPTS:
                    raise
                delay = 2 ** (attempt - 1)
                self.logger.warning(f"yt-dlp download attempt {attempt} failed ({e}). Retrying in {delay}s...")
                await asyncio.sleep(delay)
                attempt += 1

    async def _fetch_once(self, session: aiohttp.ClientSession, url: str, target: Path) -> int:
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=60)
        async with session.get(url, headers=REQUEST_HEADERS, timeout=timeout) as response:
            response.raise_for_status()
            total = response.content_length or 0
            received, started, next_report = 0, time.monotonic(), 10
            async with aiofiles.open(target, 'wb') as f_out:
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    await f_out.write(chunk)
                    received += len(chunk)
                    if total and received * 100 >= next_report * total:
                        rate = received / max(time.monotonic() - started, 1e-6)
                        self.logger.info(f"Downloading yt-dlp... {next_report}% of {format_bytes(total)} ({format_bytes(rate)}/s)")
                        next_report += 10
        return received

    async def install_yt_dlp(self) -> Path:
        """
        Downloads the latest yt-dlp release into the install directory.

        The release is written beside the target and only moved into place once
        complete, so an interrupted install never leaves a truncated binary.

        Returns:
            The path of the installed executable.

        Raises:
            DependencyError: On an unsupported platform, a network error, or a file error.
            DownloadCancelledError: If the install task is cancelled.
        """
        url = YT_DLP_URLS.get(sys.platform)
        if url is None:
            raise DependencyError(f"No yt-dlp release is published for {sys.platform}")

        target = self.install_dir / executable_name('yt-dlp')
        partial = target.with_name(target.name + '.part')
        self.logger.info(f"Installing yt-dlp from {url} to {target}")
        try:
            await asyncio.to_thread(self.install_dir.mkdir, parents=True, exist_ok=True)
            async with aiohttp.ClientSession() as session:
                size = await self._fetch(session, url, partial)
            if sys.platform != 'win32':
                await asyncio.to_thread(partial.chmod, 0o755)
            await asyncio.to_thread(os.replace, partial, target)
        except asyncio.CancelledError:
            self.logger.info("yt-dlp download cancelled by user.")
            partial.unlink(missing_ok=True)
            raise DownloadCancelledError("Download cancelled by user.")
        except aiohttp.ClientError as e:
            await asyncio.to_thread(partial.unlink, missing_ok=True)
            raise DependencyError(f"Network error: {e}") from e
        except OSError as e:
            raise DependencyError(f"File error: {e}") from e

        self.yt_dlp_path = target
        self.logger.info(f"Installed yt-dlp ({format_bytes(size)}) to {target}")
        return target
