"""Runs and supervises yt-dlp processes for individual download jobs."""
import asyncio
import os
import re
import sys
import signal
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

from .config import Settings
from .constants import (
    SUBPROCESS_CREATION_FLAGS, FALLBACK_USER_AGENT, OUTPUT_EXT_PLACEHOLDER,
    KNOWN_OUTPUT_EXTENSIONS, DEFAULT_OUTPUT_EXTENSION
)
from .jobs import DownloadJob, StreamDescriptor
from .progress import parse_progress, extract_destination

EventCallback = Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]]

STREAM_READ_LIMIT = 1024 * 1024

# Checked against yt-dlp's error output, first match wins.
FAILURE_PATTERNS = (
    (re.compile(r'name or service not known|nodename nor servname|getaddrinfo failed|'
                r'temporary failure in name resolution|failed to resolve', re.I),
     'Network error: could not resolve host'),
    (re.compile(r'connection reset|connection refused|connection aborted|remote end closed', re.I),
     'Network error: connection reset'),
    (re.compile(r'timed out|timeout', re.I), 'Network error: connection timed out'),
    (re.compile(r'permission denied|errno 13|access is denied|operation not permitted', re.I),
     'Permission denied'),
)


def _http_url(value: str) -> bool:
    parsed = urlparse(value or '')
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def build_request_headers(stream: StreamDescriptor) -> List[Tuple[str, str]]:
    """Headers that make yt-dlp's requests look like the browser's."""
    headers: List[Tuple[str, str]] = []
    if _http_url(stream.page_url):
        parsed = urlparse(stream.page_url)
        headers.append(('Referer', stream.page_url))
        headers.append(('Origin', f"{parsed.scheme}://{parsed.netloc}"))
    user_agent = stream.user_agent.strip()
    if not user_agent or user_agent.lower() == 'unknown':
        user_agent = FALLBACK_USER_AGENT
    headers.append(('User-Agent', user_agent))
    if stream.cookies:
        headers.append(('Cookie', stream.cookies))
    return headers


def _error_detail(lines: List[str]) -> Optional[str]:
    """Picks the most useful line from yt-dlp's error output."""
    for line in reversed(lines):
        if line.lower().startswith('error:'):
            detail = line[6:].strip()
            return detail[:200] + "..." if len(detail) > 200 else detail
    return lines[-1][:200] if lines else None


def describe_failure(return_code: int, error_lines: List[str]) -> str:
    """
    Builds the user-facing reason for a failed download.

    Network and permission problems are called out separately from a plain
    non-zero exit because they need a different fix.
    """
    if return_code < 0:
        try:
            name = signal.Signals(-return_code).name
        except ValueError:
            name = str(-return_code)
        return f"Process terminated by signal {name}"

    detail = _error_detail(error_lines)
    haystack = '\n'.join(error_lines)
    for pattern, label in FAILURE_PATTERNS:
        if pattern.search(haystack):
            return f"{label}: {detail}" if detail else label
    if detail:
        return f"yt-dlp exited with code {return_code}: {detail}"
    return f"yt-dlp exited with code {return_code}"


def describe_spawn_error(error: OSError, executable: str) -> str:
    if isinstance(error, FileNotFoundError):
        return f"yt-dlp executable not found: {executable}"
    if isinstance(error, PermissionError):
        return f"Permission denied: cannot run {executable}"
    return f"Error: OS error: {error}"


def locate_output(template: str, destination: Optional[str] = None) -> str:
    """
    Finds the file yt-dlp produced for an output template.

    yt-dlp only decides the extension once formats are chosen, so the file it
    announced is preferred, then every known extension is tried.
    """
    if destination and Path(destination).is_file():
        return destination
    for ext in KNOWN_OUTPUT_EXTENSIONS:
        candidate = template.replace(OUTPUT_EXT_PLACEHOLDER, ext)
        if Path(candidate).is_file():
            return candidate
    return template.replace(OUTPUT_EXT_PLACEHOLDER, DEFAULT_OUTPUT_EXTENSION)


@dataclass(eq=False)
class _ActiveRun:
    """One yt-dlp invocation. Identity distinguishes a restarted job's runs."""
    job_id: str
    template: str
    process: Optional[asyncio.subprocess.Process] = None
    ticker: Optional[asyncio.Task] = None
    destination: Optional[str] = None


class ProcessSupervisor:
    """
    Starts, watches and stops yt-dlp processes.

    The supervisor never changes job state. It reports what happened through
    `event_callback` as `(type, value)` tuples:

        ('output', (job_id, stream_name, line))
        ('progress', (job_id, ProgressObservation))
        ('tick', job_id)
        ('completed', (job_id, output_path, return_code))
        ('failed', (job_id, message, return_code, detail))

    Once a run is terminated, none of its later events are delivered.
    """

    def __init__(self, settings: Settings, event_callback: EventCallback, kill_timeout: float = 5.0):
        """
        Initializes the ProcessSupervisor.

        Args:
            settings: Supplies the yt-dlp/ffmpeg paths, format selection, retries and tick interval.
            event_callback: The async function to call with supervisor events.
            kill_timeout: Seconds to wait after a termination signal before killing.
        """
        self.settings = settings
        self.event_callback = event_callback
        self.kill_timeout = kill_timeout
        self.logger = logging.getLogger(__name__)
        self._runs: Dict[str, _ActiveRun] = {}
        self._tasks: Set[asyncio.Task] = set()

    def build_command(self, job: DownloadJob) -> List[str]:
        """Builds the full yt-dlp command list for a job with a resolved output template."""
        assert job.output_template is not None
        executable = str(self.settings.yt_dlp_path) if self.settings.yt_dlp_path else 'yt-dlp'
        command = [
            executable, job.stream.url,
            '-o', job.output_template,
            '--newline', '--no-playlist',
            '-f', self.settings.format_selection,
            '--no-check-certificate', '--ignore-errors',
            '--retries', str(self.settings.retries),
            '--no-part', '--force-overwrites',
        ]
        if self.settings.ffmpeg_path:
            command.extend(['--ffmpeg-location', str(self.settings.ffmpeg_path.parent)])
        for name, value in build_request_headers(job.stream):
            command.extend(['--add-header', f'{name}:{value}'])
        return command

    def is_running(self, job_id: str) -> bool:
        """Whether the job has a run that has neither reported an outcome nor been terminated."""
        return job_id in self._runs

    def start(self, job: DownloadJob) -> List[str]:
        """
        Launches yt-dlp for a job in the background.

        Returns:
            The command line that will be executed.
        """
        if self.is_running(job.job_id):
            self.terminate(job.job_id)
        command = self.build_command(job)
        run = _ActiveRun(job.job_id, job.output_template)
        self._runs[job.job_id] = run
        self._track(asyncio.create_task(self._run(run, command), name=f"download-{job.job_id}"))
        return command

    def terminate(self, job_id: str) -> bool:
        """
        Stops a job's process without reporting an outcome for it.

        Returns:
            True if the job had an active run.
        """
        if not self.is_running(job_id):
            return False
        run = self._runs.pop(job_id)
        self._stop_ticker(run)
        if run.process is not None:
            self._signal_process(run.process)
            self._track(asyncio.create_task(self._reap(run.process), name=f"reap-{job_id}"))
        return True

    async def terminate_all(self):
        """Stops every active process and waits for them to exit."""
        for job_id in list(self._runs):
            self.terminate(job_id)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _track(self, task: asyncio.Task):
        self._tasks.add(task)
        task.add_done_callback(self._task_done_callback)

    def _task_done_callback(self, task: asyncio.Task):
        self._tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass # Normal cancellation
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    def _is_current(self, run: _ActiveRun) -> bool:
        return self._runs.get(run.job_id) is run

    async def _emit(self, run: _ActiveRun, event: Tuple[str, Any]):
        if not self._is_current(run):
            return
        try:
            await self.event_callback(event)
        except Exception:
            self.logger.exception(f"Error handling supervisor event {event[0]} for job {run.job_id}")

    def _stop_ticker(self, run: _ActiveRun):
        if run.ticker is not None:
            run.ticker.cancel()
            run.ticker = None

    def _signal_process(self, process: asyncio.subprocess.Process):
        self.logger.info(f"Terminating yt-dlp process (PID: {process.pid})...")
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGTERM)
        except (ProcessLookupError, OSError) as e:
            self.logger.debug(f"Could not signal PID {process.pid}: {e}")

    async def _reap(self, process: asyncio.subprocess.Process):
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"PID {process.pid} ignored the termination signal. Forcing termination...")
            try: process.kill()
            except (ProcessLookupError, OSError): pass # Already gone
            await process.wait()

    async def _tick(self, run: _ActiveRun):
        while True:
            await asyncio.sleep(self.settings.progress_interval)
            await self._emit(run, ('tick', run.job_id))

    async def _pump(self, run: _ActiveRun, stream: asyncio.StreamReader, stream_name: str, error_lines: List[str]):
        while True:
            line_bytes = await stream.readline()
            if not line_bytes: break
            clean_line = line_bytes.decode('utf-8', 'replace').strip()
            if not clean_line: continue
            self.logger.debug(f"[{run.job_id}] {clean_line}")

            if stream_name == 'stderr' or clean_line.startswith('ERROR:'):
                error_lines.append(clean_line)
            if destination := extract_destination(clean_line):
                run.destination = destination
            await self._emit(run, ('output', (run.job_id, stream_name, clean_line)))
            if (observation := parse_progress(clean_line)) is not None:
                await self._emit(run, ('progress', (run.job_id, observation)))

    async def _run(self, run: _ActiveRun, command: List[str]):
        """Executes the yt-dlp subprocess for a single run and reports its outcome."""
        error_lines: List[str] = []
        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['preexec_fn'] = os.setsid

        output_dir = Path(run.template).parent
        try:
            await asyncio.to_thread(output_dir.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            self.logger.error(f"Cannot create output directory {output_dir}: {e}")
            label = 'Permission denied' if isinstance(e, PermissionError) else 'Error'
            await self._finish(run, ('failed', (run.job_id, f"{label}: cannot create {output_dir}", None, str(e))))
            return

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_READ_LIMIT,
                **kwargs
            )
        except OSError as e:
            message = describe_spawn_error(e, command[0])
            self.logger.error(f"Could not start yt-dlp for job {run.job_id}: {e}")
            await self._finish(run, ('failed', (run.job_id, message, None, str(e))))
            return

        run.process = process
        if not self._is_current(run):
            # Paused or cancelled while the process was being created.
            self._signal_process(process)
            await self._reap(process)
            return

        self.logger.info(f"Started yt-dlp for job {run.job_id} (PID: {process.pid})")
        run.ticker = asyncio.create_task(self._tick(run), name=f"tick-{run.job_id}")
        assert process.stdout is not None and process.stderr is not None
        pumps = [
            asyncio.create_task(self._pump(run, process.stdout, 'stdout', error_lines), name=f"stdout-{run.job_id}"),
            asyncio.create_task(self._pump(run, process.stderr, 'stderr', error_lines), name=f"stderr-{run.job_id}"),
        ]
        try:
            await asyncio.gather(*pumps)
            return_code = await process.wait()
        except Exception as e:
            # e.g. a line longer than STREAM_READ_LIMIT
            self.logger.exception(f"Unexpected error while supervising job {run.job_id}")
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            self._signal_process(process)
            await self._reap(process)
            await self._finish(run, ('failed', (run.job_id, "Error: An unexpected exception occurred", process.returncode, str(e))))
            return
        finally:
            self._stop_ticker(run)

        if not self._is_current(run):
            self.logger.debug(f"Ignoring exit of superseded process for job {run.job_id} (code {return_code})")
            return

        if return_code == 0:
            output_path = await asyncio.to_thread(locate_output, run.template, run.destination)
            self.logger.info(f"yt-dlp finished job {run.job_id}: {output_path}")
            await self._finish(run, ('completed', (run.job_id, output_path, return_code)))
        else:
            message = describe_failure(return_code, error_lines)
            self.logger.warning(f"yt-dlp failed for job {run.job_id} with code {return_code}: {message}")
            await self._finish(run, ('failed', (run.job_id, message, return_code, _error_detail(error_lines))))

    async def _finish(self, run: _ActiveRun, event: Tuple[str, Any]):
        """Drops the run from the registry and reports its outcome."""
        if not self._is_current(run):
            return
        del self._runs[run.job_id]
        try:
            await self.event_callback(event)
        except Exception:
            self.logger.exception(f"Error handling outcome {event[0]} for job {run.job_id}")
