"""Manages the download queue: job table, admission, and job state transitions."""
import asyncio
import re
import time
import uuid
import shlex
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Set, Tuple, Union

from .config import Settings
from .constants import CANCELLED_BY_USER, MAX_TITLE_LENGTH, OUTPUT_EXT_PLACEHOLDER
from .exceptions import PersistenceError
from .jobs import DownloadJob, JobEvent, JobLogs, JobStatus, ProgressSnapshot, StreamDescriptor, utcnow
from .progress import ProgressObservation
from .store import JobStore, QueueState
from .supervisor import EventCallback, ProcessSupervisor

SupervisorFactory = Callable[[Settings, EventCallback], Any]


class Enqueued(NamedTuple):
    """Result of `DownloadManager.enqueue`. `position` is -1 when admitted immediately."""
    job_id: str
    position: int


@dataclass(frozen=True)
class QueueStats:
    pending: int
    running: int
    paused: int
    completed: int
    failed: int
    cancelled: int
    total: int


def sanitize_title(title: str) -> str:
    """Reduces a page title to a short, filesystem-safe stem."""
    safe = re.sub(r'[^A-Za-z0-9]', '_', title)[:MAX_TITLE_LENGTH]
    return safe or 'stream'


class DownloadManager:
    """
    Owns the job table and the pending queue and drives jobs through their lifecycle.

    All control operations take effect on the table before they return; the
    process work they trigger happens in the background. They report success
    as a boolean instead of raising.
    """

    def __init__(self, settings: Settings, store: JobStore, supervisor_factory: Optional[SupervisorFactory] = None):
        """
        Initializes the DownloadManager.

        Args:
            settings: Runtime configuration (concurrency, paths, intervals).
            store: Where the queue state is persisted.
            supervisor_factory: Builds the process supervisor from the settings and
                the manager's event callback. Defaults to ProcessSupervisor.
        """
        self.settings = settings
        self.store = store
        self.logger = logging.getLogger(__name__)
        self.max_concurrent_downloads: int = settings.max_concurrent_downloads
        self.jobs: Dict[str, DownloadJob] = {}
        self.pending: List[str] = []
        self.active: Set[str] = set()
        self.events: asyncio.Queue[JobEvent] = asyncio.Queue()

        factory = supervisor_factory or ProcessSupervisor
        self.supervisor = factory(settings, self._on_supervisor_event)

        self._dirty = False
        self._closed = False
        self._persist_task: Optional[asyncio.Task] = None
        self._persist_timer_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    # --- Lifecycle ---

    async def initialize(self):
        """Restores the saved queue, starts the persistence timer, and admits pending jobs."""
        state = await asyncio.to_thread(self.store.load)
        self.jobs = state.jobs
        self.pending = state.pending
        self.active.clear()
        self._persist_timer_task = asyncio.create_task(self._persist_timer(), name="persist-timer")
        self._persist_timer_task.add_done_callback(self._handle_task_exception)
        self._process_queue()
        self._request_persist()

    async def shutdown(self):
        """
        Stops all processes and writes the final state.

        Running jobs keep their status in the file so they are re-queued on the
        next start.
        """
        if self._closed: return
        self._closed = True
        self.logger.info("Shutting down download manager...")
        if self._persist_timer_task:
            self._persist_timer_task.cancel()
        await self.supervisor.terminate_all()
        if self._persist_task and not self._persist_task.done():
            await asyncio.gather(self._persist_task, return_exceptions=True)
        try:
            await self.store.save_async(self._snapshot())
        except PersistenceError as e:
            self.logger.error(f"Final state save failed: {e}")

    async def wait_idle(self):
        """Waits until no job is pending or running."""
        await self._idle.wait()

    # --- Control surface ---

    def enqueue(self, stream: Union[StreamDescriptor, Mapping[str, Any]], priority: int = 0) -> Enqueued:
        """
        Creates a job for a captured stream and queues it.

        Args:
            stream: A StreamDescriptor or a raw capture payload.
            priority: Non-zero places the job at the head of the queue.

        Raises:
            StreamValidationError: If the stream data is malformed. No job is created.
        """
        descriptor = StreamDescriptor.from_capture(stream)
        job = DownloadJob(job_id=uuid.uuid4().hex, stream=descriptor, priority=priority)
        self.jobs[job.job_id] = job
        if priority > 0:
            self.pending.insert(self._priority_tier_end(), job.job_id)
        else:
            self.pending.append(job.job_id)
        self.logger.info(f"Enqueued job {job.job_id} for '{job.title}' ({descriptor.url}), priority {priority}")
        self._emit('added', job)

        self._process_queue()
        self._request_persist()
        position = self.pending.index(job.job_id) if job.job_id in self.pending else -1
        return Enqueued(job.job_id, position)

    def pause(self, job_id: str) -> bool:
        """Stops a running job, remembering its progress for display."""
        job = self._find(job_id)
        if not job or job.status != JobStatus.RUNNING:
            return False
        job.paused_snapshot = ProgressSnapshot(job.progress, job.speed, job.eta)
        job.status = JobStatus.PAUSED
        self.supervisor.terminate(job_id)
        self._release(job_id)
        self.logger.info(f"Paused job {job_id} at {job.progress:.1f}%")
        self._emit('paused', job)
        self._process_queue()
        self._request_persist()
        return True

    def resume(self, job_id: str) -> bool:
        """
        Re-queues a paused job at the head of the queue.

        yt-dlp restarts the transfer; the paused progress is shown until the new
        run overtakes it.
        """
        job = self._find(job_id)
        if not job or job.status != JobStatus.PAUSED:
            return False
        if job.paused_snapshot:
            job.progress = job.paused_snapshot.progress
            job.speed = job.paused_snapshot.speed
            job.eta = job.paused_snapshot.eta
        job.status = JobStatus.PENDING
        self.pending.insert(0, job_id)
        self.logger.info(f"Resumed job {job_id}")
        self._emit('resumed', job)
        self._process_queue()
        self._request_persist()
        return True

    def retry(self, job_id: str) -> bool:
        """Puts a failed job back at the end of the queue with its progress reset."""
        job = self._find(job_id)
        if not job or job.status != JobStatus.FAILED:
            return False
        job.status = JobStatus.PENDING
        job.progress, job.speed, job.eta = 0.0, '', ''
        job.retry_count += 1
        job.error = None
        job.paused_snapshot = None
        job.completed_at = None
        self.pending.append(job_id)
        self.logger.info(f"Retrying job {job_id} (attempt {job.retry_count + 1})")
        self._emit('retried', job)
        self._process_queue()
        self._request_persist()
        return True

    def cancel(self, job_id: str) -> bool:
        """Cancels a pending, paused or running job, marking it failed."""
        job = self._find(job_id)
        if not job or job.status not in (JobStatus.PENDING, JobStatus.PAUSED, JobStatus.RUNNING):
            return False
        if job.status == JobStatus.RUNNING:
            self.supervisor.terminate(job_id)
            self._release(job_id)
        if job_id in self.pending:
            self.pending.remove(job_id)
        job.status = JobStatus.FAILED
        job.error = CANCELLED_BY_USER
        job.completed_at = utcnow()
        job.paused_snapshot = None
        self.logger.info(f"Cancelled job {job_id}")
        self._emit('failed', job)
        self._process_queue()
        self._request_persist()
        return True

    def remove(self, job_id: str) -> bool:
        """Deletes any job that is not currently running."""
        job = self._find(job_id)
        if not job or job.status == JobStatus.RUNNING:
            return False
        self._delete(job)
        return True

    def remove_failed(self, job_id: str) -> bool:
        """Deletes a failed job."""
        job = self._find(job_id)
        if not job or job.status != JobStatus.FAILED:
            return False
        self._delete(job)
        return True

    def clear_completed(self) -> int:
        """Removes all finished (completed, failed, cancelled) jobs from the table."""
        finished = [job for job in self.jobs.values() if job.status.is_terminal]
        for job in finished:
            del self.jobs[job.job_id]
            self._emit('removed', job)
        if finished:
            self._request_persist()
        self.logger.info(f"Cleared {len(finished)} finished item(s) from the list.")
        return len(finished)

    def set_max_concurrent(self, value: int):
        """Changes the concurrency limit. Lowering it never interrupts running jobs."""
        if value < 1:
            raise ValueError("max_concurrent_downloads must be at least 1")
        self.max_concurrent_downloads = value
        self._process_queue()

    def list_jobs(self) -> List[DownloadJob]:
        return list(self.jobs.values())

    def get_job(self, job_id: str) -> Optional[DownloadJob]:
        return self._find(job_id)

    def get_logs(self, job_id: str) -> Optional[JobLogs]:
        job = self._find(job_id)
        return job.logs if job else None

    def get_stats(self) -> QueueStats:
        counts = {status: 0 for status in JobStatus}
        for job in self.jobs.values():
            counts[job.status] += 1
        return QueueStats(
            pending=counts[JobStatus.PENDING],
            running=counts[JobStatus.RUNNING],
            paused=counts[JobStatus.PAUSED],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
            total=len(self.jobs),
        )

    # --- Admission ---

    def _process_queue(self):
        """Admits jobs from the front of the queue while concurrency slots are free."""
        if self._closed:
            return
        available = self.max_concurrent_downloads - len(self.active)
        while available > 0 and self.pending:
            job_id = self.pending.pop(0)
            job = self.jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                self.logger.warning(f"Dropping stale queue entry {job_id}")
                continue
            self._admit(job)
            available -= 1
        self._update_idle()

    def _priority_tier_end(self) -> int:
        """Index just past the prioritized jobs at the head of the queue."""
        index = 0
        while index < len(self.pending) and self.jobs[self.pending[index]].priority > 0:
            index += 1
        return index

    def _admit(self, job: DownloadJob):
        job.status = JobStatus.RUNNING
        job.started_at = utcnow()
        job.completed_at = None
        job.error = None
        job.logs.begin_run()
        if not job.output_template:
            job.output_template = self._resolve_output_template(job)
        job.output_path = job.output_template
        self.active.add(job.job_id)

        command = self.supervisor.start(job)
        job.logs.full_command = shlex.join(command)
        self.logger.info(f"Admitted job {job.job_id} ({len(self.active)}/{self.max_concurrent_downloads} slots in use)")
        self.logger.debug(f"Command: {job.logs.full_command}")
        self._emit('admitted', job)

    def _resolve_output_template(self, job: DownloadJob) -> str:
        # The timestamp keeps two captures with the same title apart.
        stem = f"{sanitize_title(job.title)}_{int(time.time() * 1000)}"
        return str(self.settings.download_dir / f"{stem}.{OUTPUT_EXT_PLACEHOLDER}")

    def _release(self, job_id: str):
        self.active.discard(job_id)

    def _delete(self, job: DownloadJob):
        del self.jobs[job.job_id]
        if job.job_id in self.pending:
            self.pending.remove(job.job_id)
        self.logger.info(f"Removed job {job.job_id}")
        self._emit('removed', job)
        self._update_idle()
        self._request_persist()

    def _update_idle(self):
        if self.pending or self.active:
            self._idle.clear()
        else:
            self._idle.set()

    # --- Supervisor events ---

    async def _on_supervisor_event(self, event: Tuple[str, Any]):
        """Applies an event reported by the process supervisor to the job table."""
        msg_type, value = event
        handler_map = {
            'output': self._handle_output,
            'progress': self._handle_progress,
            'tick': self._handle_tick,
            'completed': self._handle_completed,
            'failed': self._handle_failed,
        }
        handler = handler_map.get(msg_type)
        if handler:
            handler(value)
        else:
            self.logger.warning(f"Unhandled supervisor event type: {msg_type}")

    def _find(self, job_id: Any) -> Optional[DownloadJob]:
        # Control ids come from outside; only strings can name a job.
        return self.jobs.get(job_id) if isinstance(job_id, str) else None

    def _running_job(self, job_id: str) -> Optional[DownloadJob]:
        job = self.jobs.get(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            return None
        return job

    def _handle_output(self, value: Tuple[str, str, str]):
        job_id, stream_name, line = value
        job = self._running_job(job_id)
        if job:
            job.logs.append(stream_name, line)

    def _handle_progress(self, value: Tuple[str, ProgressObservation]):
        job_id, observation = value
        job = self._running_job(job_id)
        if not job:
            return
        if observation.percentage is not None:
            job.progress = max(job.progress, observation.percentage)
        if observation.speed:
            job.speed = observation.speed
        if observation.eta:
            job.eta = observation.eta
        if observation.stage:
            self.logger.info(f"[{job_id}] {observation.stage}")
        self._emit('progress', job)

    def _handle_tick(self, job_id: str):
        job = self._running_job(job_id)
        if job:
            self._emit('progress', job)

    def _handle_completed(self, value: Tuple[str, str, int]):
        job_id, output_path, return_code = value
        job = self._running_job(job_id)
        if not job:
            self.logger.debug(f"Ignoring completion for job {job_id}; it is no longer running.")
            return
        job.status = JobStatus.COMPLETED
        job.progress = 100.0
        job.output_path = output_path
        job.completed_at = utcnow()
        job.paused_snapshot = None
        job.logs.exit_code = return_code
        self._release(job_id)
        self.logger.info(f"Download completed: {job_id} -> {output_path}")
        self._emit('completed', job)
        self._process_queue()
        self._request_persist()

    def _handle_failed(self, value: Tuple[str, str, Optional[int], Optional[str]]):
        job_id, message, return_code, detail = value
        job = self._running_job(job_id)
        if not job:
            self.logger.debug(f"Ignoring failure for job {job_id}; it is no longer running.")
            return
        job.status = JobStatus.FAILED
        job.error = message
        job.completed_at = utcnow()
        job.paused_snapshot = None
        job.logs.exit_code = return_code
        job.logs.error_details = detail
        self._release(job_id)
        self.logger.error(f"Download failed: {job_id}: {message}")
        self._emit('failed', job)
        self._process_queue()
        self._request_persist()

    # --- Events and persistence ---

    def _emit(self, kind: str, job: DownloadJob):
        self.events.put_nowait(JobEvent.for_job(kind, job))

    def _snapshot(self) -> QueueState:
        return QueueState(jobs=dict(self.jobs), pending=list(self.pending))

    def persist_now(self) -> bool:
        """Writes the current state synchronously. Returns False if the write failed."""
        try:
            self.store.save(self._snapshot())
            return True
        except PersistenceError as e:
            self.logger.error(f"State save failed, continuing in memory: {e}")
            return False

    def _request_persist(self):
        """Schedules a write of the full state, coalescing with one already scheduled."""
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._dirty = False
            self.persist_now()
            return
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = loop.create_task(self._write_pending_changes(), name="persist-state")
            self._persist_task.add_done_callback(self._handle_task_exception)

    async def _write_pending_changes(self):
        while self._dirty:
            self._dirty = False
            try:
                await self.store.save_async(self._snapshot())
            except PersistenceError as e:
                self.logger.error(f"State save failed, continuing in memory: {e}")

    async def _persist_timer(self):
        while True:
            await asyncio.sleep(self.settings.persist_interval)
            self._request_persist()

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")
