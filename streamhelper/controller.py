"""
Defines the AppController, the seam between the transport layer and the download queue.

Inbound capture events and control commands arrive here as plain dictionaries;
outbound job events are drained from the manager's event queue by a single
forwarding task and handed to a sink.
"""
import asyncio
import logging
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, Optional

from .downloads import DownloadManager
from .exceptions import StreamValidationError
from .jobs import JobEvent

EventSink = Callable[[JobEvent], Awaitable[None]]


def _job_id(payload: Dict[str, Any]) -> Optional[str]:
    job_id = payload.get('jobId')
    return job_id if isinstance(job_id, str) and job_id else None


class AppController:
    """Routes named commands to the DownloadManager and forwards its events."""

    def __init__(self, manager: DownloadManager, event_sink: Optional[EventSink] = None):
        """
        Initializes the AppController.

        Args:
            manager: The download manager to control.
            event_sink: Async function receiving every job event. Defaults to logging them.
        """
        self.manager = manager
        self.event_sink = event_sink or self._log_event
        self.logger = logging.getLogger(__name__)
        self._forwarder: Optional[asyncio.Task] = None

    # --- Inbound ---

    def handle_capture(self, data: Any, priority: int = 0) -> Dict[str, Any]:
        """Validates a captured stream payload and enqueues it."""
        try:
            enqueued = self.manager.enqueue(data, priority)
        except StreamValidationError as e:
            self.logger.warning(f"Rejected captured stream: {e}")
            return {'success': False, 'error': str(e)}
        return {'success': True, 'jobId': enqueued.job_id, 'queuePosition': enqueued.position}

    def handle_command(self, command: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Executes a named control command.

        Args:
            command: One of the keys of the handler map below.
            payload: Command arguments, e.g. {'jobId': ...}.

        Returns:
            A dictionary with at least a 'success' key.
        """
        if payload is None:
            payload = {}
        elif not isinstance(payload, dict):
            self.logger.warning(f"Rejected {command} command with a {type(payload).__name__} payload")
            return {'success': False, 'error': 'payload must be an object'}
        handler_map: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            'enqueue': self._cmd_enqueue,
            'pause': self._job_action(self.manager.pause),
            'resume': self._job_action(self.manager.resume),
            'retry': self._job_action(self.manager.retry),
            'cancel': self._job_action(self.manager.cancel),
            'remove': self._job_action(self.manager.remove),
            'remove_failed': self._job_action(self.manager.remove_failed),
            'clear_completed': self._cmd_clear_completed,
            'list_jobs': self._cmd_list_jobs,
            'get_job': self._cmd_get_job,
            'get_logs': self._cmd_get_logs,
            'get_stats': self._cmd_get_stats,
        }
        handler = handler_map.get(command)
        if handler is None:
            self.logger.warning(f"Unhandled command type: {command}")
            return {'success': False, 'error': f"Unknown command: {command}"}
        return handler(payload)

    def _job_action(self, action: Callable[[str], bool]) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
        def run(payload: Dict[str, Any]) -> Dict[str, Any]:
            job_id = _job_id(payload)
            if job_id is None:
                return {'success': False, 'error': 'jobId is required'}
            return {'success': action(job_id)}
        return run

    def _cmd_enqueue(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            priority = int(payload.get('priority', 0))
        except (TypeError, ValueError):
            return {'success': False, 'error': 'priority must be an integer'}
        return self.handle_capture(payload.get('stream'), priority)

    def _cmd_clear_completed(self, _payload: Dict[str, Any]) -> Dict[str, Any]:
        return {'success': True, 'removed': self.manager.clear_completed()}

    def _cmd_list_jobs(self, _payload: Dict[str, Any]) -> Dict[str, Any]:
        return {'success': True, 'jobs': [job.to_record() for job in self.manager.list_jobs()]}

    def _cmd_get_job(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        job_id = _job_id(payload)
        if job_id is None:
            return {'success': False, 'error': 'jobId is required'}
        job = self.manager.get_job(job_id)
        if job is None:
            return {'success': False, 'error': 'Job not found'}
        return {'success': True, 'job': job.to_record()}

    def _cmd_get_logs(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        job_id = _job_id(payload)
        if job_id is None:
            return {'success': False, 'error': 'jobId is required'}
        logs = self.manager.get_logs(job_id)
        if logs is None:
            return {'success': False, 'error': 'Job not found'}
        return {'success': True, 'logs': logs.to_record()}

    def _cmd_get_stats(self, _payload: Dict[str, Any]) -> Dict[str, Any]:
        stats = self.manager.get_stats()
        return {'success': True, 'stats': asdict(stats)}

    # --- Outbound ---

    def start_forwarder(self) -> asyncio.Task:
        """Starts the task that drains manager events into the sink."""
        if self._forwarder is None or self._forwarder.done():
            self._forwarder = asyncio.create_task(self._forward_events(), name="event-forwarder")
        return self._forwarder

    async def stop(self):
        """Delivers any queued events, then stops the forwarder."""
        if self._forwarder is None:
            return
        try:
            await asyncio.wait_for(self.manager.events.join(), timeout=5)
        except asyncio.TimeoutError:
            self.logger.warning("Timed out delivering queued job events.")
        self._forwarder.cancel()
        await asyncio.gather(self._forwarder, return_exceptions=True)
        self._forwarder = None

    async def _forward_events(self):
        while True:
            event = await self.manager.events.get()
            try:
                await self.event_sink(event)
            except Exception:
                self.logger.exception(f"Event sink failed for {event.kind} event of job {event.job_id}")
            finally:
                self.manager.events.task_done()

    async def _log_event(self, event: JobEvent):
        if event.kind == 'progress':
            self.logger.debug(f"[{event.job_id}] {event.progress:.1f}% {event.speed or ''} ETA {event.eta or '?'}")
        elif event.kind == 'failed':
            self.logger.info(f"[{event.job_id}] failed: {event.error}")
        else:
            self.logger.info(f"[{event.job_id}] {event.kind} ({event.status.value})")
