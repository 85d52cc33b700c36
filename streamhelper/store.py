"""
Persists the download queue to a JSON state file.

Writes always go to a temporary file in the target directory which is then
atomically renamed over the real file, so a reader never observes a partial
write. Loading reconciles jobs that were running when the process stopped.
"""

import os
import json
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import aiofiles

from ._version import __version__
from .constants import STATE_SCHEMA_VERSION
from .exceptions import PersistenceError
from .fileio import atomic_write_text, backup_corrupt_file, discard, open_temp_beside
from .jobs import DownloadJob, JobStatus, utcnow


@dataclass
class QueueState:
    """The job table (in insertion order) and the pending-admission order."""
    jobs: Dict[str, DownloadJob] = field(default_factory=dict)
    pending: List[str] = field(default_factory=list)


class JobStore:
    """Reads and writes the queue state file."""

    def __init__(self, path: Path):
        """
        Initializes the JobStore.

        Args:
            path: The state file location. Its directory is created on first write.
        """
        self.path = path
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def serialize(state: QueueState) -> str:
        payload = {
            'version': STATE_SCHEMA_VERSION,
            'appVersion': __version__,
            'timestamp': utcnow().isoformat(),
            'jobs': [[job_id, job.to_record()] for job_id, job in state.jobs.items()],
            'downloadQueue': list(state.pending),
        }
        return json.dumps(payload, indent=2)

    def save(self, state: QueueState):
        """
        Writes the state synchronously. Used at shutdown when no event loop is available.

        Raises:
            PersistenceError: If the file could not be written.
        """
        try:
            atomic_write_text(self.path, self.serialize(state))
        except OSError as e:
            raise PersistenceError(f"Could not write state file {self.path}: {e}") from e

    async def save_async(self, state: QueueState):
        """
        Writes the state without blocking the event loop.

        The payload is serialized before the first await, so the file always
        reflects the state at the moment of the call.

        Raises:
            PersistenceError: If the file could not be written.
        """
        data = self.serialize(state)
        temp_path = None
        try:
            placeholder = await asyncio.to_thread(open_temp_beside, self.path)
            temp_path = placeholder.name
            placeholder.close()
            async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
                await f.write(data)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            await asyncio.to_thread(os.replace, temp_path, self.path)
        except OSError as e:
            await asyncio.to_thread(discard, temp_path)
            raise PersistenceError(f"Could not write state file {self.path}: {e}") from e

    def load(self) -> QueueState:
        """
        Loads and reconciles the saved state.

        A missing file yields an empty state. A malformed file is backed up and
        also yields an empty state. Jobs that were running are moved back to
        pending at the head of the queue.
        """
        if not self.path.exists():
            self.logger.info(f"No saved download state at {self.path}. Starting empty.")
            return QueueState()

        try:
            payload = json.loads(self.path.read_text(encoding='utf-8'))
            if not isinstance(payload, dict) or not isinstance(payload.get('jobs', []), list):
                raise ValueError("state file is not an object with a 'jobs' list")
        except (OSError, ValueError) as e:
            self.logger.error(f"Error loading {self.path}: {e}. Backing up and starting empty.")
            backup_corrupt_file(self.path)
            return QueueState()

        return self._reconcile(payload)

    def _reconcile(self, payload: Dict[str, Any]) -> QueueState:
        state = QueueState()
        interrupted: List[str] = []

        for entry in payload.get('jobs', []):
            try:
                job_id, record = entry
                job = DownloadJob.from_record(record)
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable job record in {self.path}: {e}")
                continue
            if job.job_id != job_id:
                self.logger.warning(f"Job record key {job_id} does not match its id {job.job_id}; using the record id.")
            if job.status == JobStatus.RUNNING:
                # The process that ran it is gone.
                job.status = JobStatus.PENDING
                interrupted.append(job.job_id)
            state.jobs[job.job_id] = job

        saved_order = payload.get('downloadQueue') or []
        if not isinstance(saved_order, list):
            self.logger.warning(f"Ignoring malformed queue order in {self.path}; pending jobs keep table order.")
            saved_order = []
        seen = set(interrupted)
        pending = list(interrupted)
        for job_id in saved_order:
            job = state.jobs.get(job_id) if isinstance(job_id, str) else None
            if job and job.status == JobStatus.PENDING and job_id not in seen:
                pending.append(job_id)
                seen.add(job_id)
        for job_id, job in state.jobs.items():
            if job.status == JobStatus.PENDING and job_id not in seen:
                pending.append(job_id)
                seen.add(job_id)

        state.pending = pending
        if interrupted:
            self.logger.info(f"Re-queued {len(interrupted)} download(s) interrupted by the last shutdown.")
        self.logger.info(f"Loaded {len(state.jobs)} job(s), {len(state.pending)} pending, from {self.path}")
        return state
