"""
Defines the data classes for captured streams, download jobs, and job events.

`StreamDescriptor` is validated with Pydantic because it arrives from outside
the process (the browser capture). Jobs are plain dataclasses owned by the
queue manager; `to_record`/`from_record` convert them to and from the
camelCase JSON records stored in the state file.
"""

import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .constants import MAX_LOG_LINES, RUN_SEPARATOR
from .exceptions import StreamValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _require_mapping(value: Any, what: str):
    if not isinstance(value, Mapping):
        raise TypeError(f"{what} must be an object, got {type(value).__name__}")


class JobStatus(str, enum.Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    PAUSED = 'paused'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class RequestHeader(BaseModel):
    """A single HTTP header observed on the captured request."""
    model_config = ConfigDict(frozen=True)

    name: str
    value: str


class StreamDescriptor(BaseModel):
    """
    Immutable metadata describing a captured stream.

    Field names are snake_case in Python and camelCase on the wire, matching
    the payloads sent by the browser extension.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    url: str
    page_title: str = 'Unknown Stream'
    page_url: str = ''
    user_agent: str = ''
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))
    original_page_title: Optional[str] = None
    custom_name: Optional[str] = None
    request_headers: Tuple[RequestHeader, ...] = ()
    cookies: str = ''

    @field_validator('url')
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Requires an absolute URL with a scheme and host."""
        value = value.strip()
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"'{value}' is not an absolute URL.")
        return value

    @field_validator('page_title', mode='before')
    @classmethod
    def default_page_title(cls, value: Any) -> Any:
        return value or 'Unknown Stream'

    @field_validator('page_url', 'user_agent', 'cookies', mode='before')
    @classmethod
    def empty_when_missing(cls, value: Any) -> Any:
        return value or ''

    @field_validator('request_headers', mode='before')
    @classmethod
    def empty_headers_when_missing(cls, value: Any) -> Any:
        return value or ()

    @property
    def display_name(self) -> str:
        """The name shown to the user and used for the output file."""
        return (self.custom_name or '').strip() or self.page_title

    @classmethod
    def from_capture(cls, data: Any) -> 'StreamDescriptor':
        """
        Builds a descriptor from a raw capture payload.

        Raises:
            StreamValidationError: If the payload is not a mapping or fails validation.
        """
        if isinstance(data, cls):
            return data
        if not isinstance(data, Mapping):
            raise StreamValidationError(f"Stream data must be an object, got {type(data).__name__}.")
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            details = '; '.join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            raise StreamValidationError(f"Invalid stream data: {details}") from e

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Last known progress captured when a job was paused."""
    progress: float
    speed: str = ''
    eta: str = ''


@dataclass
class JobLogs:
    """Diagnostic output retained for a job."""
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)
    full_command: str = ''
    exit_code: Optional[int] = None
    error_details: Optional[str] = None

    def append(self, stream_name: str, line: str):
        lines = self.stderr if stream_name == 'stderr' else self.stdout
        lines.append(line)
        if len(lines) > MAX_LOG_LINES:
            del lines[:-MAX_LOG_LINES]

    def begin_run(self):
        """
        Prepares the logs for another run of the same job.

        Earlier output stays behind a separator line. `error_details` keeps
        describing the last failed run until a later run fails.
        """
        for stream_name, lines in (('stdout', self.stdout), ('stderr', self.stderr)):
            if lines:
                self.append(stream_name, RUN_SEPARATOR)
        self.full_command = ''
        self.exit_code = None

    def to_record(self) -> Dict[str, Any]:
        return {
            'stdout': list(self.stdout),
            'stderr': list(self.stderr),
            'fullCommand': self.full_command,
            'exitCode': self.exit_code,
            'errorDetails': self.error_details,
        }

    @classmethod
    def from_record(cls, record: Optional[Mapping[str, Any]]) -> 'JobLogs':
        if not record:
            return cls()
        _require_mapping(record, 'logs')
        return cls(
            stdout=[str(line) for line in record.get('stdout', [])],
            stderr=[str(line) for line in record.get('stderr', [])],
            full_command=record.get('fullCommand', ''),
            exit_code=record.get('exitCode'),
            error_details=record.get('errorDetails'),
        )


@dataclass
class DownloadJob:
    """
    Represents a single download of a captured stream.

    Attributes:
        job_id: A unique identifier for the job, never reused.
        stream: The captured stream this job downloads.
        status: The current state in the job lifecycle.
        progress: Percentage complete (0-100).
        speed: Transfer rate as reported by yt-dlp (display only).
        eta: Remaining time as reported by yt-dlp (display only).
        priority: Non-zero places the job at the head of the pending queue.
        output_template: yt-dlp output template, resolved on first admission.
        output_path: The produced file once known.
        retry_count: How many times the job was retried after failing.
        paused_snapshot: Progress captured at pause time.
        error: Human-readable failure reason.
        logs: Retained process output for diagnostics.
    """
    job_id: str
    stream: StreamDescriptor
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    speed: str = ''
    eta: str = ''
    priority: int = 0
    output_template: Optional[str] = None
    output_path: Optional[str] = None
    retry_count: int = 0
    paused_snapshot: Optional[ProgressSnapshot] = None
    error: Optional[str] = None
    logs: JobLogs = field(default_factory=JobLogs)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def title(self) -> str:
        return self.stream.display_name

    def to_record(self) -> Dict[str, Any]:
        snapshot = None
        if self.paused_snapshot:
            snapshot = {
                'progress': self.paused_snapshot.progress,
                'speed': self.paused_snapshot.speed,
                'eta': self.paused_snapshot.eta,
            }
        return {
            'id': self.job_id,
            'stream': self.stream.to_record(),
            'status': self.status.value,
            'progress': self.progress,
            'speed': self.speed,
            'eta': self.eta,
            'priority': self.priority,
            'outputTemplate': self.output_template,
            'outputPath': self.output_path,
            'retryCount': self.retry_count,
            'pausedSnapshot': snapshot,
            'error': self.error,
            'logs': self.logs.to_record(),
            'createdAt': _format_datetime(self.created_at),
            'startedAt': _format_datetime(self.started_at),
            'completedAt': _format_datetime(self.completed_at),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'DownloadJob':
        """
        Rebuilds a job from a state-file record.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed.
        """
        _require_mapping(record, 'job record')
        snapshot_data = record.get('pausedSnapshot')
        snapshot = None
        if snapshot_data:
            _require_mapping(snapshot_data, 'pausedSnapshot')
            snapshot = ProgressSnapshot(
                progress=float(snapshot_data.get('progress', 0)),
                speed=snapshot_data.get('speed') or '',
                eta=snapshot_data.get('eta') or '',
            )
        return cls(
            job_id=str(record['id']),
            stream=StreamDescriptor.model_validate(record['stream']),
            status=JobStatus(record['status']),
            progress=float(record.get('progress') or 0),
            speed=record.get('speed') or '',
            eta=record.get('eta') or '',
            priority=int(record.get('priority') or 0),
            output_template=record.get('outputTemplate'),
            output_path=record.get('outputPath'),
            retry_count=int(record.get('retryCount') or 0),
            paused_snapshot=snapshot,
            error=record.get('error'),
            logs=JobLogs.from_record(record.get('logs')),
            created_at=_parse_datetime(record.get('createdAt')) or utcnow(),
            started_at=_parse_datetime(record.get('startedAt')),
            completed_at=_parse_datetime(record.get('completedAt')),
        )


@dataclass(frozen=True)
class JobEvent:
    """An outbound notification about a job, consumed by the IPC layer."""
    kind: str
    job_id: str
    status: JobStatus
    progress: Optional[float] = None
    speed: Optional[str] = None
    eta: Optional[str] = None
    output_path: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def for_job(cls, kind: str, job: DownloadJob) -> 'JobEvent':
        return cls(kind, job.job_id, job.status, job.progress, job.speed, job.eta, job.output_path, job.error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.kind,
            'jobId': self.job_id,
            'status': self.status.value,
            'progress': self.progress,
            'speed': self.speed,
            'eta': self.eta,
            'outputPath': self.output_path,
            'error': self.error,
        }
