"""
Module containing data models for the transfer engine.
"""
import bisect
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Dict, Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class UploadStatus(str, Enum):
    """Job states: pending -> preparing -> uploading <-> paused -> terminal."""
    PENDING = "pending"
    PREPARING = "preparing"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (UploadStatus.PREPARING, UploadStatus.UPLOADING)

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED)


class DuplicateAction(str, Enum):
    """What the manager does when a candidate upload is a duplicate."""
    SKIP = "skip"
    WARN = "warn"
    RENAME = "rename"
    OVERWRITE = "overwrite"


class DuplicateType(str, Enum):
    RECENTLY_UPLOADED = "recentlyUploaded"
    EXISTS_REMOTE = "existsRemote"
    LOCAL_DUPLICATE = "localDuplicate"


@dataclass(frozen=True)
class CompletedPart:
    """A multipart chunk the store has acknowledged."""
    part_number: int
    etag: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {'part_number': self.part_number, 'etag': self.etag, 'size': self.size}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompletedPart":
        return cls(
            part_number=int(data['part_number']),
            etag=data['etag'],
            size=int(data['size'])
        )


@dataclass(frozen=True)
class Credentials:
    """Read-only credential snapshot handed out by a credential provider."""
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None
    expiration: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiration is None:
            return False
        return self.expiration <= (now or utcnow())


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for transient failures.

    max_attempts counts every attempt, including the first one.
    """
    max_attempts: int = 3
    base_delay: float = 5.0
    max_delay: float = 300.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays cannot be negative")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")


@dataclass
class DuplicateRecord:
    hash: str
    uri: str
    uploaded_at: float


@dataclass
class DuplicateCheckResult:
    """Outcome of a duplicate check for one candidate upload."""
    is_duplicate: bool
    duplicate_type: Optional[DuplicateType] = None
    existing_location: Optional[str] = None
    hash: Optional[str] = None
    suggestion: Optional[str] = None
    content_matches: Optional[bool] = None

    @classmethod
    def not_duplicate(cls, file_hash: Optional[str] = None) -> "DuplicateCheckResult":
        return cls(is_duplicate=False, hash=file_hash)


@dataclass
class UploadJob:
    """A single file travelling to the object store.

    All mutating methods take the job's own lock, so part uploads running
    on several threads can record their results safely. Readers outside
    the owning worker should use snapshot().
    """
    source_path: Path
    bucket: str
    key: str
    total_bytes: Optional[int] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    content_hash: Optional[str] = None
    status: UploadStatus = UploadStatus.PENDING
    bytes_uploaded: int = 0
    upload_speed: float = 0.0
    retry_attempts: int = 0
    retry_errors: List[str] = field(default_factory=list)
    last_error: Optional[str] = None
    upload_id: Optional[str] = None
    part_size: Optional[int] = None
    completed_parts: List[CompletedPart] = field(default_factory=list)
    etag: Optional[str] = None
    presigned_url: Optional[str] = None
    duplicate_note: Optional[str] = None
    prepared: bool = False
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False, compare=False)
    _speed_mark: tuple = field(default=(0.0, 0), init=False, repr=False, compare=False)

    def __post_init__(self):
        self.source_path = Path(self.source_path)
        # Size is measured once, when the job is created.
        if self.total_bytes is None:
            self.total_bytes = self.source_path.stat().st_size if self.source_path.is_file() else 0

    @property
    def s3_uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    @property
    def display_name(self) -> str:
        return self.source_path.name

    @property
    def percentage(self) -> float:
        if self.total_bytes <= 0:
            return 100.0 if self.status == UploadStatus.COMPLETED else 0.0
        return self.bytes_uploaded / self.total_bytes * 100.0

    @property
    def acknowledged_bytes(self) -> int:
        return sum(part.size for part in self.completed_parts)

    def snapshot(self) -> "UploadJob":
        """Return a consistent copy safe to hand to other threads."""
        with self._lock:
            return replace(
                self,
                retry_errors=list(self.retry_errors),
                completed_parts=list(self.completed_parts)
            )

    def mark_preparing(self) -> None:
        with self._lock:
            self.status = UploadStatus.PREPARING

    def mark_prepared(self, content_hash: Optional[str] = None, key: Optional[str] = None,
                      duplicate_note: Optional[str] = None) -> None:
        with self._lock:
            if content_hash and not self.content_hash:
                self.content_hash = content_hash
            if key:
                self.key = key
            self.duplicate_note = duplicate_note
            self.prepared = True

    def mark_started(self) -> None:
        with self._lock:
            self.status = UploadStatus.UPLOADING
            if self.started_at is None:
                self.started_at = utcnow()
            self._speed_mark = (time.monotonic(), self.bytes_uploaded)

    def mark_paused(self) -> None:
        with self._lock:
            self.status = UploadStatus.PAUSED
            self.upload_speed = 0.0

    def mark_completed(self, etag: Optional[str] = None,
                       presigned_url: Optional[str] = None) -> None:
        with self._lock:
            self.bytes_uploaded = self.total_bytes
            self.upload_speed = 0.0
            self.etag = etag
            self.presigned_url = presigned_url
            self.last_error = None
            self.completed_at = utcnow()
            self.status = UploadStatus.COMPLETED

    def mark_failed(self, error: BaseException) -> None:
        with self._lock:
            self.last_error = str(error) or error.__class__.__name__
            self.upload_speed = 0.0
            self.completed_at = utcnow()
            self.status = UploadStatus.FAILED

    def mark_cancelled(self, reason: Optional[str] = None) -> None:
        with self._lock:
            self.last_error = reason or "Upload cancelled"
            self.upload_speed = 0.0
            self.completed_at = utcnow()
            self.status = UploadStatus.CANCELLED

    def mark_for_retry(self, error: BaseException) -> None:
        """Record a failed attempt and put the job back to pending."""
        with self._lock:
            self.retry_attempts += 1
            self.retry_errors.append(str(error))
            self.reset_for_retry()

    def reset_for_retry(self) -> None:
        """Clear transient state, keeping upload_id and completed_parts."""
        with self._lock:
            self.status = UploadStatus.PENDING
            self.last_error = None
            self.completed_at = None
            self.upload_speed = 0.0
            self.bytes_uploaded = min(self.acknowledged_bytes, self.total_bytes)

    def reset_fresh(self) -> None:
        """Full reset: forget multipart state and retry history."""
        with self._lock:
            self.clear_multipart()
            self.retry_attempts = 0
            self.retry_errors = []
            self.etag = None
            self.reset_for_retry()

    def begin_multipart(self, upload_id: str, part_size: int) -> None:
        with self._lock:
            self.upload_id = upload_id
            self.part_size = part_size

    def clear_multipart(self) -> None:
        with self._lock:
            self.upload_id = None
            self.part_size = None
            self.completed_parts = []

    def add_completed_part(self, part: CompletedPart) -> None:
        """Insert an acknowledged part keeping the list ordered by number."""
        with self._lock:
            numbers = [p.part_number for p in self.completed_parts]
            index = bisect.bisect_left(numbers, part.part_number)
            if index < len(numbers) and numbers[index] == part.part_number:
                self.completed_parts[index] = part
            else:
                self.completed_parts.insert(index, part)
            self.update_progress(self.acknowledged_bytes)

    def update_progress(self, bytes_uploaded: int) -> None:
        with self._lock:
            self.bytes_uploaded = max(0, min(bytes_uploaded, self.total_bytes))
            now = time.monotonic()
            mark_time, mark_bytes = self._speed_mark
            elapsed = now - mark_time
            if elapsed >= 0.5:
                self.upload_speed = max(0.0, (self.bytes_uploaded - mark_bytes) / elapsed)
                self._speed_mark = (now, self.bytes_uploaded)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'id': self.id,
                'source_path': str(self.source_path),
                'bucket': self.bucket,
                'key': self.key,
                'total_bytes': self.total_bytes,
                'content_hash': self.content_hash,
                'status': self.status.value,
                'bytes_uploaded': self.bytes_uploaded,
                'retry_attempts': self.retry_attempts,
                'retry_errors': list(self.retry_errors),
                'last_error': self.last_error,
                'upload_id': self.upload_id,
                'part_size': self.part_size,
                'completed_parts': [p.to_dict() for p in self.completed_parts],
                'etag': self.etag,
                'created_at': _isoformat(self.created_at),
                'started_at': _isoformat(self.started_at),
                'completed_at': _isoformat(self.completed_at),
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadJob":
        job = cls(
            id=data['id'],
            source_path=Path(data['source_path']),
            bucket=data['bucket'],
            key=data['key'],
            total_bytes=int(data.get('total_bytes', 0)),
            content_hash=data.get('content_hash'),
            retry_attempts=int(data.get('retry_attempts', 0)),
            retry_errors=list(data.get('retry_errors', [])),
            upload_id=data.get('upload_id'),
            part_size=data.get('part_size'),
            completed_parts=sorted(
                (CompletedPart.from_dict(p) for p in data.get('completed_parts', [])),
                key=lambda p: p.part_number
            ),
            etag=data.get('etag'),
            created_at=_parse_datetime(data.get('created_at')) or utcnow(),
            started_at=_parse_datetime(data.get('started_at')),
        )
        job.bytes_uploaded = min(job.acknowledged_bytes, job.total_bytes)
        return job


@dataclass
class ManagerStatus:
    """Aggregate view of the queue, as returned by UploadManager.get_status()."""
    pending: int
    active: int
    paused: int
    completed: int
    failed: int
    cancelled: int
    total_bytes: int
    uploaded_bytes: int
    is_running: bool
    is_paused: bool

    @property
    def overall_progress(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.uploaded_bytes / self.total_bytes * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'isRunning': self.is_running,
            'isPaused': self.is_paused,
            'pending': self.pending,
            'active': self.active,
            'paused': self.paused,
            'completed': self.completed,
            'failed': self.failed,
            'cancelled': self.cancelled,
            'progress': round(self.overall_progress, 2),
        }


@dataclass
class HistoryItem:
    """Represents a finished job in the upload history."""
    job_id: str
    filename: str
    source_path: str
    bucket: str
    key: str
    file_size: int
    status: str
    started_at: Optional[str]
    completed_at: Optional[str]
    duration_seconds: Optional[float] = None
    s3_uri: Optional[str] = None
    presigned_url: Optional[str] = None
    etag: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: UploadJob) -> "HistoryItem":
        duration = None
        if job.started_at and job.completed_at:
            duration = (job.completed_at - job.started_at).total_seconds()
        return cls(
            job_id=job.id,
            filename=job.display_name,
            source_path=str(job.source_path),
            bucket=job.bucket,
            key=job.key,
            file_size=job.total_bytes,
            status=job.status.value,
            started_at=_isoformat(job.started_at or job.created_at),
            completed_at=_isoformat(job.completed_at),
            duration_seconds=duration,
            s3_uri=job.s3_uri,
            presigned_url=job.presigned_url,
            etag=job.etag,
            error=job.last_error
        )
