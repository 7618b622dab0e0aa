"""
Collaborator Interfaces
═══════════════════════

The pipeline core talks to four external collaborators through these ABCs:

  JobStore       durable job rows + the narrow slice of the document row we mutate
  ObjectStore    blob get/put/copy/delete + presigned URLs
  QueueBackend   one handle per named queue (enqueue, inspect, pause, prune)
  EventEmitter   fire-and-forget real-time notifications

Concrete adapters:
  SqlAlchemyJobStore   → docflow.db.store
  S3ObjectStore        → docflow.storage.s3
  CeleryQueueBackend   → docflow.queueing.celery_backend
  RedisEventEmitter    → docflow.notifications.emitter

Tests inject in-memory fakes (see tests/conftest.py).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Sequence

from docflow.pipeline.constants import JobStatus, JobType


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class JobRecord:
    id:            str
    document_id:   str
    job_type:      JobType
    status:        JobStatus
    priority:      int = 0
    attempts:      int = 0
    max_attempts:  int = 3
    input_params:  dict[str, Any] = field(default_factory=dict)
    output_data:   dict[str, Any] | None = None
    error_message: str | None = None
    error_stack:   str | None = None
    created_at:    datetime | None = None
    started_at:    datetime | None = None
    completed_at:  datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict view used for events and API payloads."""
        return {
            "id":           self.id,
            "documentId":   self.document_id,
            "jobType":      self.job_type.value,
            "status":       self.status.value,
            "attempts":     self.attempts,
            "maxAttempts":  self.max_attempts,
            "errorMessage": self.error_message,
            "createdAt":    self.created_at.isoformat() if self.created_at else None,
            "startedAt":    self.started_at.isoformat() if self.started_at else None,
            "completedAt":  self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class DocumentRecord:
    id:                str
    organization_id:   str
    name:              str
    mime_type:         str
    size_bytes:        int
    s3_key:            str
    processing_status: str
    metadata:          dict[str, Any] = field(default_factory=dict)
    extracted_text:    str | None = None
    thumbnail_key:     str | None = None
    created_by_id:     str | None = None
    folder_id:         str | None = None
    status:            str = "READY"

    def summary(self) -> dict[str, Any]:
        return {
            "id":               self.id,
            "name":             self.name,
            "mimeType":         self.mime_type,
            "processingStatus": self.processing_status,
        }


@dataclass
class QueueJobView:
    """What the queue backend knows about one of its jobs."""
    id:             str
    name:           str
    state:          str          # waiting | delayed | active | completed | failed | paused
    progress:       int = 0
    attempts_made:  int = 0
    data:           dict[str, Any] = field(default_factory=dict)
    failed_reason:  str | None = None


@dataclass
class QueueCounts:
    waiting:   int = 0
    active:    int = 0
    completed: int = 0
    failed:    int = 0
    delayed:   int = 0
    paused:    int = 0

    def __add__(self, other: "QueueCounts") -> "QueueCounts":
        return QueueCounts(
            waiting=self.waiting + other.waiting,
            active=self.active + other.active,
            completed=self.completed + other.completed,
            failed=self.failed + other.failed,
            delayed=self.delayed + other.delayed,
            paused=self.paused + other.paused,
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "waiting":   self.waiting,
            "active":    self.active,
            "completed": self.completed,
            "failed":    self.failed,
            "delayed":   self.delayed,
            "paused":    self.paused,
        }


# ---------------------------------------------------------------------------
# Job store
# ---------------------------------------------------------------------------

class JobStore(ABC):

    @abstractmethod
    async def create_job(
        self,
        *,
        document_id:  str,
        job_type:     JobType,
        input_params: dict[str, Any],
        priority:     int,
        max_attempts: int,
    ) -> JobRecord: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> JobRecord | None: ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> JobRecord: ...

    @abstractmethod
    async def find_jobs(
        self,
        *,
        document_id: str | None = None,
        job_types:   Iterable[JobType] | None = None,
        statuses:    Iterable[JobStatus] | None = None,
    ) -> list[JobRecord]:
        """Matching jobs, newest first."""

    @abstractmethod
    async def list_failed_jobs(self, limit: int, offset: int) -> tuple[list[JobRecord], int]:
        """Failed jobs ordered by completion time (newest first) and the total count."""

    @abstractmethod
    async def delete_jobs_older_than(
        self,
        statuses: Sequence[JobStatus],
        cutoff:   datetime,
    ) -> int:
        """Delete jobs in ``statuses`` whose completed_at is before ``cutoff``."""

    @abstractmethod
    async def get_document(self, document_id: str) -> DocumentRecord | None: ...

    @abstractmethod
    async def get_documents(
        self,
        document_ids:    Sequence[str],
        organization_id: str,
    ) -> list[DocumentRecord]: ...

    @abstractmethod
    async def find_document_by_key(self, organization_id: str, s3_key: str) -> DocumentRecord | None: ...

    @abstractmethod
    async def update_document(self, document_id: str, **fields: Any) -> None: ...

    @abstractmethod
    async def set_document_metadata(
        self,
        document_id: str,
        namespace:   str,
        value:       dict[str, Any],
    ) -> None:
        """Replace ``metadata[namespace]`` wholesale; other namespaces untouched."""

    @abstractmethod
    async def create_document(self, **fields: Any) -> DocumentRecord: ...

    @abstractmethod
    async def record_audit_event(
        self,
        *,
        organization_id: str,
        action:          str,
        resource_id:     str,
        metadata:        dict[str, Any],
    ) -> None: ...


# ---------------------------------------------------------------------------
# Object store
# ---------------------------------------------------------------------------

class ObjectStore(ABC):

    @abstractmethod
    async def get_object(self, key: str) -> bytes: ...

    @abstractmethod
    def iter_object(self, key: str, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]: ...

    @abstractmethod
    async def upload_buffer(self, key: str, data: bytes, content_type: str) -> None: ...

    @abstractmethod
    async def copy_object(self, source_key: str, dest_key: str) -> None: ...

    @abstractmethod
    async def delete_object(self, key: str) -> None: ...

    @abstractmethod
    async def get_presigned_upload_url(
        self, key: str, content_type: str, expires_in: int | None = None,
    ) -> str: ...

    @abstractmethod
    async def get_presigned_download_url(self, key: str, expires_in: int | None = None) -> str: ...


# ---------------------------------------------------------------------------
# Queue backend
# ---------------------------------------------------------------------------

class QueueBackend(ABC):
    """Handle on a single named queue."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def add(
        self,
        kind:     str,
        payload:  dict[str, Any],
        *,
        job_id:   str,
        priority: int,
        delay_ms: int = 0,
        attempts: int = 3,
    ) -> str:
        """Enqueue and return the queue-native job id (equal to ``job_id``)."""

    @abstractmethod
    async def get_job(self, job_id: str) -> QueueJobView | None: ...

    @abstractmethod
    async def remove(self, job_id: str) -> None:
        """Remove a waiting/delayed job. Raises JobRemovalError if it cannot."""

    @abstractmethod
    async def get_waiting(self) -> list[QueueJobView]: ...

    @abstractmethod
    async def get_delayed(self) -> list[QueueJobView]: ...

    @abstractmethod
    async def pause(self) -> None: ...

    @abstractmethod
    async def resume(self) -> None: ...

    @abstractmethod
    async def is_paused(self) -> bool: ...

    @abstractmethod
    async def clean(self, max_age_ms: int, limit: int, state: str) -> list[str]:
        """Prune ``state`` entries older than ``max_age_ms``; returns removed ids."""

    @abstractmethod
    async def get_counts(self) -> QueueCounts: ...


# ---------------------------------------------------------------------------
# Event emitter
# ---------------------------------------------------------------------------

class EventEmitter(ABC):
    """One-way notifier. Callers go through notifications.safe_emit."""

    @abstractmethod
    async def emit_started(
        self, job: dict, document: dict, organization_id: str, extra: dict | None = None,
    ) -> None: ...

    @abstractmethod
    async def emit_progress(
        self, job: dict, document: dict, organization_id: str, extra: dict | None = None,
    ) -> None: ...

    @abstractmethod
    async def emit_completed(
        self, job: dict, document: dict, organization_id: str, extra: dict | None = None,
    ) -> None: ...

    @abstractmethod
    async def emit_failed(
        self, job: dict, document: dict, organization_id: str, extra: dict | None = None,
    ) -> None: ...
