"""
Base Processor  —  Shared Job Lifecycle
════════════════════════════════════════

Every processor runs the same envelope around its domain logic:

  0. store: job already CANCELLED → JobCancelledError, nothing written
  1. store: job RUNNING + started_at            (before any external call)
  2. store: document stage (subclass-defined, optional)
  3. execute(ctx, document)                     (subclass)
  4. store: job COMPLETED + completed_at + output_data
  5. progress 100, wait for in-flight progress events, emit completed

Failure path — classify, then tell the worker what to do:

  PERMANENT                  job FAILED, document FAILED  → UnrecoverableJobError
  RATE_LIMITED               job back to PENDING          → DelayedRetryError(retry_after_ms)
  TRANSIENT / UNKNOWN        job back to PENDING          → original exception (queue backs off)
    … on the last attempt    job FAILED, document FAILED  → original exception (queue gives up)

Progress is clamped to [0, 100] and never moves backwards within one execution.
Progress events are published in the background; the job never waits on them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from docflow.core.exceptions import (
    DelayedRetryError,
    InvalidJobOptionsError,
    JobCancelledError,
    NotFoundError,
    UnrecoverableJobError,
)
from docflow.notifications.emitter import emit_in_background, flush_pending, safe_emit
from docflow.pipeline.constants import DocumentProcessingStatus, JobStatus, JobType
from docflow.pipeline.errors import CategorizedError, ErrorCategory, categorize_error
from docflow.pipeline.interfaces import (
    DocumentRecord,
    EventEmitter,
    JobRecord,
    JobStore,
    ObjectStore,
)

logger = logging.getLogger(__name__)

ProgressListener = Callable[[int], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Job context: what a processor receives from the worker
# ---------------------------------------------------------------------------

@dataclass
class JobContext:
    """
    job_id          : store id == queue-native id
    kind            : queue-native job name, e.g. "ocr-document"
    attempts_made   : failed attempts already counted against max_attempts
    """
    job_id:          str
    kind:            str
    document_id:     str
    s3_key:          str
    organization_id: str
    options:         dict[str, Any] = field(default_factory=dict)
    attempts_made:   int = 0
    max_attempts:    int = 3
    progress:        int = 0
    listeners:       list[ProgressListener] = field(default_factory=list)

    @classmethod
    def from_payload(
        cls,
        *,
        job_id:        str,
        kind:          str,
        payload:       dict[str, Any],
        attempts_made: int = 0,
        max_attempts:  int = 3,
    ) -> "JobContext":
        return cls(
            job_id=job_id,
            kind=kind,
            document_id=payload["documentId"],
            s3_key=payload.get("s3Key", ""),
            organization_id=payload.get("organizationId", ""),
            options=payload.get("options") or {},
            attempts_made=attempts_made,
            max_attempts=max_attempts,
        )

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made + 1 >= self.max_attempts

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self.listeners.append(listener)

    async def update_progress(self, value: int) -> None:
        value = max(0, min(100, int(value)))
        if value <= self.progress:
            return
        self.progress = value
        for listener in self.listeners:
            try:
                await listener(value)
            except Exception as exc:
                logger.warning("Progress listener failed | job=%s error=%s", self.job_id, exc)


# ---------------------------------------------------------------------------
# Base processor
# ---------------------------------------------------------------------------

class BaseProcessor(ABC):
    """Template for the five processor families."""

    #: job types this processor executes
    job_types: tuple[JobType, ...] = ()

    #: document stage written when the job starts; None leaves the document alone
    running_document_status: DocumentProcessingStatus | None = DocumentProcessingStatus.PROCESSING

    def __init__(
        self,
        store:        JobStore,
        object_store: ObjectStore,
        emitter:      EventEmitter | None = None,
    ) -> None:
        self._store = store
        self._objects = object_store
        self._emitter = emitter

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def process(self, ctx: JobContext) -> dict[str, Any]:
        logger.info(
            "Processor start | processor=%s job=%s kind=%s doc=%s attempt=%d/%d",
            type(self).__name__, ctx.job_id, ctx.kind, ctx.document_id,
            ctx.attempts_made + 1, ctx.max_attempts,
        )
        current = await self._store.get_job(ctx.job_id)
        if current is not None and current.status is JobStatus.CANCELLED:
            logger.info("Job cancelled before pickup, skipping | job=%s", ctx.job_id)
            raise JobCancelledError(f"Job {ctx.job_id} was cancelled")

        job = await self._store.update_job(
            ctx.job_id,
            status=JobStatus.RUNNING,
            started_at=utcnow(),
        )

        document: DocumentRecord | None = None
        try:
            document = await self._store.get_document(ctx.document_id)
            if document is None:
                raise NotFoundError(f"Document not found: {ctx.document_id}")

            ctx.add_progress_listener(self._progress_emitter(job, document, ctx))

            if self.running_document_status is not None:
                await self._store.update_document(
                    ctx.document_id,
                    processing_status=self.running_document_status.value,
                )

            output = await self.execute(ctx, document)
        except Exception as exc:
            await self._handle_failure(ctx, job, document, exc)
            raise  # _handle_failure always raises; kept for type checkers

        job = await self._store.update_job(
            ctx.job_id,
            status=JobStatus.COMPLETED,
            completed_at=utcnow(),
            output_data=output,
            error_message=None,
            error_stack=None,
        )
        await ctx.update_progress(100)

        if self._emitter is not None:
            await flush_pending()
            await safe_emit(
                self._emitter.emit_completed,
                job.snapshot(), document.summary(), ctx.organization_id,
                {"result": output},
            )

        logger.info(
            "Processor done | processor=%s job=%s doc=%s",
            type(self).__name__, ctx.job_id, ctx.document_id,
        )
        return output

    @abstractmethod
    async def execute(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        """Domain logic. Returns the job's output_data summary."""

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    @staticmethod
    def parse_options(model: type[BaseModel], options: dict[str, Any]) -> Any:
        try:
            return model.model_validate(options or {})
        except ValidationError as exc:
            raise InvalidJobOptionsError(
                f"Invalid {model.__name__}: {exc.errors(include_url=False)}"
            ) from exc

    async def fetch_object(self, key: str) -> bytes:
        return await self._objects.get_object(key)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _handle_failure(
        self,
        ctx:      JobContext,
        job:      JobRecord,
        document: DocumentRecord | None,
        exc:      Exception,
    ) -> None:
        categorized = categorize_error(exc)
        if self._emitter is not None:
            await flush_pending()
        logger.error(
            "Processor failed | job=%s doc=%s category=%s attempt=%d/%d error=%s",
            ctx.job_id, ctx.document_id, categorized.category.value,
            ctx.attempts_made + 1, ctx.max_attempts, categorized.message,
        )

        if categorized.category is ErrorCategory.RATE_LIMITED:
            await self._record_pending_retry(ctx, categorized)
            raise DelayedRetryError(
                categorized.message,
                categorized.retry_after_ms or 0,
            ) from exc

        terminal = categorized.category is ErrorCategory.PERMANENT or ctx.is_final_attempt
        if not terminal:
            await self._record_pending_retry(ctx, categorized)
            raise exc

        await self._record_terminal_failure(ctx, document, categorized)
        if categorized.category is ErrorCategory.PERMANENT:
            raise UnrecoverableJobError(categorized.message) from exc
        raise exc

    async def _record_pending_retry(self, ctx: JobContext, err: CategorizedError) -> None:
        try:
            await self._store.update_job(
                ctx.job_id,
                status=JobStatus.PENDING,
                error_message=err.message,
                error_stack=err.stack,
                output_data={"errorCategory": err.category.value},
            )
        except Exception as exc:
            logger.warning("Could not record retry state | job=%s error=%s", ctx.job_id, exc)

    async def _record_terminal_failure(
        self,
        ctx:      JobContext,
        document: DocumentRecord | None,
        err:      CategorizedError,
    ) -> None:
        try:
            job = await self._store.update_job(
                ctx.job_id,
                status=JobStatus.FAILED,
                completed_at=utcnow(),
                error_message=err.message,
                error_stack=err.stack,
                output_data={"errorCategory": err.category.value},
            )
            if document is not None:
                await self._store.update_document(
                    ctx.document_id,
                    processing_status=DocumentProcessingStatus.FAILED.value,
                )
        except Exception as exc:
            logger.warning("Could not record failure | job=%s error=%s", ctx.job_id, exc)
            return

        if self._emitter is not None and document is not None:
            await safe_emit(
                self._emitter.emit_failed,
                job.snapshot(), document.summary(), ctx.organization_id,
                {"category": err.category.value},
            )

    def _progress_emitter(
        self,
        job:      JobRecord,
        document: DocumentRecord,
        ctx:      JobContext,
    ) -> ProgressListener:
        async def _emit(value: int) -> None:
            if self._emitter is not None:
                emit_in_background(
                    self._emitter.emit_progress,
                    job.snapshot(), document.summary(), ctx.organization_id,
                    {"progress": value},
                )
        return _emit
