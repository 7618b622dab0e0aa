"""
Processing Orchestrator
═══════════════════════

Public surface consumed by the API / CLI layer. Owns the job lifecycle
transitions that happen outside a worker:

  add_job      document → PENDING job record → queue message (same id)
  retry_job    FAILED (attempts < max) → PENDING, re-enqueued under the same id
  cancel_job   PENDING → CANCELLED, advisory removal from primary + legacy queue

plus read-only inspection (status, stats, per-document history, failed-job
pages) and queue administration (pause / resume / drain / cleanup).

Ordering rule: the job store is written first, the queue second. A queue
message therefore always has a record behind it; a record whose enqueue
failed is closed out as FAILED so downstream chaining does not wait on it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from docflow.core.exceptions import JobPolicyError, NotFoundError
from docflow.notifications.emitter import safe_emit
from docflow.pipeline.constants import (
    DAY_MS,
    DEFAULT_JOB_ATTEMPTS,
    TERMINAL_JOB_STATUSES,
    DocumentProcessingStatus,
    JobStatus,
    JobType,
)
from docflow.pipeline.interfaces import (
    DocumentRecord,
    EventEmitter,
    JobRecord,
    JobStore,
    QueueBackend,
    QueueCounts,
    QueueJobView,
)
from docflow.pipeline.router import resolve_route
from docflow.processors.base import utcnow
from docflow.queueing.registry import QueueRegistry
from docflow.schemas.processing import (
    AddJobResult,
    CleanupResult,
    DrainResult,
    FailedJobsPage,
    JobEnqueueOptions,
    JobStatusView,
    QueueStatsView,
)

logger = logging.getLogger(__name__)

CLEAN_BATCH_LIMIT = 1000


def build_job_payload(document: DocumentRecord, options: dict[str, Any] | None) -> dict[str, Any]:
    """Message body shared by every job kind."""
    return {
        "documentId":     document.id,
        "s3Key":          document.s3_key,
        "organizationId": document.organization_id,
        "options":        options or {},
    }


class ProcessingService:

    def __init__(
        self,
        store:            JobStore,
        queues:           QueueRegistry,
        emitter:          EventEmitter | None = None,
        default_attempts: int = DEFAULT_JOB_ATTEMPTS,
    ) -> None:
        self._store = store
        self._queues = queues
        self._emitter = emitter
        self._default_attempts = default_attempts

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def add_job(
        self,
        document_id: str,
        job_type:    JobType | str,
        options:     dict[str, Any] | None = None,
        job_options: JobEnqueueOptions | None = None,
    ) -> AddJobResult:
        resolve_route(job_type)
        document = await self._store.get_document(document_id)
        if document is None:
            raise NotFoundError(f"Document not found: {document_id}")

        return await self.enqueue_for_document(
            document, JobType(job_type), options, job_options, mark_document_pending=True,
        )

    async def enqueue_for_document(
        self,
        document:              DocumentRecord,
        job_type:              JobType,
        options:               dict[str, Any] | None = None,
        job_options:           JobEnqueueOptions | None = None,
        *,
        mark_document_pending: bool = False,
    ) -> AddJobResult:
        """
        Create the job record and publish it. Used directly by downstream
        chaining, which must not move the document back to PENDING.
        """
        job_options = job_options or JobEnqueueOptions()
        route = resolve_route(job_type)

        priority = job_options.priority if job_options.priority is not None else route.priority
        max_attempts = job_options.attempts or self._default_attempts

        job = await self._store.create_job(
            document_id=document.id,
            job_type=job_type,
            input_params=options or {},
            priority=priority,
            max_attempts=max_attempts,
        )
        if mark_document_pending:
            await self._store.update_document(
                document.id,
                processing_status=DocumentProcessingStatus.PENDING.value,
            )

        queue = self._queues.get(route.queue_name)
        try:
            queue_job_id = await queue.add(
                route.kind,
                build_job_payload(document, options),
                job_id=job.id,
                priority=priority,
                delay_ms=job_options.delay_ms,
                attempts=max_attempts,
            )
        except Exception as exc:
            logger.exception("Enqueue failed | job=%s queue=%s", job.id, route.queue_name)
            await self._mark_enqueue_failed(job.id, exc)
            raise

        logger.info(
            "Job enqueued | job=%s type=%s queue=%s priority=%d doc=%s",
            job.id, job_type.value, route.queue_name, priority, document.id,
        )
        await self._emit_started(job, document)

        return AddJobResult(
            job_id=job.id,
            queue_job_id=queue_job_id,
            queue_name=route.queue_name,
            message="Processing job created",
        )

    async def get_job_status(self, job_id: str) -> JobStatusView:
        job = await self._require_job(job_id)
        document = await self._store.get_document(job.document_id)

        queue_job = await self._find_queue_job(job)
        return JobStatusView(
            job=job,
            document=(
                {**document.summary(), "status": document.status} if document is not None else None
            ),
            queue_state=queue_job.state if queue_job is not None else None,
            progress=queue_job.progress if queue_job is not None else 0,
        )

    async def retry_job(self, job_id: str) -> JobRecord:
        job = await self._require_job(job_id)

        if job.status is not JobStatus.FAILED:
            raise JobPolicyError(f"Can only retry failed jobs. Current status: {job.status.value}")
        if job.attempts >= job.max_attempts:
            raise JobPolicyError(f"Maximum retry attempts ({job.max_attempts}) reached")

        document = await self._store.get_document(job.document_id)
        if document is None:
            raise NotFoundError(f"Document not found: {job.document_id}")

        job = await self._store.update_job(
            job_id,
            status=JobStatus.PENDING,
            error_message=None,
            error_stack=None,
            completed_at=None,
            attempts=job.attempts + 1,
        )
        await self._store.update_document(
            job.document_id,
            processing_status=DocumentProcessingStatus.PENDING.value,
        )

        route = resolve_route(job.job_type)
        try:
            await self._queues.get(route.queue_name).add(
                route.kind,
                build_job_payload(document, job.input_params),
                job_id=job.id,
                priority=job.priority or route.priority,
                attempts=job.max_attempts,
            )
        except Exception as exc:
            logger.exception("Retry enqueue failed | job=%s queue=%s", job.id, route.queue_name)
            # the attempt never reached a worker
            await self._mark_enqueue_failed(job.id, exc, attempts=job.attempts - 1)
            await self._store.update_document(
                document.id,
                processing_status=document.processing_status,
            )
            raise

        logger.info(
            "Job queued for retry | job=%s attempt=%d/%d",
            job.id, job.attempts, job.max_attempts,
        )
        await self._emit_started(job, document)
        return job

    async def cancel_job(self, job_id: str) -> JobRecord:
        job = await self._require_job(job_id)

        if job.status is not JobStatus.PENDING:
            raise JobPolicyError(f"Can only cancel pending jobs. Current status: {job.status.value}")

        for queue in self._lookup_order(job):
            try:
                await queue.remove(job.id)
            except Exception as exc:
                logger.warning(
                    "Could not remove job from queue | job=%s queue=%s error=%s",
                    job.id, queue.name, exc,
                )

        job = await self._store.update_job(
            job_id,
            status=JobStatus.CANCELLED,
            completed_at=utcnow(),
        )
        logger.info("Job cancelled | job=%s", job_id)
        return job

    # ------------------------------------------------------------------
    # Queue inspection and administration
    # ------------------------------------------------------------------

    async def get_queue_stats(self) -> QueueStatsView:
        backends = self._queues.all()
        counts = await asyncio.gather(*(queue.get_counts() for queue in backends))

        totals = QueueCounts()
        for queue_counts in counts:
            totals = totals + queue_counts

        return QueueStatsView(
            queues={queue.name: c.as_dict() for queue, c in zip(backends, counts)},
            totals=totals.as_dict(),
        )

    async def get_queue_stats_by_name(self, queue_name: str) -> dict[str, int]:
        counts = await self._queues.get(queue_name).get_counts()
        return counts.as_dict()

    async def pause_queue(self, queue_name: str) -> None:
        await self._queues.get(queue_name).pause()
        logger.info("Queue paused | queue=%s", queue_name)

    async def resume_queue(self, queue_name: str) -> None:
        await self._queues.get(queue_name).resume()
        logger.info("Queue resumed | queue=%s", queue_name)

    async def drain_queue(self, queue_name: str) -> DrainResult:
        """Pause, remove every waiting/delayed job that can still be removed, resume."""
        queue = self._queues.get(queue_name)

        await queue.pause()
        removed = 0
        try:
            pending = [*await queue.get_waiting(), *await queue.get_delayed()]
            for queue_job in pending:
                try:
                    await queue.remove(queue_job.id)
                    removed += 1
                except Exception as exc:
                    logger.debug("Drain skipped job | queue=%s job=%s error=%s", queue_name, queue_job.id, exc)
        finally:
            await queue.resume()

        logger.info("Queue drained | queue=%s removed=%d", queue_name, removed)
        return DrainResult(success=True, removed=removed)

    async def clean_old_jobs(self, older_than_days: int = 7) -> CleanupResult:
        cutoff = utcnow() - timedelta(days=older_than_days)
        cleaned = await self._store.delete_jobs_older_than(TERMINAL_JOB_STATUSES, cutoff)
        logger.info("Cleaned job records | removed=%d cutoff=%s", cleaned, cutoff.isoformat())

        max_age_ms = older_than_days * DAY_MS
        errors: list[str] = []
        for queue in self._queues.all():
            try:
                completed = await queue.clean(max_age_ms, CLEAN_BATCH_LIMIT, "completed")
                failed = await queue.clean(max_age_ms, CLEAN_BATCH_LIMIT, "failed")
            except Exception as exc:
                message = f"Error cleaning queue {queue.name}: {exc}"
                logger.warning(message)
                errors.append(message)
                continue
            cleaned += len(completed) + len(failed)
            logger.info(
                "Cleaned queue | queue=%s completed=%d failed=%d",
                queue.name, len(completed), len(failed),
            )

        return CleanupResult(cleaned=cleaned, errors=errors)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def get_jobs_by_document(self, document_id: str) -> list[JobRecord]:
        return await self._store.find_jobs(document_id=document_id)

    async def get_failed_jobs(self, limit: int = 50, offset: int = 0) -> FailedJobsPage:
        jobs, total = await self._store.list_failed_jobs(limit, offset)
        return FailedJobsPage(jobs=jobs, total=total)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require_job(self, job_id: str) -> JobRecord:
        job = await self._store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Processing job not found: {job_id}")
        return job

    async def _mark_enqueue_failed(self, job_id: str, exc: Exception, **fields: Any) -> None:
        """A record with no queue message must not stay PENDING: nothing would ever run it."""
        await self._store.update_job(
            job_id,
            status=JobStatus.FAILED,
            completed_at=utcnow(),
            error_message=f"Enqueue failed: {exc}",
            **fields,
        )

    def _lookup_order(self, job: JobRecord) -> list[QueueBackend]:
        """Primary queue for the job type, then the legacy queue if configured."""
        order = [self._queues.for_job_type(job.job_type)]
        if self._queues.legacy is not None:
            order.append(self._queues.legacy)
        return order

    async def _find_queue_job(self, job: JobRecord) -> QueueJobView | None:
        for queue in self._lookup_order(job):
            try:
                queue_job = await queue.get_job(job.id)
            except Exception as exc:
                logger.warning("Queue lookup failed | job=%s queue=%s error=%s", job.id, queue.name, exc)
                continue
            if queue_job is not None:
                return queue_job
        return None

    async def _emit_started(self, job: JobRecord, document: DocumentRecord) -> None:
        if self._emitter is None:
            return
        await safe_emit(
            self._emitter.emit_started,
            job.snapshot(), document.summary(), document.organization_id,
        )
