"""
Completion Handling — what happens after a worker settles a job.

Called by the Celery task wrapper (and the ``task_failure`` signal for lost
workers), never by processors directly:

  completed  document stage from the job type, downstream chaining for OCR,
             audit entry
  failed     document FAILED, audit entry
  stalled    job STALLED, attempts untouched, audit entry
  progress   debug log at quarter marks

Handlers are best-effort: they log and return instead of raising, so a
bookkeeping failure never turns a finished job into a retried one.
"""

from __future__ import annotations

import logging
from typing import Any

from docflow.pipeline.constants import (
    ACTIVE_JOB_STATUSES,
    DocumentProcessingStatus,
    JobStatus,
    JobType,
)
from docflow.pipeline.interfaces import DocumentRecord, JobRecord, JobStore
from docflow.services.processing import ProcessingService

logger = logging.getLogger(__name__)

STALLED_MESSAGE = "Job stalled - worker may have crashed"

_COMPLETION_STATUS: dict[JobType, DocumentProcessingStatus] = {
    JobType.OCR:         DocumentProcessingStatus.OCR_COMPLETE,
    JobType.THUMBNAIL:   DocumentProcessingStatus.READY,
    JobType.EMBEDDING:   DocumentProcessingStatus.INDEXED,
    JobType.AI_CLASSIFY: DocumentProcessingStatus.CLASSIFIED,
}

# Jobs created after a successful OCR run, in creation order
_OCR_DOWNSTREAM: tuple[JobType, ...] = (JobType.EMBEDDING, JobType.AI_CLASSIFY)


def completion_status(job_type: JobType) -> DocumentProcessingStatus:
    return _COMPLETION_STATUS.get(job_type, DocumentProcessingStatus.READY)


class ProcessingEventHandler:

    def __init__(self, store: JobStore, processing: ProcessingService) -> None:
        self._store = store
        self._processing = processing

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    async def handle_job_completed(self, job_id: str, result: dict[str, Any] | None = None) -> None:
        logger.info("Job completed | job=%s", job_id)
        try:
            job = await self._store.get_job(job_id)
            if job is None:
                logger.warning("Processing job not found for completed event | job=%s", job_id)
                return

            await self._store.update_document(
                job.document_id,
                processing_status=completion_status(job.job_type).value,
            )

            if job.job_type is JobType.OCR:
                await self.trigger_downstream_jobs(job, result or {})

            await self._audit("PROCESSING_COMPLETED", job)
        except Exception:
            logger.exception("Completed-event handling failed | job=%s", job_id)

    async def handle_job_failed(self, job_id: str, error: str | None = None) -> None:
        logger.error("Job failed | job=%s error=%s", job_id, error)
        try:
            job = await self._store.get_job(job_id)
            if job is None:
                logger.warning("Processing job not found for failed event | job=%s", job_id)
                return

            await self._store.update_document(
                job.document_id,
                processing_status=DocumentProcessingStatus.FAILED.value,
            )
            await self._audit("PROCESSING_FAILED", job, {"error": error})
        except Exception:
            logger.exception("Failed-event handling failed | job=%s", job_id)

    async def handle_job_stalled(self, job_id: str) -> None:
        logger.warning("Job stalled | job=%s", job_id)
        try:
            job = await self._store.get_job(job_id)
            if job is None:
                logger.warning("Processing job not found for stalled event | job=%s", job_id)
                return

            job = await self._store.update_job(
                job_id,
                status=JobStatus.STALLED,
                error_message=STALLED_MESSAGE,
            )
            await self._audit("PROCESSING_STALLED", job)
        except Exception:
            logger.exception("Stalled-event handling failed | job=%s", job_id)

    async def handle_job_progress(self, job_id: str, progress: int) -> None:
        if progress % 25 == 0:
            logger.debug("Job progress | job=%s progress=%d%%", job_id, progress)

    # ------------------------------------------------------------------
    # Downstream chaining
    # ------------------------------------------------------------------

    async def trigger_downstream_jobs(self, job: JobRecord, result: dict[str, Any]) -> list[str]:
        """
        Enqueue EMBEDDING and AI_CLASSIFY after OCR, each only if the document
        has no PENDING/RUNNING job of that type. EMBEDDING is skipped when the
        OCR run already stored a vector inline.
        """
        document = await self._store.get_document(job.document_id)
        if document is None or not document.extracted_text:
            logger.info("No extracted text, downstream jobs skipped | doc=%s", job.document_id)
            return []

        created: list[str] = []
        for job_type in _OCR_DOWNSTREAM:
            if job_type is JobType.EMBEDDING and result.get("embeddingGenerated"):
                logger.info("Embedding already stored by OCR | doc=%s", document.id)
                continue
            if await self._has_active_job(document.id, job_type):
                logger.info(
                    "Downstream job already active | doc=%s type=%s",
                    document.id, job_type.value,
                )
                continue
            created.append(await self._chain(document, job_type))
        return created

    async def _has_active_job(self, document_id: str, job_type: JobType) -> bool:
        existing = await self._store.find_jobs(
            document_id=document_id,
            job_types=[job_type],
            statuses=ACTIVE_JOB_STATUSES,
        )
        return bool(existing)

    async def _chain(self, document: DocumentRecord, job_type: JobType) -> str:
        result = await self._processing.enqueue_for_document(document, job_type)
        logger.info(
            "Downstream job triggered | doc=%s type=%s job=%s",
            document.id, job_type.value, result.job_id,
        )
        return result.job_id

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _audit(self, action: str, job: JobRecord, extra: dict[str, Any] | None = None) -> None:
        try:
            document = await self._store.get_document(job.document_id)
            await self._store.record_audit_event(
                organization_id=document.organization_id if document is not None else "",
                action=action,
                resource_id=job.id,
                metadata={
                    "jobId":      job.id,
                    "jobType":    job.job_type.value,
                    "documentId": job.document_id,
                    **(extra or {}),
                },
            )
        except Exception as exc:
            logger.warning("Failed to create audit log | job=%s action=%s error=%s", job.id, action, exc)
