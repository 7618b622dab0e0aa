"""
Celery Tasks — Document Processing Workers

One task per queue. Every task runs the same wrapper:

  0. ledger: queue paused             (redeliver after paused_recheck_seconds, nothing claimed)
  1. ledger: waiting/delayed → active   (skip if the job was removed meanwhile)
  2. processor.process(ctx)             (job record RUNNING → COMPLETED, or classified failure)
  3. settle the outcome:

     success                 ledger completed, handle_job_completed (downstream chaining)
     JobCancelledError       ledger entry dropped, no handlers (record was CANCELLED)
     UnrecoverableJobError   ledger failed, handle_job_failed, no retry
     DelayedRetryError       ledger delayed, retry after retry_after_ms, attempt NOT counted
     anything else           attempts left → ledger delayed, retry with exponential backoff
                             exhausted     → ledger failed, handle_job_failed

The attempt counter travels in the task kwargs (``attempts_made``) rather than
Celery's own retry counter, so rate-limit reschedules never burn an attempt.

Task: clean_old_jobs
  Beat task — daily retention sweep over job records and queue ledgers.

Task: health_check
  Liveness check for the maintenance worker, including a database ping.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from celery import Task

from docflow.core.config import settings
from docflow.core.exceptions import (
    DelayedRetryError,
    JobCancelledError,
    QueueConfigurationError,
    UnrecoverableJobError,
)
from docflow.pipeline.constants import QUEUE_WORKER_CONFIGS, JobStatus, QueueName
from docflow.pipeline.errors import compute_backoff_ms
from docflow.processors.base import JobContext, utcnow
from docflow.queueing.celery_backend import QUEUE_TASK_NAMES
from docflow.queueing.ledger import RedisJobLedger
from docflow.services.factory import (
    build_event_handler,
    build_job_store,
    build_ledger,
    build_processing_service,
    build_processor_registry,
)
from docflow.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro):
    """
    Execute an async coroutine from a synchronous Celery task.

    One loop per worker process: the cached store, emitter and HTTP clients
    hold connection pools bound to the loop they were first used on.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop.run_until_complete(coro)


# ---------------------------------------------------------------------------
# Shared wrapper
# ---------------------------------------------------------------------------

def execute_job(
    task:          Task,
    queue_name:    str,
    *,
    job_id:        str,
    kind:          str,
    payload:       dict[str, Any],
    attempts_made: int,
    max_attempts:  int,
) -> dict[str, Any]:
    ledger = build_ledger(queue_name)
    if ledger.is_paused():
        # left in waiting so drain can still remove it
        logger.info("Queue paused, deferring | job=%s queue=%s", job_id, queue_name)
        raise task.retry(
            kwargs={
                "job_id":        job_id,
                "kind":          kind,
                "payload":       payload,
                "attempts_made": attempts_made,
                "max_attempts":  max_attempts,
            },
            countdown=settings.paused_recheck_seconds,
        )
    if not ledger.mark_active(job_id, attempts_made):
        logger.info("Job no longer queued, skipping | job=%s queue=%s", job_id, queue_name)
        return {"skipped": True, "reason": "removed"}

    handler = build_event_handler()
    retry_kwargs = {
        "job_id":       job_id,
        "kind":         kind,
        "payload":      payload,
        "max_attempts": max_attempts,
    }

    try:
        output = run_async(
            _process(ledger, job_id=job_id, kind=kind, payload=payload,
                     attempts_made=attempts_made, max_attempts=max_attempts)
        )
    except JobCancelledError:
        ledger.discard(job_id)
        return {"skipped": True, "reason": "cancelled"}
    except UnrecoverableJobError as exc:
        ledger.mark_failed(job_id, str(exc), attempts_made + 1)
        run_async(handler.handle_job_failed(job_id, str(exc)))
        raise
    except DelayedRetryError as exc:
        ledger.mark_delayed(job_id, exc.retry_after_ms, attempts_made, str(exc))
        logger.warning(
            "Rate limited, rescheduling | job=%s queue=%s retry_after_ms=%d",
            job_id, queue_name, exc.retry_after_ms,
        )
        raise task.retry(
            kwargs={**retry_kwargs, "attempts_made": attempts_made},
            countdown=exc.retry_after_ms / 1000,
            exc=exc,
        )
    except Exception as exc:
        attempts = attempts_made + 1
        if attempts < max_attempts:
            delay_ms = compute_backoff_ms(attempts, settings.job_backoff_base_ms)
            ledger.mark_delayed(job_id, delay_ms, attempts, str(exc))
            logger.warning(
                "Job failed, retrying | job=%s queue=%s attempt=%d/%d delay_ms=%d error=%s",
                job_id, queue_name, attempts, max_attempts, delay_ms, exc,
            )
            raise task.retry(
                kwargs={**retry_kwargs, "attempts_made": attempts},
                countdown=delay_ms / 1000,
                exc=exc,
            )
        ledger.mark_failed(job_id, str(exc), attempts)
        run_async(handler.handle_job_failed(job_id, str(exc)))
        raise

    ledger.mark_completed(job_id)
    run_async(handler.handle_job_completed(job_id, output))
    return output


async def _process(
    ledger:        RedisJobLedger,
    *,
    job_id:        str,
    kind:          str,
    payload:       dict[str, Any],
    attempts_made: int,
    max_attempts:  int,
) -> dict[str, Any]:
    try:
        processor = build_processor_registry().get(kind)
    except QueueConfigurationError as exc:
        await build_job_store().update_job(
            job_id,
            status=JobStatus.FAILED,
            completed_at=utcnow(),
            error_message=str(exc),
        )
        raise UnrecoverableJobError(str(exc)) from exc

    ctx = JobContext.from_payload(
        job_id=job_id,
        kind=kind,
        payload=payload,
        attempts_made=attempts_made,
        max_attempts=max_attempts,
    )
    handler = build_event_handler()

    async def _track(value: int) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, ledger.set_progress, job_id, value)
        await handler.handle_job_progress(job_id, value)

    ctx.add_progress_listener(_track)
    return await processor.process(ctx)


def mark_job_stalled(job_id: str) -> None:
    """Called from the task_failure signal when the worker process died mid-job."""
    run_async(build_event_handler().handle_job_stalled(job_id))


# ---------------------------------------------------------------------------
# Queue tasks
# ---------------------------------------------------------------------------

_TASK_OPTIONS: dict[str, Any] = {
    "bind":                 True,
    "max_retries":          None,    # attempts are counted in kwargs, see module docstring
    "acks_late":            True,
    "reject_on_worker_lost": True,
}


@celery_app.task(
    name=QUEUE_TASK_NAMES[QueueName.OCR.value],
    rate_limit=QUEUE_WORKER_CONFIGS[QueueName.OCR.value].rate_limit,
    **_TASK_OPTIONS,
)
def run_ocr_job(self: Task, *, job_id: str, kind: str, payload: dict, attempts_made: int = 0, max_attempts: int = 3):
    return execute_job(
        self, QueueName.OCR.value,
        job_id=job_id, kind=kind, payload=payload,
        attempts_made=attempts_made, max_attempts=max_attempts,
    )


@celery_app.task(
    name=QUEUE_TASK_NAMES[QueueName.PDF.value],
    rate_limit=QUEUE_WORKER_CONFIGS[QueueName.PDF.value].rate_limit,
    **_TASK_OPTIONS,
)
def run_pdf_job(self: Task, *, job_id: str, kind: str, payload: dict, attempts_made: int = 0, max_attempts: int = 3):
    return execute_job(
        self, QueueName.PDF.value,
        job_id=job_id, kind=kind, payload=payload,
        attempts_made=attempts_made, max_attempts=max_attempts,
    )


@celery_app.task(
    name=QUEUE_TASK_NAMES[QueueName.THUMBNAIL.value],
    rate_limit=QUEUE_WORKER_CONFIGS[QueueName.THUMBNAIL.value].rate_limit,
    **_TASK_OPTIONS,
)
def run_thumbnail_job(self: Task, *, job_id: str, kind: str, payload: dict, attempts_made: int = 0, max_attempts: int = 3):
    return execute_job(
        self, QueueName.THUMBNAIL.value,
        job_id=job_id, kind=kind, payload=payload,
        attempts_made=attempts_made, max_attempts=max_attempts,
    )


@celery_app.task(
    name=QUEUE_TASK_NAMES[QueueName.EMBEDDING.value],
    rate_limit=QUEUE_WORKER_CONFIGS[QueueName.EMBEDDING.value].rate_limit,
    **_TASK_OPTIONS,
)
def run_embedding_job(self: Task, *, job_id: str, kind: str, payload: dict, attempts_made: int = 0, max_attempts: int = 3):
    return execute_job(
        self, QueueName.EMBEDDING.value,
        job_id=job_id, kind=kind, payload=payload,
        attempts_made=attempts_made, max_attempts=max_attempts,
    )


@celery_app.task(
    name=QUEUE_TASK_NAMES[QueueName.AI_CLASSIFY.value],
    rate_limit=QUEUE_WORKER_CONFIGS[QueueName.AI_CLASSIFY.value].rate_limit,
    **_TASK_OPTIONS,
)
def run_ai_classify_job(self: Task, *, job_id: str, kind: str, payload: dict, attempts_made: int = 0, max_attempts: int = 3):
    return execute_job(
        self, QueueName.AI_CLASSIFY.value,
        job_id=job_id, kind=kind, payload=payload,
        attempts_made=attempts_made, max_attempts=max_attempts,
    )


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@celery_app.task(name="docflow.workers.tasks.clean_old_jobs")
def clean_old_jobs(older_than_days: int | None = None) -> dict[str, Any]:
    days = older_than_days or settings.job_cleanup_days
    result = run_async(build_processing_service().clean_old_jobs(days))
    logger.info("Cleanup sweep done | cleaned=%d errors=%d", result.cleaned, len(result.errors))
    return result.model_dump()


@celery_app.task(name="docflow.workers.tasks.health_check")
def health_check() -> dict[str, Any]:
    from docflow.db.session import check_db_health

    database = run_async(check_db_health())
    status = "ok" if database["status"] == "ok" else "degraded"
    return {"status": status, "worker": "healthy", "database": database}
