"""
Celery-backed queue handle.

Publishing goes through ``send_task`` so the orchestrator never imports the
task modules; per-job state, counts and the pause flag come from the Redis
ledger. Both clients are synchronous, so every call is pushed to the
default executor.

Priority: pipeline priorities run 1 (urgent) … 5 (background); AMQP treats
higher numbers as more urgent, so messages carry ``10 - priority`` against
queues declared with ``x-max-priority: 10``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Callable, TypeVar

from celery import Celery

from docflow.core.exceptions import QueueConfigurationError
from docflow.pipeline.constants import QueueName
from docflow.pipeline.interfaces import QueueBackend, QueueCounts, QueueJobView
from docflow.queueing.ledger import DELAYED, WAITING, RedisJobLedger

logger = logging.getLogger(__name__)

T = TypeVar("T")

AMQP_MAX_PRIORITY = 10

QUEUE_TASK_NAMES: dict[str, str] = {
    QueueName.OCR.value:         "docflow.workers.tasks.run_ocr_job",
    QueueName.PDF.value:         "docflow.workers.tasks.run_pdf_job",
    QueueName.THUMBNAIL.value:   "docflow.workers.tasks.run_thumbnail_job",
    QueueName.EMBEDDING.value:   "docflow.workers.tasks.run_embedding_job",
    QueueName.AI_CLASSIFY.value: "docflow.workers.tasks.run_ai_classify_job",
}


def amqp_priority(priority: int) -> int:
    return max(0, min(AMQP_MAX_PRIORITY, AMQP_MAX_PRIORITY - priority))


class CeleryQueueBackend(QueueBackend):

    def __init__(
        self,
        name:      str,
        app:       Celery,
        ledger:    RedisJobLedger,
        task_name: str | None = None,
    ) -> None:
        self._name = name
        self._app = app
        self._ledger = ledger
        # None for the legacy queue: inspectable, but nothing new is published to it
        self._task_name = task_name

    @property
    def name(self) -> str:
        return self._name

    @property
    def ledger(self) -> RedisJobLedger:
        return self._ledger

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

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
        if self._task_name is None:
            raise QueueConfigurationError(f"Queue {self._name} does not accept new jobs")
        return await self._run(self._add_sync, kind, payload, job_id, priority, delay_ms, attempts)

    def _add_sync(
        self,
        kind:     str,
        payload:  dict[str, Any],
        job_id:   str,
        priority: int,
        delay_ms: int,
        attempts: int,
    ) -> str:
        # Ledger first: the worker must find the entry when the message lands
        self._ledger.add(
            job_id, kind, payload,
            priority=priority, max_attempts=attempts, delay_ms=delay_ms,
        )
        self._app.send_task(
            self._task_name,
            kwargs={
                "job_id":        job_id,
                "kind":          kind,
                "payload":       payload,
                "attempts_made": 0,
                "max_attempts":  attempts,
            },
            task_id=job_id,
            queue=self._name,
            priority=amqp_priority(priority),
            countdown=delay_ms / 1000 if delay_ms else None,
        )
        logger.debug(
            "Message published | queue=%s job=%s kind=%s delay_ms=%d",
            self._name, job_id, kind, delay_ms,
        )
        return job_id

    async def remove(self, job_id: str) -> None:
        await self._run(self._ledger.remove, job_id)
        # Claimed in the ledger; drop the broker message too
        await self._run(self._app.control.revoke, job_id)
        logger.info("Job removed | queue=%s job=%s", self._name, job_id)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> QueueJobView | None:
        return await self._run(self._ledger.get, job_id)

    async def get_waiting(self) -> list[QueueJobView]:
        return await self._run(self._ledger.jobs_in, WAITING)

    async def get_delayed(self) -> list[QueueJobView]:
        return await self._run(self._ledger.jobs_in, DELAYED)

    async def get_counts(self) -> QueueCounts:
        return await self._run(self._ledger.counts)

    async def is_paused(self) -> bool:
        return await self._run(self._ledger.is_paused)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def pause(self) -> None:
        # workers check the flag on every delivery and defer while it is set
        await self._run(self._ledger.set_paused, True)

    async def resume(self) -> None:
        await self._run(self._ledger.set_paused, False)

    async def clean(self, max_age_ms: int, limit: int, state: str) -> list[str]:
        return await self._run(self._ledger.clean, state, max_age_ms, limit)
