"""
Real-time processing events.

RedisEventEmitter publishes one JSON message per state transition on
``<events_channel_prefix>:<organization_id>``; the websocket gateway
subscribes per organization and fans out to connected clients.

Every call site goes through ``safe_emit``: a slow or broken channel is
logged and dropped, never surfaced to the job. Progress ticks go through
``emit_in_background`` so the job never waits on the channel; terminal
events call ``flush_pending`` first and are never overtaken by a late tick.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from docflow.pipeline.interfaces import EventEmitter

logger = logging.getLogger(__name__)

EMIT_TIMEOUT_SECONDS = 2.0

# in-flight background emits, held until done
_pending: set[asyncio.Task] = set()


async def safe_emit(
    emit: Callable[..., Awaitable[None]],
    *args,
    **kwargs,
) -> None:
    """Invoke an emitter method; swallow and log any failure or timeout."""
    try:
        await asyncio.wait_for(emit(*args, **kwargs), timeout=EMIT_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.warning(
            "Event emission failed | event=%s error=%s",
            getattr(emit, "__name__", "?"), exc,
        )


def emit_in_background(
    emit: Callable[..., Awaitable[None]],
    *args,
    **kwargs,
) -> asyncio.Task:
    """Schedule ``safe_emit`` on the running loop without waiting for it."""
    task = asyncio.create_task(safe_emit(emit, *args, **kwargs))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def flush_pending(timeout: float | None = None) -> None:
    """Wait for this loop's background emits, at most ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    waiting = [task for task in _pending if task.get_loop() is loop]
    if waiting:
        await asyncio.wait(waiting, timeout=timeout or EMIT_TIMEOUT_SECONDS)


class LoggingEventEmitter(EventEmitter):
    """Local/dev emitter — writes events to the log only."""

    async def emit_started(self, job, document, organization_id, extra=None) -> None:
        logger.info("event job.started | job=%s org=%s", job.get("id"), organization_id)

    async def emit_progress(self, job, document, organization_id, extra=None) -> None:
        logger.debug(
            "event job.progress | job=%s progress=%s",
            job.get("id"), (extra or {}).get("progress"),
        )

    async def emit_completed(self, job, document, organization_id, extra=None) -> None:
        logger.info("event job.completed | job=%s org=%s", job.get("id"), organization_id)

    async def emit_failed(self, job, document, organization_id, extra=None) -> None:
        logger.info(
            "event job.failed | job=%s org=%s error=%s",
            job.get("id"), organization_id, job.get("errorMessage"),
        )


class RedisEventEmitter(EventEmitter):
    """Pub/sub emitter backed by ``redis.asyncio``."""

    def __init__(self, redis_client, channel_prefix: str = "docflow:events") -> None:
        self._redis = redis_client
        self._prefix = channel_prefix

    @classmethod
    def from_url(cls, url: str, channel_prefix: str = "docflow:events") -> "RedisEventEmitter":
        import redis.asyncio as aioredis

        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client, channel_prefix=channel_prefix)

    async def _publish(
        self,
        event: str,
        job: dict,
        document: dict,
        organization_id: str,
        extra: dict | None,
    ) -> None:
        message = {
            "event":          event,
            "job":            job,
            "document":       document,
            "organizationId": organization_id,
            "timestamp":      datetime.now(timezone.utc).isoformat(),
            **(extra or {}),
        }
        await self._redis.publish(
            f"{self._prefix}:{organization_id}",
            json.dumps(message, default=str),
        )

    async def emit_started(self, job, document, organization_id, extra=None) -> None:
        await self._publish("processing.started", job, document, organization_id, extra)

    async def emit_progress(self, job, document, organization_id, extra=None) -> None:
        await self._publish("processing.progress", job, document, organization_id, extra)

    async def emit_completed(self, job, document, organization_id, extra=None) -> None:
        await self._publish("processing.completed", job, document, organization_id, extra)

    async def emit_failed(self, job, document, organization_id, extra=None) -> None:
        await self._publish("processing.failed", job, document, organization_id, extra)
