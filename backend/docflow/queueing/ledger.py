"""
Redis Job Ledger
════════════════

Celery brokers expose neither per-job state nor queue counts, so every queue
keeps a small ledger next to the broker:

  {prefix}:{queue}:waiting     ZSET  job id → enqueue time (ms)
  {prefix}:{queue}:delayed     ZSET  job id → time it becomes due (ms)
  {prefix}:{queue}:active      ZSET  job id → start time (ms)
  {prefix}:{queue}:completed   ZSET  job id → finish time (ms)
  {prefix}:{queue}:failed      ZSET  job id → finish time (ms)
  {prefix}:{queue}:job:{id}    HASH  name, data, state, progress, attempts_made,
                                     max_attempts, priority, failed_reason, timestamps
  {prefix}:{queue}:paused      STR   "1" while the queue is paused

A job lives in exactly one state set. Transitions run in a MULTI pipeline.
Removal only succeeds while the job is still waiting or delayed; the ZREM
return value is the claim, so a worker that moved the job to active first
wins and the remover gets JobRemovalError.

The client is the synchronous redis-py client; async callers go through
the executor (see celery_backend).
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import redis

from docflow.core.exceptions import JobRemovalError
from docflow.pipeline.constants import (
    REMOVE_ON_COMPLETE_AGE_MS,
    REMOVE_ON_COMPLETE_COUNT,
    REMOVE_ON_FAIL_AGE_MS,
    REMOVE_ON_FAIL_COUNT,
)
from docflow.pipeline.interfaces import QueueCounts, QueueJobView

logger = logging.getLogger(__name__)

WAITING   = "waiting"
DELAYED   = "delayed"
ACTIVE    = "active"
COMPLETED = "completed"
FAILED    = "failed"

STATES: tuple[str, ...] = (WAITING, DELAYED, ACTIVE, COMPLETED, FAILED)
REMOVABLE_STATES: tuple[str, ...] = (WAITING, DELAYED)

_RETENTION: dict[str, tuple[int, int]] = {
    COMPLETED: (REMOVE_ON_COMPLETE_AGE_MS, REMOVE_ON_COMPLETE_COUNT),
    FAILED:    (REMOVE_ON_FAIL_AGE_MS, REMOVE_ON_FAIL_COUNT),
}


def now_ms() -> int:
    return int(time.time() * 1000)


class RedisJobLedger:

    def __init__(self, client: redis.Redis, queue_name: str, prefix: str = "docflow") -> None:
        self._redis = client
        self.queue_name = queue_name
        self._base = f"{prefix}:{queue_name}"

    @classmethod
    def from_url(cls, url: str, queue_name: str, prefix: str = "docflow") -> "RedisJobLedger":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client, queue_name, prefix)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def state_key(self, state: str) -> str:
        return f"{self._base}:{state}"

    def job_key(self, job_id: str) -> str:
        return f"{self._base}:job:{job_id}"

    @property
    def paused_key(self) -> str:
        return f"{self._base}:paused"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(
        self,
        job_id:       str,
        name:         str,
        data:         dict[str, Any],
        *,
        priority:     int,
        max_attempts: int,
        delay_ms:     int = 0,
    ) -> str:
        """Record a new (or re-added) job as waiting, or delayed when ``delay_ms`` > 0."""
        ts = now_ms()
        state = DELAYED if delay_ms > 0 else WAITING
        pipe = self._redis.pipeline(transaction=True)
        self._unlink_states(pipe, job_id)
        pipe.delete(self.job_key(job_id))
        pipe.hset(
            self.job_key(job_id),
            mapping={
                "name":          name,
                "data":          json.dumps(data, default=str),
                "state":         state,
                "progress":      0,
                "attempts_made": 0,
                "max_attempts":  max_attempts,
                "priority":      priority,
                "timestamp":     ts,
            },
        )
        pipe.zadd(self.state_key(state), {job_id: ts + delay_ms})
        pipe.execute()
        return state

    def mark_active(self, job_id: str, attempts_made: int) -> bool:
        """
        Claim the job for a worker. The ZREM out of waiting/delayed is the claim,
        mirroring remove(): whichever side takes it first wins.

        A job already active is a redelivery (worker lost with acks_late) and is
        let through. Anything else was removed, cancelled or already finished.
        """
        pipe = self._redis.pipeline(transaction=True)
        for state in REMOVABLE_STATES:
            pipe.zrem(self.state_key(state), job_id)
        pipe.hget(self.job_key(job_id), "state")
        *claimed, state = pipe.execute()
        if not any(claimed):
            if state != ACTIVE:
                return False
            logger.info("Redelivered active job | queue=%s job=%s", self.queue_name, job_id)

        ts = now_ms()
        pipe = self._redis.pipeline(transaction=True)
        pipe.zadd(self.state_key(ACTIVE), {job_id: ts})
        pipe.hset(
            self.job_key(job_id),
            mapping={"state": ACTIVE, "attempts_made": attempts_made, "processed_on": ts},
        )
        pipe.execute()
        return True

    def mark_delayed(self, job_id: str, delay_ms: int, attempts_made: int, reason: str | None = None) -> None:
        ts = now_ms()
        pipe = self._redis.pipeline(transaction=True)
        self._unlink_states(pipe, job_id)
        pipe.zadd(self.state_key(DELAYED), {job_id: ts + delay_ms})
        pipe.hset(
            self.job_key(job_id),
            mapping={
                "state":         DELAYED,
                "attempts_made": attempts_made,
                "failed_reason": reason or "",
            },
        )
        pipe.execute()

    def mark_completed(self, job_id: str) -> None:
        self._finish(job_id, COMPLETED, {"progress": 100, "failed_reason": ""})

    def mark_failed(self, job_id: str, reason: str, attempts_made: int) -> None:
        self._finish(job_id, FAILED, {"failed_reason": reason, "attempts_made": attempts_made})

    def set_progress(self, job_id: str, progress: int) -> None:
        self._redis.hset(self.job_key(job_id), "progress", progress)

    def remove(self, job_id: str) -> None:
        """Drop a job that has not started. Raises JobRemovalError otherwise."""
        pipe = self._redis.pipeline(transaction=True)
        for state in REMOVABLE_STATES:
            pipe.zrem(self.state_key(state), job_id)
        claimed = any(pipe.execute())
        if not claimed:
            raise JobRemovalError(
                f"Job {job_id} could not be removed from {self.queue_name}: not waiting or delayed"
            )
        self._redis.delete(self.job_key(job_id))

    def discard(self, job_id: str) -> None:
        """Forget a job in any state. Used when a delivery turns out to be cancelled."""
        pipe = self._redis.pipeline(transaction=True)
        self._unlink_states(pipe, job_id)
        pipe.delete(self.job_key(job_id))
        pipe.execute()

    # ------------------------------------------------------------------
    # Pause flag
    # ------------------------------------------------------------------

    def set_paused(self, paused: bool) -> None:
        if paused:
            self._redis.set(self.paused_key, "1")
        else:
            self._redis.delete(self.paused_key)

    def is_paused(self) -> bool:
        return bool(self._redis.exists(self.paused_key))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> QueueJobView | None:
        raw = self._redis.hgetall(self.job_key(job_id))
        if not raw:
            return None
        return self._to_view(job_id, raw, paused=self.is_paused())

    def jobs_in(self, state: str) -> list[QueueJobView]:
        job_ids = self._redis.zrange(self.state_key(state), 0, -1)
        if not job_ids:
            return []
        pipe = self._redis.pipeline(transaction=False)
        for job_id in job_ids:
            pipe.hgetall(self.job_key(job_id))
        paused = self.is_paused()
        return [
            self._to_view(job_id, raw, paused=paused)
            for job_id, raw in zip(job_ids, pipe.execute())
            if raw
        ]

    def counts(self) -> QueueCounts:
        pipe = self._redis.pipeline(transaction=False)
        for state in STATES:
            pipe.zcard(self.state_key(state))
        pipe.exists(self.paused_key)
        *sizes, paused = pipe.execute()
        by_state = dict(zip(STATES, sizes))

        waiting = by_state[WAITING]
        return QueueCounts(
            waiting=0 if paused else waiting,
            active=by_state[ACTIVE],
            completed=by_state[COMPLETED],
            failed=by_state[FAILED],
            delayed=by_state[DELAYED],
            paused=waiting if paused else 0,
        )

    # ------------------------------------------------------------------
    # Pruning
    # ------------------------------------------------------------------

    def clean(self, state: str, max_age_ms: int, limit: int) -> list[str]:
        """Remove up to ``limit`` entries of ``state`` older than ``max_age_ms``."""
        if state not in STATES:
            raise ValueError(f"Invalid ledger state: {state}")
        cutoff = now_ms() - max_age_ms
        job_ids = self._redis.zrangebyscore(self.state_key(state), "-inf", cutoff, start=0, num=limit)
        self._purge(state, job_ids)
        return list(job_ids)

    def _enforce_retention(self, state: str) -> None:
        max_age_ms, max_count = _RETENTION[state]
        self.clean(state, max_age_ms, max_count)
        overflow = self._redis.zrange(self.state_key(state), 0, -(max_count + 1))
        self._purge(state, overflow)

    def _purge(self, state: str, job_ids: list[str]) -> None:
        if not job_ids:
            return
        pipe = self._redis.pipeline(transaction=True)
        pipe.zrem(self.state_key(state), *job_ids)
        pipe.delete(*(self.job_key(job_id) for job_id in job_ids))
        pipe.execute()
        logger.debug("Ledger pruned | queue=%s state=%s removed=%d", self.queue_name, state, len(job_ids))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finish(self, job_id: str, state: str, fields: dict[str, Any]) -> None:
        ts = now_ms()
        pipe = self._redis.pipeline(transaction=True)
        self._unlink_states(pipe, job_id)
        pipe.zadd(self.state_key(state), {job_id: ts})
        pipe.hset(self.job_key(job_id), mapping={"state": state, "finished_on": ts, **fields})
        pipe.execute()
        self._enforce_retention(state)

    def _unlink_states(self, pipe: Any, job_id: str) -> None:
        for state in STATES:
            pipe.zrem(self.state_key(state), job_id)

    @staticmethod
    def _to_view(job_id: str, raw: dict[str, str], *, paused: bool) -> QueueJobView:
        state = raw.get("state", WAITING)
        if paused and state == WAITING:
            state = "paused"
        return QueueJobView(
            id=job_id,
            name=raw.get("name", ""),
            state=state,
            progress=int(raw.get("progress") or 0),
            attempts_made=int(raw.get("attempts_made") or 0),
            data=json.loads(raw["data"]) if raw.get("data") else {},
            failed_reason=raw.get("failed_reason") or None,
        )
