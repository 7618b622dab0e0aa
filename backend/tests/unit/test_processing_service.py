"""
Unit Tests — ProcessingService
═══════════════════════════════
Every orchestrator operation against the in-memory store and queues.

Coverage targets:
  ✅ add_job      routing, PENDING record + document, queue message under the same id
  ✅ add_job      unknown type / missing document rejected before any write
  ✅ add_job      enqueue failure closes the record out as FAILED
  ✅ status       primary queue, legacy fallback, lookup errors tolerated
  ✅ retry_job    only FAILED with attempts left; rejected calls mutate nothing
  ✅ retry_job    enqueue failure restores FAILED without burning an attempt
  ✅ cancel_job   only PENDING; removal failures tolerated
  ✅ stats        per-queue counts and totals across all queues
  ✅ drain        partial removal still resumes the queue
  ✅ cleanup      store + queue ledgers, errors collected per queue
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from docflow.core.exceptions import (
    JobPolicyError,
    NotFoundError,
    QueueConfigurationError,
)
from docflow.pipeline.constants import (
    DAY_MS,
    LEGACY_QUEUE_NAME,
    JobStatus,
    JobType,
)
from docflow.pipeline.interfaces import QueueCounts, QueueJobView
from docflow.processors.base import utcnow
from docflow.schemas.processing import JobEnqueueOptions
from docflow.services.processing import CLEAN_BATCH_LIMIT, build_job_payload

MB = 1024 * 1024


# ─────────────────────────────────────────────────────────────────────────────
# add_job
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestAddJob:

    async def test_large_pdf_ocr_routes_to_ocr_queue(
        self, processing_service, store, queues, make_document, emitter,
    ):
        doc = make_document(mime_type="application/pdf", size_bytes=50 * MB)

        result = await processing_service.add_job(doc.id, JobType.OCR)

        assert result.queue_name == "ocr-queue"
        assert result.job_id == result.queue_job_id
        assert result.message == "Processing job created"

        records = await store.find_jobs(document_id=doc.id)
        assert len(records) == 1
        assert records[0].status is JobStatus.PENDING
        assert records[0].job_type is JobType.OCR
        assert records[0].id == result.job_id

        assert len(queues["ocr-queue"].added) == 1
        message = queues["ocr-queue"].added[0]
        assert message["kind"] == "ocr-document"
        assert message["job_id"] == result.job_id
        assert message["payload"] == build_job_payload(doc, None)

        assert (await store.get_document(doc.id)).processing_status == "PENDING"
        assert emitter.names() == ["started"]

    async def test_payload_carries_references_not_bytes(self, processing_service, queues, make_document):
        doc = make_document()
        await processing_service.add_job(doc.id, "THUMBNAIL", {"size": "large"})

        payload = queues["thumbnail-queue"].added[0]["payload"]
        assert payload == {
            "documentId":     doc.id,
            "s3Key":          doc.s3_key,
            "organizationId": doc.organization_id,
            "options":        {"size": "large"},
        }

    async def test_route_priority_used_by_default(self, processing_service, queues, make_document):
        doc = make_document()
        await processing_service.add_job(doc.id, JobType.THUMBNAIL)
        assert queues["thumbnail-queue"].added[0]["priority"] == 2

    async def test_job_options_override_priority_delay_attempts(
        self, processing_service, store, queues, make_document,
    ):
        doc = make_document()
        result = await processing_service.add_job(
            doc.id, JobType.EMBEDDING, None,
            JobEnqueueOptions(priority=1, delay_ms=5000, attempts=5),
        )

        message = queues["embedding-queue"].added[0]
        assert message["priority"] == 1
        assert message["delay_ms"] == 5000
        assert message["attempts"] == 5

        job = await store.get_job(result.job_id)
        assert job.priority == 1
        assert job.max_attempts == 5

    async def test_options_stored_as_input_params(self, processing_service, store, make_document):
        doc = make_document()
        result = await processing_service.add_job(
            doc.id, JobType.PDF_SPLIT, {"type": "every_n_pages", "everyNPages": 2},
        )
        job = await store.get_job(result.job_id)
        assert job.input_params == {"type": "every_n_pages", "everyNPages": 2}

    async def test_unknown_job_type_rejected_before_any_write(
        self, processing_service, store, queues, make_document,
    ):
        doc = make_document()
        with pytest.raises(QueueConfigurationError):
            await processing_service.add_job(doc.id, "TRANSLATE")
        assert store.jobs == {}
        assert all(not q.added for q in queues.values())

    async def test_missing_document_raises_not_found(self, processing_service, store):
        with pytest.raises(NotFoundError, match="Document not found: missing-id"):
            await processing_service.add_job("missing-id", JobType.OCR)
        assert store.jobs == {}

    async def test_enqueue_failure_marks_record_failed(
        self, processing_service, store, queues, make_document, emitter,
    ):
        doc = make_document()
        queues["ocr-queue"].add_error = ConnectionError("broker unreachable")

        with pytest.raises(ConnectionError):
            await processing_service.add_job(doc.id, JobType.OCR)

        [job] = await store.find_jobs(document_id=doc.id)
        assert job.status is JobStatus.FAILED
        assert job.error_message == "Enqueue failed: broker unreachable"
        assert job.completed_at is not None
        assert emitter.events == []

    async def test_emitter_failure_does_not_fail_add(self, store, queue_registry, make_document):
        from docflow.services.processing import ProcessingService
        from tests.conftest import RecordingEmitter

        service = ProcessingService(store, queue_registry, RecordingEmitter(fail=True))
        doc = make_document()
        result = await service.add_job(doc.id, JobType.OCR)
        assert (await store.get_job(result.job_id)).status is JobStatus.PENDING

    async def test_enqueue_for_document_leaves_document_status(
        self, processing_service, store, make_document,
    ):
        doc = make_document(processing_status="OCR_COMPLETE")
        await processing_service.enqueue_for_document(doc, JobType.AI_CLASSIFY)
        assert (await store.get_document(doc.id)).processing_status == "OCR_COMPLETE"


# ─────────────────────────────────────────────────────────────────────────────
# get_job_status
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestGetJobStatus:

    async def test_status_from_primary_queue(self, processing_service, queues, make_document):
        doc = make_document()
        result = await processing_service.add_job(doc.id, JobType.OCR)
        queues["ocr-queue"].jobs[result.job_id].progress = 40

        view = await processing_service.get_job_status(result.job_id)

        assert view.job.id == result.job_id
        assert view.queue_state == "waiting"
        assert view.progress == 40
        assert view.document["id"] == doc.id
        assert view.document["processingStatus"] == "PENDING"
        assert view.document["status"] == "READY"

    async def test_falls_back_to_legacy_queue(self, processing_service, store, legacy_queue, make_document):
        doc = make_document()
        job = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.RUNNING)
        legacy_queue.jobs[job.id] = QueueJobView(id=job.id, name="ocr-document", state="active", progress=60)

        view = await processing_service.get_job_status(job.id)

        assert view.queue_state == "active"
        assert view.progress == 60

    async def test_primary_lookup_error_tolerated(
        self, processing_service, store, queues, legacy_queue, make_document,
    ):
        doc = make_document()
        job = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.PENDING)
        queues["ocr-queue"].lookup_error = ConnectionError("redis down")
        legacy_queue.jobs[job.id] = QueueJobView(id=job.id, name="ocr-document", state="waiting")

        view = await processing_service.get_job_status(job.id)
        assert view.queue_state == "waiting"

    async def test_job_absent_from_every_queue(self, processing_service, store, make_document):
        doc = make_document()
        job = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.COMPLETED)

        view = await processing_service.get_job_status(job.id)

        assert view.queue_state is None
        assert view.progress == 0

    async def test_unknown_job_raises(self, processing_service):
        with pytest.raises(NotFoundError, match="Processing job not found"):
            await processing_service.get_job_status("nope")


# ─────────────────────────────────────────────────────────────────────────────
# retry_job
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestRetryJob:

    async def test_failed_job_requeued_under_same_id(
        self, processing_service, store, queues, make_document,
    ):
        doc = make_document(processing_status="FAILED")
        job = store.add_job(
            document_id=doc.id, job_type=JobType.OCR, status=JobStatus.FAILED,
            attempts=1, max_attempts=3, priority=3,
            error_message="boom", completed_at=utcnow(), input_params={"forceAsync": True},
        )

        retried = await processing_service.retry_job(job.id)

        assert retried.status is JobStatus.PENDING
        assert retried.attempts == 2
        assert retried.error_message is None
        assert retried.completed_at is None

        message = queues["ocr-queue"].added[0]
        assert message["job_id"] == job.id
        assert message["payload"]["options"] == {"forceAsync": True}
        assert message["attempts"] == 3
        assert (await store.get_document(doc.id)).processing_status == "PENDING"

    @pytest.mark.parametrize("status", [
        JobStatus.PENDING, JobStatus.RUNNING, JobStatus.COMPLETED,
        JobStatus.CANCELLED, JobStatus.STALLED,
    ])
    async def test_non_failed_job_rejected_without_mutation(
        self, processing_service, store, queues, make_document, status,
    ):
        doc = make_document()
        job = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=status, attempts=1)

        with pytest.raises(JobPolicyError, match=f"Current status: {status.value}"):
            await processing_service.retry_job(job.id)

        assert await store.get_job(job.id) == job
        assert queues["ocr-queue"].added == []

    async def test_retry_enqueue_failure_restores_failed_record(
        self, processing_service, store, queues, make_document, emitter,
    ):
        doc = make_document(processing_status="FAILED")
        job = store.add_job(
            document_id=doc.id, job_type=JobType.EMBEDDING, status=JobStatus.FAILED,
            attempts=1, max_attempts=3, error_message="Connection reset", completed_at=utcnow(),
        )
        queues["embedding-queue"].add_error = ConnectionError("broker unreachable")

        with pytest.raises(ConnectionError):
            await processing_service.retry_job(job.id)

        record = await store.get_job(job.id)
        assert record.status is JobStatus.FAILED
        assert record.attempts == 1
        assert record.error_message == "Enqueue failed: broker unreachable"
        assert record.completed_at is not None
        assert (await store.get_document(doc.id)).processing_status == "FAILED"
        assert queues["embedding-queue"].jobs == {}
        assert emitter.events == []

        # nothing left looking active, so chaining is not blocked
        active = await store.find_jobs(
            document_id=doc.id, statuses=[JobStatus.PENDING, JobStatus.RUNNING],
        )
        assert active == []

    async def test_attempts_exhausted_rejected(self, processing_service, store, queues, make_document):
        doc = make_document()
        job = store.add_job(
            document_id=doc.id, job_type=JobType.EMBEDDING, status=JobStatus.FAILED,
            attempts=3, max_attempts=3,
        )

        with pytest.raises(JobPolicyError, match=r"Maximum retry attempts \(3\) reached"):
            await processing_service.retry_job(job.id)

        assert (await store.get_job(job.id)).status is JobStatus.FAILED
        assert queues["embedding-queue"].added == []


# ─────────────────────────────────────────────────────────────────────────────
# cancel_job
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCancelJob:

    async def test_pending_job_removed_and_cancelled(self, processing_service, store, queues, make_document):
        doc = make_document()
        result = await processing_service.add_job(doc.id, JobType.THUMBNAIL)

        cancelled = await processing_service.cancel_job(result.job_id)

        assert cancelled.status is JobStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert queues["thumbnail-queue"].removed == [result.job_id]

    async def test_removal_failure_tolerated(self, processing_service, store, queues, make_document):
        doc = make_document()
        job = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.PENDING)

        cancelled = await processing_service.cancel_job(job.id)

        assert cancelled.status is JobStatus.CANCELLED
        assert "remove" in queues["ocr-queue"].calls

    async def test_legacy_queue_also_tried(self, processing_service, store, legacy_queue, make_document):
        doc = make_document()
        job = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.PENDING)
        legacy_queue.jobs[job.id] = QueueJobView(id=job.id, name="ocr-document", state="waiting")

        await processing_service.cancel_job(job.id)

        assert legacy_queue.removed == [job.id]

    @pytest.mark.parametrize("status", [JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED])
    async def test_non_pending_job_rejected_without_mutation(
        self, processing_service, store, queues, make_document, status,
    ):
        doc = make_document()
        job = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=status)

        with pytest.raises(JobPolicyError, match="Can only cancel pending jobs"):
            await processing_service.cancel_job(job.id)

        assert await store.get_job(job.id) == job
        assert "remove" not in queues["ocr-queue"].calls


# ─────────────────────────────────────────────────────────────────────────────
# Queue stats and administration
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestQueueAdministration:

    async def test_stats_totals_across_all_queues(self, processing_service, queue_registry):
        backends = queue_registry.all()
        for queue in backends:
            queue.counts = QueueCounts(waiting=5, active=2, completed=100, failed=3, delayed=1)
        n = len(backends)

        stats = await processing_service.get_queue_stats()

        assert set(stats.queues) == set(queue_registry.names())
        assert stats.totals == {
            "waiting":   5 * n,
            "active":    2 * n,
            "completed": 100 * n,
            "failed":    3 * n,
            "delayed":   n,
            "paused":    0,
        }

    async def test_stats_by_name(self, processing_service, queues):
        queues["pdf-queue"].counts = QueueCounts(waiting=7)
        counts = await processing_service.get_queue_stats_by_name("pdf-queue")
        assert counts["waiting"] == 7

    async def test_stats_by_unknown_name_raises(self, processing_service):
        with pytest.raises(NotFoundError):
            await processing_service.get_queue_stats_by_name("nope")

    async def test_pause_and_resume(self, processing_service, queues):
        await processing_service.pause_queue("ocr-queue")
        assert queues["ocr-queue"].paused
        await processing_service.resume_queue("ocr-queue")
        assert not queues["ocr-queue"].paused

    async def test_pause_legacy_queue_by_name(self, processing_service, legacy_queue):
        await processing_service.pause_queue(LEGACY_QUEUE_NAME)
        assert legacy_queue.paused

    async def test_drain_counts_only_successful_removals(self, processing_service, queues):
        queue = queues["ocr-queue"]
        for job_id in ("a", "b"):
            queue.jobs[job_id] = QueueJobView(id=job_id, name="ocr-document", state="waiting")
        queue.unremovable.add("b")

        result = await processing_service.drain_queue("ocr-queue")

        assert result.success is True
        assert result.removed == 1
        assert queue.calls[0] == "pause"
        assert queue.calls[-1] == "resume"
        assert not queue.paused

    async def test_drain_includes_delayed_jobs(self, processing_service, queues):
        queue = queues["embedding-queue"]
        queue.jobs["w"] = QueueJobView(id="w", name="generate-embedding", state="waiting")
        queue.jobs["d"] = QueueJobView(id="d", name="generate-embedding", state="delayed")
        queue.jobs["r"] = QueueJobView(id="r", name="generate-embedding", state="active")

        result = await processing_service.drain_queue("embedding-queue")

        assert result.removed == 2
        assert set(queue.jobs) == {"r"}

    async def test_drain_resumes_when_enumeration_fails(self, processing_service, queues):
        queue = queues["pdf-queue"]
        queue.get_waiting = AsyncMock(side_effect=ConnectionError("redis down"))

        with pytest.raises(ConnectionError):
            await processing_service.drain_queue("pdf-queue")
        assert not queue.paused


# ─────────────────────────────────────────────────────────────────────────────
# clean_old_jobs
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCleanOldJobs:

    async def test_removes_old_terminal_records_only(self, processing_service, store, make_document):
        doc = make_document()
        old = utcnow() - timedelta(days=30)
        recent = utcnow() - timedelta(days=1)
        old_done = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.COMPLETED, completed_at=old)
        old_failed = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.FAILED, completed_at=old)
        recent_done = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.COMPLETED, completed_at=recent)
        pending = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.PENDING)

        result = await processing_service.clean_old_jobs(7)

        assert result.cleaned == 2
        assert result.errors == []
        assert set(store.jobs) == {recent_done.id, pending.id}
        assert old_done.id not in store.jobs and old_failed.id not in store.jobs

    async def test_cleans_completed_and_failed_in_every_queue(self, processing_service, queue_registry):
        await processing_service.clean_old_jobs(3)

        for queue in queue_registry.all():
            assert queue.cleaned == [
                (3 * DAY_MS, CLEAN_BATCH_LIMIT, "completed"),
                (3 * DAY_MS, CLEAN_BATCH_LIMIT, "failed"),
            ]

    async def test_queue_entries_added_to_cleaned_count(self, processing_service, queues):
        queues["ocr-queue"].jobs["x"] = QueueJobView(id="x", name="ocr-document", state="completed")
        queues["ocr-queue"].jobs["y"] = QueueJobView(id="y", name="ocr-document", state="failed")

        result = await processing_service.clean_old_jobs()
        assert result.cleaned == 2

    async def test_queue_error_collected_and_others_still_cleaned(self, processing_service, queues):
        queues["ocr-queue"].clean_error = ConnectionError("redis down")

        result = await processing_service.clean_old_jobs()

        assert result.errors == ["Error cleaning queue ocr-queue: redis down"]
        assert queues["pdf-queue"].cleaned


# ─────────────────────────────────────────────────────────────────────────────
# History
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestHistory:

    async def test_jobs_by_document_newest_first(self, processing_service, store, make_document):
        doc = make_document()
        first = store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.COMPLETED)
        second = store.add_job(document_id=doc.id, job_type=JobType.EMBEDDING, status=JobStatus.PENDING)
        store.add_job(document_id="other", job_type=JobType.OCR, status=JobStatus.PENDING)

        jobs = await processing_service.get_jobs_by_document(doc.id)
        assert [j.id for j in jobs] == [second.id, first.id]

    async def test_failed_jobs_page(self, processing_service, store, make_document):
        doc = make_document()
        for _ in range(3):
            store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.FAILED, completed_at=utcnow())
        store.add_job(document_id=doc.id, job_type=JobType.OCR, status=JobStatus.COMPLETED)

        page = await processing_service.get_failed_jobs(limit=2, offset=0)

        assert page.total == 3
        assert len(page.jobs) == 2
        assert all(j.status is JobStatus.FAILED for j in page.jobs)
