"""
Unit Tests — Job Router and Queue Registry
═══════════════════════════════════════════
  ✅ Every job type has a route; PDF sub-operations share pdf-queue
  ✅ Unknown job type → QueueConfigurationError (not retried)
  ✅ kind → job type reverse lookup
  ✅ Registry: lookup by name, by job type, legacy secondary handle
"""

from __future__ import annotations

import pytest

from docflow.core.exceptions import NotFoundError, QueueConfigurationError
from docflow.pipeline.constants import (
    LEGACY_QUEUE_NAME,
    JobKind,
    JobPriority,
    JobType,
    QueueName,
)
from docflow.pipeline.router import job_type_for_kind, kinds_for_queue, resolve_route
from docflow.queueing.registry import QueueRegistry
from tests.conftest import InMemoryQueue


# ─────────────────────────────────────────────────────────────────────────────
# resolve_route
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestResolveRoute:

    def test_every_job_type_is_routed(self):
        for job_type in JobType:
            route = resolve_route(job_type)
            assert route.queue_name in {q.value for q in QueueName}
            assert 1 <= route.priority <= 5

    def test_ocr_route(self):
        route = resolve_route(JobType.OCR)
        assert route.queue_name == "ocr-queue"
        assert route.kind == "ocr-document"
        assert route.priority == JobPriority.NORMAL.value

    def test_thumbnail_is_high_priority(self):
        route = resolve_route(JobType.THUMBNAIL)
        assert route.queue_name == QueueName.THUMBNAIL.value
        assert route.kind == JobKind.GENERATE_THUMBNAIL.value
        assert route.priority == JobPriority.HIGH.value

    def test_string_job_type_accepted(self):
        assert resolve_route("AI_CLASSIFY").kind == "classify-document"

    def test_all_pdf_operations_share_pdf_queue(self):
        pdf_types = [t for t in JobType if t.value.startswith("PDF_")]
        assert len(pdf_types) == 7
        assert {resolve_route(t).queue_name for t in pdf_types} == {"pdf-queue"}
        assert len({resolve_route(t).kind for t in pdf_types}) == 7

    def test_unknown_job_type_raises_configuration_error(self):
        with pytest.raises(QueueConfigurationError, match="No queue configured"):
            resolve_route("TRANSLATE")


# ─────────────────────────────────────────────────────────────────────────────
# Reverse lookups
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestKindLookups:

    def test_job_type_for_kind(self):
        assert job_type_for_kind("generate-embedding") is JobType.EMBEDDING
        assert job_type_for_kind("pdf_watermark") is JobType.PDF_WATERMARK

    def test_unknown_kind_raises(self):
        with pytest.raises(QueueConfigurationError):
            job_type_for_kind("resize-image")

    def test_kinds_for_queue(self):
        assert kinds_for_queue("ocr-queue") == ["ocr-document"]
        assert "pdf_merge" in kinds_for_queue("pdf-queue")
        assert kinds_for_queue(LEGACY_QUEUE_NAME) == []


# ─────────────────────────────────────────────────────────────────────────────
# QueueRegistry
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestQueueRegistry:

    def test_get_by_name(self, queue_registry, queues):
        assert queue_registry.get("ocr-queue") is queues["ocr-queue"]

    def test_get_legacy_by_name(self, queue_registry, legacy_queue):
        assert queue_registry.get(LEGACY_QUEUE_NAME) is legacy_queue

    def test_unknown_queue_raises_not_found(self, queue_registry):
        with pytest.raises(NotFoundError, match="Queue not found: nope"):
            queue_registry.get("nope")

    def test_for_job_type(self, queue_registry, queues):
        assert queue_registry.for_job_type(JobType.PDF_SPLIT) is queues["pdf-queue"]

    def test_names_and_all_include_legacy_last(self, queue_registry):
        assert queue_registry.names()[-1] == LEGACY_QUEUE_NAME
        assert len(queue_registry.all()) == 6

    def test_without_legacy(self):
        registry = QueueRegistry(queues={"ocr-queue": InMemoryQueue("ocr-queue")})
        assert registry.names() == ["ocr-queue"]
        with pytest.raises(NotFoundError):
            registry.get(LEGACY_QUEUE_NAME)
