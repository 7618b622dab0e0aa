"""
Unit Tests — SqlAlchemyJobStore
═══════════════════════════════
The session factory is replaced by an in-memory fake; these tests cover the
row ↔ record mapping and the statements issued, not PostgreSQL itself.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from docflow.core.exceptions import NotFoundError
from docflow.db.store import SqlAlchemyJobStore, document_to_record, job_to_record
from docflow.models.processing import AuditLog, Document, ProcessingJob
from docflow.pipeline.constants import JobStatus, JobType
from tests.conftest import TEST_ORG_ID, TEST_USER_ID


class _FakeSession:

    def __init__(self) -> None:
        self.added: list = []
        self.get = AsyncMock(return_value=None)
        self.execute = AsyncMock(return_value=MagicMock())
        self.flush = AsyncMock()
        self.refresh = AsyncMock()
        self.scalar = AsyncMock(return_value=0)

    def add(self, row) -> None:
        self.added.append(row)


@pytest.fixture
def session():
    return _FakeSession()


@pytest.fixture
def sql_store(session):
    @asynccontextmanager
    async def _factory():
        yield session

    return SqlAlchemyJobStore(session_factory=_factory)


def _job_row(**overrides) -> ProcessingJob:
    fields = dict(
        id=uuid.uuid4(),
        document_id=uuid.uuid4(),
        job_type="OCR",
        status="PENDING",
        priority=3,
        attempts=0,
        max_attempts=3,
        input_params={},
    )
    fields.update(overrides)
    return ProcessingJob(**fields)


@pytest.mark.unit
class TestMapping:

    def test_job_row_to_record(self):
        row = _job_row(status="FAILED", error_message="Access Denied")

        record = job_to_record(row)

        assert record.id == str(row.id)
        assert record.job_type is JobType.OCR
        assert record.status is JobStatus.FAILED
        assert record.error_message == "Access Denied"

    def test_document_row_to_record(self):
        row = Document(
            id=uuid.uuid4(),
            organization_id=uuid.UUID(TEST_ORG_ID),
            name="a.pdf",
            mime_type="application/pdf",
            size_bytes=10,
            s3_key="k",
            processing_status="OCR_COMPLETE",
            doc_metadata={"ocr": {"wordCount": 3}},
            created_by_id=None,
            status="READY",
        )

        record = document_to_record(row)

        assert record.organization_id == TEST_ORG_ID
        assert record.metadata == {"ocr": {"wordCount": 3}}
        assert record.created_by_id is None
        assert record.folder_id is None


@pytest.mark.unit
class TestJobs:

    async def test_create_job(self, sql_store, session):
        document_id = str(uuid.uuid4())

        record = await sql_store.create_job(
            document_id=document_id,
            job_type=JobType.THUMBNAIL,
            input_params={"size": "small"},
            priority=2,
            max_attempts=3,
        )

        [row] = session.added
        assert row.job_type == "THUMBNAIL"
        assert row.status == "PENDING"
        assert str(row.document_id) == document_id
        session.flush.assert_awaited_once()
        assert record.status is JobStatus.PENDING

    async def test_get_job_with_malformed_id(self, sql_store, session):
        assert await sql_store.get_job("not-a-uuid") is None
        session.get.assert_not_called()

    async def test_update_job_stores_enum_values(self, sql_store, session):
        row = _job_row()
        session.get.return_value = row

        record = await sql_store.update_job(str(row.id), status=JobStatus.RUNNING, attempts=1)

        assert row.status == "RUNNING"
        assert row.attempts == 1
        assert record.status is JobStatus.RUNNING

    async def test_update_missing_job(self, sql_store, session):
        with pytest.raises(NotFoundError):
            await sql_store.update_job(str(uuid.uuid4()), status=JobStatus.RUNNING)

    async def test_find_jobs_with_malformed_document_id(self, sql_store, session):
        assert await sql_store.find_jobs(document_id="nope") == []
        session.execute.assert_not_called()


@pytest.mark.unit
class TestDocuments:

    async def test_update_document_maps_metadata_column(self, sql_store, session):
        await sql_store.update_document(str(uuid.uuid4()), metadata={"a": 1}, processing_status="READY")

        stmt = session.execute.call_args.args[0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert {"a": 1} in params.values()
        assert "READY" in params.values()
        assert "metadata" in str(stmt.compile(dialect=postgresql.dialect()))

    async def test_get_documents_skips_malformed_ids(self, sql_store, session):
        assert await sql_store.get_documents(["x", "y"], TEST_ORG_ID) == []
        session.execute.assert_not_called()

    async def test_create_document(self, sql_store, session):
        record = await sql_store.create_document(
            organization_id=TEST_ORG_ID,
            name="merged.pdf",
            mime_type="application/pdf",
            size_bytes=42,
            s3_key=f"{TEST_ORG_ID}/x/merged.pdf",
            status="READY",
            processing_status="COMPLETE",
            created_by_id=TEST_USER_ID,
            folder_id=None,
            metadata={"mergedFrom": ["a", "b"]},
        )

        [row] = session.added
        assert row.organization_id == uuid.UUID(TEST_ORG_ID)
        assert row.doc_metadata == {"mergedFrom": ["a", "b"]}
        assert record.created_by_id == TEST_USER_ID
        assert record.processing_status == "COMPLETE"

    async def test_audit_event(self, sql_store, session):
        await sql_store.record_audit_event(
            organization_id=TEST_ORG_ID,
            action="PROCESSING_FAILED",
            resource_id="job-1",
            metadata={"error": "boom"},
        )

        [row] = session.added
        assert isinstance(row, AuditLog)
        assert row.resource_type == "PROCESSING_JOB"
        assert row.doc_metadata == {"error": "boom"}

    async def test_find_document_by_key(self, sql_store, session):
        result = MagicMock()
        result.scalars.return_value.first.return_value = None
        session.execute.return_value = result

        assert await sql_store.find_document_by_key(TEST_ORG_ID, f"{TEST_ORG_ID}/job-1/a.pdf") is None

        sql = str(session.execute.call_args.args[0].compile(dialect=postgresql.dialect()))
        assert "s3_key" in sql
        assert "organization_id" in sql

    async def test_find_document_by_key_with_malformed_org(self, sql_store, session):
        assert await sql_store.find_document_by_key("not-a-uuid", "k") is None
        session.execute.assert_not_called()
