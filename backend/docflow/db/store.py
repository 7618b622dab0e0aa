"""
PostgreSQL job store (SQLAlchemy 2.x async).

Maps ORM rows to the plain JobRecord / DocumentRecord dataclasses the
pipeline works with, so nothing outside this module touches a session.
Ids cross the boundary as strings.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import Text, bindparam, cast, delete, func, select, update
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, array
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.core.exceptions import NotFoundError
from docflow.models.processing import AuditLog, Document, ProcessingJob
from docflow.pipeline.constants import JobStatus, JobType
from docflow.pipeline.interfaces import DocumentRecord, JobRecord, JobStore

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Any]   # returns an async context manager yielding AsyncSession

# Caller field name → ORM attribute name, where they differ
_DOCUMENT_FIELDS = {"metadata": "doc_metadata"}
_UUID_FIELDS = {"organization_id", "created_by_id", "folder_id"}


def _uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _maybe_uuid(value: str | None) -> uuid.UUID | None:
    try:
        return _uuid(value) if value else None
    except ValueError:
        return None


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


# ---------------------------------------------------------------------------
# Row → record
# ---------------------------------------------------------------------------

def job_to_record(row: ProcessingJob) -> JobRecord:
    return JobRecord(
        id=str(row.id),
        document_id=str(row.document_id),
        job_type=JobType(row.job_type),
        status=JobStatus(row.status),
        priority=row.priority,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        input_params=row.input_params or {},
        output_data=row.output_data,
        error_message=row.error_message,
        error_stack=row.error_stack,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def document_to_record(row: Document) -> DocumentRecord:
    return DocumentRecord(
        id=str(row.id),
        organization_id=str(row.organization_id),
        name=row.name,
        mime_type=row.mime_type,
        size_bytes=row.size_bytes,
        s3_key=row.s3_key,
        processing_status=row.processing_status,
        metadata=row.doc_metadata or {},
        extracted_text=row.extracted_text,
        thumbnail_key=row.thumbnail_key,
        created_by_id=str(row.created_by_id) if row.created_by_id else None,
        folder_id=str(row.folder_id) if row.folder_id else None,
        status=row.status,
    )


class SqlAlchemyJobStore(JobStore):

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        if session_factory is None:
            from docflow.db.session import get_session
            session_factory = get_session
        self._session = session_factory

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        *,
        document_id:  str,
        job_type:     JobType,
        input_params: dict[str, Any],
        priority:     int,
        max_attempts: int,
    ) -> JobRecord:
        async with self._session() as session:
            row = ProcessingJob(
                id=uuid.uuid4(),
                document_id=_uuid(document_id),
                job_type=_enum_value(job_type),
                status=JobStatus.PENDING.value,
                input_params=input_params,
                priority=priority,
                attempts=0,
                max_attempts=max_attempts,
            )
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return job_to_record(row)

    async def get_job(self, job_id: str) -> JobRecord | None:
        job_uuid = _maybe_uuid(job_id)
        if job_uuid is None:
            return None
        async with self._session() as session:
            row = await session.get(ProcessingJob, job_uuid)
            return job_to_record(row) if row is not None else None

    async def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        values = {key: _enum_value(value) for key, value in fields.items()}
        async with self._session() as session:
            row = await session.get(ProcessingJob, _uuid(job_id))
            if row is None:
                raise NotFoundError(f"Processing job not found: {job_id}")
            for key, value in values.items():
                setattr(row, key, value)
            await session.flush()
            return job_to_record(row)

    async def find_jobs(
        self,
        *,
        document_id: str | None = None,
        job_types:   Iterable[JobType] | None = None,
        statuses:    Iterable[JobStatus] | None = None,
    ) -> list[JobRecord]:
        stmt = select(ProcessingJob).order_by(ProcessingJob.created_at.desc())
        if document_id is not None:
            doc_uuid = _maybe_uuid(document_id)
            if doc_uuid is None:
                return []
            stmt = stmt.where(ProcessingJob.document_id == doc_uuid)
        if job_types is not None:
            stmt = stmt.where(ProcessingJob.job_type.in_([_enum_value(t) for t in job_types]))
        if statuses is not None:
            stmt = stmt.where(ProcessingJob.status.in_([_enum_value(s) for s in statuses]))

        async with self._session() as session:
            result = await session.execute(stmt)
            return [job_to_record(row) for row in result.scalars().all()]

    async def list_failed_jobs(self, limit: int, offset: int) -> tuple[list[JobRecord], int]:
        failed = ProcessingJob.status == JobStatus.FAILED.value
        async with self._session() as session:
            result = await session.execute(
                select(ProcessingJob)
                .where(failed)
                .order_by(ProcessingJob.completed_at.desc().nullslast())
                .limit(limit)
                .offset(offset)
            )
            total = await session.scalar(select(func.count()).select_from(ProcessingJob).where(failed))
            return [job_to_record(row) for row in result.scalars().all()], int(total or 0)

    async def delete_jobs_older_than(
        self,
        statuses: Sequence[JobStatus],
        cutoff:   datetime,
    ) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(ProcessingJob).where(
                    ProcessingJob.status.in_([_enum_value(s) for s in statuses]),
                    ProcessingJob.completed_at < cutoff,
                )
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        doc_uuid = _maybe_uuid(document_id)
        if doc_uuid is None:
            return None
        async with self._session() as session:
            row = await session.get(Document, doc_uuid)
            return document_to_record(row) if row is not None else None

    async def get_documents(
        self,
        document_ids:    Sequence[str],
        organization_id: str,
    ) -> list[DocumentRecord]:
        ids = [u for u in (_maybe_uuid(d) for d in document_ids) if u is not None]
        if not ids:
            return []
        async with self._session() as session:
            result = await session.execute(
                select(Document).where(
                    Document.id.in_(ids),
                    Document.organization_id == _uuid(organization_id),
                )
            )
            return [document_to_record(row) for row in result.scalars().all()]

    async def find_document_by_key(self, organization_id: str, s3_key: str) -> DocumentRecord | None:
        org = _maybe_uuid(organization_id)
        if org is None:
            return None
        async with self._session() as session:
            result = await session.execute(
                select(Document).where(
                    Document.organization_id == org,
                    Document.s3_key == s3_key,
                )
            )
            row = result.scalars().first()
            return document_to_record(row) if row is not None else None

    async def update_document(self, document_id: str, **fields: Any) -> None:
        values = {_DOCUMENT_FIELDS.get(key, key): _enum_value(value) for key, value in fields.items()}
        async with self._session() as session:
            await session.execute(
                update(Document).where(Document.id == _uuid(document_id)).values(**values)
            )

    async def set_document_metadata(
        self,
        document_id: str,
        namespace:   str,
        value:       dict[str, Any],
    ) -> None:
        # jsonb_set replaces one top-level key in a single statement
        async with self._session() as session:
            await session.execute(
                update(Document)
                .where(Document.id == _uuid(document_id))
                .values(
                    doc_metadata=func.jsonb_set(
                        func.coalesce(Document.doc_metadata, cast({}, JSONB)),
                        cast(array([namespace]), ARRAY(Text)),
                        bindparam("namespace_value", value, type_=JSONB),
                        True,
                    )
                )
            )

    async def create_document(self, **fields: Any) -> DocumentRecord:
        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key in _UUID_FIELDS:
                value = _maybe_uuid(value)
            values[_DOCUMENT_FIELDS.get(key, key)] = _enum_value(value)

        async with self._session() as session:
            row = Document(id=uuid.uuid4(), **values)
            session.add(row)
            await session.flush()
            await session.refresh(row)
            logger.info("Document created | doc=%s org=%s name=%s", row.id, row.organization_id, row.name)
            return document_to_record(row)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def record_audit_event(
        self,
        *,
        organization_id: str,
        action:          str,
        resource_id:     str,
        metadata:        dict[str, Any],
    ) -> None:
        async with self._session() as session:
            session.add(
                AuditLog(
                    organization_id=_maybe_uuid(organization_id),
                    action=action,
                    resource_type="PROCESSING_JOB",
                    resource_id=resource_id,
                    doc_metadata=metadata,
                )
            )
