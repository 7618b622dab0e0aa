"""
SQLAlchemy ORM Models — Documents, Processing Jobs & Audit Logs

2.x mapped classes for async use. Only the columns the processing pipeline
reads or writes are mapped; the rest of the document row (sharing, versions,
tags …) belongs to other services.

Schema: docflow (set via __table_args__)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from docflow.pipeline.constants import DocumentProcessingStatus, JobStatus, JobType

EMBEDDING_DIMENSIONS = 1536


def _in_clause(column: str, values) -> str:
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: docflow.documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One stored file. ``processing_status`` tracks the pipeline stage;
    ``metadata`` holds one sub-object per producer (ocr, pdf, aiClassification)
    and each producer replaces only its own key.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            _in_clause("processing_status", DocumentProcessingStatus),
            name="documents_processing_status_check",
        ),
        Index("idx_documents_organization_id", "organization_id"),
        Index("idx_documents_processing_status", "organization_id", "processing_status"),
        {"schema": "docflow"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    folder_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    name: Mapped[str]       = mapped_column(Text, nullable=False)
    mime_type: Mapped[str]  = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    s3_key: Mapped[str]     = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(Text, nullable=False, default="READY", server_default="READY")
    processing_status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=DocumentProcessingStatus.PENDING.value,
        server_default=DocumentProcessingStatus.PENDING.value,
    )

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    thumbnail_key: Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    content_vector: Mapped[Optional[list[float]]] = mapped_column(
        Vector(EMBEDDING_DIMENSIONS), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    jobs: Mapped[list["ProcessingJob"]] = relationship(back_populates="document")

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} org={self.organization_id} "
            f"processing={self.processing_status} name={self.name!r}>"
        )


# ---------------------------------------------------------------------------
# ProcessingJob model: docflow.processing_jobs
# ---------------------------------------------------------------------------

class ProcessingJob(Base):
    """
    Durable record of one queued unit of work. Its id is also the queue job
    id, so the queue ledger and this row always refer to the same job.
    """

    __tablename__ = "processing_jobs"
    __table_args__ = (
        CheckConstraint(_in_clause("job_type", JobType), name="processing_jobs_type_check"),
        CheckConstraint(_in_clause("status", JobStatus), name="processing_jobs_status_check"),
        Index("idx_processing_jobs_document", "document_id", "job_type", "status"),
        Index("idx_processing_jobs_status_completed", "status", "completed_at"),
        {"schema": "docflow"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("docflow.documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    job_type: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        server_default=JobStatus.PENDING.value,
    )
    priority: Mapped[int]     = mapped_column(Integer, nullable=False, default=0, server_default="0")
    attempts: Mapped[int]     = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")

    input_params: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict, server_default="{}")
    output_data: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_stack: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    started_at: Mapped[Optional[datetime]]   = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    document: Mapped[Document] = relationship(back_populates="jobs")

    def __repr__(self) -> str:
        return f"<ProcessingJob id={self.id} type={self.job_type} status={self.status}>"


# ---------------------------------------------------------------------------
# AuditLog model: docflow.audit_logs
# ---------------------------------------------------------------------------

class AuditLog(Base):
    """Append-only trail of pipeline outcomes (completed / failed / stalled)."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_organization_id", "organization_id"),
        Index("idx_audit_logs_created_at", "created_at"),
        {"schema": "docflow"},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    action: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="e.g. PROCESSING_COMPLETED, PROCESSING_FAILED, PROCESSING_STALLED",
    )
    resource_type: Mapped[str] = mapped_column(
        Text, nullable=False, default="PROCESSING_JOB", server_default="PROCESSING_JOB",
    )
    resource_id: Mapped[str] = mapped_column(Text, nullable=False)

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} action={self.action!r} resource={self.resource_id}>"
