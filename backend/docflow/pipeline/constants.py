"""
Pipeline Constants — Job Types, Queues, Priorities
═══════════════════════════════════════════════════

Queue topology:
  ocr-queue          OCR / text extraction        (Textract, rate limited)
  pdf-queue          every PDF sub-operation       (CPU bound, in-process)
  thumbnail-queue    preview images                (user facing, high priority)
  embedding-queue    document-level vectors        (OpenAI, rate limited)
  ai-classify-queue  category / tags / summary     (OpenAI, rate limited)
  document-processing  legacy single queue — read-only fallback for status/cancel

Priority scale: lower number = more urgent (1 … 5).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


# ---------------------------------------------------------------------------
# Enumerations persisted in the job store
# ---------------------------------------------------------------------------

class JobType(str, Enum):
    OCR               = "OCR"
    THUMBNAIL         = "THUMBNAIL"
    EMBEDDING         = "EMBEDDING"
    AI_CLASSIFY       = "AI_CLASSIFY"
    PDF_SPLIT         = "PDF_SPLIT"
    PDF_MERGE         = "PDF_MERGE"
    PDF_WATERMARK     = "PDF_WATERMARK"
    PDF_COMPRESS      = "PDF_COMPRESS"
    PDF_EXTRACT_PAGES = "PDF_EXTRACT_PAGES"
    PDF_RENDER_PAGE   = "PDF_RENDER_PAGE"
    PDF_METADATA      = "PDF_METADATA"


class JobStatus(str, Enum):
    PENDING   = "PENDING"
    RUNNING   = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED    = "FAILED"
    CANCELLED = "CANCELLED"
    STALLED   = "STALLED"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
ACTIVE_JOB_STATUSES   = (JobStatus.PENDING, JobStatus.RUNNING)


class DocumentProcessingStatus(str, Enum):
    """Pipeline stage recorded on the document row."""
    PENDING               = "PENDING"
    PROCESSING            = "PROCESSING"
    OCR_IN_PROGRESS       = "OCR_IN_PROGRESS"
    OCR_COMPLETE          = "OCR_COMPLETE"
    EMBEDDING_IN_PROGRESS = "EMBEDDING_IN_PROGRESS"
    COMPLETE              = "COMPLETE"
    READY                 = "READY"
    INDEXED               = "INDEXED"
    CLASSIFIED            = "CLASSIFIED"
    FAILED                = "FAILED"


class JobPriority(int, Enum):
    CRITICAL   = 1
    HIGH       = 2
    NORMAL     = 3
    LOW        = 4
    BACKGROUND = 5


# ---------------------------------------------------------------------------
# Queue names
# ---------------------------------------------------------------------------

class QueueName(str, Enum):
    OCR         = "ocr-queue"
    PDF         = "pdf-queue"
    THUMBNAIL   = "thumbnail-queue"
    EMBEDDING   = "embedding-queue"
    AI_CLASSIFY = "ai-classify-queue"


LEGACY_QUEUE_NAME = "document-processing"

ALL_QUEUE_NAMES: tuple[str, ...] = tuple(q.value for q in QueueName)


# ---------------------------------------------------------------------------
# Job kind labels (the queue-native job name)
# ---------------------------------------------------------------------------

class JobKind(str, Enum):
    OCR_DOCUMENT       = "ocr-document"
    GENERATE_THUMBNAIL = "generate-thumbnail"
    GENERATE_EMBEDDING = "generate-embedding"
    CLASSIFY_DOCUMENT  = "classify-document"
    PDF_SPLIT          = "pdf_split"
    PDF_MERGE          = "pdf_merge"
    PDF_WATERMARK      = "pdf_watermark"
    PDF_COMPRESS       = "pdf_compress"
    PDF_EXTRACT_PAGES  = "pdf_extract_pages"
    PDF_RENDER_PAGE    = "pdf_render_page"
    PDF_METADATA       = "pdf_metadata"


# ---------------------------------------------------------------------------
# Retry / retention defaults
# ---------------------------------------------------------------------------

DEFAULT_JOB_ATTEMPTS   = 3
DEFAULT_BACKOFF_BASE_MS = 2000
DEFAULT_RATE_LIMIT_RETRY_MS = 60_000

DAY_MS = 24 * 60 * 60 * 1000

# Queue-ledger retention for finished entries
REMOVE_ON_COMPLETE_AGE_MS = 7 * DAY_MS
REMOVE_ON_COMPLETE_COUNT  = 10_000
REMOVE_ON_FAIL_AGE_MS     = 30 * DAY_MS
REMOVE_ON_FAIL_COUNT      = 5_000


# ---------------------------------------------------------------------------
# Per-queue worker settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueueWorkerConfig:
    """
    concurrency : worker pool size to launch for the queue (-c flag)
    rate_limit  : Celery task rate limit string, None = unlimited
    """
    concurrency: int
    rate_limit:  str | None = None


QUEUE_WORKER_CONFIGS: dict[str, QueueWorkerConfig] = {
    QueueName.OCR.value:         QueueWorkerConfig(concurrency=2,  rate_limit="10/m"),
    QueueName.EMBEDDING.value:   QueueWorkerConfig(concurrency=3,  rate_limit="60/m"),
    QueueName.AI_CLASSIFY.value: QueueWorkerConfig(concurrency=2,  rate_limit="20/m"),
    QueueName.THUMBNAIL.value:   QueueWorkerConfig(concurrency=10),
    QueueName.PDF.value:         QueueWorkerConfig(concurrency=5),
}
