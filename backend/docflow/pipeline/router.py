"""
Job Router — job type → (queue, kind label, default priority).

Pure lookup table. An unknown job type is a programming error and raises
QueueConfigurationError immediately instead of being retried.
"""

from __future__ import annotations

from dataclasses import dataclass

from docflow.core.exceptions import QueueConfigurationError
from docflow.pipeline.constants import JobKind, JobPriority, JobType, QueueName


@dataclass(frozen=True)
class JobRoute:
    queue_name: str
    kind:       str
    priority:   int


_ROUTES: dict[JobType, JobRoute] = {
    JobType.OCR: JobRoute(
        QueueName.OCR.value, JobKind.OCR_DOCUMENT.value, JobPriority.NORMAL.value,
    ),
    JobType.THUMBNAIL: JobRoute(
        QueueName.THUMBNAIL.value, JobKind.GENERATE_THUMBNAIL.value, JobPriority.HIGH.value,
    ),
    JobType.EMBEDDING: JobRoute(
        QueueName.EMBEDDING.value, JobKind.GENERATE_EMBEDDING.value, JobPriority.LOW.value,
    ),
    JobType.AI_CLASSIFY: JobRoute(
        QueueName.AI_CLASSIFY.value, JobKind.CLASSIFY_DOCUMENT.value, JobPriority.NORMAL.value,
    ),
    JobType.PDF_SPLIT: JobRoute(
        QueueName.PDF.value, JobKind.PDF_SPLIT.value, JobPriority.LOW.value,
    ),
    JobType.PDF_MERGE: JobRoute(
        QueueName.PDF.value, JobKind.PDF_MERGE.value, JobPriority.LOW.value,
    ),
    JobType.PDF_WATERMARK: JobRoute(
        QueueName.PDF.value, JobKind.PDF_WATERMARK.value, JobPriority.LOW.value,
    ),
    JobType.PDF_COMPRESS: JobRoute(
        QueueName.PDF.value, JobKind.PDF_COMPRESS.value, JobPriority.LOW.value,
    ),
    JobType.PDF_EXTRACT_PAGES: JobRoute(
        QueueName.PDF.value, JobKind.PDF_EXTRACT_PAGES.value, JobPriority.LOW.value,
    ),
    JobType.PDF_RENDER_PAGE: JobRoute(
        QueueName.PDF.value, JobKind.PDF_RENDER_PAGE.value, JobPriority.NORMAL.value,
    ),
    JobType.PDF_METADATA: JobRoute(
        QueueName.PDF.value, JobKind.PDF_METADATA.value, JobPriority.NORMAL.value,
    ),
}


def resolve_route(job_type: JobType | str) -> JobRoute:
    """Return the routing entry for a job type, or raise QueueConfigurationError."""
    try:
        return _ROUTES[JobType(job_type)]
    except (ValueError, KeyError) as exc:
        raise QueueConfigurationError(
            f"No queue configured for job type: {job_type!r}"
        ) from exc


def job_type_for_kind(kind: str) -> JobType:
    """Reverse lookup used by workers that only see the queue-native job name."""
    for job_type, route in _ROUTES.items():
        if route.kind == kind:
            return job_type
    raise QueueConfigurationError(f"No job type registered for kind: {kind!r}")


def kinds_for_queue(queue_name: str) -> list[str]:
    return [route.kind for route in _ROUTES.values() if route.queue_name == queue_name]
