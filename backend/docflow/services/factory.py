"""
Object graph assembly.

Every builder is cached per process: workers build the graph once on the
first task and reuse it (and its connection pools) on the worker's event
loop; API processes do the same on first use.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import redis

from docflow.core.config import settings
from docflow.pipeline.constants import ALL_QUEUE_NAMES, LEGACY_QUEUE_NAME
from docflow.pipeline.interfaces import EventEmitter, JobStore, ObjectStore
from docflow.processing.classification import DocumentClassifier
from docflow.processing.embeddings import EmbeddingService
from docflow.processing.textract import LocalTextExtractor, TextractService
from docflow.processors.ai_classify import AiClassifyProcessor
from docflow.processors.embedding import EmbeddingProcessor
from docflow.processors.ocr import OcrProcessor
from docflow.processors.pdf import PdfProcessor
from docflow.processors.registry import ProcessorRegistry
from docflow.processors.thumbnail import ThumbnailProcessor
from docflow.queueing.celery_backend import QUEUE_TASK_NAMES, CeleryQueueBackend
from docflow.queueing.ledger import RedisJobLedger
from docflow.queueing.registry import QueueRegistry
from docflow.services.events import ProcessingEventHandler
from docflow.services.processing import ProcessingService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def build_job_store() -> JobStore:
    from docflow.db.store import SqlAlchemyJobStore
    return SqlAlchemyJobStore()


@lru_cache(maxsize=1)
def build_object_store() -> ObjectStore:
    from docflow.storage.s3 import S3ObjectStore
    return S3ObjectStore()


@lru_cache(maxsize=1)
def build_event_emitter() -> EventEmitter:
    from docflow.notifications.emitter import LoggingEventEmitter, RedisEventEmitter
    if not settings.realtime_events_enabled:
        return LoggingEventEmitter()
    return RedisEventEmitter.from_url(settings.redis_url, channel_prefix=settings.events_channel_prefix)


@lru_cache(maxsize=1)
def ledger_client() -> redis.Redis:
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )


def build_ledger(queue_name: str) -> RedisJobLedger:
    return RedisJobLedger(ledger_client(), queue_name, prefix=settings.queue_ledger_prefix)


# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def build_queue_backends() -> QueueRegistry:
    from docflow.workers.celery_app import celery_app

    queues = {
        name: CeleryQueueBackend(name, celery_app, build_ledger(name), QUEUE_TASK_NAMES[name])
        for name in ALL_QUEUE_NAMES
    }
    legacy = (
        CeleryQueueBackend(LEGACY_QUEUE_NAME, celery_app, build_ledger(LEGACY_QUEUE_NAME))
        if settings.legacy_queue_enabled
        else None
    )
    logger.info("Queue registry built | queues=%s legacy=%s", list(queues), legacy is not None)
    return QueueRegistry(queues=queues, legacy=legacy)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def build_processing_service() -> ProcessingService:
    return ProcessingService(
        store=build_job_store(),
        queues=build_queue_backends(),
        emitter=build_event_emitter(),
        default_attempts=settings.job_default_attempts,
    )


@lru_cache(maxsize=1)
def build_event_handler() -> ProcessingEventHandler:
    return ProcessingEventHandler(build_job_store(), build_processing_service())


@lru_cache(maxsize=1)
def build_embedding_service() -> EmbeddingService:
    return EmbeddingService(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        max_tokens=settings.embedding_max_tokens,
        batch_size=settings.embedding_batch_size,
    )


@lru_cache(maxsize=1)
def build_processor_registry() -> ProcessorRegistry:
    store = build_job_store()
    objects = build_object_store()
    emitter = build_event_emitter()
    embeddings = build_embedding_service()

    textract = TextractService(
        bucket=settings.s3_bucket,
        region=settings.aws_region,
        sns_topic_arn=settings.textract_sns_topic_arn,
        role_arn=settings.textract_role_arn,
    )
    classifier = DocumentClassifier(
        api_key=settings.openai_api_key,
        model=settings.classify_model,
        temperature=settings.classify_temperature,
        max_response_tokens=settings.classify_max_response_tokens,
        max_text_length=settings.classify_max_text_length,
    )

    return ProcessorRegistry([
        OcrProcessor(
            store, objects, emitter,
            textract=textract,
            local_extractor=LocalTextExtractor(),
            embeddings=embeddings,
            textract_enabled=settings.textract_enabled,
        ),
        ThumbnailProcessor(store, objects, emitter),
        PdfProcessor(store, objects, emitter),
        EmbeddingProcessor(store, objects, emitter, embeddings=embeddings),
        AiClassifyProcessor(store, objects, emitter, classifier=classifier),
    ])
