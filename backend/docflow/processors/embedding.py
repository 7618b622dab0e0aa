"""
Embedding Processor — one vector per document from its extracted text.

Requires OCR output (``extracted_text``). Without an OpenAI key the job
completes as skipped so the pipeline keeps moving in keyless environments.
"""

from __future__ import annotations

import logging
from typing import Any

from docflow.pipeline.constants import DocumentProcessingStatus, JobType
from docflow.pipeline.interfaces import DocumentRecord, EventEmitter, JobStore, ObjectStore
from docflow.processing.embeddings import EmbeddingService
from docflow.processors.base import BaseProcessor, JobContext
from docflow.schemas.processing import EmbeddingOptions

logger = logging.getLogger(__name__)

MISSING_TEXT_MESSAGE = "Extracted text not found for document; run OCR first"


class EmbeddingProcessor(BaseProcessor):

    job_types = (JobType.EMBEDDING,)
    running_document_status = DocumentProcessingStatus.EMBEDDING_IN_PROGRESS

    def __init__(
        self,
        store:        JobStore,
        object_store: ObjectStore,
        emitter:      EventEmitter | None = None,
        *,
        embeddings:   EmbeddingService,
    ) -> None:
        super().__init__(store, object_store, emitter)
        self._embeddings = embeddings

    async def execute(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        options: EmbeddingOptions = self.parse_options(EmbeddingOptions, ctx.options)
        await ctx.update_progress(10)

        if not document.extracted_text:
            raise ValueError(MISSING_TEXT_MESSAGE)
        await ctx.update_progress(30)

        if not self._embeddings.is_available():
            logger.warning("Embedding skipped, OpenAI API key not configured | doc=%s", document.id)
            return {"skipped": True, "reason": "OpenAI API key not configured"}
        await ctx.update_progress(50)

        outcome = await self._embeddings.generate_and_store(
            self._store,
            document.id,
            document.extracted_text,
            aggregate_chunks=options.aggregate_chunks,
            model=options.model,
        )
        await ctx.update_progress(90)

        await self._store.update_document(
            document.id,
            processing_status=DocumentProcessingStatus.COMPLETE.value,
        )

        logger.info(
            "Embedding stored | doc=%s dims=%d chunks=%d stored=%s",
            document.id, outcome.dimensions, outcome.chunks_processed, outcome.stored,
        )
        return outcome.to_output()
