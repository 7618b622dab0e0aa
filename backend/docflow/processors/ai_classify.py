"""
AI Classification Processor

Reads the OCR text, asks the chat model for category / language / tags /
summary (and optionally named entities), and stores the answer under the
``aiClassification`` metadata namespace.
"""

from __future__ import annotations

import logging
from typing import Any

from docflow.pipeline.constants import DocumentProcessingStatus, JobType
from docflow.pipeline.interfaces import DocumentRecord, EventEmitter, JobStore, ObjectStore
from docflow.processing.classification import DocumentClassifier
from docflow.processors.base import BaseProcessor, JobContext, utcnow
from docflow.processors.embedding import MISSING_TEXT_MESSAGE
from docflow.schemas.processing import ClassifyOptions

logger = logging.getLogger(__name__)


class AiClassifyProcessor(BaseProcessor):

    job_types = (JobType.AI_CLASSIFY,)

    def __init__(
        self,
        store:        JobStore,
        object_store: ObjectStore,
        emitter:      EventEmitter | None = None,
        *,
        classifier:   DocumentClassifier,
    ) -> None:
        super().__init__(store, object_store, emitter)
        self._classifier = classifier

    async def execute(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        options: ClassifyOptions = self.parse_options(ClassifyOptions, ctx.options)
        await ctx.update_progress(10)

        if not document.extracted_text:
            raise ValueError(MISSING_TEXT_MESSAGE)
        await ctx.update_progress(20)

        if not self._classifier.is_available():
            logger.warning("Classification skipped, OpenAI API key not configured | doc=%s", document.id)
            return {"category": "Unknown", "confidence": 0, "tags": [], "skipped": True}

        classification = await self._classifier.classify(
            document.extracted_text, document.name, options.categories,
        )
        await ctx.update_progress(60)

        entities: dict[str, list[str]] | None = None
        if options.extract_entities:
            entities = await self._classifier.extract_entities(document.extracted_text)
            await ctx.update_progress(80)

        result = {**classification.to_dict(), "entities": entities}
        await self._store.set_document_metadata(
            document.id,
            "aiClassification",
            {
                **result,
                "classifiedAt": utcnow().isoformat(),
                "model":        self._classifier.model,
            },
        )
        await self._store.update_document(
            document.id,
            processing_status=DocumentProcessingStatus.COMPLETE.value,
        )
        await ctx.update_progress(90)

        logger.info(
            "Classification stored | doc=%s category=%s confidence=%.0f%%",
            document.id, classification.category, classification.confidence * 100,
        )
        return result
