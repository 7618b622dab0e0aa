"""
OCR Processor
═════════════

Sync vs async Textract:
  - images ≤ 5 MB           → AnalyzeDocument (one call)
  - PDFs, > 5 MB, forced    → StartDocumentAnalysis + bounded-backoff polling

Progress:
  5   started            10  validated
  20 / 70                sync call issued / returned
  15 / 20 → ≤ 70         async job started / id recorded / one step per poll
  80  parsed             85  saved
  95  inline embedding attempted

Results land in three places: ``documents.extracted_text``, the ``ocr``
namespace of the document metadata, and the job's output_data summary.

When Textract is disabled in settings, the PyMuPDF text layer is used instead
(local development only; no tables, forms or signatures).
"""

from __future__ import annotations

import logging
import time
from typing import Any

from docflow.core.config import settings
from docflow.observability.tracing import traced
from docflow.pipeline.constants import DocumentProcessingStatus, JobType
from docflow.pipeline.interfaces import DocumentRecord, EventEmitter, JobStore, ObjectStore
from docflow.processing.embeddings import EmbeddingService
from docflow.processing.textract import (
    LocalTextExtractor,
    OcrResult,
    TextractService,
    poll_for_completion,
    should_use_async,
    validate_document,
)
from docflow.processors.base import BaseProcessor, JobContext, utcnow
from docflow.schemas.processing import OcrOptions

logger = logging.getLogger(__name__)

OCR_METADATA_VERSION = "1.0"
POLL_PROGRESS_START  = 20
POLL_PROGRESS_STEP   = 5
POLL_PROGRESS_CAP    = 70


class OcrProcessor(BaseProcessor):

    job_types = (JobType.OCR,)
    running_document_status = DocumentProcessingStatus.OCR_IN_PROGRESS

    def __init__(
        self,
        store:        JobStore,
        object_store: ObjectStore,
        emitter:      EventEmitter | None = None,
        *,
        textract:         TextractService | None = None,
        local_extractor:  LocalTextExtractor | None = None,
        embeddings:       EmbeddingService | None = None,
        textract_enabled: bool | None = None,
    ) -> None:
        super().__init__(store, object_store, emitter)
        self._textract = textract
        self._local = local_extractor or LocalTextExtractor()
        self._embeddings = embeddings
        self._textract_enabled = (
            settings.textract_enabled if textract_enabled is None else textract_enabled
        )

    @traced("ocr.execute")
    async def execute(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        t0 = time.monotonic()
        await ctx.update_progress(5)

        options: OcrOptions = self.parse_options(OcrOptions, ctx.options)
        validate_document(document.mime_type, document.size_bytes)
        await ctx.update_progress(10)

        if self._textract_enabled and self._textract is not None:
            use_async = should_use_async(document.mime_type, document.size_bytes, options.force_async)
            if use_async:
                result = await self._process_async(ctx, options)
            else:
                result = await self._process_sync(ctx, options)
        else:
            use_async = False
            result = await self._process_local(ctx, document)
        await ctx.update_progress(80)

        processing_time_ms = int((time.monotonic() - t0) * 1000)
        await self._save_results(document, result, options, processing_time_ms)
        await ctx.update_progress(85)

        embedding_generated = await self._generate_inline_embedding(document, result, options)
        await ctx.update_progress(95)

        logger.info(
            "OCR complete | doc=%s words=%d tables=%d fields=%d async=%s ms=%d",
            document.id, result.word_count, len(result.tables),
            len(result.form_fields), use_async, processing_time_ms,
        )
        return {
            "extractedTextLength": result.character_count,
            "pageCount":           result.page_count,
            "tableCount":          len(result.tables),
            "formFieldCount":      len(result.form_fields),
            "confidence":          result.confidence,
            "processingTimeMs":    processing_time_ms,
            "usedAsyncProcessing": use_async,
            "embeddingGenerated":  embedding_generated,
        }

    # ------------------------------------------------------------------
    # Extraction paths
    # ------------------------------------------------------------------

    async def _process_sync(self, ctx: JobContext, options: OcrOptions) -> OcrResult:
        logger.debug("OCR sync path | job=%s key=%s", ctx.job_id, ctx.s3_key)
        await ctx.update_progress(20)
        result = await self._textract.analyze_document(ctx.s3_key, list(options.features))
        await ctx.update_progress(70)
        return result

    async def _process_async(self, ctx: JobContext, options: OcrOptions) -> OcrResult:
        logger.debug("OCR async path | job=%s key=%s", ctx.job_id, ctx.s3_key)
        await ctx.update_progress(15)

        text_only = not options.features
        textract_job_id = await self._textract.start_document_analysis(
            ctx.s3_key, list(options.features),
        )
        await ctx.update_progress(20)

        # polling must use the mode the job was started with
        await self._store.update_job(
            ctx.job_id,
            input_params={
                **ctx.options,
                "textractJobId": textract_job_id,
                "textractMode":  "text" if text_only else "analysis",
            },
        )

        async def _on_poll(poll_count: int) -> None:
            await ctx.update_progress(
                min(POLL_PROGRESS_START + poll_count * POLL_PROGRESS_STEP, POLL_PROGRESS_CAP)
            )

        return await poll_for_completion(
            self._textract,
            textract_job_id,
            on_poll=_on_poll,
            text_only=text_only,
            base_interval_ms=settings.textract_poll_interval_ms,
            max_interval_ms=settings.textract_max_poll_interval_ms,
            multiplier=settings.textract_poll_multiplier,
            max_wait_ms=settings.textract_max_wait_ms,
        )

    async def _process_local(self, ctx: JobContext, document: DocumentRecord) -> OcrResult:
        logger.debug("OCR local fallback | job=%s key=%s", ctx.job_id, ctx.s3_key)
        await ctx.update_progress(20)
        data = await self.fetch_object(ctx.s3_key)
        result = await self._local.extract(data, document.mime_type)
        await ctx.update_progress(70)
        return result

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _save_results(
        self,
        document:           DocumentRecord,
        result:             OcrResult,
        options:            OcrOptions,
        processing_time_ms: int,
    ) -> None:
        await self._store.set_document_metadata(
            document.id,
            "ocr",
            {
                "ocrProcessedAt":   utcnow().isoformat(),
                "ocrVersion":       OCR_METADATA_VERSION,
                "pageCount":        result.page_count,
                "wordCount":        result.word_count,
                "characterCount":   result.character_count,
                "confidence":       result.confidence,
                "tableCount":       len(result.tables),
                "formFieldCount":   len(result.form_fields),
                "signatureCount":   len(result.signatures),
                "processingTimeMs": processing_time_ms,
                "featureTypes":     list(options.features),
                "textractJobId":    result.textract_job_id,
                "tables":           [t.to_dict() for t in result.tables],
                "formFields":       [f.to_dict() for f in result.form_fields],
            },
        )
        await self._store.update_document(
            document.id,
            extracted_text=result.text,
            processing_status=DocumentProcessingStatus.OCR_COMPLETE.value,
        )

    async def _generate_inline_embedding(
        self,
        document: DocumentRecord,
        result:   OcrResult,
        options:  OcrOptions,
    ) -> bool:
        if not options.generate_embeddings or not result.text:
            return False
        if self._embeddings is None or not self._embeddings.is_available():
            return False
        try:
            outcome = await self._embeddings.generate_and_store(
                self._store, document.id, result.text, aggregate_chunks=True,
            )
        except Exception as exc:
            # OCR output is already saved; the chained EMBEDDING job covers this
            logger.warning("Inline embedding failed | doc=%s error=%s", document.id, exc)
            return False
        return outcome.stored
