"""
PDF Processor
═════════════

One processor for every PDF sub-operation, dispatched on the job kind:

  pdf_split          → N new documents          pdf_merge     → 1 new document
  pdf_watermark      → 1 new document           pdf_compress  → 1 new document
  pdf_extract_pages  → 1 new document
  pdf_render_page    → image under {org}/thumbnails/… + presigned URL
  pdf_metadata       → metadata.pdf on the source document

New documents are uploaded to ``{org}/{job_id}/{filename}`` and created READY /
COMPLETE, owned by the source document's creator, with provenance recorded in
their metadata (sourceJobId, sourceDocumentId, pageRange, mergedFrom, …).
Keys are per job, so a retried job overwrites its objects and reuses the
documents an earlier attempt already created.

The source document's processing stage is left alone: these operations
produce new artefacts rather than advancing the source through the pipeline.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable

from docflow.core.exceptions import QueueConfigurationError
from docflow.pipeline.constants import JobKind, JobType
from docflow.pipeline.interfaces import DocumentRecord
from docflow.processing import pdf_tools
from docflow.processing.pdf_tools import PdfPart, run_blocking
from docflow.processors.base import BaseProcessor, JobContext
from docflow.schemas.processing import (
    CompressOptions,
    ExtractPagesOptions,
    MergeOptions,
    RenderPageOptions,
    SplitOptions,
    SplitType,
    WatermarkOptions,
)

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"

Handler = Callable[[JobContext, DocumentRecord], Awaitable[dict[str, Any]]]


def output_key(organization_id: str, job_id: str, filename: str) -> str:
    """Keyed by job so a retried job overwrites its own outputs."""
    return f"{organization_id}/{job_id}/{filename}"


class PdfProcessor(BaseProcessor):

    job_types = (
        JobType.PDF_SPLIT,
        JobType.PDF_MERGE,
        JobType.PDF_WATERMARK,
        JobType.PDF_COMPRESS,
        JobType.PDF_EXTRACT_PAGES,
        JobType.PDF_RENDER_PAGE,
        JobType.PDF_METADATA,
    )
    running_document_status = None

    def _handler_for(self, kind: str) -> Handler:
        handlers: dict[str, Handler] = {
            JobKind.PDF_SPLIT.value:         self._split,
            JobKind.PDF_MERGE.value:         self._merge,
            JobKind.PDF_WATERMARK.value:     self._watermark,
            JobKind.PDF_COMPRESS.value:      self._compress,
            JobKind.PDF_EXTRACT_PAGES.value: self._extract_pages,
            JobKind.PDF_RENDER_PAGE.value:   self._render_page,
            JobKind.PDF_METADATA.value:      self._metadata,
        }
        try:
            return handlers[kind]
        except KeyError:
            raise QueueConfigurationError(f"Unsupported PDF job kind: {kind!r}") from None

    async def execute(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        handler = self._handler_for(ctx.kind)
        pdf_tools.ensure_size_limit(document.size_bytes)
        logger.info("PDF operation | kind=%s job=%s doc=%s", ctx.kind, ctx.job_id, document.id)
        return await handler(ctx, document)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _store_output(
        self,
        ctx:       JobContext,
        source:    DocumentRecord,
        filename:  str,
        data:      bytes,
        metadata:  dict[str, Any],
        folder_id: str | None = None,
    ) -> DocumentRecord:
        key = output_key(ctx.organization_id, ctx.job_id, filename)
        await self._objects.upload_buffer(key, data, PDF_MIME_TYPE)
        metadata = {**metadata, "sourceJobId": ctx.job_id}

        existing = await self._store.find_document_by_key(ctx.organization_id, key)
        if existing is not None:
            logger.info("Reusing output document from earlier attempt | job=%s doc=%s", ctx.job_id, existing.id)
            await self._store.update_document(existing.id, size_bytes=len(data), metadata=metadata)
            return existing

        return await self._store.create_document(
            organization_id=ctx.organization_id,
            name=filename,
            mime_type=PDF_MIME_TYPE,
            size_bytes=len(data),
            s3_key=key,
            status="READY",
            processing_status="COMPLETE",
            created_by_id=source.created_by_id,
            folder_id=folder_id,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def _split(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        options: SplitOptions = self.parse_options(SplitOptions, ctx.options)
        await ctx.update_progress(5)

        data = await self.fetch_object(ctx.s3_key)
        await ctx.update_progress(20)

        parts: list[PdfPart]
        if options.type is SplitType.PAGES:
            parts = await run_blocking(pdf_tools.split_by_ranges, data, options.ranges)
        elif options.type is SplitType.BOOKMARKS:
            parts = await run_blocking(pdf_tools.split_by_bookmarks, data)
        else:
            parts = await run_blocking(pdf_tools.split_every_n_pages, data, options.every_n_pages)
        source_total_pages = await run_blocking(pdf_tools.get_page_count, data)
        await ctx.update_progress(60)

        outputs: list[dict[str, Any]] = []
        for i, part in enumerate(parts):
            filename = f"{options.output_prefix}_{part.filename}"
            created = await self._store_output(
                ctx, document, filename, part.data,
                {
                    "sourceDocumentId": document.id,
                    "pageRange":        part.page_range,
                    "splitType":        options.type.value,
                },
            )
            outputs.append({
                "documentId": created.id,
                "s3Key":      created.s3_key,
                "filename":   filename,
                "pageRange":  part.page_range,
                "pageCount":  part.page_count,
                "sizeBytes":  len(part.data),
            })
            await ctx.update_progress(60 + round((i + 1) / len(parts) * 35))

        logger.info("PDF split complete | doc=%s parts=%d", document.id, len(outputs))
        return {
            "outputDocuments":  outputs,
            "totalSplits":      len(outputs),
            "sourceDocumentId": document.id,
            "sourceTotalPages": source_total_pages,
        }

    async def _merge(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        options: MergeOptions = self.parse_options(MergeOptions, ctx.options)
        await ctx.update_progress(5)

        found = await self._store.get_documents(options.document_ids, ctx.organization_id)
        by_id = {d.id: d for d in found if d.mime_type == PDF_MIME_TYPE}
        missing = [doc_id for doc_id in options.document_ids if doc_id not in by_id]
        if missing:
            raise ValueError(
                f"Invalid merge: documents not found or not PDFs: {', '.join(missing)}"
            )

        buffers: list[bytes] = []
        for i, doc_id in enumerate(options.document_ids):
            buffers.append(await self.fetch_object(by_id[doc_id].s3_key))
            await ctx.update_progress(5 + round((i + 1) / len(options.document_ids) * 40))

        merged, page_count = await run_blocking(pdf_tools.merge, buffers)
        await ctx.update_progress(80)

        first_source = by_id[options.document_ids[0]]
        created = await self._store_output(
            ctx, first_source, options.output_name, merged,
            {"mergedFrom": list(options.document_ids)},
            folder_id=options.folder_id,
        )
        await ctx.update_progress(90)

        logger.info("PDF merge complete | docs=%d pages=%d", len(buffers), page_count)
        return {
            "documentId":        created.id,
            "s3Key":             created.s3_key,
            "filename":          options.output_name,
            "pageCount":         page_count,
            "sizeBytes":         len(merged),
            "sourceDocumentIds": list(options.document_ids),
        }

    async def _watermark(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        options: WatermarkOptions = self.parse_options(WatermarkOptions, ctx.options)
        await ctx.update_progress(10)

        data = await self.fetch_object(ctx.s3_key)
        await ctx.update_progress(30)

        output, pages_watermarked = await run_blocking(pdf_tools.add_watermark, data, options)
        await ctx.update_progress(70)

        filename = f"watermarked_{document.name or 'document.pdf'}"
        created = await self._store_output(
            ctx, document, filename, output,
            {"sourceDocumentId": document.id, "watermarkText": options.text},
        )
        await ctx.update_progress(90)

        return {
            "documentId":       created.id,
            "s3Key":            created.s3_key,
            "pagesWatermarked": pages_watermarked,
            "watermarkText":    options.text,
            "sizeBytes":        len(output),
        }

    async def _compress(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        options: CompressOptions = self.parse_options(CompressOptions, ctx.options)
        await ctx.update_progress(10)

        data = await self.fetch_object(ctx.s3_key)
        await ctx.update_progress(30)

        output, original_size, compressed_size = await run_blocking(
            pdf_tools.compress, data, options,
        )
        await ctx.update_progress(70)

        filename = f"compressed_{document.name or 'document.pdf'}"
        created = await self._store_output(
            ctx, document, filename, output,
            {
                "sourceDocumentId":   document.id,
                "compressionQuality": options.quality.value,
                "originalSize":       original_size,
            },
        )
        await ctx.update_progress(90)

        ratio = 1 - compressed_size / original_size if original_size > 0 else 0.0
        logger.info(
            "PDF compress complete | doc=%s original=%d compressed=%d saved=%d%%",
            document.id, original_size, compressed_size, round(ratio * 100),
        )
        return {
            "documentId":          created.id,
            "s3Key":               created.s3_key,
            "originalSizeBytes":   original_size,
            "compressedSizeBytes": compressed_size,
            "compressionRatio":    ratio,
            "percentageSaved":     round(ratio * 100),
        }

    async def _extract_pages(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        options: ExtractPagesOptions = self.parse_options(ExtractPagesOptions, ctx.options)
        await ctx.update_progress(10)

        data = await self.fetch_object(ctx.s3_key)
        await ctx.update_progress(30)

        output, page_count = await run_blocking(pdf_tools.extract_pages, data, options.pages)
        await ctx.update_progress(70)

        filename = options.output_name or (
            f"extracted_pages_{'_'.join(str(p) for p in options.pages)}.pdf"
        )
        created = await self._store_output(
            ctx, document, filename, output,
            {"sourceDocumentId": document.id, "extractedPages": list(options.pages)},
        )
        await ctx.update_progress(90)

        return {
            "documentId":     created.id,
            "s3Key":          created.s3_key,
            "filename":       filename,
            "extractedPages": list(options.pages),
            "pageCount":      page_count,
            "sizeBytes":      len(output),
        }

    async def _render_page(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        options: RenderPageOptions = self.parse_options(RenderPageOptions, ctx.options)
        await ctx.update_progress(10)

        data = await self.fetch_object(ctx.s3_key)
        await ctx.update_progress(30)

        image = await run_blocking(
            pdf_tools.render_page,
            data,
            page=options.page,
            fmt=options.format,
            dpi=options.dpi,
            width=options.width,
            height=options.height,
            quality=options.quality,
        )
        await ctx.update_progress(70)

        base_name = re.sub(r"\.pdf$", "", document.name or "", flags=re.IGNORECASE) or "document"
        filename = f"{base_name}_page_{options.page}.{image.format}"
        key = f"{ctx.organization_id}/thumbnails/{ctx.job_id}/{filename}"
        await self._objects.upload_buffer(key, image.data, image.mime_type)
        await ctx.update_progress(90)

        download_url = await self._objects.get_presigned_download_url(key)

        return {
            "s3Key":       key,
            "pageNumber":  options.page,
            "width":       image.width,
            "height":      image.height,
            "format":      image.format,
            "sizeBytes":   len(image.data),
            "downloadUrl": download_url,
        }

    async def _metadata(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        await ctx.update_progress(10)
        data = await self.fetch_object(ctx.s3_key)
        await ctx.update_progress(40)

        metadata = await run_blocking(pdf_tools.get_metadata, data)
        await ctx.update_progress(80)

        await self._store.set_document_metadata(document.id, "pdf", metadata)
        logger.info("PDF metadata extracted | doc=%s pages=%d", document.id, metadata["pageCount"])
        return {"metadata": metadata}
