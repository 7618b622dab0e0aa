"""
Thumbnail Processor — first page (or the image itself) as a PNG preview.

Sizes are square bounding boxes (small 100, medium 300, large 600); the aspect
ratio is kept and images are never enlarged. Uploaded to
``{org}/thumbnails/{document_id}_{size}.png``.
"""

from __future__ import annotations

import logging
from typing import Any

from docflow.pipeline.constants import JobType
from docflow.pipeline.interfaces import DocumentRecord
from docflow.processing.pdf_tools import THUMBNAIL_SIZES, render_thumbnail, run_blocking
from docflow.processors.base import BaseProcessor, JobContext
from docflow.schemas.processing import ThumbnailOptions

logger = logging.getLogger(__name__)


def thumbnail_key(organization_id: str, document_id: str, size: str) -> str:
    return f"{organization_id}/thumbnails/{document_id}_{size}.png"


class ThumbnailProcessor(BaseProcessor):

    job_types = (JobType.THUMBNAIL,)
    # previews run alongside OCR; the document stage belongs to the OCR chain
    running_document_status = None

    async def execute(self, ctx: JobContext, document: DocumentRecord) -> dict[str, Any]:
        options: ThumbnailOptions = self.parse_options(ThumbnailOptions, ctx.options)
        await ctx.update_progress(10)

        data = await self.fetch_object(ctx.s3_key)
        await ctx.update_progress(40)

        image = await run_blocking(
            render_thumbnail, data, document.mime_type, THUMBNAIL_SIZES[options.size],
        )
        await ctx.update_progress(70)

        key = thumbnail_key(ctx.organization_id, document.id, options.size)
        await self._objects.upload_buffer(key, image.data, "image/png")
        await ctx.update_progress(90)

        await self._store.update_document(document.id, thumbnail_key=key)

        logger.info(
            "Thumbnail generated | doc=%s size=%s dims=%dx%d",
            document.id, options.size, image.width, image.height,
        )
        return {
            "thumbnailKey": key,
            "size":         options.size,
            "width":        image.width,
            "height":       image.height,
        }
