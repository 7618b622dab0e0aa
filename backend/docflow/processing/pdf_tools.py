"""
PDF Toolkit  —  PyMuPDF (fitz) operations on in-memory documents
══════════════════════════════════════════════════════════════════

Pure, synchronous functions: bytes in, bytes (plus stats) out. Processors run
them through ``run_blocking`` so the worker's event loop is never blocked by
CPU-bound rendering or re-serialization.

Operations:
  split_by_ranges / split_by_bookmarks / split_every_n_pages
  merge · extract_pages · add_watermark · compress
  render_page · render_thumbnail · get_metadata

Validation errors are raised as ValueError with "Invalid ..." messages so the
error classifier treats them as PERMANENT.

Thread-safety: every call opens its own fitz.Document; nothing is shared.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Sequence, TypeVar

from docflow.schemas.processing import (
    CompressionQuality,
    CompressOptions,
    WatermarkOptions,
    WatermarkPosition,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

MAX_PDF_SIZE_BYTES  = 100 * 1024 * 1024
MAX_SPLIT_PAGES     = 1000
MAX_MERGE_DOCUMENTS = 50

THUMBNAIL_SIZES: dict[str, int] = {
    "small":  100,
    "medium": 300,
    "large":  600,
}

WATERMARK_MARGIN = 50
DIAGONAL_DEFAULT_ROTATION = 45
SUBSAMPLE_MAX_SIDE_PX = 1200

# quality → (garbage level, clean content streams, subsample images by default)
_COMPRESSION_PROFILES: dict[CompressionQuality, tuple[int, bool, bool]] = {
    CompressionQuality.LOW:    (4, True,  True),
    CompressionQuality.MEDIUM: (3, True,  False),
    CompressionQuality.HIGH:   (1, False, False),
}

_IMAGE_MIME_FILETYPES: dict[str, str] = {
    "image/png":  "png",
    "image/jpeg": "jpeg",
    "image/jpg":  "jpeg",
    "image/tiff": "tiff",
    "image/gif":  "gif",
    "image/bmp":  "bmp",
    "image/webp": "webp",
}


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class PdfPart:
    data:       bytes
    filename:   str
    page_range: str
    page_count: int


@dataclass
class RenderedImage:
    data:   bytes
    width:  int
    height: int
    format: str

    @property
    def mime_type(self) -> str:
        return "image/jpeg" if self.format == "jpeg" else f"image/{self.format}"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def run_blocking(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a CPU-bound toolkit call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


def ensure_size_limit(size_bytes: int, limit: int = MAX_PDF_SIZE_BYTES) -> None:
    if size_bytes > limit:
        raise ValueError(
            f"Invalid PDF: file too large ({size_bytes} bytes, limit {limit} bytes)"
        )


def _open_pdf(data: bytes):
    import fitz  # PyMuPDF

    ensure_size_limit(len(data))
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as exc:
        raise ValueError(f"Invalid PDF document: {exc}") from exc
    if doc.page_count == 0:
        doc.close()
        raise ValueError("Invalid PDF document: no pages")
    return doc


def _copy_pages(source, indices: Sequence[int], title: str | None = None) -> bytes:
    import fitz

    with fitz.open() as out:
        for index in indices:
            out.insert_pdf(source, from_page=index, to_page=index)
        if title:
            out.set_metadata({"title": title})
        return out.tobytes(garbage=3, deflate=True)


def _check_split_size(total_pages: int) -> None:
    if total_pages > MAX_SPLIT_PAGES:
        raise ValueError(
            f"Invalid split: document has {total_pages} pages (limit {MAX_SPLIT_PAGES})"
        )


def parse_page_ranges(range_string: str, total_pages: int) -> list[int]:
    """
    "1-3,5,7-10" → [0, 1, 2, 4, 6, 7, 8, 9]  (0-based, sorted, unique)
    """
    pages: set[int] = set()
    for part in (p.strip() for p in range_string.split(",")):
        if not part:
            continue
        if "-" in part:
            start_s, _, end_s = part.partition("-")
            try:
                start, end = int(start_s.strip()), int(end_s.strip())
            except ValueError:
                raise ValueError(f"Invalid page range: {part}") from None
            if start < 1 or end > total_pages or start > end:
                raise ValueError(
                    f"Invalid page range {part}: out of bounds "
                    f"(document has {total_pages} pages)"
                )
            pages.update(range(start - 1, end))
        else:
            try:
                page = int(part)
            except ValueError:
                raise ValueError(f"Invalid page number: {part}") from None
            if page < 1 or page > total_pages:
                raise ValueError(
                    f"Invalid page {page}: out of bounds (document has {total_pages} pages)"
                )
            pages.add(page - 1)
    return sorted(pages)


def _safe_filename(title: str, fallback: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9\s-]", "", title)
    cleaned = re.sub(r"\s+", "_", cleaned).strip("_")[:50]
    return cleaned or fallback


# ---------------------------------------------------------------------------
# Split
# ---------------------------------------------------------------------------

def get_page_count(data: bytes) -> int:
    with _open_pdf(data) as doc:
        return doc.page_count


def split_by_ranges(data: bytes, ranges: Sequence[str]) -> list[PdfPart]:
    parts: list[PdfPart] = []
    with _open_pdf(data) as doc:
        _check_split_size(doc.page_count)
        for i, range_string in enumerate(ranges):
            indices = parse_page_ranges(range_string, doc.page_count)
            if not indices:
                logger.warning("Split range produced no pages | range=%s", range_string)
                continue
            parts.append(PdfPart(
                data=_copy_pages(doc, indices),
                filename=f"split_{i + 1}_pages_{range_string.replace(',', '_')}.pdf",
                page_range=range_string,
                page_count=len(indices),
            ))
    logger.info("PDF split by ranges | parts=%d", len(parts))
    return parts


def split_by_bookmarks(data: bytes) -> list[PdfPart]:
    """One part per top-level outline entry, ending where the next one starts."""
    parts: list[PdfPart] = []
    with _open_pdf(data) as doc:
        _check_split_size(doc.page_count)
        total = doc.page_count
        top_level = [(title, page) for level, title, page, *_ in doc.get_toc() if level == 1]
        if not top_level:
            raise ValueError("Invalid split: PDF has no bookmarks/outline to split by")

        for i, (title, page) in enumerate(top_level):
            start = max(page - 1, 0)
            if i + 1 < len(top_level) and top_level[i + 1][1] > 0:
                end = top_level[i + 1][1] - 2
            else:
                end = total - 1
            if start > end or start >= total:
                continue
            indices = list(range(start, end + 1))
            parts.append(PdfPart(
                data=_copy_pages(doc, indices, title=title),
                filename=f"{_safe_filename(title, f'chapter_{i + 1}')}.pdf",
                page_range=f"{start + 1}-{end + 1}",
                page_count=len(indices),
            ))
    logger.info("PDF split by bookmarks | parts=%d", len(parts))
    return parts


def split_every_n_pages(data: bytes, every_n_pages: int) -> list[PdfPart]:
    if every_n_pages < 1:
        raise ValueError("Invalid split: every_n_pages must be at least 1")

    parts: list[PdfPart] = []
    with _open_pdf(data) as doc:
        _check_split_size(doc.page_count)
        total = doc.page_count
        for start in range(0, total, every_n_pages):
            end = min(start + every_n_pages, total) - 1
            indices = list(range(start, end + 1))
            parts.append(PdfPart(
                data=_copy_pages(doc, indices),
                filename=f"part_{start // every_n_pages + 1}.pdf",
                page_range=f"{start + 1}-{end + 1}",
                page_count=len(indices),
            ))
    logger.info("PDF split every %d pages | parts=%d", every_n_pages, len(parts))
    return parts


# ---------------------------------------------------------------------------
# Merge / extract
# ---------------------------------------------------------------------------

def merge(buffers: Sequence[bytes]) -> tuple[bytes, int]:
    import fitz

    if not buffers:
        raise ValueError("Invalid merge: no PDF documents provided")
    if len(buffers) > MAX_MERGE_DOCUMENTS:
        raise ValueError(
            f"Invalid merge: {len(buffers)} documents (limit {MAX_MERGE_DOCUMENTS})"
        )

    with fitz.open() as merged:
        for i, data in enumerate(buffers):
            try:
                source = _open_pdf(data)
            except ValueError as exc:
                raise ValueError(f"Invalid PDF document {i + 1} in merge: {exc}") from exc
            with source:
                merged.insert_pdf(source)
        page_count = merged.page_count
        output = merged.tobytes(garbage=3, deflate=True)

    logger.info("PDF merge | documents=%d pages=%d", len(buffers), page_count)
    return output, page_count


def extract_pages(data: bytes, pages: Sequence[int]) -> tuple[bytes, int]:
    """Copy the 1-based ``pages`` (in the given order) into a new PDF."""
    with _open_pdf(data) as doc:
        total = doc.page_count
        indices: list[int] = []
        for page in pages:
            if page < 1 or page > total:
                raise ValueError(
                    f"Invalid page {page}: out of bounds (document has {total} pages)"
                )
            indices.append(page - 1)
        return _copy_pages(doc, indices), len(indices)


# ---------------------------------------------------------------------------
# Watermark
# ---------------------------------------------------------------------------

def _watermark_origin(
    position:   WatermarkPosition,
    page_w:     float,
    page_h:     float,
    text_w:     float,
    font_size:  float,
) -> tuple[float, float]:
    """Baseline-left origin in fitz coordinates (y grows downwards)."""
    left   = WATERMARK_MARGIN
    right  = page_w - text_w - WATERMARK_MARGIN
    top    = WATERMARK_MARGIN + font_size
    bottom = page_h - WATERMARK_MARGIN
    if position is WatermarkPosition.TOP_LEFT:
        return left, top
    if position is WatermarkPosition.TOP_RIGHT:
        return right, top
    if position is WatermarkPosition.BOTTOM_LEFT:
        return left, bottom
    if position is WatermarkPosition.BOTTOM_RIGHT:
        return right, bottom
    return page_w / 2 - text_w / 2, page_h / 2 + font_size / 2


def add_watermark(data: bytes, options: WatermarkOptions) -> tuple[bytes, int]:
    import fitz

    with _open_pdf(data) as doc:
        total = doc.page_count
        if options.all_pages or not options.pages:
            targets = list(range(total))
        else:
            targets = sorted({p - 1 for p in options.pages if 1 <= p <= total})

        rotation = options.rotation
        if options.position is WatermarkPosition.DIAGONAL and rotation == 0:
            rotation = DIAGONAL_DEFAULT_ROTATION

        color = (options.color.r, options.color.g, options.color.b)
        text_w = fitz.get_text_length(options.text, fontname="hebo", fontsize=options.font_size)

        for index in targets:
            page = doc[index]
            rect = page.rect
            x, y = _watermark_origin(options.position, rect.width, rect.height, text_w, options.font_size)
            origin = fitz.Point(x, y)
            morph = None
            if rotation:
                pivot = fitz.Point(x + text_w / 2, y - options.font_size / 2)
                morph = (pivot, fitz.Matrix(rotation))
            page.insert_text(
                origin,
                options.text,
                fontname="hebo",
                fontsize=options.font_size,
                color=color,
                fill_opacity=options.opacity,
                stroke_opacity=options.opacity,
                morph=morph,
                overlay=True,
            )

        output = doc.tobytes(garbage=3, deflate=True)

    logger.info("PDF watermark | pages=%d text_len=%d", len(targets), len(options.text))
    return output, len(targets)


# ---------------------------------------------------------------------------
# Compress
# ---------------------------------------------------------------------------

def _subsample_images(doc) -> int:
    """Halve embedded raster images until their longest side fits the cap."""
    import fitz

    replaced = 0
    seen: set[int] = set()
    for page in doc:
        for image in page.get_images(full=True):
            xref = image[0]
            if xref in seen:
                continue
            seen.add(xref)
            pix = fitz.Pixmap(doc, xref)
            if max(pix.width, pix.height) <= SUBSAMPLE_MAX_SIDE_PX:
                continue
            if pix.n - pix.alpha >= 4:
                pix = fitz.Pixmap(fitz.csRGB, pix)
            while max(pix.width, pix.height) > SUBSAMPLE_MAX_SIDE_PX:
                pix.shrink(1)
            page.replace_image(xref, pixmap=pix)
            replaced += 1
    return replaced


def compress(data: bytes, options: CompressOptions) -> tuple[bytes, int, int]:
    """Returns (output, original_size, compressed_size)."""
    garbage, clean, subsample_default = _COMPRESSION_PROFILES[options.quality]
    subsample = subsample_default if options.subsample_images is None else options.subsample_images

    with _open_pdf(data) as doc:
        images = _subsample_images(doc) if subsample else 0
        if options.remove_metadata:
            doc.set_metadata({})
            doc.del_xml_metadata()
        output = doc.tobytes(garbage=garbage, deflate=True, clean=clean)

    original, compressed = len(data), len(output)
    logger.info(
        "PDF compress | quality=%s original=%d compressed=%d images_subsampled=%d",
        options.quality.value, original, compressed, images,
    )
    return output, original, compressed


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_page(
    data:    bytes,
    page:    int = 1,
    fmt:     str = "png",
    dpi:     int = 150,
    width:   int | None = None,
    height:  int | None = None,
    quality: int = 85,
) -> RenderedImage:
    """
    Rasterize one 1-based page. ``width``/``height`` bound the output box and
    take precedence over ``dpi``. WebP is not an encoder PyMuPDF ships, so it
    falls back to PNG and the returned ``format`` says so.
    """
    import fitz

    with _open_pdf(data) as doc:
        if page < 1 or page > doc.page_count:
            raise ValueError(
                f"Invalid page {page}: out of bounds (document has {doc.page_count} pages)"
            )
        pdf_page = doc[page - 1]
        rect = pdf_page.rect

        zoom = dpi / 72
        bounds = [
            limit / extent
            for limit, extent in ((width, rect.width), (height, rect.height))
            if limit
        ]
        if bounds:
            zoom = min(bounds)

        pix = pdf_page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        if fmt == "jpeg":
            out, actual = pix.tobytes("jpeg", jpg_quality=quality), "jpeg"
        else:
            out, actual = pix.tobytes("png"), "png"

        if fmt == "webp":
            logger.info("WebP rendering unavailable, using PNG | page=%d", page)

        return RenderedImage(data=out, width=pix.width, height=pix.height, format=actual)


def render_thumbnail(data: bytes, mime_type: str, max_side: int) -> RenderedImage:
    """PNG of the first page scaled to fit a ``max_side`` square, never enlarged."""
    import fitz

    filetype = _IMAGE_MIME_FILETYPES.get(mime_type, "pdf")
    try:
        doc = fitz.open(stream=data, filetype=filetype)
    except (RuntimeError, ValueError) as exc:
        raise ValueError(f"Invalid document for thumbnail: {exc}") from exc

    with doc:
        if doc.page_count == 0:
            raise ValueError("Invalid document for thumbnail: no pages")
        first = doc[0]
        rect = first.rect
        zoom = min(max_side / rect.width, max_side / rect.height, 1.0)
        pix = first.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        return RenderedImage(
            data=pix.tobytes("png"), width=pix.width, height=pix.height, format="png",
        )


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

def get_metadata(data: bytes) -> dict[str, Any]:
    with _open_pdf(data) as doc:
        info = doc.metadata or {}
        first = doc[0].rect
        toc = doc.get_toc()
        return {
            "pageCount":        doc.page_count,
            "title":            info.get("title") or None,
            "author":           info.get("author") or None,
            "subject":          info.get("subject") or None,
            "keywords":         info.get("keywords") or None,
            "creator":          info.get("creator") or None,
            "producer":         info.get("producer") or None,
            "creationDate":     info.get("creationDate") or None,
            "modificationDate": info.get("modDate") or None,
            "pdfVersion":       (info.get("format") or "").replace("PDF ", "") or None,
            "isEncrypted":      bool(doc.is_encrypted),
            "hasFormFields":    bool(doc.is_form_pdf),
            "pageDimensions":   {"width": first.width, "height": first.height, "unit": "points"},
            "pageSizes": [
                {"page": p.number + 1, "width": p.rect.width, "height": p.rect.height}
                for p in doc
            ],
            "outline": [
                {"level": level, "title": title, "pageNumber": page}
                for level, title, page, *_ in toc
            ] or None,
        }
