"""
OCR Extraction  —  AWS Textract + Local Text-Layer Fallback
════════════════════════════════════════════════════════════

Two extraction paths behind the same OcrResult dataclass:

  TextractService
    - analyze_document        synchronous, single call (images ≤ 5 MB)
    - start_document_analysis asynchronous job for PDFs / large files
    - get_document_analysis   None while IN_PROGRESS, raises on FAILED,
                              follows NextToken pagination on SUCCEEDED
    - parse_blocks            LINE / WORD / TABLE / CELL / KEY_VALUE_SET /
                              SELECTION_ELEMENT / SIGNATURE → OcrResult

  LocalTextExtractor
    - PyMuPDF text layer only (no tables, forms or signatures)
    - used when Textract is disabled (local dev without AWS credentials)

The boto3 client is synchronous; every call runs in the default executor so
the worker's event loop keeps servicing progress and heartbeat coroutines.

IAM permissions required on the worker role:
  textract:AnalyzeDocument
  textract:DetectDocumentText
  textract:StartDocumentAnalysis / GetDocumentAnalysis
  textract:StartDocumentTextDetection / GetDocumentTextDetection
  s3:GetObject on the documents bucket
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

SUPPORTED_OCR_MIME_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "image/png",
        "image/jpeg",
        "image/jpg",
        "image/tiff",
    }
)

MAX_SYNC_SIZE_BYTES  = 5 * 1024 * 1024      # Textract synchronous API ceiling
MAX_ASYNC_SIZE_BYTES = 500 * 1024 * 1024    # Textract asynchronous API ceiling

# Lines whose top edges differ by less than this are treated as one visual row
LINE_TOP_TOLERANCE = 0.01


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class OcrTable:
    page:         int
    row_count:    int
    column_count: int
    rows:         list[list[str]]
    headers:      list[str]
    confidence:   float

    def to_dict(self) -> dict[str, Any]:
        return {
            "page":        self.page,
            "rowCount":    self.row_count,
            "columnCount": self.column_count,
            "headers":     self.headers,
            "rows":        self.rows,
            "confidence":  self.confidence,
        }


@dataclass
class OcrFormField:
    key:        str
    value:      str
    page:       int
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "key":        self.key,
            "value":      self.value,
            "page":       self.page,
            "confidence": self.confidence,
        }


@dataclass
class OcrSignature:
    page:         int
    confidence:   float
    bounding_box: dict[str, float] = field(default_factory=dict)


@dataclass
class OcrPage:
    page_number: int
    line_count:  int
    word_count:  int


@dataclass
class OcrResult:
    """
    text            : full text, lines in reading order, pages separated by a blank line
    confidence      : mean WORD confidence on Textract's 0–100 scale
    textract_job_id : set on the asynchronous path only
    """
    text:            str
    tables:          list[OcrTable] = field(default_factory=list)
    form_fields:     list[OcrFormField] = field(default_factory=list)
    signatures:      list[OcrSignature] = field(default_factory=list)
    pages:           list[OcrPage] = field(default_factory=list)
    word_count:      int = 0
    confidence:      float = 0.0
    textract_job_id: str | None = None

    @property
    def page_count(self) -> int:
        return max(len(self.pages), 1 if self.text else 0)

    @property
    def character_count(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def is_supported_ocr_mime_type(mime_type: str) -> bool:
    return mime_type.lower() in SUPPORTED_OCR_MIME_TYPES


def validate_document(mime_type: str, size_bytes: int) -> None:
    """Raise ValueError for inputs Textract will never accept (PERMANENT failures)."""
    if not is_supported_ocr_mime_type(mime_type):
        raise ValueError(
            f"Unsupported file type for OCR: {mime_type}. "
            f"Supported types: PDF, JPEG, PNG, TIFF"
        )
    if size_bytes > MAX_ASYNC_SIZE_BYTES:
        raise ValueError(
            f"Invalid document: file too large for OCR "
            f"({size_bytes / 1024 / 1024:.2f}MB, maximum 500MB)"
        )


def should_use_async(mime_type: str, size_bytes: int, force_async: bool = False) -> bool:
    """PDFs may be multi-page and anything over 5 MB exceeds the sync API."""
    if force_async:
        return True
    if mime_type.lower() == "application/pdf":
        return True
    return size_bytes > MAX_SYNC_SIZE_BYTES


# ---------------------------------------------------------------------------
# Block parsing
# ---------------------------------------------------------------------------

def _child_ids(block: dict, rel_type: str = "CHILD") -> list[str]:
    ids: list[str] = []
    for rel in block.get("Relationships", []) or []:
        if rel.get("Type") == rel_type:
            ids.extend(rel.get("Ids", []))
    return ids


def _text_of(block: dict, by_id: dict[str, dict]) -> str:
    parts: list[str] = []
    for child_id in _child_ids(block):
        child = by_id.get(child_id)
        if child is None:
            continue
        if child["BlockType"] == "WORD":
            parts.append(child.get("Text", ""))
        elif child["BlockType"] == "SELECTION_ELEMENT":
            parts.append("[X]" if child.get("SelectionStatus") == "SELECTED" else "[ ]")
    return " ".join(p for p in parts if p)


def _line_sort_key(block: dict) -> tuple[int, float, float]:
    box = block.get("Geometry", {}).get("BoundingBox", {})
    top = box.get("Top", 0.0)
    # Quantize top so lines on one visual row order left-to-right
    return (
        block.get("Page", 1),
        round(top / LINE_TOP_TOLERANCE),
        box.get("Left", 0.0),
    )


def parse_blocks(blocks: list[dict]) -> OcrResult:
    """Convert raw Textract blocks into an OcrResult."""
    by_id = {b["Id"]: b for b in blocks if "Id" in b}

    # --- Text (LINE blocks in reading order) ----------------------------
    lines = sorted((b for b in blocks if b["BlockType"] == "LINE"), key=_line_sort_key)
    pages_text: dict[int, list[str]] = {}
    for line in lines:
        pages_text.setdefault(line.get("Page", 1), []).append(line.get("Text", ""))
    text = "\n\n".join("\n".join(pages_text[p]) for p in sorted(pages_text))

    words = [b for b in blocks if b["BlockType"] == "WORD"]
    confidences = [w.get("Confidence", 0.0) for w in words] or [
        ln.get("Confidence", 0.0) for ln in lines
    ]
    confidence = round(sum(confidences) / len(confidences), 2) if confidences else 0.0

    # --- Pages -----------------------------------------------------------
    page_numbers = sorted(
        {b.get("Page", 1) for b in blocks if b["BlockType"] == "PAGE"} | set(pages_text)
    )
    pages = [
        OcrPage(
            page_number=p,
            line_count=len(pages_text.get(p, [])),
            word_count=sum(1 for w in words if w.get("Page", 1) == p),
        )
        for p in page_numbers
    ]

    # --- Tables ------------------------------------------------------------
    tables: list[OcrTable] = []
    for table in (b for b in blocks if b["BlockType"] == "TABLE"):
        cells = [
            by_id[cid] for cid in _child_ids(table)
            if cid in by_id and by_id[cid]["BlockType"] == "CELL"
        ]
        if not cells:
            continue
        row_count = max(c.get("RowIndex", 1) for c in cells)
        col_count = max(c.get("ColumnIndex", 1) for c in cells)
        grid = [["" for _ in range(col_count)] for _ in range(row_count)]
        for cell in cells:
            grid[cell.get("RowIndex", 1) - 1][cell.get("ColumnIndex", 1) - 1] = _text_of(cell, by_id)
        tables.append(OcrTable(
            page=table.get("Page", 1),
            row_count=row_count,
            column_count=col_count,
            rows=grid,
            headers=list(grid[0]) if grid else [],
            confidence=round(table.get("Confidence", 0.0), 2),
        ))

    # --- Form fields (KEY → VALUE) -----------------------------------------
    form_fields: list[OcrFormField] = []
    for key_block in blocks:
        if key_block["BlockType"] != "KEY_VALUE_SET" or "KEY" not in key_block.get("EntityTypes", []):
            continue
        key_text = _text_of(key_block, by_id)
        value_text = " ".join(
            _text_of(by_id[vid], by_id)
            for vid in _child_ids(key_block, "VALUE")
            if vid in by_id
        )
        if key_text:
            form_fields.append(OcrFormField(
                key=key_text,
                value=value_text,
                page=key_block.get("Page", 1),
                confidence=round(key_block.get("Confidence", 0.0), 2),
            ))

    # --- Signatures -----------------------------------------------------------
    signatures = [
        OcrSignature(
            page=b.get("Page", 1),
            confidence=round(b.get("Confidence", 0.0), 2),
            bounding_box=b.get("Geometry", {}).get("BoundingBox", {}),
        )
        for b in blocks if b["BlockType"] == "SIGNATURE"
    ]

    return OcrResult(
        text=text,
        tables=tables,
        form_fields=form_fields,
        signatures=signatures,
        pages=pages,
        word_count=len(words),
        confidence=confidence,
    )


# ---------------------------------------------------------------------------
# Textract service
# ---------------------------------------------------------------------------

class TextractService:
    """Thin async facade over the boto3 Textract client."""

    def __init__(
        self,
        bucket:         str,
        region:         str = "us-east-1",
        sns_topic_arn:  str = "",
        role_arn:       str = "",
        client:         Any = None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._sns_topic_arn = sns_topic_arn
        self._role_arn = role_arn
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("textract", region_name=self._region)
        return self._client

    async def _call(self, method: str, **kwargs: Any) -> dict:
        loop = asyncio.get_running_loop()
        fn = getattr(self.client, method)
        return await loop.run_in_executor(None, functools.partial(fn, **kwargs))

    def _s3_object(self, s3_key: str) -> dict:
        return {"S3Object": {"Bucket": self._bucket, "Name": s3_key}}

    async def analyze_document(self, s3_key: str, features: list[str]) -> OcrResult:
        """Synchronous analysis — single-page images under 5 MB."""
        if features:
            response = await self._call(
                "analyze_document",
                Document=self._s3_object(s3_key),
                FeatureTypes=list(features),
            )
        else:
            response = await self._call("detect_document_text", Document=self._s3_object(s3_key))

        result = parse_blocks(response.get("Blocks", []))
        logger.info(
            "Textract sync | key=%s words=%d tables=%d",
            s3_key, result.word_count, len(result.tables),
        )
        return result

    async def start_document_analysis(self, s3_key: str, features: list[str]) -> str:
        """
        Start an asynchronous Textract job and return its JobId.

        No features starts a text detection job; poll it with ``text_only=True``.
        """
        kwargs: dict[str, Any] = {"DocumentLocation": self._s3_object(s3_key)}
        if self._sns_topic_arn and self._role_arn:
            kwargs["NotificationChannel"] = {
                "SNSTopicArn": self._sns_topic_arn,
                "RoleArn":     self._role_arn,
            }

        if features:
            response = await self._call(
                "start_document_analysis", FeatureTypes=list(features), **kwargs,
            )
        else:
            response = await self._call("start_document_text_detection", **kwargs)
        job_id = response["JobId"]

        logger.info("Textract async job started | job=%s key=%s", job_id, s3_key)
        return job_id

    async def get_document_analysis(
        self, textract_job_id: str, text_only: bool = False,
    ) -> OcrResult | None:
        """
        Poll an asynchronous job once.

        Returns None while the job is IN_PROGRESS; raises RuntimeError when
        Textract reports FAILED; otherwise collects every result page.
        ``text_only`` must match how the job was started.
        """
        method = "get_document_text_detection" if text_only else "get_document_analysis"
        response = await self._call(method, JobId=textract_job_id)
        status = response.get("JobStatus")

        if status == "IN_PROGRESS":
            return None
        if status == "FAILED":
            raise RuntimeError(
                f"Textract job {textract_job_id} failed: "
                f"{response.get('StatusMessage', 'no status message')}"
            )

        blocks: list[dict] = list(response.get("Blocks", []))
        next_token = response.get("NextToken")
        while next_token:
            page = await self._call(method, JobId=textract_job_id, NextToken=next_token)
            blocks.extend(page.get("Blocks", []))
            next_token = page.get("NextToken")

        result = parse_blocks(blocks)
        result.textract_job_id = textract_job_id
        return result


# ---------------------------------------------------------------------------
# Polling with bounded exponential backoff
# ---------------------------------------------------------------------------

async def poll_for_completion(
    service:        TextractService,
    textract_job_id: str,
    *,
    on_poll:        Callable[[int], Awaitable[None]] | None = None,
    text_only:      bool = False,
    base_interval_ms: int = 5000,
    max_interval_ms:  int = 30000,
    multiplier:       float = 1.5,
    max_wait_ms:      int = 300000,
    sleep:          Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock:          Callable[[], float] = time.monotonic,
) -> OcrResult:
    """
    Poll until Textract reports a terminal status.

    Interval starts at ``base_interval_ms`` and grows ×``multiplier`` after each
    non-terminal poll, capped at ``max_interval_ms``. ``on_poll`` receives the
    1-based poll count before each request.

    Raises TimeoutError (classified TRANSIENT) once ``max_wait_ms`` elapses.
    """
    started = clock()
    poll_count = 0
    interval_ms: float = base_interval_ms

    while (clock() - started) * 1000 < max_wait_ms:
        poll_count += 1
        if on_poll is not None:
            await on_poll(poll_count)

        result = await service.get_document_analysis(textract_job_id, text_only=text_only)
        if result is not None:
            logger.info(
                "Textract job complete | job=%s polls=%d", textract_job_id, poll_count,
            )
            return result

        await sleep(interval_ms / 1000)
        interval_ms = min(interval_ms * multiplier, max_interval_ms)

    raise TimeoutError(
        f"Textract job {textract_job_id} timeout: no terminal status within "
        f"{max_wait_ms}ms after {poll_count} polls"
    )


# ---------------------------------------------------------------------------
# Local fallback: PyMuPDF text layer
# ---------------------------------------------------------------------------

class LocalTextExtractor:
    """
    Development fallback when Textract is disabled.

    Reads the embedded text layer with PyMuPDF. Scanned documents and images
    yield empty text; tables, form fields and signatures are never detected.
    """

    async def extract(self, data: bytes, mime_type: str) -> OcrResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._extract_sync, data, mime_type)

    def _extract_sync(self, data: bytes, mime_type: str) -> OcrResult:
        import fitz  # PyMuPDF

        filetype = "pdf" if mime_type == "application/pdf" else mime_type.split("/")[-1]
        pages: list[OcrPage] = []
        page_texts: list[str] = []
        with fitz.open(stream=data, filetype=filetype) as doc:
            for page in doc:
                text = page.get_text("text").strip()
                page_texts.append(text)
                pages.append(OcrPage(
                    page_number=page.number + 1,
                    line_count=len([ln for ln in text.splitlines() if ln.strip()]),
                    word_count=len(text.split()),
                ))

        text = "\n\n".join(t for t in page_texts if t)
        logger.info("Local OCR | pages=%d chars=%d", len(pages), len(text))
        return OcrResult(
            text=text,
            pages=pages,
            word_count=len(text.split()),
            confidence=100.0 if text else 0.0,
        )
