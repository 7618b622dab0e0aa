"""
Processing Pipeline — Pydantic Schemas

Two groups:
  • Job options   — validated inside the worker from the job's ``options`` dict.
                    Accept camelCase (as sent by the web client) or snake_case.
  • Service views — plain return values of ProcessingService operations.

Validation failures are re-raised by processors as InvalidJobOptionsError so
the classifier treats them as PERMANENT (no point retrying bad input).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from docflow.pipeline.interfaces import JobRecord


class _Options(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# OCR
# ---------------------------------------------------------------------------

OcrFeature = Literal["TABLES", "FORMS", "SIGNATURES"]


class OcrOptions(_Options):
    features:            list[OcrFeature] = Field(default_factory=lambda: ["TABLES", "FORMS"])
    force_async:         bool = False
    generate_embeddings: bool = True
    language:            str | None = None


# ---------------------------------------------------------------------------
# Thumbnail / embedding / classification
# ---------------------------------------------------------------------------

class ThumbnailOptions(_Options):
    size: Literal["small", "medium", "large"] = "medium"


class EmbeddingOptions(_Options):
    model:            str | None = None
    aggregate_chunks: bool = True


class ClassifyOptions(_Options):
    categories:       list[str] | None = None
    extract_entities: bool = False


# ---------------------------------------------------------------------------
# PDF operations
# ---------------------------------------------------------------------------

class SplitType(str, Enum):
    PAGES         = "pages"
    BOOKMARKS     = "bookmarks"
    EVERY_N_PAGES = "every_n_pages"


class WatermarkPosition(str, Enum):
    CENTER       = "center"
    TOP_LEFT     = "top-left"
    TOP_RIGHT    = "top-right"
    BOTTOM_LEFT  = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    DIAGONAL     = "diagonal"


class CompressionQuality(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"


class SplitOptions(_Options):
    type:          SplitType
    ranges:        list[str] | None = None     # ["1-3", "5", "7-10"]
    every_n_pages: int | None = Field(None, ge=1, le=1000)
    output_prefix: str = "split"

    @model_validator(mode="after")
    def _check_type_arguments(self) -> "SplitOptions":
        if self.type is SplitType.PAGES and not self.ranges:
            raise ValueError("ranges are required for split type 'pages'")
        if self.type is SplitType.EVERY_N_PAGES and not self.every_n_pages:
            raise ValueError("every_n_pages is required for split type 'every_n_pages'")
        return self


class MergeOptions(_Options):
    document_ids: list[str] = Field(..., min_length=2, max_length=50)
    output_name:  str = "merged.pdf"
    folder_id:    str | None = None


class RgbColor(_Options):
    r: float = Field(0.5, ge=0, le=1)
    g: float = Field(0.5, ge=0, le=1)
    b: float = Field(0.5, ge=0, le=1)


class WatermarkOptions(_Options):
    text:      str = Field(..., min_length=1, max_length=200)
    position:  WatermarkPosition = WatermarkPosition.CENTER
    opacity:   float = Field(0.3, ge=0, le=1)
    font_size: int = Field(48, ge=8, le=200)
    color:     RgbColor = Field(default_factory=RgbColor)
    rotation:  int = Field(0, ge=-180, le=180)
    all_pages: bool = True
    pages:     list[int] | None = None        # 1-based, used when all_pages is False


class CompressOptions(_Options):
    quality:          CompressionQuality = CompressionQuality.MEDIUM
    remove_metadata:  bool = False
    subsample_images: bool | None = None      # default: only for LOW quality


class ExtractPagesOptions(_Options):
    pages:       list[int] = Field(..., min_length=1)
    output_name: str | None = None


class RenderPageOptions(_Options):
    page:    int = Field(1, ge=1)
    format:  Literal["png", "jpeg", "webp"] = "png"
    dpi:     int = Field(150, ge=72, le=600)
    width:   int | None = Field(None, ge=50, le=4000)
    height:  int | None = Field(None, ge=50, le=4000)
    quality: int = Field(85, ge=1, le=100)


# ---------------------------------------------------------------------------
# Orchestrator inputs / outputs
# ---------------------------------------------------------------------------

class JobEnqueueOptions(BaseModel):
    """Queue-level knobs accepted by ProcessingService.add_job."""
    priority:  int | None = Field(None, ge=1, le=5)
    delay_ms:  int = Field(0, ge=0)
    attempts:  int | None = Field(None, ge=1, le=20)


class AddJobResult(BaseModel):
    job_id:       str
    queue_job_id: str
    queue_name:   str
    message:      str


class JobStatusView(BaseModel):
    job:         JobRecord
    document:    dict[str, Any] | None = None
    queue_state: str | None = None
    progress:    int | None = None


class QueueStatsView(BaseModel):
    queues: dict[str, dict[str, int]]
    totals: dict[str, int]


class DrainResult(BaseModel):
    success: bool
    removed: int


class CleanupResult(BaseModel):
    cleaned: int
    errors:  list[str] = Field(default_factory=list)


class FailedJobsPage(BaseModel):
    jobs:  list[JobRecord]
    total: int
