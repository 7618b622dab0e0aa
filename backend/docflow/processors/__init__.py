"""
Job Processors
══════════════

One processor per job family, all sharing BaseProcessor's lifecycle envelope
(RUNNING → execute → COMPLETED, with classified failure handling).

  ocr.py          Textract sync/async extraction, metadata.ocr, inline embedding
  thumbnail.py    PNG previews (small / medium / large)
  pdf.py          split · merge · watermark · compress · extract · render · metadata
  embedding.py    document-level vector from extracted text
  ai_classify.py  category / tags / summary / entities via chat completion
  registry.py     job kind → processor lookup used by the Celery tasks
"""

from docflow.processors.base import BaseProcessor, JobContext
from docflow.processors.registry import ProcessorRegistry

__all__ = [
    "BaseProcessor",
    "JobContext",
    "ProcessorRegistry",
]
