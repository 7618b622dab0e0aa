"""
Document Embeddings  —  Chunk, Batch, Aggregate
════════════════════════════════════════════════

One vector per document, stored on the document row for semantic search.

Token budget:
  tokens ≈ ceil(len(text) / 4). Texts inside the model budget are embedded
  in a single call.

Over budget:
  aggregate_chunks=True   split along sentence boundaries (falling back to
                          word boundaries for oversized sentences), embed all
                          chunks in batches of ≤ 2048 inputs, re-order by the
                          returned index, average element-wise, then rescale
                          the mean to unit length.
  aggregate_chunks=False  truncate at the last space inside the budget when it
                          falls past 80% of the limit, else hard cut.

The renormalization matters: the mean of unit vectors is shorter than 1,
and cosine search over un-normalized means ranks documents differently.

OpenAI embedding model selection:
  text-embedding-ada-002  → 1536 dims, 8191 tokens  (default)
  text-embedding-3-small  → 1536 dims, 8191 tokens
  text-embedding-3-large  → 3072 dims, 8191 tokens  (not storable: column is 1536)
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Sequence

from docflow.observability.tracing import traced
from docflow.pipeline.interfaces import JobStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

CHARS_PER_TOKEN_EST = 4
MAX_BATCH_INPUTS    = 2048     # OpenAI limit on inputs per embeddings call
STORED_DIMENSIONS   = 1536     # documents.content_vector is vector(1536)
TRUNCATE_WORD_BOUNDARY_RATIO = 0.8

MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-ada-002": 1536,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}

MODEL_MAX_TOKENS: dict[str, int] = {
    "text-embedding-ada-002": 8191,
    "text-embedding-3-small": 8191,
    "text-embedding-3-large": 8191,
}

_SENTENCE_RE = re.compile(r"[^.!?]*(?:[.!?]+|$)")
_WORD_RE     = re.compile(r"\S+\s*|\s+")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN_EST)


def _split_sentences(text: str) -> list[str]:
    return [m.group(0) for m in _SENTENCE_RE.finditer(text) if m.group(0)]


def _split_words(text: str, max_chars: int) -> list[str]:
    """Greedy word packing; words longer than max_chars are hard-cut."""
    pieces: list[str] = []
    current = ""
    for match in _WORD_RE.finditer(text):
        word = match.group(0)
        while len(word) > max_chars:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(word[:max_chars])
            word = word[max_chars:]
        if len(current) + len(word) > max_chars:
            pieces.append(current)
            current = word
        else:
            current += word
    if current:
        pieces.append(current)
    return pieces


def split_into_chunks(text: str, max_chars: int) -> list[str]:
    """
    Pack sentences into chunks of at most ``max_chars`` characters.

    No input character is dropped before stripping: joining the raw pieces
    reproduces ``text``. Returned chunks are stripped and never empty.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")

    raw: list[str] = []
    current = ""
    for sentence in _split_sentences(text):
        if len(current) + len(sentence) <= max_chars:
            current += sentence
            continue
        if current:
            raw.append(current)
            current = ""
        if len(sentence) <= max_chars:
            current = sentence
        else:
            raw.extend(_split_words(sentence, max_chars))
    if current:
        raw.append(current)

    return [chunk.strip() for chunk in raw if chunk.strip()]


def truncate_to_budget(text: str, max_chars: int) -> tuple[str, bool]:
    """Cut at a word boundary when one exists past 80% of the limit."""
    if len(text) <= max_chars:
        return text, False
    cut = text[:max_chars]
    last_space = cut.rfind(" ")
    if last_space > max_chars * TRUNCATE_WORD_BOUNDARY_RATIO:
        cut = cut[:last_space]
    return cut, True


def average_and_normalize(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Element-wise mean of ``vectors`` rescaled to unit L2 norm."""
    if not vectors:
        raise ValueError("cannot aggregate an empty vector list")
    dims = len(vectors[0])
    if any(len(v) != dims for v in vectors):
        raise ValueError("cannot aggregate vectors of different dimensions")

    count = len(vectors)
    mean = [sum(v[i] for v in vectors) / count for i in range(dims)]
    norm = math.sqrt(sum(x * x for x in mean))
    if norm == 0:
        return mean
    return [x / norm for x in mean]


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingOutcome:
    vector:           list[float]
    model:            str
    tokens_used:      int
    chunks_processed: int
    text_length:      int
    was_truncated:    bool
    elapsed_ms:       float = 0.0
    stored:           bool = False

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    def to_output(self) -> dict:
        return {
            "embeddingDimensions": self.dimensions,
            "tokensUsed":          self.tokens_used,
            "chunksProcessed":     self.chunks_processed,
            "textLength":          self.text_length,
            "model":               self.model,
            "wasTruncated":        self.was_truncated,
        }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class EmbeddingService:
    """
    Stateless wrapper around ``openai.AsyncOpenAI().embeddings``.

    Usage:
        service = EmbeddingService(api_key=settings.openai_api_key)
        outcome = await service.generate_embedding(text, aggregate_chunks=True)
    """

    def __init__(
        self,
        api_key:    str,
        model:      str = "text-embedding-ada-002",
        max_tokens: int | None = None,
        batch_size: int = MAX_BATCH_INPUTS,
        client=None,
    ) -> None:
        self._api_key    = api_key
        self._model      = model
        self._max_tokens = max_tokens or MODEL_MAX_TOKENS.get(model, 8191)
        self._batch_size = min(batch_size, MAX_BATCH_INPUTS)
        self._client     = client

    @property
    def model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        return bool(self._api_key) or self._client is not None

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    @property
    def max_chars(self) -> int:
        return self._max_tokens * CHARS_PER_TOKEN_EST

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    @traced("embedding.generate")
    async def generate_embedding(
        self,
        text: str,
        *,
        aggregate_chunks: bool = False,
        model: str | None = None,
    ) -> EmbeddingOutcome:
        model = model or self._model
        if not text or not text.strip():
            raise ValueError("Invalid input: cannot embed empty text")

        t0 = time.monotonic()
        fits = estimate_tokens(text) <= self._max_tokens

        if fits or not aggregate_chunks:
            prepared, truncated = (text, False) if fits else truncate_to_budget(text, self.max_chars)
            vectors, tokens = await self.embed_batch([prepared], model=model)
            outcome = EmbeddingOutcome(
                vector=vectors[0],
                model=model,
                tokens_used=tokens,
                chunks_processed=1,
                text_length=len(text),
                was_truncated=truncated,
            )
        else:
            chunks = split_into_chunks(text, self.max_chars)
            vectors, tokens = await self.embed_batch(chunks, model=model)
            outcome = EmbeddingOutcome(
                vector=average_and_normalize(vectors),
                model=model,
                tokens_used=tokens,
                chunks_processed=len(chunks),
                text_length=len(text),
                was_truncated=False,
            )

        outcome.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Embedding generated | model=%s chunks=%d tokens=%d dims=%d truncated=%s",
            model, outcome.chunks_processed, outcome.tokens_used,
            outcome.dimensions, outcome.was_truncated,
        )
        return outcome

    async def embed_batch(
        self,
        texts: Sequence[str],
        *,
        model: str | None = None,
    ) -> tuple[list[list[float]], int]:
        """
        Embed ``texts`` in API batches; returns vectors in input order and total tokens.
        """
        model = model or self._model
        extra: dict = {}
        if model.startswith("text-embedding-3"):
            # dimensions parameter is only accepted by the v3 models
            extra["dimensions"] = MODEL_DIMENSIONS.get(model, STORED_DIMENSIONS)

        vectors: list[list[float]] = []
        total_tokens = 0
        for start in range(0, len(texts), self._batch_size):
            batch = list(texts[start : start + self._batch_size])
            response = await self.client.embeddings.create(model=model, input=batch, **extra)
            ordered = sorted(response.data, key=lambda item: item.index)
            vectors.extend(list(item.embedding) for item in ordered)
            usage = getattr(response, "usage", None)
            total_tokens += (
                usage.total_tokens if usage is not None
                else sum(estimate_tokens(t) for t in batch)
            )
            logger.debug(
                "OpenAI embeddings | batch_start=%d size=%d model=%s", start, len(batch), model,
            )
        return vectors, total_tokens

    async def generate_and_store(
        self,
        store:       JobStore,
        document_id: str,
        text:        str,
        *,
        aggregate_chunks: bool = True,
        model: str | None = None,
    ) -> EmbeddingOutcome:
        """Generate a document vector and persist it when it fits the vector column."""
        outcome = await self.generate_embedding(text, aggregate_chunks=aggregate_chunks, model=model)
        if outcome.dimensions != STORED_DIMENSIONS:
            logger.warning(
                "Embedding not stored | doc=%s dims=%d expected=%d",
                document_id, outcome.dimensions, STORED_DIMENSIONS,
            )
            return outcome
        await store.update_document(document_id, content_vector=outcome.vector)
        outcome.stored = True
        return outcome
