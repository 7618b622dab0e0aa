"""
Document Classification  —  OpenAI Chat Completions
════════════════════════════════════════════════════

Two prompts against the same chat model:

  classify()          category · confidence · language · tags · summary
  extract_entities()  persons · organizations · locations · dates · amounts · references

The model is asked for bare JSON. Markdown fences are stripped and missing
fields take defaults. An unparseable reply degrades to category "Other" with
the first 200 characters of the reply as the summary; the job still succeeds.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from docflow.observability.tracing import traced

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: tuple[str, ...] = (
    "Invoice",
    "Contract",
    "Report",
    "Letter",
    "Receipt",
    "Form",
    "Presentation",
    "Spreadsheet",
    "Image",
    "Other",
)

ENTITY_TYPES: tuple[str, ...] = (
    "persons", "organizations", "locations", "dates", "amounts", "references",
)

MAX_TAGS = 5
FALLBACK_SUMMARY_CHARS = 200

CLASSIFICATION_PROMPT = """Analyze the following document and provide a classification.

Document Name: {file_name}
Content (first {max_chars} chars): {content}

Provide a JSON response with:
- category: The document category (one of: {categories})
- confidence: Confidence score 0-1
- language: Detected language code (e.g., "en", "pt", "es")
- tags: Array of relevant tags (max 5)
- summary: Brief 1-2 sentence summary

Respond only with valid JSON."""

ENTITY_PROMPT = """Extract named entities from the following document text.

Text: {content}

Return a JSON object with these entity types as keys:
- persons: Names of people
- organizations: Company/organization names
- locations: Places, addresses
- dates: Important dates mentioned
- amounts: Monetary amounts
- references: Document/reference numbers

Return only the JSON object, no additional text. Example:
{{
  "persons": ["John Smith", "Jane Doe"],
  "organizations": ["Acme Corp"],
  "locations": ["New York, NY"],
  "dates": ["2024-01-15"],
  "amounts": ["$1,500.00"],
  "references": ["INV-2024-001"]
}}"""

_FENCE_OPEN_RE  = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\n?\s*```\s*$")


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class Classification:
    category:   str
    confidence: float
    tags:       list[str] = field(default_factory=list)
    language:   str | None = None
    summary:    str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category":   self.category,
            "confidence": self.confidence,
            "language":   self.language,
            "tags":       self.tags,
            "summary":    self.summary,
        }


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def strip_code_fences(response: str) -> str:
    cleaned = response.strip()
    cleaned = _FENCE_OPEN_RE.sub("", cleaned)
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned)
    return cleaned.strip()


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return min(max(confidence, 0.0), 1.0)


def parse_classification(response: str) -> Classification:
    """Parse a model reply; never raises."""
    try:
        parsed = json.loads(strip_code_fences(response))
        if not isinstance(parsed, dict):
            raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
    except (json.JSONDecodeError, ValueError) as exc:
        logger.warning("Classification reply unparseable | error=%s", exc)
        logger.debug("Raw classification reply | text=%s", response[:FALLBACK_SUMMARY_CHARS])
        return Classification(
            category="Other",
            confidence=0.0,
            tags=[],
            summary=response[:FALLBACK_SUMMARY_CHARS],
        )

    tags = parsed.get("tags")
    return Classification(
        category=parsed.get("category") or "Other",
        confidence=_clamp_confidence(parsed.get("confidence")),
        tags=[str(t) for t in tags[:MAX_TAGS]] if isinstance(tags, list) else [],
        language=parsed.get("language"),
        summary=parsed.get("summary"),
    )


def parse_entities(response: str) -> dict[str, list[str]]:
    """Keep only list-valued keys, coerce members to str; {} when unparseable."""
    try:
        parsed = json.loads(strip_code_fences(response))
    except json.JSONDecodeError:
        logger.warning("Entity extraction reply unparseable")
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {
        key: [str(v) for v in value]
        for key, value in parsed.items()
        if isinstance(value, list)
    }


def build_classification_prompt(
    text:       str,
    file_name:  str,
    categories: Sequence[str],
    max_chars:  int = 4000,
) -> str:
    return CLASSIFICATION_PROMPT.format(
        file_name=file_name,
        max_chars=max_chars,
        content=text[:max_chars],
        categories=", ".join(categories),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DocumentClassifier:
    """Chat-completion client for classification and entity extraction."""

    def __init__(
        self,
        api_key:             str,
        model:               str = "gpt-4-turbo-preview",
        temperature:         float = 0.3,
        max_response_tokens: int = 500,
        max_text_length:     int = 4000,
        client=None,
    ) -> None:
        self._api_key = api_key
        self.model = model
        self._temperature = temperature
        self._max_response_tokens = max_response_tokens
        self._max_text_length = max_text_length
        self._client = client

    def is_available(self) -> bool:
        return bool(self._api_key) or self._client is not None

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def _complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self._temperature,
            max_tokens=self._max_response_tokens,
        )
        return response.choices[0].message.content or ""

    @traced("classification.classify")
    async def classify(
        self,
        text:       str,
        file_name:  str,
        categories: Sequence[str] | None = None,
    ) -> Classification:
        prompt = build_classification_prompt(
            text,
            file_name,
            categories or DEFAULT_CATEGORIES,
            max_chars=self._max_text_length,
        )
        reply = await self._complete(prompt)
        result = parse_classification(reply)
        logger.info(
            "Document classified | file=%s category=%s confidence=%.2f",
            file_name, result.category, result.confidence,
        )
        return result

    @traced("classification.entities")
    async def extract_entities(self, text: str) -> dict[str, list[str]]:
        reply = await self._complete(ENTITY_PROMPT.format(content=text[: self._max_text_length]))
        return parse_entities(reply)
