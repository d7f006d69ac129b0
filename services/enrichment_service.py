"""
Claude enrichment service for product drafts.

Sends one batch of raw CSV rows (plus the curated master lists) to Claude and
turns the answer into one validated AISuggestion per row. A response that
fails validation gets exactly one corrective retry; provider failures are
reported as a distinct outcome and never retried here.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union
import structlog

import anthropic
from pydantic import ValidationError as PydanticValidationError

from config import settings
from models.enrichment import AISuggestion, describe_errors
from models.master import MasterContext
from services.master_list_service import format_master_context

logger = structlog.get_logger(__name__)

MAX_ATTEMPTS = 2


# ===================
# OUTCOME TYPES
# ===================

@dataclass
class RowEnrichment:
    """Suggestion or error for one input row."""
    row_index: int
    suggestion: Optional[AISuggestion] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.suggestion is not None


@dataclass
class EnrichmentSuccess:
    """Every row validated."""
    results: list[RowEnrichment] = field(default_factory=list)


@dataclass
class EnrichmentValidationFailed:
    """Both attempts failed validation; rows that did validate are kept."""
    error: str
    results: list[RowEnrichment] = field(default_factory=list)


@dataclass
class EnrichmentProviderError:
    """Transport or API failure; no row was enriched."""
    error: str
    error_type: str = "APIError"


EnrichmentOutcome = Union[EnrichmentSuccess, EnrichmentValidationFailed, EnrichmentProviderError]


@dataclass
class _ParsedResponse:
    suggestions: dict[int, AISuggestion] = field(default_factory=dict)
    row_errors: dict[int, str] = field(default_factory=dict)
    problems: list[str] = field(default_factory=list)


# ===================
# RESPONSE VALIDATION
# ===================

def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r'^```(?:json)?\s*', '', cleaned)
        cleaned = re.sub(r'\s*```$', '', cleaned)
    return cleaned


def parse_response(response_text: str, row_indices: list[int]) -> _ParsedResponse:
    """
    Validate a model answer against the rows that were asked for.

    Checks, in order: valid JSON, a ``products`` list, each item against
    AISuggestion, and that every requested row is answered exactly once.

    Args:
        response_text: Raw model output (markdown fences tolerated)
        row_indices: Row indices sent in the prompt

    Returns:
        Valid suggestions by row, per-row errors, and batch-level problems
    """
    parsed = _ParsedResponse()

    try:
        data = json.loads(_strip_fences(response_text))
    except json.JSONDecodeError as e:
        parsed.problems.append(f"Response is not valid JSON ({e.msg} at position {e.pos})")
        return parsed

    products = data.get("products") if isinstance(data, dict) else None
    if not isinstance(products, list):
        parsed.problems.append('Response must be a JSON object with a "products" array')
        return parsed

    expected = set(row_indices)
    seen: set[int] = set()

    for position, item in enumerate(products):
        try:
            suggestion = AISuggestion.model_validate(item)
        except PydanticValidationError as e:
            message = describe_errors(e)
            parsed.problems.append(f"products[{position}]: {message}")
            row = item.get("row") if isinstance(item, dict) else None
            if isinstance(row, int) and row in expected:
                parsed.row_errors[row] = message
            continue

        if suggestion.row not in expected:
            parsed.problems.append(f"products[{position}]: row {suggestion.row} was not requested")
            continue
        if suggestion.row in seen:
            parsed.problems.append(f"row {suggestion.row} answered more than once")
            parsed.suggestions.pop(suggestion.row, None)
            parsed.row_errors[suggestion.row] = "Answered more than once"
            continue

        seen.add(suggestion.row)
        if suggestion.row not in parsed.row_errors:
            parsed.suggestions[suggestion.row] = suggestion

    missing = [row for row in row_indices if row not in seen and row not in parsed.row_errors]
    if missing:
        parsed.problems.append(f"Missing rows: {missing}")
        for row in missing:
            parsed.row_errors[row] = "No suggestion returned for this row"

    return parsed


class EnrichmentService:
    """
    Enrich raw product rows using Claude.

    One call per batch; the SDK's own retries are disabled so a slow or
    failing provider surfaces within the invocation deadline.
    """

    SYSTEM_PROMPT = """You are a pharmaceutical catalog assistant. You turn raw product rows from a supplier spreadsheet into clean, structured catalog entries.

IMPORTANT: Return ONLY valid JSON, no markdown, no explanation, no code blocks.

Return exactly this structure:
{
  "products": [
    {
      "row": 1,
      "brand_name": "Crocin Advance",
      "generic_name": "Paracetamol",
      "strength": "500mg",
      "dosage_form": "Tablet",
      "pack_size": "15 tablets",
      "manufacturer": "GSK",
      "short_description": "Fast-acting paracetamol tablet for pain and fever.",
      "long_description": "...",
      "seo_title": "...",
      "seo_description": "...",
      "seo_keywords": ["paracetamol", "fever"],
      "category": "Pain Relief",
      "subcategory": null,
      "slug": "crocin-advance-500mg",
      "generic_match_id": "<id from GENERICS or null>",
      "generic_confidence": 0.95,
      "manufacturer_match_id": "<id from MANUFACTURERS or null>",
      "manufacturer_confidence": 0.9,
      "category_match_id": "<id from CATEGORIES or null>",
      "category_confidence": 0.8,
      "overall_confidence": 0.9
    }
  ]
}

RULES:
- One object per input row, echoing its "row" number exactly. Never skip or merge rows.
- Use null for anything you cannot determine. Do not invent strengths or pack sizes.
- Match ids MUST be copied from the master lists provided. If nothing fits, use null.
- All confidence values are numbers between 0.0 and 1.0.
- overall_confidence reflects how sure you are about the whole entry."""

    CORRECTION_PROMPT = """Your previous response failed validation:
{error}

Return the corrected JSON for ALL rows, following the required structure exactly."""

    def __init__(self, client: Optional[Any] = None, model: Optional[str] = None):
        """
        Initialize enrichment service.

        Args:
            client: Anthropic client (built from settings when omitted)
            model: Model name override
        """
        if client is not None:
            self.client = client
        elif settings.ai_configured:
            self.client = anthropic.Anthropic(
                api_key=settings.anthropic_api_key,
                timeout=settings.ai_timeout_seconds,
                max_retries=0,
            )
        else:
            self.client = None
        self.model = model or settings.ai_model

    @property
    def available(self) -> bool:
        return self.client is not None

    def _build_prompt(self, rows: list[tuple[int, dict]], master_context: MasterContext) -> str:
        payload = [{"row": row_index, **raw_data} for row_index, raw_data in rows]
        return (
            f"{format_master_context(master_context)}\n\n"
            f"PRODUCT ROWS ({len(rows)}):\n"
            f"{json.dumps(payload, ensure_ascii=False, default=str)}"
        )

    def _call(self, messages: list[dict]) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=settings.ai_max_tokens,
            temperature=settings.ai_temperature,
            system=self.SYSTEM_PROMPT,
            messages=messages,
        )
        text = "".join(
            block.text for block in response.content
            if getattr(block, "type", None) == "text"
        )
        logger.debug(
            "enrichment_response_received",
            response_length=len(text),
            stop_reason=getattr(response, "stop_reason", None)
        )
        return text

    def enrich(
        self,
        rows: list[tuple[int, dict]],
        master_context: MasterContext,
    ) -> EnrichmentOutcome:
        """
        Enrich one batch of rows.

        Args:
            rows: (row_index, raw_data) pairs in processing order
            master_context: Master lists embedded in the prompt

        Returns:
            EnrichmentSuccess, EnrichmentValidationFailed or EnrichmentProviderError
        """
        if not rows:
            return EnrichmentSuccess(results=[])

        if not self.available:
            logger.warning("enrichment_not_configured")
            return EnrichmentProviderError(
                error="AI provider is not configured. Set ANTHROPIC_API_KEY.",
                error_type="NotConfigured"
            )

        row_indices = [row_index for row_index, _ in rows]
        messages = [{"role": "user", "content": self._build_prompt(rows, master_context)}]
        parsed = _ParsedResponse()
        error = ""

        logger.info("enrichment_started", rows=len(rows), model=self.model)

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response_text = self._call(messages)
            except anthropic.APIError as e:
                logger.error(
                    "enrichment_provider_error",
                    attempt=attempt,
                    error=str(e),
                    error_type=type(e).__name__
                )
                return EnrichmentProviderError(error=str(e), error_type=type(e).__name__)

            parsed = parse_response(response_text, row_indices)
            if not parsed.problems:
                logger.info("enrichment_completed", rows=len(rows), attempt=attempt)
                return EnrichmentSuccess(results=[
                    RowEnrichment(row_index=row, suggestion=parsed.suggestions[row])
                    for row in row_indices
                ])

            error = "; ".join(parsed.problems)
            logger.warning(
                "enrichment_validation_failed",
                attempt=attempt,
                problems=len(parsed.problems),
                valid_rows=len(parsed.suggestions),
                error=error[:500]
            )
            messages = messages + [
                {"role": "assistant", "content": response_text or "(empty response)"},
                {"role": "user", "content": self.CORRECTION_PROMPT.format(error=error)},
            ]

        return EnrichmentValidationFailed(
            error=error,
            results=[
                RowEnrichment(
                    row_index=row,
                    suggestion=parsed.suggestions.get(row),
                    error=None if row in parsed.suggestions else parsed.row_errors.get(row, error),
                )
                for row in row_indices
            ],
        )


# Singleton instance
_enrichment_service: Optional[EnrichmentService] = None


def get_enrichment_service() -> EnrichmentService:
    """Get or create EnrichmentService instance."""
    global _enrichment_service
    if _enrichment_service is None:
        _enrichment_service = EnrichmentService()
    return _enrichment_service
