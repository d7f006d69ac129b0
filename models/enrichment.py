"""
Row and suggestion payload schemas.

Raw CSV rows and model suggestions are open maps on the wire. The fields the
pipeline actually reads are typed; everything else is kept in an ``extra``
bucket so nothing is lost when the payload is written back.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from models.base import split_known_fields


class _OpenPayload(BaseModel):
    """Typed payload that moves unknown keys into ``extra``."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    extra: dict[str, Any] = Field(
        default_factory=dict,
        description="Fields outside the known set, preserved verbatim"
    )

    @model_validator(mode="before")
    @classmethod
    def _collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields) | {
            f.alias for f in cls.model_fields.values() if f.alias
        }
        known_fields, extra_fields = split_known_fields(data, known)
        if extra_fields:
            merged = dict(known_fields.get("extra") or {})
            merged.update(extra_fields)
            known_fields["extra"] = merged
        return known_fields

    def to_payload(self) -> dict[str, Any]:
        """Flatten back to the stored map (extras merged at top level)."""
        payload = self.model_dump(exclude={"extra"}, by_alias=True)
        payload.update(self.extra)
        return payload


class RawProductRow(_OpenPayload):
    """
    One CSV row keyed by lower-cased header.

    Only ``name`` is mandatory at ingestion; the rest are optional columns
    the pipeline knows how to use.
    """

    name: Optional[str] = None
    product_name: Optional[str] = None
    brand_name: Optional[str] = None
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    strength: Optional[str] = None
    dosage_form: Optional[str] = None
    pack_size: Optional[str] = None
    price: Optional[str] = None
    mrp: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _stringify(cls, value: Any, info) -> Any:
        if info.field_name == "extra" or value is None:
            return value
        text = str(value).strip()
        return text or None


class AISuggestion(_OpenPayload):
    """
    Structured enrichment result for one row.

    Every descriptive field is individually nullable. ``row`` and
    ``overall_confidence`` are required; confidences are bounded to [0, 1].
    """

    row: int = Field(..., ge=0, description="Row index this suggestion answers")
    brand_name: Optional[str] = None
    generic_name: Optional[str] = None
    strength: Optional[str] = None
    dosage_form: Optional[str] = None
    pack_size: Optional[str] = None
    manufacturer: Optional[str] = None
    short_description: Optional[str] = None
    long_description: Optional[str] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    seo_keywords: Optional[list[str]] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    slug: Optional[str] = None

    generic_match_id: Optional[str] = None
    generic_confidence: Optional[float] = Field(None, ge=0, le=1)
    manufacturer_match_id: Optional[str] = None
    manufacturer_confidence: Optional[float] = Field(None, ge=0, le=1)
    category_match_id: Optional[str] = None
    category_confidence: Optional[float] = Field(None, ge=0, le=1)

    overall_confidence: float = Field(..., ge=0, le=1)

    @property
    def matched_any_master(self) -> bool:
        return bool(
            self.generic_match_id
            or self.manufacturer_match_id
            or self.category_match_id
        )


def display_name(raw_data: dict, suggestion: Optional[dict]) -> str:
    """
    Best available product name for a draft.

    Prefers the model's brand name, then the raw name, product_name and
    brand_name columns.
    """
    row = RawProductRow.model_validate(raw_data or {})
    candidates = [
        (suggestion or {}).get("brand_name"),
        row.name,
        row.product_name,
        row.brand_name,
    ]
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return ""


def describe_errors(error: ValidationError) -> str:
    """One line per failed field, e.g. ``overall_confidence: Field required``."""
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "item"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)
