"""
Product draft schemas for validation and serialization.

One draft per CSV row; carries raw input, AI enrichment, image state and
review status.
"""

from pydantic import Field, model_validator
from typing import Any, Optional
from enum import Enum

from models.base import BaseSchema, PaginatedResponse, TimestampMixin


class DraftStatus(str, Enum):
    """Review lifecycle of a draft."""
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    AI_ERROR = "AI_ERROR"
    MANUALLY_EDITED = "MANUALLY_EDITED"


class DraftImageStatus(str, Enum):
    """Image lifecycle of a draft."""
    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"
    MISSING = "MISSING"
    PROCESSED = "PROCESSED"


# Drafts the pipeline no longer touches
TERMINAL_DRAFT_STATUSES = (DraftStatus.APPROVED, DraftStatus.REJECTED)

# Drafts the image stages may still work on
ACTIVE_DRAFT_STATUSES = (
    DraftStatus.PENDING_REVIEW,
    DraftStatus.AI_ERROR,
    DraftStatus.MANUALLY_EDITED,
)


class DraftCreate(BaseSchema):
    """New draft created at ingestion time."""

    import_job_id: str = Field(..., min_length=1)
    row_index: int = Field(..., ge=1, description="1-based position in the source CSV")
    raw_data: dict[str, Any] = Field(..., description="Row keyed by lower-cased header")
    status: DraftStatus = DraftStatus.PENDING_REVIEW
    image_status: DraftImageStatus = DraftImageStatus.UNMATCHED


class DraftResponse(BaseSchema, TimestampMixin):
    """Full draft as stored."""

    id: str = Field(..., description="Draft UUID")
    import_job_id: str = Field(..., description="Parent import job UUID")
    row_index: int
    raw_data: dict[str, Any] = Field(default_factory=dict)
    ai_suggestion: Optional[dict[str, Any]] = None
    ai_confidence: Optional[float] = Field(None, ge=0, le=1)
    status: DraftStatus
    image_status: DraftImageStatus = DraftImageStatus.UNMATCHED
    image_raw_filename: Optional[str] = None
    image_match_confidence: Optional[float] = Field(None, ge=0, le=1)
    image_url: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DRAFT_STATUSES


class DraftJobSummary(BaseSchema):
    """Parent job fields returned with a single draft."""

    id: str
    status: str
    csv_path: Optional[str] = None
    archive_path: Optional[str] = None
    created_at: Optional[str] = None


class DraftDetailResponse(DraftResponse):
    """Single draft with its parent job summary."""

    import_job: Optional[DraftJobSummary] = None


class DraftUpdate(BaseSchema):
    """
    Manual edit of a draft.

    Any change to ai_suggestion forces MANUALLY_EDITED.
    Status may only be set to review states.
    """

    ai_suggestion: Optional[dict[str, Any]] = None
    status: Optional[DraftStatus] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _reviewable_status(self):
        if self.status in (DraftStatus.AI_ERROR, DraftStatus.MANUALLY_EDITED):
            raise ValueError(
                f"Status {self.status.value} cannot be set directly"
            )
        return self


class DraftListResponse(PaginatedResponse):
    """Paginated list of drafts."""

    data: list[DraftResponse]


class DraftRejectRequest(BaseSchema):
    """Optional reason recorded when a reviewer rejects a draft."""

    notes: Optional[str] = Field(None, max_length=2000)
