"""
Import job schemas and batch-advance results.
"""

from pydantic import Field, model_validator
from typing import Any, Optional
from enum import Enum

from models.base import BaseSchema, PaginatedResponse, TimestampMixin


class ImportJobStatus(str, Enum):
    """Row-enrichment lifecycle of a job."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ImageJobStatus(str, Enum):
    """Image sub-stage lifecycle, independent of row enrichment."""
    NOT_STARTED = "NOT_STARTED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"


# Jobs that accept no further batch work
STOPPED_JOB_STATUSES = (ImportJobStatus.FAILED, ImportJobStatus.CANCELLED)


class ImportJobConfig(BaseSchema):
    """Free-form job configuration recorded at creation."""

    model_name: Optional[str] = Field(None, description="Model used for enrichment")
    batch_size: Optional[int] = Field(None, ge=1, le=100, description="Preferred enrichment batch size")


class ImportJobCreate(BaseSchema):
    """Create a job from an uploaded CSV."""

    csv_path: str = Field(..., min_length=1, description="Storage path of the uploaded CSV")
    config: Optional[ImportJobConfig] = None


class ArchiveAttach(BaseSchema):
    """Attach an uploaded image archive to a job."""

    archive_path: str = Field(..., min_length=1, description="Storage path of the uploaded zip")


class BatchRequest(BaseSchema):
    """Body of every batch-advance call."""

    batch_size: Optional[int] = Field(None, ge=1, le=500)


class ImportJobResponse(BaseSchema, TimestampMixin):
    """Full import job."""

    id: str
    csv_path: str
    archive_path: Optional[str] = None
    status: ImportJobStatus
    total_rows: int = 0
    processed_rows: int = 0
    failed_rows: int = 0
    image_status: ImageJobStatus = ImageJobStatus.NOT_STARTED
    image_total: int = 0
    image_processed: int = 0
    config: dict[str, Any] = Field(default_factory=dict)
    error_summary: Optional[str] = None

    @model_validator(mode="after")
    def _counters_consistent(self):
        if self.processed_rows + self.failed_rows > self.total_rows:
            raise ValueError("processed_rows + failed_rows exceeds total_rows")
        if self.image_processed > self.image_total:
            raise ValueError("image_processed exceeds image_total")
        return self

    @property
    def has_archive(self) -> bool:
        return bool(self.archive_path)


class DraftStats(BaseSchema):
    """Per-status draft counts for one job."""

    pending_review: int = 0
    approved: int = 0
    rejected: int = 0
    ai_error: int = 0
    manually_edited: int = 0


class ImportJobWithStats(ImportJobResponse):
    """Job plus draft counts, used in job listings."""

    draft_count: int = 0
    draft_stats: DraftStats = Field(default_factory=DraftStats)


class ImportJobListResponse(PaginatedResponse):
    """Paginated job listing."""

    data: list[ImportJobWithStats]


class ArchiveIndexPreview(BaseSchema):
    """One image found in an attached archive."""

    filename: str
    size: int


class ArchiveAttachResponse(BaseSchema):
    """Result of attaching an archive."""

    job: ImportJobResponse
    images: list[ArchiveIndexPreview]


# ===================
# BATCH RESULTS
# ===================

class BatchResult(BaseSchema):
    """
    Common shape of every batch-advance result.

    ``success`` is False when the job refused new work (cancelled, failed);
    counts and ``remaining`` are always present.
    ``skipped`` counts drafts a reviewer changed while the batch was working
    on them; their results are dropped.
    """

    job_id: str
    job_status: ImportJobStatus
    image_status: ImageJobStatus
    success: bool = True
    message: Optional[str] = None
    remaining: int = 0
    skipped: int = 0


class EnrichmentBatchResult(BatchResult):
    """Result of one enrichment batch."""

    processed: int = 0
    matched: int = 0
    unmatched: int = 0
    failed: int = 0


class ImageMatchBatchResult(BatchResult):
    """Result of one image-matching batch."""

    matched: int = 0
    unmatched: int = 0
    missing: int = 0
    archive_images: int = 0


class ImageProcessBatchResult(BatchResult):
    """Result of one image-processing batch."""

    processed: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
