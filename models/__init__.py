"""
Pydantic models for validation and serialization.
"""

from models.base import (
    BaseSchema,
    TimestampMixin,
    PaginatedResponse,
)
from models.master import (
    MasterKind,
    MasterRecord,
    MasterContext,
)
from models.enrichment import (
    RawProductRow,
    AISuggestion,
    display_name,
)
from models.draft import (
    DraftStatus,
    DraftImageStatus,
    DraftCreate,
    DraftResponse,
    DraftDetailResponse,
    DraftJobSummary,
    DraftUpdate,
    DraftListResponse,
    DraftRejectRequest,
    TERMINAL_DRAFT_STATUSES,
    ACTIVE_DRAFT_STATUSES,
)
from models.import_job import (
    ImportJobStatus,
    ImageJobStatus,
    ImportJobConfig,
    ImportJobCreate,
    ImportJobResponse,
    ImportJobWithStats,
    ImportJobListResponse,
    ArchiveAttach,
    ArchiveAttachResponse,
    ArchiveIndexPreview,
    BatchRequest,
    BatchResult,
    DraftStats,
    EnrichmentBatchResult,
    ImageMatchBatchResult,
    ImageProcessBatchResult,
    STOPPED_JOB_STATUSES,
)

__all__ = [
    # Base
    "BaseSchema",
    "TimestampMixin",
    "PaginatedResponse",

    # Master lists
    "MasterKind",
    "MasterRecord",
    "MasterContext",

    # Payloads
    "RawProductRow",
    "AISuggestion",
    "display_name",

    # Drafts
    "DraftStatus",
    "DraftImageStatus",
    "DraftCreate",
    "DraftResponse",
    "DraftDetailResponse",
    "DraftJobSummary",
    "DraftUpdate",
    "DraftListResponse",
    "DraftRejectRequest",
    "TERMINAL_DRAFT_STATUSES",
    "ACTIVE_DRAFT_STATUSES",

    # Import jobs
    "ImportJobStatus",
    "ImageJobStatus",
    "ImportJobConfig",
    "ImportJobCreate",
    "ImportJobResponse",
    "ImportJobWithStats",
    "ImportJobListResponse",
    "ArchiveAttach",
    "ArchiveAttachResponse",
    "ArchiveIndexPreview",
    "BatchRequest",
    "BatchResult",
    "DraftStats",
    "EnrichmentBatchResult",
    "ImageMatchBatchResult",
    "ImageProcessBatchResult",
    "STOPPED_JOB_STATUSES",
]
