"""
Draft API routes.

Review surface for product drafts: listing, detail, manual edits and the
approve/reject decisions.
"""

from fastapi import APIRouter, Body, Query
from fastapi.responses import JSONResponse
from typing import Optional
import structlog

from models.draft import (
    DraftDetailResponse,
    DraftListResponse,
    DraftRejectRequest,
    DraftResponse,
    DraftStatus,
    DraftUpdate,
)
from services.draft_service import SORTABLE_COLUMNS, get_draft_service
from exceptions import AppError, ValidationError

logger = structlog.get_logger(__name__)

router = APIRouter()


def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )


@router.get("", response_model=DraftListResponse)
async def list_drafts(
    job_id: Optional[str] = Query(None, description="Filter by import job"),
    status: Optional[DraftStatus] = Query(None, description="Filter by review status"),
    min_confidence: Optional[float] = Query(None, ge=0, le=1, description="Minimum AI confidence"),
    max_confidence: Optional[float] = Query(None, ge=0, le=1, description="Maximum AI confidence"),
    sort_by: str = Query("row_index", description=f"One of {', '.join(SORTABLE_COLUMNS)}"),
    descending: bool = Query(False, description="Sort descending"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Items per page"),
):
    """
    List drafts with filters.

    Returns paginated drafts, by default in CSV row order.
    """
    try:
        if (
            min_confidence is not None
            and max_confidence is not None
            and min_confidence > max_confidence
        ):
            raise ValidationError(
                "min_confidence cannot exceed max_confidence",
                details={"min_confidence": min_confidence, "max_confidence": max_confidence}
            )

        drafts, total = get_draft_service().list_drafts(
            job_id=job_id,
            status=status,
            min_confidence=min_confidence,
            max_confidence=max_confidence,
            sort_by=sort_by,
            descending=descending,
            page=page,
            page_size=page_size,
        )
        return DraftListResponse.create(
            data=drafts,
            total=total,
            page=page,
            page_size=page_size
        )
    except Exception as e:
        return handle_error(e)


@router.get("/{draft_id}", response_model=DraftDetailResponse)
async def get_draft(draft_id: str):
    """Get a draft with its parent job summary."""
    try:
        return get_draft_service().get_draft(draft_id)
    except Exception as e:
        return handle_error(e)


@router.patch("/{draft_id}", response_model=DraftResponse)
async def update_draft(draft_id: str, data: DraftUpdate):
    """
    Manually edit a draft.

    Editing ai_suggestion marks the draft MANUALLY_EDITED.

    Raises:
        404: Draft not found
        409: Draft already approved/rejected, or status change not allowed
    """
    try:
        return get_draft_service().apply_manual_edit(draft_id, data)
    except Exception as e:
        return handle_error(e)


@router.post("/{draft_id}/approve", response_model=DraftResponse)
async def approve_draft(draft_id: str):
    """Approve a draft for publishing."""
    try:
        return get_draft_service().approve(draft_id)
    except Exception as e:
        return handle_error(e)


@router.post("/{draft_id}/reject", response_model=DraftResponse)
async def reject_draft(draft_id: str, data: Optional[DraftRejectRequest] = Body(None)):
    """Reject a draft, optionally with a reason."""
    try:
        return get_draft_service().reject(draft_id, notes=data.notes if data else None)
    except Exception as e:
        return handle_error(e)
