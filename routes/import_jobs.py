"""
Import job API routes.

Creation from an uploaded CSV, archive attachment, the three batch-advance
calls and cancellation. Batch calls are meant to be invoked repeatedly until
``remaining`` reaches zero.
"""

from fastapi import APIRouter, Body, Query
from fastapi.responses import JSONResponse
from typing import Optional
import structlog

from models.import_job import (
    ArchiveAttach,
    ArchiveAttachResponse,
    BatchRequest,
    EnrichmentBatchResult,
    ImageMatchBatchResult,
    ImageProcessBatchResult,
    ImportJobCreate,
    ImportJobListResponse,
    ImportJobResponse,
    ImportJobStatus,
)
from services.import_job_service import get_import_job_service
from services.import_pipeline_service import get_import_pipeline_service
from exceptions import AppError

logger = structlog.get_logger(__name__)

router = APIRouter()


# ===================
# EXCEPTION HANDLER
# ===================

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


def _batch_size(body: Optional[BatchRequest]) -> Optional[int]:
    return body.batch_size if body else None


# ===================
# JOBS
# ===================

@router.post("", response_model=ImportJobResponse, status_code=201)
def create_import_job(data: ImportJobCreate):
    """
    Create an import job from an uploaded CSV.

    The CSV is parsed immediately; a malformed file creates nothing.
    """
    try:
        pipeline = get_import_pipeline_service()
        return pipeline.create_job_from_csv(data.csv_path, config=data.config)
    except Exception as e:
        return handle_error(e)


@router.get("", response_model=ImportJobListResponse)
async def list_import_jobs(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    status: Optional[ImportJobStatus] = Query(None, description="Filter by job status"),
):
    """List import jobs, newest first, with per-status draft counts."""
    try:
        jobs, total = get_import_job_service().list_jobs(
            page=page, page_size=page_size, status=status
        )
        return ImportJobListResponse.create(
            data=jobs,
            total=total,
            page=page,
            page_size=page_size
        )
    except Exception as e:
        return handle_error(e)


@router.get("/{job_id}", response_model=ImportJobResponse)
async def get_import_job(job_id: str):
    """Get a single import job."""
    try:
        return get_import_job_service().get_job(job_id)
    except Exception as e:
        return handle_error(e)


@router.post("/{job_id}/archive", response_model=ArchiveAttachResponse)
def attach_archive(job_id: str, data: ArchiveAttach):
    """
    Attach an uploaded image archive.

    Returns the images found so the uploader can check the archive before
    running the match stage.
    """
    try:
        return get_import_pipeline_service().attach_archive(job_id, data.archive_path)
    except Exception as e:
        return handle_error(e)


@router.post("/{job_id}/cancel", response_model=ImportJobResponse)
async def cancel_import_job(job_id: str):
    """Cancel a job. Batches already running finish their current draft."""
    try:
        return get_import_pipeline_service().cancel_job(job_id)
    except Exception as e:
        return handle_error(e)


# ===================
# BATCH ADVANCE
# ===================

@router.post("/{job_id}/enrich", response_model=EnrichmentBatchResult)
def run_enrichment_batch(job_id: str, body: Optional[BatchRequest] = Body(None)):
    """Enrich the next batch of drafts."""
    try:
        return get_import_pipeline_service().run_enrichment_batch(job_id, _batch_size(body))
    except Exception as e:
        return handle_error(e)


@router.post("/{job_id}/match-images", response_model=ImageMatchBatchResult)
def run_image_match_batch(job_id: str, body: Optional[BatchRequest] = Body(None)):
    """Match the next batch of drafts to archive images."""
    try:
        return get_import_pipeline_service().run_image_match_batch(job_id, _batch_size(body))
    except Exception as e:
        return handle_error(e)


@router.post("/{job_id}/process-images", response_model=ImageProcessBatchResult)
def run_image_process_batch(job_id: str, body: Optional[BatchRequest] = Body(None)):
    """Transform and upload images for the next batch of matched drafts."""
    try:
        return get_import_pipeline_service().run_image_process_batch(job_id, _batch_size(body))
    except Exception as e:
        return handle_error(e)
