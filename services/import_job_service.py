"""
Import job service.

Handles the ai_import_jobs table: creation at ingestion, lookups, listings
with per-status draft counts, counter updates and the stop states.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog

from config import get_supabase_client
from exceptions import (
    DatabaseError,
    ImportJobNotFoundError,
    JobNotRunnableError,
)
from models.import_job import (
    ImportJobStatus,
    ImageJobStatus,
    ImportJobResponse,
    ImportJobWithStats,
)
from services.draft_service import DraftService

logger = structlog.get_logger(__name__)

COUNTER_FIELDS = ("processed_rows", "failed_rows", "image_total", "image_processed")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialize(fields: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in fields.items()
    }


class ImportJobService:
    """
    Import job business logic.

    Jobs are never deleted; a job that should stop is marked CANCELLED or
    FAILED and every later batch call refuses it.
    """

    def __init__(self, draft_service: Optional[DraftService] = None):
        self.db = get_supabase_client()
        self.table = "ai_import_jobs"
        self.draft_service = draft_service or DraftService()

    def create_job(
        self,
        csv_path: str,
        total_rows: int,
        config: Optional[dict] = None,
    ) -> ImportJobResponse:
        """
        Create a PENDING job.

        Args:
            csv_path: Storage path of the source CSV
            total_rows: Number of data rows (one draft each)
            config: Free-form configuration (model name, batch size)

        Returns:
            Created ImportJobResponse
        """
        data = {
            "csv_path": csv_path,
            "status": ImportJobStatus.PENDING.value,
            "total_rows": total_rows,
            "processed_rows": 0,
            "failed_rows": 0,
            "image_status": ImageJobStatus.NOT_STARTED.value,
            "image_total": 0,
            "image_processed": 0,
            "config": config or {},
        }

        try:
            result = self.db.table(self.table).insert(data).execute()
            job = ImportJobResponse(**result.data[0])

            logger.info(
                "import_job_created",
                job_id=job.id,
                csv_path=csv_path,
                total_rows=total_rows
            )
            return job

        except Exception as e:
            logger.error("create_import_job_failed", csv_path=csv_path, error=str(e))
            raise DatabaseError("insert", str(e))

    def get_job(self, job_id: str) -> ImportJobResponse:
        """
        Get a job by ID.

        Raises:
            ImportJobNotFoundError: If job doesn't exist
        """
        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("id", job_id)
                .execute()
            )
            if not result.data:
                raise ImportJobNotFoundError(job_id)

            return ImportJobResponse(**result.data[0])

        except ImportJobNotFoundError:
            raise
        except Exception as e:
            logger.error("get_import_job_failed", job_id=job_id, error=str(e))
            raise DatabaseError("select", str(e))

    def list_jobs(
        self,
        page: int = 1,
        page_size: int = 20,
        status: Optional[ImportJobStatus] = None,
    ) -> tuple[list[ImportJobWithStats], int]:
        """
        List jobs, newest first, with per-status draft counts.

        Returns:
            Tuple of (jobs list, total count)
        """
        logger.info("listing_import_jobs", page=page, page_size=page_size)

        try:
            query = self.db.table(self.table).select("*", count="exact")
            if status:
                query = query.eq("status", status.value)

            offset = (page - 1) * page_size
            result = (
                query.order("created_at", desc=True)
                .range(offset, offset + page_size - 1)
                .execute()
            )
            rows = result.data
            total = result.count or 0

        except Exception as e:
            logger.error("list_import_jobs_failed", error=str(e))
            raise DatabaseError("select", str(e))

        jobs = []
        for row in rows:
            stats = self.draft_service.count_by_status(row["id"])
            jobs.append(ImportJobWithStats(
                **row,
                draft_count=sum(stats.model_dump().values()),
                draft_stats=stats,
            ))

        logger.info("import_jobs_listed", count=len(jobs), total=total)
        return jobs, total

    def update_job(self, job_id: str, fields: dict[str, Any]) -> ImportJobResponse:
        """
        Persist changes to a job.

        Raises:
            ImportJobNotFoundError: If job doesn't exist
        """
        data = _serialize(fields)
        data["updated_at"] = _now()

        try:
            result = (
                self.db.table(self.table)
                .update(data)
                .eq("id", job_id)
                .execute()
            )
            if not result.data:
                raise ImportJobNotFoundError(job_id)

            logger.debug("import_job_updated", job_id=job_id, fields=sorted(fields))
            return ImportJobResponse(**result.data[0])

        except ImportJobNotFoundError:
            raise
        except Exception as e:
            logger.error("update_import_job_failed", job_id=job_id, error=str(e))
            raise DatabaseError("update", str(e))

    def increment_counters(self, job_id: str, **deltas: int) -> ImportJobResponse:
        """
        Add to the job's progress counters.

        Counters are clamped so processed_rows + failed_rows never exceeds
        total_rows and image_processed never exceeds image_total.

        Args:
            job_id: Job UUID
            **deltas: Any of processed_rows, failed_rows, image_total, image_processed

        Returns:
            Updated ImportJobResponse
        """
        unknown = set(deltas) - set(COUNTER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown counters: {sorted(unknown)}")

        job = self.get_job(job_id)
        if not any(deltas.values()):
            return job

        processed = max(0, job.processed_rows + deltas.get("processed_rows", 0))
        failed = max(0, job.failed_rows + deltas.get("failed_rows", 0))
        processed = min(processed, job.total_rows)
        failed = min(failed, job.total_rows - processed)

        image_total = max(0, job.image_total + deltas.get("image_total", 0))
        image_processed = min(
            max(0, job.image_processed + deltas.get("image_processed", 0)),
            image_total,
        )

        return self.update_job(job_id, {
            "processed_rows": processed,
            "failed_rows": failed,
            "image_total": image_total,
            "image_processed": image_processed,
        })

    def cancel_job(self, job_id: str) -> ImportJobResponse:
        """
        Cancel a job; batch calls will refuse it from now on.

        Work already done is kept. Cancelling twice is a no-op.

        Raises:
            ImportJobNotFoundError: If job doesn't exist
            JobNotRunnableError: If the job already completed or failed
        """
        job = self.get_job(job_id)
        if job.status == ImportJobStatus.CANCELLED:
            return job
        if job.status in (ImportJobStatus.COMPLETED, ImportJobStatus.FAILED):
            raise JobNotRunnableError(job_id, job.status.value)

        job = self.update_job(job_id, {"status": ImportJobStatus.CANCELLED})
        logger.info("import_job_cancelled", job_id=job_id)
        return job

    def mark_failed(self, job_id: str, reason: str) -> ImportJobResponse:
        """Mark a job FAILED with a summary of why."""
        job = self.update_job(job_id, {
            "status": ImportJobStatus.FAILED,
            "error_summary": reason,
        })
        logger.warning("import_job_failed", job_id=job_id, reason=reason)
        return job


# Singleton instance
_import_job_service: Optional[ImportJobService] = None


def get_import_job_service() -> ImportJobService:
    """Get or create ImportJobService instance."""
    global _import_job_service
    if _import_job_service is None:
        _import_job_service = ImportJobService()
    return _import_job_service
