"""
Draft service for product draft management.

Handles storage of ai_product_drafts: bulk creation at ingestion, state-filtered
batch selection for the pipeline stages, per-draft updates, listings and the
human review transitions.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from config import get_supabase_client
from exceptions import (
    DatabaseError,
    DraftNotFoundError,
    DraftLockedError,
    InvalidStatusTransitionError,
    ValidationError,
)
from models.draft import (
    DraftCreate,
    DraftStatus,
    DraftImageStatus,
    DraftResponse,
    DraftDetailResponse,
    DraftJobSummary,
    DraftUpdate,
    TERMINAL_DRAFT_STATUSES,
)
from models.enrichment import AISuggestion, describe_errors
from models.import_job import DraftStats

logger = structlog.get_logger(__name__)

# Rows per insert request
INSERT_CHUNK_SIZE = 500

SORTABLE_COLUMNS = ("row_index", "ai_confidence", "created_at", "updated_at", "status")

# Review transitions a human may request, by target status
_ALLOWED_SOURCES = {
    DraftStatus.APPROVED: (DraftStatus.PENDING_REVIEW, DraftStatus.MANUALLY_EDITED),
    DraftStatus.REJECTED: (
        DraftStatus.PENDING_REVIEW,
        DraftStatus.MANUALLY_EDITED,
        DraftStatus.AI_ERROR,
    ),
    DraftStatus.PENDING_REVIEW: (
        DraftStatus.PENDING_REVIEW,
        DraftStatus.MANUALLY_EDITED,
        DraftStatus.AI_ERROR,
    ),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialize(fields: dict[str, Any]) -> dict[str, Any]:
    """Enums to their stored values."""
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in fields.items()
    }


def _values(items: Iterable) -> list:
    return [item.value if isinstance(item, Enum) else item for item in items]


class DraftService:
    """
    Draft business logic.

    Every pipeline stage selects its slice by state filters, so a repeated or
    overlapping call never picks up a draft another call already advanced.
    """

    def __init__(self):
        self.db = get_supabase_client()
        self.table = "ai_product_drafts"
        self.jobs_table = "ai_import_jobs"

    # ===================
    # QUERY HELPERS
    # ===================

    def _apply_filters(
        self,
        query,
        job_id: Optional[str],
        statuses: Optional[Iterable[DraftStatus]] = None,
        image_statuses: Optional[Iterable[DraftImageStatus]] = None,
        suggestion_missing: bool = False,
        match_unattempted: bool = False,
    ):
        if job_id:
            query = query.eq("import_job_id", job_id)
        if statuses is not None:
            query = query.in_("status", _values(statuses))
        if image_statuses is not None:
            query = query.in_("image_status", _values(image_statuses))
        if suggestion_missing:
            query = query.is_("ai_suggestion", "null")
        if match_unattempted:
            query = query.is_("image_match_confidence", "null")
        return query

    def _fetch_row(self, draft_id: str) -> dict:
        result = (
            self.db.table(self.table)
            .select("*")
            .eq("id", draft_id)
            .execute()
        )
        if not result.data:
            raise DraftNotFoundError(draft_id)
        return result.data[0]

    # ===================
    # PIPELINE ACCESS
    # ===================

    def create_drafts(self, job_id: str, rows: list[dict]) -> int:
        """
        Create one PENDING_REVIEW draft per CSV row.

        Args:
            job_id: Parent import job UUID
            rows: Row maps in file order (row_index assigned 1-based)

        Returns:
            Number of drafts created
        """
        logger.info("creating_drafts", job_id=job_id, count=len(rows))

        records = [
            DraftCreate(import_job_id=job_id, row_index=position, raw_data=row).model_dump(mode="json")
            for position, row in enumerate(rows, start=1)
        ]

        try:
            for start in range(0, len(records), INSERT_CHUNK_SIZE):
                self.db.table(self.table).insert(records[start:start + INSERT_CHUNK_SIZE]).execute()
        except Exception as e:
            logger.error("create_drafts_failed", job_id=job_id, error=str(e))
            raise DatabaseError("insert", str(e))

        logger.info("drafts_created", job_id=job_id, count=len(records))
        return len(records)

    def find_many_by_job_and_status(
        self,
        job_id: str,
        statuses: Optional[Iterable[DraftStatus]] = None,
        limit: int = 50,
        image_statuses: Optional[Iterable[DraftImageStatus]] = None,
        suggestion_missing: bool = False,
        match_unattempted: bool = False,
        order_by_row_index: bool = True,
    ) -> list[DraftResponse]:
        """
        Select a bounded batch of drafts in a given state.

        Args:
            job_id: Parent import job UUID
            statuses: Review statuses to include (all when None)
            limit: Maximum drafts returned
            image_statuses: Image statuses to include (all when None)
            suggestion_missing: Only drafts without an AI suggestion
            match_unattempted: Only drafts never tried against an archive
            order_by_row_index: Ascending row order

        Returns:
            List of DraftResponse
        """
        try:
            query = self._apply_filters(
                self.db.table(self.table).select("*"),
                job_id,
                statuses=statuses,
                image_statuses=image_statuses,
                suggestion_missing=suggestion_missing,
                match_unattempted=match_unattempted,
            )
            if order_by_row_index:
                query = query.order("row_index")
            result = query.limit(limit).execute()

            return [DraftResponse(**row) for row in result.data]

        except Exception as e:
            logger.error("find_drafts_failed", job_id=job_id, error=str(e))
            raise DatabaseError("select", str(e))

    def count_matching(
        self,
        job_id: str,
        statuses: Optional[Iterable[DraftStatus]] = None,
        image_statuses: Optional[Iterable[DraftImageStatus]] = None,
        suggestion_missing: bool = False,
        match_unattempted: bool = False,
    ) -> int:
        """Count drafts matching the same filters as find_many_by_job_and_status."""
        try:
            query = self._apply_filters(
                self.db.table(self.table).select("id", count="exact"),
                job_id,
                statuses=statuses,
                image_statuses=image_statuses,
                suggestion_missing=suggestion_missing,
                match_unattempted=match_unattempted,
            )
            result = query.execute()
            return result.count or 0

        except Exception as e:
            logger.error("count_drafts_failed", job_id=job_id, error=str(e))
            raise DatabaseError("count", str(e))

    def update_draft(
        self,
        draft_id: str,
        fields: dict[str, Any],
        statuses: Optional[Iterable[DraftStatus]] = None,
        image_statuses: Optional[Iterable[DraftImageStatus]] = None,
        suggestion_missing: bool = False,
        match_unattempted: bool = False,
    ) -> Optional[DraftResponse]:
        """
        Persist changes to one draft.

        The state filters make the write conditional: it only lands if the
        draft is still in the state the caller selected it in.

        Args:
            draft_id: Draft UUID
            fields: Columns to set
            statuses: Expected review statuses
            image_statuses: Expected image statuses
            suggestion_missing: Expect no AI suggestion yet
            match_unattempted: Expect no image match attempt yet

        Returns:
            Updated DraftResponse, or None when a conditional write found the
            draft already moved on

        Raises:
            DraftNotFoundError: If an unconditional write finds no draft
        """
        data = _serialize(fields)
        data["updated_at"] = _now()
        conditional = (
            statuses is not None
            or image_statuses is not None
            or suggestion_missing
            or match_unattempted
        )

        try:
            query = self._apply_filters(
                self.db.table(self.table).update(data).eq("id", draft_id),
                None,
                statuses=statuses,
                image_statuses=image_statuses,
                suggestion_missing=suggestion_missing,
                match_unattempted=match_unattempted,
            )
            result = query.execute()
            if not result.data:
                if conditional:
                    logger.info(
                        "draft_update_skipped",
                        draft_id=draft_id,
                        fields=sorted(fields),
                        reason="draft no longer in expected state"
                    )
                    return None
                raise DraftNotFoundError(draft_id)

            logger.debug("draft_updated", draft_id=draft_id, fields=sorted(fields))
            return DraftResponse(**result.data[0])

        except DraftNotFoundError:
            raise
        except Exception as e:
            logger.error("update_draft_failed", draft_id=draft_id, error=str(e))
            raise DatabaseError("update", str(e))

    def reset_image_state(self, job_id: str) -> int:
        """
        Clear image matching for every non-terminal, unprocessed draft.

        Used when a (new) archive is attached.

        Returns:
            Number of drafts reset
        """
        try:
            result = (
                self.db.table(self.table)
                .update({
                    "image_status": DraftImageStatus.UNMATCHED.value,
                    "image_raw_filename": None,
                    "image_match_confidence": None,
                    "updated_at": _now(),
                })
                .eq("import_job_id", job_id)
                .in_("status", _values(
                    s for s in DraftStatus if s not in TERMINAL_DRAFT_STATUSES
                ))
                .in_("image_status", _values((
                    DraftImageStatus.UNMATCHED,
                    DraftImageStatus.MATCHED,
                    DraftImageStatus.MISSING,
                )))
                .execute()
            )
            reset = len(result.data or [])
            logger.info("draft_images_reset", job_id=job_id, count=reset)
            return reset

        except Exception as e:
            logger.error("reset_image_state_failed", job_id=job_id, error=str(e))
            raise DatabaseError("update", str(e))

    def count_by_status(self, job_id: str) -> DraftStats:
        """
        Count a job's drafts per review status.

        Args:
            job_id: Parent import job UUID

        Returns:
            DraftStats
        """
        counts = {}
        try:
            for status in DraftStatus:
                result = (
                    self.db.table(self.table)
                    .select("id", count="exact")
                    .eq("import_job_id", job_id)
                    .eq("status", status.value)
                    .execute()
                )
                counts[status.value.lower()] = result.count or 0
        except Exception as e:
            logger.error("count_by_status_failed", job_id=job_id, error=str(e))
            raise DatabaseError("count", str(e))

        return DraftStats(**counts)

    # ===================
    # READ API
    # ===================

    def get_draft(self, draft_id: str) -> DraftDetailResponse:
        """
        Get a draft with its parent job summary.

        Raises:
            DraftNotFoundError: If draft doesn't exist
        """
        logger.debug("getting_draft", draft_id=draft_id)

        try:
            row = self._fetch_row(draft_id)
            job_result = (
                self.db.table(self.jobs_table)
                .select("id, status, csv_path, archive_path, created_at")
                .eq("id", row["import_job_id"])
                .execute()
            )
            job = DraftJobSummary(**job_result.data[0]) if job_result.data else None
            return DraftDetailResponse(**row, import_job=job)

        except DraftNotFoundError:
            raise
        except Exception as e:
            logger.error("get_draft_failed", draft_id=draft_id, error=str(e))
            raise DatabaseError("select", str(e))

    def list_drafts(
        self,
        job_id: Optional[str] = None,
        status: Optional[DraftStatus] = None,
        min_confidence: Optional[float] = None,
        max_confidence: Optional[float] = None,
        sort_by: str = "row_index",
        descending: bool = False,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[DraftResponse], int]:
        """
        List drafts with filters and pagination.

        Args:
            job_id: Restrict to one import job
            status: Restrict to one review status
            min_confidence: Lower bound on ai_confidence (inclusive)
            max_confidence: Upper bound on ai_confidence (inclusive)
            sort_by: One of SORTABLE_COLUMNS
            descending: Sort direction
            page: Page number (1-indexed)
            page_size: Items per page

        Returns:
            Tuple of (drafts list, total count)
        """
        if sort_by not in SORTABLE_COLUMNS:
            sort_by = "row_index"

        logger.info(
            "listing_drafts",
            job_id=job_id,
            status=status.value if status else None,
            page=page,
            page_size=page_size
        )

        try:
            query = self.db.table(self.table).select("*", count="exact")
            if job_id:
                query = query.eq("import_job_id", job_id)
            if status:
                query = query.eq("status", status.value)
            if min_confidence is not None:
                query = query.gte("ai_confidence", min_confidence)
            if max_confidence is not None:
                query = query.lte("ai_confidence", max_confidence)

            offset = (page - 1) * page_size
            query = query.order(sort_by, desc=descending)
            if sort_by != "row_index":
                query = query.order("row_index")
            query = query.range(offset, offset + page_size - 1)

            result = query.execute()
            drafts = [DraftResponse(**row) for row in result.data]
            total = result.count or 0

            logger.info("drafts_listed", count=len(drafts), total=total)
            return drafts, total

        except Exception as e:
            logger.error("list_drafts_failed", error=str(e))
            raise DatabaseError("select", str(e))

    # ===================
    # REVIEW
    # ===================

    @staticmethod
    def _check_transition(draft: DraftResponse, new_status: DraftStatus, has_suggestion: bool) -> None:
        if draft.status == new_status and new_status in TERMINAL_DRAFT_STATUSES:
            raise InvalidStatusTransitionError(
                draft.status.value, new_status.value, "Draft is already in this status"
            )
        if draft.status not in _ALLOWED_SOURCES.get(new_status, ()):
            raise InvalidStatusTransitionError(draft.status.value, new_status.value)
        if new_status == DraftStatus.APPROVED and not has_suggestion:
            raise InvalidStatusTransitionError(
                draft.status.value, new_status.value, "Draft has no AI suggestion to approve"
            )

    @staticmethod
    def _validated_suggestion(draft: DraftResponse, edited: dict[str, Any]) -> AISuggestion:
        """
        Check a reviewer's suggestion against the AISuggestion schema.

        ``row`` defaults to the draft's row and ``overall_confidence`` to
        the draft's current confidence.

        Raises:
            ValidationError: If the edited suggestion does not validate
        """
        payload = dict(edited)
        payload.setdefault("row", draft.row_index)
        if draft.ai_confidence is not None:
            payload.setdefault("overall_confidence", draft.ai_confidence)
        try:
            return AISuggestion.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid ai_suggestion: {describe_errors(e)}",
                details={"draft_id": draft.id, "fields": sorted({
                    str(item["loc"][0]) for item in e.errors() if item.get("loc")
                })}
            ) from e

    def apply_manual_edit(self, draft_id: str, patch: DraftUpdate) -> DraftResponse:
        """
        Apply a reviewer's edit.

        - Editing ai_suggestion marks the draft MANUALLY_EDITED
        - notes can always be changed on a non-terminal draft
        - status may be moved to PENDING_REVIEW, APPROVED or REJECTED

        Raises:
            DraftNotFoundError: If draft doesn't exist
            DraftLockedError: If the draft is already approved or rejected
            InvalidStatusTransitionError: If the status change is not allowed
            ValidationError: If the edited ai_suggestion is invalid
        """
        draft = DraftResponse(**self._fetch_row_logged(draft_id))

        if draft.is_terminal:
            raise DraftLockedError(draft_id, draft.status.value)

        fields: dict[str, Any] = {}
        patched = patch.model_fields_set

        if "notes" in patched:
            fields["notes"] = patch.notes

        if "ai_suggestion" in patched and patch.ai_suggestion is not None:
            suggestion = self._validated_suggestion(draft, patch.ai_suggestion)
            fields["ai_suggestion"] = suggestion.to_payload()
            fields["ai_confidence"] = suggestion.overall_confidence
            fields["status"] = DraftStatus.MANUALLY_EDITED
        elif "status" in patched and patch.status is not None:
            self._check_transition(draft, patch.status, draft.ai_suggestion is not None)
            fields["status"] = patch.status

        if not fields:
            return draft

        updated = self._write_review(draft, fields)
        logger.info(
            "draft_edited",
            draft_id=draft_id,
            fields=sorted(fields),
            status=updated.status.value
        )
        return updated

    def _fetch_row_logged(self, draft_id: str) -> dict:
        try:
            return self._fetch_row(draft_id)
        except DraftNotFoundError:
            raise
        except Exception as e:
            logger.error("get_draft_failed", draft_id=draft_id, error=str(e))
            raise DatabaseError("select", str(e))

    def _write_review(self, draft: DraftResponse, fields: dict[str, Any]) -> DraftResponse:
        """Write a review change only if nobody moved the draft since it was read."""
        updated = self.update_draft(draft.id, fields, statuses=[draft.status])
        if updated is not None:
            return updated

        current = DraftResponse(**self._fetch_row_logged(draft.id))
        if current.is_terminal:
            raise DraftLockedError(draft.id, current.status.value)
        raise InvalidStatusTransitionError(
            current.status.value,
            fields.get("status", current.status).value,
            "Draft changed while being reviewed"
        )

    def approve(self, draft_id: str) -> DraftResponse:
        """
        Mark a draft APPROVED.

        Raises:
            DraftNotFoundError: If draft doesn't exist
            InvalidStatusTransitionError: If the draft cannot be approved
        """
        draft = DraftResponse(**self._fetch_row_logged(draft_id))
        self._check_transition(draft, DraftStatus.APPROVED, draft.ai_suggestion is not None)

        updated = self._write_review(draft, {"status": DraftStatus.APPROVED})
        logger.info("draft_approved", draft_id=draft_id, job_id=draft.import_job_id)
        return updated

    def reject(self, draft_id: str, notes: Optional[str] = None) -> DraftResponse:
        """
        Mark a draft REJECTED, optionally recording why.

        Raises:
            DraftNotFoundError: If draft doesn't exist
            InvalidStatusTransitionError: If the draft cannot be rejected
        """
        draft = DraftResponse(**self._fetch_row_logged(draft_id))
        self._check_transition(draft, DraftStatus.REJECTED, draft.ai_suggestion is not None)

        fields: dict[str, Any] = {"status": DraftStatus.REJECTED}
        if notes:
            fields["notes"] = notes
        updated = self._write_review(draft, fields)
        logger.info("draft_rejected", draft_id=draft_id, job_id=draft.import_job_id)
        return updated


# Singleton instance
_draft_service: Optional[DraftService] = None


def get_draft_service() -> DraftService:
    """Get or create DraftService instance."""
    global _draft_service
    if _draft_service is None:
        _draft_service = DraftService()
    return _draft_service
