"""
Import pipeline orchestrator.

Drives an import job through its stages with short, repeatable batch calls:

    ingestion → enrichment batches → image-match batches → image-process batches

Each batch call selects its drafts by state, works through them in row order,
persists every draft as soon as it is done and reports how much work is
left. A call that stops early (time budget, provider or storage outage) never
loses the drafts it already finished; the caller simply invokes it again.
"""

import time
from typing import Callable, Optional

import structlog

from config import settings
from exceptions import (
    ArchiveError,
    AppError,
    JobNotRunnableError,
    MissingArchiveError,
    ProviderUnavailableError,
    StorageObjectNotFoundError,
    StorageUnavailableError,
    ImageDecodeError,
)
from models.draft import ACTIVE_DRAFT_STATUSES, DraftImageStatus, DraftResponse, DraftStatus
from models.enrichment import display_name
from models.import_job import (
    ArchiveAttachResponse,
    ArchiveIndexPreview,
    EnrichmentBatchResult,
    ImageJobStatus,
    ImageMatchBatchResult,
    ImageProcessBatchResult,
    ImportJobConfig,
    ImportJobResponse,
    ImportJobStatus,
    STOPPED_JOB_STATUSES,
)
from services.archive_service import ImageArchive, index_archive
from services.csv_ingestion_service import parse_csv
from services.draft_service import DraftService, get_draft_service
from services.enrichment_service import (
    EnrichmentProviderError,
    EnrichmentService,
    get_enrichment_service,
)
from services.fuzzy_matcher import match_text
from services.image_service import OUTPUT_CONTENT_TYPE, ImageService, get_image_service
from services.import_job_service import ImportJobService, get_import_job_service
from services.master_list_service import MasterListService, get_master_list_service
from services.storage_service import StorageService, get_storage_service, image_storage_path
from utils.text_utils import slugify

logger = structlog.get_logger(__name__)

# Longest reason kept in a draft's notes
MAX_NOTE_LENGTH = 1000


class ImportPipelineService:
    """
    Orchestrates ingestion and the three batch stages of an import job.

    Collaborators and the clock are injectable; the time budget defaults to
    the invocation ceiling minus headroom from settings.
    """

    def __init__(
        self,
        job_service: Optional[ImportJobService] = None,
        draft_service: Optional[DraftService] = None,
        storage_service: Optional[StorageService] = None,
        enrichment_service: Optional[EnrichmentService] = None,
        master_list_service: Optional[MasterListService] = None,
        image_service: Optional[ImageService] = None,
        clock: Callable[[], float] = time.monotonic,
        time_budget_seconds: Optional[float] = None,
    ):
        self.draft_service = draft_service or get_draft_service()
        self.job_service = job_service or get_import_job_service()
        self.storage_service = storage_service or get_storage_service()
        self.enrichment_service = enrichment_service or get_enrichment_service()
        self.master_list_service = master_list_service or get_master_list_service()
        self.image_service = image_service or get_image_service()
        self._clock = clock
        self.time_budget_seconds = (
            settings.batch_time_budget_seconds
            if time_budget_seconds is None
            else time_budget_seconds
        )

    # ===================
    # HELPERS
    # ===================

    def _deadline(self) -> float:
        return self._clock() + self.time_budget_seconds

    def _out_of_time(self, deadline: float, handled: int) -> bool:
        """True once the budget is spent; the first draft of a call always runs."""
        return handled > 0 and self._clock() >= deadline

    def _enrichment_remaining(self, job_id: str) -> int:
        return self.draft_service.count_matching(
            job_id,
            statuses=[DraftStatus.PENDING_REVIEW],
            suggestion_missing=True,
        )

    def _match_remaining(self, job_id: str) -> int:
        return self.draft_service.count_matching(
            job_id,
            statuses=ACTIVE_DRAFT_STATUSES,
            image_statuses=[DraftImageStatus.UNMATCHED],
            match_unattempted=True,
        )

    def _process_remaining(self, job_id: str) -> int:
        return self.draft_service.count_matching(
            job_id,
            statuses=ACTIVE_DRAFT_STATUSES,
            image_statuses=[DraftImageStatus.MATCHED],
        )

    def _start(self, job_id: str) -> ImportJobResponse:
        """Load a job and move it to PROCESSING on its first batch."""
        job = self.job_service.get_job(job_id)
        if job.status == ImportJobStatus.PENDING:
            job = self.job_service.update_job(job_id, {"status": ImportJobStatus.PROCESSING})
            logger.info("import_job_started", job_id=job_id)
        return job

    def _start_images(self, job: ImportJobResponse) -> ImportJobResponse:
        if job.image_status == ImageJobStatus.NOT_STARTED:
            job = self.job_service.update_job(job.id, {"image_status": ImageJobStatus.PROCESSING})
            logger.info("image_stage_started", job_id=job.id)
        return job

    def _refresh_completion(self, job_id: str) -> ImportJobResponse:
        """
        Flip the image sub-stage and the job to COMPLETED when no work is left.

        Stopped jobs are left untouched.
        """
        job = self.job_service.get_job(job_id)
        if job.status in STOPPED_JOB_STATUSES:
            return job

        fields = {}
        image_done = True
        if job.has_archive:
            image_done = (
                self._match_remaining(job_id) == 0
                and self._process_remaining(job_id) == 0
            )
            if image_done and job.image_status != ImageJobStatus.COMPLETED:
                fields["image_status"] = ImageJobStatus.COMPLETED

        if (
            image_done
            and job.status != ImportJobStatus.COMPLETED
            and self._enrichment_remaining(job_id) == 0
        ):
            fields["status"] = ImportJobStatus.COMPLETED

        if not fields:
            return job

        job = self.job_service.update_job(job_id, fields)
        logger.info(
            "import_job_progressed",
            job_id=job_id,
            status=job.status.value,
            image_status=job.image_status.value
        )
        return job

    def _require_archive(self, job: ImportJobResponse) -> str:
        if not job.archive_path:
            self.job_service.mark_failed(job.id, "No image archive attached")
            raise MissingArchiveError(job.id)
        return job.archive_path

    def _download_archive(
        self,
        job_id: str,
        archive_path: str,
        remaining: Callable[[str], int],
    ) -> bytes:
        """
        Fetch the job's archive for an image stage.

        A deleted archive fails the job; an outage is reported with the
        stage's remaining count so the caller can retry.
        """
        try:
            return self.storage_service.download(archive_path)
        except StorageObjectNotFoundError:
            self.job_service.mark_failed(job_id, f"Image archive {archive_path} no longer exists")
            raise MissingArchiveError(job_id, archive_path)
        except StorageUnavailableError as e:
            e.details = {**e.details, "job_id": job_id, "remaining": remaining(job_id)}
            raise

    @staticmethod
    def _refused(job: ImportJobResponse) -> str:
        return f"Import job is {job.status.value}; no further batches will run"

    # ===================
    # INGESTION
    # ===================

    def create_job_from_csv(
        self,
        csv_path: str,
        csv_bytes: Optional[bytes] = None,
        config: Optional[ImportJobConfig] = None,
    ) -> ImportJobResponse:
        """
        Create a job and one draft per CSV row.

        Args:
            csv_path: Storage path of the uploaded CSV
            csv_bytes: CSV content, downloaded from storage when omitted
            config: Optional job configuration

        Returns:
            Created ImportJobResponse (status PENDING)

        Raises:
            CSVParseError / CSVMissingColumnsError: Malformed CSV (no job is created)
            StorageObjectNotFoundError: No CSV at csv_path
            StorageUnavailableError: CSV could not be downloaded
        """
        content = csv_bytes if csv_bytes is not None else self.storage_service.download(csv_path)
        parsed = parse_csv(content)

        job_config = {"model_name": settings.ai_model}
        if config:
            job_config.update(config.model_dump(exclude_none=True))

        job = self.job_service.create_job(csv_path, parsed.total_rows, job_config)
        try:
            self.draft_service.create_drafts(job.id, parsed.rows)
        except AppError as e:
            self.job_service.mark_failed(job.id, f"Draft creation failed: {e.message}")
            raise

        logger.info(
            "import_job_ingested",
            job_id=job.id,
            rows=parsed.total_rows,
            columns=parsed.headers
        )
        return job

    def attach_archive(self, job_id: str, archive_path: str) -> ArchiveAttachResponse:
        """
        Attach (or replace) the image archive of a job.

        Drafts that are not yet processed or reviewed go back to UNMATCHED
        with no match attempt recorded, so the next match batch re-runs them.

        Raises:
            ImportJobNotFoundError: If job doesn't exist
            JobNotRunnableError: If the job is cancelled or failed
            ArchiveError: If the file is not a valid zip archive
            StorageObjectNotFoundError: If nothing is stored at archive_path
            StorageUnavailableError: If the archive cannot be downloaded
        """
        job = self.job_service.get_job(job_id)
        if job.status in STOPPED_JOB_STATUSES:
            raise JobNotRunnableError(job_id, job.status.value)

        archive = self.storage_service.download(archive_path)
        entries = index_archive(archive)

        self.draft_service.reset_image_state(job_id)
        already_processed = self.draft_service.count_matching(
            job_id, image_statuses=[DraftImageStatus.PROCESSED]
        )

        fields = {
            "archive_path": archive_path,
            "image_status": ImageJobStatus.NOT_STARTED,
            "image_total": already_processed,
            "image_processed": already_processed,
        }
        if job.status == ImportJobStatus.COMPLETED:
            fields["status"] = ImportJobStatus.PROCESSING
        job = self.job_service.update_job(job_id, fields)

        logger.info(
            "archive_attached",
            job_id=job_id,
            archive_path=archive_path,
            images=len(entries)
        )
        return ArchiveAttachResponse(
            job=job,
            images=[ArchiveIndexPreview(filename=e.filename, size=e.size) for e in entries],
        )

    # ===================
    # ENRICHMENT
    # ===================

    def run_enrichment_batch(self, job_id: str, batch_size: Optional[int] = None) -> EnrichmentBatchResult:
        """
        Enrich the next batch of drafts that have no AI suggestion yet.

        Args:
            job_id: Import job UUID
            batch_size: Drafts per call (job config or settings when omitted)

        Returns:
            EnrichmentBatchResult

        Raises:
            ImportJobNotFoundError: If job doesn't exist
            ProviderUnavailableError: If the model call failed; no draft was touched
        """
        deadline = self._deadline()
        job = self.job_service.get_job(job_id)
        if job.status in STOPPED_JOB_STATUSES:
            return EnrichmentBatchResult(
                job_id=job_id,
                job_status=job.status,
                image_status=job.image_status,
                success=False,
                message=self._refused(job),
                remaining=self._enrichment_remaining(job_id),
            )

        job = self._start(job_id)
        limit = batch_size or job.config.get("batch_size") or settings.enrichment_batch_size

        drafts = self.draft_service.find_many_by_job_and_status(
            job_id,
            statuses=[DraftStatus.PENDING_REVIEW],
            suggestion_missing=True,
            limit=limit,
        )

        logger.info("enrichment_batch_started", job_id=job_id, drafts=len(drafts))
        processed = matched = unmatched = failed = skipped = 0

        if drafts:
            context = self.master_list_service.get_context()
            outcome = self.enrichment_service.enrich(
                [(draft.row_index, draft.raw_data) for draft in drafts],
                context,
            )

            if isinstance(outcome, EnrichmentProviderError):
                remaining = self._enrichment_remaining(job_id)
                logger.error(
                    "enrichment_batch_provider_error",
                    job_id=job_id,
                    error=outcome.error,
                    remaining=remaining
                )
                raise ProviderUnavailableError(
                    "AI provider unavailable; retry the batch later",
                    details={
                        "job_id": job_id,
                        "remaining": remaining,
                        "error": outcome.error,
                        "error_type": outcome.error_type,
                    }
                )

            results = {result.row_index: result for result in outcome.results}
            for draft in drafts:
                if self._out_of_time(deadline, processed + failed + skipped):
                    logger.warning(
                        "enrichment_batch_deadline_reached",
                        job_id=job_id,
                        handled=processed + failed + skipped
                    )
                    break

                result = results.get(draft.row_index)
                if result is not None and result.ok:
                    suggestion = self.master_list_service.resolve_matches(result.suggestion, context)
                    fields = {
                        "ai_suggestion": suggestion.to_payload(),
                        "ai_confidence": suggestion.overall_confidence,
                    }
                else:
                    reason = result.error if result is not None else "No suggestion returned for this row"
                    suggestion = None
                    fields = {
                        "status": DraftStatus.AI_ERROR,
                        "notes": f"AI enrichment failed: {reason}"[:MAX_NOTE_LENGTH],
                    }

                # Only lands if no reviewer touched the draft during the model call
                written = self.draft_service.update_draft(
                    draft.id,
                    fields,
                    statuses=[DraftStatus.PENDING_REVIEW],
                    suggestion_missing=True,
                )
                if written is None:
                    skipped += 1
                elif suggestion is None:
                    failed += 1
                else:
                    processed += 1
                    if suggestion.matched_any_master:
                        matched += 1
                    else:
                        unmatched += 1

            self.job_service.increment_counters(
                job_id, processed_rows=processed, failed_rows=failed
            )

        remaining = self._enrichment_remaining(job_id)
        job = self._refresh_completion(job_id)

        logger.info(
            "enrichment_batch_completed",
            job_id=job_id,
            processed=processed,
            matched=matched,
            unmatched=unmatched,
            failed=failed,
            skipped=skipped,
            remaining=remaining
        )
        return EnrichmentBatchResult(
            job_id=job_id,
            job_status=job.status,
            image_status=job.image_status,
            remaining=remaining,
            processed=processed,
            matched=matched,
            unmatched=unmatched,
            failed=failed,
            skipped=skipped,
        )

    # ===================
    # IMAGE MATCHING
    # ===================

    def run_image_match_batch(self, job_id: str, batch_size: Optional[int] = None) -> ImageMatchBatchResult:
        """
        Match the next batch of drafts against the job's image archive.

        The archive is downloaded and indexed on every call.

        Raises:
            ImportJobNotFoundError: If job doesn't exist
            MissingArchiveError: If no archive is attached or it was deleted (job is marked FAILED)
            StorageUnavailableError: If the archive cannot be downloaded
        """
        deadline = self._deadline()
        job = self.job_service.get_job(job_id)
        if job.status in STOPPED_JOB_STATUSES:
            return ImageMatchBatchResult(
                job_id=job_id,
                job_status=job.status,
                image_status=job.image_status,
                success=False,
                message=self._refused(job),
                remaining=self._match_remaining(job_id),
            )

        archive_path = self._require_archive(job)
        job = self._start_images(self._start(job_id))

        archive = self._download_archive(job_id, archive_path, self._match_remaining)
        entries = index_archive(archive)
        candidates = [entry.as_candidate() for entry in entries]
        threshold = settings.image_match_threshold

        drafts = self.draft_service.find_many_by_job_and_status(
            job_id,
            statuses=ACTIVE_DRAFT_STATUSES,
            image_statuses=[DraftImageStatus.UNMATCHED],
            match_unattempted=True,
            limit=batch_size or settings.image_match_batch_size,
        )

        logger.info(
            "image_match_batch_started",
            job_id=job_id,
            drafts=len(drafts),
            archive_images=len(entries)
        )
        matched = unmatched = missing = skipped = 0

        for draft in drafts:
            handled = matched + unmatched + missing + skipped
            if self._out_of_time(deadline, handled):
                logger.warning(
                    "image_match_batch_deadline_reached",
                    job_id=job_id,
                    handled=handled
                )
                break

            name = display_name(draft.raw_data, draft.ai_suggestion)
            result = match_text(name, candidates, threshold) if name else None
            if not name:
                fields = {
                    "image_status": DraftImageStatus.MISSING,
                    "image_match_confidence": 0.0,
                }
            elif result:
                fields = {
                    "image_status": DraftImageStatus.MATCHED,
                    "image_raw_filename": result.id,
                    "image_match_confidence": result.confidence,
                }
            else:
                fields = {"image_match_confidence": 0.0}

            written = self.draft_service.update_draft(
                draft.id,
                fields,
                statuses=ACTIVE_DRAFT_STATUSES,
                image_statuses=[DraftImageStatus.UNMATCHED],
                match_unattempted=True,
            )
            if written is None:
                skipped += 1
            elif not name:
                missing += 1
            elif result:
                matched += 1
            else:
                unmatched += 1

        self.job_service.increment_counters(job_id, image_total=matched)

        remaining = self._match_remaining(job_id)
        job = self._refresh_completion(job_id)

        logger.info(
            "image_match_batch_completed",
            job_id=job_id,
            matched=matched,
            unmatched=unmatched,
            missing=missing,
            skipped=skipped,
            remaining=remaining
        )
        return ImageMatchBatchResult(
            job_id=job_id,
            job_status=job.status,
            image_status=job.image_status,
            remaining=remaining,
            matched=matched,
            unmatched=unmatched,
            missing=missing,
            skipped=skipped,
            archive_images=len(entries),
        )

    # ===================
    # IMAGE PROCESSING
    # ===================

    def _slug_for(self, draft: DraftResponse) -> str:
        suggestion = draft.ai_suggestion or {}
        slug = slugify(suggestion.get("slug") or "") or slugify(display_name(draft.raw_data, suggestion))
        return slug or "product"

    def _mark_image_failed(self, draft: DraftResponse, reason: str, expected: dict) -> bool:
        """Mark a draft's image MISSING; False if the draft moved on meanwhile."""
        written = self.draft_service.update_draft(draft.id, {
            "image_status": DraftImageStatus.MISSING,
            "image_raw_filename": None,
        }, **expected)
        if written is None:
            return False
        logger.warning(
            "draft_image_failed",
            draft_id=draft.id,
            row_index=draft.row_index,
            reason=reason
        )
        return True

    def run_image_process_batch(self, job_id: str, batch_size: Optional[int] = None) -> ImageProcessBatchResult:
        """
        Transform and upload the images of the next batch of matched drafts.

        Per-draft problems (file absent from the archive, undecodable image)
        mark that draft MISSING and are listed in ``errors``.

        Raises:
            ImportJobNotFoundError: If job doesn't exist
            MissingArchiveError: If no archive is attached or it was deleted (job is marked FAILED)
            ArchiveError: If the stored archive is no longer a readable zip
            StorageUnavailableError: Download or upload failed; finished drafts are kept
        """
        deadline = self._deadline()
        job = self.job_service.get_job(job_id)
        if job.status in STOPPED_JOB_STATUSES:
            return ImageProcessBatchResult(
                job_id=job_id,
                job_status=job.status,
                image_status=job.image_status,
                success=False,
                message=self._refused(job),
                remaining=self._process_remaining(job_id),
            )

        archive_path = self._require_archive(job)
        job = self._start_images(self._start(job_id))

        drafts = self.draft_service.find_many_by_job_and_status(
            job_id,
            statuses=ACTIVE_DRAFT_STATUSES,
            image_statuses=[DraftImageStatus.MATCHED],
            limit=batch_size or settings.image_process_batch_size,
        )

        logger.info("image_process_batch_started", job_id=job_id, drafts=len(drafts))
        processed = failed = skipped = 0
        errors: list[str] = []

        if drafts:
            archive_bytes = self._download_archive(job_id, archive_path, self._process_remaining)
            # Still MATCHED and not closed by a reviewer since selection
            expected = {
                "statuses": ACTIVE_DRAFT_STATUSES,
                "image_statuses": [DraftImageStatus.MATCHED],
            }

            try:
                with ImageArchive(archive_bytes) as archive:
                    for draft in drafts:
                        handled = processed + failed + skipped
                        if self._out_of_time(deadline, handled):
                            logger.warning(
                                "image_process_batch_deadline_reached",
                                job_id=job_id,
                                handled=handled
                            )
                            break

                        filename = draft.image_raw_filename or ""
                        try:
                            image_bytes = archive.read(filename) if filename else None
                            if image_bytes is None:
                                raise ArchiveError(f"{filename or 'image'} not found in archive")
                            output = self.image_service.transform(image_bytes)
                        except (ArchiveError, ImageDecodeError) as e:
                            if self._mark_image_failed(draft, e.message, expected):
                                errors.append(f"Row {draft.row_index} ({filename}): {e.message}")
                                failed += 1
                            else:
                                skipped += 1
                            continue

                        path = image_storage_path(job_id, self._slug_for(draft), draft.row_index)
                        url = self.storage_service.upload(path, output, OUTPUT_CONTENT_TYPE)

                        written = self.draft_service.update_draft(draft.id, {
                            "image_status": DraftImageStatus.PROCESSED,
                            "image_url": url,
                        }, **expected)
                        if written is None:
                            skipped += 1
                        else:
                            processed += 1

            except StorageUnavailableError as e:
                self.job_service.increment_counters(
                    job_id, image_total=-failed, image_processed=processed
                )
                remaining = self._process_remaining(job_id)
                logger.error(
                    "image_process_batch_storage_error",
                    job_id=job_id,
                    processed=processed,
                    remaining=remaining
                )
                e.details = {**e.details, "job_id": job_id, "remaining": remaining}
                raise

            self.job_service.increment_counters(
                job_id, image_total=-failed, image_processed=processed
            )

        remaining = self._process_remaining(job_id)
        job = self._refresh_completion(job_id)

        logger.info(
            "image_process_batch_completed",
            job_id=job_id,
            processed=processed,
            failed=failed,
            skipped=skipped,
            remaining=remaining
        )
        return ImageProcessBatchResult(
            job_id=job_id,
            job_status=job.status,
            image_status=job.image_status,
            remaining=remaining,
            processed=processed,
            failed=failed,
            skipped=skipped,
            errors=errors,
        )

    # ===================
    # CONTROL
    # ===================

    def cancel_job(self, job_id: str) -> ImportJobResponse:
        """Cooperatively cancel a job; running batches finish their current draft."""
        return self.job_service.cancel_job(job_id)

    def get_job(self, job_id: str) -> ImportJobResponse:
        return self.job_service.get_job(job_id)


# Singleton instance
_import_pipeline_service: Optional[ImportPipelineService] = None


def get_import_pipeline_service() -> ImportPipelineService:
    """Get or create ImportPipelineService instance."""
    global _import_pipeline_service
    if _import_pipeline_service is None:
        _import_pipeline_service = ImportPipelineService()
    return _import_pipeline_service
