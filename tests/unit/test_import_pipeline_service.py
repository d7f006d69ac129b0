"""
Unit tests for ImportPipelineService.

Drives ingestion and the three batch stages against the in-memory Supabase
double, a scripted model and real zip/image payloads.

Run: pytest tests/unit/test_import_pipeline_service.py -v
"""

import httpx
import anthropic
import pytest

from exceptions import (
    ArchiveError,
    CSVMissingColumnsError,
    DatabaseError,
    JobNotRunnableError,
    MissingArchiveError,
    ProviderUnavailableError,
    StorageObjectNotFoundError,
    StorageUnavailableError,
)
from models.draft import DraftUpdate
from models.import_job import ImageJobStatus, ImportJobStatus
from services.image_service import ImageService
from services.import_pipeline_service import ImportPipelineService

from tests.factories import (
    DraftFactory,
    JobFactory,
    MasterFactory,
    echo_response,
    make_csv,
    make_image,
    make_zip,
    model_response,
    prompt_rows,
    suggestion,
)

JOBS = "ai_import_jobs"
DRAFTS = "ai_product_drafts"
IMPORT_BUCKET = "ai-import"
IMAGE_BUCKET = "products"


def drafts_by_row(mock_supabase) -> dict:
    return {row["row_index"]: row for row in mock_supabase.rows(DRAFTS)}


def job_row(mock_supabase, job_id: str) -> dict:
    return next(row for row in mock_supabase.rows(JOBS) if row["id"] == job_id)


def ingest(pipeline, names: list[str]):
    content = make_csv(["name"], [[name] for name in names])
    return pipeline.create_job_from_csv("uploads/catalog.csv", csv_bytes=content)


class SteppingClock:
    """Monotonic clock a test can move forward."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ===================
# INGESTION
# ===================

class TestCreateJobFromCsv:
    """Tests for create_job_from_csv()"""

    def test_creates_job_and_one_draft_per_row(self, pipeline, mock_supabase):
        """Should create a PENDING job with drafts in file order."""
        # Act
        job = ingest(pipeline, ["Napa 500mg", "Seclo 20mg", "Ace Plus"])

        # Assert
        assert job.status == ImportJobStatus.PENDING
        assert job.total_rows == 3
        assert job.config["model_name"]

        drafts = drafts_by_row(mock_supabase)
        assert sorted(drafts) == [1, 2, 3]
        assert drafts[2]["raw_data"] == {"name": "Seclo 20mg"}
        assert all(d["import_job_id"] == job.id for d in drafts.values())
        assert all(d["ai_suggestion"] is None for d in drafts.values())

    def test_downloads_csv_when_no_bytes_given(self, pipeline, mock_supabase):
        """Should read the CSV from the import bucket."""
        mock_supabase.storage.put(
            IMPORT_BUCKET, "uploads/catalog.csv", make_csv(["name"], [["Napa"]])
        )

        job = pipeline.create_job_from_csv("uploads/catalog.csv")

        assert job.total_rows == 1
        assert job.csv_path == "uploads/catalog.csv"

    def test_malformed_csv_creates_nothing(self, pipeline, mock_supabase):
        """Should reject the file before any job or draft exists."""
        content = make_csv(["brand"], [["Napa"]])

        with pytest.raises(CSVMissingColumnsError):
            pipeline.create_job_from_csv("uploads/bad.csv", csv_bytes=content)

        assert mock_supabase.rows(JOBS) == []
        assert mock_supabase.rows(DRAFTS) == []

    def test_draft_insert_failure_marks_job_failed(self, pipeline, mock_supabase):
        """Should leave a FAILED job behind when drafts cannot be written."""
        mock_supabase.fail_on(DRAFTS, "insert")

        with pytest.raises(DatabaseError):
            ingest(pipeline, ["Napa"])

        (job,) = mock_supabase.rows(JOBS)
        assert job["status"] == "FAILED"
        assert job["error_summary"].startswith("Draft creation failed")

    def test_missing_csv_is_input_error(self, pipeline, mock_supabase):
        """Should reject a CSV path with nothing stored behind it."""
        with pytest.raises(StorageObjectNotFoundError) as exc_info:
            pipeline.create_job_from_csv("uploads/missing.csv")

        assert exc_info.value.status_code == 422
        assert exc_info.value.details["path"] == "uploads/missing.csv"
        assert mock_supabase.rows(JOBS) == []

    def test_unreachable_csv_is_storage_error(self, pipeline, mock_supabase):
        """Should report a storage outage as retryable."""
        mock_supabase.storage.put(IMPORT_BUCKET, "uploads/catalog.csv", make_csv(["name"], [["Napa"]]))
        mock_supabase.storage.fail_downloads = True

        with pytest.raises(StorageUnavailableError):
            pipeline.create_job_from_csv("uploads/catalog.csv")


# ===================
# ENRICHMENT
# ===================

class TestRunEnrichmentBatch:
    """Tests for run_enrichment_batch()"""

    def test_batch_enriches_and_persists(self, pipeline, fake_model, mock_supabase):
        """Should store suggestions and move the job along."""
        # Arrange
        job = ingest(pipeline, ["Napa 500mg", "Seclo 20mg"])
        fake_model.queue(echo_response)

        # Act
        result = pipeline.run_enrichment_batch(job.id)

        # Assert
        assert result.success
        assert result.processed == 2
        assert result.failed == 0
        assert result.remaining == 0
        assert result.job_status == ImportJobStatus.COMPLETED

        drafts = drafts_by_row(mock_supabase)
        assert drafts[1]["ai_suggestion"]["brand_name"] == "Napa 500mg"
        assert drafts[1]["ai_confidence"] == 0.9
        assert drafts[1]["status"] == "PENDING_REVIEW"
        assert job_row(mock_supabase, job.id)["processed_rows"] == 2

    def test_master_ids_resolved_before_saving(self, pipeline, fake_model, mock_supabase):
        """Should fill master ids from fuzzy matches of the model's text."""
        # Arrange
        mock_supabase.set_table_data("generics", [
            MasterFactory.generic("Paracetamol", ["Acetaminophen"], id="g-para")
        ])
        job = ingest(pipeline, ["Napa 500mg"])
        fake_model.queue(model_response(
            suggestion(1, generic_name="acetaminophen", generic_match_id="invented")
        ))

        # Act
        result = pipeline.run_enrichment_batch(job.id)

        # Assert
        stored = drafts_by_row(mock_supabase)[1]["ai_suggestion"]
        assert result.matched == 1
        assert stored["generic_match_id"] == "g-para"
        assert stored["generic_confidence"] == 1.0

    def test_batch_size_bounds_the_prompt(self, pipeline, fake_model, mock_supabase):
        """Should send at most batch_size rows, lowest row index first."""
        job = ingest(pipeline, ["A", "B", "C"])
        fake_model.queue(echo_response)

        result = pipeline.run_enrichment_batch(job.id, batch_size=2)

        assert [row["row"] for row in prompt_rows(fake_model.messages.calls[0])] == [1, 2]
        assert result.remaining == 1
        assert result.job_status == ImportJobStatus.PROCESSING

    def test_invalid_rows_become_ai_error(self, pipeline, fake_model, mock_supabase):
        """Should mark rows that never validated as AI_ERROR with the reason."""
        # Arrange
        job = ingest(pipeline, ["Napa", "Seclo"])
        broken = suggestion(2)
        del broken["overall_confidence"]
        fake_model.queue(
            model_response(suggestion(1), broken),
            model_response(suggestion(1), broken),
        )

        # Act
        result = pipeline.run_enrichment_batch(job.id)

        # Assert
        drafts = drafts_by_row(mock_supabase)
        assert (result.processed, result.failed) == (1, 1)
        assert drafts[1]["status"] == "PENDING_REVIEW"
        assert drafts[2]["status"] == "AI_ERROR"
        assert drafts[2]["notes"].startswith("AI enrichment failed:")
        assert "overall_confidence" in drafts[2]["notes"]
        assert job_row(mock_supabase, job.id)["failed_rows"] == 1

    def test_provider_error_touches_nothing(self, pipeline, fake_model, mock_supabase):
        """Should raise a 503-style error and leave every draft pending."""
        # Arrange
        job = ingest(pipeline, ["Napa", "Seclo"])
        fake_model.queue(anthropic.APIConnectionError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        ))

        # Act
        with pytest.raises(ProviderUnavailableError) as exc_info:
            pipeline.run_enrichment_batch(job.id)

        # Assert
        assert exc_info.value.status_code == 503
        assert exc_info.value.details["remaining"] == 2
        drafts = drafts_by_row(mock_supabase)
        assert all(d["status"] == "PENDING_REVIEW" for d in drafts.values())
        assert all(d["ai_suggestion"] is None for d in drafts.values())
        assert job_row(mock_supabase, job.id)["processed_rows"] == 0

    def test_repeat_call_after_completion_does_nothing(self, pipeline, fake_model):
        """Should not call the model once every draft has a suggestion."""
        job = ingest(pipeline, ["Napa"])
        fake_model.queue(echo_response)
        pipeline.run_enrichment_batch(job.id)

        result = pipeline.run_enrichment_batch(job.id)

        assert result.processed == 0
        assert result.remaining == 0
        assert len(fake_model.messages.calls) == 1

    def test_deadline_keeps_finished_drafts(self, mock_db, enrichment_service, fake_model, mock_supabase):
        """Should persist what it finished before the budget ran out and resume later."""
        # Arrange
        clock = SteppingClock()
        pipeline = ImportPipelineService(
            enrichment_service=enrichment_service,
            image_service=ImageService(max_width=800, quality=80, watermark=b""),
            clock=clock,
            time_budget_seconds=50,
        )
        job = ingest(pipeline, ["Napa", "Seclo", "Ace"])

        def slow_model(kwargs):
            clock.now += 60
            return echo_response(kwargs)

        fake_model.queue(slow_model, echo_response)

        # Act
        first = pipeline.run_enrichment_batch(job.id)
        second = pipeline.run_enrichment_batch(job.id)

        # Assert
        assert (first.processed, first.remaining) == (1, 2)
        assert [row["row"] for row in prompt_rows(fake_model.messages.calls[1])] == [2, 3]
        assert (second.processed, second.remaining) == (2, 0)
        drafts = drafts_by_row(mock_supabase)
        assert all(d["ai_suggestion"] is not None for d in drafts.values())
        assert job_row(mock_supabase, job.id)["processed_rows"] == 3

    def test_cancelled_job_refuses_work(self, pipeline, fake_model):
        """Should report success=False without calling the model."""
        job = ingest(pipeline, ["Napa"])
        pipeline.cancel_job(job.id)

        result = pipeline.run_enrichment_batch(job.id)

        assert not result.success
        assert result.job_status == ImportJobStatus.CANCELLED
        assert result.remaining == 1
        assert fake_model.messages.calls == []

    def test_rejection_during_model_call_is_kept(self, pipeline, fake_model, mock_supabase):
        """Should not overwrite a draft a reviewer rejected while the model was answering."""
        # Arrange
        job = ingest(pipeline, ["Napa", "Seclo"])
        napa_id = drafts_by_row(mock_supabase)[1]["id"]

        def reject_then_fail(kwargs):
            pipeline.draft_service.reject(napa_id, notes="Discontinued")
            return "not json"

        fake_model.queue(reject_then_fail, "still not json")

        # Act
        result = pipeline.run_enrichment_batch(job.id)

        # Assert
        drafts = drafts_by_row(mock_supabase)
        assert drafts[1]["status"] == "REJECTED"
        assert drafts[1]["notes"] == "Discontinued"
        assert drafts[2]["status"] == "AI_ERROR"
        assert (result.failed, result.skipped) == (1, 1)
        assert job_row(mock_supabase, job.id)["failed_rows"] == 1

    def test_manual_edit_during_model_call_is_kept(self, pipeline, fake_model, mock_supabase):
        """Should keep a reviewer's suggestion over the model's late answer."""
        # Arrange
        job = ingest(pipeline, ["Napa", "Seclo"])
        napa_id = drafts_by_row(mock_supabase)[1]["id"]

        def edit_then_answer(kwargs):
            pipeline.draft_service.apply_manual_edit(napa_id, DraftUpdate(
                ai_suggestion={"brand_name": "Napa Extra", "overall_confidence": 1.0}
            ))
            return echo_response(kwargs)

        fake_model.queue(edit_then_answer)

        # Act
        result = pipeline.run_enrichment_batch(job.id)

        # Assert
        drafts = drafts_by_row(mock_supabase)
        assert drafts[1]["status"] == "MANUALLY_EDITED"
        assert drafts[1]["ai_suggestion"]["brand_name"] == "Napa Extra"
        assert drafts[1]["ai_confidence"] == 1.0
        assert drafts[2]["ai_suggestion"]["brand_name"] == "Seclo"
        assert (result.processed, result.skipped) == (1, 1)
        assert job_row(mock_supabase, job.id)["processed_rows"] == 1


# ===================
# ARCHIVES AND IMAGE MATCHING
# ===================

class TestAttachArchive:
    """Tests for attach_archive()"""

    def test_attach_indexes_and_resets(self, pipeline, mock_supabase):
        """Should record the archive and list its images."""
        # Arrange
        job = ingest(pipeline, ["Napa"])
        mock_supabase.storage.put(IMPORT_BUCKET, "uploads/images.zip", make_zip({
            "napa.jpg": make_image(format="JPEG"),
            "readme.txt": b"hello",
        }))

        # Act
        response = pipeline.attach_archive(job.id, "uploads/images.zip")

        # Assert
        assert response.job.archive_path == "uploads/images.zip"
        assert response.job.image_status == ImageJobStatus.NOT_STARTED
        assert [image.filename for image in response.images] == ["napa.jpg"]

    def test_invalid_zip_rejected(self, pipeline, mock_supabase):
        """Should raise ArchiveError and leave the job without an archive."""
        job = ingest(pipeline, ["Napa"])
        mock_supabase.storage.put(IMPORT_BUCKET, "uploads/images.zip", b"not a zip")

        with pytest.raises(ArchiveError):
            pipeline.attach_archive(job.id, "uploads/images.zip")

        assert job_row(mock_supabase, job.id)["archive_path"] is None

    def test_cancelled_job_refused(self, pipeline, mock_supabase):
        """Should not attach archives to stopped jobs."""
        job = ingest(pipeline, ["Napa"])
        pipeline.cancel_job(job.id)

        with pytest.raises(JobNotRunnableError):
            pipeline.attach_archive(job.id, "uploads/images.zip")

    def test_replacing_archive_rematches(self, pipeline, mock_supabase):
        """Should clear earlier match attempts so the next batch retries them."""
        # Arrange
        job = ingest(pipeline, ["Napa"])
        mock_supabase.storage.put(IMPORT_BUCKET, "uploads/a.zip", make_zip({"other.png": make_image()}))
        mock_supabase.storage.put(IMPORT_BUCKET, "uploads/b.zip", make_zip({"napa.png": make_image()}))
        pipeline.attach_archive(job.id, "uploads/a.zip")
        first = pipeline.run_image_match_batch(job.id)

        # Act
        pipeline.attach_archive(job.id, "uploads/b.zip")
        second = pipeline.run_image_match_batch(job.id)

        # Assert
        assert first.unmatched == 1
        assert second.matched == 1
        assert drafts_by_row(mock_supabase)[1]["image_raw_filename"] == "napa.png"


class TestRunImageMatchBatch:
    """Tests for run_image_match_batch()"""

    def test_missing_archive_fails_job(self, pipeline, mock_supabase):
        """Should mark the job FAILED when no archive is attached."""
        job = ingest(pipeline, ["Napa"])

        with pytest.raises(MissingArchiveError) as exc_info:
            pipeline.run_image_match_batch(job.id)

        assert exc_info.value.status_code == 409
        assert job_row(mock_supabase, job.id)["status"] == "FAILED"

    def test_zero_image_archive(self, pipeline, mock_supabase):
        """Should attempt every draft, match none and finish the image stage."""
        # Arrange
        job = ingest(pipeline, ["Napa", "Seclo"])
        mock_supabase.storage.put(IMPORT_BUCKET, "uploads/empty.zip", make_zip({"notes.txt": b"x"}))
        pipeline.attach_archive(job.id, "uploads/empty.zip")

        # Act
        result = pipeline.run_image_match_batch(job.id)

        # Assert
        assert result.archive_images == 0
        assert (result.matched, result.unmatched) == (0, 2)
        assert result.remaining == 0
        assert result.image_status == ImageJobStatus.COMPLETED
        drafts = drafts_by_row(mock_supabase)
        assert all(d["image_status"] == "UNMATCHED" for d in drafts.values())
        assert all(d["image_match_confidence"] == 0.0 for d in drafts.values())

    def test_nameless_draft_marked_missing(self, pipeline, mock_supabase):
        """Should mark drafts without any usable name MISSING."""
        mock_supabase.set_table_data(JOBS, [
            JobFactory.create(id="job-1", status="PROCESSING", total_rows=1,
                              archive_path="uploads/images.zip")
        ])
        mock_supabase.set_table_data(DRAFTS, [DraftFactory.create("job-1", name=None)])
        mock_supabase.storage.put(IMPORT_BUCKET, "uploads/images.zip", make_zip({"napa.png": make_image()}))

        result = pipeline.run_image_match_batch("job-1")

        assert result.missing == 1
        assert drafts_by_row(mock_supabase)[1]["image_status"] == "MISSING"

    def test_archive_download_failure(self, pipeline, mock_supabase):
        """Should surface storage outages with the remaining count and touch no draft."""
        mock_supabase.set_table_data(JOBS, [
            JobFactory.create(id="job-1", status="PROCESSING", total_rows=1,
                              archive_path="uploads/images.zip")
        ])
        mock_supabase.set_table_data(DRAFTS, [DraftFactory.create("job-1")])
        mock_supabase.storage.fail_downloads = True

        with pytest.raises(StorageUnavailableError) as exc_info:
            pipeline.run_image_match_batch("job-1")

        assert exc_info.value.status_code == 503
        assert exc_info.value.details["job_id"] == "job-1"
        assert exc_info.value.details["remaining"] == 1
        assert drafts_by_row(mock_supabase)[1]["image_match_confidence"] is None
        assert job_row(mock_supabase, "job-1")["status"] == "PROCESSING"

    def test_deleted_archive_fails_job(self, pipeline, mock_supabase):
        """Should fail the job once instead of retrying a file that is gone."""
        # Arrange
        mock_supabase.set_table_data(JOBS, [
            JobFactory.create(id="job-1", status="PROCESSING", total_rows=1,
                              archive_path="uploads/gone.zip")
        ])
        mock_supabase.set_table_data(DRAFTS, [DraftFactory.create("job-1")])

        # Act
        with pytest.raises(MissingArchiveError) as exc_info:
            pipeline.run_image_match_batch("job-1")
        retry = pipeline.run_image_match_batch("job-1")

        # Assert
        assert exc_info.value.status_code == 409
        assert exc_info.value.details["archive_path"] == "uploads/gone.zip"
        job = job_row(mock_supabase, "job-1")
        assert job["status"] == "FAILED"
        assert "uploads/gone.zip" in job["error_summary"]
        assert not retry.success

    def test_draft_closed_after_selection_is_left_alone(self, pipeline, mock_supabase, monkeypatch):
        """Should not write match results onto a draft a reviewer rejected mid-batch."""
        # Arrange
        mock_supabase.set_table_data(JOBS, [
            JobFactory.create(id="job-1", status="PROCESSING", total_rows=2,
                              archive_path="uploads/images.zip")
        ])
        mock_supabase.set_table_data(DRAFTS, [
            DraftFactory.create("job-1", row_index=1, name="Napa", id="d-1"),
            DraftFactory.create("job-1", row_index=2, name="Seclo", id="d-2"),
        ])
        mock_supabase.storage.put(IMPORT_BUCKET, "uploads/images.zip", make_zip({
            "napa.png": make_image(),
            "seclo.png": make_image(),
        }))
        select = pipeline.draft_service.find_many_by_job_and_status

        def select_then_reject(*args, **kwargs):
            drafts = select(*args, **kwargs)
            pipeline.draft_service.reject("d-1", notes="Duplicate")
            return drafts

        monkeypatch.setattr(pipeline.draft_service, "find_many_by_job_and_status", select_then_reject)

        # Act
        result = pipeline.run_image_match_batch("job-1")

        # Assert
        drafts = drafts_by_row(mock_supabase)
        assert drafts[1]["status"] == "REJECTED"
        assert drafts[1]["image_status"] == "UNMATCHED"
        assert drafts[1]["image_match_confidence"] is None
        assert drafts[2]["image_status"] == "MATCHED"
        assert (result.matched, result.skipped) == (1, 1)
        assert job_row(mock_supabase, "job-1")["image_total"] == 1


# ===================
# IMAGE PROCESSING
# ===================

@pytest.fixture
def matched_job(mock_db, mock_supabase):
    """Job with two matched drafts and an archive holding their images."""
    mock_supabase.set_table_data(JOBS, [
        JobFactory.create(
            id="job-1",
            status="PROCESSING",
            total_rows=2,
            processed_rows=2,
            archive_path="uploads/images.zip",
            image_status="PROCESSING",
            image_total=2,
        )
    ])
    mock_supabase.set_table_data(DRAFTS, [
        DraftFactory.create("job-1", row_index=1, name="Napa", ai_suggestion={"row": 1, "slug": "napa"},
                            image_status="MATCHED", image_raw_filename="napa.jpg",
                            image_match_confidence=1.0),
        DraftFactory.create("job-1", row_index=2, name="Seclo", ai_suggestion={"row": 2},
                            image_status="MATCHED", image_raw_filename="seclo.png",
                            image_match_confidence=1.0),
    ])
    mock_supabase.storage.put(IMPORT_BUCKET, "uploads/images.zip", make_zip({
        "napa.jpg": make_image(width=1600, height=800, format="JPEG"),
        "seclo.png": make_image(),
    }))
    return mock_supabase


class TestRunImageProcessBatch:
    """Tests for run_image_process_batch()"""

    def test_uploads_webp_and_records_url(self, pipeline, matched_job):
        """Should upload processed images and mark drafts PROCESSED."""
        # Act
        result = pipeline.run_image_process_batch("job-1")

        # Assert
        assert result.processed == 2
        assert result.errors == []
        assert result.image_status == ImageJobStatus.COMPLETED
        assert result.job_status == ImportJobStatus.COMPLETED

        drafts = drafts_by_row(matched_job)
        assert drafts[1]["image_status"] == "PROCESSED"
        assert drafts[1]["image_url"].endswith("/products/ai-import/job-1/napa-1.webp")
        assert drafts[2]["image_url"].endswith("/products/ai-import/job-1/seclo-2.webp")

        stored = matched_job.storage.files[IMAGE_BUCKET]
        assert set(stored) == {"ai-import/job-1/napa-1.webp", "ai-import/job-1/seclo-2.webp"}
        options = matched_job.storage.options[(IMAGE_BUCKET, "ai-import/job-1/napa-1.webp")]
        assert options["content-type"] == "image/webp"
        assert job_row(matched_job, "job-1")["image_processed"] == 2

    def test_bad_entries_marked_missing(self, pipeline, matched_job):
        """Should report absent or undecodable images per row and keep going."""
        # Arrange
        matched_job.storage.put(IMPORT_BUCKET, "uploads/images.zip", make_zip({
            "napa.jpg": b"definitely not a jpeg",
        }))

        # Act
        result = pipeline.run_image_process_batch("job-1")

        # Assert
        assert (result.processed, result.failed) == (0, 2)
        assert result.errors[0].startswith("Row 1 (napa.jpg):")
        assert result.errors[1].startswith("Row 2 (seclo.png):")
        drafts = drafts_by_row(matched_job)
        assert {d["image_status"] for d in drafts.values()} == {"MISSING"}
        assert drafts[1]["image_raw_filename"] is None
        assert job_row(matched_job, "job-1")["image_total"] == 0

    def test_upload_failure_keeps_finished_drafts(self, pipeline, matched_job):
        """Should persist drafts uploaded before the outage and report what is left."""
        # Arrange
        matched_job.storage.fail_uploads_after = 1

        # Act
        with pytest.raises(StorageUnavailableError) as exc_info:
            pipeline.run_image_process_batch("job-1")

        # Assert
        drafts = drafts_by_row(matched_job)
        assert drafts[1]["image_status"] == "PROCESSED"
        assert drafts[2]["image_status"] == "MATCHED"
        assert exc_info.value.details["remaining"] == 1
        assert job_row(matched_job, "job-1")["image_processed"] == 1

    def test_archive_download_failure_reports_remaining(self, pipeline, matched_job):
        """Should report every matched draft as remaining when the archive is unreachable."""
        matched_job.storage.fail_downloads = True

        with pytest.raises(StorageUnavailableError) as exc_info:
            pipeline.run_image_process_batch("job-1")

        assert exc_info.value.details["job_id"] == "job-1"
        assert exc_info.value.details["remaining"] == 2
        assert {d["image_status"] for d in drafts_by_row(matched_job).values()} == {"MATCHED"}

    def test_deleted_archive_fails_job(self, pipeline, matched_job):
        """Should fail the job when its archive is no longer in storage."""
        del matched_job.storage.files[IMPORT_BUCKET]["uploads/images.zip"]

        with pytest.raises(MissingArchiveError):
            pipeline.run_image_process_batch("job-1")

        assert job_row(matched_job, "job-1")["status"] == "FAILED"
        assert {d["image_status"] for d in drafts_by_row(matched_job).values()} == {"MATCHED"}

    def test_draft_closed_during_transform_is_left_alone(self, pipeline, matched_job, monkeypatch):
        """Should not mark a draft PROCESSED once a reviewer rejected it mid-batch."""
        # Arrange
        napa_id = drafts_by_row(matched_job)[1]["id"]
        transform = pipeline.image_service.transform
        calls = []

        def reject_first(image_bytes):
            if not calls:
                pipeline.draft_service.reject(napa_id, notes="Wrong pack shot")
            calls.append(len(image_bytes))
            return transform(image_bytes)

        monkeypatch.setattr(pipeline.image_service, "transform", reject_first)

        # Act
        result = pipeline.run_image_process_batch("job-1")

        # Assert
        drafts = drafts_by_row(matched_job)
        assert drafts[1]["status"] == "REJECTED"
        assert drafts[1]["image_status"] == "MATCHED"
        assert drafts[1]["image_url"] is None
        assert drafts[2]["image_status"] == "PROCESSED"
        assert (result.processed, result.skipped) == (1, 1)
        assert job_row(matched_job, "job-1")["image_processed"] == 1

    def test_archive_opened_once_per_batch(self, pipeline, matched_job, monkeypatch):
        """Should read every draft's image from a single opened archive."""
        import services.import_pipeline_service as pipeline_module

        opened = []

        class CountingArchive(pipeline_module.ImageArchive):
            def __init__(self, archive_bytes):
                opened.append(len(archive_bytes))
                super().__init__(archive_bytes)

        monkeypatch.setattr(pipeline_module, "ImageArchive", CountingArchive)

        result = pipeline.run_image_process_batch("job-1")

        assert result.processed == 2
        assert len(opened) == 1

    def test_no_matched_drafts_skips_download(self, pipeline, mock_supabase):
        """Should not fetch the archive when there is nothing to process."""
        mock_supabase.set_table_data(JOBS, [
            JobFactory.create(id="job-1", status="PROCESSING", total_rows=1,
                              archive_path="uploads/images.zip")
        ])
        mock_supabase.storage.fail_downloads = True

        result = pipeline.run_image_process_batch("job-1")

        assert result.processed == 0
        assert result.remaining == 0

    def test_cancelled_job_refuses_work(self, pipeline, matched_job):
        """Should leave matched drafts alone once cancelled."""
        pipeline.cancel_job("job-1")

        result = pipeline.run_image_process_batch("job-1")

        assert not result.success
        assert result.remaining == 2
        assert IMAGE_BUCKET not in matched_job.storage.files


# ===================
# FULL RUN
# ===================

class TestFullImport:
    """Ingestion through processed images for a small catalog."""

    def test_three_row_catalog(self, pipeline, fake_model, mock_supabase):
        """Should enrich all rows, match two images and process them."""
        # Arrange
        mock_supabase.storage.put(IMPORT_BUCKET, "uploads/catalog.csv", make_csv(
            ["name"], [["paracetamol 500mg"], ["vitamin c 1000mg"], ["unknown xyz"]]
        ))
        mock_supabase.storage.put(IMPORT_BUCKET, "uploads/images.zip", make_zip({
            "paracetamol500mg.jpg": make_image(format="JPEG"),
            "vitaminc1000mg.png": make_image(),
        }))
        fake_model.queue(echo_response)

        # Act
        job = pipeline.create_job_from_csv("uploads/catalog.csv")
        enriched = pipeline.run_enrichment_batch(job.id)
        pipeline.attach_archive(job.id, "uploads/images.zip")
        matched = pipeline.run_image_match_batch(job.id)
        drafts_after_match = drafts_by_row(mock_supabase)
        processed = pipeline.run_image_process_batch(job.id)

        # Assert
        assert enriched.processed == 3
        assert (matched.matched, matched.unmatched) == (2, 1)
        assert drafts_after_match[1]["image_status"] == "MATCHED"
        assert drafts_after_match[1]["image_match_confidence"] == 1.0
        assert drafts_after_match[2]["image_raw_filename"] == "vitaminc1000mg.png"
        assert drafts_after_match[3]["image_status"] == "UNMATCHED"

        assert processed.processed == 2
        assert processed.job_status == ImportJobStatus.COMPLETED
        assert processed.image_status == ImageJobStatus.COMPLETED

        drafts = drafts_by_row(mock_supabase)
        assert drafts[1]["image_status"] == "PROCESSED"
        assert drafts[1]["image_url"]
        assert drafts[2]["image_status"] == "PROCESSED"
        assert drafts[3]["image_url"] is None

        final = job_row(mock_supabase, job.id)
        assert final["processed_rows"] == 3
        assert (final["image_total"], final["image_processed"]) == (2, 2)
