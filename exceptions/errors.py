"""
Custom exception classes for the import pipeline.

Every error carries a code, an HTTP status and a details dict so routes can
return the same JSON envelope for all failures.
"""

from typing import Optional, Any
from datetime import datetime


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "IMPORT_JOB_NOT_FOUND")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.utcnow().isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ConflictError(AppError):
    """Conflict with the current state of a resource (409)."""

    def __init__(
        self,
        message: str,
        code: str = "CONFLICT",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details
        )


class ExternalServiceError(AppError):
    """External service failure (503)."""

    def __init__(
        self,
        service: str,
        message: str,
        details: Optional[dict] = None,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{service.upper()}_ERROR",
            message=message,
            status_code=503,
            details={"service": service, **(details or {})}
        )


class DatabaseError(AppError):
    """Database operation failed (500)."""

    def __init__(
        self,
        operation: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="DATABASE_ERROR",
            message=f"Database {operation} failed: {message}",
            status_code=500,
            details={"operation": operation, **(details or {})}
        )


# ===================
# IMPORT JOB ERRORS
# ===================

class ImportJobNotFoundError(NotFoundError):
    """Import job not found."""

    def __init__(self, job_id: str):
        super().__init__(
            resource="Import job",
            identifier=job_id,
            code="IMPORT_JOB_NOT_FOUND"
        )


class JobNotRunnableError(ConflictError):
    """Job is in a state that does not accept new work."""

    def __init__(self, job_id: str, status: str):
        super().__init__(
            code="IMPORT_JOB_NOT_RUNNABLE",
            message=f"Import job is {status.lower()}",
            details={"job_id": job_id, "status": status}
        )


class MissingArchiveError(ConflictError):
    """Image stage invoked on a job without a readable archive."""

    def __init__(self, job_id: str, archive_path: Optional[str] = None):
        details = {"job_id": job_id}
        if archive_path:
            details["archive_path"] = archive_path
        super().__init__(
            code="IMPORT_JOB_MISSING_ARCHIVE",
            message=(
                f"Image archive {archive_path} no longer exists"
                if archive_path
                else "No image archive uploaded for this job"
            ),
            details=details
        )


# ===================
# DRAFT ERRORS
# ===================

class DraftNotFoundError(NotFoundError):
    """Product draft not found."""

    def __init__(self, draft_id: str):
        super().__init__(
            resource="Draft",
            identifier=draft_id,
            code="DRAFT_NOT_FOUND"
        )


class DraftLockedError(ConflictError):
    """Draft already reviewed and no longer editable."""

    def __init__(self, draft_id: str, status: str):
        super().__init__(
            code="DRAFT_LOCKED",
            message=f"Draft is {status} and can no longer be edited",
            details={"draft_id": draft_id, "status": status}
        )


class InvalidStatusTransitionError(ConflictError):
    """Invalid status transition."""

    def __init__(self, current_status: str, new_status: str, reason: Optional[str] = None):
        super().__init__(
            code="INVALID_STATUS_TRANSITION",
            message=f"Cannot transition from {current_status} to {new_status}",
            details={
                "current_status": current_status,
                "new_status": new_status,
                "reason": reason or "Transition not allowed"
            }
        )


# ===================
# INPUT ERRORS
# ===================

class CSVParseError(ValidationError):
    """CSV file could not be parsed."""

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="CSV_PARSE_ERROR",
            message=message,
            details=details
        )


class CSVMissingColumnsError(ValidationError):
    """CSV is missing mandatory columns."""

    def __init__(self, missing: list[str], found: list[str]):
        super().__init__(
            code="CSV_MISSING_COLUMNS",
            message=f"Missing required columns: {', '.join(missing)}",
            details={"missing": missing, "found": found}
        )


class ArchiveError(ValidationError):
    """Bytes are not a readable archive."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="ARCHIVE_INVALID",
            message=message,
            details=details
        )


class ImageDecodeError(ValidationError):
    """Image bytes could not be decoded."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="IMAGE_DECODE_ERROR",
            message=message,
            details=details
        )


class StorageObjectNotFoundError(ValidationError):
    """Referenced upload does not exist in storage."""

    def __init__(self, bucket: str, path: str):
        super().__init__(
            code="STORAGE_OBJECT_NOT_FOUND",
            message=f"File not found in storage: {path}",
            details={"bucket": bucket, "path": path}
        )


# ===================
# TRANSIENT ERRORS
# ===================

class ProviderUnavailableError(ExternalServiceError):
    """Text model unavailable (rate limit, network, timeout)."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            service="ai_provider",
            message=message,
            details=details,
            code="PROVIDER_UNAVAILABLE"
        )


class StorageUnavailableError(ExternalServiceError):
    """Blob storage get/put failed."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            service="storage",
            message=message,
            details=details,
            code="STORAGE_UNAVAILABLE"
        )
