"""
Custom exceptions module.

Input errors are 422, missing resources 404, state conflicts 409 and
transient provider/storage failures 503.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    ConflictError,
    ExternalServiceError,
    DatabaseError,

    # Import jobs
    ImportJobNotFoundError,
    JobNotRunnableError,
    MissingArchiveError,

    # Drafts
    DraftNotFoundError,
    DraftLockedError,
    InvalidStatusTransitionError,

    # Input
    CSVParseError,
    CSVMissingColumnsError,
    ArchiveError,
    ImageDecodeError,
    StorageObjectNotFoundError,

    # Transient
    ProviderUnavailableError,
    StorageUnavailableError,
)

__all__ = [
    # Base
    "AppError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "ExternalServiceError",
    "DatabaseError",

    # Import jobs
    "ImportJobNotFoundError",
    "JobNotRunnableError",
    "MissingArchiveError",

    # Drafts
    "DraftNotFoundError",
    "DraftLockedError",
    "InvalidStatusTransitionError",

    # Input
    "CSVParseError",
    "CSVMissingColumnsError",
    "ArchiveError",
    "ImageDecodeError",
    "StorageObjectNotFoundError",

    # Transient
    "ProviderUnavailableError",
    "StorageUnavailableError",
]
