"""
Base schemas and mixins for all models.
"""

from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Any, Optional


class BaseSchema(BaseModel):
    """
    Base for all schemas.

    Features:
        - Auto-trim whitespace from strings
        - Validate on attribute assignment
        - Allow ORM objects (from_attributes)
    """
    model_config = ConfigDict(
        from_attributes=True,
        str_strip_whitespace=True,
        validate_assignment=True
    )


class TimestampMixin(BaseModel):
    """Add timestamps to response models."""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaginatedResponse(BaseModel):
    """Standard paginated response wrapper."""
    data: list[Any]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def create(cls, data: list, total: int, page: int, page_size: int):
        """Create paginated response from data."""
        total_pages = (total + page_size - 1) // page_size  # Ceiling division
        return cls(
            data=data,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages
        )


def split_known_fields(data: dict, known: set[str]) -> tuple[dict, dict]:
    """
    Split a loosely-typed payload into known fields and an extras bucket.

    Args:
        data: Incoming mapping
        known: Field names the model declares

    Returns:
        (known_fields, extra_fields)
    """
    known_fields = {}
    extra_fields = {}
    for key, value in data.items():
        if key in known:
            known_fields[key] = value
        else:
            extra_fields[key] = value
    return known_fields, extra_fields
