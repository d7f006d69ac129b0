"""
CSV ingestion for import jobs.

Parses a standard quoted CSV into row maps keyed by lower-cased header.
The ``name`` column is mandatory; every other column is optional and kept.
Any problem with the file fails the whole ingestion before a job exists.
"""

import io
from dataclasses import dataclass, field
import structlog

import pandas as pd

from exceptions import CSVParseError, CSVMissingColumnsError

logger = structlog.get_logger(__name__)

REQUIRED_COLUMNS = ["name"]


@dataclass
class CSVParseResult:
    """Parsed CSV ready for draft creation."""
    headers: list[str] = field(default_factory=list)
    rows: list[dict[str, str]] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.rows)


def _normalize_header(header) -> str:
    return str(header).strip().lower()


def _clean_cell(value) -> str:
    # Short rows are padded with NaN
    if value is None or pd.isna(value):
        return ""
    return str(value).strip()


def parse_csv(content: bytes) -> CSVParseResult:
    """
    Parse CSV bytes into row maps.

    - Header matching is case-insensitive ("Name", "NAME" → "name")
    - Blank header cells and fully blank rows are dropped
    - Cell values are kept as trimmed strings

    Args:
        content: Raw CSV bytes (UTF-8, optional BOM)

    Returns:
        CSVParseResult with headers and rows

    Raises:
        CSVParseError: If the file is empty, unreadable or has no data rows
        CSVMissingColumnsError: If the name column is absent
    """
    if not content or not content.strip():
        raise CSVParseError("CSV file is empty")

    # header=None keeps the header row verbatim; pandas would otherwise
    # rename an exact repeat ("name,name") to "name.1"
    try:
        raw = pd.read_csv(
            io.BytesIO(content),
            header=None,
            dtype=str,
            keep_default_na=False,
            encoding="utf-8-sig",
            skip_blank_lines=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        logger.warning("csv_parse_failed", error=str(e), error_type=type(e).__name__)
        raise CSVParseError(
            "Could not read CSV file",
            details={"error": str(e)}
        ) from e

    headers = [_normalize_header(h) for h in raw.iloc[0]]
    positions = [i for i, h in enumerate(headers) if h]
    keep = [headers[i] for i in positions]
    duplicates = sorted({h for h in keep if keep.count(h) > 1})
    if duplicates:
        raise CSVParseError(
            "CSV has duplicate columns",
            details={"duplicates": duplicates}
        )

    missing = [c for c in REQUIRED_COLUMNS if c not in keep]
    if missing:
        raise CSVMissingColumnsError(missing=missing, found=keep)

    df = raw.iloc[1:, positions].set_axis(keep, axis=1)
    rows = []
    for record in df.to_dict(orient="records"):
        row = {key: _clean_cell(value) for key, value in record.items()}
        if any(row.values()):
            rows.append(row)

    if not rows:
        raise CSVParseError("CSV has no data rows", details={"headers": keep})

    logger.info("csv_parsed", rows=len(rows), columns=keep)
    return CSVParseResult(headers=keep, rows=rows)
