"""
Text utilities for comparing filenames and product names.

Both domains are reduced to the same canonical key so that
"Paracetamol 500mg.JPG" and "paracetamol 500 mg" compare equal.
"""

import re
from pathlib import PurePosixPath
from typing import Optional

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


def canonicalize(text: Optional[str]) -> str:
    """
    Reduce text to its canonical comparison key.

    Lower-cases and drops every character outside [a-z0-9]:
    - "Vitamin C 1000mg" → "vitaminc1000mg"
    - "Napa-Extra (Beximco)" → "napaextrabeximco"
    - "" or None → ""

    Idempotent: canonicalize(canonicalize(x)) == canonicalize(x).

    Args:
        text: Free text (product name, filename stem)

    Returns:
        Canonical key, possibly empty
    """
    if not text:
        return ""
    return _NON_ALNUM.sub("", text.lower())


def canonicalize_filename(filename: str) -> str:
    """Canonical key of a filename with its directory and extension removed."""
    return canonicalize(PurePosixPath(filename).stem)


def slugify(text: Optional[str], max_length: int = 100) -> str:
    """
    URL/storage-safe slug.

    - "Napa Extra 500mg" → "napa-extra-500mg"

    Args:
        text: Source text
        max_length: Maximum slug length

    Returns:
        Slug, empty string if nothing usable remains
    """
    if not text:
        return ""
    slug = _SLUG_SEPARATORS.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")
