"""
Fuzzy matching of canonical keys against candidate lists.

Used for both image filenames (candidate id = filename) and master records
(candidate id = record id, one candidate per name and alias).

Algorithm:
1. Exact canonical key → confidence 1.0, always wins.
2. Otherwise, among candidates where one key contains the other,
   score = shorter / longer length.
3. Best score is accepted only when it reaches the threshold.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from models.master import MasterRecord
from utils.text_utils import canonicalize

DEFAULT_THRESHOLD = 0.7


@dataclass(frozen=True)
class MatchCandidate:
    """Something a target key can be matched against."""
    id: str
    canonical_key: str


@dataclass(frozen=True)
class MatchResult:
    """Accepted match."""
    id: str
    confidence: float


def containment_score(a: str, b: str) -> float:
    """
    Length-ratio score for two keys where one contains the other.

    Returns 0.0 when neither key contains the other or either is empty.
    """
    if not a or not b:
        return 0.0
    if a not in b and b not in a:
        return 0.0
    return min(len(a), len(b)) / max(len(a), len(b))


def match(
    target_key: str,
    candidates: Iterable[MatchCandidate],
    threshold: float = DEFAULT_THRESHOLD,
) -> Optional[MatchResult]:
    """
    Find the best candidate for a canonical key.

    Ties at the best score keep the candidate encountered first, so callers
    must pass candidates in a stable order.

    Args:
        target_key: Canonical key to look up
        candidates: Candidate keys with their ids
        threshold: Minimum accepted score (inclusive)

    Returns:
        MatchResult, or None when nothing reaches the threshold
    """
    if not target_key:
        return None

    candidates = [c for c in candidates if c.canonical_key]

    for candidate in candidates:
        if candidate.canonical_key == target_key:
            return MatchResult(id=candidate.id, confidence=1.0)

    best: Optional[MatchCandidate] = None
    best_score = 0.0
    for candidate in candidates:
        score = containment_score(target_key, candidate.canonical_key)
        if score > best_score:
            best, best_score = candidate, score

    if best is None or best_score < threshold:
        return None
    return MatchResult(id=best.id, confidence=best_score)


def match_text(
    text: Optional[str],
    candidates: Iterable[MatchCandidate],
    threshold: float = DEFAULT_THRESHOLD,
) -> Optional[MatchResult]:
    """Canonicalize free text, then match it."""
    return match(canonicalize(text), candidates, threshold)


def candidates_for_records(records: Iterable[MasterRecord]) -> list[MatchCandidate]:
    """
    Expand master records into match candidates.

    Each record yields one candidate for its name and one per alias, all
    carrying the record id. Order follows the records, name before aliases.
    """
    candidates = []
    for record in records:
        seen = set()
        for text in [record.name, *record.aliases]:
            key = canonicalize(text)
            if key and key not in seen:
                seen.add(key)
                candidates.append(MatchCandidate(id=record.id, canonical_key=key))
    return candidates
