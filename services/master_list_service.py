"""
Master list access and match resolution.

Loads the curated generics, manufacturers and categories, keeps them for a
short TTL, and checks the master ids an enrichment suggestion carries. Ids
the model invented are dropped and the suggestion's free-text field is fuzzy
matched against the list instead.
"""

import time
from typing import Callable, Optional
import structlog

from config import get_supabase_client, settings
from exceptions import DatabaseError
from models.enrichment import AISuggestion
from models.master import MasterContext, MasterKind, MasterRecord
from services.fuzzy_matcher import MatchCandidate, candidates_for_records, match_text

logger = structlog.get_logger(__name__)

# (kind, table, alias column, active-only)
_SOURCES = (
    (MasterKind.GENERIC, "generics", "synonyms", False),
    (MasterKind.MANUFACTURER, "manufacturers", "alias_list", False),
    (MasterKind.CATEGORY, "categories", None, True),
)

# (kind, suggestion text field, id field, confidence field)
_SUGGESTION_FIELDS = (
    (MasterKind.GENERIC, "generic_name", "generic_match_id", "generic_confidence"),
    (MasterKind.MANUFACTURER, "manufacturer", "manufacturer_match_id", "manufacturer_confidence"),
    (MasterKind.CATEGORY, "category", "category_match_id", "category_confidence"),
)


class MasterListService:
    """
    Read-only access to the master lists.

    Lists are cached on the instance for ``ttl_seconds``; records are kept
    ordered by name then id so fuzzy tie-breaks are stable.
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        threshold: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = get_supabase_client()
        self.ttl_seconds = settings.master_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.threshold = settings.master_match_threshold if threshold is None else threshold
        self._clock = clock
        self._context: Optional[MasterContext] = None
        self._candidates: dict[MasterKind, list[MatchCandidate]] = {}
        self._loaded_at: Optional[float] = None

    # ===================
    # LOADING
    # ===================

    def _fetch(self, table: str, alias_column: Optional[str], active_only: bool) -> list[MasterRecord]:
        columns = "id, name" + (f", {alias_column}" if alias_column else "")
        query = self.db.table(table).select(columns)
        if active_only:
            query = query.eq("is_active", True)
        result = query.order("name").execute()

        records = [
            MasterRecord(
                id=str(row["id"]),
                name=row["name"],
                aliases=[a for a in (row.get(alias_column) or []) if a] if alias_column else [],
            )
            for row in result.data
        ]
        records.sort(key=lambda r: (r.name.lower(), r.id))
        return records

    def _is_fresh(self) -> bool:
        if self._context is None or self._loaded_at is None:
            return False
        return (self._clock() - self._loaded_at) < self.ttl_seconds

    def get_context(self, refresh: bool = False) -> MasterContext:
        """
        Get all three master lists.

        Args:
            refresh: Ignore the cache and reload

        Returns:
            MasterContext

        Raises:
            DatabaseError: If a list cannot be loaded
        """
        if not refresh and self._is_fresh():
            return self._context

        try:
            loaded = {
                kind: self._fetch(table, alias_column, active_only)
                for kind, table, alias_column, active_only in _SOURCES
            }
        except Exception as e:
            logger.error("master_lists_load_failed", error=str(e))
            raise DatabaseError("select", str(e))

        self._context = MasterContext(
            generics=loaded[MasterKind.GENERIC],
            manufacturers=loaded[MasterKind.MANUFACTURER],
            categories=loaded[MasterKind.CATEGORY],
        )
        self._candidates = {
            kind: candidates_for_records(records) for kind, records in loaded.items()
        }
        self._loaded_at = self._clock()

        logger.info(
            "master_lists_loaded",
            generics=len(self._context.generics),
            manufacturers=len(self._context.manufacturers),
            categories=len(self._context.categories),
        )
        return self._context

    # ===================
    # MATCH RESOLUTION
    # ===================

    def _candidates_for(self, context: MasterContext, kind: MasterKind) -> list[MatchCandidate]:
        if context is self._context and kind in self._candidates:
            return self._candidates[kind]
        return candidates_for_records(context.records(kind))

    def resolve_matches(self, suggestion: AISuggestion, context: MasterContext) -> AISuggestion:
        """
        Verify or fill the master ids of a suggestion.

        - Id present and known: kept (confidence defaults to overall_confidence)
        - Id unknown or absent: fuzzy match of the text field; cleared if no match

        Args:
            suggestion: Validated model output for one row
            context: Master lists the prompt was built from

        Returns:
            Suggestion copy with resolved ids and confidences
        """
        updates = {}
        for kind, text_field, id_field, confidence_field in _SUGGESTION_FIELDS:
            model_id = getattr(suggestion, id_field)
            if model_id and model_id in context.ids(kind):
                if getattr(suggestion, confidence_field) is None:
                    updates[confidence_field] = suggestion.overall_confidence
                continue

            if model_id:
                logger.debug(
                    "master_id_unknown",
                    kind=kind.value,
                    row=suggestion.row,
                    model_id=model_id,
                )

            result = match_text(
                getattr(suggestion, text_field),
                self._candidates_for(context, kind),
                self.threshold,
            )
            updates[id_field] = result.id if result else None
            updates[confidence_field] = result.confidence if result else None

        return suggestion.model_copy(update=updates)


def format_master_context(context: MasterContext) -> str:
    """
    Serialize master lists for the enrichment prompt.

    One ``id|name|aliases`` line per record, aliases joined by ';'.
    """
    sections = []
    for title, records in (
        ("GENERICS", context.generics),
        ("MANUFACTURERS", context.manufacturers),
        ("CATEGORIES", context.categories),
    ):
        lines = "\n".join(record.prompt_line() for record in records) or "(none)"
        sections.append(f"{title} (id|name|aliases):\n{lines}")
    return "\n\n".join(sections)


# Singleton instance
_master_list_service: Optional[MasterListService] = None


def get_master_list_service() -> MasterListService:
    """Get or create MasterListService instance."""
    global _master_list_service
    if _master_list_service is None:
        _master_list_service = MasterListService()
    return _master_list_service
