"""
Master list schemas (generics, manufacturers, categories).

Read-only from the pipeline's perspective; curated elsewhere.
"""

from enum import Enum

from pydantic import BaseModel, Field


class MasterKind(str, Enum):
    """The three curated lookup lists."""
    GENERIC = "generic"
    MANUFACTURER = "manufacturer"
    CATEGORY = "category"


class MasterRecord(BaseModel):
    """One curated record with its alternative spellings."""

    id: str = Field(..., description="Record UUID")
    name: str = Field(..., description="Canonical display name")
    aliases: list[str] = Field(default_factory=list, description="Alternative names")

    def prompt_line(self) -> str:
        """Compact id|name|aliases form embedded in the enrichment prompt."""
        return f"{self.id}|{self.name}|{';'.join(self.aliases)}"


class MasterContext(BaseModel):
    """All three master lists, as handed to enrichment and match resolution."""

    generics: list[MasterRecord] = Field(default_factory=list)
    manufacturers: list[MasterRecord] = Field(default_factory=list)
    categories: list[MasterRecord] = Field(default_factory=list)

    def records(self, kind: MasterKind) -> list[MasterRecord]:
        if kind == MasterKind.GENERIC:
            return self.generics
        if kind == MasterKind.MANUFACTURER:
            return self.manufacturers
        return self.categories

    def ids(self, kind: MasterKind) -> set[str]:
        return {record.id for record in self.records(kind)}
