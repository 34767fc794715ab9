"""
Pydantic models for the unified element index.

This module defines all data models used throughout the application, including:
- Index configuration and settings
- Element metadata (one variant per element type)
- Index entries, duplicate groups and search results
- Cache records, statistics and audit events
- The published collection index document

All models use Pydantic for validation, serialization, and type safety.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ElementType(str, Enum):
    """
    Element categories. Values double as directory names on disk and in
    remote repository trees.
    """

    PERSONAS = "personas"
    SKILLS = "skills"
    TEMPLATES = "templates"
    AGENTS = "agents"
    MEMORIES = "memories"
    ENSEMBLES = "ensembles"

    @classmethod
    def parse(cls, value: str) -> "ElementType":
        """Accept plural directory names and singular document types ('persona')."""
        raw = (value or "").strip().lower()
        for member in cls:
            if raw == member.value or raw + "s" == member.value:
                return member
        if raw == "memory":
            return cls.MEMORIES
        raise ValueError(f"Unknown element type: {value!r}")


class ElementSource(str, Enum):
    """Where an index entry was read from."""

    LOCAL = "local"
    REMOTE_PORTFOLIO = "remote-portfolio"
    COLLECTION = "collection"


VersionRelation = Literal["same", "older", "newer", "unknown"]
SourceStatus = Literal["ok", "cached", "stale", "failed", "timeout", "disabled"]
SortOrder = Literal["relevance", "name", "version"]
Recommendation = Literal["upgrade", "current", "conflict"]
AuditSeverity = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class IndexConfig(BaseModel):
    """
    Top-level configuration for the element index.

    Persisted at: <DATA_DIR>/index.json
    """

    local_root: str = Field(
        default="~/.dollhouse/portfolio",
        description="Directory holding one sub-directory per element type with local element files.",
    )
    file_extensions: List[str] = Field(
        default_factory=lambda: [".md", ".yaml", ".yml"],
        description="File extensions treated as element files.",
    )

    # Remote portfolio
    portfolio_owner: Optional[str] = Field(
        default=None,
        description="Owner (user name) of the personal portfolio repository. Empty disables the source.",
    )
    portfolio_repo: str = Field(
        default="dollhouse-portfolio",
        description="Name of the personal portfolio repository.",
    )

    # Shared collection
    collection_owner: str = Field(default="DollhouseMCP", description="Owner of the collection repository.")
    collection_repo: str = Field(default="collection", description="Name of the collection repository.")
    collection_root: str = Field(
        default="library",
        description="Path inside the collection repository that holds one directory per element type.",
    )
    collection_index_url: str = Field(
        default="https://raw.githubusercontent.com/DollhouseMCP/collection/main/public/collection-index.json",
        description="Static endpoint serving the pre-built collection index document.",
    )
    repository_api_url: str = Field(
        default="https://api.github.com",
        description="Base URL of the repository service REST API.",
    )

    # Cache
    portfolio_ttl_seconds: int = Field(default=900, ge=1, description="Freshness window of the portfolio view.")
    collection_ttl_seconds: int = Field(default=3600, ge=1, description="Freshness window of the collection view.")
    cache_max_entries: int = Field(default=64, ge=1, description="Maximum number of cached source snapshots.")

    # Remote fetching
    batch_size: int = Field(default=5, ge=1, description="Metadata requests issued concurrently per batch.")
    batch_delay_seconds: float = Field(default=0.1, ge=0, description="Pause between metadata batches.")
    max_retries: int = Field(default=3, ge=0, description="Retries on rate limiting or transient download errors.")
    max_backoff_seconds: float = Field(default=30.0, ge=0, description="Upper bound on any single retry wait.")
    local_timeout_seconds: float = Field(default=5.0, gt=0)
    portfolio_timeout_seconds: float = Field(default=10.0, gt=0)
    collection_timeout_seconds: float = Field(default=10.0, gt=0)

    # Search
    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)
    name_weight: float = Field(default=10.0, ge=0, description="Score weight of a name match.")
    tag_weight: float = Field(default=4.0, ge=0, description="Score weight of a tag/keyword/trigger/category match.")
    description_weight: float = Field(default=2.0, ge=0, description="Score weight of a description match.")

    # Audit
    audit_queue_size: int = Field(default=1000, ge=1, description="Buffered audit events before new ones are dropped.")


# ---------------------------------------------------------------------------
# Element metadata (tagged by element type)
# ---------------------------------------------------------------------------


class ElementMetadataBase(BaseModel):
    """
    Declared front-matter shared by every element type.

    Unknown keys are preserved as extra fields.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    name: str
    description: Optional[str] = None
    author: Optional[str] = None
    version: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    license: Optional[str] = None
    created: Optional[str] = None
    updated: Optional[str] = None

    @field_validator("version", "created", "updated", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        # YAML parses "1.0" as a float and bare dates as date objects.
        if value is None or isinstance(value, str):
            return value
        if hasattr(value, "isoformat"):
            return value.isoformat()
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("tags", "keywords", mode="before")
    @classmethod
    def _split_words(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class PersonaMetadata(ElementMetadataBase):
    element_type: Literal["personas"] = "personas"
    triggers: List[str] = Field(default_factory=list)
    age_rating: Optional[str] = None


class SkillMetadata(ElementMetadataBase):
    element_type: Literal["skills"] = "skills"
    triggers: List[str] = Field(default_factory=list)
    proficiency_level: Optional[str] = None


class TemplateMetadata(ElementMetadataBase):
    element_type: Literal["templates"] = "templates"
    variables: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)
    output_format: Optional[str] = None


class AgentMetadata(ElementMetadataBase):
    element_type: Literal["agents"] = "agents"
    goals: List[str] = Field(default_factory=list)
    decision_framework: Optional[str] = None


class MemoryMetadata(ElementMetadataBase):
    element_type: Literal["memories"] = "memories"
    retention_days: Optional[int] = None
    storage_backend: Optional[str] = None


class EnsembleMetadata(ElementMetadataBase):
    element_type: Literal["ensembles"] = "ensembles"
    elements: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)
    activation_strategy: Optional[str] = None


ElementMetadata = Annotated[
    Union[
        PersonaMetadata,
        SkillMetadata,
        TemplateMetadata,
        AgentMetadata,
        MemoryMetadata,
        EnsembleMetadata,
    ],
    Field(discriminator="element_type"),
]

_METADATA_ADAPTER: TypeAdapter = TypeAdapter(ElementMetadata)


def build_metadata(element_type: ElementType, raw: Dict[str, Any]) -> ElementMetadataBase:
    """
    Validate raw front-matter into the metadata variant for ``element_type``.

    Raises pydantic.ValidationError when a field has the wrong shape.
    """
    data = {k: v for k, v in (raw or {}).items() if k not in ("type", "element_type")}
    data["element_type"] = element_type.value
    return _METADATA_ADAPTER.validate_python(data)


# ---------------------------------------------------------------------------
# Index entries
# ---------------------------------------------------------------------------


class IndexEntry(BaseModel):
    """
    Canonical indexed unit. Rebuilt on every fetch cycle and never mutated.

    ``id`` is unique within one source only; the same logical element may
    appear once per source.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Derived from source, element type and name slug.")
    name: str
    element_type: ElementType
    source: ElementSource
    version: Optional[str] = None
    locator: str = Field(description="Path or URL from which the full content can be fetched.")
    content_fingerprint: Optional[str] = Field(
        default=None,
        description="Hash of the normalized content, comparable across sources.",
    )
    metadata: ElementMetadata
    last_seen: datetime = Field(default_factory=utc_now)
    last_modified: Optional[datetime] = None


class LocalElement(BaseModel):
    """What the element store reader returns for one local file."""

    metadata: Dict[str, Any] = Field(default_factory=dict)
    content_fingerprint: Optional[str] = None


class TreeItem(BaseModel):
    """One item of a remote repository directory listing."""

    path: str
    type: str = Field(description="'file' or 'dir'.")
    sha: Optional[str] = None


class NormalizedText(BaseModel):
    """Outcome of normalizing caller-supplied text."""

    is_valid: bool
    normalized_text: str
    issues: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Duplicates and versions
# ---------------------------------------------------------------------------


class VersionDelta(BaseModel):
    source: ElementSource
    version: Optional[str] = None
    relation: VersionRelation = Field(description="Relation of this version to the canonical entry's version.")


class DuplicateGroup(BaseModel):
    """Entries believed to be the same logical element across sources."""

    name: str
    element_type: ElementType
    entries: List[IndexEntry]
    canonical: IndexEntry = Field(description="Highest version; most recently modified/seen on a tie.")
    version_deltas: List[VersionDelta] = Field(default_factory=list)
    fingerprint_confirmed: bool = Field(
        default=False,
        description="True when at least two entries share a content fingerprint.",
    )

    @property
    def sources(self) -> List[ElementSource]:
        return [entry.source for entry in self.entries]


class VersionComparison(BaseModel):
    """Install/publish guidance for one element name."""

    name: str
    element_type: ElementType
    recommendation: Recommendation
    local: Optional[str] = None
    portfolio: Optional[str] = None
    collection: Optional[str] = None
    recommended_source: Optional[ElementSource] = None
    details: str = ""


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class SearchOptions(BaseModel):
    sources: Optional[List[ElementSource]] = Field(
        default=None,
        description="Sources to query. None means all three.",
    )
    element_types: Optional[List[ElementType]] = Field(
        default=None,
        description="Restrict results to these element types. None means all.",
    )
    page: int = Field(default=1, ge=1)
    page_size: Optional[int] = Field(default=None, ge=1, description="None uses the configured default.")
    sort_by: SortOrder = "relevance"


class SearchResult(BaseModel):
    """Ranked projection of an index entry. ``score`` reflects relevance only."""

    entry: IndexEntry
    score: float
    rank: int = 0
    match_reasons: List[str] = Field(default_factory=list)
    is_duplicate: bool = False
    duplicate_sources: List[ElementSource] = Field(default_factory=list)
    version_status: Optional[VersionRelation] = None


class SourceView(BaseModel):
    """One source's entries for a single query, with how they were obtained."""

    source: ElementSource
    entries: List[IndexEntry] = Field(default_factory=list)
    status: SourceStatus = "ok"
    error: Optional[str] = None


class SourceOutcome(BaseModel):
    source: ElementSource
    status: SourceStatus
    count: int = 0
    error: Optional[str] = None
    duration_ms: float = 0.0


class SearchPage(BaseModel):
    results: List[SearchResult] = Field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 20
    query: str = ""
    sources: List[SourceOutcome] = Field(default_factory=list)
    degraded: bool = Field(default=False, description="True when at least one requested source failed.")
    reason: Optional[str] = Field(default=None, description="Diagnostic when no requested source answered.")


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class CacheRecord(BaseModel):
    """A fetched snapshot of one remote source."""

    model_config = ConfigDict(frozen=True)

    key: str
    entries: Tuple[IndexEntry, ...] = ()
    fetched_at: datetime = Field(default_factory=utc_now)
    ttl_seconds: float
    source_checksum: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return (now - self.fetched_at).total_seconds() > self.ttl_seconds


class CacheStats(BaseModel):
    size: int = 0
    max_entries: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0
    hit_rate: float = 0.0


# ---------------------------------------------------------------------------
# Collection index document
# ---------------------------------------------------------------------------


class CollectionBuildMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    build_time_ms: int


class CollectionIndexDocument(BaseModel):
    """
    Pre-built description of the whole collection.

    Any missing required field makes the document invalid.
    """

    model_config = ConfigDict(extra="allow")

    version: str
    generated: str
    total_elements: int
    index: Dict[str, List[Dict[str, Any]]]
    metadata: CollectionBuildMetadata


class CollectionElementSummary(BaseModel):
    """One element as described in the collection index document."""

    model_config = ConfigDict(extra="allow")

    path: str
    name: str
    type: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    author: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    sha: Optional[str] = None
    category: Optional[str] = None
    created: Optional[str] = None
    license: Optional[str] = None

    @field_validator("version", mode="before")
    @classmethod
    def _stringify_version(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


# ---------------------------------------------------------------------------
# Statistics and audit
# ---------------------------------------------------------------------------


class SourceUsage(BaseModel):
    searches: int = 0
    results: int = 0
    failures: int = 0
    average_duration_ms: float = 0.0
    last_used: Optional[datetime] = None


class IndexStatistics(BaseModel):
    per_source_counts: Dict[str, int] = Field(default_factory=dict)
    cache_hit_rate: float = 0.0
    duplicates_count: int = 0
    last_rebuild: Optional[datetime] = None
    cache: CacheStats = Field(default_factory=CacheStats)
    source_usage: Dict[str, SourceUsage] = Field(default_factory=dict)
    generated_at: datetime = Field(default_factory=utc_now)
    errors: List[str] = Field(default_factory=list)


class AuditEvent(BaseModel):
    type: str
    severity: AuditSeverity = "LOW"
    source: str
    details: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
