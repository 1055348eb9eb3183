"""Data models for knowledge chunks, retrieval candidates and validation reports."""

import enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from coach_rag.core.config import Settings


class ChunkRecord(BaseModel):
    """A stored chunk as returned by a chunk store.

    ``embedding`` is None until the chunk has been embedded. ``malformed`` is
    set when a stored vector exists but could not be parsed.
    """

    id: str = Field(..., description="Chunk identifier")
    parent_item_id: str = Field(..., description="Owning knowledge item id")
    parent_title: str = Field(..., description="Title of the owning item")
    content: str = Field(..., description="Chunk text content")
    chunk_index: int = Field(..., ge=0, description="Position within the parent item")
    embedding: Optional[list[float]] = Field(default=None, description="Stored vector")
    categories: list[str] = Field(
        default_factory=list,
        description="Category names of the parent item",
    )
    malformed: bool = Field(default=False, description="Stored vector failed to parse")


class ChunkFilter(BaseModel):
    """Narrows the searchable set. Status READY is always implied.

    Without a tenant only shared items (no owner) are searchable. A tenant
    sees its own items plus the shared ones. ``all_tenants`` lifts the owner
    restriction entirely and is meant for admin tooling only.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: Optional[str] = Field(
        default=None,
        description="Owner id; shared items (no owner) are always included",
    )
    all_tenants: bool = Field(default=False, description="Search every owner's items")
    category_names: Optional[tuple[str, ...]] = Field(
        default=None,
        description="Restrict to items tagged with any of these categories",
    )
    terms: Optional[tuple[str, ...]] = Field(
        default=None,
        description="Restrict to chunks whose content contains any of these terms",
    )

    def with_categories(self, names: list[str] | tuple[str, ...]) -> "ChunkFilter":
        return self.model_copy(update={"category_names": tuple(names)})

    def with_terms(self, terms: list[str] | tuple[str, ...]) -> "ChunkFilter":
        return self.model_copy(update={"terms": tuple(terms)})


class RetrievalCandidate(BaseModel):
    """A scored chunk flowing through the ranking pipeline."""

    chunk_id: str
    parent_item_id: str
    title: str
    content: str
    chunk_index: int
    similarity: float = Field(..., ge=-1.0, le=1.0, description="Cosine similarity")
    categories: list[str] = Field(default_factory=list)
    low_confidence: bool = Field(default=False, description="Below the soft threshold")
    high_relevance: bool = Field(default=False, description="At or above high relevance")
    relevance_boost: float = Field(default=0.0, ge=0.0, description="Bonus for query muscle and concept mentions")
    keyword_match: bool = Field(default=False, description="Found by term search, similarity is the term overlap")

    @property
    def key(self) -> tuple[str, int]:
        """Identity of the underlying fragment."""
        return (self.parent_item_id, self.chunk_index)

    @property
    def score(self) -> float:
        """Ranking score used when merging sub-query results."""
        return self.similarity + self.relevance_boost


class RetrievalConfiguration(BaseModel):
    """Tenant-wide retrieval settings, read once per call."""

    similarity_threshold: float = Field(default=0.7, ge=0.1, le=1.0)
    high_relevance_threshold: float = Field(default=0.85, ge=0.1, le=1.0)
    max_chunks: int = Field(default=5, ge=1, le=20)
    per_source_cap: int = Field(default=2, ge=1)
    category_priority: bool = True
    strict_muscle_priority: bool = False
    use_knowledge_base: bool = True

    @model_validator(mode="after")
    def _check_threshold_order(self) -> "RetrievalConfiguration":
        if self.high_relevance_threshold < self.similarity_threshold:
            raise ValueError(
                "high_relevance_threshold must be >= similarity_threshold "
                f"({self.high_relevance_threshold} < {self.similarity_threshold})"
            )
        return self

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetrievalConfiguration":
        """Safe defaults used when no configuration row exists."""
        return cls(
            similarity_threshold=settings.rag_similarity_threshold,
            high_relevance_threshold=settings.rag_high_relevance_threshold,
            max_chunks=settings.rag_max_chunks,
            per_source_cap=settings.rag_per_source_cap,
            category_priority=settings.rag_category_priority,
            strict_muscle_priority=settings.rag_strict_muscle_priority,
        )


class IntentKind(str, enum.Enum):
    NONE = "none"
    PROGRAM_GENERATION = "program-generation"
    PROGRAM_REVIEW = "program-review"
    MUSCLE_FOCUS = "muscle-focus"
    MYTH_CHECK = "myth-check"


class QueryIntent(BaseModel):
    """Classification of a query, derived on every call."""

    model_config = ConfigDict(frozen=True)

    kinds: frozenset[IntentKind] = Field(default_factory=lambda: frozenset({IntentKind.NONE}))
    muscles: tuple[str, ...] = Field(default=(), description="Muscle words found in the query")
    categories: tuple[str, ...] = Field(default=(), description="Priority categories in order")
    muscle_categories: tuple[str, ...] = Field(default=())
    concepts: tuple[str, ...] = Field(default=(), description="Training concepts named in the query")

    def has(self, kind: IntentKind) -> bool:
        return kind in self.kinds


class SubQueryRole(str, enum.Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class SubQuery(BaseModel):
    """One retrieval query produced by the query planner."""

    model_config = ConfigDict(frozen=True)

    text: str
    role: SubQueryRole
    budget: int = Field(..., ge=1, description="Maximum chunks this sub-query contributes")
    threshold: float = Field(..., description="Minimum similarity accepted at merge")
    retry: bool = False


class ConversationMessage(BaseModel):
    role: str
    content: str


class Citation(BaseModel):
    """Reference to a chunk, written as ``[KB:<id>#<index>]`` in answers."""

    model_config = ConfigDict(frozen=True)

    id: str
    index: int = Field(..., ge=0)
    title: Optional[str] = None

    @property
    def marker(self) -> str:
        return f"[KB:{self.id}#{self.index}]"

    @property
    def key(self) -> tuple[str, int]:
        return (self.id, self.index)


class ValidationReport(BaseModel):
    """Result of checking a generated answer against retrieved evidence."""

    citations: list[Citation] = Field(default_factory=list)
    missing_parameters: list[str] = Field(default_factory=list)
    unknown_citations: list[Citation] = Field(
        default_factory=list,
        description="Cited chunks that were not part of the supplied context",
    )
    uncited_evidence: bool = Field(
        default=False,
        description="No citations although high-relevance evidence was retrieved",
    )

    @property
    def needs_repair(self) -> bool:
        return bool(self.missing_parameters or self.unknown_citations or self.uncited_evidence)


class RetrievalDiagnostics(BaseModel):
    """Per-call counters surfaced to callers and logs.

    The scoring counters count distinct chunks. A chunk scored by several
    strategy passes or sub-queries is counted once.
    """

    candidates_scored: int = 0
    malformed_skipped: int = 0
    dimension_mismatches: int = 0
    low_confidence: int = 0
    multi_query: bool = False
    failed_sub_queries: list[str] = Field(default_factory=list)
    strategies_tried: list[str] = Field(default_factory=list)
    strategy_used: Optional[str] = None
    timed_out: bool = False
    config_fallback: bool = False
    quality: dict[str, int] = Field(default_factory=dict)

    _scored: set[tuple[str, int]] = PrivateAttr(default_factory=set)
    _malformed: set[str] = PrivateAttr(default_factory=set)
    _mismatched: set[str] = PrivateAttr(default_factory=set)

    def record_scoring(
        self,
        scored: Iterable[tuple[str, int]],
        malformed: Iterable[str] = (),
        mismatched: Iterable[str] = (),
    ) -> None:
        """Fold one scoring pass into the distinct-chunk counters."""
        self._scored.update(scored)
        self._malformed.update(malformed)
        self._mismatched.update(mismatched)
        self.candidates_scored = len(self._scored)
        self.malformed_skipped = len(self._malformed)
        self.dimension_mismatches = len(self._mismatched)

    @property
    def warnings(self) -> list[str]:
        messages: list[str] = []
        if self.malformed_skipped:
            messages.append(f"{self.malformed_skipped} malformed embeddings skipped")
        if self.dimension_mismatches:
            messages.append(f"{self.dimension_mismatches} embeddings with mismatched length skipped")
        if self.failed_sub_queries:
            messages.append(f"secondary sub-queries failed: {', '.join(self.failed_sub_queries)}")
        if self.timed_out:
            messages.append("retrieval deadline reached, partial results used")
        if self.config_fallback:
            messages.append("retrieval configuration unavailable, defaults used")
        return messages


class RetrievedContext(BaseModel):
    """Composed output handed to the generation layer."""

    context_block: str
    citations_available: list[Citation] = Field(default_factory=list)
    candidates: list[RetrievalCandidate] = Field(default_factory=list)
    grounded: bool = True
    intent: Optional[QueryIntent] = None
    diagnostics: RetrievalDiagnostics = Field(default_factory=RetrievalDiagnostics)

    @property
    def high_relevance_count(self) -> int:
        return sum(1 for candidate in self.candidates if candidate.high_relevance)


class GroundedAnswer(BaseModel):
    """Generated answer with the evidence and validation behind it."""

    answer: str
    report: ValidationReport
    context: RetrievedContext
    regenerated: bool = False
