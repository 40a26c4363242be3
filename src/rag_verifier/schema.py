from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum


class SourceType(str, Enum):
    """Origin of an indexed document."""

    INQUIRY = "INQUIRY"
    KNOWLEDGE_BASE = "KNOWLEDGE_BASE"


class ChunkLevel(str, Enum):
    """Position of a chunk in the two-level chunk hierarchy."""

    PARENT = "PARENT"
    CHILD = "CHILD"


class MatchSource(str, Enum):
    VECTOR = "VECTOR"
    KEYWORD = "KEYWORD"
    VECTOR_KEYWORD = "VECTOR+KEYWORD"


class RetrievalStatus(str, Enum):
    SUCCESS = "SUCCESS"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    NO_EVIDENCE = "NO_EVIDENCE"


class Polarity(str, Enum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    NEUTRAL = "NEUTRAL"


class VerdictLabel(str, Enum):
    SUPPORTED = "SUPPORTED"
    REFUTED = "REFUTED"
    CONDITIONAL = "CONDITIONAL"


class RiskFlag(str, Enum):
    INSUFFICIENT_EVIDENCE = "INSUFFICIENT_EVIDENCE"
    WEAK_EVIDENCE_MATCH = "WEAK_EVIDENCE_MATCH"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    CONFLICTING_EVIDENCE = "CONFLICTING_EVIDENCE"


@dataclass(slots=True)
class PageText:
    """Text of one physical page with its offsets into the joined document text."""

    page_number: int
    text: str
    start_offset: int
    end_offset: int


@dataclass(frozen=True, slots=True)
class Chunk:
    """Immutable chunk record produced by the chunker at indexing time.

    A CHILD chunk points at the PARENT chunk it was cut from through
    `parent_id`; a PARENT chunk never carries one. Chunks with `level=None`
    are legacy flat chunks.
    """

    chunk_id: str
    document_id: str
    source_type: SourceType
    source_id: str
    level: ChunkLevel | None
    parent_id: str | None
    sequence_index: int
    start_offset: int
    end_offset: int
    content: str
    product_family: str | None = None
    page_start: int | None = None
    page_end: int | None = None
    context_prefix: str | None = None

    @property
    def embedding_text(self) -> str:
        """Content with its document context prefix, as sent to the embedder."""
        if self.context_prefix:
            return f"{self.context_prefix}\n{self.content}"
        return self.content

    def __post_init__(self) -> None:
        if self.level is ChunkLevel.PARENT and self.parent_id is not None:
            raise ValueError(f"PARENT chunk {self.chunk_id} must not reference a parent")
        if self.parent_id is not None and self.level is not ChunkLevel.CHILD:
            raise ValueError(f"only CHILD chunks may reference a parent: {self.chunk_id}")

    def to_dict(self) -> dict:
        record = {f.name: getattr(self, f.name) for f in fields(self)}
        record["source_type"] = self.source_type.value
        record["level"] = self.level.value if self.level is not None else None
        return record

    @classmethod
    def from_dict(cls, record: dict) -> Chunk:
        level = record.get("level")
        return cls(
            **{
                **record,
                "source_type": SourceType(record["source_type"]),
                "level": ChunkLevel(level) if level is not None else None,
            }
        )


@dataclass(slots=True)
class SearchFilter:
    """Scope restriction shared by the lexical and vector indexes.

    Every field is optional; a filter with no field set means an
    unrestricted search.
    """

    inquiry_id: str | None = None
    document_ids: frozenset[str] | None = None
    product_families: frozenset[str] | None = None
    source_types: frozenset[SourceType] | None = None

    @classmethod
    def none(cls) -> SearchFilter:
        return cls()

    @classmethod
    def for_inquiry(cls, inquiry_id: str | None) -> SearchFilter:
        return cls(inquiry_id=inquiry_id)

    @classmethod
    def for_product(cls, inquiry_id: str | None, product_family: str) -> SearchFilter:
        return cls(inquiry_id=inquiry_id, product_families=frozenset({product_family}))

    @classmethod
    def for_documents(cls, document_ids: set[str] | frozenset[str]) -> SearchFilter:
        return cls(document_ids=frozenset(document_ids))

    def has_document_filter(self) -> bool:
        return bool(self.document_ids)

    def has_product_filter(self) -> bool:
        return bool(self.product_families)

    def has_source_type_filter(self) -> bool:
        return bool(self.source_types)

    def is_empty(self) -> bool:
        return (
            self.inquiry_id is None
            and not self.has_document_filter()
            and not self.has_product_filter()
            and not self.has_source_type_filter()
        )


@dataclass(slots=True)
class IndexHit:
    """Single scored hit returned by a lexical or vector index."""

    chunk_id: str
    document_id: str
    content: str
    score: float
    source_type: SourceType


@dataclass(slots=True)
class ScoredCandidate:
    """Candidate produced by hybrid fusion.

    `fused_score` is a rank-fusion statistic, not a probability, and is not
    bounded to [0, 1].
    """

    chunk_id: str
    document_id: str
    content: str
    vector_score: float
    keyword_score: float
    fused_score: float
    source_type: SourceType
    match_source: MatchSource


@dataclass(slots=True)
class RerankedCandidate:
    """Fused candidate annotated with the score used for final ordering."""

    chunk_id: str
    document_id: str
    content: str
    vector_score: float
    keyword_score: float
    fused_score: float
    source_type: SourceType
    match_source: MatchSource
    rerank_score: float

    @classmethod
    def from_candidate(cls, candidate: ScoredCandidate, rerank_score: float) -> RerankedCandidate:
        return cls(
            chunk_id=candidate.chunk_id,
            document_id=candidate.document_id,
            content=candidate.content,
            vector_score=candidate.vector_score,
            keyword_score=candidate.keyword_score,
            fused_score=candidate.fused_score,
            source_type=candidate.source_type,
            match_source=candidate.match_source,
            rerank_score=rerank_score,
        )


@dataclass(slots=True)
class EvidenceItem:
    """Read-only evidence projection handed to the verdict synthesizer."""

    chunk_id: str
    document_id: str
    score: float
    excerpt: str
    source_type: SourceType
    file_name: str | None = None
    page_start: int | None = None
    page_end: int | None = None
    product_family: str | None = None


@dataclass(slots=True)
class AdaptiveResult:
    evidences: list[RerankedCandidate]
    attempts: int
    confidence: float
    status: RetrievalStatus
    queries: list[str] = field(default_factory=list)


@dataclass(slots=True)
class HopRecord:
    hop_number: int
    query: str
    result_count: int
    top_score: float


@dataclass(slots=True)
class MultiHopResult:
    evidences: list[RerankedCandidate]
    hops: list[HopRecord] = field(default_factory=list)
    is_single_hop: bool = True


@dataclass(slots=True)
class HopDecision:
    needs_more: bool
    next_query: str | None = None


@dataclass(slots=True)
class Verdict:
    """Outcome of evidence-based claim verification."""

    verdict: VerdictLabel
    confidence: float
    reason: str
    risk_flags: list[RiskFlag] = field(default_factory=list)
    evidences: list[EvidenceItem] = field(default_factory=list)
    # English form of the question when it was translated before retrieval.
    translated_query: str | None = None


class ReformulationStrategy(str, Enum):
    """Query rewrite applied after a low-confidence attempt, chosen by attempt index."""

    SYNONYM_EXPANSION = "SYNONYM_EXPANSION"
    BROADEN = "BROADEN"
    CROSS_LANGUAGE = "CROSS_LANGUAGE"

    @classmethod
    def for_attempt(cls, attempt_index: int) -> ReformulationStrategy:
        """Map the 1-based index of the attempt that just failed to a strategy."""
        if attempt_index <= 1:
            return cls.SYNONYM_EXPANSION
        if attempt_index == 2:
            return cls.BROADEN
        return cls.CROSS_LANGUAGE
