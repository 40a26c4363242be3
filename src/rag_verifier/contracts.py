"""Collaborator contracts consumed by the retrieval core.

Each external dependency is a narrow :class:`typing.Protocol`. Concrete
implementations live in :mod:`rag_verifier.indexes`, :mod:`rag_verifier.llm`
and :mod:`rag_verifier.reranking`; the no-op defaults below are used when no
external judge is configured. Which implementation runs is decided when the
pipeline is constructed, never by inspecting types at call time.
"""
from __future__ import annotations

from typing import Iterable, Protocol, Sequence, runtime_checkable

from .schema import (
    Chunk,
    EvidenceItem,
    HopDecision,
    IndexHit,
    Polarity,
    RerankedCandidate,
    SearchFilter,
    VerdictLabel,
)


@runtime_checkable
class LexicalIndex(Protocol):
    def search(self, query: str, top_k: int, search_filter: SearchFilter) -> list[IndexHit]:
        """Return up to `top_k` keyword hits ordered by descending score."""
        ...


@runtime_checkable
class VectorIndex(Protocol):
    def search(self, query: str, top_k: int, search_filter: SearchFilter) -> list[IndexHit]:
        """Return up to `top_k` nearest-neighbour hits ordered by descending score."""
        ...


class IndexWriter(Protocol):
    def upsert(self, chunks: Sequence[Chunk]) -> int:
        """Add or replace chunks, returning how many were written."""
        ...

    def delete_document(self, document_id: str) -> int:
        ...


@runtime_checkable
class RelevanceJudge(Protocol):
    def score(self, query: str, content: str) -> float:
        """Return a relevance estimate in [0, 1]. May raise per call."""
        ...


@runtime_checkable
class QueryReformulator(Protocol):
    def reformulate(
        self,
        original_query: str,
        current_query: str,
        current_results: Sequence[RerankedCandidate],
        attempt_index: int,
    ) -> str:
        ...


@runtime_checkable
class HopDecisionJudge(Protocol):
    def decide(self, question: str, excerpts: Sequence[str]) -> HopDecision:
        ...


class ChunkRepository(Protocol):
    def find_by_ids(self, chunk_ids: Iterable[str]) -> list[Chunk]:
        """Batch lookup; unknown ids are silently absent from the result."""
        ...


class ChunkStore(ChunkRepository, Protocol):
    def save_all(self, chunks: Sequence[Chunk]) -> None:
        ...

    def delete_by_document(self, document_id: str) -> int:
        ...


class DocumentDirectory(Protocol):
    def file_names(self, document_ids: Iterable[str]) -> dict[str, str]:
        """Map known document ids to display file names."""
        ...


@runtime_checkable
class PolarityClassifier(Protocol):
    def classify(self, text: str) -> Polarity:
        ...


class VerdictExplainer(Protocol):
    def explain(self, question: str, label: VerdictLabel, evidences: Sequence[EvidenceItem]) -> str:
        ...


@runtime_checkable
class HydeQueryTransformer(Protocol):
    def transform(self, question: str, product_context: str | None = None) -> str:
        """Return the text to embed for a vector search on `question`."""
        ...


@runtime_checkable
class QueryTranslator(Protocol):
    def translate(self, question: str) -> str:
        ...


class ChunkEnricher(Protocol):
    def context_for(self, document_text: str, chunk_content: str, file_name: str | None = None) -> str:
        """Return a short context prefix for a chunk; blank for none."""
        ...


class KeepQueryReformulator:
    """Reformulator used when no LLM is configured: repeats the current query."""

    def reformulate(
        self,
        original_query: str,
        current_query: str,
        current_results: Sequence[RerankedCandidate],
        attempt_index: int,
    ) -> str:
        return current_query


class NoFurtherHops:
    """Hop decision used when no LLM is configured: evidence is always sufficient."""

    def decide(self, question: str, excerpts: Sequence[str]) -> HopDecision:
        return HopDecision(needs_more=False)


class PlainQueryTransformer:
    """Embeds the question itself."""

    def transform(self, question: str, product_context: str | None = None) -> str:
        return question


class KeepQuestionTranslator:
    def translate(self, question: str) -> str:
        return question


class NoChunkContext:
    """Chunk enricher used when no LLM is configured: chunks are indexed as written."""

    def context_for(self, document_text: str, chunk_content: str, file_name: str | None = None) -> str:
        return ""
