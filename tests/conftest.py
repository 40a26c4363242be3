"""Shared pytest fixtures for rag_verifier unit tests."""
from __future__ import annotations

import re

import numpy as np
import pytest

from rag_verifier.schema import (
    Chunk,
    ChunkLevel,
    EvidenceItem,
    IndexHit,
    MatchSource,
    RerankedCandidate,
    ScoredCandidate,
    SourceType,
)

# Tiny fixed vocabulary for deterministic offline embeddings.
VOCAB = ["vortex", "buffer", "centrifuge", "pcr", "gel", "temperature", "storage", "sample"]


def keyword_embedder(texts) -> np.ndarray:
    """Bag-of-words embedder over VOCAB with a small bias column so no row is all zeros."""
    rows = []
    for text in texts:
        words = re.findall(r"\w+", text.lower())
        rows.append([float(words.count(term)) for term in VOCAB] + [0.01])
    return np.array(rows, dtype=np.float32)


def make_chunk(
    chunk_id: str,
    content: str,
    document_id: str = "DOC-1",
    level: ChunkLevel | None = ChunkLevel.CHILD,
    parent_id: str | None = None,
    source_type: SourceType = SourceType.KNOWLEDGE_BASE,
    product_family: str | None = None,
    sequence_index: int = 0,
    page_start: int | None = None,
    page_end: int | None = None,
) -> Chunk:
    return Chunk(
        chunk_id=chunk_id,
        document_id=document_id,
        source_type=source_type,
        source_id=document_id,
        level=level,
        parent_id=parent_id,
        sequence_index=sequence_index,
        start_offset=0,
        end_offset=len(content),
        content=content,
        product_family=product_family,
        page_start=page_start,
        page_end=page_end,
    )


def make_hit(chunk_id: str, score: float, document_id: str = "DOC-1", content: str | None = None) -> IndexHit:
    return IndexHit(
        chunk_id=chunk_id,
        document_id=document_id,
        content=content if content is not None else f"content of {chunk_id}",
        score=score,
        source_type=SourceType.KNOWLEDGE_BASE,
    )


def make_candidate(chunk_id: str, fused_score: float, content: str | None = None) -> ScoredCandidate:
    return ScoredCandidate(
        chunk_id=chunk_id,
        document_id="DOC-1",
        content=content if content is not None else f"content of {chunk_id}",
        vector_score=fused_score,
        keyword_score=0.0,
        fused_score=fused_score,
        source_type=SourceType.KNOWLEDGE_BASE,
        match_source=MatchSource.VECTOR,
    )


def make_reranked(chunk_id: str, rerank_score: float, content: str | None = None) -> RerankedCandidate:
    return RerankedCandidate.from_candidate(make_candidate(chunk_id, rerank_score, content), rerank_score)


def make_evidence(score: float, excerpt: str = "Incubate the sample for ten minutes.", chunk_id: str = "C-1") -> EvidenceItem:
    return EvidenceItem(
        chunk_id=chunk_id,
        document_id="DOC-1",
        score=score,
        excerpt=excerpt,
        source_type=SourceType.KNOWLEDGE_BASE,
    )


class StaticIndex:
    """Index stub returning canned hits and recording every call."""

    def __init__(self, hits=None, error: Exception | None = None):
        self.hits = list(hits or [])
        self.error = error
        self.calls: list[tuple] = []

    def search(self, query, top_k, search_filter):
        self.calls.append((query, top_k, search_filter))
        if self.error is not None:
            raise self.error
        return self.hits[:top_k]


@pytest.fixture()
def embedder():
    return keyword_embedder


@pytest.fixture()
def kb_chunks() -> list[Chunk]:
    return [
        make_chunk("KB-1-PAR-000", "Vortex the buffer. Centrifuge the sample.", "KB-1", level=ChunkLevel.PARENT),
        make_chunk("KB-1-PAR-000-CHD-00", "Vortex the buffer.", "KB-1", parent_id="KB-1-PAR-000", product_family="qPCR"),
        make_chunk("KB-1-PAR-000-CHD-01", "Centrifuge the sample.", "KB-1", parent_id="KB-1-PAR-000", product_family="qPCR"),
        make_chunk("KB-2-PAR-000-CHD-00", "Store the gel at low temperature.", "KB-2", parent_id="KB-2-PAR-000", product_family="Electrophoresis"),
        make_chunk(
            "INQ-7-PAR-000-CHD-00",
            "Customer reports PCR buffer storage issue.",
            "INQ-7",
            parent_id="INQ-7-PAR-000",
            source_type=SourceType.INQUIRY,
        ),
    ]
