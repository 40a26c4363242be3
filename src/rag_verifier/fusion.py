from __future__ import annotations

from typing import Sequence

from .contracts import HydeQueryTransformer, LexicalIndex, PlainQueryTransformer, VectorIndex
from .logging import get_logger
from .resilience import attempt
from .schema import IndexHit, MatchSource, ScoredCandidate, SearchFilter
from .settings import HybridSearchSettings
from .tracing import ATTR_INPUT_VALUE, ATTR_RETRIEVAL_DOCUMENTS, stage_span

logger = get_logger(__name__)


def reciprocal_rank_fusion(
    vector_hits: Sequence[IndexHit],
    keyword_hits: Sequence[IndexHit],
    k: int = 60,
    vector_weight: float = 1.0,
    keyword_weight: float = 1.0,
) -> list[ScoredCandidate]:
    """Fuse vector and keyword rankings via Reciprocal Rank Fusion (RRF).

    The hit at 0-based rank `r` of a list contributes `weight / (k + r + 1)`
    to its chunk. Only the first occurrence of a chunk within one list counts.

    Args:
        vector_hits: Ranked vector-index hits.
        keyword_hits: Ranked keyword-index hits.
        k: RRF smoothing constant controlling rank contribution decay.
        vector_weight: Multiplier for vector contributions.
        keyword_weight: Multiplier for keyword contributions.

    Returns:
        Every distinct chunk, sorted by fused score. Ties keep vector-list
        order first, then keyword-list order.
    """
    candidates: dict[str, ScoredCandidate] = {}

    for rank, hit in enumerate(vector_hits):
        if hit.chunk_id in candidates:
            continue
        candidates[hit.chunk_id] = ScoredCandidate(
            chunk_id=hit.chunk_id,
            document_id=hit.document_id,
            content=hit.content,
            vector_score=hit.score,
            keyword_score=0.0,
            fused_score=vector_weight / (k + rank + 1),
            source_type=hit.source_type,
            match_source=MatchSource.VECTOR,
        )

    seen_keyword: set[str] = set()
    for rank, hit in enumerate(keyword_hits):
        if hit.chunk_id in seen_keyword:
            continue
        seen_keyword.add(hit.chunk_id)
        contribution = keyword_weight / (k + rank + 1)
        existing = candidates.get(hit.chunk_id)
        if existing is None:
            candidates[hit.chunk_id] = ScoredCandidate(
                chunk_id=hit.chunk_id,
                document_id=hit.document_id,
                content=hit.content,
                vector_score=0.0,
                keyword_score=hit.score,
                fused_score=contribution,
                source_type=hit.source_type,
                match_source=MatchSource.KEYWORD,
            )
        else:
            existing.keyword_score = hit.score
            existing.fused_score += contribution
            existing.match_source = MatchSource.VECTOR_KEYWORD

    return sorted(candidates.values(), key=lambda candidate: candidate.fused_score, reverse=True)


def _vector_only(vector_hits: Sequence[IndexHit]) -> list[ScoredCandidate]:
    seen: set[str] = set()
    candidates: list[ScoredCandidate] = []
    for hit in vector_hits:
        if hit.chunk_id in seen:
            continue
        seen.add(hit.chunk_id)
        candidates.append(
            ScoredCandidate(
                chunk_id=hit.chunk_id,
                document_id=hit.document_id,
                content=hit.content,
                vector_score=hit.score,
                keyword_score=0.0,
                fused_score=hit.score,
                source_type=hit.source_type,
                match_source=MatchSource.VECTOR,
            )
        )
    return candidates


def _apply_vector_floor(candidates: list[ScoredCandidate], floor: float) -> list[ScoredCandidate]:
    """Drop vector-matched candidates scoring below `floor`, unless nothing would remain."""
    if floor <= 0:
        return candidates
    kept = [
        candidate
        for candidate in candidates
        if candidate.match_source is MatchSource.KEYWORD or candidate.vector_score >= floor
    ]
    return kept or candidates


class HybridSearch:
    """Runs both indexes under one filter and fuses their rankings."""

    def __init__(
        self,
        vector_index: VectorIndex,
        lexical_index: LexicalIndex | None = None,
        settings: HybridSearchSettings | None = None,
        timeout: float | None = None,
        query_transformer: HydeQueryTransformer | None = None,
    ):
        self.vector_index = vector_index
        self.lexical_index = lexical_index
        self.settings = settings or HybridSearchSettings()
        self.timeout = timeout
        self.query_transformer = query_transformer or PlainQueryTransformer()

    @property
    def lexical_enabled(self) -> bool:
        return self.settings.lexical_enabled and self.lexical_index is not None

    def _fetch(self, name: str, index, query: str, limit: int, search_filter: SearchFilter) -> list[IndexHit]:
        outcome = attempt(index.search, query, limit, search_filter, timeout=self.timeout)
        if outcome.failed:
            logger.warning("hybrid.index_unavailable", index=name, error=outcome.describe_error())
        return outcome.unwrap_or([]) or []

    def _vector_query(self, query: str, search_filter: SearchFilter) -> str:
        """Text embedded for the vector search; the plain query when the transform fails."""
        product_context = ", ".join(sorted(search_filter.product_families or ())) or None
        outcome = attempt(self.query_transformer.transform, query, product_context, timeout=self.timeout)
        if outcome.failed:
            logger.warning("hybrid.hyde_failed", error=outcome.describe_error())
            return query
        text = outcome.value
        if not isinstance(text, str) or not text.strip():
            return query
        return text

    def search(self, query: str, top_k: int, search_filter: SearchFilter | None = None) -> list[ScoredCandidate]:
        """Retrieve up to `top_k` fused candidates for `query`.

        Each index is asked for `2 * top_k` hits. The vector index is queried
        with the transformed query (a hypothetical answer under HyDE), the
        lexical index with `query` itself. An index that fails or times out
        contributes an empty list.

        Returns:
            Candidates sorted by fused score, highest first.
        """
        if top_k <= 0:
            return []
        search_filter = search_filter or SearchFilter.none()
        limit = top_k * 2

        with stage_span("hybrid-search", **{ATTR_INPUT_VALUE: query}) as span:
            vector_query = self._vector_query(query, search_filter)
            vector_hits = self._fetch("vector", self.vector_index, vector_query, limit, search_filter)
            if self.lexical_enabled:
                keyword_hits = self._fetch("lexical", self.lexical_index, query, limit, search_filter)
                fused = reciprocal_rank_fusion(
                    vector_hits,
                    keyword_hits,
                    k=self.settings.rrf_k,
                    vector_weight=self.settings.vector_weight,
                    keyword_weight=self.settings.keyword_weight,
                )
            else:
                keyword_hits = []
                fused = _vector_only(vector_hits)

            results = _apply_vector_floor(fused, self.settings.min_vector_score)[:top_k]
            span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(results))

        logger.debug(
            "hybrid.search",
            vector_hits=len(vector_hits),
            keyword_hits=len(keyword_hits),
            results=len(results),
            lexical_enabled=self.lexical_enabled,
        )
        return results
