from __future__ import annotations

import math
from typing import Protocol, Sequence

from sentence_transformers import CrossEncoder

from .contracts import RelevanceJudge
from .errors import JudgeUnavailable, MalformedResponse
from .logging import get_logger
from .resilience import attempt
from .schema import RerankedCandidate, ScoredCandidate
from .tracing import ATTR_INPUT_VALUE, ATTR_RETRIEVAL_DOCUMENTS, stage_span

logger = get_logger(__name__)


class Reranker(Protocol):
    def rerank(self, query: str, candidates: Sequence[ScoredCandidate], top_k: int) -> list[RerankedCandidate]:
        """Return the candidates re-scored, sorted descending and cut to `top_k`."""
        ...


def _ranked(reranked: list[RerankedCandidate], top_k: int) -> list[RerankedCandidate]:
    return sorted(reranked, key=lambda candidate: candidate.rerank_score, reverse=True)[: max(top_k, 0)]


class PassThroughReranker:
    """Reranker used when no relevance judge is configured: rerank_score := fused_score."""

    def rerank(self, query: str, candidates: Sequence[ScoredCandidate], top_k: int) -> list[RerankedCandidate]:
        return _ranked([RerankedCandidate.from_candidate(c, c.fused_score) for c in candidates], top_k)


def _validated(score) -> float:
    try:
        value = float(score)
    except (TypeError, ValueError) as exc:
        raise MalformedResponse(f"non-numeric relevance score {score!r}") from exc
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise MalformedResponse(f"relevance score out of range: {value}")
    return value


class JudgedReranker:
    """Second-stage reranker scoring each candidate with an external relevance judge."""

    def __init__(self, judge: RelevanceJudge, timeout: float | None = None):
        """Wrap a relevance judge.

        Args:
            judge: Scores one `(query, content)` pair in [0, 1].
            timeout: Per-candidate time budget in seconds.
        """
        self.judge = judge
        self.timeout = timeout
        self._fallback = PassThroughReranker()

    def rerank(self, query: str, candidates: Sequence[ScoredCandidate], top_k: int) -> list[RerankedCandidate]:
        """Reorder fused candidates by judge relevance.

        A candidate whose score cannot be obtained keeps its fused score. If the
        judge reports itself unavailable, the whole call falls back to
        pass-through ordering. Never raises.

        Args:
            query: User query string.
            candidates: Fused candidates to re-score.
            top_k: Number of candidates to return.

        Returns:
            At most `top_k` candidates sorted by rerank score.
        """
        if not candidates:
            return []

        with stage_span("rerank", **{ATTR_INPUT_VALUE: query}) as span:
            reranked: list[RerankedCandidate] = []
            fallbacks = 0
            for candidate in candidates:
                outcome = attempt(self.judge.score, query, candidate.content, timeout=self.timeout).map(_validated)
                if outcome.failed and isinstance(outcome.error, JudgeUnavailable):
                    logger.warning("rerank.judge_unavailable", error=outcome.describe_error())
                    span.set_attribute("rerank.pass_through", True)
                    return self._fallback.rerank(query, candidates, top_k)
                if outcome.failed:
                    fallbacks += 1
                    logger.debug(
                        "rerank.candidate_fallback",
                        chunk_id=candidate.chunk_id,
                        error=outcome.describe_error(),
                    )
                reranked.append(
                    RerankedCandidate.from_candidate(candidate, outcome.unwrap_or(candidate.fused_score))
                )

            results = _ranked(reranked, top_k)
            span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(results))

        logger.debug("rerank.done", candidates=len(candidates), returned=len(results), fallbacks=fallbacks)
        return results


class CrossEncoderJudge:
    """Relevance judge backed by a local cross-encoder model."""

    def __init__(self, model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"):
        """Initialize the cross-encoder used for pairwise query-chunk scoring.

        Args:
            model_name: Sentence-transformers cross-encoder model identifier.
        """
        self.model = CrossEncoder(model_name)

    def score(self, query: str, content: str) -> float:
        """Return the sigmoid of the cross-encoder logit for `(query, content)`."""
        logit = float(self.model.predict([[query, content]])[0])
        return 1.0 / (1.0 + math.exp(-max(-50.0, min(50.0, logit))))


def build_reranker(judge: RelevanceJudge | None = None, timeout: float | None = None) -> Reranker:
    """Pick the reranker strategy: judged when a judge is configured, otherwise pass-through."""
    if judge is None:
        return PassThroughReranker()
    return JudgedReranker(judge, timeout=timeout)
