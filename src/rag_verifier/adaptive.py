from __future__ import annotations

import threading

from .contracts import KeepQueryReformulator, QueryReformulator
from .fusion import HybridSearch
from .logging import get_logger
from .reranking import PassThroughReranker, Reranker
from .resilience import attempt, check_cancelled
from .schema import AdaptiveResult, ReformulationStrategy, RerankedCandidate, RetrievalStatus, SearchFilter
from .settings import RetrievalSettings
from .tracing import (
    ATTR_INPUT_VALUE,
    ATTR_RETRIEVAL_ATTEMPTS,
    ATTR_RETRIEVAL_CONFIDENCE,
    ATTR_RETRIEVAL_DOCUMENTS,
    ATTR_RETRIEVAL_STATUS,
    stage_span,
)

logger = get_logger(__name__)


def scope_filter(scope: str | None, product_context: str | None = None) -> SearchFilter:
    """Build the search filter for a scope token, narrowed to a product family when given."""
    if product_context and product_context.strip():
        return SearchFilter.for_product(scope, product_context.strip())
    return SearchFilter.for_inquiry(scope)


def top_score(results: list[RerankedCandidate]) -> float:
    return max((result.rerank_score for result in results), default=0.0)


class AdaptiveRetriever:
    """Fusion + rerank loop that rewrites the query until evidence is confident enough."""

    def __init__(
        self,
        search: HybridSearch,
        reranker: Reranker | None = None,
        reformulator: QueryReformulator | None = None,
        settings: RetrievalSettings | None = None,
    ):
        self.search = search
        self.reranker = reranker or PassThroughReranker()
        self.reformulator = reformulator or KeepQueryReformulator()
        self.settings = settings or RetrievalSettings()

    def retrieve(
        self,
        question: str,
        product_context: str | None = None,
        scope: str | None = None,
        cancel: threading.Event | None = None,
    ) -> AdaptiveResult:
        """Retrieve reranked evidence for `question`, retrying with rewritten queries.

        Each attempt runs hybrid search and reranking for the current query.
        The best-scoring attempt is kept. The loop stops as soon as an
        attempt's top rerank score reaches the success threshold, or after
        `max_attempts` attempts.

        Args:
            question: Question text; also the first query.
            product_context: Optional product family restricting the search.
            scope: Scope token, typically an inquiry id.
            cancel: Set by the caller to abandon the loop.

        Returns:
            SUCCESS with the confident evidence, otherwise LOW_CONFIDENCE with
            the best evidence seen, or NO_EVIDENCE when nothing was found.

        Raises:
            RetrievalCancelled: If `cancel` is set before an attempt starts.
        """
        max_attempts = max(1, self.settings.max_attempts)
        search_filter = scope_filter(scope, product_context)
        current_query = question
        queries: list[str] = []
        best: list[RerankedCandidate] = []
        best_score = 0.0

        with stage_span("adaptive-retrieval", **{ATTR_INPUT_VALUE: question}) as span:
            attempt_number = 1
            while True:
                check_cancelled(cancel, f"attempt {attempt_number}")
                queries.append(current_query)

                candidates = self.search.search(current_query, self.settings.candidate_budget, search_filter)
                results = self.reranker.rerank(current_query, candidates, self.settings.rerank_top_k)
                score = top_score(results)
                if score > best_score:
                    best_score = score
                    best = results

                logger.info(
                    "adaptive.attempt",
                    attempt=attempt_number,
                    query=current_query,
                    top_score=round(score, 3),
                    scope=scope,
                )

                if score >= self.settings.success_threshold:
                    status = RetrievalStatus.SUCCESS
                    break
                if attempt_number >= max_attempts:
                    status = RetrievalStatus.LOW_CONFIDENCE if best else RetrievalStatus.NO_EVIDENCE
                    break

                current_query = self._reformulate(question, current_query, results, attempt_number)
                attempt_number += 1

            span.set_attribute(ATTR_RETRIEVAL_ATTEMPTS, attempt_number)
            span.set_attribute(ATTR_RETRIEVAL_STATUS, status.value)
            span.set_attribute(ATTR_RETRIEVAL_CONFIDENCE, best_score)
            span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(best))

        return AdaptiveResult(
            evidences=best,
            attempts=attempt_number,
            confidence=best_score,
            status=status,
            queries=queries,
        )

    def _reformulate(
        self,
        question: str,
        current_query: str,
        results: list[RerankedCandidate],
        attempt_number: int,
    ) -> str:
        outcome = attempt(
            self.reformulator.reformulate,
            question,
            current_query,
            results,
            attempt_number,
            timeout=self.settings.collaborator_timeout_seconds,
        )
        strategy = ReformulationStrategy.for_attempt(attempt_number)
        if outcome.failed:
            logger.warning(
                "adaptive.reformulate_failed",
                attempt=attempt_number,
                strategy=strategy.value,
                error=outcome.describe_error(),
            )
            return current_query

        rewritten = outcome.value
        if not isinstance(rewritten, str) or not rewritten.strip():
            return current_query
        logger.info("adaptive.reformulated", attempt=attempt_number, strategy=strategy.value, query=rewritten.strip())
        return rewritten.strip()
