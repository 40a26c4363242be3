from __future__ import annotations

import threading
from typing import Sequence

from .adaptive import AdaptiveRetriever
from .contracts import HopDecisionJudge, NoFurtherHops
from .logging import get_logger
from .resilience import attempt, check_cancelled
from .schema import HopDecision, HopRecord, MultiHopResult, RerankedCandidate
from .tracing import ATTR_INPUT_VALUE, ATTR_RETRIEVAL_DOCUMENTS, ATTR_RETRIEVAL_HOPS, stage_span

logger = get_logger(__name__)


def merge_hops(*hops: Sequence[RerankedCandidate]) -> list[RerankedCandidate]:
    """Concatenate hop results, keeping only the first copy of each chunk id."""
    merged: dict[str, RerankedCandidate] = {}
    for results in hops:
        for result in results:
            merged.setdefault(result.chunk_id, result)
    return list(merged.values())


class MultiHopRetriever:
    """Runs the adaptive loop and, when a judge asks for it, follow-up hops on derived queries."""

    def __init__(
        self,
        adaptive: AdaptiveRetriever,
        decider: HopDecisionJudge | None = None,
        excerpt_count: int = 3,
        excerpt_chars: int = 300,
        max_hops: int = 2,
        timeout: float | None = None,
    ):
        """Configure the hop budget.

        Args:
            adaptive: Retrieval loop run once per hop.
            decider: Judge deciding whether another hop is needed.
            excerpt_count: Top results shown to the judge.
            excerpt_chars: Characters kept from each excerpt.
            max_hops: Upper bound on hops, including the first.
            timeout: Time budget for one judge call, in seconds.
        """
        self.adaptive = adaptive
        self.decider = decider or NoFurtherHops()
        self.excerpt_count = excerpt_count
        self.excerpt_chars = excerpt_chars
        self.max_hops = max(1, max_hops)
        self.timeout = timeout

    def retrieve(
        self,
        question: str,
        scope: str | None = None,
        cancel: threading.Event | None = None,
        product_context: str | None = None,
    ) -> MultiHopResult:
        """Gather evidence for `question` in one or more hops.

        Returns:
            Merged evidence with earlier hops taking priority on duplicate
            chunk ids, plus one HopRecord per executed hop.

        Raises:
            RetrievalCancelled: If `cancel` is set between hops or attempts.
        """
        with stage_span("multihop-retrieval", **{ATTR_INPUT_VALUE: question}) as span:
            first = self.adaptive.retrieve(question, product_context=product_context, scope=scope, cancel=cancel)
            hops = [HopRecord(1, question, len(first.evidences), first.confidence)]
            collected = [first.evidences]
            logger.info(
                "multihop.hop",
                hop=1,
                query=question,
                results=len(first.evidences),
                score=round(first.confidence, 3),
            )

            latest = first.evidences
            while latest and len(hops) < self.max_hops:
                decision = self._decide(question, latest)
                next_query = (decision.next_query or "").strip()
                if not decision.needs_more or not next_query:
                    break

                check_cancelled(cancel, f"hop {len(hops) + 1}")
                result = self.adaptive.retrieve(
                    next_query, product_context=product_context, scope=scope, cancel=cancel
                )
                hops.append(HopRecord(len(hops) + 1, next_query, len(result.evidences), result.confidence))
                collected.append(result.evidences)
                logger.info(
                    "multihop.hop",
                    hop=len(hops),
                    query=next_query,
                    results=len(result.evidences),
                    score=round(result.confidence, 3),
                )
                latest = result.evidences

            evidences = merge_hops(*collected)
            span.set_attribute(ATTR_RETRIEVAL_HOPS, len(hops))
            span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(evidences))

        return MultiHopResult(evidences=evidences, hops=hops, is_single_hop=len(hops) == 1)

    def _decide(self, question: str, results: list[RerankedCandidate]) -> HopDecision:
        excerpts = [result.content[: self.excerpt_chars] for result in results[: self.excerpt_count]]
        outcome = attempt(self.decider.decide, question, excerpts, timeout=self.timeout)
        if outcome.failed or not isinstance(outcome.value, HopDecision):
            logger.warning("multihop.decision_failed", error=outcome.describe_error() or "invalid decision")
            return HopDecision(needs_more=False)
        return outcome.value
