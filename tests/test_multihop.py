"""Tests for multihop.py — hop decisions, merging and hop records."""
from __future__ import annotations

import threading

import pytest

from conftest import make_reranked
from rag_verifier.errors import RetrievalCancelled
from rag_verifier.multihop import MultiHopRetriever, merge_hops
from rag_verifier.schema import AdaptiveResult, HopDecision, HopRecord, RetrievalStatus


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _ScriptedAdaptive:
    """Adaptive retriever stand-in answering each query from a dict."""

    def __init__(self, by_query: dict):
        self.by_query = by_query
        self.calls: list[tuple] = []

    def retrieve(self, question, product_context=None, scope=None, cancel=None):
        self.calls.append((question, product_context, scope))
        evidences = list(self.by_query.get(question, []))
        confidence = max((e.rerank_score for e in evidences), default=0.0)
        status = RetrievalStatus.SUCCESS if evidences else RetrievalStatus.NO_EVIDENCE
        return AdaptiveResult(evidences=evidences, attempts=1, confidence=confidence, status=status, queries=[question])


class _Decider:
    def __init__(self, *decisions):
        self.decisions = list(decisions)
        self.calls: list[tuple] = []

    def decide(self, question, excerpts):
        self.calls.append((question, list(excerpts)))
        outcome = self.decisions.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _more(next_query: str | None) -> HopDecision:
    return HopDecision(needs_more=True, next_query=next_query)


# ---------------------------------------------------------------------------
# merge_hops
# ---------------------------------------------------------------------------

class TestMergeHops:
    def test_first_occurrence_wins(self):
        first = [make_reranked("A", 0.4), make_reranked("B", 0.3)]
        second = [make_reranked("A", 0.9), make_reranked("C", 0.8)]
        merged = merge_hops(first, second)
        assert [m.chunk_id for m in merged] == ["A", "B", "C"]
        assert merged[0].rerank_score == 0.4

    def test_no_hops(self):
        assert merge_hops() == []


# ---------------------------------------------------------------------------
# MultiHopRetriever
# ---------------------------------------------------------------------------

class TestMultiHopRetriever:
    def test_sufficient_first_hop_is_single_hop(self):
        adaptive = _ScriptedAdaptive({"q": [make_reranked("A", 0.8)]})
        result = MultiHopRetriever(adaptive, _Decider(HopDecision(needs_more=False))).retrieve("q")
        assert result.is_single_hop
        assert result.hops == [HopRecord(1, "q", 1, 0.8)]
        assert [e.chunk_id for e in result.evidences] == ["A"]

    def test_empty_first_hop_skips_decider(self):
        decider = _Decider()
        result = MultiHopRetriever(_ScriptedAdaptive({}), decider).retrieve("q")
        assert result.is_single_hop
        assert result.evidences == []
        assert result.hops == [HopRecord(1, "q", 0, 0.0)]
        assert decider.calls == []

    def test_second_hop_merges_with_first_winning(self):
        adaptive = _ScriptedAdaptive(
            {
                "q": [make_reranked("A", 0.6), make_reranked("B", 0.5)],
                "follow up": [make_reranked("B", 0.9), make_reranked("C", 0.7)],
            }
        )
        result = MultiHopRetriever(adaptive, _Decider(_more("follow up"))).retrieve("q")
        assert not result.is_single_hop
        assert [e.chunk_id for e in result.evidences] == ["A", "B", "C"]
        assert {e.chunk_id: e.rerank_score for e in result.evidences}["B"] == 0.5
        assert result.hops == [HopRecord(1, "q", 2, 0.6), HopRecord(2, "follow up", 2, 0.9)]

    def test_failing_decider_falls_back_to_single_hop(self):
        adaptive = _ScriptedAdaptive({"q": [make_reranked("A", 0.6)]})
        result = MultiHopRetriever(adaptive, _Decider(RuntimeError("llm down"))).retrieve("q")
        assert result.is_single_hop
        assert [e.chunk_id for e in result.evidences] == ["A"]

    def test_invalid_decision_type_falls_back(self):
        adaptive = _ScriptedAdaptive({"q": [make_reranked("A", 0.6)]})
        result = MultiHopRetriever(adaptive, _Decider({"needs_more_hops": True})).retrieve("q")
        assert result.is_single_hop

    @pytest.mark.parametrize("next_query", [None, "", "   "])
    def test_blank_next_query_stops(self, next_query):
        adaptive = _ScriptedAdaptive({"q": [make_reranked("A", 0.6)]})
        result = MultiHopRetriever(adaptive, _Decider(_more(next_query))).retrieve("q")
        assert result.is_single_hop
        assert len(adaptive.calls) == 1

    def test_default_max_hops_is_two(self):
        adaptive = _ScriptedAdaptive({"q": [make_reranked("A", 0.6)], "q2": [make_reranked("B", 0.6)]})
        decider = _Decider(_more("q2"), _more("q3"))
        result = MultiHopRetriever(adaptive, decider).retrieve("q")
        assert len(result.hops) == 2
        assert len(decider.calls) == 1

    def test_max_hops_bounds_hops(self):
        adaptive = _ScriptedAdaptive(
            {"q": [make_reranked("A", 0.6)], "q2": [make_reranked("B", 0.6)], "q3": [make_reranked("C", 0.6)]}
        )
        decider = _Decider(_more("q2"), _more("q3"), _more("q4"))
        result = MultiHopRetriever(adaptive, decider, max_hops=3).retrieve("q")
        assert [h.query for h in result.hops] == ["q", "q2", "q3"]
        assert [e.chunk_id for e in result.evidences] == ["A", "B", "C"]

    def test_empty_second_hop_stops_further_hops(self):
        adaptive = _ScriptedAdaptive({"q": [make_reranked("A", 0.6)]})
        decider = _Decider(_more("nothing here"), _more("never asked"))
        result = MultiHopRetriever(adaptive, decider, max_hops=3).retrieve("q")
        assert result.hops[1] == HopRecord(2, "nothing here", 0, 0.0)
        assert len(result.hops) == 2
        assert len(decider.calls) == 1

    def test_decider_sees_truncated_top_excerpts(self):
        adaptive = _ScriptedAdaptive({"q": [make_reranked(f"C-{i}", 0.6, content=str(i) * 500) for i in range(5)]})
        decider = _Decider(HopDecision(needs_more=False))
        MultiHopRetriever(adaptive, decider).retrieve("q")
        question, excerpts = decider.calls[0]
        assert question == "q"
        assert excerpts == ["0" * 300, "1" * 300, "2" * 300]

    def test_scope_and_product_passed_to_every_hop(self):
        adaptive = _ScriptedAdaptive({"q": [make_reranked("A", 0.6)], "q2": [make_reranked("B", 0.6)]})
        MultiHopRetriever(adaptive, _Decider(_more("q2"))).retrieve("q", scope="INQ-1", product_context="qPCR")
        assert adaptive.calls == [("q", "qPCR", "INQ-1"), ("q2", "qPCR", "INQ-1")]

    def test_cancel_between_hops(self):
        cancel = threading.Event()
        adaptive = _ScriptedAdaptive({"q": [make_reranked("A", 0.6)]})

        class _CancellingDecider:
            def decide(self, question, excerpts):
                cancel.set()
                return _more("q2")

        with pytest.raises(RetrievalCancelled):
            MultiHopRetriever(adaptive, _CancellingDecider()).retrieve("q", cancel=cancel)
        assert len(adaptive.calls) == 1

    def test_no_decider_is_single_hop(self):
        adaptive = _ScriptedAdaptive({"q": [make_reranked("A", 0.6)]})
        assert MultiHopRetriever(adaptive).retrieve("q").is_single_hop
