"""Tests for reranking.py — pass-through, judged reranking fallbacks, CrossEncoderJudge (mocked)."""
from __future__ import annotations

import math
import time
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from conftest import make_candidate
from rag_verifier.errors import CollaboratorTimeout, JudgeUnavailable
from rag_verifier.reranking import (
    CrossEncoderJudge,
    JudgedReranker,
    PassThroughReranker,
    build_reranker,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _ScriptedJudge:
    """Judge returning a score per content string, or raising what the script says."""

    def __init__(self, script: dict):
        self.script = script
        self.calls: list[tuple[str, str]] = []

    def score(self, query: str, content: str) -> float:
        self.calls.append((query, content))
        outcome = self.script[content]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome()
        return outcome


def _candidates():
    return [
        make_candidate("C-1", 0.030, content="alpha"),
        make_candidate("C-2", 0.020, content="beta"),
        make_candidate("C-3", 0.010, content="gamma"),
    ]


# ---------------------------------------------------------------------------
# PassThroughReranker
# ---------------------------------------------------------------------------

class TestPassThroughReranker:
    def test_rerank_score_equals_fused_score(self):
        output = PassThroughReranker().rerank("q", _candidates(), 10)
        assert [(r.chunk_id, r.rerank_score) for r in output] == [("C-1", 0.030), ("C-2", 0.020), ("C-3", 0.010)]

    def test_truncates_to_top_k(self):
        assert len(PassThroughReranker().rerank("q", _candidates(), 2)) == 2

    def test_empty_input(self):
        assert PassThroughReranker().rerank("q", [], 5) == []

    def test_cardinality_never_exceeds_input(self):
        output = PassThroughReranker().rerank("q", _candidates(), 50)
        assert len(output) == 3
        assert {r.chunk_id for r in output} <= {c.chunk_id for c in _candidates()}


# ---------------------------------------------------------------------------
# JudgedReranker
# ---------------------------------------------------------------------------

class TestJudgedReranker:
    def test_orders_by_judge_score(self):
        judge = _ScriptedJudge({"alpha": 0.2, "beta": 0.9, "gamma": 0.5})
        output = JudgedReranker(judge).rerank("q", _candidates(), 3)
        assert [r.chunk_id for r in output] == ["C-2", "C-3", "C-1"]
        assert output[0].rerank_score == pytest.approx(0.9)
        assert output[0].fused_score == pytest.approx(0.020)

    def test_judge_sees_query_and_content(self):
        judge = _ScriptedJudge({"alpha": 0.2, "beta": 0.9, "gamma": 0.5})
        JudgedReranker(judge).rerank("my query", _candidates(), 3)
        assert judge.calls[0] == ("my query", "alpha")

    def test_failed_candidate_falls_back_to_fused_score(self):
        judge = _ScriptedJudge({"alpha": RuntimeError("boom"), "beta": 0.9, "gamma": 0.5})
        output = JudgedReranker(judge).rerank("q", _candidates(), 3)
        by_id = {r.chunk_id: r.rerank_score for r in output}
        assert by_id == {"C-1": pytest.approx(0.030), "C-2": pytest.approx(0.9), "C-3": pytest.approx(0.5)}

    @pytest.mark.parametrize("bad_score", [1.5, -0.1, float("nan"), "high", None])
    def test_malformed_score_falls_back_to_fused_score(self, bad_score):
        judge = _ScriptedJudge({"alpha": bad_score, "beta": 0.9, "gamma": 0.5})
        output = JudgedReranker(judge).rerank("q", _candidates(), 3)
        assert {r.chunk_id: r.rerank_score for r in output}["C-1"] == pytest.approx(0.030)

    def test_numeric_string_score_accepted(self):
        judge = _ScriptedJudge({"alpha": "0.75", "beta": 0.1, "gamma": 0.1})
        output = JudgedReranker(judge).rerank("q", _candidates(), 1)
        assert output[0].chunk_id == "C-1"
        assert output[0].rerank_score == pytest.approx(0.75)

    def test_timeout_falls_back_for_that_candidate(self):
        judge = _ScriptedJudge({"alpha": lambda: time.sleep(0.5) or 0.99, "beta": 0.9, "gamma": 0.5})
        output = JudgedReranker(judge, timeout=0.05).rerank("q", _candidates(), 3)
        assert {r.chunk_id: r.rerank_score for r in output}["C-1"] == pytest.approx(0.030)

    def test_judge_timeout_error_keeps_other_scores(self):
        judge = _ScriptedJudge({"alpha": CollaboratorTimeout("read timed out"), "beta": 0.9, "gamma": 0.5})
        output = JudgedReranker(judge).rerank("q", _candidates(), 3)
        by_id = {r.chunk_id: r.rerank_score for r in output}
        assert by_id == {"C-1": pytest.approx(0.030), "C-2": pytest.approx(0.9), "C-3": pytest.approx(0.5)}

    def test_judge_unavailable_falls_back_to_pass_through(self):
        judge = _ScriptedJudge({"alpha": 0.9, "beta": JudgeUnavailable("no key"), "gamma": 0.5})
        output = JudgedReranker(judge).rerank("q", _candidates(), 3)
        assert [(r.chunk_id, r.rerank_score) for r in output] == [("C-1", 0.030), ("C-2", 0.020), ("C-3", 0.010)]

    def test_cardinality(self):
        judge = _ScriptedJudge({"alpha": 0.2, "beta": 0.9, "gamma": 0.5})
        output = JudgedReranker(judge).rerank("q", _candidates(), 2)
        assert len(output) == 2
        assert {r.chunk_id for r in output} <= {"C-1", "C-2", "C-3"}

    def test_empty_input_skips_judge(self):
        judge = _ScriptedJudge({})
        assert JudgedReranker(judge).rerank("q", [], 5) == []
        assert judge.calls == []


# ---------------------------------------------------------------------------
# CrossEncoderJudge
# ---------------------------------------------------------------------------

class TestCrossEncoderJudge:
    @pytest.fixture()
    def judge(self):
        """Return a judge whose underlying CrossEncoder is fully mocked."""
        with patch("rag_verifier.reranking.CrossEncoder") as mock_cls:
            mock_model = MagicMock()
            mock_cls.return_value = mock_model
            j = CrossEncoderJudge(model_name="cross-encoder/test-model")
            j._mock_model = mock_model
            yield j

    def test_zero_logit_is_half(self, judge):
        judge._mock_model.predict.return_value = np.array([0.0])
        assert judge.score("q", "text") == pytest.approx(0.5)

    def test_sigmoid_of_logit(self, judge):
        judge._mock_model.predict.return_value = np.array([2.0])
        assert judge.score("q", "text") == pytest.approx(1 / (1 + math.exp(-2.0)))

    def test_extreme_logits_stay_in_range(self, judge):
        judge._mock_model.predict.return_value = np.array([-1000.0])
        assert 0.0 <= judge.score("q", "text") < 1e-6

    def test_passes_pair_to_model(self, judge):
        judge._mock_model.predict.return_value = np.array([0.1])
        judge.score("my query", "alpha text")
        assert judge._mock_model.predict.call_args[0][0] == [["my query", "alpha text"]]

    def test_constructor_uses_provided_model_name(self):
        with patch("rag_verifier.reranking.CrossEncoder") as mock_cls:
            CrossEncoderJudge(model_name="cross-encoder/custom-model")
            mock_cls.assert_called_once_with("cross-encoder/custom-model")


class TestBuildReranker:
    def test_no_judge_is_pass_through(self):
        assert isinstance(build_reranker(None), PassThroughReranker)

    def test_judge_is_judged(self):
        reranker = build_reranker(_ScriptedJudge({}), timeout=2.0)
        assert isinstance(reranker, JudgedReranker)
        assert reranker.timeout == 2.0
