"""Tests for settings.py — defaults, env overrides, invalid values."""
from __future__ import annotations

import pytest

from rag_verifier.errors import ConfigurationError
from rag_verifier.settings import (
    HybridSearchSettings,
    OpenAISettings,
    RetrievalSettings,
    VerdictSettings,
    load_settings,
)

_ENV_VARS = [
    "RAG_OPENAI_ENABLED",
    "OPENAI_EMBEDDING_MODEL",
    "OPENAI_CHAT_MODEL",
    "OPENAI_TIMEOUT_SECONDS",
    "RAG_HYDE_ENABLED",
    "RAG_QUERY_TRANSLATION_ENABLED",
    "RAG_CONTEXTUAL_ENRICHMENT_ENABLED",
    "RAG_CHUNK_PARENT_SIZE",
    "RAG_CHUNK_CHILD_SIZE",
    "RAG_CHUNK_OVERLAP_SENTENCES",
    "RAG_HYBRID_ENABLED",
    "RAG_HYBRID_RRF_K",
    "RAG_HYBRID_VECTOR_WEIGHT",
    "RAG_HYBRID_KEYWORD_WEIGHT",
    "RAG_HYBRID_MIN_VECTOR_SCORE",
    "RAG_ADAPTIVE_MAX_ATTEMPTS",
    "RAG_ADAPTIVE_SUCCESS_THRESHOLD",
    "RAG_ADAPTIVE_CANDIDATE_BUDGET",
    "RAG_RERANK_TOP_K",
    "RAG_MULTIHOP_MAX_HOPS",
    "RAG_COLLABORATOR_TIMEOUT_SECONDS",
]


@pytest.fixture()
def clean_env(monkeypatch, tmp_path):
    """Unset every setting and run from an empty directory so no .env is picked up."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("rag_verifier.settings.load_dotenv", lambda: False)


class TestDefaults:
    def test_openai_defaults(self):
        s = OpenAISettings()
        assert s.enabled is False
        assert s.embedding_model == "text-embedding-3-small"
        assert s.chat_model == "gpt-4.1-mini"
        assert (s.hyde_enabled, s.translation_enabled, s.contextual_enrichment_enabled) == (True, True, True)

    def test_hybrid_defaults(self):
        s = HybridSearchSettings()
        assert s.rrf_k == 60
        assert s.vector_weight == 1.0
        assert s.keyword_weight == 1.0
        assert s.min_vector_score == 0.0

    def test_retrieval_defaults(self):
        s = RetrievalSettings()
        assert s.max_attempts == 3
        assert s.success_threshold == 0.50
        assert s.candidate_budget == 50
        assert s.rerank_top_k == 10
        assert s.max_hops == 2

    def test_verdict_defaults(self):
        s = VerdictSettings()
        assert (s.supported_threshold, s.conditional_threshold) == (0.70, 0.45)
        assert s.spread_threshold == 0.35


class TestLoadSettings:
    def test_defaults_when_env_vars_absent(self, clean_env):
        settings = load_settings()
        assert settings.openai.enabled is False
        assert settings.chunking.parent_size == 1500
        assert settings.chunking.child_size == 400
        assert settings.hybrid.lexical_enabled is True
        assert settings.retrieval.collaborator_timeout_seconds == 10.0

    def test_env_vars_override_defaults(self, clean_env, monkeypatch):
        monkeypatch.setenv("RAG_OPENAI_ENABLED", "true")
        monkeypatch.setenv("OPENAI_CHAT_MODEL", "gpt-4o")
        monkeypatch.setenv("RAG_HYBRID_ENABLED", "0")
        monkeypatch.setenv("RAG_HYBRID_RRF_K", "30")
        monkeypatch.setenv("RAG_ADAPTIVE_SUCCESS_THRESHOLD", "0.6")
        settings = load_settings()
        assert settings.openai.enabled is True
        assert settings.openai.chat_model == "gpt-4o"
        assert settings.hybrid.lexical_enabled is False
        assert settings.hybrid.rrf_k == 30
        assert settings.retrieval.success_threshold == pytest.approx(0.6)

    def test_query_transforms_can_be_switched_off(self, clean_env, monkeypatch):
        monkeypatch.setenv("RAG_HYDE_ENABLED", "false")
        monkeypatch.setenv("RAG_QUERY_TRANSLATION_ENABLED", "no")
        monkeypatch.setenv("RAG_CONTEXTUAL_ENRICHMENT_ENABLED", "0")
        openai_settings = load_settings().openai
        assert openai_settings.hyde_enabled is False
        assert openai_settings.translation_enabled is False
        assert openai_settings.contextual_enrichment_enabled is False

    def test_blank_value_keeps_default(self, clean_env, monkeypatch):
        monkeypatch.setenv("RAG_RERANK_TOP_K", "  ")
        assert load_settings().retrieval.rerank_top_k == 10

    def test_invalid_integer_raises(self, clean_env, monkeypatch):
        monkeypatch.setenv("RAG_CHUNK_PARENT_SIZE", "large")
        with pytest.raises(ConfigurationError, match="RAG_CHUNK_PARENT_SIZE"):
            load_settings()

    def test_invalid_float_raises(self, clean_env, monkeypatch):
        monkeypatch.setenv("RAG_HYBRID_VECTOR_WEIGHT", "heavy")
        with pytest.raises(ConfigurationError, match="RAG_HYBRID_VECTOR_WEIGHT"):
            load_settings()
