from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from .errors import ConfigurationError


@dataclass(slots=True)
class OpenAISettings:
    """Model configuration for the OpenAI-backed collaborators."""

    enabled: bool = False
    embedding_model: str = "text-embedding-3-small"
    chat_model: str = "gpt-4.1-mini"
    timeout_seconds: float = 20.0
    hyde_enabled: bool = True
    translation_enabled: bool = True
    contextual_enrichment_enabled: bool = True


@dataclass(slots=True)
class ChunkingSettings:
    parent_size: int = 1500
    child_size: int = 400
    overlap_sentences: int = 2


@dataclass(slots=True)
class HybridSearchSettings:
    """Reciprocal Rank Fusion parameters for hybrid search."""

    lexical_enabled: bool = True
    rrf_k: int = 60
    vector_weight: float = 1.0
    keyword_weight: float = 1.0
    min_vector_score: float = 0.0


@dataclass(slots=True)
class RetrievalSettings:
    """Adaptive loop and multi-hop parameters."""

    max_attempts: int = 3
    success_threshold: float = 0.50
    candidate_budget: int = 50
    rerank_top_k: int = 10
    max_hops: int = 2
    hop_excerpt_count: int = 3
    hop_excerpt_chars: int = 300
    collaborator_timeout_seconds: float = 10.0


@dataclass(slots=True)
class VerdictSettings:
    supported_threshold: float = 0.70
    conditional_threshold: float = 0.45
    low_confidence_threshold: float = 0.50
    spread_threshold: float = 0.35


@dataclass(slots=True)
class Settings:
    openai: OpenAISettings = field(default_factory=OpenAISettings)
    chunking: ChunkingSettings = field(default_factory=ChunkingSettings)
    hybrid: HybridSearchSettings = field(default_factory=HybridSearchSettings)
    retrieval: RetrievalSettings = field(default_factory=RetrievalSettings)
    verdict: VerdictSettings = field(default_factory=VerdictSettings)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def load_settings() -> Settings:
    """Load environment-backed settings and return typed config objects.

    Values come from the process environment, after `.env` has been loaded.
    Unset variables keep the reference defaults.

    Returns:
        Aggregated settings for every pipeline component.

    Raises:
        ConfigurationError: If a numeric variable cannot be parsed.
    """
    load_dotenv()
    return Settings(
        openai=OpenAISettings(
            enabled=_env_bool("RAG_OPENAI_ENABLED", False),
            embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            chat_model=os.getenv("OPENAI_CHAT_MODEL", "gpt-4.1-mini"),
            timeout_seconds=_env_float("OPENAI_TIMEOUT_SECONDS", 20.0),
            hyde_enabled=_env_bool("RAG_HYDE_ENABLED", True),
            translation_enabled=_env_bool("RAG_QUERY_TRANSLATION_ENABLED", True),
            contextual_enrichment_enabled=_env_bool("RAG_CONTEXTUAL_ENRICHMENT_ENABLED", True),
        ),
        chunking=ChunkingSettings(
            parent_size=_env_int("RAG_CHUNK_PARENT_SIZE", 1500),
            child_size=_env_int("RAG_CHUNK_CHILD_SIZE", 400),
            overlap_sentences=_env_int("RAG_CHUNK_OVERLAP_SENTENCES", 2),
        ),
        hybrid=HybridSearchSettings(
            lexical_enabled=_env_bool("RAG_HYBRID_ENABLED", True),
            rrf_k=_env_int("RAG_HYBRID_RRF_K", 60),
            vector_weight=_env_float("RAG_HYBRID_VECTOR_WEIGHT", 1.0),
            keyword_weight=_env_float("RAG_HYBRID_KEYWORD_WEIGHT", 1.0),
            min_vector_score=_env_float("RAG_HYBRID_MIN_VECTOR_SCORE", 0.0),
        ),
        retrieval=RetrievalSettings(
            max_attempts=_env_int("RAG_ADAPTIVE_MAX_ATTEMPTS", 3),
            success_threshold=_env_float("RAG_ADAPTIVE_SUCCESS_THRESHOLD", 0.50),
            candidate_budget=_env_int("RAG_ADAPTIVE_CANDIDATE_BUDGET", 50),
            rerank_top_k=_env_int("RAG_RERANK_TOP_K", 10),
            max_hops=_env_int("RAG_MULTIHOP_MAX_HOPS", 2),
            collaborator_timeout_seconds=_env_float("RAG_COLLABORATOR_TIMEOUT_SECONDS", 10.0),
        ),
        verdict=VerdictSettings(),
    )
