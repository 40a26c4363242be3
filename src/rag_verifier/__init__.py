"""Retrieval-augmented verification of technical support questions."""

from .adaptive import AdaptiveRetriever
from .chunking import HierarchicalChunker, split_into_sentences
from .evidence import EvidenceResolver
from .fusion import HybridSearch, reciprocal_rank_fusion
from .indexing import DocumentIndexer, IndexingRegistry, SourceDocument
from .multihop import MultiHopRetriever
from .pipeline import VerificationPipeline, build_indexer, build_pipeline
from .reranking import JudgedReranker, PassThroughReranker, build_reranker
from .settings import Settings, load_settings
from .verdict import KeywordPolarityClassifier, VerdictSynthesizer

__all__ = [
    "AdaptiveRetriever",
    "DocumentIndexer",
    "EvidenceResolver",
    "HierarchicalChunker",
    "HybridSearch",
    "IndexingRegistry",
    "JudgedReranker",
    "KeywordPolarityClassifier",
    "MultiHopRetriever",
    "PassThroughReranker",
    "Settings",
    "SourceDocument",
    "VerdictSynthesizer",
    "VerificationPipeline",
    "build_indexer",
    "build_pipeline",
    "build_reranker",
    "load_settings",
    "reciprocal_rank_fusion",
    "split_into_sentences",
]
