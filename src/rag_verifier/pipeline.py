from __future__ import annotations

import threading

from .adaptive import AdaptiveRetriever
from .chunking import HierarchicalChunker
from .contracts import (
    ChunkRepository,
    ChunkStore,
    DocumentDirectory,
    IndexWriter,
    KeepQueryReformulator,
    KeepQuestionTranslator,
    LexicalIndex,
    NoFurtherHops,
    QueryTranslator,
    RelevanceJudge,
    VectorIndex,
)
from .evidence import EvidenceResolver
from .fusion import HybridSearch
from .indexing import DocumentIndexer, IndexingRegistry
from .llm import (
    OpenAIChunkEnricher,
    OpenAIHopDecisionJudge,
    OpenAIHydeQueryTransformer,
    OpenAIQueryReformulator,
    OpenAIQueryTranslator,
    OpenAIRelevanceJudge,
    OpenAIVerdictExplainer,
)
from .logging import get_logger, request_context
from .multihop import MultiHopRetriever
from .reranking import build_reranker
from .resilience import attempt
from .schema import Verdict
from .settings import Settings
from .tracing import ATTR_INPUT_VALUE, ATTR_RETRIEVAL_HOPS, ATTR_VERDICT_LABEL, stage_span
from .verdict import VerdictSynthesizer

logger = get_logger(__name__)


class VerificationPipeline:
    """Question in, verdict out: multi-hop retrieval, evidence resolution, verdict synthesis."""

    def __init__(
        self,
        retriever: MultiHopRetriever,
        resolver: EvidenceResolver,
        synthesizer: VerdictSynthesizer,
        translator: QueryTranslator | None = None,
        timeout: float | None = None,
    ):
        self.retriever = retriever
        self.resolver = resolver
        self.synthesizer = synthesizer
        self.translator = translator or KeepQuestionTranslator()
        self.timeout = timeout

    def _translate(self, question: str) -> str:
        outcome = attempt(self.translator.translate, question, timeout=self.timeout)
        if outcome.failed:
            logger.warning("pipeline.translate_failed", error=outcome.describe_error())
            return question
        translated = outcome.value
        if not isinstance(translated, str) or not translated.strip():
            return question
        return translated.strip()

    def verify(
        self,
        question: str,
        scope: str | None = None,
        cancel: threading.Event | None = None,
        product_context: str | None = None,
    ) -> Verdict:
        """Verify `question` against the indexed documents in `scope`.

        The question is translated to English for retrieval when a translator
        is configured; the verdict is synthesized against the original text.
        Only the `scope` log context key is bound, and only for this call.

        Args:
            question: Support question or claim to check.
            scope: Scope token (inquiry id) restricting the search.
            cancel: Set by the caller to abandon the request.
            product_context: Optional product family restricting the search.

        Returns:
            The synthesized verdict with its evidence.

        Raises:
            RetrievalCancelled: If `cancel` is set while retrieval is running.
        """
        with request_context(scope=scope):
            with stage_span("verification-pipeline", **{ATTR_INPUT_VALUE: question}) as span:
                query = self._translate(question)
                retrieved = self.retriever.retrieve(
                    query, scope=scope, cancel=cancel, product_context=product_context
                )
                evidences = self.resolver.resolve(retrieved.evidences)
                verdict = self.synthesizer.synthesize(question, evidences)
                if query != question:
                    verdict.translated_query = query
                span.set_attribute(ATTR_RETRIEVAL_HOPS, len(retrieved.hops))
                span.set_attribute(ATTR_VERDICT_LABEL, verdict.verdict.value)
            logger.info(
                "pipeline.verified",
                verdict=verdict.verdict.value,
                confidence=verdict.confidence,
                evidences=len(evidences),
                hops=len(retrieved.hops),
                translated=query != question,
            )
            return verdict


def build_pipeline(
    settings: Settings,
    lexical: LexicalIndex | None,
    vector: VectorIndex,
    repository: ChunkRepository,
    directory: DocumentDirectory | None = None,
    judge: RelevanceJudge | None = None,
) -> VerificationPipeline:
    """Wire a pipeline from settings and index adapters.

    With `settings.openai.enabled` the OpenAI collaborators are used for
    relevance judging, query rewriting, hop decisions and verdict reasons,
    plus HyDE vector queries and question translation unless switched off.
    Otherwise reranking is pass-through, queries are never rewritten or
    translated and a single hop is always enough. An explicit `judge` (e.g. a
    `CrossEncoderJudge`) takes precedence for reranking.
    """
    timeout = settings.retrieval.collaborator_timeout_seconds
    openai_settings = settings.openai

    if openai_settings.enabled:
        client_args = {"model": openai_settings.chat_model, "timeout": openai_settings.timeout_seconds}
        judge = judge or OpenAIRelevanceJudge(**client_args)
        reformulator = OpenAIQueryReformulator(**client_args)
        decider = OpenAIHopDecisionJudge(**client_args)
        explainer = OpenAIVerdictExplainer(**client_args)
        hyde = OpenAIHydeQueryTransformer(**client_args) if openai_settings.hyde_enabled else None
        translator = OpenAIQueryTranslator(**client_args) if openai_settings.translation_enabled else None
    else:
        reformulator = KeepQueryReformulator()
        decider = NoFurtherHops()
        explainer = None
        hyde = None
        translator = None

    search = HybridSearch(vector, lexical, settings=settings.hybrid, timeout=timeout, query_transformer=hyde)
    adaptive = AdaptiveRetriever(
        search,
        reranker=build_reranker(judge, timeout=timeout),
        reformulator=reformulator,
        settings=settings.retrieval,
    )
    retriever = MultiHopRetriever(
        adaptive,
        decider,
        excerpt_count=settings.retrieval.hop_excerpt_count,
        excerpt_chars=settings.retrieval.hop_excerpt_chars,
        max_hops=settings.retrieval.max_hops,
        timeout=timeout,
    )
    synthesizer = VerdictSynthesizer(settings=settings.verdict, explainer=explainer, timeout=timeout)
    logger.debug("pipeline.built", openai_enabled=openai_settings.enabled, judged=judge is not None)
    return VerificationPipeline(
        retriever, EvidenceResolver(repository, directory), synthesizer, translator=translator, timeout=timeout
    )


def build_indexer(
    settings: Settings,
    repository: ChunkStore,
    lexical: IndexWriter | None,
    vector: IndexWriter,
    registry: IndexingRegistry | None = None,
) -> DocumentIndexer:
    chunker = HierarchicalChunker(
        parent_size=settings.chunking.parent_size,
        child_size=settings.chunking.child_size,
        overlap_sentences=settings.chunking.overlap_sentences,
    )
    enricher = None
    if settings.openai.enabled and settings.openai.contextual_enrichment_enabled:
        enricher = OpenAIChunkEnricher(model=settings.openai.chat_model, timeout=settings.openai.timeout_seconds)
    return DocumentIndexer(
        chunker,
        repository,
        lexical,
        vector,
        registry=registry,
        enricher=enricher,
        timeout=settings.retrieval.collaborator_timeout_seconds,
    )
