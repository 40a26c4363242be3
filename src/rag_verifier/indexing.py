"""Asynchronous document indexing with single-flight protection.

A document is retrievable only after its chunks reach both indexes, so
retrieval is eventually consistent with uploads. :class:`IndexingRegistry`
keeps one document from being indexed twice at the same time; it is owned
by the caller and shared only with the indexers that need it.
"""
from __future__ import annotations

import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Sequence

from .chunking import HierarchicalChunker
from .contracts import ChunkEnricher, ChunkStore, IndexWriter, NoChunkContext
from .logging import get_logger
from .resilience import attempt
from .schema import Chunk, ChunkLevel, PageText, SourceType

logger = get_logger(__name__)


@dataclass(slots=True)
class SourceDocument:
    """Extracted document text ready for chunking."""

    document_id: str
    content: str | Sequence[PageText]
    source_type: SourceType = SourceType.INQUIRY
    source_id: str | None = None
    product_family: str | None = None
    file_name: str | None = None

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return " ".join(page.text for page in self.content)


@dataclass(slots=True)
class IndexingReport:
    document_id: str
    parent_count: int
    child_count: int
    indexed_count: int
    removed_count: int


class IndexingRegistry:
    """Thread-safe set of keys (document or scope ids) currently being indexed."""

    def __init__(self):
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        """Mark `key` in flight; False if it already was."""
        with self._lock:
            if key in self._in_flight:
                return False
            self._in_flight.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._in_flight.discard(key)

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def __len__(self) -> int:
        with self._lock:
            return len(self._in_flight)


class DocumentIndexer:
    """Chunks documents and writes them to the chunk store and both indexes."""

    def __init__(
        self,
        chunker: HierarchicalChunker,
        repository: ChunkStore,
        lexical_writer: IndexWriter | None,
        vector_writer: IndexWriter,
        registry: IndexingRegistry | None = None,
        executor: Executor | None = None,
        enricher: ChunkEnricher | None = None,
        timeout: float | None = None,
    ):
        self.chunker = chunker
        self.repository = repository
        self.lexical_writer = lexical_writer
        self.vector_writer = vector_writer
        self.registry = registry or IndexingRegistry()
        self.enricher = enricher or NoChunkContext()
        self.timeout = timeout
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="rag-verifier-index")

    def submit(self, document: SourceDocument) -> Future[IndexingReport] | None:
        """Index `document` in the background.

        Returns:
            A future resolving to the IndexingReport, or None when the same
            document is already being indexed. The document is released
            before the future completes, so it can be resubmitted as soon as
            `result()` returns.
        """
        if not self.registry.try_acquire(document.document_id):
            logger.info("indexing.skipped_in_flight", document_id=document.document_id)
            return None

        def run() -> IndexingReport:
            try:
                return self.index(document)
            finally:
                self.registry.release(document.document_id)

        try:
            return self.executor.submit(run)
        except Exception:
            self.registry.release(document.document_id)
            raise

    def index(self, document: SourceDocument) -> IndexingReport:
        """Replace the stored chunks of `document` and write them to the indexes.

        Previous chunks are deleted first. Every chunk is stored in the
        repository; only CHILD and unleveled chunks reach the indexes, since
        PARENT chunks exist to widen the context of a child match. Each
        parent gets a context prefix from the enricher, inherited by its
        children; the prefix is embedded with the chunk but never replaces
        its content.
        """
        document_id = document.document_id
        removed = self.repository.delete_by_document(document_id)
        if self.lexical_writer is not None:
            self.lexical_writer.delete_document(document_id)
        self.vector_writer.delete_document(document_id)

        chunks = self.chunker.chunk(
            document_id,
            document.content,
            source_type=document.source_type,
            source_id=document.source_id,
            product_family=document.product_family,
        )
        chunks = self._enrich(document, chunks)
        self.repository.save_all(chunks)

        searchable = [chunk for chunk in chunks if chunk.level is not ChunkLevel.PARENT]
        if searchable:
            if self.lexical_writer is not None:
                self.lexical_writer.upsert(searchable)
            self.vector_writer.upsert(searchable)

        report = IndexingReport(
            document_id=document_id,
            parent_count=len(chunks) - len(searchable),
            child_count=len(searchable),
            indexed_count=len(searchable),
            removed_count=removed,
        )
        logger.info(
            "indexing.done",
            document_id=document_id,
            parents=report.parent_count,
            children=report.child_count,
            removed=removed,
        )
        return report

    def _enrich(self, document: SourceDocument, chunks: list[Chunk]) -> list[Chunk]:
        """Attach enricher context to parents (or flat chunks) and their children."""
        owners = [chunk for chunk in chunks if chunk.level is ChunkLevel.PARENT] or chunks
        if not owners:
            return chunks
        document_text = document.text()
        prefixes: dict[str, str] = {}
        for owner in owners:
            outcome = attempt(
                self.enricher.context_for, document_text, owner.content, document.file_name, timeout=self.timeout
            )
            if outcome.failed:
                logger.warning(
                    "indexing.enrich_failed",
                    document_id=document.document_id,
                    chunk_id=owner.chunk_id,
                    error=outcome.describe_error(),
                )
                continue
            prefix = outcome.value
            if isinstance(prefix, str) and prefix.strip():
                prefixes[owner.chunk_id] = prefix.strip()
        if not prefixes:
            return chunks
        return [
            replace(chunk, context_prefix=prefixes.get(chunk.parent_id or chunk.chunk_id))
            for chunk in chunks
        ]

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=wait)
