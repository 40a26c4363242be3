from __future__ import annotations

import re
from typing import Sequence

from .contracts import ChunkRepository, DocumentDirectory
from .logging import get_logger
from .resilience import attempt
from .schema import Chunk, ChunkLevel, EvidenceItem, RerankedCandidate
from .tracing import ATTR_RETRIEVAL_DOCUMENTS, stage_span

logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def collapse_whitespace(text: str | None) -> str:
    if not text or not text.strip():
        return ""
    return _WHITESPACE.sub(" ", text).strip()


class EvidenceResolver:
    """Turns reranked results into evidence items, widening child matches to their parent context."""

    def __init__(self, repository: ChunkRepository, directory: DocumentDirectory | None = None):
        self.repository = repository
        self.directory = directory

    def _load(self, chunk_ids: set[str]) -> dict[str, Chunk]:
        if not chunk_ids:
            return {}
        outcome = attempt(self.repository.find_by_ids, sorted(chunk_ids))
        if outcome.failed:
            logger.warning("evidence.lookup_failed", ids=len(chunk_ids), error=outcome.describe_error())
        return {chunk.chunk_id: chunk for chunk in outcome.unwrap_or([]) or []}

    def _file_names(self, lookup_ids: set[str]) -> dict[str, str]:
        if self.directory is None or not lookup_ids:
            return {}
        outcome = attempt(self.directory.file_names, sorted(lookup_ids))
        if outcome.failed:
            logger.warning("evidence.file_names_failed", error=outcome.describe_error())
        return outcome.unwrap_or({}) or {}

    def resolve(self, results: Sequence[RerankedCandidate]) -> list[EvidenceItem]:
        """Build one EvidenceItem per result, in input order.

        A CHILD match whose parent is stored gets the parent's content as its
        excerpt. A CHILD whose parent cannot be found keeps its own content.
        Non-CHILD and unknown chunks keep the result content. Chunks and
        parents are each fetched with a single batch lookup.

        Args:
            results: Reranked (possibly multi-hop merged) results.

        Returns:
            Evidence items scored with each result's rerank score.
        """
        if not results:
            return []

        with stage_span("evidence-resolve") as span:
            chunks = self._load({result.chunk_id for result in results})
            parent_ids = {
                chunk.parent_id
                for chunk in chunks.values()
                if chunk.level is ChunkLevel.CHILD and chunk.parent_id is not None
            }
            parents = self._load(parent_ids)

            lookup_ids = {result.document_id for result in results}
            lookup_ids.update(chunk.source_id for chunk in chunks.values() if chunk.source_id)
            file_names = self._file_names(lookup_ids)

            evidences = [self._item(result, chunks.get(result.chunk_id), parents, file_names) for result in results]
            span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(evidences))
        return evidences

    @staticmethod
    def _item(
        result: RerankedCandidate,
        chunk: Chunk | None,
        parents: dict[str, Chunk],
        file_names: dict[str, str],
    ) -> EvidenceItem:
        content = result.content
        if chunk is not None and chunk.level is ChunkLevel.CHILD and chunk.parent_id is not None:
            parent = parents.get(chunk.parent_id)
            if parent is not None:
                content = parent.content
            else:
                logger.warning("evidence.parent_missing", chunk_id=chunk.chunk_id, parent_id=chunk.parent_id)

        file_name = file_names.get(result.document_id)
        if file_name is None and chunk is not None:
            file_name = file_names.get(chunk.source_id)

        return EvidenceItem(
            chunk_id=result.chunk_id,
            document_id=result.document_id,
            score=result.rerank_score,
            excerpt=collapse_whitespace(content),
            source_type=result.source_type,
            file_name=file_name,
            page_start=chunk.page_start if chunk is not None else None,
            page_end=chunk.page_end if chunk is not None else None,
            product_family=chunk.product_family if chunk is not None else None,
        )
