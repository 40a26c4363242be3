"""Reference implementations of the index and repository contracts.

`BM25LexicalIndex`, `InMemoryVectorIndex` and `InMemoryChunkRepository` keep
everything in process and suit tests and small deployments. `ChromaVectorIndex`
stores vectors in a Chroma collection.
"""
from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Callable, Iterable, Mapping, Sequence

import chromadb
import numpy as np
from rank_bm25 import BM25Plus

from .embeddings import Embedder, cosine_similarity
from .logging import get_logger
from .schema import Chunk, IndexHit, SearchFilter, SourceType

logger = get_logger(__name__)

_WORD = re.compile(r"\w+", re.UNICODE)

# Resolves an inquiry id to the ids of the documents attached to it.
InquiryResolver = Callable[[str], Iterable[str]]


def tokenize(text: str) -> list[str]:
    return _WORD.findall(text.lower())


def matches_filter(
    chunk: Chunk,
    search_filter: SearchFilter,
    inquiry_resolver: InquiryResolver | None = None,
) -> bool:
    """Apply a SearchFilter to one chunk.

    An inquiry scope admits the inquiry's own documents plus every knowledge
    base chunk. Without a resolver the inquiry id is ignored.
    """
    if search_filter.has_document_filter() and chunk.document_id not in search_filter.document_ids:
        return False
    if search_filter.has_product_filter():
        families = {family.lower() for family in search_filter.product_families}
        if (chunk.product_family or "").lower() not in families:
            return False
    if search_filter.has_source_type_filter() and chunk.source_type not in search_filter.source_types:
        return False
    if (
        search_filter.inquiry_id is not None
        and inquiry_resolver is not None
        and not search_filter.has_document_filter()
    ):
        inquiry_documents = set(inquiry_resolver(search_filter.inquiry_id))
        if chunk.source_type is not SourceType.KNOWLEDGE_BASE and chunk.document_id not in inquiry_documents:
            return False
    return True


class BM25LexicalIndex:
    """Keyword index over chunk content using BM25+.

    Term weights stay positive even on a one-chunk corpus. Only chunks
    sharing a term with the query are returned, and scores are divided by
    the best raw score of the query so hits fall in [0, 1].
    """

    def __init__(self, inquiry_resolver: InquiryResolver | None = None):
        self.inquiry_resolver = inquiry_resolver
        self._chunks: dict[str, Chunk] = {}
        self._index: BM25Plus | None = None
        self._order: list[str] = []
        self._terms: list[frozenset[str]] = []
        self._lock = threading.Lock()

    def upsert(self, chunks: Sequence[Chunk]) -> int:
        with self._lock:
            for chunk in chunks:
                self._chunks[chunk.chunk_id] = chunk
            self._index = None
        return len(chunks)

    def delete_document(self, document_id: str) -> int:
        with self._lock:
            doomed = [cid for cid, chunk in self._chunks.items() if chunk.document_id == document_id]
            for chunk_id in doomed:
                del self._chunks[chunk_id]
            self._index = None
        return len(doomed)

    def __len__(self) -> int:
        return len(self._chunks)

    def _snapshot(self) -> tuple[BM25Plus | None, list[Chunk], list[frozenset[str]]]:
        with self._lock:
            if self._index is None and self._chunks:
                self._order = list(self._chunks)
                corpus = [tokenize(self._chunks[cid].content) for cid in self._order]
                self._index = BM25Plus(corpus)
                self._terms = [frozenset(tokens) for tokens in corpus]
            return self._index, [self._chunks[cid] for cid in self._order], list(self._terms)

    def search(self, query: str, top_k: int, search_filter: SearchFilter) -> list[IndexHit]:
        """Run BM25 keyword retrieval and return the top-ranked eligible chunks.

        Args:
            query: User query string.
            top_k: Number of hits to return.
            search_filter: Scope restriction applied before ranking.

        Returns:
            Hits sorted by normalised BM25 score, highest first.
        """
        terms = tokenize(query)
        index, chunks, chunk_terms = self._snapshot()
        if index is None or not terms or top_k <= 0:
            return []

        scores = index.get_scores(terms)
        query_terms = set(terms)
        eligible = [
            position
            for position, chunk in enumerate(chunks)
            if query_terms & chunk_terms[position] and matches_filter(chunk, search_filter, self.inquiry_resolver)
        ]
        if not eligible:
            return []
        best = max(float(scores[position]) for position in eligible)
        if best <= 0:
            best = 1.0
        ranked = sorted(eligible, key=lambda position: scores[position], reverse=True)[:top_k]
        return [
            IndexHit(
                chunk_id=chunks[position].chunk_id,
                document_id=chunks[position].document_id,
                content=chunks[position].content,
                score=float(scores[position]) / best,
                source_type=chunks[position].source_type,
            )
            for position in ranked
        ]


class InMemoryVectorIndex:
    """Brute-force cosine index kept in a NumPy matrix."""

    def __init__(self, embedder: Embedder, inquiry_resolver: InquiryResolver | None = None):
        self.embedder = embedder
        self.inquiry_resolver = inquiry_resolver
        self._chunks: list[Chunk] = []
        self._vectors: np.ndarray | None = None
        self._lock = threading.Lock()

    def upsert(self, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            return 0
        vectors = np.asarray(self.embedder([chunk.embedding_text for chunk in chunks]), dtype=np.float32)
        incoming = {chunk.chunk_id for chunk in chunks}
        with self._lock:
            keep = [i for i, chunk in enumerate(self._chunks) if chunk.chunk_id not in incoming]
            kept_chunks = [self._chunks[i] for i in keep]
            kept_vectors = self._vectors[keep] if self._vectors is not None and keep else None
            self._chunks = kept_chunks + list(chunks)
            self._vectors = vectors if kept_vectors is None else np.vstack([kept_vectors, vectors])
        return len(chunks)

    def delete_document(self, document_id: str) -> int:
        with self._lock:
            keep = [i for i, chunk in enumerate(self._chunks) if chunk.document_id != document_id]
            removed = len(self._chunks) - len(keep)
            self._chunks = [self._chunks[i] for i in keep]
            self._vectors = self._vectors[keep] if self._vectors is not None and keep else None
        return removed

    def search(self, query: str, top_k: int, search_filter: SearchFilter) -> list[IndexHit]:
        with self._lock:
            chunks = list(self._chunks)
            vectors = self._vectors
        if vectors is None or not chunks or top_k <= 0:
            return []

        query_vector = np.asarray(self.embedder([query]), dtype=np.float32)[0]
        scores = np.clip(cosine_similarity(query_vector, vectors), 0.0, 1.0)
        eligible = [i for i, chunk in enumerate(chunks) if matches_filter(chunk, search_filter, self.inquiry_resolver)]
        ranked = sorted(eligible, key=lambda i: scores[i], reverse=True)[:top_k]
        return [
            IndexHit(
                chunk_id=chunks[i].chunk_id,
                document_id=chunks[i].document_id,
                content=chunks[i].content,
                score=float(scores[i]),
                source_type=chunks[i].source_type,
            )
            for i in ranked
        ]


class ChromaVectorIndex:
    """Vector index stored in a Chroma collection using cosine distance."""

    def __init__(
        self,
        embedder: Embedder,
        collection_name: str = "rag_verifier_chunks",
        persist_dir: str | None = None,
        client=None,
        inquiry_resolver: InquiryResolver | None = None,
    ):
        """Open (or create) the backing collection.

        Args:
            embedder: Embedding function for chunk contents and queries.
            collection_name: Chroma collection name.
            persist_dir: Local path for Chroma persistence; in-memory when None.
            client: Pre-built Chroma client, overriding `persist_dir`.
            inquiry_resolver: Maps an inquiry id to its document ids. Without
                one, inquiry scopes are not applied.
        """
        if client is None:
            if persist_dir is not None:
                Path(persist_dir).mkdir(parents=True, exist_ok=True)
                client = chromadb.PersistentClient(path=persist_dir)
            else:
                client = chromadb.EphemeralClient()
        self.embedder = embedder
        self.inquiry_resolver = inquiry_resolver
        self.collection = client.get_or_create_collection(
            name=collection_name, metadata={"hnsw:space": "cosine"}
        )

    def upsert(self, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            return 0
        vectors = np.asarray(self.embedder([chunk.embedding_text for chunk in chunks]), dtype=np.float32)
        self.collection.upsert(
            ids=[chunk.chunk_id for chunk in chunks],
            embeddings=vectors.tolist(),
            documents=[chunk.content for chunk in chunks],
            metadatas=[
                {
                    "document_id": chunk.document_id,
                    "source_id": chunk.source_id or "",
                    "source_type": chunk.source_type.value,
                    "product_family": (chunk.product_family or "").lower(),
                }
                for chunk in chunks
            ],
        )
        return len(chunks)

    def delete_document(self, document_id: str) -> int:
        ids = self.collection.get(where={"document_id": document_id})["ids"]
        if ids:
            self.collection.delete(ids=ids)
        return len(ids)

    @staticmethod
    def build_where(
        search_filter: SearchFilter,
        inquiry_resolver: InquiryResolver | None = None,
    ) -> dict | None:
        """Translate a SearchFilter into a Chroma metadata `where` clause.

        The inquiry scope follows `matches_filter`: the inquiry's own documents
        plus every knowledge base chunk, and only when no document filter is set.
        """
        conditions: list[dict] = []
        if search_filter.has_document_filter():
            conditions.append({"document_id": {"$in": sorted(search_filter.document_ids)}})
        if search_filter.has_product_filter():
            families = sorted({family.lower() for family in search_filter.product_families})
            conditions.append({"product_family": {"$in": families}})
        if search_filter.has_source_type_filter():
            types = sorted(source_type.value for source_type in search_filter.source_types)
            conditions.append({"source_type": {"$in": types}})
        if (
            search_filter.inquiry_id is not None
            and inquiry_resolver is not None
            and not search_filter.has_document_filter()
        ):
            knowledge_base = {"source_type": SourceType.KNOWLEDGE_BASE.value}
            inquiry_documents = sorted(set(inquiry_resolver(search_filter.inquiry_id)))
            if inquiry_documents:
                conditions.append({"$or": [{"document_id": {"$in": inquiry_documents}}, knowledge_base]})
            else:
                conditions.append(knowledge_base)
        if not conditions:
            return None
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}

    def search(self, query: str, top_k: int, search_filter: SearchFilter) -> list[IndexHit]:
        """Query the collection and map results to index hits.

        Returns:
            Hits with `1 - cosine distance` scores clamped to [0, 1].
        """
        available = self.collection.count()
        if available == 0 or top_k <= 0:
            return []
        query_vector = np.asarray(self.embedder([query]), dtype=np.float32)[0]
        response = self.collection.query(
            query_embeddings=[query_vector.tolist()],
            n_results=min(top_k, available),
            where=self.build_where(search_filter, self.inquiry_resolver),
        )

        ids = response["ids"][0]
        docs = response["documents"][0]
        metadatas = response["metadatas"][0]
        distances = response["distances"][0]
        return [
            IndexHit(
                chunk_id=chunk_id,
                document_id=metadata["document_id"],
                content=text,
                score=min(1.0, max(0.0, 1.0 - float(distance))),
                source_type=SourceType(metadata["source_type"]),
            )
            for chunk_id, text, metadata, distance in zip(ids, docs, metadatas, distances, strict=True)
        ]


class InMemoryChunkRepository:
    """Thread-safe chunk store satisfying the ChunkStore contract."""

    def __init__(self, chunks: Iterable[Chunk] = ()):
        self._chunks: dict[str, Chunk] = {}
        self._lock = threading.Lock()
        self.save_all(list(chunks))

    def save_all(self, chunks: Sequence[Chunk]) -> None:
        with self._lock:
            for chunk in chunks:
                self._chunks[chunk.chunk_id] = chunk

    def find_by_ids(self, chunk_ids: Iterable[str]) -> list[Chunk]:
        with self._lock:
            return [self._chunks[cid] for cid in dict.fromkeys(chunk_ids) if cid in self._chunks]

    def find_by_document(self, document_id: str) -> list[Chunk]:
        with self._lock:
            found = [chunk for chunk in self._chunks.values() if chunk.document_id == document_id]
        return sorted(found, key=lambda chunk: chunk.sequence_index)

    def delete_by_document(self, document_id: str) -> int:
        with self._lock:
            doomed = [cid for cid, chunk in self._chunks.items() if chunk.document_id == document_id]
            for chunk_id in doomed:
                del self._chunks[chunk_id]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._chunks)

    def save_jsonl(self, path: str | Path) -> None:
        destination = Path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            chunks = list(self._chunks.values())
        with destination.open("w", encoding="utf-8") as file_handle:
            for chunk in chunks:
                file_handle.write(json.dumps(chunk.to_dict(), ensure_ascii=False) + "\n")

    @classmethod
    def load_jsonl(cls, path: str | Path) -> InMemoryChunkRepository:
        chunks: list[Chunk] = []
        with Path(path).open("r", encoding="utf-8") as file_handle:
            for line in file_handle:
                if line.strip():
                    chunks.append(Chunk.from_dict(json.loads(line)))
        return cls(chunks)


class StaticDocumentDirectory:
    """DocumentDirectory backed by a plain mapping of document id to file name."""

    def __init__(self, names: Mapping[str, str]):
        self._names = dict(names)

    def file_names(self, document_ids: Iterable[str]) -> dict[str, str]:
        return {doc_id: self._names[doc_id] for doc_id in document_ids if doc_id in self._names}
