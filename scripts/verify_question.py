import sys
from dataclasses import asdict
from pathlib import Path

from rag_verifier.embeddings import OpenAIEmbedder
from rag_verifier.indexes import BM25LexicalIndex, ChromaVectorIndex, InMemoryChunkRepository
from rag_verifier.indexing import SourceDocument
from rag_verifier.logging import setup_logging
from rag_verifier.pipeline import build_indexer, build_pipeline
from rag_verifier.settings import load_settings


def main() -> None:
    """Index one text file as a knowledge-base document and verify a question against it."""
    if len(sys.argv) != 3:
        print("usage: python scripts/verify_question.py <document.txt> <question>")
        raise SystemExit(2)

    document_path, question = Path(sys.argv[1]), sys.argv[2]
    settings = load_settings()
    setup_logging(json_output=False)

    repository = InMemoryChunkRepository()
    lexical = BM25LexicalIndex()
    vector = ChromaVectorIndex(OpenAIEmbedder(model=settings.openai.embedding_model))

    indexer = build_indexer(settings, repository, lexical, vector)
    document = SourceDocument(
        document_id=document_path.stem,
        content=document_path.read_text(encoding="utf-8"),
        file_name=document_path.name,
    )
    report = indexer.index(document)
    indexer.shutdown()
    print(f"Indexed {report.child_count} chunks from {document_path.name}")

    verdict = build_pipeline(settings, lexical, vector, repository).verify(question)
    print(asdict(verdict))


if __name__ == "__main__":
    main()
