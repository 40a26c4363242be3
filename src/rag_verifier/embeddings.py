from __future__ import annotations

from typing import Callable, Sequence

import numpy as np
from openai import OpenAI

# Any callable turning texts into a `(len(texts), dim)` float matrix.
Embedder = Callable[[Sequence[str]], np.ndarray]


class OpenAIEmbedder:
    """Embedding function backed by the OpenAI embeddings API."""

    def __init__(self, model: str = "text-embedding-3-small", timeout: float | None = None):
        self.model = model
        self.client = OpenAI(timeout=timeout) if timeout is not None else OpenAI()

    def __call__(self, texts: Sequence[str]) -> np.ndarray:
        """Generate embedding vectors for input texts.

        Args:
            texts: Input strings to embed.

        Returns:
            A `float32` NumPy matrix shaped `(len(texts), embedding_dim)`.
        """
        if not texts:
            return np.zeros((0, 0), dtype=np.float32)
        response = self.client.embeddings.create(model=self.model, input=list(texts))
        vectors = [row.embedding for row in response.data]
        return np.array(vectors, dtype=np.float32)


def cosine_similarity(query_vector: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Compute cosine similarity between one query vector and many vectors.

    Args:
        query_vector: Query embedding vector.
        matrix: Candidate embedding matrix where each row is one vector.

    Returns:
        A 1D array of cosine similarity scores aligned to matrix rows.
    """
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)
    query_norm = np.linalg.norm(query_vector)
    matrix_norm = np.linalg.norm(matrix, axis=1)
    denominator = np.maximum(query_norm * matrix_norm, 1e-12)
    return (matrix @ query_vector) / denominator
