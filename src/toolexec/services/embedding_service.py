"""
Embedding Service

Vector embeddings for the semantic layer of tool discovery. The default
hashing embedder is deterministic and needs no model download; the
sentence-transformers backend is loaded lazily when selected.
"""

import hashlib
from typing import Any, Protocol

import numpy as np
import structlog

from .text_utils import tokenize

logger = structlog.get_logger()


class Embedder(Protocol):
    """Anything that maps text to a fixed-size vector."""

    dimensions: int

    def embed(self, texts: list[str]) -> np.ndarray: ...


def cosine_similarity(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of one vector against each row of a matrix.

    Returns:
        Similarities clamped to [0, 1]; zero vectors score 0
    """
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float64)
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denominator = row_norms * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denominator > 0, matrix @ query / denominator, 0.0)
    return np.clip(scores, 0.0, 1.0)


class HashingEmbedder:
    """Bag-of-words embedder using stable hashed token buckets."""

    def __init__(self, dimensions: int = 1024) -> None:
        self.dimensions = dimensions

    def _bucket(self, token: str) -> int:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest, "big") % self.dimensions

    def embed(self, texts: list[str]) -> np.ndarray:
        """
        Embed texts as L2-normalized token count vectors.

        Args:
            texts: Input texts

        Returns:
            Array of shape (len(texts), dimensions)
        """
        vectors = np.zeros((len(texts), self.dimensions), dtype=np.float64)
        for row, text in enumerate(texts):
            for token in tokenize(text):
                vectors[row, self._bucket(token)] += 1.0
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        np.divide(vectors, norms, out=vectors, where=norms > 0)
        return vectors


class SentenceTransformerEmbedder:
    """
    Embedder backed by a sentence-transformers model.

    Uses sentence-transformers/all-MiniLM-L6-v2 by default (384 dimensions).
    """

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2") -> None:
        self.model_name = model_name
        self.dimensions = 384
        self._model: Any | None = None

    def _load_model(self) -> None:
        """Lazy load the sentence-transformers model."""
        if self._model is not None:
            return
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ImportError(
                "sentence-transformers is required for the sentence-transformers "
                "embedder. Install it with: pip install 'toolexec[semantic]'"
            ) from e

        logger.info("embedding_model_loading", model=self.model_name)
        self._model = SentenceTransformer(self.model_name)
        self.dimensions = int(self._model.get_sentence_embedding_dimension())
        logger.info("embedding_model_loaded", model=self.model_name, dimensions=self.dimensions)

    def embed(self, texts: list[str]) -> np.ndarray:
        self._load_model()
        if not texts:
            return np.zeros((0, self.dimensions), dtype=np.float64)
        embeddings = self._model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
        return np.asarray(embeddings, dtype=np.float64)


def create_embedder(kind: str, model_name: str, dimensions: int) -> Embedder:
    """
    Build the embedder named in configuration.

    Args:
        kind: "hashing" or "sentence-transformers"
        model_name: Model used by the sentence-transformers backend
        dimensions: Vector size used by the hashing backend

    Raises:
        ValueError: If kind is unknown
    """
    if kind == "hashing":
        return HashingEmbedder(dimensions)
    if kind == "sentence-transformers":
        return SentenceTransformerEmbedder(model_name)
    raise ValueError(f"Unknown embedder: {kind}")
