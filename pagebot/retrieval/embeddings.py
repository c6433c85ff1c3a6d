"""Sentence embeddings for queries and document chunks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence

from fastembed import TextEmbedding

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"


class Embedder:
    """Lazily constructed :class:`TextEmbedding` wrapper.

    The ONNX model is downloaded on first use, so building the app (or a test
    client) does not pay that cost unless retrieval actually runs.
    """

    def __init__(self, model_name: str = DEFAULT_MODEL) -> None:
        self.model_name = model_name
        self._model: TextEmbedding | None = None
        self._lock = threading.Lock()

    def _get_model(self) -> TextEmbedding:
        with self._lock:
            if self._model is None:
                logger.info("Loading embedding model %s", self.model_name)
                self._model = TextEmbedding(model_name=self.model_name)
            return self._model

    def embed(self, text: str) -> list[float]:
        return self.embed_many([text])[0]

    def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        vectors = self._get_model().embed(list(texts))
        return [[float(x) for x in vector] for vector in vectors]
