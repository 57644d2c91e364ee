# Ultima Agent: Tool-Using Conversational Agent
# Copyright (C) 2026 Pankaj Varma
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Embedding Module for Ultima_Agent
Sentence-transformer encoder with an in-memory cache, used by knowledge-search
to rank stored chunks by cosine similarity.
"""

import hashlib
import threading
from collections import OrderedDict
from typing import List, Optional, Union

import numpy as np
from sentence_transformers import SentenceTransformer

from ..core.config import EmbeddingConfig
from ..core.utils import logger, Timer


# =============================================================================
# CHUNK EMBEDDER
# =============================================================================

# Singleton: the model loads once per process
_embedder_instance: Optional["ChunkEmbedder"] = None
_embedder_lock = threading.Lock()


class ChunkEmbedder:
    """
    Embedding generator with caching.
    Vectors are L2-normalized, so a dot product is the cosine similarity.
    """

    def __init__(
        self,
        model_name: str = EmbeddingConfig.MODEL_NAME,
        use_cache: bool = EmbeddingConfig.CACHE_EMBEDDINGS,
        device: Optional[str] = EmbeddingConfig.DEVICE,
        model=None
    ):
        """
        Args:
            model_name: Sentence-transformers model name or path
            use_cache: Whether to cache embeddings
            device: 'cpu' by default; the chat model owns the GPU
            model: Preloaded encoder exposing `encode` (skips loading model_name)
        """
        self.model_name = model_name
        self.device = device
        self.model = model or SentenceTransformer(model_name, device=device)

        self.use_cache = use_cache
        self.cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._cache_lock = threading.Lock()

        logger.info(f"ChunkEmbedder initialized with model: {model_name} (cache: {use_cache})")

    @staticmethod
    def _get_cache_key(text: str) -> str:
        return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()

    def _remember(self, key: str, embedding: np.ndarray) -> None:
        with self._cache_lock:
            self.cache[key] = embedding
            self.cache.move_to_end(key)
            while len(self.cache) > EmbeddingConfig.CACHE_MAX_ENTRIES:
                self.cache.popitem(last=False)

    def encode(self, text: Union[str, List[str]]) -> np.ndarray:
        """
        Encode text(s) to normalized embeddings.

        Returns:
            One vector for a string, a (len(texts), dim) matrix for a list
        """
        if isinstance(text, str):
            return self.encode([text])[0]

        results: List[Optional[np.ndarray]] = [None] * len(text)
        missing: List[int] = []
        for i, item in enumerate(text):
            cached = self.cache.get(self._get_cache_key(item)) if self.use_cache else None
            if cached is None:
                missing.append(i)
            else:
                results[i] = cached

        if missing:
            with Timer(f"Embedding {len(missing)} text(s)"):
                vectors = self.model.encode(
                    [text[i] for i in missing],
                    normalize_embeddings=True,
                    show_progress_bar=False,
                    batch_size=EmbeddingConfig.BATCH_SIZE
                )
            for i, vector in zip(missing, np.asarray(vectors, dtype=np.float32)):
                results[i] = vector
                if self.use_cache:
                    self._remember(self._get_cache_key(text[i]), vector)

        if not results:
            return np.zeros((0, 0), dtype=np.float32)
        return np.vstack(results)

    def similarities(self, query: str, texts: List[str]) -> np.ndarray:
        """Cosine similarity of `query` against each text"""
        if not texts:
            return np.zeros(0, dtype=np.float32)
        return self.encode(texts) @ self.encode(query)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def get_embedder() -> ChunkEmbedder:
    """
    Returns singleton ChunkEmbedder.
    The model loads on first call; thread-safe via double-checked locking.
    """
    global _embedder_instance
    if _embedder_instance is None:
        with _embedder_lock:
            if _embedder_instance is None:
                logger.info("ChunkEmbedder: first load, model loading (one-time only)")
                _embedder_instance = ChunkEmbedder()
    return _embedder_instance
