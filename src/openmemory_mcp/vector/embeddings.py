# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Sentence-transformers embedder.

Loads the model lazily on first use and encodes off the event loop.
"""

import asyncio
import logging
import threading

from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

# Known output sizes, so the collection can be created before the model loads
KNOWN_MODEL_DIMENSIONS = {
    "all-MiniLM-L6-v2": 384,
    "all-MiniLM-L12-v2": 384,
    "all-mpnet-base-v2": 768,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "intfloat/e5-small": 384,
    "intfloat/e5-base": 768,
    "intfloat/e5-large": 1024,
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "BAAI/bge-large-en-v1.5": 1024,
    "nomic-ai/nomic-embed-text-v1.5": 768,
    "Snowflake/snowflake-arctic-embed-s-v2.0": 384,
    "Snowflake/snowflake-arctic-embed-m-v2.0": 768,
    "Snowflake/snowflake-arctic-embed-l-v2.0": 1024,
}


class SentenceTransformerEmbedder:
    """``Embedder`` backed by a sentence-transformers model."""

    def __init__(self, model_name: str, device: str | None = None):
        self.model_name = model_name
        self.device = device
        self._model: SentenceTransformer | None = None
        self._dimension: int | None = KNOWN_MODEL_DIMENSIONS.get(model_name)
        # Thread-safe model loading (encodes run in executor threads)
        self._model_lock = threading.Lock()

    def _load_model(self) -> SentenceTransformer:
        if self._model is None:
            with self._model_lock:
                # Double-check after acquiring lock (another thread may have loaded it)
                if self._model is None:
                    logger.info(f"Loading embedding model: {self.model_name}")
                    self._model = SentenceTransformer(self.model_name, device=self.device, trust_remote_code=True)
                    logger.info(f"Loaded model: {self.model_name} on device: {self._model.device}")
        return self._model

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            model = self._load_model()
            self._dimension = model.get_sentence_embedding_dimension()
            logger.info(f"Detected vector size from model: {self._dimension}")
        return self._dimension

    def _encode(self, text: str, prompt_name: str) -> list[float]:
        """
        Encode one text.

        For instruction-tuned models (E5, Nomic, Arctic), ``prompt_name`` applies
        the model's configured prefix ("query: " / "passage: "). Models without
        that prompt encode the raw text.
        """
        model = self._load_model()
        prompts = getattr(model, "prompts", None) or {}
        if prompt_name in prompts:
            embedding = model.encode(text, prompt_name=prompt_name, convert_to_tensor=False)
        else:
            embedding = model.encode(text, convert_to_tensor=False)
        vector = embedding.tolist() if hasattr(embedding, "tolist") else list(embedding)
        if not vector:
            raise ValueError("Generated embedding is empty")
        return vector

    async def embed_passage(self, text: str) -> list[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._encode, text, "passage")

    async def embed_query(self, text: str) -> list[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._encode, text, "query")
