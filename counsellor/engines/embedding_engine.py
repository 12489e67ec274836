"""
Embedding providers for the per-student semantic index.

Local SentenceTransformers encoding is CPU-bound, so it runs in a thread
pool to keep the event loop free.
"""

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Protocol

import numpy as np
from google import genai

from counsellor.config import Config
from counsellor.utils.logging_utils import get_logger

# Suppress noisy transformer logs.
os.environ.setdefault("HF_HUB_DISABLE_SYMLINKS_WARNING", "1")
logging.getLogger("sentence_transformers").setLevel(logging.WARNING)

logger = get_logger("embeddings")


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> np.ndarray:
        ...


class SentenceTransformerEmbedder:
    def __init__(self, model_name: Optional[str] = None, max_workers: int = 4):
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name or Config.EMBEDDING_MODEL
        self.model = SentenceTransformer(self.model_name)
        self.dimension = int(self.model.get_sentence_embedding_dimension() or 384)
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        logger.info(f"[Embeddings] Loaded SentenceTransformer: {self.model_name}")

    async def embed(self, text: str) -> np.ndarray:
        loop = asyncio.get_running_loop()
        vector = await loop.run_in_executor(
            self.executor,
            lambda: self.model.encode(str(text or ""), normalize_embeddings=True),
        )
        return np.asarray(vector, dtype="float32")


class GeminiEmbedder:
    def __init__(self, model_name: Optional[str] = None, api_key: Optional[str] = None):
        self.model_name = (model_name or Config.GEMINI_EMBEDDING_MODEL).replace("models/", "")
        key = api_key or Config.GEMINI_API_KEY
        if not key:
            raise ValueError("GEMINI_API_KEY (or legacy GOOGLE_API_KEY) is required for Gemini embeddings")
        self.client = genai.Client(api_key=key)
        logger.info(f"[Embeddings] Using Gemini embeddings: {self.model_name}")

    async def embed(self, text: str) -> np.ndarray:
        result = await self.client.aio.models.embed_content(
            model=self.model_name,
            contents=str(text or ""),
        )
        embeddings = getattr(result, "embeddings", None) or []
        if not embeddings:
            raise ValueError("Gemini returned no embedding")
        return np.asarray(embeddings[0].values, dtype="float32")


def build_embedder(backend: Optional[str] = None) -> EmbeddingProvider:
    choice = (backend or Config.EMBEDDING_BACKEND).strip().lower()
    if choice == "gemini":
        return GeminiEmbedder()
    if choice in {"sentence-transformers", "sentence_transformers", "local"}:
        return SentenceTransformerEmbedder()
    raise ValueError(f"Unknown EMBEDDING_BACKEND: {choice}")
