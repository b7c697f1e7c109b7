"""Embedding providers used by the retrieval store.

Embedder wraps one of three providers behind ``embed_query`` / ``embed_documents``:
- ``openai``: OpenAI-compatible embeddings API (supports OpenRouter via base_url)
- ``hf``: sentence-transformers, loaded lazily on first use
- ``hash``: deterministic SHA-256 seeded pseudo-embeddings for offline/testing use

Upstream failures are raised as EmbeddingGenerationError and are not retried here;
backoff belongs to the caller (the HTTP layer answers 429 on rate limits).
"""

from __future__ import annotations

import hashlib
import logging
import random
from typing import List, Optional

from openai import OpenAI

from doc_assistant.config import Config
from doc_assistant.utils import EmbeddingGenerationError, handle_api_error, is_rate_limit_error, log_error

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "hf", "hash")


class Embedder:
    def __init__(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        dim: int = 1536,
    ) -> None:
        self.provider: str = (provider or getattr(Config, "EMBEDDING_PROVIDER", "openai")).lower()
        if self.provider not in PROVIDERS:
            raise ValueError(f"Unknown embedding provider '{self.provider}'. Expected one of {PROVIDERS}.")

        self.hf_model_name: str = getattr(Config, "HF_EMBEDDING_MODEL", "all-MiniLM-L6-v2")
        self._hf_model = None
        self.dim = dim

        self._api_key = api_key if api_key is not None else getattr(Config, "OPENAI_API_KEY", "")
        self._base_url = base_url or getattr(Config, "OPENAI_BASE_URL", None)
        self.openai_client = None

        if self.provider == "hf":
            self.embedding_model = model or self.hf_model_name
        else:
            self.embedding_model = model or getattr(Config, "EMBEDDING_MODEL", "text-embedding-3-small")

        if self.provider == "openai" and not (self._api_key and str(self._api_key).strip()):
            logger.warning("OPENAI_API_KEY not set; using deterministic hash embeddings")
            self.provider = "hash"

    def embed_query(self, text: str) -> List[float]:
        """Embed a single text. This is the capability handed to RetrievalStore."""
        return self.embed_documents([text])[0]

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not isinstance(texts, list) or not texts:
            return []
        if not all(isinstance(t, str) and t.strip() for t in texts):
            raise ValueError("All inputs must be non-empty strings for embedding generation.")

        if self.provider == "hash":
            return self._hash_embeddings(texts)
        if self.provider == "hf":
            try:
                return self._hf_generate(texts)
            except Exception as e:
                log_error(e, context={"where": "Embedder.embed_documents", "provider": "hf"})
                raise EmbeddingGenerationError(str(e) or "sentence-transformers embedding failed.") from e
        return self._openai_generate(texts)

    def _openai_generate(self, texts: List[str]) -> List[List[float]]:
        # Lazy-init OpenAI client
        if self.openai_client is None:
            self.openai_client = OpenAI(api_key=self._api_key, base_url=self._base_url)
        try:
            resp = self.openai_client.embeddings.create(model=self.embedding_model, input=texts)
        except Exception as e:
            info = handle_api_error(e)
            log_error(e, context={"where": "Embedder._openai_generate", "retryable": info.get("retryable")})
            raise EmbeddingGenerationError(info["error"], rate_limited=is_rate_limit_error(e)) from e

        vectors = [list(d.embedding) for d in resp.data]
        if len(vectors) != len(texts):
            raise EmbeddingGenerationError(
                f"Embedding output length mismatch: expected {len(texts)}, got {len(vectors)}"
            )
        return vectors

    def _hf_generate(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings via sentence-transformers with lazy init and L2 normalization."""
        if self._hf_model is None:
            from sentence_transformers import SentenceTransformer
            self._hf_model = SentenceTransformer(self.hf_model_name)
        vectors = self._hf_model.encode(texts, convert_to_numpy=False, normalize_embeddings=True)
        return [[float(x) for x in v] for v in vectors]

    def _hash_embeddings(self, texts: List[str]) -> List[List[float]]:
        """Deterministic pseudo-embeddings for offline/testing scenarios.

        Generates a fixed-size vector per text using a SHA-256-derived seed.
        """
        vectors: List[List[float]] = []
        for t in texts:
            # Seed PRNG from text hash for determinism
            h = hashlib.sha256(t.encode("utf-8")).hexdigest()
            seed = int(h[:16], 16)
            rnd = random.Random(seed)
            vec = [rnd.uniform(-1.0, 1.0) for _ in range(self.dim)]
            # L2 normalize
            norm = sum(v * v for v in vec) ** 0.5 or 1.0
            vectors.append([v / norm for v in vec])
        return vectors
