"""Retrieval store: chunk corpus, document registry and cosine similarity search.

Implements a RetrievalStore class for:
- Adding a chunked document under a new identity (corpus + registry entry)
- Listing and deleting documents, cascading deletes to their chunks
- Cosine similarity search over the whole corpus
- Persisting corpus and registry together as one JSON snapshot

Every query re-embeds the full corpus; nothing is cached across calls or restarts.
That is only acceptable because uploads are capped at a handful of small documents
(Config.MAX_DOCUMENTS). Raising that cap needs an embedding cache or an index first.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
import time
import types
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from doc_assistant.config import Config
from doc_assistant.utils import (
    EmbeddingGenerationError,
    StorePersistenceError,
    is_rate_limit_error,
    log_error,
)

logger = logging.getLogger(__name__)

EmbedFn = Callable[[str], Sequence[float]]

# Score given to a pair where either vector has zero norm; it never outranks a real match.
ZERO_VECTOR_SCORE = -1.0

_SCALAR_TYPES = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class Chunk:
    """One indexed fragment of a source document. Metadata is a read-only view."""

    text: str
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", types.MappingProxyType(dict(self.metadata)))

    @property
    def doc_id(self) -> Optional[str]:
        return self.metadata.get("docId")

    @property
    def filename(self) -> Optional[str]:
        return self.metadata.get("filename")

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "metadata": dict(self.metadata)}


@dataclass(frozen=True)
class DocumentRecord:
    """Registry entry for one uploaded source. chunk_count is fixed at ingestion."""

    id: str
    filename: str
    uploaded_at: datetime
    chunk_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "uploadedAt": self.uploaded_at.isoformat(),
            "chunkCount": self.chunk_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentRecord":
        return cls(
            id=str(data["id"]),
            filename=str(data["filename"]),
            uploaded_at=_parse_timestamp(data["uploadedAt"]),
            chunk_count=int(data["chunkCount"]),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); ZERO_VECTOR_SCORE when either norm is zero."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise EmbeddingGenerationError(
            f"Embedding dimension mismatch: {va.shape} vs {vb.shape}"
        )
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return ZERO_VECTOR_SCORE
    return float(np.dot(va, vb) / (norm_a * norm_b))


class RetrievalStore:
    def __init__(
        self,
        embed_fn: EmbedFn,
        path: Optional[str] = None,
        embedding_model: Optional[str] = None,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Create the store and load any existing snapshot from ``path``.

        - embed_fn: maps text to a fixed-length vector (e.g. Embedder.embed_query)
        - path: snapshot location (defaults to Config.STORE_PATH)
        - concurrency: max parallel embedding calls during a search
        - timeout: seconds to wait for any single embedding call
        - clock: returns timezone-aware "now"; used for uploaded_at
        """
        self.embed_fn = embed_fn
        self.path: str = path or getattr(Config, "STORE_PATH", "./vector_store.json")
        self.embedding_model = embedding_model
        self.concurrency: int = int(concurrency or getattr(Config, "EMBEDDING_CONCURRENCY", 8))
        self.timeout: float = float(timeout or getattr(Config, "EMBEDDING_TIMEOUT", 30.0))
        self._clock = clock or _utcnow

        # One lock guards (corpus, registry, snapshot write) as a unit
        self._lock = threading.RLock()
        self._chunks: List[Chunk] = []
        self._registry: Dict[str, DocumentRecord] = {}
        self._last_uploaded_at: Optional[datetime] = None

        self.load()

    # --- Mutations ---
    def add_documents(self, chunks: Iterable[Any], doc_id: str, filename: str) -> int:
        """Add one document's chunks and its registry entry, then persist.

        ``chunks`` items may be ``(text, metadata)`` pairs, ``{"text", "metadata"}``
        dicts (DocumentProcessor.chunk_text output) or Chunk objects.

        Raises:
            ValueError: empty chunks, blank id/filename, or an id already registered.
            StorePersistenceError: the snapshot write failed. The addition stays in memory.
        """
        if not isinstance(doc_id, str) or not doc_id.strip():
            raise ValueError("doc_id must be a non-empty string.")
        if not isinstance(filename, str) or not filename.strip():
            raise ValueError("filename must be a non-empty string.")

        tagged = [self._make_chunk(item, doc_id, filename) for item in (chunks or [])]
        if not tagged:
            raise ValueError("chunks must be a non-empty sequence.")

        with self._lock:
            if doc_id in self._registry:
                raise ValueError(f"Document id '{doc_id}' is already registered.")

            self._chunks.extend(tagged)
            self._registry[doc_id] = DocumentRecord(
                id=doc_id,
                filename=filename,
                uploaded_at=self._next_timestamp(),
                chunk_count=len(tagged),
            )
            logger.info(
                "Added %d chunks for document %s (%s); corpus size %d",
                len(tagged), doc_id, filename, len(self._chunks),
            )
            self._persist()
        return len(tagged)

    def delete_document(self, doc_id: str) -> bool:
        """Remove a document and all of its chunks. Returns whether the id was registered.

        Raises:
            StorePersistenceError: the snapshot write failed. The removal stays in memory.
        """
        with self._lock:
            if doc_id not in self._registry:
                logger.info("Delete requested for unknown document %s", doc_id)
                return False

            before = len(self._chunks)
            self._chunks = [c for c in self._chunks if c.doc_id != doc_id]
            removed = before - len(self._chunks)
            del self._registry[doc_id]

            if removed == 0:
                logger.warning("Document %s was registered but had no chunks in the corpus", doc_id)
            else:
                logger.info("Deleted %d chunks for document %s", removed, doc_id)
            self._persist()
        return True

    # --- Reads ---
    def list_documents(self) -> List[DocumentRecord]:
        """Registry entries, newest first; equal timestamps keep insertion order."""
        with self._lock:
            records = list(self._registry.values())
        return sorted(records, key=lambda r: r.uploaded_at, reverse=True)

    def get_document_count(self) -> int:
        with self._lock:
            return len(self._registry)

    @property
    def total_chunks(self) -> int:
        with self._lock:
            return len(self._chunks)

    def chunks(self) -> List[Chunk]:
        """Copy of the corpus in insertion order."""
        with self._lock:
            return list(self._chunks)

    def similarity_search(self, query: str, k: int = 3) -> List[Chunk]:
        """Return up to ``k`` chunks ranked by cosine similarity to ``query``."""
        return [chunk for chunk, _ in self.similarity_search_with_scores(query, k)]

    def similarity_search_with_scores(self, query: str, k: int = 3) -> List[Tuple[Chunk, float]]:
        """Rank every chunk against ``query`` and return the top ``k`` with scores.

        The query and every chunk are embedded on each call. Ties keep corpus order.

        Raises:
            ValueError: k is not a positive integer.
            EmbeddingGenerationError: an embedding call failed or timed out.
        """
        if isinstance(k, bool) or not isinstance(k, int) or k < 1:
            raise ValueError("k must be a positive integer.")

        corpus = self.chunks()
        if not corpus:
            logger.info("Similarity search on an empty corpus")
            return []
        if not isinstance(query, str) or not query.strip():
            return []

        vectors = self._embed_all([query] + [c.text for c in corpus])
        query_vec = vectors[0]
        scored = [(chunk, cosine_similarity(query_vec, vec)) for chunk, vec in zip(corpus, vectors[1:])]

        # sorted() is stable with reverse=True, so equal scores keep corpus order
        ranked = sorted(scored, key=lambda pair: pair[1], reverse=True)
        return ranked[:k]

    def get_stats(self) -> Dict[str, Any]:
        """Return corpus/registry statistics and configuration info."""
        with self._lock:
            return {
                "total_chunks": len(self._chunks),
                "total_documents": len(self._registry),
                "store_path": self.path,
                "embedding_model": self.embedding_model,
            }

    @staticmethod
    def new_document_id() -> str:
        """Identity for a new upload: epoch millis plus a random suffix."""
        return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"

    # --- Persistence ---
    def save(self) -> None:
        """Write corpus and registry as one snapshot, replacing any previous one.

        Raises:
            StorePersistenceError: the snapshot could not be written.
        """
        with self._lock:
            self._persist()

    def load(self) -> None:
        """Restore corpus and registry from the snapshot, if one exists.

        An unreadable snapshot is moved aside to ``<path>.corrupt-<timestamp>`` and the
        store starts empty; nothing is raised.
        """
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            chunks, registry = self._parse_snapshot(raw)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            log_error(e, context={"where": "RetrievalStore.load", "path": self.path})
            self._quarantine_snapshot()
            return

        with self._lock:
            self._chunks = chunks
            self._registry = registry
            self._last_uploaded_at = max((r.uploaded_at for r in registry.values()), default=None)
        logger.info("Loaded %d chunks for %d documents from %s", len(chunks), len(registry), self.path)

    def _snapshot(self) -> Dict[str, Any]:
        # Registry is written as [id, entry] pairs so order survives the round trip
        return {
            "chunks": [c.to_dict() for c in self._chunks],
            "documents": [[doc_id, record.to_dict()] for doc_id, record in self._registry.items()],
        }

    def _persist(self) -> None:
        payload = self._snapshot()
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".vector_store.", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
            err = StorePersistenceError(f"Failed to save retrieval store: {e}", path=self.path)
            log_error(err, context={"where": "RetrievalStore._persist", "path": self.path})
            raise err from e
        logger.info("Saved %d chunks for %d documents to %s", len(self._chunks), len(self._registry), self.path)

    def _parse_snapshot(self, raw: Any) -> Tuple[List[Chunk], Dict[str, DocumentRecord]]:
        if not isinstance(raw, dict):
            raise ValueError("Snapshot root must be an object.")

        registry: Dict[str, DocumentRecord] = {}
        for doc_id, entry in raw["documents"]:
            record = DocumentRecord.from_dict(entry)
            if record.id != str(doc_id):
                raise ValueError(f"Snapshot registry key '{doc_id}' does not match entry id '{record.id}'.")
            registry[record.id] = record

        chunks: List[Chunk] = []
        dangling = 0
        for entry in raw["chunks"]:
            text = entry["text"]
            metadata = entry.get("metadata") or {}
            if not isinstance(text, str) or not isinstance(metadata, dict):
                raise ValueError("Snapshot chunk has an invalid shape.")
            if metadata.get("docId") not in registry:
                dangling += 1
                continue
            chunks.append(Chunk(text=text, metadata=dict(metadata)))

        if dangling:
            logger.warning("Dropped %d snapshot chunks with no registry entry", dangling)
        return chunks, registry

    def _quarantine_snapshot(self) -> None:
        stamp = self._clock().strftime("%Y%m%dT%H%M%S%f")
        target = f"{self.path}.corrupt-{stamp}"
        try:
            os.replace(self.path, target)
            logger.warning("Unreadable snapshot moved to %s; starting with an empty store", target)
        except OSError as e:
            log_error(e, context={"where": "RetrievalStore._quarantine_snapshot", "path": self.path})
            logger.warning("Unreadable snapshot left at %s; starting with an empty store", self.path)

    # --- Helpers ---
    def _make_chunk(self, item: Any, doc_id: str, filename: str) -> Chunk:
        if isinstance(item, Chunk):
            text, metadata = item.text, item.metadata
        elif isinstance(item, dict):
            text, metadata = item.get("text"), item.get("metadata")
        else:
            text, metadata = item
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Chunk text must be a non-empty string.")

        merged: Dict[str, Any] = dict(metadata or {})
        for key, value in merged.items():
            if not isinstance(value, _SCALAR_TYPES):
                raise ValueError(f"Chunk metadata '{key}' must be a scalar, got {type(value).__name__}.")
        merged["docId"] = doc_id
        merged["filename"] = filename
        return Chunk(text=text, metadata=merged)

    def _next_timestamp(self) -> datetime:
        # Strictly increasing so registry order never depends on clock resolution
        now = self._clock()
        if self._last_uploaded_at is not None and now <= self._last_uploaded_at:
            now = self._last_uploaded_at + timedelta(microseconds=1)
        self._last_uploaded_at = now
        return now

    def _embed_one(self, text: str) -> List[float]:
        return [float(x) for x in self.embed_fn(text)]

    def _embed_all(self, texts: List[str]) -> List[List[float]]:
        """Embed texts with bounded fan-out, preserving input order."""
        pool = ThreadPoolExecutor(max_workers=max(1, min(self.concurrency, len(texts))))
        try:
            futures = [pool.submit(self._embed_one, t) for t in texts]
            return [f.result(timeout=self.timeout) for f in futures]
        except FutureTimeoutError as e:
            err = EmbeddingGenerationError(
                f"Embedding call timed out after {self.timeout:g}s", timed_out=True
            )
            log_error(err, context={"where": "RetrievalStore._embed_all", "texts": len(texts)})
            raise err from e
        except EmbeddingGenerationError:
            raise
        except Exception as e:
            log_error(e, context={"where": "RetrievalStore._embed_all", "texts": len(texts)})
            raise EmbeddingGenerationError(str(e) or e.__class__.__name__, rate_limited=is_rate_limit_error(e)) from e
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
