"""
Backend modules for the document chat assistant.

This package contains the core processing modules:
- retrieval_store: chunk corpus, document registry, cosine search and JSON persistence
- embeddings: OpenAI / sentence-transformers / hash embedding providers
- doc_processor: uploaded file text extraction and chunking
- llm_handler: OpenAI chat completion streaming and conversation management

Usage:
    from doc_assistant.modules import RetrievalStore, Embedder, DocumentProcessor, ChatHandler
"""

from .retrieval_store import Chunk, DocumentRecord, RetrievalStore, cosine_similarity
from .embeddings import Embedder
from .doc_processor import DocumentProcessor
from .llm_handler import ChatHandler

__all__ = [
    'Chunk',
    'DocumentRecord',
    'RetrievalStore',
    'cosine_similarity',
    'Embedder',
    'DocumentProcessor',
    'ChatHandler',
]
