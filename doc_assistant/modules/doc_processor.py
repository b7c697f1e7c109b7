"""Uploaded file processing utilities for the RAG pipeline.

DocumentProcessor responsibilities:
- Extract text from uploaded files (plain text, JSON, PDF, DOCX)
- Clean and normalize text
- Count tokens (using tiktoken when available)
- Chunk text into sentence-based segments with token budgets and overlap
"""

from __future__ import annotations

import io
import json
import os
import re
from typing import Any, Dict, List, Optional

import tiktoken

from doc_assistant.config import Config
from doc_assistant.utils import (
    DocumentParseError,
    sanitize_text,
    log_error,
    validate_chunk_size,
)


class DocumentProcessor:
    """Turns uploaded files into chunk dicts ready for RetrievalStore.add_documents."""

    def __init__(self, chunk_size: Optional[int] = None, chunk_overlap: Optional[int] = None) -> None:
        # tiktoken downloads its encoding on first use; fall back to word counts when offline
        self.encoding = None
        try:
            self.encoding = tiktoken.get_encoding("cl100k_base")
        except Exception as e:  # pragma: no cover
            log_error(e, context={"where": "DocumentProcessor.__init__", "note": "tiktoken encoding unavailable"})
            self.encoding = None

        # Load sizes from config if not provided
        self.chunk_size = int(chunk_size) if chunk_size is not None else int(getattr(Config, "CHUNK_SIZE", 800))
        self.chunk_overlap = int(chunk_overlap) if chunk_overlap is not None else int(getattr(Config, "CHUNK_OVERLAP", 100))

        if not validate_chunk_size(self.chunk_size):
            self.chunk_size = 800
        # Overlap must be non-negative and at most 25% of chunk_size
        if self.chunk_overlap < 0:
            self.chunk_overlap = 0
        max_overlap = max(0, self.chunk_size // 4)
        if self.chunk_overlap > max_overlap:
            self.chunk_overlap = max_overlap

    def extract_text(self, filename: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Return the text content of an uploaded file.

        Raises:
            DocumentParseError: the file cannot be decoded or parsed.
        """
        ext = os.path.splitext(filename or "")[1].lower().lstrip(".")
        ctype = (content_type or "").split(";")[0].strip().lower()

        if ext == "pdf" or ctype == "application/pdf":
            return self._pdf_text(data)
        if ext == "docx" or ctype == "application/vnd.openxmlformats-officedocument.wordprocessingml.document":
            return self._docx_text(data)

        text = self._decode(data)
        if ext == "json" or ctype == "application/json":
            try:
                parsed = json.loads(text)
            except ValueError as e:
                raise DocumentParseError(f"Invalid JSON file: {e}") from e
            return parsed if isinstance(parsed, str) else json.dumps(parsed, indent=2)
        return text

    def _decode(self, data: bytes) -> str:
        try:
            return data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise DocumentParseError("File is not valid UTF-8 text.") from e

    def _pdf_text(self, data: bytes) -> str:
        from PyPDF2 import PdfReader

        try:
            reader = PdfReader(io.BytesIO(data))
            texts = [(page.extract_text() or "") for page in reader.pages]
        except Exception as e:
            raise DocumentParseError(f"Could not read PDF: {e}") from e
        return "\n\n".join(t for t in texts if t.strip()).strip()

    def _docx_text(self, data: bytes) -> str:
        import docx  # python-docx

        try:
            document = docx.Document(io.BytesIO(data))
        except Exception as e:
            raise DocumentParseError(f"Could not read DOCX: {e}") from e
        paras = [p.text for p in document.paragraphs if p.text and p.text.strip()]
        return "\n\n".join(paras).strip()

    def clean_text(self, text: str) -> str:
        """Clean text using validators and regex rules.

        Steps:
        - Use sanitize_text to remove control characters
        - Normalize newlines
        - Collapse multiple spaces to single space
        - Collapse 3+ newlines to a paragraph break
        - Strip leading/trailing whitespace
        """
        if not text:
            return ""
        base = text.replace("\r\n", "\n").replace("\r", "\n")
        base = sanitize_text(base)
        base = re.sub(r" *\n *", "\n", base)
        base = re.sub(r"\n{3,}", "\n\n", base)
        return base.strip()

    def count_tokens(self, text: str) -> int:
        """Count tokens using tiktoken when available; fallback to whitespace split length."""
        if not text:
            return 0
        if self.encoding is not None:
            return len(self.encoding.encode(text))
        return len(text.split())

    def _overlap_text(self, chunk: str) -> str:
        if self.chunk_overlap <= 0:
            return ""
        if self.encoding is not None:
            toks = self.encoding.encode(chunk)
            return self.encoding.decode(toks[-self.chunk_overlap:])
        return " ".join(chunk.split()[-self.chunk_overlap:])

    def _make_chunk(self, text: str, index: int) -> Dict[str, Any]:
        return {
            "text": text,
            "metadata": {
                "section": f"Section {index + 1}",
                "token_count": self.count_tokens(text),
                "chunk_index": index,
            },
        }

    def chunk_text(self, text: str) -> List[Dict[str, Any]]:
        """Chunk text into sentence-based segments with token budget and overlap.

        Uses self.chunk_size and self.chunk_overlap. A single sentence longer than
        the budget becomes its own chunk.
        """
        if not text or not text.strip():
            return []

        sentences = re.split(r"(?<=[.!?])\s+|\n{2,}", text)

        chunks: List[Dict[str, Any]] = []
        current_chunk = ""

        for sentence in sentences:
            s = (sentence or "").strip()
            if not s:
                continue

            candidate = current_chunk + (" " if current_chunk else "") + s
            if current_chunk and self.count_tokens(candidate) > self.chunk_size:
                chunks.append(self._make_chunk(current_chunk, len(chunks)))
                overlap = self._overlap_text(current_chunk).strip()
                current_chunk = (overlap + (" " if overlap else "") + s).strip()
            else:
                current_chunk = candidate

        if current_chunk:
            chunks.append(self._make_chunk(current_chunk, len(chunks)))

        return chunks

    def process_upload(self, filename: str, data: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
        """Complete pipeline: extract, clean and chunk an uploaded file.

        Raises:
            DocumentParseError: the file is unreadable or has no text.
        """
        raw_text = self.extract_text(filename, data, content_type)
        cleaned = self.clean_text(raw_text)
        if not cleaned:
            raise DocumentParseError("File appears to be empty or could not be parsed")
        chunks = self.chunk_text(cleaned)
        return {
            "chunks": chunks,
            "total_chunks": len(chunks),
            "total_tokens": sum(int(c["metadata"]["token_count"]) for c in chunks),
        }
