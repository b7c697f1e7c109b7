"""LLM chat handler for generating grounded answers with history.

Implements ChatHandler:
- Conversation history management (last N messages per session)
- Prompt building with retrieved chunk context and source labels
- Streamed answer generation using OpenAI chat completions
- Offline extractive fallback when no API key is configured
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict, Iterator, List, Optional, Sequence

from openai import OpenAI

from doc_assistant.config import Config
from doc_assistant.modules.retrieval_store import Chunk
from doc_assistant.utils import ChatGenerationError, handle_api_error, is_rate_limit_error, log_error

NO_CONTEXT_ANSWER = "This information is not in the uploaded documents."


def _source_label(chunk: Chunk) -> str:
    filename = chunk.metadata.get("filename") or "document"
    section = chunk.metadata.get("section")
    return f"{filename}, {section}" if section else str(filename)


class ChatHandler:
    def __init__(
        self,
        chat_model: Optional[str] = None,
        max_history: Optional[int] = None,
        api_key: Optional[str] = None,
    ) -> None:
        if api_key is None:
            api_key = os.getenv("OPENAI_API_KEY") or getattr(Config, "OPENAI_API_KEY", "")
        self._api_key: str = api_key
        self._openai_enabled: bool = bool(api_key and str(api_key).strip())
        self.openai_client = None

        # Configuration-driven defaults with optional overrides
        self.chat_model: str = chat_model or getattr(Config, "CHAT_MODEL", "gpt-4o-mini")
        self.max_history: int = int(max_history or getattr(Config, "MAX_CONVERSATION_HISTORY", 5))
        self.temperature: float = 0.0

        # Conversations: {session_id: [ {role: "user"|"assistant", content: str}, ... ]}
        self.conversations: Dict[str, List[Dict[str, str]]] = {}

    def build_system_prompt(self) -> str:
        return (
            """You are a helpful assistant that answers questions using ONLY the provided document excerpts.

INSTRUCTIONS:
1. Only use the provided excerpts. If the answer isn't there, say "This information is not in the uploaded documents."
2. Cite the excerpts you used inline as [Source: <label>], using the label shown before each excerpt.
3. Be concise and accurate."""
        )

    def build_context_message(self, chunks: Sequence[Chunk]) -> str:
        lines: List[str] = ["Document excerpts:\n\n"]
        for c in chunks or []:
            if c.text:
                lines.append(f"[Source: {_source_label(c)}]: {c.text}\n\n")
        return "".join(lines)

    def build_prompt(self, query: str, chunks: Sequence[Chunk], history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        messages.append({"role": "system", "content": self.build_system_prompt()})
        messages.append({"role": "user", "content": self.build_context_message(chunks)})

        # Add last N messages from history
        if history:
            messages.extend(history[-self.max_history:])

        messages.append({"role": "user", "content": query})
        return messages

    def sources_for(self, chunks: Sequence[Chunk]) -> List[str]:
        """Distinct filenames of the chunks, in ranking order."""
        seen: List[str] = []
        for c in chunks or []:
            name = c.metadata.get("filename")
            if name and name not in seen:
                seen.append(name)
        return seen

    def stream_answer(self, query: str, chunks: Sequence[Chunk], session_id: str) -> Iterator[str]:
        """Yield answer tokens; history is updated once the stream is exhausted.

        Raises:
            ValueError: the query is empty.
            ChatGenerationError: the upstream model call failed.
        """
        if not isinstance(query, str) or not query.strip():
            raise ValueError("Query cannot be empty.")

        if not chunks:
            tokens: Iterator[str] = iter([NO_CONTEXT_ANSWER])
        elif not self._openai_enabled:
            tokens = iter([self._offline_answer(query, chunks)])
        else:
            tokens = self._openai_stream(query, chunks, session_id)

        parts: List[str] = []
        for token in tokens:
            parts.append(token)
            yield token
        self._remember(session_id, query, "".join(parts))

    def generate_answer(self, query: str, chunks: Sequence[Chunk], session_id: str) -> Dict[str, Any]:
        answer = "".join(self.stream_answer(query, chunks, session_id)).strip()
        return {
            "answer": answer,
            "sources": self.sources_for(chunks),
            "chunks_used": len(chunks or []),
        }

    def _openai_stream(self, query: str, chunks: Sequence[Chunk], session_id: str) -> Iterator[str]:
        # Lazy-init OpenAI client
        if self.openai_client is None:
            base_url = getattr(Config, "OPENAI_BASE_URL", None)
            self.openai_client = OpenAI(api_key=self._api_key, base_url=base_url)

        history = self.conversations.get(session_id, [])
        messages = self.build_prompt(query, chunks, history)

        try:
            stream = self.openai_client.chat.completions.create(
                model=self.chat_model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=500,
                stream=True,
            )
            for event in stream:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if delta:
                    yield delta
        except Exception as e:
            info = handle_api_error(e)
            log_error(e, context={"where": "ChatHandler._openai_stream", "session_id": session_id, "type": info.get("type")})
            raise ChatGenerationError(info["error"], rate_limited=is_rate_limit_error(e)) from e

    def _offline_answer(self, query: str, chunks: Sequence[Chunk]) -> str:
        # Chunks arrive ranked; pick the sentence of the top chunk that best matches the query
        best = chunks[0]
        text = (best.text or "").strip()

        sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", text) if s.strip()]
        query_clean = re.sub(r"[^a-z0-9\s]", " ", query.lower())
        keywords = {w for w in query_clean.split() if len(w) > 2}

        best_sentence = sentences[0] if sentences else text
        best_overlap = -1
        for s in sentences:
            s_lower = s.lower()
            overlap = sum(1 for w in keywords if w in s_lower)
            if overlap > best_overlap:
                best_overlap = overlap
                best_sentence = s

        answer = best_sentence.rstrip(".") + "."
        return f"{answer} [Source: {_source_label(best)}]"

    def _remember(self, session_id: str, query: str, answer: str) -> None:
        hist = self.conversations.setdefault(session_id, [])
        hist.append({"role": "user", "content": query})
        hist.append({"role": "assistant", "content": answer})
        if len(hist) > self.max_history:
            self.conversations[session_id] = hist[-self.max_history:]

    def clear_history(self, session_id: str) -> bool:
        if session_id in self.conversations:
            del self.conversations[session_id]
            return True
        return False

    def get_history(self, session_id: str) -> List[Dict[str, str]]:
        return list(self.conversations.get(session_id, []))
