from types import SimpleNamespace

import pytest

from doc_assistant.modules.llm_handler import NO_CONTEXT_ANSWER, ChatHandler
from doc_assistant.modules.retrieval_store import Chunk
from doc_assistant.utils import ChatGenerationError


CHUNKS = [
    Chunk("Flask is a micro web framework. It is written in Python.", {"docId": "B", "filename": "b.txt", "section": "Section 1"}),
    Chunk("Cats sleep a lot.", {"docId": "A", "filename": "a.txt"}),
    Chunk("Python is popular.", {"docId": "B", "filename": "b.txt"}),
]


class RateLimitError(Exception):
    pass


def event(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class FakeCompletions:
    def __init__(self, events=None, error=None):
        self.events = events or []
        self.error = error
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        return iter(self.events)


def online_handler(completions):
    handler = ChatHandler(api_key="sk-test", max_history=4)
    handler.openai_client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return handler


def test_offline_answer_cites_best_chunk():
    handler = ChatHandler(api_key="")
    result = handler.generate_answer("Which language is it written in?", CHUNKS, "s1")

    assert result["answer"] == "It is written in Python. [Source: b.txt, Section 1]"
    assert result["sources"] == ["b.txt", "a.txt"]
    assert result["chunks_used"] == 3


def test_no_chunks_returns_not_found_answer():
    handler = ChatHandler(api_key="")
    result = handler.generate_answer("anything", [], "s1")
    assert result["answer"] == NO_CONTEXT_ANSWER
    assert result["sources"] == []


def test_empty_query_rejected():
    handler = ChatHandler(api_key="")
    with pytest.raises(ValueError):
        handler.generate_answer("  ", CHUNKS, "s1")


def test_history_is_capped_and_clearable():
    handler = ChatHandler(api_key="", max_history=4)
    for i in range(5):
        handler.generate_answer(f"question {i} about flask", CHUNKS, "s1")

    history = handler.get_history("s1")
    assert len(history) == 4
    assert history[-2] == {"role": "user", "content": "question 4 about flask"}

    assert handler.clear_history("s1") is True
    assert handler.clear_history("s1") is False
    assert handler.get_history("s1") == []


def test_stream_answer_yields_tokens_from_model():
    completions = FakeCompletions(events=[event("Flask "), event(None), event("is small."), SimpleNamespace(choices=[])])
    handler = online_handler(completions)

    tokens = list(handler.stream_answer("What is Flask?", CHUNKS, "s1"))

    assert tokens == ["Flask ", "is small."]
    assert completions.kwargs["stream"] is True
    messages = completions.kwargs["messages"]
    assert messages[0]["role"] == "system"
    assert "[Source: b.txt, Section 1]" in messages[1]["content"]
    assert messages[-1] == {"role": "user", "content": "What is Flask?"}
    assert handler.get_history("s1")[-1] == {"role": "assistant", "content": "Flask is small."}


def test_prompt_includes_recent_history():
    completions = FakeCompletions(events=[event("ok")])
    handler = online_handler(completions)
    handler.conversations["s1"] = [
        {"role": "user", "content": "earlier question"},
        {"role": "assistant", "content": "earlier answer"},
    ]

    handler.generate_answer("follow up", CHUNKS, "s1")

    contents = [m["content"] for m in completions.kwargs["messages"]]
    assert "earlier question" in contents
    assert contents[-1] == "follow up"


def test_model_rate_limit_raises_flagged_error():
    handler = online_handler(FakeCompletions(error=RateLimitError("429 Too Many Requests")))
    with pytest.raises(ChatGenerationError) as exc:
        handler.generate_answer("What is Flask?", CHUNKS, "s1")
    assert exc.value.rate_limited is True
    assert handler.get_history("s1") == []
