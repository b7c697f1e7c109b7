import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Ensure project root is on sys.path so 'doc_assistant' can be imported without installing
PROJECT_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from doc_assistant.modules.retrieval_store import RetrievalStore  # noqa: E402

VOCAB = ["python", "flask", "cat", "dog", "store", "vector"]


def keyword_embed(text):
    """Deterministic bag-of-words embedding over a tiny vocabulary.

    Text containing none of the vocabulary words embeds to the zero vector.
    """
    words = text.lower().replace(".", " ").replace("?", " ").split()
    return [float(words.count(v)) for v in VOCAB]


class StepClock:
    """Clock that advances one second per call."""

    def __init__(self, start=None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        now = self.current
        self.current = self.current + timedelta(seconds=1)
        return now


@pytest.fixture()
def store_path(tmp_path):
    return str(tmp_path / "vector_store.json")


@pytest.fixture()
def store(store_path):
    return RetrievalStore(keyword_embed, path=store_path, clock=StepClock())


@pytest.fixture()
def make_store(store_path):
    def _make(embed_fn=keyword_embed, **kwargs):
        kwargs.setdefault("path", store_path)
        kwargs.setdefault("clock", StepClock())
        return RetrievalStore(embed_fn, **kwargs)
    return _make
