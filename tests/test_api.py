import io
from types import SimpleNamespace

import pytest

from doc_assistant import app as app_module
from doc_assistant.app import create_app
from doc_assistant.modules.doc_processor import DocumentProcessor
from doc_assistant.modules.llm_handler import ChatHandler

from tests.conftest import keyword_embed


@pytest.fixture()
def limits(monkeypatch):
    monkeypatch.setattr(app_module.Config, "MAX_DOCUMENTS", 2)
    monkeypatch.setattr(app_module.Config, "MAX_FILE_SIZE", 2 * 1024 * 1024)
    monkeypatch.setattr(app_module.Config, "SEARCH_K", 3)


@pytest.fixture()
def app(store, limits):
    flask_app = create_app(
        store=store,
        chat_handler=ChatHandler(api_key=""),
        processor=DocumentProcessor(chunk_size=200, chunk_overlap=20),
    )
    flask_app.testing = True
    return flask_app


@pytest.fixture()
def client(app):
    return app.test_client()


def upload(client, content, filename="notes.txt"):
    return client.post(
        "/upload",
        data={"file": (io.BytesIO(content), filename)},
        content_type="multipart/form-data",
    )


def test_health(client):
    res = client.get('/health')
    assert res.status_code == 200
    data = res.get_json()
    assert data['status'] == 'healthy'
    assert data['total_documents'] == 0


def test_upload_indexes_document(client, store):
    res = upload(client, b"Python is a language. Flask is a Python framework.")
    assert res.status_code == 200
    data = res.get_json()
    assert data["success"] is True
    assert data["chunks"] == 1
    assert store.get_document_count() == 1
    assert store.list_documents()[0].id == data["documentId"]


def test_upload_requires_file(client):
    res = client.post("/upload", data={}, content_type="multipart/form-data")
    assert res.status_code == 400


def test_upload_rejects_empty_file(client):
    res = upload(client, b"")
    assert res.status_code == 400


def test_upload_rejects_oversized_file(client, monkeypatch):
    monkeypatch.setattr(app_module.Config, "MAX_FILE_SIZE", 16)
    res = upload(client, b"x" * 64)
    assert res.status_code == 400
    assert "exceeds" in res.get_json()["error"]


def test_upload_enforces_document_limit(client):
    assert upload(client, b"Python one.", "one.txt").status_code == 200
    assert upload(client, b"Python two.", "two.txt").status_code == 200
    res = upload(client, b"Python three.", "three.txt")
    assert res.status_code == 400
    assert "Maximum 2 documents" in res.get_json()["error"]


def test_list_documents_newest_first(client):
    upload(client, b"Cat facts.", "first.txt")
    upload(client, b"Dog facts.", "second.txt")

    res = client.get("/documents")
    assert res.status_code == 200
    data = res.get_json()
    assert data["count"] == 2
    assert [d["filename"] for d in data["documents"]] == ["second.txt", "first.txt"]
    assert set(data["documents"][0]) == {"id", "filename", "uploadedAt", "chunkCount"}


def test_delete_document(client):
    doc_id = upload(client, b"Cat facts.", "cats.txt").get_json()["documentId"]

    assert client.delete("/documents").status_code == 400
    assert client.delete("/documents?id=missing").status_code == 404

    res = client.delete(f"/documents?id={doc_id}")
    assert res.status_code == 200
    assert res.get_json()["success"] is True
    assert client.get("/documents").get_json()["count"] == 0
    assert client.delete(f"/documents?id={doc_id}").status_code == 404


def test_chat_requires_documents(client):
    res = client.post("/chat", json={"message": "hello"})
    assert res.status_code == 400


def test_chat_requires_message(client):
    upload(client, b"Python facts.")
    assert client.post("/chat", json={"message": "  "}).status_code == 400
    assert client.post("/chat", data="not json").status_code == 400


def test_chat_answers_from_best_chunk(client):
    upload(client, b"The cat sleeps all day.", "cats.txt")
    upload(client, b"Flask is a Python framework.", "flask.txt")

    res = client.post("/chat", json={"message": "tell me about flask", "session_id": "s1"})
    assert res.status_code == 200
    data = res.get_json()
    assert data["answer"].startswith("Flask is a Python framework.")
    assert data["sources"][0] == "flask.txt"


def test_chat_streams_tokens(client):
    upload(client, b"The cat sleeps all day.", "cats.txt")

    res = client.post("/chat", json={"message": "what does the cat do", "stream": True})
    assert res.status_code == 200
    assert res.mimetype == "text/plain"
    assert "The cat sleeps all day." in res.get_data(as_text=True)


def test_chat_rate_limit_maps_to_429(make_store, limits):
    def limited_embed(text):
        raise RuntimeError("Resource has been exhausted (e.g. check quota).")

    store = make_store(limited_embed)
    store.add_documents([("Python facts.", {})], "A", "a.txt")
    client = create_app(store=store, chat_handler=ChatHandler(api_key=""), processor=DocumentProcessor()).test_client()

    res = client.post("/chat", json={"message": "python"})
    assert res.status_code == 429
    assert res.get_json()["isQuotaError"] is True


def test_clear_and_stats(client):
    upload(client, b"Python facts.")
    client.post("/chat", json={"message": "python facts", "session_id": "s1"})

    stats = client.get("/stats").get_json()
    assert stats["active_sessions"] == 1
    assert stats["retrieval_store"]["total_documents"] == 1

    res = client.post("/clear", json={"session_id": "s1"})
    assert res.status_code == 200
    assert client.get("/stats").get_json()["active_sessions"] == 0


def test_unknown_route_returns_json_404(client):
    res = client.get("/nope")
    assert res.status_code == 404
    assert res.get_json()["type"] == "not_found"


def test_upload_does_not_call_embeddings(make_store, limits):
    def limited_embed(text):
        raise RuntimeError("429 Too Many Requests")

    store = make_store(limited_embed)
    client = create_app(store=store, chat_handler=ChatHandler(api_key=""), processor=DocumentProcessor()).test_client()

    res = upload(client, b"Python facts.")
    assert res.status_code == 200
    assert store.get_document_count() == 1


def _failing_stream(**kwargs):
    yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="The cat "))])
    raise RuntimeError("connection reset by peer")


def test_chat_stream_failure_midway_ends_with_error_marker(store, limits):
    handler = ChatHandler(api_key="sk-test")
    handler.openai_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=_failing_stream)))
    client = create_app(store=store, chat_handler=handler, processor=DocumentProcessor()).test_client()
    upload(client, b"The cat sleeps all day.", "cats.txt")

    res = client.post("/chat", json={"message": "what does the cat do", "stream": True, "session_id": "s1"})
    body = res.get_data(as_text=True)

    assert res.status_code == 200
    assert body.startswith("The cat ")
    assert app_module.STREAM_ERROR_MARKER in body
    assert body.rstrip().endswith("connection reset by peer")
    assert handler.get_history("s1") == []
