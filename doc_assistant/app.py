import os
from datetime import datetime, timezone

from flask import Blueprint, Flask, Response, current_app, jsonify, request, stream_with_context
from flask_cors import CORS
from dotenv import load_dotenv

from doc_assistant.config import Config
from doc_assistant.modules.doc_processor import DocumentProcessor
from doc_assistant.modules.embeddings import Embedder
from doc_assistant.modules.retrieval_store import RetrievalStore
from doc_assistant.modules.llm_handler import ChatHandler
from doc_assistant.utils.error_handlers import (
    ChatGenerationError,
    DocumentParseError,
    EmbeddingGenerationError,
    StorePersistenceError,
    handle_api_error,
    log_error,
    register_error_handlers,
)
from doc_assistant.utils.validators import validate_upload

QUOTA_MESSAGE = (
    "API quota exceeded. You've hit the rate limit for the embedding/chat provider. "
    "Please try again in a few moments or check your API key quota."
)

# Appended to a text/plain answer stream that failed after it started
STREAM_ERROR_MARKER = "[error]"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _quota_response():
    return jsonify({"error": QUOTA_MESSAGE, "isQuotaError": True}), 429


def _stream_tokens(first, tokens, session_id):
    """Relay a started answer stream, ending it with an error marker if it fails midway."""
    yield first
    try:
        yield from tokens
    except ChatGenerationError as e:
        log_error(e, {"endpoint": "/chat", "session_id": session_id, "stage": "stream"})
        reason = QUOTA_MESSAGE if e.rate_limited else e.message
        yield f"\n\n{STREAM_ERROR_MARKER} {reason}"


def create_app(store=None, embedder=None, chat_handler=None, processor=None) -> Flask:
    """Build the Flask app and its single RetrievalStore.

    The store loads its snapshot here, at startup, and is shared by every request.
    Tests pass their own store/handlers to get an isolated instance.
    """
    # Load environment variables from .env if present
    load_dotenv()

    app = Flask(__name__)

    CORS(
        app,
        origins=getattr(Config, "CORS_ORIGINS", ["*"]),
        methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    app.config["SECRET_KEY"] = getattr(Config, "FLASK_SECRET_KEY", "") or os.getenv("FLASK_SECRET_KEY", "dev-secret")
    # Let Flask reject oversized bodies before reading them; leave headroom for multipart framing
    app.config["MAX_CONTENT_LENGTH"] = Config.MAX_FILE_SIZE + 64 * 1024

    register_error_handlers(app)

    if store is None:
        embedder = embedder or Embedder()
        store = RetrievalStore(embedder.embed_query, embedding_model=embedder.embedding_model)
    app.extensions["retrieval_store"] = store
    app.extensions["chat_handler"] = chat_handler or ChatHandler(max_history=Config.MAX_CONVERSATION_HISTORY)
    app.extensions["doc_processor"] = processor or DocumentProcessor()

    app.register_blueprint(_routes())
    return app


def _routes() -> Blueprint:
    bp = Blueprint("api", __name__)

    def get_store() -> RetrievalStore:
        return current_app.extensions["retrieval_store"]

    def get_chat_handler() -> ChatHandler:
        return current_app.extensions["chat_handler"]

    @bp.route("/health", methods=["GET"])
    def health_check():
        """Health check and status endpoint."""
        try:
            stats = get_store().get_stats()
            return jsonify({
                "status": "healthy",
                "doc_loaded": stats["total_documents"] > 0,
                "total_documents": stats["total_documents"],
                "total_chunks": stats["total_chunks"],
                "embedding_model": stats.get("embedding_model"),
                "timestamp": _now(),
            }), 200
        except Exception as e:
            log_error(e, {"endpoint": "/health"})
            return jsonify({"status": "unhealthy", "error": str(e)}), 500

    @bp.route("/upload", methods=["POST"])
    def upload_document():
        """Upload a file: validate, extract text, chunk, and add it to the retrieval store."""
        file = request.files.get("file")
        if file is None or not file.filename:
            return jsonify({"error": "No file provided"}), 400

        data = file.read()
        check = validate_upload(file.filename, len(data), Config.MAX_FILE_SIZE)
        if not check["valid"]:
            return jsonify({"error": check["error"]}), 400

        store = get_store()
        if store.get_document_count() >= Config.MAX_DOCUMENTS:
            return jsonify({
                "error": f"Maximum {Config.MAX_DOCUMENTS} documents allowed. "
                         "Please delete a document before uploading a new one."
            }), 400

        try:
            result = current_app.extensions["doc_processor"].process_upload(file.filename, data, file.mimetype)
            doc_id = store.new_document_id()
            added = store.add_documents(result["chunks"], doc_id, file.filename)
        except DocumentParseError as e:
            return jsonify({"error": e.message}), e.status_code
        except StorePersistenceError as e:
            # The document is live in memory but was not saved
            log_error(e, {"endpoint": "/upload", "filename": file.filename})
            return jsonify({"error": "Failed to save document", "details": e.message}), 500
        except Exception as e:
            log_error(e, {"endpoint": "/upload", "filename": file.filename})
            return jsonify({"error": "Failed to process file", "details": handle_api_error(e)["error"]}), 500

        return jsonify({
            "success": True,
            "message": f"Successfully indexed {added} chunks from {file.filename}",
            "chunks": added,
            "documentId": doc_id,
        }), 200

    @bp.route("/documents", methods=["GET"])
    def list_documents():
        """List uploaded documents, newest first."""
        try:
            documents = [d.to_dict() for d in get_store().list_documents()]
            return jsonify({"documents": documents, "count": len(documents)}), 200
        except Exception as e:
            log_error(e, {"endpoint": "GET /documents"})
            return jsonify({"error": "Failed to list documents"}), 500

    @bp.route("/documents", methods=["DELETE"])
    def delete_document():
        """Delete a document and its chunks by ID."""
        doc_id = (request.args.get("id") or "").strip()
        if not doc_id:
            return jsonify({"error": "Document ID is required"}), 400

        try:
            deleted = get_store().delete_document(doc_id)
        except StorePersistenceError as e:
            log_error(e, {"endpoint": "DELETE /documents", "id": doc_id})
            return jsonify({"error": "Failed to delete document", "details": e.message}), 500

        if not deleted:
            return jsonify({"error": "Document not found"}), 404
        return jsonify({"success": True, "message": "Document deleted successfully"}), 200

    @bp.route("/chat", methods=["POST"])
    def chat():
        """Answer a message from the top matching chunks, as JSON or a token stream."""
        if not request.is_json:
            return jsonify({"error": "Content-Type must be application/json"}), 400

        data = request.get_json(silent=True) or {}
        message = (data.get("message") or "").strip()
        session_id = (data.get("session_id") or "default").strip() or "default"
        stream = bool(data.get("stream", False))
        if not message:
            return jsonify({"error": "message is required"}), 400

        store = get_store()
        if store.get_document_count() == 0:
            return jsonify({"error": "No documents uploaded. Please upload a document first."}), 400

        handler = get_chat_handler()
        try:
            chunks = store.similarity_search(message, k=Config.SEARCH_K)
            if stream:
                tokens = handler.stream_answer(message, chunks, session_id)
                # Pull the first token now so upstream failures still map to a status code
                first = next(tokens, "")
                body = stream_with_context(_stream_tokens(first, tokens, session_id))
                return Response(body, mimetype="text/plain")
            response = handler.generate_answer(message, chunks, session_id)
        except (EmbeddingGenerationError, ChatGenerationError) as e:
            log_error(e, {"endpoint": "/chat", "session_id": session_id})
            if e.rate_limited:
                return _quota_response()
            return jsonify(handle_api_error(e)), 502

        return jsonify({
            "answer": response["answer"],
            "sources": response["sources"],
            "timestamp": _now(),
        }), 200

    @bp.route("/clear", methods=["POST"])
    def clear_conversation():
        """Clear conversation history for a session."""
        data = request.get_json(silent=True) or {}
        session_id = (data.get("session_id") or "default").strip() or "default"
        get_chat_handler().clear_history(session_id)
        return jsonify({"status": "success", "message": "Conversation cleared"}), 200

    @bp.route("/stats", methods=["GET"])
    def get_stats():
        """Get detailed statistics for the retrieval store and chat sessions."""
        return jsonify({
            "retrieval_store": get_store().get_stats(),
            "active_sessions": len(get_chat_handler().conversations),
            "config": {
                "chunk_size": Config.CHUNK_SIZE,
                "max_history": Config.MAX_CONVERSATION_HISTORY,
                "max_documents": Config.MAX_DOCUMENTS,
                "search_k": Config.SEARCH_K,
            },
            "timestamp": _now(),
        }), 200

    return bp


def main() -> None:
    app = create_app()
    app.run(host="0.0.0.0", port=Config.PORT)


if __name__ == "__main__":
    main()
