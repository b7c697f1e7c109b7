from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import jsonify
from werkzeug.exceptions import HTTPException


class DocumentParseError(Exception):
    """Custom exception for uploaded files that cannot be turned into text.

    Attributes:
        message: Description of the error
        status_code: HTTP status code associated with the failure
    """

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class EmbeddingGenerationError(Exception):
    """Custom exception for embedding generation failures.

    Attributes:
        message: Description of the error
        rate_limited: Upstream reported a rate-limit or quota condition
        timed_out: The embedding call did not finish within the configured timeout
    """

    def __init__(self, message: str, rate_limited: bool = False, timed_out: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.rate_limited = rate_limited
        self.timed_out = timed_out


class ChatGenerationError(Exception):
    """Custom exception for chat/LLM generation failures.

    Attributes:
        message: Description of the error
        rate_limited: Upstream reported a rate-limit or quota condition
        context: Additional context information for debugging
    """

    def __init__(self, message: str, rate_limited: bool = False, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.rate_limited = rate_limited
        self.context = context or {}


class StorePersistenceError(Exception):
    """Raised when the retrieval store snapshot cannot be written.

    The in-memory mutation that preceded the write is not rolled back.

    Attributes:
        message: Description of the error
        path: Snapshot location that failed
    """

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path


_RATE_LIMIT_MARKERS = ("429", "quota", "too many requests", "rate limit", "ratelimit")


def is_rate_limit_error(error: Exception) -> bool:
    """True when an upstream error looks like a rate-limit or quota condition."""
    if getattr(error, "rate_limited", False):
        return True
    if getattr(error, "status_code", None) == 429 and not isinstance(error, DocumentParseError):
        return True
    if "ratelimit" in error.__class__.__name__.lower():
        return True
    text = str(error).lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


def handle_api_error(error: Exception) -> Dict[str, Any]:
    """Return standardized error dict: {"error": str, "type": str, "retryable": bool}.

    Attempts to parse common error types (OpenAI, custom exceptions) and
    decide whether the error may be retryable.
    """
    type_str = "unknown_error"
    msg = str(error) if str(error) else error.__class__.__name__
    retryable = False

    if isinstance(error, TimeoutError):
        type_str = "network_timeout"
        retryable = True
    elif isinstance(error, ConnectionError):
        type_str = "network_connection_error"
        retryable = True

    # Detect OpenAI-style errors without importing the library
    cls_name = error.__class__.__name__.lower()
    mod_name = getattr(error.__class__, "__module__", "")
    if "openai" in mod_name or "openai" in cls_name:
        type_str = "openai_error"
        # Heuristic: rate limit, timeout, or api connection errors are retryable
        if any(s in cls_name for s in ["rate", "limit", "timeout", "connection", "server"]):
            retryable = True

    # Custom exceptions
    if isinstance(error, DocumentParseError):
        type_str = "document_parse_error"
        retryable = False
        msg = error.message
    elif isinstance(error, EmbeddingGenerationError):
        type_str = "embedding_generation_error"
        retryable = error.rate_limited or error.timed_out
        msg = error.message
    elif isinstance(error, ChatGenerationError):
        type_str = "chat_generation_error"
        retryable = error.rate_limited
        msg = error.message
    elif isinstance(error, StorePersistenceError):
        type_str = "store_persistence_error"
        retryable = False
        msg = error.message

    return {"error": msg, "type": type_str, "retryable": retryable}


def log_error(error: Exception, context: Optional[Dict[str, Any]] = None) -> None:
    """Log formatted error and include context information.

    Uses logging with levels: ERROR (default), WARNING for retryable cases, INFO for context.
    """
    context = context or {}
    info = handle_api_error(error)

    # Basic logging configuration if not already configured
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s | %(levelname)s | %(message)s",
        )

    level = logging.ERROR
    if info.get("retryable"):
        level = logging.WARNING

    # Log the main error
    logging.log(level, f"{info['type']}: {info['error']}")

    # Log context information
    if context:
        logging.info(f"Context: {context}")

    # Log traceback for debugging
    tb = traceback.format_exc()
    if tb and "NoneType: None" not in tb:
        logging.debug(tb)


def register_error_handlers(app):
    """Register Flask error handlers that use our standardized error payloads."""

    @app.errorhandler(404)
    def handle_404(error):
        return jsonify({"error": "Not Found", "type": "not_found", "retryable": False}), 404

    @app.errorhandler(400)
    def handle_400(error):
        info = handle_api_error(error)
        info["type"] = "bad_request"
        info["retryable"] = False
        return jsonify(info), 400

    @app.errorhandler(413)
    def handle_413(error):
        return jsonify({"error": "File too large", "type": "payload_too_large", "retryable": False}), 413

    @app.errorhandler(500)
    def handle_500(error):
        info = handle_api_error(error)
        info["type"] = "internal_server_error"
        return jsonify(info), 500

    @app.errorhandler(Exception)
    def handle_generic_exception(error):
        if isinstance(error, HTTPException):
            return jsonify({"error": error.description, "type": "http_error", "retryable": False}), error.code
        # Catch-all handler to standardize unexpected exceptions
        log_error(error, context={"timestamp": datetime.now(timezone.utc).isoformat()})
        info = handle_api_error(error)
        return jsonify(info), 500
