from __future__ import annotations

# Re-export validators and error handlers for convenience
from .validators import (
    validate_upload,
    validate_api_key,
    sanitize_text,
    validate_chunk_size,
    require_json_fields,
)

from .error_handlers import (
    DocumentParseError,
    EmbeddingGenerationError,
    ChatGenerationError,
    StorePersistenceError,
    handle_api_error,
    is_rate_limit_error,
    log_error,
    register_error_handlers,
)

__all__ = [
    # validators
    "validate_upload",
    "validate_api_key",
    "sanitize_text",
    "validate_chunk_size",
    "require_json_fields",
    # error handlers
    "DocumentParseError",
    "EmbeddingGenerationError",
    "ChatGenerationError",
    "StorePersistenceError",
    "handle_api_error",
    "is_rate_limit_error",
    "log_error",
    "register_error_handlers",
]
