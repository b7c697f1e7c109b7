from __future__ import annotations

import os
import re
import string
from typing import Dict, List, Optional


ALLOWED_EXTENSIONS = {".txt", ".md", ".json", ".csv", ".pdf", ".docx"}


def validate_upload(filename: Optional[str], size: int, max_size: int) -> Dict[str, object]:
    """Validate an uploaded file's name and size.

    Returns: {"valid": bool, "error": str or None}
    """
    if not filename or not isinstance(filename, str) or not filename.strip():
        return {"valid": False, "error": "No file provided"}
    if size <= 0:
        return {"valid": False, "error": "File appears to be empty or could not be parsed"}
    if size > max_size:
        limit_mb = max_size / (1024 * 1024)
        actual_mb = size / (1024 * 1024)
        return {
            "valid": False,
            "error": f"File size exceeds {limit_mb:g}MB limit. Your file is {actual_mb:.2f}MB",
        }
    ext = os.path.splitext(filename)[1].lower()
    if ext and ext not in ALLOWED_EXTENSIONS:
        return {"valid": False, "error": f"Unsupported file type '{ext}'."}
    return {"valid": True, "error": None}


def validate_api_key(key: Optional[str]) -> bool:
    """Basic check for OpenAI-style keys (sk-...)."""
    if not key or not isinstance(key, str) or not key.strip():
        return False
    return key.strip().startswith("sk-")


def sanitize_text(text: Optional[str]) -> str:
    """Remove null bytes and non-printable characters, keeping line structure."""
    if text is None:
        return ""
    # Remove null bytes
    cleaned = text.replace("\x00", "")
    # Remove non-printable characters (except common whitespace)
    printable = set(string.printable)
    cleaned = "".join(ch for ch in cleaned if ch in printable or ch.isprintable())
    # Collapse horizontal whitespace
    cleaned = re.sub(r"[ \t\f\v]+", " ", cleaned).strip()
    return cleaned


def validate_chunk_size(size: int) -> bool:
    """Ensure chunk size is within reasonable bounds."""
    try:
        s = int(size)
    except (TypeError, ValueError):
        return False
    return 200 <= s <= 2000


def require_json_fields(data: Dict[str, object], fields: List[str]) -> List[str]:
    missing = []
    for f in fields:
        v = data.get(f)
        if v is None or (isinstance(v, str) and not v.strip()):
            missing.append(f)
    return missing
