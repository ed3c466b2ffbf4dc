"""Session ids used for upstream prompt caching and session affinity."""
from __future__ import annotations

import hashlib
import uuid
from typing import Any, Iterable, Optional


def _canonical_first_user_message(input_items: Iterable[dict[str, Any]]) -> Optional[str]:
    for item in input_items:
        if not isinstance(item, dict):
            continue
        if item.get("type") != "message" or item.get("role") != "user":
            continue
        content = item.get("content")
        if not isinstance(content, list):
            continue
        parts: list[str] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            kind = part.get("type")
            if kind == "input_text" and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif kind == "input_image" and isinstance(part.get("image_url"), str):
                parts.append(f"<img:{part['image_url']}>")
        if parts:
            return "|".join(parts)
    return None


def derive_session_id(instructions: Optional[str], input_items: Iterable[dict[str, Any]]) -> str:
    """SHA-256 of the conversation prefix, so requests sharing it share a cache key.

    Falls back to a random uuid when there is no prefix to hash.
    """
    prefix = instructions.strip() if instructions else ""
    first_user = _canonical_first_user_message(input_items)
    if first_user:
        prefix += first_user
    if not prefix:
        return str(uuid.uuid4())
    return hashlib.sha256(prefix.encode("utf-8")).hexdigest()
