"""
Key Builder Module

Builds namespaced, colon-separated cache keys. Long or structured parts are
hashed so keys stay short and stable.
"""

import hashlib
import json
from typing import Any, Optional


class KeyBuilder:
    """Static helpers for building cache keys."""

    MAX_PART_LENGTH = 40

    @staticmethod
    def _hash(value: str, length: int = 16) -> str:
        return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]

    @staticmethod
    def build(*parts: Any, namespace: Optional[str] = None,
              version: Optional[str] = None) -> str:
        """
        Build a cache key from parts.

        Args:
            *parts: Parts of the key; scalars are used as-is, containers are
                JSON-encoded and hashed, long strings are hashed
            namespace: Optional namespace prefix
            version: Optional version suffix

        Returns:
            A colon-separated key string
        """
        processed_parts = []

        if namespace:
            processed_parts.append(str(namespace))

        for part in parts:
            if part is None:
                processed_parts.append("null")
            elif isinstance(part, (dict, list, tuple, set)):
                if isinstance(part, set):
                    part = sorted(part)
                part_json = json.dumps(part, sort_keys=True, default=str)
                processed_parts.append(KeyBuilder._hash(part_json, 10))
            else:
                str_value = str(part)
                if len(str_value) > KeyBuilder.MAX_PART_LENGTH:
                    str_value = KeyBuilder._hash(str_value)
                processed_parts.append(str_value)

        if version:
            processed_parts.append(f"v{version}")

        return ":".join(processed_parts)

    @staticmethod
    def text_hash(text: str) -> str:
        """Full SHA-256 hex digest of ``text``, used as the embedding record id."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @staticmethod
    def embedding_key(text: str, model: str, dimensions: int) -> str:
        """
        Key for a cached embedding.

        The whole ``(text, model, dimensions)`` triple is hashed so that the
        same text embedded by a different model or at a different width
        never collides.
        """
        payload = json.dumps([text, model, dimensions], ensure_ascii=False)
        return KeyBuilder.build(KeyBuilder._hash(payload, 32), namespace="embedding")
