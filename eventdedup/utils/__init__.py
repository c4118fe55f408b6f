"""Utility modules for the deduplication engine."""

from .cache import BoundedHistory, LRUCache
from .text import normalize_address, normalize_text, normalize_venue, strip_accents, tokenize

__all__ = [
    "BoundedHistory",
    "LRUCache",
    "normalize_address",
    "normalize_text",
    "normalize_venue",
    "strip_accents",
    "tokenize",
]
