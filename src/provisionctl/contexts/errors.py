"""Errors raised while loading, resolving and persisting contexts."""
from __future__ import annotations


class ContextStoreError(RuntimeError):
    """Base class for context registry failures."""


class ContextNotFound(ContextStoreError):
    """Raised when a named context (or a referenced parent) does not exist."""


class ParseError(ContextStoreError):
    """Raised when a context identifier or definition is malformed."""


class UnknownContextType(ContextStoreError):
    """Raised when a context type is not one of the known variants."""


class NoContextsFound(ContextStoreError):
    """Raised when the registry holds no contexts at all."""


class ContextInUse(ContextStoreError):
    """Raised when removing a context that other contexts still reference."""


__all__ = [
    "ContextInUse",
    "ContextNotFound",
    "ContextStoreError",
    "NoContextsFound",
    "ParseError",
    "UnknownContextType",
]
