"""Context graph: models, errors and the on-disk store."""
from __future__ import annotations

from .errors import (
    ContextInUse,
    ContextNotFound,
    ContextStoreError,
    NoContextsFound,
    ParseError,
    UnknownContextType,
)
from .models import (
    CONTEXT_TYPES,
    Context,
    ContextType,
    PlatformContext,
    ServerContext,
    SiteContext,
    VerificationRecord,
    VerifyState,
    build_context,
)
from .store import ContextStore, HostingChain

__all__ = [
    "CONTEXT_TYPES",
    "Context",
    "ContextInUse",
    "ContextNotFound",
    "ContextStore",
    "ContextStoreError",
    "ContextType",
    "HostingChain",
    "NoContextsFound",
    "ParseError",
    "PlatformContext",
    "ServerContext",
    "SiteContext",
    "UnknownContextType",
    "VerificationRecord",
    "VerifyState",
    "build_context",
]
