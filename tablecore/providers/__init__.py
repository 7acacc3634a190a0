"""
Providers package for tablecore.

Contracts the record engine depends on, plus the in-memory and session
implementations. The PostgreSQL providers live in `tablecore.providers.postgres`.
"""

from tablecore.providers.abstract import (
    AbstractMetadataProvider,
    MetadataProvider,
    PersistenceProvider,
    SessionProvider,
)
from tablecore.providers.memory import InMemoryMetadata, InMemoryStore
from tablecore.providers.session import StaticSession

__all__ = [
    "AbstractMetadataProvider",
    "MetadataProvider",
    "PersistenceProvider",
    "SessionProvider",
    "InMemoryMetadata",
    "InMemoryStore",
    "StaticSession",
]
