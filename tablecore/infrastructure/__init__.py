"""
Infrastructure package for tablecore.

Centralizes I/O concerns: PostgreSQL connections and pooling, and the HTTP
transport used for cross-service dispatch. Keep this layer focused on
resource management, decoupled from record semantics.
"""

from tablecore.infrastructure.db_factory import PoolManager, get_sync_connection, get_sync_pool
from tablecore.infrastructure.transport import HttpTransport

__all__ = [
    "PoolManager",
    "get_sync_connection",
    "get_sync_pool",
    "HttpTransport",
]
