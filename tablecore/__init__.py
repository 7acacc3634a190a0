"""
tablecore - record operation and relationship resolution engine.

This package exposes CRUD-style record operations over schema-discovered
tables, independent of the storage engine behind them:

- Batch coordination with rollback / continue-on-error policies
- Identifier resolution including composite keys
- A textual filter grammar and comparison evaluator
- Record validation and coercion with configurable field rules
- Relationship reads and writes (belongs_to, has_one, has_many,
  many_to_many), across services through a virtual dispatch gateway

Storage, schema and session concerns sit behind narrow provider contracts;
in-memory and PostgreSQL providers ship with the package.
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from tablecore.config import Settings, get_settings
from tablecore.coordinator import BatchContext, RecordService
from tablecore.domain.errors import (
    BadRequestError,
    BatchError,
    ForbiddenError,
    InternalServerError,
    NotFoundError,
    NotImplementedFeatureError,
    RemoteOperationError,
    RestError,
)
from tablecore.domain.models import RecordOptions, TableSchema
from tablecore.engine.dispatch import InProcessTransport, ServiceRegistry, VirtualDispatchGateway
from tablecore.engine.filters import Filter
from tablecore.router import RequestRouter
from tablecore.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Record API
    "RecordService",
    "BatchContext",
    "RecordOptions",
    "TableSchema",
    "Filter",
    "RequestRouter",
    # Dispatch
    "ServiceRegistry",
    "InProcessTransport",
    "VirtualDispatchGateway",
    # Errors
    "RestError",
    "BadRequestError",
    "ForbiddenError",
    "NotFoundError",
    "InternalServerError",
    "NotImplementedFeatureError",
    "RemoteOperationError",
    "BatchError",
    # Logging
    "configure_logging",
    "get_logger",
]
