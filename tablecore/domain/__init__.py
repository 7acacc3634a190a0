"""
Domain package for tablecore.

Exports the table descriptions, request options, record containers, native
type coercion and the error taxonomy shared by every layer.
Keep this package focused on data definitions and validation concerns.
"""

from tablecore.domain.errors import (
    CONFIGURATION_ERRORS,
    BadRequestError,
    BatchError,
    ForbiddenError,
    InternalServerError,
    NotFoundError,
    NotImplementedFeatureError,
    RemoteOperationError,
    RestError,
)
from tablecore.domain.models import (
    FieldDescriptor,
    FieldType,
    FilterPolicy,
    Operation,
    RecordOptions,
    RelationDescriptor,
    RelationKind,
    TableSchema,
)
from tablecore.domain.records import CaseInsensitiveRecord
from tablecore.domain.types import RawExpression, typecast_to_native

__all__ = [
    "CONFIGURATION_ERRORS",
    "RestError",
    "BadRequestError",
    "ForbiddenError",
    "NotFoundError",
    "InternalServerError",
    "NotImplementedFeatureError",
    "RemoteOperationError",
    "BatchError",
    "FieldDescriptor",
    "FieldType",
    "FilterPolicy",
    "Operation",
    "RecordOptions",
    "RelationDescriptor",
    "RelationKind",
    "TableSchema",
    "CaseInsensitiveRecord",
    "RawExpression",
    "typecast_to_native",
]
