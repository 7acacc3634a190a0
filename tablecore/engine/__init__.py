"""
Engine package for tablecore.

Identifier resolution, the filter grammar and evaluator, field validation
rules, record parsing and the virtual dispatch gateway. The relationship
engine lives in `tablecore.engine.relations`.
"""

from tablecore.engine.dispatch import RemoteCall, RemoteResponse, VirtualDispatchGateway
from tablecore.engine.filters import ComparisonOperator, Condition, Filter, check_filter_policy, compare
from tablecore.engine.identifiers import resolve_id, split_id_list
from tablecore.engine.parser import RecordParser
from tablecore.engine.validation import Drop, Reject, validate_field_value

__all__ = [
    "RemoteCall",
    "RemoteResponse",
    "VirtualDispatchGateway",
    "ComparisonOperator",
    "Condition",
    "Filter",
    "check_filter_policy",
    "compare",
    "resolve_id",
    "split_id_list",
    "RecordParser",
    "Drop",
    "Reject",
    "validate_field_value",
]
