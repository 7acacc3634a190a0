"""
Domain models for the record engine.

Describes tables the way a schema/metadata provider reports them: field
descriptors, identifier sets, relation descriptors and whole-table schemas, plus
the request option model shared by every record operation. Models are Pydantic so
that schemas arriving from a remote service (`_schema/<table>`) validate the same
way as locally introspected ones.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

FIELDS_ALL = "*"


class FieldType(str, Enum):
    """Simple (storage-independent) field types."""

    ID = "id"
    REFERENCE = "reference"
    USER_ID = "user_id"
    USER_ID_ON_CREATE = "user_id_on_create"
    USER_ID_ON_UPDATE = "user_id_on_update"
    TIMESTAMP_ON_CREATE = "timestamp_on_create"
    TIMESTAMP_ON_UPDATE = "timestamp_on_update"
    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    BIGINT = "bigint"
    FLOAT = "float"
    DOUBLE = "double"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    TIME = "time"
    DATETIME = "datetime"
    TIMESTAMP = "timestamp"
    JSON = "json"
    BINARY = "binary"


GENERATED_TYPES = frozenset(
    {
        FieldType.TIMESTAMP_ON_CREATE,
        FieldType.TIMESTAMP_ON_UPDATE,
        FieldType.USER_ID_ON_CREATE,
        FieldType.USER_ID_ON_UPDATE,
    }
)


class DbFunctionUse(str, Enum):
    """Contexts in which a database-side field expression applies."""

    SELECT = "SELECT"
    FILTER = "FILTER"
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class RelationKind(str, Enum):
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    MANY_TO_MANY = "many_to_many"


class Operation(str, Enum):
    CREATE = "create"
    RETRIEVE = "retrieve"
    UPDATE = "update"
    PATCH = "patch"
    DELETE = "delete"


class Verb(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


def _as_name_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part) for part in value]


class DbFunction(BaseModel):
    """An expression such as `UPPER({value})` applied for the listed uses."""

    use: List[DbFunctionUse]
    function: str


class FieldDescriptor(BaseModel):
    """
    Description of a single table field.

    `name` is the physical column name; `alias`, when set, is the name clients
    use. `required` may be set explicitly; otherwise it is derived from
    nullability, defaults and auto-increment.
    """

    name: str
    alias: Optional[str] = None
    label: Optional[str] = None
    type: FieldType = FieldType.STRING
    db_type: Optional[str] = None
    allow_null: bool = True
    required: Optional[bool] = None
    default: Any = None
    auto_increment: bool = False
    is_primary_key: bool = False
    is_unique: bool = False
    is_foreign_key: bool = False
    ref_table: Optional[str] = None
    ref_field: Optional[str] = None
    is_virtual: bool = False
    validation: Optional[Dict[str, Any]] = None
    picklist: Optional[List[str]] = None
    db_function: Optional[List[DbFunction]] = None

    @field_validator("picklist", mode="before")
    @classmethod
    def _split_picklist(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.replace("\r", "").split("\n") if item.strip()]
        return value

    def get_name(self, use_alias: bool = True) -> str:
        if use_alias and self.alias:
            return self.alias
        return self.name

    @property
    def is_required(self) -> bool:
        if self.required is not None:
            return self.required
        if self.is_virtual or self.auto_increment or self.type in GENERATED_TYPES:
            return False
        return not self.allow_null and self.default is None

    @property
    def is_api_read_only(self) -> bool:
        return bool(self.validation) and "api_read_only" in self.validation

    def get_db_function(self, use: DbFunctionUse) -> Optional[str]:
        for function in self.db_function or []:
            if use in function.use:
                return function.function
        return None


IdentifierSet = List[FieldDescriptor]


class RelationDescriptor(BaseModel):
    """
    A declared relationship from the owning table to a referenced table.

    `field` lists the owning table's column(s); `ref_field` the referenced
    table's column(s). Service ids of None mean "the owning service".
    """

    name: Optional[str] = None
    alias: Optional[str] = None
    type: RelationKind
    field: List[str]
    ref_service_id: Optional[int] = None
    ref_table: str
    ref_field: List[str]
    junction_service_id: Optional[int] = None
    junction_table: Optional[str] = None
    junction_field: List[str] = Field(default_factory=list)
    junction_ref_field: List[str] = Field(default_factory=list)
    always_fetch: bool = False
    allow_null: Optional[bool] = None
    is_virtual: bool = False

    @field_validator("field", "ref_field", "junction_field", "junction_ref_field", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> List[str]:
        return _as_name_list(value)

    @model_validator(mode="after")
    def _default_name(self) -> "RelationDescriptor":
        if not self.name:
            if self.type == RelationKind.BELONGS_TO:
                self.name = f"{self.ref_table}_by_{'_'.join(self.field)}"
            elif self.type == RelationKind.MANY_TO_MANY:
                self.name = f"{self.ref_table}_by_{self.junction_table}"
            else:
                self.name = f"{self.ref_table}_by_{'_'.join(self.ref_field)}"
        return self

    def get_name(self, use_alias: bool = True) -> str:
        if use_alias and self.alias:
            return self.alias
        return self.name or ""


class TableSchema(BaseModel):
    """Fields and relations of one table."""

    name: str
    alias: Optional[str] = None
    label: Optional[str] = None
    fields: List[FieldDescriptor] = Field(default_factory=list)
    relations: List[RelationDescriptor] = Field(default_factory=list)

    def get_name(self, use_alias: bool = True) -> str:
        if use_alias and self.alias:
            return self.alias
        return self.name

    def get_field(self, name: str) -> Optional[FieldDescriptor]:
        lowered = name.lower()
        for descriptor in self.fields:
            if descriptor.name.lower() == lowered:
                return descriptor
        for descriptor in self.fields:
            if descriptor.alias and descriptor.alias.lower() == lowered:
                return descriptor
        return None

    def primary_key_fields(self) -> IdentifierSet:
        return [descriptor for descriptor in self.fields if descriptor.is_primary_key]

    def relations_by_name(self) -> Dict[str, RelationDescriptor]:
        return {relation.get_name().lower(): relation for relation in self.relations}


class PolicyCondition(BaseModel):
    name: str
    operator: str
    value: Any = None


class FilterPolicy(BaseModel):
    """Server-side filter set enforced against records on write."""

    filters: List[PolicyCondition] = Field(default_factory=list)
    filter_op: str = "and"


class RecordOptions(BaseModel):
    """
    Options accepted by every record operation.

    Unknown keys are kept: a key matching an identifier field name supplies that
    identifier for every record in the batch.
    """

    fields: Optional[Union[str, List[str]]] = None
    id_field: Optional[Union[str, List[str]]] = None
    id_type: Optional[Union[str, List[str]]] = None
    rollback: bool = False
    continue_: bool = Field(False, alias="continue")
    related: Optional[Union[str, List[str], Dict[str, Any]]] = None
    force: bool = False
    filter: Any = None
    params: Dict[str, Any] = Field(default_factory=dict)
    ids: Optional[Union[str, int, List[Any]]] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    order: Optional[str] = None
    allow_upsert: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow", arbitrary_types_allowed=True)

    @classmethod
    def coerce(cls, options: Union["RecordOptions", Dict[str, Any], None]) -> "RecordOptions":
        if isinstance(options, RecordOptions):
            return options.model_copy(deep=True)
        return cls.model_validate(options or {})

    def extra_value(self, name: str) -> Any:
        extras = self.model_extra or {}
        for key, value in extras.items():
            if key.lower() == name.lower():
                return value
        return None

    def id_field_list(self) -> List[str]:
        return _as_name_list(self.id_field)

    def id_type_list(self) -> List[str]:
        return _as_name_list(self.id_type)

    def field_list(self) -> Optional[List[str]]:
        """Requested fields, or None for all fields."""
        if self.fields is None or self.fields == FIELDS_ALL:
            return None
        return _as_name_list(self.fields)


__all__ = [
    "FIELDS_ALL",
    "FieldType",
    "GENERATED_TYPES",
    "DbFunctionUse",
    "RelationKind",
    "Operation",
    "Verb",
    "DbFunction",
    "FieldDescriptor",
    "IdentifierSet",
    "RelationDescriptor",
    "TableSchema",
    "PolicyCondition",
    "FilterPolicy",
    "RecordOptions",
]
