from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tablecore.domain.errors import BadRequestError, ForbiddenError
from tablecore.domain.models import DbFunction, DbFunctionUse, FieldDescriptor, FieldType, FilterPolicy
from tablecore.domain.types import RawExpression
from tablecore.engine.parser import RecordParser, split_relation_payload, to_client_record

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

FIELDS = [
    FieldDescriptor(name="id", type=FieldType.ID, allow_null=False, auto_increment=True, is_primary_key=True),
    FieldDescriptor(name="full_name", alias="name", type=FieldType.STRING, allow_null=False),
    FieldDescriptor(name="age", type=FieldType.INTEGER),
    FieldDescriptor(name="email", type=FieldType.STRING, validation={"email": {"on_fail": "ignore_field"}}),
    FieldDescriptor(name="secret", type=FieldType.STRING, validation={"api_read_only": None}),
    FieldDescriptor(name="score", type=FieldType.FLOAT, is_virtual=True),
    FieldDescriptor(name="region", type=FieldType.STRING),
    FieldDescriptor(name="created_at", type=FieldType.TIMESTAMP_ON_CREATE),
    FieldDescriptor(name="updated_at", type=FieldType.TIMESTAMP_ON_UPDATE),
    FieldDescriptor(name="created_by", type=FieldType.USER_ID_ON_CREATE),
    FieldDescriptor(name="updated_by", type=FieldType.USER_ID_ON_UPDATE),
]


@pytest.fixture
def parser() -> RecordParser:
    lookups = {"{user.region}": "eu"}
    return RecordParser(
        lookup=lambda value: lookups.get(value, value),
        current_user_id=lambda: 7,
        clock=lambda: NOW,
    )


def test_create_stamps_generated_fields_and_coerces(parser: RecordParser) -> None:
    parsed = parser.parse({"Name": "Ann", "age": "31"}, FIELDS)
    assert parsed == {
        "full_name": "Ann",
        "age": 31,
        "created_at": NOW,
        "updated_at": NOW,
        "created_by": 7,
        "updated_by": 7,
    }


def test_update_only_stamps_update_fields(parser: RecordParser) -> None:
    parsed = parser.parse({"age": 32}, FIELDS, for_update=True)
    assert parsed == {"age": 32, "updated_at": NOW, "updated_by": 7}


def test_update_never_writes_the_id(parser: RecordParser) -> None:
    parsed = parser.parse({"id": 5, "age": 1}, FIELDS, for_update=True)
    assert "id" not in parsed


def test_missing_required_field_on_create(parser: RecordParser) -> None:
    with pytest.raises(BadRequestError, match="Required field 'name' can not be NULL"):
        parser.parse({"age": 1}, FIELDS)


def test_null_for_non_nullable_field(parser: RecordParser) -> None:
    with pytest.raises(BadRequestError, match="Field 'name' can not be NULL"):
        parser.parse({"name": None}, FIELDS, for_update=True)


def test_virtual_and_read_only_fields_are_stripped(parser: RecordParser) -> None:
    parsed = parser.parse({"name": "Ann", "secret": "x", "score": 9.5}, FIELDS)
    assert "secret" not in parsed
    assert "score" not in parsed


def test_failed_rule_with_ignore_field_drops_value(parser: RecordParser) -> None:
    parsed = parser.parse({"name": "Ann", "email": "broken"}, FIELDS)
    assert "email" not in parsed
    assert parsed["full_name"] == "Ann"


def test_invalid_native_value_is_bad_request(parser: RecordParser) -> None:
    with pytest.raises(BadRequestError, match="not a valid integer"):
        parser.parse({"name": "Ann", "age": "old"}, FIELDS)


def test_lookup_values_are_substituted(parser: RecordParser) -> None:
    parsed = parser.parse({"name": "Ann", "region": "{user.region}"}, FIELDS)
    assert parsed["region"] == "eu"


def test_undefined_fields_are_dropped_unless_unrestricted(parser: RecordParser) -> None:
    assert "nickname" not in parser.parse({"name": "Ann", "nickname": "A"}, FIELDS)
    loose = RecordParser(restrict_fields_to_defined=False, clock=lambda: NOW)
    assert loose.parse({"name": "Ann", "nickname": "A"}, FIELDS)["nickname"] == "A"


def test_filter_policy_is_enforced_last(parser: RecordParser) -> None:
    policy = FilterPolicy.model_validate({"filters": [{"name": "region", "operator": "=", "value": "{user.region}"}]})
    assert parser.parse({"name": "Ann", "region": "eu"}, FIELDS, policy)["region"] == "eu"
    with pytest.raises(ForbiddenError):
        parser.parse({"name": "Ann", "region": "us"}, FIELDS, policy)


def test_db_function_wraps_value_as_raw_expression(parser: RecordParser) -> None:
    fields = [
        FieldDescriptor(
            name="code",
            type=FieldType.STRING,
            db_function=[DbFunction(use=[DbFunctionUse.INSERT], function="UPPER({value})")],
        )
    ]
    parsed = parser.parse({"code": "o'k"}, fields)
    assert parsed["code"] == RawExpression("UPPER('o''k')")
    assert parser.parse({"code": "x"}, fields, for_update=True)["code"] == "x"


def test_to_client_record_uses_aliases() -> None:
    assert to_client_record({"id": 1, "full_name": "Ann"}, FIELDS) == {"id": 1, "name": "Ann"}


def test_split_relation_payload_pops_relation_keys() -> None:
    record = {"name": "Ann", "Orders_By_Customer_Id": [{"status": "open"}]}
    payloads = split_relation_payload(record, ["orders_by_customer_id"])
    assert payloads == {"orders_by_customer_id": [{"status": "open"}]}
    assert record == {"name": "Ann"}
