from __future__ import annotations

import base64

import pytest

from tablecore.domain.errors import InternalServerError
from tablecore.domain.models import FieldDescriptor
from tablecore.engine.validation import Drop, Reject, compile_pattern, validate_field_value


def _b64(pattern: str) -> str:
    return base64.b64encode(pattern.encode("utf-8")).decode("ascii")


def test_passing_value_yields_no_outcome() -> None:
    assert validate_field_value("email", "ann@example.com", {"email": None}) is None


def test_default_message_rejects() -> None:
    outcome = validate_field_value("email", "not-an-email", {"email": None})
    assert outcome == Reject("Field 'email' value must be a valid email address.")


def test_custom_on_fail_message_replaces_default() -> None:
    outcome = validate_field_value("email", "nope", {"email": {"on_fail": "Give us a real address."}})
    assert outcome == Reject("Give us a real address.")


def test_ignore_field_on_fail_drops_the_field() -> None:
    outcome = validate_field_value("email", "nope", {"email": {"on_fail": "ignore_field"}})
    assert isinstance(outcome, Drop)


def test_not_null_and_not_empty() -> None:
    assert isinstance(validate_field_value("name", None, {"not_null": True}), Reject)
    assert isinstance(validate_field_value("name", "", {"not_empty": True}), Reject)
    assert validate_field_value("name", None, {"not_empty": True}) is None


def test_create_only_rejects_on_update() -> None:
    assert validate_field_value("code", "X", {"create_only": True}) is None
    outcome = validate_field_value("code", "X", {"create_only": True}, for_update=True)
    assert outcome == Reject("Field 'code' can only be set during record creation.")


def test_api_read_only_always_rejects() -> None:
    assert isinstance(validate_field_value("secret", "x", {"api_read_only": True}), Reject)


@pytest.mark.parametrize(
    ("value", "config", "ok"),
    [
        ("42", {}, True),
        ("4.2", {}, False),
        ("0x1F", {"formats": ["hex"]}, True),
        ("0x1F", {}, False),
        (5, {"range": {"min": 1, "max": 10}}, True),
        (11, {"range": {"min": 1, "max": 10}}, False),
    ],
)
def test_int_rule(value, config, ok) -> None:
    outcome = validate_field_value("qty", value, {"int": config})
    assert (outcome is None) is ok


def test_float_rule_honours_decimal_separator() -> None:
    assert validate_field_value("price", "1,5", {"float": {"decimal": ","}}) is None
    assert isinstance(validate_field_value("price", "1.5", {"float": {"decimal": ","}}), Reject)
    assert isinstance(validate_field_value("price", "abc", {"float": None}), Reject)


def test_boolean_rule() -> None:
    assert validate_field_value("active", "yes", {"boolean": None}) is None
    assert isinstance(validate_field_value("active", "maybe", {"boolean": None}), Reject)


def test_url_rule_with_required_sections() -> None:
    assert validate_field_value("site", "https://example.com/a?b=1", {"url": {"sections": ["path", "query"]}}) is None
    assert isinstance(validate_field_value("site", "https://example.com", {"url": {"sections": "query"}}), Reject)


def test_match_rule_decodes_delimited_pattern_with_flags() -> None:
    rules = {"match": {"regexp": _b64("/^[a-z]+$/i")}}
    assert validate_field_value("code", "AbC", rules) is None
    assert isinstance(validate_field_value("code", "ab1", rules), Reject)


def test_match_rule_without_pattern_is_a_configuration_error() -> None:
    with pytest.raises(InternalServerError):
        validate_field_value("code", "abc", {"match": {}})


def test_compile_pattern_rejects_undecodable_config() -> None:
    with pytest.raises(InternalServerError):
        compile_pattern("%%%", "code")


def test_picklists() -> None:
    field = FieldDescriptor(name="size", picklist="S\nM\nL")
    assert validate_field_value("size", "M", {"picklist": None}, field_info=field) is None
    assert isinstance(validate_field_value("size", "XL", {"picklist": None}, field_info=field), Reject)
    assert validate_field_value("size", "S,L", {"multi_picklist": {"max": 2}}, field_info=field) is None
    too_many = validate_field_value("size", "S,M,L", {"multi_picklist": {"max": 2}}, field_info=field)
    assert too_many == Reject("Field 'size' value contains too many selections.")


def test_picklist_without_values_is_a_configuration_error() -> None:
    with pytest.raises(InternalServerError):
        validate_field_value("size", "M", {"picklist": None}, field_info=FieldDescriptor(name="size"))


def test_unknown_rules_are_ignored() -> None:
    assert validate_field_value("name", "x", {"shiny": True}) is None
