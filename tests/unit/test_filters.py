from __future__ import annotations

import pytest

from tablecore.domain.errors import BadRequestError, ForbiddenError, InternalServerError
from tablecore.domain.models import FilterPolicy
from tablecore.engine.filters import (
    ComparisonOperator,
    Condition,
    Filter,
    check_filter_policy,
    compare,
    interpret_filter_value,
    localize_operator,
    modify_value_by_operator,
    to_sql_operator,
)

ORDERS = [
    {"id": 1, "status": "open", "total": 10.5, "email": "daniel@example.com", "deleted_at": None},
    {"id": 2, "status": "shipped", "total": 99, "email": "maya@example.com", "deleted_at": None},
    {"id": 3, "status": "open", "total": 5, "email": "dana@example.org", "deleted_at": "2024-01-01"},
]


def _matching(text: str, params=None) -> list:
    query = Filter.parse(text, params)
    return [row["id"] for row in ORDERS if query.matches(row)]


class TestCompare:
    def test_starts_with_plain_string_predicate(self) -> None:
        assert compare("starts_with", True, "daniel@example.com", "dan") is True
        assert compare("starts with", True, "maya@example.com", "dan") is False

    def test_equality_is_loose_across_numbers_and_strings(self) -> None:
        assert compare("=", True, 5, "5") is True
        assert compare("eq", True, 5.0, 5) is True
        assert compare("!=", True, None, None) is False

    def test_ordering_operators(self) -> None:
        assert compare(">", True, 10, "9") is True
        assert compare("lte", True, "2024-01-01", "2024-01-02") is True
        assert compare("<", True, None, 3) is False

    def test_list_membership_is_case_insensitive(self) -> None:
        assert compare("in", True, "Open", "open, shipped") is True
        assert compare("not in", True, 3, [1, 2]) is True

    def test_existence_looks_at_found_flag_only(self) -> None:
        assert compare("does exist", True, None, None) is True
        assert compare("does not exist", False, None, None) is True
        assert compare("is null", True, None, None) is True

    def test_unknown_operator_is_a_configuration_error(self) -> None:
        with pytest.raises(InternalServerError):
            compare("between", True, 1, 2)


class TestInterpretFilterValue:
    def test_quoted_null_stays_a_string(self) -> None:
        assert interpret_filter_value("'null'") == "null"
        assert interpret_filter_value('"true"') == "true"

    def test_bare_literals_become_typed(self) -> None:
        assert interpret_filter_value("null") is None
        assert interpret_filter_value("TRUE") is True
        assert interpret_filter_value("false") is False
        assert interpret_filter_value("42") == 42
        assert interpret_filter_value("-1.5") == -1.5

    def test_other_values_go_through_lookup(self) -> None:
        lookups = {"{user.region}": "eu"}
        assert interpret_filter_value("{user.region}", lookups.get) == "eu"
        assert interpret_filter_value("plain") == "plain"


class TestOperators:
    def test_aliases_localize_to_one_enum(self) -> None:
        assert localize_operator("<>") is ComparisonOperator.NE
        assert localize_operator("Starts_With") is ComparisonOperator.STARTS_WITH
        assert localize_operator("nin") is ComparisonOperator.NOT_IN

    def test_string_operators_forward_as_like_with_wildcards(self) -> None:
        assert to_sql_operator("contains") == "LIKE"
        assert modify_value_by_operator("contains", "dan") == "%dan%"
        assert modify_value_by_operator("starts_with", "dan") == "dan%"
        assert modify_value_by_operator("ends_with", "dan") == "%dan"
        assert modify_value_by_operator("=", "dan") == "dan"


class TestFilterGrammar:
    def test_single_condition(self) -> None:
        assert _matching("status = 'open'") == [1, 3]

    def test_and_combination_with_parentheses(self) -> None:
        assert _matching("(status = 'open') and (total > 6)") == [1]

    def test_or_combination(self) -> None:
        assert _matching("(id = 1) or (id = 2)") == [1, 2]

    def test_in_list(self) -> None:
        assert _matching("id in (1, 3)") == [1, 3]
        assert _matching("id not in (1, 3)") == [2]

    def test_word_operators(self) -> None:
        assert _matching("email starts with 'dan'") == [1, 3]
        assert _matching("email ends with '.org'") == [3]
        assert _matching("email like '%example.com'") == [1, 2]
        assert _matching("deleted_at is null") == [1, 2]
        assert _matching("deleted_at is not null") == [3]

    def test_bound_parameters(self) -> None:
        assert _matching("status = :status", {"status": "shipped"}) == [2]

    def test_unbound_parameter_is_rejected(self) -> None:
        with pytest.raises(BadRequestError, match="no bound value"):
            Filter.parse("status = :status")

    def test_mixing_combiners_requires_parentheses(self) -> None:
        with pytest.raises(BadRequestError, match="requires parentheses"):
            Filter.parse("id = 1 and id = 2 or id = 3")

    def test_nested_groups(self) -> None:
        assert _matching("(status = 'open') and ((id = 1) or (id = 2))") == [1]

    def test_empty_filter_matches_everything(self) -> None:
        assert not Filter.parse("  ")
        assert _matching("") == [1, 2, 3]

    def test_to_string_round_trips_through_the_parser(self) -> None:
        query = Filter(
            [
                Condition("id", ComparisonOperator.IN, [1, 3]),
                Condition("deleted_at", ComparisonOperator.IS_NOT_NULL),
            ]
        )
        text = query.to_string()
        assert text == "(id in (1,3)) and (deleted_at is not null)"
        reparsed = Filter.parse(text)
        assert [row["id"] for row in ORDERS if reparsed.matches(row)] == [3]

    def test_quotes_are_escaped_when_rendered(self) -> None:
        query = Filter.equals("name", "O'Brien")
        assert query.to_string() == "(name = 'O''Brien')"
        assert Filter.parse(query.to_string()).matches({"name": "O'Brien"})

    def test_and_combines_with_empty_filters(self) -> None:
        base = Filter.equals("status", "open")
        assert base.and_(None) is base
        assert Filter().and_(base) is base
        combined = base.and_(Filter.equals("id", 3))
        assert [row["id"] for row in ORDERS if combined.matches(row)] == [3]


class TestFilterPolicy:
    def _policy(self, op: str = "and") -> FilterPolicy:
        return FilterPolicy.model_validate(
            {
                "filters": [
                    {"name": "region", "operator": "=", "value": "{user.region}"},
                    {"name": "status", "operator": "!=", "value": "'closed'"},
                ],
                "filter_op": op,
            }
        )

    def test_and_policy_denies_on_first_failure(self) -> None:
        lookup = {"{user.region}": "eu"}.get
        check_filter_policy({"region": "eu", "status": "open"}, self._policy(), lookup=lookup)
        with pytest.raises(ForbiddenError):
            check_filter_policy({"region": "us", "status": "open"}, self._policy(), lookup=lookup)

    def test_or_policy_allows_on_any_success(self) -> None:
        lookup = {"{user.region}": "eu"}.get
        check_filter_policy({"region": "us", "status": "open"}, self._policy("or"), lookup=lookup)
        with pytest.raises(ForbiddenError):
            check_filter_policy({"region": "us", "status": "closed"}, self._policy("or"), lookup=lookup)

    def test_update_judges_absent_fields_by_stored_record(self) -> None:
        lookup = {"{user.region}": "eu"}.get
        policy = self._policy()
        check_filter_policy({"status": "open"}, policy, for_update=True, old_record={"region": "eu"}, lookup=lookup)
        with pytest.raises(ForbiddenError):
            check_filter_policy(
                {"status": "open"}, policy, for_update=True, old_record={"region": "us"}, lookup=lookup
            )

    def test_unknown_combiner_is_a_configuration_error(self) -> None:
        with pytest.raises(InternalServerError):
            check_filter_policy({"region": "eu"}, self._policy("xor"))
