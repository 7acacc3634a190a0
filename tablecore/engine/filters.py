"""
Filter and comparison evaluation.

Covers three related concerns:

- the comparison operator set and `compare`, used to evaluate server-side
  filter policies against records;
- interpretation of literal filter values (quoted strings, true/false/null,
  numbers, lookup keys);
- a structured `Filter` built from the textual filter grammar, which can be
  rendered back to text for a remote service or matched against in-memory
  records.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from tablecore.domain.errors import BadRequestError, ForbiddenError, InternalServerError
from tablecore.domain.models import FilterPolicy
from tablecore.domain.records import field_value, has_field
from tablecore.engine.filter_lexer import FilterLexer

Lookup = Callable[[Any], Any]

_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


class ComparisonOperator(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    IN = "in"
    NOT_IN = "not in"
    LIKE = "like"
    STARTS_WITH = "starts with"
    ENDS_WITH = "ends with"
    CONTAINS = "contains"
    IS_NULL = "is null"
    IS_NOT_NULL = "is not null"
    DOES_EXIST = "does exist"
    DOES_NOT_EXIST = "does not exist"


# operators that take no right-hand value
UNARY_OPERATORS = frozenset(
    {
        ComparisonOperator.IS_NULL,
        ComparisonOperator.IS_NOT_NULL,
        ComparisonOperator.DOES_EXIST,
        ComparisonOperator.DOES_NOT_EXIST,
    }
)

_STRING_OPERATORS = frozenset(
    {ComparisonOperator.STARTS_WITH, ComparisonOperator.ENDS_WITH, ComparisonOperator.CONTAINS}
)

_ALIASES: Dict[str, ComparisonOperator] = {
    "=": ComparisonOperator.EQ,
    "==": ComparisonOperator.EQ,
    "eq": ComparisonOperator.EQ,
    "!=": ComparisonOperator.NE,
    "<>": ComparisonOperator.NE,
    "ne": ComparisonOperator.NE,
    ">": ComparisonOperator.GT,
    "gt": ComparisonOperator.GT,
    ">=": ComparisonOperator.GTE,
    "gte": ComparisonOperator.GTE,
    "<": ComparisonOperator.LT,
    "lt": ComparisonOperator.LT,
    "<=": ComparisonOperator.LTE,
    "lte": ComparisonOperator.LTE,
    "in": ComparisonOperator.IN,
    "not in": ComparisonOperator.NOT_IN,
    "not_in": ComparisonOperator.NOT_IN,
    "nin": ComparisonOperator.NOT_IN,
    "like": ComparisonOperator.LIKE,
    "starts with": ComparisonOperator.STARTS_WITH,
    "starts_with": ComparisonOperator.STARTS_WITH,
    "ends with": ComparisonOperator.ENDS_WITH,
    "ends_with": ComparisonOperator.ENDS_WITH,
    "contains": ComparisonOperator.CONTAINS,
    "is null": ComparisonOperator.IS_NULL,
    "is_null": ComparisonOperator.IS_NULL,
    "is not null": ComparisonOperator.IS_NOT_NULL,
    "is_not_null": ComparisonOperator.IS_NOT_NULL,
    "does exist": ComparisonOperator.DOES_EXIST,
    "does_exist": ComparisonOperator.DOES_EXIST,
    "exists": ComparisonOperator.DOES_EXIST,
    "does not exist": ComparisonOperator.DOES_NOT_EXIST,
    "does_not_exist": ComparisonOperator.DOES_NOT_EXIST,
    "not exists": ComparisonOperator.DOES_NOT_EXIST,
}


def localize_operator(operator: Union[str, ComparisonOperator]) -> ComparisonOperator:
    """
    Normalize an operator spelling (symbol, word, or snake_case) to its enum.

    Raises
    ------
    InternalServerError
        If the operator is unknown. Operators come from metadata and policy
        configuration, so an unknown one is never a client mistake.
    """
    if isinstance(operator, ComparisonOperator):
        return operator
    key = " ".join(str(operator).strip().lower().split())
    try:
        return _ALIASES[key]
    except KeyError:
        raise InternalServerError(f"Invalid server-side filter operator '{operator}'.") from None


def to_sql_operator(operator: Union[str, ComparisonOperator]) -> str:
    """Operator as forwarded to a SQL predicate; string operators become LIKE."""
    op = localize_operator(operator)
    if op in _STRING_OPERATORS:
        return "LIKE"
    return op.value.upper()


def modify_value_by_operator(operator: Union[str, ComparisonOperator], value: Any) -> Any:
    """Add SQL wildcards to `value` for the string operators."""
    op = localize_operator(operator)
    if op == ComparisonOperator.STARTS_WITH:
        return f"{value}%"
    if op == ComparisonOperator.ENDS_WITH:
        return f"%{value}"
    if op == ComparisonOperator.CONTAINS:
        return f"%{value}%"
    return value


def is_in_list(needle: Any, haystack: Any) -> bool:
    """Case-insensitive membership test; `haystack` may be a comma-delimited string."""
    if haystack is None:
        return False
    if isinstance(haystack, str):
        items = [item.strip() for item in haystack.split(",")]
    elif isinstance(haystack, (list, tuple, set, frozenset)):
        items = list(haystack)
    else:
        items = [haystack]
    lowered = {_normalize_member(item) for item in items}
    return _normalize_member(needle) in lowered


def _normalize_member(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip().lower()


def _as_number(value: Any) -> Optional[Union[int, float, Decimal]]:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float, Decimal)):
        return value
    if isinstance(value, str) and _NUMBER_RE.match(value.strip()):
        text = value.strip()
        if re.fullmatch(r"[+-]?\d+", text):
            return int(text)
        return float(text)
    return None


def _loose_equal(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        if isinstance(left, str) and isinstance(right, str):
            return left == right
        return float(left_number) == float(right_number)
    if isinstance(left, (datetime, date, time)) and isinstance(right, str):
        return left.isoformat() == right
    if isinstance(right, (datetime, date, time)) and isinstance(left, str):
        return right.isoformat() == left
    return left == right


def _ordered(left: Any, right: Any) -> Optional[Tuple[Any, Any]]:
    """Make two values comparable, or return None when they are not."""
    if left is None or right is None:
        return None
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        return float(left_number), float(right_number)
    if isinstance(left, (datetime, date, time)) and isinstance(right, str):
        return left.isoformat(), right
    if isinstance(left, str) and isinstance(right, (datetime, date, time)):
        return left, right.isoformat()
    if type(left) is type(right):
        return left, right
    return str(left), str(right)


def _like(value: Any, pattern: Any) -> bool:
    if value is None or pattern is None:
        return False
    regex = ""
    for char in str(pattern):
        if char == "%":
            regex += ".*"
        elif char == "_":
            regex += "."
        else:
            regex += re.escape(char)
    return re.fullmatch(regex, str(value), flags=re.IGNORECASE | re.DOTALL) is not None


def compare(operator: Union[str, ComparisonOperator], found: bool, left: Any, right: Any) -> bool:
    """
    Evaluate `left <operator> right`.

    Parameters
    ----------
    operator : str | ComparisonOperator
        Any spelling accepted by `localize_operator`.
    found : bool
        Whether the field was present in the record at all; only the
        exists/not-exists operators look at it.
    left : Any
        The record's value.
    right : Any
        The comparison value.
    """
    op = localize_operator(operator)
    if op == ComparisonOperator.EQ:
        return _loose_equal(left, right)
    if op == ComparisonOperator.NE:
        return not _loose_equal(left, right)
    if op in (ComparisonOperator.GT, ComparisonOperator.GTE, ComparisonOperator.LT, ComparisonOperator.LTE):
        pair = _ordered(left, right)
        if pair is None:
            return False
        try:
            if op == ComparisonOperator.GT:
                return pair[0] > pair[1]
            if op == ComparisonOperator.GTE:
                return pair[0] >= pair[1]
            if op == ComparisonOperator.LT:
                return pair[0] < pair[1]
            return pair[0] <= pair[1]
        except TypeError:
            return False
    if op == ComparisonOperator.STARTS_WITH:
        return left is not None and str(left).startswith(str(right))
    if op == ComparisonOperator.ENDS_WITH:
        return left is not None and str(left).endswith(str(right))
    if op == ComparisonOperator.CONTAINS:
        return left is not None and str(right) in str(left)
    if op == ComparisonOperator.LIKE:
        return _like(left, right)
    if op == ComparisonOperator.IN:
        return is_in_list(left, right)
    if op == ComparisonOperator.NOT_IN:
        return not is_in_list(left, right)
    if op == ComparisonOperator.IS_NULL:
        return left is None
    if op == ComparisonOperator.IS_NOT_NULL:
        return left is not None
    if op == ComparisonOperator.DOES_EXIST:
        return found
    if op == ComparisonOperator.DOES_NOT_EXIST:
        return not found
    raise InternalServerError(f"Invalid server-side filter operator '{operator}'.")


def _unquote(value: str) -> Optional[str]:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return None


def interpret_filter_value(value: Any, lookup: Optional[Lookup] = None) -> Any:
    """
    Interpret a literal filter value.

    Quoted strings are unwrapped verbatim, `true`/`false`/`null` become the
    typed literals, numeric strings become int or float, and anything else is
    passed through `lookup` for session substitution.
    """
    if not isinstance(value, str):
        return value
    text = value.strip()
    unquoted = _unquote(text)
    if unquoted is not None:
        return unquoted
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "null":
        return None
    if _NUMBER_RE.match(text):
        if re.fullmatch(r"[+-]?\d+", text):
            return int(text)
        return float(text)
    return lookup(value) if lookup is not None else value


def interpret_record_values(record: Mapping, lookup: Optional[Lookup] = None) -> Dict[str, Any]:
    """Run lookup substitution over every string value of `record`."""
    if lookup is None:
        return dict(record.items())
    return {key: lookup(value) if isinstance(value, str) else value for key, value in record.items()}


def _record_value(record: Mapping, name: str) -> Tuple[bool, Any]:
    if not has_field(record, name):
        return False, None
    return True, field_value(record, name)


def _render_literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return "(" + ",".join(_render_literal(item) for item in value) + ")"
    if isinstance(value, (datetime, date, time)):
        value = value.isoformat()
    text = str(value).replace("'", "''")
    return f"'{text}'"


@dataclass
class Condition:
    """A single `field <operator> value` predicate."""

    field: str
    operator: ComparisonOperator
    value: Any = None

    def __post_init__(self) -> None:
        self.operator = localize_operator(self.operator)

    def matches(self, record: Mapping) -> bool:
        found, left = _record_value(record, self.field)
        return compare(self.operator, found, left, self.value)

    def to_string(self) -> str:
        if self.operator in UNARY_OPERATORS:
            return f"({self.field} {self.operator.value})"
        value = self.value
        if self.operator in (ComparisonOperator.IN, ComparisonOperator.NOT_IN) and not isinstance(
            value, (list, tuple, set, frozenset)
        ):
            value = [item.strip() for item in str(value).split(",")] if isinstance(value, str) else [value]
        return f"({self.field} {self.operator.value} {_render_literal(value)})"


@dataclass
class Filter:
    """
    A combination of conditions (and nested filters) joined by one combiner.

    An empty filter matches every record.
    """

    conditions: List[Union[Condition, "Filter"]] = field(default_factory=list)
    combiner: str = "and"

    def __post_init__(self) -> None:
        self.combiner = self.combiner.lower()
        if self.combiner not in ("and", "or"):
            raise InternalServerError(f"Invalid filter combiner '{self.combiner}'.")

    def __bool__(self) -> bool:
        return bool(self.conditions)

    @classmethod
    def equals(cls, name: str, value: Any) -> "Filter":
        return cls([Condition(name, ComparisonOperator.EQ, value)])

    @classmethod
    def where_in(cls, name: str, values: Sequence[Any]) -> "Filter":
        return cls([Condition(name, ComparisonOperator.IN, list(values))])

    @classmethod
    def parse(
        cls,
        text: Optional[str],
        params: Optional[Mapping[str, Any]] = None,
        lookup: Optional[Lookup] = None,
    ) -> "Filter":
        """
        Parse the textual filter grammar.

        Parameters
        ----------
        text : str | None
            E.g. ``(status = 'open') and (total > 10)``.
        params : Mapping | None
            Values for bound parameters written as ``:name``.
        lookup : callable | None
            Substitution applied to bare-word values.
        """
        if text is None or not str(text).strip():
            return cls()
        parser = _FilterParser(str(text), params or {}, lookup)
        return parser.parse()

    @classmethod
    def coerce(
        cls,
        value: Any,
        params: Optional[Mapping[str, Any]] = None,
        lookup: Optional[Lookup] = None,
    ) -> "Filter":
        if isinstance(value, Filter):
            return value
        if isinstance(value, Condition):
            return cls([value])
        return cls.parse(value, params, lookup)

    def and_(self, other: Union["Filter", Condition, None]) -> "Filter":
        """Combine with `other` so both must hold."""
        if other is None or (isinstance(other, Filter) and not other):
            return self
        if not self:
            return other if isinstance(other, Filter) else Filter([other])
        return Filter([self, other], "and")

    def matches(self, record: Mapping) -> bool:
        if not self.conditions:
            return True
        results = (item.matches(record) for item in self.conditions)
        return all(results) if self.combiner == "and" else any(results)

    def to_string(self) -> str:
        if not self.conditions:
            return ""
        if len(self.conditions) == 1:
            return self.conditions[0].to_string()
        parts = []
        for item in self.conditions:
            rendered = item.to_string()
            parts.append(rendered if isinstance(item, Condition) else f"({rendered})")
        return f" {self.combiner} ".join(parts)

    def __str__(self) -> str:
        return self.to_string()


class _FilterParser:
    """Recursive-descent parser over `FilterLexer` tokens."""

    _WORD_OPERATORS = ("eq", "ne", "gt", "gte", "lt", "lte", "like", "contains", "in", "nin",
                       "starts_with", "ends_with", "not_in", "is_null", "is_not_null", "exists")

    def __init__(self, text: str, params: Mapping[str, Any], lookup: Optional[Lookup]) -> None:
        self.text = text
        self.params = params
        self.lookup = lookup
        self.tokens = FilterLexer().tokenize(text)
        self.pos = 0

    def _peek(self, offset: int = 0) -> Any:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def _peek_word(self, offset: int = 0) -> Optional[str]:
        token = self._peek(offset)
        if token is not None and token.type == "WORD":
            return token.value.lower()
        return None

    def _next(self) -> Any:
        token = self._peek()
        if token is None:
            raise BadRequestError(f"Unexpected end of filter '{self.text}'.")
        self.pos += 1
        return token

    def _expect(self, kind: str) -> Any:
        token = self._next()
        if token.type != kind:
            raise BadRequestError(f"Invalid filter '{self.text}': unexpected '{token.value}'.")
        return token

    def _expect_word(self, word: str) -> None:
        if self._peek_word() != word:
            raise BadRequestError(f"Invalid filter '{self.text}': expected '{word}'.")
        self.pos += 1

    def parse(self) -> Filter:
        result = self._expression()
        if self._peek() is not None:
            raise BadRequestError(f"Invalid filter '{self.text}': unexpected '{self._peek().value}'.")
        return result if isinstance(result, Filter) else Filter([result])

    def _expression(self) -> Union[Filter, Condition]:
        items = [self._term()]
        combiner: Optional[str] = None
        while self._peek_word() in ("and", "or"):
            word = self._peek_word()
            if combiner is not None and word != combiner:
                raise BadRequestError(
                    f"Invalid filter '{self.text}': mixing 'and' with 'or' requires parentheses."
                )
            combiner = word
            self.pos += 1
            items.append(self._term())
        if len(items) == 1:
            return items[0]
        return Filter(items, combiner or "and")

    def _term(self) -> Union[Filter, Condition]:
        token = self._peek()
        if token is not None and token.type == "LPAREN":
            self.pos += 1
            inner = self._expression()
            self._expect("RPAREN")
            return inner
        return self._condition()

    def _condition(self) -> Condition:
        name = self._expect("WORD").value
        operator = self._operator()
        if operator in UNARY_OPERATORS:
            return Condition(name, operator)
        if operator in (ComparisonOperator.IN, ComparisonOperator.NOT_IN):
            return Condition(name, operator, self._value_list())
        return Condition(name, operator, self._value())

    def _operator(self) -> ComparisonOperator:
        token = self._next()
        if token.type == "SYMBOL":
            return localize_operator(token.value)
        if token.type != "WORD":
            raise BadRequestError(f"Invalid filter '{self.text}': expected an operator near '{token.value}'.")
        word = token.value.lower()
        if word == "not":
            following = self._peek_word()
            if following == "in":
                self.pos += 1
                return ComparisonOperator.NOT_IN
            if following == "like":
                raise BadRequestError(f"Invalid filter '{self.text}': 'not like' is not supported.")
        if word in ("starts", "ends"):
            self._expect_word("with")
            return localize_operator(f"{word} with")
        if word == "is":
            if self._peek_word() == "not":
                self.pos += 1
                self._expect_word("null")
                return ComparisonOperator.IS_NOT_NULL
            self._expect_word("null")
            return ComparisonOperator.IS_NULL
        if word == "does":
            if self._peek_word() == "not":
                self.pos += 1
                self._expect_word("exist")
                return ComparisonOperator.DOES_NOT_EXIST
            self._expect_word("exist")
            return ComparisonOperator.DOES_EXIST
        if word in self._WORD_OPERATORS:
            return localize_operator(word)
        raise BadRequestError(f"Invalid filter '{self.text}': unknown operator '{token.value}'.")

    def _value_list(self) -> List[Any]:
        token = self._peek()
        if token is not None and token.type == "LPAREN":
            self.pos += 1
            values = [self._value()]
            while self._peek() is not None and self._peek().type == "COMMA":
                self.pos += 1
                values.append(self._value())
            self._expect("RPAREN")
            return values
        value = self._value()
        if isinstance(value, (list, tuple, set)):
            return list(value)
        if isinstance(value, str):
            return [item.strip() for item in value.split(",")]
        return [value]

    def _value(self) -> Any:
        token = self._next()
        if token.type == "STRING":
            return token.value
        if token.type in ("INTEGER", "FLOAT"):
            return token.value
        if token.type == "PARAM":
            if token.value not in self.params:
                raise BadRequestError(f"Filter parameter ':{token.value}' has no bound value.")
            return self.params[token.value]
        if token.type == "WORD":
            return interpret_filter_value(token.value, self.lookup)
        raise BadRequestError(f"Invalid filter '{self.text}': unexpected '{token.value}'.")


def check_filter_policy(
    record: Mapping,
    policy: Optional[FilterPolicy],
    for_update: bool = False,
    old_record: Optional[Mapping] = None,
    lookup: Optional[Lookup] = None,
) -> None:
    """
    Enforce a server-side filter policy against a parsed record.

    Triples are evaluated in order. In AND mode the first failing triple raises;
    in OR mode the first passing triple allows the record, and exhausting every
    triple without a pass raises. On update, a field absent from `record` is
    judged by its value in `old_record`, and skipped when absent from both.

    Raises
    ------
    ForbiddenError
        If the record does not satisfy the policy.
    InternalServerError
        If the policy uses an unknown combiner or operator.
    """
    if policy is None or not policy.filters or not record:
        return
    combiner = (policy.filter_op or "and").lower()
    if combiner not in ("and", "or"):
        raise InternalServerError(f"Invalid server-side filter configuration detected: '{policy.filter_op}'.")

    for condition in policy.filters:
        found, value = _record_value(record, condition.name)
        if not found and for_update and old_record is not None:
            found, value = _record_value(old_record, condition.name)
        if for_update and not found:
            continue
        expected = interpret_filter_value(condition.value, lookup)
        passed = compare(condition.operator, found, value, expected)
        if combiner == "and" and not passed:
            raise ForbiddenError("Denied access to some of the requested fields.")
        if combiner == "or" and passed:
            return
    if combiner == "or":
        raise ForbiddenError("Denied access to some of the requested fields.")


__all__ = [
    "ComparisonOperator",
    "UNARY_OPERATORS",
    "localize_operator",
    "to_sql_operator",
    "modify_value_by_operator",
    "is_in_list",
    "compare",
    "interpret_filter_value",
    "interpret_record_values",
    "Condition",
    "Filter",
    "check_filter_policy",
]
