"""
Default session provider.

Holds the request's acting user, named lookup values and server-side filter
policies in memory. Lookups are written as ``{name}`` inside filter and record
values; a value that is exactly one lookup token is replaced by the lookup's
own (typed) value, otherwise tokens are substituted as text.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from tablecore.domain.models import FilterPolicy, Operation

_TOKEN = re.compile(r"\{([A-Za-z0-9_.\-]+)\}")

PolicyKey = Tuple[str, str, str]


class StaticSession:
    """
    Session facts fixed for the lifetime of one request.

    Parameters
    ----------
    user_id : Any
        Acting user's id, stamped into ``user_id_on_*`` fields.
    lookups : Mapping | None
        Lookup name to value.
    policies : Mapping | None
        ``(operation, service, table)`` to `FilterPolicy` (or its dict form).
        A table of ``"*"`` applies to every table of the service.
    """

    def __init__(
        self,
        user_id: Any = None,
        lookups: Optional[Mapping[str, Any]] = None,
        policies: Optional[Mapping[Tuple[Any, str, str], Union[FilterPolicy, Dict[str, Any]]]] = None,
    ) -> None:
        self.user_id = user_id
        self.lookups: Dict[str, Any] = {str(key).lower(): value for key, value in (lookups or {}).items()}
        self.policies: Dict[PolicyKey, FilterPolicy] = {}
        for (operation, service, table), policy in (policies or {}).items():
            self.set_filter_policy(operation, service, table, policy)

    @staticmethod
    def _key(operation: Union[Operation, str], service: str, table: str) -> PolicyKey:
        op = operation.value if isinstance(operation, Operation) else str(operation).lower()
        return op, service.lower(), table.lower()

    def set_filter_policy(
        self,
        operation: Union[Operation, str],
        service: str,
        table: str,
        policy: Union[FilterPolicy, Dict[str, Any]],
    ) -> None:
        if not isinstance(policy, FilterPolicy):
            policy = FilterPolicy.model_validate(policy)
        self.policies[self._key(operation, service, table)] = policy

    def get_filter_policy(self, operation: Operation, service: str, table: str) -> Optional[FilterPolicy]:
        policy = self.policies.get(self._key(operation, service, table))
        if policy is None:
            policy = self.policies.get(self._key(operation, service, "*"))
        return policy

    def current_user_id(self) -> Optional[Any]:
        return self.user_id

    def lookup(self, value: Any) -> Any:
        if not isinstance(value, str) or "{" not in value:
            return value
        whole = _TOKEN.fullmatch(value)
        if whole and whole.group(1).lower() in self.lookups:
            return self.lookups[whole.group(1).lower()]

        def replace(match: "re.Match[str]") -> str:
            key = match.group(1).lower()
            if key not in self.lookups:
                return match.group(0)
            return str(self.lookups[key])

        return _TOKEN.sub(replace, value)


__all__ = ["StaticSession"]
