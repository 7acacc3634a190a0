"""
Virtual dispatch gateway.

Relationships may point at tables in this service or in another named service.
The gateway hides the difference: every sub-request is a `RemoteCall` sent
through a `Transport` and answered with a `RemoteResponse`, which the gateway
normalizes into records or a typed error.

Two transports ship with the package: `InProcessTransport` (handlers looked up
in a `ServiceRegistry`, normally a `RequestRouter`) and
`tablecore.infrastructure.transport.HttpTransport` (httpx).
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Union, runtime_checkable

from tablecore.domain.errors import InternalServerError, NotFoundError, RemoteOperationError, error_from_body
from tablecore.domain.models import TableSchema, Verb
from tablecore.domain.records import plain
from tablecore.engine.filters import Filter
from tablecore.utils.logging import get_logger

log = get_logger(__name__)

TABLE_RESOURCE = "_table"
SCHEMA_RESOURCE = "_schema"


def table_path(table: str) -> str:
    return f"{TABLE_RESOURCE}/{table}"


def schema_path(table: str) -> str:
    return f"{SCHEMA_RESOURCE}/{table}"


@dataclass
class RemoteCall:
    """One HTTP-shaped sub-request against a named service."""

    service: str
    resource: str
    verb: Verb = Verb.GET
    body: Any = None
    params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.verb = Verb(str(self.verb.value if isinstance(self.verb, Verb) else self.verb).upper())


@dataclass
class RemoteResponse:
    status_code: int
    content: Any = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


@runtime_checkable
class Transport(Protocol):
    """Delivers a `RemoteCall` and returns the raw response."""

    def send(self, call: RemoteCall) -> RemoteResponse:
        ...


Handler = Callable[[RemoteCall], RemoteResponse]


class ServiceRegistry:
    """
    Maps service ids to names and names to in-process handlers.

    Names are matched case-insensitively.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._names: Dict[int, str] = {}
        self._handlers: Dict[str, Handler] = {}

    def register(self, name: str, handler: Optional[Handler] = None, service_id: Optional[int] = None) -> None:
        with self._lock:
            if service_id is not None:
                self._names[service_id] = name
            if handler is not None:
                self._handlers[name.lower()] = handler

    def get_service_name(self, service_id: int) -> str:
        try:
            return self._names[service_id]
        except KeyError:
            raise NotFoundError(f"Service with id '{service_id}' not found.") from None

    def get_handler(self, name: str) -> Handler:
        try:
            return self._handlers[name.lower()]
        except KeyError:
            raise NotFoundError(f"Service '{name}' not found.") from None

    def has_handler(self, name: str) -> bool:
        return name.lower() in self._handlers

    def names(self) -> List[str]:
        return list(self._names.values())


class InProcessTransport:
    """
    Delivers calls to handlers registered in a `ServiceRegistry`.

    Calls for services without a local handler go to `fallback` (typically an
    `HttpTransport`) when one is given.
    """

    def __init__(self, registry: ServiceRegistry, fallback: Optional[Transport] = None) -> None:
        self.registry = registry
        self.fallback = fallback

    def send(self, call: RemoteCall) -> RemoteResponse:
        if self.fallback is not None and not self.registry.has_handler(call.service):
            return self.fallback.send(call)
        handler = self.registry.get_handler(call.service)
        return handler(call)


def _is_empty(content: Any) -> bool:
    return content is None or content == "" or (isinstance(content, (list, dict)) and not content)


class VirtualDispatchGateway:
    """
    Issues record sub-requests against this or another service.

    Parameters
    ----------
    transport : Transport
        Delivers calls; owns any timeout and retry policy.
    registry : ServiceRegistry | None
        Resolves related services' ids to names.
    default_service : str | None
        Service used when a relation names no service id.
    """

    def __init__(
        self,
        transport: Transport,
        registry: Optional[ServiceRegistry] = None,
        default_service: Optional[str] = None,
    ) -> None:
        self.transport = transport
        self.registry = registry
        self.default_service = default_service

    def service_name(self, service_id: Optional[int]) -> str:
        if service_id is None or self.registry is None:
            if not self.default_service:
                raise InternalServerError("No default service configured for virtual dispatch.")
            return self.default_service
        return self.registry.get_service_name(service_id)

    def dispatch(
        self,
        service: str,
        resource: str,
        verb: Union[Verb, str],
        records: Any = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """
        Send one call and normalize its response.

        Returns
        -------
        Any
            The response's ``resource`` payload (or whole body when it has
            none) on 200/201, None for an empty body.

        Raises
        ------
        RemoteOperationError
            On any other status; carries the remote status, message and code
            when the body is a structured error.
        """
        body = None
        if records is not None:
            body = {"resource": plain(list(records))} if isinstance(records, (list, tuple)) else plain(records)
        call = RemoteCall(service, resource, verb, body, _encode_params(params))
        log.debug(
            f"Dispatching {call.verb.value} {service}/{resource}",
            extra={"service": service, "resource": resource, "verb": call.verb.value},
        )
        response = self.transport.send(call)
        return self._handle_response(call, response)

    def _handle_response(self, call: RemoteCall, response: RemoteResponse) -> Any:
        content = response.content
        if response.status_code in (200, 201):
            if _is_empty(content):
                return None
            if isinstance(content, Mapping) and "resource" in content:
                return content["resource"]
            return content
        if _is_empty(content) and response.is_success:
            return None
        error = error_from_body(response.status_code, content)
        log.warning(
            f"Virtual {call.verb.value} {call.service}/{call.resource} failed: {error.message}",
            extra={
                "service": call.service,
                "resource": call.resource,
                "verb": call.verb.value,
                "status_code": response.status_code,
            },
        )
        raise error

    def fetch(self, service: str, resource: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        return self.dispatch(service, resource, Verb.GET, None, params)

    # record helpers used by the relationship engine

    def retrieve_records(
        self,
        service: str,
        table: str,
        filter: Union[Filter, str, None] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        query = dict(params or {})
        if filter:
            query["filter"] = filter
        return _as_records(self.fetch(service, table_path(table), query))

    def retrieve_records_by_ids(
        self,
        service: str,
        table: str,
        ids: Sequence[Any],
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        query = dict(params or {})
        query["ids"] = list(ids)
        query["continue"] = True
        try:
            return _as_records(self.fetch(service, table_path(table), query))
        except RemoteOperationError as exc:
            # a partial miss still carries the found records
            context = exc.context if isinstance(exc.context, Mapping) else {}
            found = context.get("resource") or []
            return [item for item in found if isinstance(item, Mapping) and "error" not in item]

    def create_records(
        self, service: str, table: str, records: Sequence[Any], params: Optional[Mapping[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        return _as_records(self.dispatch(service, table_path(table), Verb.POST, list(records), params))

    def update_records(
        self, service: str, table: str, records: Sequence[Any], params: Optional[Mapping[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        return _as_records(self.dispatch(service, table_path(table), Verb.PATCH, list(records), params))

    def update_records_by_ids(
        self,
        service: str,
        table: str,
        record: Mapping[str, Any],
        ids: Sequence[Any],
        id_field: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        query = dict(params or {})
        query["ids"] = list(ids)
        if id_field:
            query["id_field"] = id_field
        return _as_records(self.dispatch(service, table_path(table), Verb.PATCH, dict(record), query))

    def delete_records(
        self,
        service: str,
        table: str,
        ids: Optional[Sequence[Any]] = None,
        filter: Union[Filter, str, None] = None,
        id_field: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        query = dict(params or {})
        if ids is not None:
            query["ids"] = list(ids)
            if id_field:
                query["id_field"] = id_field
        elif filter:
            query["filter"] = filter
        else:
            raise InternalServerError("Refusing an unconditional delete of related records.")
        return _as_records(self.dispatch(service, table_path(table), Verb.DELETE, None, query))

    def get_table_schema(self, service: str, table: str) -> TableSchema:
        content = self.fetch(service, schema_path(table))
        if not isinstance(content, Mapping):
            raise InternalServerError(f"Invalid schema returned for table '{table}' of service '{service}'.")
        return TableSchema.model_validate(content)


def _encode_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    encoded: Dict[str, Any] = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, Filter):
            value = value.to_string()
        elif key in ("ids", "fields", "id_field", "id_type") and isinstance(value, (list, tuple)):
            if all(not isinstance(item, Mapping) for item in value):
                value = ",".join(str(item) for item in value)
        encoded[key] = value
    return encoded


def _as_records(content: Any) -> List[Dict[str, Any]]:
    if content is None:
        return []
    if isinstance(content, Mapping):
        return [dict(content)]
    return [dict(item) for item in content if isinstance(item, Mapping)]


__all__ = [
    "TABLE_RESOURCE",
    "SCHEMA_RESOURCE",
    "table_path",
    "schema_path",
    "RemoteCall",
    "RemoteResponse",
    "Transport",
    "Handler",
    "ServiceRegistry",
    "InProcessTransport",
    "VirtualDispatchGateway",
]
