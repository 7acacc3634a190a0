"""
HTTP-shaped request routing.

`RequestRouter.handle` answers a `RemoteCall` against one `RecordService`:

- ``GET _table`` lists tables, ``GET _schema/<table>`` describes one;
- ``_table/<table>[/<id>]`` maps GET/POST/PUT/PATCH/DELETE onto the record API,
  choosing the by-id, by-ids, by-filter or by-records form from the path,
  the ``ids``/``filter`` parameters and the body.

Errors become their ``to_dict()`` body with the error's status, so a router
registered with an `InProcessTransport` behaves like a remote service.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Dict, Optional, Tuple

from tablecore.coordinator import RecordService
from tablecore.domain.errors import BadRequestError, InternalServerError, NotFoundError, RestError
from tablecore.domain.models import RecordOptions, Verb
from tablecore.domain.records import plain
from tablecore.engine.dispatch import SCHEMA_RESOURCE, TABLE_RESOURCE, RemoteCall, RemoteResponse
from tablecore.utils.logging import get_logger

log = get_logger(__name__)

_JSON_PARAMS = ("related", "params", "ids")


def _decode(name: str, value: Any) -> Any:
    if name in _JSON_PARAMS and isinstance(value, str) and value[:1] in ("{", "["):
        try:
            return json.loads(value)
        except ValueError:
            raise BadRequestError(f"Parameter '{name}' is not valid JSON.") from None
    return value


def _split_resource(resource: str) -> Tuple[str, Optional[str], Optional[str]]:
    parts = [part for part in resource.strip("/").split("/") if part]
    if not parts:
        raise NotFoundError("No resource requested.")
    kind = parts[0]
    table = parts[1] if len(parts) > 1 else None
    id_value = "/".join(parts[2:]) if len(parts) > 2 else None
    return kind, table, id_value


def _body_records(body: Any) -> Tuple[Any, bool]:
    """Return the submitted records and whether the body was a single bare record."""
    if body is None or body == "":
        return None, False
    if isinstance(body, Mapping):
        if "resource" in body:
            return body["resource"], False
        return [dict(body)], True
    if isinstance(body, list):
        return body, False
    raise BadRequestError("The request contains no valid record sets.")


def _body_record(body: Any) -> Dict[str, Any]:
    if isinstance(body, Mapping):
        resource = body.get("resource")
        if isinstance(resource, list):
            if not resource or not isinstance(resource[0], Mapping):
                raise BadRequestError("No record fields were passed in the request.")
            return dict(resource[0])
        return dict(body)
    if isinstance(body, list) and body and isinstance(body[0], Mapping):
        return dict(body[0])
    raise BadRequestError("No record fields were passed in the request.")


class RequestRouter:
    """
    Routes calls for one service.

    Parameters
    ----------
    service : RecordService
        The record API calls are mapped onto.
    """

    def __init__(self, service: RecordService) -> None:
        self.service = service

    def __call__(self, call: RemoteCall) -> RemoteResponse:
        return self.handle(call)

    def handle(self, call: RemoteCall) -> RemoteResponse:
        log.debug(
            f"Handling {call.verb.value} {call.service}/{call.resource}",
            extra={"service": call.service, "resource": call.resource, "verb": call.verb.value},
        )
        try:
            status, content = self._route(call)
        except RestError as exc:
            return RemoteResponse(exc.status_code, exc.to_dict())
        except Exception as exc:
            log.exception(
                f"Unhandled error for {call.verb.value} {call.resource}",
                extra={"service": call.service, "resource": call.resource},
            )
            error = InternalServerError(str(exc))
            return RemoteResponse(error.status_code, error.to_dict())
        return RemoteResponse(status, plain(content))

    def _route(self, call: RemoteCall) -> Tuple[int, Any]:
        kind, table, id_value = _split_resource(call.resource)
        if kind == SCHEMA_RESOURCE:
            if call.verb != Verb.GET:
                raise BadRequestError(f"Verb '{call.verb.value}' is not supported on {SCHEMA_RESOURCE}.")
            if not table:
                return 200, {"resource": [{"name": name} for name in self.service.metadata.list_tables()]}
            return 200, self.service.metadata.get_table_schema(table).model_dump(mode="json")
        if kind != TABLE_RESOURCE:
            raise NotFoundError(f"Resource '{kind}' not found.")
        if not table:
            if call.verb != Verb.GET:
                raise BadRequestError("A table name is required.")
            return 200, {"resource": [{"name": name} for name in self.service.metadata.list_tables()]}

        params = {str(key).lower(): _decode(str(key).lower(), value) for key, value in call.params.items()}
        ids = params.pop("ids", None)
        filter_text = params.pop("filter", None)
        filter_params = params.pop("params", None) or {}
        options = RecordOptions.coerce(params)

        handler = {
            Verb.GET: self._get,
            Verb.POST: self._post,
            Verb.PUT: self._put,
            Verb.PATCH: self._patch,
            Verb.DELETE: self._delete,
        }[call.verb]
        return handler(table, id_value, ids, filter_text, filter_params, options, call.body)

    def _get(self, table, id_value, ids, filter_text, filter_params, options, body):
        service = self.service
        if id_value is not None:
            return 200, service.retrieve_record_by_id(table, id_value, options)
        if ids not in (None, ""):
            return 200, {"resource": service.retrieve_records_by_ids(table, ids, options)}
        records, _ = _body_records(body)
        if records:
            return 200, {"resource": service.retrieve_records(table, records, options)}
        return 200, {"resource": service.retrieve_records_by_filter(table, filter_text, filter_params, options)}

    def _post(self, table, id_value, ids, filter_text, filter_params, options, body):
        records, single = _body_records(body)
        if not records:
            raise BadRequestError("No record(s) detected in request.")
        if single:
            return 201, self.service.create_record(table, records[0], options)
        return 201, {"resource": self.service.create_records(table, records, options)}

    def _write(self, operation, table, id_value, ids, filter_text, filter_params, options, body):
        service = self.service
        by_id = getattr(service, f"{operation}_record_by_id")
        by_ids = getattr(service, f"{operation}_records_by_ids")
        by_filter = getattr(service, f"{operation}_records_by_filter")
        if id_value is not None:
            return 200, by_id(table, _body_record(body), id_value, options)
        if ids not in (None, ""):
            return 200, {"resource": by_ids(table, _body_record(body), ids, options)}
        if filter_text:
            return 200, {"resource": by_filter(table, _body_record(body), filter_text, filter_params, options)}
        records, single = _body_records(body)
        if not records:
            raise BadRequestError("No record(s) detected in request.")
        if single:
            return 200, getattr(service, f"{operation}_record")(table, records[0], options)
        return 200, {"resource": getattr(service, f"{operation}_records")(table, records, options)}

    def _put(self, *args):
        return self._write("update", *args)

    def _patch(self, *args):
        return self._write("patch", *args)

    def _delete(self, table, id_value, ids, filter_text, filter_params, options, body):
        service = self.service
        if id_value is not None:
            return 200, service.delete_record_by_id(table, id_value, options)
        if ids not in (None, ""):
            return 200, {"resource": service.delete_records_by_ids(table, ids, options)}
        if filter_text:
            return 200, {"resource": service.delete_records_by_filter(table, filter_text, filter_params, options)}
        records, single = _body_records(body)
        if records:
            if single:
                return 200, service.delete_record(table, records[0], options)
            return 200, {"resource": service.delete_records(table, records, options)}
        if options.force:
            return 200, {"resource": service.truncate_table(table, options)}
        raise BadRequestError("No filter or records given for delete request.")


__all__ = ["RequestRouter"]
