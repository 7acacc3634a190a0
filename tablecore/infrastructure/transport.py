"""
HTTP transport for cross-service dispatch.

Sends `RemoteCall`s to ``<base_url>/<service>/<resource>`` with httpx. Transient
transport failures are retried with tenacity: any of them for GET, and for
writes only those raised before the request was sent. Once retries are
exhausted they surface as `RemoteOperationError` (504 for timeouts, 502
otherwise). HTTP error statuses are not retried: they are returned as
responses and interpreted by the gateway.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tablecore.config import Settings, get_settings
from tablecore.domain.errors import InternalServerError, RemoteOperationError
from tablecore.domain.models import Verb
from tablecore.engine.dispatch import RemoteCall, RemoteResponse
from tablecore.utils.logging import get_logger

log = get_logger(__name__)

# GET is repeated after any transport failure; writes only when nothing reached the server
_TRANSIENT = (httpx.TransportError,)
_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return value


class HttpTransport:
    """
    httpx-backed `Transport`.

    Parameters
    ----------
    base_url : str
        Root URL of the remote API; service names are appended to it.
    timeout : float
        Per-request timeout in seconds.
    retry_attempts : int
        Total attempts for transient transport errors.
    api_key : str | None
        Sent as the ``X-Api-Key`` header when set.
    client : httpx.Client | None
        Preconfigured client (tests pass one built on `httpx.MockTransport`).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.retry_attempts = max(1, retry_attempts)
        headers: Dict[str, str] = {"Accept": "application/json"}
        if api_key:
            headers["X-Api-Key"] = api_key
        self._client = client or httpx.Client(timeout=timeout, headers=headers)
        if client is not None and api_key:
            self._client.headers.update(headers)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "HttpTransport":
        settings = settings or get_settings()
        if not settings.remote_base_url:
            raise InternalServerError("REMOTE_BASE_URL is not configured.")
        return cls(
            settings.remote_base_url,
            timeout=settings.remote_timeout_seconds,
            retry_attempts=settings.remote_retry_attempts,
            api_key=settings.remote_api_key,
        )

    def url_for(self, call: RemoteCall) -> str:
        return f"{self.base_url}/{call.service.strip('/')}/{call.resource.strip('/')}"

    def _send_once(self, call: RemoteCall) -> httpx.Response:
        params = {key: _query_value(value) for key, value in call.params.items()}
        return self._client.request(
            call.verb.value,
            self.url_for(call),
            params=params,
            json=call.body,
        )

    def send(self, call: RemoteCall) -> RemoteResponse:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(_TRANSIENT if call.verb == Verb.GET else _NOT_SENT),
            reraise=True,
        )
        try:
            response = retrying(self._send_once, call)
        except httpx.TimeoutException as exc:
            log.warning(f"Timed out calling {self.url_for(call)}", extra={"service": call.service})
            raise RemoteOperationError(504, f"Request to service '{call.service}' timed out.") from exc
        except httpx.TransportError as exc:
            log.warning(f"Transport failure calling {self.url_for(call)}: {exc}", extra={"service": call.service})
            raise RemoteOperationError(502, f"Service '{call.service}' is unreachable: {exc}") from exc

        content: Any = None
        if response.content:
            try:
                content = response.json()
            except ValueError:
                content = response.text
        return RemoteResponse(response.status_code, content)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpTransport":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


__all__ = ["HttpTransport"]
