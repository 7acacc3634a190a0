"""
Error taxonomy for the record engine.

Every failure surfaced to callers is a `RestError` subclass carrying an HTTP-style
status code, a human-readable message, an optional machine code, and optional
context. `to_dict()` yields the wire shape used by the request router and the
virtual dispatch gateway:

    {"error": {"code": ..., "message": ..., "status_code": ..., "context": ...}}
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class RestError(Exception):
    """Base class for all engine errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str = "",
        code: Optional[int] = None,
        context: Any = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.code = code if code is not None else self.status_code
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Render the error as a response body."""
        body: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
        }
        if self.context is not None:
            body["context"] = self.context
        return {"error": body}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class BadRequestError(RestError):
    """Malformed input, missing identifiers, invalid field values."""

    status_code = 400


class ForbiddenError(RestError):
    """Denied by a server-side filter policy."""

    status_code = 403


class NotFoundError(RestError):
    """Unknown table or record."""

    status_code = 404


class InternalServerError(RestError):
    """Broken metadata or configuration; never a per-record problem."""

    status_code = 500


class NotImplementedFeatureError(RestError):
    """Unsupported topology such as multi-column foreign keys."""

    status_code = 501


class RemoteOperationError(RestError):
    """A cross-service dispatch returned a non-success status."""

    def __init__(
        self,
        status_code: int,
        message: str = "",
        code: Optional[int] = None,
        context: Any = None,
    ) -> None:
        super().__init__(message, code=code, context=context, status_code=status_code)


class BatchError(RestError):
    """
    Aggregate failure of a batch.

    `results` is aligned by index with the input: successful items hold their
    result record, failed items hold the error instance, and items that were
    never attempted are absent.
    """

    status_code = 400

    def __init__(self, results: Dict[int, Any] | List[Any], message: str = "Batch Error") -> None:
        if isinstance(results, list):
            results = dict(enumerate(results))
        self.results: Dict[int, Any] = results
        super().__init__(message, context={"resource": self._render_results()})

    def pick_response(self, index: int) -> Any:
        """Return the outcome stored at `index`, or None if never attempted."""
        return self.results.get(index)

    @property
    def errors(self) -> Dict[int, Exception]:
        return {i: r for i, r in self.results.items() if isinstance(r, Exception)}

    def _render_results(self) -> List[Any]:
        rendered: List[Any] = []
        for index in sorted(self.results):
            item = self.results[index]
            if isinstance(item, RestError):
                rendered.append(item.to_dict())
            elif isinstance(item, Exception):
                rendered.append({"error": {"code": 500, "message": str(item), "status_code": 500}})
            else:
                rendered.append(item)
        return rendered


# Errors that indicate broken metadata rather than a bad record; these always
# abort the whole operation.
CONFIGURATION_ERRORS = (InternalServerError, NotImplementedFeatureError)


def error_from_body(status_code: int, content: Any) -> RestError:
    """
    Rebuild a typed error from a response body produced by `RestError.to_dict`.

    Unknown shapes become a generic `RemoteOperationError`.
    """
    if isinstance(content, dict) and isinstance(content.get("error"), dict):
        error = content["error"]
        return RemoteOperationError(
            status_code,
            str(error.get("message", "")),
            code=error.get("code"),
            context=error.get("context"),
        )
    return RemoteOperationError(status_code, "Virtual query failed but returned invalid format.")


__all__ = [
    "RestError",
    "BadRequestError",
    "ForbiddenError",
    "NotFoundError",
    "InternalServerError",
    "NotImplementedFeatureError",
    "RemoteOperationError",
    "BatchError",
    "CONFIGURATION_ERRORS",
    "error_from_body",
]
