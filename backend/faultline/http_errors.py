"""HTTP error taxonomy: typed errors carrying status, operational flag and detail."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from http import HTTPStatus
from typing import Any, ClassVar

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Closed set of error variants understood by the dispatcher."""

    HTTP_ERROR = "HttpError"
    METHOD_NOT_ALLOWED = "MethodNotAllowed"
    NOT_FOUND = "NotFound"
    DATABASE_ERROR = "DatabaseError"


class HttpError(Exception):
    """Error with an HTTP status, a structured detail and an operational flag.

    Operational errors are expected failures whose detail is safe to return
    to the caller. Non-operational ones escalate to the fatal path.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.HTTP_ERROR

    def __init__(self, http_code: int, error: Any, is_operational: bool) -> None:
        if isinstance(http_code, bool) or not isinstance(http_code, int):
            raise ValueError(f"http_code must be an integer, got {http_code!r}")
        if not 100 <= http_code <= 599:
            raise ValueError(f"http_code out of range: {http_code}")
        if error is None:
            raise ValueError("error detail is required")

        self._http_code = http_code
        self._error = error
        self._is_operational = bool(is_operational)
        super().__init__(self._message())

    @property
    def http_code(self) -> int:
        return self._http_code

    @property
    def error(self) -> Any:
        return self._error

    @property
    def is_operational(self) -> bool:
        return self._is_operational

    @property
    def name(self) -> str:
        return self.kind.value

    def _message(self) -> str:
        if isinstance(self._error, Mapping):
            for key in ("message", "msg"):
                if key in self._error:
                    return str(self._error[key])
        return str(self._error)

    def __str__(self) -> str:
        return self._message()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(http_code={self._http_code}, "
            f"error={self._error!r}, is_operational={self._is_operational})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Render the wire payload: ``{"httpCode": ..., "error": ...}``."""
        try:
            detail = jsonable_encoder(self._error)
        except (TypeError, ValueError):
            logger.warning("Detail of %s is not JSON serializable; sending its text", self.name)
            detail = {"message": str(self._error)}
        return {"httpCode": self._http_code, "error": detail}


class MethodNotAllowed(HttpError):
    kind = ErrorKind.METHOD_NOT_ALLOWED

    def __init__(self, error: Any, is_operational: bool) -> None:
        super().__init__(HTTPStatus.METHOD_NOT_ALLOWED.value, error, is_operational)


class NotFound(HttpError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, error: Any, is_operational: bool) -> None:
        super().__init__(HTTPStatus.NOT_FOUND.value, error, is_operational)


class DatabaseError(HttpError):
    """Persistence failure translated into the taxonomy; status set by the translator."""

    kind = ErrorKind.DATABASE_ERROR


def generic_payload(http_code: int) -> dict[str, Any]:
    """Payload without internal detail, used for untrusted failures."""
    try:
        phrase = HTTPStatus(http_code).phrase
    except ValueError:
        phrase = "Error"
    return {"httpCode": http_code, "error": {"message": phrase}}
