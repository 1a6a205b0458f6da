"""Error dispatcher: decides trust, logs, and writes the HTTP response."""
from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, Protocol

from fastapi.responses import JSONResponse
from starlette.types import Message, Receive, Scope, Send

from .http_errors import HttpError, generic_payload

logger = logging.getLogger(__name__)


class ResponseSink(Protocol):
    """Where the dispatcher writes a response for the current request."""

    @property
    def headers_sent(self) -> bool: ...

    def send_json(self, status_code: int, content: Any) -> None: ...


class ASGIResponseSink:
    """Tracks the ASGI response of one request and holds the error response.

    ``send`` is handed to the downstream app in place of the server's send, so
    the sink knows when the response has started. ``send_json`` only commits
    the response; ``flush`` writes it.
    """

    def __init__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self._scope = scope
        self._receive = receive
        self._send = send
        self._started = False
        self._pending: JSONResponse | None = None

    @property
    def headers_sent(self) -> bool:
        return self._started or self._pending is not None

    async def send(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self._started = True
        await self._send(message)

    def send_json(self, status_code: int, content: Any) -> None:
        if self.headers_sent:
            logger.debug("Response already sent; skipping %s", status_code)
            return
        self._pending = JSONResponse(status_code=status_code, content=content)

    async def flush(self) -> None:
        if self._pending is None or self._started:
            return
        response, self._pending = self._pending, None
        self._started = True
        await response(self._scope, self._receive, self._send)


class ErrorHandler:
    """Stateless error classification and dispatch."""

    def is_trusted_error(self, error: BaseException) -> bool:
        if isinstance(error, HttpError):
            return error.is_operational
        return False

    def handle_error(self, error: BaseException, sink: ResponseSink | None = None) -> None:
        """Log ``error`` and answer through ``sink`` when one is given. Never raises."""
        if isinstance(error, HttpError):
            logger.warning("HttpError %s: %s", error.http_code, error)
            if error.is_operational:
                payload = error.to_dict()
            else:
                payload = generic_payload(error.http_code)
            self._write(sink, error.http_code, payload)

        if sink is None or not sink.headers_sent:
            logger.error("Server error: %r", error)
            self._write(
                sink,
                HTTPStatus.INTERNAL_SERVER_ERROR.value,
                generic_payload(HTTPStatus.INTERNAL_SERVER_ERROR.value),
            )

    @staticmethod
    def _write(sink: ResponseSink | None, status_code: int, payload: dict[str, Any]) -> None:
        if sink is None or sink.headers_sent:
            return
        try:
            sink.send_json(status_code, payload)
        except Exception:
            logger.exception("Failed to write %s error response", status_code)
