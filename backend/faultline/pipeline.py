"""Error pipeline: ordered stages, the trusted-error gate, and the ASGI middleware.

A stage is ``async stage(error, request, sink, call_next)``. Awaiting
``call_next(err)`` forwards ``err`` to the following stage; ``call_next()``
resolves it. An error forwarded past the last stage escalates.
"""
from __future__ import annotations

import json
import logging
import traceback
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from starlette.requests import Request
from starlette.types import ASGIApp, Receive, Scope, Send

from .dispatcher import ASGIResponseSink, ErrorHandler, ResponseSink
from .http_errors import HttpError

logger = logging.getLogger(__name__)

CallNext = Callable[..., Awaitable[None]]
ErrorStage = Callable[[BaseException, Request, ResponseSink, CallNext], Awaitable[None]]


class ErrorPipeline:
    def __init__(self, stages: Sequence[ErrorStage]) -> None:
        self._stages = list(stages)

    async def run(
        self, error: BaseException, request: Request, sink: ResponseSink
    ) -> BaseException | None:
        """Run ``error`` through the stages; return it if it escalates, else ``None``."""
        escalated: list[BaseException] = []

        async def dispatch(index: int, current: BaseException) -> None:
            if index == len(self._stages):
                escalated.append(current)
                return

            async def call_next(next_error: BaseException | None = None) -> None:
                if next_error is not None:
                    await dispatch(index + 1, next_error)

            await self._stages[index](current, request, sink, call_next)

        await dispatch(0, error)
        return escalated[0] if escalated else None


class TrustedErrorGate:
    """Single choke point deciding response versus escalation."""

    source = "Error message from the centralized error-handling component."

    def __init__(self, handler: ErrorHandler) -> None:
        self._handler = handler

    async def __call__(
        self, error: BaseException, request: Request, sink: ResponseSink, call_next: CallNext
    ) -> None:
        trusted = self._handler.is_trusted_error(error)
        info: Any = error.error if trusted and isinstance(error, HttpError) else str(error)

        record = {
            "source": self.source,
            "info": info,
            "name": type(error).__name__,
            "stack": "".join(traceback.format_exception(error)),
        }
        logger.error(json.dumps(record, default=str))

        if not trusted:
            await call_next(error)
            return
        self._handler.handle_error(error, sink)


class ErrorGateMiddleware:
    """Routes exceptions escaping the app through the error pipeline.

    Escalated errors go to ``on_untrusted`` and are then re-raised so the
    server applies its default handling.
    """

    def __init__(
        self,
        app: ASGIApp,
        pipeline: ErrorPipeline,
        on_untrusted: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.app = app
        self.pipeline = pipeline
        self.on_untrusted = on_untrusted

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        sink = ASGIResponseSink(scope, receive, send)
        try:
            await self.app(scope, receive, sink.send)
        except Exception as exc:
            escalated = await self.pipeline.run(exc, Request(scope, receive), sink)
            await sink.flush()
            if escalated is None:
                return
            if self.on_untrusted is not None:
                self.on_untrusted(escalated)
            if escalated is exc:
                raise
            raise escalated from exc
