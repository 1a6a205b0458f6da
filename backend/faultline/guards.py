"""Pipeline guards that synthesize taxonomy errors from routing state."""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from fastapi import APIRouter, Depends, Request
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocketClose

from .dispatcher import ASGIResponseSink
from .http_errors import MethodNotAllowed, NotFound

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


def allowed_http_methods(methods: Sequence[str]) -> Callable[[Request], None]:
    """Dependency raising ``MethodNotAllowed`` for methods outside ``methods``."""
    allowed = frozenset(method.upper() for method in methods)

    def guard(request: Request) -> None:
        if request.method not in allowed:
            msg = f"{request.method} request is not allowed at {request.url.path}"
            logger.warning(msg)
            raise MethodNotAllowed({"msg": msg}, True)

    return guard


def add_method_guard(router: APIRouter, path: str, methods: Sequence[str]) -> None:
    """Answer every method outside ``methods`` on ``path`` with a 405 error.

    Register after the real routes for ``path``.
    """
    allowed = {method.upper() for method in methods}
    blocked = [method for method in HTTP_METHODS if method not in allowed]
    if not blocked:
        return

    @router.api_route(
        path,
        methods=blocked,
        include_in_schema=False,
        dependencies=[Depends(allowed_http_methods(methods))],
    )
    def method_not_allowed() -> None:
        return None


class NotFoundFallback:
    """Router default: answers unmatched paths with a 404 ``NotFound`` payload.

    The response is written directly; this case never reaches the gate.
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "websocket":
            await WebSocketClose()(scope, receive, send)
            return

        path = scope["path"]
        sink = ASGIResponseSink(scope, receive, send)
        not_found = NotFound({"path": path}, True)
        logger.info("Error 404. Cannot find %s route.", path)
        sink.send_json(not_found.http_code, not_found.to_dict())
        await sink.flush()
