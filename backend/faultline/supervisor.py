"""Process-level handling of failures that escape every request.

Unhandled asyncio failures are only logged. Uncaught untrusted errors start a
graceful shutdown with a forced abort armed as a liveness guard.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

from .dispatcher import ErrorHandler

logger = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    RUNNING = "running"
    GRACEFUL_SHUTDOWN = "graceful_shutdown"
    FORCED_ABORT = "forced_abort"


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class FatalErrorSupervisor:
    def __init__(
        self,
        handler: ErrorHandler,
        *,
        exit_code: int = 1,
        abort_delay: float = 1.0,
        exit_process: Callable[[int], None] | None = None,
        abort_process: Callable[[], None] = os.abort,
    ) -> None:
        self._handler = handler
        self._exit_code = exit_code
        self._abort_delay = abort_delay
        self._exit_process = exit_process or self._graceful_exit
        self._abort_process = abort_process

        self._lock = threading.Lock()
        self._state = SupervisorState.RUNNING
        self._abort_timer: threading.Timer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending_exit_code: int | None = None
        self._sigterm_installed = False
        self._previous_sigterm: Any = None
        self._previous_excepthook: Callable[..., Any] | None = None
        self._previous_threading_excepthook: Callable[..., Any] | None = None

    @property
    def handler(self) -> ErrorHandler:
        return self._handler

    @property
    def state(self) -> SupervisorState:
        return self._state

    def unhandled_rejection(self, reason: Any, origin: Any = None) -> None:
        """Log a failure nobody awaited. Never terminates the process."""
        logger.error(
            "Unhandled Rejection at: %r, reason: %s",
            origin,
            reason,
            exc_info=(type(reason), reason, reason.__traceback__)
            if isinstance(reason, BaseException)
            else None,
        )

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        """asyncio exception handler."""
        exception = context.get("exception")
        if exception is None:
            loop.default_exception_handler(context)
            return
        origin = context.get("task") or context.get("future") or context.get("handle")
        self.unhandled_rejection(exception, origin)

    def uncaught_exception(self, error: BaseException) -> None:
        """Crash the process when ``error`` is not trusted."""
        logger.error(
            "Uncaught exception: %s",
            error,
            exc_info=(type(error), error, error.__traceback__),
        )
        self._handler.handle_error(error)
        if not self._handler.is_trusted_error(error):
            self._shutdown()

    def _shutdown(self) -> None:
        with self._lock:
            if self._state is not SupervisorState.RUNNING:
                return
            self._state = SupervisorState.GRACEFUL_SHUTDOWN
            timer = threading.Timer(self._abort_delay, self._force_abort)
            # must not keep the process alive on its own
            timer.daemon = True
            self._abort_timer = timer
            timer.start()

        logger.critical("Fatal error; exiting with code %s", self._exit_code)
        self._exit_process(self._exit_code)

    def _force_abort(self) -> None:
        with self._lock:
            if self._state is not SupervisorState.GRACEFUL_SHUTDOWN:
                return
            self._state = SupervisorState.FORCED_ABORT
        logger.critical(
            "Graceful shutdown did not finish within %.1fs; aborting", self._abort_delay
        )
        self._abort_process()

    def _graceful_exit(self, exit_code: int) -> None:
        loop = self._loop
        if loop is not None and loop.is_running():
            # SystemExit raised from a loop callback unwinds the server's loop
            loop.call_soon_threadsafe(sys.exit, exit_code)
            return
        if threading.current_thread() is threading.main_thread():
            sys.exit(exit_code)
        # SystemExit here would only end this thread; the main thread exits instead
        self._pending_exit_code = exit_code
        signal.pthread_kill(threading.main_thread().ident, signal.SIGTERM)

    def _on_sigterm(self, signum, frame) -> None:
        if self._pending_exit_code is not None:
            sys.exit(self._pending_exit_code)
        previous = self._previous_sigterm
        if callable(previous):
            previous(signum, frame)
        elif previous != signal.SIG_IGN:
            signal.signal(signal.SIGTERM, signal.SIG_DFL)
            os.kill(os.getpid(), signal.SIGTERM)

    def _excepthook(self, exc_type, exc_value, exc_traceback) -> None:
        if issubclass(exc_type, (KeyboardInterrupt, SystemExit)) or exc_value is None:
            if self._previous_excepthook is not None:
                self._previous_excepthook(exc_type, exc_value, exc_traceback)
            return
        self.uncaught_exception(exc_value)

    def _threading_excepthook(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_value is None or issubclass(args.exc_type, SystemExit):
            if self._previous_threading_excepthook is not None:
                self._previous_threading_excepthook(args)
            return
        self.uncaught_exception(args.exc_value)

    def install(self) -> None:
        """Register the process-wide hooks. Call once at startup."""
        if self._previous_excepthook is not None:
            return
        self._previous_excepthook = sys.excepthook
        self._previous_threading_excepthook = threading.excepthook
        sys.excepthook = self._excepthook
        threading.excepthook = self._threading_excepthook

        # A server owns SIGTERM; its fatal exits go through the watched loop
        if threading.current_thread() is threading.main_thread() and not _loop_running():
            self._previous_sigterm = signal.signal(signal.SIGTERM, self._on_sigterm)
            self._sigterm_installed = True

    def uninstall(self) -> None:
        if self._sigterm_installed and threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, self._previous_sigterm)
            self._sigterm_installed = False
            self._previous_sigterm = None
        if self._loop is not None and not self._loop.is_closed():
            self._loop.set_exception_handler(None)
        self._loop = None
        if self._previous_excepthook is None:
            return
        sys.excepthook = self._previous_excepthook
        threading.excepthook = self._previous_threading_excepthook
        self._previous_excepthook = None
        self._previous_threading_excepthook = None

    def watch_event_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Log unhandled loop failures and exit through ``loop`` on fatal errors."""
        self._loop = loop
        loop.set_exception_handler(self.handle_loop_exception)
