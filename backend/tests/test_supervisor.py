from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
import textwrap
import threading
import time
from pathlib import Path
from types import SimpleNamespace

import pytest

import faultline
from faultline.dispatcher import ErrorHandler
from faultline.http_errors import NotFound
from faultline.supervisor import FatalErrorSupervisor, SupervisorState


class _ProcessStub:
    """Records exit/abort calls instead of ending the test run."""

    def __init__(self) -> None:
        self.exits: list[int] = []
        self.aborts = 0
        self.aborted = threading.Event()

    def exit(self, code: int) -> None:
        self.exits.append(code)

    def abort(self) -> None:
        self.aborts += 1
        self.aborted.set()


def _supervisor(process: _ProcessStub, abort_delay: float = 60.0) -> FatalErrorSupervisor:
    return FatalErrorSupervisor(
        ErrorHandler(),
        abort_delay=abort_delay,
        exit_process=process.exit,
        abort_process=process.abort,
    )


def test_unhandled_rejection_is_logged_and_never_fatal(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="faultline")
    process = _ProcessStub()
    supervisor = _supervisor(process)

    for reason in (RuntimeError("lost task"), NotFound({"path": "/x"}, False), SystemError("bad")):
        supervisor.unhandled_rejection(reason, origin="<Task pending>")

    assert process.exits == []
    assert process.aborts == 0
    assert supervisor.state is SupervisorState.RUNNING
    assert any("Unhandled Rejection at: '<Task pending>'" in r.getMessage() for r in caplog.records)


def test_unhandled_rejection_accepts_non_exception_reason(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="faultline")
    process = _ProcessStub()
    supervisor = _supervisor(process)

    supervisor.unhandled_rejection("plain string", origin="<Future>")
    supervisor.unhandled_rejection(None)

    records = [r for r in caplog.records if r.getMessage().startswith("Unhandled Rejection")]
    assert len(records) == 2
    assert "reason: plain string" in records[0].getMessage()
    assert records[0].exc_info is None
    assert process.exits == []


def test_loop_exception_handler_routes_exceptions_to_rejection_path(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="faultline")
    process = _ProcessStub()
    supervisor = _supervisor(process)
    defaults = []
    loop = SimpleNamespace(default_exception_handler=defaults.append)

    supervisor.handle_loop_exception(loop, {"message": "Task exception was never retrieved", "exception": ValueError("x"), "task": "t1"})
    supervisor.handle_loop_exception(loop, {"message": "plain message"})

    assert defaults == [{"message": "plain message"}]
    assert process.exits == []
    assert any("reason: x" in r.getMessage() for r in caplog.records)


def test_uncaught_untrusted_error_exits_with_code_1() -> None:
    process = _ProcessStub()
    supervisor = _supervisor(process)

    supervisor.uncaught_exception(RuntimeError("corrupted state"))

    assert process.exits == [1]
    assert supervisor.state is SupervisorState.GRACEFUL_SHUTDOWN


def test_uncaught_trusted_error_does_not_terminate() -> None:
    process = _ProcessStub()
    supervisor = _supervisor(process)

    supervisor.uncaught_exception(NotFound({"path": "/x"}, True))

    assert process.exits == []
    assert supervisor.state is SupervisorState.RUNNING


def test_forced_abort_fires_once_when_exit_stalls() -> None:
    process = _ProcessStub()
    supervisor = _supervisor(process, abort_delay=0.05)

    supervisor.uncaught_exception(RuntimeError("first"))
    assert process.aborted.wait(5)
    supervisor.uncaught_exception(RuntimeError("second"))
    time.sleep(0.2)

    assert process.exits == [1]
    assert process.aborts == 1
    assert supervisor.state is SupervisorState.FORCED_ABORT


def test_default_exit_raises_system_exit_outside_event_loop() -> None:
    process = _ProcessStub()
    supervisor = FatalErrorSupervisor(ErrorHandler(), abort_delay=60, abort_process=process.abort)

    with pytest.raises(SystemExit) as exc_info:
        supervisor.uncaught_exception(RuntimeError("fatal"))

    assert exc_info.value.code == 1


def test_default_exit_unwinds_watched_event_loop() -> None:
    process = _ProcessStub()
    supervisor = FatalErrorSupervisor(
        ErrorHandler(), exit_code=3, abort_delay=60, abort_process=process.abort
    )

    async def serve() -> None:
        supervisor.watch_event_loop(asyncio.get_running_loop())
        supervisor.uncaught_exception(RuntimeError("fatal inside request"))
        await asyncio.sleep(1)

    with pytest.raises(SystemExit) as exc_info:
        asyncio.run(serve())

    assert exc_info.value.code == 3


def test_install_registers_and_restores_process_hooks(monkeypatch) -> None:
    previous_calls = []
    monkeypatch.setattr(sys, "excepthook", lambda *args: previous_calls.append(args))
    monkeypatch.setattr(threading, "excepthook", lambda args: previous_calls.append(args))
    previous_sys_hook = sys.excepthook
    previous_thread_hook = threading.excepthook
    previous_sigterm = signal.getsignal(signal.SIGTERM)
    process = _ProcessStub()
    supervisor = _supervisor(process)

    supervisor.install()
    try:
        assert sys.excepthook is not previous_sys_hook
        assert signal.getsignal(signal.SIGTERM) is not previous_sigterm
        sys.excepthook(KeyboardInterrupt, KeyboardInterrupt(), None)
        assert len(previous_calls) == 1
        assert process.exits == []

        worker = threading.Thread(target=lambda: 1 / 0)
        worker.start()
        worker.join()
        assert process.exits == [1]
    finally:
        supervisor.uninstall()

    assert sys.excepthook is previous_sys_hook
    assert threading.excepthook is previous_thread_hook
    assert signal.getsignal(signal.SIGTERM) is previous_sigterm


def _run_installed(body: str) -> subprocess.CompletedProcess:
    script = textwrap.dedent(
        """
        from faultline.dispatcher import ErrorHandler
        from faultline.supervisor import FatalErrorSupervisor

        supervisor = FatalErrorSupervisor(ErrorHandler(), abort_delay=5.0)
        supervisor.install()
        """
    ) + textwrap.dedent(body)
    backend_dir = str(Path(faultline.__file__).resolve().parents[1])
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [backend_dir, env.get("PYTHONPATH")]))
    return subprocess.run(
        [sys.executable, "-c", script],
        env=env,
        capture_output=True,
        text=True,
        timeout=30,
    )


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signals")
def test_fatal_error_in_worker_thread_exits_process_with_code_1() -> None:
    result = _run_installed(
        """
        import threading
        import time

        threading.Thread(target=lambda: 1 / 0).start()
        time.sleep(10)
        """
    )

    assert result.returncode == 1, result.stderr
    assert "Fatal error; exiting with code 1" in result.stderr
    assert "aborting" not in result.stderr


def test_fatal_error_in_main_thread_exits_process_with_code_1() -> None:
    result = _run_installed(
        """
        raise RuntimeError("fatal at startup")
        """
    )

    assert result.returncode == 1, result.stderr
    assert "aborting" not in result.stderr
