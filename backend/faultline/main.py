"""FastAPI application."""
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import Settings, settings
from .dispatcher import ErrorHandler
from .guards import NotFoundFallback
from .logging_config import configure_logging
from .persistence import DatabaseErrorTranslator
from .pipeline import ErrorGateMiddleware, ErrorPipeline, TrustedErrorGate
from .routers import widgets
from .supervisor import FatalErrorSupervisor


def create_app(
    app_settings: Settings | None = None,
    *,
    supervisor: FatalErrorSupervisor | None = None,
) -> FastAPI:
    """Build the application with the error layer wired in.

    One ``ErrorHandler`` is shared by the gate, the middleware escalation path
    and the supervisor. Process hooks are installed by the lifespan.
    """
    app_settings = app_settings or settings
    configure_logging(app_settings.LOG_LEVEL)

    if supervisor is None:
        supervisor = FatalErrorSupervisor(
            ErrorHandler(),
            exit_code=app_settings.FATAL_EXIT_CODE,
            abort_delay=app_settings.FORCED_ABORT_DELAY_SECONDS,
        )
    handler = supervisor.handler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        supervisor.install()
        supervisor.watch_event_loop(asyncio.get_running_loop())
        yield
        supervisor.uninstall()

    app = FastAPI(
        title=app_settings.APP_NAME,
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.error_handler = handler
    app.state.supervisor = supervisor

    pipeline = ErrorPipeline([DatabaseErrorTranslator(), TrustedErrorGate(handler)])
    app.add_middleware(
        ErrorGateMiddleware,
        pipeline=pipeline,
        on_untrusted=supervisor.uncaught_exception,
    )
    # Reached only when no route matched
    app.router.default = NotFoundFallback()

    app.include_router(widgets.router, prefix="/api/v1")

    @app.get("/api/v1/system/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "version": "1.0.0"}

    return app


app = create_app()
