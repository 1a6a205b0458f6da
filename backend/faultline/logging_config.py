"""Logging setup for the error-handling core.

The root logger only gets a stdout handler when nothing else (uvicorn,
pytest) configured it first. Levels are applied to the ``faultline`` tree
so the error pipeline stays visible while noisy library loggers are capped.
"""
import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

QUIET_LOGGERS = ("sqlalchemy.engine", "uvicorn.access")


def configure_logging(level: str = "INFO") -> logging.Logger:
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(resolved)

    package_logger = logging.getLogger("faultline")
    package_logger.setLevel(resolved)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return package_logger
