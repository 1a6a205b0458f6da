"""Translation of SQLAlchemy failures into the HTTP error taxonomy.

Persistence failures are expected outcomes (a duplicate key is a normal
business result), so every translated error is operational, including the
ones answered with 500. Unrecognized errors pass through untouched and end up
untrusted.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from http import HTTPStatus
from typing import Any

from sqlalchemy import exc as sa_exc

from .http_errors import DatabaseError

logger = logging.getLogger(__name__)

# SQLSTATE codes (PostgreSQL and any driver exposing them)
SQLSTATE_QUERY_CANCELED = "57014"
SQLSTATE_UNIQUE_VIOLATION = "23505"
SQLSTATE_FOREIGN_KEY_VIOLATION = "23503"

_SQLITE_UNIQUE = "UNIQUE constraint failed"
_SQLITE_FOREIGN_KEY = "FOREIGN KEY constraint failed"
_SQLITE_LOCKED = "database is locked"

_KEY_DETAIL_RE = re.compile(r"Key \((?P<fields>[^)]*)\)=\((?P<value>.*?)\)")
_TABLE_DETAIL_RE = re.compile(r'table "(?P<table>[^"]+)"')


class PersistenceFailure(str, Enum):
    TIMEOUT = "timeout"
    UNIQUE_CONSTRAINT = "unique_constraint"
    FOREIGN_KEY_CONSTRAINT = "foreign_key_constraint"
    OTHER = "other"


def _driver_error(exc: BaseException) -> Any:
    return getattr(exc, "orig", None)


def _sqlstate(exc: BaseException) -> str | None:
    orig = _driver_error(exc)
    if orig is None:
        return None
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return str(code) if code else None


def _first_line(value: object) -> str:
    lines = str(value).strip().splitlines()
    return lines[0] if lines else ""


def _message(exc: BaseException) -> str:
    """Driver message without the SQL statement or bound parameters."""
    orig = _driver_error(exc)
    if orig is not None:
        return _first_line(orig)
    # str() of a SQLAlchemyError appends a documentation link
    return _first_line(exc.args[0] if exc.args else exc)


def classify_persistence_error(exc: BaseException) -> PersistenceFailure | None:
    """Map a persistence exception to its failure category, ``None`` if unrecognized."""
    if not isinstance(exc, sa_exc.SQLAlchemyError):
        return None

    state = _sqlstate(exc)
    message = _message(exc)

    if isinstance(exc, sa_exc.TimeoutError):
        return PersistenceFailure.TIMEOUT
    if isinstance(exc, sa_exc.DBAPIError) and (
        state == SQLSTATE_QUERY_CANCELED or _SQLITE_LOCKED in message
    ):
        return PersistenceFailure.TIMEOUT

    if isinstance(exc, sa_exc.IntegrityError):
        if state == SQLSTATE_UNIQUE_VIOLATION or message.startswith(_SQLITE_UNIQUE):
            return PersistenceFailure.UNIQUE_CONSTRAINT
        if state == SQLSTATE_FOREIGN_KEY_VIOLATION or message.startswith(_SQLITE_FOREIGN_KEY):
            return PersistenceFailure.FOREIGN_KEY_CONSTRAINT

    return PersistenceFailure.OTHER


def _diag(exc: BaseException, attr: str) -> str | None:
    diag = getattr(_driver_error(exc), "diag", None)
    value = getattr(diag, attr, None) if diag is not None else None
    return str(value) if value else None


def _split_columns(text: str) -> list[str]:
    return [part.strip() for part in text.split(",") if part.strip()]


def _unique_detail(exc: BaseException, message: str) -> dict[str, Any]:
    constraint = _diag(exc, "constraint_name")
    fields: list[str] = []

    match = _KEY_DETAIL_RE.search(_diag(exc, "message_detail") or "")
    if match:
        fields = _split_columns(match.group("fields"))
    elif message.startswith(_SQLITE_UNIQUE):
        # "UNIQUE constraint failed: widgets.name, widgets.org_id"
        columns = message.partition(":")[2]
        fields = [column.rpartition(".")[2] for column in _split_columns(columns)]

    return {
        "message": message,
        "errors": [constraint] if constraint else [],
        "fields": fields,
    }


def _foreign_key_detail(exc: BaseException, message: str) -> dict[str, Any]:
    detail_text = _diag(exc, "message_detail") or ""
    fields: list[str] = []
    value = None
    table = None

    key_match = _KEY_DETAIL_RE.search(detail_text)
    if key_match:
        fields = _split_columns(key_match.group("fields"))
        value = key_match.group("value")
    table_match = _TABLE_DETAIL_RE.search(detail_text)
    if table_match:
        table = table_match.group("table")

    return {
        "message": message,
        "fields": fields,
        "table": table or _diag(exc, "table_name"),
        "value": value,
        "index": _diag(exc, "constraint_name"),
    }


def translate_persistence_error(exc: BaseException) -> BaseException:
    """Return the taxonomy error for ``exc``, or ``exc`` itself when unrecognized."""
    failure = classify_persistence_error(exc)
    if failure is None:
        return exc

    message = _message(exc)
    if failure is PersistenceFailure.TIMEOUT:
        return DatabaseError(HTTPStatus.GATEWAY_TIMEOUT.value, {"message": message}, True)
    if failure is PersistenceFailure.UNIQUE_CONSTRAINT:
        return DatabaseError(HTTPStatus.CONFLICT.value, _unique_detail(exc, message), True)
    if failure is PersistenceFailure.FOREIGN_KEY_CONSTRAINT:
        return DatabaseError(
            HTTPStatus.INTERNAL_SERVER_ERROR.value, _foreign_key_detail(exc, message), True
        )
    return DatabaseError(HTTPStatus.INTERNAL_SERVER_ERROR.value, {"message": message}, True)


class DatabaseErrorTranslator:
    """Pipeline stage forwarding persistence failures as ``DatabaseError``."""

    async def __call__(self, error, request, sink, call_next) -> None:
        translated = translate_persistence_error(error)
        if translated is not error:
            logger.error("DatabaseErrorHandler: %s", translated)
        await call_next(translated)
