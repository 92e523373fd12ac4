"""Classify database errors the worker loop can survive by backing off."""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import OperationalError as SAOperationalError

_TRANSIENT = (OperationalError, InterfaceError, SAOperationalError)


def is_transient_db_error(exc: BaseException) -> bool:
    """Connection drops and server restarts; never constraint or data errors."""
    if isinstance(exc, _TRANSIENT):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated) or isinstance(exc.orig, _TRANSIENT)
    return False
