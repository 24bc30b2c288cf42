# mortiscope/core/utils/db.py
"""Helpers for classifying transient database errors and logging database URLs."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError

# Fragments the analysis service puts in an error body when its own database
# connection dropped. Such failures clear up on their own within seconds.
UPSTREAM_DATABASE_ERROR_MARKERS: tuple[str, ...] = (
    'Database connection error',
    'SSL connection has been closed',
    'psycopg.OperationalError',
)


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """Check whether a SQLAlchemy DBAPIError represents a connection disconnect."""
    connection_invalidated = bool(getattr(exc, 'connection_invalidated', False))
    is_disconnect = bool(getattr(exc, 'is_disconnect', False))
    return connection_invalidated or is_disconnect


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Check whether an exception is a transient connection error worth retrying."""
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return False


def mentions_upstream_database_error(body: str) -> bool:
    """Check whether a remote error body reports a dropped database connection."""
    return any(marker in body for marker in UPSTREAM_DATABASE_ERROR_MARKERS)


def mask_database_url(url: str) -> str:
    """Mask the password in a database URL for logging."""
    try:
        parsed = urlparse(url)
    except ValueError:
        parsed = None
    if parsed is not None and parsed.password:
        netloc = parsed.netloc.replace(f':{parsed.password}@', ':***@')
        return urlunparse(parsed._replace(netloc=netloc))
    if parsed is not None or '@' not in url:
        return url
    pre, post = url.split('@', 1)
    return f"{pre.rsplit(':', 1)[0]}:***@{post}"
