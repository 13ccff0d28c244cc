"""Transaction helpers around the Flask-SQLAlchemy session."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, TimeoutError as PoolTimeoutError

from .errors import StoreUnavailable
from .extensions import db

_logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; they were written as UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def is_transient(exc: BaseException) -> bool:
    """True for store failures that are safe to retry: timeouts, lost connections, lock contention."""
    if isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


@contextmanager
def unit_of_work() -> Iterator[None]:
    """Run the enclosed block as one transaction.

    Commits on success and rolls back on any exception. Retryable store errors
    are re-raised as :class:`StoreUnavailable`; everything else propagates as is.
    """
    try:
        yield
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        if is_transient(exc):
            _logger.warning("store unavailable: %s", exc.__class__.__name__)
            raise StoreUnavailable(str(exc)) from exc
        raise


@contextmanager
def reading() -> Iterator[None]:
    """Wrap queries that change nothing: no commit, only error translation.

    Entity queries inside should use ``populate_existing`` so rows cached in the
    session's identity map are refreshed from the store.
    """
    try:
        yield
    except Exception as exc:
        if is_transient(exc):
            db.session.rollback()
            _logger.warning("store unavailable: %s", exc.__class__.__name__)
            raise StoreUnavailable(str(exc)) from exc
        raise
