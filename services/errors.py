"""
Error taxonomy for the ingestion pipeline and classification of store failures.

Store failures are split into two classes only: transient ones are retried by the
upsert engine, permanent ones abort the current topic. translate_store_error() is
the single place that decides which is which.
"""
from __future__ import annotations

import asyncio
import errno
from typing import Optional, TYPE_CHECKING

from sqlalchemy import exc as sa_exc

if TYPE_CHECKING:
    from schemas.report import BatchReport


# SQLSTATE codes: serialization_failure, deadlock_detected
_TRANSIENT_SQLSTATES = {"40001", "40P01"}

_TRANSIENT_ERRNOS = {
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.ECONNABORTED,
    errno.EPIPE,
    errno.ETIMEDOUT,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
}

_TRANSIENT_MARKERS = (
    "deadlock",
    "could not serialize",
    "serialization failure",
    "database is locked",
    "database table is locked",
    "connection reset",
    "connection was closed",
    "server closed the connection",
    "connection refused",
    "lock timeout",
)


class IngestionError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(IngestionError):
    """Missing or invalid option; the run cannot start."""


class SourceError(IngestionError):
    """A corpus file could not be read or parsed."""


class StoreError(IngestionError):
    """Base class for failures reported by the relational store."""


class TransientStoreError(StoreError):
    """Connection reset, deadlock, serialization conflict or deadline breach."""


class PermanentStoreError(StoreError):
    """Constraint violation, unknown column or any failure retrying cannot fix."""


class StoreUnavailableError(StoreError):
    """The store could not be reached at all."""


class MissingReferenceError(IngestionError):
    """A record names a parent slug that does not exist in the store."""

    def __init__(self, record_key: str, message: str):
        super().__init__(message)
        self.record_key = record_key


class TopicError(IngestionError):
    """A topic transaction was aborted; carries the report of the failed batch."""

    def __init__(
        self,
        topic_slug: Optional[str],
        record_key: str,
        kind: str,
        message: str,
        report: Optional["BatchReport"] = None,
    ):
        super().__init__(f"{record_key}: {message}")
        self.topic_slug = topic_slug
        self.record_key = record_key
        self.kind = kind
        self.message = message
        self.report = report


def _sqlstate(error: BaseException) -> Optional[str]:
    for attr in ("sqlstate", "pgcode"):
        code = getattr(error, attr, None)
        if isinstance(code, str):
            return code
    return None


def is_transient(error: BaseException) -> bool:
    if isinstance(error, TransientStoreError):
        return True
    if isinstance(error, StoreError):
        return False
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, sa_exc.TimeoutError, sa_exc.DisconnectionError)):
        return True
    if isinstance(error, ConnectionError):
        return True
    if isinstance(error, OSError) and error.errno in _TRANSIENT_ERRNOS:
        return True
    if isinstance(error, sa_exc.DBAPIError):
        if error.connection_invalidated:
            return True
        if isinstance(error, (sa_exc.IntegrityError, sa_exc.ProgrammingError)):
            return False
        if _sqlstate(error.orig) in _TRANSIENT_SQLSTATES:
            return True
    text = str(error).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def translate_store_error(error: BaseException) -> StoreError:
    """Wrap any store-side exception in TransientStoreError or PermanentStoreError."""
    if isinstance(error, StoreError):
        return error
    if is_transient(error):
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return TransientStoreError("store operation exceeded its deadline")
        return TransientStoreError(str(error))
    return PermanentStoreError(str(error))
