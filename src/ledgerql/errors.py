"""Errors taxonomy shared by every component of the engine.

Every failure, no matter if it comes from the parser, the validator,
the sandbox or the indexer, is classified into one of the :class:`ErrorKind`
values. Each kind maps to a user facing message template and to a list
of suggestions on how to fix the query.

Internally components raise subclasses of :class:`LedgerQLError`,
each one bound to its kind. At the boundary of the sandbox the
:class:`ErrorClassifier` turns any exception into a :class:`QueryError`
record, which is what callers receive::

    >>> classifier = ErrorClassifier()
    >>> error = classifier.classify(QueryTimeoutError("Query exceeded 1000ms"))
    >>> error.kind, error.code
    (<ErrorKind.TIMEOUT_ERROR: 'TIMEOUT_ERROR'>, 'QUERY_TIMEOUT')
    >>> error.user_message
    'Query execution timed out. Try simplifying your query or adding more specific WHERE conditions.'

Exceptions that are not part of the hierarchy (like database driver errors)
are classified looking at their message.

The classifier also keeps the most recent errors in a bounded log
for diagnostics, see :meth:`ErrorClassifier.stats`.
"""

import collections
import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class ErrorKind(str, enum.Enum):
    SYNTAX_ERROR = "SYNTAX_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    RESOURCE_ERROR = "RESOURCE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_ERROR = "DATA_ERROR"


class ErrorCode:
    """Machine readable codes attached to errors."""

    EMPTY_QUERY = "EMPTY_QUERY"
    DANGEROUS_OPERATION = "DANGEROUS_OPERATION"
    MISSING_SELECT = "MISSING_SELECT"
    INVALID_SYNTAX = "INVALID_SYNTAX"
    UNKNOWN_TABLE = "UNKNOWN_TABLE"
    TABLE_NOT_ALLOWED = "TABLE_NOT_ALLOWED"
    QUERY_TOO_COMPLEX = "QUERY_TOO_COMPLEX"
    LIMIT_TOO_LARGE = "LIMIT_TOO_LARGE"
    QUERY_TIMEOUT = "QUERY_TIMEOUT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ACCESS_DENIED = "ACCESS_DENIED"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    DATA_INVALID = "DATA_INVALID"
    EXECUTION_FAILED = "EXECUTION_FAILED"


USER_MESSAGES = {
    ErrorKind.SYNTAX_ERROR: "SQL syntax error: {message}. Please check your query syntax.",
    ErrorKind.VALIDATION_ERROR: "Query validation failed: {message}",
    ErrorKind.TIMEOUT_ERROR: (
        "Query execution timed out. Try simplifying your query "
        "or adding more specific WHERE conditions."
    ),
    ErrorKind.RATE_LIMIT_ERROR: (
        "You have exceeded the rate limit. "
        "Please wait a moment before executing another query."
    ),
    ErrorKind.PERMISSION_ERROR: (
        "Access denied: {message}. You may not have permission to access the requested data."
    ),
    ErrorKind.RESOURCE_ERROR: (
        "Query requires too many resources. "
        "Try limiting your result set or simplifying the query."
    ),
    ErrorKind.CONNECTION_ERROR: "Unable to connect to the database. Please try again later.",
    ErrorKind.DATA_ERROR: "Data error: {message}. Please check your column names and data types.",
    ErrorKind.EXECUTION_ERROR: "Query execution failed: {message}",
}

SUGGESTIONS = {
    ErrorKind.SYNTAX_ERROR: (
        "Check for missing commas, parentheses, or quotes",
        "Verify that all SQL keywords are spelled correctly",
        "Ensure table and column names exist",
    ),
    ErrorKind.VALIDATION_ERROR: (
        "Only SELECT queries are supported",
        "Check the list of available tables",
    ),
    ErrorKind.TIMEOUT_ERROR: (
        "Add WHERE conditions to filter the data",
        "Use LIMIT to reduce the result set size",
        "Consider breaking complex queries into smaller parts",
    ),
    ErrorKind.RATE_LIMIT_ERROR: ("Wait a minute before running more queries",),
    ErrorKind.RESOURCE_ERROR: (
        "Reduce the LIMIT value",
        "Add more specific WHERE conditions",
        "Avoid SELECT * on large tables",
    ),
    ErrorKind.PERMISSION_ERROR: (
        "Check that you have access to the requested tables",
        "Only SELECT queries are allowed",
    ),
    ErrorKind.DATA_ERROR: (
        "Verify column names are correct",
        "Check data types in WHERE conditions",
        "Use appropriate operators for data types",
    ),
    ErrorKind.CONNECTION_ERROR: ("Try again in a few moments",),
    ErrorKind.EXECUTION_ERROR: (),
}

DEFAULT_CODES = {
    ErrorKind.SYNTAX_ERROR: ErrorCode.INVALID_SYNTAX,
    ErrorKind.VALIDATION_ERROR: ErrorCode.INVALID_SYNTAX,
    ErrorKind.EXECUTION_ERROR: ErrorCode.EXECUTION_FAILED,
    ErrorKind.TIMEOUT_ERROR: ErrorCode.QUERY_TIMEOUT,
    ErrorKind.RATE_LIMIT_ERROR: ErrorCode.RATE_LIMIT_EXCEEDED,
    ErrorKind.PERMISSION_ERROR: ErrorCode.ACCESS_DENIED,
    ErrorKind.RESOURCE_ERROR: ErrorCode.RESOURCE_EXHAUSTED,
    ErrorKind.CONNECTION_ERROR: ErrorCode.CONNECTION_FAILED,
    ErrorKind.DATA_ERROR: ErrorCode.DATA_INVALID,
}


@dataclass(frozen=True)
class QueryError:
    """An error reported to the caller of the engine."""

    kind: ErrorKind
    message: str
    code: str
    details: dict[str, Any] | None = None
    timestamp: float = field(default_factory=time.time)
    query: str | None = None
    user_id: str | None = None

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind].format(message=self.message)

    @property
    def suggestions(self) -> list[str]:
        return list(SUGGESTIONS[self.kind])

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp,
            "query": self.query,
            "user_id": self.user_id,
            "user_message": self.user_message,
            "suggestions": self.suggestions,
        }


class ErrorClassifier:
    """Turn exceptions into :class:`QueryError` and keep a log of the recent ones.

    The log is a ring buffer: once ``max_log_size`` errors are recorded,
    recording a new one drops the oldest.
    Safe to share between threads.
    """

    def __init__(self, max_log_size: int = 1000) -> None:
        """
        :param max_log_size: How many errors to retain for diagnostics.
        """
        self._log: collections.deque[QueryError] = collections.deque(maxlen=max_log_size)
        self._lock = threading.Lock()

    def classify(
        self,
        exc: BaseException,
        query: str | None = None,
        user_id: str | None = None,
    ) -> QueryError:
        """Build the :class:`QueryError` corresponding to an exception.

        Errors raised by the engine carry their kind and code,
        any other exception is classified by inspecting its message.
        """
        if isinstance(exc, LedgerQLError):
            kind, code, details = exc.kind, exc.code, exc.details
        else:
            kind = classify_message(str(exc))
            code, details = DEFAULT_CODES[kind], {"exception": type(exc).__name__}
        return QueryError(
            kind=kind,
            message=str(exc) or type(exc).__name__,
            code=code,
            details=details,
            query=query,
            user_id=user_id,
        )

    def record(self, error: QueryError) -> QueryError:
        """Append the error to the log, returns the error itself."""
        with self._lock:
            self._log.append(error)
        logger.info(
            "Query error recorded",
            kind=error.kind.value,
            code=error.code,
            user_id=error.user_id,
            error_message=error.message,
        )
        return error

    def recent(self, limit: int = 50) -> list[QueryError]:
        """The most recent errors, newest last."""
        with self._lock:
            errors = list(self._log)
        return errors[-limit:] if limit > 0 else []

    def stats(self, now: float | None = None) -> dict[str, Any]:
        """Summarize the recorded errors.

        ``recent_errors`` counts the errors of the last hour,
        ``top_errors`` are the five most frequent codes.
        """
        now = time.time() if now is None else now
        with self._lock:
            errors = list(self._log)

        by_kind = collections.Counter(e.kind.value for e in errors)
        by_code = collections.Counter(e.code for e in errors)
        return {
            "total_errors": len(errors),
            "errors_by_kind": {kind.value: by_kind.get(kind.value, 0) for kind in ErrorKind},
            "recent_errors": sum(1 for e in errors if now - e.timestamp < 3600),
            "top_errors": [
                {"code": code, "count": count} for code, count in by_code.most_common(5)
            ],
        }

    def clear(self) -> None:
        with self._lock:
            self._log.clear()


def classify_message(message: str) -> ErrorKind:
    """Guess the kind of an error from its message.

    Used for errors coming from collaborators, like the storage
    driver, which don't know about the taxonomy.
    """
    message = message.lower()
    if "timeout" in message or "timed out" in message or "canceling statement" in message:
        return ErrorKind.TIMEOUT_ERROR
    elif "rate limit" in message:
        return ErrorKind.RATE_LIMIT_ERROR
    elif "permission" in message or "access denied" in message or "not authorized" in message:
        return ErrorKind.PERMISSION_ERROR
    elif (
        "connection" in message
        or "could not connect" in message
        or "unable to open database" in message
    ):
        return ErrorKind.CONNECTION_ERROR
    elif "memory" in message or "resource" in message or "too many" in message:
        return ErrorKind.RESOURCE_ERROR
    elif "syntax" in message:
        return ErrorKind.SYNTAX_ERROR
    elif "column" in message or "datatype" in message or "data type" in message:
        return ErrorKind.DATA_ERROR
    return ErrorKind.EXECUTION_ERROR


class LedgerQLError(Exception):
    """Base class of the errors raised by the engine.

    Each subclass is bound to an :class:`ErrorKind`, the ``code``
    can be overridden per instance to be more specific.
    """

    kind = ErrorKind.EXECUTION_ERROR

    def __init__(
        self, message: str, code: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message)
        self.code = code or DEFAULT_CODES[self.kind]
        self.details = details


class QuerySyntaxError(LedgerQLError):
    """The query text can't be parsed."""

    kind = ErrorKind.SYNTAX_ERROR


class QueryValidationError(LedgerQLError):
    """The query is well formed but not acceptable, like a query on an unknown table."""

    kind = ErrorKind.VALIDATION_ERROR


class QueryExecutionError(LedgerQLError):
    """The storage failed to run the query."""

    kind = ErrorKind.EXECUTION_ERROR


class QueryTimeoutError(LedgerQLError):
    """The query didn't complete within its time budget."""

    kind = ErrorKind.TIMEOUT_ERROR


class RateLimitExceededError(LedgerQLError):
    """The user run more queries than allowed in the current window."""

    kind = ErrorKind.RATE_LIMIT_ERROR


class PermissionDeniedError(LedgerQLError):
    """The query attempts an operation or accesses a table that is not allowed."""

    kind = ErrorKind.PERMISSION_ERROR


class ResourceLimitError(LedgerQLError):
    """The query is too complex or would return too many rows."""

    kind = ErrorKind.RESOURCE_ERROR


class StorageConnectionError(LedgerQLError):
    """The storage can't be reached."""

    kind = ErrorKind.CONNECTION_ERROR


class DataError(LedgerQLError):
    """The query references columns or values that don't match the data."""

    kind = ErrorKind.DATA_ERROR


EXCEPTION_CLASSES: dict[ErrorKind, type[LedgerQLError]] = {
    ErrorKind.SYNTAX_ERROR: QuerySyntaxError,
    ErrorKind.VALIDATION_ERROR: QueryValidationError,
    ErrorKind.EXECUTION_ERROR: QueryExecutionError,
    ErrorKind.TIMEOUT_ERROR: QueryTimeoutError,
    ErrorKind.RATE_LIMIT_ERROR: RateLimitExceededError,
    ErrorKind.PERMISSION_ERROR: PermissionDeniedError,
    ErrorKind.RESOURCE_ERROR: ResourceLimitError,
    ErrorKind.CONNECTION_ERROR: StorageConnectionError,
    ErrorKind.DATA_ERROR: DataError,
}


def error_from_message(message: str) -> LedgerQLError:
    """Build the engine error matching a message of a collaborator, like a database driver."""
    return EXCEPTION_CLASSES[classify_message(message)](message)
