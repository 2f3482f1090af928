"""Sandboxed execution of untrusted queries.

The :class:`ledgerql.sandbox.engine.ExecutionSandbox` combines the SQL
components with a result cache (:mod:`ledgerql.sandbox.cache`) and
per user rate limiting (:mod:`ledgerql.sandbox.ratelimit`) to run
the queries of users against the ledger store.
"""

from .cache import CacheEntry, ResultCache
from .engine import ExecutionSandbox, inject_limit
from .ratelimit import UserRateLimiter
from .results import ExecutionOptions, QueryResult, ResourceUsage

__all__ = (
    "ExecutionSandbox",
    "ExecutionOptions",
    "QueryResult",
    "ResourceUsage",
    "ResultCache",
    "CacheEntry",
    "UserRateLimiter",
    "inject_limit",
)
