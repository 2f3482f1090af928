"""Inputs and outputs of the execution sandbox."""

import threading
from dataclasses import dataclass, field
from typing import Any

import pyarrow as pa
from pydantic import BaseModel, Field

from ..errors import QueryError
from ..sql.optimizer import OptimizationResult


class ExecutionOptions(BaseModel):
    """Options of a single query execution.

    Values outside the allowed ranges are refused
    with a :class:`pydantic.ValidationError`.
    """

    model_config = {"frozen": True}

    user_id: str | None = Field(default=None, description="User running the query, for rate limiting")
    use_cache: bool = Field(default=True, description="Look up and populate the result cache")
    timeout_ms: int = Field(default=10000, ge=1000, le=30000, description="Wall clock budget")
    max_rows: int = Field(default=1000, ge=1, le=10000, description="Maximum rows returned")


@dataclass
class QueryResult:
    """The outcome of running a query in the sandbox.

    ``data`` is only present on success, ``error`` only on failure.
    """

    success: bool
    data: pa.Table | None = None
    error: QueryError | None = None
    execution_time_ms: float = 0.0
    row_count: int = 0
    from_cache: bool = False
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    optimization: OptimizationResult | None = None
    executed_query: str | None = None

    @property
    def result_size_bytes(self) -> int:
        return self.data.nbytes if self.data is not None else 0

    def rows(self) -> list[dict[str, Any]]:
        """The result rows as dictionaries, empty on failure."""
        return self.data.to_pylist() if self.data is not None else []

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.rows() if self.data is not None else None,
            "columns": self.data.column_names if self.data is not None else [],
            "error": self.error.to_dict() if self.error is not None else None,
            "execution_time_ms": self.execution_time_ms,
            "row_count": self.row_count,
            "from_cache": self.from_cache,
            "warnings": list(self.warnings),
            "suggestions": list(self.suggestions),
            "optimization": self.optimization.to_dict() if self.optimization else None,
            "executed_query": self.executed_query,
        }


class ResourceUsage:
    """Cumulative counters of the work done by a sandbox."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.queries_executed = 0
            self.queries_failed = 0
            self.execution_time_ms = 0.0
            self.rows_processed = 0
            self.cache_hits = 0
            self.cache_misses = 0

    def record_success(self, execution_time_ms: float, rows: int) -> None:
        with self._lock:
            self.queries_executed += 1
            self.execution_time_ms += execution_time_ms
            self.rows_processed += rows

    def record_failure(self) -> None:
        with self._lock:
            self.queries_failed += 1

    def record_cache(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self.cache_hits += 1
            else:
                self.cache_misses += 1

    @property
    def cache_hit_rate(self) -> float:
        with self._lock:
            lookups = self.cache_hits + self.cache_misses
            return self.cache_hits / lookups if lookups else 0.0

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            total = self.queries_executed + self.queries_failed
            return {
                "total_queries": total,
                "successful_queries": self.queries_executed,
                "failed_queries": self.queries_failed,
                "execution_time_ms": self.execution_time_ms,
                "average_execution_time_ms": (
                    self.execution_time_ms / self.queries_executed
                    if self.queries_executed
                    else 0.0
                ),
                "rows_processed": self.rows_processed,
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
            }
