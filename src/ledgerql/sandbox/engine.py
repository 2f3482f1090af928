"""The execution sandbox, running untrusted queries against the ledger store.

The sandbox is where all the components of the engine come together.
Every query goes through the same sequence of steps, each of which can
stop the query with an error:

1. **Rate limit**: each user can run a fixed number of queries per minute.
2. **Cache**: if the same query was run recently, its rows are returned immediately.
3. **Validation**: the :class:`ledgerql.sql.validator.QueryValidator` checks the text
   for dangerous operations and the :class:`ledgerql.sql.parser.Parser` parses it.
4. **Permissions**: every table referenced by the plan must be in the allowlist.
5. **Resource limits**: plans too complex or asking for too many rows are refused.
6. **Optimization**: the :class:`ledgerql.sql.optimizer.QueryOptimizer` analyzes the plan,
   its output is only advisory.
7. **Execution**: the query runs in a worker thread bounded by a timeout, a LIMIT is added
   to queries without one and the rows are truncated to ``max_rows``.
8. **Cache population**: fast enough queries are cached for the next callers.

The sandbox never raises, any failure is returned as a :class:`ledgerql.sandbox.results.QueryResult`
carrying a :class:`ledgerql.errors.QueryError`::

    sandbox = ExecutionSandbox(storage)
    result = sandbox.execute_query(
        "SELECT block_number, timestamp FROM blocks ORDER BY block_number DESC",
        ExecutionOptions(user_id="alice", max_rows=10),
    )
    if result.success:
        print(result.data)
    else:
        print(result.error.user_message)

Timeouts abandon the storage call rather than cancelling it:
the worker thread keeps running until the database returns,
but the caller receives a ``TIMEOUT_ERROR`` immediately.
On PostgreSQL the server side ``statement_timeout`` eventually stops the query too.
"""

import concurrent.futures
import re
import time

import structlog

from ..errors import (
    EXCEPTION_CLASSES,
    ErrorClassifier,
    ErrorCode,
    PermissionDeniedError,
    QueryError,
    QuerySyntaxError,
    QueryTimeoutError,
    QueryValidationError,
    RateLimitExceededError,
    ResourceLimitError,
)
from ..schema import LEDGER_SCHEMA, SchemaRegistry
from ..sql.optimizer import OptimizationResult, QueryOptimizer
from ..sql.parser import Parser
from ..sql.query import ParsedQuery
from ..sql.validator import QueryValidator, ValidationResult
from ..storage.database import LedgerStorage
from .cache import ResultCache
from .ratelimit import UserRateLimiter
from .results import ExecutionOptions, QueryResult, ResourceUsage

logger = structlog.get_logger(__name__)

MAX_COMPLEXITY = 30
MAX_LIMIT = 10000
CACHEABLE_EXECUTION_MS = 5000
TRAILING_OFFSET = re.compile(r"\s+OFFSET\s+\d+\s*$", re.IGNORECASE)


class ExecutionSandbox:
    """Run queries enforcing security and resource limits.

    The sandbox owns the state shared between requests: the result cache,
    the rate limiter, the resource counters and the error log.
    All of them are thread safe, so a single sandbox can serve concurrent requests.
    """

    def __init__(
        self,
        storage: LedgerStorage,
        *,
        registry: SchemaRegistry = LEDGER_SCHEMA,
        allowed_tables: list[str] | None = None,
        cache: ResultCache | None = None,
        rate_limiter: UserRateLimiter | None = None,
        classifier: ErrorClassifier | None = None,
        max_complexity: int = MAX_COMPLEXITY,
        max_limit: int = MAX_LIMIT,
        cacheable_execution_ms: float = CACHEABLE_EXECUTION_MS,
        max_workers: int = 8,
    ) -> None:
        """
        :param storage: The ledger store queries are run against.
        :param registry: The tables known to the parser.
        :param allowed_tables: The tables queries can read, all the registry tables by default.
        :param cache: The result cache, a new one with 100 entries if not provided.
        :param rate_limiter: The per user rate limiter, 60 queries per minute if not provided.
        :param classifier: Classifies and records errors.
        :param max_complexity: Plans scoring more than this are refused.
        :param max_limit: Queries with a LIMIT greater than this are refused.
        :param cacheable_execution_ms: Queries slower than this are not cached.
        :param max_workers: How many queries can run against the storage at the same time.
        """
        self.storage = storage
        self.registry = registry
        self.allowed_tables = [
            t.lower() for t in (allowed_tables if allowed_tables is not None else registry.table_names())
        ]
        self.cache = cache if cache is not None else ResultCache(max_size=100)
        self.rate_limiter = rate_limiter if rate_limiter is not None else UserRateLimiter()
        self.classifier = classifier if classifier is not None else ErrorClassifier()
        self.validator = QueryValidator(registry)
        self.optimizer = QueryOptimizer(registry)
        self.max_complexity = max_complexity
        self.max_limit = max_limit
        self.cacheable_execution_ms = cacheable_execution_ms
        self.usage = ResourceUsage()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ledgerql-query"
        )

    def execute_query(self, text: str, options: ExecutionOptions | None = None) -> QueryResult:
        """Run a query, see the module documentation for the steps involved.

        :param text: The SQL query.
        :param options: User, cache usage, timeout and row cap of the execution.
        """
        options = options or ExecutionOptions()
        start = time.perf_counter()
        warnings: list[str] = []
        suggestions: list[str] = []
        optimization = None
        executed_query = None
        log = logger.bind(user_id=options.user_id)

        try:
            if options.user_id is not None and not self.rate_limiter.try_acquire(options.user_id):
                raise RateLimitExceededError(
                    f"Rate limit of {self.rate_limiter.requests_per_minute} queries per minute exceeded"
                )

            if options.use_cache:
                entry = self.cache.get(text, max_rows=options.max_rows)
                self.usage.record_cache(hit=entry is not None)
                if entry is not None:
                    rows = entry.rows.slice(0, options.max_rows)
                    log.debug("Query served from cache", hit_count=entry.hit_count)
                    return QueryResult(
                        success=True,
                        data=rows,
                        execution_time_ms=elapsed_ms(start),
                        row_count=rows.num_rows,
                        from_cache=True,
                    )

            validation = self.validator.validate(text, user_id=options.user_id)
            warnings.extend(validation.warnings)
            suggestions.extend(validation.suggestions)
            if not validation.is_valid:
                raise validation_exception(validation)

            plan = self.check_plan(Parser(text, self.registry).parse())
            optimization = self.optimizer.optimize(plan)
            warnings.extend(w for w in optimization.warnings if w not in warnings)

            executed_query = inject_limit(text, plan, options.max_rows)
            rows = self.run_with_timeout(executed_query, options.timeout_ms)
            if rows.num_rows > options.max_rows:
                rows = rows.slice(0, options.max_rows)

            execution_time_ms = elapsed_ms(start)
            if options.use_cache and execution_time_ms < self.cacheable_execution_ms:
                self.cache.set(text, rows, execution_time_ms, max_rows=options.max_rows)
            self.usage.record_success(execution_time_ms, rows.num_rows)
            log.info(
                "Query executed",
                rows=rows.num_rows,
                execution_time_ms=round(execution_time_ms, 2),
            )
            return QueryResult(
                success=True,
                data=rows,
                execution_time_ms=execution_time_ms,
                row_count=rows.num_rows,
                warnings=warnings,
                suggestions=suggestions,
                optimization=optimization,
                executed_query=executed_query,
            )
        except Exception as exc:
            if not isinstance(exc, (QuerySyntaxError, QueryValidationError)):
                log.warning("Query failed", error=str(exc), exc_type=type(exc).__name__)
            error = self.classifier.record(
                self.classifier.classify(exc, query=text, user_id=options.user_id)
            )
            self.usage.record_failure()
            return QueryResult(
                success=False,
                error=error,
                execution_time_ms=elapsed_ms(start),
                warnings=warnings,
                suggestions=suggestions or error.suggestions,
                optimization=optimization,
                executed_query=executed_query,
            )

    def check_plan(self, plan: ParsedQuery) -> ParsedQuery:
        """Ensure the plan can be executed, raising the appropriate error otherwise."""
        if plan.unknown_tables:
            raise QueryValidationError(
                "; ".join(plan.errors),
                code=ErrorCode.UNKNOWN_TABLE,
                details={"tables": list(plan.unknown_tables)},
            )
        if not plan.is_valid:
            raise QuerySyntaxError("; ".join(plan.errors), code=ErrorCode.INVALID_SYNTAX)

        forbidden = [t for t in dict.fromkeys(plan.tables) if t not in self.allowed_tables]
        if forbidden:
            raise PermissionDeniedError(
                f"Access to table(s) {', '.join(forbidden)} is not allowed",
                code=ErrorCode.TABLE_NOT_ALLOWED,
                details={"tables": forbidden, "allowed_tables": list(self.allowed_tables)},
            )

        if plan.estimated_complexity > self.max_complexity:
            raise ResourceLimitError(
                f"Query too complex ({plan.estimated_complexity}). "
                f"Maximum allowed: {self.max_complexity}",
                code=ErrorCode.QUERY_TOO_COMPLEX,
                details={"complexity": plan.estimated_complexity},
            )
        if plan.limit is not None and plan.limit > self.max_limit:
            raise ResourceLimitError(
                f"LIMIT too large ({plan.limit}). Maximum allowed: {self.max_limit}",
                code=ErrorCode.LIMIT_TOO_LARGE,
                details={"limit": plan.limit},
            )
        return plan

    def run_with_timeout(self, sql: str, timeout_ms: int):
        """Run the query in a worker thread, giving up after ``timeout_ms``."""
        future = self._executor.submit(self.storage.execute_sql, sql, None, timeout_ms)
        try:
            return future.result(timeout=timeout_ms / 1000)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise QueryTimeoutError(
                f"Query execution exceeded {timeout_ms}ms",
                details={"timeout_ms": timeout_ms},
            )

    def validate_query(self, text: str) -> ValidationResult:
        """Validate a query without running it.

        Combines the security checks of the validator with the
        errors of the parser and the resource limits of the sandbox.
        """
        result = self.validator.validate(text)
        if not result.is_valid:
            return result

        plan_result = ValidationResult()
        try:
            plan = self.check_plan(Parser(text, self.registry).parse())
        except (
            QuerySyntaxError,
            QueryValidationError,
            PermissionDeniedError,
            ResourceLimitError,
        ) as exc:
            plan_result.add_error(self.classifier.classify(exc, query=text))
        else:
            for warning in self.optimizer.optimize(plan).warnings:
                plan_result.add_warning(warning)
        return result.merge(plan_result)

    def optimize_query(self, text: str) -> tuple[ParsedQuery, OptimizationResult]:
        """Parse and analyze a query without running it."""
        plan = Parser(text, self.registry).parse()
        return plan, self.optimizer.optimize(plan)

    def resource_usage(self) -> dict:
        usage = self.usage.snapshot()
        usage["cache_hit_rate"] = self.usage.cache_hit_rate
        return usage

    def reset_stats(self) -> None:
        self.usage.reset()

    def clear_cache(self) -> None:
        self.cache.clear()

    def recent_errors(self, limit: int = 50) -> list[QueryError]:
        return self.classifier.recent(limit)

    def close(self) -> None:
        """Stop accepting queries, without waiting for abandoned ones."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.cache.stop_sweeper()


def validation_exception(validation: ValidationResult) -> Exception:
    """The exception representing the first error of a failed validation."""
    error = validation.errors[0]
    exc_class = EXCEPTION_CLASSES.get(error.kind, QueryValidationError)
    return exc_class(
        "; ".join(validation.error_messages), code=error.code, details=error.details
    )


def inject_limit(text: str, plan: ParsedQuery, max_rows: int) -> str:
    """The query text to execute, with a ``LIMIT max_rows`` when the query has none.

    Trailing semicolons are removed, and when the query has an OFFSET
    the LIMIT is placed before it.
    """
    sql = text.strip().rstrip(";").rstrip()
    if plan.limit is not None:
        return sql
    match = TRAILING_OFFSET.search(sql)
    if match:
        return f"{sql[: match.start()]} LIMIT {max_rows}{match.group(0)}"
    return f"{sql} LIMIT {max_rows}"


def elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
