"""The engine as a whole, ready to be exposed over any transport.

:class:`LedgerQLService` wires the storage, the execution sandbox and
the indexer together and provides the operations offered to clients::

    service = LedgerQLService.from_settings(Settings.from_env())
    service.start_indexer()
    result = service.execute_query(
        "SELECT type, COUNT(*) AS count FROM transactions GROUP BY type",
        ExecutionOptions(user_id="alice"),
    )
    print(service.get_stats())
    service.close()

Every query execution, successful or not, is appended to the
``query_executions`` audit table, see :meth:`LedgerQLService.query_history`.
"""

from typing import Any

import structlog

from .config import Settings
from .errors import QueryError
from .indexer import ChainRPCClient, Indexer, IndexerConfig
from .sandbox import ExecutionOptions, ExecutionSandbox, QueryResult, ResultCache, UserRateLimiter
from .sql.optimizer import OptimizationResult
from .sql.query import ParsedQuery
from .sql.validator import ValidationResult
from .storage import LedgerStorage

logger = structlog.get_logger(__name__)

QUERY_TEMPLATES = (
    {
        "title": "Recent Blocks",
        "query": "SELECT block_number, timestamp, transaction_count FROM blocks "
        "ORDER BY block_number DESC LIMIT 10",
        "description": "Get the 10 most recent blocks with their transaction counts",
    },
    {
        "title": "Transaction Types",
        "query": "SELECT type, COUNT(*) AS count FROM transactions GROUP BY type ORDER BY count DESC",
        "description": "Count transactions by type",
    },
    {
        "title": "Active Contracts",
        "query": "SELECT contract_address, class_hash, deployed_at_block FROM contracts "
        "ORDER BY deployed_at_block DESC LIMIT 20",
        "description": "Get recently deployed contracts",
    },
    {
        "title": "Block Activity",
        "query": "SELECT b.block_number, b.timestamp, COUNT(t.transaction_hash) AS tx_count "
        "FROM blocks b LEFT JOIN transactions t ON b.block_number = t.block_number "
        "WHERE b.block_number > 100000 GROUP BY b.block_number, b.timestamp "
        "ORDER BY b.block_number DESC LIMIT 10",
        "description": "Block activity with transaction counts using JOIN",
    },
    {
        "title": "Event Analysis",
        "query": "SELECT from_address, COUNT(*) AS event_count FROM events "
        "WHERE block_number > 100000 GROUP BY from_address ORDER BY event_count DESC LIMIT 15",
        "description": "Most active contracts by event count",
    },
    {
        "title": "Storage Changes",
        "query": "SELECT contract_address, COUNT(DISTINCT storage_key) AS unique_keys "
        "FROM storage_diffs GROUP BY contract_address ORDER BY unique_keys DESC LIMIT 10",
        "description": "Contracts with most storage key changes",
    },
)


class LedgerQLService:
    """Entry point of the engine."""

    def __init__(
        self,
        storage: LedgerStorage,
        sandbox: ExecutionSandbox | None = None,
        indexer: Indexer | None = None,
    ) -> None:
        """
        :param storage: The ledger store, its schema is created if missing.
        :param sandbox: Runs the queries, one with the default limits if not provided.
        :param indexer: Keeps the store in sync with the chain, when ``None``
                        the indexer operations are not available.
        """
        self.storage = storage
        self.storage.create_schema()
        self.sandbox = sandbox if sandbox is not None else ExecutionSandbox(storage)
        self.indexer = indexer

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerQLService":
        storage = LedgerStorage.from_url(settings.database_url)
        sandbox = ExecutionSandbox(
            storage,
            cache=ResultCache(
                max_size=settings.cache_max_size, ttl_seconds=settings.cache_ttl_seconds
            ),
            rate_limiter=UserRateLimiter(settings.rate_limit_per_minute),
        )
        sandbox.cache.start_sweeper()
        indexer = None
        if settings.enable_indexer:
            indexer = Indexer(
                ChainRPCClient(settings.rpc_url),
                storage,
                IndexerConfig(
                    start_block=settings.start_block,
                    batch_size=settings.batch_size,
                    sync_interval_ms=settings.sync_interval_ms,
                    index_storage_diffs=settings.index_storage_diffs,
                ),
            )
        return cls(storage, sandbox, indexer)

    def execute_query(self, text: str, options: ExecutionOptions | None = None) -> QueryResult:
        """Run a query in the sandbox and record it in the audit log."""
        options = options or ExecutionOptions()
        result = self.sandbox.execute_query(text, options)
        try:
            self.storage.record_query_execution(
                user_id=options.user_id,
                query_text=text,
                execution_time_ms=result.execution_time_ms,
                result_size_bytes=result.result_size_bytes,
                row_count=result.row_count,
                cached=result.from_cache,
                success=result.success,
            )
        except Exception as exc:
            # The audit log never changes the outcome of the query.
            logger.warning("Failed to record query execution", error=str(exc))
        return result

    def validate_query(self, text: str) -> ValidationResult:
        return self.sandbox.validate_query(text)

    def optimize_query(self, text: str) -> tuple[ParsedQuery, OptimizationResult]:
        return self.sandbox.optimize_query(text)

    def get_stats(self) -> dict[str, Any]:
        """Cache, data and indexing statistics.

        ``indexer`` is ``None`` when the service runs without an indexer.
        """
        usage = self.sandbox.resource_usage()
        indexer_stats = None
        if self.indexer is not None:
            stats = self.indexer.stats()
            data_counts = stats["data_counts"]
            latest = stats["latest_indexed_height"]
            indexer_stats = {
                "chain_height": stats["chain_height"],
                "sync_progress_percent": stats["sync_progress_percent"],
                "running": stats["running"],
                "connected": stats["connected"],
                "rpc_endpoint": stats["rpc_endpoint"],
                "last_error": stats["last_error"],
            }
        else:
            data_counts = self.storage.data_counts()
            latest = self.storage.latest_block_number()

        return {
            "cache_size": self.sandbox.cache.size,
            "cache_hit_rate": usage["cache_hit_rate"],
            "available_tables": list(self.sandbox.allowed_tables),
            "data_counts": data_counts,
            "latest_indexed_height": latest,
            "indexer": indexer_stats,
            "resource_usage": usage,
        }

    def start_indexer(self) -> bool:
        """Start the background indexer, ``False`` if it was already running.

        :raises RuntimeError: when the service has no indexer.
        :raises IndexerStartError: when the chain node can't be reached.
        """
        return self._require_indexer().start()

    def stop_indexer(self) -> None:
        self._require_indexer().stop()

    def _require_indexer(self) -> Indexer:
        if self.indexer is None:
            raise RuntimeError("The indexer is disabled")
        return self.indexer

    def query_history(
        self, user_id: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[dict[str, Any]]:
        return self.storage.query_history(user_id=user_id, limit=limit, offset=offset)

    def error_stats(self) -> dict[str, Any]:
        return self.sandbox.classifier.stats()

    def recent_errors(self, limit: int = 50) -> list[QueryError]:
        return self.sandbox.recent_errors(limit)

    def query_templates(self) -> list[dict[str, str]]:
        """Example queries showing what can be asked to the ledger."""
        return [dict(t) for t in QUERY_TEMPLATES]

    def clear_cache(self) -> None:
        self.sandbox.clear_cache()

    def close(self) -> None:
        if self.indexer is not None:
            self.indexer.stop()
            self.indexer.rpc.close()
        self.sandbox.close()
        self.storage.dispose()
        logger.info("Service closed")
