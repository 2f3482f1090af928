import pytest

from ledgerql.config import Settings
from ledgerql.errors import ErrorKind
from ledgerql.indexer import Indexer, IndexerConfig
from ledgerql.sandbox import ExecutionOptions
from ledgerql.service import QUERY_TEMPLATES, LedgerQLService
from ledgerql.storage.tables import query_executions_table


@pytest.fixture
def service(ledger):
    service = LedgerQLService(ledger)
    yield service
    service.sandbox.close()


def test_execute_query_is_recorded(service):
    sql = "SELECT block_number FROM blocks ORDER BY block_number LIMIT 3"
    first = service.execute_query(sql, ExecutionOptions(user_id="alice"))
    second = service.execute_query(sql, ExecutionOptions(user_id="alice"))
    failed = service.execute_query("DROP TABLE blocks")

    assert first.success and second.success and not failed.success
    history = service.query_history()
    assert len(history) == 3

    alice = service.query_history(user_id="alice")
    assert [h["cached"] for h in alice] in ([True, False], [False, True])
    assert {h["row_count"] for h in alice} == {3}
    assert all(h["success"] for h in alice)

    (anonymous,) = [h for h in history if h["user_id"] is None]
    assert anonymous["query_text"] == "DROP TABLE blocks"
    assert anonymous["success"] is False


def test_audit_failures_keep_the_result(service):
    query_executions_table.drop(service.storage.engine)

    result = service.execute_query("SELECT block_number FROM blocks LIMIT 2")
    assert result.success, result.error
    assert result.row_count == 2


def test_query_templates(service):
    templates = service.query_templates()
    assert [t["title"] for t in templates] == [
        "Recent Blocks",
        "Transaction Types",
        "Active Contracts",
        "Block Activity",
        "Event Analysis",
        "Storage Changes",
    ]

    templates[0]["query"] = "changed"
    assert service.query_templates()[0]["query"] == QUERY_TEMPLATES[0]["query"]


@pytest.mark.parametrize("template", QUERY_TEMPLATES, ids=lambda t: t["title"])
def test_query_templates_run(service, template):
    result = service.execute_query(template["query"])
    assert result.success, result.error


def test_validate_and_optimize(service):
    assert service.validate_query("SELECT * FROM blocks LIMIT 1").is_valid
    assert not service.validate_query("UPDATE blocks SET timestamp = 0").is_valid

    plan, optimization = service.optimize_query(
        "SELECT * FROM transactions WHERE sender_address = '0x1' LIMIT 10"
    )
    assert plan.limit == 10
    assert optimization.suggested_indexes == ["transactions.sender_address"]


def test_get_stats(service):
    service.execute_query("SELECT block_number FROM blocks LIMIT 1")
    service.execute_query("SELECT block_number FROM blocks LIMIT 1")

    stats = service.get_stats()
    assert stats["cache_size"] == 1
    assert stats["cache_hit_rate"] == 0.5
    assert stats["available_tables"] == [
        "blocks",
        "transactions",
        "events",
        "contracts",
        "storage_diffs",
    ]
    assert stats["data_counts"]["transactions"] == 10
    assert stats["latest_indexed_height"] == 5
    assert stats["indexer"] is None
    assert stats["resource_usage"]["total_queries"] == 1


def test_get_stats_with_indexer(storage, fake_chain):
    indexer = Indexer(fake_chain, storage, IndexerConfig(start_block=100))
    service = LedgerQLService(storage, indexer=indexer)
    indexer.sync_once()

    stats = service.get_stats()
    assert stats["latest_indexed_height"] == 105
    assert stats["indexer"] == {
        "chain_height": 105,
        "sync_progress_percent": 100.0,
        "running": False,
        "connected": True,
        "rpc_endpoint": "http://fake-node",
        "last_error": None,
    }

    service.close()
    assert fake_chain.closed


def test_indexer_lifecycle(storage, chain_factory):
    chain = chain_factory(head=101)
    indexer = Indexer(chain, storage, IndexerConfig(start_block=100, sync_interval_ms=60000))
    service = LedgerQLService(storage, indexer=indexer)

    assert service.start_indexer()
    assert storage.latest_block_number() == 101
    service.stop_indexer()
    assert not indexer.is_running
    service.close()


def test_indexer_disabled(service):
    with pytest.raises(RuntimeError) as excinfo:
        service.start_indexer()
    assert str(excinfo.value) == "The indexer is disabled"


def test_errors(service):
    service.execute_query("SELECT * FROM accounts")
    service.execute_query("DELETE FROM blocks")

    assert [e.kind for e in service.recent_errors()] == [
        ErrorKind.VALIDATION_ERROR,
        ErrorKind.PERMISSION_ERROR,
    ]
    stats = service.error_stats()
    assert stats["total_errors"] == 2
    assert stats["errors_by_kind"]["PERMISSION_ERROR"] == 1


def test_clear_cache(service):
    service.execute_query("SELECT block_number FROM blocks LIMIT 1")
    service.clear_cache()
    assert service.get_stats()["cache_size"] == 0


def test_from_settings():
    settings = Settings(
        database_url="sqlite://",
        enable_indexer=False,
        rate_limit_per_minute=5,
        cache_max_size=7,
        cache_ttl_seconds=12,
    )
    service = LedgerQLService.from_settings(settings)

    assert service.indexer is None
    assert service.sandbox.rate_limiter.requests_per_minute == 5
    assert service.sandbox.cache.max_size == 7
    assert service.sandbox.cache.ttl_seconds == 12
    assert service.storage.table_exists("blocks")
    service.close()


def test_from_settings_with_indexer():
    settings = Settings(database_url="sqlite://", start_block=42, batch_size=3)
    service = LedgerQLService.from_settings(settings)

    assert service.indexer.config.start_block == 42
    assert service.indexer.config.batch_size == 3
    assert service.indexer.rpc.url == settings.rpc_url
    service.close()
