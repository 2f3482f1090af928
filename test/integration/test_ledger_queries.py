from ledgerql.errors import ErrorKind
from ledgerql.indexer import Indexer, IndexerConfig
from ledgerql.sandbox import ExecutionOptions
from ledgerql.service import LedgerQLService


def test_indexed_blocks_are_queryable(storage, chain_factory):
    chain = chain_factory(head=120, txs_per_block=3)
    indexer = Indexer(
        chain,
        storage,
        IndexerConfig(start_block=110, batch_size=4, index_storage_diffs=True, backfill_delay_seconds=0),
    )
    service = LedgerQLService(storage, indexer=indexer)

    assert indexer.sync_once() == 4
    assert indexer.sync_state.last_synced_block == 113
    report = indexer.backfill(100, 104)
    assert report.success
    assert report.indexed == [100, 101, 102, 103, 104]

    result = service.execute_query(
        "SELECT t.type, COUNT(*) AS total FROM transactions t "
        "JOIN blocks b ON b.block_number = t.block_number "
        "WHERE b.block_number >= 110 GROUP BY t.type ORDER BY t.type"
    )
    assert result.success, result.error
    assert result.data.to_pydict() == {"type": ["DEPLOY_ACCOUNT", "INVOKE"], "total": [4, 8]}

    result = service.execute_query(
        "SELECT contract_address, COUNT(DISTINCT storage_key) AS unique_keys FROM storage_diffs "
        "GROUP BY contract_address LIMIT 10"
    )
    assert result.data.to_pydict() == {"contract_address": ["0xtoken"], "unique_keys": [2]}

    result = service.execute_query(
        "SELECT from_address, COUNT(*) AS event_count FROM events WHERE block_number < 105 "
        "GROUP BY from_address",
        ExecutionOptions(max_rows=5),
    )
    assert result.data.to_pydict() == {"from_address": ["0xtoken"], "event_count": [15]}

    stats = service.get_stats()
    assert stats["data_counts"]["blocks"] == 9
    assert stats["data_counts"]["contracts"] == 9
    assert stats["latest_indexed_height"] == 113
    assert len(service.query_history()) == 3
    service.close()


def test_queries_never_modify_the_ledger(ledger):
    service = LedgerQLService(ledger)
    attempts = [
        "DELETE FROM blocks",
        "SELECT * FROM blocks; DROP TABLE blocks",
        "SELECT * FROM blocks WHERE block_number = 1; UPDATE blocks SET timestamp = 0",
        "INSERT INTO blocks SELECT * FROM blocks",
    ]
    for sql in attempts:
        result = service.execute_query(sql)
        assert not result.success
        assert result.error.kind == ErrorKind.PERMISSION_ERROR

    assert ledger.data_counts()["blocks"] == 5
    assert ledger.execute_sql("SELECT MIN(timestamp) AS ts FROM blocks").to_pydict() == {
        "ts": [1700000001]
    }
    service.sandbox.close()
