import pytest

from ledgerql.indexer import (
    ChainRPCError,
    Indexer,
    IndexerConfig,
    IndexerStartError,
    IndexerState,
)
from ledgerql.indexer.synchronizer import contract_record, transaction_record


def make_indexer(chain, storage, **config):
    config.setdefault("start_block", 100)
    config.setdefault("sync_interval_ms", 60000)
    config.setdefault("backfill_delay_seconds", 0)
    return Indexer(chain, storage, IndexerConfig(**config))


def test_index_block(fake_chain, storage):
    indexer = make_indexer(fake_chain, storage)
    bundle = indexer.index_block(100)

    assert bundle.block.block_hash == "0xblock100"
    assert bundle.block.transaction_count == 2
    assert [t.type for t in bundle.transactions] == ["DEPLOY_ACCOUNT", "INVOKE"]
    assert [c.contract_address for c in bundle.contracts] == ["0xcontract100"]
    assert bundle.storage_diffs == []

    assert storage.data_counts() == {
        "blocks": 1,
        "transactions": 2,
        "events": 2,
        "contracts": 1,
        "storage_diffs": 0,
    }
    events = storage.execute_sql("SELECT from_address, keys, data FROM events ORDER BY id")
    assert events.to_pydict() == {
        "from_address": ["0xtoken", "0xtoken"],
        "keys": ['["0xtransfer"]', '["0xtransfer"]'],
        "data": ['["0x1", "0x2"]', '["0x1", "0x2"]'],
    }


def test_index_block_twice(fake_chain, storage):
    indexer = make_indexer(fake_chain, storage, index_storage_diffs=True)
    indexer.index_block(100)
    first = storage.data_counts()
    indexer.index_block(100)

    assert storage.data_counts() == first
    assert first["storage_diffs"] == 2


def test_receipt_failures_keep_the_block(chain_factory, storage):
    class NoReceipts(chain_factory):
        def get_transaction_receipt(self, transaction_hash):
            raise ChainRPCError("receipt unavailable")

    indexer = make_indexer(NoReceipts(), storage)
    indexer.index_block(100)

    assert storage.count_rows("blocks") == 1
    assert storage.count_rows("transactions") == 2
    assert storage.count_rows("events") == 0


def test_sync_once(chain_factory, storage):
    chain = chain_factory(head=105)
    indexer = make_indexer(chain, storage, batch_size=4)

    assert indexer.sync_once() == 4
    assert indexer.sync_state.last_synced_block == 103
    assert indexer.sync_once() == 2
    assert indexer.sync_state.last_synced_block == 105
    assert indexer.sync_once() == 0

    chain.head = 107
    assert indexer.sync_once() == 2
    assert storage.latest_block_number() == 107
    assert indexer.sync_state.chain_height == 107


def test_sync_once_resumes_from_storage(ledger, chain_factory):
    indexer = make_indexer(chain_factory(head=8), ledger)
    assert indexer.resume_point() == 5
    assert indexer.sync_once() == 3
    assert ledger.latest_block_number() == 8


def test_sync_once_stops_at_failed_block(chain_factory, storage):
    chain = chain_factory(head=105, failing_blocks={102})
    indexer = make_indexer(chain, storage)

    assert indexer.sync_once() == 2
    assert indexer.sync_state.last_synced_block == 101
    assert indexer.sync_state.last_error == "Block 102: Block 102 not found"

    chain.failing_blocks.clear()
    assert indexer.sync_once() == 4
    assert indexer.sync_state.last_synced_block == 105


def test_backfill(chain_factory, storage):
    indexer = make_indexer(chain_factory(failing_blocks={102}), storage, batch_size=2)
    report = indexer.backfill(100, 104)

    assert report.indexed == [100, 101, 103, 104]
    assert report.failed == [102]
    assert not report.success
    assert storage.execute_sql("SELECT block_number FROM blocks ORDER BY block_number").to_pydict() == {
        "block_number": [100, 101, 103, 104]
    }


def test_backfill_writes_blocks_one_by_one_when_batch_fails(fake_chain, storage, monkeypatch):
    write_bundles = storage.write_bundles

    def failing_batches(bundles):
        if len(bundles) > 1 or bundles[0].block_number == 101:
            raise RuntimeError("write failed")
        write_bundles(bundles)

    monkeypatch.setattr(storage, "write_bundles", failing_batches)
    indexer = make_indexer(fake_chain, storage, batch_size=3)
    report = indexer.backfill(100, 102)

    assert report.indexed == [100, 102]
    assert report.failed == [101]


def test_backfill_invalid_range(fake_chain, storage):
    indexer = make_indexer(fake_chain, storage)
    with pytest.raises(ValueError) as excinfo:
        indexer.backfill(10, 5)
    assert str(excinfo.value) == "Invalid range 10-5"


def test_start_and_stop(chain_factory, storage):
    indexer = make_indexer(chain_factory(head=102), storage)

    assert indexer.start()
    assert indexer.is_running
    assert indexer.sync_state.chain_id == "0x534e5f4d41494e"
    # The first poll runs before start returns.
    assert storage.latest_block_number() == 102
    assert not indexer.start()

    indexer.stop()
    assert indexer.sync_state.state == IndexerState.STOPPED
    assert not indexer.is_running
    # Stopping twice is harmless.
    indexer.stop()


def test_start_unreachable_node(chain_factory, storage):
    indexer = make_indexer(chain_factory(unreachable=True), storage)

    with pytest.raises(IndexerStartError) as excinfo:
        indexer.start()

    assert "http://fake-node" in str(excinfo.value)
    assert indexer.sync_state.state == IndexerState.STOPPED
    assert indexer.sync_state.last_error == "starknet_chainId failed: connection refused"
    assert indexer.sync_state.connected is False


def test_stop_while_starting(chain_factory, storage):
    class StoppedDuringFirstPoll(chain_factory):
        def get_block_with_txs(self, block_number):
            indexer.stop()
            return super().get_block_with_txs(block_number)

    indexer = make_indexer(StoppedDuringFirstPoll(head=101), storage)

    assert indexer.start() is False
    assert indexer.sync_state.state == IndexerState.STOPPED
    assert indexer._thread is None
    assert not indexer.is_running


def test_stats(chain_factory, storage):
    chain = chain_factory(head=200)
    indexer = make_indexer(chain, storage, start_block=100)
    indexer.backfill(100, 149)

    stats = indexer.stats()
    assert stats["latest_indexed_height"] == 149
    assert stats["chain_height"] == 200
    assert stats["sync_progress_percent"] == 74.5
    assert stats["running"] is False
    assert stats["state"] == "STOPPED"
    assert stats["connected"] is True
    assert stats["rpc_endpoint"] == "http://fake-node"
    assert stats["data_counts"]["blocks"] == 50


def test_stats_unreachable_node(chain_factory, storage):
    chain = chain_factory(head=105)
    indexer = make_indexer(chain, storage)
    indexer.sync_once()
    chain.unreachable = True

    stats = indexer.stats()
    assert stats["chain_height"] == 105
    assert stats["sync_progress_percent"] == 100.0
    assert stats["connected"] is False

    chain.unreachable = False
    assert indexer.stats()["connected"] is True


def test_transaction_record():
    record = transaction_record(
        {"transaction_hash": "0x1", "type": "DEPLOY", "contract_address": "0xnew", "nonce": 3},
        7,
        0,
    )
    assert record.sender_address == "0xnew"
    assert record.nonce == "3"
    assert record.calldata == "[]"
    assert record.max_fee == "0"


def test_contract_record():
    record = contract_record(
        {"type": "DEPLOY_ACCOUNT", "sender_address": "0xaccount", "class_hash": "0xclass"},
        {"contract_address": "0xfromreceipt"},
        9,
    )
    assert record.contract_address == "0xfromreceipt"
    assert record.deployer_address == "0xaccount"
    assert record.deployed_at_block == 9
