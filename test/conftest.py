import logging

import pytest
import structlog

from ledgerql.indexer import ChainRPCError
from ledgerql.storage import (
    BlockBundle,
    BlockRecord,
    ContractRecord,
    EventRecord,
    LedgerStorage,
    StorageDiffRecord,
    TransactionRecord,
)


class FakeChain:
    """In memory StarkNet node, exposing the same methods as ChainRPCClient."""

    url = "http://fake-node"

    def __init__(self, head=105, txs_per_block=2, failing_blocks=(), unreachable=False):
        self.head = head
        self.txs_per_block = txs_per_block
        self.failing_blocks = set(failing_blocks)
        self.unreachable = unreachable
        self.calls = []
        self.closed = False

    def _check(self, method):
        self.calls.append(method)
        if self.unreachable:
            raise ChainRPCError(f"{method} failed: connection refused", method=method)

    def chain_id(self):
        self._check("starknet_chainId")
        return "0x534e5f4d41494e"

    def block_number(self):
        self._check("starknet_blockNumber")
        return self.head

    def get_block_with_txs(self, block_number):
        self._check("starknet_getBlockWithTxs")
        if block_number in self.failing_blocks:
            raise ChainRPCError(f"Block {block_number} not found", method="starknet_getBlockWithTxs")
        transactions = [
            {
                "transaction_hash": tx_hash(block_number, idx),
                "type": "DEPLOY_ACCOUNT" if idx == 0 else "INVOKE",
                "sender_address": f"0xsender{idx}",
                "contract_address": f"0xcontract{block_number}" if idx == 0 else None,
                "class_hash": "0xclass" if idx == 0 else None,
                "calldata": ["0x1", "0x2"],
                "signature": ["0xsig"],
                "max_fee": "0x100",
                "version": "0x1",
                "nonce": str(idx),
            }
            for idx in range(self.txs_per_block)
        ]
        return {
            "block_hash": f"0xblock{block_number}",
            "parent_hash": f"0xblock{block_number - 1}",
            "sequencer_address": "0xsequencer",
            "new_root": f"0xroot{block_number}",
            "timestamp": 1700000000 + block_number,
            "transactions": transactions,
        }

    def get_transaction_receipt(self, transaction_hash):
        self._check("starknet_getTransactionReceipt")
        return {
            "transaction_hash": transaction_hash,
            "finality_status": "ACCEPTED_ON_L2",
            "execution_status": "SUCCEEDED",
            "events": [
                {"from_address": "0xtoken", "keys": ["0xtransfer"], "data": ["0x1", "0x2"]},
            ],
        }

    def get_state_update(self, block_number):
        self._check("starknet_getStateUpdate")
        return {
            "state_diff": {
                "storage_diffs": [
                    {
                        "address": "0xtoken",
                        "storage_entries": [
                            {"key": "0xbalance", "value": hex(block_number)},
                            {"key": "0xsupply", "value": "0x10"},
                        ],
                    }
                ]
            }
        }

    def close(self):
        self.closed = True


def tx_hash(block_number, idx):
    return f"0xtx{block_number}_{idx}"


def make_bundle(block_number, txs=2):
    """A block with ``txs`` transactions, each emitting one event."""
    timestamp = 1700000000 + block_number
    bundle = BlockBundle(
        block=BlockRecord(
            block_hash=f"0xblock{block_number}",
            block_number=block_number,
            timestamp=timestamp,
            parent_hash=f"0xblock{block_number - 1}",
            sequencer_address="0xsequencer",
            state_root=f"0xroot{block_number}",
            transaction_count=txs,
        )
    )
    for idx in range(txs):
        bundle.transactions.append(
            TransactionRecord(
                transaction_hash=tx_hash(block_number, idx),
                block_number=block_number,
                transaction_index=idx,
                type="INVOKE" if idx else "DEPLOY_ACCOUNT",
                sender_address=f"0xsender{idx}",
            )
        )
        bundle.events.append(
            EventRecord(
                transaction_hash=tx_hash(block_number, idx),
                event_index=0,
                from_address="0xtoken",
                keys='["0xtransfer"]',
                data='["0x1"]',
                block_number=block_number,
                timestamp=timestamp,
            )
        )
    bundle.contracts.append(
        ContractRecord(
            contract_address=f"0xcontract{block_number}",
            class_hash="0xclass",
            deployed_at_block=block_number,
            deployer_address="0xsender0",
        )
    )
    bundle.storage_diffs.append(
        StorageDiffRecord(
            contract_address="0xtoken",
            storage_key="0xbalance",
            new_value=hex(block_number),
            block_number=block_number,
        )
    )
    return bundle


@pytest.fixture
def storage():
    storage = LedgerStorage.from_url("sqlite://")
    storage.create_schema()
    yield storage
    storage.dispose()


@pytest.fixture
def ledger(storage):
    """Storage holding blocks 1 to 5, two transactions each."""
    storage.write_bundles([make_bundle(n) for n in range(1, 6)])
    return storage


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def bundle_factory():
    return make_bundle


@pytest.fixture
def chain_factory():
    return FakeChain


@pytest.fixture
def restore_logging():
    """Undo the changes of configure_logging to the global logging state."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()
