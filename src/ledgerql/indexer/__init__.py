"""Indexing of the StarkNet chain into the ledger store.

* :mod:`ledgerql.indexer.rpc` talks JSON-RPC to a StarkNet node.
* :mod:`ledgerql.indexer.receipts` reads events out of receipts of any RPC version.
* :mod:`ledgerql.indexer.synchronizer` polls the node and writes the blocks
  with their transactions, events, deployed contracts and storage diffs.
"""

from .receipts import ReceiptAdapter, StarknetReceiptAdapter
from .rpc import ChainRPCClient, ChainRPCError
from .synchronizer import (
    BackfillReport,
    Indexer,
    IndexerConfig,
    IndexerStartError,
    IndexerState,
    SyncState,
)

__all__ = (
    "ChainRPCClient",
    "ChainRPCError",
    "ReceiptAdapter",
    "StarknetReceiptAdapter",
    "Indexer",
    "IndexerConfig",
    "IndexerState",
    "IndexerStartError",
    "SyncState",
    "BackfillReport",
)
