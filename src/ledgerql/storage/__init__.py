"""Storage of the ledger data.

The :class:`ledgerql.storage.database.LedgerStorage` is the only component
talking to the database: the sandbox runs user queries through it
and the indexer writes the ledger records with it.
The two never share anything else, the data the indexer commits
becomes visible to the next queries.
"""

from .database import LedgerStorage, LedgerWriter, rows_to_table
from .records import (
    BlockBundle,
    BlockRecord,
    ContractRecord,
    EventRecord,
    StorageDiffRecord,
    TransactionRecord,
)

__all__ = (
    "LedgerStorage",
    "LedgerWriter",
    "rows_to_table",
    "BlockBundle",
    "BlockRecord",
    "TransactionRecord",
    "EventRecord",
    "ContractRecord",
    "StorageDiffRecord",
)
