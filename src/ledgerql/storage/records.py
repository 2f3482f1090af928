"""Ledger records written by the indexer.

Each record class maps one to one to a row of the ledger tables,
the field names are the column names so that records can be
turned into rows with :meth:`LedgerRecord.as_row`.

Array fields (calldata, signatures, event keys and data)
are stored as JSON text, timestamps as Unix seconds.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any


def to_json(values: list | None) -> str:
    return json.dumps(list(values or []))


class LedgerRecord:
    def as_row(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]


@dataclass(frozen=True)
class BlockRecord(LedgerRecord):
    block_hash: str
    block_number: int
    timestamp: int
    parent_hash: str
    sequencer_address: str
    state_root: str
    transaction_count: int


@dataclass(frozen=True)
class TransactionRecord(LedgerRecord):
    transaction_hash: str
    block_number: int
    transaction_index: int
    type: str
    sender_address: str
    calldata: str = "[]"
    signature: str = "[]"
    max_fee: str = "0"
    version: str = "0"
    nonce: str = "0"


@dataclass(frozen=True)
class EventRecord(LedgerRecord):
    transaction_hash: str
    event_index: int
    from_address: str
    keys: str
    data: str
    block_number: int
    timestamp: int


@dataclass(frozen=True)
class ContractRecord(LedgerRecord):
    contract_address: str
    class_hash: str
    deployed_at_block: int
    deployer_address: str
    constructor_calldata: str = "[]"


@dataclass(frozen=True)
class StorageDiffRecord(LedgerRecord):
    contract_address: str
    storage_key: str
    new_value: str
    block_number: int
    old_value: str | None = None
    transaction_hash: str | None = None


@dataclass
class BlockBundle:
    """A block together with all the rows that depend on it.

    The indexer collects a bundle from the chain, and the storage
    writes it in a single transaction.
    """

    block: BlockRecord
    transactions: list[TransactionRecord] = field(default_factory=list)
    events: list[EventRecord] = field(default_factory=list)
    contracts: list[ContractRecord] = field(default_factory=list)
    storage_diffs: list[StorageDiffRecord] = field(default_factory=list)

    @property
    def block_number(self) -> int:
        return self.block.block_number
