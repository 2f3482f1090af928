"""Relational schema of the ledger store.

Tables are defined with SQLAlchemy Core so that the same
schema can be created on SQLite and on PostgreSQL.

Uniqueness constraints are what makes indexing idempotent:
blocks are unique by number and hash, transactions by hash,
contracts by address, events by transaction and position,
storage diffs by block, contract and storage key.
Re-indexing a block updates or skips the existing rows instead of duplicating them.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

blocks_table = Table(
    "blocks",
    metadata,
    Column("block_number", BigInteger, primary_key=True, autoincrement=False),
    Column("block_hash", String(80), nullable=False, unique=True),
    Column("timestamp", BigInteger, nullable=False),
    Column("parent_hash", String(80), nullable=False),
    Column("sequencer_address", String(80), nullable=False),
    Column("state_root", String(80), nullable=False),
    Column("transaction_count", Integer, nullable=False, default=0),
    Index("idx_blocks_timestamp", "timestamp"),
)

transactions_table = Table(
    "transactions",
    metadata,
    Column("transaction_hash", String(80), primary_key=True),
    Column("block_number", BigInteger, ForeignKey("blocks.block_number"), nullable=False),
    Column("transaction_index", Integer, nullable=False),
    Column("type", String(32), nullable=False),
    Column("sender_address", String(80), nullable=False),
    Column("calldata", Text, nullable=False, default="[]"),
    Column("signature", Text, nullable=False, default="[]"),
    Column("max_fee", String(80), nullable=False, default="0"),
    Column("version", String(16), nullable=False, default="0"),
    Column("nonce", String(80), nullable=False, default="0"),
    Index("idx_transactions_block_number", "block_number"),
    Index("idx_transactions_sender_address", "sender_address"),
    Index("idx_transactions_type", "type"),
)

events_table = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "transaction_hash",
        String(80),
        ForeignKey("transactions.transaction_hash"),
        nullable=False,
    ),
    Column("event_index", Integer, nullable=False),
    Column("from_address", String(80), nullable=False),
    Column("keys", Text, nullable=False, default="[]"),
    Column("data", Text, nullable=False, default="[]"),
    Column("block_number", BigInteger, ForeignKey("blocks.block_number"), nullable=False),
    Column("timestamp", BigInteger, nullable=False),
    UniqueConstraint("transaction_hash", "event_index", name="uq_events_tx_index"),
    Index("idx_events_from_address", "from_address"),
    Index("idx_events_block_number", "block_number"),
)

contracts_table = Table(
    "contracts",
    metadata,
    Column("contract_address", String(80), primary_key=True),
    Column("class_hash", String(80), nullable=False),
    Column("deployed_at_block", BigInteger, nullable=False),
    Column("deployer_address", String(80), nullable=False),
    Column("constructor_calldata", Text, nullable=False, default="[]"),
    Index("idx_contracts_class_hash", "class_hash"),
    Index("idx_contracts_deployed_at_block", "deployed_at_block"),
)

storage_diffs_table = Table(
    "storage_diffs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("contract_address", String(80), nullable=False),
    Column("storage_key", String(80), nullable=False),
    Column("old_value", String(80), nullable=True),
    Column("new_value", String(80), nullable=False),
    Column("block_number", BigInteger, ForeignKey("blocks.block_number"), nullable=False),
    Column("transaction_hash", String(80), nullable=True),
    UniqueConstraint(
        "block_number", "contract_address", "storage_key", name="uq_storage_diffs_slot"
    ),
    Index("idx_storage_diffs_contract_address", "contract_address"),
    Index("idx_storage_diffs_storage_key", "storage_key"),
    Index("idx_storage_diffs_block_number", "block_number"),
)

query_executions_table = Table(
    "query_executions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(128), nullable=True),
    Column("query_text", Text, nullable=False),
    Column("execution_time_ms", Float, nullable=False),
    Column("result_size_bytes", BigInteger, nullable=False, default=0),
    Column("row_count", Integer, nullable=False, default=0),
    Column("cached", Boolean, nullable=False, default=False),
    Column("success", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("idx_query_executions_user_created", "user_id", "created_at"),
)

LEDGER_TABLES = {
    "blocks": blocks_table,
    "transactions": transactions_table,
    "events": events_table,
    "contracts": contracts_table,
    "storage_diffs": storage_diffs_table,
}
