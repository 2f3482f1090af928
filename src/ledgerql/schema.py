"""The catalog of ledger tables queries are allowed to read.

The registry is static data describing the five StarkNet ledger tables:
their columns, which columns are indexed in the backing store
(and why), how large each table is relative to the others
and whether it's large enough to deserve a warning when
it's scanned without filters.

It's used by the :class:`ledgerql.sql.parser.Parser` to reject
queries on unknown tables, by the :class:`ledgerql.sql.validator.QueryValidator`
to spot unfiltered scans of large tables and by the
:class:`ledgerql.sql.optimizer.QueryOptimizer` to suggest indexes
and estimate the result size::

    >>> from ledgerql.schema import LEDGER_SCHEMA
    >>> LEDGER_SCHEMA.table_names()
    ['blocks', 'transactions', 'events', 'contracts', 'storage_diffs']
    >>> LEDGER_SCHEMA.index_reason("transactions", "sender_address")
    'Address-based queries'
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ColumnSchema:
    """A column of a ledger table."""

    name: str
    type: str
    description: str = ""


@dataclass(frozen=True)
class TableSchema:
    """A ledger table.

    ``indexes`` maps each indexed column to the reason why the index exists,
    ``row_multiplier`` is the relative cardinality of the table used
    to estimate the rows a query will return.
    """

    name: str
    description: str
    columns: tuple[ColumnSchema, ...]
    indexes: dict[str, str] = field(default_factory=dict)
    row_multiplier: float = 1.0
    large: bool = False

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def has_column(self, name: str) -> bool:
        return name.lower() in self.column_names


class SchemaRegistry:
    """Lookup of the tables that can be queried.

    Table names are matched case insensitively.
    """

    def __init__(self, tables: list[TableSchema]) -> None:
        """
        :param tables: The tables exposed to queries, in display order.
        """
        self._tables = {t.name.lower(): t for t in tables}

    def table_names(self) -> list[str]:
        return list(self._tables)

    def has_table(self, name: str) -> bool:
        return name.lower() in self._tables

    def get(self, name: str) -> TableSchema:
        """Get a table by name, raises :class:`KeyError` for unknown tables."""
        return self._tables[name.lower()]

    def is_indexed(self, table: str, column: str) -> bool:
        return self.index_reason(table, column) is not None

    def index_reason(self, table: str, column: str) -> str | None:
        """Why ``column`` of ``table`` is indexed, ``None`` when it's not."""
        schema = self._tables.get(table.lower())
        if schema is None:
            return None
        return schema.indexes.get(column.lower())

    def large_tables(self) -> list[str]:
        return [name for name, t in self._tables.items() if t.large]

    def describe(self) -> dict[str, dict]:
        """Describe the registry in a JSON friendly format for clients."""
        return {
            name: {
                "description": t.description,
                "columns": [
                    {"name": c.name, "type": c.type, "description": c.description}
                    for c in t.columns
                ],
                "indexes": list(t.indexes),
            }
            for name, t in self._tables.items()
        }


LEDGER_SCHEMA = SchemaRegistry(
    [
        TableSchema(
            name="blocks",
            description="StarkNet blocks with metadata",
            columns=(
                ColumnSchema("block_hash", "string", "Unique block hash"),
                ColumnSchema("block_number", "integer", "Sequential block number"),
                ColumnSchema("timestamp", "integer", "Block timestamp, Unix seconds"),
                ColumnSchema("parent_hash", "string", "Hash of the parent block"),
                ColumnSchema("sequencer_address", "string", "Address of the sequencer"),
                ColumnSchema("state_root", "string", "State root after the block"),
                ColumnSchema("transaction_count", "integer", "Transactions in the block"),
            ),
            indexes={
                "block_number": "Primary key index for efficient block lookups",
                "timestamp": "Time-based queries and range scans",
                "block_hash": "Hash-based lookups",
            },
            row_multiplier=0.1,
        ),
        TableSchema(
            name="transactions",
            description="All StarkNet transactions",
            columns=(
                ColumnSchema("transaction_hash", "string", "Unique transaction hash"),
                ColumnSchema("block_number", "integer", "Block containing the transaction"),
                ColumnSchema("transaction_index", "integer", "Position within the block"),
                ColumnSchema("type", "string", "INVOKE, DECLARE, DEPLOY_ACCOUNT, ..."),
                ColumnSchema("sender_address", "string", "Address of the sender"),
                ColumnSchema("calldata", "json", "Call data, JSON array"),
                ColumnSchema("signature", "json", "Signature, JSON array"),
                ColumnSchema("max_fee", "string", "Maximum fee"),
                ColumnSchema("version", "string", "Transaction version"),
                ColumnSchema("nonce", "string", "Sender nonce"),
            ),
            indexes={
                "transaction_hash": "Primary key for transaction lookups",
                "block_number": "Block-based queries",
                "sender_address": "Address-based queries",
                "type": "Transaction type filtering",
            },
            row_multiplier=10,
            large=True,
        ),
        TableSchema(
            name="events",
            description="Events emitted by contracts",
            columns=(
                ColumnSchema("transaction_hash", "string", "Transaction emitting the event"),
                ColumnSchema("event_index", "integer", "Position within the transaction"),
                ColumnSchema("from_address", "string", "Emitting contract address"),
                ColumnSchema("keys", "json", "Event keys, JSON array"),
                ColumnSchema("data", "json", "Event data, JSON array"),
                ColumnSchema("block_number", "integer", "Block containing the event"),
                ColumnSchema("timestamp", "integer", "Block timestamp, Unix seconds"),
            ),
            indexes={
                "transaction_hash": "Transaction-based event lookups",
                "from_address": "Contract event filtering",
                "block_number": "Block-based event queries",
            },
            row_multiplier=50,
            large=True,
        ),
        TableSchema(
            name="contracts",
            description="Deployed contracts",
            columns=(
                ColumnSchema("contract_address", "string", "Contract address"),
                ColumnSchema("class_hash", "string", "Class hash of the contract"),
                ColumnSchema("deployed_at_block", "integer", "Deployment block"),
                ColumnSchema("deployer_address", "string", "Address of the deployer"),
                ColumnSchema("constructor_calldata", "json", "Constructor call data, JSON array"),
            ),
            indexes={
                "contract_address": "Primary key for contract lookups",
                "class_hash": "Class-based contract queries",
                "deployed_at_block": "Deployment time queries",
            },
            row_multiplier=0.5,
        ),
        TableSchema(
            name="storage_diffs",
            description="Contract storage changes",
            columns=(
                ColumnSchema("contract_address", "string", "Contract whose storage changed"),
                ColumnSchema("storage_key", "string", "Storage slot"),
                ColumnSchema("old_value", "string", "Value before the change"),
                ColumnSchema("new_value", "string", "Value after the change"),
                ColumnSchema("block_number", "integer", "Block of the change"),
                ColumnSchema("transaction_hash", "string", "Transaction of the change"),
            ),
            indexes={
                "contract_address": "Contract storage queries",
                "storage_key": "Storage key lookups",
                "block_number": "Block-based storage queries",
            },
            row_multiplier=20,
            large=True,
        ),
    ]
)
