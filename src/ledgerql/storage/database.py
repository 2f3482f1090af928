"""Storage of the ledger data, backed by SQLAlchemy.

Handles SQLite (development, tests) and PostgreSQL (production)
with the same code, relying on SQLAlchemy Core.

The storage serves two very different kinds of clients:

* The sandbox, which runs the raw text of user queries and
  receives the rows as a :class:`pyarrow.Table`. User queries are
  always run in a transaction that is rolled back, they can never
  change the ledger data.
* The indexer, which upserts ledger records. Upserts rely on the
  uniqueness constraints of :mod:`ledgerql.storage.tables`, so that
  indexing the same block twice never duplicates rows.

Usage::

    storage = LedgerStorage.from_url("sqlite:///ledger.db")
    storage.create_schema()
    storage.write_bundles([bundle])
    table = storage.execute_sql("SELECT block_number FROM blocks LIMIT 10")
"""

import datetime
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import pyarrow as pa
import structlog
from sqlalchemy import Connection, create_engine, event, func, inspect, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.pool import StaticPool

from ..errors import StorageConnectionError, error_from_message
from .records import (
    BlockBundle,
    BlockRecord,
    ContractRecord,
    EventRecord,
    StorageDiffRecord,
    TransactionRecord,
)
from .tables import (
    LEDGER_TABLES,
    blocks_table,
    contracts_table,
    events_table,
    metadata,
    query_executions_table,
    storage_diffs_table,
    transactions_table,
)

logger = structlog.get_logger(__name__)


class LedgerWriter:
    """Upserts ledger records within an open connection.

    Obtained through :meth:`LedgerStorage.writer`, all the writes
    done through the same writer belong to the same transaction.
    """

    def __init__(self, conn: Connection) -> None:
        self.conn = conn
        self.dialect = conn.dialect.name

    def upsert_blocks(self, blocks: list[BlockRecord]) -> None:
        self._upsert(blocks_table, [b.as_row() for b in blocks], ["block_number"], update=True)

    def upsert_transactions(self, transactions: list[TransactionRecord]) -> None:
        rows = [t.as_row() for t in transactions]
        self._upsert(transactions_table, rows, ["transaction_hash"], update=True)

    def upsert_events(self, events: list[EventRecord]) -> None:
        rows = [e.as_row() for e in events]
        self._upsert(events_table, rows, ["transaction_hash", "event_index"], update=False)

    def upsert_contracts(self, contracts: list[ContractRecord]) -> None:
        rows = [c.as_row() for c in contracts]
        self._upsert(contracts_table, rows, ["contract_address"], update=True)

    def upsert_storage_diffs(self, diffs: list[StorageDiffRecord]) -> None:
        rows = [d.as_row() for d in diffs]
        self._upsert(
            storage_diffs_table,
            rows,
            ["block_number", "contract_address", "storage_key"],
            update=False,
        )

    def write_bundle(self, bundle: BlockBundle) -> None:
        """Write a block and all the rows depending on it."""
        self.upsert_blocks([bundle.block])
        self.upsert_transactions(bundle.transactions)
        self.upsert_events(bundle.events)
        self.upsert_contracts(bundle.contracts)
        self.upsert_storage_diffs(bundle.storage_diffs)

    def _upsert(self, table, rows: list[dict], conflict_columns: list[str], update: bool) -> None:
        """Insert rows, updating (or skipping) the ones that conflict on ``conflict_columns``.

        Append only tables use ``update=False``, so that replaying
        a block leaves their rows untouched.
        """
        if not rows:
            return

        if self.dialect == "postgresql":
            insert = postgresql.insert
        elif self.dialect == "sqlite":
            insert = sqlite.insert
        else:
            self._generic_upsert(table, rows, conflict_columns, update)
            return

        stmt = insert(table)
        if update:
            stmt = stmt.on_conflict_do_update(
                index_elements=conflict_columns,
                set_={
                    c.name: stmt.excluded[c.name]
                    for c in table.columns
                    if c.name not in conflict_columns
                },
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
        self.conn.execute(stmt, rows)

    def _generic_upsert(
        self, table, rows: list[dict], conflict_columns: list[str], update: bool
    ) -> None:
        """Upsert for databases without ON CONFLICT support, one row at a time."""
        for row in rows:
            try:
                with self.conn.begin_nested():
                    self.conn.execute(table.insert(), row)
            except IntegrityError:
                if update:
                    where = [table.c[name] == row[name] for name in conflict_columns]
                    values = {k: v for k, v in row.items() if k not in conflict_columns}
                    self.conn.execute(table.update().where(*where).values(**values))


class LedgerStorage:
    """The ledger store.

    Safe to share between threads, each operation
    checks out its own connection from the engine pool.
    """

    def __init__(self, engine: Engine) -> None:
        """
        :param engine: The SQLAlchemy engine of the database.
        """
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, **engine_options: Any) -> "LedgerStorage":
        """Create the storage for a database URL.

        In-memory SQLite databases share a single connection between threads,
        otherwise every connection would see its own empty database.
        """
        if url.startswith("sqlite"):
            engine_options.setdefault("connect_args", {"check_same_thread": False})
            if url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url:
                engine_options.setdefault("poolclass", StaticPool)
        engine = create_engine(url, **engine_options)
        if engine.dialect.name == "sqlite":
            _configure_sqlite(engine)
        return cls(engine)

    def create_schema(self) -> None:
        """Create the ledger tables, if they don't exist yet."""
        metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def url(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)

    def execute_sql(
        self,
        sql: str,
        params: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
    ) -> pa.Table:
        """Run a read only query and return its rows.

        Without ``params`` the text is sent to the database as is,
        with ``params`` it's bound as a SQLAlchemy :func:`sqlalchemy.text`
        statement using ``:name`` placeholders.

        The transaction is always rolled back.
        On PostgreSQL ``timeout_ms`` is enforced by the server too.

        :raises LedgerQLError: classified from the database error.
        """
        try:
            with self.engine.connect() as conn:
                try:
                    if timeout_ms is not None and self.dialect == "postgresql":
                        conn.exec_driver_sql(f"SET LOCAL statement_timeout = {int(timeout_ms)}")
                    if params:
                        result = conn.execute(text(sql), params)
                    else:
                        result = conn.exec_driver_sql(sql)
                    columns = list(result.keys())
                    rows = result.fetchall()
                finally:
                    conn.rollback()
        except DBAPIError as exc:
            message = str(exc.orig) if exc.orig is not None else str(exc)
            if exc.connection_invalidated:
                raise StorageConnectionError(message) from exc
            raise error_from_message(message) from exc
        return rows_to_table(columns, rows)

    @contextmanager
    def writer(self) -> Iterator[LedgerWriter]:
        """A writer whose upserts are committed together when the block exits."""
        with self.engine.begin() as conn:
            yield LedgerWriter(conn)

    def upsert_block(self, block: BlockRecord) -> None:
        with self.writer() as w:
            w.upsert_blocks([block])

    def upsert_transaction(self, transaction: TransactionRecord) -> None:
        with self.writer() as w:
            w.upsert_transactions([transaction])

    def upsert_event(self, event: EventRecord) -> None:
        with self.writer() as w:
            w.upsert_events([event])

    def upsert_contract(self, contract: ContractRecord) -> None:
        with self.writer() as w:
            w.upsert_contracts([contract])

    def upsert_storage_diff(self, diff: StorageDiffRecord) -> None:
        with self.writer() as w:
            w.upsert_storage_diffs([diff])

    def write_bundles(self, bundles: list[BlockBundle]) -> None:
        """Write several blocks in a single transaction, all or nothing."""
        with self.writer() as w:
            for bundle in bundles:
                w.write_bundle(bundle)
        logger.debug("Wrote block bundles", blocks=[b.block_number for b in bundles])

    def table_exists(self, name: str) -> bool:
        return inspect(self.engine).has_table(name)

    def count_rows(self, table: str) -> int:
        ledger_table = LEDGER_TABLES[table]
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(ledger_table)).scalar_one()

    def data_counts(self) -> dict[str, int]:
        """Rows of every ledger table, ``0`` for the tables not created yet."""
        return {
            name: self.count_rows(name) if self.table_exists(name) else 0
            for name in LEDGER_TABLES
        }

    def latest_block_number(self) -> int | None:
        """The highest indexed block, ``None`` when no block was indexed yet."""
        with self.engine.connect() as conn:
            return conn.execute(select(func.max(blocks_table.c.block_number))).scalar()

    def record_query_execution(
        self,
        *,
        user_id: str | None,
        query_text: str,
        execution_time_ms: float,
        result_size_bytes: int,
        row_count: int,
        cached: bool,
        success: bool = True,
        execution_id: str | None = None,
        created_at: datetime.datetime | None = None,
    ) -> str:
        """Append an entry to the audit log of executed queries, returns its id."""
        execution_id = execution_id or str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                query_executions_table.insert().values(
                    id=execution_id,
                    user_id=user_id,
                    query_text=query_text,
                    execution_time_ms=execution_time_ms,
                    result_size_bytes=result_size_bytes,
                    row_count=row_count,
                    cached=cached,
                    success=success,
                    created_at=created_at or datetime.datetime.now(datetime.timezone.utc),
                )
            )
        return execution_id

    def count_query_executions(self, user_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(query_executions_table)
        if user_id is not None:
            stmt = stmt.where(query_executions_table.c.user_id == user_id)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

    def query_history(
        self, user_id: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[dict[str, Any]]:
        """The audit log of executed queries, newest first.

        :param user_id: Only the queries of this user, all of them if ``None``.
        :param limit: Maximum entries to return.
        :param offset: Entries to skip, for pagination.
        """
        stmt = select(query_executions_table).order_by(
            query_executions_table.c.created_at.desc(), query_executions_table.c.id
        )
        if user_id is not None:
            stmt = stmt.where(query_executions_table.c.user_id == user_id)
        stmt = stmt.limit(limit).offset(offset)
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]


def rows_to_table(columns: list[str], rows: list) -> pa.Table:
    """Build a typed :class:`pyarrow.Table` from database rows.

    Column types are inferred from the values, columns mixing
    incompatible types (which SQLite allows) are stored as strings.
    Duplicate column names, like the ones produced by joins, are preserved.
    """
    arrays = []
    for idx, _ in enumerate(columns):
        values = [row[idx] for row in rows]
        try:
            arrays.append(pa.array(values))
        except (pa.ArrowInvalid, pa.ArrowTypeError, OverflowError):
            arrays.append(
                pa.array([None if v is None else str(v) for v in values], type=pa.string())
            )
    return pa.Table.from_arrays(arrays, names=columns)


def _configure_sqlite(engine: Engine) -> None:
    """Enforce foreign keys and tolerate lock contention between the indexer and queries."""

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()
