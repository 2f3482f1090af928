"""Synchronization of the ledger store with the chain.

The :class:`Indexer` keeps the storage up to date with the chain head.
Once started it polls the node every ``sync_interval_ms`` and indexes
the blocks produced since the last poll, at most ``batch_size`` blocks per poll
so that a long way behind indexer catches up progressively::

    indexer = Indexer(ChainRPCClient(url), storage, IndexerConfig(start_block=650000))
    indexer.start()
    ...
    indexer.stop()

Indexing a block means fetching it with its transactions, the receipt of
each transaction (for the events) and optionally the state update
(for the storage diffs). All the rows of a block are written in a single
transaction and every write is an upsert, so indexing a block twice is harmless.

Historical ranges can be indexed with :meth:`Indexer.backfill`, which
writes each batch of blocks in a single transaction and reports the blocks
it wasn't able to index instead of stopping at the first failure.
"""

import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel, Field

from ..storage.database import LedgerStorage
from ..storage.records import (
    BlockBundle,
    BlockRecord,
    ContractRecord,
    EventRecord,
    StorageDiffRecord,
    TransactionRecord,
    to_json,
)
from .receipts import ReceiptAdapter, StarknetReceiptAdapter
from .rpc import ChainRPCClient, ChainRPCError

logger = structlog.get_logger(__name__)

DEPLOY_TRANSACTION_TYPES = ("DEPLOY", "DEPLOY_ACCOUNT")


class IndexerConfig(BaseModel):
    model_config = {"frozen": True}

    start_block: int = Field(default=100000, ge=0, description="First block to index on an empty store")
    batch_size: int = Field(default=10, ge=1, description="Maximum blocks indexed per poll or backfill batch")
    sync_interval_ms: int = Field(default=30000, ge=0, description="Delay between two polls")
    index_storage_diffs: bool = Field(default=False, description="Fetch state updates for storage diffs")
    backfill_delay_seconds: float = Field(default=1.0, ge=0, description="Pause between backfill batches")


class IndexerState(str, enum.Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


@dataclass
class SyncState:
    """Progress of the indexer, as observed by the last poll."""

    state: IndexerState = IndexerState.STOPPED
    last_synced_block: int | None = None
    chain_height: int | None = None
    chain_id: str | None = None
    last_error: str | None = None
    last_sync_at: float | None = None
    connected: bool = False

    @property
    def is_running(self) -> bool:
        return self.state == IndexerState.RUNNING


@dataclass
class BackfillReport:
    indexed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


class Indexer:
    """Polls the chain and writes its blocks into the ledger store."""

    def __init__(
        self,
        rpc: ChainRPCClient,
        storage: LedgerStorage,
        config: IndexerConfig | None = None,
        receipts: ReceiptAdapter | None = None,
    ) -> None:
        """
        :param rpc: Client of the chain node.
        :param storage: Where indexed blocks are written.
        :param config: Start block, batch size and polling interval.
        :param receipts: Reads events out of receipts, any StarkNet version by default.
        """
        self.rpc = rpc
        self.storage = storage
        self.config = config or IndexerConfig()
        self.receipts = receipts or StarknetReceiptAdapter()
        self.sync_state = SyncState()
        self._lock = threading.Lock()
        self._sync_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self.sync_state.is_running

    def start(self) -> bool:
        """Connect to the node, run a first poll and start polling in background.

        Returns ``False`` if the indexer was already running or
        :meth:`stop` was called before the first poll completed.

        :raises IndexerStartError: if the node can't be reached.
        """
        with self._lock:
            if self.sync_state.state in (IndexerState.RUNNING, IndexerState.STARTING):
                logger.warning("Indexer already running")
                return False
            self.sync_state.state = IndexerState.STARTING

        try:
            chain_id = self.rpc.chain_id()
            chain_height = self.rpc.block_number()
        except ChainRPCError as exc:
            with self._lock:
                self.sync_state.state = IndexerState.STOPPED
                self.sync_state.last_error = str(exc)
                self.sync_state.connected = False
            logger.error("Indexer failed to connect", rpc_url=self.rpc.url, error=str(exc))
            raise IndexerStartError(f"Unable to connect to {self.rpc.url}: {exc}") from exc

        with self._lock:
            self.sync_state.chain_id = chain_id
            self.sync_state.chain_height = chain_height
            self.sync_state.last_synced_block = self.resume_point()
            self.sync_state.last_error = None
            self.sync_state.connected = True
        logger.info(
            "Indexer connected",
            chain_id=chain_id,
            chain_height=chain_height,
            resume_from=self.sync_state.last_synced_block,
        )

        try:
            self.sync_once()
        except Exception as exc:
            self.sync_state.last_error = str(exc)
            logger.exception("Initial indexer poll failed")

        with self._lock:
            if self.sync_state.state != IndexerState.STARTING:
                logger.info("Indexer stopped while starting")
                return False
            self.sync_state.state = IndexerState.RUNNING
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name="ledgerql-indexer", daemon=True
            )
            self._thread.start()
        return True

    def stop(self) -> None:
        """Stop polling, waiting for the poll in progress to complete."""
        with self._lock:
            if self.sync_state.state == IndexerState.STOPPED:
                return
            self.sync_state.state = IndexerState.STOPPING
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        with self._lock:
            self.sync_state.state = IndexerState.STOPPED
        logger.info("Indexer stopped", last_synced_block=self.sync_state.last_synced_block)

    def _run(self) -> None:
        interval = self.config.sync_interval_ms / 1000
        while not self._stop_event.wait(interval):
            try:
                self.sync_once()
            except Exception as exc:
                with self._lock:
                    self.sync_state.last_error = str(exc)
                logger.exception("Indexer poll failed")

    def resume_point(self) -> int:
        """The last block considered indexed, polls continue from the next one."""
        latest = self.storage.latest_block_number()
        return latest if latest is not None else self.config.start_block - 1

    def sync_once(self) -> int:
        """Index the blocks produced since the last poll, at most ``batch_size`` of them.

        Blocks are indexed in order, a failure stops the poll so that
        the next one retries from the failed block.
        Returns the number of blocks indexed.
        """
        with self._sync_lock:
            if self.sync_state.last_synced_block is None:
                self.sync_state.last_synced_block = self.resume_point()

            try:
                head = self.rpc.block_number()
            except ChainRPCError:
                self.sync_state.connected = False
                raise
            self.sync_state.connected = True
            self.sync_state.chain_height = head
            self.sync_state.last_sync_at = time.time()

            last_synced = self.sync_state.last_synced_block
            window = min(head - last_synced, self.config.batch_size)
            if window <= 0:
                return 0

            indexed = 0
            for block_number in range(last_synced + 1, last_synced + window + 1):
                try:
                    self.index_block(block_number)
                except Exception as exc:
                    self.sync_state.last_error = f"Block {block_number}: {exc}"
                    logger.error("Failed to index block", block_number=block_number, error=str(exc))
                    break
                self.sync_state.last_synced_block = block_number
                indexed += 1

            logger.info(
                "Indexer poll completed",
                indexed=indexed,
                last_synced_block=self.sync_state.last_synced_block,
                chain_height=head,
            )
            return indexed

    def index_block(self, block_number: int) -> BlockBundle:
        """Fetch a block and write it with its transactions, events, contracts and diffs."""
        bundle = self.fetch_block(block_number)
        self.storage.write_bundles([bundle])
        logger.debug(
            "Indexed block",
            block_number=block_number,
            transactions=len(bundle.transactions),
            events=len(bundle.events),
        )
        return bundle

    def backfill(self, from_block: int, to_block: int) -> BackfillReport:
        """Index every block in ``[from_block, to_block]``.

        Blocks are fetched and written ``batch_size`` at a time, pausing
        between batches to spare the node. A batch is written in a single
        transaction, when that fails its blocks are written one by one
        so that a single bad block doesn't lose the whole batch.
        """
        if to_block < from_block:
            raise ValueError(f"Invalid range {from_block}-{to_block}")

        report = BackfillReport()
        logger.info("Backfill started", from_block=from_block, to_block=to_block)
        batch_start = from_block
        while batch_start <= to_block:
            batch_end = min(batch_start + self.config.batch_size - 1, to_block)
            bundles = []
            for block_number in range(batch_start, batch_end + 1):
                try:
                    bundles.append(self.fetch_block(block_number))
                except Exception as exc:
                    report.failed.append(block_number)
                    logger.error("Failed to fetch block", block_number=block_number, error=str(exc))

            if bundles:
                self._write_batch(bundles, report)

            batch_start = batch_end + 1
            if batch_start <= to_block and self.config.backfill_delay_seconds:
                time.sleep(self.config.backfill_delay_seconds)

        report.indexed.sort()
        report.failed.sort()
        logger.info(
            "Backfill completed",
            indexed=len(report.indexed),
            failed=len(report.failed),
        )
        return report

    def _write_batch(self, bundles: list[BlockBundle], report: BackfillReport) -> None:
        try:
            self.storage.write_bundles(bundles)
        except Exception as exc:
            logger.warning("Batch write failed, writing blocks one by one", error=str(exc))
        else:
            report.indexed.extend(b.block_number for b in bundles)
            return

        for bundle in bundles:
            try:
                self.storage.write_bundles([bundle])
            except Exception as exc:
                report.failed.append(bundle.block_number)
                logger.error(
                    "Failed to write block", block_number=bundle.block_number, error=str(exc)
                )
            else:
                report.indexed.append(bundle.block_number)

    def fetch_block(self, block_number: int) -> BlockBundle:
        """Collect from the chain all the rows of a block, without writing them."""
        block = self.rpc.get_block_with_txs(block_number)
        timestamp = int(block.get("timestamp") or 0)
        transactions = block.get("transactions") or []
        bundle = BlockBundle(
            block=BlockRecord(
                block_hash=block.get("block_hash") or "pending",
                block_number=block_number,
                timestamp=timestamp,
                parent_hash=block.get("parent_hash") or "0x0",
                sequencer_address=block.get("sequencer_address") or "0x0",
                state_root=block.get("new_root") or "0x0",
                transaction_count=len(transactions),
            )
        )

        for index, tx in enumerate(transactions):
            tx_hash = tx["transaction_hash"]
            bundle.transactions.append(transaction_record(tx, block_number, index))

            receipt = self.fetch_receipt(tx_hash)
            for event_index, event in enumerate(self.receipts.extract_events(receipt)):
                bundle.events.append(
                    EventRecord(
                        transaction_hash=tx_hash,
                        event_index=event_index,
                        from_address=event.get("from_address") or "0x0",
                        keys=to_json(event.get("keys")),
                        data=to_json(event.get("data")),
                        block_number=block_number,
                        timestamp=timestamp,
                    )
                )

            if tx.get("type") in DEPLOY_TRANSACTION_TYPES:
                bundle.contracts.append(contract_record(tx, receipt, block_number))

        if self.config.index_storage_diffs:
            bundle.storage_diffs.extend(self.fetch_storage_diffs(block_number))
        return bundle

    def fetch_receipt(self, transaction_hash: str) -> dict[str, Any]:
        """The receipt of a transaction, empty when the node can't provide it."""
        try:
            return self.rpc.get_transaction_receipt(transaction_hash) or {}
        except ChainRPCError as exc:
            logger.warning(
                "Failed to fetch receipt", transaction_hash=transaction_hash, error=str(exc)
            )
            return {}

    def fetch_storage_diffs(self, block_number: int) -> list[StorageDiffRecord]:
        update = self.rpc.get_state_update(block_number) or {}
        storage_diffs = (update.get("state_diff") or {}).get("storage_diffs") or []
        return [
            StorageDiffRecord(
                contract_address=diff["address"],
                storage_key=entry["key"],
                new_value=entry["value"],
                block_number=block_number,
            )
            for diff in storage_diffs
            for entry in diff.get("storage_entries") or []
        ]

    def stats(self) -> dict[str, Any]:
        """Indexing progress and data volumes.

        The chain height is refreshed from the node when reachable,
        otherwise the one observed by the last poll is reported.
        """
        try:
            self.sync_state.chain_height = self.rpc.block_number()
            self.sync_state.connected = True
        except ChainRPCError as exc:
            self.sync_state.connected = False
            logger.warning("Unable to refresh chain height", error=str(exc))

        latest = self.storage.latest_block_number()
        chain_height = self.sync_state.chain_height
        progress = 0.0
        if latest is not None and chain_height:
            progress = min(latest / chain_height * 100, 100.0)
        return {
            "data_counts": self.storage.data_counts(),
            "latest_indexed_height": latest,
            "chain_height": chain_height,
            "sync_progress_percent": round(progress, 2),
            "running": self.is_running,
            "connected": self.sync_state.connected,
            "state": self.sync_state.state.value,
            "last_error": self.sync_state.last_error,
            "rpc_endpoint": self.rpc.url,
        }


def transaction_record(tx: dict[str, Any], block_number: int, index: int) -> TransactionRecord:
    return TransactionRecord(
        transaction_hash=tx["transaction_hash"],
        block_number=block_number,
        transaction_index=index,
        type=tx.get("type") or "UNKNOWN",
        sender_address=tx.get("sender_address") or tx.get("contract_address") or "0x0",
        calldata=to_json(tx.get("calldata")),
        signature=to_json(tx.get("signature")),
        max_fee=str(tx.get("max_fee") or "0"),
        version=str(tx.get("version") or "0"),
        nonce=str(tx.get("nonce") or "0"),
    )


def contract_record(
    tx: dict[str, Any], receipt: dict[str, Any], block_number: int
) -> ContractRecord:
    return ContractRecord(
        contract_address=(
            tx.get("contract_address")
            or receipt.get("contract_address")
            or tx.get("sender_address")
            or "0x0"
        ),
        class_hash=tx.get("class_hash") or "0x0",
        deployed_at_block=block_number,
        deployer_address=tx.get("sender_address") or "0x0",
        constructor_calldata=to_json(tx.get("constructor_calldata")),
    )


class IndexerStartError(Exception):
    """The indexer couldn't connect to the chain node."""

    pass
