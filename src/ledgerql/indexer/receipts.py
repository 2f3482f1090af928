"""Extraction of events from transaction receipts.

Receipts changed shape across StarkNet RPC versions:

* the status was a single ``status`` field, it's now split in
  ``finality_status`` and ``execution_status``;
* some nodes report the execution outcome as ``execution_result.status``;
* events are usually at the top level of the receipt, but a few
  providers nest them within ``execution_resources``.

The :class:`ReceiptAdapter` protocol isolates the indexer from those
differences, :class:`StarknetReceiptAdapter` handles all the shapes above.
"""

from typing import Any, Protocol

ACCEPTED_STATUSES = ("ACCEPTED_ON_L2", "ACCEPTED_ON_L1")


class ReceiptAdapter(Protocol):
    def is_successful(self, receipt: dict[str, Any]) -> bool: ...

    def extract_events(self, receipt: dict[str, Any]) -> list[dict[str, Any]]: ...


class StarknetReceiptAdapter:
    """Reads receipts of any StarkNet RPC version."""

    def is_successful(self, receipt: dict[str, Any]) -> bool:
        """If the transaction was accepted and its execution didn't revert."""
        finality = receipt.get("finality_status") or receipt.get("status")
        if finality not in ACCEPTED_STATUSES:
            return False
        execution = receipt.get("execution_status")
        if execution is None and isinstance(receipt.get("execution_result"), dict):
            execution = receipt["execution_result"].get("status")
        return execution is None or execution == "SUCCEEDED"

    def extract_events(self, receipt: dict[str, Any]) -> list[dict[str, Any]]:
        """The events emitted by a successful transaction, empty for failed ones."""
        if not receipt or not self.is_successful(receipt):
            return []
        events = receipt.get("events")
        if events is None:
            events = (receipt.get("execution_resources") or {}).get("events")
        return list(events or [])
