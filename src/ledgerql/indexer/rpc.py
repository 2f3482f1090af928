"""JSON-RPC 2.0 client of a StarkNet node.

Only the handful of methods needed by the indexer are exposed::

    rpc = ChainRPCClient("https://starknet-mainnet.public.blastapi.io")
    head = rpc.block_number()
    block = rpc.get_block_with_txs(head)
    for tx in block["transactions"]:
        receipt = rpc.get_transaction_receipt(tx["transaction_hash"])

Responses are returned as the decoded JSON ``result``, no attempt is made
to model them: the node versions disagree on several fields, the indexer
deals with the differences (see :mod:`ledgerql.indexer.receipts`).

Transport failures, HTTP errors and JSON-RPC ``error`` responses
all raise :class:`ChainRPCError`.
"""

import itertools
import threading
from typing import Any

import httpx
import structlog

logger = structlog.get_logger(__name__)


class ChainRPCClient:
    """Blocking StarkNet JSON-RPC client.

    The underlying :class:`httpx.Client` pools connections and is thread safe,
    so the same client can be shared by the indexer loop and backfills.
    """

    def __init__(
        self, url: str, client: httpx.Client | None = None, timeout: float = 30.0
    ) -> None:
        """
        :param url: The endpoint of the node.
        :param client: The HTTP client to use, tests provide one with a mocked transport.
        :param timeout: Seconds to wait for each request.
        """
        self.url = url
        self._client = client if client is not None else httpx.Client(timeout=timeout)
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()

    def call(self, method: str, params: dict[str, Any] | list | None = None) -> Any:
        """Invoke a JSON-RPC method and return its ``result``."""
        with self._ids_lock:
            request_id = next(self._ids)
        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params if params is not None else [],
        }
        try:
            response = self._client.post(self.url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise ChainRPCError(f"{method} failed: {exc}", method=method) from exc
        except ValueError as exc:
            raise ChainRPCError(f"{method} returned invalid JSON: {exc}", method=method) from exc

        if body.get("error"):
            error = body["error"]
            raise ChainRPCError(
                f"{method} failed: {error.get('message', error)}",
                method=method,
                code=error.get("code"),
            )
        if "result" not in body:
            raise ChainRPCError(f"{method} returned no result", method=method)
        logger.debug("RPC call completed", method=method, request_id=request_id)
        return body["result"]

    def chain_id(self) -> str:
        return self.call("starknet_chainId")

    def block_number(self) -> int:
        return int(self.call("starknet_blockNumber"))

    def get_block_with_txs(self, block_number: int) -> dict[str, Any]:
        return self.call("starknet_getBlockWithTxs", {"block_id": {"block_number": block_number}})

    def get_transaction_receipt(self, transaction_hash: str) -> dict[str, Any]:
        return self.call(
            "starknet_getTransactionReceipt", {"transaction_hash": transaction_hash}
        )

    def get_state_update(self, block_number: int) -> dict[str, Any]:
        return self.call("starknet_getStateUpdate", {"block_id": {"block_number": block_number}})

    def close(self) -> None:
        self._client.close()


class ChainRPCError(Exception):
    """A request to the chain node failed."""

    def __init__(self, message: str, method: str | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.code = code
