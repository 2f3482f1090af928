"""Shell commands exposing the engine.

LedgerQL
========

``ledgerql`` runs sandboxed SQL queries on the indexed StarkNet ledger::

    ledgerql query "SELECT block_number, transaction_count FROM blocks ORDER BY block_number DESC LIMIT 5"

and keeps the ledger store up to date with the chain::

    STARKNET_RPC_URL=https://starknet-mainnet.public.blastapi.io ledgerql sync
    ledgerql backfill 650000 650100

The database used is the one of the ``DATABASE_URL`` environment variable,
or the one provided with ``--database-url``.
"""
