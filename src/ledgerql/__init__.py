"""LedgerQL

SQL analytics over the StarkNet ledger, safe to open to untrusted users.

The engine indexes blocks, transactions, events, deployed contracts and
storage diffs from a StarkNet node into a relational store, and lets users
explore them with SELECT queries run in a sandbox that enforces
security rules, rate limits and resource budgets.

The engine is constituted by multiple components, each isolated within its own
package and each self documented in literate programming style.

The primary components are:

* The SQL package (:mod:`ledgerql.sql`), which parses, validates and analyzes queries.
* The Sandbox (:mod:`ledgerql.sandbox`), which runs queries with caching, rate limiting
  and timeouts.
* The Storage (:mod:`ledgerql.storage`), which holds the ledger data.
* The Indexer (:mod:`ledgerql.indexer`), which keeps the storage in sync with the chain.

:class:`ledgerql.service.LedgerQLService` wires them together,
and the ``ledgerql`` command (:mod:`ledgerql.commands`) exposes it on the shell.
For the documentation of each component, refer to the component itself.
"""

from . import sandbox, sql, storage

__all__ = ("sandbox", "sql", "storage")
