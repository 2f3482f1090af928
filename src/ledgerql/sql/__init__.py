"""Support for parsing, validating and analyzing SQL queries.

The sandbox only runs SELECT queries, in a restricted dialect
designed to be safe for untrusted users. Queries go through
four components before they can reach the ledger store:

1. Tokenizer
2. Parser (and ExpressionParser)
3. Validator
4. Optimizer

To analyze a SQL query, you would typically combine them as following::

    sql = "SELECT block_number, timestamp FROM blocks ORDER BY block_number DESC LIMIT 10"
    validation = QueryValidator().validate(sql)
    plan = Parser(sql).parse()
    optimization = QueryOptimizer().optimize(plan)

The **Tokenizer** is responsible for converting the input SQL query into a sequence of tokens.
Given a query like ``"SELECT * FROM blocks WHERE block_number = 42"``, the tokenizer will produce
a sequence of tokens like::

    [SELECT, *, FROM, blocks, WHERE, block_number, =, 42]

The :class:`ledgerql.sql.tokenize.Tokenizer` is a simple regex-based tokenizer.
It uses regular expressions to match which tokens exist within the input query.

The :class:`ledgerql.sql.expressions.ExpressionParser`
is responsible for handling a sequence of tokens representing expressions.
It is used by the main parser to parse projections like ``COUNT(DISTINCT storage_key)``,
JOIN conditions and the values of WHERE conditions.

The :class:`ledgerql.sql.parser.Parser` is **the main class of the parser**,
in charge of converting a text query into a :class:`ledgerql.sql.query.ParsedQuery` plan.
Tables referenced by the query are checked against the :mod:`ledgerql.schema`
registry and each plan is scored by its estimated complexity, so that
the sandbox can refuse queries that are too expensive.

The :class:`ledgerql.sql.validator.QueryValidator` scans the raw text for
dangerous operations and suspicious patterns, independently from the parser.

The :class:`ledgerql.sql.optimizer.QueryOptimizer` estimates the result size
of a plan, suggests indexes and warns about slow patterns.
"""

from .expressions import SQLExpressionError
from .optimizer import OptimizationResult, QueryOptimizer
from .parser import Parser, SQLParseError
from .query import JoinClause, OrderByItem, ParsedQuery, WhereCondition
from .tokenize import SQLTokenizeException
from .validator import QueryValidator, ValidationResult

__all__ = (
    "Parser",
    "ParsedQuery",
    "WhereCondition",
    "JoinClause",
    "OrderByItem",
    "QueryValidator",
    "ValidationResult",
    "QueryOptimizer",
    "OptimizationResult",
    "SQLParseError",
    "SQLExpressionError",
    "SQLTokenizeException",
)
