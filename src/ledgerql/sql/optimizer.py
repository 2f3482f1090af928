"""Advisory cost analysis of query plans.

Given a :class:`ledgerql.sql.query.ParsedQuery` the optimizer
estimates how many rows the query will produce, which of the
indexes of the ledger store the query can benefit from, and
warns about patterns known to be slow on ledger data.

The optimizer never changes the query that gets executed,
its output is attached to the query result to guide users
towards faster queries::

    >>> from ledgerql.sql import Parser
    >>> plan = Parser("SELECT * FROM transactions WHERE sender_address = '0x1' LIMIT 10").parse()
    >>> result = QueryOptimizer().optimize(plan)
    >>> result.use_index, result.estimated_rows
    (True, 10)
    >>> result.suggested_indexes
    ['transactions.sender_address']

The row estimate starts from a fixed baseline, which is scaled by the relative
cardinality of each table (there are far more events than blocks),
then reduced by an order of magnitude for each condition and finally
capped by the LIMIT of the query.
"""

import math
from dataclasses import dataclass, field

from ..schema import LEDGER_SCHEMA, SchemaRegistry
from .query import ParsedQuery

BASELINE_ROWS = 1000
CONDITION_SELECTIVITY = 0.1
LARGE_RESULT_LIMIT = 1000


@dataclass
class OptimizationResult:
    use_index: bool = False
    suggested_indexes: list[str] = field(default_factory=list)
    estimated_rows: int = 0
    optimized_query: str = ""
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "use_index": self.use_index,
            "suggested_indexes": list(self.suggested_indexes),
            "estimated_rows": self.estimated_rows,
            "optimized_query": self.optimized_query,
            "warnings": list(self.warnings),
        }


class QueryOptimizer:
    """Estimate the cost of a query plan and suggest improvements."""

    def __init__(self, registry: SchemaRegistry = LEDGER_SCHEMA) -> None:
        """
        :param registry: Provides the index catalog and the tables cardinality.
        """
        self.registry = registry

    def optimize(self, plan: ParsedQuery) -> OptimizationResult:
        """Analyze the plan.

        Invalid plans are analyzed too, using whatever information
        the parser was able to collect.
        """
        result = OptimizationResult()

        for column in self.filtered_columns(plan):
            for table in self.resolve_column_tables(plan, column):
                if self.registry.is_indexed(table, bare_column(column)):
                    index = f"{table}.{bare_column(column)}"
                    if index not in result.suggested_indexes:
                        result.suggested_indexes.append(index)
        result.use_index = bool(result.suggested_indexes)

        result.estimated_rows = self.estimate_rows(plan)
        result.warnings = self.collect_warnings(plan)
        result.optimized_query = "\n".join(plan.clauses()) if plan.columns else ""
        return result

    def filtered_columns(self, plan: ParsedQuery) -> list[str]:
        """Columns used in WHERE conditions and JOIN conditions."""
        columns = [c.column for c in plan.conditions]
        for join in plan.joins:
            columns.extend(join.on_columns)
        return columns

    def resolve_column_tables(self, plan: ParsedQuery, column: str) -> list[str]:
        """The tables of the plan a column might belong to.

        Qualified columns like ``t.block_number`` are resolved through
        the plan aliases, unqualified ones might belong to any table of the query.
        """
        if "." in column:
            qualifier = column.rsplit(".", 1)[0]
            table = plan.resolve_table(qualifier)
            return [table] if table else []
        return [t for t in dict.fromkeys(plan.tables) if self.registry.has_table(t)]

    def estimate_rows(self, plan: ParsedQuery) -> int:
        estimate = float(BASELINE_ROWS)
        for table in plan.tables:
            if self.registry.has_table(table):
                estimate *= self.registry.get(table).row_multiplier
        estimate *= CONDITION_SELECTIVITY ** len(plan.conditions)
        if plan.limit is not None:
            estimate = min(estimate, plan.limit)
        return math.ceil(estimate)

    def collect_warnings(self, plan: ParsedQuery) -> list[str]:
        warnings = []
        large_tables = self.registry.large_tables()
        if not plan.conditions:
            for table in dict.fromkeys(plan.tables):
                if table in large_tables:
                    warnings.append(
                        f"Consider adding WHERE clause for table '{table}' to improve performance"
                    )

        if len(plan.joins) > 2:
            warnings.append("Multiple JOINs detected - consider breaking into smaller queries")

        if plan.limit is None or plan.limit > LARGE_RESULT_LIMIT:
            warnings.append("Consider adding LIMIT clause to prevent large result sets")

        for ordering in plan.order_by:
            tables = self.resolve_column_tables(plan, ordering.column)
            column = bare_column(ordering.column)
            if not any(self.registry.is_indexed(t, column) for t in tables):
                warnings.append(f"ORDER BY '{ordering.column}' may be slow without index")
        return warnings


def bare_column(column: str) -> str:
    """Strip the table qualifier from a column, ``t.block_number`` -> ``block_number``."""
    return column.rsplit(".", 1)[-1].lower()
