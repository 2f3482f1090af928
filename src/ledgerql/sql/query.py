"""The structured representation of a parsed query.

A :class:`ParsedQuery` is what :class:`ledgerql.sql.parser.Parser` produces
out of a query text. It is the plan every other component works on:
the validator checks it, the optimizer estimates its cost and suggests indexes,
the sandbox enforces its limits.

Contrary to the expression AST, which is made of plain dictionaries,
the plan is made of frozen dataclasses. It's created once per request and
never changes afterwards, so it can be safely shared between components::

    >>> from ledgerql.sql import Parser
    >>> plan = Parser("SELECT block_number FROM blocks ORDER BY block_number DESC LIMIT 10").parse()
    >>> plan.tables, plan.limit, plan.is_valid
    (('blocks',), 10, True)
    >>> plan.order_by
    (OrderByItem(column='block_number', direction='DESC'),)

WHERE clauses are kept flat: each condition records the logical operator
(``AND`` or ``OR``) that binds it to the following one.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class WhereCondition:
    """A single ``column operator value`` condition of a WHERE or HAVING clause.

    ``value`` is the Python value of literals, the text of identifiers
    and expressions, a tuple for ``IN`` lists and ``BETWEEN`` bounds,
    ``None`` for ``IS [NOT] NULL`` and a nested :class:`ParsedQuery`
    for scalar subqueries. ``value_sql`` is always the SQL text of the value.
    """

    column: str
    operator: str
    value: Any
    logical_operator: str | None = None
    value_sql: str = ""

    def to_sql(self) -> str:
        if self.operator in ("IS NULL", "IS NOT NULL"):
            return f"{self.column} {self.operator}"
        return f"{self.column} {self.operator} {self.value_sql}"


@dataclass(frozen=True)
class JoinClause:
    """A ``[kind] JOIN table [alias] [ON expression]`` clause."""

    kind: str
    table: str
    on_expression: str | None = None
    alias: str | None = None
    on_columns: tuple[str, ...] = ()

    def to_sql(self) -> str:
        sql = f"{self.kind} JOIN {self.table}"
        if self.alias:
            sql += f" {self.alias}"
        if self.on_expression:
            sql += f" ON {self.on_expression}"
        return sql


@dataclass(frozen=True)
class OrderByItem:
    column: str
    direction: str = "ASC"


@dataclass(frozen=True)
class ParsedQuery:
    """The plan of a query.

    When the query can't be parsed ``is_valid`` is ``False``
    and ``errors`` explains why, the other fields contain
    whatever could be detected before the failure.
    """

    kind: str = "SELECT"
    columns: tuple[str, ...] = ()
    tables: tuple[str, ...] = ()
    conditions: tuple[WhereCondition, ...] = ()
    joins: tuple[JoinClause, ...] = ()
    group_by: tuple[str, ...] = ()
    order_by: tuple[OrderByItem, ...] = ()
    having: tuple[WhereCondition, ...] = ()
    distinct: bool = False
    limit: int | None = None
    offset: int | None = None
    aliases: dict[str, str] = field(default_factory=dict, compare=False)
    sources: tuple[tuple[str, str | None], ...] = ()
    unknown_tables: tuple[str, ...] = ()
    is_valid: bool = True
    errors: tuple[str, ...] = ()
    estimated_complexity: int = 0

    def resolve_table(self, qualifier: str) -> str | None:
        """Resolve a column qualifier (table name or alias) to the table name."""
        qualifier = qualifier.lower()
        if qualifier in self.aliases:
            return self.aliases[qualifier]
        if qualifier in self.tables:
            return qualifier
        return None

    def to_sql(self) -> str:
        """Render the plan as single line SQL text."""
        return " ".join(self.clauses())

    def clauses(self) -> list[str]:
        """The SQL clauses of the plan, one per entry.

        Used by :meth:`to_sql` and by the optimizer which
        renders them one per line.
        """
        select = "SELECT DISTINCT" if self.distinct else "SELECT"
        clauses = [f"{select} {', '.join(self.columns)}"]

        sources = [f"{table} {alias}" if alias else table for table, alias in self.sources]
        clauses.append(f"FROM {', '.join(sources)}")
        clauses.extend(join.to_sql() for join in self.joins)

        if self.conditions:
            clauses.append(f"WHERE {render_conditions(self.conditions)}")
        if self.group_by:
            clauses.append(f"GROUP BY {', '.join(self.group_by)}")
        if self.having:
            clauses.append(f"HAVING {render_conditions(self.having)}")
        if self.order_by:
            ordering = ", ".join(f"{o.column} {o.direction}" for o in self.order_by)
            clauses.append(f"ORDER BY {ordering}")
        if self.limit is not None:
            clauses.append(f"LIMIT {self.limit}")
        if self.offset is not None:
            clauses.append(f"OFFSET {self.offset}")
        return clauses


def render_conditions(conditions: tuple[WhereCondition, ...]) -> str:
    """Render a flat list of conditions joined by their logical operators."""
    parts = []
    for condition in conditions:
        parts.append(condition.to_sql())
        if condition.logical_operator:
            parts.append(condition.logical_operator)
    return " ".join(parts)


def compute_complexity(
    tables: int,
    joins: int,
    conditions: int,
    group_by: int,
    order_by: int,
    limit: int | None,
) -> int:
    """Score how expensive a query is likely to be.

    Every table, join, condition and grouping adds to the score,
    queries without a LIMIT (or with a LIMIT above 1000) get a flat penalty.
    """
    score = 1
    score += tables * 2
    score += joins * 5
    score += conditions * 2
    score += group_by * 3
    score += order_by * 2
    if limit is None or limit > 1000:
        score += 10
    return score
