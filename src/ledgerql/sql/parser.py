"""A SQL Parser for the SELECT-only dialect accepted by the sandbox.

Given a SQL Query like
``"SELECT b.block_number, COUNT(t.transaction_hash) AS txs FROM blocks b LEFT JOIN transactions t ON b.block_number = t.block_number WHERE b.block_number > 100 GROUP BY b.block_number LIMIT 5"``,
the parser will produce a :class:`ledgerql.sql.query.ParsedQuery` like::

    ParsedQuery(
        kind="SELECT",
        columns=("b.block_number", "COUNT(t.transaction_hash) AS txs"),
        tables=("blocks", "transactions"),
        conditions=(WhereCondition(column="b.block_number", operator=">", value=100, ...),),
        joins=(JoinClause(kind="LEFT", table="transactions", on_expression="b.block_number = t.block_number", ...),),
        group_by=("b.block_number",),
        limit=5,
        is_valid=True,
        estimated_complexity=15,
        ...
    )

Only SELECT statements are accepted because queries come from untrusted users,
any other statement kind is detected and reported as an error.

The parser is based on a simple recursive descent parsing approach, where each SQL clause
is parsed by a dedicated method of :class:`SelectStatementParser`.
Expressions (projections, JOIN conditions, the two sides of WHERE conditions)
are delegated to :class:`ledgerql.sql.expressions.ExpressionParser`.

The grammar is intentionally restricted: WHERE clauses are a flat
list of conditions joined by AND/OR, parenthesized boolean groups are rejected,
and subqueries are only accepted as scalar values of a condition.

Contrary to the internal parsing classes, :class:`Parser` never raises,
all failures are reported through ``ParsedQuery.is_valid`` and ``ParsedQuery.errors``.
"""

import re

from ..schema import LEDGER_SCHEMA, SchemaRegistry
from .expressions import (
    ExpressionParser,
    SQLExpressionError,
    expression_identifiers,
    render_expression,
)
from .query import JoinClause, OrderByItem, ParsedQuery, WhereCondition, compute_complexity
from .tokenize import (
    AliasToken,
    DistinctToken,
    EOFToken,
    FromToken,
    GroupByToken,
    HavingToken,
    IdentifierToken,
    JoinOnToken,
    JoinToken,
    JoinTypeToken,
    LimitToken,
    LiteralToken,
    OffsetToken,
    OperatorToken,
    OrderByToken,
    PunctuationToken,
    SelectToken,
    SortingOrderToken,
    SQLTokenizeException,
    Token,
    Tokenizer,
    WhereToken,
)

BOOLEAN_NODES = ("comparison", "conjunction", "predicate")


class Parser:
    """Parse a query text into a :class:`ledgerql.sql.query.ParsedQuery`.

    The Parser class identifies what type of query is being parsed and delegates the parsing
    to :class:`SelectStatementParser` for SELECT statements, every other kind of
    statement is rejected.

    The parser relies on :class:`ledgerql.sql.tokenize.Tokenizer` to tokenize the input SQL query,
    and on the :class:`ledgerql.schema.SchemaRegistry` to check that the tables
    referenced by the query exist.
    """

    def __init__(self, text: str, registry: SchemaRegistry = LEDGER_SCHEMA) -> None:
        """
        :param text: The input SQL query text to parse.
        :param registry: The tables the query is allowed to reference.
        """
        self.text = text
        self.registry = registry

    def parse(self) -> ParsedQuery:
        """Parse the query and return its plan.

        Never raises, when the query is not valid the
        returned plan has ``is_valid=False`` and a list of ``errors``.
        """
        if not self.text or not self.text.strip():
            return ParsedQuery(kind="", is_valid=False, errors=("Empty query",))

        try:
            tokens = Tokenizer(self.text).tokenize()
        except SQLTokenizeException as e:
            return ParsedQuery(
                kind=detect_statement_kind(self.text), is_valid=False, errors=(str(e),)
            )

        sql_command = tokens[0]
        if not isinstance(sql_command, SelectToken):
            return ParsedQuery(
                kind=detect_statement_kind(self.text),
                is_valid=False,
                errors=("Only SELECT queries are allowed in the sandbox",),
            )

        try:
            return SelectStatementParser(tokens, self.registry).parse()
        except SQLParseError as e:
            return ParsedQuery(kind="SELECT", is_valid=False, errors=(str(e),))


class SelectStatementParser:
    """A parser for SELECT statements that converts SQL queries into query plans.

    The :class:`Parser` class delegates the parsing of SELECT statements to this class.
    It is also used to parse scalar subqueries, in which case ``nested`` is ``True``
    and the parsing doesn't expect a statement terminator.

    The main parser has already tokenized the input , so this parser works directly with the tokens
    """

    def __init__(
        self, tokens: list[Token], registry: SchemaRegistry, nested: bool = False
    ) -> None:
        """
        :param tokens: A list of tokens representing the SQL query to parse.
        :param registry: The tables the query is allowed to reference.
        :param nested: If the statement is a subquery of another statement.
        """
        self.tokens = tokens
        self.registry = registry
        self.nested = nested
        self.pos = 0
        self.current_token = tokens[self.pos]
        self.subqueries: list[ParsedQuery] = []

    def advance(self, count: int = 1) -> None:
        """Advance the parser current_token to a subsequent token in the token list.

        By default it will move to the next token, as that's the
        most common use case.

        But when invoking subparsers like :class:`ledgerql.sql.expressions.ExpressionParser`,
        it will be necessary to advance by as many tokens as the subparser consumed.
        """
        self.pos += count
        if self.pos < len(self.tokens):
            self.current_token = self.tokens[self.pos]
        else:
            self.current_token = EOFToken()

    def peek(self) -> Token:
        """Allows to take a look at what's the next token, without advancing the parser.

        In case the behavior of parsing the current token depends on the token that
        follows it, this function allows to check what's the next token without
        consuming it.
        """
        next_pos = self.pos + 1
        if next_pos < len(self.tokens):
            return self.tokens[next_pos]
        else:
            return EOFToken()

    def parse(self) -> ParsedQuery:
        """Parse the SELECT statement and return the query plan.

        The only required parts are the SELECT projections and FROM clauses,
        all the other clauses are optional and can't be reordered.
        """
        if not isinstance(self.current_token, SelectToken):
            raise SQLParseError(f"Expected SELECT statement, got: {self.current_token}")
        self.advance()  # Advance past 'SELECT'

        distinct = False
        if isinstance(self.current_token, DistinctToken):
            distinct = True
            self.advance()

        columns = self.parse_projections()

        if isinstance(self.current_token, FromToken):
            self.advance()  # Consume 'FROM'
            sources, joins = self.parse_from_clause()
        else:
            raise SQLParseError("Missing FROM clause")

        conditions: list[WhereCondition] = []
        if isinstance(self.current_token, WhereToken):
            self.advance()  # Consume 'WHERE'
            conditions = self.parse_conditions()

        group_by: list[str] = []
        if isinstance(self.current_token, GroupByToken):
            self.advance()  # Consume 'GROUP BY'
            group_by = self.parse_group_by_clause()

        having: list[WhereCondition] = []
        if isinstance(self.current_token, HavingToken):
            self.advance()  # Consume 'HAVING'
            having = self.parse_conditions()

        order_by: list[OrderByItem] = []
        if isinstance(self.current_token, OrderByToken):
            self.advance()  # Consume 'ORDER BY'
            order_by = self.parse_order_by_clause()

        limit = None
        if isinstance(self.current_token, LimitToken):
            self.advance()  # Consume 'LIMIT'
            limit = self.parse_limit_or_offset_clause("LIMIT")

        offset = None
        if isinstance(self.current_token, OffsetToken):
            self.advance()  # Consume 'OFFSET'
            offset = self.parse_limit_or_offset_clause("OFFSET")

        self.parse_statement_end()

        aliases = {alias: table for table, alias in sources if alias}
        aliases.update({j.alias: j.table for j in joins if j.alias})
        tables = [table for table, _ in sources] + [j.table for j in joins]
        for subquery in self.subqueries:
            tables.extend(subquery.tables)

        unknown_tables = []
        for table in tables:
            if not self.registry.has_table(table) and table not in unknown_tables:
                unknown_tables.append(table)
        errors = tuple(
            f"Unknown table: {table}. Available tables: {', '.join(self.registry.table_names())}"
            for table in unknown_tables
        )

        return ParsedQuery(
            kind="SELECT",
            columns=tuple(columns),
            tables=tuple(tables),
            conditions=tuple(conditions),
            joins=tuple(joins),
            group_by=tuple(group_by),
            order_by=tuple(order_by),
            having=tuple(having),
            distinct=distinct,
            limit=limit,
            offset=offset,
            aliases=aliases,
            sources=tuple(sources),
            unknown_tables=tuple(unknown_tables),
            is_valid=not errors,
            errors=errors,
            estimated_complexity=compute_complexity(
                tables=len(tables),
                joins=len(joins),
                conditions=len(conditions),
                group_by=len(group_by),
                order_by=len(order_by),
                limit=limit,
            ),
        )

    def parse_projections(self) -> list[str]:
        """Parse the SELECT projections from the SQL query.

        Projections can be expressions too, like ``SUM(max_fee)``, or ``COUNT(DISTINCT type)``
        or even ``A + B``, handles aliases like ``SELECT COUNT(*) AS total`` too,
        and implicit aliases like ``SELECT COUNT(*) total``.

        Returns the list of projections rendered back to SQL text,
        like ``["block_number", "COUNT(*) AS total"]``.
        """
        projections = []
        while True:
            projection = render_expression(self.parse_expression())
            alias = None
            if isinstance(self.current_token, AliasToken):
                self.advance()
                if not isinstance(self.current_token, (IdentifierToken, LiteralToken)):
                    raise SQLParseError(f"Expected alias after AS, got: {self.current_token}")
                alias = self.current_token.value
                self.advance()
            elif isinstance(self.current_token, IdentifierToken):
                alias = self.current_token.value
                self.advance()
            if alias is not None:
                projection = f"{projection} AS {alias}"
            projections.append(projection)
            if not self.consume_punctuation(","):
                break
        return projections

    def parse_from_clause(self) -> tuple[list[tuple[str, str | None]], list[JoinClause]]:
        """Parse the FROM clause of the SQL query.

        The FROM clause can contain multiple tables, separated by commas,
        each of which might be followed by JOIN clauses.

        Returns the list of ``(table, alias)`` sources and the list of joins.
        """
        sources = []
        joins = []
        while True:
            sources.append(self.parse_table_reference("FROM"))
            while isinstance(self.current_token, (JoinTypeToken, JoinToken)):
                joins.append(self.parse_join_clause())
            if not self.consume_punctuation(","):
                break
        return sources, joins

    def parse_table_reference(self, clause: str) -> tuple[str, str | None]:
        """Parse a table name followed by an optional alias like ``blocks AS b``."""
        if not isinstance(self.current_token, IdentifierToken):
            raise SQLParseError(f"Expected table name in {clause} clause")
        table = self.current_token.value.lower()
        self.advance()

        alias = None
        if isinstance(self.current_token, AliasToken):
            self.advance()
            if not isinstance(self.current_token, IdentifierToken):
                raise SQLParseError(f"Expected alias after AS, got: {self.current_token}")
            alias = self.current_token.value.lower()
            self.advance()
        elif isinstance(self.current_token, IdentifierToken):
            alias = self.current_token.value.lower()
            self.advance()
        return table, alias

    def parse_join_clause(self) -> JoinClause:
        """Parse a JOIN clause from the SQL query.

        A JOIN clause starts with the optional Join Type: INNER, LEFT, RIGHT, FULL, CROSS
        possibly followed by OUTER, if missing, INNER JOIN is assumed.

        The JOIN clause is followed by the table name to join with, and optionally the ON keyword
        followed by an expression constituting the join condition.
        """
        # First we expect to find the optional join type:
        #  INNER, LEFT, RIGHT, FULL, CROSS, OUTER
        join_type = []
        while isinstance(self.current_token, JoinTypeToken):
            join_type.append(self.current_token.value)
            self.advance()
        if not join_type:
            join_type = ["INNER"]

        # Next we expect to find the JOIN keyword
        if not isinstance(self.current_token, JoinToken):
            raise SQLParseError("Expected JOIN keyword in JOIN clause")
        self.advance()

        table, alias = self.parse_table_reference("JOIN")

        on_expression = None
        on_columns: tuple[str, ...] = ()
        if isinstance(self.current_token, JoinOnToken):
            self.advance()
            condition = self.parse_expression()
            on_expression = render_expression(condition)
            on_columns = tuple(expression_identifiers(condition))

        return JoinClause(
            kind=" ".join(join_type),
            table=table,
            on_expression=on_expression,
            alias=alias,
            on_columns=on_columns,
        )

    def parse_conditions(self) -> list[WhereCondition]:
        """Parse the conditions of a WHERE or HAVING clause.

        Conditions are kept as a flat list, each condition
        records the ``AND``/``OR`` operator that links it to the next one.
        """
        conditions = []
        while True:
            column, operator, value, value_sql = self.parse_condition()
            logical_operator = None
            if isinstance(self.current_token, OperatorToken) and self.current_token.value in (
                "AND",
                "OR",
            ):
                logical_operator = self.current_token.value
                self.advance()
            conditions.append(
                WhereCondition(
                    column=column,
                    operator=operator,
                    value=value,
                    logical_operator=logical_operator,
                    value_sql=value_sql,
                )
            )
            if logical_operator is None:
                break
        return conditions

    def parse_condition(self) -> tuple[str, str, object, str]:
        """Parse a single condition like ``block_number > 10`` or ``type IN ('INVOKE', 'DEPLOY')``.

        Returns the condition column, operator, value and the value rendered as SQL.
        """
        if isinstance(self.current_token, OperatorToken) and self.current_token.value == "NOT":
            raise SQLParseError(
                "Negated conditions are not supported, use !=, NOT LIKE, NOT IN or NOT BETWEEN"
            )
        if isinstance(self.current_token, (EOFToken, PunctuationToken)) and not (
            self.current_token.value == "("
        ):
            raise SQLParseError(f"Expected a condition, got: {self.current_token}")

        node = self.run_expression_parser(ExpressionParser.parse_comparison)
        if node["type"] not in BOOLEAN_NODES:
            if node["type"] == "group" and node["expr"]["type"] in BOOLEAN_NODES + ("unary_op",):
                raise SQLParseError(
                    "Parenthesized conditions are not supported, "
                    "conditions must be a flat list joined by AND/OR"
                )
            raise SQLParseError(
                f"Expected a comparison in condition '{render_expression(node)}'"
            )
        if node["left"]["type"] == "group" and node["left"]["expr"]["type"] in BOOLEAN_NODES:
            raise SQLParseError(
                "Parenthesized conditions are not supported, "
                "conditions must be a flat list joined by AND/OR"
            )

        column = render_expression(node["left"])
        operator = node["op"]
        right = node["right"]
        if operator in ("IS NULL", "IS NOT NULL"):
            return column, operator, None, ""
        elif operator in ("BETWEEN", "NOT BETWEEN"):
            low, high = right
            value_sql = f"{render_expression(low)} AND {render_expression(high)}"
            return column, operator, (condition_value(low), condition_value(high)), value_sql
        elif operator in ("IN", "NOT IN") and isinstance(right, list):
            value_sql = f"({', '.join(render_expression(v) for v in right)})"
            return column, operator, tuple(condition_value(v) for v in right), value_sql
        else:
            return column, operator, condition_value(right), render_expression(right)

    def parse_group_by_clause(self) -> list[str]:
        """Parse the GROUP BY clause of the SQL query.

        Returns the list of columns (or expressions) to group by.
        """
        group_by_columns = []
        while True:
            if isinstance(self.current_token, (EOFToken, PunctuationToken)):
                raise SQLParseError("Expected column name in GROUP BY clause")
            group_by_columns.append(render_expression(self.parse_operand()))
            if not self.consume_punctuation(","):
                break
        return group_by_columns

    def parse_order_by_clause(self) -> list[OrderByItem]:
        """Parse the ORDER BY clause of the SQL query.

        Returns a list of columns to order by, with the sort order (ASC or DESC).
        """
        order_by_columns = []
        while True:
            if isinstance(self.current_token, (EOFToken, PunctuationToken)):
                raise SQLParseError("Expected column name in ORDER BY clause")
            column = render_expression(self.parse_operand())
            sort_order = "ASC"  # Default sort order
            if isinstance(self.current_token, SortingOrderToken):
                sort_order = self.current_token.value.upper()
                self.advance()
            order_by_columns.append(OrderByItem(column=column, direction=sort_order))
            if not self.consume_punctuation(","):
                break
        return order_by_columns

    def parse_limit_or_offset_clause(self, clause: str) -> int:
        """Parse the LIMIT or OFFSET clauses of the SQL query.

        Returns the value as a non negative integer.
        """
        token = self.current_token
        if isinstance(token, LiteralToken) and token.value.isdigit():
            value = int(token.value)
            self.advance()
            return value
        else:
            raise SQLParseError(f"Expected numeric literal after {clause}")

    def parse_statement_end(self) -> None:
        """Ensure nothing follows the statement but an optional ``;``."""
        if not self.nested and self.consume_punctuation(";"):
            if not isinstance(self.current_token, EOFToken):
                raise SQLParseError("Multiple statements are not allowed")
        if not isinstance(self.current_token, EOFToken):
            raise SQLParseError(f"Unexpected token: {self.current_token}")

    def parse_expression(self) -> dict:
        """Parse an expression from the SQL query.

        For the actual parsing it relies on the
        :class:`ledgerql.sql.expressions.ExpressionParser`,
        after which it advances the parser by the number of tokens
        consumed by the expression parser.
        """
        return self.run_expression_parser(ExpressionParser.parse_expression)

    def parse_operand(self) -> dict:
        """Parse an expression that can't contain comparisons or logical operators."""
        return self.run_expression_parser(ExpressionParser.parse_additive_expr)

    def run_expression_parser(self, method) -> dict:
        """Run a parsing method of an ExpressionParser on the remaining tokens.

        :param method: The ExpressionParser method to invoke, like
                       :meth:`ledgerql.sql.expressions.ExpressionParser.parse_comparison`.
        """
        try:
            expression_parser = ExpressionParser(
                self.tokens[self.pos :], subquery_parser=self.parse_subquery
            )
            ast = method(expression_parser)
        except SQLExpressionError as e:
            raise SQLParseError(f"Error parsing expression: {e}")

        self.advance(expression_parser.pos)
        return ast

    def parse_subquery(self, tokens: list[Token]) -> ParsedQuery:
        """Parse the tokens of a scalar subquery into its own plan.

        Subqueries must select exactly one column.
        """
        subquery = SelectStatementParser(tokens, self.registry, nested=True).parse()
        if len(subquery.columns) != 1 or subquery.columns[0] == "*":
            raise SQLParseError("Subqueries must select exactly one column")
        self.subqueries.append(subquery)
        return subquery

    def consume_punctuation(self, *values: str) -> bool:
        """Consume a punctuation token with a specific value.

        If the current token is a punctuation token with one of the specified values,
        it will consume the token and return True. Otherwise, it will return False.

        This is used by other parsing functions when there is a list of values to parse,
        it will consume the punctuation tokens like ``','`` and return ``True`` as
        far as there are more values to consume.

        :param values: The list of valid punctuation characters to consume.
        """
        if (
            isinstance(self.current_token, PunctuationToken)
            and self.current_token.value in values
        ):
            self.advance()
            return True
        return False


def condition_value(node: dict) -> object:
    """The Python value of the right side of a condition.

    Literals become their Python value, subqueries their plan,
    anything else (identifiers, expressions) its SQL text.
    """
    if node["type"] == "literal":
        return node["value"]
    elif node["type"] == "subquery":
        return node["query"]
    elif (
        node["type"] == "unary_op"
        and node["op"] == "-"
        and node["operand"]["type"] == "literal"
        and isinstance(node["operand"]["value"], (int, float))
    ):
        return -node["operand"]["value"]
    return render_expression(node)


def detect_statement_kind(text: str) -> str:
    """Guess the kind of statement from its first word, like ``DROP`` or ``SELECT``."""
    match = re.match(r"\s*([A-Za-z]+)", text)
    return match.group(1).upper() if match else ""


class SQLParseError(Exception):
    """An exception raised when an error occurs during SQL parsing."""

    pass
