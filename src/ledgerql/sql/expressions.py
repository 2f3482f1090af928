"""Implement a parser for SQL expressions.

An SQL expression is a combination of literals, identifiers, operators, and functions that
can be evaluated to a value. This module provides a parser for SQL expressions that can
parse expressions with the following features:

- Arithmetic operators: ``+, -, *, /, %`` and string concatenation ``||``
- Comparison operators: ``=, <, >, <=, >=, <>, !=``
- Predicates: ``LIKE``, ``IN (...)``, ``BETWEEN x AND y``, ``IS [NOT] NULL``
- Logical operators: ``AND, OR, NOT``
- Parentheses for grouping
- Function calls with arguments, including ``COUNT(*)`` and ``COUNT(DISTINCT x)``
- Scalar subqueries like ``(SELECT MAX(block_number) FROM blocks)``
- Identifiers and literals

The parser returns an abstract syntax tree (AST) made of nested dictionaries,
which is used by :class:`ledgerql.sql.parser.Parser` to build the projections,
the JOIN conditions and the values of WHERE conditions of a query plan.

The parser is implemented as a recursive descent parser, with each method in the
expression parser class corresponding to a different level of the grammar. The parser
advances through the tokens and builds the AST by recursively calling the appropriate
methods based on the current token.

In case of an expression like ``a + b * c != 3 AND NOT d``, the workflow would proceed as follows::

    - parse_expression (``a + b * c != 3 AND NOT d``)            # Handles OR last because it is the lowest precedence comparator
        - parse_term (``AND``)                                   # Handles AND first because it has an higher precedence comparator
            - parse_factor (``a + b * c != 3``)                  # Handles operands connected by AND
                - parse_comparison (``!=``)                      # Handles comparison operators and predicates
                    - parse_additive_expr (``a + b * c``)        # Handles addition last as they have lower math precedence
                        - parse_multiplicative_expr (``b * c``)  # Handles multiplication first as they have higher math precedence
                            - parse_unary_expr (``b``)           # Handles possible -X to negate values
                                - parse_primary (``b``)          # Handles parenthesis and subqueries
                                    - parse_atom (``b``)         # Handles identifiers, literals and function calls
                - parse_additive_expr (``3``)                    # Handles the right side of the comparison
            - parse_factor (``NOT d``)                           # Handles the right side of the AND, processes NOT operator

The resulting AST would look like this::

    {
        "type": "conjunction",
        "op": "AND",
        "left": {
            "type": "comparison",
            "op": "!=",
            "left": {
                "type": "binary_op",
                "op": "+",
                "left": {"type": "identifier", "value": "a"},
                "right": {
                    "type": "binary_op",
                    "op": "*",
                    "left": {"type": "identifier", "value": "b"},
                    "right": {"type": "identifier", "value": "c"}
                }
            },
            "right": {"type": "literal", "value": 3}
        },
        "right": {
            "type": "unary_op",
            "op": "NOT",
            "operand": {"type": "identifier", "value": "d"}
        }
    }

Any AST can be turned back into SQL text through :func:`render_expression`,
which is how the query plan exposes projections and conditions in textual form.
"""

from typing import Any, Callable

from .tokenize import (
    DistinctToken,
    EOFToken,
    IdentifierToken,
    LiteralToken,
    OperatorToken,
    PunctuationToken,
    SelectToken,
    Token,
)

COMPARISON_OPERATORS = ("=", "<", ">", "<=", ">=", "<>", "!=")


class ExpressionParser:
    """A parser for SQL expressions.

    Handles parsing of SQL expressions like "a + b", "x > 5 AND y < 7" or "SUM(x) * 2".
    into an abstract syntax tree (AST).

    It is used by :class:`ledgerql.sql.parser.Parser` to handle
    SELECT projections, JOIN conditions and the operands of WHERE conditions.
    """

    def __init__(
        self,
        tokens: list[Token],
        subquery_parser: Callable[[list[Token]], Any] | None = None,
    ) -> None:
        """
        :param tokens: A list of tokens representing the expression.
        :param subquery_parser: Invoked with the tokens of a ``(SELECT ...)``
                                subquery, without the parenthesis,
                                to build the nested query plan.
                                When not provided subqueries are an error.
        """
        if not tokens:
            raise SQLExpressionError("Empty expression.")
        self.tokens = tokens
        self.subquery_parser = subquery_parser
        self.pos = 0  # Current position in the tokens list
        self.current_token = tokens[self.pos]

    def advance(self) -> None:
        """Advance the parser to the next token.

        The parser keeps track of the current token that
        has to parse, this function is used to move to the next
        token after the current one has been parsed.
        """
        self.pos += 1
        if self.pos < len(self.tokens):
            self.current_token = self.tokens[self.pos]
        else:
            self.current_token = EOFToken()  # End of input

    def parse(self) -> tuple[int, dict]:
        """Main method to parse a whole expression.

        Returns the abstract syntax tree (AST) for the parsed expression
        and how many tokens were consumed to parse the expression.

        The amount of tokens is returned to allow the caller to know
        where the expression parsing ended and continue parsing other
        parts of the query.
        """
        ast = self.parse_expression()
        return self.pos, ast

    def parse_expression(self) -> dict:
        """Parse an expression, which are terms connected by OR

        Parses the left term of the expression and then
        if there is an OR it will parse the right term too.

        If there is no OR, it will return the left term as is.
        """
        term = self.parse_term()
        while self.is_operator("OR"):
            op = self.current_token.value.upper()
            self.advance()
            right = self.parse_term()
            term = {"type": "conjunction", "op": op, "left": term, "right": right}
        return term

    def parse_term(self) -> dict:
        """Parse a term, which are factors connected by AND.

        Parses the left factor of the expression and then
        if there is an AND it will parse the right one too.

        If there is no AND, it will return the left factor as is.
        """
        factor = self.parse_factor()
        while self.is_operator("AND"):
            op = self.current_token.value.upper()
            self.advance()
            right = self.parse_factor()
            factor = {"type": "conjunction", "op": op, "left": factor, "right": right}
        return factor

    def parse_factor(self) -> dict:
        """Parse a factor, which are comparison expressions possibly negated by NOT.

        If the factor is negated by NOT, it will parse the operand and return
        it wrapped in a unary operation node.

        If the factor is not negated, it will move forward an parse the eventual comparison.
        """
        if self.is_operator("NOT"):
            self.advance()
            operand = self.parse_factor()
            return {"type": "unary_op", "op": "NOT", "operand": operand}
        else:
            return self.parse_comparison()

    def parse_comparison(self) -> dict:
        """Parse a comparison or a predicate like LIKE, IN, BETWEEN, IS NULL.

        Parses the left side of the comparison and then if there is a comparison operator
        it will parse the right side too.

        If there is no comparison operator, it will return the left side as is.
        """
        left = self.parse_additive_expr()
        if self.is_operator(*COMPARISON_OPERATORS):
            op = self.current_token.value
            self.advance()
            right = self.parse_additive_expr()
            return {"type": "comparison", "op": op, "left": left, "right": right}
        elif self.is_operator("IS"):
            self.advance()
            op = "IS NULL"
            if self.is_operator("NOT"):
                self.advance()
                op = "IS NOT NULL"
            if not self.is_null_literal():
                raise SQLExpressionError(f"Expected NULL after IS, got: {self.current_token}")
            self.advance()
            return {"type": "predicate", "op": op, "left": left, "right": None}

        negated = False
        if self.is_operator("NOT"):
            self.advance()
            negated = True
            if not self.is_operator("LIKE", "IN", "BETWEEN"):
                raise SQLExpressionError(
                    f"Expected LIKE, IN or BETWEEN after NOT, got: {self.current_token}"
                )

        if self.is_operator("LIKE"):
            self.advance()
            right = self.parse_additive_expr()
            op = "NOT LIKE" if negated else "LIKE"
            return {"type": "comparison", "op": op, "left": left, "right": right}
        elif self.is_operator("IN"):
            self.advance()
            right = self.parse_in_list()
            op = "NOT IN" if negated else "IN"
            return {"type": "predicate", "op": op, "left": left, "right": right}
        elif self.is_operator("BETWEEN"):
            self.advance()
            low = self.parse_additive_expr()
            if not self.is_operator("AND"):
                raise SQLExpressionError("Expected AND in BETWEEN expression")
            self.advance()
            high = self.parse_additive_expr()
            op = "NOT BETWEEN" if negated else "BETWEEN"
            return {"type": "predicate", "op": op, "left": left, "right": [low, high]}
        else:
            # No comparison operator, return the left expression
            return left

    def parse_in_list(self) -> dict | list[dict]:
        """Parse the parenthesized list of values that follows IN.

        Returns a list of expressions, or a subquery node
        when the list is actually a ``(SELECT ...)``.
        """
        if not self.is_punctuation("("):
            raise SQLExpressionError("Expected '(' after IN")
        if isinstance(self.peek(), SelectToken):
            return self.parse_subquery()
        self.advance()  # Consume '('
        values = []
        while True:
            values.append(self.parse_additive_expr())
            if self.is_punctuation(","):
                self.advance()
            else:
                break
        if not self.is_punctuation(")"):
            raise SQLExpressionError("Expected ')'")
        self.advance()
        return values

    def parse_additive_expr(self) -> dict:
        """Parse addition, subtraction and concatenation as they have the lowest math precedence.

        Parses left multiplications and divisions first and then if there is an
        addition or subtraction it will parse the right side too.

        If there is no addition or subtraction, it will return the left side as is.
        """
        expr = self.parse_multiplicative_expr()
        while self.is_operator("+", "-", "||"):
            op = self.current_token.value
            self.advance()
            right = self.parse_multiplicative_expr()
            expr = {"type": "binary_op", "op": op, "left": expr, "right": right}
        return expr

    def parse_multiplicative_expr(self) -> dict:
        """Parse multiplication, division and modulo expressions.

        Parses unary operators that might be applied to the left primary value
        and then if there is a multiplication or division it will parse the right side too.

        If there is no multiplication or division, it will return the left side as is.
        """
        expr = self.parse_unary_expr()
        while self.is_operator("*", "/", "%"):
            op = self.current_token.value
            self.advance()
            right = self.parse_unary_expr()
            expr = {"type": "binary_op", "op": op, "left": expr, "right": right}
        return expr

    def parse_unary_expr(self) -> dict:
        """Parse unary mathematical expressions. Like -X

        If there is no unary operator, it will just move forward and parse the primary value.
        """
        if self.is_operator("-"):
            op = self.current_token.value
            self.advance()
            operand = self.parse_unary_expr()
            return {"type": "unary_op", "op": op, "operand": operand}
        else:
            return self.parse_primary()

    def parse_primary(self) -> dict:
        """Parse primary expressions: atoms, parenthesis expressions or subqueries.

        Primary expressions are the lowest level of the expression grammar and can be
        identifiers, literals, or function calls. Those take precedence over anything else
        and thus are parsed first (you have to first parse SUM(x) before you can multiply it by 2).

        If the primary expression is wrapped in parenthesis, it will parse the expression inside
        the parenthesis and return it, unless the parenthesis contain a SELECT statement,
        in which case it's parsed as a scalar subquery.
        """
        if self.is_punctuation("("):
            if isinstance(self.peek(), SelectToken):
                return self.parse_subquery()
            self.advance()
            expr = self.parse_expression()
            if not self.is_punctuation(")"):
                raise SQLExpressionError("Expected ')'")
            self.advance()
            return {"type": "group", "expr": expr}
        elif self.is_operator("*"):
            self.advance()
            return {"type": "star", "value": "*"}
        else:
            return self.parse_atom()

    def parse_subquery(self) -> dict:
        """Parse a ``(SELECT ...)`` subquery delegating to the subquery parser.

        The tokens between the parenthesis are sliced out by counting
        the parenthesis nesting, the nested query is then parsed by the
        ``subquery_parser`` provided to the expression parser.
        """
        if self.subquery_parser is None:
            raise SQLExpressionError("Subqueries are not supported in this context")

        start = self.pos + 1
        depth = 0
        end = None
        for idx in range(self.pos, len(self.tokens)):
            token = self.tokens[idx]
            if isinstance(token, PunctuationToken) and token.value == "(":
                depth += 1
            elif isinstance(token, PunctuationToken) and token.value == ")":
                depth -= 1
                if depth == 0:
                    end = idx
                    break
        if end is None:
            raise SQLExpressionError("Expected ')' closing the subquery")

        query = self.subquery_parser(self.tokens[start:end] + [EOFToken()])
        for _ in range(end - self.pos + 1):
            self.advance()
        return {"type": "subquery", "query": query}

    def parse_atom(self) -> dict:
        """Parse an identifier, literal, or function call.

        If there is a function call, it will parse the function name and arguments.

        In case of literals it also tries to cast them to Python values.
        """
        token = self.current_token
        if isinstance(token, IdentifierToken):
            identifier = token.value
            self.advance()
            if self.is_punctuation("("):
                return self.parse_function_call(identifier)
            else:
                return {"type": "identifier", "value": identifier}
        elif isinstance(token, LiteralToken):
            value = token.value
            self.advance()
            return {"type": "literal", "value": self.cast_literal(value)}
        else:
            raise SQLExpressionError(f"Unexpected token: {token}")

    def parse_function_call(self, function_name: str) -> dict:
        """Parse a function call.

        If there is a function call, it will parse the arguments.
        The arguments of the call are parsed as expressions too. So they restart the parsing.

        ``COUNT(*)`` and aggregations over ``DISTINCT`` values are supported,
        the DISTINCT flag is recorded on the function call node.
        """
        self.advance()  # Consume '('
        args = []
        distinct = False
        if isinstance(self.current_token, DistinctToken):
            distinct = True
            self.advance()
            if self.is_punctuation(")"):
                raise SQLExpressionError("Expected an argument after DISTINCT")
        if not self.is_punctuation(")"):
            while True:
                arg = self.parse_expression()
                args.append(arg)
                if self.is_punctuation(","):
                    self.advance()
                else:
                    break
        if not self.is_punctuation(")"):
            raise SQLExpressionError("Expected ')'")
        self.advance()  # Consume ')'
        return {
            "type": "function_call",
            "name": function_name,
            "args": args,
            "distinct": distinct,
        }

    def peek(self) -> Token:
        """Look at the token following the current one, without consuming it."""
        next_pos = self.pos + 1
        if next_pos < len(self.tokens):
            return self.tokens[next_pos]
        return EOFToken()

    def is_operator(self, *ops: str) -> bool:
        """Check if the current token is an OperatorToken with a value in ops.

        This is used to check is one of ``+ - * / = < > <= >= <> !=`` is the current token.
        """
        return isinstance(
            self.current_token, OperatorToken
        ) and self.current_token.value.upper() in [op.upper() for op in ops]

    def is_punctuation(self, *chars: str) -> bool:
        """Check if the current token is a PunctuationToken with a value in chars.

        This is used to check if one of ``( ) ,`` is the current token.
        """
        return (
            isinstance(self.current_token, PunctuationToken)
            and self.current_token.value in chars
        )

    def is_null_literal(self) -> bool:
        return isinstance(self.current_token, LiteralToken) and self.current_token.value == "NULL"

    def cast_literal(self, value: str) -> str | float | int | bool | None:
        """Cast a literal in a SQL expression to a Python value.

        As the lexer returns literals as strings, we need to  try to detect
        if the string represents an integer, a float, or a string and cast it
        to the appropriate Python type.

        ``NULL``, ``TRUE`` and ``FALSE`` are mapped to their Python
        counterparts and hex numbers like ``0x1f`` are parsed as integers.
        """
        if value[0] == value[-1] and value[0] in ("'", '"') and len(value) > 1:
            quote = value[0]
            return value[1:-1].replace(quote * 2, quote)
        elif value == "NULL":
            return None
        elif value in ("TRUE", "FALSE"):
            return value == "TRUE"
        elif value[:2].lower() == "0x":
            return int(value, 16)
        else:
            try:
                return int(value)
            except ValueError:
                try:
                    return float(value)
                except ValueError:
                    return value


def render_expression(node: dict) -> str:
    """Render an expression AST back into SQL text.

    The rendering is normalized: keywords are upper cased,
    strings are single quoted and whitespace is canonical.
    So ``count ( * )`` and ``COUNT(*)`` both render as ``COUNT(*)``.
    """
    node_type = node["type"]
    if node_type == "identifier":
        return node["value"]
    elif node_type == "star":
        return "*"
    elif node_type == "literal":
        return render_literal(node["value"])
    elif node_type == "group":
        return f"({render_expression(node['expr'])})"
    elif node_type == "subquery":
        return f"({node['query'].to_sql()})"
    elif node_type == "function_call":
        args = ", ".join(render_expression(arg) for arg in node["args"])
        if node.get("distinct"):
            args = f"DISTINCT {args}"
        return f"{node['name'].upper()}({args})"
    elif node_type == "unary_op":
        operand = render_expression(node["operand"])
        if node["op"] == "NOT":
            return f"NOT {operand}"
        return f"{node['op']}{operand}"
    elif node_type in ("binary_op", "comparison", "conjunction"):
        left = render_expression(node["left"])
        right = render_expression(node["right"])
        return f"{left} {node['op']} {right}"
    elif node_type == "predicate":
        left = render_expression(node["left"])
        op = node["op"]
        if op in ("IS NULL", "IS NOT NULL"):
            return f"{left} {op}"
        elif op in ("BETWEEN", "NOT BETWEEN"):
            low, high = node["right"]
            return f"{left} {op} {render_expression(low)} AND {render_expression(high)}"
        elif isinstance(node["right"], dict):
            return f"{left} {op} {render_expression(node['right'])}"
        else:
            values = ", ".join(render_expression(v) for v in node["right"])
            return f"{left} {op} ({values})"
    else:
        raise SQLExpressionError(f"Unsupported expression type: {node_type}")


def render_literal(value: Any) -> str:
    """Render a Python value as a SQL literal."""
    if value is None:
        return "NULL"
    elif isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    elif isinstance(value, (int, float)):
        return repr(value)
    else:
        escaped = str(value).replace("'", "''")
        return f"'{escaped}'"


def expression_identifiers(node: dict) -> list[str]:
    """List the identifiers referenced by an expression, in order of appearance."""
    node_type = node["type"]
    if node_type == "identifier":
        return [node["value"]]
    elif node_type == "group":
        return expression_identifiers(node["expr"])
    elif node_type == "function_call":
        return [i for arg in node["args"] for i in expression_identifiers(arg)]
    elif node_type == "unary_op":
        return expression_identifiers(node["operand"])
    elif node_type in ("binary_op", "comparison", "conjunction"):
        return expression_identifiers(node["left"]) + expression_identifiers(node["right"])
    elif node_type == "predicate":
        identifiers = expression_identifiers(node["left"])
        if isinstance(node["right"], list):
            for value in node["right"]:
                identifiers.extend(expression_identifiers(value))
        return identifiers
    return []


class SQLExpressionError(Exception):
    """Exception raised for errors in SQL expression parsing."""

    pass
