"""Split a SQL query text into a list of tokens.

The tokenizer is the first step of parsing a SQL query,
given a query like ``"SELECT block_number FROM blocks WHERE block_number >= 18"``
it produces a list of tokens like::

    [SelectToken('SELECT'), IdentifierToken('block_number'), FromToken('FROM'),
     IdentifierToken('blocks'), WhereToken('WHERE'), IdentifierToken('block_number'),
     OperatorToken('>='), LiteralToken('18'), EOFToken(None)]

The tokenizer is regex based: a single regular expression made of
named groups is matched over and over at the current position of the text,
and the name of the group that matched decides which kind of token is emitted.

Keywords are recognized case insensitively and always emitted upper cased,
so that the parser can compare them directly. Identifiers and literals
preserve their original text, literals even keep their quotes
so that the parser knows they were strings.

SQL comments are rejected, queries are run in a sandbox
and there is no legit reason for an untrusted query to carry a comment.
"""

import re


class Token:
    """Base class for all tokens.

    Tokens compare equal when they are of the same kind
    and carry the same value.
    """

    def __init__(self, value: str | None) -> None:
        """
        :param value: The text of the token as found in the query.
        """
        self.value = value

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.value == other.value  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.value))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.value!r})"


class SelectToken(Token):
    pass


class DistinctToken(Token):
    pass


class FromToken(Token):
    pass


class WhereToken(Token):
    pass


class GroupByToken(Token):
    pass


class HavingToken(Token):
    pass


class OrderByToken(Token):
    pass


class LimitToken(Token):
    pass


class OffsetToken(Token):
    pass


class JoinToken(Token):
    pass


class JoinTypeToken(Token):
    """INNER, LEFT, RIGHT, FULL, CROSS or OUTER"""

    pass


class JoinOnToken(Token):
    pass


class AliasToken(Token):
    pass


class SortingOrderToken(Token):
    pass


class StatementToken(Token):
    """Any statement other than SELECT, like INSERT or DROP.

    The sandbox never runs them, but they are recognized
    so that a meaningful error can be reported.
    """

    pass


class InsertToken(StatementToken):
    pass


class UpdateToken(StatementToken):
    pass


class IdentifierToken(Token):
    pass


class LiteralToken(Token):
    pass


class OperatorToken(Token):
    pass


class PunctuationToken(Token):
    pass


class EOFToken(Token):
    def __init__(self, value: str | None = None) -> None:
        super().__init__(None)


KEYWORD_TOKENS: dict[str, type[Token]] = {
    "SELECT": SelectToken,
    "DISTINCT": DistinctToken,
    "FROM": FromToken,
    "WHERE": WhereToken,
    "GROUP BY": GroupByToken,
    "HAVING": HavingToken,
    "ORDER BY": OrderByToken,
    "LIMIT": LimitToken,
    "OFFSET": OffsetToken,
    "JOIN": JoinToken,
    "INNER": JoinTypeToken,
    "LEFT": JoinTypeToken,
    "RIGHT": JoinTypeToken,
    "FULL": JoinTypeToken,
    "CROSS": JoinTypeToken,
    "OUTER": JoinTypeToken,
    "ON": JoinOnToken,
    "AS": AliasToken,
    "ASC": SortingOrderToken,
    "DESC": SortingOrderToken,
    "INSERT": InsertToken,
    "UPDATE": UpdateToken,
    "DELETE": StatementToken,
    "DROP": StatementToken,
    "ALTER": StatementToken,
    "CREATE": StatementToken,
    "TRUNCATE": StatementToken,
    "REPLACE": StatementToken,
    "MERGE": StatementToken,
    "GRANT": StatementToken,
    "REVOKE": StatementToken,
    "EXEC": StatementToken,
    "EXECUTE": StatementToken,
    "AND": OperatorToken,
    "OR": OperatorToken,
    "NOT": OperatorToken,
    "LIKE": OperatorToken,
    "IN": OperatorToken,
    "BETWEEN": OperatorToken,
    "IS": OperatorToken,
    "NULL": LiteralToken,
    "TRUE": LiteralToken,
    "FALSE": LiteralToken,
}

TOKEN_REGEX = re.compile(
    r"""
    (?P<whitespace>\s+)
    |(?P<comment>--|/\*)
    |(?P<string>'(?:[^']|'')*'|"(?:[^"]|"")*")
    |(?P<number>0[xX][0-9a-fA-F]+|\d+\.\d*|\.\d+|\d+)
    |(?P<keyword>(?:GROUP|ORDER)\s+BY\b|[A-Za-z_][A-Za-z0-9_]*\b)
    |(?P<qualified>\.(?:[A-Za-z_][A-Za-z0-9_]*|\*))
    |(?P<operator><=|>=|<>|!=|\|\||[=<>+\-*/%])
    |(?P<punctuation>[(),;])
    """,
    re.VERBOSE | re.IGNORECASE,
)


class Tokenizer:
    """Tokenize a SQL query text.

    Usage::

        tokens = Tokenizer("SELECT * FROM blocks").tokenize()

    The returned list always ends with an :class:`EOFToken`,
    an empty or blank query produces just the :class:`EOFToken`.
    """

    def __init__(self, text: str) -> None:
        """
        :param text: The SQL query to tokenize.
        """
        self.text = text

    def tokenize(self) -> list[Token]:
        """Produce the list of tokens for the query.

        Qualified names like ``b.block_number`` or ``b.*`` are emitted
        as a single :class:`IdentifierToken`, the tokenizer glues the
        ``.name`` part back to the identifier that precedes it.
        """
        tokens: list[Token] = []
        pos = 0
        while pos < len(self.text):
            match = TOKEN_REGEX.match(self.text, pos)
            if match is None:
                raise SQLTokenizeException(
                    f"Unexpected character '{self.text[pos]}' at position {pos}"
                )
            pos = match.end()
            kind = match.lastgroup
            value = match.group()

            if kind == "whitespace":
                continue
            elif kind == "comment":
                raise SQLTokenizeException(
                    f"SQL comments are not allowed (found '{value}' at position {match.start()})"
                )
            elif kind in ("string", "number"):
                tokens.append(LiteralToken(value))
            elif kind == "keyword":
                normalized = " ".join(value.upper().split())
                token_class = KEYWORD_TOKENS.get(normalized)
                if token_class is None:
                    tokens.append(IdentifierToken(value))
                else:
                    tokens.append(token_class(normalized))
            elif kind == "qualified":
                if not tokens or not isinstance(tokens[-1], IdentifierToken):
                    raise SQLTokenizeException(
                        f"Unexpected character '.' at position {match.start()}"
                    )
                tokens[-1] = IdentifierToken(tokens[-1].value + value)
            elif kind == "operator":
                tokens.append(OperatorToken(value))
            else:
                tokens.append(PunctuationToken(value))

        tokens.append(EOFToken())
        return tokens


class SQLTokenizeException(Exception):
    """An exception raised when the query contains text that can't be tokenized."""

    pass
