"""Security gate scanning the raw text of queries.

The validator doesn't need the query to be parseable: it works
on the text alone, so that it can still detect dangerous operations
in malformed input that the parser would give up on.

All the rules are evaluated on every query, so callers get
the full list of problems at once::

    >>> result = QueryValidator().validate("SELECT * FROM blocks; DROP TABLE blocks")
    >>> result.is_valid
    False
    >>> [e.message for e in result.errors]
    ["Dangerous operation 'DROP' is not allowed"]
    >>> result.warnings
    ['Query contains multiple statements separated by ;']

The rules are heuristics based on regular expressions, the :class:`ledgerql.sql.parser.Parser`
remains the authoritative source of which tables a query references.
Keywords are matched as whole words, so a column named ``updated_at`` is fine,
but a keyword inside a string literal is still flagged.
"""

import re
from dataclasses import dataclass, field

from ..errors import ErrorCode, ErrorKind, QueryError
from ..schema import LEDGER_SCHEMA, SchemaRegistry

DANGEROUS_KEYWORDS = (
    "DROP",
    "DELETE",
    "UPDATE",
    "INSERT",
    "ALTER",
    "CREATE",
    "TRUNCATE",
    "REPLACE",
    "MERGE",
    "GRANT",
    "REVOKE",
    "EXEC",
    "EXECUTE",
)

INJECTION_PATTERNS = (
    re.compile(r"'\s*(--|/\*|#)"),
    re.compile(r"\b(OR|AND)\s+(\d+)\s*=\s*\d+", re.IGNORECASE),
    re.compile(r"\b(OR|AND)\s+'([^']*)'\s*=\s*'[^']*'", re.IGNORECASE),
    re.compile(r"\b(HAVING|WHERE)\s+\d+\s*=\s*\d+", re.IGNORECASE),
)
INJECTION_WARNING = "Query contains patterns that might indicate SQL injection attempt"
STACKED_STATEMENTS = re.compile(r";\s*\S")
TABLE_REFERENCE = re.compile(r"\b(?:FROM|JOIN)\s+([A-Za-z_][A-Za-z0-9_]*)", re.IGNORECASE)

MAX_QUERY_LENGTH = 10000


@dataclass
class ValidationResult:
    """The outcome of validating a query.

    ``errors`` make the query invalid, ``warnings`` and ``suggestions``
    are advisory only.
    """

    is_valid: bool = True
    errors: list[QueryError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def add_error(self, error: QueryError) -> None:
        self.errors.append(error)
        self.is_valid = False

    def add_warning(self, warning: str) -> None:
        if warning not in self.warnings:
            self.warnings.append(warning)

    def add_suggestion(self, suggestion: str) -> None:
        if suggestion not in self.suggestions:
            self.suggestions.append(suggestion)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """Combine two results, the merged result is valid only if both are."""
        merged = ValidationResult(
            is_valid=self.is_valid and other.is_valid,
            errors=self.errors + other.errors,
        )
        for warning in self.warnings + other.warnings:
            merged.add_warning(warning)
        for suggestion in self.suggestions + other.suggestions:
            merged.add_suggestion(suggestion)
        return merged

    @property
    def error_messages(self) -> list[str]:
        return [e.message for e in self.errors]

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
            "suggestions": list(self.suggestions),
        }


class QueryValidator:
    """Validate raw query text against the sandbox security rules."""

    def __init__(self, registry: SchemaRegistry = LEDGER_SCHEMA) -> None:
        """
        :param registry: Used to know which tables are large enough
                         to warn about unfiltered scans.
        """
        self.registry = registry
        self._keyword_patterns = [
            (keyword, re.compile(rf"\b{keyword}\b", re.IGNORECASE))
            for keyword in DANGEROUS_KEYWORDS
        ]

    def validate(self, text: str, user_id: str | None = None) -> ValidationResult:
        """Run all the validation rules on the query text.

        :param text: The query to validate.
        :param user_id: Attached to the errors, for diagnostics.
        """
        result = ValidationResult()

        if not text or not text.strip():
            result.add_error(
                QueryError(
                    kind=ErrorKind.SYNTAX_ERROR,
                    message="Empty query",
                    code=ErrorCode.EMPTY_QUERY,
                    query=text,
                    user_id=user_id,
                )
            )
            return result

        for keyword, pattern in self._keyword_patterns:
            if pattern.search(text):
                result.add_error(
                    QueryError(
                        kind=ErrorKind.PERMISSION_ERROR,
                        message=f"Dangerous operation '{keyword}' is not allowed",
                        code=ErrorCode.DANGEROUS_OPERATION,
                        details={"keyword": keyword},
                        query=text,
                        user_id=user_id,
                    )
                )

        if not re.search(r"\bSELECT\b", text, re.IGNORECASE):
            result.add_error(
                QueryError(
                    kind=ErrorKind.VALIDATION_ERROR,
                    message="Only SELECT queries are allowed",
                    code=ErrorCode.MISSING_SELECT,
                    query=text,
                    user_id=user_id,
                )
            )

        for pattern in INJECTION_PATTERNS:
            if pattern.search(text):
                result.add_warning(INJECTION_WARNING)
        if STACKED_STATEMENTS.search(text):
            result.add_warning("Query contains multiple statements separated by ;")
        if len(text) > MAX_QUERY_LENGTH:
            result.add_warning(
                f"Query is very long ({len(text)} characters), consider simplifying it"
            )

        has_limit = re.search(r"\bLIMIT\b", text, re.IGNORECASE) is not None
        has_where = re.search(r"\bWHERE\b", text, re.IGNORECASE) is not None
        if not has_limit and not has_where:
            large_tables = self.registry.large_tables()
            for table in self.referenced_tables(text):
                if table in large_tables:
                    result.add_warning(
                        f"Query may return large result set from table '{table}'. "
                        "Consider adding LIMIT or WHERE clause"
                    )

        if re.search(r"\bSELECT\s+(DISTINCT\s+)?\*", text, re.IGNORECASE):
            result.add_suggestion(
                "Consider selecting specific columns instead of using SELECT *"
            )

        if re.search(r"\bORDER\s+BY\b", text, re.IGNORECASE) and not has_limit:
            result.add_suggestion("ORDER BY without LIMIT may be slow on large datasets")

        return result

    def referenced_tables(self, text: str) -> list[str]:
        """Best effort list of the tables following FROM and JOIN keywords."""
        tables = []
        for match in TABLE_REFERENCE.finditer(text):
            table = match.group(1).lower()
            if table not in tables:
                tables.append(table)
        return tables
