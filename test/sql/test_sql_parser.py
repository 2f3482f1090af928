import pytest

from ledgerql.schema import LEDGER_SCHEMA
from ledgerql.sql.parser import Parser, SelectStatementParser, SQLParseError, detect_statement_kind
from ledgerql.sql.query import JoinClause, OrderByItem, WhereCondition
from ledgerql.sql.tokenize import Tokenizer


def test_select_query():
    plan = Parser("SELECT block_number, timestamp FROM blocks ORDER BY block_number DESC LIMIT 10").parse()

    assert plan.is_valid
    assert plan.errors == ()
    assert plan.kind == "SELECT"
    assert plan.columns == ("block_number", "timestamp")
    assert plan.tables == ("blocks",)
    assert plan.order_by == (OrderByItem(column="block_number", direction="DESC"),)
    assert plan.limit == 10
    assert plan.offset is None


def test_select_with_conditions():
    plan = Parser(
        "SELECT transaction_hash FROM transactions "
        "WHERE block_number >= 100 AND type = 'INVOKE' OR sender_address IS NULL"
    ).parse()

    assert plan.conditions == (
        WhereCondition(
            column="block_number", operator=">=", value=100, logical_operator="AND", value_sql="100"
        ),
        WhereCondition(
            column="type", operator="=", value="INVOKE", logical_operator="OR", value_sql="'INVOKE'"
        ),
        WhereCondition(column="sender_address", operator="IS NULL", value=None),
    )


def test_select_with_predicates():
    plan = Parser(
        "SELECT * FROM transactions WHERE type IN ('INVOKE', 'DECLARE') "
        "AND block_number BETWEEN 10 AND 20 AND nonce != -1"
    ).parse()

    in_condition, between_condition, negative_condition = plan.conditions
    assert in_condition.value == ("INVOKE", "DECLARE")
    assert in_condition.to_sql() == "type IN ('INVOKE', 'DECLARE')"
    assert between_condition.value == (10, 20)
    assert between_condition.to_sql() == "block_number BETWEEN 10 AND 20"
    assert negative_condition.value == -1


def test_select_with_join_and_aliases():
    plan = Parser(
        "SELECT b.block_number, COUNT(t.transaction_hash) AS txs "
        "FROM blocks b LEFT JOIN transactions t ON b.block_number = t.block_number "
        "WHERE b.block_number > 100 GROUP BY b.block_number LIMIT 5"
    ).parse()

    assert plan.is_valid
    assert plan.columns == ("b.block_number", "COUNT(t.transaction_hash) AS txs")
    assert plan.tables == ("blocks", "transactions")
    assert plan.joins == (
        JoinClause(
            kind="LEFT",
            table="transactions",
            on_expression="b.block_number = t.block_number",
            alias="t",
            on_columns=("b.block_number", "t.block_number"),
        ),
    )
    assert plan.aliases == {"b": "blocks", "t": "transactions"}
    assert plan.resolve_table("T") == "transactions"
    assert plan.resolve_table("blocks") == "blocks"
    assert plan.resolve_table("x") is None
    assert plan.group_by == ("b.block_number",)
    assert plan.estimated_complexity == 15


def test_join_types():
    plan = Parser(
        "SELECT * FROM events e JOIN transactions t ON e.transaction_hash = t.transaction_hash "
        "LEFT OUTER JOIN blocks ON t.block_number = blocks.block_number LIMIT 1"
    ).parse()
    assert [j.kind for j in plan.joins] == ["INNER", "LEFT OUTER"]


def test_implicit_alias_and_distinct():
    plan = Parser("SELECT DISTINCT type kind, max_fee * 2 doubled FROM transactions LIMIT 3").parse()
    assert plan.distinct
    assert plan.columns == ("type AS kind", "max_fee * 2 AS doubled")


def test_having_and_offset():
    plan = Parser(
        "SELECT from_address, COUNT(*) AS n FROM events GROUP BY from_address "
        "HAVING COUNT(*) > 10 ORDER BY n LIMIT 20 OFFSET 40;"
    ).parse()
    assert plan.is_valid
    assert plan.having == (
        WhereCondition(column="COUNT(*)", operator=">", value=10, value_sql="10"),
    )
    assert plan.order_by == (OrderByItem(column="n", direction="ASC"),)
    assert (plan.limit, plan.offset) == (20, 40)


def test_subquery_tables_are_collected():
    plan = Parser(
        "SELECT * FROM blocks WHERE block_number = (SELECT MAX(block_number) FROM transactions) LIMIT 1"
    ).parse()
    assert plan.is_valid
    assert plan.tables == ("blocks", "transactions")
    subquery = plan.conditions[0].value
    assert subquery.columns == ("MAX(block_number)",)
    assert plan.conditions[0].to_sql() == (
        "block_number = (SELECT MAX(block_number) FROM transactions)"
    )


def test_subquery_single_column():
    plan = Parser("SELECT * FROM blocks WHERE block_number IN (SELECT * FROM transactions)").parse()
    assert not plan.is_valid
    assert plan.errors == ("Subqueries must select exactly one column",)


def test_unknown_table():
    plan = Parser("SELECT * FROM accounts LIMIT 1").parse()
    assert not plan.is_valid
    assert plan.unknown_tables == ("accounts",)
    assert plan.errors == (
        "Unknown table: accounts. Available tables: "
        "blocks, transactions, events, contracts, storage_diffs",
    )


def test_complexity_of_three_table_join():
    plan = Parser(
        "SELECT * FROM blocks b JOIN transactions t ON b.block_number = t.block_number "
        "JOIN events e ON e.transaction_hash = t.transaction_hash "
        "WHERE b.block_number > 1 AND t.type = 'INVOKE' AND e.from_address = '0x1' AND b.timestamp > 0"
    ).parse()
    assert plan.is_valid
    assert plan.estimated_complexity == 35


def test_non_select_statements():
    plan = Parser("DROP TABLE blocks").parse()
    assert not plan.is_valid
    assert plan.kind == "DROP"
    assert plan.errors == ("Only SELECT queries are allowed in the sandbox",)


def test_empty_query():
    plan = Parser("  ").parse()
    assert not plan.is_valid
    assert plan.kind == ""
    assert plan.errors == ("Empty query",)


@pytest.mark.parametrize(
    "sql,error",
    [
        ("SELECT block_number", "Missing FROM clause"),
        ("SELECT * FROM blocks; DROP TABLE blocks", "Multiple statements are not allowed"),
        ("SELECT * FROM blocks LIMIT ten", "Expected numeric literal after LIMIT"),
        ("SELECT * FROM blocks WHERE NOT block_number = 1", "Negated conditions are not supported"),
        ("SELECT * FROM blocks WHERE (block_number = 1 OR block_number = 2)", "Parenthesized conditions"),
        ("SELECT * FROM blocks WHERE block_number", "Expected a comparison in condition 'block_number'"),
        ("SELECT * FROM blocks -- comment", "SQL comments are not allowed"),
        ("SELECT COUNT(DISTINCT) FROM blocks", "Expected an argument after DISTINCT"),
    ],
)
def test_invalid_queries(sql, error):
    plan = Parser(sql).parse()
    assert not plan.is_valid
    assert error in plan.errors[0]


def test_select_statement_parser_raises():
    tokens = Tokenizer("SELECT * FROM blocks ORDER BY").tokenize()
    with pytest.raises(SQLParseError) as excinfo:
        SelectStatementParser(tokens, LEDGER_SCHEMA).parse()
    assert str(excinfo.value) == "Expected column name in ORDER BY clause"


def test_plan_to_sql_roundtrip():
    sql = (
        "SELECT b.block_number, COUNT(t.transaction_hash) AS txs FROM blocks b "
        "LEFT JOIN transactions t ON b.block_number = t.block_number "
        "WHERE b.block_number > 100 GROUP BY b.block_number ORDER BY txs DESC LIMIT 5"
    )
    plan = Parser(sql).parse()
    assert plan.to_sql() == sql
    assert Parser(plan.to_sql()).parse() == plan


def test_detect_statement_kind():
    assert detect_statement_kind("  delete from blocks") == "DELETE"
    assert detect_statement_kind("") == ""
