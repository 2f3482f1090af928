from ledgerql.sql.optimizer import QueryOptimizer, bare_column
from ledgerql.sql.parser import Parser


def optimize(sql):
    return QueryOptimizer().optimize(Parser(sql).parse())


def test_indexed_filter():
    result = optimize("SELECT * FROM transactions WHERE sender_address = '0x1' ORDER BY max_fee")

    assert result.use_index
    assert result.suggested_indexes == ["transactions.sender_address"]
    assert result.warnings == [
        "Consider adding LIMIT clause to prevent large result sets",
        "ORDER BY 'max_fee' may be slow without index",
    ]


def test_no_index_available():
    result = optimize("SELECT * FROM transactions WHERE nonce = '0x1' LIMIT 10")
    assert not result.use_index
    assert result.suggested_indexes == []
    assert result.warnings == []


def test_join_columns_resolved_through_aliases():
    result = optimize(
        "SELECT b.block_number FROM blocks b JOIN events e ON b.block_number = e.block_number "
        "WHERE e.from_address = '0xtoken' ORDER BY b.timestamp DESC LIMIT 10"
    )
    assert result.suggested_indexes == [
        "events.from_address",
        "blocks.block_number",
        "events.block_number",
    ]
    assert result.warnings == []


def test_full_scan_warnings():
    result = optimize(
        "SELECT * FROM events e JOIN transactions t ON e.transaction_hash = t.transaction_hash "
        "JOIN blocks b ON b.block_number = t.block_number "
        "JOIN contracts c ON c.deployed_at_block = b.block_number"
    )
    assert result.warnings[:4] == [
        "Consider adding WHERE clause for table 'events' to improve performance",
        "Consider adding WHERE clause for table 'transactions' to improve performance",
        "Multiple JOINs detected - consider breaking into smaller queries",
        "Consider adding LIMIT clause to prevent large result sets",
    ]


def test_estimated_rows():
    assert optimize("SELECT * FROM events").estimated_rows == 50000
    assert optimize("SELECT * FROM events LIMIT 7").estimated_rows == 7


def test_optimized_query_one_clause_per_line():
    result = optimize("select   block_number from blocks where block_number > 5 limit 3")
    assert result.optimized_query == (
        "SELECT block_number\nFROM blocks\nWHERE block_number > 5\nLIMIT 3"
    )
    assert result.to_dict()["optimized_query"] == result.optimized_query


def test_invalid_plan_is_analyzed():
    result = optimize("SELECT")
    assert result.optimized_query == ""
    assert result.warnings == ["Consider adding LIMIT clause to prevent large result sets"]


def test_bare_column():
    assert bare_column("t.Block_Number") == "block_number"
    assert bare_column("type") == "type"
