import pyarrow as pa

from ledgerql.utils.tabulate import format_value, tabulate


def test_tabulate():
    table = pa.table({"type": ["INVOKE", "DEPLOY_ACCOUNT"], "count": [12, 3]})

    assert tabulate(table) == "\n".join(
        [
            "type           | count",
            "-------------- | -----",
            "INVOKE         | 12",
            "DEPLOY_ACCOUNT | 3",
        ]
    )


def test_tabulate_more_rows():
    table = pa.table({"block_number": list(range(25))})
    lines = tabulate(table, max_rows=3).splitlines()

    assert lines[2:] == ["0", "1", "2", "... and 22 more rows"]


def test_tabulate_empty():
    table = pa.table({"block_number": pa.array([], type=pa.int64())})
    assert tabulate(table) == "block_number\n------------"


def test_tabulate_duplicate_columns():
    table = pa.Table.from_arrays(
        [pa.array([1]), pa.array([2])], names=["block_number", "block_number"]
    )
    assert tabulate(table).splitlines()[2] == "1            | 2"


def test_format_value():
    assert format_value(None) == "NULL"
    assert format_value(True) == "true"
    assert format_value(1.5) == "1.50"
    assert format_value(12) == "12"
    assert format_value("0x" + "a" * 40) == "0x" + "a" * 25 + "..."
    assert len(format_value("x" * 100)) == 30
