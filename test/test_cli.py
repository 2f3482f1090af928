import json

import pytest

from ledgerql.commands import lquery
from ledgerql.storage import LedgerStorage

pytestmark = pytest.mark.usefixtures("restore_logging")


@pytest.fixture
def database_url(tmp_path, bundle_factory, monkeypatch):
    monkeypatch.setenv("ENABLE_INDEXER", "false")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    storage = LedgerStorage.from_url(url)
    storage.create_schema()
    storage.write_bundles([bundle_factory(n) for n in range(1, 4)])
    storage.dispose()
    return url


def test_query(database_url, capsys):
    exit_code = lquery.main(
        [
            "--database-url",
            database_url,
            "query",
            "SELECT block_number, transaction_count FROM blocks ORDER BY block_number",
        ]
    )

    assert exit_code == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[:5] == [
        "block_number | transaction_count",
        "------------ | -----------------",
        "1            | 2",
        "2            | 2",
        "3            | 2",
    ]
    assert lines[5].startswith("(3 rows in ")


def test_query_json(database_url, capsys):
    exit_code = lquery.main(
        [
            "--database-url",
            database_url,
            "query",
            "--json",
            "--max-rows",
            "2",
            "SELECT block_number FROM blocks ORDER BY block_number",
        ]
    )

    assert exit_code == 0
    result = json.loads(capsys.readouterr().out)
    assert result["success"] is True
    assert result["row_count"] == 2
    assert result["executed_query"] == "SELECT block_number FROM blocks ORDER BY block_number LIMIT 2"


def test_query_invalid_options(database_url, capsys):
    exit_code = lquery.main(
        ["--database-url", database_url, "query", "--max-rows", "0", "SELECT * FROM blocks"]
    )

    assert exit_code == 1
    assert capsys.readouterr().out == (
        "Invalid query options, max_rows: Input should be greater than or equal to 1\n"
    )


def test_query_error(database_url, capsys):
    exit_code = lquery.main(["--database-url", database_url, "query", "DROP TABLE blocks"])

    assert exit_code == 1
    out = capsys.readouterr().out
    assert out.startswith("PERMISSION_ERROR: Access denied: Dangerous operation 'DROP' is not allowed")

    storage = LedgerStorage.from_url(database_url)
    assert storage.count_rows("blocks") == 3
    storage.dispose()


def test_validate(database_url, capsys):
    assert lquery.main(["--database-url", database_url, "validate", "SELECT * FROM blocks LIMIT 5"]) == 0
    assert json.loads(capsys.readouterr().out)["is_valid"] is True

    assert lquery.main(["--database-url", database_url, "validate", "SELECT * FROM nowhere"]) == 1
    validation = json.loads(capsys.readouterr().out)
    assert validation["errors"][0]["code"] == "UNKNOWN_TABLE"


def test_stats(database_url, capsys):
    assert lquery.main(["--database-url", database_url, "stats"]) == 0

    stats = json.loads(capsys.readouterr().out)
    assert stats["latest_indexed_height"] == 3
    assert stats["data_counts"]["events"] == 6
    assert stats["indexer"] is None


def test_backfill_invalid_range(database_url, capsys):
    assert lquery.main(["--database-url", database_url, "backfill", "10", "5"]) == 1
    assert capsys.readouterr().out == "Invalid backfill, Invalid range 10-5\n"


def test_sync_unreachable_node(database_url, monkeypatch):
    monkeypatch.setenv("STARKNET_RPC_URL", "http://127.0.0.1:9")
    assert lquery.main(["--database-url", database_url, "sync"]) == 1


def test_missing_command():
    with pytest.raises(SystemExit):
        lquery.main([])
