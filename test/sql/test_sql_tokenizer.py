import pytest

from ledgerql.sql.tokenize import (
    AliasToken,
    DistinctToken,
    EOFToken,
    FromToken,
    GroupByToken,
    IdentifierToken,
    InsertToken,
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
    StatementToken,
    Tokenizer,
    UpdateToken,
    WhereToken,
)


def test_tokenizer_select_query():
    tokens = Tokenizer("SELECT block_number FROM blocks WHERE block_number >= 18").tokenize()

    assert tokens == [
        SelectToken("SELECT"),
        IdentifierToken("block_number"),
        FromToken("FROM"),
        IdentifierToken("blocks"),
        WhereToken("WHERE"),
        IdentifierToken("block_number"),
        OperatorToken(">="),
        LiteralToken("18"),
        EOFToken(),
    ]


def test_tokenizer_keywords_are_case_insensitive():
    tokens = Tokenizer("select distinct type from transactions group  by type order by type desc").tokenize()

    assert tokens == [
        SelectToken("SELECT"),
        DistinctToken("DISTINCT"),
        IdentifierToken("type"),
        FromToken("FROM"),
        IdentifierToken("transactions"),
        GroupByToken("GROUP BY"),
        IdentifierToken("type"),
        OrderByToken("ORDER BY"),
        IdentifierToken("type"),
        SortingOrderToken("DESC"),
        EOFToken(),
    ]


def test_tokenizer_limit_offset():
    tokens = Tokenizer("SELECT * FROM events LIMIT 10 OFFSET 5;").tokenize()

    assert tokens == [
        SelectToken("SELECT"),
        OperatorToken("*"),
        FromToken("FROM"),
        IdentifierToken("events"),
        LimitToken("LIMIT"),
        LiteralToken("10"),
        OffsetToken("OFFSET"),
        LiteralToken("5"),
        PunctuationToken(";"),
        EOFToken(),
    ]


def test_tokenizer_qualified_names_and_joins():
    tokens = Tokenizer(
        "SELECT b.*, t.type AS kind FROM blocks b LEFT JOIN transactions t ON b.block_number = t.block_number"
    ).tokenize()

    assert tokens == [
        SelectToken("SELECT"),
        IdentifierToken("b.*"),
        PunctuationToken(","),
        IdentifierToken("t.type"),
        AliasToken("AS"),
        IdentifierToken("kind"),
        FromToken("FROM"),
        IdentifierToken("blocks"),
        IdentifierToken("b"),
        JoinTypeToken("LEFT"),
        JoinToken("JOIN"),
        IdentifierToken("transactions"),
        IdentifierToken("t"),
        JoinOnToken("ON"),
        IdentifierToken("b.block_number"),
        OperatorToken("="),
        IdentifierToken("t.block_number"),
        EOFToken(),
    ]


def test_tokenizer_literals():
    tokens = Tokenizer("'it''s' \"quoted\" 0x1f 3.14 NULL true").tokenize()

    assert tokens == [
        LiteralToken("'it''s'"),
        LiteralToken('"quoted"'),
        LiteralToken("0x1f"),
        LiteralToken("3.14"),
        LiteralToken("NULL"),
        LiteralToken("TRUE"),
        EOFToken(),
    ]


def test_tokenizer_logical_operators():
    tokens = Tokenizer("a <> 1 AND b NOT LIKE 'x%' OR c IS NULL").tokenize()

    assert tokens == [
        IdentifierToken("a"),
        OperatorToken("<>"),
        LiteralToken("1"),
        OperatorToken("AND"),
        IdentifierToken("b"),
        OperatorToken("NOT"),
        OperatorToken("LIKE"),
        LiteralToken("'x%'"),
        OperatorToken("OR"),
        IdentifierToken("c"),
        OperatorToken("IS"),
        LiteralToken("NULL"),
        EOFToken(),
    ]


def test_tokenizer_statements():
    assert Tokenizer("INSERT INTO blocks").tokenize()[0] == InsertToken("INSERT")
    assert Tokenizer("update blocks").tokenize()[0] == UpdateToken("UPDATE")
    assert Tokenizer("DROP TABLE blocks").tokenize()[0] == StatementToken("DROP")


def test_tokenizer_empty_query():
    assert Tokenizer("   ").tokenize() == [EOFToken()]


def test_tokenizer_rejects_comments():
    with pytest.raises(SQLTokenizeException) as excinfo:
        Tokenizer("SELECT * FROM blocks -- everything").tokenize()
    assert "SQL comments are not allowed" in str(excinfo.value)

    with pytest.raises(SQLTokenizeException):
        Tokenizer("SELECT /* hidden */ * FROM blocks").tokenize()


def test_tokenizer_invalid_character():
    with pytest.raises(SQLTokenizeException) as excinfo:
        Tokenizer("SELECT ? FROM blocks").tokenize()
    assert str(excinfo.value) == "Unexpected character '?' at position 7"


def test_token_repr():
    assert repr(IdentifierToken("blocks")) == "IdentifierToken('blocks')"
    assert repr(EOFToken()) == "EOFToken(None)"
