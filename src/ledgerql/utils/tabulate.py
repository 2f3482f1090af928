"""Render query results as text tables for the terminal.

:func:`tabulate` takes the :class:`pyarrow.Table` returned by the sandbox
and aligns its columns, shortening the long hexadecimal hashes and
addresses of the ledger so that rows fit in a terminal::

    >>> import pyarrow as pa
    >>> rows = pa.table({
    ...     "block_number": [650001, 650000],
    ...     "transaction_count": [12, 3],
    ...     "sequencer_address": ["0x01176a1bd84444c89232ec27754698e5d2e7e1a7f1539f12027f28b23ec9f3d8", None],
    ... })
    >>> print(tabulate(rows))
    block_number | transaction_count | sequencer_address
    ------------ | ----------------- | ------------------------------
    650001       | 12                | 0x01176a1bd84444c89232ec277...
    650000       | 3                 | NULL
"""

from typing import Any

import pyarrow as pa

MAX_VALUE_WIDTH = 30


def tabulate(table: pa.Table, max_rows: int = 20) -> str:
    """Format the first ``max_rows`` rows of a table.

    A trailing line reports how many rows were not displayed.
    """
    cols = table.column_names
    rows = [
        [format_value(value) for value in row.values()]
        for row in table.slice(0, max_rows).to_pylist()
    ]
    if len(set(cols)) != len(cols):
        # to_pylist merges duplicate column names, read by position instead.
        rows = [
            [format_value(table.column(idx)[rowidx].as_py()) for idx in range(len(cols))]
            for rowidx in range(min(max_rows, table.num_rows))
        ]

    colsizes = column_widths(cols, rows)
    lines = [
        make_row(cols, colsizes),
        make_row(["-"] * len(cols), colsizes, fillvalue="-"),
    ]
    lines.extend(make_row(row, colsizes) for row in rows)

    text = "\n".join(lines)
    if table.num_rows > max_rows:
        text += f"\n... and {table.num_rows - max_rows} more rows"
    return text


def column_widths(cols: list[str], rows: list[list[str]]) -> list[int]:
    return [
        max([len(row[idx]) for row in rows] + [len(name)]) for idx, name in enumerate(cols)
    ]


def make_row(values: list[str], colsizes: list[int], fillvalue: str = " ") -> str:
    row = " | ".join(value.ljust(colsizes[idx], fillvalue) for idx, value in enumerate(values))
    return row.rstrip()


def format_value(value: Any) -> str:
    """Text of a single cell.

    ``None`` is rendered as ``NULL``, floats with two decimals
    and long strings are truncated.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return f"{value:.2f}"

    text = str(value)
    if len(text) > MAX_VALUE_WIDTH:
        text = text[: MAX_VALUE_WIDTH - 3] + "..."
    return text
