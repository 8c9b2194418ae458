from pathlib import Path
from typing import Sequence

import polars as pl

from canlens.trace.entry import TraceEntry

CSV_HEADER = ["Time(ms)", "Name", "ID", "Chn", "EventType", "Dir", "DLC", "Data"]


def entries_frame(entries: Sequence[TraceEntry]) -> pl.DataFrame:
    """Trace rows as a string-typed polars frame, one column per display field."""
    columns = list(zip(*(entry.csv_row() for entry in entries))) or [()] * len(CSV_HEADER)
    return pl.DataFrame(
        {name: pl.Series(name, list(values), dtype=pl.Utf8) for name, values in zip(CSV_HEADER, columns)}
    )


def save_csv(path, entries: Sequence[TraceEntry]) -> int:
    entries_frame(entries).write_csv(Path(path), include_header=True, quote_style="necessary")
    return len(entries)
