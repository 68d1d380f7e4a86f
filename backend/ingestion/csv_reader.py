# ingestion/csv_reader.py
from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from typing import Dict, List

import pandas as pd

from ingestion.errors import MalformedFileError


@dataclass
class ParsedCsv:
    headers: List[str]
    rows: List[Dict[str, str]] = field(default_factory=list)

    def is_blank_row(self, index: int) -> bool:
        return all(not str(v).strip() for v in self.rows[index].values())

    def sample(self, n: int) -> List[Dict[str, str]]:
        """First n rows that carry any content."""
        out = []
        for i, row in enumerate(self.rows):
            if len(out) >= n:
                break
            if not self.is_blank_row(i):
                out.append(dict(row))
        return out


def _sniff_delim(preview: str) -> str:
    try:
        d = csv.Sniffer().sniff(preview, delimiters=[",", "\t", ";"])
        return d.delimiter
    except csv.Error:
        comma = preview.count(",")
        tab = preview.count("\t")
        semi = preview.count(";")
        if tab > comma and tab >= semi:
            return "\t"
        if comma >= semi:
            return ","
        return ";"


def _read_with(text: str, sep: str) -> pd.DataFrame:
    return pd.read_csv(
        io.StringIO(text),
        sep=sep,
        engine="python",
        dtype=str,
        # rows ending in a stray delimiter must not turn column 0 into the index
        index_col=False,
        keep_default_na=False,
        skip_blank_lines=True,
    )


def parse_csv(raw: bytes) -> ParsedCsv:
    """
    First line is the header row. Physically blank lines are dropped by the
    reader; rows made only of empty cells are kept so callers can count them.
    """
    if not raw or not raw.strip():
        raise MalformedFileError("Empty file")

    text = raw.decode("utf-8-sig", errors="replace")
    preview = "\n".join(text.splitlines()[:50])
    delim = _sniff_delim(preview)

    try:
        df = _read_with(text, delim)
        if len(df.columns) == 1:
            for alt in ("\t", ",", ";"):
                if alt == delim:
                    continue
                df_alt = _read_with(text, alt)
                if len(df_alt.columns) > 1:
                    df = df_alt
                    break
    except pd.errors.EmptyDataError as e:
        raise MalformedFileError("No header row found") from e
    except (pd.errors.ParserError, csv.Error, ValueError) as e:
        raise MalformedFileError(f"CSV parse failed: {e}") from e

    df.columns = [str(c).replace("\u00A0", " ").strip() for c in df.columns]
    df = df.loc[:, ~df.columns.astype(str).str.match(r"^Unnamed")]

    headers = [c for c in df.columns if c]
    if not headers:
        raise MalformedFileError("No header row found")

    df = df[headers].fillna("")
    rows = [{h: str(v) for h, v in rec.items()} for rec in df.to_dict(orient="records")]
    return ParsedCsv(headers=headers, rows=rows)
