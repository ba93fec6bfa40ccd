"""
Tabular Ingestion

Turns an uploaded file into a grid of cell text and locates header rows and
columns by substring markers. Header text is compared after removing HTML
fragments and whitespace and lower-casing, so "MCX  Balance", "MCX<br>Balance"
and "mcxbalance" all match the marker "MCX Balance".

Numeric cells never fail a pass: anything unparsable reads as 0.
"""
from __future__ import annotations

import csv
import io
import logging
import math
import re
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from .errors import FileReadError, HeaderNotFound, MissingRequiredColumn, UnsupportedFileFormat
from .models import InputFile
from .settings import DEFAULT_SETTINGS

logger = logging.getLogger(__name__)

Grid = List[List[str]]
RawRow = Dict[str, str]
# Alternatives; each alternative is a tuple of substrings that must all match.
ColumnRule = Tuple[Tuple[str, ...], ...]

TEXT_ENCODINGS = ("utf-8-sig", "cp1252")

_HTML = re.compile(r"<[^>]*>")
_SPACE = re.compile(r"\s+")
_NUMERIC_JUNK = re.compile(r"[^\d.\-]")
_LEADING_NUMBER = re.compile(r"-?(?:\d+\.?\d*|\.\d+)")


# -----------------------------
# Decoding
# -----------------------------
def decode_text(data: bytes) -> str:
    for encoding in TEXT_ENCODINGS:
        try:
            text = data.decode(encoding)
        except UnicodeDecodeError:
            continue
        return text.lstrip("\ufeff")
    return data.decode("latin-1").lstrip("\ufeff")


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, pd.Timestamp):
        return value.strftime("%Y-%m-%d")
    return str(value).strip()


def read_spreadsheet(source: InputFile, keep_blank_rows: bool = False) -> Grid:
    """First sheet of an xlsx/xls upload as rows of cell text."""
    try:
        df = pd.read_excel(io.BytesIO(source.data), header=None, dtype=object, sheet_name=0)
    except Exception as e:
        # each spreadsheet engine raises its own exception types
        raise FileReadError(source.name, f"{type(e).__name__}: {e}") from e
    if not keep_blank_rows:
        df = df.dropna(how="all")
    grid = [[cell_text(v) for v in row] for row in df.itertuples(index=False, name=None)]
    logger.debug("%s: decoded %d spreadsheet rows", source.name, len(grid))
    return grid


def detect_delimiter(first_line: str) -> str:
    return "," if "," in first_line else "\t"


def split_delimited(text: str, delimiter: Optional[str] = None) -> Grid:
    """
    Rows of trimmed cell text read with pandas.read_csv.

    Quotes in these exports are literal text, not field quoting, so they are
    read as-is and stripped afterwards. Each row keeps its own field count.
    """
    lines = [line for line in text.lstrip("\ufeff").splitlines() if line.strip()]
    if not lines:
        return []
    if delimiter is None:
        delimiter = detect_delimiter(lines[0])
    widths = [line.count(delimiter) + 1 for line in lines]
    df = pd.read_csv(
        io.StringIO("\n".join(lines)),
        sep=delimiter,
        header=None,
        names=list(range(max(widths))),
        dtype=str,
        keep_default_na=False,
        quoting=csv.QUOTE_NONE,
        skip_blank_lines=False,
    )
    grid: Grid = []
    for width, row in zip(widths, df.itertuples(index=False, name=None)):
        grid.append([str(v).replace('"', "").strip() for v in row[:width]])
    return grid


def read_grid(source: InputFile, delimiter: Optional[str] = None, keep_blank_rows: bool = False) -> Grid:
    if source.is_spreadsheet:
        return read_spreadsheet(source, keep_blank_rows=keep_blank_rows)
    return split_delimited(decode_text(source.data), delimiter=delimiter)


def require_spreadsheet(source: InputFile) -> None:
    if not source.is_spreadsheet:
        raise UnsupportedFileFormat(source.name, ".xlsx or .xls")


# -----------------------------
# Numbers
# -----------------------------
def parse_amount(value: Any) -> float:
    """Strip separators and symbols, read the leading number; 0 when nothing parses."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        result = float(value)
        return 0.0 if math.isnan(result) or math.isinf(result) else result
    cleaned = _NUMERIC_JUNK.sub("", str(value))
    m = _LEADING_NUMBER.match(cleaned)
    if not m:
        return 0.0
    return float(m.group(0))


def flip_and_clamp(value: float) -> float:
    """Payables are stored negative on risk sheets; a credit balance reads as 0."""
    flipped = -value
    return flipped if flipped > 0 else 0.0


def round_half_up(value: float) -> int:
    """Nearest integer, halves rounded toward +infinity."""
    return int(math.floor(value + 0.5))


# -----------------------------
# Headers and columns
# -----------------------------
def squash(text: Any) -> str:
    return _SPACE.sub("", _HTML.sub("", str(text))).lower()


def cell_matches(cell: str, needles: Sequence[str]) -> bool:
    s = squash(cell)
    return all(squash(n) in s for n in needles)


def locate_header(
    grid: Grid,
    markers: Sequence[str],
    file_name: str,
    scan_rows: Optional[int] = None,
    also: Sequence[str] = (),
) -> int:
    """
    Index of the first row holding a cell that contains any of `markers`.

    When `also` is given the same row must additionally contain one of those
    markers. Raises HeaderNotFound when nothing matches within the window.
    """
    limit = scan_rows or DEFAULT_SETTINGS.header_scan_rows
    wanted = [squash(m) for m in markers]
    extra = [squash(m) for m in also]
    for idx, row in enumerate(grid[:limit]):
        cells = [squash(c) for c in row]
        if not any(w in c for c in cells for w in wanted):
            continue
        if extra and not any(w in c for c in cells for w in extra):
            continue
        logger.debug("%s: header row at %d", file_name, idx)
        return idx
    raise HeaderNotFound(file_name, list(markers) + list(also), min(limit, len(grid)))


def find_column(header: Sequence[str], rule: ColumnRule) -> Optional[int]:
    for idx, cell in enumerate(header):
        if any(cell_matches(cell, alternative) for alternative in rule):
            return idx
    return None


def find_exact_column(header: Sequence[str], *names: str) -> Optional[int]:
    wanted = [squash(n) for n in names]
    for idx, cell in enumerate(header):
        if squash(cell) in wanted:
            return idx
    return None


def require_column(header: Sequence[str], rule: ColumnRule, file_name: str, label: str) -> int:
    idx = find_column(header, rule)
    if idx is None:
        raise MissingRequiredColumn(file_name, label)
    return idx


def project_rows(grid: Grid, header_index: int, columns: Dict[str, int]) -> Iterator[RawRow]:
    """
    RawRows for every non-empty row after the header, reading only the mapped
    columns. Rows shorter than the highest mapped index are skipped.
    """
    needed = max(columns.values()) if columns else 0
    for row in grid[header_index + 1:]:
        if not any(c for c in row):
            continue
        if len(row) < needed:
            continue
        yield {name: (row[i] if i < len(row) else "") for name, i in columns.items()}


def header_dicts(grid: Grid, header_index: int, clean=squash) -> List[RawRow]:
    """RawRows keyed by cleaned header text for every row after `header_index`."""
    header = [clean(h) for h in grid[header_index]]
    out: List[RawRow] = []
    for row in grid[header_index + 1:]:
        if not any(c for c in row):
            continue
        out.append({h: (row[i] if i < len(row) else "") for i, h in enumerate(header)})
    return out
