"""
Input Adapters

Each adapter converts one kind of upload into the keyed structure the engine
joins on. Keyed maps built from a single file keep the first row seen for a
key; later duplicates are ignored.

Supported inputs:
- Risk ledger sheets (marker-located columns, or the fixed NSE CM layout)
- Exchange allocation feeds (NSE / MCX globe CSV)
- Margin feeds (MRG, SearchResults, ClientMargin, CC01) and the MG13 span file
- Code lists (NRI exclusions, JV codes, intersegment codes)
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from .errors import HeaderNotFound, MissingRequiredColumn, UnsupportedFileFormat
from .models import InputFile, LedgerRecord
from .settings import DEFAULT_SETTINGS, DomainConfig, ReconSettings
from .tabular import (
    ColumnRule,
    Grid,
    RawRow,
    decode_text,
    find_column,
    find_exact_column,
    flip_and_clamp,
    locate_header,
    parse_amount,
    project_rows,
    read_grid,
    require_column,
    require_spreadsheet,
    split_delimited,
)

logger = logging.getLogger(__name__)

KEY_COLUMN: ColumnRule = (("ucc",), ("client", "code"))
NAME_COLUMN: ColumnRule = (("name",),)
INVALID_KEYS = {"", "undefined", "#N/A"}


def clean_key(value: Any) -> Optional[str]:
    key = str(value or "").strip()
    if key in INVALID_KEYS:
        return None
    return key


# =============================================================================
# Base Adapter
# =============================================================================

class BaseAdapter(ABC):
    """Base class for all input adapters"""

    label: str = "input"

    def __init__(self, settings: ReconSettings = DEFAULT_SETTINGS):
        self.settings = settings

    @abstractmethod
    def can_handle(self, source: InputFile) -> bool:
        """Check if this adapter can handle the given upload"""

    @abstractmethod
    def parse(self, source: InputFile) -> Any:
        """Parse the upload into its keyed form"""

    def _header(self, grid: Grid, source: InputFile, markers: Sequence[str], also: Sequence[str] = ()) -> int:
        return locate_header(grid, markers, source.name, self.settings.header_scan_rows, also)

    def _text_rows(self, source: InputFile, delimiter: Optional[str] = ",") -> Grid:
        if source.is_spreadsheet:
            raise UnsupportedFileFormat(source.name, "delimited text")
        return split_delimited(decode_text(source.data), delimiter=delimiter)


# =============================================================================
# Risk ledger
# =============================================================================

class RiskLedgerAdapter(BaseAdapter):
    """
    Risk sheet with a header row somewhere near the top.

    The header row is the first one holding a "UCC" / "Client Code" cell; the
    balance column is matched with the domain's balance rule.
    """

    label = "risk ledger"

    def __init__(self, config: DomainConfig, settings: ReconSettings = DEFAULT_SETTINGS):
        super().__init__(settings)
        self.config = config

    def can_handle(self, source: InputFile) -> bool:
        return source.is_spreadsheet

    def parse(self, source: InputFile) -> Dict[str, LedgerRecord]:
        require_spreadsheet(source)
        grid = read_grid(source)
        h = self._header(grid, source, ("UCC", "Client Code"))
        header = grid[h]
        columns = {
            "ucc": require_column(header, KEY_COLUMN, source.name, "UCC"),
            "balance": require_column(header, self.config.balance_column, source.name,
                                      f"{self.config.name} balance"),
        }
        name_idx = find_column(header, NAME_COLUMN)
        if name_idx is not None:
            columns["name"] = name_idx

        ledger: Dict[str, LedgerRecord] = {}
        for row in project_rows(grid, h, columns):
            key = clean_key(row["ucc"])
            if not key or key in ledger:
                continue
            amount = parse_amount(row["balance"])
            amount = abs(amount) if self.config.absolute_ledger else flip_and_clamp(amount)
            ledger[key] = LedgerRecord(client_key=key, amount=amount, name=row.get("name", "").strip())

        logger.info("%s: %d ledger clients from %s", self.config.name, len(ledger), source.name)
        return ledger


class FixedLayoutLedgerAdapter(RiskLedgerAdapter):
    """Risk sheet with a fixed header row and fixed key/name/balance columns."""

    def parse(self, source: InputFile) -> Dict[str, LedgerRecord]:
        require_spreadsheet(source)
        grid = read_grid(source, keep_blank_rows=True)
        header_row, key_col, name_col, balance_col = self.config.fixed_layout
        if len(grid) <= header_row:
            raise HeaderNotFound(source.name, [f"row {header_row + 1}"], len(grid))

        ledger: Dict[str, LedgerRecord] = {}
        for row in grid[header_row + 1:]:
            if not any(row):
                continue
            key = clean_key(row[key_col] if key_col < len(row) else "")
            if not key or key in ledger:
                continue
            balance = parse_amount(row[balance_col]) if balance_col < len(row) else 0.0
            amount = abs(balance) if self.config.absolute_ledger else flip_and_clamp(balance)
            name = row[name_col].strip() if name_col < len(row) else ""
            ledger[key] = LedgerRecord(client_key=key, amount=amount, name=name)

        logger.info("%s: %d ledger clients from %s", self.config.name, len(ledger), source.name)
        return ledger


def ledger_adapter_for(config: DomainConfig, settings: ReconSettings = DEFAULT_SETTINGS) -> RiskLedgerAdapter:
    if config.fixed_layout is not None:
        return FixedLayoutLedgerAdapter(config, settings)
    return RiskLedgerAdapter(config, settings)


# =============================================================================
# Allocation feed
# =============================================================================

class AllocationFeedAdapter(BaseAdapter):
    """
    Exchange allocation ("globe") CSV with its header on the first line.

    Only the join columns are kept on each RawRow, under their canonical names.
    """

    label = "allocation feed"
    REQUIRED = ("Clicode", "Segments", "Acctype", "Allocated")

    def __init__(
        self,
        min_fields: int = 7,
        exact_width: bool = False,
        with_clearing_type: bool = False,
        settings: ReconSettings = DEFAULT_SETTINGS,
    ):
        super().__init__(settings)
        self.min_fields = min_fields
        self.exact_width = exact_width
        self.with_clearing_type = with_clearing_type

    def can_handle(self, source: InputFile) -> bool:
        return not source.is_spreadsheet

    def parse(self, source: InputFile) -> List[RawRow]:
        grid = self._text_rows(source, delimiter=None)
        required = self.REQUIRED + (("Clrtype",) if self.with_clearing_type else ())
        if not grid:
            raise HeaderNotFound(source.name, required, 0)
        header = grid[0]
        index: Dict[str, int] = {}
        for name in required:
            idx = find_exact_column(header, name)
            if idx is None:
                raise MissingRequiredColumn(source.name, name)
            index[name] = idx

        rows: List[RawRow] = []
        for values in grid[1:]:
            if self.exact_width and len(values) != len(header):
                continue
            if len(values) < self.min_fields:
                continue
            rows.append({name: (values[i] if i < len(values) else "") for name, i in index.items()})
        logger.info("%s: %d allocation rows", source.name, len(rows))
        return rows


# =============================================================================
# Margin feeds
# =============================================================================

class MrgMarginAdapter(BaseAdapter):
    """MCX MRG file: record type 30 rows, client at field 3, margin at field 12."""

    label = "MRG margin"

    def can_handle(self, source: InputFile) -> bool:
        return source.suffix in (".csv", ".txt")

    def parse(self, source: InputFile) -> Dict[str, float]:
        margins: Dict[str, float] = {}
        for values in self._text_rows(source):
            if values[0] != "30" or len(values) < 13:
                continue
            key = values[3].strip()
            if key and key not in margins:
                margins[key] = parse_amount(values[12])
        return margins


class SearchResultsMarginAdapter(BaseAdapter):
    label = "SearchResults margin"

    def can_handle(self, source: InputFile) -> bool:
        return source.is_spreadsheet

    def parse(self, source: InputFile) -> Dict[str, float]:
        grid = read_grid(source)
        h = self._header(grid, source, ("client code",))
        header = grid[h]
        columns = {
            "ucc": require_column(header, (("client", "code"),), source.name, "Client Code"),
            "margin": require_column(header, (("total mu (rs)",),), source.name, "Total MU (Rs)"),
        }
        margins: Dict[str, float] = {}
        for row in project_rows(grid, h, columns):
            key = clean_key(row["ucc"])
            if key and key not in margins:
                margins[key] = parse_amount(row["margin"])
        return margins


class ClientMarginAdapter(BaseAdapter):
    """NSE ClientMargin CSV: header on the first line, trailing summary rows."""

    label = "ClientMargin"
    SUMMARY_KEYS = {"Total", "All amounts in Rs."}

    def can_handle(self, source: InputFile) -> bool:
        return "clientmargin" in source.lower_name and not source.is_spreadsheet

    def parse(self, source: InputFile) -> Dict[str, float]:
        grid = self._text_rows(source)
        if not grid:
            raise HeaderNotFound(source.name, ["Client Code"], 0)
        header = grid[0]
        key_idx = require_column(header, (("client", "code"),), source.name, "Client Code")
        margin_idx = require_column(header, (("total", "margin"),), source.name, "Total Margin")
        needed = max(key_idx, margin_idx)

        margins: Dict[str, float] = {}
        for values in grid[1:]:
            if len(values) <= needed:
                continue
            key = values[key_idx].strip()
            if not key or key in self.SUMMARY_KEYS or key in margins:
                continue
            margins[key] = parse_amount(values[margin_idx])
        return margins


class Cc01MarginAdapter(BaseAdapter):
    """NSE CC01 file: client at field 0, margin at field 5."""

    label = "CC01 margin"

    def can_handle(self, source: InputFile) -> bool:
        return not source.is_spreadsheet

    def parse(self, source: InputFile) -> Dict[str, float]:
        margins: Dict[str, float] = {}
        for values in self._text_rows(source):
            if len(values) < 6:
                continue
            key = values[0].strip()
            if key and key not in margins:
                margins[key] = parse_amount(values[5])
        return margins


class Mg13SpanAdapter(BaseAdapter):
    """NSE MG13 file: client at field 1, span is field 2 plus field 4."""

    label = "MG13 span"

    def can_handle(self, source: InputFile) -> bool:
        return "mg13" in source.lower_name

    def parse(self, source: InputFile) -> Dict[str, float]:
        spans: Dict[str, float] = {}
        for values in self._text_rows(source):
            if len(values) < 6:
                continue
            key = values[1].strip()
            if key and key not in spans:
                spans[key] = parse_amount(values[2]) + parse_amount(values[4])
        return spans


# =============================================================================
# Code lists
# =============================================================================

class CodeListAdapter(BaseAdapter):
    """
    Single-column list of client keys, spreadsheet or plain text.

    A spreadsheet may carry a header row (any cell containing one of
    `markers`); when `column` is given the keys are read from that column,
    otherwise from the first non-empty cell of each row. Keys are trimmed and
    deduplicated in file order.
    """

    label = "code list"

    def __init__(
        self,
        markers: Sequence[str] = ("code", "entity", "ucc"),
        column: Optional[ColumnRule] = None,
        require_header: bool = False,
        settings: ReconSettings = DEFAULT_SETTINGS,
    ):
        super().__init__(settings)
        self.markers = tuple(markers)
        self.column = column
        self.require_header = require_header

    def can_handle(self, source: InputFile) -> bool:
        return True

    def parse(self, source: InputFile) -> List[str]:
        if not source.is_spreadsheet:
            rows = split_delimited(decode_text(source.data), delimiter=",")
            return _dedupe(row[0] for row in rows)

        grid = read_grid(source)
        try:
            h = self._header(grid, source, self.markers)
        except HeaderNotFound:
            if self.require_header:
                raise
            h = -1

        col = None
        if self.column is not None:
            if h < 0:
                raise HeaderNotFound(source.name, self.markers, len(grid))
            col = require_column(grid[h], self.column, source.name, "/".join(self.markers))

        keys = []
        for row in grid[h + 1:]:
            if col is not None:
                keys.append(row[col] if col < len(row) else "")
            else:
                keys.append(next((c for c in row if c.strip()), ""))
        return _dedupe(keys)


def _dedupe(values) -> List[str]:
    seen = set()
    out: List[str] = []
    for v in values:
        key = str(v).strip()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(key)
    return out


# =============================================================================
# Adapter Registry
# =============================================================================

class MarginRegistry:
    """Picks the margin parser for a domain from the upload's name and type."""

    def __init__(self, settings: ReconSettings = DEFAULT_SETTINGS):
        self.adapters: Dict[str, List[BaseAdapter]] = {
            "mcx": [SearchResultsMarginAdapter(settings), MrgMarginAdapter(settings)],
            "nse_fo": [ClientMarginAdapter(settings), Cc01MarginAdapter(settings)],
        }

    def get_adapter(self, domain_id: str, source: InputFile) -> Optional[BaseAdapter]:
        for adapter in self.adapters.get(domain_id, []):
            if adapter.can_handle(source):
                return adapter
        return None

    def parse(self, domain_id: str, source: InputFile) -> Dict[str, float]:
        adapter = self.get_adapter(domain_id, source)
        if adapter is None:
            raise UnsupportedFileFormat(source.name, "a spreadsheet or CSV margin file")
        margins = adapter.parse(source)
        logger.info("%s: %d margin rows (%s)", source.name, len(margins), adapter.label)
        return margins
