"""
Fund Segregation

Checks that each client's ledger balance is fully accounted for by what is
allocated on NSE CM, NSE F&O and MCX plus what the "remaining" sheet still
holds back. Clients whose books already line up are filtered out so the
worksheet only shows rows that need attention.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from .dates import dated_name
from .engine import require_inputs
from .errors import InconsistentRemainingData, MissingRequiredColumn
from .models import GeneratedFile, InputFile, SegregationLedger, SegregationRecord, SegregationStatus
from .outputs import worksheet_file
from .summary import segregation_summary
from .tabular import Grid, decode_text, parse_amount, read_grid, split_delimited

logger = logging.getLogger(__name__)

HEADER_WINDOW = 5
STATUS_TOLERANCE = 1.0
ZERO_TOLERANCE = 0.01

# Fallback positions when a header cell cannot be matched (columns E, N, C, AK).
LEDGER_BALANCE_COLUMN = 4
LEDGER_EPAY_COLUMN = 13
REMAINING_UCC_COLUMN = 2
REMAINING_AMOUNT_COLUMN = 36

_NUMBER = re.compile(r"^[#,\s]*[-+]?(\d|\.\d)")


@dataclass
class SegregationInputs:
    ledger: Dict[str, SegregationLedger] = field(default_factory=dict)
    nse_cm: Dict[str, float] = field(default_factory=dict)
    nse_fo: Dict[str, float] = field(default_factory=dict)
    mcx: Dict[str, float] = field(default_factory=dict)
    remaining: Dict[str, float] = field(default_factory=dict)


# -----------------------------
# Helpers
# -----------------------------
def _norm(cell: str) -> str:
    return " ".join(str(cell).split()).lower()


def _find(headers: Sequence[str], *tests) -> Optional[int]:
    for test in tests:
        for idx, h in enumerate(headers):
            if test(h):
                return idx
    return None


def _amount(row: Sequence[str], idx: int) -> float:
    if idx >= len(row):
        return 0.0
    return abs(parse_amount(row[idx].replace("#", "")))


def _header_row(grid: Grid, accept) -> Optional[int]:
    for idx, row in enumerate(grid[:HEADER_WINDOW]):
        if accept([_norm(c) for c in row]):
            return idx
    return None


def ledger_bucket(segment: str) -> str:
    """Ledger segment/system text to the bucket its balance is added to."""
    if "currenc" in segment or "cnfo" in segment:
        return "currencies"
    if "deriv" in segment or "nfo" in segment or "f&o" in segment:
        return "derivative"
    if "equit" in segment or "nse" in segment or "cash" in segment:
        return "equities"
    if "mcx" in segment or "mcfo" in segment:
        return "mcx"
    return "equities"


# -----------------------------
# Parsers
# -----------------------------
def parse_segregation_ledger(source: InputFile) -> Dict[str, SegregationLedger]:
    """
    One row per client and segment; balances are summed into four buckets.
    Zero balances and "Grand Total" rows are skipped. The header row is looked
    for in the first five rows and defaults to the second row.
    """
    grid = read_grid(source, keep_blank_rows=True)

    def is_header(cells):
        has_ucc = any("ucc" in c for c in cells)
        has_segment = any("segment" in c or "system" in c for c in cells)
        has_balance = any("ledger" in c or "balance" in c or "epay" in c for c in cells)
        return has_ucc and (has_segment or has_balance)

    h = _header_row(grid, is_header)
    if h is None:
        h = 1
    headers = [_norm(c) for c in grid[h]] if h < len(grid) else []

    ucc_idx = _find(headers, lambda c: "ucc" in c)
    if ucc_idx is None:
        raise MissingRequiredColumn(source.name, "UCC")
    client_idx = _find(headers, lambda c: "client" in c and "ucc" not in c)
    segment_idx = _find(headers, lambda c: "segment" in c or "system" in c)
    balance_idx = _find(
        headers,
        lambda c: "pure ledger bal" in c,
        lambda c: "ledger" in c and "bal" in c,
    )
    epay_idx = _find(
        headers,
        lambda c: "adjusted" in c and "epay" in c and "ledger bal" in c,
        lambda c: "adjusted epay" in c,
        lambda c: "epay" in c and "ledger" in c,
    )
    balance_idx = LEDGER_BALANCE_COLUMN if balance_idx is None else balance_idx
    epay_idx = LEDGER_EPAY_COLUMN if epay_idx is None else epay_idx

    def cell(row, idx):
        return row[idx].strip() if idx is not None and idx < len(row) else ""

    buckets: Dict[str, Dict[str, float]] = {}
    names: Dict[str, str] = {}
    for row in grid[h + 1:]:
        ucc = cell(row, ucc_idx)
        if not ucc or ucc.lower() == "ucc" or "grand total" in ucc.lower():
            continue
        balance = _amount(row, balance_idx)
        if balance == 0:
            continue
        epay = _amount(row, epay_idx)
        name = cell(row, client_idx)

        if ucc not in buckets:
            buckets[ucc] = {"currencies": 0.0, "derivative": 0.0, "equities": 0.0, "mcx": 0.0, "epay": epay}
            names[ucc] = name
        else:
            if name and not names[ucc]:
                names[ucc] = name
            if epay > 0:
                buckets[ucc]["epay"] = epay
        buckets[ucc][ledger_bucket(cell(row, segment_idx).lower())] += balance

    ledger = {ucc: SegregationLedger(ucc=ucc, client_name=names[ucc], **b) for ucc, b in buckets.items()}
    logger.info("%s: %d segregation ledger clients", source.name, len(ledger))
    return ledger


def _csv_rows(source: InputFile) -> List[List[str]]:
    """Comma-separated rows with empty fields dropped."""
    return [[v for v in row if v] for row in split_delimited(decode_text(source.data), delimiter=",")]


def parse_cc01_allocation(source: InputFile) -> Dict[str, float]:
    """NSE CC01 allocation: client in field 0, absolute amount in field 4, summed per client."""
    totals: Dict[str, float] = {}
    for values in _csv_rows(source):
        if len(values) < 5:
            continue
        ucc, amount = values[0], values[4]
        if len(ucc) <= 1 or ucc == "UCC" or not _NUMBER.match(amount):
            continue
        totals[ucc] = totals.get(ucc, 0.0) + abs(parse_amount(amount))
    return totals


def parse_mcx_web_allocation(source: InputFile) -> Dict[str, float]:
    """MCX web allocation/deallocation: client in field 2, amount in field 16."""
    totals: Dict[str, float] = {}
    for values in _csv_rows(source):
        if len(values) < 17:
            continue
        ucc, amount = values[2], values[16]
        if not ucc or ucc == "UCC" or not _NUMBER.match(amount):
            continue
        totals[ucc] = totals.get(ucc, 0.0) + parse_amount(amount)
    return totals


def parse_remaining(source: InputFile) -> Dict[str, float]:
    """Amounts still held back per client (column AK); only positive values kept."""
    grid = read_grid(source, keep_blank_rows=True)
    h = _header_row(grid, lambda cells: any("ucc" in c for c in cells))
    if h is None:
        h = 0
    headers = [_norm(c) for c in grid[h]] if h < len(grid) else []
    ucc_idx = _find(headers, lambda c: "ucc" in c)
    ucc_idx = REMAINING_UCC_COLUMN if ucc_idx is None else ucc_idx

    remaining: Dict[str, float] = {}
    for row in grid[h + 1:]:
        ucc = row[ucc_idx].strip() if ucc_idx < len(row) else ""
        lowered = ucc.lower()
        if not ucc or lowered in ("segment", "ucc") or "total" in lowered:
            continue
        value = _amount(row, REMAINING_AMOUNT_COLUMN)
        if value > 0 and ucc not in remaining:
            remaining[ucc] = value
    logger.info("%s: %d clients with remaining amounts", source.name, len(remaining))
    return remaining


def classify_upload(source: InputFile) -> Optional[str]:
    name = source.lower_name
    for marker, kind in (
        ("ledger", "ledger"),
        ("c_cc01", "nse_cm"),
        ("f_cc01", "nse_fo"),
        ("mcx_weballocation", "mcx"),
        ("remaining", "remaining"),
    ):
        if marker in name:
            return kind
    return None


def load_inputs(files: Sequence[InputFile]) -> SegregationInputs:
    inputs = SegregationInputs()
    by_kind: Dict[str, InputFile] = {}
    for source in files:
        kind = classify_upload(source)
        if kind is None:
            logger.warning("Segregation: ignoring unrecognised upload %s", source.name)
            continue
        by_kind[kind] = source

    require_inputs("Segregation", ledger=by_kind.get("ledger"))
    inputs.ledger = parse_segregation_ledger(by_kind["ledger"])
    parsers = {
        "nse_cm": parse_cc01_allocation,
        "nse_fo": parse_cc01_allocation,
        "mcx": parse_mcx_web_allocation,
        "remaining": parse_remaining,
    }
    for kind, parse in parsers.items():
        if kind in by_kind:
            setattr(inputs, kind, parse(by_kind[kind]))
        else:
            logger.warning("Segregation: no %s file uploaded, treating it as empty", kind)
    return inputs


# -----------------------------
# Join, validate, filter
# -----------------------------
def build_record(ucc: str, inputs: SegregationInputs) -> SegregationRecord:
    ledger = inputs.ledger.get(ucc) or SegregationLedger(ucc=ucc)
    nse_cm = inputs.nse_cm.get(ucc, 0.0)
    nse_fo = inputs.nse_fo.get(ucc, 0.0)
    mcx_file = inputs.mcx.get(ucc, 0.0)
    remaining = inputs.remaining.get(ucc, 0.0)
    allocation_total = nse_cm + nse_fo + mcx_file
    gap = abs(ledger.total - (allocation_total + remaining))
    return SegregationRecord(
        ucc=ucc,
        client_name=ledger.client_name,
        equities=ledger.equities,
        derivative=ledger.derivative,
        currencies=ledger.currencies,
        mcx=ledger.mcx,
        ledger_total=ledger.total,
        epay=ledger.epay,
        nse_cm=nse_cm,
        nse_fo=nse_fo,
        mcx_file=mcx_file,
        remaining=remaining,
        cm_diff=ledger.equities - nse_cm,
        fo_diff=ledger.derivative - nse_fo,
        mcx_diff=ledger.mcx - mcx_file,
        allocation_total=allocation_total,
        status=SegregationStatus.OK if gap < STATUS_TOLERANCE else SegregationStatus.NOT_OK,
    )


def _diffs(record: SegregationRecord) -> Tuple[float, float, float]:
    return record.fo_diff, record.cm_diff, record.mcx_diff


def check_remaining(records: Sequence[SegregationRecord]) -> None:
    """A client with nothing left to segregate cannot still have a remaining amount."""
    bad = [r for r in records if r.remaining > 0 and all(abs(d) < ZERO_TOLERANCE for d in _diffs(r))]
    if bad:
        for r in bad:
            logger.error("Segregation: %s has all differences zero but remaining %.2f", r.ucc, r.remaining)
        raise InconsistentRemainingData(len(bad))


def needs_attention(record: SegregationRecord) -> bool:
    if record.remaining > 0:
        return True
    zeros = sum(1 for d in _diffs(record) if abs(d) < ZERO_TOLERANCE)
    negatives = sum(1 for d in _diffs(record) if d < 0)
    return record.allocation_total != 0 and zeros < 2 and negatives < 2


def segregate(inputs: SegregationInputs) -> Tuple[SegregationRecord, ...]:
    keys = set(inputs.ledger) | set(inputs.nse_cm) | set(inputs.nse_fo) | set(inputs.mcx) | set(inputs.remaining)
    records = [build_record(ucc, inputs) for ucc in sorted(keys, key=lambda k: (k.casefold(), k))]
    check_remaining(records)
    kept = tuple(r for r in records if needs_attention(r))
    logger.info("Segregation: %d clients, %d need attention", len(records), len(kept))
    return kept


def process_segregation(files: Sequence[InputFile]) -> Tuple[SegregationRecord, ...]:
    return segregate(load_inputs(files))


SEGREGATION_COLUMNS = (
    ("UCC", "ucc"),
    ("Client Name", "client_name"),
    ("Currencies", "currencies"),
    ("Derivative", "derivative"),
    ("Equities", "equities"),
    ("MCX Ledger", "mcx"),
    ("Total", "ledger_total"),
    ("NSE CM", "nse_cm"),
    ("NSE FO", "nse_fo"),
    ("MCX File", "mcx_file"),
    ("Allocation Total", "allocation_total"),
    ("Remaining", "remaining"),
    ("FO Diff", "fo_diff"),
    ("CM Diff", "cm_diff"),
    ("MCX Diff", "mcx_diff"),
    ("Epay", "epay"),
    ("Status", "status"),
)


def segregation_files(records: Sequence[SegregationRecord], day: Optional[date] = None) -> List[GeneratedFile]:
    return [worksheet_file(
        dated_name("segregation_data_{date}.xlsx", day),
        "Segregation Data",
        SEGREGATION_COLUMNS,
        [r.to_dict() for r in records],
        summary=segregation_summary(records),
        status_key="status",
    )]
