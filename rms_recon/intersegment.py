"""
Intersegment fund movement.

Morning: funds move from MCX to NSE. The Kambala risk sheet gives each
entity's cash, pay-in and available margin; entities listed on the day's
"MCX TO NSE" code sheet get an NSE allocation upgrade, an MCX downgrade and
matching RMS limit lines.

Evening: the reverse release. 1% of each listed entity's available margin is
taken back off both NSE and MCX.
"""
from __future__ import annotations

import logging
import re
from datetime import date
from typing import Dict, List, Optional

from .adapters import AllocationFeedAdapter, CodeListAdapter
from .aggregation import aggregate_allocations
from .dates import content_date, dated_name, filename_date
from .engine import require_inputs
from .errors import FilenameMismatch, HeaderNotFound, ValueMismatchWarning
from .models import (
    AccountType,
    EveningRecord,
    GeneratedFile,
    InputFile,
    IntersegmentRecord,
    IntersegmentResult,
    OutputRecord,
)
from .outputs import (
    format_amount,
    format_fixed,
    limits_line,
    render_limits,
    render_upload,
    text_file,
    worksheet_file,
)
from .settings import (
    DEFAULT_SETTINGS,
    MCX_CO,
    MCX_UPLOAD_HEADER,
    NSE_FO,
    NSE_ROUTED_CO,
    NSE_UPLOAD_HEADER,
    MemberCodes,
    ReconSettings,
)
from .summary import intersegment_summary
from .tabular import RawRow, decode_text, header_dicts, locate_header, parse_amount, read_grid, round_half_up, split_delimited

logger = logging.getLogger(__name__)

MORNING = "morning"
EVENING = "evening"

KAMBALA_LEVEL = "COM"
MISMATCH_TOLERANCE = 0.01
# Kept back on MCX when a client with no margin in use is swept to NSE.
MCX_RETAINED = 100

MORNING_KAMBALA_NAME = "Morning {date}"
MORNING_CODES_NAME = "MCX TO NSE {date}"


# -----------------------------
# Helpers
# -----------------------------
def expect_dated_name(source: InputFile, stem: str, day: Optional[date] = None) -> None:
    """Reject uploads not named `{stem}.xlsx|xls` for the trading day."""
    expected = stem.format(date=filename_date(day))
    pattern = re.compile(rf"^{re.escape(expected)}\.(xlsx|xls)$", re.IGNORECASE)
    if not pattern.match(source.name):
        raise FilenameMismatch(source.name, f"{expected}.xlsx")


def margin_buckets(available: float) -> Dict[str, int]:
    return {
        "margin99": round_half_up(available * 0.99),
        "margin1": round_half_up(available * 0.01),
        "margin90": round_half_up(available * 0.90),
    }


def upload_line_record(codes: MemberCodes, date_text: str, entity: str, amount: str, action: str) -> OutputRecord:
    return OutputRecord(
        current_date=date_text,
        segment=codes.segment,
        cm_code=codes.cm_code,
        tm_code=codes.tm_code,
        client_key=entity,
        account_type=AccountType.CLIENT,
        amount=amount,
        action=action,
    )


# =============================================================================
# Morning (MCX -> NSE)
# =============================================================================

def parse_kambala_sheet(source: InputFile, settings: ReconSettings = DEFAULT_SETTINGS) -> List[RawRow]:
    """Kambala spreadsheet rows keyed by squashed header text ("availablemargin", ...)."""
    grid = read_grid(source)
    h = locate_header(grid, ("entity", "code"), source.name, settings.header_scan_rows)
    return header_dicts(grid, h)


def available_mismatch(entity: str, row: RawRow) -> Optional[ValueMismatchWarning]:
    """Warning when a row's Available Margin disagrees with its Available Check."""
    available = parse_amount(row.get("availablemargin"))
    check = parse_amount(row.get("availablecheck"))
    if abs(available - check) <= MISMATCH_TOLERANCE:
        return None
    return ValueMismatchWarning(
        client_key=entity,
        reported=available,
        check=check,
        message=(f"{entity}: Available Margin ({format_amount(available)}) "
                 f"does not match Available Check ({format_amount(check)})"),
    )


def morning_record(row: RawRow, nse_allocated: float) -> Optional[IntersegmentRecord]:
    """Movement for one Kambala row; None when margin in use is negative."""
    cash = parse_amount(row.get("cash"))
    payin = parse_amount(row.get("payin"))
    margin_used = parse_amount(row.get("marginused"))
    available = parse_amount(row.get("availablemargin"))
    buckets = margin_buckets(available)

    if margin_used == 0:
        mcx = round_half_up(cash + payin - MCX_RETAINED)
        nse = round(nse_allocated + mcx, 2)
        kambala_nse = mcx
    elif margin_used > 0:
        nse = round(nse_allocated + buckets["margin90"], 2)
        mcx = buckets["margin90"] - 1
        kambala_nse = buckets["margin90"]
    else:
        return None

    return IntersegmentRecord(
        entity=row.get("entity", "").strip(),
        cash=cash,
        payin=payin,
        uncleared_cash=parse_amount(row.get("unclearedcash")),
        margin_used=margin_used,
        collateral=parse_amount(row.get("collateral(total)")),
        available_margin=available,
        available_check=parse_amount(row.get("availablecheck")),
        total=parse_amount(row.get("total")),
        profile=row.get("profile", "").strip(),
        margin99=buckets["margin99"],
        margin1=buckets["margin1"],
        margin90=buckets["margin90"],
        nse_allocated=nse_allocated,
        nse_amount=nse,
        mcx_amount=float(mcx),
        kambala_nse=float(kambala_nse),
        kambala_mcx=float(-kambala_nse),
    )


def process_morning(
    kambala: Optional[InputFile],
    codes: Optional[InputFile],
    nse_feed: Optional[InputFile],
    day: Optional[date] = None,
    settings: ReconSettings = DEFAULT_SETTINGS,
) -> IntersegmentResult:
    require_inputs("Morning Intersegment", kambala_sheet=kambala, code_sheet=codes, nse_allocation_feed=nse_feed)
    expect_dated_name(kambala, MORNING_KAMBALA_NAME, day)
    expect_dated_name(codes, MORNING_CODES_NAME, day)

    feed_rows = AllocationFeedAdapter(settings=settings).parse(nse_feed)
    allocation = aggregate_allocations(feed_rows, NSE_FO.segment)

    code_list = CodeListAdapter(markers=("entity", "code"), require_header=True, settings=settings).parse(codes)
    wanted = set(code_list)
    logger.info("Morning intersegment: %d unique codes", len(code_list))

    selected: Dict[str, RawRow] = {}
    for row in parse_kambala_sheet(kambala, settings):
        if row.get("level", "").strip() != KAMBALA_LEVEL:
            continue
        entity = row.get("entity", "").strip()
        if entity in wanted and entity not in selected:
            selected[entity] = row

    missing = tuple(c for c in code_list if c not in selected)
    if missing:
        logger.warning("Morning intersegment: %d codes missing from %s: %s",
                       len(missing), kambala.name, ", ".join(missing))

    records: List[IntersegmentRecord] = []
    warnings: List[ValueMismatchWarning] = []
    for entity, row in selected.items():
        mismatch = available_mismatch(entity, row)
        if mismatch is not None:
            warnings.append(mismatch)
        record = morning_record(row, allocation.amount_for(entity))
        if record is None:
            logger.info("Morning intersegment: %s skipped, negative margin used", entity)
            continue
        if record.kambala_nse >= 0:
            records.append(record)

    for w in warnings:
        logger.warning(w.message)
    logger.info("Morning intersegment: %d records, %d mismatches", len(records), len(warnings))
    return IntersegmentResult(session=MORNING, records=tuple(records), warnings=tuple(warnings),
                              missing_codes=missing)


MORNING_COLUMNS = (
    ("Entity", "entity"),
    ("Profile", "profile"),
    ("Cash", "cash"),
    ("Payin", "payin"),
    ("Uncleared Cash", "uncleared_cash"),
    ("TOTAL", "total"),
    ("Available Margin", "available_margin"),
    ("Margin Used", "margin_used"),
    ("Available Check", "available_check"),
    ("Collateral Total", "collateral"),
    ("99% Margin", "margin99"),
    ("90% Margin", "margin90"),
    ("1% Margin", "margin1"),
    ("NSE Globe", "nse_amount"),
    ("MCX Globe", "mcx_amount"),
    ("Kambala NSE", "kambala_nse"),
    ("Kambala MCX", "kambala_mcx"),
    ("NSE Allocated", "nse_allocated"),
)


def morning_files(result: IntersegmentResult, day: Optional[date] = None) -> List[GeneratedFile]:
    """
    NSE and MCX uploads, both RMS limit files and the worksheet. Upload and
    limit files with no lines are left out.
    """
    today = content_date(day)
    valid = [r for r in result.records if r.kambala_nse >= 0]
    limited = [r for r in valid if r.kambala_nse != 0]

    files: List[GeneratedFile] = []
    if valid:
        nse_upload = render_upload(
            NSE_UPLOAD_HEADER,
            [upload_line_record(NSE_FO, today, r.entity, format_fixed(r.nse_amount), "U") for r in valid],
        )
        mcx_upload = render_upload(
            MCX_UPLOAD_HEADER,
            [upload_line_record(MCX_CO, today, r.entity, str(round_half_up(r.mcx_amount)), "D") for r in valid],
            trailing_newline=True,
        )
        files.append(text_file(dated_name("90221_ALLOC_{date}.T0004", day), nse_upload))
        files.append(text_file(dated_name("MCCLCOLL_46365_{date}.003", day), mcx_upload))
    if limited:
        nse_limits = render_limits(limits_line(r.entity, round_half_up(r.kambala_nse)) for r in limited)
        mcx_limits = render_limits(
            limits_line(r.entity, round_half_up(r.kambala_mcx), segment=KAMBALA_LEVEL) for r in limited
        )
        files.append(text_file(dated_name("NSEkambala_{date}.txt", day), nse_limits))
        files.append(text_file(dated_name("MCXkambala_{date}.txt", day), mcx_limits))

    files.append(worksheet_file(
        dated_name("morning_intersegment_{date}.xlsx", day),
        "Morning Intersegment",
        MORNING_COLUMNS,
        [r.to_dict() for r in result.records],
        summary=intersegment_summary(result.records),
    ))
    return files


# =============================================================================
# Evening (NSE -> MCX)
# =============================================================================

def parse_evening_kambala(source: InputFile) -> List[RawRow]:
    """Tab-separated Kambala export; only rows as wide as the header are kept."""
    grid = split_delimited(decode_text(source.data), delimiter="\t")
    if not grid:
        raise HeaderNotFound(source.name, ["Entity"], 0)
    width = len(grid[0])
    cleaned = [grid[0]] + [[v.replace(",", "") for v in row] for row in grid[1:] if len(row) == width]
    return header_dicts(cleaned, 0)


def process_evening(
    kambala: Optional[InputFile],
    codes: Optional[InputFile],
    settings: ReconSettings = DEFAULT_SETTINGS,
) -> IntersegmentResult:
    require_inputs("Evening Intersegment", kambala_file=kambala, code_file=codes)
    code_list = CodeListAdapter(settings=settings).parse(codes)
    wanted = set(code_list)

    records: Dict[str, EveningRecord] = {}
    for row in parse_evening_kambala(kambala):
        entity = row.get("entity", "").strip()
        if entity not in wanted or entity in records:
            continue
        available = parse_amount(row.get("availablemargin"))
        buckets = margin_buckets(available)
        records[entity] = EveningRecord(
            entity=entity,
            available_margin=available,
            margin99=buckets["margin99"],
            margin1=buckets["margin1"],
            uncleared_cash=parse_amount(row.get("unclearedcash")),
            margin_used=parse_amount(row.get("marginused")),
        )

    missing = tuple(c for c in code_list if c not in records)
    if missing:
        logger.warning("Evening intersegment: %d codes missing from %s", len(missing), kambala.name)
    logger.info("Evening intersegment: %d records", len(records))
    return IntersegmentResult(session=EVENING, records=tuple(records.values()), missing_codes=missing)


def evening_files(result: IntersegmentResult, day: Optional[date] = None) -> List[GeneratedFile]:
    """Release 1% of available margin on NSE F&O and on the NSE-routed MCX leg."""
    today = content_date(day)
    nse = [upload_line_record(NSE_FO, today, r.entity, str(r.margin1), "D") for r in result.records]
    mcx = [upload_line_record(NSE_ROUTED_CO, today, r.entity, str(r.margin1), "D") for r in result.records]
    return [
        text_file(dated_name("nse_globe_file_{date}.txt", day), render_upload(NSE_UPLOAD_HEADER, nse)),
        text_file(dated_name("mcx_globe_file_{date}.txt", day), render_upload(NSE_UPLOAD_HEADER, mcx)),
    ]
