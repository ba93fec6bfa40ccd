"""
Payout Processing

Checks the day's client payout requests against the payout ledger and the
exchange margin files, and produces the RMS limit and exchange release files
for the requests that can be paid.

Uploads arrive as one batch and are told apart by file name:
- *ledger*          payout ledger (per-segment balances)
- *jv code*         JV code list (clients settled by journal voucher)
- *mrg*             MCX MRG margin file
- *mg13*            NSE MG13 span file
- *mcx* / *fo* / *cm*  payout request sheets for that segment
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .adapters import CodeListAdapter, Mg13SpanAdapter, MrgMarginAdapter
from .dates import content_date, dated_name
from .errors import MissingInputError, MissingRequiredColumn
from .models import (
    AccountType,
    GeneratedFile,
    InputFile,
    OutputRecord,
    PayoutEntry,
    PayoutLedger,
    PayoutRecord,
    PayoutResult,
    PayoutSegment,
    PayoutStatus,
)
from .outputs import (
    PAYOUT_AMOUNT_SLOT,
    format_amount,
    limits_line,
    render_limits,
    render_upload,
    text_file,
    worksheet_file,
)
from .settings import DEFAULT_SETTINGS, MCX_CO, MCX_UPLOAD_HEADER, NSE_CM, NSE_FO, NSE_UPLOAD_HEADER, ReconSettings
from .summary import payout_summary
from .tabular import (
    find_column,
    find_exact_column,
    header_dicts,
    locate_header,
    parse_amount,
    read_grid,
    round_half_up,
)

logger = logging.getLogger(__name__)

LEDGER = "ledger"
JV_CODES = "jv_codes"
MRG = "mrg"
MG13 = "mg13"

NSE_SEGMENTS = (PayoutSegment.CM, PayoutSegment.FO, PayoutSegment.CM_FO)


# -----------------------------
# Upload classification
# -----------------------------
def classify_upload(source: InputFile):
    """File kind from its lower-cased name; the first matching rule wins."""
    name = source.lower_name
    if "ledger" in name:
        return LEDGER
    if "jv code" in name or "jvcode" in name:
        return JV_CODES
    if "mrg" in name:
        return MRG
    if "mg13" in name:
        return MG13
    if "mcx" in name:
        return PayoutSegment.MCX
    if "fo" in name:
        return PayoutSegment.FO
    if "cm" in name:
        return PayoutSegment.CM
    return None


# -----------------------------
# Parsers
# -----------------------------
def parse_payout_sheet(
    source: InputFile,
    segment: PayoutSegment,
    settings: ReconSettings = DEFAULT_SETTINGS,
) -> List[PayoutEntry]:
    grid = read_grid(source)
    h = locate_header(grid, ("ucc", "client"), source.name, settings.header_scan_rows)
    entries: List[PayoutEntry] = []
    for row in header_dicts(grid, h):
        ucc = row.get("ucc", "").strip()
        if not ucc:
            continue
        entries.append(PayoutEntry(
            ucc=ucc,
            client_name=row.get("clientname", "").strip(),
            pay=parse_amount(row.get("pay")),
            segment=segment,
            auto_payable=parse_amount(row.get("autopayable")),
            web_request=parse_amount(row.get("webrequest") or row.get("webreqest")),
            web_login=row.get("weblogin", "").strip(),
        ))
    logger.info("%s: %d %s payout requests", source.name, len(entries), segment.value)
    return entries


def parse_payout_ledger(source: InputFile, settings: ReconSettings = DEFAULT_SETTINGS) -> Dict[str, PayoutLedger]:
    """All balances are taken as absolute values; missing balance columns read as 0."""
    grid = read_grid(source)
    h = locate_header(grid, ("ucc", "mcx balance"), source.name, settings.header_scan_rows)
    header = grid[h]
    ucc_idx = find_exact_column(header, "UCC")
    if ucc_idx is None:
        raise MissingRequiredColumn(source.name, "UCC")
    columns = {
        "mcx": find_exact_column(header, "MCXBalance"),
        "nse_cm": find_exact_column(header, "NSE-CMBalance"),
        "nse_fo": find_exact_column(header, "NSE-F&OBalance"),
        "cds": find_column(header, (("cds",),)),
    }

    def cell(row, idx):
        if idx is None or idx >= len(row):
            return 0.0
        return abs(parse_amount(row[idx]))

    ledger: Dict[str, PayoutLedger] = {}
    for row in grid[h + 1:]:
        ucc = row[ucc_idx].strip() if ucc_idx < len(row) else ""
        if not ucc or ucc in ledger:
            continue
        ledger[ucc] = PayoutLedger(ucc=ucc, **{k: cell(row, i) for k, i in columns.items()})
    logger.info("%s: %d ledger rows", source.name, len(ledger))
    return ledger


def parse_jv_codes(source: InputFile, settings: ReconSettings = DEFAULT_SETTINGS) -> List[str]:
    return CodeListAdapter(markers=("ucc",), column=(("ucc",),), require_header=True, settings=settings).parse(source)


# -----------------------------
# CM / FO merge
# -----------------------------
def _merge_nse(ucc: str, nse: List[PayoutEntry], duplicates: List[str]) -> PayoutEntry:
    if len(nse) == 1:
        return nse[0]
    cm = next((e for e in nse if e.segment is PayoutSegment.CM), None)
    fo = next((e for e in nse if e.segment is PayoutSegment.FO), None)
    if cm is not None and fo is not None and cm.pay == fo.pay:
        return fo
    duplicates.append(ucc)
    return replace(nse[0], segment=PayoutSegment.CM_FO, pay=sum(e.pay for e in nse))


def merge_entries(entries: Iterable[PayoutEntry]) -> Tuple[List[PayoutEntry], List[str]]:
    """
    One request per UCC and exchange. MCX stays separate; CM and FO requests
    with equal Pay keep only FO, otherwise they combine into CM+FO and the UCC
    is reported as a duplicate.
    """
    groups: Dict[str, List[PayoutEntry]] = {}
    for e in entries:
        groups.setdefault(e.ucc, []).append(e)

    merged: List[PayoutEntry] = []
    duplicates: List[str] = []
    for ucc, group in groups.items():
        if len(group) == 1:
            merged.append(group[0])
            continue
        segments = {e.segment for e in group}
        nse = [e for e in group if e.segment in (PayoutSegment.CM, PayoutSegment.FO)]
        has_cm_and_fo = PayoutSegment.CM in segments and PayoutSegment.FO in segments
        if PayoutSegment.MCX in segments and nse:
            merged.append(next(e for e in group if e.segment is PayoutSegment.MCX))
            merged.append(_merge_nse(ucc, nse, duplicates))
        elif has_cm_and_fo and PayoutSegment.MCX not in segments:
            merged.append(_merge_nse(ucc, group, duplicates))
        else:
            merged.append(group[0])
    return merged, duplicates


# -----------------------------
# Status
# -----------------------------
def ledger_balance_for(segment: PayoutSegment, ledger: PayoutLedger) -> float:
    if segment is PayoutSegment.MCX:
        return abs(ledger.mcx)
    if segment is PayoutSegment.CM:
        return abs(ledger.nse_cm)
    if segment is PayoutSegment.FO:
        return abs(ledger.nse_fo)
    return ledger.nse_cm + ledger.nse_fo


def evaluate(
    entry: PayoutEntry,
    ledger: Optional[PayoutLedger],
    margin: float,
    span: float,
    jv_code: bool,
) -> PayoutRecord:
    """
    JV code clients are OK whenever they have a ledger row. Everyone else is
    OK when the exchange holds nothing (margin or span of 0) or the balance
    left after margin covers the payout.
    """
    balance = available = difference = 0.0
    if ledger is None:
        status = PayoutStatus.JV_NOT_OK if jv_code else PayoutStatus.NOT_OK
    else:
        balance = ledger_balance_for(entry.segment, ledger)
        if entry.segment is PayoutSegment.MCX:
            difference = ledger.mcx - entry.pay
            available = balance - margin
            ok = margin == 0 or available >= entry.pay
        else:
            difference = ledger.nse_total - entry.pay
            available = ledger.nse_total - span
            ok = span == 0 or available >= entry.pay
        if jv_code:
            status = PayoutStatus.JV_OK
            available = balance
        else:
            status = PayoutStatus.OK if ok else PayoutStatus.NOT_OK

    return PayoutRecord(
        ucc=entry.ucc,
        client_name=entry.client_name,
        segment=entry.segment,
        pay=entry.pay,
        ledger_balance=balance,
        margin=margin,
        nse_span=span,
        available=available,
        difference=difference,
        status=status,
        auto_payable=entry.auto_payable,
        web_request=entry.web_request,
        web_login=entry.web_login,
        jv_code=jv_code,
    )


def _entry_of(record: PayoutRecord, pay: Optional[float] = None) -> PayoutEntry:
    return PayoutEntry(
        ucc=record.ucc,
        client_name=record.client_name,
        pay=record.pay if pay is None else pay,
        segment=record.segment,
        auto_payable=record.auto_payable,
        web_request=record.web_request,
        web_login=record.web_login,
    )


# -----------------------------
# Pipeline
# -----------------------------
def process_payout(files: Sequence[InputFile], settings: ReconSettings = DEFAULT_SETTINGS) -> PayoutResult:
    if not files:
        raise MissingInputError("payout files", "Payout")

    entries: List[PayoutEntry] = []
    ledger: Dict[str, PayoutLedger] = {}
    margins: Dict[str, float] = {}
    spans: Dict[str, float] = {}
    jv_codes: List[str] = []

    for source in files:
        kind = classify_upload(source)
        if kind == LEDGER:
            ledger = parse_payout_ledger(source, settings)
        elif kind == JV_CODES:
            jv_codes = parse_jv_codes(source, settings)
        elif kind == MRG:
            margins = MrgMarginAdapter(settings).parse(source)
        elif kind == MG13:
            spans = Mg13SpanAdapter(settings).parse(source)
        elif isinstance(kind, PayoutSegment):
            entries.extend(parse_payout_sheet(source, kind, settings))
        else:
            logger.warning("Payout: ignoring unrecognised upload %s", source.name)

    if not entries:
        raise MissingInputError("payout request sheet (mcx / fo / cm)", "Payout")
    if not ledger:
        logger.warning("Payout: no ledger uploaded, every request will be Not OK")

    merged, duplicates = merge_entries(entries)
    jv = frozenset(jv_codes)
    records = tuple(
        evaluate(e, ledger.get(e.ucc), margins.get(e.ucc, 0.0), spans.get(e.ucc, 0.0), e.ucc in jv)
        for e in merged
    )
    if duplicates:
        logger.info("Payout: %d UCCs with both CM and FO requests combined", len(duplicates))
    logger.info("Payout: %d requests, %d OK", len(records), sum(1 for r in records if r.status.is_ok))
    return PayoutResult(records=records, ledger=ledger, margins=margins, spans=spans, jv_codes=jv,
                        duplicates=tuple(duplicates))


def _matches(record: PayoutRecord, ucc: str, segment: Optional[PayoutSegment]) -> bool:
    return record.ucc == ucc and (segment is None or record.segment is segment)


def apply_pay_edit(
    result: PayoutResult,
    ucc: str,
    pay: float,
    segment: Optional[PayoutSegment] = None,
) -> PayoutResult:
    """
    New result with the Pay of `ucc` replaced and its status re-derived.
    Without a segment every request of that UCC is edited. A manually set
    status survives the edit.
    """
    if not any(_matches(r, ucc, segment) for r in result.records):
        raise LookupError(f"No payout request for {ucc}")

    def rebuilt(r: PayoutRecord) -> PayoutRecord:
        if not _matches(r, ucc, segment):
            return r
        fresh = evaluate(_entry_of(r, float(pay)), result.ledger.get(ucc), r.margin, r.nse_span, r.jv_code)
        if r.manual_status:
            return replace(fresh, status=r.status, manual_status=True)
        return fresh

    return replace(result, records=tuple(rebuilt(r) for r in result.records))


def toggle_status(result: PayoutResult, ucc: str, segment: Optional[PayoutSegment] = None) -> PayoutResult:
    """OK <-> Not OK and JV CODE OK <-> JV CODE Not OK for the matching requests."""
    if not any(_matches(r, ucc, segment) for r in result.records):
        raise LookupError(f"No payout request for {ucc}")
    return replace(result, records=tuple(
        replace(r, status=r.status.toggled(), manual_status=True) if _matches(r, ucc, segment) else r
        for r in result.records
    ))


# =============================================================================
# Outputs
# =============================================================================

def _paid(records: Iterable[PayoutRecord]) -> List[PayoutRecord]:
    return [r for r in records if r.status.is_ok]


def rms_limits_text(records: Sequence[PayoutRecord]) -> str:
    """OK requests, MCX first, limit set to the rounded remaining balance."""
    ordered = sorted(_paid(records), key=lambda r: 0 if r.segment is PayoutSegment.MCX else 1)
    return render_limits(
        limits_line(
            r.ucc,
            round_half_up(r.difference),
            segment="COM" if r.segment is PayoutSegment.MCX else "",
            amount_slot=PAYOUT_AMOUNT_SLOT,
        )
        for r in ordered
    )


def _release(codes, date_text: str, ucc: str, amount: float) -> OutputRecord:
    return OutputRecord(
        current_date=date_text,
        segment=codes.segment,
        cm_code=codes.cm_code,
        tm_code=codes.tm_code,
        client_key=ucc,
        account_type=AccountType.CLIENT,
        amount=format_amount(amount),
        action="D",
    )


def mcx_release_lines(records: Sequence[PayoutRecord], date_text: str) -> List[OutputRecord]:
    return [_release(MCX_CO, date_text, r.ucc, r.pay) for r in _paid(records) if r.segment is PayoutSegment.MCX]


def nse_release_lines(
    records: Sequence[PayoutRecord],
    ledger: Dict[str, PayoutLedger],
    date_text: str,
) -> List[OutputRecord]:
    """
    Releases are taken from CM while the CM balance covers the payout, and
    from FO otherwise. A combined CM+FO request always releases from FO.
    """
    lines: List[OutputRecord] = []
    for r in _paid(records):
        if r.segment not in NSE_SEGMENTS:
            continue
        if r.segment is PayoutSegment.CM_FO:
            lines.append(_release(NSE_CM, date_text, r.ucc, 0))
            lines.append(_release(NSE_FO, date_text, r.ucc, r.difference))
            continue
        entry = ledger.get(r.ucc)
        if entry is None:
            continue
        if entry.nse_cm >= r.pay:
            lines.append(_release(NSE_CM, date_text, r.ucc, r.difference))
        elif r.segment is PayoutSegment.CM:
            lines.append(_release(NSE_CM, date_text, r.ucc, 0))
            lines.append(_release(NSE_FO, date_text, r.ucc, r.difference))
        else:
            lines.append(_release(NSE_FO, date_text, r.ucc, r.difference))
    return lines


PAYOUT_COLUMNS = (
    ("UCC", "ucc"),
    ("Client Name", "client_name"),
    ("Pay", "pay"),
    ("Auto Payable", "auto_payable"),
    ("Web Request", "web_request"),
    ("Web Login", "web_login"),
    ("Segment", "segment"),
    ("Ledger Balance", "ledger_balance"),
    ("NSE Span", "nse_span"),
    ("MRG Margin", "margin"),
    ("Available", "available"),
    ("Difference", "difference"),
    ("Status", "status"),
)


def payout_files(result: PayoutResult, day: Optional[date] = None) -> List[GeneratedFile]:
    """Upload files with no lines to release are left out."""
    today = content_date(day)
    files: List[GeneratedFile] = []
    if _paid(result.records):
        files.append(text_file(dated_name("Kambala_{date}.txt", day), rms_limits_text(result.records)))

    mcx = mcx_release_lines(result.records, today)
    if mcx:
        files.append(text_file(
            dated_name("MCCLCOLL_46365_{date}.010", day),
            render_upload(MCX_UPLOAD_HEADER, mcx, trailing_newline=True),
        ))
    nse = nse_release_lines(result.records, result.ledger, today)
    if nse:
        files.append(text_file(dated_name("90221_ALLOC_{date}.T0150", day), render_upload(NSE_UPLOAD_HEADER, nse)))

    files.append(worksheet_file(
        dated_name("payout_processed_data_{date}.xlsx", day),
        "Payout Data",
        PAYOUT_COLUMNS,
        [r.to_dict() for r in result.records],
        summary=payout_summary(result.records, result.duplicates),
        status_key="status",
    ))
    return files
