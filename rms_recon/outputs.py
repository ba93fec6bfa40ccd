"""
Output Encoding

Renders reconciled records into the files downstream systems consume:
- Exchange upload files: comma-joined positional lines under a literal header
- RMS Limits files: pipe-joined fixed-width lines under "RMS Limits"
- Worksheets: labelled xlsx tables for human download

Field counts, delimiters and header text are exchange contracts and must match
byte for byte.
"""
from __future__ import annotations

import io
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl import Workbook
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from .dates import content_date, dated_name
from .models import AccountType, GeneratedFile, OutputRecord, ReconResult, UploadAmount
from .settings import DEFAULT_SETTINGS, LIMITS_FIRST_LINE, DomainConfig, ReconSettings

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# RMS Limits layouts: the "no" flag always sits at field 17, the segment at 2.
LIMITS_SEGMENT_SLOT = 2
LIMITS_FLAG_SLOT = 17
KAMBALA_AMOUNT_SLOT = 25
PAYOUT_AMOUNT_SLOT = 4


# =============================================================================
# Style Constants
# =============================================================================

HEADER_FILL = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
HEADER_FONT = Font(bold=True, color="FFFFFF")

GREEN_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
RED_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")

THIN_BORDER = Border(
    left=Side(style='thin'),
    right=Side(style='thin'),
    top=Side(style='thin'),
    bottom=Side(style='thin')
)

AMOUNT_FORMAT = '#,##0.00'

OK_VALUES = {"OK", "JV CODE OK"}


def get_status_fill(status: str) -> Optional[PatternFill]:
    """Green for OK statuses, red for everything else, nothing for blanks"""
    if not status:
        return None
    return GREEN_FILL if status in OK_VALUES else RED_FILL


# =============================================================================
# Amount formatting
# =============================================================================

def format_amount(value: float) -> str:
    """Integer when whole, otherwise up to two decimals without trailing zeros."""
    text = f"{round(float(value), 2) + 0.0:.2f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-") else "0"


def format_fixed(value: float, places: int = 2) -> str:
    text = f"{float(value):.{places}f}"
    return text[1:] if text.startswith("-") and float(text) == 0 else text


# =============================================================================
# Contract A: exchange upload
# =============================================================================

def upload_line(record: OutputRecord) -> str:
    return ",".join(record.fields())


def render_upload(header: str, records: Iterable[OutputRecord], trailing_newline: bool = False) -> str:
    lines = [header] + [upload_line(r) for r in records]
    text = "\n".join(lines)
    return text + "\n" if trailing_newline else text


def pro_fund_record(result: ReconResult, config: DomainConfig, date_text: str) -> OutputRecord:
    return OutputRecord(
        current_date=date_text,
        segment=config.codes.segment,
        cm_code=config.codes.cm_code,
        tm_code=config.codes.tm_code,
        client_key="",
        account_type=AccountType.PRO,
        amount=format_amount(abs(result.pro_fund.amount)),
        action=result.pro_fund.action,
    )


def upload_records(result: ReconResult, config: DomainConfig, date_text: str) -> List[OutputRecord]:
    """
    The pro-fund line first, then one line per record whose difference
    exceeds the domain epsilon. Always derived from the current records.
    """
    out = [pro_fund_record(result, config, date_text)]
    for r in result.records:
        if abs(r.difference) <= config.epsilon:
            continue
        if config.upload_amount is UploadAmount.LEDGER:
            amount = r.ledger_amount
        else:
            amount = abs(r.difference)
        out.append(OutputRecord(
            current_date=date_text,
            segment=config.codes.segment,
            cm_code=config.codes.cm_code,
            tm_code=config.codes.tm_code,
            client_key=r.client_key,
            account_type=AccountType.CLIENT,
            amount=format_amount(amount),
            action=r.action,
        ))
    return out


def allocation_upload_file(
    result: ReconResult,
    settings: ReconSettings = DEFAULT_SETTINGS,
    day: Optional[date] = None,
) -> GeneratedFile:
    config = settings.domains[result.domain]
    records = upload_records(result, config, content_date(day))
    text = render_upload(config.upload_header, records, config.upload_trailing_newline)
    return text_file(dated_name(config.file_stem, day) + config.file_suffix, text)


# =============================================================================
# Contract B: RMS Limits
# =============================================================================

def limits_line(
    key: str,
    amount: int,
    segment: str = "",
    amount_slot: int = KAMBALA_AMOUNT_SLOT,
) -> str:
    fields = [""] * max(LIMITS_FLAG_SLOT, amount_slot) + [""]
    fields[0] = key
    fields[LIMITS_SEGMENT_SLOT] = segment
    fields[LIMITS_FLAG_SLOT] = "no"
    fields[amount_slot] = str(amount)
    return "|".join(fields)


def render_limits(lines: Iterable[str]) -> str:
    return "\n".join([LIMITS_FIRST_LINE, *lines])


def text_file(file_name: str, text: str) -> GeneratedFile:
    return GeneratedFile(file_name=file_name, content=text.encode("utf-8"), media_type="text/plain")


# =============================================================================
# Contract C: worksheets
# =============================================================================

# (column label, row dict key)
Column = Tuple[str, str]

ALLOCATION_COLUMNS: Sequence[Column] = (
    ("Client Code", "client_key"),
    ("Client Name", "client_name"),
    ("Ledger Amount", "ledger_amount"),
    ("Allocated Amount", "allocated_amount"),
    ("Difference", "difference"),
    ("Action", "action"),
    ("Margin", "margin"),
    ("90% Ledger", "ninety_percent_ledger"),
    ("Short Value", "short_value"),
    ("Margin Utilisation %", "margin_utilisation"),
)


def write_table_xlsx(
    output: io.BytesIO | Path,
    sheet_name: str,
    columns: Sequence[Column],
    rows: Sequence[Dict[str, Any]],
    summary: Optional[Dict[str, Any]] = None,
    status_key: Optional[str] = None,
) -> None:
    """
    Write one labelled table sheet, plus a Summary sheet when `summary` is given.
    Cells under `status_key` are filled green/red by status.
    """
    wb = Workbook()
    wb.remove(wb.active)

    _create_table_sheet(wb, sheet_name, columns, rows, status_key)
    if summary:
        _create_summary_sheet(wb, summary)

    if isinstance(output, io.BytesIO):
        wb.save(output)
        output.seek(0)
    else:
        wb.save(str(output))


def worksheet_file(
    file_name: str,
    sheet_name: str,
    columns: Sequence[Column],
    rows: Sequence[Dict[str, Any]],
    summary: Optional[Dict[str, Any]] = None,
    status_key: Optional[str] = None,
) -> GeneratedFile:
    buf = io.BytesIO()
    write_table_xlsx(buf, sheet_name, columns, rows, summary, status_key)
    return GeneratedFile(file_name=file_name, content=buf.getvalue(), media_type=XLSX_MEDIA_TYPE)


def allocation_worksheet(
    result: ReconResult,
    settings: ReconSettings = DEFAULT_SETTINGS,
    day: Optional[date] = None,
) -> GeneratedFile:
    config = settings.domains[result.domain]
    summary = dict(result.summary.to_dict())
    summary["pro_fund_amount"] = result.pro_fund.to_dict()["amount"]
    summary["pro_fund_action"] = result.pro_fund.action
    return worksheet_file(
        dated_name(f"{result.domain}_reconciliation_{{date}}.xlsx", day),
        config.name,
        ALLOCATION_COLUMNS,
        [r.to_dict() for r in result.records],
        summary=summary,
    )


def allocation_files(
    result: ReconResult,
    settings: ReconSettings = DEFAULT_SETTINGS,
    day: Optional[date] = None,
) -> List[GeneratedFile]:
    return [allocation_upload_file(result, settings, day), allocation_worksheet(result, settings, day)]


# =============================================================================
# Sheets
# =============================================================================

def _create_table_sheet(
    wb: Workbook,
    sheet_name: str,
    columns: Sequence[Column],
    rows: Sequence[Dict[str, Any]],
    status_key: Optional[str],
):
    # Excel caps sheet names at 31 characters and rejects "/".
    ws = wb.create_sheet(sheet_name.replace("/", "-")[:31])

    for col, (label, _) in enumerate(columns, 1):
        cell = ws.cell(row=1, column=col, value=label)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER

    for r, data in enumerate(rows, 2):
        for col, (_, key) in enumerate(columns, 1):
            value = data.get(key)
            cell = ws.cell(row=r, column=col, value=value)
            cell.border = THIN_BORDER
            if isinstance(value, float):
                cell.number_format = AMOUNT_FORMAT
            if key == status_key:
                fill = get_status_fill(str(value or ""))
                if fill is not None:
                    cell.fill = fill

    ws.freeze_panes = "A2"
    _auto_width(ws)


def _create_summary_sheet(wb: Workbook, summary: Dict[str, Any]):
    ws = wb.create_sheet("Summary")
    ws["A1"] = "Summary"
    ws["A1"].font = Font(bold=True, size=14)

    row = 3
    for label, value in summary.items():
        ws.cell(row=row, column=1, value=_label(label)).font = Font(bold=True)
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        elif isinstance(value, dict):
            value = ", ".join(f"{k}: {v}" for k, v in value.items())
        cell = ws.cell(row=row, column=2, value=value)
        if isinstance(value, float):
            cell.number_format = AMOUNT_FORMAT
        row += 1

    _auto_width(ws)


# =============================================================================
# Helpers
# =============================================================================

def _label(key: str) -> str:
    return key.replace("_", " ").title()


def _auto_width(ws):
    """Auto-adjust column widths"""
    for column in ws.columns:
        max_length = 0
        column_letter = get_column_letter(column[0].column)
        for cell in column:
            if cell.value is not None:
                max_length = max(max_length, len(str(cell.value)))
        ws.column_dimensions[column_letter].width = min(max_length + 2, 50)
