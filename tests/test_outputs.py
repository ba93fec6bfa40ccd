import io
from dataclasses import replace

from openpyxl import load_workbook

from rms_recon.engine import reconcile
from rms_recon.models import AllocationAggregate, LedgerRecord
from rms_recon.outputs import (
    HEADER_FILL,
    allocation_files,
    format_amount,
    format_fixed,
    limits_line,
    render_limits,
    render_upload,
    upload_records,
    worksheet_file,
)
from rms_recon.settings import DEFAULT_SETTINGS, MCX_UPLOAD_HEADER, NSE_UPLOAD_HEADER

from factories import DAY, DAY_STAMP, DAY_TEXT

MCX = DEFAULT_SETTINGS.domains["mcx"]
NSE_FO = DEFAULT_SETTINGS.domains["nse_fo"]


def make_result(config, ledger, allocated, pro_total=0.0, margins=None):
    return reconcile(
        config,
        {k: LedgerRecord(client_key=k, amount=v) for k, v in ledger.items()},
        AllocationAggregate(segment=config.feed_segment, amounts=dict(allocated), pro_total=pro_total),
        margins,
    )


def test_format_amount():
    assert format_amount(120000.5) == "120000.5"
    assert format_amount(3000.0) == "3000"
    assert format_amount(10.456) == "10.46"
    assert format_amount(-0.001) == "0"


def test_format_fixed():
    assert format_fixed(1234.5) == "1234.50"
    assert format_fixed(-0.001) == "0.00"


def test_pro_fund_line_is_first_with_absolute_amount():
    result = make_result(MCX, {"A100": 10000.0}, {"A100": 7000.0})
    result = replace(result, pro_fund=replace(result.pro_fund, amount=-120000.50, action="D"))
    lines = render_upload(MCX.upload_header, upload_records(result, MCX, DAY_TEXT)).split("\n")
    assert lines[0] == MCX_UPLOAD_HEADER
    assert lines[1] == f"{DAY_TEXT},CO,8090,46365,,,P,120000.5,,,,,,,D"
    assert lines[2] == f"{DAY_TEXT},CO,8090,46365,,A100,C,3000,,,,,,,A"


def test_every_upload_line_has_fifteen_fields():
    result = make_result(MCX, {"A": 1.5, "B": 0.0}, {"B": 20.0, "C": 3.0})
    text = render_upload(MCX.upload_header, upload_records(result, MCX, DAY_TEXT))
    for line in text.split("\n"):
        assert len(line.split(",")) == 15


def test_fo_client_lines_carry_ledger_amount():
    result = make_result(NSE_FO, {"F1": 900.0}, {"F1": 1000.0, "F2": 50.0})
    records = upload_records(result, NSE_FO, DAY_TEXT)
    by_key = {r.client_key: r for r in records}
    assert by_key["F1"].amount == "900"
    assert by_key["F1"].action == "D"
    assert by_key["F2"].amount == "0"


def test_zero_differences_are_not_uploaded():
    result = make_result(MCX, {"A": 100.0, "B": 5.0}, {"A": 100.0}, margins={"A": 1.0})
    keys = [r.client_key for r in upload_records(result, MCX, DAY_TEXT)]
    assert keys == ["", "B"]


def test_limits_lines():
    assert limits_line("E1", 500) == "E1" + "|" * 17 + "no" + "|" * 8 + "500"
    assert limits_line("E1", -500, segment="COM") == "E1||COM" + "|" * 15 + "no" + "|" * 8 + "-500"
    assert limits_line("U1", 250, segment="COM", amount_slot=4) == "U1||COM||250" + "|" * 13 + "no"


def test_render_limits_starts_with_title_and_has_no_trailing_newline():
    text = render_limits(["a", "b"])
    assert text == "RMS Limits\na\nb"


def test_allocation_files_names_and_content():
    result = make_result(MCX, {"A100": 10000.0}, {"A100": 7000.0}, pro_total=5_000_000)
    upload, worksheet = allocation_files(result, day=DAY)
    assert upload.file_name == f"MCCLCOLL_46365_{DAY_STAMP}.001"
    assert upload.content.decode().startswith(MCX_UPLOAD_HEADER + "\n")
    assert worksheet.file_name == f"mcx_reconciliation_{DAY_STAMP}.xlsx"

    wb = load_workbook(io.BytesIO(worksheet.content))
    assert wb.sheetnames == ["MCX Commodity", "Summary"]
    ws = wb["MCX Commodity"]
    assert ws["A1"].value == "Client Code"
    assert ws["A1"].fill.start_color.rgb.endswith(HEADER_FILL.start_color.rgb[-6:])
    assert ws["A2"].value == "A100"
    assert ws["E2"].value == 3000


def test_nse_fo_upload_uses_nse_header():
    result = make_result(NSE_FO, {"F1": 10.0}, {})
    upload, _ = allocation_files(result, day=DAY)
    assert upload.file_name == f"nse_fo_output_{DAY_STAMP}.csv"
    assert upload.content.decode().split("\n")[0] == NSE_UPLOAD_HEADER


def test_worksheet_status_fill():
    rows = [{"ucc": "A", "status": "OK"}, {"ucc": "B", "status": "Not OK"}]
    f = worksheet_file("x.xlsx", "Data/Check", [("UCC", "ucc"), ("Status", "status")], rows, status_key="status")
    ws = load_workbook(io.BytesIO(f.content))["Data-Check"]
    assert ws["B2"].fill.start_color.rgb.endswith("C6EFCE")
    assert ws["B3"].fill.start_color.rgb.endswith("FFC7CE")
