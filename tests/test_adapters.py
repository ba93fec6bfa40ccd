import pytest

from rms_recon.adapters import (
    AllocationFeedAdapter,
    ClientMarginAdapter,
    CodeListAdapter,
    FixedLayoutLedgerAdapter,
    MarginRegistry,
    Mg13SpanAdapter,
    MrgMarginAdapter,
    RiskLedgerAdapter,
    SearchResultsMarginAdapter,
    ledger_adapter_for,
)
from rms_recon.errors import MissingRequiredColumn, UnsupportedFileFormat
from rms_recon.settings import DEFAULT_SETTINGS

from factories import make_feed, make_mcx_ledger, make_mrg, make_sheet, make_text

MCX = DEFAULT_SETTINGS.domains["mcx"]
NSE_FO = DEFAULT_SETTINGS.domains["nse_fo"]
NSE_CM = DEFAULT_SETTINGS.domains["nse_cm"]


def test_risk_ledger_negates_and_clamps():
    source = make_mcx_ledger([("A100", "Asha", -10000), ("B200", "Bala", 500)])
    ledger = RiskLedgerAdapter(MCX).parse(source)
    assert ledger["A100"].amount == 10000.0
    assert ledger["A100"].name == "Asha"
    assert ledger["B200"].amount == 0.0


def test_risk_ledger_keeps_first_row_and_rejects_bad_keys():
    source = make_mcx_ledger([
        ("A100", "Asha", -100),
        ("A100", "Asha again", -999),
        ("#N/A", "", -5),
        ("undefined", "", -5),
    ])
    ledger = RiskLedgerAdapter(MCX).parse(source)
    assert list(ledger) == ["A100"]
    assert ledger["A100"].amount == 100.0


def test_risk_ledger_matches_nse_fo_balance_column():
    source = make_sheet("risk.xlsx", [
        ["Client Code", "Name", "MCX Balance", "NSE-F&O Balance"],
        ["F1", "Farah", -1, -2500],
    ])
    assert RiskLedgerAdapter(NSE_FO).parse(source)["F1"].amount == 2500.0


def test_risk_ledger_missing_balance_column():
    source = make_sheet("risk.xlsx", [["UCC", "Client Name"], ["A100", "Asha"]])
    with pytest.raises(MissingRequiredColumn) as exc:
        RiskLedgerAdapter(MCX).parse(source)
    assert exc.value.file_name == "risk.xlsx"


def test_risk_ledger_rejects_text_upload():
    with pytest.raises(UnsupportedFileFormat):
        RiskLedgerAdapter(MCX).parse(make_text("risk.csv", ["UCC,MCX Balance"]))


def test_fixed_layout_ledger_uses_absolute_balance():
    source = make_sheet("nse_cm_risk.xlsx", [
        ["NSE CM Risk"],
        ["As on", "19-10-2026"],
        ["Name", "Client", "Segment", "Limit", "Balance"],
        ["Chitra", "C1", "CM", 0, -1500.5],
        ["Dev", "D1", "CM", 0, 300],
        ["Dup", "C1", "CM", 0, 7],
    ])
    adapter = ledger_adapter_for(NSE_CM)
    assert isinstance(adapter, FixedLayoutLedgerAdapter)
    ledger = adapter.parse(source)
    assert ledger["C1"].amount == 1500.5
    assert ledger["C1"].name == "Chitra"
    assert ledger["D1"].amount == 300.0


def test_allocation_feed_keeps_join_columns():
    rows = AllocationFeedAdapter(with_clearing_type=True).parse(
        make_feed([("MCXCCL", "CO", "A100", "C", "7000")])
    )
    assert rows == [{"Clicode": "A100", "Segments": "CO", "Acctype": "C", "Allocated": "7000", "Clrtype": "MCXCCL"}]


def test_allocation_feed_missing_column():
    source = make_text("globe.csv", ["Clicode,Segments,Allocated", "A1,CO,5"])
    with pytest.raises(MissingRequiredColumn) as exc:
        AllocationFeedAdapter().parse(source)
    assert exc.value.column == "Acctype"


def test_allocation_feed_exact_width_drops_ragged_rows():
    source = make_text("cm.csv", [
        "Clicode,Segments,Acctype,Allocated,A,B,C",
        "C1,CM,C,100,,,",
        "C2,CM,C,200,,,,extra",
    ])
    rows = AllocationFeedAdapter(exact_width=True).parse(source)
    assert [r["Clicode"] for r in rows] == ["C1"]


def test_mrg_margin_reads_record_type_30():
    margins = MrgMarginAdapter().parse(make_mrg([("A100", 1234.5), ("B200", 0)]))
    assert margins == {"A100": 1234.5, "B200": 0.0}


def test_search_results_margin():
    source = make_sheet("SearchResults.xlsx", [
        ["Search Results"],
        ["Client Code", "Client Name", "Total MU (Rs)"],
        ["A100", "Asha", "2,500.00"],
    ])
    assert SearchResultsMarginAdapter().parse(source) == {"A100": 2500.0}


def test_client_margin_skips_summary_rows():
    source = make_text("ClientMargin_19102026.csv", [
        "Client Code,Client Name,Total Margin",
        "F1,Farah,900",
        "Total,,900",
        "All amounts in Rs.,,",
    ])
    assert ClientMarginAdapter().parse(source) == {"F1": 900.0}


def test_margin_registry_picks_parser_by_name():
    registry = MarginRegistry()
    client_margin = make_text("ClientMargin_19102026.csv", ["Client Code,Total Margin", "F1,10"])
    cc01 = make_text("CC01_19102026.csv", ["F1,x,x,x,x,55"])
    assert isinstance(registry.get_adapter("nse_fo", client_margin), ClientMarginAdapter)
    assert registry.parse("nse_fo", cc01) == {"F1": 55.0}
    assert isinstance(registry.get_adapter("mcx", make_mrg([])), MrgMarginAdapter)


def test_margin_registry_unsupported_format():
    with pytest.raises(UnsupportedFileFormat):
        MarginRegistry().parse("mcx", make_text("margin.pdf", ["%PDF"]))


def test_mg13_span_adds_two_fields():
    source = make_text("MG13_19102026.csv", ["H,F1,100,x,50,y", "short,row"])
    assert Mg13SpanAdapter().parse(source) == {"F1": 150.0}


def test_code_list_from_text_dedupes():
    source = make_text("codes.txt", ["E1", " E2 ", "", "E1"])
    assert CodeListAdapter().parse(source) == ["E1", "E2"]


def test_code_list_from_sheet_drops_header():
    source = make_sheet("nri.xlsx", [["Client Code"], ["N1"], ["N2"], ["N1"]])
    assert CodeListAdapter().parse(source) == ["N1", "N2"]


def test_code_list_without_header_keeps_every_row():
    source = make_sheet("nri.xlsx", [["N1"], ["N2"]])
    assert CodeListAdapter().parse(source) == ["N1", "N2"]
