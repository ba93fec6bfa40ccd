import pytest

from rms_recon.errors import FileReadError, HeaderNotFound
from rms_recon.models import InputFile
from rms_recon.tabular import (
    cell_text,
    decode_text,
    find_column,
    flip_and_clamp,
    locate_header,
    parse_amount,
    project_rows,
    read_grid,
    round_half_up,
    split_delimited,
    squash,
)

from factories import make_sheet


def test_parse_amount_strips_separators_and_symbols():
    assert parse_amount("1,234.50") == 1234.5
    assert parse_amount("₹ -500") == -500.0
    assert parse_amount(" 42 ") == 42.0


def test_parse_amount_unparsable_reads_zero():
    assert parse_amount("abc") == 0.0
    assert parse_amount("") == 0.0
    assert parse_amount(None) == 0.0
    assert parse_amount(float("nan")) == 0.0


def test_flip_and_clamp():
    assert flip_and_clamp(-10000.0) == 10000.0
    assert flip_and_clamp(250.0) == 0.0
    assert flip_and_clamp(0.0) == 0.0


def test_round_half_up_rounds_halves_toward_positive_infinity():
    assert round_half_up(2.5) == 3
    assert round_half_up(-2.5) == -2
    assert round_half_up(0.49) == 0
    assert round_half_up(1234.5) == 1235


def test_squash_removes_html_and_whitespace():
    assert squash("MCX<br> Balance") == "mcxbalance"
    assert squash("  Total MU (Rs) ") == "totalmu(rs)"


def test_cell_text_renders_integral_floats_without_decimal():
    assert cell_text(10.0) == "10"
    assert cell_text(10.25) == "10.25"
    assert cell_text(None) == ""
    assert cell_text(" A100 ") == "A100"


def test_split_delimited_detects_tab_and_strips_quotes():
    grid = split_delimited('\ufeff"Entity"\t"Cash"\n\nE1\t"1,000"\n')
    assert grid == [["Entity", "Cash"], ["E1", "1,000"]]


def test_split_delimited_prefers_comma_when_present():
    assert split_delimited("a,b\tc\n1,2\t3") == [["a", "b\tc"], ["1", "2\t3"]]


def test_split_delimited_keeps_each_row_width():
    grid = split_delimited("a,b,c\n1,2\nC1,CM,C,400,,,\n  \n3,NA,nan,6")
    assert grid == [["a", "b", "c"], ["1", "2"], ["C1", "CM", "C", "400", "", "", ""], ["3", "NA", "nan", "6"]]


def test_split_delimited_treats_quotes_as_text():
    assert split_delimited('x,"1,000",y', delimiter=",") == [["x", "1", "000", "y"]]
    assert split_delimited("", delimiter=",") == []


def test_decode_text_falls_back_for_non_utf8_bytes():
    assert decode_text("Client – Name".encode("cp1252")) == "Client – Name"


def test_locate_header_scans_for_marker():
    grid = [["Report"], [""], ["Sr", "Client Code", "Balance"], ["1", "A100", "5"]]
    assert locate_header(grid, ("UCC", "Client Code"), "risk.xlsx") == 2


def test_locate_header_raises_outside_window():
    grid = [["x"]] * 5 + [["UCC"]]
    with pytest.raises(HeaderNotFound) as exc:
        locate_header(grid, ("UCC",), "risk.xlsx", scan_rows=3)
    assert exc.value.file_name == "risk.xlsx"
    assert exc.value.scanned_rows == 3


def test_find_column_matches_all_parts_of_an_alternative():
    header = ["UCC", "NSE-F&O<br>Balance", "MCX  Balance"]
    assert find_column(header, (("mcx", "balance"),)) == 2
    assert find_column(header, (("nse-fo",), ("nse-f&o",))) == 1
    assert find_column(header, (("cds",),)) is None


def test_project_rows_skips_blank_and_short_rows():
    grid = [["UCC", "Name", "Bal"], ["A1", "Ann", "5"], ["", "", ""], ["B2"], ["C3", "Cy", "7"]]
    rows = list(project_rows(grid, 0, {"ucc": 0, "balance": 2}))
    assert [r["ucc"] for r in rows] == ["A1", "C3"]
    assert rows[1]["balance"] == "7"


def test_read_grid_spreadsheet_drops_blank_rows():
    source = make_sheet("risk.xlsx", [["UCC", "Balance"], [None, None], ["A100", -10000.0]])
    assert read_grid(source) == [["UCC", "Balance"], ["A100", "-10000"]]


def test_read_grid_text_file():
    source = InputFile(name="feed.csv", data=b"Clicode,Allocated\r\nA100,7000\r\n")
    assert read_grid(source) == [["Clicode", "Allocated"], ["A100", "7000"]]


def test_read_grid_corrupt_workbook_raises_file_read_error():
    with pytest.raises(FileReadError) as exc:
        read_grid(InputFile(name="risk.xlsx", data=b"not a workbook"))
    assert exc.value.file_name == "risk.xlsx"
