from rms_recon.aggregation import aggregate_allocations, field_equals, segment_contains


def make_row(client, amount, segment="CO", acctype="C", clrtype="MCXCCL"):
    return {"Clicode": client, "Segments": segment, "Acctype": acctype, "Allocated": str(amount), "Clrtype": clrtype}


def test_repeated_keys_are_summed():
    agg = aggregate_allocations([make_row("A1", 100), make_row("A1", 250.5), make_row("B2", 10)], "CO")
    assert agg.amounts == {"A1": 350.5, "B2": 10.0}


def test_order_does_not_change_totals():
    rows = [make_row("A1", 1), make_row("B2", 2), make_row("A1", 3)]
    assert aggregate_allocations(rows, "CO").amounts == aggregate_allocations(rows[::-1], "CO").amounts


def test_pro_rows_set_pro_total_and_stay_out_of_map():
    agg = aggregate_allocations([make_row("", 5_000_000, acctype="P"), make_row("A1", 7)], "CO")
    assert agg.pro_total == 5_000_000
    assert agg.pro_rows == 1
    assert "" not in agg.amounts


def test_last_pro_row_wins():
    agg = aggregate_allocations([make_row("", 1, acctype="P"), make_row("", 2, acctype="P")], "CO")
    assert agg.pro_total == 2
    assert agg.pro_rows == 2


def test_blank_keys_are_excluded():
    agg = aggregate_allocations([make_row("  ", 40), make_row("A1", 1)], "CO")
    assert agg.amounts == {"A1": 1.0}


def test_segment_and_row_filters():
    rows = [
        make_row("A1", 10),
        make_row("A1", 99, segment="FO"),
        make_row("A1", 5, clrtype="OTHER"),
    ]
    agg = aggregate_allocations(rows, "CO", row_filter=field_equals("Clrtype", "MCXCCL"))
    assert agg.amounts == {"A1": 10.0}
    assert agg.amount_for("missing") == 0.0


def test_segment_contains_predicate():
    rows = [make_row("X1", 3, segment="CD"), make_row("X1", 4, segment="CDS"), make_row("X1", 9, segment="FO")]
    agg = aggregate_allocations(rows, "CD", predicate=segment_contains("CD"))
    assert agg.amounts == {"X1": 7.0}
