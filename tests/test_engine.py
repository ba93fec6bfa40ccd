import pytest

from rms_recon.engine import (
    apply_ledger_edit,
    apply_margin_base,
    apply_unallocated_fund,
    build_record,
    domain_config,
    exposure_ratio,
    process_allocation_domain,
    reconcile,
    require_inputs,
)
from rms_recon.errors import MissingInputError
from rms_recon.models import AllocationAggregate, Direction, InputFile, LedgerRecord
from rms_recon.outputs import allocation_upload_file
from rms_recon.settings import DEFAULT_SETTINGS

from factories import DAY, make_feed, make_mcx_ledger, make_mrg, make_sheet, make_text

MCX = DEFAULT_SETTINGS.domains["mcx"]
NSE_FO = DEFAULT_SETTINGS.domains["nse_fo"]
NSE_CM = DEFAULT_SETTINGS.domains["nse_cm"]


def make_ledger(**amounts):
    return {k: LedgerRecord(client_key=k, amount=float(v)) for k, v in amounts.items()}


def make_allocation(segment="CO", pro_total=0.0, **amounts):
    return AllocationAggregate(segment=segment, amounts={k: float(v) for k, v in amounts.items()},
                               pro_total=pro_total)


# -----------------------------
# Concrete scenarios
# -----------------------------
def test_ledger_above_allocation_is_an_addition():
    result = reconcile(MCX, make_ledger(A100=10000), make_allocation(A100=7000))
    r = result.record_for("A100")
    assert (r.ledger_amount, r.allocated_amount, r.difference, r.action) == (10000, 7000, 3000, "A")
    assert r.direction is Direction.UPGRADE


def test_allocation_only_client_is_synthesized():
    result = reconcile(MCX, make_ledger(), make_allocation(B200=500))
    r = result.record_for("B200")
    assert (r.ledger_amount, r.allocated_amount, r.difference, r.action) == (0, 500, -500, "D")
    assert r.synthesized
    assert r.short_value == 0.0


def test_all_zero_client_without_margin_is_skipped():
    result = reconcile(MCX, make_ledger(C300=0), make_allocation(C300=0))
    assert result.record_for("C300") is None


def test_all_zero_client_with_positive_margin_is_kept():
    result = reconcile(MCX, make_ledger(C300=0), make_allocation(), margins={"C300": 10.0})
    assert result.record_for("C300") is not None


def test_nse_cm_skips_only_when_margin_row_absent():
    assert reconcile(NSE_CM, make_ledger(C1=0), make_allocation("CM")).record_for("C1") is None
    kept = reconcile(NSE_CM, make_ledger(C1=0), make_allocation("CM"), margins={"C1": 0.0})
    assert kept.record_for("C1") is not None


def test_synthesized_short_value_is_negative_margin():
    result = reconcile(MCX, make_ledger(), make_allocation(B200=500), margins={"B200": 80.0})
    assert result.record_for("B200").short_value == -80.0


# -----------------------------
# Classification and sign
# -----------------------------
def test_nse_cm_difference_is_allocation_minus_ledger():
    result = reconcile(NSE_CM, make_ledger(C1=100, C2=40), make_allocation("CM", C1=40, C2=100))
    down, up = result.record_for("C1"), result.record_for("C2")
    assert down.difference == -60 and down.action == "D" and down.direction is Direction.DOWNGRADE
    assert up.difference == 60 and up.action == "U" and up.direction is Direction.UPGRADE


def test_nse_cm_balanced_client_is_nil():
    result = reconcile(NSE_CM, make_ledger(C1=100), make_allocation("CM", C1=100))
    r = result.record_for("C1")
    assert r.direction is Direction.NIL
    assert r.action == "-"
    assert result.summary.nil_count == 1


def test_action_matches_the_total_it_feeds():
    ledger = make_ledger(A=500, B=100, C=70.25)
    allocation = make_allocation(A=100, B=400, C=70.25, D=30)
    result = reconcile(MCX, ledger, allocation, margins={"C": 1.0})
    up = sum(abs(r.difference) for r in result.records if r.action == "A" and abs(r.difference) > MCX.epsilon)
    down = sum(abs(r.difference) for r in result.records if r.action == "D" and abs(r.difference) > MCX.epsilon)
    assert result.summary.upgrade_total == pytest.approx(up)
    assert result.summary.downgrade_total == pytest.approx(down)
    for r in result.records:
        if r.action == "A":
            assert r.difference > 0


@pytest.mark.parametrize("domain", ["mcx", "nse_fo", "nse_cm"])
def test_action_sign_and_net_follow_stored_difference(domain):
    config = DEFAULT_SETTINGS.domains[domain]
    ledger = make_ledger(A=500, B=100, C=0, E=250)
    allocation = make_allocation(config.feed_segment, A=100, B=400, C=20, E=250)
    result = reconcile(config, ledger, allocation, margins={"C": 0.0, "E": 1.0})
    assert result.records
    for r in result.records:
        assert (r.direction is Direction.UPGRADE) == (r.difference > 0)
        assert (r.action == config.upgrade_label) == (r.difference > 0)
    expected = sum(r.difference for r in result.records if abs(r.difference) > config.epsilon)
    assert result.summary.net_difference == pytest.approx(expected)


def test_mcx_epsilon_keeps_cent_differences_out_of_totals():
    result = reconcile(MCX, make_ledger(A=100.01), make_allocation(A=100), margins={"A": 1.0})
    assert result.summary.net_difference == 0


# -----------------------------
# Join rules
# -----------------------------
def test_union_join_emits_each_key_once():
    ledger = make_ledger(A=10, B=20)
    allocation = make_allocation(B=5, C=7, D=0)
    result = reconcile(MCX, ledger, allocation)
    assert sorted(r.client_key for r in result.records) == ["A", "B", "C"]


def test_excluded_keys_emit_nothing():
    result = reconcile(NSE_CM, make_ledger(N1=10, C1=5), make_allocation("CM", N1=3, N2=9), exclusions=["N1", "N2"])
    assert [r.client_key for r in result.records] == ["C1"]


def test_override_replaces_ledger_amount():
    result = reconcile(MCX, make_ledger(K05=10), make_allocation(G10=20_000))
    assert result.record_for("K05").ledger_amount == 50_000
    assert result.record_for("K05").overridden
    g10 = result.record_for("G10")
    assert g10.ledger_amount == 50_000 and g10.difference == 30_000


def test_derived_margin_fields():
    result = reconcile(NSE_FO, make_ledger(F1=1000), make_allocation("FO", F1=1000), margins={"F1": 950.0})
    r = result.record_for("F1")
    assert r.ninety_percent_ledger == 900
    assert r.short_value == -50
    assert r.margin_utilisation == 95
    assert result.summary.negative_short_total == 50


# -----------------------------
# Pro-fund adjustment
# -----------------------------
def test_mcx_pro_fund_adjustment():
    ledger = make_ledger(A100=10000)
    allocation = make_allocation(pro_total=5_000_000, A100=7000, B200=500)
    result = reconcile(MCX, ledger, allocation)
    # (5,000,000 - 3,010,000) - (3000 - 500) + 0 - 1000
    assert result.pro_fund.amount == 1_986_500
    assert result.pro_fund.action == "D"
    assert result.pro_fund.final_pro_fund == 1_990_000


def test_pro_fund_upgrades_when_adjustment_exceeds_pro_total():
    # (100 - 0) - (-500) + 0 - 0
    result = reconcile(NSE_CM, make_ledger(C1=500), make_allocation("CM", pro_total=100))
    assert result.record_for("C1").difference == -500
    assert result.pro_fund.amount == 600
    assert result.pro_fund.action == "U"


def test_unallocated_fund_is_scaled_by_lakh():
    base = reconcile(NSE_FO, make_ledger(F1=10), make_allocation("FO", pro_total=3_000_000, F1=10))
    updated = apply_unallocated_fund(base, 1.5)
    assert updated.pro_fund.amount - base.pro_fund.amount == pytest.approx(150_000)
    assert updated.unallocated_fund == 1.5
    assert base.unallocated_fund == 0.0


def test_exposure_ratio_bases():
    assert exposure_ratio(NSE_FO, 50.0, 0.0, None) == pytest.approx(-(50 / 2_500_000) * 100)
    assert exposure_ratio(NSE_FO, 50_000.0, 0.0, 10.0) == pytest.approx(5.0)
    assert exposure_ratio(NSE_CM, 10.0, 0.0) == 0.0


def test_apply_margin_base_changes_only_the_ratio():
    result = reconcile(NSE_FO, make_ledger(F1=1000), make_allocation("FO", F1=1000), margins={"F1": 950.0})
    rebased = apply_margin_base(result, 1.0)
    assert rebased.summary.exposure_ratio == pytest.approx(50 / 100_000 * 100)
    assert rebased.pro_fund == result.pro_fund


# -----------------------------
# Recompute
# -----------------------------
def test_ledger_edit_matches_full_rerun():
    allocation = make_allocation(pro_total=4_000_000, A=100, B=300)
    edited = apply_ledger_edit(reconcile(MCX, make_ledger(A=500, B=200), allocation), "B", 900)
    rerun = reconcile(MCX, make_ledger(A=500, B=900), allocation)
    assert edited.records == rerun.records
    assert edited.pro_fund == rerun.pro_fund
    assert edited.summary == rerun.summary


def test_ledger_edit_order_does_not_matter():
    allocation = make_allocation(A=100, B=300)
    start = reconcile(MCX, make_ledger(A=500, B=200), allocation)
    one = apply_ledger_edit(apply_ledger_edit(start, "A", 1), "B", 2)
    two = apply_ledger_edit(apply_ledger_edit(start, "B", 2), "A", 1)
    assert one.summary == two.summary
    assert one.pro_fund == two.pro_fund


def test_ledger_edit_leaves_original_untouched():
    start = reconcile(MCX, make_ledger(A=500), make_allocation(A=100))
    apply_ledger_edit(start, "A", 100)
    assert start.record_for("A").ledger_amount == 500


def test_ledger_edit_unknown_client():
    start = reconcile(MCX, make_ledger(A=500), make_allocation())
    with pytest.raises(LookupError):
        apply_ledger_edit(start, "ZZZ", 1)


def test_build_record_rounds_gap_to_cents():
    r = build_record(NSE_FO, "F1", 100.004, 100.0, None)
    assert r.difference == 0.0
    assert r.direction is Direction.DOWNGRADE


# -----------------------------
# Pipeline
# -----------------------------
def make_mcx_uploads():
    return dict(
        risk=make_mcx_ledger([("A100", "Asha", -10000), ("C300", "Chetan", 0)]),
        feed=make_feed([
            ("MCXCCL", "CO", "", "P", 5_000_000),
            ("MCXCCL", "CO", "A100", "C", 7000),
            ("MCXCCL", "CO", "B200", "C", 500),
            ("OTHER", "CO", "B200", "C", 999),
            ("MCXCCL", "FO", "A100", "C", 999),
        ]),
        margin=make_mrg([("A100", 2000)]),
    )


def test_process_mcx_domain_end_to_end():
    result = process_allocation_domain("mcx", **make_mcx_uploads())
    assert [r.client_key for r in result.records] == ["A100", "B200"]
    assert result.record_for("A100").difference == 3000
    assert result.record_for("A100").margin == 2000
    assert result.record_for("B200").difference == -500
    assert result.pro_account_total == 5_000_000


def test_pipeline_is_idempotent():
    uploads = make_mcx_uploads()
    first = process_allocation_domain("mcx", **uploads)
    second = process_allocation_domain("mcx", **uploads)
    assert first == second
    assert allocation_upload_file(first, day=DAY).content == allocation_upload_file(second, day=DAY).content


def test_process_nse_cm_uses_exclusions():
    risk = make_sheet("nse_cm.xlsx", [
        ["NSE CM"],
        ["Date", "19-10-2026"],
        ["Name", "Client", "", "", "Balance"],
        ["Chitra", "C1", "", "", -1000],
        ["Nri", "N1", "", "", -500],
    ])
    feed = make_text("cm.csv", [
        "Clicode,Segments,Acctype,Allocated,A,B,C",
        "C1,CM,C,400,,,",
        "N1,CM,C,100,,,",
        ",CM,P,90000,,,",
    ])
    exclusions = make_sheet("nri.xlsx", [["Client Code"], ["N1"]])
    result = process_allocation_domain("nse_cm", risk, feed, exclusions=exclusions)
    assert [r.client_key for r in result.records] == ["C1"]
    assert result.record_for("C1").difference == -600
    assert result.pro_fund.amount == 90000 + 600


def test_missing_margin_fails_before_parsing():
    uploads = make_mcx_uploads()
    uploads["margin"] = None
    with pytest.raises(MissingInputError) as exc:
        process_allocation_domain("mcx", **uploads)
    assert exc.value.input_name == "margin file"


def test_require_inputs_treats_empty_upload_as_missing():
    with pytest.raises(MissingInputError):
        require_inputs("MCX", risk_ledger=InputFile(name="risk.xlsx", data=b""))


def test_unknown_domain():
    with pytest.raises(LookupError):
        domain_config("bse")
