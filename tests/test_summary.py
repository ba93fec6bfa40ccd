from rms_recon.models import PayoutRecord, PayoutSegment, PayoutStatus, SegregationRecord, SegregationStatus
from rms_recon.summary import Memo, count_by, count_nonzero, payout_summary, segregation_summary, sum_field


def make_payout(ucc, segment, pay, status):
    return PayoutRecord(ucc=ucc, client_name="", segment=segment, pay=pay, ledger_balance=pay * 2,
                        margin=0.0, available=0.0, difference=pay, status=status)


def make_segregation(ucc, remaining=0.0, status=SegregationStatus.OK):
    return SegregationRecord(
        ucc=ucc, client_name="", equities=100.0, derivative=0.0, currencies=0.0, mcx=0.0,
        ledger_total=100.0, epay=0.0, nse_cm=100.0, nse_fo=0.0, mcx_file=0.0, remaining=remaining,
        cm_diff=0.0, fo_diff=0.0, mcx_diff=0.0, allocation_total=100.0, status=status,
    )


def test_generic_folds():
    rows = [{"k": "a", "v": 1.0}, {"k": "b", "v": 0}, {"k": "a", "v": 2.5}]
    assert count_by(rows, "k") == {"a": 2, "b": 1}
    assert sum_field(rows, "v") == 3.5
    assert sum_field(rows, "v", where=lambda r: r["k"] == "b") == 0
    assert count_nonzero(rows, "v") == 2


def test_count_by_uses_enum_values():
    records = [make_payout("A", PayoutSegment.MCX, 1, PayoutStatus.OK)]
    assert count_by(records, "status") == {"OK": 1}


def test_memo_recomputes_only_for_a_new_record_set():
    memo = Memo(len)
    records = (1, 2, 3)
    assert memo(records) == 3
    assert memo(records) == 3
    assert memo.calls == 1
    assert memo((1,)) == 1
    assert memo.calls == 2


def test_payout_summary_counts_paid_rows_only():
    records = [
        make_payout("A", PayoutSegment.MCX, 100.0, PayoutStatus.OK),
        make_payout("B", PayoutSegment.CM, 50.0, PayoutStatus.OK),
        make_payout("C", PayoutSegment.CM_FO, 70.0, PayoutStatus.JV_OK),
        make_payout("D", PayoutSegment.FO, 999.0, PayoutStatus.NOT_OK),
    ]
    s = payout_summary(records, ("C",))
    assert s["total_payout"] == 220.0
    assert s["mcx_total"] == 100.0
    assert s["cm_total"] == 50.0
    assert s["fo_total"] == 70.0
    assert s["ok_count"] == 3
    assert s["not_ok_count"] == 1
    assert s["status_counts"] == {"OK": 2, "Not OK": 1, "JV CODE OK": 1, "JV CODE Not OK": 0}
    assert s["duplicate_count"] == 1
    assert s["total_ledger_balance"] == 2438.0


def test_segregation_summary():
    records = [make_segregation("A"), make_segregation("B", remaining=5.0, status=SegregationStatus.NOT_OK)]
    s = segregation_summary(records)
    assert s["record_count"] == 2
    assert s["total_remaining"] == 5.0
    assert s["total_nse_cm"] == 200.0
    assert s["ok_count"] == 1
    assert s["not_ok_count"] == 1
    assert s["remaining_nonzero"] == 1
