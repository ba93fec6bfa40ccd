"""
Summary Aggregation

Dashboard totals are pure folds over a record set: counts per status, sums of
a numeric column (optionally restricted to some statuses) and counts of
nonzero values. Nothing here mutates its input.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Generic, Hashable, Iterable, Optional, Sequence, TypeVar

from .models import PayoutRecord, PayoutSegment, PayoutStatus, ReconResult, SegregationRecord, SegregationStatus

T = TypeVar("T")
R = TypeVar("R")


# -----------------------------
# Generic folds
# -----------------------------
def _value(record: Any, field: str) -> Any:
    if isinstance(record, dict):
        return record.get(field)
    return getattr(record, field)


def _plain(value: Any) -> Hashable:
    return getattr(value, "value", value)


def count_by(records: Iterable[Any], field: str) -> Dict[Hashable, int]:
    counts: Dict[Hashable, int] = {}
    for r in records:
        key = _plain(_value(r, field))
        counts[key] = counts.get(key, 0) + 1
    return counts


def sum_field(
    records: Iterable[Any],
    field: str,
    where: Optional[Callable[[Any], bool]] = None,
) -> float:
    total = 0.0
    for r in records:
        if where is not None and not where(r):
            continue
        total += float(_value(r, field) or 0)
    return total


def count_nonzero(records: Iterable[Any], field: str) -> int:
    return sum(1 for r in records if (_value(r, field) or 0) != 0)


class Memo(Generic[T, R]):
    """
    Caches fn(records) until a different record set object is passed in.

    Record sets are immutable tuples that get replaced wholesale, so identity
    is enough to know whether the totals are stale.
    """

    def __init__(self, fn: Callable[[T], R]):
        self.fn = fn
        self._source: Optional[T] = None
        self._value: Optional[R] = None
        self.calls = 0

    def __call__(self, records: T) -> R:
        if self._source is not records or self.calls == 0:
            self._value = self.fn(records)
            self._source = records
            self.calls += 1
        return self._value


# -----------------------------
# Domain summaries
# -----------------------------
def allocation_summary(result: ReconResult) -> Dict[str, Any]:
    out = result.summary.to_dict()
    out["pro_fund_adjustment"] = result.pro_fund.to_dict()
    out["action_counts"] = count_by(result.records, "action")
    out["synthesized_count"] = sum(1 for r in result.records if r.synthesized)
    return out


def intersegment_summary(records: Sequence[Any]) -> Dict[str, Any]:
    if records and not hasattr(records[0], "collateral"):
        return {
            "record_count": len(records),
            "total_99_margin": sum_field(records, "margin99"),
            "total_1_margin": sum_field(records, "margin1"),
            "total_available_margin": sum_field(records, "available_margin"),
        }
    return {
        "record_count": len(records),
        "total_99_margin": sum_field(records, "margin99"),
        "total_1_margin": sum_field(records, "margin1"),
        "total_collateral": sum_field(records, "collateral"),
        "total_available_margin": sum_field(records, "available_margin"),
        "kambala_nse_nonzero": count_nonzero(records, "kambala_nse"),
    }


def _is_paid(record: PayoutRecord) -> bool:
    return record.status.is_ok


def payout_summary(records: Sequence[PayoutRecord], duplicates: Sequence[str] = ()) -> Dict[str, Any]:
    """
    Paid totals cover OK and JV CODE OK rows only. A merged CM+FO request
    counts toward the FO total.
    """
    def paid_in(*segments: PayoutSegment) -> Callable[[PayoutRecord], bool]:
        return lambda r: _is_paid(r) and r.segment in segments

    status_counts = count_by(records, "status")
    return {
        "total_records": len(records),
        "total_payout": sum_field(records, "pay", _is_paid),
        "fo_total": sum_field(records, "pay", paid_in(PayoutSegment.FO, PayoutSegment.CM_FO)),
        "cm_total": sum_field(records, "pay", paid_in(PayoutSegment.CM)),
        "mcx_total": sum_field(records, "pay", paid_in(PayoutSegment.MCX)),
        "total_ledger_balance": sum_field(records, "ledger_balance"),
        "total_nse_span": sum_field(records, "nse_span"),
        "ok_count": sum(1 for r in records if _is_paid(r)),
        "not_ok_count": sum(1 for r in records if not _is_paid(r)),
        "status_counts": {s.value: status_counts.get(s.value, 0) for s in PayoutStatus},
        "duplicate_count": len(duplicates),
        "duplicates": list(duplicates),
    }


SEGREGATION_TOTALS = (
    "equities", "derivative", "currencies", "mcx", "ledger_total", "epay",
    "nse_cm", "nse_fo", "mcx_file", "remaining", "cm_diff", "fo_diff", "mcx_diff",
    "allocation_total",
)


def segregation_summary(records: Sequence[SegregationRecord]) -> Dict[str, Any]:
    out: Dict[str, Any] = {"record_count": len(records)}
    for field in SEGREGATION_TOTALS:
        out[f"total_{field}"] = sum_field(records, field)
    out["ok_count"] = sum(1 for r in records if r.status is SegregationStatus.OK)
    out["not_ok_count"] = sum(1 for r in records if r.status is SegregationStatus.NOT_OK)
    out["remaining_nonzero"] = count_nonzero(records, "remaining")
    return out
