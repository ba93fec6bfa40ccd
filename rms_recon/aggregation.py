"""
Key-indexed aggregation of allocation feeds.

A feed may carry several segments in one file. Each segment is aggregated in
its own pass with its own predicate so every domain's filter stays readable:

    fo = aggregate_allocations(rows, "FO")
    cd = aggregate_allocations(rows, "CD", predicate=segment_contains("CD"))
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from .models import AllocationAggregate
from .tabular import RawRow, parse_amount

logger = logging.getLogger(__name__)

SegmentPredicate = Callable[[str], bool]
RowFilter = Callable[[RawRow], bool]

PRO_MARKER = "P"


def segment_equals(code: str) -> SegmentPredicate:
    return lambda value: value == code


def segment_contains(code: str) -> SegmentPredicate:
    return lambda value: code in value


def field_equals(field_name: str, expected: str) -> RowFilter:
    return lambda row: row.get(field_name, "").strip() == expected


def aggregate_allocations(
    rows: Iterable[RawRow],
    segment: str,
    predicate: Optional[SegmentPredicate] = None,
    row_filter: Optional[RowFilter] = None,
    key_field: str = "Clicode",
    segment_field: str = "Segments",
    account_field: str = "Acctype",
    amount_field: str = "Allocated",
) -> AllocationAggregate:
    """
    Sum the allocated amount per client for one segment.

    Rows whose account type is the proprietary marker set the pro total
    instead (last one wins) and never enter the per-client map. Rows with a
    blank client key are left out of the map.
    """
    predicate = predicate or segment_equals(segment)
    agg = AllocationAggregate(segment=segment)
    for row in rows:
        if row_filter is not None and not row_filter(row):
            continue
        if not predicate(row.get(segment_field, "").strip()):
            continue
        amount = parse_amount(row.get(amount_field))
        if row.get(account_field, "").strip() == PRO_MARKER:
            agg.pro_total = amount
            agg.pro_rows += 1
            continue
        key = row.get(key_field, "").strip()
        if not key:
            continue
        agg.amounts[key] = agg.amounts.get(key, 0.0) + amount

    if agg.pro_rows > 1:
        logger.warning("Segment %s: %d pro-account rows, keeping the last", segment, agg.pro_rows)
    logger.debug("Segment %s: %d clients, pro total %.2f", segment, len(agg.amounts), agg.pro_total)
    return agg
