"""
Allocation reconciliation engine.

One generic pipeline serves every allocation domain (MCX commodity, NSE F&O,
NSE CM). A DomainConfig supplies the sign convention, classification labels,
skip rule, epsilon, fixed deduction and rounding constant, so the domains only
differ in data, not in code:

    ledger  --+
              +--> reconcile() --> ReconResult --> outputs / summary
    feed   ---+
    margin ---+

Per-client records are immutable. An inline ledger edit or a new unallocated
fund figure produces a fresh ReconResult; the net difference and pro-fund
adjustment are always refolded over the whole record set.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from .adapters import AllocationFeedAdapter, CodeListAdapter, MarginRegistry, ledger_adapter_for
from .aggregation import aggregate_allocations, field_equals
from .errors import MissingInputError
from .models import (
    AllocationAggregate,
    AllocationSummary,
    DifferenceBasis,
    Direction,
    InputFile,
    LedgerRecord,
    ProFundAdjustment,
    ReconciledRecord,
    ReconResult,
    SkipRule,
)
from .settings import DEFAULT_SETTINGS, LAKH, DomainConfig, ReconSettings

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers: inputs
# -----------------------------
def require_inputs(domain: str, **files: Optional[InputFile]) -> None:
    """Fail before any parsing when a required upload is missing."""
    for name, source in files.items():
        if source is None or not source.data:
            raise MissingInputError(name.replace("_", " "), domain)


def domain_config(domain_id: str, settings: ReconSettings = DEFAULT_SETTINGS) -> DomainConfig:
    try:
        return settings.domains[domain_id]
    except KeyError:
        raise LookupError(f"Unknown domain: {domain_id}") from None


# -----------------------------
# Per-record computation
# -----------------------------
def classify(config: DomainConfig, difference: float) -> Direction:
    """Upgrade iff the stored difference is positive, in the domain's own sign convention."""
    if config.three_way and abs(difference) <= config.epsilon:
        return Direction.NIL
    return Direction.UPGRADE if difference > 0 else Direction.DOWNGRADE


def build_record(
    config: DomainConfig,
    client_key: str,
    ledger_amount: float,
    allocated_amount: float,
    margin: Optional[float],
    client_name: str = "",
    synthesized: bool = False,
    overridden: bool = False,
) -> ReconciledRecord:
    gap = round(ledger_amount - allocated_amount, 2) + 0.0
    if config.difference_basis is DifferenceBasis.LEDGER_MINUS_ALLOCATION:
        difference = gap
    else:
        difference = -gap + 0.0
    direction = classify(config, difference)
    if direction is Direction.NIL:
        action = config.nil_label
    else:
        action = config.label_for(direction is Direction.UPGRADE)

    m = margin or 0.0
    threshold = ledger_amount * config.threshold_fraction
    return ReconciledRecord(
        client_key=client_key,
        client_name=client_name,
        ledger_amount=ledger_amount,
        allocated_amount=allocated_amount,
        difference=difference,
        direction=direction,
        action=action,
        margin=margin,
        ninety_percent_ledger=threshold,
        short_value=threshold - m,
        margin_utilisation=(m / ledger_amount * 100) if ledger_amount > 0 else 0.0,
        synthesized=synthesized,
        overridden=overridden,
    )


def is_skipped(config: DomainConfig, record: ReconciledRecord) -> bool:
    """All-zero records carry no action and are dropped, subject to the margin rule."""
    if abs(record.difference) > config.epsilon:
        return False
    if record.ledger_amount != 0 or record.allocated_amount != 0:
        return False
    if config.skip_rule is SkipRule.MARGIN_ABSENT:
        return record.margin is None
    return not (record.margin is not None and record.margin > 0)


def contributes(config: DomainConfig, record: ReconciledRecord) -> bool:
    return abs(record.difference) > config.epsilon


# -----------------------------
# Aggregate pro-fund
# -----------------------------
def fold_summary(
    config: DomainConfig,
    records: Sequence[ReconciledRecord],
    pro_account_total: float,
    unallocated_fund: float,
    margin_base_lakhs: Optional[float] = None,
) -> Tuple[ProFundAdjustment, AllocationSummary]:
    upgrade_total = downgrade_total = 0.0
    counts = {Direction.UPGRADE: 0, Direction.DOWNGRADE: 0, Direction.NIL: 0}
    negative_short = 0.0

    for r in records:
        counts[r.direction] += 1
        if r.short_value < 0:
            negative_short += abs(r.short_value)
        if not contributes(config, r):
            continue
        if r.direction is Direction.UPGRADE:
            upgrade_total += abs(r.difference)
        elif r.direction is Direction.DOWNGRADE:
            downgrade_total += abs(r.difference)

    net = upgrade_total - downgrade_total
    amount = round(
        (pro_account_total - config.fixed_deduction)
        - net
        + unallocated_fund * LAKH
        - config.rounding_constant,
        2,
    )
    upgrade = pro_account_total < amount
    pro_fund = ProFundAdjustment(
        pro_account_total=pro_account_total,
        fixed_deduction=config.fixed_deduction,
        net_difference=net,
        unallocated_fund=unallocated_fund,
        rounding_constant=config.rounding_constant,
        amount=amount,
        direction=Direction.UPGRADE if upgrade else Direction.DOWNGRADE,
        action=config.label_for(upgrade),
    )
    summary = AllocationSummary(
        upgrade_total=upgrade_total,
        downgrade_total=downgrade_total,
        net_difference=net,
        pro_fund=pro_account_total,
        final_amount=amount,
        negative_short_total=negative_short,
        exposure_ratio=exposure_ratio(config, negative_short, amount, margin_base_lakhs),
        upgrade_count=counts[Direction.UPGRADE],
        downgrade_count=counts[Direction.DOWNGRADE],
        nil_count=counts[Direction.NIL],
        record_count=len(records),
    )
    return pro_fund, summary


def exposure_ratio(
    config: DomainConfig,
    negative_short_total: float,
    final_amount: float,
    margin_base_lakhs: Optional[float] = None,
) -> float:
    """Shortfall as a percentage of the pro-fund base."""
    if margin_base_lakhs:
        return negative_short_total / (margin_base_lakhs * LAKH) * 100
    base = final_amount + config.fixed_deduction
    if base == 0:
        return 0.0
    return -(negative_short_total / base) * 100


def assemble(
    config: DomainConfig,
    records: Tuple[ReconciledRecord, ...],
    pro_account_total: float,
    unallocated_fund: float = 0.0,
    margin_base_lakhs: Optional[float] = None,
) -> ReconResult:
    pro_fund, summary = fold_summary(config, records, pro_account_total, unallocated_fund, margin_base_lakhs)
    return ReconResult(
        domain=config.id,
        records=records,
        pro_account_total=pro_account_total,
        unallocated_fund=unallocated_fund,
        pro_fund=pro_fund,
        summary=summary,
        margin_base_lakhs=margin_base_lakhs,
    )


# -----------------------------
# Reconciliation (union join): ledger vs allocation
# -----------------------------
def reconcile(
    config: DomainConfig,
    ledger: Mapping[str, LedgerRecord],
    allocation: AllocationAggregate,
    margins: Optional[Mapping[str, float]] = None,
    exclusions: Iterable[str] = (),
    unallocated_fund: float = 0.0,
    margin_base_lakhs: Optional[float] = None,
) -> ReconResult:
    """
    Join ledger and allocation by client key.

    Every ledger client is considered, then every allocation-only client with
    a positive allocation gets a zero-ledger record. Excluded keys emit
    nothing. Override keys take their fixed ledger amount.
    """
    excluded = set(exclusions)
    margins = margins if margins is not None else {}
    records = []

    def emit(key: str, ledger_amount: float, name: str, synthesized: bool) -> None:
        overridden = key in config.overrides
        if overridden:
            ledger_amount = config.overrides[key]
        record = build_record(
            config,
            key,
            ledger_amount,
            allocation.amount_for(key),
            margins.get(key),
            client_name=name,
            synthesized=synthesized,
            overridden=overridden,
        )
        if not is_skipped(config, record):
            records.append(record)

    for key, entry in ledger.items():
        if key in excluded:
            continue
        emit(key, entry.amount, entry.name, synthesized=False)

    for key, allocated in allocation.amounts.items():
        if key in ledger or key in excluded or allocated <= 0:
            continue
        emit(key, 0.0, "", synthesized=True)

    result = assemble(config, tuple(records), allocation.pro_total, unallocated_fund, margin_base_lakhs)
    logger.info(
        "%s: %d records, net %.2f, pro-fund %.2f %s",
        config.name,
        len(records),
        result.summary.net_difference,
        result.pro_fund.amount,
        result.pro_fund.action,
    )
    return result


# -----------------------------
# Interactive recompute
# -----------------------------
def apply_ledger_edit(
    result: ReconResult,
    client_key: str,
    ledger_amount: float,
    settings: ReconSettings = DEFAULT_SETTINGS,
) -> ReconResult:
    """New result with one client's ledger amount replaced and every total refolded."""
    config = domain_config(result.domain, settings)
    existing = result.record_for(client_key)
    if existing is None:
        raise LookupError(f"{client_key} is not in the {config.name} result")

    updated = build_record(
        config,
        client_key,
        float(ledger_amount),
        existing.allocated_amount,
        existing.margin,
        client_name=existing.client_name,
        synthesized=existing.synthesized,
    )
    records = tuple(updated if r.client_key == client_key else r for r in result.records)
    return assemble(config, records, result.pro_account_total, result.unallocated_fund, result.margin_base_lakhs)


def apply_unallocated_fund(
    result: ReconResult,
    unallocated_fund: float,
    settings: ReconSettings = DEFAULT_SETTINGS,
) -> ReconResult:
    config = domain_config(result.domain, settings)
    return assemble(config, result.records, result.pro_account_total, float(unallocated_fund),
                    result.margin_base_lakhs)


def apply_margin_base(
    result: ReconResult,
    margin_base_lakhs: Optional[float],
    settings: ReconSettings = DEFAULT_SETTINGS,
) -> ReconResult:
    config = domain_config(result.domain, settings)
    return assemble(config, result.records, result.pro_account_total, result.unallocated_fund,
                    margin_base_lakhs)


# -----------------------------
# Domain pipeline
# -----------------------------
def process_allocation_domain(
    domain_id: str,
    risk: Optional[InputFile],
    feed: Optional[InputFile],
    margin: Optional[InputFile] = None,
    exclusions: Optional[InputFile] = None,
    unallocated_fund: float = 0.0,
    margin_base_lakhs: Optional[float] = None,
    settings: ReconSettings = DEFAULT_SETTINGS,
) -> ReconResult:
    """Parse one domain's uploads and reconcile them."""
    config = domain_config(domain_id, settings)
    required: Dict[str, Optional[InputFile]] = {"risk_ledger": risk, "allocation_feed": feed}
    if config.uses_margin:
        required["margin_file"] = margin
    if config.uses_exclusions:
        required["exclusion_list"] = exclusions
    require_inputs(config.name, **required)

    ledger = ledger_adapter_for(config, settings).parse(risk)
    feed_adapter = AllocationFeedAdapter(
        min_fields=config.feed_min_fields,
        exact_width=config.feed_exact_width,
        with_clearing_type=bool(config.feed_clearing_type),
        settings=settings,
    )
    rows = feed_adapter.parse(feed)
    row_filter = field_equals("Clrtype", config.feed_clearing_type) if config.feed_clearing_type else None
    allocation = aggregate_allocations(rows, config.feed_segment, row_filter=row_filter)

    margins = MarginRegistry(settings).parse(domain_id, margin) if config.uses_margin else None
    excluded = CodeListAdapter(settings=settings).parse(exclusions) if config.uses_exclusions else []
    if excluded:
        logger.info("%s: %d excluded clients", config.name, len(excluded))

    return reconcile(config, ledger, allocation, margins, excluded, unallocated_fund, margin_base_lakhs)
