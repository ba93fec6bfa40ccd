"""
Reconciliation Data Models

Core data structures shared by every reconciliation domain:
- Ledger side: LedgerRecord (one per client, parsed from the risk sheet)
- Exchange side: AllocationAggregate (per-client allocated sums plus the
  proprietary account total)
- Result side: ReconciledRecord, ProFundAdjustment and OutputRecord

Records are immutable. Interactive edits produce a new result through the
engine's recompute functions instead of mutating anything in place.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


# =============================================================================
# Enums
# =============================================================================

class Direction(str, Enum):
    """Which way a client's allocation has to move"""
    UPGRADE = "upgrade"       # stored difference is positive
    DOWNGRADE = "downgrade"   # stored difference is zero or negative
    NIL = "nil"               # balanced (3-way domains only)


class DifferenceBasis(str, Enum):
    """Sign convention of the stored Difference"""
    LEDGER_MINUS_ALLOCATION = "ledger_minus_allocation"
    ALLOCATION_MINUS_LEDGER = "allocation_minus_ledger"


class SkipRule(str, Enum):
    """When an all-zero record is dropped from the emitted set"""
    NO_POSITIVE_MARGIN = "no_positive_margin"   # margin missing or <= 0
    MARGIN_ABSENT = "margin_absent"             # no margin row at all


class UploadAmount(str, Enum):
    """Which figure a client line of the upload file carries"""
    DIFFERENCE = "difference"
    LEDGER = "ledger"


class AccountType(str, Enum):
    CLIENT = "C"
    PRO = "P"


class PayoutSegment(str, Enum):
    MCX = "MCX"
    CM = "CM"
    FO = "FO"
    CM_FO = "CM+FO"


class PayoutStatus(str, Enum):
    OK = "OK"
    NOT_OK = "Not OK"
    JV_OK = "JV CODE OK"
    JV_NOT_OK = "JV CODE Not OK"

    @property
    def is_ok(self) -> bool:
        return self in (PayoutStatus.OK, PayoutStatus.JV_OK)

    def toggled(self) -> "PayoutStatus":
        return {
            PayoutStatus.OK: PayoutStatus.NOT_OK,
            PayoutStatus.NOT_OK: PayoutStatus.OK,
            PayoutStatus.JV_OK: PayoutStatus.JV_NOT_OK,
            PayoutStatus.JV_NOT_OK: PayoutStatus.JV_OK,
        }[self]


class SegregationStatus(str, Enum):
    OK = "OK"
    NOT_OK = "Not OK"


# =============================================================================
# Inputs
# =============================================================================

SPREADSHEET_SUFFIXES = (".xlsx", ".xls")


@dataclass(frozen=True)
class InputFile:
    """One uploaded file: its original name and raw bytes."""
    name: str
    data: bytes

    @property
    def suffix(self) -> str:
        return Path(self.name).suffix.lower()

    @property
    def lower_name(self) -> str:
        return self.name.lower()

    @property
    def is_spreadsheet(self) -> bool:
        return self.suffix in SPREADSHEET_SUFFIXES

    @classmethod
    def from_path(cls, path: Path | str) -> "InputFile":
        p = Path(path)
        return cls(name=p.name, data=p.read_bytes())


@dataclass(frozen=True)
class LedgerRecord:
    """Per-client balance from the risk ledger, already sign-normalised."""
    client_key: str
    amount: float
    name: str = ""


@dataclass
class AllocationAggregate:
    """Per-client allocated sums for one segment plus the pro-account total."""
    segment: str
    amounts: Dict[str, float] = field(default_factory=dict)
    pro_total: float = 0.0
    pro_rows: int = 0

    def amount_for(self, client_key: str) -> float:
        return self.amounts.get(client_key, 0.0)


# =============================================================================
# Allocation reconciliation results
# =============================================================================

@dataclass(frozen=True)
class ReconciledRecord:
    """One client after the ledger/allocation join."""
    client_key: str
    ledger_amount: float
    allocated_amount: float
    difference: float                 # sign follows the domain's DifferenceBasis
    direction: Direction
    action: str                       # domain label: A/U, D or "-"
    client_name: str = ""
    margin: Optional[float] = None    # None when the margin feed has no row
    ninety_percent_ledger: float = 0.0
    short_value: float = 0.0
    margin_utilisation: float = 0.0   # margin as a percentage of ledger
    synthesized: bool = False         # allocation-only client
    overridden: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_key": self.client_key,
            "client_name": self.client_name,
            "ledger_amount": round(self.ledger_amount, 2),
            "allocated_amount": round(self.allocated_amount, 2),
            "difference": round(self.difference, 2),
            "direction": self.direction.value,
            "action": self.action,
            "margin": round(self.margin, 2) if self.margin is not None else None,
            "ninety_percent_ledger": round(self.ninety_percent_ledger, 2),
            "short_value": round(self.short_value, 2),
            "margin_utilisation": round(self.margin_utilisation, 2),
            "synthesized": self.synthesized,
            "overridden": self.overridden,
        }


@dataclass(frozen=True)
class ProFundAdjustment:
    """The single pro-account line of an upload file."""
    pro_account_total: float
    fixed_deduction: float
    net_difference: float
    unallocated_fund: float          # in lakhs, as entered
    rounding_constant: float
    amount: float                    # signed adjustment
    direction: Direction
    action: str

    @property
    def final_pro_fund(self) -> float:
        return self.pro_account_total - self.fixed_deduction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pro_account_total": round(self.pro_account_total, 2),
            "final_pro_fund": round(self.final_pro_fund, 2),
            "fixed_deduction": self.fixed_deduction,
            "net_difference": round(self.net_difference, 2),
            "unallocated_fund": self.unallocated_fund,
            "rounding_constant": self.rounding_constant,
            "amount": round(self.amount, 2),
            "direction": self.direction.value,
            "action": self.action,
        }


@dataclass(frozen=True)
class AllocationSummary:
    upgrade_total: float
    downgrade_total: float
    net_difference: float
    pro_fund: float
    final_amount: float
    negative_short_total: float
    exposure_ratio: float
    upgrade_count: int
    downgrade_count: int
    nil_count: int
    record_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upgrade_total": round(self.upgrade_total, 2),
            "downgrade_total": round(self.downgrade_total, 2),
            "net_difference": round(self.net_difference, 2),
            "pro_fund": round(self.pro_fund, 2),
            "final_amount": round(self.final_amount, 2),
            "negative_short_total": round(self.negative_short_total, 2),
            "exposure_ratio": round(self.exposure_ratio, 2),
            "upgrade_count": self.upgrade_count,
            "downgrade_count": self.downgrade_count,
            "nil_count": self.nil_count,
            "record_count": self.record_count,
        }


@dataclass(frozen=True)
class ReconResult:
    """Full output of one allocation reconciliation pass."""
    domain: str
    records: Tuple[ReconciledRecord, ...]
    pro_account_total: float
    unallocated_fund: float
    pro_fund: ProFundAdjustment
    summary: AllocationSummary
    margin_base_lakhs: Optional[float] = None

    def record_for(self, client_key: str) -> Optional[ReconciledRecord]:
        for r in self.records:
            if r.client_key == client_key:
                return r
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "records": [r.to_dict() for r in self.records],
            "pro_fund": self.pro_fund.to_dict(),
            "summary": self.summary.to_dict(),
            "unallocated_fund": self.unallocated_fund,
        }


# =============================================================================
# Output records
# =============================================================================

@dataclass(frozen=True)
class OutputRecord:
    """One positional line of an exchange upload file."""
    current_date: str
    segment: str
    cm_code: str
    tm_code: str
    client_key: str
    account_type: AccountType
    amount: str
    action: str
    cp_code: str = ""

    def fields(self) -> List[str]:
        return [
            self.current_date,
            self.segment,
            self.cm_code,
            self.tm_code,
            self.cp_code,
            self.client_key,
            self.account_type.value,
            self.amount,
            "", "", "", "", "", "",
            self.action,
        ]


@dataclass(frozen=True)
class GeneratedFile:
    """A rendered output file ready for download or writing to disk."""
    file_name: str
    content: bytes
    media_type: str = "text/plain"


# =============================================================================
# Intersegment
# =============================================================================

@dataclass(frozen=True)
class IntersegmentRecord:
    """Morning MCX to NSE movement for one entity."""
    entity: str
    cash: float
    payin: float
    uncleared_cash: float
    margin_used: float
    collateral: float
    available_margin: float
    available_check: float
    total: float
    profile: str
    margin99: int
    margin1: int
    margin90: int
    nse_allocated: float
    nse_amount: float
    mcx_amount: float
    kambala_nse: float
    kambala_mcx: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "cash": self.cash,
            "payin": self.payin,
            "uncleared_cash": self.uncleared_cash,
            "margin_used": self.margin_used,
            "collateral": self.collateral,
            "available_margin": self.available_margin,
            "available_check": self.available_check,
            "total": self.total,
            "profile": self.profile,
            "margin99": self.margin99,
            "margin1": self.margin1,
            "margin90": self.margin90,
            "nse_allocated": self.nse_allocated,
            "nse_amount": self.nse_amount,
            "mcx_amount": self.mcx_amount,
            "kambala_nse": self.kambala_nse,
            "kambala_mcx": self.kambala_mcx,
        }


@dataclass(frozen=True)
class EveningRecord:
    """Evening NSE to MCX release for one entity."""
    entity: str
    available_margin: float
    margin99: int
    margin1: int
    uncleared_cash: float = 0.0
    margin_used: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "available_margin": self.available_margin,
            "margin99": self.margin99,
            "margin1": self.margin1,
            "uncleared_cash": self.uncleared_cash,
            "margin_used": self.margin_used,
        }


@dataclass(frozen=True)
class IntersegmentResult:
    session: str                                   # "morning" or "evening"
    records: Tuple[Any, ...]
    warnings: Tuple[Any, ...] = ()
    missing_codes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session,
            "records": [r.to_dict() for r in self.records],
            "warnings": [w.to_dict() for w in self.warnings],
            "missing_codes": list(self.missing_codes),
        }


# =============================================================================
# Payout
# =============================================================================

@dataclass(frozen=True)
class PayoutEntry:
    """One payout request row after the CM/FO merge."""
    ucc: str
    client_name: str
    pay: float
    segment: PayoutSegment
    auto_payable: float = 0.0
    web_request: float = 0.0
    web_login: str = ""


@dataclass(frozen=True)
class PayoutLedger:
    ucc: str
    mcx: float = 0.0
    nse_cm: float = 0.0
    nse_fo: float = 0.0
    cds: float = 0.0

    @property
    def nse_total(self) -> float:
        return self.nse_cm + self.nse_fo + self.cds


@dataclass(frozen=True)
class PayoutRecord:
    ucc: str
    client_name: str
    segment: PayoutSegment
    pay: float
    ledger_balance: float
    margin: float
    available: float
    difference: float
    status: PayoutStatus
    nse_span: float = 0.0
    auto_payable: float = 0.0
    web_request: float = 0.0
    web_login: str = ""
    jv_code: bool = False
    manual_status: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ucc": self.ucc,
            "client_name": self.client_name,
            "segment": self.segment.value,
            "pay": self.pay,
            "ledger_balance": round(self.ledger_balance, 2),
            "margin": round(self.margin, 2),
            "nse_span": round(self.nse_span, 2),
            "available": round(self.available, 2),
            "difference": round(self.difference, 2),
            "status": self.status.value,
            "auto_payable": self.auto_payable,
            "web_request": self.web_request,
            "web_login": self.web_login,
            "jv_code": self.jv_code,
            "manual_status": self.manual_status,
        }


@dataclass(frozen=True)
class PayoutResult:
    records: Tuple[PayoutRecord, ...]
    ledger: Dict[str, PayoutLedger]
    margins: Dict[str, float]
    spans: Dict[str, float]
    jv_codes: FrozenSet[str]
    duplicates: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records": [r.to_dict() for r in self.records],
            "duplicates": list(self.duplicates),
        }


# =============================================================================
# Segregation
# =============================================================================

@dataclass(frozen=True)
class SegregationLedger:
    ucc: str
    client_name: str = ""
    equities: float = 0.0
    derivative: float = 0.0
    currencies: float = 0.0
    mcx: float = 0.0
    epay: float = 0.0

    @property
    def total(self) -> float:
        return self.equities + self.derivative + self.currencies + self.mcx


@dataclass(frozen=True)
class SegregationRecord:
    ucc: str
    client_name: str
    equities: float
    derivative: float
    currencies: float
    mcx: float
    ledger_total: float
    epay: float
    nse_cm: float
    nse_fo: float
    mcx_file: float
    remaining: float
    cm_diff: float
    fo_diff: float
    mcx_diff: float
    allocation_total: float
    status: SegregationStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ucc": self.ucc,
            "client_name": self.client_name,
            "equities": round(self.equities, 2),
            "derivative": round(self.derivative, 2),
            "currencies": round(self.currencies, 2),
            "mcx": round(self.mcx, 2),
            "ledger_total": round(self.ledger_total, 2),
            "epay": round(self.epay, 2),
            "nse_cm": round(self.nse_cm, 2),
            "nse_fo": round(self.nse_fo, 2),
            "mcx_file": round(self.mcx_file, 2),
            "remaining": round(self.remaining, 2),
            "cm_diff": round(self.cm_diff, 2),
            "fo_diff": round(self.fo_diff, 2),
            "mcx_diff": round(self.mcx_diff, 2),
            "allocation_total": round(self.allocation_total, 2),
            "status": self.status.value,
        }
