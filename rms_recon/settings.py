from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Tuple

from .models import DifferenceBasis, SkipRule, UploadAmount

# NOTE:
# - Domain literals (member codes, deductions, override lists) are exchange
#   contracts and are not meant to be changed at runtime.
# - Environment overrides only cover where files go and how input is scanned.
#
# Suggested env overrides:
#   RMS_OUTPUT_DIR
#   RMS_TIMEZONE          (default Asia/Kolkata)
#   RMS_HEADER_SCAN_ROWS  (int)
#   RMS_LOG_LEVEL         (INFO, DEBUG, ...)
#   RMS_PORT              (default 8000)

# Header lines of the two exchange upload layouts.
MCX_UPLOAD_HEADER = (
    "Current Date,Segment Indicator,Clearing Member Code,Trading Member Code,CP Code,"
    "Client Code,Account Type,CASH & CASH EQUIVALENTS AMOUNT,Filler1,Filler2,Filler3,"
    "Filler4,Filler5,Filler6,ACTION"
)
NSE_UPLOAD_HEADER = (
    "CURRENTDATE,SEGMENT,CMCODE,TMCODE,CPCODE,CLICODE,ACCOUNTTYPE,AMOUNT,"
    "FILLER1,FILLER2,FILLER3,FILLER4,FILLER5,FILLER6,ACTION"
)

LIMITS_FIRST_LINE = "RMS Limits"

# Unallocated fund is entered in lakhs.
LAKH = 100_000.0


@dataclass(frozen=True)
class MemberCodes:
    """Routing constants printed on every upload line of a segment."""
    segment: str
    cm_code: str
    tm_code: str


MCX_CO = MemberCodes(segment="CO", cm_code="8090", tm_code="46365")
NSE_FO = MemberCodes(segment="FO", cm_code="M50302", tm_code="90221")
NSE_CM = MemberCodes(segment="CM", cm_code="M50302", tm_code="90221")
# Evening intersegment routes the MCX leg through the NSE member codes.
NSE_ROUTED_CO = MemberCodes(segment="CO", cm_code="M50302", tm_code="90221")


@dataclass(frozen=True)
class DomainConfig:
    """Reconciliation rules for one allocation domain."""
    id: str
    name: str
    codes: MemberCodes

    # Ledger column matching: each alternative is a tuple of substrings that
    # must all appear in the header cell.
    balance_column: Tuple[Tuple[str, ...], ...] = ()
    # Fixed risk sheet layout (header row, key col, name col, balance col).
    # When set, marker based header discovery is not used.
    fixed_layout: Tuple[int, int, int, int] | None = None
    # Risk sheets store payables as negatives; most domains negate and clamp.
    absolute_ledger: bool = False

    difference_basis: DifferenceBasis = DifferenceBasis.LEDGER_MINUS_ALLOCATION
    epsilon: float = 0.0
    three_way: bool = False
    upgrade_label: str = "U"
    downgrade_label: str = "D"
    nil_label: str = "-"
    skip_rule: SkipRule = SkipRule.NO_POSITIVE_MARGIN

    # Allocation feed filter
    feed_segment: str = ""
    feed_clearing_type: str = ""
    feed_min_fields: int = 7
    feed_exact_width: bool = False

    fixed_deduction: float = 0.0
    rounding_constant: float = 0.0
    overrides: Dict[str, float] = field(default_factory=dict)
    uses_exclusions: bool = False
    uses_margin: bool = True
    threshold_fraction: float = 0.9

    upload_amount: UploadAmount = UploadAmount.DIFFERENCE
    upload_header: str = NSE_UPLOAD_HEADER
    upload_trailing_newline: bool = False
    file_stem: str = ""
    file_suffix: str = ""

    def label_for(self, upgrade: bool | None) -> str:
        if upgrade is None:
            return self.nil_label
        return self.upgrade_label if upgrade else self.downgrade_label


@dataclass(frozen=True)
class ReconSettings:
    # Where the CLI writes generated files.
    output_dir: str = os.environ.get("RMS_OUTPUT_DIR", os.path.join(os.getcwd(), "_output"))

    # Trading day clock; filenames and upload lines carry this date.
    timezone: str = os.environ.get("RMS_TIMEZONE", "Asia/Kolkata")

    # How many leading rows are searched for a header row.
    header_scan_rows: int = int(os.environ.get("RMS_HEADER_SCAN_ROWS", "50"))

    log_level: str = os.environ.get("RMS_LOG_LEVEL", "INFO")
    port: int = int(os.environ.get("RMS_PORT", "8000"))

    domains: Dict[str, DomainConfig] = field(default_factory=lambda: {
        "mcx": DomainConfig(
            id="mcx",
            name="MCX Commodity",
            codes=MCX_CO,
            balance_column=(("mcx", "balance"),),
            difference_basis=DifferenceBasis.LEDGER_MINUS_ALLOCATION,
            epsilon=0.01,
            upgrade_label="A",
            downgrade_label="D",
            skip_rule=SkipRule.NO_POSITIVE_MARGIN,
            feed_segment="CO",
            feed_clearing_type="MCXCCL",
            fixed_deduction=3_010_000.0,
            rounding_constant=1_000.0,
            overrides={"K05": 50_000.0, "G10": 50_000.0, "SKY34100": 50_000.0},
            upload_amount=UploadAmount.DIFFERENCE,
            upload_header=MCX_UPLOAD_HEADER,
            file_stem="MCCLCOLL_46365_{date}",
            file_suffix=".001",
        ),
        "nse_fo": DomainConfig(
            id="nse_fo",
            name="NSE F&O",
            codes=NSE_FO,
            balance_column=(("nse-f&o",), ("nse-fo",)),
            difference_basis=DifferenceBasis.LEDGER_MINUS_ALLOCATION,
            epsilon=0.0,
            skip_rule=SkipRule.NO_POSITIVE_MARGIN,
            feed_segment="FO",
            fixed_deduction=2_500_000.0,
            rounding_constant=1_000.0,
            upload_amount=UploadAmount.LEDGER,
            file_stem="nse_fo_output_{date}",
            file_suffix=".csv",
        ),
        "nse_cm": DomainConfig(
            id="nse_cm",
            name="NSE CM",
            codes=NSE_CM,
            fixed_layout=(2, 1, 0, 4),
            absolute_ledger=True,
            difference_basis=DifferenceBasis.ALLOCATION_MINUS_LEDGER,
            epsilon=0.0,
            three_way=True,
            skip_rule=SkipRule.MARGIN_ABSENT,
            feed_segment="CM",
            feed_exact_width=True,
            uses_exclusions=True,
            uses_margin=False,
            upload_amount=UploadAmount.DIFFERENCE,
            file_stem="nse_cm_output_{date}",
            file_suffix=".csv",
        ),
    })


DEFAULT_SETTINGS = ReconSettings()
