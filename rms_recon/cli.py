from __future__ import annotations

import argparse
import logging
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, List, Optional

from .dates import trading_day
from .engine import process_allocation_domain
from .errors import ReconError
from .intersegment import evening_files, morning_files, process_evening, process_morning
from .models import GeneratedFile, InputFile
from .outputs import allocation_files
from .payout import payout_files, process_payout
from .segregation import process_segregation, segregation_files
from .settings import DEFAULT_SETTINGS, ReconSettings
from .summary import allocation_summary, intersegment_summary, payout_summary, segregation_summary

logger = logging.getLogger("rms_recon.cli")

ALLOCATION_DOMAINS = ("mcx", "nse_fo", "nse_cm")


def _input(path: Optional[str]) -> Optional[InputFile]:
    return InputFile.from_path(path) if path else None


def _inputs(paths: Iterable[str]) -> List[InputFile]:
    return [InputFile.from_path(p) for p in paths]


def _iso_date(text: str) -> date:
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{text}', expected YYYY-MM-DD")


def write_files(files: Iterable[GeneratedFile], out_dir: Path) -> List[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for f in files:
        path = out_dir / f.file_name
        path.write_bytes(f.content)
        logger.info("Wrote: %s", path)
        written.append(path)
    return written


def run_allocation(args, day: date, settings: ReconSettings) -> List[GeneratedFile]:
    result = process_allocation_domain(
        args.command,
        _input(args.risk),
        _input(args.feed),
        margin=_input(args.margin),
        exclusions=_input(args.exclusions),
        unallocated_fund=args.unallocated_fund,
        margin_base_lakhs=args.margin_base,
        settings=settings,
    )
    totals = allocation_summary(result)
    logger.info(
        "%s: %d records, net difference %.2f, pro fund %.2f (%s)",
        args.command, totals["record_count"], totals["net_difference"],
        totals["pro_fund_adjustment"]["amount"], totals["pro_fund_adjustment"]["action"],
    )
    return allocation_files(result, settings, day)


def run_morning(args, day: date, settings: ReconSettings) -> List[GeneratedFile]:
    result = process_morning(_input(args.kambala), _input(args.codes), _input(args.feed), day, settings)
    totals = intersegment_summary(result.records)
    logger.info("morning: %d records, 1%% margin total %.2f, %d warnings",
                totals["record_count"], totals["total_1_margin"], len(result.warnings))
    return morning_files(result, day)


def run_evening(args, day: date, settings: ReconSettings) -> List[GeneratedFile]:
    result = process_evening(_input(args.kambala), _input(args.codes), settings)
    totals = intersegment_summary(result.records)
    logger.info("evening: %d records, 1%% margin total %.2f", totals["record_count"], totals["total_1_margin"])
    return evening_files(result, day)


def run_payout(args, day: date, settings: ReconSettings) -> List[GeneratedFile]:
    result = process_payout(_inputs(args.files), settings)
    totals = payout_summary(result.records, result.duplicates)
    logger.info("payout: %d requests, %d OK, total payout %.2f",
                totals["total_records"], totals["ok_count"], totals["total_payout"])
    return payout_files(result, day)


def run_segregation(args, day: date, settings: ReconSettings) -> List[GeneratedFile]:
    records = process_segregation(_inputs(args.files))
    totals = segregation_summary(records)
    logger.info("segregation: %d clients, %d Not OK", totals["record_count"], totals["not_ok_count"])
    return segregation_files(records, day)


def build_parser(settings: ReconSettings = DEFAULT_SETTINGS) -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="rms_recon")
    ap.add_argument("--out", default=settings.output_dir, help="directory for generated files")
    ap.add_argument("--date", type=_iso_date, default=None, help="trading day (YYYY-MM-DD), default today")
    sub = ap.add_subparsers(dest="command", required=True)

    for domain in ALLOCATION_DOMAINS:
        p = sub.add_parser(domain, help=f"{settings.domains[domain].name} allocation reconciliation")
        p.add_argument("--risk", required=True, help="risk ledger spreadsheet")
        p.add_argument("--feed", required=True, help="exchange allocation feed")
        p.add_argument("--margin", help="margin file")
        p.add_argument("--exclusions", help="exclusion (NRI) code list")
        p.add_argument("--unallocated-fund", type=float, default=0.0, help="in lakhs")
        p.add_argument("--margin-base", type=float, default=None, help="pro fund base in lakhs")
        p.set_defaults(handler=run_allocation)

    p = sub.add_parser("morning", help="morning MCX to NSE intersegment")
    p.add_argument("--kambala", required=True)
    p.add_argument("--codes", required=True)
    p.add_argument("--feed", required=True, help="NSE allocation feed")
    p.set_defaults(handler=run_morning)

    p = sub.add_parser("evening", help="evening NSE to MCX intersegment")
    p.add_argument("--kambala", required=True)
    p.add_argument("--codes", required=True)
    p.set_defaults(handler=run_evening)

    p = sub.add_parser("payout", help="client payout checks")
    p.add_argument("files", nargs="+")
    p.set_defaults(handler=run_payout)

    p = sub.add_parser("segregation", help="segregation check")
    p.add_argument("files", nargs="+")
    p.set_defaults(handler=run_segregation)
    return ap


def main(argv: Optional[List[str]] = None, settings: ReconSettings = DEFAULT_SETTINGS) -> int:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser(settings).parse_args(argv)
    try:
        day = args.date or trading_day(settings)
        files = args.handler(args, day, settings)
    except ReconError as e:
        logger.error("%s", e)
        return 1
    except OSError as e:
        logger.error("Could not read input: %s", e)
        return 1
    write_files(files, Path(args.out))
    return 0


if __name__ == "__main__":
    sys.exit(main())
