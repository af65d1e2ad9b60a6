#!/usr/bin/env python3
"""
corecount -- Import inspector exports into the core-count ledger.

Usage:
  python main.py import
  python main.py import --input-dir /srv/inspections/input --rules rules.json
  python main.py import --product-codes product_codes.csv --license-terms license_terms.csv
  python main.py load-reference --license-terms license_terms.csv --product-codes product_codes.csv
  python main.py sessions --limit 20

Environment variables (all optional, see core/config.py):
  CORECOUNT_DATABASE_URL           SQLAlchemy URL of the ledger (default sqlite:///data/corecount.db)
  CORECOUNT_INPUT_DIR              Folder scanned for *.csv exports (default data/input)
  CORECOUNT_PROCESSED_DIR          Where imported files go (default data/processed)
  CORECOUNT_DISCARDS_DIR           Where rejected files go (default data/discards)
  CORECOUNT_ELIGIBILITY_RULES_FILE JSON eligibility rules; without it every flag is "unknown"
  CORECOUNT_LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default INFO)

Exit status: 0 on success, 1 if any file was discarded, 2 on a fatal error.
"""

import argparse
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as SettingsError

from core.config import Settings, get_settings
from core.errors import LedgerError
from ledger.eligibility import EligibilityCriteria, load_criteria
from ledger.intake import run_import
from ledger.reference import load_license_terms_csv, load_product_codes_csv, load_reference_data
from ledger.store import LedgerStore

logger = logging.getLogger("corecount.cli")


def _load_reference_files(store: LedgerStore, license_terms: Optional[str], product_codes: Optional[str]) -> None:
    """Terms first, so product codes find their real term instead of a placeholder."""
    if license_terms:
        inserted, updated = load_license_terms_csv(store, license_terms)
        print(f"  License terms: {inserted} inserted, {updated} updated.")
    if product_codes:
        inserted, updated = load_product_codes_csv(store, product_codes)
        print(f"  Product codes: {inserted} inserted, {updated} updated.")


def _criteria(settings: Settings, rules: Optional[str]) -> EligibilityCriteria:
    path = Path(rules) if rules else settings.eligibility_rules_file
    if path is None:
        logger.info("No eligibility rules configured; eligibility flags will be 'unknown'")
        return EligibilityCriteria()
    return load_criteria(path)


def cmd_import(args: argparse.Namespace, settings: Settings) -> int:
    overrides = {
        name: Path(value)
        for name, value in (
            ("input_dir", args.input_dir),
            ("processed_dir", args.processed_dir),
            ("discards_dir", args.discards_dir),
        )
        if value
    }
    folders = replace(settings.folders(), **overrides)
    criteria = _criteria(settings, args.rules)

    store = LedgerStore(args.database_url or settings.database_url)
    try:
        _load_reference_files(store, args.license_terms, args.product_codes)
        reference = load_reference_data(store, criteria)
        summary = run_import(store, folders, reference)
    finally:
        store.close()

    for outcome in summary.outcomes:
        line = f"  {outcome.status:<8} {outcome.source_file} -> {outcome.destination.parent.name}/"
        if outcome.error_message:
            line += f"  ({outcome.error_message})"
        print(line)
    print(
        f"\n  {len(summary.outcomes)} file(s): {summary.succeeded} success, "
        f"{summary.partial} partial, {summary.failed} failed."
    )
    return 1 if summary.failed else 0


def cmd_load_reference(args: argparse.Namespace, settings: Settings) -> int:
    if not args.license_terms and not args.product_codes:
        print("  [!] Nothing to load: pass --license-terms and/or --product-codes.")
        return 2
    store = LedgerStore(args.database_url or settings.database_url)
    try:
        _load_reference_files(store, args.license_terms, args.product_codes)
    finally:
        store.close()
    return 0


def cmd_sessions(args: argparse.Namespace, settings: Settings) -> int:
    store = LedgerStore(args.database_url or settings.database_url)
    try:
        sessions = store.list_import_sessions(limit=args.limit)
    finally:
        store.close()

    if not sessions:
        print("  No import sessions recorded.")
        return 0
    for s in sessions:
        line = (
            f"  {s.imported_at}  {s.status:<8} {s.source_file}  host={s.hostname}  "
            f"created={s.records_created} updated={s.records_updated} skipped={s.records_skipped}"
        )
        if s.error_message:
            line += f"  error={s.error_message}"
        print(line)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="corecount",
        description="Import inspector CSV exports into the core-count ledger.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py import
  python main.py import --rules eligibility_rules.json
  python main.py load-reference --license-terms terms.csv --product-codes codes.csv
  python main.py sessions --limit 20
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        help="SQLAlchemy URL of the ledger (default: CORECOUNT_DATABASE_URL or sqlite:///data/corecount.db)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        metavar="LEVEL",
        help="Logging level (default: CORECOUNT_LOG_LEVEL or INFO)",
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    p_import = commands.add_parser("import", help="Import every *.csv file waiting in the input folder")
    p_import.add_argument("--input-dir", metavar="DIR", help="Folder scanned for exports")
    p_import.add_argument("--processed-dir", metavar="DIR", help="Folder for imported files")
    p_import.add_argument("--discards-dir", metavar="DIR", help="Folder for rejected files")
    p_import.add_argument("--rules", metavar="PATH", help="JSON eligibility rules file")
    p_import.add_argument("--license-terms", metavar="PATH", help="Load license terms CSV before importing")
    p_import.add_argument("--product-codes", metavar="PATH", help="Load product codes CSV before importing")
    p_import.set_defaults(handler=cmd_import)

    p_reference = commands.add_parser("load-reference", help="Load license terms and/or product codes")
    p_reference.add_argument("--license-terms", metavar="PATH", help="CSV: license-terms-id,program-number,...")
    p_reference.add_argument("--product-codes", metavar="PATH", help="CSV: product-mnemo-id,product-code,...")
    p_reference.set_defaults(handler=cmd_load_reference)

    p_sessions = commands.add_parser("sessions", help="List recent import sessions, newest first")
    p_sessions.add_argument("--limit", type=int, default=20, metavar="N", help="Rows to show (default: 20)")
    p_sessions.set_defaults(handler=cmd_sessions)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except SettingsError as exc:
        print(f"  [!] Invalid configuration: {exc}")
        return 2

    logging.basicConfig(
        level=args.log_level or settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.handler(args, settings)
    except (LedgerError, ValueError) as exc:
        print(f"  [!] {exc}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
