"""
Command line entry point for billing batch jobs.

Usage:
    python -m billing_batch nightly --client-id AVII --as-of 2025-10-11 \
        --database-url postgresql://billing@localhost/billing
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import date
from pathlib import Path

from billing_config import get_client_config
from billing_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from billing_kernel.logging_config import configure_logging

DEFAULT_DB_URL = "sqlite:///billing.db"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m billing_batch",
        description="Billing batch jobs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    nightly = sub.add_parser("nightly", help="Recalculate penalties and rebuild cached read models.")
    nightly.add_argument("--client-id", required=True, help="Client identifier, e.g. AVII.")
    nightly.add_argument(
        "--as-of",
        type=date.fromisoformat,
        default=None,
        help="As-of date (YYYY-MM-DD). Default: today in the client's timezone.",
    )
    nightly.add_argument(
        "--database-url",
        default=os.environ.get("BILLING_DATABASE_URL", DEFAULT_DB_URL),
        help="SQLAlchemy database URL (default: $BILLING_DATABASE_URL or sqlite:///billing.db).",
    )
    nightly.add_argument(
        "--fiscal-year",
        type=int,
        action="append",
        dest="fiscal_years",
        help="Fiscal year to rebuild; repeatable. Default: every year with periods.",
    )
    nightly.add_argument("--config-dir", type=Path, default=None, help="Override configuration sets directory.")
    nightly.add_argument("--create-tables", action="store_true", help="Create missing tables first.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging()

    from billing_batch.nightly import NightlyMaintenance

    config = get_client_config(args.client_id, args.config_dir)
    init_engine_from_url(args.database_url)
    if args.create_tables:
        create_tables()

    report = NightlyMaintenance(get_session_factory(), config).run(args.as_of, args.fiscal_years)
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.is_clean else 1


if __name__ == "__main__":
    sys.exit(main())
