#!/usr/bin/env python3
"""
Reconciliation Run Script

Runs the matching engine once against the configured records service.
Intended for cron / scheduled jobs.

Usage:
    python scripts/run_reconciliation.py --dry-run --from 2025-03-01 --to 2025-03-31
    python scripts/run_reconciliation.py --source bank_ledger --source gateway_transaction

Environment Variables:
    LEDGERLINK_STORE_URL - Records service base URL (required)
    LEDGERLINK_STORE_TOKEN - Bearer token for the records service
    LEDGERLINK_CONFIDENCE_THRESHOLD, LEDGERLINK_DATE_WINDOWS, ... - matching config
"""

import argparse
import asyncio
import json
import os
import sys
from typing import List, Optional

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ledgerlink.models.candidates import SourceKind  # noqa: E402
from ledgerlink.models.reconciliation import RunStatus  # noqa: E402
from ledgerlink.models.requests import ReconciliationRunRequest  # noqa: E402
from ledgerlink.services.config import load_config_from_env  # noqa: E402
from ledgerlink.services.errors import DateFormatError, LedgerlinkError  # noqa: E402
from ledgerlink.services.normalizer import parse_date  # noqa: E402
from ledgerlink.services.reconciliation_runner import ReconciliationRunner  # noqa: E402
from ledgerlink.services.store import HttpCandidateStore  # noqa: E402
from ledgerlink.state.run_history import RunHistory  # noqa: E402


def _date_arg(value: Optional[str]):
    if not value:
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise DateFormatError(value)
    return parsed


def build_request(args: argparse.Namespace) -> ReconciliationRunRequest:
    return ReconciliationRunRequest(
        dry_run=args.dry_run,
        sources=[SourceKind(source) for source in args.source or []],
        date_from=_date_arg(args.date_from),
        date_to=_date_arg(args.date_to),
        confidence_threshold=args.threshold,
        requester="scheduled-job",
    )


async def run_once(runner: ReconciliationRunner, request: ReconciliationRunRequest):
    """Run one pass and release the store connections afterwards."""
    async with runner.store:
        return await runner.run(request)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run one reconciliation pass")
    parser.add_argument("--dry-run", action="store_true", help="Report matches without writing")
    parser.add_argument(
        "--source",
        action="append",
        choices=[kind.value for kind in SourceKind],
        help="Restrict to these sources (repeatable)",
    )
    parser.add_argument("--from", dest="date_from", help="First target date (YYYY-MM-DD)")
    parser.add_argument("--to", dest="date_to", help="Last target date (YYYY-MM-DD)")
    parser.add_argument("--threshold", type=float, help="Confidence threshold override")
    parser.add_argument("--no-history", action="store_true", help="Do not record the run")
    args = parser.parse_args(argv)

    if not os.getenv("LEDGERLINK_STORE_URL"):
        print("Error: LEDGERLINK_STORE_URL is not set")
        return 2

    try:
        request = build_request(args)
    except (ValueError, DateFormatError) as exc:
        print(f"Error: {exc}")
        return 2

    try:
        runner = ReconciliationRunner(
            store=HttpCandidateStore(),
            config=load_config_from_env(),
            history=None if args.no_history else RunHistory(),
        )
        run = asyncio.run(run_once(runner, request))
    except LedgerlinkError as exc:
        print(json.dumps(exc.to_dict(), indent=2))
        return 1

    print(json.dumps(run.model_dump(mode="json"), indent=2))
    return 0 if run.status == RunStatus.SUCCEEDED else 1


if __name__ == "__main__":
    sys.exit(main())
