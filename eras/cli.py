"""
Legacy access sweep runner

Runs one of the scheduled sweeps and prints its summary as JSON, for
schedulers that prefer a process over an HTTP call.

Usage:
    eras-sweep inactivity
    eras-sweep reminders --log-level DEBUG
"""

from __future__ import annotations

import argparse
import json
import sys

from dotenv import load_dotenv

from eras.infrastructure.database import init_database
from eras.observability.logging import get_logger, set_log_level

logger = get_logger(__name__)

SWEEPS = ("inactivity", "reminders")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="eras-sweep",
        description="Run a legacy access sweep once and print the summary",
    )
    parser.add_argument("sweep", choices=SWEEPS, help="Which sweep to run")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override ERAS_LOG_LEVEL for this run (DEBUG, INFO, WARNING, ...)",
    )
    return parser


def run_sweep(name: str) -> dict:
    """Run a sweep against the configured database and return its summary."""
    from eras.legacy.service import get_legacy_access_service

    init_database()
    service = get_legacy_access_service()
    if name == "inactivity":
        summary = service.check_inactivity_triggers()
    else:
        summary = service.send_verification_reminders()
    return summary.model_dump()


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    if args.log_level:
        set_log_level(args.log_level)

    try:
        summary = run_sweep(args.sweep)
    except Exception as e:
        logger.exception("Sweep %s failed: %s", args.sweep, e)
        return 1

    print(json.dumps({"sweep": args.sweep, **summary}, indent=2))
    return 1 if summary.get("errors") else 0


if __name__ == "__main__":
    sys.exit(main())
