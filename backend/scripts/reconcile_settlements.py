"""CLI helper that settles due races and confirms pending settlement transactions."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Dict, List, Optional

from ratrace_core import RaceStore, SettlementDriver, Settings
from ratrace_core.chain import Web3RaceContract
from ratrace_core.errors import ConfigurationError, RaceError


def _format_summary(summary: Dict[str, object]) -> str:
    lines = [
        f"Started races checked: {summary.get('checked', 0)}",
        f"  finished: {summary.get('finished', 0)}",
        f"  pending confirmation: {summary.get('pending', 0)}",
        f"  failed: {summary.get('failed', 0)}",
        f"Finished races with results recovered: {summary.get('stats_recovered', 0)}",
    ]
    errors = summary.get("errors", [])
    if isinstance(errors, list):
        for item in errors:
            lines.append(f"  - {item}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--verbose", "-v", action="store_true", help="log every step")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings.validate()
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    driver = SettlementDriver(
        store=RaceStore(data_dir=settings.data_dir),
        settings=settings,
        contract=Web3RaceContract.from_settings(settings),
    )
    try:
        summary = driver.reconcile()
    except RaceError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(_format_summary(summary))
    return 1 if summary.get("errors") or summary.get("failed") else 0


if __name__ == "__main__":
    raise SystemExit(main())
