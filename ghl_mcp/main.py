"""
Monitor entry point.

Runs every check for one configured location and prints the summary:

    ghl-monitor --location main [--config path] [--json] [--dry-run]

Exit codes: 0 on success, 1 when the run fails, 2 when configuration cannot
be loaded.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from .actions import GhlActions
from .config import config_path_from_env, get_location, load_config
from .errors import ConfigError
from .monitor import CHECKS, Report, run_all_checks
from .observability import setup_logger

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


async def run_location(config: dict, alias: str = "main") -> Report:
    actions = GhlActions.from_config(config, alias)
    try:
        return await run_all_checks(actions)
    finally:
        await actions.close()


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ghl-monitor", description="Run GHL CRM monitoring checks.")
    parser.add_argument("--location", default="main", help="location alias from the config file")
    parser.add_argument("--config", type=Path, default=None, help="path to the locations YAML file")
    parser.add_argument("--json", action="store_true", help="also print the raw check results")
    parser.add_argument("--dry-run", action="store_true", help="show what would run without calling the API")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    config_path = args.config or config_path_from_env()

    if args.dry_run:
        print(f"🔍 Dry run — would run all checks for location: {args.location}")
        print(f"Checks: {', '.join(name for name, _ in CHECKS)}")
        print(f"Config path: {config_path}")
        return EXIT_OK

    try:
        config = load_config(config_path)
        setup_logger(config)
        get_location(config, args.location)
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        report = asyncio.run(run_location(config, args.location))
    except KeyboardInterrupt:
        print("\nMonitor run interrupted", file=sys.stderr)
        return EXIT_FAILURE
    except Exception as exc:
        print(f"Monitor error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    print(report.summary)
    if args.json:
        print("\n--- Raw Results ---")
        print(json.dumps(report.to_dict()["checks"], indent=2, ensure_ascii=False))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
