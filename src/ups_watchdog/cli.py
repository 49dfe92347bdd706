from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from ups_watchdog import __version__
from ups_watchdog.logsink import CORE_TAG, setup_logging
from ups_watchdog.paths import default_config_path
from ups_watchdog.system.power import is_admin
from ups_watchdog.watchdog import PowerWatchdog


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="ups-watchdog")
    ap.add_argument("--version", action="version", version=__version__)

    sub = ap.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Check the UPS once and advance the shutdown countdown")
    run.add_argument("-c", "--config", default=None, help="local KEY=VALUE config file")
    run.add_argument("-v", "--verbose", action="store_true", help="also log to stderr")
    run.add_argument(
        "--no-root-check",
        action="store_true",
        help="skip the administrator check (for a harmless SHUTDOWN_COMMAND)",
    )

    return ap


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    if args.cmd == "run":
        log = setup_logging(CORE_TAG, args.verbose)
        if not args.no_root_check and not is_admin():
            log.error("CRITICAL ERROR: ups-watchdog must run as root/Administrator. Exiting.")
            sys.exit(1)

        wd = PowerWatchdog(
            config_path=Path(args.config) if args.config else default_config_path(),
            retag=lambda tag: setup_logging(tag, args.verbose),
        )
        code = asyncio.run(wd.run())
        sys.exit(code)
