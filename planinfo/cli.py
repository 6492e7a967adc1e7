#!/usr/bin/env python3
"""
Validate the info string of a software upgrade plan.

Usage:
    validate-upgrade-info '{"binaries": {"linux/amd64": "https://..."}}' --daemon-name simd
    validate-upgrade-info https://example.com/upgrade-info.json --basic-only
"""

import argparse
import logging
import sys
from typing import List, Optional

from .config import ConfigurationError, VerifierConfig, load_config
from .plan_info import PlanInfoError, validate_upgrade_info


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="validate-upgrade-info",
        description="Validate upgrade plan info and the binaries it points to",
    )
    parser.add_argument("info", help="Plan info JSON, or a URL that serves it")
    parser.add_argument("--daemon-name",
                        help="Name of the executable being upgraded "
                             "(default: $DAEMON_NAME or the running executable's name)")
    parser.add_argument("--no-validate", action="store_true", help="Skip validation of the upgrade info")
    parser.add_argument("--basic-only", action="store_true", default=None,
                        help="Only run local checks, do not download binaries")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--workers", type=int, help="Number of parallel binary downloads")
    parser.add_argument("--timeout", type=float, help="Read timeout in seconds for each download")
    parser.add_argument("--download-timeout", type=float,
                        help="Total time limit in seconds for each download")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for upgrade info validation."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config) if args.config else VerifierConfig()
        config = config.with_overrides(
            daemon_name=args.daemon_name,
            basic_only=args.basic_only,
            max_workers=args.workers,
            read_timeout=args.timeout,
            download_timeout=args.download_timeout,
            log_level="DEBUG" if args.verbose else None,
        )
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(level=getattr(logging, config.log_level),
                        format='%(asctime)s [%(levelname)s] %(message)s')

    if args.no_validate:
        validate_upgrade_info(args.info, no_validate=True)
        return 0

    if not config.basic_only and not config.daemon_name:
        print("ERROR: no daemon name given, use --daemon-name or set DAEMON_NAME", file=sys.stderr)
        return 1

    try:
        plan = validate_upgrade_info(args.info, config=config)
    except PlanInfoError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(plan.to_json(indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
