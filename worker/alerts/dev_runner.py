#!/usr/bin/env python3
"""
dev_runner.py -- Local harness for the Alert Worker.

Runs one alert pass against the configured database and providers, the
same way the scheduled Lambda does, and prints the run summary.

Environment Variables:
    APP_ENV             - "local" skips SSM resolution (default: "local")
    DATABASE_URL        - PostgreSQL DSN (required)
    ANTHROPIC_API_KEY   - Optional; without it voice styles use the fallback text
    ONESIGNAL_APP_ID    - Optional; push is disabled unless both OneSignal
    ONESIGNAL_API_KEY     values are set
    AWS_REGION          - SES region (default: "us-east-1")

Usage:
    # Evaluate and render without sending or writing anything:
    python worker/alerts/dev_runner.py --dry-run --verbose

    # Full run:
    python worker/alerts/dev_runner.py
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# ---------------------------------------------------------------------------
# Ensure project root is on sys.path so we can import worker modules.
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from worker.alerts.config import load_settings  # noqa: E402
from worker.alerts.handler import run_alerts  # noqa: E402

logger = logging.getLogger("dev_runner")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one surf alert pass.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="evaluate and render alerts, but send and persist nothing",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="log per-trigger decisions (DEBUG level)",
    )
    parser.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="overall run deadline in seconds (default: RUN_DEADLINE_SECONDS)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    settings = load_settings()
    summary = asyncio.run(
        run_alerts(settings, dry_run=args.dry_run, deadline_seconds=args.deadline)
    )

    print(json.dumps(summary.model_dump(mode="json"), indent=2))
    if summary.store_failed:
        logger.error("Trigger store unavailable; nothing was evaluated")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
