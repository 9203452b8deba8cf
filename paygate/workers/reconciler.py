"""Payment reconciliation worker.

Usage:
    python -m paygate.workers.reconciler --once
    python -m paygate.workers.reconciler --loop

Environment flags:
- PAYMENT_CHECK_INTERVAL_SECONDS (10..300, default 30)
- PAYMENT_LOOKBACK_HOURS (default 24)
- PENDING_RETENTION_DAYS (default 7)
"""
from __future__ import annotations

import argparse
import logging

from paygate.core.config import settings
from paygate.core.database import create_all_tables
from paygate.core.logging import configure_logging
from paygate.features.engine import build_engine
from paygate.features.reconciler.service import MAX_INTERVAL_SECONDS, MIN_INTERVAL_SECONDS, PeriodicRunner


logger = logging.getLogger("paygate.workers.reconciler")


def interval_arg(value: str) -> int:
    seconds = int(value)
    if not MIN_INTERVAL_SECONDS <= seconds <= MAX_INTERVAL_SECONDS:
        raise argparse.ArgumentTypeError(
            f"interval must be between {MIN_INTERVAL_SECONDS} and {MAX_INTERVAL_SECONDS} seconds"
        )
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Payment reconciliation worker")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--loop", action="store_true", help="Run on a fixed interval")
    parser.add_argument(
        "--sleep",
        type=interval_arg,
        default=settings.PAYMENT_CHECK_INTERVAL_SECONDS,
        help="Seconds between cycles (when --loop)",
    )
    return parser


def main() -> None:
    args = build_parser().parse_args()

    configure_logging(settings.ENV)
    create_all_tables()
    engine = build_engine()
    try:
        if args.once:
            engine.reconciler.tick()
            last = engine.reconciler.last_cycle
            if last is not None:
                print(f"[reconciler] {last.status}: {last.stats()}")
            return

        print(f"[reconciler] Starting loop (interval={args.sleep}s). CTRL+C to stop.")
        PeriodicRunner(engine.reconciler.tick, args.sleep, name="reconciler").run_forever()
        print("[reconciler] Stopped")
    finally:
        engine.close()


if __name__ == "__main__":
    main()
