"""Gate maintenance worker.

Re-drives approvals for join requests whose entitlement is already active,
drops expired join requests and checks the bot's privileges on every
managed resource.

Usage:
    python -m paygate.workers.gate_maintenance --once
    python -m paygate.workers.gate_maintenance --loop
"""
from __future__ import annotations

import argparse

from paygate.core.config import settings
from paygate.core.database import create_all_tables
from paygate.core.logging import configure_logging
from paygate.features.engine import Engine, build_engine
from paygate.features.reconciler.service import PeriodicRunner


def run_maintenance(engine: Engine) -> dict:
    approved = engine.coordinator.redrive_pending()
    removed = engine.coordinator.cleanup_expired()
    reports = engine.health.check_all()
    return {
        "approved": approved,
        "expired_removed": removed,
        "unhealthy": [r.resource_id for r in reports if not r.healthy],
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Gate maintenance worker")
    parser.add_argument("--once", action="store_true", help="Run maintenance once and exit")
    parser.add_argument("--loop", action="store_true", help="Run on a fixed interval")
    parser.add_argument(
        "--sleep",
        type=int,
        default=settings.GATE_HEALTH_INTERVAL_SECONDS,
        help="Seconds between runs (when --loop)",
    )
    args = parser.parse_args()

    configure_logging(settings.ENV)
    create_all_tables()
    engine = build_engine()
    try:
        if args.once:
            print(f"[gate-maintenance] {run_maintenance(engine)}")
            return

        print(f"[gate-maintenance] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
        PeriodicRunner(lambda: run_maintenance(engine), args.sleep, name="gate-maintenance").run_forever()
        print("[gate-maintenance] Stopped")
    finally:
        engine.close()


if __name__ == "__main__":
    main()
