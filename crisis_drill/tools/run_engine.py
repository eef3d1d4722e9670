"""Run the inject and decision-reaction schedulers against a database."""
from __future__ import annotations

import argparse
import asyncio
import logging
import time
from pathlib import Path

from ..service import ExerciseService

logger = logging.getLogger(__name__)


def run_once(db_path: Path) -> None:
    service = ExerciseService(db_path)
    inject_report, reaction_report = asyncio.run(service.run_engine_once())
    for report in (inject_report, reaction_report):
        print(
            f"{report.scheduler}: {report.sessions} sessions, "
            f"{report.published_count} published, {report.cancelled_count} cancelled, "
            f"{len(report.failures)} failed"
        )


def run_forever(db_path: Path) -> None:
    service = ExerciseService(db_path)
    service.start_engine()
    logger.info("Engine running against %s; Ctrl+C to stop", db_path)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down engine")
    finally:
        service.stop_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the crisis-drill inject engine")
    parser.add_argument("db", type=Path, help="Path to SQLite database")
    parser.add_argument("--once", action="store_true", help="Run a single tick of each scheduler and exit")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default INFO)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.once:
        run_once(args.db)
    else:
        run_forever(args.db)


if __name__ == "__main__":  # pragma: no cover - CLI tool
    main()
