"""
tally.__main__ — Entry point for ``python -m tally``
====================================================

Runs one batch job and prints its JSON summary.  Meant to be invoked by
an external clock, e.g.::

    0 * * * *   python -m tally dispatch          # hourly
    0 0 * * 1   python -m tally freeze            # Mondays 00:00
    0 3 1 * *   python -m tally rollup            # previous month, 1st of month

Wiring:
1. Load .env (``DATABASE_URL``, ``RESEND_API_KEY``, ``EMAIL_FROM``).
2. Load config.yaml (defaults apply if the file is missing).
3. Create the SQLAlchemy engine.
4. Run the requested job.

Exit status is 0 unless the batch could not start at all; per-unit
failures are reported in the summary.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import UTC, date, datetime, timedelta

from dotenv import load_dotenv

from tally import __version__
from tally.config import TallyConfig, load_config
from tally.database.engine import create_db_engine
from tally.engine.periods import ensure_utc
from tally.jobs import (
    build_dispatcher,
    run_freeze,
    run_report_dispatch,
    run_rollup,
    run_weekly_rollup,
)
from tally.services.freeze_service import FreezeScope
from tally.services.snapshot_store import SnapshotStore

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("tally")


def _instant(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


def _previous_month(now: datetime) -> tuple[int, int]:
    return (now.year - 1, 12) if now.month == 1 else (now.year, now.month - 1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tally", description="Tally batch jobs")
    parser.add_argument("--version", action="version", version=f"tally {__version__}")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    sub = parser.add_subparsers(dest="job", required=True)

    rollup = sub.add_parser("rollup", help="Roll DAILY snapshots into MONTHLY or WEEKLY")
    rollup.add_argument("--year", type=int, help="Defaults to the previous month")
    rollup.add_argument("--month", type=int)
    rollup.add_argument("--workspace", type=int, help="Limit to one workspace")
    rollup.add_argument("--connection", type=int, help="Connection within --workspace")
    rollup.add_argument(
        "--week", type=date.fromisoformat, metavar="YYYY-MM-DD",
        help="Roll up the Monday-based week containing this date into WEEKLY instead",
    )

    freeze = sub.add_parser("freeze", help="Freeze WEEKLY live snapshots into versions")
    freeze.add_argument("--workspace", type=int)
    freeze.add_argument("--now", type=_instant, help="ISO timestamp (default: now)")

    dispatch = sub.add_parser("dispatch", help="Render and deliver due reports")
    dispatch.add_argument("--now", type=_instant, help="ISO timestamp (default: now)")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse *argv*, run the selected job, and return the exit status."""
    args = build_parser().parse_args(argv)

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    try:
        cfg = load_config(args.config)
    except FileNotFoundError:
        logger.warning("%s not found — using built-in defaults", args.config)
        cfg = TallyConfig()

    # 3. Database.
    try:
        engine = create_db_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        return 1
    store = SnapshotStore(engine, default_timezone=cfg.default_timezone)

    # 4. Job.
    try:
        if args.job == "rollup" and args.week is not None:
            result = run_weekly_rollup(engine, store, args.week)
        elif args.job == "rollup":
            year, month = args.year, args.month
            if year is None or month is None:
                year, month = _previous_month(datetime.now(UTC))
            result = run_rollup(
                engine, store, year, month,
                workspace_id=args.workspace, connection_id=args.connection,
            )
        elif args.job == "freeze":
            scope = FreezeScope(window=timedelta(days=cfg.freeze_window_days))
            result = run_freeze(
                engine, workspace_id=args.workspace, scope=scope, now=args.now
            )
        else:
            dispatcher = build_dispatcher(engine, cfg, store=store)
            result = run_report_dispatch(dispatcher, args.now)
    except Exception:
        logger.exception("Batch job %r aborted", args.job)
        return 1
    finally:
        engine.dispose()

    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
