"""
escrow-release -- command line entry point for the release engine.

Usage:
    escrow-release [--database-url URL] [--config PATH] <command> [options]

Commands:
    run        Execute one release run now and print the RunSummary as JSON.
    serve      Run the cron trigger scheduler until interrupted.
    status     Print the release status of a deal as JSON.
    approve    Record an explicit release approval on escrowed earnings.
    schedule   Schedule escrowed earnings of a deal for release.
    release    Release escrowed earnings of a deal now.
    runs       Print recent release run summaries as JSON.
    init-db    Create the database tables.

Examples:
    # Manual run over every eligibility class
    escrow-release run

    # Only the overdue safety net, evaluated as of a fixed time
    escrow-release run --class overdue_escrow --now 2024-06-01T00:00:00+00:00

    # Approve two earnings for release on the next run
    escrow-release approve --actor-id <uuid> <earning-id> <earning-id>

    # Release a deal's escrow immediately, skipping the eligibility check
    escrow-release release <deal-id> --actor-id <uuid> --force --reason "Refund agreed"

Exit codes: 0 success, 1 usage or configuration error, 2 run-scoped failure.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from uuid import UUID

from escrow_release.domain.types import CLASS_ORDER


def _parse_datetime(text: str) -> datetime:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="escrow-release",
        description="Escrow milestone release engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="SQLAlchemy database URL (default: DATABASE_URL env).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Release config YAML (default: packaged default.yaml).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for the JSON log stream on stderr (default: INFO).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute one release run now.")
    run.add_argument(
        "--class",
        dest="classes",
        action="append",
        default=None,
        choices=[c.value for c in CLASS_ORDER],
        help="Eligibility class to process (repeatable; default: all).",
    )
    run.add_argument("--trigger", default="manual", help="Trigger label (default: manual).")
    run.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Run deadline in seconds (default: from config).",
    )
    run.add_argument(
        "--now",
        type=_parse_datetime,
        default=None,
        help="Evaluation time, ISO-8601 (default: current time).",
    )

    serve = sub.add_parser("serve", help="Run the trigger scheduler until interrupted.")
    serve.add_argument(
        "--tick-interval",
        type=int,
        default=30,
        help="Seconds between trigger evaluations (default: 30).",
    )

    status = sub.add_parser("status", help="Release status of a deal.")
    status.add_argument("deal_id", type=UUID)

    approve = sub.add_parser("approve", help="Approve escrowed earnings for release.")
    approve.add_argument("earning_ids", nargs="+", type=UUID)
    approve.add_argument("--actor-id", required=True, type=UUID)
    approve.add_argument("--note", default=None)

    schedule = sub.add_parser("schedule", help="Schedule a deal's escrowed earnings.")
    schedule.add_argument("deal_id", type=UUID)
    schedule.add_argument("--release-date", required=True, type=_parse_datetime)
    schedule.add_argument("--actor-id", required=True, type=UUID)
    schedule.add_argument(
        "--earning",
        dest="earning_ids",
        action="append",
        type=UUID,
        default=None,
        help="Earning to schedule (repeatable; default: all escrowed).",
    )
    schedule.add_argument("--reason", default=None)
    schedule.add_argument("--no-notify", action="store_true")

    release = sub.add_parser("release", help="Release a deal's escrowed earnings now.")
    release.add_argument("deal_id", type=UUID)
    release.add_argument("--actor-id", required=True, type=UUID)
    release.add_argument(
        "--earning",
        dest="earning_ids",
        action="append",
        type=UUID,
        default=None,
        help="Earning to release (repeatable; default: all escrowed).",
    )
    release.add_argument(
        "--force",
        action="store_true",
        help="Release even if the earnings are not yet eligible.",
    )
    release.add_argument("--reason", default=None)

    runs = sub.add_parser("runs", help="Recent release run summaries.")
    runs.add_argument("--limit", type=int, default=10)

    sub.add_parser("init-db", help="Create the database tables.")
    return parser


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    if not args.database_url:
        print("ERROR: --database-url or DATABASE_URL is required", file=sys.stderr)
        return 1

    # Lazy imports so we fail fast on args first
    from escrow_config import get_active_config
    from escrow_kernel.db.engine import (
        create_tables,
        get_session_factory,
        init_engine_from_url,
    )
    from escrow_kernel.exceptions import EscrowKernelError, ReleaseConfigError, ReleaseRunError
    from escrow_kernel.logging_config import configure_logging
    from escrow_release.orchestrator import ReleaseEngine

    configure_logging(level=getattr(logging, args.log_level))

    try:
        config = get_active_config(args.config)
    except ReleaseConfigError as e:
        print(f"ERROR: Invalid config: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    try:
        init_engine_from_url(args.database_url)
    except Exception as e:
        print(f"ERROR: Database init failed: {e}", file=sys.stderr)
        return 1

    if args.command == "init-db":
        create_tables()
        print("Tables created.")
        return 0

    engine = ReleaseEngine.from_config(get_session_factory(), config)
    try:
        if args.command == "run":
            try:
                summary = engine.run_once(
                    args.now,
                    trigger=args.trigger,
                    classes=args.classes,
                    timeout_seconds=args.timeout,
                )
            except ReleaseRunError as e:
                if e.summary is not None:
                    _print_json(e.summary.to_dict())
                print(f"ERROR: {e}", file=sys.stderr)
                return 2
            _print_json(summary.to_dict())
            return 0

        if args.command == "serve":
            return _serve(engine, args.tick_interval)

        operator = engine.create_operator_service()
        try:
            if args.command == "status":
                _print_json(operator.release_status(args.deal_id).to_dict())
            elif args.command == "approve":
                approved = operator.approve_release(
                    args.earning_ids, args.actor_id, note=args.note,
                )
                _print_json({"approved": [str(e.earning_id) for e in approved]})
            elif args.command == "schedule":
                scheduled = operator.schedule_release(
                    args.deal_id,
                    args.release_date,
                    args.actor_id,
                    earning_ids=args.earning_ids,
                    reason=args.reason,
                    notify=not args.no_notify,
                )
                _print_json({"scheduled": [str(e.earning_id) for e in scheduled]})
            elif args.command == "release":
                results = operator.release_now(
                    args.deal_id,
                    args.actor_id,
                    earning_ids=args.earning_ids,
                    force=args.force,
                    reason=args.reason,
                )
                _print_json({"results": [r.to_dict() for r in results]})
            elif args.command == "runs":
                _print_json([s.to_dict() for s in engine.store.recent_runs(args.limit)])
        except EscrowKernelError as e:
            print(f"ERROR: [{e.code}] {e}", file=sys.stderr)
            return 1
        return 0
    finally:
        engine.close()


def _serve(engine, tick_interval: int) -> int:
    scheduler = engine.create_scheduler(tick_interval_seconds=tick_interval)
    if not scheduler.trigger_names:
        print("ERROR: No enabled triggers in config", file=sys.stderr)
        return 1

    def _handle_signal(signum, frame):
        scheduler.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    scheduler.start()
    print(f"Scheduler running triggers: {', '.join(scheduler.trigger_names)}")
    try:
        while not scheduler.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        pass
    scheduler.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
