"""CLI entry point for the curtailment reconciliation engine.

Usage:
    python3 main_reconcile.py run --scope 2025-03-28
    python3 main_reconcile.py run --scope 2025-03-01..2025-03-31 --concurrency 4 --batch-size 10
    python3 main_reconcile.py run --scope 2025-03-28:12:T_ABRBO-1,2025-03-28:13:T_ABRBO-1
    python3 main_reconcile.py status --run-id 2025-03-28

Exit codes (run): 0 COMPLETED, 1 ABORTED, 2 invalid arguments or scope.
Exit code (status): always 0.
"""

from __future__ import annotations

# cli_common puts the project root on sys.path; import it before project modules.
import cli_common

import argparse
import logging
import sys
import threading

import config
from observability.event_tracker import RunEventTracker
from reconcile.checkpoint import validate_run_id
from reconcile.coordinator import Coordinator, ReconcileSettings
from reconcile.errors import CheckpointIOError, InvalidScope
from reconcile.models import RunState, Scope, parse_models
from reconcile.reporter import format_status, format_summary

logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_ABORTED = 1
EXIT_INVALID = 2


def _build_collaborators(models):
    """Wire the SQL Server datasets into (detector, recompute, summary_refresher, release_day)."""
    from datasets.bitcoin_calculations import BitcoinCalculationStore
    from datasets.curtailment import CurtailmentSource
    from datasets.difficulty import DifficultyLookup
    from datasets.summaries import refresh_daily_summaries
    from reconcile.gap_detector import GapDetector
    from reconcile.recompute import RecomputeService

    source = CurtailmentSource()
    derived = BitcoinCalculationStore(source)
    detector = GapDetector(source, derived, models)
    service = RecomputeService(source, derived, DifficultyLookup())

    def release_day(day):
        source.invalidate(day)
        derived.invalidate(day)

    return detector, service.recompute, refresh_daily_summaries, release_day


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reconcile",
        description="Reconcile HistoricalBitcoinCalculations against CurtailmentRecords",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start or resume a reconciliation run")
    run.add_argument("--scope", required=True,
                     help="YYYY-MM-DD, YYYY-MM-DD..YYYY-MM-DD, or comma list of YYYY-MM-DD:PERIOD:FARM_ID")
    run.add_argument("--concurrency", type=int, default=config.RECONCILE_CONCURRENCY,
                     help=f"Worker threads (default: {config.RECONCILE_CONCURRENCY})")
    run.add_argument("--batch-size", type=int, default=config.RECONCILE_BATCH_SIZE,
                     help=f"Gaps per work item (default: {config.RECONCILE_BATCH_SIZE})")
    run.add_argument("--max-attempts", type=int, default=config.RECONCILE_MAX_ATTEMPTS,
                     help=f"Retries per gap after a transient failure (default: {config.RECONCILE_MAX_ATTEMPTS})")
    run.add_argument("--run-id", type=str, help="Checkpoint id (default: derived from the scope)")
    run.add_argument("--models", type=str, default=",".join(config.RECONCILE_MODELS),
                     help="Comma list of required miner models (default: RECONCILE_MODELS)")
    run.add_argument("--backoff-base", type=float, default=config.RECONCILE_BACKOFF_BASE,
                     help="Retry backoff base in seconds")
    run.add_argument("--backoff-max", type=float, default=config.RECONCILE_BACKOFF_MAX,
                     help="Retry backoff cap in seconds")
    run.add_argument("--timeout", type=float, help="Cancel the run after this many seconds")
    run.add_argument("--report-interval", type=float, default=config.RECONCILE_REPORT_INTERVAL,
                     help="Seconds between progress lines")
    run.add_argument("--checkpoint-interval", type=float, default=config.CHECKPOINT_INTERVAL,
                     help=f"Minimum seconds between checkpoint saves (default: {config.CHECKPOINT_INTERVAL:g})")
    _add_checkpoint_args(run)

    status = sub.add_parser("status", help="Show the checkpoint of a run")
    status.add_argument("--run-id", required=True, type=str)
    _add_checkpoint_args(status)
    return parser


def _add_checkpoint_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--checkpoint-dir", type=str,
                        help=f"Directory for JSON checkpoints (default: {config.CHECKPOINT_DIR})")
    parser.add_argument("--checkpoint-backend", choices=["file", "sql"],
                        help=f"Checkpoint store (default: {config.CHECKPOINT_BACKEND})")


def cmd_run(args: argparse.Namespace) -> int:
    try:
        scope = Scope.parse(args.scope)
        models = parse_models(args.models.split(","))
        settings = ReconcileSettings(
            concurrency=args.concurrency,
            batch_size=args.batch_size,
            max_attempts=args.max_attempts,
            backoff_base=args.backoff_base,
            backoff_max=args.backoff_max,
            report_interval=args.report_interval,
            checkpoint_interval=args.checkpoint_interval,
            timeout=args.timeout,
        )
        run_id = validate_run_id(args.run_id or scope.label)
    except InvalidScope as e:
        print(f"Invalid scope: {e}", file=sys.stderr)
        return EXIT_INVALID
    except ValueError as e:
        print(f"Invalid arguments: {e}", file=sys.stderr)
        return EXIT_INVALID

    sql_handler = cli_common.setup_logging(run_id)
    cli_common.warn_concurrency(settings.concurrency)

    logger.info(
        "Starting reconciliation: run_id=%s scope=%s models=%s concurrency=%d batch_size=%d",
        run_id, scope, [m.value for m in models], settings.concurrency, settings.batch_size,
    )

    cancel_event = threading.Event()
    previous_handlers = {}
    try:
        store = cli_common.build_checkpoint_store(args.checkpoint_backend, args.checkpoint_dir)
        detector, recompute, summary_refresher, release_day = _build_collaborators(models)
        coordinator = Coordinator(
            run_id, scope, detector, recompute, store, settings,
            summary_refresher=summary_refresher,
            event_tracker=RunEventTracker(),
            on_day_settled=release_day,
            cancel_event=cancel_event,
        )
        previous_handlers = cli_common.install_signal_handlers(coordinator.cancel)
        summary = coordinator.run()
    except InvalidScope as e:
        logger.error("Invalid scope for run %s: %s", run_id, e)
        print(f"Invalid scope: {e}", file=sys.stderr)
        return EXIT_INVALID
    finally:
        cli_common.restore_signal_handlers(previous_handlers)
        cli_common.log_connection_overhead()
        cli_common.shutdown_connections()
        if sql_handler is not None:
            sql_handler.flush()

    print(format_summary(summary))
    return EXIT_COMPLETED if summary.state == RunState.COMPLETED else EXIT_ABORTED


def cmd_status(args: argparse.Namespace) -> int:
    try:
        store = cli_common.build_checkpoint_store(args.checkpoint_backend, args.checkpoint_dir)
        checkpoint = store.load(args.run_id)
    except (CheckpointIOError, ValueError) as e:
        print(f"Cannot read checkpoint for {args.run_id}: {e}")
        return 0
    print(format_status(checkpoint, args.run_id))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "run":
        return cmd_run(args)
    return cmd_status(args)


if __name__ == "__main__":
    sys.exit(main())
