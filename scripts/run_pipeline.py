"""
run_pipeline.py: run the collection pipeline from the command line.

Usage
-----
  python scripts/run_pipeline.py run                   # incremental run
  python scripts/run_pipeline.py run --type full       # ignore freshness
  python scripts/run_pipeline.py status                # circuits + freshness + last runs
  python scripts/run_pipeline.py reset-circuit espn    # force a circuit closed

Exit status is 0 for completed runs, 2 for partial_success and 1 for failed.
"""

import argparse
import logging
import sys
from pathlib import Path

# Ensure the project root (one level up from scripts/) is on sys.path so that
# `from backend.xxx import ...` resolves correctly when the script is run
# directly (e.g.  python scripts/run_pipeline.py).
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from backend.models import init_db
from backend.pipeline.circuit_breaker import CircuitBreaker
from backend.pipeline.runner import RunStatus, RunType
from backend.pipeline.stores import FreshnessStore, RunStore
from backend.services.orchestrator import run_pipeline

logger = logging.getLogger("run_pipeline")

_EXIT_CODES = {
    RunStatus.COMPLETED: 0,
    RunStatus.PARTIAL_SUCCESS: 2,
    RunStatus.FAILED: 1,
}


def _cmd_run(args) -> int:
    result = run_pipeline(RunType(args.type))
    print(f"Run {result.run_id} ({result.run_type.value}): {result.status.value}")
    print(
        f"  sources: {result.sources_succeeded}/{result.sources_attempted} succeeded, "
        f"{result.sources_failed} failed"
    )
    print(f"  records: {result.records_processed} processed, "
          f"{result.records_created} created, {result.records_updated} updated")
    for source, reason in sorted(result.metadata.get("skipped", {}).items()):
        print(f"  skipped {source}: {reason}")
    for error in result.errors:
        print(f"  ERROR {error}")
    for warning in result.warnings:
        print(f"  WARN  {warning}")
    return _EXIT_CODES[result.status]


def _cmd_status(args) -> int:
    print("Circuit breakers")
    states = CircuitBreaker().list_states()
    if not states:
        print("  (none recorded; all sources closed)")
    for snap in states:
        until = f" until {snap.open_until:%Y-%m-%d %H:%M}" if snap.open_until else ""
        print(f"  {snap.source:<12} {snap.state.value:<10} failures={snap.failure_count}{until}")

    print("\nFreshness")
    for row in FreshnessStore().list_freshness():
        print(f"  {row.source:<12} {row.data_type:<12} {row.last_updated_at:%Y-%m-%d %H:%M} "
              f"({row.record_count} records)")

    print("\nRecent runs")
    for run in RunStore().recent_runs(args.limit):
        print(f"  #{run.id:<5} {run.run_type:<12} {run.status:<16} {run.started_at:%Y-%m-%d %H:%M}")
    return 0


def _cmd_reset(args) -> int:
    breaker = CircuitBreaker()
    breaker.reset(args.source)
    print(f"{args.source}: {breaker.get_state(args.source).state.value}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="CBB stats pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the pipeline once")
    run.add_argument("--type", default="incremental", choices=[t.value for t in RunType])
    run.set_defaults(func=_cmd_run)

    status = sub.add_parser("status", help="Show circuits, freshness and recent runs")
    status.add_argument("--limit", type=int, default=5)
    status.set_defaults(func=_cmd_status)

    reset = sub.add_parser("reset-circuit", help="Force a source's circuit closed")
    reset.add_argument("source")
    reset.set_defaults(func=_cmd_reset)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    init_db()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
