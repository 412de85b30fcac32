"""
Retry failed Trello card syncs whose backoff has elapsed.

Meant to be run by an external scheduler (cron, Render cron job) when the
in-process scheduler is disabled.

Usage:
    python -m designhub.scripts.process_failed_syncs
    python -m designhub.scripts.process_failed_syncs --batch-size 25
"""

import argparse

from designhub.logging_config import get_logger
from designhub.trello.sweeper import process_failed_syncs

logger = get_logger(__name__)


def run(batch_size=None):
    summary = process_failed_syncs(batch_size=batch_size)

    print("=" * 80)
    print("FAILED SYNC SWEEP")
    print("=" * 80)
    print(f"  Processed: {summary['processed_count']}")
    print(f"  Succeeded: {summary['succeeded']}")
    print(f"  Failed:    {summary['failed']}")
    print(f"  Skipped:   {summary['skipped']}")
    for result in summary["results"]:
        line = f"  - sync log {result['sync_log_id']}: {result['status']}"
        if result.get("error"):
            line += f" ({result['error']})"
        print(line)
    print("=" * 80)
    return summary


if __name__ == "__main__":
    from designhub import create_app

    parser = argparse.ArgumentParser(description="Retry failed Trello card syncs")
    parser.add_argument("--batch-size", type=int, default=None,
                        help="Maximum ledger rows to retry (default: SYNC_SWEEP_BATCH_SIZE)")

    args = parser.parse_args()
    if args.batch_size is not None and args.batch_size < 1:
        parser.error("--batch-size must be at least 1")

    app = create_app()
    with app.app_context():
        run(batch_size=args.batch_size)
