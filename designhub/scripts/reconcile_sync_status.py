"""
Recompute each design request's sync_status from its latest sync log row.

The ledger and the request row are written separately, so a crash between the
two can leave sync_status stale (or drop a new card id). This reports the
drift and, with --execute, repairs it.

Usage:
    python -m designhub.scripts.reconcile_sync_status            # Preview only (dry run)
    python -m designhub.scripts.reconcile_sync_status --execute  # Write the fixes
"""

import argparse

from designhub.logging_config import get_logger
from designhub.trello.ledger import reconcile_all

logger = get_logger(__name__)


def run(execute=False):
    mode = "LIVE MODE - WILL UPDATE DESIGN REQUESTS" if execute else "DRY RUN (Preview Only)"
    print("=" * 80)
    print("RECONCILE SYNC STATUS")
    print("=" * 80)
    print(f"\n[INFO] Mode: {mode}")

    try:
        report = reconcile_all(execute=execute)
    except Exception as e:
        logger.error("Reconciliation failed", error=str(e), exc_info=True)
        print(f"\n[ERROR] Reconciliation failed: {e}")
        return {"error": str(e), "error_type": type(e).__name__, "executed": execute}

    print(f"[INFO] Checked: {report['checked']}")
    print(f"[INFO] Drifted: {report['drifted']}")
    for row in report["results"]:
        line = f"  - {row['short_id']}: {row['previous']} -> {row['expected']}"
        if row.get("restored_card_id"):
            line += f" (card {row['restored_card_id']})"
        print(line)

    if report["drifted"] and not execute:
        print("\n[INFO] Run with --execute to apply these changes")
    print("=" * 80)
    return report


if __name__ == "__main__":
    from designhub import create_app

    parser = argparse.ArgumentParser(description="Reconcile design request sync_status with the sync ledger")
    parser.add_argument("--execute", action="store_true",
                        help="Actually update the requests (default: dry run only)")

    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        run(execute=args.execute)
