"""
Delete activity and sync log rows older than the retention window.

Each design request keeps its latest sync log row, and rows still waiting on
a retry are never purged.

Usage:
    python -m designhub.scripts.cleanup_old_logs                          # Preview only (dry run)
    python -m designhub.scripts.cleanup_old_logs --retention-days 180 --execute
"""

import argparse

from designhub.logging_config import get_logger
from designhub.services.activity_log_service import ActivityLogService

logger = get_logger(__name__)


def run(retention_days=None, execute=False):
    mode = "LIVE MODE - WILL DELETE LOG ROWS" if execute else "DRY RUN (Preview Only)"
    print("=" * 80)
    print("CLEAN UP OLD LOGS")
    print("=" * 80)
    print(f"\n[INFO] Mode: {mode}")

    try:
        result = ActivityLogService.cleanup_old_logs(retention_days=retention_days, execute=execute)
    except Exception as e:
        logger.error("Log cleanup failed", error=str(e), exc_info=True)
        print(f"\n[ERROR] Log cleanup failed: {e}")
        return {"error": str(e), "error_type": type(e).__name__, "executed": execute}

    verb = "Deleted" if execute else "Would delete"
    print(f"[INFO] Retention: {result['retention_days']} days (cutoff {result['cutoff_date']})")
    print(f"[INFO] {verb} activity logs: {result['deleted_activity_logs']}")
    print(f"[INFO] {verb} sync logs:     {result['deleted_sync_logs']}")

    if not execute:
        print("\n[INFO] Run with --execute to delete these rows")
    print("=" * 80)
    return result


if __name__ == "__main__":
    from designhub import create_app

    parser = argparse.ArgumentParser(description="Purge activity and sync logs past the retention window")
    parser.add_argument("--retention-days", type=int, default=None,
                        help="Days of logs to keep (default: LOG_RETENTION_DAYS, 365)")
    parser.add_argument("--execute", action="store_true",
                        help="Actually delete the rows (default: dry run only)")

    args = parser.parse_args()
    if args.retention_days is not None and args.retention_days < 1:
        parser.error("--retention-days must be at least 1")

    app = create_app()
    with app.app_context():
        run(retention_days=args.retention_days, execute=args.execute)
