"""
Retry sweeper for failed Trello card syncs.

Runs from the scheduler job or `python -m designhub.scripts.process_failed_syncs`.
Each due ledger row is claimed (retrying), replayed through the orchestrator
from persisted state, and then retired:

- the replay succeeded: the claimed row goes back to failed, superseded by the
  new completed row
- the replay failed: the claimed row takes retry_count + 1 and either a new
  backoff or failed_permanently; the replay's own row carries the same count
  and becomes the next retry candidate
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from designhub.config import Config as cfg
from designhub.logging_config import SyncContext, get_logger
from designhub.models import SyncLog, SyncLogStatus, SyncOperationType, db
from designhub.trello import ledger
from designhub.trello import sync as card_sync

logger = get_logger(__name__)

MAX_BATCH_SIZE = 500


def _latest_child(entry: SyncLog) -> Optional[SyncLog]:
    return (
        SyncLog.query.filter_by(parent_id=entry.id)
        .order_by(SyncLog.id.desc())
        .first()
    )


def _replay(entry: SyncLog, api) -> Dict[str, Any]:
    """Re-run the entry's operation using only what the database holds."""
    design_request_id = entry.design_request_id
    payload = entry.request_payload or {}

    if entry.operation == SyncOperationType.CREATE.value:
        return card_sync.create_trello_card(design_request_id, api=api, retry_of=entry)

    if entry.operation == SyncOperationType.UPDATE.value:
        if payload:
            return card_sync.update_trello_card(design_request_id, payload, api=api, retry_of=entry)
        return card_sync.refresh_card_content(design_request_id, api=api, retry_of=entry)

    if entry.operation == SyncOperationType.COMMENT.value:
        return card_sync.add_trello_comment(design_request_id, payload.get("text"), api=api, retry_of=entry)

    raise ValueError(f"Unsupported sync operation on ledger row {entry.id}: {entry.operation}")


def retry_entry(entry: SyncLog, api_factory: Optional[Callable] = None) -> Dict[str, Any]:
    """
    Retry a single due ledger row.

    Args:
        entry: A failed/retrying SyncLog row
        api_factory: Optional callable(client) -> TrelloAPI, used by tests and
            callers that pool clients

    Returns:
        dict describing the outcome for the sweep summary
    """
    if not ledger.claim_for_retry(entry):
        logger.info("Sync log already claimed by another sweep", sync_log_id=entry.id)
        return {"sync_log_id": entry.id, "status": "skipped", "reason": "already claimed"}

    design_request = entry.design_request
    if (
        entry.operation == SyncOperationType.CREATE.value
        and design_request is not None
        and design_request.trello_card_id
    ):
        # Card exists already (created by a later direct call); nothing left to retry
        ledger.mark_superseded(entry, None)
        return {"sync_log_id": entry.id, "status": "skipped", "reason": "card already exists"}

    api = None
    if api_factory is not None and design_request is not None and design_request.client is not None:
        api = api_factory(design_request.client)

    try:
        result = _replay(entry, api)
    except Exception as err:
        new_count = entry.retry_count + 1
        successor = _latest_child(entry)
        if successor is not None:
            entry.superseded_by_id = successor.id
        ledger.apply_failure(entry, str(err), new_count)
        logger.warning(
            "Sync retry failed",
            sync_log_id=entry.id,
            design_request_id=entry.design_request_id,
            operation=entry.operation,
            retry_count=new_count,
            status=entry.status.value,
            error=str(err),
            error_type=type(err).__name__,
        )
        return {
            "sync_log_id": entry.id,
            "status": entry.status.value,
            "retry_count": new_count,
            "next_retry_at": entry.next_retry_at.isoformat() if entry.next_retry_at else None,
            "new_sync_log_id": successor.id if successor else None,
            "error": str(err),
        }

    successor = db.session.get(SyncLog, result["sync_log_id"])
    ledger.mark_superseded(entry, successor)
    logger.info(
        "Sync retry succeeded",
        sync_log_id=entry.id,
        new_sync_log_id=result["sync_log_id"],
        design_request_id=entry.design_request_id,
        operation=entry.operation,
    )
    return {
        "sync_log_id": entry.id,
        "status": SyncLogStatus.COMPLETED.value,
        "new_sync_log_id": result["sync_log_id"],
    }


def process_failed_syncs(batch_size: Optional[int] = None, api_factory: Optional[Callable] = None,
                         now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Retry failed Trello syncs whose backoff has elapsed.

    Selects up to batch_size rows (failed/retrying, next_retry_at <= now,
    retry_count under SYNC_MAX_RETRIES, not superseded), oldest first. One
    row's failure never stops the rest of the batch.

    Returns:
        dict with processed_count, succeeded, failed, skipped and per-row results

    Raises:
        ValueError: batch_size is not a positive integer
    """
    if batch_size is None:
        batch_size = cfg.SYNC_SWEEP_BATCH_SIZE
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
        raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")
    batch_size = min(batch_size, MAX_BATCH_SIZE)
    summary = {"processed_count": 0, "succeeded": 0, "failed": 0, "skipped": 0, "results": []}

    with SyncContext("trello_sync_sweep"):
        entries = ledger.due_for_retry(batch_size, now=now)
        if not entries:
            logger.info("No failed syncs due for retry")
            return summary

        logger.info("Processing failed syncs", count=len(entries))

        for entry in entries:
            try:
                outcome = retry_entry(entry, api_factory=api_factory)
            except Exception as e:
                db.session.rollback()
                logger.error(
                    "Error processing failed sync",
                    sync_log_id=entry.id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                outcome = {"sync_log_id": entry.id, "status": "error", "error": str(e)}

            summary["results"].append(outcome)
            if outcome["status"] == "skipped":
                summary["skipped"] += 1
                continue
            summary["processed_count"] += 1
            if outcome["status"] == SyncLogStatus.COMPLETED.value:
                summary["succeeded"] += 1
            else:
                summary["failed"] += 1

        logger.info(
            "Failed sync sweep finished",
            processed=summary["processed_count"],
            succeeded=summary["succeeded"],
            failed=summary["failed"],
            skipped=summary["skipped"],
        )

    return summary
