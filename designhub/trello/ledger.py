"""
Sync ledger: persistence for SyncLog rows.

Every card-sync attempt gets exactly one SyncLog row, created in_progress
before the Trello call and closed exactly once. Rows in a final state
(completed, failed_permanently) are never modified again. The ledger is the
source of truth for a design request's sync_status; the denormalized column
on design_requests can be recomputed from it with reconcile_sync_status().
"""

import random
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from designhub.config import Config as cfg
from designhub.errors import PersistenceError, SyncStateError
from designhub.logging_config import get_logger
from designhub.models import (
    DesignRequest,
    RequestSyncStatus,
    SyncLog,
    SyncLogStatus,
    SYNC_TYPE_TRELLO_CARD,
    db,
)

logger = get_logger(__name__)

FINAL_STATUSES = (SyncLogStatus.COMPLETED, SyncLogStatus.FAILED_PERMANENTLY)
RETRYABLE_STATUSES = (SyncLogStatus.FAILED, SyncLogStatus.RETRYING)

# A retrying row untouched this long belongs to a sweep that died
STALE_CLAIM_AFTER = timedelta(minutes=15)


def make_json_safe(obj: Any) -> Any:
    """
    Convert problematic types to JSON-serializable types.

    Handles datetime/date, Decimal, Enum and nested dicts, lists, tuples, sets.
    """
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return float(obj)
    elif isinstance(obj, Enum):
        return obj.value
    elif isinstance(obj, dict):
        return {str(k): make_json_safe(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple, set)):
        return [make_json_safe(item) for item in obj]
    else:
        return obj


def calculate_next_retry(retry_count: int, now: Optional[datetime] = None) -> datetime:
    """
    Exponential backoff: now + base * 2^retry_count.

    The exponent is capped at SYNC_BACKOFF_MAX_EXPONENT and up to
    SYNC_BACKOFF_JITTER_SECONDS of random delay is added. With the default
    cap (6) and jitter (0) the schedule for retry counts 0-4 is exactly
    5, 10, 20, 40, 80 minutes.
    """
    now = now or datetime.utcnow()
    exponent = retry_count
    if cfg.SYNC_BACKOFF_MAX_EXPONENT is not None:
        exponent = min(retry_count, cfg.SYNC_BACKOFF_MAX_EXPONENT)
    delay = timedelta(minutes=cfg.SYNC_BACKOFF_BASE_MINUTES * (2 ** exponent))
    if cfg.SYNC_BACKOFF_JITTER_SECONDS:
        delay += timedelta(seconds=random.uniform(0, cfg.SYNC_BACKOFF_JITTER_SECONDS))
    return now + delay


def _commit(action: str, entry_id=None):
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(
            "Sync ledger write failed",
            action=action,
            sync_log_id=entry_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        try:
            db.session.rollback()
        except SQLAlchemyError:
            logger.warning("Rollback after ledger failure also failed", sync_log_id=entry_id)
        raise PersistenceError(f"Failed to {action} sync log: {e}") from e


def create_sync_log(
    design_request: DesignRequest,
    operation: str,
    request_payload: Optional[Dict[str, Any]] = None,
    retry_of: Optional[SyncLog] = None,
) -> SyncLog:
    """
    Open a ledger row for a sync attempt (status in_progress).

    Args:
        design_request: Request being synced
        operation: 'create', 'update' or 'comment'
        request_payload: Provider payload the attempt will send
        retry_of: Failed row a sweeper retry descends from

    Raises:
        PersistenceError: if the row cannot be written
    """
    entry = SyncLog(
        client_id=design_request.client_id,
        design_request_id=design_request.id,
        sync_type=SYNC_TYPE_TRELLO_CARD,
        operation=operation,
        status=SyncLogStatus.IN_PROGRESS,
        synced_by="pending",
        trello_card_id=design_request.trello_card_id,
        request_payload=make_json_safe(request_payload) if request_payload is not None else None,
        retry_count=retry_of.retry_count + 1 if retry_of else 0,
        parent_id=retry_of.id if retry_of else None,
    )
    db.session.add(entry)
    _commit("create", None)

    logger.info(
        "Sync log opened",
        sync_log_id=entry.id,
        design_request_id=design_request.id,
        operation=operation,
        parent_id=entry.parent_id,
    )
    return entry


def _assert_mutable(entry: SyncLog):
    if entry.status in FINAL_STATUSES:
        raise SyncStateError(f"Sync log {entry.id} is {entry.status.value} and can no longer change")


def mark_completed(entry: SyncLog, trello_response: Optional[Dict[str, Any]] = None,
                   trello_card_id: Optional[str] = None, synced_by: str = "direct_api") -> SyncLog:
    """Close a ledger row as completed with the provider response attached."""
    _assert_mutable(entry)
    entry.status = SyncLogStatus.COMPLETED
    entry.trello_response = make_json_safe(trello_response) if trello_response is not None else None
    if trello_card_id:
        entry.trello_card_id = trello_card_id
    entry.synced_by = synced_by
    entry.error_message = None
    entry.next_retry_at = None
    entry.completed_at = datetime.utcnow()
    _commit("complete", entry.id)
    return entry


def apply_failure(entry: SyncLog, error_message: str, retry_count: int,
                  now: Optional[datetime] = None) -> SyncLog:
    """
    Record a failed attempt on a ledger row and schedule (or stop) retries.

    retry_count reaching SYNC_MAX_RETRIES marks the row failed_permanently
    with no next_retry_at; otherwise the row stays failed with a backoff
    timestamp.
    """
    _assert_mutable(entry)
    entry.error_message = error_message
    entry.retry_count = retry_count
    if retry_count >= cfg.SYNC_MAX_RETRIES:
        entry.status = SyncLogStatus.FAILED_PERMANENTLY
        entry.next_retry_at = None
    else:
        entry.status = SyncLogStatus.FAILED
        entry.next_retry_at = calculate_next_retry(retry_count, now)
    _commit("fail", entry.id)

    logger.warning(
        "Sync log failed",
        sync_log_id=entry.id,
        status=entry.status.value,
        retry_count=entry.retry_count,
        next_retry_at=entry.next_retry_at.isoformat() if entry.next_retry_at else None,
        error=error_message,
    )
    return entry


def claim_for_retry(entry: SyncLog, now: Optional[datetime] = None) -> bool:
    """
    Move a due row to retrying so overlapping sweeps skip it.

    A row left in retrying by a sweep that died is claimable again once
    STALE_CLAIM_AFTER has passed.

    Returns False if another sweeper holds or changed the row.
    """
    now = now or datetime.utcnow()
    updated = SyncLog.query.filter(
        SyncLog.id == entry.id,
        SyncLog.superseded_by_id.is_(None),
        or_(
            SyncLog.status == SyncLogStatus.FAILED,
            and_(SyncLog.status == SyncLogStatus.RETRYING, SyncLog.updated_at <= now - STALE_CLAIM_AFTER),
        ),
    ).update({"status": SyncLogStatus.RETRYING, "updated_at": now}, synchronize_session=False)
    _commit("claim", entry.id)
    db.session.refresh(entry)
    return updated == 1


def mark_superseded(entry: SyncLog, successor: Optional[SyncLog]) -> SyncLog:
    """Retire a retried row in favour of the attempt row that replaced it."""
    _assert_mutable(entry)
    if entry.status == SyncLogStatus.RETRYING:
        entry.status = SyncLogStatus.FAILED
    entry.superseded_by_id = successor.id if successor else None
    entry.next_retry_at = None
    _commit("supersede", entry.id)
    return entry


def due_for_retry(batch_size: int, now: Optional[datetime] = None) -> List[SyncLog]:
    """Failed/retrying rows whose retry time has come, oldest first."""
    now = now or datetime.utcnow()
    return (
        SyncLog.query.filter(
            SyncLog.status.in_(RETRYABLE_STATUSES),
            SyncLog.next_retry_at.isnot(None),
            SyncLog.next_retry_at <= now,
            SyncLog.retry_count < cfg.SYNC_MAX_RETRIES,
            SyncLog.superseded_by_id.is_(None),
        )
        .order_by(SyncLog.created_at.asc(), SyncLog.id.asc())
        .limit(batch_size)
        .all()
    )


def latest_sync_log(design_request_id) -> Optional[SyncLog]:
    return (
        SyncLog.query.filter_by(design_request_id=design_request_id)
        .order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
        .first()
    )


def project_sync_status(entry: Optional[SyncLog]) -> RequestSyncStatus:
    """
    Design-request sync_status implied by its latest ledger row.

    completed -> synced; failed / failed_permanently -> failed; otherwise pending.
    """
    if entry is None:
        return RequestSyncStatus.PENDING
    if entry.status == SyncLogStatus.COMPLETED:
        return RequestSyncStatus.SYNCED
    if entry.status in (SyncLogStatus.FAILED, SyncLogStatus.FAILED_PERMANENTLY):
        return RequestSyncStatus.FAILED
    return RequestSyncStatus.PENDING


def _in_flight(entry: Optional[SyncLog], now: datetime) -> bool:
    return (
        entry is not None
        and entry.status == SyncLogStatus.IN_PROGRESS
        and entry.created_at is not None
        and entry.created_at > now - STALE_CLAIM_AFTER
    )


def reconcile_sync_status(design_request: DesignRequest, execute: bool = True,
                          now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Recompute a request's sync_status from its latest ledger row.

    Also restores trello_card_id/url from a completed create row when the
    request lost them (local write failed after Trello created the card).

    A request whose latest row is an in_progress attempt younger than
    STALE_CLAIM_AFTER is left alone: the attempt still holds the create
    claim and closes the row itself. Older in_progress rows belong to a
    crashed attempt and are projected like any other row.

    Returns:
        dict with design_request_id, previous, expected, restored_card_id,
        in_flight and changed
    """
    now = now or datetime.utcnow()
    latest = latest_sync_log(design_request.id)
    previous = design_request.sync_status

    if _in_flight(latest, now):
        return {
            "design_request_id": design_request.id,
            "short_id": design_request.short_id,
            "previous": previous.value if previous else None,
            "expected": previous.value if previous else None,
            "restored_card_id": None,
            "in_flight": True,
            "changed": False,
        }

    expected = project_sync_status(latest)

    # A card created on Trello whose id never reached the request
    created = None
    if design_request.trello_card_id is None:
        created = (
            SyncLog.query.filter(
                SyncLog.design_request_id == design_request.id,
                SyncLog.operation == "create",
                SyncLog.status == SyncLogStatus.COMPLETED,
                SyncLog.trello_card_id.isnot(None),
            )
            .order_by(SyncLog.id.desc())
            .first()
        )
    changed = previous != expected or created is not None

    if changed and execute:
        design_request.sync_status = expected
        if expected == RequestSyncStatus.FAILED:
            design_request.sync_error = latest.error_message
        elif expected == RequestSyncStatus.SYNCED:
            design_request.sync_error = None
        if created is not None:
            response = created.trello_response or {}
            design_request.trello_card_id = created.trello_card_id
            design_request.trello_card_url = response.get("url") or response.get("shortUrl")
        _commit("reconcile", latest.id if latest else None)
        logger.info(
            "Reconciled design request sync status",
            design_request_id=design_request.id,
            previous=previous.value if previous else None,
            expected=expected.value,
            restored_card_id=created.trello_card_id if created else None,
        )

    return {
        "design_request_id": design_request.id,
        "short_id": design_request.short_id,
        "previous": previous.value if previous else None,
        "expected": expected.value,
        "restored_card_id": created.trello_card_id if created else None,
        "in_flight": False,
        "changed": changed,
    }


def reconcile_all(execute: bool = False, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Check every design request's sync_status against the ledger."""
    results = [
        reconcile_sync_status(dr, execute=execute, now=now)
        for dr in DesignRequest.query.order_by(DesignRequest.id).all()
    ]
    drifted = [r for r in results if r["changed"]]
    return {
        "checked": len(results),
        "drifted": len(drifted),
        "executed": execute,
        "results": drifted,
    }


def query_sync_logs(filters: Dict[str, Any], scope_client_id=None):
    """
    Build the sync log query for audit views.

    Args:
        filters: dict with optional client_id, sync_type, operation, status
            (SyncLogStatus), design_request_id, start_date, end_date (datetimes)
        scope_client_id: When set, results are restricted to this client
            regardless of filters

    Returns:
        SQLAlchemy query ordered newest first
    """
    query = SyncLog.query
    client_id = scope_client_id if scope_client_id is not None else filters.get("client_id")
    if client_id is not None:
        query = query.filter(SyncLog.client_id == client_id)

    for field in ("sync_type", "operation", "status", "design_request_id"):
        if filters.get(field) is not None:
            query = query.filter(getattr(SyncLog, field) == filters[field])

    if filters.get("start_date"):
        query = query.filter(SyncLog.created_at >= filters["start_date"])
    if filters.get("end_date"):
        query = query.filter(SyncLog.created_at <= filters["end_date"])

    return query.order_by(SyncLog.created_at.desc(), SyncLog.id.desc())


def sync_log_stats(query) -> Dict[str, Any]:
    """Status breakdown and success rate over a sync log query."""
    logs = query.all()
    status_counts = {status.value: 0 for status in SyncLogStatus}
    operation_counts = {}
    for log in logs:
        status_counts[log.status.value] += 1
        operation_counts[log.operation] = operation_counts.get(log.operation, 0) + 1

    total = len(logs)
    finished = total - status_counts[SyncLogStatus.IN_PROGRESS.value]
    success_rate = (status_counts[SyncLogStatus.COMPLETED.value] / finished * 100) if finished > 0 else 0
    awaiting_retry = len([
        log for log in logs
        if log.status in RETRYABLE_STATUSES and log.next_retry_at is not None and log.superseded_by_id is None
    ])

    return {
        "total": total,
        "status_breakdown": status_counts,
        "operation_breakdown": operation_counts,
        "success_rate_percent": round(success_rate, 2),
        "awaiting_retry": awaiting_retry,
        "permanently_failed": status_counts[SyncLogStatus.FAILED_PERMANENTLY.value],
    }


PURGE_CHUNK_SIZE = 500


def purge_sync_logs(cutoff: datetime, execute: bool = True) -> int:
    """
    Delete ledger rows created before cutoff.

    Kept regardless of age: each design request's latest row (highest id), so
    reconcile_sync_status() still has a row to project from, and rows still
    awaiting a retry. Kept rows pointing at purged rows through parent_id or
    superseded_by_id have the link cleared; a cleared superseded_by_id also
    clears next_retry_at so the row never becomes due again.

    Returns:
        Number of rows deleted (or that would be deleted when execute is False)
    """
    latest_ids = select(func.max(SyncLog.id)).group_by(SyncLog.design_request_id)
    awaiting_retry = and_(
        SyncLog.status.in_(RETRYABLE_STATUSES),
        SyncLog.superseded_by_id.is_(None),
        SyncLog.next_retry_at.isnot(None),
    )
    doomed_ids = [
        row.id
        for row in SyncLog.query.with_entities(SyncLog.id).filter(
            SyncLog.created_at < cutoff,
            SyncLog.id.notin_(latest_ids),
            ~awaiting_retry,
        )
    ]
    if not execute or not doomed_ids:
        return len(doomed_ids)

    for start in range(0, len(doomed_ids), PURGE_CHUNK_SIZE):
        chunk = doomed_ids[start:start + PURGE_CHUNK_SIZE]
        SyncLog.query.filter(SyncLog.parent_id.in_(chunk)).update(
            {"parent_id": None}, synchronize_session=False
        )
        SyncLog.query.filter(SyncLog.superseded_by_id.in_(chunk)).update(
            {"superseded_by_id": None, "next_retry_at": None}, synchronize_session=False
        )
    for start in range(0, len(doomed_ids), PURGE_CHUNK_SIZE):
        chunk = doomed_ids[start:start + PURGE_CHUNK_SIZE]
        SyncLog.query.filter(SyncLog.id.in_(chunk)).delete(synchronize_session=False)
    _commit("purge")

    logger.info("Purged old sync logs", cutoff=cutoff.isoformat(), deleted=len(doomed_ids))
    return len(doomed_ids)
