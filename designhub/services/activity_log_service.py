from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from designhub.config import Config as cfg
from designhub.errors import NotFoundError, PersistenceError
from designhub.logging_config import get_logger

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_STATS_WINDOW = timedelta(days=30)
RECENT_ACTIVITY_LIMIT = 10


class ActivityLogService:
    """Service for the audit activity trail"""

    @staticmethod
    def log_activity(entity_type, entity_id, action, details=None, user=None, client_id=None):
        """
        Record an audit event. Fire-and-forget: failures are logged, never raised.

        Args:
            entity_type: e.g. 'design_request', 'client'
            entity_id: Id of the entity the action applies to
            action: e.g. 'created', 'trello_card_created'
            details: JSON-serializable dict
            user: Acting user; defaults to the session user when in a request
            client_id: Tenant to attribute the event to; defaults to the user's client

        Returns:
            ActivityLog or None if the write failed
        """
        from designhub.models import ActivityLog, db
        from designhub.auth.utils import get_current_user
        from designhub.trello.ledger import make_json_safe

        try:
            if user is None:
                user = get_current_user()

            activity = ActivityLog(
                client_id=client_id if client_id is not None else (user.client_id if user else None),
                user_id=user.id if user else None,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                action=action,
                details=make_json_safe(details or {}),
                ip_address=_request_attr("remote_addr"),
                user_agent=_request_user_agent(),
                created_at=datetime.utcnow(),
            )
            db.session.add(activity)
            db.session.commit()
            return activity

        except Exception as e:
            logger.warning(
                "Failed to log activity",
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                error=str(e),
                error_type=type(e).__name__,
            )
            try:
                db.session.rollback()
            except Exception as rollback_error:
                logger.warning("Rollback after activity log failure failed", error=str(rollback_error))
            return None

    @staticmethod
    def query(filters, scope_client_id=None):
        """
        Build the activity log query for the given filters.

        Args:
            filters: dict with optional client_id, entity_type, entity_id, action,
                user_id, start_date, end_date (datetimes)
            scope_client_id: When set, results are restricted to this client
                regardless of filters

        Returns:
            SQLAlchemy query ordered newest first
        """
        from designhub.models import ActivityLog

        query = ActivityLog.query
        client_id = scope_client_id if scope_client_id is not None else filters.get("client_id")
        if client_id is not None:
            query = query.filter(ActivityLog.client_id == client_id)

        for field in ("entity_type", "entity_id", "action", "user_id"):
            if filters.get(field) is not None:
                query = query.filter(getattr(ActivityLog, field) == filters[field])

        if filters.get("start_date"):
            query = query.filter(ActivityLog.created_at >= filters["start_date"])
        if filters.get("end_date"):
            query = query.filter(ActivityLog.created_at <= filters["end_date"])

        return query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())

    @staticmethod
    def stats(filters, scope_client_id=None, now=None):
        """
        Activity and sync breakdowns over a date range (default: last 30 days).

        Args:
            filters: dict with optional client_id, start_date, end_date
            scope_client_id: When set, both activity and sync counts are
                restricted to this client regardless of filters

        Returns:
            dict with total_activities, date_range, action_breakdown,
            entity_breakdown, daily_activity (YYYY-MM-DD -> count, oldest
            first) and sync_status_breakdown
        """
        from designhub.trello.ledger import query_sync_logs

        end_date = filters.get("end_date") or now or datetime.utcnow()
        start_date = filters.get("start_date") or end_date - DEFAULT_STATS_WINDOW
        window = {"client_id": filters.get("client_id"), "start_date": start_date, "end_date": end_date}

        activities = ActivityLogService.query(window, scope_client_id=scope_client_id).all()
        daily = Counter(activity.created_at.date().isoformat() for activity in activities)
        sync_logs = query_sync_logs(window, scope_client_id=scope_client_id).all()

        return {
            "total_activities": len(activities),
            "date_range": {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            "action_breakdown": dict(Counter(activity.action for activity in activities)),
            "entity_breakdown": dict(Counter(activity.entity_type for activity in activities)),
            "daily_activity": dict(sorted(daily.items())),
            "sync_status_breakdown": dict(Counter(log.status.value for log in sync_logs)),
        }

    @staticmethod
    def user_summary(user_id, filters=None, now=None):
        """
        One user's profile and activity breakdown over a date range
        (default: last 30 days), with their most recent events.

        Raises:
            NotFoundError: if the user does not exist
        """
        from designhub.models import ActivityLog, User, db

        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        filters = filters or {}
        end_date = filters.get("end_date") or now or datetime.utcnow()
        start_date = filters.get("start_date") or end_date - DEFAULT_STATS_WINDOW

        activities = (
            ActivityLog.query.filter(
                ActivityLog.user_id == user.id,
                ActivityLog.created_at >= start_date,
                ActivityLog.created_at <= end_date,
            )
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .all()
        )

        return {
            "user": {
                "id": user.id,
                "email": user.email,
                "full_name": user.full_name,
                "role": user.role,
                "created_at": user.created_at.isoformat() if user.created_at else None,
                "client": {"id": user.client.id, "name": user.client.name} if user.client else None,
            },
            "activity_summary": {
                "total_activities": len(activities),
                "actions_breakdown": dict(Counter(activity.action for activity in activities)),
                "entities_breakdown": dict(Counter(activity.entity_type for activity in activities)),
                "recent_activities": [activity.to_dict() for activity in activities[:RECENT_ACTIVITY_LIMIT]],
            },
            "date_range": {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        }

    @staticmethod
    def cleanup_old_logs(retention_days=None, user=None, execute=True, now=None):
        """
        Purge activity and sync log rows older than the retention window.

        Sync log rows that reconciliation or the sweeper still needs are kept
        (see ledger.purge_sync_logs). An executed cleanup is itself recorded
        as a logs_cleanup activity.

        Args:
            retention_days: Days to keep; defaults to LOG_RETENTION_DAYS (365)
            user: Acting user recorded on the logs_cleanup event
            execute: False only counts what would be deleted

        Raises:
            ValueError: retention_days below 1
            PersistenceError: the deletes could not be committed
        """
        from designhub.models import ActivityLog, db
        from designhub.trello.ledger import purge_sync_logs

        retention_days = cfg.LOG_RETENTION_DAYS if retention_days is None else int(retention_days)
        if retention_days < 1:
            raise ValueError("retention_days must be at least 1")
        cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)

        old_activities = ActivityLog.query.filter(ActivityLog.created_at < cutoff)
        try:
            if execute:
                deleted_activity_logs = old_activities.delete(synchronize_session=False)
            else:
                deleted_activity_logs = old_activities.count()
            deleted_sync_logs = purge_sync_logs(cutoff, execute=execute)
            if execute:
                db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f"Failed to clean up old logs: {e}") from e

        result = {
            "retention_days": retention_days,
            "cutoff_date": cutoff.isoformat(),
            "deleted_activity_logs": deleted_activity_logs,
            "deleted_sync_logs": deleted_sync_logs,
            "executed": execute,
        }
        if execute:
            logger.info("Old logs cleaned up", **result)
            ActivityLogService.log_activity(
                "system",
                None,
                "logs_cleanup",
                {key: value for key, value in result.items() if key != "executed"},
                user=user,
            )
        return result


def _request_attr(name):
    from flask import has_request_context, request

    if not has_request_context():
        return None
    return getattr(request, name, None)


def _request_user_agent():
    from flask import has_request_context, request

    if not has_request_context():
        return None
    return request.headers.get("User-Agent")
