"""
API routes for design requests, Trello sync and the audit trail.
"""
from flask import Response, jsonify, request

from designhub.api import api_bp
from designhub.auth.utils import (
    can_access_client,
    can_view_user_activity,
    get_current_user,
    login_required,
    staff_required,
)
from designhub.datetime_utils import parse_iso_datetime
from designhub.errors import (
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    SyncError,
    SyncStateError,
)
from designhub.logging_config import get_logger
from designhub.models import Client, SyncLogStatus, User, activity_logs_to_dataframe, db, sync_logs_to_dataframe
from designhub.services.activity_log_service import MAX_PAGE_SIZE, ActivityLogService
from designhub.services.design_request_service import DesignRequestService
from designhub.trello import boards, ledger
from designhub.trello.api import get_agency_trello_client
from designhub.trello.sweeper import process_failed_syncs
from designhub.trello.sync import sync_card

logger = get_logger(__name__)

ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (ConfigurationError, 422),
    (SyncStateError, 409),
    (ProviderError, 502),
    (PersistenceError, 500),
)

DEFAULT_PAGE_SIZE = 50
EXPORT_ROW_LIMIT = 10000


def _sync_error_response(e: SyncError):
    status_code = 500
    for error_class, code in ERROR_STATUS_CODES:
        if isinstance(e, error_class):
            status_code = code
            break
    details = e.to_dict() if isinstance(e, ProviderError) else None
    return jsonify({"error": str(e), "details": details}), status_code


def _pagination():
    limit = request.args.get("limit", DEFAULT_PAGE_SIZE, type=int)
    offset = request.args.get("offset", 0, type=int)
    return max(1, min(limit, MAX_PAGE_SIZE)), max(0, offset)


def _date_filters():
    return {
        "start_date": parse_iso_datetime(request.args.get("start_date")),
        "end_date": parse_iso_datetime(request.args.get("end_date")),
    }


def _scope_client_id(user):
    """Staff query across tenants; everyone else only sees their own client."""
    if user.is_staff:
        return None
    return user.client_id if user.client_id is not None else -1


def _sync_log_filters():
    status = request.args.get("status")
    filters = {
        "client_id": request.args.get("client_id", type=int),
        "sync_type": request.args.get("sync_type"),
        "operation": request.args.get("operation"),
        "status": SyncLogStatus(status) if status else None,
        "design_request_id": request.args.get("design_request_id", type=int),
    }
    filters.update(_date_filters())
    return filters


def _csv_response(df, filename):
    return Response(
        df.to_csv(index=False),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# ----------------------------------------------------------------------
# Design requests
# ----------------------------------------------------------------------

@api_bp.route("/design-requests", methods=["POST"])
@login_required
def submit_design_request():
    """Submit a design request; the Trello card is attempted but never blocks submission."""
    try:
        user = get_current_user()
        result = DesignRequestService.submit(request.get_json(silent=True) or {}, user)
        return jsonify(result), 201
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except SyncError as e:
        return _sync_error_response(e)
    except Exception as e:
        logger.error("Error in POST /api/design-requests", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/design-requests/<int:design_request_id>", methods=["GET"])
@login_required
def get_design_request(design_request_id):
    try:
        user = get_current_user()
        design_request = DesignRequestService.get(design_request_id)
        if not can_access_client(user, design_request.client_id):
            return jsonify({"error": "Access denied"}), 403

        data = design_request.to_dict()
        data["sync_logs"] = [log.to_dict() for log in design_request.sync_logs.limit(MAX_PAGE_SIZE).all()]
        return jsonify(data), 200
    except SyncError as e:
        return _sync_error_response(e)
    except Exception as e:
        logger.error("Error in GET /api/design-requests", design_request_id=design_request_id, error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/design-requests/<int:design_request_id>/sync", methods=["POST"])
@staff_required
def sync_design_request(design_request_id):
    """
    Run a card sync by hand.

    Body: {"operation": "create" | "update" | "comment", "update_data": {...}, "text": "..."}
    """
    try:
        body = request.get_json(silent=True) or {}
        operation = body.get("operation", "create")
        update_data = body.get("update_data")
        if body.get("text") is not None:
            update_data = dict(update_data or {}, text=body["text"])

        result = sync_card(design_request_id, operation, update_data)
        return jsonify(result), 200
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except SyncError as e:
        return _sync_error_response(e)
    except Exception as e:
        logger.error("Error in manual sync", design_request_id=design_request_id, error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


# ----------------------------------------------------------------------
# Sync ledger
# ----------------------------------------------------------------------

@api_bp.route("/sync-logs", methods=["GET"])
@login_required
def list_sync_logs():
    try:
        user = get_current_user()
        limit, offset = _pagination()
        filters = _sync_log_filters()
        query = ledger.query_sync_logs(filters, scope_client_id=_scope_client_id(user))

        total = query.count()
        logs = query.offset(offset).limit(limit).all()
        return jsonify({
            "logs": [log.to_dict() for log in logs],
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(logs) < total,
        }), 200
    except ValueError as e:
        return jsonify({"error": f"Invalid filter: {e}"}), 400
    except Exception as e:
        logger.error("Error in GET /api/sync-logs", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/sync-logs/export", methods=["GET"])
@login_required
def export_sync_logs():
    try:
        user = get_current_user()
        query = ledger.query_sync_logs(_sync_log_filters(), scope_client_id=_scope_client_id(user))
        df = sync_logs_to_dataframe(query.limit(EXPORT_ROW_LIMIT).all())
        return _csv_response(df, "sync_logs.csv")
    except ValueError as e:
        return jsonify({"error": f"Invalid filter: {e}"}), 400
    except Exception as e:
        logger.error("Error exporting sync logs", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/sync-logs/stats", methods=["GET"])
@login_required
def sync_log_stats():
    try:
        user = get_current_user()
        query = ledger.query_sync_logs(_sync_log_filters(), scope_client_id=_scope_client_id(user))
        return jsonify(ledger.sync_log_stats(query)), 200
    except ValueError as e:
        return jsonify({"error": f"Invalid filter: {e}"}), 400
    except Exception as e:
        logger.error("Error getting sync log stats", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/sync/process-failed", methods=["POST"])
@staff_required
def run_sweeper():
    try:
        body = request.get_json(silent=True) or {}
        batch_size = body.get("batch_size")
        if batch_size is not None:
            if isinstance(batch_size, bool):
                raise ValueError("batch_size must be an integer")
            batch_size = int(batch_size)
        summary = process_failed_syncs(batch_size=batch_size)
        return jsonify(summary), 200
    except (TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid batch_size: {e}"}), 400
    except Exception as e:
        logger.error("Error running failed sync sweep", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/sync/reconcile", methods=["POST"])
@staff_required
def reconcile_sync_status():
    """Recompute sync_status from the ledger. Dry run unless {"execute": true}."""
    try:
        body = request.get_json(silent=True) or {}
        execute = bool(body.get("execute", False))

        design_request_id = body.get("design_request_id")
        if design_request_id is not None:
            design_request = DesignRequestService.get(design_request_id)
            return jsonify(ledger.reconcile_sync_status(design_request, execute=execute)), 200

        return jsonify(ledger.reconcile_all(execute=execute)), 200
    except SyncError as e:
        return _sync_error_response(e)
    except Exception as e:
        logger.error("Error reconciling sync status", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


# ----------------------------------------------------------------------
# Activity log
# ----------------------------------------------------------------------

def _activity_filters():
    filters = {
        "client_id": request.args.get("client_id", type=int),
        "entity_type": request.args.get("entity_type"),
        "entity_id": request.args.get("entity_id"),
        "action": request.args.get("action"),
        "user_id": request.args.get("user_id", type=int),
    }
    filters.update(_date_filters())
    return filters


@api_bp.route("/activity-logs", methods=["GET"])
@login_required
def list_activity_logs():
    try:
        user = get_current_user()
        limit, offset = _pagination()
        query = ActivityLogService.query(_activity_filters(), scope_client_id=_scope_client_id(user))

        total = query.count()
        logs = query.offset(offset).limit(limit).all()
        return jsonify({
            "logs": [log.to_dict() for log in logs],
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(logs) < total,
        }), 200
    except ValueError as e:
        return jsonify({"error": f"Invalid filter: {e}"}), 400
    except Exception as e:
        logger.error("Error in GET /api/activity-logs", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/activity-logs/export", methods=["GET"])
@login_required
def export_activity_logs():
    try:
        user = get_current_user()
        query = ActivityLogService.query(_activity_filters(), scope_client_id=_scope_client_id(user))
        df = activity_logs_to_dataframe(query.limit(EXPORT_ROW_LIMIT).all())
        return _csv_response(df, "activity_logs.csv")
    except ValueError as e:
        return jsonify({"error": f"Invalid filter: {e}"}), 400
    except Exception as e:
        logger.error("Error exporting activity logs", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/activity-logs/stats", methods=["GET"])
@login_required
def activity_log_stats():
    """Action/entity/daily breakdowns plus sync status counts; last 30 days unless dated."""
    try:
        user = get_current_user()
        filters = {"client_id": request.args.get("client_id", type=int)}
        filters.update(_date_filters())
        return jsonify(ActivityLogService.stats(filters, scope_client_id=_scope_client_id(user))), 200
    except ValueError as e:
        return jsonify({"error": f"Invalid filter: {e}"}), 400
    except Exception as e:
        logger.error("Error getting activity stats", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/users/<int:user_id>/activity-summary", methods=["GET"])
@login_required
def user_activity_summary(user_id):
    try:
        target = db.session.get(User, user_id)
        if target is None:
            return jsonify({"error": f"User {user_id} not found"}), 404
        if not can_view_user_activity(get_current_user(), target):
            return jsonify({"error": "Insufficient permissions to view user activity"}), 403
        return jsonify(ActivityLogService.user_summary(user_id, _date_filters())), 200
    except ValueError as e:
        return jsonify({"error": f"Invalid filter: {e}"}), 400
    except SyncError as e:
        return _sync_error_response(e)
    except Exception as e:
        logger.error("Error getting user activity summary", user_id=user_id, error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/activity-logs/cleanup", methods=["POST"])
@staff_required
def cleanup_old_logs():
    """
    Purge activity and sync logs past the retention window. Platform admins only.

    Body: {"retention_days": 365, "execute": true}
    """
    try:
        user = get_current_user()
        if user.role != "platform_admin":
            return jsonify({"error": "Only platform admins can clean up logs"}), 403

        body = request.get_json(silent=True) or {}
        retention_days = body.get("retention_days")
        if isinstance(retention_days, bool):
            raise ValueError("retention_days must be an integer")
        result = ActivityLogService.cleanup_old_logs(
            retention_days=retention_days,
            user=user,
            execute=bool(body.get("execute", True)),
        )
        return jsonify(result), 200
    except (TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid retention_days: {e}"}), 400
    except SyncError as e:
        return _sync_error_response(e)
    except Exception as e:
        logger.error("Error cleaning up old logs", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


# ----------------------------------------------------------------------
# Trello boards
# ----------------------------------------------------------------------

@api_bp.route("/clients/<int:client_id>/trello-board", methods=["POST"])
@staff_required
def setup_trello_board(client_id):
    """
    Provision a board for a client.

    Body: {"setup_trello": true, "board_name": "...", "invite_members": ["a@b.com", {"email": ..., "role": ...}]}
    """
    try:
        client = db.session.get(Client, client_id)
        if client is None:
            return jsonify({"error": f"Client {client_id} not found"}), 404

        body = request.get_json(silent=True) or {}
        result = boards.setup_client_board(
            client,
            setup_trello=body.get("setup_trello", True),
            invite_members=body.get("invite_members"),
            board_name=body.get("board_name"),
        )
        if not result["success"]:
            return jsonify(result), 502
        return jsonify(result), 200 if result.get("skipped") else 201
    except Exception as e:
        logger.error("Error setting up Trello board", client_id=client_id, error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/clients/<int:client_id>/trello-board", methods=["GET"])
@login_required
def get_trello_board_status(client_id):
    try:
        if not can_access_client(get_current_user(), client_id):
            return jsonify({"error": "Access denied"}), 403
        return jsonify(boards.check_board_status(client_id)), 200
    except SyncError as e:
        return _sync_error_response(e)
    except Exception as e:
        logger.error("Error getting Trello board status", client_id=client_id, error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/clients/<int:client_id>/trello-board/reset", methods=["POST"])
@staff_required
def reset_trello_board(client_id):
    try:
        return jsonify(boards.reset_client_board(client_id)), 201
    except SyncError as e:
        return _sync_error_response(e)
    except Exception as e:
        logger.error("Error resetting Trello board", client_id=client_id, error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/trello/boards", methods=["GET"])
@staff_required
def list_trello_boards():
    try:
        found = boards.get_boards_for_client(request.args.get("organization_id"))
        return jsonify({"boards": found, "total": len(found)}), 200
    except SyncError as e:
        return _sync_error_response(e)
    except Exception as e:
        logger.error("Error listing Trello boards", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/trello/health", methods=["GET"])
@staff_required
def trello_health():
    try:
        api = get_agency_trello_client()
    except ConfigurationError as e:
        return jsonify({"configured": False, "healthy": False, "error": str(e)}), 200
    healthy = api.is_healthy()
    return jsonify({"configured": True, "healthy": healthy}), 200 if healthy else 503
