"""
Trello card synchronization for design requests.

sync_card() runs one attempt end to end:

1. load the design request and its client (NotFoundError)
2. validate the client's Trello credentials (ConfigurationError), before any
   ledger row exists
3. build the operation payload
4. open an in_progress SyncLog row
5. call Trello, then close the row as completed or failed, project the
   outcome onto the design request, and re-raise failures

Callers that trigger a sync as a side effect (request submission) must catch
SyncError; a failed card sync never fails the business operation.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from designhub.datetime_utils import to_trello_timestamp
from designhub.errors import (
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    SyncStateError,
)
from designhub.logging_config import get_logger
from designhub.models import (
    DesignRequest,
    RequestSyncStatus,
    SyncLog,
    SyncOperationType,
    db,
)
from designhub.services.activity_log_service import ActivityLogService
from designhub.trello import ledger
from designhub.trello.api import UPDATABLE_CARD_FIELDS, TrelloAPI, require_credentials
from designhub.trello.card_fields import build_card_description, build_card_fields, build_card_title

logger = get_logger(__name__)

DEFAULT_LIST_NAME = "In Progress"

ACTIVITY_ACTIONS = {
    SyncOperationType.CREATE: "trello_card_created",
    SyncOperationType.UPDATE: "trello_card_updated",
    SyncOperationType.COMMENT: "trello_comment_added",
}


def _normalize_operation(operation) -> SyncOperationType:
    if isinstance(operation, SyncOperationType):
        return operation
    try:
        return SyncOperationType(str(operation).lower())
    except ValueError:
        raise ValueError(
            f"Unsupported sync operation: {operation!r} (expected create, update or comment)"
        ) from None


def _load_design_request(design_request_id) -> DesignRequest:
    design_request = db.session.get(DesignRequest, design_request_id)
    if design_request is None:
        raise NotFoundError(f"Design request {design_request_id} not found")
    if design_request.client is None:
        raise NotFoundError(f"Client for design request {design_request_id} not found")
    return design_request


def resolve_list_id(trello_config: Dict[str, Any], api: TrelloAPI) -> str:
    """
    Pick the list a new card goes into.

    Order: explicit list_id, then default_list_id, then the board list named
    default_list_name ("In Progress" unless configured), then the first list
    Trello returns for the board.
    """
    configured = trello_config.get("list_id") or trello_config.get("default_list_id")
    if configured:
        return configured

    lists = [lst for lst in api.list_lists(trello_config["board_id"]) if not lst.get("closed")]
    if not lists:
        raise ConfigurationError(f"Trello board {trello_config['board_id']} has no open lists")

    wanted = (trello_config.get("default_list_name") or DEFAULT_LIST_NAME).strip().lower()
    for lst in lists:
        if (lst.get("name") or "").strip().lower() == wanted:
            return lst["id"]

    logger.info(
        "No named default list on board, using first list",
        board_id=trello_config["board_id"],
        list_id=lists[0]["id"],
    )
    return lists[0]["id"]


def build_update_payload(update_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only the card fields the caller explicitly supplied."""
    update_data = update_data or {}
    payload = {}
    for key in UPDATABLE_CARD_FIELDS:
        if key not in update_data or update_data[key] is None:
            continue
        value = update_data[key]
        if key == "due" and value != "":
            value = to_trello_timestamp(value)
        payload[key] = value
    if not payload:
        raise ValueError(f"update requires at least one of: {', '.join(UPDATABLE_CARD_FIELDS)}")
    return payload


def _claim_for_create(design_request: DesignRequest) -> RequestSyncStatus:
    """
    Atomically mark a card-less request in_progress.

    Only one caller can move a request out of pending/failed, so concurrent
    creates for the same request cannot both reach Trello.

    Returns:
        The sync_status the request had before the claim
    """
    previous = design_request.sync_status
    claimed = DesignRequest.query.filter(
        DesignRequest.id == design_request.id,
        DesignRequest.trello_card_id.is_(None),
        DesignRequest.sync_status.in_([RequestSyncStatus.PENDING, RequestSyncStatus.FAILED]),
    ).update({"sync_status": RequestSyncStatus.IN_PROGRESS}, synchronize_session=False)
    db.session.commit()
    db.session.refresh(design_request)

    if claimed != 1:
        raise SyncStateError(
            f"Design request {design_request.short_id} already has a card or a create in progress"
        )
    return previous


def _release_claim(design_request: DesignRequest, previous: RequestSyncStatus):
    try:
        design_request.sync_status = previous
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Failed to release create claim", design_request_id=design_request.id, error=str(e))


def _project_success(design_request: DesignRequest, operation: SyncOperationType, response: Dict[str, Any]):
    try:
        if operation == SyncOperationType.CREATE:
            design_request.trello_card_id = response.get("id")
            design_request.trello_card_url = response.get("url") or response.get("shortUrl")
        design_request.sync_status = RequestSyncStatus.SYNCED
        design_request.sync_error = None
        design_request.last_sync_at = datetime.utcnow()
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        # The ledger row already records the card; reconcile_sync_status() restores it
        err = PersistenceError(f"Failed to update design request {design_request.id} after sync: {e}")
        logger.error(
            "Design request update failed after successful Trello call",
            design_request_id=design_request.id,
            operation=operation.value,
            trello_card_id=response.get("id"),
            error=str(err),
        )


def _project_failure(design_request: DesignRequest, error_message: str):
    try:
        design_request.sync_status = RequestSyncStatus.FAILED
        design_request.sync_error = error_message
        design_request.sync_attempts = (design_request.sync_attempts or 0) + 1
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(
            "Failed to record sync failure on design request",
            design_request_id=design_request.id,
            error=str(e),
        )


def _call_trello(api: TrelloAPI, operation: SyncOperationType, design_request: DesignRequest,
                 payload: Dict[str, Any], trello_config: Dict[str, Any]) -> Dict[str, Any]:
    if operation == SyncOperationType.CREATE:
        if not payload.get("idList"):
            payload = dict(payload, idList=resolve_list_id(trello_config, api))
        return api.create_card(payload)
    if operation == SyncOperationType.UPDATE:
        return api.update_card(design_request.trello_card_id, payload)
    return api.add_comment(design_request.trello_card_id, payload["text"])


def sync_card(
    design_request_id,
    operation,
    update_data: Optional[Dict[str, Any]] = None,
    api: Optional[TrelloAPI] = None,
    retry_of: Optional[SyncLog] = None,
) -> Dict[str, Any]:
    """
    Run one create/update/comment sync attempt for a design request.

    Args:
        design_request_id: DesignRequest primary key
        operation: 'create', 'update' or 'comment' (or SyncOperationType)
        update_data: For update, any of name/desc/due/idList/closed; for
            comment, {"text": ...}. Ignored for create.
        api: TrelloAPI to use; built from the client's trello_config if omitted
        retry_of: The failed SyncLog row a sweeper retry is replaying

    Returns:
        dict with success, operation, sync_log_id, trello_card (provider JSON)

    Raises:
        NotFoundError, ConfigurationError, SyncStateError, ValueError before
        any ledger row is written; ProviderError (or any other failure of the
        attempt) after the ledger row has been closed as failed.
    """
    operation = _normalize_operation(operation)
    design_request = _load_design_request(design_request_id)
    trello_config = require_credentials(design_request.client.trello_config)

    if operation == SyncOperationType.CREATE:
        if design_request.trello_card_id:
            raise SyncStateError(
                f"Design request {design_request.short_id} already has Trello card {design_request.trello_card_id}"
            )
        list_id = trello_config.get("list_id") or trello_config.get("default_list_id")
        payload = build_card_fields(design_request, trello_config, list_id)
    elif operation == SyncOperationType.UPDATE:
        if not design_request.trello_card_id:
            raise SyncStateError(f"No Trello card associated with request {design_request.short_id}")
        payload = build_update_payload(update_data)
    else:
        if not design_request.trello_card_id:
            raise SyncStateError(f"No Trello card associated with request {design_request.short_id}")
        text = (update_data or {}).get("text")
        if not text or not str(text).strip():
            raise ValueError("comment requires non-empty text")
        payload = {"text": str(text).strip()}

    if api is None:
        api = TrelloAPI.from_config(trello_config)

    previous_status = None
    if operation == SyncOperationType.CREATE:
        previous_status = _claim_for_create(design_request)

    try:
        entry = ledger.create_sync_log(design_request, operation.value, payload, retry_of=retry_of)
    except PersistenceError:
        if previous_status is not None:
            _release_claim(design_request, previous_status)
        raise

    logger.info(
        "Trello sync attempt started",
        design_request_id=design_request.id,
        short_id=design_request.short_id,
        operation=operation.value,
        sync_log_id=entry.id,
        retry_of=retry_of.id if retry_of else None,
    )

    try:
        response = _call_trello(api, operation, design_request, payload, trello_config)
    except Exception as err:
        error_message = str(err)
        try:
            ledger.apply_failure(entry, error_message, entry.retry_count)
        except PersistenceError as ledger_err:
            logger.error("Could not record failed sync attempt", sync_log_id=entry.id, error=str(ledger_err))
        _project_failure(design_request, error_message)
        logger.error(
            "Trello sync attempt failed",
            design_request_id=design_request.id,
            operation=operation.value,
            sync_log_id=entry.id,
            error=error_message,
            error_type=type(err).__name__,
        )
        raise

    card_id = response.get("id") if operation != SyncOperationType.COMMENT else design_request.trello_card_id
    try:
        ledger.mark_completed(entry, response, trello_card_id=card_id)
    except PersistenceError as ledger_err:
        logger.error("Could not record completed sync attempt", sync_log_id=entry.id, error=str(ledger_err))
    _project_success(design_request, operation, response)

    details = {"trello_card_id": design_request.trello_card_id or card_id, "sync_log_id": entry.id}
    if operation == SyncOperationType.CREATE:
        details["trello_card_url"] = design_request.trello_card_url
    elif operation == SyncOperationType.UPDATE:
        details["updated_fields"] = sorted(payload)
    else:
        details["comment_id"] = response.get("id")
    ActivityLogService.log_activity(
        "design_request",
        design_request.id,
        ACTIVITY_ACTIONS[operation],
        details,
        client_id=design_request.client_id,
    )

    logger.info(
        "Trello sync attempt completed",
        design_request_id=design_request.id,
        operation=operation.value,
        sync_log_id=entry.id,
        trello_card_id=card_id,
    )

    return {
        "success": True,
        "operation": operation.value,
        "sync_log_id": entry.id,
        "trello_card": response,
        "message": f"Trello {operation.value} completed successfully!",
    }


def create_trello_card(design_request_id, api: Optional[TrelloAPI] = None, retry_of: Optional[SyncLog] = None):
    return sync_card(design_request_id, SyncOperationType.CREATE, api=api, retry_of=retry_of)


def update_trello_card(design_request_id, update_data, api: Optional[TrelloAPI] = None,
                       retry_of: Optional[SyncLog] = None):
    return sync_card(design_request_id, SyncOperationType.UPDATE, update_data, api=api, retry_of=retry_of)


def add_trello_comment(design_request_id, text, api: Optional[TrelloAPI] = None,
                       retry_of: Optional[SyncLog] = None):
    return sync_card(design_request_id, SyncOperationType.COMMENT, {"text": text}, api=api, retry_of=retry_of)


def refresh_card_content(design_request_id, api: Optional[TrelloAPI] = None, retry_of: Optional[SyncLog] = None):
    """Push the request's current title and description to its card."""
    design_request = _load_design_request(design_request_id)
    return update_trello_card(
        design_request_id,
        {"name": build_card_title(design_request), "desc": build_card_description(design_request)},
        api=api,
        retry_of=retry_of,
    )
