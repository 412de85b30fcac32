"""
Trello board provisioning for newly onboarded clients.

Boards are created on the agency's Trello account with the fixed onboarding
list template, then linked to the client record: board id/url, the list id
map, and board_id/list_id merged into the client's trello_config so card sync
targets the new board.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from designhub.errors import NotFoundError, PersistenceError, SyncError
from designhub.logging_config import get_logger
from designhub.models import Client, db
from designhub.services.activity_log_service import ActivityLogService
from designhub.trello.api import DEFAULT_BOARD_LISTS, TrelloAPI, get_agency_trello_client, list_key

logger = get_logger(__name__)

DEFAULT_LIST_KEY = "in_progress"


def default_board_name(client: Client, reset: bool = False) -> str:
    name = f"{client.name} - Project Board"
    return f"{name} (Reset)" if reset else name


def select_default_list(lists: Dict[str, str]) -> Optional[str]:
    """
    The list new cards go into: "In Progress", else the first template list
    present, else whatever list exists.
    """
    if not lists:
        return None
    if lists.get(DEFAULT_LIST_KEY):
        return lists[DEFAULT_LIST_KEY]
    for list_name in DEFAULT_BOARD_LISTS:
        key = list_key(list_name)
        if lists.get(key):
            return lists[key]
    return next(iter(lists.values()))


def _link_board(client: Client, board: Dict[str, Any], lists: Dict[str, str]) -> Optional[str]:
    default_list_id = select_default_list(lists)

    trello_config = dict(client.trello_config or {})
    trello_config["board_id"] = board["id"]
    if default_list_id:
        trello_config["list_id"] = default_list_id

    client.trello_board_id = board["id"]
    client.trello_board_url = board.get("url")
    client.trello_list_ids = lists
    client.trello_config = trello_config
    client.trello_setup_completed = True

    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise PersistenceError(f"Failed to store Trello board on client {client.id}: {e}") from e
    return default_list_id


def invite_team_members(board_id: str, members: Iterable, api: TrelloAPI) -> Dict[str, Any]:
    """
    Add members to a board. One failed invitation never stops the others.

    Args:
        members: emails, or dicts with email and optional role (default 'normal')

    Returns:
        {"successful": [...], "failed": [...], "errors": [...]}
    """
    results = {"successful": [], "failed": [], "errors": []}

    for member in members or []:
        if isinstance(member, dict):
            email, role = member.get("email"), member.get("role") or "normal"
        else:
            email, role = member, "normal"
        if not email:
            continue

        try:
            api.add_member_to_board(board_id, email, role)
            results["successful"].append({"email": email, "role": role})
        except SyncError as e:
            logger.warning("Failed to invite member to Trello board", board_id=board_id, role=role, error=str(e))
            results["failed"].append({"email": email, "role": role})
            results["errors"].append({"email": email, "error": str(e)})

    return results


def setup_client_board(client: Client, setup_trello: bool = True, invite_members=None,
                       board_name: Optional[str] = None, api: Optional[TrelloAPI] = None) -> Dict[str, Any]:
    """
    Create and link a Trello board for a client.

    Failures are recorded as a trello_board_setup_failed activity and returned
    in the result rather than raised, so client onboarding can continue
    without Trello. A board that was created but could not be stored on the
    client is still returned (data.linked False), invited to, and recorded in
    the trello_board_created activity.

    Args:
        client: Client to provision
        setup_trello: False skips provisioning entirely (no network calls)
        invite_members: Extra member emails or {email, role} dicts
        board_name: Overrides "{client name} - Project Board"
        api: Agency TrelloAPI; built from TRELLO_API_KEY/TRELLO_TOKEN if omitted
    """
    if not setup_trello:
        logger.info("Trello board setup skipped", client_id=client.id)
        return {"success": True, "skipped": True, "message": "Trello board setup skipped"}

    try:
        api = api or get_agency_trello_client()
        name = board_name or default_board_name(client)
        created = api.create_board(name, desc=f"Project board for {client.name}")
        board, lists = created["board"], created["lists"]

        # The board exists on Trello from here on; a failed local link must not lose it
        link_error = None
        try:
            default_list_id = _link_board(client, board, lists)
            logger.info(
                "Trello board linked to client",
                client_id=client.id,
                board_id=board["id"],
                default_list_id=default_list_id,
            )
        except PersistenceError as e:
            link_error = str(e)
            logger.error(
                "Trello board created but not stored on client",
                client_id=client.id,
                board_id=board["id"],
                board_url=board.get("url"),
                error=link_error,
            )

        members = []
        if client.owner_email:
            members.append({"email": client.owner_email, "role": "admin"})
        members.extend(invite_members or [])
        invitations = invite_team_members(board["id"], members, api)

        details = {
            "board_id": board["id"],
            "board_name": board.get("name") or name,
            "board_url": board.get("url"),
            "lists": lists,
            "lists_created": len(lists),
            "members_invited": len(invitations["successful"]),
            "members_failed": len(invitations["failed"]),
            "linked_to_client": link_error is None,
        }
        if link_error:
            details["client_update_error"] = link_error
        ActivityLogService.log_activity("client", client.id, "trello_board_created", details, client_id=client.id)

        result = {
            "success": True,
            "data": {
                "board": board,
                "lists": lists,
                "board_url": board.get("url"),
                "linked": link_error is None,
            },
            "invitations": invitations,
            "message": f"Trello board \"{board.get('name') or name}\" created successfully",
        }
        if link_error:
            result["warning"] = f"Board created but client record not updated: {link_error}"
        return result

    except SyncError as e:
        logger.error("Trello board setup failed", client_id=client.id, error=str(e), error_type=type(e).__name__)
        ActivityLogService.log_activity(
            "client",
            client.id,
            "trello_board_setup_failed",
            {"error": str(e)},
            client_id=client.id,
        )
        return {"success": False, "error": str(e), "message": "Failed to set up Trello board"}


def reset_client_board(client_id, api: Optional[TrelloAPI] = None) -> Dict[str, Any]:
    """
    Create a replacement board and repoint the client at it.

    The old board is left untouched on Trello; existing card URLs keep
    pointing at it.

    Raises:
        NotFoundError, ConfigurationError, ProviderError, PersistenceError
    """
    client = db.session.get(Client, client_id)
    if client is None:
        raise NotFoundError(f"Client {client_id} not found")

    api = api or get_agency_trello_client()
    old_board_id = client.trello_board_id

    created = api.create_board(default_board_name(client, reset=True), desc=f"Project board for {client.name}")
    board, lists = created["board"], created["lists"]
    try:
        _link_board(client, board, lists)
    except PersistenceError as e:
        logger.error("Reset board created but not stored on client", client_id=client_id, board_id=board["id"], error=str(e))
        ActivityLogService.log_activity(
            "client",
            client_id,
            "trello_board_reset_failed",
            {
                "old_board_id": old_board_id,
                "new_board_id": board["id"],
                "new_board_url": board.get("url"),
                "lists": lists,
                "error": str(e),
            },
            client_id=client_id,
        )
        raise

    ActivityLogService.log_activity(
        "client",
        client.id,
        "trello_board_reset",
        {"old_board_id": old_board_id, "new_board_id": board["id"], "reset_at": datetime.utcnow()},
        client_id=client.id,
    )
    logger.info("Trello board reset", client_id=client.id, old_board_id=old_board_id, new_board_id=board["id"])

    return {"success": True, "data": {"board": board, "lists": lists, "board_url": board.get("url")}}


def check_board_status(client_id) -> Dict[str, Any]:
    """Whether a client has a linked board, from stored state only."""
    client = db.session.get(Client, client_id)
    if client is None:
        raise NotFoundError(f"Client {client_id} not found")

    return {
        "has_board": bool(client.trello_board_id),
        "board_id": client.trello_board_id,
        "board_url": client.trello_board_url,
        "setup_completed": bool(client.trello_setup_completed),
        "lists": client.trello_list_ids or {},
    }


def get_boards_for_client(organization_id: Optional[str] = None, api: Optional[TrelloAPI] = None):
    """Boards visible to the agency account, optionally within one organization."""
    api = api or get_agency_trello_client()
    return api.get_boards(organization_id)
