import re
from typing import Any, Dict, List, Optional

import requests

from designhub.config import Config as cfg
from designhub.errors import ConfigurationError, ProviderError
from designhub.logging_config import get_logger

logger = get_logger(__name__)

# Lists created on every newly provisioned client board, in board order
DEFAULT_BOARD_LISTS = (
    "Welcome & Setup",
    "Requirements Gathering",
    "Design Brief",
    "In Progress",
    "Client Review",
    "Completed",
)

# Keys that update_card forwards to Trello
UPDATABLE_CARD_FIELDS = ("name", "desc", "due", "idList", "closed")


def list_key(list_name: str) -> str:
    """
    Snake-case key for a list name.

    "Welcome & Setup" -> "welcome_setup", "In Progress" -> "in_progress"
    """
    key = re.sub(r"[^a-z0-9]", "_", list_name.lower())
    return re.sub(r"_+", "_", key).strip("_")


def require_credentials(trello_config: Optional[Dict[str, Any]], require_board: bool = True) -> Dict[str, Any]:
    """
    Validate a client's trello_config before any network call.

    Raises:
        ConfigurationError: if api_key or token (or board_id, when required) is missing
    """
    trello_config = trello_config or {}
    required = ["api_key", "token"] + (["board_id"] if require_board else [])
    missing = [field for field in required if not str(trello_config.get(field) or "").strip()]
    if missing:
        raise ConfigurationError(
            f"Trello configuration not found for client (missing: {', '.join(missing)})"
        )
    return trello_config


class TrelloAPI:
    """
    Authenticated client for the Trello REST API.

    One instance per set of credentials. key/token are always sent as query
    parameters; request bodies are JSON. Every failure surfaces as
    ProviderError, with status_code 0 for network-level errors.
    """

    def __init__(
        self,
        api_key: str,
        token: str,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key
        self.token = token
        self.base_url = (base_url or cfg.TRELLO_API_BASE_URL).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else cfg.TRELLO_TIMEOUT_SECONDS

    @classmethod
    def from_config(cls, trello_config: Dict[str, Any], **kwargs) -> "TrelloAPI":
        """Build a client from a client's trello_config dict."""
        trello_config = require_credentials(trello_config, require_board=False)
        return cls(trello_config["api_key"], trello_config["token"], **kwargs)

    def __repr__(self):
        return f"<TrelloAPI {self.base_url}>"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{endpoint}"
        params = {"key": self.api_key, "token": self.token}
        kwargs = {"params": params, "timeout": self.timeout}

        if method == "GET":
            if data:
                params.update(data)
        else:
            kwargs["json"] = data or {}
            kwargs["headers"] = {"Content-Type": "application/json"}

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.RequestException as err:
            logger.error("Trello request failed", method=method, endpoint=endpoint, error=str(err))
            raise ProviderError(f"Trello API error: {err}", status_code=0) from err

        if not 200 <= response.status_code < 300:
            body = response.text
            logger.error(
                "Trello API error",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
                response=body[:500] if body else body,
            )
            raise ProviderError(
                f"Trello API error: {response.status_code} {body}",
                status_code=response.status_code,
                response_body=body,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as err:
            raise ProviderError(
                f"Trello API returned invalid JSON for {method} {endpoint}",
                status_code=response.status_code,
                response_body=response.text,
            ) from err

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    def create_card(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a card.

        Returns:
            The provider's card JSON (includes id and url)
        """
        payload = {key: value for key, value in fields.items() if value is not None}
        logger.info("Creating Trello card", list_id=payload.get("idList"))
        card = self._request("POST", "/cards", payload)
        logger.info("Trello card created", card_id=card.get("id"))
        return card

    def update_card(self, card_id: str, partial_fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update only the fields present in partial_fields.

        Keys outside name/desc/due/idList/closed and None values are dropped,
        so omitted fields stay untouched on Trello.
        """
        payload = {
            key: partial_fields[key]
            for key in UPDATABLE_CARD_FIELDS
            if key in partial_fields and partial_fields[key] is not None
        }
        logger.info("Updating Trello card", card_id=card_id, fields=sorted(payload))
        return self._request("PUT", f"/cards/{card_id}", payload)

    def add_comment(self, card_id: str, text: str) -> Dict[str, Any]:
        logger.info("Adding comment to Trello card", card_id=card_id)
        return self._request("POST", f"/cards/{card_id}/actions/comments", {"text": text})

    def get_card(self, card_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/cards/{card_id}")

    # ------------------------------------------------------------------
    # Boards and lists
    # ------------------------------------------------------------------

    def list_lists(self, board_id: str) -> List[Dict[str, Any]]:
        """Lists on a board, in the order Trello returns them."""
        lists = self._request("GET", f"/boards/{board_id}/lists")
        return [{"id": lst["id"], "name": lst.get("name"), "closed": lst.get("closed", False)} for lst in lists]

    def create_board(self, name: str, desc: str = "", lists=DEFAULT_BOARD_LISTS) -> Dict[str, Any]:
        """
        Create a board with the client onboarding list template.

        Returns:
            {"board": {"id", "name", "url"}, "lists": {snake_key: list_id}}
            where lists preserves template order.
        """
        logger.info("Creating Trello board", name=name)
        board = self._request("POST", "/boards", {"name": name, "desc": desc, "defaultLists": False})

        created = {}
        for list_name in lists:
            created_list = self._request("POST", "/lists", {"name": list_name, "idBoard": board["id"]})
            created[list_key(list_name)] = created_list["id"]

        logger.info("Trello board created", board_id=board["id"], lists_created=len(created))
        return {
            "board": {"id": board["id"], "name": board.get("name"), "url": board.get("url")},
            "lists": created,
        }

    def get_boards(self, organization_id: Optional[str] = None) -> List[Dict[str, Any]]:
        endpoint = f"/organizations/{organization_id}/boards" if organization_id else "/members/me/boards"
        boards = self._request("GET", endpoint)
        return [
            {"id": b["id"], "name": b.get("name"), "url": b.get("url"), "closed": b.get("closed", False)}
            for b in boards
        ]

    def add_member_to_board(self, board_id: str, email: str, role: str = "normal") -> Dict[str, Any]:
        logger.info("Adding member to Trello board", board_id=board_id, role=role)
        self._request("PUT", f"/boards/{board_id}/members", {"email": email, "type": role})
        return {"email": email, "role": role, "board_id": board_id}

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def is_healthy(self) -> bool:
        """True when the credentials authenticate against Trello."""
        try:
            self._request("GET", "/members/me", {"fields": "id"})
            return True
        except ProviderError as err:
            logger.warning("Trello health check failed", status_code=err.status_code)
            return False


def get_agency_trello_client() -> TrelloAPI:
    """
    Build a client for the agency's own Trello account (board provisioning).

    Raises:
        ConfigurationError: if TRELLO_API_KEY / TRELLO_TOKEN are not set
    """
    if not cfg.TRELLO_API_KEY or not cfg.TRELLO_TOKEN:
        raise ConfigurationError("TRELLO_API_KEY and TRELLO_TOKEN must be set for board provisioning")
    return TrelloAPI(cfg.TRELLO_API_KEY, cfg.TRELLO_TOKEN)
