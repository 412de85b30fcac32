"""
Tests for the Trello REST client. The HTTP session is faked; nothing leaves the process.
"""
import json
from unittest.mock import Mock

import pytest
import requests

from designhub.errors import ConfigurationError, ProviderError
from designhub.trello.api import (
    DEFAULT_BOARD_LISTS,
    TrelloAPI,
    list_key,
    require_credentials,
)

BASE_URL = "https://api.trello.test/1"


def fake_response(status_code=200, payload=None, text=None):
    response = Mock()
    response.status_code = status_code
    body = json.dumps(payload) if payload is not None else (text or "")
    response.text = body
    response.content = body.encode()
    response.json.return_value = payload
    return response


@pytest.fixture
def session():
    session = Mock(spec=requests.Session)
    session.request.return_value = fake_response(payload={"id": "card001"})
    return session


@pytest.fixture
def api(session):
    return TrelloAPI("key123", "token456", base_url=BASE_URL, session=session, timeout=5)


class TestTransport:

    def test_credentials_travel_as_query_params(self, api, session):
        api.create_card({"name": "Card", "idList": "list-1"})

        method, url = session.request.call_args[0]
        kwargs = session.request.call_args[1]
        assert method == "POST"
        assert url == f"{BASE_URL}/cards"
        assert kwargs["params"] == {"key": "key123", "token": "token456"}
        assert kwargs["headers"] == {"Content-Type": "application/json"}
        assert kwargs["timeout"] == 5

    def test_get_merges_data_into_params(self, api, session):
        session.request.return_value = fake_response(payload=[])
        api.get_boards()

        kwargs = session.request.call_args[1]
        assert "json" not in kwargs
        assert session.request.call_args[0][1] == f"{BASE_URL}/members/me/boards"

    def test_non_2xx_raises_provider_error_with_body(self, api, session):
        session.request.return_value = fake_response(status_code=401, text="invalid token")

        with pytest.raises(ProviderError) as exc_info:
            api.create_card({"name": "Card"})

        assert exc_info.value.status_code == 401
        assert exc_info.value.response_body == "invalid token"
        assert "invalid token" in str(exc_info.value)
        assert not exc_info.value.is_network_error

    def test_network_error_has_status_zero(self, api, session):
        session.request.side_effect = requests.exceptions.ConnectionError("connection reset")

        with pytest.raises(ProviderError) as exc_info:
            api.get_card("card001")

        assert exc_info.value.status_code == 0
        assert exc_info.value.is_network_error

    def test_empty_body_returns_empty_dict(self, api, session):
        session.request.return_value = fake_response(status_code=200, text="")
        assert api.add_member_to_board("board1", "a@b.test")["email"] == "a@b.test"
        assert api.update_card("card001", {"name": "x"}) == {}


class TestCards:

    def test_create_card_drops_none_values(self, api, session):
        api.create_card({"name": "Card", "idList": "list-1", "due": None})
        assert session.request.call_args[1]["json"] == {"name": "Card", "idList": "list-1"}

    def test_update_card_sends_only_supplied_fields(self, api, session):
        api.update_card("card001", {"name": "New name", "desc": None, "closed": False, "pos": "top"})

        assert session.request.call_args[0] == ("PUT", f"{BASE_URL}/cards/card001")
        assert session.request.call_args[1]["json"] == {"name": "New name", "closed": False}

    def test_add_comment(self, api, session):
        api.add_comment("card001", "Proof uploaded")

        assert session.request.call_args[0] == ("POST", f"{BASE_URL}/cards/card001/actions/comments")
        assert session.request.call_args[1]["json"] == {"text": "Proof uploaded"}

    def test_list_lists_projection(self, api, session):
        session.request.return_value = fake_response(payload=[
            {"id": "L1", "name": "To Do", "pos": 1},
            {"id": "L2", "name": "Done", "closed": True},
        ])

        lists = api.list_lists("board789")

        assert session.request.call_args[0][1] == f"{BASE_URL}/boards/board789/lists"
        assert lists == [
            {"id": "L1", "name": "To Do", "closed": False},
            {"id": "L2", "name": "Done", "closed": True},
        ]


class TestBoards:

    def test_create_board_creates_template_lists(self, api, session):
        responses = [fake_response(payload={"id": "board1", "name": "Acme", "url": "https://trello.com/b/board1"})]
        responses += [fake_response(payload={"id": f"list{i}"}) for i in range(len(DEFAULT_BOARD_LISTS))]
        session.request.side_effect = responses

        result = api.create_board("Acme")

        board_call = session.request.call_args_list[0]
        assert board_call[0] == ("POST", f"{BASE_URL}/boards")
        assert board_call[1]["json"]["defaultLists"] is False
        assert session.request.call_count == 1 + len(DEFAULT_BOARD_LISTS)
        assert session.request.call_args_list[1][1]["json"] == {"name": "Welcome & Setup", "idBoard": "board1"}

        assert result["board"] == {"id": "board1", "name": "Acme", "url": "https://trello.com/b/board1"}
        assert list(result["lists"]) == [
            "welcome_setup",
            "requirements_gathering",
            "design_brief",
            "in_progress",
            "client_review",
            "completed",
        ]
        assert result["lists"]["in_progress"] == "list3"

    def test_get_boards_for_organization(self, api, session):
        session.request.return_value = fake_response(payload=[{"id": "b1", "name": "One", "url": "u"}])

        boards = api.get_boards("org42")

        assert session.request.call_args[0][1] == f"{BASE_URL}/organizations/org42/boards"
        assert boards == [{"id": "b1", "name": "One", "url": "u", "closed": False}]

    def test_add_member(self, api, session):
        api.add_member_to_board("board1", "owner@acme.test", "admin")

        assert session.request.call_args[0] == ("PUT", f"{BASE_URL}/boards/board1/members")
        assert session.request.call_args[1]["json"] == {"email": "owner@acme.test", "type": "admin"}


class TestHealth:

    def test_healthy(self, api, session):
        session.request.return_value = fake_response(payload={"id": "me"})
        assert api.is_healthy() is True

    def test_unhealthy_never_raises(self, api, session):
        session.request.return_value = fake_response(status_code=401, text="unauthorized")
        assert api.is_healthy() is False


class TestCredentials:

    def test_missing_board_id(self):
        with pytest.raises(ConfigurationError, match="board_id"):
            require_credentials({"api_key": "k", "token": "t"})

    def test_blank_values_count_as_missing(self):
        with pytest.raises(ConfigurationError, match="api_key"):
            require_credentials({"api_key": " ", "token": "t", "board_id": "b"})

    def test_board_optional_for_client_construction(self):
        api = TrelloAPI.from_config({"api_key": "k", "token": "t"})
        assert api.api_key == "k"

    def test_none_config(self):
        with pytest.raises(ConfigurationError):
            require_credentials(None)


def test_list_key():
    assert list_key("Welcome & Setup") == "welcome_setup"
    assert list_key("In Progress") == "in_progress"
