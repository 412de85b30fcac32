"""Shared fixtures: in-memory app, a Trello-configured client and request factory."""
import itertools
from datetime import date, datetime
from unittest.mock import Mock

import pytest

from designhub import create_app
from designhub.models import Client, DesignRequest, User, db
from designhub.trello.api import TrelloAPI

TRELLO_CONFIG = {
    "api_key": "key123",
    "token": "token456",
    "board_id": "board789",
    "list_id": "list-in-progress",
}


@pytest.fixture
def app():
    """Create Flask application for testing."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "SECRET_KEY": "test-secret-key",
        "ENABLE_SYNC_SCHEDULER": False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def tenant(app):
    """A client with complete Trello credentials."""
    client = Client(name="Acme Co", owner_email="owner@acme.test", trello_config=dict(TRELLO_CONFIG))
    db.session.add(client)
    db.session.commit()
    return client


@pytest.fixture
def member_user(tenant):
    user = User(email="jane@acme.test", full_name="Jane Doe", role="member", client_id=tenant.id)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def staff_user(app):
    user = User(email="ops@agency.test", full_name="Agency Ops", role="platform_admin")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def make_design_request(tenant):
    """Factory for stored design requests owned by the tenant."""
    counter = itertools.count(1)

    def _make(**overrides):
        values = {
            "short_id": f"DR-2025-{next(counter):06d}ABC",
            "client_id": tenant.id,
            "project_name": "Spring Flyer",
            "context": "Launching the spring menu",
            "design_needs": "A4 flyer",
            "priority": "normal",
            "contact_email": "jane@acme.test",
            "deadline": date(2025, 6, 1),
            "created_at": datetime(2025, 5, 1, 12, 0),
        }
        values.update(overrides)
        design_request = DesignRequest(**values)
        db.session.add(design_request)
        db.session.commit()
        return design_request

    return _make


@pytest.fixture
def mock_api():
    """TrelloAPI stand-in; create_card returns a card by default."""
    api = Mock(spec=TrelloAPI)
    api.create_card.return_value = {"id": "card001", "url": "https://trello.com/c/card001"}
    api.update_card.return_value = {"id": "card001"}
    api.add_comment.return_value = {"id": "action001"}
    return api
