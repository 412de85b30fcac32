"""
Tests for log redaction, SyncContext correlation and database settings.
"""
import pytest
import structlog

from designhub.db_config import configure_database, get_database_config
from designhub.logging_config import REDACTED, SyncContext, redact_secrets


class TestRedactSecrets:

    def test_credential_fields_masked(self):
        event = redact_secrets(None, "info", {
            "event": "Trello request",
            "token": "token456",
            "config": {"api_key": "key123", "board_id": "board789"},
            "members": [{"email": "a@b.test", "password": "hunter2"}],
        })

        assert event["event"] == "Trello request"
        assert event["token"] == REDACTED
        assert event["config"] == {"api_key": REDACTED, "board_id": "board789"}
        assert event["members"] == [{"email": "a@b.test", "password": REDACTED}]

    def test_query_string_credentials_masked(self):
        event = redact_secrets(None, "error", {
            "event": "Trello API error",
            "url": "https://api.trello.com/1/cards?key=key123&token=token456&idList=abc",
        })

        assert "key123" not in event["url"]
        assert "token456" not in event["url"]
        assert event["url"].endswith(f"key={REDACTED}&token={REDACTED}&idList=abc")

    def test_stdlib_record_untouched(self):
        record = object()
        event = redact_secrets(None, "info", {"event": "x", "_record": record})
        assert event["_record"] is record


class TestSyncContext:

    def test_operation_bound_for_block(self):
        with SyncContext("trello_sync_sweep") as ctx:
            bound = structlog.contextvars.get_contextvars()
            assert bound["operation_id"] == ctx.operation_id
            assert bound["operation_type"] == "trello_sync_sweep"

        assert "operation_id" not in structlog.contextvars.get_contextvars()

    def test_errors_propagate_and_unbind(self):
        with pytest.raises(RuntimeError):
            with SyncContext("trello_sync_sweep", operation_id="op12345"):
                raise RuntimeError("boom")

        assert "operation_id" not in structlog.contextvars.get_contextvars()


class TestDatabaseConfig:

    def test_production_requires_url(self, monkeypatch):
        monkeypatch.delenv("PRODUCTION_DATABASE_URL", raising=False)
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(ValueError, match="PRODUCTION_DATABASE_URL"):
            get_database_config("prod")

    def test_postgres_scheme_normalized(self, monkeypatch):
        monkeypatch.delenv("PRODUCTION_DATABASE_URL", raising=False)
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db.internal/designhub")

        uri, options = get_database_config("production")

        assert uri == "postgresql://u:p@db.internal/designhub"
        assert options["pool_pre_ping"] is True
        assert options["connect_args"]["application_name"] == "designhub"

    def test_local_defaults_to_sqlite(self, monkeypatch):
        monkeypatch.delenv("LOCAL_DATABASE_URL", raising=False)
        monkeypatch.delenv("DATABASE_URL", raising=False)

        assert get_database_config("development") == ("sqlite:///designhub.sqlite", None)

    def test_override_wins(self, app):
        configure_database(app, {"SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})

        assert app.config["SQLALCHEMY_DATABASE_URI"] == "sqlite:///:memory:"
        assert "SQLALCHEMY_ENGINE_OPTIONS" not in app.config or not app.config["SQLALCHEMY_ENGINE_OPTIONS"]
