"""
Tests for design request submission.
"""
import re
from datetime import date

import pytest

from designhub.errors import ProviderError
from designhub.models import ActivityLog, DesignRequest, RequestSyncStatus, SyncLog, SyncLogStatus, db
from designhub.services.design_request_service import DesignRequestService, generate_short_id


def test_short_id_format():
    assert re.fullmatch(r"DR-\d{4}-\d{6}[A-Z0-9]{3}", generate_short_id())


class TestSubmit:

    def test_submission_opens_card(self, member_user, mock_api):
        result = DesignRequestService.submit(
            {"project_name": "Spring Flyer", "context": "Spring launch", "priority": "urgent", "deadline": "2025-06-01"},
            member_user,
            api=mock_api,
        )

        assert result["success"] is True
        assert result["sync"] == {"attempted": True, "success": True, "sync_log_id": result["sync"]["sync_log_id"]}
        design_request = DesignRequest.query.filter_by(short_id=result["short_id"]).one()
        assert design_request.deadline == date(2025, 6, 1)
        assert design_request.trello_card_id == "card001"
        assert result["data"]["sync_status"] == "synced"

    def test_defaults_from_user_and_client(self, member_user, mock_api):
        result = DesignRequestService.submit({"project_name": "Menu"}, member_user, api=mock_api)

        data = result["data"]
        assert data["company_name"] == "Acme Co"
        assert data["contact_email"] == "jane@acme.test"
        assert data["priority"] == "normal"
        assert data["status"] == "pending"
        assert data["request_type"] == "design_request"

    def test_provider_failure_does_not_fail_submission(self, member_user, mock_api):
        mock_api.create_card.side_effect = ProviderError("Trello API error: 401 invalid token", status_code=401)

        result = DesignRequestService.submit({"project_name": "Spring Flyer"}, member_user, api=mock_api)

        assert result["success"] is True
        assert result["sync"]["success"] is False
        assert result["data"]["sync_status"] == "failed"
        assert SyncLog.query.one().status == SyncLogStatus.FAILED

    def test_missing_trello_config_does_not_fail_submission(self, tenant, member_user, mock_api):
        tenant.trello_config = {}
        db.session.commit()

        result = DesignRequestService.submit({"project_name": "Spring Flyer"}, member_user, api=mock_api)

        assert result["success"] is True
        assert result["sync"]["success"] is False
        assert result["data"]["sync_status"] == RequestSyncStatus.PENDING.value
        assert SyncLog.query.count() == 0

    def test_created_activity_logged(self, member_user, mock_api):
        result = DesignRequestService.submit({"priority": "high"}, member_user, api=mock_api)

        event = ActivityLog.query.filter_by(action="created").one()
        assert event.entity_id == str(result["data"]["id"])
        assert event.user_id == member_user.id
        assert event.details["priority"] == "high"

    def test_invalid_priority(self, member_user, mock_api):
        with pytest.raises(ValueError, match="priority"):
            DesignRequestService.submit({"priority": "asap"}, member_user, api=mock_api)
        assert DesignRequest.query.count() == 0

    def test_user_without_client(self, staff_user, mock_api):
        with pytest.raises(ValueError, match="client"):
            DesignRequestService.submit({}, staff_user, api=mock_api)

    def test_sync_can_be_deferred(self, member_user, mock_api):
        result = DesignRequestService.submit({}, member_user, sync_to_trello=False, api=mock_api)

        assert result["sync"] == {"attempted": False}
        mock_api.create_card.assert_not_called()
