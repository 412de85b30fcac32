"""
Tests for activity statistics, user summaries and log retention.
"""
from datetime import datetime, timedelta

import pytest

from designhub.errors import NotFoundError
from designhub.models import ActivityLog, Client, RequestSyncStatus, SyncLog, SyncLogStatus, db
from designhub.services.activity_log_service import ActivityLogService
from designhub.trello import ledger


def add_activity(action, created_at, client_id=None, user_id=None, entity_type="design_request"):
    activity = ActivityLog(
        client_id=client_id,
        user_id=user_id,
        entity_type=entity_type,
        entity_id="1",
        action=action,
        details={},
        created_at=created_at,
    )
    db.session.add(activity)
    db.session.commit()
    return activity


def age(entry, created_at):
    entry.created_at = created_at
    db.session.commit()
    return entry


class TestStats:

    def test_breakdowns_over_last_30_days(self, tenant, make_design_request):
        now = datetime.utcnow()
        add_activity("created", now - timedelta(days=1), client_id=tenant.id)
        add_activity("trello_card_created", now - timedelta(days=1), client_id=tenant.id)
        add_activity("trello_board_created", now - timedelta(days=2), client_id=tenant.id, entity_type="client")
        add_activity("created", now - timedelta(days=45), client_id=tenant.id)

        design_request = make_design_request()
        ok = ledger.create_sync_log(design_request, "create")
        ledger.mark_completed(ok, {"id": "card001"})
        bad = ledger.create_sync_log(design_request, "comment")
        ledger.apply_failure(bad, "Trello API error: 500", 0)

        stats = ActivityLogService.stats({})

        assert stats["total_activities"] == 3
        assert stats["action_breakdown"] == {"created": 1, "trello_card_created": 1, "trello_board_created": 1}
        assert stats["entity_breakdown"] == {"design_request": 2, "client": 1}
        assert list(stats["daily_activity"]) == [
            (now - timedelta(days=2)).date().isoformat(),
            (now - timedelta(days=1)).date().isoformat(),
        ]
        assert stats["sync_status_breakdown"] == {"completed": 1, "failed": 1}

    def test_explicit_date_range(self, tenant):
        add_activity("created", datetime(2025, 3, 10, 9, 0), client_id=tenant.id)
        add_activity("created", datetime(2025, 4, 10, 9, 0), client_id=tenant.id)

        stats = ActivityLogService.stats({
            "start_date": datetime(2025, 3, 1),
            "end_date": datetime(2025, 3, 31),
        })

        assert stats["total_activities"] == 1
        assert stats["daily_activity"] == {"2025-03-10": 1}
        assert stats["date_range"]["start_date"] == "2025-03-01T00:00:00"

    def test_scoped_to_client(self, tenant):
        other = Client(name="Globex")
        db.session.add(other)
        db.session.commit()
        now = datetime.utcnow()
        add_activity("created", now - timedelta(hours=1), client_id=tenant.id)
        add_activity("created", now - timedelta(hours=1), client_id=other.id)

        stats = ActivityLogService.stats({"client_id": other.id}, scope_client_id=tenant.id)

        assert stats["total_activities"] == 1


class TestUserSummary:

    def test_summary(self, member_user):
        now = datetime.utcnow()
        for hours in range(12):
            add_activity("created", now - timedelta(hours=hours + 1), user_id=member_user.id)
        add_activity("trello_comment_added", now - timedelta(minutes=5), user_id=member_user.id)
        add_activity("created", now - timedelta(days=60), user_id=member_user.id)

        summary = ActivityLogService.user_summary(member_user.id)

        assert summary["user"]["email"] == "jane@acme.test"
        assert summary["user"]["client"]["name"] == "Acme Co"
        activity = summary["activity_summary"]
        assert activity["total_activities"] == 13
        assert activity["actions_breakdown"] == {"created": 12, "trello_comment_added": 1}
        assert len(activity["recent_activities"]) == 10
        assert activity["recent_activities"][0]["action"] == "trello_comment_added"

    def test_unknown_user(self, app):
        with pytest.raises(NotFoundError):
            ActivityLogService.user_summary(9999)


class TestCleanupOldLogs:

    @pytest.fixture
    def old(self):
        return datetime.utcnow() - timedelta(days=400)

    def test_activity_rows_past_retention_deleted(self, app, staff_user, old):
        add_activity("created", old)
        recent = add_activity("created", datetime.utcnow() - timedelta(days=10))

        result = ActivityLogService.cleanup_old_logs(retention_days=365, user=staff_user)

        assert result["deleted_activity_logs"] == 1
        remaining = ActivityLog.query.filter(ActivityLog.action != "logs_cleanup").all()
        assert [a.id for a in remaining] == [recent.id]

        event = ActivityLog.query.filter_by(action="logs_cleanup").one()
        assert event.entity_type == "system"
        assert event.user_id == staff_user.id
        assert event.details["retention_days"] == 365
        assert event.details["deleted_activity_logs"] == 1

    def test_ledger_keeps_latest_and_pending_retries(self, make_design_request, old):
        synced = make_design_request(sync_status=RequestSyncStatus.SYNCED)
        first = ledger.create_sync_log(synced, "create")
        ledger.apply_failure(first, "Trello API error: 503", 0)
        retry = ledger.create_sync_log(synced, "create", retry_of=first)
        ledger.mark_completed(retry, {"id": "card001"}, trello_card_id="card001")
        ledger.mark_superseded(first, retry)
        age(first, old)
        age(retry, old)

        waiting = make_design_request(trello_card_id="card002")
        pending_retry = ledger.create_sync_log(waiting, "update", {"name": "x"})
        ledger.apply_failure(pending_retry, "Trello API error: 503", 0)
        latest = ledger.create_sync_log(waiting, "comment", {"text": "hi"})
        ledger.mark_completed(latest, {"id": "action001"})
        age(pending_retry, old)
        age(latest, old)

        result = ActivityLogService.cleanup_old_logs(retention_days=365)

        assert result["deleted_sync_logs"] == 1
        assert db.session.get(SyncLog, first.id) is None
        kept = db.session.get(SyncLog, retry.id)
        assert kept.status == SyncLogStatus.COMPLETED
        assert kept.parent_id is None
        assert db.session.get(SyncLog, pending_retry.id) is not None
        assert db.session.get(SyncLog, latest.id) is not None

        assert ledger.reconcile_sync_status(synced, execute=False)["changed"] is False

    def test_dry_run_deletes_nothing(self, make_design_request, old):
        add_activity("created", old)
        design_request = make_design_request()
        stale = ledger.create_sync_log(design_request, "create")
        ledger.mark_completed(stale, {"id": "card001"})
        newer = ledger.create_sync_log(design_request, "update", {"name": "x"})
        ledger.mark_completed(newer, {"id": "card001"})
        age(stale, old)

        result = ActivityLogService.cleanup_old_logs(retention_days=365, execute=False)

        assert result["deleted_activity_logs"] == 1
        assert result["deleted_sync_logs"] == 1
        assert result["executed"] is False
        assert ActivityLog.query.count() == 1
        assert SyncLog.query.count() == 2

    def test_retention_must_be_positive(self, app):
        with pytest.raises(ValueError):
            ActivityLogService.cleanup_old_logs(retention_days=0)
