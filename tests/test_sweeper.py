"""
Tests for the failed sync retry sweeper.
"""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from designhub.config import Config
from designhub.errors import ProviderError
from designhub.models import RequestSyncStatus, SyncLog, SyncLogStatus, db
from designhub.trello import ledger
from designhub.trello.sweeper import MAX_BATCH_SIZE, process_failed_syncs


@pytest.fixture
def api_factory(mock_api):
    return lambda client: mock_api


def make_failed_entry(design_request, operation="create", retry_count=0, payload=None):
    """A failed ledger row whose backoff has already elapsed."""
    entry = ledger.create_sync_log(design_request, operation, payload)
    entry.status = SyncLogStatus.FAILED
    entry.retry_count = retry_count
    entry.error_message = "Trello API error: 503"
    entry.next_retry_at = datetime.utcnow() - timedelta(minutes=1)
    db.session.commit()
    design_request.sync_status = RequestSyncStatus.FAILED
    db.session.commit()
    return entry


class TestProcessFailedSyncs:

    def test_nothing_due(self, app, api_factory):
        summary = process_failed_syncs(api_factory=api_factory)
        assert summary == {"processed_count": 0, "succeeded": 0, "failed": 0, "skipped": 0, "results": []}

    def test_successful_create_retry(self, make_design_request, mock_api, api_factory):
        design_request = make_design_request()
        entry = make_failed_entry(design_request)

        summary = process_failed_syncs(api_factory=api_factory)

        assert summary["processed_count"] == 1
        assert summary["succeeded"] == 1
        mock_api.create_card.assert_called_once()

        retry = SyncLog.query.filter_by(parent_id=entry.id).one()
        assert retry.status == SyncLogStatus.COMPLETED
        assert retry.retry_count == 1
        assert entry.superseded_by_id == retry.id
        assert entry.status == SyncLogStatus.FAILED
        assert entry.next_retry_at is None

        assert design_request.trello_card_id == "card001"
        assert design_request.sync_status == RequestSyncStatus.SYNCED
        assert ledger.due_for_retry(10) == []

    def test_renewed_failure_backs_off(self, make_design_request, mock_api, api_factory):
        design_request = make_design_request()
        entry = make_failed_entry(design_request, retry_count=1)
        mock_api.create_card.side_effect = ProviderError("Trello API error: 503", status_code=503)

        summary = process_failed_syncs(api_factory=api_factory)

        assert summary["failed"] == 1
        assert entry.status == SyncLogStatus.FAILED
        assert entry.retry_count == 2
        assert entry.next_retry_at > datetime.utcnow() + timedelta(minutes=19)

        retry = SyncLog.query.filter_by(parent_id=entry.id).one()
        assert entry.superseded_by_id == retry.id
        assert retry.status == SyncLogStatus.FAILED
        assert retry.retry_count == 2

    def test_fifth_failure_is_permanent(self, make_design_request, mock_api, api_factory):
        design_request = make_design_request()
        entry = make_failed_entry(design_request, retry_count=4)
        mock_api.create_card.side_effect = ProviderError("Trello API error: 401", status_code=401)

        process_failed_syncs(api_factory=api_factory)

        assert entry.status == SyncLogStatus.FAILED_PERMANENTLY
        assert entry.retry_count == 5
        assert entry.next_retry_at is None

        retry = SyncLog.query.filter_by(parent_id=entry.id).one()
        assert retry.status == SyncLogStatus.FAILED_PERMANENTLY
        assert retry.next_retry_at is None

        mock_api.create_card.reset_mock()
        later = process_failed_syncs(api_factory=api_factory, now=datetime.utcnow() + timedelta(days=30))
        assert later["processed_count"] == 0
        mock_api.create_card.assert_not_called()

    def test_entries_processed_independently(self, make_design_request, mock_api, api_factory):
        broken = make_design_request()
        healthy = make_design_request()
        broken_entry = make_failed_entry(broken)
        healthy_entry = make_failed_entry(healthy)

        def create_card(fields):
            if fields["name"].startswith(broken.short_id):
                raise RuntimeError("unexpected payload")
            return {"id": "card-healthy", "url": "https://trello.com/c/card-healthy"}

        mock_api.create_card.side_effect = create_card

        summary = process_failed_syncs(api_factory=api_factory)

        assert summary["processed_count"] == 2
        assert summary["succeeded"] == 1
        assert summary["failed"] == 1
        assert broken_entry.retry_count == 1
        assert healthy_entry.superseded_by_id is not None
        assert healthy.trello_card_id == "card-healthy"

    def test_batch_size_limits_work(self, make_design_request, mock_api, api_factory):
        for _ in range(3):
            make_failed_entry(make_design_request())
        card_ids = iter(["card-a", "card-b", "card-c"])
        mock_api.create_card.side_effect = lambda fields: {"id": next(card_ids)}

        summary = process_failed_syncs(batch_size=2, api_factory=api_factory)

        assert summary["processed_count"] == 2
        assert mock_api.create_card.call_count == 2

    def test_update_replayed_from_payload(self, make_design_request, mock_api, api_factory):
        design_request = make_design_request(trello_card_id="card001")
        make_failed_entry(design_request, operation="update", payload={"name": "Renamed", "closed": False})

        process_failed_syncs(api_factory=api_factory)

        mock_api.update_card.assert_called_once_with("card001", {"name": "Renamed", "closed": False})

    def test_update_without_payload_refreshes_content(self, make_design_request, mock_api, api_factory):
        design_request = make_design_request(trello_card_id="card001")
        make_failed_entry(design_request, operation="update")

        process_failed_syncs(api_factory=api_factory)

        card_id, fields = mock_api.update_card.call_args[0]
        assert card_id == "card001"
        assert fields["name"] == f"{design_request.short_id}: Spring Flyer"
        assert fields["desc"].startswith(f"**Design Request: {design_request.short_id}**")

    def test_comment_replayed_from_payload(self, make_design_request, mock_api, api_factory):
        design_request = make_design_request(trello_card_id="card001")
        make_failed_entry(design_request, operation="comment", payload={"text": "Proof ready"})

        process_failed_syncs(api_factory=api_factory)

        mock_api.add_comment.assert_called_once_with("card001", "Proof ready")

    def test_create_retry_skipped_when_card_exists(self, make_design_request, mock_api, api_factory):
        design_request = make_design_request()
        entry = make_failed_entry(design_request)
        design_request.trello_card_id = "card-made-elsewhere"
        db.session.commit()

        summary = process_failed_syncs(api_factory=api_factory)

        assert summary["skipped"] == 1
        mock_api.create_card.assert_not_called()
        assert entry.next_retry_at is None


class TestBatchSize:

    @pytest.mark.parametrize("batch_size", [0, -3, "ten", True])
    def test_rejects_non_positive_or_non_integer(self, app, api_factory, batch_size):
        with pytest.raises(ValueError, match="batch_size"):
            process_failed_syncs(batch_size=batch_size, api_factory=api_factory)

    def test_large_batches_capped(self, app, api_factory):
        with patch("designhub.trello.sweeper.ledger.due_for_retry", return_value=[]) as due:
            process_failed_syncs(batch_size=MAX_BATCH_SIZE * 10, api_factory=api_factory)

        assert due.call_args[0][0] == MAX_BATCH_SIZE

    def test_default_from_config(self, app, api_factory):
        with patch("designhub.trello.sweeper.ledger.due_for_retry", return_value=[]) as due:
            process_failed_syncs(api_factory=api_factory)

        assert due.call_args[0][0] == Config.SYNC_SWEEP_BATCH_SIZE
