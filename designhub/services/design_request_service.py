import random
import string
import time
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from designhub.datetime_utils import parse_date
from designhub.errors import NotFoundError, PersistenceError
from designhub.logging_config import get_logger
from designhub.models import DesignRequest, PRIORITIES, RequestSyncStatus, db
from designhub.services.activity_log_service import ActivityLogService

logger = get_logger(__name__)

TEXT_FIELDS = (
    "project_name",
    "company_name",
    "context",
    "design_needs",
    "key_message",
    "size_format",
    "file_format_required",
    "copy_content",
    "additional_notes",
    "contact_email",
    "contact_phone",
)


def generate_short_id(now=None):
    """DR-{year}-{last 6 digits of the ms timestamp}{3 random uppercase}, e.g. DR-2025-123456ABC."""
    now = now or datetime.utcnow()
    timestamp = str(int(time.time() * 1000))[-6:]
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=3))
    return f"DR-{now.year}-{timestamp}{suffix}"


def _clean_text(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class DesignRequestService:
    """Service for design request submission and lookup"""

    @staticmethod
    def submit(data, user, sync_to_trello=True, api=None):
        """
        Store a new design request and try to open its Trello card.

        The card sync is best effort: any failure is logged and recorded on
        the request (sync_status failed) but the submission itself succeeds.

        Args:
            data: Submitted form fields
            user: Submitting User; must belong to a client
            sync_to_trello: Attempt the card create right away
            api: Optional TrelloAPI for the create attempt

        Returns:
            dict with success, data (request dict), short_id, message, sync

        Raises:
            ValueError: invalid priority/deadline or user without a client
            PersistenceError: the request could not be saved
        """
        from designhub.trello.sync import create_trello_card

        if user is None or user.client_id is None:
            raise ValueError("User must be associated with a client to submit requests")

        priority = (data.get("priority") or "normal").lower()
        if priority not in PRIORITIES:
            raise ValueError(f"Invalid priority '{priority}' (expected one of: {', '.join(PRIORITIES)})")

        deadline = parse_date(data.get("deadline"))

        fields = {name: _clean_text(data.get(name)) for name in TEXT_FIELDS}
        if not fields["company_name"] and user.client is not None:
            fields["company_name"] = user.client.name
        if not fields["contact_email"]:
            fields["contact_email"] = user.email

        design_request = DesignRequest(
            short_id=generate_short_id(),
            client_id=user.client_id,
            user_id=user.id,
            deadline=deadline,
            file_urls=list(data.get("file_urls") or []),
            file_names=list(data.get("file_names") or []),
            file_sizes=list(data.get("file_sizes") or []),
            request_type=data.get("request_type") or "design_request",
            submitted_via=data.get("submitted_via") or "web_form",
            form_version=data.get("form_version") or "2.0",
            priority=priority,
            status="pending",
            sync_status=RequestSyncStatus.PENDING,
            extra_metadata=data.get("metadata") or {},
            **fields,
        )

        try:
            db.session.add(design_request)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to save design request", client_id=user.client_id, error=str(e))
            raise PersistenceError(f"Failed to save request: {e}") from e

        logger.info(
            "Design request submitted",
            design_request_id=design_request.id,
            short_id=design_request.short_id,
            client_id=design_request.client_id,
            priority=priority,
        )
        ActivityLogService.log_activity(
            "design_request",
            design_request.id,
            "created",
            {
                "short_id": design_request.short_id,
                "request_type": design_request.request_type,
                "priority": design_request.priority,
            },
            user=user,
        )

        sync_result = {"attempted": False}
        if sync_to_trello:
            sync_result["attempted"] = True
            try:
                outcome = create_trello_card(design_request.id, api=api)
                sync_result.update(success=True, sync_log_id=outcome["sync_log_id"])
            except Exception as e:
                # Submission never fails because of Trello
                logger.warning(
                    "Trello card creation failed for new request",
                    design_request_id=design_request.id,
                    short_id=design_request.short_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                sync_result.update(success=False, error=str(e))
            db.session.refresh(design_request)

        return {
            "success": True,
            "data": design_request.to_dict(),
            "short_id": design_request.short_id,
            "message": "Design request submitted successfully!",
            "sync": sync_result,
        }

    @staticmethod
    def get(design_request_id):
        design_request = db.session.get(DesignRequest, design_request_id)
        if design_request is None:
            raise NotFoundError(f"Design request {design_request_id} not found")
        return design_request
