from flask_sqlalchemy import SQLAlchemy
import pandas as pd
from datetime import datetime
from enum import Enum

from designhub.datetime_utils import isoformat_or_none

db = SQLAlchemy()


class RequestSyncStatus(Enum):
    """Denormalized sync state carried on a design request."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SYNCED = "synced"
    FAILED = "failed"


class SyncLogStatus(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_PERMANENTLY = "failed_permanently"
    RETRYING = "retrying"


class SyncOperationType(Enum):
    CREATE = "create"
    UPDATE = "update"
    COMMENT = "comment"


SYNC_TYPE_TRELLO_CARD = "trello_card"

PRIORITIES = ("low", "normal", "high", "urgent")
REQUEST_STATUSES = ("pending", "in_progress", "completed")


class Client(db.Model):
    """A tenant of the agency, holding its Trello credentials and board references."""
    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    owner_email = db.Column(db.String(255), nullable=True)

    # api_key, token, board_id, list_id, default_list_id, default_list_name,
    # priority_labels, type_labels, default_members
    trello_config = db.Column(db.JSON, nullable=True)

    trello_board_id = db.Column(db.String(64), nullable=True)
    trello_board_url = db.Column(db.String(512), nullable=True)
    trello_list_ids = db.Column(db.JSON, nullable=True)
    trello_setup_completed = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    design_requests = db.relationship("DesignRequest", back_populates="client", lazy="dynamic")

    def __repr__(self):
        return f"<Client {self.id} - {self.name}>"

    def to_dict(self):
        # Credentials never leave the server
        config = dict(self.trello_config or {})
        config.pop("api_key", None)
        config.pop("token", None)
        return {
            "id": self.id,
            "name": self.name,
            "owner_email": self.owner_email,
            "trello_config": config,
            "trello_board_id": self.trello_board_id,
            "trello_board_url": self.trello_board_url,
            "trello_list_ids": self.trello_list_ids or {},
            "trello_setup_completed": self.trello_setup_completed,
        }


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    full_name = db.Column(db.String(200), nullable=True)
    role = db.Column(db.String(32), nullable=False, default="member")  # platform_admin, staff, owner, admin, member
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    client = db.relationship("Client")

    @property
    def is_staff(self):
        return self.role in ("platform_admin", "staff")

    def __repr__(self):
        return f"<User {self.id} - {self.email} ({self.role})>"


class DesignRequest(db.Model):
    """A client's submitted work order for a creative deliverable."""
    __tablename__ = "design_requests"

    id = db.Column(db.Integer, primary_key=True)
    short_id = db.Column(db.String(32), unique=True, nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    # Brief
    project_name = db.Column(db.String(255), nullable=True)
    company_name = db.Column(db.String(255), nullable=True)
    context = db.Column(db.Text, nullable=True)
    design_needs = db.Column(db.Text, nullable=True)
    key_message = db.Column(db.Text, nullable=True)
    size_format = db.Column(db.String(255), nullable=True)
    file_format_required = db.Column(db.String(255), nullable=True)
    copy_content = db.Column(db.Text, nullable=True)
    additional_notes = db.Column(db.Text, nullable=True)
    deadline = db.Column(db.Date, nullable=True)

    # Attachments
    file_urls = db.Column(db.JSON, nullable=False, default=list)
    file_names = db.Column(db.JSON, nullable=False, default=list)
    file_sizes = db.Column(db.JSON, nullable=False, default=list)

    # Contact
    contact_email = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(64), nullable=True)

    request_type = db.Column(db.String(64), nullable=False, default="design_request")
    submitted_via = db.Column(db.String(32), nullable=False, default="web_form")
    form_version = db.Column(db.String(16), nullable=False, default="2.0")
    priority = db.Column(db.String(16), nullable=False, default="normal")
    status = db.Column(db.String(32), nullable=False, default="pending")
    extra_metadata = db.Column("metadata", db.JSON, nullable=True)

    # Trello sync bookkeeping
    sync_status = db.Column(db.Enum(RequestSyncStatus), nullable=False, default=RequestSyncStatus.PENDING)
    sync_error = db.Column(db.Text, nullable=True)
    sync_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_sync_at = db.Column(db.DateTime, nullable=True)
    trello_card_id = db.Column(db.String(64), unique=True, nullable=True)
    trello_card_url = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = db.relationship("Client", back_populates="design_requests")
    user = db.relationship("User")
    sync_logs = db.relationship(
        "SyncLog",
        back_populates="design_request",
        lazy="dynamic",
        order_by="SyncLog.id",
    )

    def __repr__(self):
        return f"<DesignRequest {self.short_id} - {self.sync_status.value if self.sync_status else None}>"

    def to_dict(self):
        return {
            "id": self.id,
            "short_id": self.short_id,
            "client_id": self.client_id,
            "user_id": self.user_id,
            "project_name": self.project_name,
            "company_name": self.company_name,
            "context": self.context,
            "design_needs": self.design_needs,
            "key_message": self.key_message,
            "size_format": self.size_format,
            "file_format_required": self.file_format_required,
            "copy_content": self.copy_content,
            "additional_notes": self.additional_notes,
            "deadline": isoformat_or_none(self.deadline),
            "file_urls": self.file_urls or [],
            "file_names": self.file_names or [],
            "file_sizes": self.file_sizes or [],
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "request_type": self.request_type,
            "priority": self.priority,
            "status": self.status,
            "sync_status": self.sync_status.value if self.sync_status else None,
            "sync_error": self.sync_error,
            "sync_attempts": self.sync_attempts,
            "last_sync_at": isoformat_or_none(self.last_sync_at),
            "trello_card_id": self.trello_card_id,
            "trello_card_url": self.trello_card_url,
            "created_at": isoformat_or_none(self.created_at),
        }


class SyncLog(db.Model):
    """One row per card-sync attempt. Retries append new rows."""
    __tablename__ = "sync_logs"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    design_request_id = db.Column(db.Integer, db.ForeignKey("design_requests.id"), nullable=False, index=True)
    sync_type = db.Column(db.String(32), nullable=False, default=SYNC_TYPE_TRELLO_CARD)
    operation = db.Column(db.String(16), nullable=False)  # create, update, comment
    status = db.Column(db.Enum(SyncLogStatus), nullable=False, default=SyncLogStatus.IN_PROGRESS, index=True)
    synced_by = db.Column(db.String(32), nullable=True)

    trello_card_id = db.Column(db.String(64), nullable=True)
    request_payload = db.Column(db.JSON, nullable=True)
    trello_response = db.Column(db.JSON, nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    retry_count = db.Column(db.Integer, nullable=False, default=0)
    next_retry_at = db.Column(db.DateTime, nullable=True, index=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("sync_logs.id"), nullable=True)
    superseded_by_id = db.Column(db.Integer, db.ForeignKey("sync_logs.id"), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    design_request = db.relationship("DesignRequest", back_populates="sync_logs")
    client = db.relationship("Client")

    def __repr__(self):
        return f"<SyncLog {self.id} - {self.operation} - {self.status.value if self.status else None}>"

    def to_dict(self):
        return {
            "id": self.id,
            "client_id": self.client_id,
            "design_request_id": self.design_request_id,
            "sync_type": self.sync_type,
            "operation": self.operation,
            "status": self.status.value if self.status else None,
            "synced_by": self.synced_by,
            "trello_card_id": self.trello_card_id,
            "request_payload": self.request_payload,
            "trello_response": self.trello_response,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "next_retry_at": isoformat_or_none(self.next_retry_at),
            "parent_id": self.parent_id,
            "superseded_by_id": self.superseded_by_id,
            "created_at": isoformat_or_none(self.created_at),
            "completed_at": isoformat_or_none(self.completed_at),
        }


class ActivityLog(db.Model):
    """Audit trail of user and system actions."""
    __tablename__ = "activity_logs"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    entity_type = db.Column(db.String(64), nullable=False, index=True)
    entity_id = db.Column(db.String(64), nullable=True, index=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    details = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    user = db.relationship("User")
    client = db.relationship("Client")

    def __repr__(self):
        return f"<ActivityLog {self.entity_type}:{self.entity_id} {self.action}>"

    def to_dict(self):
        return {
            "id": self.id,
            "client_id": self.client_id,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "details": self.details or {},
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": isoformat_or_none(self.created_at),
        }


def sync_logs_to_dataframe(logs):
    """Flatten sync log rows into a DataFrame for CSV export."""
    return pd.DataFrame(
        [
            {
                "Date/Time": isoformat_or_none(log.created_at),
                "Request": log.design_request.short_id if log.design_request else None,
                "Client": log.client.name if log.client else None,
                "Operation": log.operation,
                "Status": log.status.value if log.status else None,
                "Trello Card": log.trello_card_id,
                "Retry Count": log.retry_count,
                "Next Retry": isoformat_or_none(log.next_retry_at),
                "Completed": isoformat_or_none(log.completed_at),
                "Error": log.error_message,
            }
            for log in logs
        ],
        columns=[
            "Date/Time", "Request", "Client", "Operation", "Status", "Trello Card",
            "Retry Count", "Next Retry", "Completed", "Error",
        ],
    )


def activity_logs_to_dataframe(logs):
    """Flatten activity log rows into a DataFrame for CSV export."""
    return pd.DataFrame(
        [
            {
                "Date/Time": isoformat_or_none(log.created_at),
                "User Email": log.user.email if log.user else "N/A",
                "User Name": (log.user.full_name if log.user else None) or "N/A",
                "Client": log.client.name if log.client else "N/A",
                "Entity Type": log.entity_type,
                "Entity ID": log.entity_id or "N/A",
                "Action": log.action,
                "Details": log.details or {},
            }
            for log in logs
        ],
        columns=[
            "Date/Time", "User Email", "User Name", "Client", "Entity Type",
            "Entity ID", "Action", "Details",
        ],
    )
