"""
Card field builders for design-request Trello cards.

Pure functions: they read a design request (model instance or any object with
the same attributes) and a client's trello_config dict, and return the values
that go into a Trello card payload. No database or network access.
"""

from typing import Any, Dict, List, Optional

from designhub.datetime_utils import to_trello_timestamp
from designhub.logging_config import get_logger

logger = get_logger(__name__)

# (attribute, bold label) in the order they appear on the card
DESCRIPTION_SECTIONS = (
    ("context", "Context"),
    ("design_needs", "Design Needs"),
    ("key_message", "Key Message"),
    ("size_format", "Size/Format"),
    ("additional_notes", "Additional Notes"),
)


def _present(value) -> bool:
    return value is not None and str(value).strip() != ""


def build_card_title(design_request) -> str:
    """
    Build the card title: "{short_id}: {project_name}".

    Falls back to "Design Request" when the request has no project name.
    """
    project_name = design_request.project_name if _present(design_request.project_name) else "Design Request"
    return f"{design_request.short_id}: {project_name}"


def build_card_description(design_request) -> str:
    """
    Build the markdown card description.

    Optional brief sections are emitted only when the field has content; the
    contact, priority and submitted lines are always present.
    """
    description = f"**Design Request: {design_request.short_id}**\n\n"

    for attribute, label in DESCRIPTION_SECTIONS:
        value = getattr(design_request, attribute, None)
        if _present(value):
            description += f"**{label}:**\n{str(value).strip()}\n\n"

    submitted = design_request.created_at.date().isoformat() if design_request.created_at else "Unknown"
    description += f"**Contact:** {design_request.contact_email or 'N/A'}\n"
    description += f"**Priority:** {design_request.priority}\n"
    description += f"**Submitted:** {submitted}\n"

    file_urls = design_request.file_urls or []
    if file_urls:
        description += f"\n**Attached Files:** {len(file_urls)} file(s)"

    return description


def build_card_labels(design_request, trello_config: Dict[str, Any]) -> List[str]:
    """
    Resolve Trello label ids for the request's priority and request type.

    Priority label first, then type label; either is skipped when the client
    has no mapping for it.
    """
    labels = []
    priority_labels = trello_config.get("priority_labels") or {}
    type_labels = trello_config.get("type_labels") or {}

    priority_label = priority_labels.get(design_request.priority)
    if priority_label:
        labels.append(priority_label)

    type_label = type_labels.get(getattr(design_request, "request_type", None))
    if type_label:
        labels.append(type_label)

    return labels


def build_due_date(deadline) -> Optional[str]:
    """Convert a deadline to a Trello due timestamp, or None when there is no deadline."""
    try:
        return to_trello_timestamp(deadline)
    except ValueError:
        logger.warning("Ignoring unparseable deadline", deadline=str(deadline))
        return None


def build_card_fields(design_request, trello_config: Dict[str, Any], list_id: str) -> Dict[str, Any]:
    """
    Build the full create-card payload for a design request.

    Args:
        design_request: DesignRequest (or equivalent object)
        trello_config: Client trello_config dict
        list_id: Resolved target list id

    Returns:
        Dict with name, desc, idList, pos, idLabels, idMembers and, when the
        request has a deadline, due.
    """
    fields = {
        "name": build_card_title(design_request),
        "desc": build_card_description(design_request),
        "idList": list_id,
        "pos": "top",
        "idLabels": build_card_labels(design_request, trello_config),
        "idMembers": list(trello_config.get("default_members") or []),
    }

    due = build_due_date(design_request.deadline)
    if due:
        fields["due"] = due

    return fields
