"""Outbound Pipedrive payload builders.

Every free-text value passes through the Sanitizer before it leaves the
process. Builders only include relation ids that were actually resolved, so
a payload for a contact without an organization simply omits org_id.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.crmsync.crm.schemas import (
    ActivityContext,
    ActivityType,
    CampaignRead,
    ContactRead,
    OrganizationRead,
)
from src.crmsync.pipedrive.sanitize import Sanitizer

UNKNOWN_CONTACT_NAME = "Unknown Contact"

# Local activity type -> remote activity type key. MEETING_REQUEST uses the
# "lunch" type so meeting requests stay distinguishable from held meetings.
REMOTE_ACTIVITY_TYPES: dict[ActivityType, str] = {
    ActivityType.CALL: "call",
    ActivityType.EMAIL: "email",
    ActivityType.MEETING: "meeting",
    ActivityType.MEETING_REQUEST: "lunch",
    ActivityType.LINKEDIN: "task",
    ActivityType.REFERRAL: "task",
    ActivityType.CONFERENCE: "meeting",
}

ACTIVITY_TYPE_LABELS: dict[ActivityType, str] = {
    ActivityType.CALL: "Phone Call",
    ActivityType.EMAIL: "Email Communication",
    ActivityType.MEETING: "Meeting",
    ActivityType.MEETING_REQUEST: "Meeting Request",
    ActivityType.LINKEDIN: "LinkedIn Message",
    ActivityType.REFERRAL: "Referral",
    ActivityType.CONFERENCE: "Conference",
}


def _contact_entry(value: str) -> dict[str, Any]:
    return {"value": value, "primary": True, "label": "work"}


def _remote_id(value: str | int | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def person_payload(
    contact: ContactRead,
    sanitizer: Sanitizer,
    *,
    owner_id: int | None = None,
    org_id: int | str | None = None,
    label: tuple[str, int | str] | None = None,
) -> dict[str, Any]:
    """Person create/update body for a local contact.

    Args:
        contact: The local contact.
        sanitizer: Applies length limits and strips markup.
        owner_id: Remote user id of the owning user, when resolved.
        org_id: Remote organization id, when resolved.
        label: (field_key, option_id) of a label to set, when resolved. The
            built-in "label" field takes label_ids; a custom enum field takes
            the option id under its own key.
    """
    payload: dict[str, Any] = {"name": (contact.name or "").strip() or UNKNOWN_CONTACT_NAME}
    if contact.email:
        payload["email"] = [_contact_entry(contact.email)]
    if contact.phone:
        payload["phone"] = [_contact_entry(contact.phone)]
    remote_org = _remote_id(org_id)
    if remote_org is not None:
        payload["org_id"] = remote_org
    if owner_id is not None:
        payload["owner_id"] = owner_id
    if label is not None:
        field_key, option_id = label
        if field_key == "label":
            payload["label_ids"] = [_remote_id(option_id) or option_id]
        else:
            payload[field_key] = option_id
    return sanitizer.person(payload)


def organization_payload(
    organization: OrganizationRead, sanitizer: Sanitizer, *, owner_id: int | None = None
) -> dict[str, Any]:
    payload: dict[str, Any] = {"name": organization.name}
    if owner_id is not None:
        payload["owner_id"] = owner_id
    return sanitizer.organization(payload)


def campaign_prefix(campaign: CampaignRead | None) -> str | None:
    """Subject prefix "[CMPGN-<SHORTCODE>] " for a campaign with a shortcode."""
    if campaign is None or not campaign.shortcode:
        return None
    return f"[CMPGN-{campaign.shortcode.upper()}] "


def default_subject(context: ActivityContext) -> str:
    """e.g. "Email Communication - John Doe by Test User (Adult Social Care)"."""
    activity = context.activity
    type_label = ACTIVITY_TYPE_LABELS.get(activity.type, activity.type.value.title())
    user_name = context.user.name or context.user.email
    subject = f"{type_label} - {context.contact.name} by {user_name}"
    if context.campaign is not None:
        subject += f" ({context.campaign.name})"
    return subject


def activity_subject(context: ActivityContext) -> str:
    subject = (context.activity.subject or "").strip() or default_subject(context)
    prefix = campaign_prefix(context.campaign)
    if prefix and not subject.startswith(prefix.strip()):
        subject = prefix + subject
    return subject


def _due_fields(due: datetime | None) -> dict[str, str]:
    if due is None:
        return {}
    if due.tzinfo is not None:
        due = due.astimezone(timezone.utc)
    return {"due_date": due.strftime("%Y-%m-%d"), "due_time": due.strftime("%H:%M")}


def activity_payload(
    context: ActivityContext,
    sanitizer: Sanitizer,
    *,
    person_id: int | str,
    org_id: int | str | None = None,
    owner_id: int | None = None,
) -> dict[str, Any]:
    """Activity create/update body; due date/time are sent in UTC."""
    activity = context.activity
    payload: dict[str, Any] = {
        "subject": activity_subject(context),
        "type": REMOTE_ACTIVITY_TYPES[activity.type],
        "person_id": _remote_id(person_id) or person_id,
        "done": 0,
    }
    payload.update(_due_fields(activity.due_date))
    if activity.note:
        payload["note"] = activity.note
    remote_org = _remote_id(org_id)
    if remote_org is not None:
        payload["org_id"] = remote_org
    if owner_id is not None:
        payload["user_id"] = owner_id
    return sanitizer.activity(payload)
