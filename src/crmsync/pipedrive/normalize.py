"""Normalization of raw Pipedrive payloads into canonical models.

Handles the inconsistencies seen across endpoints:
- search results wrap records as {"result_score": ..., "item": {...}}
- email/phone arrive as [{"value", "primary"}], as bare strings, or as
  "emails"/"phones" string lists in search results
- relations (org_id, owner_id) arrive as an int or as an object with
  "value"/"id" and "name"
- custom fields are top-level keys named by a 40-character hash

Each function raises ValueError for a payload that cannot be normalized;
the client reports that as a MalformedResponse.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from src.crmsync.pipedrive.schemas import (
    RemoteActivity,
    RemoteCustomField,
    RemoteCustomFieldOption,
    RemoteFilter,
    RemoteOrganization,
    RemotePage,
    RemotePerson,
    RemoteUser,
)

_CUSTOM_KEY_RE = re.compile(r"^[0-9a-f]{40}$")


def unwrap_item(raw: Any) -> dict[str, Any]:
    """Return the record itself for both list and search-result shapes."""
    if not isinstance(raw, dict):
        raise ValueError(f"expected an object, got {type(raw).__name__}")
    item = raw.get("item")
    if isinstance(item, dict) and "id" not in raw:
        return item
    return raw


def _require_id(raw: dict[str, Any]) -> int:
    value = raw.get("id")
    if value is None:
        raise ValueError("record has no id")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"record id is not numeric: {value!r}") from exc


def relation_id(value: Any) -> int | None:
    """Extract an id from an int, a numeric string or a relation object."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        value = value.get("value", value.get("id"))
        if value is None:
            return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def contact_values(value: Any) -> list[str]:
    """Flatten an email/phone field into strings, primary entry first."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, dict):
        value = [value]
    primary: list[str] = []
    rest: list[str] = []
    for entry in value:
        if isinstance(entry, dict):
            text = entry.get("value")
            if not text:
                continue
            (primary if entry.get("primary") else rest).append(str(text))
        elif entry:
            rest.append(str(entry))
    return primary + rest


def parse_timestamp(value: Any) -> datetime | None:
    """Parse Pipedrive's "YYYY-MM-DD HH:MM:SS" (UTC) or ISO timestamps."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def custom_field_values(raw: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in raw.items() if _CUSTOM_KEY_RE.match(key)}


def normalize_person(raw: Any) -> RemotePerson:
    data = unwrap_item(raw)
    emails = contact_values(data.get("email")) or contact_values(data.get("emails"))
    phones = contact_values(data.get("phone")) or contact_values(data.get("phones"))

    org = data.get("org_id")
    if org is None:
        org = data.get("organization")
    org_name = data.get("org_name")
    if org_name is None and isinstance(org, dict):
        org_name = org.get("name")

    owner = data.get("owner_id", data.get("owner"))

    label_ids = data.get("label_ids")
    if not label_ids and data.get("label") not in (None, ""):
        label_ids = [data["label"]]
    labels = [i for i in (relation_id(v) for v in (label_ids or [])) if i is not None]

    return RemotePerson(
        id=_require_id(data),
        name=data.get("name") or "",
        emails=emails,
        phones=phones,
        org_id=relation_id(org),
        org_name=org_name,
        owner_id=relation_id(owner),
        label_ids=labels,
        update_time=parse_timestamp(data.get("update_time")),
        custom_fields=custom_field_values(data),
    )


def normalize_organization(raw: Any) -> RemoteOrganization:
    data = unwrap_item(raw)
    return RemoteOrganization(
        id=_require_id(data),
        name=data.get("name") or "",
        owner_id=relation_id(data.get("owner_id", data.get("owner"))),
        address=data.get("address"),
        update_time=parse_timestamp(data.get("update_time")),
        custom_fields=custom_field_values(data),
    )


def normalize_user(raw: Any) -> RemoteUser:
    data = unwrap_item(raw)
    return RemoteUser(
        id=_require_id(data),
        name=data.get("name"),
        email=data.get("email"),
        company_name=data.get("company_name"),
        active=bool(data.get("active_flag", True)),
    )


def normalize_activity(raw: Any) -> RemoteActivity:
    data = unwrap_item(raw)
    return RemoteActivity(
        id=_require_id(data),
        subject=data.get("subject") or "",
        type=data.get("type"),
        person_id=relation_id(data.get("person_id")),
        org_id=relation_id(data.get("org_id")),
        due_date=data.get("due_date"),
        done=bool(data.get("done", False)),
    )


def normalize_field(raw: Any) -> RemoteCustomField:
    data = unwrap_item(raw)
    options = []
    for option in data.get("options") or []:
        if not isinstance(option, dict) or option.get("id") is None:
            continue
        value = option.get("value")
        options.append(
            RemoteCustomFieldOption(
                id=option["id"],
                label=str(option.get("label", "")),
                value=str(value) if value is not None else None,
            )
        )
    key = data.get("key")
    if not key:
        raise ValueError("field has no key")
    return RemoteCustomField(
        id=_require_id(data),
        key=key,
        name=data.get("name") or "",
        field_type=data.get("field_type") or "varchar",
        options=options,
        edit_flag=bool(data.get("edit_flag", False)),
    )


def normalize_filter(raw: Any) -> RemoteFilter:
    data = unwrap_item(raw)
    return RemoteFilter(
        id=_require_id(data),
        name=data.get("name") or "",
        type=data.get("type"),
        active=bool(data.get("active_flag", True)),
    )


def normalize_list(payload: dict[str, Any], item_fn: Any) -> list[Any]:
    """Normalize payload["data"] (a list, an {"items": [...]} object or null)."""
    data = payload.get("data")
    if data is None:
        return []
    if isinstance(data, dict) and "items" in data:
        data = data["items"] or []
    if not isinstance(data, list):
        raise ValueError("expected a list in data")
    return [item_fn(entry) for entry in data]


def normalize_page(payload: dict[str, Any], item_fn: Any) -> RemotePage:
    """Normalize a start/limit page, reading additional_data.pagination.

    more_items stays None when the response carries no pagination block.
    """
    items = normalize_list(payload, item_fn)
    additional = payload.get("additional_data") or {}
    pagination = additional.get("pagination") or {}
    more_items = pagination.get("more_items_in_collection")
    summary = additional.get("summary") or {}
    total = pagination.get("total", summary.get("total_count"))
    return RemotePage(
        items=items,
        start=int(pagination.get("start", 0) or 0),
        limit=int(pagination.get("limit", len(items)) or 0),
        more_items=bool(more_items) if more_items is not None else None,
        next_start=pagination.get("next_start"),
        total=int(total) if total is not None else None,
    )
