"""Canonical shapes for Pipedrive entities.

Pipedrive returns loosely-typed JSON whose shape differs between endpoints
(list vs search, object vs bare id for relations, email vs emails). The
client normalizes every response into these models at the boundary
(see normalize.py); nothing above the client inspects raw payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class RemoteUser(BaseModel):
    id: int
    name: str | None = None
    email: str | None = None
    company_name: str | None = None
    active: bool = True


class RemotePerson(BaseModel):
    id: int
    name: str = ""
    emails: list[str] = Field(default_factory=list)
    phones: list[str] = Field(default_factory=list)
    org_id: int | None = None
    org_name: str | None = None
    owner_id: int | None = None
    label_ids: list[int] = Field(default_factory=list)
    update_time: datetime | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)

    @property
    def primary_email(self) -> str | None:
        return self.emails[0] if self.emails else None

    @property
    def primary_phone(self) -> str | None:
        return self.phones[0] if self.phones else None


class RemoteOrganization(BaseModel):
    id: int
    name: str = ""
    owner_id: int | None = None
    address: str | None = None
    update_time: datetime | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class RemoteActivity(BaseModel):
    id: int
    subject: str = ""
    type: str | None = None
    person_id: int | None = None
    org_id: int | None = None
    due_date: str | None = None
    done: bool = False


class RemoteCustomFieldOption(BaseModel):
    """One enum option.

    Pipedrive identifies options by a numeric id; some responses also carry
    a separate value. Both are kept since callers see either.
    """

    id: int | str
    label: str
    value: str | None = None


class RemoteCustomField(BaseModel):
    id: int
    key: str
    name: str
    field_type: str = "varchar"
    options: list[RemoteCustomFieldOption] = Field(default_factory=list)
    edit_flag: bool = False

    @property
    def is_enum(self) -> bool:
        return self.field_type in ("enum", "set")


class RemoteCustomFieldMapping(BaseModel):
    """Field keys resolved by name; every entry may be absent."""

    still_active_field_key: str | None = None
    active_value: str | None = None
    inactive_value: str | None = None
    campaign_field_key: str | None = None
    warmness_field_key: str | None = None
    last_contacted_field_key: str | None = None
    label_field_key: str | None = None


class RemoteFilter(BaseModel):
    id: int
    name: str
    type: str | None = None
    active: bool = True


class RemotePage(BaseModel):
    """One page of a start/limit paginated list."""

    items: list[Any] = Field(default_factory=list)
    start: int = 0
    limit: int = 0
    more_items: bool | None = None
    next_start: int | None = None
    total: int | None = None
