"""Pydantic schemas for the local CRM -- contacts, organizations, activities, campaigns.

Defines all structured types exchanged between the repository, services and
sync layer:
- Enums: UpdateSyncStatus, ActivityType, SyncType, SyncStatus
- Contacts: ContactCreate/Update/Read, ContactFilter, ContactPage
- Organizations: OrganizationCreate/Read
- Activities: ActivityCreate/Read
- Campaigns: CampaignCreate/Update/Read
- Users and sync bookkeeping: UserRead, SyncHistoryRead
- OperationResult: success/failure value returned by single-entity actions
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class UpdateSyncStatus(str, Enum):
    """Outbound sync state of a local record."""

    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class ActivityType(str, Enum):
    """Kinds of logged interactions with a contact."""

    CALL = "CALL"
    EMAIL = "EMAIL"
    MEETING = "MEETING"
    MEETING_REQUEST = "MEETING_REQUEST"
    LINKEDIN = "LINKEDIN"
    REFERRAL = "REFERRAL"
    CONFERENCE = "CONFERENCE"


class SyncType(str, Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class SyncStatus(str, Enum):
    """Lifecycle of a bulk sync run."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ── Users ───────────────────────────────────────────────────────────────────


class UserRead(BaseModel):
    id: str
    email: str
    name: str | None = None
    pipedrive_api_key: str | None = None
    pipedrive_user_id: int | None = None
    is_active: bool = True


# ── Organizations ───────────────────────────────────────────────────────────


class OrganizationCreate(BaseModel):
    name: str
    industry: str | None = None
    size: str | None = None
    country: str | None = None
    remote_org_id: str | None = None


class OrganizationRead(BaseModel):
    id: str
    name: str
    normalized_name: str
    remote_org_id: str | None = None
    industry: str | None = None
    size: str | None = None
    country: str | None = None
    contact_count: int = 0
    update_sync_status: UpdateSyncStatus | None = None
    last_remote_update: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Contacts ────────────────────────────────────────────────────────────────


class ContactCreate(BaseModel):
    """Schema for creating a new contact."""

    name: str
    email: str | None = None
    phone: str | None = None
    organisation: str | None = None
    organization_id: str | None = None
    warmness_score: int = Field(default=0, ge=0, le=10)
    last_contacted: datetime | None = None
    notes: str | None = None
    remote_person_id: str | None = None
    remote_org_id: str | None = None


class ContactUpdate(BaseModel):
    """Partial contact update; only fields that are set are written."""

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    organisation: str | None = None
    organization_id: str | None = None
    warmness_score: int | None = Field(default=None, ge=0, le=10)
    last_contacted: datetime | None = None
    added_to_campaign: bool | None = None
    notes: str | None = None
    remote_org_id: str | None = None
    last_remote_update: datetime | None = None
    update_sync_status: UpdateSyncStatus | None = None


class ContactRead(BaseModel):
    """Full contact record as stored locally."""

    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    organisation: str | None = None
    organization_id: str | None = None
    organization: OrganizationRead | None = None
    warmness_score: int = 0
    last_contacted: datetime | None = None
    added_to_campaign: bool = False
    notes: str | None = None
    is_active: bool = True
    deactivated_at: datetime | None = None
    deactivated_by: str | None = None
    deactivation_reason: str | None = None
    remote_person_id: str | None = None
    remote_org_id: str | None = None
    last_remote_update: datetime | None = None
    update_sync_status: UpdateSyncStatus | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_linked(self) -> bool:
        return self.remote_person_id is not None


class ContactFilter(BaseModel):
    """Listing filters; page is 1-based."""

    search: str | None = None
    is_active: bool | None = None
    min_warmness: int | None = None
    campaign_id: str | None = None
    linked: bool | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class ContactPage(BaseModel):
    items: list[ContactRead] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


# ── Campaigns ───────────────────────────────────────────────────────────────


class CampaignCreate(BaseModel):
    name: str
    shortcode: str | None = Field(default=None, max_length=10)
    sector: str | None = None
    description: str | None = None
    status: str = "PLANNED"
    start_date: datetime | None = None
    end_date: datetime | None = None


class CampaignUpdate(BaseModel):
    name: str | None = None
    shortcode: str | None = Field(default=None, max_length=10)
    sector: str | None = None
    description: str | None = None
    status: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class CampaignRead(BaseModel):
    id: str
    name: str
    shortcode: str | None = None
    sector: str | None = None
    description: str | None = None
    status: str = "PLANNED"
    start_date: datetime | None = None
    end_date: datetime | None = None
    contact_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Activities ──────────────────────────────────────────────────────────────


class ActivityCreate(BaseModel):
    """Schema for logging a new activity against a contact."""

    type: ActivityType
    subject: str | None = None
    note: str | None = None
    due_date: datetime | None = None
    contact_id: str
    user_id: str
    campaign_id: str | None = None
    is_system_activity: bool = False
    system_action: str | None = None


class ActivityRead(BaseModel):
    id: str
    type: ActivityType
    subject: str | None = None
    note: str | None = None
    due_date: datetime | None = None
    contact_id: str
    user_id: str
    campaign_id: str | None = None
    replicated_to_pipedrive: bool = False
    remote_activity_id: str | None = None
    pipedrive_sync_attempts: int = 0
    last_pipedrive_sync_attempt: datetime | None = None
    update_sync_status: UpdateSyncStatus | None = None
    last_remote_update: datetime | None = None
    is_system_activity: bool = False
    system_action: str | None = None
    created_at: datetime | None = None


class ActivityContext(BaseModel):
    """An activity loaded with the records replication needs."""

    activity: ActivityRead
    contact: ContactRead
    user: UserRead
    campaign: CampaignRead | None = None


# ── Sync bookkeeping ────────────────────────────────────────────────────────


class SyncHistoryRead(BaseModel):
    id: str
    user_id: str
    sync_type: SyncType
    status: SyncStatus
    total_contacts: int = 0
    contacts_processed: int = 0
    contacts_updated: int = 0
    contacts_failed: int = 0
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


# ── Operation results ───────────────────────────────────────────────────────


class OperationResult(BaseModel):
    """Outcome of a single-entity action (promotion, deactivation, ...)."""

    success: bool
    error: str | None = None
    code: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str | None = None, **data: Any) -> OperationResult:
        return cls(success=False, error=error, code=code, data=data)
