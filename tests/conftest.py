"""Shared test fixtures.

Provides:
- InMemoryCRMRepository: dict-backed double with the CRMRepository surface,
  including the conditional remote-link writes
- repo / user fixtures
- pipedrive_client: MagicMock(spec=PipedriveClient) whose async methods are
  AsyncMocks that fail loudly unless a test stubs them
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from src.crmsync.config import PipedriveSettings
from src.crmsync.crm.repository import normalize_org_name
from src.crmsync.crm.schemas import (
    ActivityContext,
    ActivityCreate,
    ActivityRead,
    CampaignCreate,
    CampaignRead,
    CampaignUpdate,
    ContactCreate,
    ContactFilter,
    ContactPage,
    ContactRead,
    ContactUpdate,
    OrganizationCreate,
    OrganizationRead,
    SyncHistoryRead,
    SyncStatus,
    SyncType,
    UpdateSyncStatus,
    UserRead,
)
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.pipedrive.errors import ApiError, ApiErrorKind, ApiResult


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryCRMRepository:
    """In-memory CRMRepository for testing without a database."""

    def __init__(self) -> None:
        self.users: dict[str, UserRead] = {}
        self.passwords: dict[str, str | None] = {}
        self.organizations: dict[str, OrganizationRead] = {}
        self.contacts: dict[str, ContactRead] = {}
        self.campaigns: dict[str, CampaignRead] = {}
        self.memberships: set[tuple[str, str]] = set()
        self.activities: dict[str, ActivityRead] = {}
        self.sync_history: dict[str, SyncHistoryRead] = {}
        self.link_calls: list[tuple[str, str]] = []

    # ── Users ───────────────────────────────────────────────────────────────

    async def create_user(
        self,
        email: str,
        name: str | None = None,
        hashed_password: str | None = None,
        pipedrive_api_key: str | None = None,
    ) -> UserRead:
        user = UserRead(id=_new_id(), email=email, name=name, pipedrive_api_key=pipedrive_api_key)
        self.users[user.id] = user
        self.passwords[user.id] = hashed_password
        return user

    async def get_user(self, user_id: str) -> UserRead | None:
        return self.users.get(user_id)

    async def get_user_by_email(self, email: str) -> UserRead | None:
        return next((u for u in self.users.values() if u.email == email), None)

    async def get_user_credentials(self, email: str) -> tuple[UserRead, str | None] | None:
        user = await self.get_user_by_email(email)
        return (user, self.passwords.get(user.id)) if user else None

    async def set_user_api_key(self, user_id: str, api_key: str | None) -> UserRead | None:
        user = self.users.get(user_id)
        if user is None:
            return None
        user = user.model_copy(update={"pipedrive_api_key": api_key, "pipedrive_user_id": None})
        self.users[user_id] = user
        return user

    async def set_user_remote_id(self, user_id: str, remote_user_id: int) -> None:
        user = self.users[user_id]
        self.users[user_id] = user.model_copy(update={"pipedrive_user_id": remote_user_id})

    # ── Organizations ───────────────────────────────────────────────────────

    async def get_organization(self, org_id: str) -> OrganizationRead | None:
        return self.organizations.get(org_id)

    async def get_organization_by_name(self, name: str) -> OrganizationRead | None:
        key = normalize_org_name(name)
        return next((o for o in self.organizations.values() if o.normalized_name == key), None)

    async def get_organization_by_remote_id(self, remote_org_id: str) -> OrganizationRead | None:
        return next(
            (o for o in self.organizations.values() if o.remote_org_id == remote_org_id), None
        )

    async def create_organization(self, data: OrganizationCreate) -> OrganizationRead:
        organization = OrganizationRead(
            id=_new_id(),
            name=data.name.strip(),
            normalized_name=normalize_org_name(data.name),
            remote_org_id=data.remote_org_id,
            industry=data.industry,
            size=data.size,
            country=data.country,
            created_at=_now(),
        )
        self.organizations[organization.id] = organization
        return organization

    async def get_or_create_organization(self, name: str) -> OrganizationRead:
        existing = await self.get_organization_by_name(name)
        if existing is not None:
            return existing
        return await self.create_organization(OrganizationCreate(name=name))

    async def set_organization_remote_id(self, org_id: str, remote_org_id: str) -> bool:
        organization = self.organizations.get(org_id)
        if organization is None or organization.remote_org_id is not None:
            return False
        self.organizations[org_id] = organization.model_copy(
            update={
                "remote_org_id": remote_org_id,
                "update_sync_status": UpdateSyncStatus.SYNCED,
                "last_remote_update": _now(),
            }
        )
        return True

    async def set_organization_sync_status(
        self, org_id: str, status: UpdateSyncStatus, *, touched: bool = False
    ) -> None:
        organization = self.organizations.get(org_id)
        if organization is None:
            return
        update: dict = {"update_sync_status": status}
        if touched:
            update["last_remote_update"] = _now()
        self.organizations[org_id] = organization.model_copy(update=update)

    async def upsert_organization_from_remote(
        self,
        remote_org_id: str,
        name: str,
        *,
        country: str | None = None,
        industry: str | None = None,
        size: str | None = None,
    ) -> OrganizationRead:
        organization = await self.get_organization_by_remote_id(remote_org_id)
        if organization is None:
            candidate = await self.get_organization_by_name(name)
            if candidate is not None and candidate.remote_org_id is None:
                organization = candidate
        if organization is None:
            organization = await self.create_organization(OrganizationCreate(name=name))
        organization = organization.model_copy(
            update={
                "remote_org_id": remote_org_id,
                "country": country,
                "industry": industry,
                "size": size,
                "update_sync_status": UpdateSyncStatus.SYNCED,
                "last_remote_update": _now(),
            }
        )
        self.organizations[organization.id] = organization
        return organization

    # ── Contacts ────────────────────────────────────────────────────────────

    def _view(self, contact: ContactRead) -> ContactRead:
        organization = self.organizations.get(contact.organization_id or "")
        return contact.model_copy(update={"organization": organization})

    async def create_contact(self, data: ContactCreate) -> ContactRead:
        linked = data.remote_person_id is not None
        contact = ContactRead(
            id=_new_id(),
            **data.model_dump(),
            update_sync_status=UpdateSyncStatus.SYNCED if linked else None,
            last_remote_update=_now() if linked else None,
            created_at=_now(),
        )
        self.contacts[contact.id] = contact
        if contact.organization_id in self.organizations:
            organization = self.organizations[contact.organization_id]
            self.organizations[organization.id] = organization.model_copy(
                update={"contact_count": organization.contact_count + 1}
            )
        return self._view(contact)

    async def get_contact(self, contact_id: str) -> ContactRead | None:
        contact = self.contacts.get(contact_id)
        return self._view(contact) if contact else None

    async def get_contact_by_remote_person_id(self, remote_person_id: str) -> ContactRead | None:
        contact = next(
            (c for c in self.contacts.values() if c.remote_person_id == remote_person_id), None
        )
        return self._view(contact) if contact else None

    async def get_unlinked_contact_by_email(self, email: str) -> ContactRead | None:
        wanted = email.strip().lower()
        contact = next(
            (
                c
                for c in self.contacts.values()
                if c.remote_person_id is None and (c.email or "").lower() == wanted
            ),
            None,
        )
        return self._view(contact) if contact else None

    async def list_contacts(self, filters: ContactFilter) -> ContactPage:
        items = list(self.contacts.values())
        if filters.search:
            term = filters.search.lower()
            items = [
                c
                for c in items
                if term in c.name.lower()
                or term in (c.email or "").lower()
                or term in (c.organisation or "").lower()
            ]
        if filters.is_active is not None:
            items = [c for c in items if c.is_active == filters.is_active]
        if filters.min_warmness is not None:
            items = [c for c in items if c.warmness_score >= filters.min_warmness]
        if filters.linked is not None:
            items = [c for c in items if c.is_linked == filters.linked]
        if filters.campaign_id:
            items = [c for c in items if (filters.campaign_id, c.id) in self.memberships]
        start = (filters.page - 1) * filters.limit
        return ContactPage(
            items=[self._view(c) for c in items[start : start + filters.limit]],
            total=len(items),
            page=filters.page,
            limit=filters.limit,
        )

    async def update_contact(self, contact_id: str, data: ContactUpdate) -> ContactRead | None:
        contact = self.contacts.get(contact_id)
        if contact is None:
            return None
        contact = contact.model_copy(update=data.model_dump(exclude_unset=True))
        self.contacts[contact_id] = contact
        return self._view(contact)

    async def delete_contact(self, contact_id: str) -> bool:
        return self.contacts.pop(contact_id, None) is not None

    async def link_remote_person(
        self, contact_id: str, remote_person_id: str, remote_org_id: str | None = None
    ) -> bool:
        self.link_calls.append((contact_id, remote_person_id))
        contact = self.contacts.get(contact_id)
        if contact is None or contact.remote_person_id is not None:
            return False
        update: dict = {
            "remote_person_id": remote_person_id,
            "update_sync_status": UpdateSyncStatus.SYNCED,
            "last_remote_update": _now(),
        }
        if remote_org_id is not None:
            update["remote_org_id"] = remote_org_id
        self.contacts[contact_id] = contact.model_copy(update=update)
        return True

    async def mark_contact_synced(self, contact_id: str, remote_org_id: str | None = None) -> None:
        contact = self.contacts[contact_id]
        update: dict = {"update_sync_status": UpdateSyncStatus.SYNCED, "last_remote_update": _now()}
        if remote_org_id is not None:
            update["remote_org_id"] = remote_org_id
        self.contacts[contact_id] = contact.model_copy(update=update)

    async def set_contact_sync_status(self, contact_id: str, status: UpdateSyncStatus) -> None:
        contact = self.contacts[contact_id]
        self.contacts[contact_id] = contact.model_copy(update={"update_sync_status": status})

    async def set_contact_active(
        self,
        contact_id: str,
        is_active: bool,
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ContactRead | None:
        contact = self.contacts.get(contact_id)
        if contact is None:
            return None
        if is_active:
            update = {
                "is_active": True,
                "deactivated_at": None,
                "deactivated_by": None,
                "deactivation_reason": None,
            }
        else:
            update = {
                "is_active": False,
                "deactivated_at": _now(),
                "deactivated_by": actor,
                "deactivation_reason": reason,
            }
        contact = contact.model_copy(update=update)
        self.contacts[contact_id] = contact
        return self._view(contact)

    async def has_pending_activities(self, contact_id: str, now: datetime) -> bool:
        return any(
            a.contact_id == contact_id
            and not a.is_system_activity
            and a.due_date is not None
            and a.due_date > now
            for a in self.activities.values()
        )

    async def assign_campaign(self, contact_id: str, campaign_id: str) -> bool:
        if contact_id not in self.contacts or campaign_id not in self.campaigns:
            return False
        self.memberships.add((campaign_id, contact_id))
        contact = self.contacts[contact_id]
        self.contacts[contact_id] = contact.model_copy(update={"added_to_campaign": True})
        return True

    async def remove_campaign(self, contact_id: str, campaign_id: str) -> bool:
        if (campaign_id, contact_id) not in self.memberships:
            return False
        self.memberships.discard((campaign_id, contact_id))
        still_member = any(c == contact_id for _, c in self.memberships)
        contact = self.contacts[contact_id]
        self.contacts[contact_id] = contact.model_copy(update={"added_to_campaign": still_member})
        return True

    # ── Campaigns ───────────────────────────────────────────────────────────

    def _count(self, campaign: CampaignRead) -> CampaignRead:
        count = sum(1 for c, _ in self.memberships if c == campaign.id)
        return campaign.model_copy(update={"contact_count": count})

    async def create_campaign(self, data: CampaignCreate) -> CampaignRead:
        values = data.model_dump()
        if values.get("shortcode"):
            values["shortcode"] = values["shortcode"].upper()
        campaign = CampaignRead(id=_new_id(), created_at=_now(), **values)
        self.campaigns[campaign.id] = campaign
        return campaign

    async def get_campaign(self, campaign_id: str) -> CampaignRead | None:
        campaign = self.campaigns.get(campaign_id)
        return self._count(campaign) if campaign else None

    async def list_campaigns(self) -> list[CampaignRead]:
        return [self._count(c) for c in self.campaigns.values()]

    async def update_campaign(self, campaign_id: str, data: CampaignUpdate) -> CampaignRead | None:
        campaign = self.campaigns.get(campaign_id)
        if campaign is None:
            return None
        values = data.model_dump(exclude_unset=True)
        if values.get("shortcode"):
            values["shortcode"] = values["shortcode"].upper()
        campaign = campaign.model_copy(update=values)
        self.campaigns[campaign_id] = campaign
        return self._count(campaign)

    async def delete_campaign(self, campaign_id: str) -> bool:
        if self.campaigns.pop(campaign_id, None) is None:
            return False
        self.memberships = {(c, k) for c, k in self.memberships if c != campaign_id}
        return True

    # ── Activities ──────────────────────────────────────────────────────────

    async def create_activity(self, data: ActivityCreate) -> ActivityRead:
        activity = ActivityRead(id=_new_id(), created_at=_now(), **data.model_dump())
        self.activities[activity.id] = activity
        if not data.is_system_activity and data.contact_id in self.contacts:
            contact = self.contacts[data.contact_id]
            self.contacts[data.contact_id] = contact.model_copy(update={"last_contacted": _now()})
        return activity

    async def get_activity(self, activity_id: str) -> ActivityRead | None:
        return self.activities.get(activity_id)

    async def list_activities(self, contact_id: str) -> list[ActivityRead]:
        return [a for a in reversed(self.activities.values()) if a.contact_id == contact_id]

    async def get_activity_context(self, activity_id: str) -> ActivityContext | None:
        activity = self.activities.get(activity_id)
        if activity is None:
            return None
        contact = self.contacts.get(activity.contact_id)
        user = self.users.get(activity.user_id)
        if contact is None or user is None:
            return None
        campaign = self.campaigns.get(activity.campaign_id) if activity.campaign_id else None
        return ActivityContext(
            activity=activity, contact=self._view(contact), user=user, campaign=campaign
        )

    async def record_replication_attempt(
        self, activity_id: str, attempts: int, attempted_at: datetime
    ) -> None:
        activity = self.activities[activity_id]
        self.activities[activity_id] = activity.model_copy(
            update={"pipedrive_sync_attempts": attempts, "last_pipedrive_sync_attempt": attempted_at}
        )

    async def mark_activity_replicated(self, activity_id: str, remote_activity_id: str) -> None:
        activity = self.activities[activity_id]
        self.activities[activity_id] = activity.model_copy(
            update={
                "replicated_to_pipedrive": True,
                "remote_activity_id": remote_activity_id,
                "update_sync_status": UpdateSyncStatus.SYNCED,
                "last_remote_update": _now(),
            }
        )

    async def set_activity_sync_status(
        self, activity_id: str, status: UpdateSyncStatus, *, touched: bool = False
    ) -> None:
        activity = self.activities[activity_id]
        update: dict = {"update_sync_status": status}
        if touched:
            update["last_remote_update"] = _now()
        self.activities[activity_id] = activity.model_copy(update=update)

    # ── Sync History ────────────────────────────────────────────────────────

    async def create_sync_history(self, user_id: str, sync_type: SyncType) -> SyncHistoryRead:
        history = SyncHistoryRead(
            id=_new_id(),
            user_id=user_id,
            sync_type=sync_type,
            status=SyncStatus.PROCESSING,
            started_at=_now(),
        )
        self.sync_history[history.id] = history
        return history

    async def update_sync_history(self, sync_id: str, **fields: object) -> None:
        history = self.sync_history[sync_id]
        self.sync_history[sync_id] = history.model_copy(update=fields)

    async def get_sync_history(self, sync_id: str) -> SyncHistoryRead | None:
        return self.sync_history.get(sync_id)

    async def get_latest_sync_history(
        self, user_id: str, status: SyncStatus | None = None
    ) -> SyncHistoryRead | None:
        rows = [
            h
            for h in self.sync_history.values()
            if h.user_id == user_id and (status is None or h.status == status)
        ]
        return max(rows, key=lambda h: h.started_at) if rows else None


# ── Fixtures ─────────────────────────────────────────────────────────────────


_CLIENT_METHODS = (
    "request",
    "get_current_user",
    "test_connection",
    "find_users_by_email",
    "get_person",
    "create_person",
    "update_person",
    "delete_person",
    "search_persons",
    "list_persons",
    "get_organization",
    "create_organization",
    "update_organization",
    "delete_organization",
    "search_organizations",
    "list_organizations",
    "create_activity",
    "update_activity",
    "person_fields",
    "organization_fields",
    "list_filters",
)


@pytest.fixture
def pipedrive_settings() -> PipedriveSettings:
    return PipedriveSettings(retry_delay=0.1, page_size=100)


@pytest.fixture
def pipedrive_client(pipedrive_settings) -> MagicMock:
    """Client double; every endpoint fails with 'not stubbed' until a test sets it."""
    client = MagicMock(spec=PipedriveClient)
    client.settings = pipedrive_settings
    not_stubbed = ApiResult.failure(ApiError(ApiErrorKind.HTTP_ERROR, "not stubbed", 500))
    for name in _CLIENT_METHODS:
        setattr(client, name, AsyncMock(return_value=not_stubbed))
    return client


@pytest.fixture
def repo() -> InMemoryCRMRepository:
    return InMemoryCRMRepository()


@pytest_asyncio.fixture
async def user(repo) -> UserRead:
    return await repo.create_user(
        email="sam@example.com", name="Sam Carter", pipedrive_api_key="pd-token"
    )
