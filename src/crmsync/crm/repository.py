"""CRM repository -- async CRUD for users, contacts, organizations, campaigns, activities.

Provides CRMRepository with the session_factory callable pattern: every
method opens its own session from the injected factory, so components
receive the store as an explicit dependency and tests substitute an
in-memory double with the same method surface.

Models are converted to Pydantic read schemas before leaving the
repository; nothing above this layer touches SQLAlchemy objects.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.crmsync.crm.models import (
    ActivityModel,
    CampaignModel,
    ContactModel,
    OrganizationModel,
    SyncHistoryModel,
    campaign_contacts,
)
from src.crmsync.crm.schemas import (
    ActivityContext,
    ActivityCreate,
    ActivityRead,
    ActivityType,
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
from src.crmsync.models.user import User

logger = structlog.get_logger(__name__)


def normalize_org_name(name: str) -> str:
    """De-duplication key for organizations: trimmed, lower-cased, single-spaced."""
    return " ".join(name.split()).lower()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid(value: str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _opt_str(value: object | None) -> str | None:
    return str(value) if value is not None else None


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_user(model: User) -> UserRead:
    return UserRead(
        id=str(model.id),
        email=model.email,
        name=model.name,
        pipedrive_api_key=model.pipedrive_api_key,
        pipedrive_user_id=model.pipedrive_user_id,
        is_active=model.is_active,
    )


def _model_to_organization(model: OrganizationModel) -> OrganizationRead:
    return OrganizationRead(
        id=str(model.id),
        name=model.name,
        normalized_name=model.normalized_name,
        remote_org_id=model.remote_org_id,
        industry=model.industry,
        size=model.size,
        country=model.country,
        contact_count=model.contact_count or 0,
        update_sync_status=model.update_sync_status,
        last_remote_update=model.last_remote_update,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_contact(model: ContactModel) -> ContactRead:
    return ContactRead(
        id=str(model.id),
        name=model.name,
        email=model.email,
        phone=model.phone,
        organisation=model.organisation,
        organization_id=_opt_str(model.organization_id),
        organization=_model_to_organization(model.organization) if model.organization else None,
        warmness_score=model.warmness_score or 0,
        last_contacted=model.last_contacted,
        added_to_campaign=bool(model.added_to_campaign),
        notes=model.notes,
        is_active=model.is_active,
        deactivated_at=model.deactivated_at,
        deactivated_by=model.deactivated_by,
        deactivation_reason=model.deactivation_reason,
        remote_person_id=model.remote_person_id,
        remote_org_id=model.remote_org_id,
        last_remote_update=model.last_remote_update,
        update_sync_status=model.update_sync_status,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_campaign(model: CampaignModel, contact_count: int = 0) -> CampaignRead:
    return CampaignRead(
        id=str(model.id),
        name=model.name,
        shortcode=model.shortcode,
        sector=model.sector,
        description=model.description,
        status=model.status,
        start_date=model.start_date,
        end_date=model.end_date,
        contact_count=contact_count,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_activity(model: ActivityModel) -> ActivityRead:
    return ActivityRead(
        id=str(model.id),
        type=ActivityType(model.type),
        subject=model.subject,
        note=model.note,
        due_date=model.due_date,
        contact_id=str(model.contact_id),
        user_id=str(model.user_id),
        campaign_id=_opt_str(model.campaign_id),
        replicated_to_pipedrive=model.replicated_to_pipedrive,
        remote_activity_id=model.remote_activity_id,
        pipedrive_sync_attempts=model.pipedrive_sync_attempts or 0,
        last_pipedrive_sync_attempt=model.last_pipedrive_sync_attempt,
        update_sync_status=model.update_sync_status,
        last_remote_update=model.last_remote_update,
        is_system_activity=model.is_system_activity,
        system_action=model.system_action,
        created_at=model.created_at,
    )


def _model_to_sync_history(model: SyncHistoryModel) -> SyncHistoryRead:
    return SyncHistoryRead(
        id=str(model.id),
        user_id=str(model.user_id),
        sync_type=SyncType(model.sync_type),
        status=SyncStatus(model.status),
        total_contacts=model.total_contacts or 0,
        contacts_processed=model.contacts_processed or 0,
        contacts_updated=model.contacts_updated or 0,
        contacts_failed=model.contacts_failed or 0,
        error=model.error,
        started_at=model.started_at,
        completed_at=model.completed_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class CRMRepository:
    """Async CRUD operations for every local CRM entity.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Users ───────────────────────────────────────────────────────────────

    async def create_user(
        self,
        email: str,
        name: str | None = None,
        hashed_password: str | None = None,
        pipedrive_api_key: str | None = None,
    ) -> UserRead:
        async for session in self._session_factory():
            model = User(
                email=email,
                name=name,
                hashed_password=hashed_password,
                pipedrive_api_key=pipedrive_api_key,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_user(model)

    async def get_user(self, user_id: str) -> UserRead | None:
        async for session in self._session_factory():
            model = await session.get(User, _uuid(user_id))
            return _model_to_user(model) if model else None

    async def get_user_by_email(self, email: str) -> UserRead | None:
        async for session in self._session_factory():
            result = await session.execute(select(User).where(User.email == email))
            model = result.scalar_one_or_none()
            return _model_to_user(model) if model else None

    async def get_user_credentials(self, email: str) -> tuple[UserRead, str | None] | None:
        """The user and their password hash, for login only."""
        async for session in self._session_factory():
            result = await session.execute(select(User).where(User.email == email))
            model = result.scalar_one_or_none()
            return (_model_to_user(model), model.hashed_password) if model else None

    async def set_user_api_key(self, user_id: str, api_key: str | None) -> UserRead | None:
        """Store a new Pipedrive token; the cached remote user id is reset with it."""
        async for session in self._session_factory():
            model = await session.get(User, _uuid(user_id))
            if model is None:
                return None
            model.pipedrive_api_key = api_key
            model.pipedrive_user_id = None
            await session.commit()
            await session.refresh(model)
            return _model_to_user(model)

    async def set_user_remote_id(self, user_id: str, remote_user_id: int) -> None:
        """Cache the resolved Pipedrive user id on the user record."""
        async for session in self._session_factory():
            await session.execute(
                update(User)
                .where(User.id == _uuid(user_id))
                .values(pipedrive_user_id=remote_user_id)
            )
            await session.commit()

    # ── Organizations ───────────────────────────────────────────────────────

    async def get_organization(self, org_id: str) -> OrganizationRead | None:
        async for session in self._session_factory():
            model = await session.get(OrganizationModel, _uuid(org_id))
            return _model_to_organization(model) if model else None

    async def get_organization_by_name(self, name: str) -> OrganizationRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(OrganizationModel).where(
                    OrganizationModel.normalized_name == normalize_org_name(name)
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_organization(model) if model else None

    async def get_organization_by_remote_id(self, remote_org_id: str) -> OrganizationRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(OrganizationModel).where(OrganizationModel.remote_org_id == remote_org_id)
            )
            model = result.scalar_one_or_none()
            return _model_to_organization(model) if model else None

    async def create_organization(self, data: OrganizationCreate) -> OrganizationRead:
        async for session in self._session_factory():
            model = OrganizationModel(
                name=data.name.strip(),
                normalized_name=normalize_org_name(data.name),
                industry=data.industry,
                size=data.size,
                country=data.country,
                remote_org_id=data.remote_org_id,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_organization(model)

    async def get_or_create_organization(self, name: str) -> OrganizationRead:
        existing = await self.get_organization_by_name(name)
        if existing is not None:
            return existing
        return await self.create_organization(OrganizationCreate(name=name))

    async def set_organization_remote_id(self, org_id: str, remote_org_id: str) -> bool:
        """Link an organization to its remote counterpart if it is still unlinked.

        Returns:
            True if this call wrote the link, False if another writer won.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(OrganizationModel)
                .where(
                    OrganizationModel.id == _uuid(org_id),
                    OrganizationModel.remote_org_id.is_(None),
                )
                .values(
                    remote_org_id=remote_org_id,
                    update_sync_status=UpdateSyncStatus.SYNCED.value,
                    last_remote_update=_now(),
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def set_organization_sync_status(
        self, org_id: str, status: UpdateSyncStatus, *, touched: bool = False
    ) -> None:
        values: dict = {"update_sync_status": status.value}
        if touched:
            values["last_remote_update"] = _now()
        async for session in self._session_factory():
            await session.execute(
                update(OrganizationModel).where(OrganizationModel.id == _uuid(org_id)).values(**values)
            )
            await session.commit()

    async def upsert_organization_from_remote(
        self,
        remote_org_id: str,
        name: str,
        *,
        country: str | None = None,
        industry: str | None = None,
        size: str | None = None,
    ) -> OrganizationRead:
        """Create or refresh the local copy of a remote organization.

        Matches by remote id first, then by normalized name (linking it).
        """
        async for session in self._session_factory():
            result = await session.execute(
                select(OrganizationModel).where(
                    or_(
                        OrganizationModel.remote_org_id == remote_org_id,
                        OrganizationModel.normalized_name == normalize_org_name(name),
                    )
                )
            )
            candidates = result.scalars().all()
            model = next((m for m in candidates if m.remote_org_id == remote_org_id), None)
            if model is None:
                model = next((m for m in candidates if m.remote_org_id is None), None)
            if model is None:
                model = OrganizationModel(
                    name=name.strip(),
                    normalized_name=normalize_org_name(name),
                )
                session.add(model)
            model.remote_org_id = remote_org_id
            model.country = country
            model.industry = industry
            model.size = size
            model.update_sync_status = UpdateSyncStatus.SYNCED.value
            model.last_remote_update = _now()
            await session.commit()
            await session.refresh(model)
            return _model_to_organization(model)

    # ── Contacts ────────────────────────────────────────────────────────────

    async def create_contact(self, data: ContactCreate) -> ContactRead:
        async for session in self._session_factory():
            model = ContactModel(
                name=data.name,
                email=data.email,
                phone=data.phone,
                organisation=data.organisation,
                organization_id=_uuid(data.organization_id) if data.organization_id else None,
                warmness_score=data.warmness_score,
                last_contacted=data.last_contacted,
                notes=data.notes,
                remote_person_id=data.remote_person_id,
                remote_org_id=data.remote_org_id,
                update_sync_status=(
                    UpdateSyncStatus.SYNCED.value if data.remote_person_id else None
                ),
                last_remote_update=_now() if data.remote_person_id else None,
            )
            session.add(model)
            if model.organization_id is not None:
                await session.execute(
                    update(OrganizationModel)
                    .where(OrganizationModel.id == model.organization_id)
                    .values(contact_count=OrganizationModel.contact_count + 1)
                )
            await session.commit()
            await session.refresh(model, attribute_names=["organization", "created_at", "updated_at"])
            return _model_to_contact(model)

    async def get_contact(self, contact_id: str) -> ContactRead | None:
        async for session in self._session_factory():
            model = await session.get(ContactModel, _uuid(contact_id))
            return _model_to_contact(model) if model else None

    async def get_contact_by_remote_person_id(self, remote_person_id: str) -> ContactRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(ContactModel).where(ContactModel.remote_person_id == remote_person_id)
            )
            model = result.scalar_one_or_none()
            return _model_to_contact(model) if model else None

    async def get_unlinked_contact_by_email(self, email: str) -> ContactRead | None:
        """Oldest contact with this email (case-insensitive) and no remote person."""
        async for session in self._session_factory():
            result = await session.execute(
                select(ContactModel)
                .where(
                    func.lower(ContactModel.email) == email.strip().lower(),
                    ContactModel.remote_person_id.is_(None),
                )
                .order_by(ContactModel.created_at)
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return _model_to_contact(model) if model else None

    async def list_contacts(self, filters: ContactFilter) -> ContactPage:
        async for session in self._session_factory():
            stmt = select(ContactModel)
            if filters.search:
                pattern = f"%{filters.search}%"
                stmt = stmt.where(
                    or_(
                        ContactModel.name.ilike(pattern),
                        ContactModel.email.ilike(pattern),
                        ContactModel.organisation.ilike(pattern),
                    )
                )
            if filters.is_active is not None:
                stmt = stmt.where(ContactModel.is_active == filters.is_active)
            if filters.min_warmness is not None:
                stmt = stmt.where(ContactModel.warmness_score >= filters.min_warmness)
            if filters.linked is True:
                stmt = stmt.where(ContactModel.remote_person_id.is_not(None))
            elif filters.linked is False:
                stmt = stmt.where(ContactModel.remote_person_id.is_(None))
            if filters.campaign_id:
                stmt = stmt.join(
                    campaign_contacts, campaign_contacts.c.contact_id == ContactModel.id
                ).where(campaign_contacts.c.campaign_id == _uuid(filters.campaign_id))

            total = (
                await session.execute(select(func.count()).select_from(stmt.subquery()))
            ).scalar_one()
            page_stmt = (
                stmt.order_by(ContactModel.created_at.desc())
                .offset((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            )
            models = (await session.execute(page_stmt)).scalars().all()
            return ContactPage(
                items=[_model_to_contact(m) for m in models],
                total=total,
                page=filters.page,
                limit=filters.limit,
            )

    async def update_contact(self, contact_id: str, data: ContactUpdate) -> ContactRead | None:
        """Apply the fields explicitly set on data; returns None if missing."""
        values = data.model_dump(exclude_unset=True)
        if "organization_id" in values and values["organization_id"] is not None:
            values["organization_id"] = _uuid(values["organization_id"])
        if "update_sync_status" in values and values["update_sync_status"] is not None:
            values["update_sync_status"] = UpdateSyncStatus(values["update_sync_status"]).value
        async for session in self._session_factory():
            model = await session.get(ContactModel, _uuid(contact_id))
            if model is None:
                return None
            for key, value in values.items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)

    async def delete_contact(self, contact_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(ContactModel).where(ContactModel.id == _uuid(contact_id))
            )
            await session.commit()
            return result.rowcount == 1

    async def link_remote_person(
        self,
        contact_id: str,
        remote_person_id: str,
        remote_org_id: str | None = None,
    ) -> bool:
        """Conditionally write the remote person id.

        The UPDATE only matches while remote_person_id IS NULL, so of two
        concurrent writers exactly one sees rowcount 1.

        Returns:
            True if this call linked the contact, False if it was already linked.
        """
        values: dict = {
            "remote_person_id": remote_person_id,
            "update_sync_status": UpdateSyncStatus.SYNCED.value,
            "last_remote_update": _now(),
        }
        if remote_org_id is not None:
            values["remote_org_id"] = remote_org_id
        async for session in self._session_factory():
            result = await session.execute(
                update(ContactModel)
                .where(
                    ContactModel.id == _uuid(contact_id),
                    ContactModel.remote_person_id.is_(None),
                )
                .values(**values)
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_contact_synced(self, contact_id: str, remote_org_id: str | None = None) -> None:
        values: dict = {
            "update_sync_status": UpdateSyncStatus.SYNCED.value,
            "last_remote_update": _now(),
        }
        if remote_org_id is not None:
            values["remote_org_id"] = remote_org_id
        async for session in self._session_factory():
            await session.execute(
                update(ContactModel).where(ContactModel.id == _uuid(contact_id)).values(**values)
            )
            await session.commit()

    async def set_contact_sync_status(self, contact_id: str, status: UpdateSyncStatus) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ContactModel)
                .where(ContactModel.id == _uuid(contact_id))
                .values(update_sync_status=status.value)
            )
            await session.commit()

    async def set_contact_active(
        self,
        contact_id: str,
        is_active: bool,
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ContactRead | None:
        """Flip the active flag; deactivation records actor/reason, reactivation clears them."""
        if is_active:
            values = {
                "is_active": True,
                "deactivated_at": None,
                "deactivated_by": None,
                "deactivation_reason": None,
            }
        else:
            values = {
                "is_active": False,
                "deactivated_at": _now(),
                "deactivated_by": actor,
                "deactivation_reason": reason,
            }
        async for session in self._session_factory():
            model = await session.get(ContactModel, _uuid(contact_id))
            if model is None:
                return None
            for key, value in values.items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)

    async def has_pending_activities(self, contact_id: str, now: datetime) -> bool:
        """True if any non-system activity for the contact is due after now."""
        async for session in self._session_factory():
            result = await session.execute(
                select(func.count())
                .select_from(ActivityModel)
                .where(
                    ActivityModel.contact_id == _uuid(contact_id),
                    ActivityModel.due_date > now,
                    ActivityModel.is_system_activity.is_(False),
                )
            )
            return result.scalar_one() > 0

    async def assign_campaign(self, contact_id: str, campaign_id: str) -> bool:
        async for session in self._session_factory():
            contact = await session.get(ContactModel, _uuid(contact_id))
            campaign = await session.get(CampaignModel, _uuid(campaign_id))
            if contact is None or campaign is None:
                return False
            if campaign not in contact.campaigns:
                contact.campaigns.append(campaign)
            contact.added_to_campaign = True
            await session.commit()
            return True

    async def remove_campaign(self, contact_id: str, campaign_id: str) -> bool:
        async for session in self._session_factory():
            contact = await session.get(ContactModel, _uuid(contact_id))
            if contact is None:
                return False
            before = len(contact.campaigns)
            contact.campaigns = [c for c in contact.campaigns if str(c.id) != str(campaign_id)]
            contact.added_to_campaign = bool(contact.campaigns)
            await session.commit()
            return len(contact.campaigns) < before

    # ── Campaigns ───────────────────────────────────────────────────────────

    async def _campaign_contact_count(self, session: AsyncSession, campaign_id: uuid.UUID) -> int:
        result = await session.execute(
            select(func.count())
            .select_from(campaign_contacts)
            .where(campaign_contacts.c.campaign_id == campaign_id)
        )
        return result.scalar_one()

    async def create_campaign(self, data: CampaignCreate) -> CampaignRead:
        async for session in self._session_factory():
            model = CampaignModel(**data.model_dump())
            if model.shortcode:
                model.shortcode = model.shortcode.upper()
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_campaign(model)

    async def get_campaign(self, campaign_id: str) -> CampaignRead | None:
        async for session in self._session_factory():
            model = await session.get(CampaignModel, _uuid(campaign_id))
            if model is None:
                return None
            return _model_to_campaign(model, await self._campaign_contact_count(session, model.id))

    async def list_campaigns(self) -> list[CampaignRead]:
        async for session in self._session_factory():
            counts = dict(
                (
                    await session.execute(
                        select(campaign_contacts.c.campaign_id, func.count()).group_by(
                            campaign_contacts.c.campaign_id
                        )
                    )
                ).all()
            )
            result = await session.execute(
                select(CampaignModel).order_by(CampaignModel.created_at.desc())
            )
            return [_model_to_campaign(m, counts.get(m.id, 0)) for m in result.scalars().all()]

    async def update_campaign(self, campaign_id: str, data: CampaignUpdate) -> CampaignRead | None:
        values = data.model_dump(exclude_unset=True)
        if values.get("shortcode"):
            values["shortcode"] = values["shortcode"].upper()
        async for session in self._session_factory():
            model = await session.get(CampaignModel, _uuid(campaign_id))
            if model is None:
                return None
            for key, value in values.items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_campaign(model, await self._campaign_contact_count(session, model.id))

    async def delete_campaign(self, campaign_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(CampaignModel).where(CampaignModel.id == _uuid(campaign_id))
            )
            await session.commit()
            return result.rowcount == 1

    # ── Activities ──────────────────────────────────────────────────────────

    async def create_activity(self, data: ActivityCreate) -> ActivityRead:
        async for session in self._session_factory():
            model = ActivityModel(
                type=data.type.value,
                subject=data.subject,
                note=data.note,
                due_date=data.due_date,
                contact_id=_uuid(data.contact_id),
                user_id=_uuid(data.user_id),
                campaign_id=_uuid(data.campaign_id) if data.campaign_id else None,
                is_system_activity=data.is_system_activity,
                system_action=data.system_action,
            )
            session.add(model)
            if not data.is_system_activity:
                await session.execute(
                    update(ContactModel)
                    .where(ContactModel.id == model.contact_id)
                    .values(last_contacted=_now())
                )
            await session.commit()
            await session.refresh(model)
            return _model_to_activity(model)

    async def get_activity(self, activity_id: str) -> ActivityRead | None:
        async for session in self._session_factory():
            model = await session.get(ActivityModel, _uuid(activity_id))
            return _model_to_activity(model) if model else None

    async def list_activities(self, contact_id: str) -> list[ActivityRead]:
        """Activities for one contact, newest first."""
        async for session in self._session_factory():
            result = await session.execute(
                select(ActivityModel)
                .where(ActivityModel.contact_id == _uuid(contact_id))
                .order_by(ActivityModel.created_at.desc())
            )
            return [_model_to_activity(m) for m in result.scalars().all()]

    async def get_activity_context(self, activity_id: str) -> ActivityContext | None:
        """Load an activity together with its contact, user and campaign."""
        async for session in self._session_factory():
            activity = await session.get(ActivityModel, _uuid(activity_id))
            if activity is None:
                return None
            contact = await session.get(ContactModel, activity.contact_id)
            user = await session.get(User, activity.user_id)
            if contact is None or user is None:
                return None
            campaign = (
                await session.get(CampaignModel, activity.campaign_id)
                if activity.campaign_id
                else None
            )
            return ActivityContext(
                activity=_model_to_activity(activity),
                contact=_model_to_contact(contact),
                user=_model_to_user(user),
                campaign=_model_to_campaign(campaign) if campaign else None,
            )

    async def record_replication_attempt(
        self, activity_id: str, attempts: int, attempted_at: datetime
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ActivityModel)
                .where(ActivityModel.id == _uuid(activity_id))
                .values(
                    pipedrive_sync_attempts=attempts,
                    last_pipedrive_sync_attempt=attempted_at,
                )
            )
            await session.commit()

    async def mark_activity_replicated(self, activity_id: str, remote_activity_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ActivityModel)
                .where(ActivityModel.id == _uuid(activity_id))
                .values(
                    replicated_to_pipedrive=True,
                    remote_activity_id=remote_activity_id,
                    update_sync_status=UpdateSyncStatus.SYNCED.value,
                    last_remote_update=_now(),
                )
            )
            await session.commit()

    async def set_activity_sync_status(
        self, activity_id: str, status: UpdateSyncStatus, *, touched: bool = False
    ) -> None:
        values: dict = {"update_sync_status": status.value}
        if touched:
            values["last_remote_update"] = _now()
        async for session in self._session_factory():
            await session.execute(
                update(ActivityModel).where(ActivityModel.id == _uuid(activity_id)).values(**values)
            )
            await session.commit()

    # ── Sync History ────────────────────────────────────────────────────────

    async def create_sync_history(self, user_id: str, sync_type: SyncType) -> SyncHistoryRead:
        async for session in self._session_factory():
            model = SyncHistoryModel(
                user_id=_uuid(user_id),
                sync_type=sync_type.value,
                status=SyncStatus.PROCESSING.value,
                started_at=_now(),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_history(model)

    async def update_sync_history(self, sync_id: str, **fields: object) -> None:
        values = {
            key: (value.value if isinstance(value, SyncStatus) else value)
            for key, value in fields.items()
        }
        async for session in self._session_factory():
            await session.execute(
                update(SyncHistoryModel)
                .where(SyncHistoryModel.id == _uuid(sync_id))
                .values(**values)
            )
            await session.commit()

    async def get_sync_history(self, sync_id: str) -> SyncHistoryRead | None:
        async for session in self._session_factory():
            model = await session.get(SyncHistoryModel, _uuid(sync_id))
            return _model_to_sync_history(model) if model else None

    async def get_latest_sync_history(
        self, user_id: str, status: SyncStatus | None = None
    ) -> SyncHistoryRead | None:
        """Most recent sync row for the user, optionally restricted to a status."""
        async for session in self._session_factory():
            stmt = select(SyncHistoryModel).where(SyncHistoryModel.user_id == _uuid(user_id))
            if status is not None:
                stmt = stmt.where(SyncHistoryModel.status == status.value)
            stmt = stmt.order_by(SyncHistoryModel.started_at.desc()).limit(1)
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_sync_history(model) if model else None
