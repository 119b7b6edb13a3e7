"""Contact and campaign services -- thin CRUD wrappers over CRMRepository.

These hold the small amount of local validation the HTTP surface needs
(email shape, shortcode format, organization resolution) and raise domain
exceptions that the API layer maps to status codes. Remote synchronization
lives in src.crmsync.sync; nothing here calls Pipedrive.
"""

from __future__ import annotations

import re

import structlog

from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import (
    CampaignCreate,
    CampaignRead,
    CampaignUpdate,
    ContactCreate,
    ContactFilter,
    ContactPage,
    ContactRead,
    ContactUpdate,
    UpdateSyncStatus,
)

logger = structlog.get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SHORTCODE_RE = re.compile(r"^[A-Za-z0-9]{2,10}$")


class NotFoundError(LookupError):
    """Requested record does not exist."""


class ContactValidationError(ValueError):
    """A local precondition was violated; never retried."""


class ContactService:
    """CRUD for contacts.

    Args:
        repository: CRMRepository (or a test double with the same surface).
    """

    def __init__(self, repository: CRMRepository) -> None:
        self._repo = repository

    @staticmethod
    def _validate_email(email: str | None) -> None:
        if email and not _EMAIL_RE.match(email):
            raise ContactValidationError(f"Invalid email address: {email}")

    async def create(self, data: ContactCreate) -> ContactRead:
        self._validate_email(data.email)
        if not data.name.strip():
            raise ContactValidationError("Contact name is required")
        if data.organisation and not data.organization_id:
            org = await self._repo.get_or_create_organization(data.organisation)
            data = data.model_copy(update={"organization_id": org.id})
        contact = await self._repo.create_contact(data)
        logger.info("contacts.created", contact_id=contact.id)
        return contact

    async def get(self, contact_id: str) -> ContactRead:
        contact = await self._repo.get_contact(contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {contact_id} not found")
        return contact

    async def list(self, filters: ContactFilter) -> ContactPage:
        return await self._repo.list_contacts(filters)

    async def search(self, term: str, limit: int = 20) -> list[ContactRead]:
        page = await self._repo.list_contacts(ContactFilter(search=term, limit=limit))
        return page.items

    async def update(self, contact_id: str, data: ContactUpdate) -> ContactRead:
        """Apply a partial update.

        Linked contacts are flagged PENDING so the batch updater pushes the
        change to Pipedrive.
        """
        existing = await self.get(contact_id)
        self._validate_email(data.email)
        changes = data.model_dump(exclude_unset=True)
        if "organisation" in changes and changes["organisation"] and "organization_id" not in changes:
            org = await self._repo.get_or_create_organization(changes["organisation"])
            changes["organization_id"] = org.id
        if existing.is_linked and "update_sync_status" not in changes:
            changes["update_sync_status"] = UpdateSyncStatus.PENDING
        updated = await self._repo.update_contact(contact_id, ContactUpdate(**changes))
        if updated is None:
            raise NotFoundError(f"Contact {contact_id} not found")
        return updated

    async def delete(self, contact_id: str) -> None:
        if not await self._repo.delete_contact(contact_id):
            raise NotFoundError(f"Contact {contact_id} not found")

    async def assign_campaign(self, contact_id: str, campaign_id: str) -> None:
        if not await self._repo.assign_campaign(contact_id, campaign_id):
            raise NotFoundError("Contact or campaign not found")

    async def remove_campaign(self, contact_id: str, campaign_id: str) -> None:
        if not await self._repo.remove_campaign(contact_id, campaign_id):
            raise NotFoundError("Contact is not assigned to that campaign")


class CampaignService:
    """CRUD for campaigns."""

    def __init__(self, repository: CRMRepository) -> None:
        self._repo = repository

    @staticmethod
    def _validate_shortcode(shortcode: str | None) -> None:
        if shortcode is not None and not _SHORTCODE_RE.match(shortcode):
            raise ContactValidationError(
                "Shortcode must be 2-10 letters or digits"
            )

    async def create(self, data: CampaignCreate) -> CampaignRead:
        self._validate_shortcode(data.shortcode)
        campaign = await self._repo.create_campaign(data)
        logger.info("campaigns.created", campaign_id=campaign.id, shortcode=campaign.shortcode)
        return campaign

    async def get(self, campaign_id: str) -> CampaignRead:
        campaign = await self._repo.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def list(self) -> list[CampaignRead]:
        return await self._repo.list_campaigns()

    async def update(self, campaign_id: str, data: CampaignUpdate) -> CampaignRead:
        self._validate_shortcode(data.shortcode)
        campaign = await self._repo.update_campaign(campaign_id, data)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def delete(self, campaign_id: str) -> None:
        if not await self._repo.delete_campaign(campaign_id):
            raise NotFoundError(f"Campaign {campaign_id} not found")
