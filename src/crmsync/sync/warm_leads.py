"""Warm-lead promotion: push a sufficiently warm local contact to Pipedrive.

A contact moves NOT_ELIGIBLE -> ELIGIBLE once its warmness reaches the
threshold and ELIGIBLE -> LINKED when a remote person exists for it.
Promotion resolves owner, organization and label before creating the
person. Only the person create is fatal; the enrichment steps degrade.
"""

from __future__ import annotations

from enum import Enum

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import ContactRead, ContactUpdate, OperationResult, OrganizationRead
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.pipedrive.fields import CustomFieldTranslator
from src.crmsync.sync.owners import resolve_remote_user_id
from src.crmsync.sync.reconcile import KeyedLocks, OrganizationReconciler, PersonReconciler

logger = structlog.get_logger(__name__)


class LeadState(str, Enum):
    NOT_ELIGIBLE = "not_eligible"
    ELIGIBLE = "eligible"
    LINKED = "linked"


def lead_state(contact: ContactRead, threshold: int) -> LeadState:
    if contact.is_linked:
        return LeadState.LINKED
    if contact.warmness_score >= threshold:
        return LeadState.ELIGIBLE
    return LeadState.NOT_ELIGIBLE


class WarmLeadPromoter:
    """Creates the remote person for an eligible contact.

    Args:
        repo: Local CRM store.
        client: Remote API client of the acting user.
        translator: Custom-field translator used to find the warm-lead label.
        locks: Shared per-record locks passed to the reconcilers.
    """

    def __init__(
        self,
        repo: CRMRepository,
        client: PipedriveClient,
        translator: CustomFieldTranslator | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._repo = repo
        self._client = client
        self._translator = translator or CustomFieldTranslator(client)
        self._locks = locks or KeyedLocks()
        self._threshold = client.settings.warm_lead_threshold
        self._label_name = client.settings.warm_lead_label

    async def check_and_promote(self, contact_id: str, user_id: str) -> OperationResult:
        """Promote the contact if eligible.

        Returns:
            OperationResult; data["promoted"] tells whether a remote person
            was linked by this call.
        """
        contact = await self._repo.get_contact(contact_id)
        if contact is None:
            return OperationResult.fail(f"Contact {contact_id} not found", code="not_found")

        state = lead_state(contact, self._threshold)
        if state == LeadState.LINKED:
            return OperationResult.ok(
                promoted=False,
                state=state.value,
                remote_person_id=contact.remote_person_id,
            )
        if state == LeadState.NOT_ELIGIBLE:
            return OperationResult.ok(
                promoted=False,
                state=state.value,
                warmness_score=contact.warmness_score,
                threshold=self._threshold,
            )

        user = await self._repo.get_user(user_id)
        if user is None:
            return OperationResult.fail(f"User {user_id} not found", code="not_found")

        owner_id = await resolve_remote_user_id(self._repo, self._client, user)
        remote_org_id = await self._resolve_organization(contact, owner_id)
        label = await self._translator.find_label_option(self._label_name)

        result = await PersonReconciler(self._repo, self._client, self._locks).reconcile(
            contact.id, owner_id=owner_id, org_id=remote_org_id, label=label
        )
        if not result.ok:
            logger.warning("warm_leads.promotion_failed", contact_id=contact.id, error=result.error)
            return OperationResult.fail(result.error or "Promotion failed", code="remote_failed")

        logger.info(
            "warm_leads.promoted",
            contact_id=contact.id,
            remote_person_id=result.remote_id,
            remote_org_id=remote_org_id,
            owner_resolved=owner_id is not None,
            labelled=label is not None,
        )
        return OperationResult.ok(
            promoted=result.created,
            state=LeadState.LINKED.value,
            remote_person_id=result.remote_id,
            remote_org_id=remote_org_id,
            labelled=label is not None,
        )

    async def _resolve_organization(self, contact: ContactRead, owner_id: int | None) -> str | None:
        """Remote org id for the contact's organization, or None on any failure."""
        try:
            organization = await self._local_organization(contact)
        except SQLAlchemyError as exc:
            logger.warning("warm_leads.organization_lookup_failed", contact_id=contact.id, error=str(exc))
            return None
        if organization is None:
            return None
        if organization.remote_org_id:
            return organization.remote_org_id

        result = await OrganizationReconciler(self._repo, self._client, self._locks).reconcile(
            organization.id, owner_id=owner_id
        )
        if not result.ok:
            logger.warning(
                "warm_leads.organization_link_failed",
                contact_id=contact.id,
                org_id=organization.id,
                error=result.error,
            )
            return None
        return result.remote_id

    async def _local_organization(self, contact: ContactRead) -> OrganizationRead | None:
        if contact.organization_id:
            return await self._repo.get_organization(contact.organization_id)
        if not contact.organisation or not contact.organisation.strip():
            return None
        organization = await self._repo.get_or_create_organization(contact.organisation)
        await self._repo.update_contact(contact.id, ContactUpdate(organization_id=organization.id))
        return organization
