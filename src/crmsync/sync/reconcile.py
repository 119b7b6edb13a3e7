"""Person and organization reconciliation against Pipedrive.

A local record that already carries a remote id is updated remotely; an
unlinked record is created remotely and the new id written back. The remote
call always precedes the local write, so a local record only ever points at
a remote entity that exists.

Two guards prevent double creation:
- a per-record asyncio lock serializes reconcilers inside one process, and
  the record is re-read after the lock is taken;
- the local link write is conditional on the record still being unlinked.
  A writer that loses that race deletes the remote record it just created
  and updates the winner's record instead.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import ContactRead, OrganizationRead, UpdateSyncStatus
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.pipedrive.errors import ApiErrorKind
from src.crmsync.pipedrive.sanitize import Sanitizer
from src.crmsync.sync.payloads import organization_payload, person_payload

logger = structlog.get_logger(__name__)


class KeyedLocks:
    """asyncio locks keyed by record id, dropped once no task holds or awaits them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation.

    Attributes:
        ok: Whether the remote and local state now agree.
        remote_id: The remote id the local record is linked to.
        created: True if this call created the remote record.
        error: Human-readable reason on failure.
        error_kind: Remote failure class, when the failure came from the API.
    """

    ok: bool
    remote_id: str | None = None
    created: bool = False
    error: str | None = None
    error_kind: ApiErrorKind | None = None

    @classmethod
    def failed(cls, error: str, error_kind: ApiErrorKind | None = None) -> ReconcileResult:
        return cls(ok=False, error=error, error_kind=error_kind)


def sanitizer_for(client: PipedriveClient) -> Sanitizer:
    settings = client.settings
    return Sanitizer(settings.limits, settings.enable_data_sanitization)


def _str_id(value: int | str | None) -> str | None:
    return str(value) if value is not None else None


class PersonReconciler:
    """Creates or updates the remote person for a local contact.

    Args:
        repo: Local CRM store.
        client: Remote API client of the acting user.
        locks: Shared per-record locks; pass the application-wide instance
            so concurrent requests serialize on the same contact.
        sanitizer: Payload sanitizer; defaults to the client's limits.
    """

    def __init__(
        self,
        repo: CRMRepository,
        client: PipedriveClient,
        locks: KeyedLocks | None = None,
        sanitizer: Sanitizer | None = None,
    ) -> None:
        self._repo = repo
        self._client = client
        self._locks = locks or KeyedLocks()
        self._sanitizer = sanitizer or sanitizer_for(client)

    async def reconcile(
        self,
        contact_id: str,
        *,
        owner_id: int | None = None,
        org_id: int | str | None = None,
        label: tuple[str, int | str] | None = None,
    ) -> ReconcileResult:
        """Update the linked remote person, or create and link one.

        Linkage is re-read under the contact's lock; a stale caller-side
        copy of the contact is never trusted.
        """
        async with self._locks.hold(f"person:{contact_id}"):
            contact = await self._repo.get_contact(contact_id)
            if contact is None:
                return ReconcileResult.failed(f"Contact {contact_id} not found")
            payload = person_payload(
                contact, self._sanitizer, owner_id=owner_id, org_id=org_id, label=label
            )
            if contact.remote_person_id:
                return await self._update(contact, contact.remote_person_id, payload, org_id)
            return await self._create(contact, payload, org_id)

    async def _update(
        self, contact: ContactRead, remote_id: str, payload: dict, org_id: int | str | None
    ) -> ReconcileResult:
        result = await self._client.update_person(remote_id, payload)
        if not result.ok:
            await self._mark_failed(contact.id)
            return ReconcileResult.failed(
                f"Failed to update Pipedrive person {remote_id}: {result.error_message}",
                result.error.kind,
            )
        try:
            await self._repo.mark_contact_synced(contact.id, _str_id(org_id))
        except SQLAlchemyError as exc:
            logger.error(
                "reconcile.local_write_failed",
                contact_id=contact.id,
                remote_person_id=remote_id,
                error=str(exc),
            )
            return ReconcileResult.failed(
                f"Pipedrive person {remote_id} updated but the local record could not be saved"
            )
        logger.info("reconcile.person_updated", contact_id=contact.id, remote_person_id=remote_id)
        return ReconcileResult(ok=True, remote_id=remote_id)

    async def _create(
        self, contact: ContactRead, payload: dict, org_id: int | str | None
    ) -> ReconcileResult:
        result = await self._client.create_person(payload)
        if not result.ok:
            await self._mark_failed(contact.id)
            return ReconcileResult.failed(
                f"Failed to create Pipedrive person: {result.error_message}",
                result.error.kind,
            )
        remote_id = str(result.data.id)

        try:
            linked = await self._repo.link_remote_person(contact.id, remote_id, _str_id(org_id))
        except SQLAlchemyError as exc:
            logger.error(
                "reconcile.local_write_failed",
                contact_id=contact.id,
                remote_person_id=remote_id,
                error=str(exc),
            )
            return ReconcileResult.failed(
                f"Pipedrive person {remote_id} created but the local link could not be saved"
            )

        if linked:
            logger.info("reconcile.person_created", contact_id=contact.id, remote_person_id=remote_id)
            return ReconcileResult(ok=True, remote_id=remote_id, created=True)

        # Another writer linked the contact first; drop our duplicate.
        cleanup = await self._client.delete_person(remote_id)
        winner = await self._repo.get_contact(contact.id)
        logger.warning(
            "reconcile.link_race_lost",
            contact_id=contact.id,
            orphan_remote_person_id=remote_id,
            orphan_deleted=cleanup.ok,
            winner_remote_person_id=winner.remote_person_id if winner else None,
        )
        if winner is None or not winner.remote_person_id:
            return ReconcileResult.failed(f"Contact {contact.id} changed during reconciliation")
        return await self._update(winner, winner.remote_person_id, payload, org_id)

    async def _mark_failed(self, contact_id: str) -> None:
        try:
            await self._repo.set_contact_sync_status(contact_id, UpdateSyncStatus.FAILED)
        except SQLAlchemyError as exc:
            logger.error("reconcile.status_write_failed", contact_id=contact_id, error=str(exc))


class OrganizationReconciler:
    """Links a local organization to a remote one, searching before creating.

    Args:
        repo: Local CRM store.
        client: Remote API client of the acting user.
        locks: Shared per-record locks.
        sanitizer: Payload sanitizer; defaults to the client's limits.
    """

    def __init__(
        self,
        repo: CRMRepository,
        client: PipedriveClient,
        locks: KeyedLocks | None = None,
        sanitizer: Sanitizer | None = None,
    ) -> None:
        self._repo = repo
        self._client = client
        self._locks = locks or KeyedLocks()
        self._sanitizer = sanitizer or sanitizer_for(client)

    async def reconcile(self, org_id: str, *, owner_id: int | None = None) -> ReconcileResult:
        async with self._locks.hold(f"organization:{org_id}"):
            organization = await self._repo.get_organization(org_id)
            if organization is None:
                return ReconcileResult.failed(f"Organization {org_id} not found")
            payload = organization_payload(organization, self._sanitizer, owner_id=owner_id)
            if organization.remote_org_id:
                return await self._update(organization, payload)
            return await self._link(organization, payload)

    async def _update(self, organization: OrganizationRead, payload: dict) -> ReconcileResult:
        remote_id = organization.remote_org_id
        result = await self._client.update_organization(remote_id, payload)
        if not result.ok:
            await self._set_status(organization.id, UpdateSyncStatus.FAILED)
            return ReconcileResult.failed(
                f"Failed to update Pipedrive organization {remote_id}: {result.error_message}",
                result.error.kind,
            )
        await self._set_status(organization.id, UpdateSyncStatus.SYNCED, touched=True)
        return ReconcileResult(ok=True, remote_id=remote_id)

    async def _link(self, organization: OrganizationRead, payload: dict) -> ReconcileResult:
        search = await self._client.search_organizations(organization.name, exact_match=True)
        if not search.ok:
            return ReconcileResult.failed(
                f"Failed to search Pipedrive organizations: {search.error_message}",
                search.error.kind,
            )

        wanted = organization.name.strip().lower()
        match = next((o for o in search.data or [] if o.name.strip().lower() == wanted), None)
        created = False
        if match is not None:
            remote_id = str(match.id)
            logger.info(
                "reconcile.organization_matched",
                org_id=organization.id,
                remote_org_id=remote_id,
            )
        else:
            result = await self._client.create_organization(payload)
            if not result.ok:
                await self._set_status(organization.id, UpdateSyncStatus.FAILED)
                return ReconcileResult.failed(
                    f"Failed to create Pipedrive organization: {result.error_message}",
                    result.error.kind,
                )
            remote_id = str(result.data.id)
            created = True
            logger.info(
                "reconcile.organization_created",
                org_id=organization.id,
                remote_org_id=remote_id,
            )

        try:
            linked = await self._repo.set_organization_remote_id(organization.id, remote_id)
        except SQLAlchemyError as exc:
            logger.error(
                "reconcile.local_write_failed",
                org_id=organization.id,
                remote_org_id=remote_id,
                error=str(exc),
            )
            return ReconcileResult.failed(
                f"Pipedrive organization {remote_id} linked remotely but the local record could not be saved"
            )
        if linked:
            return ReconcileResult(ok=True, remote_id=remote_id, created=created)

        winner = await self._repo.get_organization(organization.id)
        if created:
            await self._client.delete_organization(remote_id)
        logger.warning(
            "reconcile.organization_link_race_lost",
            org_id=organization.id,
            orphan_remote_org_id=remote_id if created else None,
            winner_remote_org_id=winner.remote_org_id if winner else None,
        )
        if winner is None or not winner.remote_org_id:
            return ReconcileResult.failed(f"Organization {organization.id} changed during reconciliation")
        return ReconcileResult(ok=True, remote_id=winner.remote_org_id)

    async def _set_status(
        self, org_id: str, status: UpdateSyncStatus, *, touched: bool = False
    ) -> None:
        try:
            await self._repo.set_organization_sync_status(org_id, status, touched=touched)
        except SQLAlchemyError as exc:
            logger.error("reconcile.status_write_failed", org_id=org_id, error=str(exc))
