"""Contact deactivation and reactivation.

Each contact is either active or inactive. When the caller asks for the
change to be mirrored and the contact is linked, the remote "still active"
field is written first; a remote failure aborts the operation and leaves
the local contact untouched. Every successful flip appends a system
activity as an audit record.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import ActivityCreate, ActivityType, ContactRead, OperationResult
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.pipedrive.fields import CustomFieldTranslator

logger = structlog.get_logger(__name__)

DEACTIVATED_ACTION = "DEACTIVATED"
REACTIVATED_ACTION = "REACTIVATED"

MISSING_FIELD_MESSAGE = (
    "Pipedrive has no 'Still Active' person field with Active/Inactive options. "
    "Create it under Settings > Data fields > Person, then retry."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _option_payload_value(value: str) -> int | str:
    """Enum options are sent as integers when the option value is numeric."""
    try:
        return int(value)
    except ValueError:
        return value


def _local_write_failed(contact: ContactRead, mirrored: bool, exc: SQLAlchemyError) -> OperationResult:
    logger.error(
        "lifecycle.local_write_failed",
        contact_id=contact.id,
        remote_person_id=contact.remote_person_id if mirrored else None,
        error=str(exc),
    )
    if mirrored:
        message = (
            f"Pipedrive person {contact.remote_person_id} was updated "
            "but the local contact could not be saved"
        )
    else:
        message = "The local contact could not be saved"
    return OperationResult.fail(message, code="local_write_failed")


class ContactLifecycle:
    """Deactivates and reactivates contacts.

    Args:
        repo: Local CRM store.
        client: Remote API client, or None when the user has no API key
            (remote mirroring is then unavailable).
        translator: Field translator; built from client when omitted.
        clock: Source of "now" for the pending-activity check.
    """

    def __init__(
        self,
        repo: CRMRepository,
        client: PipedriveClient | None = None,
        translator: CustomFieldTranslator | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repo
        self._client = client
        self._translator = translator or (CustomFieldTranslator(client) if client else None)
        self._clock = clock

    async def deactivate(
        self,
        contact_id: str,
        actor_id: str,
        reason: str,
        sync_to_pipedrive: bool = True,
    ) -> OperationResult:
        contact = await self._repo.get_contact(contact_id)
        if contact is None:
            return OperationResult.fail(f"Contact {contact_id} not found", code="not_found")
        if not contact.is_active:
            return OperationResult.fail("Contact is already inactive", code="already_inactive")
        if await self._repo.has_pending_activities(contact.id, self._clock()):
            return OperationResult.fail(
                "Contact has pending activities scheduled in the future; "
                "complete or remove them before deactivating",
                code="pending_activities",
            )

        mirrored = sync_to_pipedrive and contact.is_linked
        if mirrored:
            failure = await self._mirror(contact, active=False)
            if failure is not None:
                return failure

        try:
            updated = await self._repo.set_contact_active(
                contact.id, False, actor=actor_id, reason=reason
            )
            await self._audit(
                contact, actor_id, DEACTIVATED_ACTION, f"Contact deactivated: {reason}", reason
            )
        except SQLAlchemyError as exc:
            return _local_write_failed(contact, mirrored, exc)
        logger.info(
            "lifecycle.deactivated",
            contact_id=contact.id,
            actor_id=actor_id,
            mirrored=mirrored,
        )
        return OperationResult.ok(contact=updated.model_dump(mode="json") if updated else None)

    async def reactivate(
        self,
        contact_id: str,
        actor_id: str,
        reason: str | None = None,
        sync_to_pipedrive: bool = True,
    ) -> OperationResult:
        contact = await self._repo.get_contact(contact_id)
        if contact is None:
            return OperationResult.fail(f"Contact {contact_id} not found", code="not_found")
        if contact.is_active:
            return OperationResult.fail("Contact is already active", code="already_active")

        mirrored = sync_to_pipedrive and contact.is_linked
        if mirrored:
            failure = await self._mirror(contact, active=True)
            if failure is not None:
                return failure

        subject = "Contact reactivated" + (f": {reason}" if reason else "")
        try:
            updated = await self._repo.set_contact_active(contact.id, True)
            await self._audit(contact, actor_id, REACTIVATED_ACTION, subject, reason)
        except SQLAlchemyError as exc:
            return _local_write_failed(contact, mirrored, exc)
        logger.info("lifecycle.reactivated", contact_id=contact.id, actor_id=actor_id)
        return OperationResult.ok(contact=updated.model_dump(mode="json") if updated else None)

    async def _mirror(self, contact: ContactRead, *, active: bool) -> OperationResult | None:
        """Write the remote still-active field; returns a failure or None."""
        if self._client is None or self._translator is None:
            return OperationResult.fail(
                "No Pipedrive API key is configured for this user", code="configuration"
            )

        mapping = await self._translator.discover_field_mapping()
        value = mapping.active_value if active else mapping.inactive_value
        if mapping.still_active_field_key is None or value is None:
            logger.warning("lifecycle.still_active_field_missing", contact_id=contact.id)
            return OperationResult.fail(MISSING_FIELD_MESSAGE, code="configuration")

        result = await self._client.update_person(
            contact.remote_person_id,
            {mapping.still_active_field_key: _option_payload_value(value)},
        )
        if not result.ok:
            logger.warning(
                "lifecycle.remote_update_failed",
                contact_id=contact.id,
                remote_person_id=contact.remote_person_id,
                error=result.error_message,
            )
            return OperationResult.fail(
                f"Failed to update contact in Pipedrive: {result.error_message}",
                code="remote_failed",
            )
        return None

    async def _audit(
        self,
        contact: ContactRead,
        actor_id: str,
        action: str,
        subject: str,
        note: str | None,
    ) -> None:
        await self._repo.create_activity(
            ActivityCreate(
                type=ActivityType.EMAIL,
                subject=subject,
                note=note,
                contact_id=contact.id,
                user_id=actor_id,
                is_system_activity=True,
                system_action=action,
            )
        )
