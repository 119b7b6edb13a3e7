"""Bulk import of active Pipedrive persons into the local store.

A sync pages through the people selected by the account's "still active"
filter with start/limit pagination, reconciles every person into a local
contact (and its organization), and publishes a full progress snapshot to
the ProgressChannel after each record.

- The filter must exist before a sync starts; otherwise start() raises
  SyncConfigurationError with the remediation text.
- Per-record failures are categorized into the running error list and never
  abort the sync. The sync fails only when a page cannot be fetched or an
  unexpected error escapes the loop.
- Cancellation is cooperative: the flag is checked before every page fetch.
  Records already written stay written.
- INCREMENTAL syncs skip persons whose update_time is not newer than the
  start of the last completed sync.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.crmsync.core.monitoring import bulk_sync_records_total
from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import (
    ContactCreate,
    ContactUpdate,
    OrganizationRead,
    SyncStatus,
    SyncType,
    UpdateSyncStatus,
)
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.pipedrive.fields import CustomFieldTranslator, EntityKind
from src.crmsync.pipedrive.schemas import RemoteCustomField, RemotePerson
from src.crmsync.sync.channel import ProgressChannel
from src.crmsync.sync.errors import (
    SyncConfigurationError,
    SyncConnectionError,
    categorize_error,
)
from src.crmsync.sync.progress import (
    ProgressEventType,
    ProgressTracker,
    RecordOutcome,
    SyncProgressState,
)

logger = structlog.get_logger(__name__)


# ── Registry ────────────────────────────────────────────────────────────────


@dataclass
class RunningSync:
    sync_id: str
    user_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None


class SyncRegistry:
    """In-process index of running syncs and their cancellation flags."""

    def __init__(self) -> None:
        self._runs: dict[str, RunningSync] = {}

    def register(self, sync_id: str, user_id: str) -> RunningSync:
        run = RunningSync(sync_id=sync_id, user_id=user_id)
        self._runs[sync_id] = run
        return run

    def get(self, sync_id: str) -> RunningSync | None:
        return self._runs.get(sync_id)

    def running_for_user(self, user_id: str) -> RunningSync | None:
        return next((r for r in self._runs.values() if r.user_id == user_id), None)

    def cancel(self, sync_id: str, user_id: str | None = None) -> bool:
        """Set the cancellation flag; False if the sync is unknown or not the user's."""
        run = self._runs.get(sync_id)
        if run is None or (user_id is not None and run.user_id != user_id):
            return False
        run.cancel_event.set()
        logger.info("bulk_sync.cancel_requested", sync_id=sync_id)
        return True

    def finish(self, sync_id: str) -> None:
        self._runs.pop(sync_id, None)

    def __contains__(self, sync_id: str) -> bool:
        return sync_id in self._runs

    async def shutdown(self) -> None:
        """Cancel every running sync task and wait for them to settle."""
        tasks = [r.task for r in self._runs.values() if r.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()


# ── Runner ──────────────────────────────────────────────────────────────────


class BulkSyncRunner:
    """Runs one user's bulk sync.

    Args:
        repo: Local CRM store.
        client: Remote API client of the acting user.
        channel: Destination of progress events.
        translator: Field translator; built from client when omitted.
        page_size: Records per page; defaults to the client's settings.
        clock: Monotonic clock used for speed and ETA.
    """

    def __init__(
        self,
        repo: CRMRepository,
        client: PipedriveClient,
        channel: ProgressChannel,
        translator: CustomFieldTranslator | None = None,
        page_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repo = repo
        self._client = client
        self._channel = channel
        self._translator = translator or CustomFieldTranslator(client)
        self._page_size = page_size or client.settings.page_size
        self._filter_name = client.settings.active_filter_name
        self._clock = clock
        self._organizations: dict[int, OrganizationRead | None] = {}

    async def resolve_active_filter(self) -> int:
        """Id of the people filter named like the configured active filter.

        Raises:
            SyncConnectionError: If the filter list cannot be fetched.
            SyncConfigurationError: If no such filter exists.
        """
        result = await self._client.list_filters("people")
        if not result.ok:
            raise SyncConnectionError(categorize_error(result.error).describe())
        wanted = self._filter_name.strip().lower()
        for remote_filter in result.data or []:
            if remote_filter.name.strip().lower() == wanted:
                return remote_filter.id
        raise SyncConfigurationError(
            f"Pipedrive filter '{self._filter_name}' was not found. Create a people filter "
            f"named '{self._filter_name}' that selects persons whose Still Active field is "
            "Active, then start the sync again."
        )

    async def start(self, user_id: str, sync_type: SyncType, registry: SyncRegistry) -> str:
        """Check preconditions, record the sync and run it in a background task.

        Returns:
            The sync id, immediately; progress arrives on the channel.
        """
        filter_id = await self.resolve_active_filter()
        history = await self._repo.create_sync_history(user_id, sync_type)
        run = registry.register(history.id, user_id)
        run.task = asyncio.create_task(
            self.run(history.id, user_id, sync_type, run.cancel_event, filter_id=filter_id)
        )
        run.task.add_done_callback(lambda _task: registry.finish(history.id))
        logger.info("bulk_sync.started", sync_id=history.id, user_id=user_id, sync_type=sync_type.value)
        return history.id

    async def run(
        self,
        sync_id: str,
        user_id: str,
        sync_type: SyncType,
        cancel_event: asyncio.Event,
        filter_id: int | None = None,
    ) -> SyncProgressState:
        """Execute the sync loop and publish its events; returns the final state."""
        tracker = ProgressTracker(sync_id, sync_type, clock=self._clock)
        await self._channel.publish(tracker.event(ProgressEventType.PROGRESS))

        try:
            if filter_id is None:
                filter_id = await self.resolve_active_filter()
            since = await self._incremental_since(user_id, sync_type)
            org_fields = await self._organization_fields()

            start = 0
            pages = 0
            while True:
                if cancel_event.is_set():
                    return await self._finish(tracker, SyncStatus.CANCELLED, "Sync cancelled")

                result = await self._client.list_persons(
                    start=start, limit=self._page_size, filter_id=filter_id
                )
                tracker.note_rate_limit(result.diagnostics.rate_limit_hits)
                if not result.ok:
                    message = categorize_error(result.error).describe(f"Page at offset {start}")
                    return await self._finish(tracker, SyncStatus.FAILED, message)

                page = result.data
                pages += 1
                # A full page continues unless the remote says it was the last one
                last_page = len(page.items) < self._page_size or page.more_items is False
                processed_before = tracker.state.processed_records
                if page.total is not None:
                    tracker.set_total(page.total)
                else:
                    tracker.set_total(processed_before + len(page.items) + (0 if last_page else 1))
                logger.info(
                    "bulk_sync.page_fetched",
                    sync_id=sync_id,
                    start=start,
                    count=len(page.items),
                    more_items=page.more_items,
                )

                for person in page.items:
                    await self._process(person, since, org_fields, tracker)
                    await self._channel.publish(tracker.event(ProgressEventType.PROGRESS))

                if last_page:
                    break
                start = page.next_start if page.next_start is not None else start + len(page.items)

            logger.info("bulk_sync.pages_done", sync_id=sync_id, pages=pages)
            return await self._finish(tracker, SyncStatus.COMPLETED)
        except asyncio.CancelledError:
            await self._finish(tracker, SyncStatus.CANCELLED, "Sync interrupted by shutdown")
            raise
        except SyncConfigurationError as exc:
            return await self._finish(tracker, SyncStatus.FAILED, str(exc))
        except SyncConnectionError as exc:
            return await self._finish(tracker, SyncStatus.FAILED, str(exc))
        except Exception as exc:
            logger.exception("bulk_sync.fatal_error", sync_id=sync_id, error=str(exc))
            message = categorize_error(exc).describe()
            return await self._finish(tracker, SyncStatus.FAILED, message)

    # ── Steps ───────────────────────────────────────────────────────────────

    async def _incremental_since(self, user_id: str, sync_type: SyncType) -> datetime | None:
        if sync_type != SyncType.INCREMENTAL:
            return None
        last = await self._repo.get_latest_sync_history(user_id, SyncStatus.COMPLETED)
        if last is None or last.started_at is None:
            return None
        since = last.started_at
        return since if since.tzinfo else since.replace(tzinfo=timezone.utc)

    async def _organization_fields(self) -> list[RemoteCustomField]:
        result = await self._translator.discover_fields(EntityKind.ORGANIZATION)
        if not result.ok:
            logger.warning("bulk_sync.organization_fields_unavailable", error=result.error_message)
            return []
        return result.data or []

    async def _process(
        self,
        person: RemotePerson,
        since: datetime | None,
        org_fields: list[RemoteCustomField],
        tracker: ProgressTracker,
    ) -> None:
        label = person.name or person.primary_email or f"Person {person.id}"
        sync_type = tracker.state.sync_type.value

        if since is not None and person.update_time is not None and person.update_time <= since:
            tracker.record(label, RecordOutcome.SKIPPED)
            bulk_sync_records_total.labels(sync_type=sync_type, result="skipped").inc()
            return

        try:
            outcome = await self._upsert_contact(person, org_fields)
        except Exception as exc:
            categorized = categorize_error(exc)
            logger.warning(
                "bulk_sync.record_failed",
                sync_id=tracker.state.sync_id,
                remote_person_id=person.id,
                category=categorized.category.value,
                error=str(exc),
            )
            tracker.record(label, RecordOutcome.FAILED, categorized.describe(label))
            bulk_sync_records_total.labels(sync_type=sync_type, result="failed").inc()
            return

        tracker.record(label, outcome)
        bulk_sync_records_total.labels(sync_type=sync_type, result=outcome.value).inc()

    async def _upsert_contact(
        self, person: RemotePerson, org_fields: list[RemoteCustomField]
    ) -> RecordOutcome:
        remote_id = str(person.id)
        organization = await self._organization(person, org_fields)
        remote_org_id = str(person.org_id) if person.org_id is not None else None
        changes = ContactUpdate(
            name=person.name or person.primary_email or f"Person {person.id}",
            email=person.primary_email,
            phone=person.primary_phone,
            organisation=organization.name if organization else person.org_name,
            organization_id=organization.id if organization else None,
            remote_org_id=remote_org_id,
            last_remote_update=person.update_time or datetime.now(timezone.utc),
            update_sync_status=UpdateSyncStatus.SYNCED,
        )

        existing = await self._repo.get_contact_by_remote_person_id(remote_id)
        if existing is None and person.primary_email:
            candidate = await self._repo.get_unlinked_contact_by_email(person.primary_email)
            if candidate is not None and await self._repo.link_remote_person(
                candidate.id, remote_id, remote_org_id
            ):
                existing = candidate

        if existing is not None:
            await self._repo.update_contact(existing.id, changes)
            return RecordOutcome.UPDATED

        await self._repo.create_contact(
            ContactCreate(
                name=changes.name,
                email=changes.email,
                phone=changes.phone,
                organisation=changes.organisation,
                organization_id=changes.organization_id,
                remote_person_id=remote_id,
                remote_org_id=remote_org_id,
            )
        )
        return RecordOutcome.CREATED

    async def _organization(
        self, person: RemotePerson, org_fields: list[RemoteCustomField]
    ) -> OrganizationRead | None:
        """Local copy of the person's organization, fetched once per sync."""
        if person.org_id is None:
            return None
        if person.org_id in self._organizations:
            return self._organizations[person.org_id]

        name = person.org_name
        values: dict[str, str | None] = {}
        result = await self._client.get_organization(person.org_id)
        if result.ok:
            name = result.data.name or name
            if org_fields:
                values = self._translator.translate_organization(result.data, org_fields)
        else:
            logger.warning(
                "bulk_sync.organization_fetch_failed",
                remote_org_id=person.org_id,
                error=result.error_message,
            )

        organization = None
        if name:
            organization = await self._repo.upsert_organization_from_remote(
                str(person.org_id),
                name,
                country=values.get("country"),
                industry=values.get("sector"),
                size=values.get("size"),
            )
        self._organizations[person.org_id] = organization
        return organization

    async def _finish(
        self, tracker: ProgressTracker, status: SyncStatus, message: str | None = None
    ) -> SyncProgressState:
        if status == SyncStatus.FAILED and message:
            tracker.add_error(message)
        tracker.finish(status)
        state = tracker.state

        try:
            await self._repo.update_sync_history(
                state.sync_id,
                status=status,
                total_contacts=state.total_records or 0,
                contacts_processed=state.processed_records,
                contacts_updated=state.created_records + state.updated_records,
                contacts_failed=state.failed_records,
                error=message if status == SyncStatus.FAILED else None,
                completed_at=state.completed_at,
            )
        except SQLAlchemyError as exc:
            logger.error("bulk_sync.history_write_failed", sync_id=state.sync_id, error=str(exc))

        event_type = {
            SyncStatus.COMPLETED: ProgressEventType.COMPLETE,
            SyncStatus.CANCELLED: ProgressEventType.CANCELLED,
        }.get(status, ProgressEventType.ERROR)
        await self._channel.publish(tracker.event(event_type, message))

        logger.info(
            "bulk_sync.finished",
            sync_id=state.sync_id,
            status=status.value,
            processed=state.processed_records,
            created=state.created_records,
            updated=state.updated_records,
            skipped=state.skipped_records,
            failed=state.failed_records,
        )
        return tracker.snapshot()
