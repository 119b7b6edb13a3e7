"""Batch updates of already-linked remote persons, organizations and activities.

Each update is retried through the shared RetryPolicy. While retrying, the
local record's update_sync_status is PENDING; it ends SYNCED (with
last_remote_update stamped) or FAILED. Batches run in fixed-size chunks
with a pause between chunks to stay under the remote rate limit.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.crmsync.core.retry import RetryPolicy, SleepFn
from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import OperationResult, UpdateSyncStatus
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.pipedrive.errors import ApiErrorKind, ApiResult
from src.crmsync.pipedrive.sanitize import Sanitizer
from src.crmsync.sync.errors import categorize_error
from src.crmsync.sync.reconcile import sanitizer_for

logger = structlog.get_logger(__name__)

BATCH_POLICY = RetryPolicy(max_attempts=3, base_delay=1.0)
CHUNK_SIZE = 10
CHUNK_PAUSE_SECONDS = 1.0


class BatchEntity(str, Enum):
    PERSON = "person"
    ORGANIZATION = "organization"
    ACTIVITY = "activity"


class BatchItem(BaseModel):
    """One update: the local record id and the remote fields to change."""

    entity: BatchEntity
    id: str
    changes: dict[str, Any] = Field(default_factory=dict)


class BatchSummary(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


def _retryable(result: ApiResult) -> bool:
    return not result.ok and result.error.kind != ApiErrorKind.AUTH_EXPIRED


class BatchUpdateService:
    """Pushes field changes for linked records to Pipedrive.

    Args:
        repo: Local CRM store.
        client: Remote API client of the acting user.
        policy: Attempt budget per record.
        sleep: Awaitable sleep for retry backoff and chunk pauses.
    """

    def __init__(
        self,
        repo: CRMRepository,
        client: PipedriveClient,
        policy: RetryPolicy = BATCH_POLICY,
        sleep: SleepFn = asyncio.sleep,
        chunk_size: int = CHUNK_SIZE,
        chunk_pause: float = CHUNK_PAUSE_SECONDS,
        sanitizer: Sanitizer | None = None,
    ) -> None:
        self._repo = repo
        self._client = client
        self._policy = policy
        self._sleep = sleep
        self._chunk_size = chunk_size
        self._chunk_pause = chunk_pause
        self._sanitizer = sanitizer or sanitizer_for(client)

    async def update_person(self, contact_id: str, changes: dict[str, Any]) -> OperationResult:
        contact = await self._repo.get_contact(contact_id)
        if contact is None:
            return OperationResult.fail(f"Contact {contact_id} not found", code="not_found")
        if not contact.remote_person_id:
            return OperationResult.fail(f"Contact {contact_id} is not linked to Pipedrive", code="not_linked")

        remote_id = contact.remote_person_id
        payload = self._sanitizer.person(changes)

        async def _status(status: UpdateSyncStatus) -> None:
            if status == UpdateSyncStatus.SYNCED:
                await self._repo.mark_contact_synced(contact_id)
            else:
                await self._repo.set_contact_sync_status(contact_id, status)

        return await self._run(
            f"person {remote_id}",
            lambda: self._client.update_person(remote_id, payload),
            _status,
            remote_id,
        )

    async def update_organization(self, org_id: str, changes: dict[str, Any]) -> OperationResult:
        organization = await self._repo.get_organization(org_id)
        if organization is None:
            return OperationResult.fail(f"Organization {org_id} not found", code="not_found")
        if not organization.remote_org_id:
            return OperationResult.fail(f"Organization {org_id} is not linked to Pipedrive", code="not_linked")

        remote_id = organization.remote_org_id
        payload = self._sanitizer.organization(changes)

        async def _status(status: UpdateSyncStatus) -> None:
            await self._repo.set_organization_sync_status(
                org_id, status, touched=status == UpdateSyncStatus.SYNCED
            )

        return await self._run(
            f"organization {remote_id}",
            lambda: self._client.update_organization(remote_id, payload),
            _status,
            remote_id,
        )

    async def update_activity(self, activity_id: str, changes: dict[str, Any]) -> OperationResult:
        activity = await self._repo.get_activity(activity_id)
        if activity is None:
            return OperationResult.fail(f"Activity {activity_id} not found", code="not_found")
        if not activity.remote_activity_id:
            return OperationResult.fail(f"Activity {activity_id} is not replicated to Pipedrive", code="not_linked")

        remote_id = activity.remote_activity_id
        payload = self._sanitizer.activity(changes)

        async def _status(status: UpdateSyncStatus) -> None:
            await self._repo.set_activity_sync_status(
                activity_id, status, touched=status == UpdateSyncStatus.SYNCED
            )

        return await self._run(
            f"activity {remote_id}",
            lambda: self._client.update_activity(remote_id, payload),
            _status,
            remote_id,
        )

    async def _run(
        self,
        label: str,
        call: Callable[[], Awaitable[ApiResult]],
        set_status: Callable[[UpdateSyncStatus], Awaitable[None]],
        remote_id: str,
    ) -> OperationResult:
        async def _attempt(attempt: int) -> ApiResult:
            return await call()

        async def _on_attempt(attempt: int, result: ApiResult | None, exc: BaseException | None) -> None:
            if result is not None and _retryable(result) and attempt < self._policy.max_attempts:
                await set_status(UpdateSyncStatus.PENDING)

        result = await self._policy.run(
            _attempt,
            should_retry=_retryable,
            sleep=self._sleep,
            on_attempt=_on_attempt,
            label=f"batch update {label}",
        )
        if not result.ok:
            await set_status(UpdateSyncStatus.FAILED)
            logger.warning("batch.update_failed", target=label, error=result.error_message)
            return OperationResult.fail(
                f"Failed to update {label}: {result.error_message}", code="remote_failed"
            )
        await set_status(UpdateSyncStatus.SYNCED)
        return OperationResult.ok(remote_id=remote_id)

    async def apply(self, item: BatchItem) -> OperationResult:
        if item.entity == BatchEntity.PERSON:
            return await self.update_person(item.id, item.changes)
        if item.entity == BatchEntity.ORGANIZATION:
            return await self.update_organization(item.id, item.changes)
        return await self.update_activity(item.id, item.changes)

    async def batch_update(self, items: list[BatchItem]) -> BatchSummary:
        """Apply items in chunks, concurrently within a chunk."""
        summary = BatchSummary(total=len(items))
        for offset in range(0, len(items), self._chunk_size):
            if offset:
                await self._sleep(self._chunk_pause)
            chunk = items[offset : offset + self._chunk_size]
            results = await asyncio.gather(
                *(self.apply(item) for item in chunk), return_exceptions=True
            )
            for item, result in zip(chunk, results):
                label = f"{item.entity.value} {item.id}"
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    logger.error("batch.item_error", target=label, error=str(result))
                    summary.failed += 1
                    summary.errors.append(categorize_error(result).describe(label))
                elif result.success:
                    summary.successful += 1
                else:
                    summary.failed += 1
                    summary.errors.append(f"{label}: {result.error}")
        logger.info(
            "batch.completed",
            total=summary.total,
            successful=summary.successful,
            failed=summary.failed,
        )
        return summary
