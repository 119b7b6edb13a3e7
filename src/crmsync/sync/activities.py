"""One-shot, idempotent replication of local activities to Pipedrive."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.crmsync.core.retry import RetryPolicy, SleepFn
from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import UpdateSyncStatus
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.pipedrive.errors import ApiErrorKind, ApiResult
from src.crmsync.pipedrive.sanitize import Sanitizer
from src.crmsync.pipedrive.schemas import RemoteActivity
from src.crmsync.sync.owners import resolve_remote_user_id
from src.crmsync.sync.payloads import activity_payload
from src.crmsync.sync.reconcile import sanitizer_for

logger = structlog.get_logger(__name__)

REPLICATION_POLICY = RetryPolicy(max_attempts=3, base_delay=2.0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivityReplicator:
    """Replicates one activity, retrying the whole operation on failure.

    The attempt counter and timestamp are written after every attempt,
    successful or not. An activity already marked replicated is never sent
    again.

    Args:
        repo: Local CRM store.
        client: Remote API client of the acting user.
        policy: Attempt budget and backoff for the whole operation.
        sleep: Awaitable sleep between attempts.
        clock: Source of attempt timestamps.
    """

    def __init__(
        self,
        repo: CRMRepository,
        client: PipedriveClient,
        policy: RetryPolicy = REPLICATION_POLICY,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
        sanitizer: Sanitizer | None = None,
    ) -> None:
        self._repo = repo
        self._client = client
        self._policy = policy
        self._sleep = sleep
        self._clock = clock
        self._sanitizer = sanitizer or sanitizer_for(client)

    async def replicate(self, activity_id: str) -> bool:
        """Send the activity to Pipedrive.

        Returns:
            True if the activity is replicated (now or previously); False if
            it is missing, its contact is not linked, or every attempt failed.
        """
        context = await self._repo.get_activity_context(activity_id)
        if context is None:
            logger.warning("activities.not_found", activity_id=activity_id)
            return False
        if context.activity.replicated_to_pipedrive:
            logger.debug("activities.already_replicated", activity_id=activity_id)
            return True
        if not context.contact.remote_person_id:
            logger.info(
                "activities.contact_not_linked",
                activity_id=activity_id,
                contact_id=context.contact.id,
            )
            return False

        owner_id = await resolve_remote_user_id(self._repo, self._client, context.user)
        base_attempts = context.activity.pipedrive_sync_attempts
        unsaved_remote_id: str | None = None

        async def _attempt(attempt: int) -> ApiResult:
            nonlocal unsaved_remote_id
            current = await self._repo.get_activity_context(activity_id)
            if current is None:
                raise LookupError(f"Activity {activity_id} disappeared during replication")
            if current.activity.replicated_to_pipedrive:
                return ApiResult.success(
                    RemoteActivity(id=int(current.activity.remote_activity_id or 0))
                )
            payload = activity_payload(
                current,
                self._sanitizer,
                person_id=current.contact.remote_person_id,
                org_id=current.contact.remote_org_id,
                owner_id=owner_id,
            )
            result = await self._client.create_activity(payload)
            if result.ok:
                # The remote activity exists now; never create it again
                remote_id = str(result.data.id)
                try:
                    await self._repo.mark_activity_replicated(activity_id, remote_id)
                except SQLAlchemyError as exc:
                    unsaved_remote_id = remote_id
                    logger.error(
                        "activities.local_write_failed",
                        activity_id=activity_id,
                        remote_activity_id=remote_id,
                        error=str(exc),
                    )
            return result

        async def _record(attempt: int, result: ApiResult | None, exc: BaseException | None) -> None:
            await self._repo.record_replication_attempt(
                activity_id, base_attempts + attempt, self._clock()
            )
            if result is not None and not result.ok:
                logger.warning(
                    "activities.attempt_failed",
                    activity_id=activity_id,
                    attempt=attempt,
                    error=result.error_message,
                )

        try:
            result = await self._policy.run(
                _attempt,
                should_retry=lambda r: not r.ok and r.error.kind != ApiErrorKind.AUTH_EXPIRED,
                retry_on=(SQLAlchemyError,),
                sleep=self._sleep,
                on_attempt=_record,
                label=f"replicate activity {activity_id}",
            )
        except (SQLAlchemyError, LookupError) as exc:
            logger.error("activities.replication_error", activity_id=activity_id, error=str(exc))
            return False

        if unsaved_remote_id is not None:
            return False

        if not result.ok:
            await self._repo.set_activity_sync_status(activity_id, UpdateSyncStatus.FAILED)
            logger.error(
                "activities.replication_failed",
                activity_id=activity_id,
                attempts=self._policy.max_attempts,
                error=result.error_message,
            )
            return False

        logger.info(
            "activities.replicated",
            activity_id=activity_id,
            remote_activity_id=result.data.id,
        )
        return True
