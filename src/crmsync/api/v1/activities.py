"""REST API endpoints for activities and their Pipedrive replication."""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, Field

from src.crmsync.api.deps import (
    get_current_user,
    get_optional_pipedrive_client,
    get_pipedrive_client,
    get_repository,
    parse_id,
)
from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityType,
    UpdateSyncStatus,
    UserRead,
)
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.sync.activities import ActivityReplicator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/activities", tags=["activities"])


# ── Request/Response Models ─────────────────────────────────────────────────


class ActivityCreateRequest(BaseModel):
    type: ActivityType
    contact_id: str
    subject: str | None = Field(None, max_length=500)
    note: str | None = None
    due_date: datetime | None = None
    campaign_id: str | None = None


class ActivityCreateResponse(BaseModel):
    activity: ActivityRead
    replication_scheduled: bool = False


class ReplicationResponse(BaseModel):
    success: bool
    activity: ActivityRead


class SyncStatusResponse(BaseModel):
    activity_id: str
    replicated_to_pipedrive: bool
    remote_activity_id: str | None = None
    pipedrive_sync_attempts: int = 0
    last_pipedrive_sync_attempt: datetime | None = None
    update_sync_status: UpdateSyncStatus | None = None


async def _replicate_in_background(repo: CRMRepository, client: PipedriveClient, activity_id: str) -> None:
    replicated = await ActivityReplicator(repo, client).replicate(activity_id)
    logger.info("activities.background_replication", activity_id=activity_id, replicated=replicated)


# ── Endpoints ───────────────────────────────────────────────────────────────


@router.post("", response_model=ActivityCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_activity(
    body: ActivityCreateRequest,
    background_tasks: BackgroundTasks,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
    client: PipedriveClient | None = Depends(get_optional_pipedrive_client),
):
    """Log an activity; when the contact is linked it is replicated after the response."""
    contact_id = parse_id(body.contact_id, "Contact")
    contact = await repo.get_contact(contact_id)
    if contact is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Contact {contact_id} not found")
    campaign_id = None
    if body.campaign_id:
        campaign_id = parse_id(body.campaign_id, "Campaign")
        if await repo.get_campaign(campaign_id) is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"Campaign {campaign_id} not found"
            )

    activity = await repo.create_activity(
        ActivityCreate(
            type=body.type,
            subject=body.subject,
            note=body.note,
            due_date=body.due_date,
            contact_id=contact_id,
            user_id=user.id,
            campaign_id=campaign_id,
        )
    )

    scheduled = contact.is_linked and client is not None
    if scheduled:
        background_tasks.add_task(_replicate_in_background, repo, client, activity.id)
    return ActivityCreateResponse(activity=activity, replication_scheduled=scheduled)


@router.post("/{activity_id}/replicate", response_model=ReplicationResponse)
async def replicate_activity(
    activity_id: str,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
    client: PipedriveClient = Depends(get_pipedrive_client),
):
    """Replicate now; an already-replicated activity succeeds without a remote call."""
    activity_id = parse_id(activity_id, "Activity")
    if await repo.get_activity(activity_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Activity {activity_id} not found")
    success = await ActivityReplicator(repo, client).replicate(activity_id)
    activity = await repo.get_activity(activity_id)
    return ReplicationResponse(success=success, activity=activity)


@router.get("/{activity_id}/sync-status", response_model=SyncStatusResponse)
async def get_sync_status(
    activity_id: str,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
):
    activity = await repo.get_activity(parse_id(activity_id, "Activity"))
    if activity is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Activity {activity_id} not found")
    return SyncStatusResponse(
        activity_id=activity.id,
        replicated_to_pipedrive=activity.replicated_to_pipedrive,
        remote_activity_id=activity.remote_activity_id,
        pipedrive_sync_attempts=activity.pipedrive_sync_attempts,
        last_pipedrive_sync_attempt=activity.last_pipedrive_sync_attempt,
        update_sync_status=activity.update_sync_status,
    )
