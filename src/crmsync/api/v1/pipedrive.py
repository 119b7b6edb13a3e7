"""REST API endpoints for Pipedrive: bulk sync, progress stream and tooling.

The bulk sync runs in a background task; its progress is published on the
app's progress channel and streamed to the browser as server-sent events.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from src.crmsync.api.deps import get_current_user, get_pipedrive_client, get_repository, parse_id
from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import SyncHistoryRead, SyncStatus, SyncType, UserRead
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.pipedrive.fields import CustomFieldTranslator, EntityKind, build_field_mapping
from src.crmsync.pipedrive.schemas import (
    RemoteCustomField,
    RemoteCustomFieldMapping,
    RemoteOrganization,
    RemoteUser,
)
from src.crmsync.sync.batch import BatchItem, BatchSummary, BatchUpdateService
from src.crmsync.sync.bulk import BulkSyncRunner, SyncRegistry
from src.crmsync.sync.channel import SSE_KEEPALIVE, ProgressChannel, format_sse
from src.crmsync.sync.errors import SyncConfigurationError, SyncConnectionError
from src.crmsync.sync.progress import (
    ProgressEvent,
    ProgressEventType,
    SyncProgressState,
    compute_percentage,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/pipedrive", tags=["pipedrive"])

SSE_HEARTBEAT_SECONDS = 15.0

_TERMINAL_EVENT_FOR_STATUS = {
    SyncStatus.COMPLETED: ProgressEventType.COMPLETE,
    SyncStatus.FAILED: ProgressEventType.ERROR,
    SyncStatus.CANCELLED: ProgressEventType.CANCELLED,
}


# ── Request/Response Models ─────────────────────────────────────────────────


class SyncStartRequest(BaseModel):
    sync_type: SyncType = SyncType.FULL


class SyncStartedResponse(BaseModel):
    sync_id: str = Field(..., serialization_alias="syncId")
    status: SyncStatus = SyncStatus.PROCESSING


class CancelResponse(BaseModel):
    sync_id: str = Field(..., serialization_alias="syncId")
    cancelled: bool = True


class CustomFieldsResponse(BaseModel):
    entity: EntityKind
    fields: list[RemoteCustomField] = Field(default_factory=list)
    mapping: RemoteCustomFieldMapping | None = None


class ConnectionTestResponse(BaseModel):
    success: bool
    user: RemoteUser | None = None
    duration_ms: float = 0.0
    attempts: int = 0
    error: str | None = None


class BatchUpdateRequest(BaseModel):
    items: list[BatchItem] = Field(..., min_length=1, max_length=500)


# ── Helpers ─────────────────────────────────────────────────────────────────


def _get_progress_channel(request: Request) -> ProgressChannel:
    """Retrieve the progress channel from app.state, 503 if not available."""
    channel = getattr(request.app.state, "progress_channel", None)
    if channel is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Progress channel not initialized",
        )
    return channel


def _get_sync_registry(request: Request) -> SyncRegistry:
    """Retrieve the sync registry from app.state, 503 if not available."""
    registry = getattr(request.app.state, "sync_registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync registry not initialized",
        )
    return registry


def _event_from_history(history: SyncHistoryRead) -> ProgressEvent:
    """Terminal event rebuilt from the stored row, for streams that are gone."""
    completed = history.status == SyncStatus.COMPLETED
    state = SyncProgressState(
        sync_id=history.id,
        sync_type=history.sync_type,
        status=history.status,
        total_records=history.total_contacts,
        processed_records=history.contacts_processed,
        updated_records=history.contacts_updated,
        failed_records=history.contacts_failed,
        percentage=100 if completed else compute_percentage(
            history.contacts_processed, history.total_contacts
        ),
        errors=[history.error] if history.error else [],
        started_at=history.started_at or datetime.now(timezone.utc),
        completed_at=history.completed_at,
    )
    return ProgressEvent(
        type=_TERMINAL_EVENT_FOR_STATUS[history.status],
        state=state,
        message=history.error,
    )


async def _stream_progress(
    channel: ProgressChannel, history: SyncHistoryRead
) -> AsyncIterator[str]:
    if history.status != SyncStatus.PROCESSING and await channel.latest(history.id) is None:
        yield format_sse(_event_from_history(history))
        return
    async for event in channel.subscribe(history.id, heartbeat=SSE_HEARTBEAT_SECONDS):
        yield SSE_KEEPALIVE if event is None else format_sse(event)


# ── Bulk sync ───────────────────────────────────────────────────────────────


@router.post(
    "/contacts/sync",
    response_model=SyncStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_sync(
    request: Request,
    body: SyncStartRequest | None = None,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
    client: PipedriveClient = Depends(get_pipedrive_client),
):
    """Start a bulk sync of the "Still Active" persons; returns immediately.

    Raises:
        HTTPException(409): If the user already has a sync running.
        HTTPException(422): If the active-persons filter does not exist.
        HTTPException(502): If Pipedrive could not be reached.
    """
    body = body or SyncStartRequest()
    registry = _get_sync_registry(request)
    channel = _get_progress_channel(request)

    running = registry.running_for_user(user.id)
    if running is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A sync is already running: {running.sync_id}",
        )

    runner = BulkSyncRunner(repo, client, channel)
    try:
        sync_id = await runner.start(user.id, body.sync_type, registry)
    except SyncConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except SyncConnectionError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))

    return SyncStartedResponse(sync_id=sync_id)


@router.get("/contacts/sync/latest", response_model=SyncHistoryRead)
async def latest_sync(
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
):
    history = await repo.get_latest_sync_history(user.id)
    if history is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No sync has been run yet")
    return history


@router.get("/contacts/sync/progress/{sync_id}")
async def sync_progress(
    sync_id: str,
    request: Request,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
):
    """Server-sent events for one sync, ending after its terminal event."""
    channel = _get_progress_channel(request)
    history = await repo.get_sync_history(parse_id(sync_id, "Sync"))
    if history is None or history.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Sync {sync_id} not found")

    return StreamingResponse(
        _stream_progress(channel, history),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post(
    "/contacts/sync/{sync_id}/cancel",
    response_model=CancelResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def cancel_sync(
    sync_id: str,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    """Request cooperative cancellation; the sync stops before its next page."""
    registry = _get_sync_registry(request)
    sync_id = parse_id(sync_id, "Sync")
    if not registry.cancel(sync_id, user.id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No running sync {sync_id}",
        )
    return CancelResponse(sync_id=sync_id)


# ── Tooling ─────────────────────────────────────────────────────────────────


@router.get("/custom-fields", response_model=CustomFieldsResponse)
async def custom_fields(
    entity: EntityKind = Query(EntityKind.PERSON),
    user: UserRead = Depends(get_current_user),
    client: PipedriveClient = Depends(get_pipedrive_client),
):
    """Field schema for persons or organizations, plus the resolved person mapping."""
    translator = CustomFieldTranslator(client)
    result = await translator.discover_fields(entity)
    if not result.ok:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=result.error_message)
    mapping = None
    if entity == EntityKind.PERSON:
        mapping = build_field_mapping(result.data or [])
    return CustomFieldsResponse(entity=entity, fields=result.data or [], mapping=mapping)


@router.get("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    user: UserRead = Depends(get_current_user),
    client: PipedriveClient = Depends(get_pipedrive_client),
):
    result = await client.test_connection()
    return ConnectionTestResponse(
        success=result.ok,
        user=result.data if result.ok else None,
        duration_ms=result.diagnostics.duration_ms,
        attempts=result.diagnostics.attempt,
        error=None if result.ok else result.error_message,
    )


@router.get("/organizations/search", response_model=list[RemoteOrganization])
async def search_organizations(
    term: str = Query(..., min_length=2),
    exact_match: bool = Query(False),
    limit: int = Query(10, ge=1, le=100),
    user: UserRead = Depends(get_current_user),
    client: PipedriveClient = Depends(get_pipedrive_client),
):
    result = await client.search_organizations(term, exact_match=exact_match, limit=limit)
    if not result.ok:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=result.error_message)
    return result.data or []


@router.post("/batch-update", response_model=BatchSummary)
async def batch_update(
    body: BatchUpdateRequest,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
    client: PipedriveClient = Depends(get_pipedrive_client),
):
    """Push field changes for linked records; failures are reported per item."""
    service = BatchUpdateService(repo, client)
    summary = await service.batch_update(body.items)
    logger.info("pipedrive.batch_update", user_id=user.id, total=summary.total, failed=summary.failed)
    return summary
