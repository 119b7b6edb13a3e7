"""REST API endpoints for contacts.

CRUD, campaign assignment, warm-lead promotion and the deactivate /
reactivate lifecycle. All endpoints require authentication.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.crmsync.api.deps import (
    ensure_success,
    get_current_user,
    get_optional_pipedrive_client,
    get_pipedrive_client,
    get_reconcile_locks,
    get_repository,
    parse_id,
)
from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import (
    ActivityRead,
    ContactCreate,
    ContactFilter,
    ContactRead,
    ContactUpdate,
    UserRead,
)
from src.crmsync.crm.service import ContactService, ContactValidationError, NotFoundError
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.sync.lifecycle import ContactLifecycle
from src.crmsync.sync.reconcile import KeyedLocks
from src.crmsync.sync.warm_leads import WarmLeadPromoter

router = APIRouter(prefix="/contacts", tags=["contacts"])


# ── Request/Response Models ─────────────────────────────────────────────────


class ContactListResponse(BaseModel):
    items: list[ContactRead] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20
    pages: int = 0


class DeactivateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    sync_to_pipedrive: bool = True


class ReactivateRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)
    sync_to_pipedrive: bool = True


class OperationResponse(BaseModel):
    success: bool
    data: dict[str, Any] = Field(default_factory=dict)


# ── Helpers ─────────────────────────────────────────────────────────────────


def _get_contact_service(request: Request) -> ContactService:
    """Retrieve ContactService from app.state, 503 if not available."""
    service = getattr(request.app.state, "contact_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Contact service not initialized",
        )
    return service


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


# ── CRUD ────────────────────────────────────────────────────────────────────


@router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
async def create_contact(
    body: ContactCreate,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    service = _get_contact_service(request)
    try:
        return await service.create(body)
    except ContactValidationError as exc:
        raise _http_error(exc)


@router.get("", response_model=ContactListResponse)
async def list_contacts(
    request: Request,
    search: str | None = Query(None, description="Matches name, email or organisation"),
    is_active: bool | None = Query(None),
    min_warmness: int | None = Query(None, ge=0, le=10),
    campaign_id: str | None = Query(None),
    linked: bool | None = Query(None, description="Only contacts linked (or not) to Pipedrive"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: UserRead = Depends(get_current_user),
):
    service = _get_contact_service(request)
    filters = ContactFilter(
        search=search,
        is_active=is_active,
        min_warmness=min_warmness,
        campaign_id=parse_id(campaign_id, "Campaign") if campaign_id else None,
        linked=linked,
        page=page,
        limit=limit,
    )
    result = await service.list(filters)
    return ContactListResponse(
        items=result.items,
        total=result.total,
        page=result.page,
        limit=result.limit,
        pages=result.pages,
    )


@router.get("/{contact_id}", response_model=ContactRead)
async def get_contact(
    contact_id: str,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    service = _get_contact_service(request)
    try:
        return await service.get(parse_id(contact_id, "Contact"))
    except NotFoundError as exc:
        raise _http_error(exc)


@router.patch("/{contact_id}", response_model=ContactRead)
async def update_contact(
    contact_id: str,
    body: ContactUpdate,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    service = _get_contact_service(request)
    try:
        return await service.update(parse_id(contact_id, "Contact"), body)
    except (NotFoundError, ContactValidationError) as exc:
        raise _http_error(exc)


@router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_contact(
    contact_id: str,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    service = _get_contact_service(request)
    try:
        await service.delete(parse_id(contact_id, "Contact"))
    except NotFoundError as exc:
        raise _http_error(exc)


# ── Campaign assignment ─────────────────────────────────────────────────────


@router.post("/{contact_id}/campaigns/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
async def assign_campaign(
    contact_id: str,
    campaign_id: str,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    service = _get_contact_service(request)
    try:
        await service.assign_campaign(parse_id(contact_id, "Contact"), parse_id(campaign_id, "Campaign"))
    except NotFoundError as exc:
        raise _http_error(exc)


@router.delete("/{contact_id}/campaigns/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_campaign(
    contact_id: str,
    campaign_id: str,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    service = _get_contact_service(request)
    try:
        await service.remove_campaign(parse_id(contact_id, "Contact"), parse_id(campaign_id, "Campaign"))
    except NotFoundError as exc:
        raise _http_error(exc)


@router.get("/{contact_id}/activities", response_model=list[ActivityRead])
async def list_contact_activities(
    contact_id: str,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
):
    contact_id = parse_id(contact_id, "Contact")
    if await repo.get_contact(contact_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Contact {contact_id} not found")
    return await repo.list_activities(contact_id)


# ── Pipedrive lifecycle ─────────────────────────────────────────────────────


@router.post("/{contact_id}/check-warm-lead", response_model=OperationResponse)
async def check_warm_lead(
    contact_id: str,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
    client: PipedriveClient = Depends(get_pipedrive_client),
    locks: KeyedLocks = Depends(get_reconcile_locks),
):
    """Create and link the Pipedrive person if the contact has become a warm lead.

    Below the threshold, or when already linked, this is a no-op reported
    with promoted=false.
    """
    promoter = WarmLeadPromoter(repo, client, locks=locks)
    result = ensure_success(await promoter.check_and_promote(parse_id(contact_id, "Contact"), user.id))
    return OperationResponse(success=True, data=result.data)


@router.post("/{contact_id}/deactivate", response_model=OperationResponse)
async def deactivate_contact(
    contact_id: str,
    body: DeactivateRequest,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
    client: PipedriveClient | None = Depends(get_optional_pipedrive_client),
):
    """Mark the contact inactive and, when linked, mirror it to Pipedrive.

    Refused while the contact has activities scheduled in the future. A
    remote failure leaves the local record untouched.
    """
    lifecycle = ContactLifecycle(repo, client)
    result = ensure_success(
        await lifecycle.deactivate(
            parse_id(contact_id, "Contact"),
            user.id,
            body.reason.strip(),
            sync_to_pipedrive=body.sync_to_pipedrive,
        )
    )
    return OperationResponse(success=True, data=result.data)


@router.post("/{contact_id}/reactivate", response_model=OperationResponse)
async def reactivate_contact(
    contact_id: str,
    body: ReactivateRequest | None = None,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
    client: PipedriveClient | None = Depends(get_optional_pipedrive_client),
):
    body = body or ReactivateRequest()
    lifecycle = ContactLifecycle(repo, client)
    result = ensure_success(
        await lifecycle.reactivate(
            parse_id(contact_id, "Contact"),
            user.id,
            body.reason,
            sync_to_pipedrive=body.sync_to_pipedrive,
        )
    )
    return OperationResponse(success=True, data=result.data)
