"""REST API endpoints for campaigns."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.crmsync.api.deps import get_current_user, parse_id
from src.crmsync.crm.schemas import CampaignCreate, CampaignRead, CampaignUpdate, UserRead
from src.crmsync.crm.service import CampaignService, ContactValidationError, NotFoundError

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


def _get_campaign_service(request: Request) -> CampaignService:
    """Retrieve CampaignService from app.state, 503 if not available."""
    service = getattr(request.app.state, "campaign_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Campaign service not initialized",
        )
    return service


@router.post("", response_model=CampaignRead, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    body: CampaignCreate,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    service = _get_campaign_service(request)
    try:
        return await service.create(body)
    except ContactValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


@router.get("", response_model=list[CampaignRead])
async def list_campaigns(request: Request, user: UserRead = Depends(get_current_user)):
    service = _get_campaign_service(request)
    return await service.list()


@router.get("/{campaign_id}", response_model=CampaignRead)
async def get_campaign(
    campaign_id: str,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    service = _get_campaign_service(request)
    try:
        return await service.get(parse_id(campaign_id, "Campaign"))
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.patch("/{campaign_id}", response_model=CampaignRead)
async def update_campaign(
    campaign_id: str,
    body: CampaignUpdate,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    service = _get_campaign_service(request)
    try:
        return await service.update(parse_id(campaign_id, "Campaign"), body)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ContactValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


@router.delete("/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_campaign(
    campaign_id: str,
    request: Request,
    user: UserRead = Depends(get_current_user),
):
    service = _get_campaign_service(request)
    try:
        await service.delete(parse_id(campaign_id, "Campaign"))
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
