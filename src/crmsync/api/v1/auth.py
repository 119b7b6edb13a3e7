"""Authentication endpoints: login, current user, Pipedrive API key."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from src.crmsync.api.deps import get_current_user, get_repository
from src.crmsync.core.security import create_access_token, verify_password
from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import UserRead

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ── Request/Response Models ─────────────────────────────────────────────────


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, description="User email address")
    password: str = Field(..., min_length=1, description="User password")


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserResponse(BaseModel):
    """Current user; the stored API key itself is never returned."""

    id: str
    email: str
    name: str | None = None
    pipedrive_user_id: int | None = None
    has_pipedrive_api_key: bool = False


class ApiKeyRequest(BaseModel):
    api_key: str | None = Field(None, description="Pipedrive API token; null clears it")


def _to_response(user: UserRead) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        pipedrive_user_id=user.pipedrive_user_id,
        has_pipedrive_api_key=bool(user.pipedrive_api_key),
    )


# ── Endpoints ───────────────────────────────────────────────────────────────


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, repo: CRMRepository = Depends(get_repository)):
    """Authenticate with email and password, return an access token."""
    found = await repo.get_user_credentials(body.email)
    if found is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    user, password_hash = found
    if not password_hash or not verify_password(body.password, password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is deactivated",
        )

    logger.info("auth.login", user_id=user.id)
    return TokenResponse(access_token=create_access_token(user.id))


@router.get("/me", response_model=UserResponse)
async def get_me(user: UserRead = Depends(get_current_user)):
    return _to_response(user)


@router.put("/me/pipedrive-key", response_model=UserResponse)
async def set_pipedrive_key(
    body: ApiKeyRequest,
    user: UserRead = Depends(get_current_user),
    repo: CRMRepository = Depends(get_repository),
):
    """Store or clear the user's Pipedrive API token.

    The cached Pipedrive user id is reset so owner resolution runs again
    against the new account.
    """
    api_key = body.api_key.strip() if body.api_key else None
    updated = await repo.set_user_api_key(user.id, api_key or None)
    if updated is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    logger.info("auth.pipedrive_key_updated", user_id=user.id, cleared=api_key is None)
    return _to_response(updated)
