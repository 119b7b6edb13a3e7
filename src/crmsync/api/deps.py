"""FastAPI dependencies: repository access, authentication and per-user clients.

Long-lived services are created in the application lifespan and stored on
app.state; these helpers fetch them and answer 503 when one is missing.
"""

from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, Request, status

from src.crmsync.config import ConfigurationError
from src.crmsync.core.security import verify_token
from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import OperationResult, UserRead
from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.sync.reconcile import KeyedLocks


def get_repository(request: Request) -> CRMRepository:
    """Retrieve CRMRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "crm_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM repository not initialized",
        )
    return repo


def get_reconcile_locks(request: Request) -> KeyedLocks:
    locks = getattr(request.app.state, "reconcile_locks", None)
    if locks is None:
        locks = KeyedLocks()
        request.app.state.reconcile_locks = locks
    return locks


def parse_id(value: str, kind: str = "Record") -> str:
    """Normalize a path id; malformed ids are reported as not found."""
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{kind} not found: {value}",
        )


async def get_current_user(
    request: Request,
    repo: CRMRepository = Depends(get_repository),
) -> UserRead:
    """Resolve the acting user from the Bearer access token.

    Raises:
        HTTPException(401): If the token is missing or invalid, or the user
            no longer exists or is inactive.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(auth_header[7:])
    try:
        user = await repo.get_user(payload["sub"])
    except ValueError:
        user = None
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return user


def get_pipedrive_client(user: UserRead = Depends(get_current_user)) -> PipedriveClient:
    """Remote client for the acting user's stored API token.

    Raises:
        HTTPException(400): If the user has no token or the client settings are invalid.
    """
    if not user.pipedrive_api_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Pipedrive API key is not configured for this user",
        )
    try:
        return PipedriveClient(user.pipedrive_api_key)
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        )


def get_optional_pipedrive_client(
    user: UserRead = Depends(get_current_user),
) -> PipedriveClient | None:
    """Like get_pipedrive_client, but None when the user has no token."""
    if not user.pipedrive_api_key:
        return None
    try:
        return PipedriveClient(user.pipedrive_api_key)
    except ConfigurationError:
        return None


# ── Operation results ───────────────────────────────────────────────────────

_RESULT_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "not_linked": status.HTTP_400_BAD_REQUEST,
    "already_inactive": status.HTTP_400_BAD_REQUEST,
    "already_active": status.HTTP_400_BAD_REQUEST,
    "pending_activities": status.HTTP_400_BAD_REQUEST,
    "configuration": status.HTTP_400_BAD_REQUEST,
    "remote_failed": status.HTTP_502_BAD_GATEWAY,
}


def ensure_success(result: OperationResult) -> OperationResult:
    """Return a successful result unchanged, raise the mapped HTTPException otherwise."""
    if not result.success:
        raise HTTPException(
            status_code=_RESULT_STATUS.get(result.code or "", status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail=result.error or "Operation failed",
        )
    return result
