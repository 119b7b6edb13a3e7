"""Resolution of the acting user's Pipedrive user id."""

from __future__ import annotations

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.crmsync.crm.repository import CRMRepository
from src.crmsync.crm.schemas import UserRead
from src.crmsync.pipedrive.client import PipedriveClient

logger = structlog.get_logger(__name__)


async def resolve_remote_user_id(
    repo: CRMRepository, client: PipedriveClient, user: UserRead
) -> int | None:
    """Return the user's remote id, looking it up by email on first use.

    The resolved id is cached on the user record. Lookup failures return
    None; callers create remote records without an owner in that case.
    """
    if user.pipedrive_user_id is not None:
        return user.pipedrive_user_id

    result = await client.find_users_by_email(user.email)
    if not result.ok:
        logger.warning(
            "owners.lookup_failed",
            user_id=user.id,
            error=result.error_message,
        )
        return None

    wanted = user.email.strip().lower()
    match = next(
        (u for u in result.data or [] if (u.email or "").strip().lower() == wanted),
        None,
    )
    if match is None:
        logger.info("owners.no_remote_user", user_id=user.id)
        return None

    try:
        await repo.set_user_remote_id(user.id, match.id)
    except SQLAlchemyError as exc:
        logger.warning(
            "owners.cache_write_failed",
            user_id=user.id,
            remote_user_id=match.id,
            error=str(exc),
        )
        return match.id
    logger.info("owners.remote_user_cached", user_id=user.id, remote_user_id=match.id)
    return match.id
