"""Categorization of per-record bulk sync failures for user-facing reports."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from src.crmsync.pipedrive.errors import ApiError, ApiErrorKind


class SyncConfigurationError(Exception):
    """A remote precondition for syncing is missing (e.g. the active filter).

    The message is the remediation shown to the user.
    """


class SyncConnectionError(Exception):
    """Pipedrive could not be reached or refused the credentials before a sync started."""


class ErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    DATABASE = "database"
    VALIDATION = "validation"
    REMOTE_API = "remote_api"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CategorizedError:
    category: ErrorCategory
    message: str
    recoverable: bool
    suggestion: str | None = None

    def describe(self, record_label: str | None = None) -> str:
        prefix = f"{record_label}: " if record_label else ""
        text = f"{prefix}{self.message}"
        if self.suggestion:
            text += f" ({self.suggestion})"
        return text


_API_CATEGORIES: dict[ApiErrorKind, CategorizedError] = {
    ApiErrorKind.RATE_LIMITED: CategorizedError(
        ErrorCategory.RATE_LIMIT,
        "Pipedrive rate limit reached",
        True,
        "rate limited, will resume automatically",
    ),
    ApiErrorKind.AUTH_EXPIRED: CategorizedError(
        ErrorCategory.AUTHENTICATION,
        "Pipedrive API token is invalid or expired",
        False,
        "update your Pipedrive API key in settings",
    ),
    ApiErrorKind.NETWORK_ERROR: CategorizedError(
        ErrorCategory.NETWORK,
        "Could not reach Pipedrive",
        True,
        "check your connection and retry the sync",
    ),
    ApiErrorKind.MALFORMED_RESPONSE: CategorizedError(
        ErrorCategory.REMOTE_API,
        "Pipedrive returned an unreadable response",
        True,
        "retry the sync later",
    ),
}


def categorize_error(error: ApiError | BaseException | str) -> CategorizedError:
    """Map a remote error, exception or message onto an ErrorCategory."""
    if isinstance(error, ApiError):
        known = _API_CATEGORIES.get(error.kind)
        if known is not None:
            return known
        if (error.status or 0) >= 500:
            return CategorizedError(
                ErrorCategory.REMOTE_API, f"Pipedrive server error: {error.message}", True, "retry the sync later"
            )
        return CategorizedError(ErrorCategory.REMOTE_API, f"Pipedrive rejected the request: {error.message}", False)

    if isinstance(error, SQLAlchemyError):
        return CategorizedError(ErrorCategory.DATABASE, "Could not save the record locally", True)
    if isinstance(error, ValueError):
        return CategorizedError(ErrorCategory.VALIDATION, f"Invalid record data: {error}", False)

    text = str(error)
    lowered = text.lower()
    if "rate limit" in lowered or "429" in lowered:
        return _API_CATEGORIES[ApiErrorKind.RATE_LIMITED]
    if "unauthorized" in lowered or "401" in lowered or "token" in lowered:
        return _API_CATEGORIES[ApiErrorKind.AUTH_EXPIRED]
    if "timeout" in lowered or "connection" in lowered or "network" in lowered:
        return _API_CATEGORIES[ApiErrorKind.NETWORK_ERROR]
    if "database" in lowered or "constraint" in lowered:
        return CategorizedError(ErrorCategory.DATABASE, "Could not save the record locally", True)
    if "invalid" in lowered or "required" in lowered or "validation" in lowered:
        return CategorizedError(ErrorCategory.VALIDATION, text, False)
    return CategorizedError(ErrorCategory.UNKNOWN, text or "Unknown error", False)