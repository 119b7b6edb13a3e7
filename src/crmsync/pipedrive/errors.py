"""Typed outcomes for Pipedrive API calls.

Every expected failure mode of a remote call is returned as an ApiResult
carrying an ApiError rather than raised. Exceptions are reserved for
programming errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ApiErrorKind(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"
    MALFORMED_RESPONSE = "malformed_response"


@dataclass(frozen=True)
class ApiError:
    """Classified failure of a remote call.

    Attributes:
        kind: Failure class.
        message: Human-readable reason (never contains the API token).
        status: HTTP status when a response was received.
        retry_after: Seconds requested by a 429 retry-after header.
    """

    kind: ApiErrorKind
    message: str
    status: int | None = None
    retry_after: float | None = None

    @property
    def transient(self) -> bool:
        """Whether waiting and retrying could plausibly succeed."""
        if self.kind in (ApiErrorKind.RATE_LIMITED, ApiErrorKind.NETWORK_ERROR):
            return True
        return self.kind == ApiErrorKind.HTTP_ERROR and (self.status or 0) >= 500

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.kind.value} ({self.status}): {self.message}"
        return f"{self.kind.value}: {self.message}"


@dataclass
class Diagnostics:
    """Per-call bookkeeping surfaced to callers and logs."""

    endpoint: str = ""
    method: str = "GET"
    attempt: int = 0
    rate_limit_hits: int = 0
    total_delay: float = 0.0
    duration_ms: float = 0.0
    status: int | None = None


@dataclass
class ApiResult(Generic[T]):
    """Success value or classified error, plus diagnostics."""

    ok: bool
    data: T | None = None
    error: ApiError | None = None
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    raw: dict[str, Any] | None = None

    @classmethod
    def success(
        cls, data: T, diagnostics: Diagnostics | None = None, raw: dict[str, Any] | None = None
    ) -> ApiResult[T]:
        return cls(ok=True, data=data, diagnostics=diagnostics or Diagnostics(), raw=raw)

    @classmethod
    def failure(cls, error: ApiError, diagnostics: Diagnostics | None = None) -> ApiResult[T]:
        return cls(ok=False, error=error, diagnostics=diagnostics or Diagnostics())

    def map(self, fn: Any) -> ApiResult[Any]:
        """Transform the success value, keeping diagnostics; failures pass through."""
        if not self.ok:
            return ApiResult(ok=False, error=self.error, diagnostics=self.diagnostics)
        return ApiResult(ok=True, data=fn(self.data), diagnostics=self.diagnostics, raw=self.raw)

    @property
    def error_message(self) -> str:
        return str(self.error) if self.error else ""
