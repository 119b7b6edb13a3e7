"""Async HTTP client for the Pipedrive REST API.

Provides PipedriveClient: a single request() primitive plus typed endpoint
helpers. Every call returns an ApiResult; expected failures are classified
instead of raised:

- 401            -> AUTH_EXPIRED, returned immediately, never retried
- 429            -> RATE_LIMITED, retried after retry-after (or the
                    configured default delay) while rate limiting is enabled
- 5xx / network  -> HTTP_ERROR / NETWORK_ERROR, retried with exponential
                    backoff (retry_delay * 2^(attempt-1))
- other 4xx      -> HTTP_ERROR, returned immediately
- 2xx with an empty or non-JSON body -> MALFORMED_RESPONSE

Retries go through the shared RetryPolicy; a call makes at most
max_retries + 1 attempts. The API token is sent as the api_token query
parameter and never logged.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog

from src.crmsync.config import ConfigurationError, PipedriveSettings, get_settings
from src.crmsync.core.monitoring import record_pipedrive_call
from src.crmsync.core.retry import RetryPolicy, SleepFn
from src.crmsync.pipedrive import normalize
from src.crmsync.pipedrive.errors import ApiError, ApiErrorKind, ApiResult, Diagnostics
from src.crmsync.pipedrive.schemas import (
    RemoteActivity,
    RemoteCustomField,
    RemoteFilter,
    RemoteOrganization,
    RemotePage,
    RemotePerson,
    RemoteUser,
)

logger = structlog.get_logger(__name__)


def parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a retry-after header (delta-seconds or HTTP date)."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _error_message(response: httpx.Response) -> str:
    """Best-effort error text from a non-2xx body, which may be empty."""
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or response.reason_phrase)
    return response.reason_phrase or f"HTTP {response.status_code}"


def classify_response(response: httpx.Response) -> ApiResult[dict[str, Any]]:
    """Turn one HTTP response into a success or a classified failure."""
    status = response.status_code
    if status == 401:
        return ApiResult.failure(
            ApiError(ApiErrorKind.AUTH_EXPIRED, "Pipedrive API token is invalid or expired", status)
        )
    if status == 429:
        return ApiResult.failure(
            ApiError(
                ApiErrorKind.RATE_LIMITED,
                "Pipedrive rate limit exceeded",
                status,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        )
    if status < 200 or status >= 300:
        return ApiResult.failure(ApiError(ApiErrorKind.HTTP_ERROR, _error_message(response), status))

    if not response.content or not response.content.strip():
        return ApiResult.failure(
            ApiError(ApiErrorKind.MALFORMED_RESPONSE, "empty response body", status)
        )
    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError):
        return ApiResult.failure(
            ApiError(ApiErrorKind.MALFORMED_RESPONSE, "response body is not JSON", status)
        )
    if not isinstance(payload, dict):
        return ApiResult.failure(
            ApiError(ApiErrorKind.MALFORMED_RESPONSE, "response body is not a JSON object", status)
        )
    if payload.get("success") is False:
        return ApiResult.failure(
            ApiError(ApiErrorKind.HTTP_ERROR, str(payload.get("error") or "request failed"), status)
        )
    return ApiResult.success(payload)


class PipedriveClient:
    """Async client for the Pipedrive REST API, one per API token.

    Args:
        api_token: The calling user's Pipedrive API token.
        settings: Client options; defaults to the PIPEDRIVE_* environment.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
        sleep: Awaitable sleep used between retries.

    Raises:
        ConfigurationError: If the token is missing or the settings are invalid.
    """

    def __init__(
        self,
        api_token: str,
        settings: PipedriveSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if not api_token:
            raise ConfigurationError("A Pipedrive API token is required")
        self._settings = settings or get_settings().pipedrive()
        self._settings.ensure_valid()
        self._api_token = api_token
        self._transport = transport
        self._sleep = sleep
        attempts = self._settings.max_retries + 1 if self._settings.enable_retries else 1
        self._policy = RetryPolicy(max_attempts=attempts, base_delay=self._settings.retry_delay)

    @property
    def settings(self) -> PipedriveSettings:
        return self._settings

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one logical request."""
        return httpx.AsyncClient(
            base_url=self._settings.api_root,
            timeout=self._settings.timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    # ── Core request ────────────────────────────────────────────────────────

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> ApiResult[dict[str, Any]]:
        """Execute one logical request with classification and bounded retries.

        Args:
            endpoint: Path below the API root, e.g. "/persons/12".
            method: HTTP method.
            body: JSON body for POST/PUT.
            params: Extra query parameters (api_token is added here).

        Returns:
            ApiResult whose data is the parsed JSON envelope on success.
        """
        method = method.upper()
        diagnostics = Diagnostics(endpoint=endpoint, method=method)
        started = time.perf_counter()

        async with self._client() as http:

            async def _attempt(attempt: int) -> ApiResult[dict[str, Any]]:
                diagnostics.attempt = attempt
                return await self._send(http, method, endpoint, body, params, diagnostics)

            async def _sleep(seconds: float) -> None:
                diagnostics.total_delay += seconds
                await self._sleep(seconds)

            result = await self._policy.run(
                _attempt,
                should_retry=self._should_retry,
                delay_hint=self._delay_hint,
                sleep=_sleep,
                label=f"pipedrive {method} {endpoint}",
            )

        diagnostics.duration_ms = round((time.perf_counter() - started) * 1000, 2)
        result.diagnostics = diagnostics
        if not result.ok:
            logger.warning(
                "pipedrive.request_failed",
                endpoint=endpoint,
                method=method,
                kind=result.error.kind.value,
                status=result.error.status,
                error=result.error.message,
                attempts=diagnostics.attempt,
                rate_limit_hits=diagnostics.rate_limit_hits,
            )
        return result

    def _should_retry(self, result: ApiResult[dict[str, Any]]) -> bool:
        if result.ok or result.error is None:
            return False
        if result.error.kind == ApiErrorKind.RATE_LIMITED:
            return self._settings.enable_rate_limiting
        return result.error.transient

    def _delay_hint(self, result: ApiResult[dict[str, Any]]) -> float | None:
        if result.error is not None and result.error.kind == ApiErrorKind.RATE_LIMITED:
            if result.error.retry_after is not None:
                return result.error.retry_after
            return self._settings.rate_limit_delay
        return None

    async def _send(
        self,
        http: httpx.AsyncClient,
        method: str,
        endpoint: str,
        body: dict[str, Any] | None,
        params: dict[str, Any] | None,
        diagnostics: Diagnostics,
    ) -> ApiResult[dict[str, Any]]:
        """One HTTP attempt, classified."""
        query = {k: v for k, v in (params or {}).items() if v is not None}
        query["api_token"] = self._api_token
        started = time.perf_counter()
        try:
            response = await http.request(method, endpoint, params=query, json=body)
        except httpx.TransportError as exc:
            record_pipedrive_call(endpoint, method, ApiErrorKind.NETWORK_ERROR.value, time.perf_counter() - started)
            return ApiResult.failure(
                ApiError(ApiErrorKind.NETWORK_ERROR, f"{type(exc).__name__}: {exc}")
            )

        result = classify_response(response)
        diagnostics.status = response.status_code
        outcome = "success" if result.ok else result.error.kind.value
        record_pipedrive_call(endpoint, method, outcome, time.perf_counter() - started)

        if not result.ok:
            if result.error.kind == ApiErrorKind.RATE_LIMITED:
                diagnostics.rate_limit_hits += 1
            if self._settings.enable_detailed_logging:
                logger.debug(
                    "pipedrive.response_error_detail",
                    endpoint=endpoint,
                    method=method,
                    status=response.status_code,
                    body=response.text[:1000],
                )
        return result

    # ── Normalization helper ────────────────────────────────────────────────

    @staticmethod
    def _normalized(result: ApiResult[dict[str, Any]], fn: Callable[[dict[str, Any]], Any]) -> ApiResult[Any]:
        """Apply a normalizer to a successful envelope; failures pass through."""
        if not result.ok:
            return ApiResult.failure(result.error, result.diagnostics)
        try:
            value = fn(result.data)
        except ValueError as exc:
            logger.warning(
                "pipedrive.malformed_payload",
                endpoint=result.diagnostics.endpoint,
                error=str(exc),
            )
            return ApiResult.failure(
                ApiError(ApiErrorKind.MALFORMED_RESPONSE, f"unexpected payload: {exc}", result.diagnostics.status),
                result.diagnostics,
            )
        return ApiResult.success(value, result.diagnostics, raw=result.data)

    # ── Users ───────────────────────────────────────────────────────────────

    async def get_current_user(self) -> ApiResult[RemoteUser]:
        result = await self.request("/users/me")
        return self._normalized(result, lambda p: normalize.normalize_user(p.get("data")))

    async def test_connection(self) -> ApiResult[RemoteUser]:
        """Verify the token by fetching the current user; logs response time."""
        result = await self.get_current_user()
        logger.info(
            "pipedrive.connection_tested",
            ok=result.ok,
            duration_ms=result.diagnostics.duration_ms,
            attempts=result.diagnostics.attempt,
        )
        return result

    async def find_users_by_email(self, email: str) -> ApiResult[list[RemoteUser]]:
        result = await self.request(
            "/users/find", params={"term": email, "search_by_email": 1}
        )
        return self._normalized(result, lambda p: normalize.normalize_list(p, normalize.normalize_user))

    # ── Persons ─────────────────────────────────────────────────────────────

    async def get_person(self, person_id: int | str) -> ApiResult[RemotePerson]:
        result = await self.request(f"/persons/{person_id}")
        return self._normalized(result, lambda p: normalize.normalize_person(p.get("data")))

    async def create_person(self, payload: dict[str, Any]) -> ApiResult[RemotePerson]:
        result = await self.request("/persons", "POST", body=payload)
        return self._normalized(result, lambda p: normalize.normalize_person(p.get("data")))

    async def update_person(self, person_id: int | str, payload: dict[str, Any]) -> ApiResult[RemotePerson]:
        result = await self.request(f"/persons/{person_id}", "PUT", body=payload)
        return self._normalized(result, lambda p: normalize.normalize_person(p.get("data")))

    async def delete_person(self, person_id: int | str) -> ApiResult[int]:
        result = await self.request(f"/persons/{person_id}", "DELETE")
        return self._normalized(result, lambda p: int((p.get("data") or {}).get("id", person_id)))

    async def search_persons(
        self, term: str, fields: str = "email", exact_match: bool = True, limit: int = 10
    ) -> ApiResult[list[RemotePerson]]:
        result = await self.request(
            "/persons/search",
            params={
                "term": term,
                "fields": fields,
                "exact_match": str(exact_match).lower(),
                "limit": limit,
            },
        )
        return self._normalized(result, lambda p: normalize.normalize_list(p, normalize.normalize_person))

    async def list_persons(
        self, start: int = 0, limit: int = 100, filter_id: int | None = None
    ) -> ApiResult[RemotePage]:
        result = await self.request(
            "/persons",
            params={"start": start, "limit": limit, "filter_id": filter_id},
        )
        return self._normalized(result, lambda p: normalize.normalize_page(p, normalize.normalize_person))

    # ── Organizations ───────────────────────────────────────────────────────

    async def get_organization(self, org_id: int | str) -> ApiResult[RemoteOrganization]:
        result = await self.request(f"/organizations/{org_id}")
        return self._normalized(result, lambda p: normalize.normalize_organization(p.get("data")))

    async def create_organization(self, payload: dict[str, Any]) -> ApiResult[RemoteOrganization]:
        result = await self.request("/organizations", "POST", body=payload)
        return self._normalized(result, lambda p: normalize.normalize_organization(p.get("data")))

    async def update_organization(
        self, org_id: int | str, payload: dict[str, Any]
    ) -> ApiResult[RemoteOrganization]:
        result = await self.request(f"/organizations/{org_id}", "PUT", body=payload)
        return self._normalized(result, lambda p: normalize.normalize_organization(p.get("data")))

    async def delete_organization(self, org_id: int | str) -> ApiResult[int]:
        result = await self.request(f"/organizations/{org_id}", "DELETE")
        return self._normalized(result, lambda p: int((p.get("data") or {}).get("id", org_id)))

    async def search_organizations(
        self, term: str, exact_match: bool = False, limit: int = 10
    ) -> ApiResult[list[RemoteOrganization]]:
        result = await self.request(
            "/organizations/search",
            params={
                "term": term,
                "fields": "name",
                "exact_match": str(exact_match).lower(),
                "limit": limit,
            },
        )
        return self._normalized(
            result, lambda p: normalize.normalize_list(p, normalize.normalize_organization)
        )

    async def list_organizations(self, start: int = 0, limit: int = 100) -> ApiResult[RemotePage]:
        result = await self.request("/organizations", params={"start": start, "limit": limit})
        return self._normalized(
            result, lambda p: normalize.normalize_page(p, normalize.normalize_organization)
        )

    # ── Activities ──────────────────────────────────────────────────────────

    async def create_activity(self, payload: dict[str, Any]) -> ApiResult[RemoteActivity]:
        result = await self.request("/activities", "POST", body=payload)
        return self._normalized(result, lambda p: normalize.normalize_activity(p.get("data")))

    async def update_activity(
        self, activity_id: int | str, payload: dict[str, Any]
    ) -> ApiResult[RemoteActivity]:
        result = await self.request(f"/activities/{activity_id}", "PUT", body=payload)
        return self._normalized(result, lambda p: normalize.normalize_activity(p.get("data")))

    # ── Schema and filters ──────────────────────────────────────────────────

    async def person_fields(self) -> ApiResult[list[RemoteCustomField]]:
        result = await self.request("/personFields", params={"start": 0, "limit": 500})
        return self._normalized(result, lambda p: normalize.normalize_list(p, normalize.normalize_field))

    async def organization_fields(self) -> ApiResult[list[RemoteCustomField]]:
        result = await self.request("/organizationFields", params={"start": 0, "limit": 500})
        return self._normalized(result, lambda p: normalize.normalize_list(p, normalize.normalize_field))

    async def list_filters(self, filter_type: str = "people") -> ApiResult[list[RemoteFilter]]:
        result = await self.request("/filters", params={"type": filter_type})
        return self._normalized(result, lambda p: normalize.normalize_list(p, normalize.normalize_filter))
