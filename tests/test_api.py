"""Integration tests for the v1 REST API.

Builds a minimal FastAPI app around the v1 router with the in-memory
repository on app.state and the Pipedrive client dependency overridden by
the AsyncMock double. Authentication runs for real against JWTs issued by
create_access_token.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.crmsync.api.deps import get_optional_pipedrive_client, get_pipedrive_client
from src.crmsync.api.v1.router import router as v1_router
from src.crmsync.core.security import create_access_token, hash_password
from src.crmsync.crm.schemas import (
    ActivityCreate,
    ActivityType,
    ContactCreate,
    SyncStatus,
    SyncType,
)
from src.crmsync.crm.service import CampaignService, ContactService
from src.crmsync.pipedrive.errors import ApiResult
from src.crmsync.pipedrive.schemas import (
    RemoteActivity,
    RemoteCustomField,
    RemoteCustomFieldOption,
    RemoteFilter,
    RemotePage,
    RemotePerson,
)
from src.crmsync.sync.bulk import SyncRegistry
from src.crmsync.sync.channel import InMemoryProgressChannel
from src.crmsync.sync.progress import ProgressEventType, ProgressTracker
from src.crmsync.sync.reconcile import KeyedLocks

STILL_ACTIVE = RemoteCustomField(
    id=1,
    key="k_active",
    name="Still Active",
    field_type="enum",
    options=[
        RemoteCustomFieldOption(id=31, label="Active"),
        RemoteCustomFieldOption(id=32, label="Inactive"),
    ],
)


def _make_app(repo, pipedrive_client) -> FastAPI:
    app = FastAPI()
    app.include_router(v1_router)
    app.state.crm_repository = repo
    app.state.contact_service = ContactService(repo)
    app.state.campaign_service = CampaignService(repo)
    app.state.reconcile_locks = KeyedLocks()
    app.state.sync_registry = SyncRegistry()
    app.state.progress_channel = InMemoryProgressChannel()
    app.dependency_overrides[get_pipedrive_client] = lambda: pipedrive_client
    app.dependency_overrides[get_optional_pipedrive_client] = lambda: pipedrive_client
    return app


@pytest_asyncio.fixture
async def app(repo, pipedrive_client) -> FastAPI:
    return _make_app(repo, pipedrive_client)


@pytest_asyncio.fixture
async def client(app, user):
    """Authenticated client for the fixture user."""
    transport = ASGITransport(app=app)
    headers = {"Authorization": f"Bearer {create_access_token(user.id)}"}
    async with AsyncClient(transport=transport, base_url="http://test", headers=headers) as ac:
        yield ac


@pytest_asyncio.fixture
async def anonymous(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _sse_events(body: str) -> list[tuple[str, dict]]:
    events = []
    for frame in body.strip().split("\n\n"):
        lines = frame.split("\n")
        if not lines[0].startswith("event: "):
            continue
        events.append((lines[0][7:], json.loads(lines[1][6:])))
    return events


# ── Health ───────────────────────────────────────────────────────────────────


async def test_health_is_public(anonymous):
    response = await anonymous.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_missing_repository_is_503():
    app = FastAPI()
    app.include_router(v1_router)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get("/api/v1/contacts", headers={"Authorization": "Bearer x"})
    assert response.status_code == 503


# ── Auth ─────────────────────────────────────────────────────────────────────


class TestAuth:
    async def test_login_issues_token(self, anonymous, repo):
        await repo.create_user(
            email="lee@example.com", name="Lee", hashed_password=hash_password("s3cret!")
        )

        response = await anonymous.post(
            "/api/v1/auth/login", json={"email": "lee@example.com", "password": "s3cret!"}
        )

        assert response.status_code == 200
        token = response.json()["access_token"]
        me = await anonymous.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.json()["email"] == "lee@example.com"

    async def test_wrong_password(self, anonymous, repo):
        await repo.create_user(email="lee@example.com", hashed_password=hash_password("right"))
        response = await anonymous.post(
            "/api/v1/auth/login", json={"email": "lee@example.com", "password": "wrong"}
        )
        assert response.status_code == 401

    async def test_protected_route_requires_token(self, anonymous):
        assert (await anonymous.get("/api/v1/contacts")).status_code == 401

    async def test_garbage_token_rejected(self, anonymous):
        response = await anonymous.get(
            "/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    async def test_me_never_returns_api_key(self, client):
        body = (await client.get("/api/v1/auth/me")).json()
        assert body["has_pipedrive_api_key"] is True
        assert "pipedrive_api_key" not in body

    async def test_set_key_resets_remote_user(self, client, repo, user):
        await repo.set_user_remote_id(user.id, 12)

        response = await client.put("/api/v1/auth/me/pipedrive-key", json={"api_key": "new-key"})

        assert response.status_code == 200
        stored = await repo.get_user(user.id)
        assert stored.pipedrive_api_key == "new-key"
        assert stored.pipedrive_user_id is None


# ── Contacts ─────────────────────────────────────────────────────────────────


class TestContacts:
    async def test_create_links_organisation(self, client, repo):
        response = await client.post(
            "/api/v1/contacts",
            json={"name": "Ada", "email": "ada@x.com", "organisation": "Acme"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["organization"]["name"] == "Acme"
        assert len(repo.organizations) == 1

    async def test_invalid_email_is_422(self, client):
        response = await client.post("/api/v1/contacts", json={"name": "Ada", "email": "nope"})
        assert response.status_code == 422

    async def test_list_filters_and_paginates(self, client, repo):
        for i in range(3):
            await repo.create_contact(ContactCreate(name=f"Warm {i}", warmness_score=8))
        await repo.create_contact(ContactCreate(name="Cold", warmness_score=1))

        response = await client.get("/api/v1/contacts", params={"min_warmness": 5, "limit": 2})

        body = response.json()
        assert body["total"] == 3
        assert body["pages"] == 2
        assert len(body["items"]) == 2

    async def test_malformed_id_is_404(self, client):
        assert (await client.get("/api/v1/contacts/not-a-uuid")).status_code == 404

    async def test_update_linked_contact_flags_pending(self, client, repo):
        contact = await repo.create_contact(ContactCreate(name="Ada", remote_person_id="42"))

        response = await client.patch(f"/api/v1/contacts/{contact.id}", json={"warmness_score": 7})

        assert response.status_code == 200
        assert response.json()["update_sync_status"] == "PENDING"

    async def test_campaign_assignment(self, client, repo):
        contact = await repo.create_contact(ContactCreate(name="Ada"))
        campaign = (await client.post("/api/v1/campaigns", json={"name": "ASC", "shortcode": "asc"})).json()
        assert campaign["shortcode"] == "ASC"

        response = await client.post(f"/api/v1/contacts/{contact.id}/campaigns/{campaign['id']}")

        assert response.status_code == 204
        assert (await repo.get_contact(contact.id)).added_to_campaign
        listed = await client.get("/api/v1/contacts", params={"campaign_id": campaign["id"]})
        assert listed.json()["total"] == 1

    async def test_delete(self, client, repo):
        contact = await repo.create_contact(ContactCreate(name="Ada"))
        assert (await client.delete(f"/api/v1/contacts/{contact.id}")).status_code == 204
        assert (await client.get(f"/api/v1/contacts/{contact.id}")).status_code == 404

    async def test_check_warm_lead_below_threshold(self, client, repo):
        contact = await repo.create_contact(ContactCreate(name="Ada", warmness_score=1))

        response = await client.post(f"/api/v1/contacts/{contact.id}/check-warm-lead")

        assert response.status_code == 200
        assert response.json()["data"]["promoted"] is False

    async def test_deactivate_and_reactivate(self, client, repo, pipedrive_client):
        contact = await repo.create_contact(ContactCreate(name="Ada", remote_person_id="42"))
        pipedrive_client.person_fields.return_value = ApiResult.success([STILL_ACTIVE])
        pipedrive_client.update_person.return_value = ApiResult.success(RemotePerson(id=42))

        response = await client.post(
            f"/api/v1/contacts/{contact.id}/deactivate", json={"reason": "  Retired  "}
        )
        assert response.status_code == 200
        assert response.json()["data"]["contact"]["deactivation_reason"] == "Retired"

        again = await client.post(f"/api/v1/contacts/{contact.id}/deactivate", json={"reason": "x"})
        assert again.status_code == 400

        response = await client.post(f"/api/v1/contacts/{contact.id}/reactivate")
        assert response.status_code == 200
        assert (await repo.get_contact(contact.id)).is_active

        activities = (await client.get(f"/api/v1/contacts/{contact.id}/activities")).json()
        assert [a["system_action"] for a in activities] == ["REACTIVATED", "DEACTIVATED"]

    async def test_deactivate_blocked_by_pending_activity(self, client, repo, user):
        contact = await repo.create_contact(ContactCreate(name="Ada"))
        await repo.create_activity(
            ActivityCreate(
                type=ActivityType.MEETING,
                contact_id=contact.id,
                user_id=user.id,
                due_date=datetime.now(timezone.utc) + timedelta(days=3),
            )
        )

        response = await client.post(
            f"/api/v1/contacts/{contact.id}/deactivate", json={"reason": "x"}
        )

        assert response.status_code == 400
        assert "pending activities" in response.json()["detail"]

    async def test_deactivate_requires_reason(self, client, repo):
        contact = await repo.create_contact(ContactCreate(name="Ada"))
        response = await client.post(f"/api/v1/contacts/{contact.id}/deactivate", json={"reason": ""})
        assert response.status_code == 422


# ── Activities ───────────────────────────────────────────────────────────────


class TestActivities:
    async def test_unlinked_contact_is_not_scheduled(self, client, repo, pipedrive_client):
        contact = await repo.create_contact(ContactCreate(name="Ada"))

        response = await client.post(
            "/api/v1/activities", json={"type": "CALL", "contact_id": contact.id}
        )

        assert response.status_code == 201
        assert response.json()["replication_scheduled"] is False
        pipedrive_client.create_activity.assert_not_awaited()

    async def test_linked_contact_replicates_in_background(self, client, repo, pipedrive_client):
        contact = await repo.create_contact(ContactCreate(name="Ada", remote_person_id="42"))
        pipedrive_client.create_activity.return_value = ApiResult.success(RemoteActivity(id=700))

        response = await client.post(
            "/api/v1/activities", json={"type": "CALL", "contact_id": contact.id}
        )

        assert response.json()["replication_scheduled"] is True
        stored = await repo.get_activity(response.json()["activity"]["id"])
        assert stored.replicated_to_pipedrive
        assert stored.remote_activity_id == "700"

    async def test_unknown_contact_is_404(self, client):
        response = await client.post(
            "/api/v1/activities",
            json={"type": "CALL", "contact_id": "00000000-0000-0000-0000-000000000000"},
        )
        assert response.status_code == 404

    async def test_sync_status(self, client, repo, user):
        contact = await repo.create_contact(ContactCreate(name="Ada"))
        activity = await repo.create_activity(
            ActivityCreate(type=ActivityType.EMAIL, contact_id=contact.id, user_id=user.id)
        )

        response = await client.get(f"/api/v1/activities/{activity.id}/sync-status")

        assert response.status_code == 200
        assert response.json()["replicated_to_pipedrive"] is False


# ── Pipedrive bulk sync ──────────────────────────────────────────────────────


class TestBulkSyncApi:
    async def test_start_runs_sync_and_streams_progress(self, client, app, repo, pipedrive_client):
        pipedrive_client.list_filters.return_value = ApiResult.success(
            [RemoteFilter(id=17, name="Still Active")]
        )
        pipedrive_client.organization_fields.return_value = ApiResult.success([])
        pipedrive_client.list_persons.return_value = ApiResult.success(
            RemotePage(items=[RemotePerson(id=1, name="Ada")], total=1)
        )

        response = await client.post("/api/v1/pipedrive/contacts/sync", json={"sync_type": "FULL"})

        assert response.status_code == 202
        sync_id = response.json()["syncId"]
        run = app.state.sync_registry.get(sync_id)
        if run is not None:
            await run.task

        stream = await client.get(f"/api/v1/pipedrive/contacts/sync/progress/{sync_id}")
        assert stream.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(stream.text)
        assert events[-1][0] == "complete"
        assert events[-1][1]["processed_records"] == 1

        latest = await client.get("/api/v1/pipedrive/contacts/sync/latest")
        assert latest.json()["status"] == "completed"

    async def test_missing_filter_is_422(self, client, pipedrive_client):
        pipedrive_client.list_filters.return_value = ApiResult.success([])
        response = await client.post("/api/v1/pipedrive/contacts/sync")
        assert response.status_code == 422
        assert "Still Active" in response.json()["detail"]

    async def test_second_sync_while_running_is_409(self, client, app, user):
        app.state.sync_registry.register("running-sync", user.id)
        response = await client.post("/api/v1/pipedrive/contacts/sync")
        assert response.status_code == 409

    async def test_cancel(self, client, app, repo, user):
        history = await repo.create_sync_history(user.id, SyncType.FULL)
        run = app.state.sync_registry.register(history.id, user.id)

        response = await client.post(f"/api/v1/pipedrive/contacts/sync/{history.id}/cancel")

        assert response.status_code == 202
        assert response.json() == {"syncId": history.id, "cancelled": True}
        assert run.cancel_event.is_set()

    async def test_cancel_unknown_sync_is_404(self, client):
        response = await client.post(
            "/api/v1/pipedrive/contacts/sync/00000000-0000-0000-0000-000000000000/cancel"
        )
        assert response.status_code == 404

    async def test_progress_of_finished_sync_without_events(self, client, repo, user):
        history = await repo.create_sync_history(user.id, SyncType.FULL)
        await repo.update_sync_history(
            history.id, status=SyncStatus.FAILED, error="Page at offset 0: boom"
        )

        stream = await client.get(f"/api/v1/pipedrive/contacts/sync/progress/{history.id}")

        [(event_type, payload)] = _sse_events(stream.text)
        assert event_type == "error"
        assert payload["errors"] == ["Page at offset 0: boom"]

    async def test_progress_replays_to_late_subscriber(self, client, app, repo, user):
        history = await repo.create_sync_history(user.id, SyncType.FULL)
        tracker = ProgressTracker(history.id)
        channel = app.state.progress_channel
        await channel.publish(tracker.event(ProgressEventType.PROGRESS))

        async def finish_soon():
            await asyncio.sleep(0.05)
            tracker.finish(SyncStatus.COMPLETED)
            await channel.publish(tracker.event(ProgressEventType.COMPLETE))

        finisher = asyncio.create_task(finish_soon())
        stream = await client.get(f"/api/v1/pipedrive/contacts/sync/progress/{history.id}")
        await finisher

        assert [e[0] for e in _sse_events(stream.text)] == ["progress", "complete"]

    async def test_progress_of_other_users_sync_is_404(self, client, repo):
        other = await repo.create_user(email="other@example.com")
        history = await repo.create_sync_history(other.id, SyncType.FULL)
        response = await client.get(f"/api/v1/pipedrive/contacts/sync/progress/{history.id}")
        assert response.status_code == 404


class TestPipedriveTooling:
    async def test_custom_fields_includes_mapping(self, client, pipedrive_client):
        pipedrive_client.person_fields.return_value = ApiResult.success([STILL_ACTIVE])

        response = await client.get("/api/v1/pipedrive/custom-fields", params={"entity": "person"})

        body = response.json()
        assert response.status_code == 200
        assert body["mapping"]["still_active_field_key"] == "k_active"
        assert body["mapping"]["inactive_value"] == "32"

    async def test_custom_fields_remote_failure_is_502(self, client):
        response = await client.get(
            "/api/v1/pipedrive/custom-fields", params={"entity": "organization"}
        )
        assert response.status_code == 502

    async def test_batch_update_reports_per_item(self, client, repo, pipedrive_client):
        contact = await repo.create_contact(ContactCreate(name="Ada", remote_person_id="42"))
        pipedrive_client.update_person.return_value = ApiResult.success(RemotePerson(id=42))

        response = await client.post(
            "/api/v1/pipedrive/batch-update",
            json={
                "items": [
                    {"entity": "person", "id": contact.id, "changes": {"name": "Ada L"}},
                    {"entity": "person", "id": "missing", "changes": {}},
                ]
            },
        )

        body = response.json()
        assert body["successful"] == 1
        assert body["failed"] == 1
