"""Tests for the bulk sync runner and its registry."""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta, timezone

import pytest

from src.crmsync.crm.schemas import ContactCreate, SyncStatus, SyncType
from src.crmsync.pipedrive.errors import ApiError, ApiErrorKind, ApiResult
from src.crmsync.pipedrive.schemas import RemoteFilter, RemoteOrganization, RemotePage, RemotePerson
from src.crmsync.sync.bulk import BulkSyncRunner, SyncRegistry
from src.crmsync.sync.channel import InMemoryProgressChannel
from src.crmsync.sync.errors import SyncConfigurationError, SyncConnectionError
from src.crmsync.sync.progress import ProgressEventType

ACTIVE_FILTER = RemoteFilter(id=17, name="Still Active", type="people")


def _people(count: int, **fields) -> list[RemotePerson]:
    return [
        RemotePerson(id=i + 1, name=f"Person {i + 1}", emails=[f"p{i + 1}@x.com"], **fields)
        for i in range(count)
    ]


def _pager(people: list[RemotePerson], *, with_total: bool = True):
    """list_persons side effect serving start/limit pages over people."""

    async def list_persons(start=0, limit=100, filter_id=None):
        items = people[start : start + limit]
        more = start + limit < len(people)
        return ApiResult.success(
            RemotePage(
                items=items,
                start=start,
                limit=limit,
                more_items=more,
                next_start=start + limit if more else None,
                total=len(people) if with_total else None,
            )
        )

    return list_persons


def _bare_pager(people: list[RemotePerson]):
    """list_persons side effect whose pages carry no pagination metadata."""

    async def list_persons(start=0, limit=100, filter_id=None):
        return ApiResult.success(RemotePage(items=people[start : start + limit]))

    return list_persons


@pytest.fixture
def channel() -> InMemoryProgressChannel:
    return InMemoryProgressChannel()


@pytest.fixture
def runner(repo, pipedrive_client, channel) -> BulkSyncRunner:
    pipedrive_client.list_filters.return_value = ApiResult.success([ACTIVE_FILTER])
    pipedrive_client.organization_fields.return_value = ApiResult.success([])
    return BulkSyncRunner(repo, pipedrive_client, channel, page_size=2)


async def _run(repo, runner, user, sync_type=SyncType.FULL, cancel_event=None):
    history = await repo.create_sync_history(user.id, sync_type)
    state = await runner.run(history.id, user.id, sync_type, cancel_event or asyncio.Event())
    return history.id, state


class TestBulkSyncRunner:
    async def test_pages_through_every_person(self, repo, user, runner, pipedrive_client, channel):
        pipedrive_client.list_persons.side_effect = _pager(_people(5))

        sync_id, state = await _run(repo, runner, user)

        assert pipedrive_client.list_persons.await_count == 3
        assert pipedrive_client.list_persons.await_args_list[0].kwargs == {
            "start": 0,
            "limit": 2,
            "filter_id": 17,
        }
        assert state.status == SyncStatus.COMPLETED
        assert state.total_records == 5
        assert state.created_records == 5
        assert state.percentage == 100
        assert len(repo.contacts) == 5

        history = await repo.get_sync_history(sync_id)
        assert history.status == SyncStatus.COMPLETED
        assert history.contacts_processed == 5
        assert history.contacts_updated == 5
        assert history.completed_at is not None

        latest = await channel.latest(sync_id)
        assert latest.type == ProgressEventType.COMPLETE

    @pytest.mark.parametrize("count", [1, 3, 5, 7])
    async def test_short_page_ends_sync_without_pagination_metadata(
        self, repo, user, runner, pipedrive_client, count
    ):
        pipedrive_client.list_persons.side_effect = _bare_pager(_people(count))

        _, state = await _run(repo, runner, user)

        assert pipedrive_client.list_persons.await_count == math.ceil(count / 2)
        assert state.status == SyncStatus.COMPLETED
        assert state.processed_records == count
        assert len(repo.contacts) == count

    async def test_exact_multiple_stops_on_last_page_flag(self, repo, user, runner, pipedrive_client):
        pipedrive_client.list_persons.side_effect = _pager(_people(4))

        _, state = await _run(repo, runner, user)

        assert pipedrive_client.list_persons.await_count == 2
        assert state.processed_records == 4
        assert state.status == SyncStatus.COMPLETED

    async def test_exact_multiple_without_metadata_reads_one_empty_page(
        self, repo, user, runner, pipedrive_client
    ):
        pipedrive_client.list_persons.side_effect = _bare_pager(_people(4))

        _, state = await _run(repo, runner, user)

        assert pipedrive_client.list_persons.await_count == 3
        assert pipedrive_client.list_persons.await_args_list[-1].kwargs["start"] == 4
        assert state.processed_records == 4
        assert state.total_records == 4
        assert state.status == SyncStatus.COMPLETED

    async def test_second_full_sync_updates_existing(self, repo, user, runner, pipedrive_client):
        pipedrive_client.list_persons.side_effect = _pager(_people(2))
        await _run(repo, runner, user)

        _, state = await _run(repo, runner, user)

        assert state.updated_records == 2
        assert state.created_records == 0
        assert len(repo.contacts) == 2

    async def test_links_unlinked_local_contact_by_email(self, repo, user, runner, pipedrive_client):
        local = await repo.create_contact(ContactCreate(name="Local", email="P1@x.com"))
        pipedrive_client.list_persons.side_effect = _pager(_people(1))

        _, state = await _run(repo, runner, user)

        assert state.updated_records == 1
        stored = await repo.get_contact(local.id)
        assert stored.remote_person_id == "1"
        assert stored.name == "Person 1"

    async def test_unknown_total_is_estimated(self, repo, user, runner, pipedrive_client):
        pipedrive_client.list_persons.side_effect = _pager(_people(3), with_total=False)

        _, state = await _run(repo, runner, user)

        assert state.status == SyncStatus.COMPLETED
        assert state.total_records == 3

    async def test_organizations_fetched_once_per_sync(self, repo, user, runner, pipedrive_client):
        pipedrive_client.list_persons.side_effect = _pager(_people(3, org_id=9, org_name="Acme"))
        pipedrive_client.get_organization.return_value = ApiResult.success(
            RemoteOrganization(id=9, name="Acme Ltd")
        )

        await _run(repo, runner, user)

        pipedrive_client.get_organization.assert_awaited_once_with(9)
        [organization] = repo.organizations.values()
        assert organization.remote_org_id == "9"
        assert all(c.organization_id == organization.id for c in repo.contacts.values())
        assert all(c.remote_org_id == "9" for c in repo.contacts.values())

    async def test_cancel_stops_before_next_page(self, repo, user, runner, pipedrive_client, channel):
        cancel_event = asyncio.Event()
        pager = _pager(_people(6))

        async def list_then_cancel(**kwargs):
            cancel_event.set()
            return await pager(**kwargs)

        pipedrive_client.list_persons.side_effect = list_then_cancel

        sync_id, state = await _run(repo, runner, user, cancel_event=cancel_event)

        assert pipedrive_client.list_persons.await_count == 1
        assert state.status == SyncStatus.CANCELLED
        assert state.processed_records == 2
        assert len(repo.contacts) == 2
        assert (await repo.get_sync_history(sync_id)).status == SyncStatus.CANCELLED
        assert (await channel.latest(sync_id)).type == ProgressEventType.CANCELLED

    async def test_page_failure_fails_the_sync(self, repo, user, runner, pipedrive_client):
        pipedrive_client.list_persons.return_value = ApiResult.failure(
            ApiError(ApiErrorKind.AUTH_EXPIRED, "expired", 401)
        )

        sync_id, state = await _run(repo, runner, user)

        assert state.status == SyncStatus.FAILED
        history = await repo.get_sync_history(sync_id)
        assert history.status == SyncStatus.FAILED
        assert "API key" in history.error

    async def test_record_failure_is_isolated(self, repo, user, runner, pipedrive_client, monkeypatch):
        pipedrive_client.list_persons.side_effect = _pager(_people(3))
        create_contact = repo.create_contact

        async def flaky_create(data):
            if data.remote_person_id == "2":
                raise ValueError("bad phone number")
            return await create_contact(data)

        monkeypatch.setattr(repo, "create_contact", flaky_create)

        _, state = await _run(repo, runner, user)

        assert state.status == SyncStatus.COMPLETED
        assert state.created_records == 2
        assert state.failed_records == 1
        assert state.errors == ["Person 2: Invalid record data: bad phone number"]

    async def test_incremental_skips_unchanged_persons(self, repo, user, runner, pipedrive_client):
        previous = await repo.create_sync_history(user.id, SyncType.FULL)
        cutoff = datetime.now(timezone.utc) - timedelta(hours=1)
        await repo.update_sync_history(previous.id, status=SyncStatus.COMPLETED, started_at=cutoff)

        stale = RemotePerson(id=1, name="Stale", update_time=cutoff - timedelta(days=1))
        fresh = RemotePerson(id=2, name="Fresh", update_time=cutoff + timedelta(minutes=5))
        pipedrive_client.list_persons.side_effect = _pager([stale, fresh])

        _, state = await _run(repo, runner, user, sync_type=SyncType.INCREMENTAL)

        assert state.skipped_records == 1
        assert state.created_records == 1
        assert [c.name for c in repo.contacts.values()] == ["Fresh"]


class TestStart:
    async def test_missing_filter_is_a_configuration_error(self, repo, user, runner, pipedrive_client):
        pipedrive_client.list_filters.return_value = ApiResult.success(
            [RemoteFilter(id=1, name="Everyone")]
        )

        with pytest.raises(SyncConfigurationError, match="Still Active"):
            await runner.start(user.id, SyncType.FULL, SyncRegistry())
        assert repo.sync_history == {}

    async def test_unreachable_remote_is_a_connection_error(self, user, runner, pipedrive_client):
        pipedrive_client.list_filters.return_value = ApiResult.failure(
            ApiError(ApiErrorKind.NETWORK_ERROR, "down")
        )
        with pytest.raises(SyncConnectionError):
            await runner.start(user.id, SyncType.FULL, SyncRegistry())

    async def test_start_runs_in_background_and_unregisters(
        self, repo, user, runner, pipedrive_client
    ):
        pipedrive_client.list_persons.side_effect = _pager(_people(1))
        registry = SyncRegistry()

        sync_id = await runner.start(user.id, SyncType.FULL, registry)
        run = registry.get(sync_id)
        assert registry.running_for_user(user.id) is run

        await run.task
        await asyncio.sleep(0)

        assert sync_id not in registry
        assert (await repo.get_sync_history(sync_id)).status == SyncStatus.COMPLETED


class TestSyncRegistry:
    def test_cancel_checks_owner(self):
        registry = SyncRegistry()
        run = registry.register("s1", "u1")

        assert registry.cancel("s1", "someone-else") is False
        assert not run.cancel_event.is_set()
        assert registry.cancel("s1", "u1") is True
        assert run.cancel_event.is_set()

    def test_cancel_unknown(self):
        assert SyncRegistry().cancel("nope") is False
