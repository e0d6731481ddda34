"""Tests for write-back fan-out and the manual push operation."""

from __future__ import annotations

import uuid

import pytest

from orbyt_sync.errors import ForbiddenError, NotFoundError, RemoteProviderError, ValidationError
from orbyt_sync.models import EventStatus, Provider, RemoteEvent, WriteBackAction

pytestmark = pytest.mark.unit


@pytest.fixture
async def three_accounts(make_account):
    return [
        await make_account(access_token="token-one"),
        await make_account(access_token="token-two"),
        await make_account(access_token="token-three"),
    ]


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class TestFanOut:
    async def test_failure_on_one_account_does_not_stop_the_others(
        self, service, fake_provider, three_accounts, make_event, store, user_id
    ):
        first, second, third = three_accounts
        fake_provider.failing_tokens.add("token-two")
        event = make_event()

        report = await service.writeback.write_back(user_id, event, WriteBackAction.CREATE)

        assert report.succeeded == [first.id, third.id]
        assert list(report.failed) == [second.id]
        assert "backend unavailable" in report.failed[second.id]
        tokens_written = [call[1] for call in fake_provider.write_calls]
        assert tokens_written == ["token-one", "token-two", "token-three"]

        assert await store.external_events.find_for_local_event(first.id, event.id)
        assert await store.external_events.find_for_local_event(second.id, event.id) is None
        assert await store.external_events.find_for_local_event(third.id, event.id)

    async def test_create_stamps_local_link_once(
        self, service, three_accounts, make_event, store, user_id
    ):
        first, _, third = three_accounts
        event = make_event()

        await service.writeback.write_back(user_id, event, WriteBackAction.CREATE)

        local = await store.events.get(event.id)
        assert local.connected_account_id == first.id
        assert local.external_provider == Provider.GOOGLE
        mirror = await store.external_events.find_for_local_event(third.id, event.id)
        assert mirror.title == event.title

    async def test_update_targets_known_copies_only(
        self, service, fake_provider, three_accounts, make_event, store, user_id
    ):
        first, second, third = three_accounts
        event = make_event(external_event_id="remote-a", connected_account_id=first.id)
        await store.external_events.upsert(
            account_id=third.id,
            user_id=user_id,
            remote=RemoteEvent(
                external_id="remote-c", start_at=event.start_at, local_event_id=event.id
            ),
        )

        report = await service.writeback.write_back(user_id, event, "update")

        assert report.succeeded == [first.id, third.id]
        assert report.skipped == [second.id]
        assert [(c[0], c[3]) for c in fake_provider.write_calls] == [
            (WriteBackAction.UPDATE, "remote-a"),
            (WriteBackAction.UPDATE, "remote-c"),
        ]
        assert (await store.events.get(event.id)).last_synced_at is not None

    async def test_delete_marks_mirror_cancelled(
        self, service, fake_provider, make_account, make_event, store, user_id
    ):
        account = await make_account()
        event = make_event(external_event_id="remote-a", connected_account_id=account.id)
        await store.external_events.upsert(
            account_id=account.id,
            user_id=user_id,
            remote=RemoteEvent(
                external_id="remote-a", start_at=event.start_at, local_event_id=event.id
            ),
        )

        report = await service.writeback.write_back(user_id, event, WriteBackAction.DELETE)

        assert report.succeeded == [account.id]
        mirror = await store.external_events.get_by_external_id(account.id, "remote-a")
        assert mirror.status == EventStatus.CANCELLED

    async def test_read_only_and_inactive_accounts_are_skipped(
        self, service, fake_provider, make_account, make_event, store, user_id
    ):
        read_only = await make_account(scopes="calendar.read")
        inactive = await make_account()
        await store.accounts.deactivate(inactive.id)

        report = await service.writeback.write_back(user_id, make_event(), "create")

        assert report.succeeded == []
        assert report.skipped == [read_only.id]
        assert fake_provider.write_calls == []

    async def test_unconfigured_provider_is_skipped(
        self, service, fake_provider, make_account, make_event, user_id
    ):
        outlook = await make_account(provider=Provider.MICROSOFT)

        report = await service.writeback.write_back(user_id, make_event(), "create")

        assert report.skipped == [outlook.id]
        assert fake_provider.write_calls == []

    async def test_never_raises_when_accounts_cannot_be_listed(
        self, service, make_event, store, user_id, monkeypatch
    ):
        async def broken(_user_id):
            raise RuntimeError("database is down")

        monkeypatch.setattr(store.accounts, "list_for_user", broken)

        report = await service.writeback.write_back(user_id, make_event(), "create")

        assert report.succeeded == []
        assert report.failed == {}

    async def test_schedule_runs_detached(
        self, service, fake_provider, make_account, make_event, user_id
    ):
        account = await make_account()
        fake_provider.failing_tokens.add("access-stored")

        task = service.writeback.schedule(user_id, make_event(), WriteBackAction.CREATE)
        await service.writeback.drain()

        report = task.result()
        assert list(report.failed) == [account.id]


# ---------------------------------------------------------------------------
# Manual push
# ---------------------------------------------------------------------------


class TestManualPush:
    async def test_push_creates_then_updates(
        self, service, fake_provider, make_account, make_event, user_id
    ):
        account = await make_account()
        event = make_event()

        created_id = await service.write_back_event(user_id, event.id, account.id)
        updated_id = await service.write_back_event(user_id, event.id, account.id)

        assert created_id == updated_id
        assert [call[0] for call in fake_provider.write_calls] == [
            WriteBackAction.CREATE,
            WriteBackAction.UPDATE,
        ]

    async def test_push_surfaces_provider_errors(
        self, service, fake_provider, make_account, make_event, user_id
    ):
        account = await make_account()
        fake_provider.failing_tokens.add("access-stored")
        with pytest.raises(RemoteProviderError):
            await service.write_back_event(user_id, make_event().id, account.id)

    async def test_push_requires_write_scope(self, service, make_account, make_event, user_id):
        account = await make_account(scopes="calendar.read")
        with pytest.raises(ForbiddenError):
            await service.write_back_event(user_id, make_event().id, account.id)

    async def test_push_requires_household_membership(
        self, service, make_account, make_event, user_id
    ):
        account = await make_account()
        event = make_event(household_id=uuid.uuid4())
        with pytest.raises(ForbiddenError):
            await service.write_back_event(user_id, event.id, account.id)

    async def test_push_unknown_event(self, service, make_account, user_id):
        account = await make_account()
        with pytest.raises(NotFoundError):
            await service.write_back_event(user_id, uuid.uuid4(), account.id)

    async def test_push_to_disconnected_account(
        self, service, make_account, make_event, store, user_id
    ):
        account = await make_account()
        await store.accounts.deactivate(account.id)
        with pytest.raises(ValidationError):
            await service.write_back_event(user_id, make_event().id, account.id)
