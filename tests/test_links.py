"""Tests for manual linking between household and external events."""

from __future__ import annotations

import uuid

import pytest

from orbyt_sync.errors import ForbiddenError, NotFoundError
from orbyt_sync.models import Provider, RemoteEvent

pytestmark = pytest.mark.unit


@pytest.fixture
async def mirrored(store, make_account, make_event, user_id):
    account = await make_account()
    event = make_event()
    external = await store.external_events.upsert(
        account_id=account.id,
        user_id=user_id,
        remote=RemoteEvent(external_id="remote-1", title="Soccer", start_at=event.start_at),
    )
    return account, event, external


async def test_link_sets_both_sides(service, store, mirrored, user_id):
    account, event, external = mirrored

    await service.link_event(user_id, event.id, external.id)

    local = await store.events.get(event.id)
    assert local.external_event_id == "remote-1"
    assert local.external_provider == Provider.GOOGLE
    assert local.connected_account_id == account.id
    assert (await store.external_events.get(external.id)).local_event_id == event.id


async def test_unlink_clears_both_sides(service, store, mirrored, user_id):
    _, event, external = mirrored
    await service.link_event(user_id, event.id, external.id)

    assert await service.unlink_event(user_id, event.id) == 1

    local = await store.events.get(event.id)
    assert local.external_event_id is None
    assert local.connected_account_id is None
    assert (await store.external_events.get(external.id)).local_event_id is None


async def test_unlink_after_drift(service, store, mirrored, make_account, user_id):
    _, event, external = mirrored
    await service.link_event(user_id, event.id, external.id)
    # A second mirror points at the event while the event's own columns moved on
    other_account = await make_account()
    stray = await store.external_events.upsert(
        account_id=other_account.id,
        user_id=user_id,
        remote=RemoteEvent(
            external_id="remote-9", start_at=event.start_at, local_event_id=event.id
        ),
    )
    await store.events.clear_external_link(event.id)

    assert await service.unlink_event(user_id, event.id) == 2

    assert (await store.external_events.get(external.id)).local_event_id is None
    assert (await store.external_events.get(stray.id)).local_event_id is None


async def test_relink_to_another_mirror_clears_the_old_back_pointer(
    service, store, mirrored, user_id
):
    account, event, first = mirrored
    await service.link_event(user_id, event.id, first.id)
    second = await store.external_events.upsert(
        account_id=account.id,
        user_id=user_id,
        remote=RemoteEvent(external_id="remote-2", title="Soccer", start_at=event.start_at),
    )

    await service.link_event(user_id, event.id, second.id)

    assert (await store.external_events.get(first.id)).local_event_id is None
    assert (await store.external_events.get(second.id)).local_event_id == event.id
    assert (await store.events.get(event.id)).external_event_id == "remote-2"


async def test_relink_mirror_to_another_event_clears_the_old_event(
    service, store, mirrored, make_event, user_id
):
    _, first_event, external = mirrored
    await service.link_event(user_id, first_event.id, external.id)
    second_event = make_event(title="Soccer (moved)")

    await service.link_event(user_id, second_event.id, external.id)

    previous = await store.events.get(first_event.id)
    assert previous.external_event_id is None
    assert previous.connected_account_id is None
    assert (await store.external_events.get(external.id)).local_event_id == second_event.id


async def test_relink_keeps_links_on_other_accounts(
    service, store, mirrored, make_account, user_id
):
    account, event, first = mirrored
    await service.link_event(user_id, event.id, first.id)
    other_account = await make_account(provider=Provider.MICROSOFT)
    other = await store.external_events.upsert(
        account_id=other_account.id,
        user_id=user_id,
        remote=RemoteEvent(external_id="AAMk-1", start_at=event.start_at),
    )
    second = await store.external_events.upsert(
        account_id=account.id,
        user_id=user_id,
        remote=RemoteEvent(external_id="remote-2", start_at=event.start_at),
    )
    await store.external_events.set_local_link(other.id, event.id)

    await service.link_event(user_id, event.id, second.id)

    assert (await store.external_events.get(other.id)).local_event_id == event.id


async def test_link_unknown_external_event(service, mirrored, user_id):
    _, event, _ = mirrored
    with pytest.raises(NotFoundError):
        await service.link_event(user_id, event.id, uuid.uuid4())


async def test_link_unknown_event(service, mirrored, user_id):
    _, _, external = mirrored
    with pytest.raises(NotFoundError):
        await service.link_event(user_id, uuid.uuid4(), external.id)


async def test_link_requires_household_membership(service, store, mirrored):
    _, event, external = mirrored
    stranger = uuid.uuid4()
    with pytest.raises(ForbiddenError):
        await service.link_event(stranger, event.id, external.id)
    assert (await store.external_events.get(external.id)).local_event_id is None


async def test_link_rejects_another_users_external_event(
    service, store, make_account, make_event, user_id, household_id
):
    member = uuid.uuid4()
    store.add_membership(member, household_id)
    theirs = await make_account(owner=member)
    external = await store.external_events.upsert(
        account_id=theirs.id,
        user_id=member,
        remote=RemoteEvent(external_id="private", start_at=make_event().start_at),
    )
    with pytest.raises(ForbiddenError):
        await service.link_event(user_id, make_event().id, external.id)
