import asyncio

import pytest

from claimhub.claims import ClaimTransaction, ReleaseTransaction
from claimhub.devices import DeviceListAggregator, LiveDeviceList
from claimhub.errors import NotAuthenticated, PermissionDenied
from claimhub.identity import IdentitySession
from claimhub.paths import user_devices_path
from claimhub.store import PRIVILEGED, AccessRules, DataStore, OwnerRules

from conftest import DEVICE_1, DEVICE_2, DEVICE_3, USER_A, USER_B, add_device_info


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def ids(devices):
    return [d.device_id for d in devices]


@pytest.mark.anyio
async def test_list_orders_by_claim_time(store):
    claims = ClaimTransaction(store)
    for device_id in (DEVICE_2, DEVICE_1, DEVICE_3):
        await add_device_info(store, device_id)
        await claims.claim(USER_A, device_id)

    devices = await DeviceListAggregator(store).list(USER_A)
    assert ids(devices) == [DEVICE_2, DEVICE_1, DEVICE_3]
    assert devices[0].model_dump(by_alias=True) == {"deviceId": DEVICE_2, "model": "crown"}


@pytest.mark.anyio
async def test_list_uses_recorded_claim_time_not_key_order(store):
    await add_device_info(store, DEVICE_1)
    await add_device_info(store, DEVICE_2)
    await store.set(
        f"users/{USER_A}/devices",
        {DEVICE_1: {"claimedOn": 200}, DEVICE_2: {"claimedOn": 100}},
    )
    assert ids(await DeviceListAggregator(store).list(USER_A)) == [DEVICE_2, DEVICE_1]


@pytest.mark.anyio
async def test_list_drops_claims_without_device_info(store):
    await add_device_info(store, DEVICE_1)
    claims = ClaimTransaction(store)
    await claims.claim(USER_A, DEVICE_1)
    await claims.claim(USER_A, DEVICE_2)

    assert ids(await DeviceListAggregator(store).list(USER_A)) == [DEVICE_1]


@pytest.mark.anyio
async def test_list_empty_and_unauthenticated(store):
    aggregator = DeviceListAggregator(store)
    assert await aggregator.list(USER_A) == []
    with pytest.raises(NotAuthenticated):
        await aggregator.list(None)


@pytest.mark.anyio
async def test_has_permission_follows_read_rules(session_factory):
    store = DataStore(session_factory, rules=OwnerRules())
    await add_device_info(store, DEVICE_1)
    await ClaimTransaction(store).claim(USER_A, DEVICE_1)
    aggregator = DeviceListAggregator(store)

    assert await aggregator.has_permission(DEVICE_1, USER_A)
    assert not await aggregator.has_permission(DEVICE_1, USER_B)
    assert not await aggregator.has_permission(DEVICE_1, None)
    # nobody owns DEVICE_2, so its (empty) info is readable
    assert await aggregator.has_permission(DEVICE_2, USER_B)


@pytest.mark.anyio
async def test_follow_emits_on_every_change(store):
    live = LiveDeviceList(None, store)
    await add_device_info(store, DEVICE_1)
    await add_device_info(store, DEVICE_2)

    async with live.follow(USER_A) as updates:
        assert await updates.next(timeout=2) == []
        await ClaimTransaction(store).claim(USER_A, DEVICE_1)
        assert ids(await updates.next(timeout=2)) == [DEVICE_1]
        await ClaimTransaction(store).claim(USER_A, DEVICE_2)
        assert ids(await updates.next(timeout=2)) == [DEVICE_1, DEVICE_2]
        await ReleaseTransaction(store).release(USER_A, DEVICE_1)
        assert ids(await updates.next(timeout=2)) == [DEVICE_2]
        assert store.listener_count() == 1

    await eventually(lambda: store.listener_count() == 0)


@pytest.mark.anyio
async def test_watch_follows_auth_state(store, provider):
    session = IdentitySession(provider, store)
    session.start()
    live = LiveDeviceList(session, store)
    await add_device_info(store, DEVICE_1)
    await add_device_info(store, DEVICE_2)

    watch = live.watch()
    # signed out: nothing to show, nothing subscribed
    await asyncio.sleep(0.05)
    assert watch.pending == 0
    assert store.listener_count() == 0

    alice = await session.create_account("alice@example.com", "secret-1")
    assert await watch.next(timeout=2) == []
    await ClaimTransaction(store).claim(alice.uid, DEVICE_1)
    assert ids(await watch.next(timeout=2)) == [DEVICE_1]

    bob = await session.create_account("bob@example.com", "secret-2")
    assert await watch.next(timeout=2) == []
    assert store.listener_count() == 1
    assert store.listener_count(f"users/{bob.uid}/devices") == 1

    # changes to the previous user no longer reach the stream
    await ClaimTransaction(store).claim(alice.uid, DEVICE_2)
    await ClaimTransaction(store).claim(bob.uid, "f" * 32)
    assert await watch.next(timeout=2) == []  # bob's device has no info

    await session.logout()
    await eventually(lambda: store.listener_count() == 0)
    await asyncio.sleep(0.05)
    assert watch.pending == 0

    await watch.aclose()
    assert watch.closed
    assert store.listener_count() == 0


@pytest.mark.anyio
async def test_watch_close_detaches_store_listener(store, provider):
    session = IdentitySession(provider, store)
    watch = LiveDeviceList(session, store).watch()
    await session.create_account("carol@example.com", "secret-3")
    assert await watch.next(timeout=2) == []
    assert store.listener_count() == 1

    await watch.aclose()
    assert store.listener_count() == 0
    with pytest.raises(StopAsyncIteration):
        await watch.__anext__()


class DenyAll(AccessRules):
    async def can_read(self, store, path, uid):
        return False


@pytest.mark.anyio
async def test_follow_surfaces_store_failures(session_factory):
    store = DataStore(session_factory, rules=DenyAll())
    updates = LiveDeviceList(None, store).follow(USER_A)
    with pytest.raises(PermissionDenied):
        await updates.next(timeout=2)
    await updates.aclose()


class SlowListRead(DataStore):
    """Holds back the next read of ``slow_path`` once it has been taken."""

    slow_path = None

    async def get(self, path, auth=PRIVILEGED):
        snapshot = await super().get(path, auth)
        if path == self.slow_path:
            self.slow_path = None
            await asyncio.sleep(0.2)
        return snapshot


@pytest.mark.anyio
async def test_concurrent_claims_end_on_the_latest_list(session_factory):
    store = SlowListRead(session_factory)
    await add_device_info(store, DEVICE_1)
    await add_device_info(store, DEVICE_2)
    claims = ClaimTransaction(store)

    async with LiveDeviceList(None, store).follow(USER_A) as updates:
        assert await updates.next(timeout=2) == []
        # the first change notification is read before the second claim lands
        # but delivered well after it
        store.slow_path = user_devices_path(USER_A)
        await asyncio.gather(claims.claim(USER_A, DEVICE_1), claims.claim(USER_A, DEVICE_2))

        first = await updates.next(timeout=2)
        last = await updates.next(timeout=2)
        assert len(first) == 1
        assert sorted(ids(last)) == sorted([DEVICE_1, DEVICE_2])
        await asyncio.sleep(0.1)
        assert updates.pending == 0


class DenyUsers(AccessRules):
    def __init__(self):
        self.denied = set()

    async def can_read(self, store, path, uid):
        return uid not in self.denied


@pytest.mark.anyio
async def test_failed_watch_leaves_no_listener_behind(session_factory, provider):
    rules = DenyUsers()
    store = DataStore(session_factory, rules=rules)
    session = IdentitySession(provider, store)
    dana = await provider.create_user("dana@example.com", "secret-1")
    rules.denied.add(dana.uid)
    watch = LiveDeviceList(session, store).watch()

    await session.login({"email": "dana@example.com", "password": "secret-1"})
    with pytest.raises(PermissionDenied):
        async for _ in watch:
            pass

    # the stream is over, later sign-ins must not open listeners for it
    await session.create_account("eli@example.com", "secret-1")
    await asyncio.sleep(0.05)
    assert store.listener_count() == 0
    assert watch.closed
