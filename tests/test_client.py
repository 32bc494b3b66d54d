import pytest

from claimhub.client import ClaimHub
from claimhub.errors import AlreadyClaimed, MalformedDeviceId, NotAuthenticated
from claimhub.store import DataStore, OwnerRules

from conftest import DEVICE_1, DEVICE_2, add_device_info


@pytest.mark.anyio
async def test_two_users_contend_for_one_device(session_factory, provider):
    store = DataStore(session_factory, rules=OwnerRules())
    await add_device_info(store, DEVICE_1)
    await add_device_info(store, DEVICE_2, model="halo")

    alice = ClaimHub(provider, store)
    bob = ClaimHub(provider, store)
    try:
        with pytest.raises(NotAuthenticated):
            await alice.claim_device(DEVICE_1)

        await alice.create_account("alice@example.com", "secret-1")
        await bob.create_account("bob@example.com", "secret-1")

        watch = alice.on_user_devices_change()
        assert await watch.next(timeout=2) == []

        await alice.claim_device(DEVICE_1)
        listed = await watch.next(timeout=2)
        assert [d.device_id for d in listed] == [DEVICE_1]

        with pytest.raises(AlreadyClaimed):
            await bob.claim_device(DEVICE_1)
        with pytest.raises(MalformedDeviceId):
            await bob.claim_device("not-a-device")
        assert not await bob.has_device_permission(DEVICE_1)
        assert await alice.has_device_permission(DEVICE_1)

        # releasing a device someone else owns leaves the owner's claim alone
        await bob.release_device(DEVICE_1)
        assert [d.device_id for d in await alice.get_devices()] == [DEVICE_1]

        await alice.claim_device(DEVICE_2)
        listed = await watch.next(timeout=2)
        assert [d.device_id for d in listed] == [DEVICE_1, DEVICE_2]
        assert listed[1].model_dump(by_alias=True) == {"deviceId": DEVICE_2, "model": "halo"}

        await alice.release_device(DEVICE_1)
        listed = await watch.next(timeout=2)
        assert [d.device_id for d in listed] == [DEVICE_2]

        await bob.claim_device(DEVICE_1)
        assert [d.device_id for d in await bob.get_devices()] == [DEVICE_1]

        await watch.aclose()
    finally:
        alice.close()
        bob.close()
    assert store.listener_count() == 0


@pytest.mark.anyio
async def test_switching_users_follows_the_new_user(store, provider):
    await add_device_info(store, DEVICE_1)
    await add_device_info(store, DEVICE_2)
    hub = ClaimHub(provider, store)

    await hub.create_account("carol@example.com", "secret-1")
    await hub.claim_device(DEVICE_1)
    await hub.logout()
    await hub.create_account("dave@example.com", "secret-1")
    await hub.claim_device(DEVICE_2)

    async with hub.on_user_devices_change() as watch:
        assert [d.device_id for d in await watch.next(timeout=2)] == [DEVICE_2]
        await hub.logout()
        await hub.login({"email": "carol@example.com", "password": "secret-1"})
        assert [d.device_id for d in await watch.next(timeout=2)] == [DEVICE_1]
        assert store.listener_count() == 1

    hub.close()
