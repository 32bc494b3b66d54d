from __future__ import annotations

from typing import Any, List, Optional

from .claims import ClaimTransaction, ReleaseTransaction
from .devices import DeviceListAggregator, DeviceListWatch, LiveDeviceList
from .events import Subscription
from .identity import IdentityProvider, IdentitySession, User
from .schemas import DeviceInfo
from .validator import DeviceValidator


class ClaimHub:
    """In-process client: one signed-in session plus the device operations
    that act on its behalf."""

    def __init__(self, provider: IdentityProvider, store):
        self.store = store
        self.validator = DeviceValidator(store)
        self.claims = ClaimTransaction(store, self.validator)
        self.releases = ReleaseTransaction(store)
        self.session = IdentitySession(provider, store, self.releases)
        self.devices = DeviceListAggregator(store)
        self.live = LiveDeviceList(self.session, store, self.devices)
        self.session.start()

    @property
    def current_user(self) -> Optional[User]:
        return self.session.current_user

    def on_auth_state_changed(self) -> Subscription[Optional[User]]:
        return self.session.on_auth_state_changed()

    def on_first_login(self) -> Subscription[User]:
        return self.session.on_first_login()

    async def login(self, credentials: Any) -> User:
        return await self.session.login(credentials)

    async def logout(self) -> None:
        await self.session.logout()

    async def create_account(self, email: str, password: str) -> User:
        return await self.session.create_account(email, password)

    async def delete_account(self) -> None:
        await self.session.delete_account()

    async def create_custom_token(self) -> str:
        return await self.session.create_custom_token()

    async def get_devices(self) -> List[DeviceInfo]:
        return await self.devices.list(self.session.user_id)

    async def claim_device(self, device_id: str) -> None:
        await self.claims.claim(self.session.user_id, device_id)

    async def release_device(self, device_id: str) -> None:
        await self.releases.release(self.session.user_id, device_id)

    async def has_device_permission(self, device_id: str) -> bool:
        return await self.devices.has_permission(device_id, self.session.user_id)

    def on_user_devices_change(self) -> DeviceListWatch:
        return self.live.watch()

    def close(self) -> None:
        self.session.close()
