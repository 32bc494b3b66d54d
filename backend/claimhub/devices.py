from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Mapping, Optional

from .errors import NotAuthenticated, PermissionDenied
from .events import Subscription
from .paths import device_info_path, user_devices_path
from .schemas import DeviceInfo

logger = logging.getLogger(__name__)


def _claimed_on(record: Any) -> float:
    if isinstance(record, Mapping):
        value = record.get("claimedOn")
        if isinstance(value, (int, float)):
            return value
    return 0


class DeviceListAggregator:
    def __init__(self, store):
        self._store = store

    async def list(self, user_id: Optional[str]) -> List[DeviceInfo]:
        """Devices claimed by ``user_id``, earliest claim first."""
        if not user_id:
            raise NotAuthenticated()
        snapshot = await self._store.get(user_devices_path(user_id), auth=user_id)
        return await self.resolve(user_id, snapshot.value)

    async def resolve(self, user_id: str, claims: Optional[Mapping[str, Any]]) -> List[DeviceInfo]:
        """Turn raw claim records into the ordered DeviceInfo list.

        Claims whose device has no info record are dropped.
        """
        claims = claims or {}
        device_ids = list(claims)
        snapshots = await asyncio.gather(
            *(self._store.get(device_info_path(device_id), auth=user_id) for device_id in device_ids)
        )
        found = []
        for device_id, snapshot in zip(device_ids, snapshots):
            if not isinstance(snapshot.value, Mapping):
                logger.debug("dropping claim of %s by %s: no device info", device_id, user_id)
                continue
            found.append((device_id, snapshot.value))
        found.sort(key=lambda pair: _claimed_on(claims[pair[0]]))
        return [DeviceInfo.model_validate({**info, "deviceId": device_id}) for device_id, info in found]

    async def has_permission(self, device_id: str, user_id: Optional[str] = None) -> bool:
        try:
            await self._store.get(device_info_path(device_id), auth=user_id)
        except PermissionDenied:
            return False
        return True


class DeviceListWatch(Subscription[List[DeviceInfo]]):
    """Subscription fed by a background task; closing it cancels the task."""

    def __init__(self):
        super().__init__()
        self._task: Optional[asyncio.Task] = None

    def start(self, coro) -> "DeviceListWatch":
        self._task = asyncio.create_task(coro)
        self._task.add_done_callback(self._finished)
        return self

    def _finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.fail(exc)
        else:
            self.complete()

    def _detach(self) -> None:
        # ended, failed or closed: the producer has nobody left to feed
        super()._detach()
        if self._task is not None:
            self._task.cancel()

    async def aclose(self) -> None:
        task = self._task
        running = task is not None and not task.done()
        self.close()
        if running:
            try:
                await task
            except asyncio.CancelledError:
                pass


class LiveDeviceList:
    def __init__(self, session, store, aggregator: Optional[DeviceListAggregator] = None):
        self._session = session
        self._store = store
        self._aggregator = aggregator or DeviceListAggregator(store)

    def watch(self) -> DeviceListWatch:
        """Device list of whoever is signed in, re-emitted on every change.

        Nothing is emitted while signed out. Switching users closes the
        previous user's store listener before the next one is opened.
        """
        out = DeviceListWatch()
        return out.start(self._run(out))

    def follow(self, user_id: str) -> DeviceListWatch:
        """Device list of one user, re-emitted on every change."""
        out = DeviceListWatch()
        return out.start(self._follow(user_id, out))

    async def _run(self, out: DeviceListWatch) -> None:
        inner: Optional[asyncio.Task] = None
        current: Optional[str] = None
        try:
            async with self._session.on_auth_state_changed() as auth_states:
                async for user in auth_states:
                    uid = user.uid if user is not None else None
                    if uid == current and inner is not None and not inner.done():
                        continue
                    await _cancel(inner)
                    inner, current = None, uid
                    if uid is not None:
                        inner = asyncio.create_task(self._follow(uid, out))
                        inner.add_done_callback(lambda t: _forward_failure(t, out))
        finally:
            await _cancel(inner)

    async def _follow(self, user_id: str, out: DeviceListWatch) -> None:
        async with await self._store.listen(user_devices_path(user_id), auth=user_id) as snapshots:
            async for snapshot in snapshots:
                out.push(await self._aggregator.resolve(user_id, snapshot.value))


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def _forward_failure(task: asyncio.Task, out: DeviceListWatch) -> None:
    if not task.cancelled() and task.exception() is not None:
        out.fail(task.exception())
