"""Claiming and releasing devices.

A claim is recorded twice: the device points at its owner
(``devices/{id}/status/claimedBy``) and the owner lists the device with its
claim time (``users/{uid}/devices/{id}``). Both records are always written and
removed in one multi-location store update.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .errors import AlreadyClaimed, NotAuthenticated, PreconditionFailed
from .paths import device_claimed_by_path, user_device_path, user_devices_path
from .store import SERVER_TIMESTAMP
from .validator import DeviceValidator, check_format

logger = logging.getLogger(__name__)


class ClaimTransaction:
    def __init__(self, store, validator: Optional[DeviceValidator] = None):
        self._store = store
        self._validator = validator or DeviceValidator(store)

    async def claim(self, user_id: Optional[str], device_id: str) -> None:
        if not user_id:
            raise NotAuthenticated()
        await self._validator.validate(device_id)
        pointer = device_claimed_by_path(device_id)
        try:
            await self._store.update(
                {
                    pointer: user_id,
                    user_device_path(user_id, device_id): {"claimedOn": SERVER_TIMESTAMP},
                },
                expect={pointer: None},
            )
        except PreconditionFailed as exc:
            # another claimant won the race after validation
            raise AlreadyClaimed(device_id) from exc
        logger.info("device %s claimed by %s", device_id, user_id)


class ReleaseTransaction:
    def __init__(self, store):
        self._store = store

    async def release(self, user_id: Optional[str], device_id: str) -> None:
        if not user_id:
            raise NotAuthenticated()
        check_format(device_id)
        pointer = device_claimed_by_path(device_id)
        owner = (await self._store.get(pointer)).value
        changes = {user_device_path(user_id, device_id): None}
        expect = None
        if owner == user_id:
            changes[pointer] = None
            expect = {pointer: user_id}
        elif owner is not None:
            logger.warning("device %s is owned by %s, only removing the claim record of %s", device_id, owner, user_id)
        await self._store.update(changes, expect=expect)
        logger.info("device %s released by %s", device_id, user_id)


async def release_all(store, release: ReleaseTransaction, user_id: str) -> None:
    """Release every device claimed by ``user_id`` concurrently.

    All releases run to completion; the first failure (in claim-record order)
    is then raised.
    """
    snapshot = await store.get(user_devices_path(user_id))
    device_ids = list(snapshot.value or {})
    if not device_ids:
        return
    results = await asyncio.gather(
        *(release.release(user_id, device_id) for device_id in device_ids),
        return_exceptions=True,
    )
    for device_id, result in zip(device_ids, results):
        if isinstance(result, BaseException):
            logger.warning("releasing %s for %s failed: %s", device_id, user_id, result)
            raise result
    logger.info("released %d devices of %s", len(device_ids), user_id)
