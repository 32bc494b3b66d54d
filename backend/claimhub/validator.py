import re

from .errors import AlreadyClaimed, MalformedDeviceId
from .paths import device_claimed_by_path

# hex string of 32 characters
DEVICE_ID_PATTERN = re.compile(r"[0-9A-Fa-f]{32}")


def is_well_formed(device_id) -> bool:
    return isinstance(device_id, str) and len(device_id) == 32 and DEVICE_ID_PATTERN.fullmatch(device_id) is not None


def check_format(device_id) -> str:
    if not is_well_formed(device_id):
        raise MalformedDeviceId(device_id)
    return device_id


class DeviceValidator:
    """Format check plus a best-effort "already claimed" lookup.

    The lookup is not a lock: the claim write re-checks ownership atomically.
    """

    def __init__(self, store):
        self._store = store

    async def validate(self, device_id) -> None:
        check_format(device_id)
        snapshot = await self._store.get(device_claimed_by_path(device_id))
        if snapshot.exists():
            raise AlreadyClaimed(device_id)
