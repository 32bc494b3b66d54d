"""Store locations used by the device-claim protocol."""


def device_claimed_by_path(device_id: str) -> str:
    return f"devices/{device_id}/status/claimedBy"


def device_info_path(device_id: str) -> str:
    return f"devices/{device_id}/info"


def user_devices_path(user_id: str) -> str:
    return f"users/{user_id}/devices"


def user_device_path(user_id: str, device_id: str) -> str:
    return f"users/{user_id}/devices/{device_id}"
