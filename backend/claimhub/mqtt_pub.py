import os, json, logging
from typing import Optional
from asyncio_mqtt import Client, MqttError

logger = logging.getLogger(__name__)

MQTT_ENABLED = os.getenv("MQTT__ENABLED", "0") == "1"
MQTT_HOST = os.getenv("MQTT__HOST", "emqx")
MQTT_PORT = int(os.getenv("MQTT__PORT", "1883"))

def status_topic(device_id: str) -> str:
    return f"devices/{device_id}/status"

async def publish_status(device_id: str, claimed_by: Optional[str], enabled: bool = MQTT_ENABLED) -> bool:
    """Tell the device who owns it now (retained, so it also reaches a device
    that connects later). Returns False when nothing was delivered."""
    if not enabled:
        return False
    payload = json.dumps({"claimedBy": claimed_by})
    try:
        async with Client(MQTT_HOST, MQTT_PORT) as client:
            await client.publish(status_topic(device_id), payload, qos=1, retain=True)
    except MqttError as exc:
        logger.warning("status publish for %s failed: %s", device_id, exc)
        return False
    return True
