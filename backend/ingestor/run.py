import os, json, asyncio, logging
from asyncio_mqtt import Client, MqttError
from claimhub.db import SessionLocal, create_all
from claimhub.paths import device_info_path
from claimhub.store import DataStore
from claimhub.validator import is_well_formed

logger = logging.getLogger(__name__)

MQTT_HOST = os.getenv("MQTT__HOST", "emqx")
MQTT_PORT = int(os.getenv("MQTT__PORT", "1883"))
TOPIC = os.getenv("MQTT__TOPIC", "devices/+/info")

async def handle_message(store: DataStore, topic: str, payload: bytes) -> bool:
    """Store the info record a device announces on devices/{deviceId}/info.

    Returns False for messages that were skipped.
    """
    parts = topic.split("/")  # devices {deviceId} info
    if len(parts) != 3 or parts[0] != "devices" or parts[2] != "info":
        logger.warning("skipping message on unexpected topic %s", topic)
        return False
    device_id = parts[1]
    if not is_well_formed(device_id):
        logger.warning("skipping info for malformed device id %r", device_id)
        return False
    try:
        body = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("skipping undecodable info payload from %s", device_id)
        return False
    if not isinstance(body, dict):
        logger.warning("skipping non-object info payload from %s", device_id)
        return False
    body["deviceId"] = device_id
    try:
        await store.set(device_info_path(device_id), body)
    except ValueError as exc:
        logger.warning("skipping info from %s: %s", device_id, exc)
        return False
    return True

async def main():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    await create_all()
    store = DataStore(SessionLocal)
    reconnect_delay = 3
    while True:
        try:
            async with Client(MQTT_HOST, MQTT_PORT) as client:
                async with client.messages() as messages:
                    await client.subscribe(TOPIC, qos=1)
                    async for m in messages:
                        await handle_message(store, str(m.topic), m.payload)
        except MqttError as exc:
            logger.warning("mqtt connection lost (%s), retrying in %ss", exc, reconnect_delay)
            await asyncio.sleep(reconnect_delay)

if __name__ == "__main__":
    asyncio.run(main())
