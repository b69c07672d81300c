import asyncio
import logging
import os

from scratchlink_noble.bindings import ScratchLinkBindings
from scratchlink_noble.toio import UUID

logging.basicConfig(
    level=os.getenv("SL_LOG_LEVEL", "INFO").upper(),
    format="[%(asctime)s] [%(levelname)s] %(message)s",
)

# control light: id 0x03, duration 0 (forever), one entry, light id 1, r, g, b
LIGHT_ON = bytes([0x03, 0x00, 0x01, 0x01, 0x00, 0x80, 0xFF])


async def main():
    bindings = ScratchLinkBindings()
    connected = asyncio.Event()
    found = []
    failures = []

    def on_discover(peripheral_id, address, address_type, connectable, advertisement, rssi):
        print(f"Found {advertisement.get('localName')} ({peripheral_id}) rssi={rssi}")
        if not found:
            found.append(peripheral_id)
            bindings.stop_scanning()
            bindings.connect(peripheral_id)

    def on_connect(peripheral_id, error=None):
        if error is not None:
            logging.error(f"[CONNECT] could not connect to {peripheral_id}: {error}")
            failures.append(error)
        connected.set()

    def on_read(peripheral_id, service_uuid, characteristic_uuid, data, is_notification):
        if characteristic_uuid == UUID.BATTERY_CHAR:
            print(f"Battery {data[0] if data else '?'}%")

    bindings.on("discover", on_discover)
    bindings.on("connect", on_connect)
    bindings.on("read", on_read)
    bindings.on("error", lambda e: print(f"Error: {e}"))

    bindings.init()
    await bindings.start_scanning([UUID.SERVICE])
    await connected.wait()
    if failures:
        await bindings.close()
        return

    peripheral_id = found[0]
    await bindings.write(peripheral_id, UUID.SERVICE, UUID.LIGHT_CHAR, LIGHT_ON, True)
    await bindings.notify(peripheral_id, UUID.SERVICE, UUID.BATTERY_CHAR, True)
    await bindings.read(peripheral_id, UUID.SERVICE, UUID.BATTERY_CHAR)
    try:
        await asyncio.sleep(30)
    finally:
        await bindings.disconnect(peripheral_id)
        await bindings.close()


if __name__ == "__main__":
    asyncio.run(main())
