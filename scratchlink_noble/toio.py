import base64
import re
from typing import Any, Dict, List

BLUETOOTH_BASE_UUID = "0000{:04x}-0000-1000-8000-00805f9b34fb"

_UNDASHED = re.compile(r"^([0-9a-fA-F]{8})([0-9a-fA-F]{4})([0-9a-fA-F]{4})([0-9a-fA-F]{4})([0-9a-fA-F]{12})$")
_SHORT_HEX = re.compile(r"^(0x)?([0-9a-fA-F]{4})$")


class UUID:
    SERVICE = "10b201005b3b45719508cf3efcd7bbae"

    ID_CHAR = "10b201015b3b45719508cf3efcd7bbae"
    MOTOR_CHAR = "10b201025b3b45719508cf3efcd7bbae"
    LIGHT_CHAR = "10b201035b3b45719508cf3efcd7bbae"
    SOUND_CHAR = "10b201045b3b45719508cf3efcd7bbae"
    SENSOR_CHAR = "10b201065b3b45719508cf3efcd7bbae"
    BUTTON_CHAR = "10b201075b3b45719508cf3efcd7bbae"
    BATTERY_CHAR = "10b201085b3b45719508cf3efcd7bbae"
    CONFIGURATION_CHAR = "10b201ff5b3b45719508cf3efcd7bbae"


_NOTIFYING = ["writeWithoutResponse", "write", "notify", "read"]
_WRITE_ONLY = ["writeWithoutResponse", "write"]

TOIO_PERIPHERAL: Dict[str, Any] = {
    "services": [
        {
            "uuid": UUID.SERVICE,
            "characteristics": [
                {"type": "battery", "uuid": UUID.BATTERY_CHAR, "properties": _NOTIFYING},
                {"type": "button", "uuid": UUID.BUTTON_CHAR, "properties": _NOTIFYING},
                {"type": "configuration", "uuid": UUID.CONFIGURATION_CHAR, "properties": _NOTIFYING},
                {"type": "id", "uuid": UUID.ID_CHAR, "properties": _NOTIFYING},
                {"type": "light", "uuid": UUID.LIGHT_CHAR, "properties": _WRITE_ONLY},
                {"type": "motor", "uuid": UUID.MOTOR_CHAR, "properties": _NOTIFYING},
                {"type": "sensor", "uuid": UUID.SENSOR_CHAR, "properties": _NOTIFYING},
                {"type": "sound", "uuid": UUID.SOUND_CHAR, "properties": _WRITE_ONLY},
            ],
        },
    ],
}


def service_uuids() -> List[str]:
    return [s["uuid"] for s in TOIO_PERIPHERAL["services"]]


def service_characteristics() -> Dict[str, List[Dict[str, Any]]]:
    """Map each service uuid to a fresh copy of its characteristic list."""
    return {
        s["uuid"]: [dict(c, properties=list(c["properties"])) for c in s["characteristics"]]
        for s in TOIO_PERIPHERAL["services"]
    }


def add_dashes(uuid):
    """Turn a 32 digit hex uuid into the dashed form; anything else is returned untouched."""
    if not isinstance(uuid, str):
        return uuid
    m = _UNDASHED.match(uuid)
    if not m:
        return uuid
    return "-".join(m.groups())


def strip_dashes(uuid):
    if isinstance(uuid, str):
        return uuid.replace("-", "")
    return uuid


def expand_short_uuid(uuid):
    """Expand 16 bit ids ("180f", "0x180f" or 0x180f) onto the Bluetooth base uuid."""
    if isinstance(uuid, bool):
        return uuid
    if isinstance(uuid, int):
        return BLUETOOTH_BASE_UUID.format(uuid) if 0 <= uuid <= 0xFFFF else uuid
    if isinstance(uuid, str):
        m = _SHORT_HEX.match(uuid)
        if m:
            return BLUETOOTH_BASE_UUID.format(int(m.group(2), 16))
    return uuid


def b64(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


def b64_to_bytes(s: str) -> bytes:
    return base64.b64decode(s) if s else b""
