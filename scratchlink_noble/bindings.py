import asyncio
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pyee import EventEmitter

from .ble import BLESession, DisconnectErrorEvent, RequestErrorEvent
from .errors import DisconnectError, ProtocolViolation, RequestError
from .link_socket import SCRATCH_LINK_URL, ScratchLinkWebSocket, link_url
from .toio import (
    UUID,
    TOIO_PERIPHERAL,
    add_dashes,
    b64,
    b64_to_bytes,
    expand_short_uuid,
    service_characteristics,
    strip_dashes,
)


@dataclass
class PeripheralRecord:
    uuid: str
    address: str
    local_name: Optional[str] = None
    rssi: Optional[int] = None
    advertisement: Dict[str, Any] = field(default_factory=dict)
    services: List[Dict[str, Any]] = field(default_factory=list)
    service_chars: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    connecting: bool = False
    requested_connect: bool = False
    session_key: Optional[int] = None

    @classmethod
    def from_discovery(cls, peripheral_id: str, name: Optional[str] = None, rssi: Optional[int] = None):
        record = cls(uuid=peripheral_id, address=peripheral_id)
        record.refresh(name, rssi)
        return record

    def refresh(self, name, rssi):
        self.local_name = name
        self.rssi = rssi
        self.advertisement = {"localName": name}
        self.services = [dict(s, characteristics=list(s["characteristics"])) for s in TOIO_PERIPHERAL["services"]]
        self.service_chars = service_characteristics()


def _normalize_service(service):
    normalized = add_dashes(expand_short_uuid(service))
    if isinstance(normalized, str):
        return normalized.lower()
    logging.warning(f"[SCAN] cannot normalize service filter {service!r}, passing it through")
    return normalized


def build_scan_request(options=None) -> Dict[str, Any]:
    """Turn noble style scan options into a Scratch Link ``discover`` request.

    Accepts a list of service uuids, a single uuid, or a dict with
    ``services``, ``name`` and ``namePrefix``. Without any filter the toio
    service is scanned for.
    """
    if options is None:
        options = {}
    elif isinstance(options, (list, tuple)):
        options = {"services": list(options)}
    elif not isinstance(options, dict):
        options = {"services": [options]}

    services = options.get("services")
    if services is None:
        services = []
    elif not isinstance(services, (list, tuple)):
        services = [services]

    filters = [{"services": [_normalize_service(s)]} for s in services]
    if options.get("name"):
        filters.append({"name": options["name"]})
    if options.get("namePrefix"):
        filters.append({"namePrefix": options["namePrefix"]})
    if not filters:
        filters.append({"services": [add_dashes(UUID.SERVICE)]})
    return {"filters": filters}


def _uuid_key(uuid) -> str:
    return str(strip_dashes(uuid)).lower()


class ScratchLinkBindings(EventEmitter):
    """noble compatible bindings for toio Core Cubes reached through Scratch Link.

    Every scan and every connected peripheral gets its own BLESession, keyed by
    an integer owner key. Results come back as the events noble expects:
    ``stateChange``, ``scanStart``, ``scanStop``, ``discover``, ``connect``,
    ``disconnect``, ``servicesDiscover``, ``includedServicesDiscover``,
    ``characteristicsDiscover``, ``read``, ``write``, ``notify``,
    ``rssiUpdate`` and ``error``. Remote failures never raise out of these
    methods; they are logged and emitted as ``error``.
    """

    def __init__(self, url: Optional[str] = None, socket_factory: Optional[Callable[[str, str], Any]] = None):
        super().__init__()
        self._base_url = url or SCRATCH_LINK_URL
        link_url("BLE", self._base_url)
        self._socket_factory = socket_factory or ScratchLinkWebSocket
        self._scan_session: Optional[BLESession] = None
        self._scan_request: Optional[Dict[str, Any]] = None
        self._keep_scanning = False
        self._allow_duplicates = False
        self._reported = set()
        self._peripherals: Dict[str, PeripheralRecord] = {}
        self._sessions: Dict[int, BLESession] = {}
        self._tasks = set()

    @property
    def peripherals(self) -> Dict[str, PeripheralRecord]:
        return self._peripherals

    @property
    def sessions(self) -> Dict[int, BLESession]:
        return self._sessions

    def get_scratch_link_socket(self, type_: str):
        return self._socket_factory(type_, link_url(type_, self._base_url))

    def init(self):
        logging.debug("[BINDINGS] init, powered on")
        self.emit("stateChange", "poweredOn")

    async def close(self):
        self._keep_scanning = False
        for session in list(self._sessions.values()):
            was_connected = session.is_connected()
            await session.disconnect()
            if was_connected:
                self.emit("disconnect", session.peripheral_id)
        self._sessions.clear()
        self._scan_session = None
        for record in self._peripherals.values():
            record.connecting = False
            record.requested_connect = False
            record.session_key = None
        self.emit("stateChange", "poweredOff")

    def _new_session(self, peripheral_id: Optional[str] = None) -> BLESession:
        owner_key = max(self._sessions) + 1 if self._sessions else 0
        session = BLESession(self, owner_key, self._scan_request or build_scan_request(), self.start_connect, peripheral_id)
        self._sessions[owner_key] = session
        return session

    # scanning

    async def start_scanning(self, options=None, allow_duplicates: bool = False):
        if self._scan_session is not None:
            if self._keep_scanning:
                logging.info("[SCAN] scan had been started...")
                return
            old, self._scan_session = self._scan_session, None
            await old.disconnect()
            self._sessions.pop(old.owner_key, None)

        self._scan_request = build_scan_request(options)
        self._allow_duplicates = allow_duplicates
        self._reported = set()
        logging.debug(f"[SCAN] start {self._scan_request} allowDuplicates={allow_duplicates}")

        self._keep_scanning = True
        self._scan_session = self._new_session()
        self.emit("scanStart")

    def stop_scanning(self):
        # Scratch Link has no request to stop a discover, only stop reporting
        self._keep_scanning = False
        self.emit("scanStop")

    def session_discovered(self, owner_key: int, params: Dict[str, Any]):
        if not self._keep_scanning:
            return
        address = params.get("peripheralId")
        if address is None:
            logging.warning(f"[SCAN] discovery without peripheralId ignored: {params}")
            return

        record = self._peripherals.get(address)
        if record is not None and record.connecting:
            return
        if record is None:
            record = PeripheralRecord.from_discovery(address, params.get("name"), params.get("rssi"))
            self._peripherals[address] = record
        else:
            record.refresh(params.get("name"), params.get("rssi"))

        if address in self._reported and not self._allow_duplicates:
            return
        self._reported.add(address)
        self.emit("discover", address, address, "", True, record.advertisement, record.rssi)

    def session_picked(self, owner_key: int, params: Dict[str, Any]):
        self.session_discovered(owner_key, params)

    def session_not_picked(self, owner_key: int):
        logging.info(f"[SCAN] session={owner_key} user did not pick a peripheral")

    # connection

    def connect(self, peripheral_id: str):
        logging.debug(f"[CONNECT] {peripheral_id}")
        record = self._peripherals.get(peripheral_id)
        if record is None:
            record = PeripheralRecord.from_discovery(peripheral_id)
            self._peripherals[peripheral_id] = record
        if record.connecting:
            logging.warning(f"[CONNECT] {peripheral_id} is already connecting")
            return
        record.connecting = True
        record.requested_connect = False
        record.session_key = self._new_session(peripheral_id).owner_key

    def start_connect(self, peripheral_id: str):
        record = self._peripherals.get(peripheral_id)
        session = self._session_for(record)
        if session is None or record.requested_connect:
            return
        record.requested_connect = True
        self._spawn(session.connect(peripheral_id))

    def session_connected(self, owner_key: int, peripheral_id: str):
        logging.info(f"[CONNECT] connected {peripheral_id}")
        self.emit("connect", peripheral_id)

    async def disconnect(self, peripheral_id: str):
        session = self._session_for(self._peripherals.get(peripheral_id))
        if session is not None:
            await session.disconnect()
        else:
            logging.debug(f"[DISCONNECT] {peripheral_id} has no session")
        self._forget(peripheral_id)
        self.emit("disconnect", peripheral_id)

    def session_disconnected(self, owner_key: int):
        logging.debug(f"[DISCONNECT] session={owner_key} disconnected")

    def session_disconnect_error(self, event: DisconnectErrorEvent):
        peripheral_id = event.peripheral_id
        logging.warning(f"[DISCONNECT] disconnected by peripheral {peripheral_id}")
        error = DisconnectError(f"{event.message} {peripheral_id}", peripheral_id=peripheral_id)
        self._emit_error(error)
        if peripheral_id is not None:
            self._forget(peripheral_id)
            self.emit("disconnect", peripheral_id, error)

    def session_closed(self, owner_key: int):
        session = self._sessions.pop(owner_key, None)
        if session is None:
            return
        if session is self._scan_session:
            self._scan_session = None
            if self._keep_scanning:
                self._keep_scanning = False
                self.emit("scanStop")
            return
        record = self._peripherals.get(session.peripheral_id)
        if record is not None and record.session_key == owner_key:
            record.connecting = False
            record.requested_connect = False
            record.session_key = None

    def session_request_error(self, event: RequestErrorEvent):
        # the session may already be gone when a request rejected by close resumes
        session = self._sessions.get(event.owner_key)
        peripheral_id = event.peripheral_id
        error = RequestError(
            f"{event.message}: {event.error}",
            error=event.error,
            peripheral_id=peripheral_id,
            service_uuid=event.params.get("serviceId"),
            characteristic_uuid=event.params.get("characteristicId"),
        )
        self._emit_error(error)
        if event.method == "connect" and peripheral_id is not None:
            self.emit("connect", peripheral_id, error)
            if session is not None:
                self._spawn(self._drop_session(session))

    async def _drop_session(self, session: BLESession):
        await session.disconnect()
        if session.peripheral_id is not None:
            self._forget(session.peripheral_id)
        self._sessions.pop(session.owner_key, None)

    def _forget(self, peripheral_id: str):
        record = self._peripherals.get(peripheral_id)
        if record is None:
            return
        if record.session_key is not None:
            self._sessions.pop(record.session_key, None)
        record.connecting = False
        record.requested_connect = False
        record.session_key = None

    def _session_for(self, record: Optional[PeripheralRecord]) -> Optional[BLESession]:
        if record is None or record.session_key is None:
            return None
        return self._sessions.get(record.session_key)

    # gatt

    def update_rssi(self, peripheral_id: str):
        record = self._peripherals.get(peripheral_id)
        if record:
            self.emit("rssiUpdate", peripheral_id, record.rssi)

    def discover_services(self, peripheral_id: str, uuids=None):
        record = self._peripherals.get(peripheral_id)
        if record is None:
            return
        wanted = {_uuid_key(u) for u in uuids or []}
        services = [s["uuid"] for s in record.services if not wanted or _uuid_key(s["uuid"]) in wanted]
        self.emit("servicesDiscover", peripheral_id, services)

    def discover_included_services(self, peripheral_id: str, service_uuid: str, service_uuids=None):
        if peripheral_id in self._peripherals:
            self.emit("includedServicesDiscover", peripheral_id, service_uuid, [])

    def discover_characteristics(self, peripheral_id: str, service_uuid: str, characteristic_uuids=None):
        record = self._peripherals.get(peripheral_id)
        if record is None:
            return
        wanted = {_uuid_key(u) for u in characteristic_uuids or []}
        characteristics = [
            c for c in record.service_chars.get(_uuid_key(service_uuid), [])
            if not wanted or _uuid_key(c["uuid"]) in wanted
        ]
        logging.debug(f"[GATT] discoverCharacteristics {peripheral_id} {service_uuid} {characteristics}")
        self.emit("characteristicsDiscover", peripheral_id, service_uuid, characteristics)

    async def read(self, peripheral_id: str, service_uuid: str, characteristic_uuid: str):
        session = self._session_for(self._peripherals.get(peripheral_id))
        logging.debug(f"[READ] {peripheral_id} {service_uuid} {characteristic_uuid}")
        if session is None:
            return
        try:
            result = await session.read(add_dashes(service_uuid), add_dashes(characteristic_uuid))
        except (RequestError, ProtocolViolation) as e:
            logging.warning(f"[READ] error reading characteristic {characteristic_uuid}: {e}")
            return
        data = self._decode(peripheral_id, service_uuid, characteristic_uuid, result)
        if data is not None:
            self.emit("read", peripheral_id, service_uuid, characteristic_uuid, data, False)

    async def write(self, peripheral_id: str, service_uuid: str, characteristic_uuid: str, data: bytes,
                    without_response: bool = False):
        session = self._session_for(self._peripherals.get(peripheral_id))
        logging.debug(f"[WRITE] {peripheral_id} {service_uuid} {characteristic_uuid} {bytes(data).hex()}")
        if session is None:
            return
        try:
            await session.write(
                add_dashes(service_uuid),
                add_dashes(characteristic_uuid),
                b64(bytes(data)),
                "base64",
                not without_response,
            )
        except (RequestError, ProtocolViolation) as e:
            logging.warning(f"[WRITE] error writing to characteristic {service_uuid} {characteristic_uuid}: {e}")
            return
        self.emit("write", peripheral_id, service_uuid, characteristic_uuid)

    async def notify(self, peripheral_id: str, service_uuid: str, characteristic_uuid: str, notify: bool):
        session = self._session_for(self._peripherals.get(peripheral_id))
        if session is None:
            return

        def on_changed(params):
            logging.debug(f"[NOTIFY] characteristic changed {params}")
            data = self._decode(peripheral_id, service_uuid, characteristic_uuid, params)
            if data is not None:
                self.emit("read", peripheral_id, service_uuid, characteristic_uuid, data, True)

        try:
            if notify:
                logging.debug(f"[NOTIFY] notifications started {characteristic_uuid}")
                await session.start_notifications(add_dashes(service_uuid), add_dashes(characteristic_uuid), on_changed)
            else:
                logging.debug(f"[NOTIFY] notifications stopped {characteristic_uuid}")
                await session.stop_notifications(add_dashes(service_uuid), add_dashes(characteristic_uuid))
        except (RequestError, ProtocolViolation) as e:
            logging.warning(f"[NOTIFY] error setting notification {characteristic_uuid} {notify}: {e}")
            return
        self.emit("notify", peripheral_id, service_uuid, characteristic_uuid, notify)

    def _decode(self, peripheral_id, service_uuid, characteristic_uuid, payload) -> Optional[bytes]:
        message = payload.get("message") if isinstance(payload, dict) else None
        try:
            return b64_to_bytes(message or "")
        except (binascii.Error, TypeError) as e:
            logging.warning(f"[READ] bad payload from {characteristic_uuid}: {e}")
            self._emit_error(RequestError(
                f"invalid base64 payload: {e}",
                error=e,
                peripheral_id=peripheral_id,
                service_uuid=service_uuid,
                characteristic_uuid=characteristic_uuid,
            ))
            return None

    def _emit_error(self, error: Exception):
        if self.listeners("error"):
            self.emit("error", error)
        else:
            logging.error(f"[BINDINGS] {error}")

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
