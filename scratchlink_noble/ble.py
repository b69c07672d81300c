import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from .errors import ProtocolViolation, RequestError
from .jsonrpc import JSONRPCChannel

PING_RESULT = 42


@dataclass
class RequestErrorEvent:
    message: str
    owner_key: int
    error: Exception
    method: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    peripheral_id: Optional[str] = None


@dataclass
class DisconnectErrorEvent:
    message: str
    owner_key: int
    peripheral_id: Optional[str] = None


class SessionOwner(Protocol):
    """What a BLESession needs from whoever created it."""

    def get_scratch_link_socket(self, type_: str): ...

    def session_discovered(self, owner_key: int, params: Dict[str, Any]) -> None: ...

    def session_picked(self, owner_key: int, params: Dict[str, Any]) -> None: ...

    def session_not_picked(self, owner_key: int) -> None: ...

    def session_connected(self, owner_key: int, peripheral_id: str) -> None: ...

    def session_disconnected(self, owner_key: int) -> None: ...

    def session_closed(self, owner_key: int) -> None: ...

    def session_request_error(self, event: RequestErrorEvent) -> None: ...

    def session_disconnect_error(self, event: DisconnectErrorEvent) -> None: ...


def _callback_key(service_id, characteristic_id) -> Tuple[str, str]:
    return str(service_id).lower(), str(characteristic_id).lower()


class BLESession:
    """One BLE peripheral connection through Scratch Link.

    The session opens its own channel as soon as it is created and asks
    Scratch Link to discover peripherals matching ``peripheral_options`` once
    the socket is up. Without a ``peripheral_id`` every discovered peripheral
    is reported to the owner; with one, discovering that peripheral invokes
    ``connect_callback`` so the owner can decide when to ``connect``.

    ``discover`` and ``connect`` failures are reported to the owner as
    request errors. ``read``, ``write`` and the notification calls report the
    failure the same way and then re-raise it to the awaiting caller.
    """

    def __init__(
        self,
        owner: SessionOwner,
        owner_key: int,
        peripheral_options: Dict[str, Any],
        connect_callback: Callable[[str], None],
        peripheral_id: Optional[str] = None,
        reset_callback: Optional[Callable[[], None]] = None,
    ):
        self._owner = owner
        self.owner_key = owner_key
        self.peripheral_id = peripheral_id
        self._peripheral_options = peripheral_options
        self._connect_callback = connect_callback
        self._reset_callback = reset_callback
        self._connected = False
        self._available_peripherals: Dict[str, Dict[str, Any]] = {}
        self._characteristic_did_change_callbacks: Dict[Tuple[str, str], Callable] = {}
        self._tasks = set()

        self._channel = JSONRPCChannel(owner.get_scratch_link_socket("BLE"))
        self._channel.set_on_open(self._handle_open)
        self._channel.set_on_close(self._handle_close)
        self._channel.set_on_error(self._handle_socket_error)
        self._channel.on_call(self.did_receive_call)
        self._channel.open()

    @property
    def available_peripherals(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._available_peripherals)

    def is_connected(self) -> bool:
        return self._connected

    async def request_peripheral(self):
        if not self._channel.is_open():
            # discovery is requested again from the open handler
            self._channel.open()
            return
        self._available_peripherals = {}
        logging.debug(f"[DISCOVER] session={self.owner_key} options={self._peripheral_options}")
        try:
            await self._channel.send_request("discover", self._peripheral_options)
        except (RequestError, ProtocolViolation) as e:
            self._handle_request_error(e, "discover", self._peripheral_options)

    async def connect(self, peripheral_id: str):
        logging.info(f"[CONNECT] session={self.owner_key} peripheral={peripheral_id}")
        params = {"peripheralId": peripheral_id}
        try:
            await self._channel.send_request("connect", params)
        except (RequestError, ProtocolViolation) as e:
            self._handle_request_error(e, "connect", params)
            return
        self._connected = True
        self.peripheral_id = peripheral_id
        self._owner.session_connected(self.owner_key, peripheral_id)
        self._connect_callback(peripheral_id)

    async def disconnect(self):
        was_connected = self._connected
        self._connected = False
        await self._channel.close()
        if was_connected:
            logging.info(f"[DISCONNECT] session={self.owner_key} peripheral={self.peripheral_id}")
            self._owner.session_disconnected(self.owner_key)

    async def start_notifications(self, service_id, characteristic_id, on_characteristic_changed=None):
        params = {"serviceId": service_id, "characteristicId": characteristic_id}
        self._characteristic_did_change_callbacks[_callback_key(service_id, characteristic_id)] = on_characteristic_changed
        return await self._request("startNotifications", params)

    async def stop_notifications(self, service_id, characteristic_id):
        params = {"serviceId": service_id, "characteristicId": characteristic_id}
        self._characteristic_did_change_callbacks.pop(_callback_key(service_id, characteristic_id), None)
        return await self._request("stopNotifications", params)

    async def read(self, service_id, characteristic_id, start_notifications=False, on_characteristic_changed=None):
        params = {"serviceId": service_id, "characteristicId": characteristic_id}
        if start_notifications:
            params["startNotifications"] = True
        if on_characteristic_changed:
            self._characteristic_did_change_callbacks[_callback_key(service_id, characteristic_id)] = on_characteristic_changed
        return await self._request("read", params)

    async def write(self, service_id, characteristic_id, message, encoding=None, with_response=None):
        params = {"serviceId": service_id, "characteristicId": characteristic_id, "message": message}
        if encoding:
            params["encoding"] = encoding
        if with_response is not None:
            params["withResponse"] = with_response
        return await self._request("write", params)

    def did_receive_call(self, method: str, params: Any):
        params = params or {}
        if method == "didDiscoverPeripheral":
            if not self.peripheral_id:
                self._available_peripherals[params.get("peripheralId")] = params
                self._owner.session_discovered(self.owner_key, params)
            elif params.get("peripheralId") == self.peripheral_id:
                self._connect_callback(self.peripheral_id)
        elif method == "userDidPickPeripheral":
            self._available_peripherals[params.get("peripheralId")] = params
            self._owner.session_picked(self.owner_key, params)
        elif method == "userDidNotPickPeripheral":
            self._owner.session_not_picked(self.owner_key)
        elif method == "characteristicDidChange":
            key = _callback_key(params.get("serviceId"), params.get("characteristicId"))
            callback = self._characteristic_did_change_callbacks.get(key)
            if callback:
                callback(params)
            else:
                logging.debug(f"[NOTIFY] no subscriber for {key}, ignored")
        elif method == "ping":
            return PING_RESULT
        else:
            logging.debug(f"[RPC] session={self.owner_key} unhandled call {method}")
        return None

    async def _request(self, method, params):
        try:
            return await self._channel.send_request(method, params)
        except (RequestError, ProtocolViolation) as e:
            self._handle_request_error(e, method, params)
            raise

    def _handle_open(self):
        self._spawn(self.request_peripheral())

    def _handle_socket_error(self, e):
        if self._connected:
            # reported as a disconnect error once the socket closes
            logging.debug(f"[SOCKET] session={self.owner_key} error while connected: {e}")
            return
        self._handle_request_error(e, None, {})

    def _handle_close(self):
        if self._connected:
            self._handle_disconnect_error()
        self._owner.session_closed(self.owner_key)

    def _handle_disconnect_error(self):
        """The peripheral went away: battery, range or power."""
        if not self._connected:
            return
        self._connected = False
        if self._reset_callback:
            self._reset_callback()
        self._owner.session_disconnect_error(
            DisconnectErrorEvent(
                message="Scratch lost connection to",
                owner_key=self.owner_key,
                peripheral_id=self.peripheral_id,
            )
        )

    def _handle_request_error(self, e, method, params):
        logging.warning(f"[REQUEST] session={self.owner_key} {method or 'socket'} failed: {e}")
        self._owner.session_request_error(
            RequestErrorEvent(
                message="request to scratch link error",
                owner_key=self.owner_key,
                error=e,
                method=method,
                params=dict(params or {}),
                peripheral_id=self.peripheral_id,
            )
        )

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
