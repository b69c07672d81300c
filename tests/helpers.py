import asyncio
import json

from scratchlink_noble.errors import TransportError


async def settle(rounds=20):
    """Let spawned tasks run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeLinkSocket:
    # In-memory stand-in for ScratchLinkWebSocket.
    # - `open()` accepts immediately unless auto_open is False (then call `accept()`).
    # - Captures outgoing frames in `sent`; `receive()` injects inbound frames.
    # - `drop()` simulates the remote side going away.
    def __init__(self, type_="BLE", url="ws://127.0.0.1:20111/scratch/ble", auto_open=True):
        self.type = type_
        self.url = url
        self.auto_open = auto_open
        self.sent = []
        self.open_calls = 0
        self.close_calls = 0
        self._open = False
        self._on_open = None
        self._on_close = None
        self._on_error = None
        self._handle_message = None

    def set_on_open(self, fn):
        self._on_open = fn

    def set_on_close(self, fn):
        self._on_close = fn

    def set_on_error(self, fn):
        self._on_error = fn

    def set_handle_message(self, fn):
        self._handle_message = fn

    def open(self):
        self.open_calls += 1
        if self.auto_open:
            self.accept()

    def accept(self):
        self._open = True
        if self._on_open:
            self._on_open()

    def is_open(self):
        return self._open

    async def send(self, payload: str):
        assert isinstance(payload, str), "send() must be called with a JSON string"
        if not self._open:
            raise TransportError("fake socket is not open")
        self.sent.append(payload)

    async def close(self):
        self.close_calls += 1
        if not self._open:
            return
        self._open = False
        if self._on_close:
            self._on_close()

    def drop(self, error=None):
        self._open = False
        if error is not None and self._on_error:
            self._on_error(error)
        if self._on_close:
            self._on_close()

    def receive(self, msg):
        if isinstance(msg, dict):
            msg = json.dumps(msg)
        self._handle_message(msg)

    def messages(self):
        return [json.loads(m) for m in self.sent]

    def requests(self, method=None):
        return [m for m in self.messages() if "method" in m and (method is None or m["method"] == method)]

    def last_request(self, method):
        found = self.requests(method)
        assert found, f"no {method!r} request was sent"
        return found[-1]

    def responses(self):
        return [m for m in self.messages() if "method" not in m]

    def call(self, method, params=None, msg_id=None):
        msg = {"jsonrpc": "2.0", "method": method, "params": params or {}}
        if msg_id is not None:
            msg["id"] = msg_id
        self.receive(msg)

    def respond(self, request, result=None, error=None):
        msg = {"jsonrpc": "2.0", "id": request["id"]}
        if error is not None:
            msg["error"] = error
        else:
            msg["result"] = result
        self.receive(msg)


class EventRecorder:
    """Collects every emitted binding event as (name, args)."""

    NAMES = (
        "stateChange", "scanStart", "scanStop", "discover", "connect", "disconnect",
        "servicesDiscover", "includedServicesDiscover", "characteristicsDiscover",
        "read", "write", "notify", "rssiUpdate", "error",
    )

    def __init__(self, emitter):
        self.events = []
        for name in self.NAMES:
            emitter.on(name, self._recorder(name))

    def _recorder(self, name):
        def record(*args):
            self.events.append((name, args))
        return record

    def of(self, name):
        return [args for n, args in self.events if n == name]
