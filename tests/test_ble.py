import asyncio

import pytest

from helpers import FakeLinkSocket, settle
from scratchlink_noble.ble import PING_RESULT, BLESession
from scratchlink_noble.errors import ChannelClosedError, RemoteError

SERVICE = "10b20100-5b3b-4571-9508-cf3efcd7bbae"
BATTERY = "10b20108-5b3b-4571-9508-cf3efcd7bbae"
OPTIONS = {"filters": [{"services": [SERVICE]}]}


class FakeOwner:
    def __init__(self, auto_open=True):
        self.auto_open = auto_open
        self.sockets = []
        self.calls = []
        self.connect_callbacks = []

    def get_scratch_link_socket(self, type_):
        sock = FakeLinkSocket(type_, auto_open=self.auto_open)
        self.sockets.append(sock)
        return sock

    def connect_callback(self, peripheral_id):
        self.connect_callbacks.append(peripheral_id)

    def __getattr__(self, name):
        if not name.startswith("session_"):
            raise AttributeError(name)

        def record(*args):
            self.calls.append((name, args))
        return record

    def of(self, name):
        return [args for n, args in self.calls if n == name]


def make_session(owner=None, peripheral_id=None, reset_callback=None):
    owner = owner or FakeOwner()
    session = BLESession(owner, 3, OPTIONS, owner.connect_callback, peripheral_id, reset_callback)
    return owner, session, owner.sockets[-1]


async def connected_session(reset_callback=None):
    owner, session, sock = make_session(peripheral_id="abc", reset_callback=reset_callback)
    await settle()
    sock.respond(sock.last_request("discover"))
    task = asyncio.create_task(session.connect("abc"))
    await settle()
    sock.respond(sock.last_request("connect"), result=None)
    await task
    return owner, session, sock


@pytest.mark.asyncio
async def test_opening_requests_discovery_with_filters():
    owner, session, sock = make_session()
    assert sock.open_calls == 1
    await settle()
    req = sock.last_request("discover")
    assert req["params"] == OPTIONS


@pytest.mark.asyncio
async def test_discovery_waits_for_socket_open():
    owner, session, sock = make_session(FakeOwner(auto_open=False))
    await settle()
    assert sock.requests() == []

    await session.request_peripheral()
    assert sock.requests() == []

    sock.accept()
    await settle()
    assert sock.last_request("discover")["params"] == OPTIONS


@pytest.mark.asyncio
async def test_discover_failure_becomes_request_error_event():
    owner, session, sock = make_session()
    await settle()
    sock.respond(sock.last_request("discover"), error={"message": "no adapter"})
    await settle()

    (event,) = [args[0] for args in owner.of("session_request_error")]
    assert event.owner_key == 3
    assert event.method == "discover"
    assert isinstance(event.error, RemoteError)


@pytest.mark.asyncio
async def test_anonymous_session_reports_discoveries():
    owner, session, sock = make_session()
    params = {"peripheralId": "abc", "name": "toio Core Cube", "rssi": -50}
    sock.call("didDiscoverPeripheral", params)
    await settle()

    assert owner.of("session_discovered") == [(3, params)]
    assert session.available_peripherals == {"abc": params}
    assert owner.connect_callbacks == []


@pytest.mark.asyncio
async def test_targeted_session_asks_to_connect_on_match_only():
    owner, session, sock = make_session(peripheral_id="abc")
    sock.call("didDiscoverPeripheral", {"peripheralId": "other"})
    sock.call("didDiscoverPeripheral", {"peripheralId": "abc"})
    await settle()

    assert owner.connect_callbacks == ["abc"]
    assert owner.of("session_discovered") == []


@pytest.mark.asyncio
async def test_pick_and_not_pick_are_forwarded():
    owner, session, sock = make_session()
    sock.call("userDidPickPeripheral", {"peripheralId": "abc", "name": "cube"})
    sock.call("userDidNotPickPeripheral")
    await settle()
    assert owner.of("session_picked") == [(3, {"peripheralId": "abc", "name": "cube"})]
    assert owner.of("session_not_picked") == [(3,)]


@pytest.mark.asyncio
async def test_connect_success_marks_connected_and_calls_back():
    owner, session, sock = await connected_session()
    assert sock.last_request("connect")["params"] == {"peripheralId": "abc"}
    assert session.is_connected()
    assert owner.of("session_connected") == [(3, "abc")]
    assert owner.connect_callbacks == ["abc"]


@pytest.mark.asyncio
async def test_connect_failure_is_reported_not_raised():
    owner, session, sock = make_session(peripheral_id="abc")
    await settle()
    task = asyncio.create_task(session.connect("abc"))
    await settle()
    sock.respond(sock.last_request("connect"), error={"message": "refused"})
    await task

    assert not session.is_connected()
    (event,) = [args[0] for args in owner.of("session_request_error")]
    assert event.method == "connect"
    assert event.params == {"peripheralId": "abc"}
    assert owner.of("session_connected") == []


@pytest.mark.asyncio
async def test_disconnect_is_idempotent():
    owner, session, sock = await connected_session()

    await session.disconnect()
    await session.disconnect()

    assert not session.is_connected()
    assert not sock.is_open()
    assert owner.of("session_disconnected") == [(3,)]
    assert owner.of("session_closed") == [(3,)]
    assert owner.of("session_disconnect_error") == []


@pytest.mark.asyncio
async def test_lost_connection_resets_and_reports_disconnect_error():
    resets = []
    owner, session, sock = await connected_session(reset_callback=lambda: resets.append(True))

    sock.drop(error=OSError("out of range"))

    assert not session.is_connected()
    assert resets == [True]
    (event,) = [args[0] for args in owner.of("session_disconnect_error")]
    assert event.owner_key == 3
    assert event.peripheral_id == "abc"
    assert owner.of("session_disconnected") == []
    assert owner.of("session_closed") == [(3,)]
    # socket errors while connected are not request errors
    assert owner.of("session_request_error") == []


@pytest.mark.asyncio
async def test_close_before_connect_is_not_a_disconnect_error():
    owner, session, sock = make_session()
    sock.drop()
    assert owner.of("session_disconnect_error") == []
    assert owner.of("session_closed") == [(3,)]


@pytest.mark.asyncio
async def test_socket_error_before_connect_is_request_error():
    owner, session, sock = make_session(FakeOwner(auto_open=False))
    sock.drop(error=OSError("refused"))
    (event,) = [args[0] for args in owner.of("session_request_error")]
    assert event.method is None
    assert isinstance(event.error, OSError)


@pytest.mark.asyncio
async def test_read_and_write_params():
    owner, session, sock = await connected_session()

    read = asyncio.create_task(session.read(SERVICE, BATTERY, start_notifications=True))
    write = asyncio.create_task(session.write(SERVICE, BATTERY, "AQI=", "base64", True))
    plain_write = asyncio.create_task(session.write(SERVICE, BATTERY, "AQI="))
    await settle()

    read_req = sock.last_request("read")
    assert read_req["params"] == {"serviceId": SERVICE, "characteristicId": BATTERY, "startNotifications": True}
    writes = sock.requests("write")
    assert writes[0]["params"] == {
        "serviceId": SERVICE, "characteristicId": BATTERY, "message": "AQI=",
        "encoding": "base64", "withResponse": True,
    }
    assert writes[1]["params"] == {"serviceId": SERVICE, "characteristicId": BATTERY, "message": "AQI="}

    sock.respond(read_req, result={"message": "ZA=="})
    sock.respond(writes[0], result=None)
    sock.respond(writes[1], result=None)
    assert await read == {"message": "ZA=="}
    assert await write is None
    assert await plain_write is None


@pytest.mark.asyncio
async def test_read_failure_is_reported_and_raised():
    owner, session, sock = await connected_session()
    task = asyncio.create_task(session.read(SERVICE, BATTERY))
    await settle()
    sock.respond(sock.last_request("read"), error={"message": "not readable"})

    with pytest.raises(RemoteError):
        await task
    (event,) = [args[0] for args in owner.of("session_request_error")]
    assert event.method == "read"
    assert event.params["characteristicId"] == BATTERY


@pytest.mark.asyncio
async def test_pending_read_fails_when_connection_drops():
    owner, session, sock = await connected_session()
    task = asyncio.create_task(session.read(SERVICE, BATTERY))
    await settle()
    sock.drop()
    with pytest.raises(ChannelClosedError):
        await task
    (event,) = [args[0] for args in owner.of("session_request_error")]
    assert event.method == "read"
    assert event.peripheral_id == "abc"
    assert isinstance(event.error, ChannelClosedError)


@pytest.mark.asyncio
async def test_notifications_route_to_registered_callback():
    owner, session, sock = await connected_session()
    received = []

    start = asyncio.create_task(session.start_notifications(SERVICE, BATTERY, received.append))
    await settle()
    req = sock.last_request("startNotifications")
    assert req["params"] == {"serviceId": SERVICE, "characteristicId": BATTERY}
    sock.respond(req)
    await start

    pushed = {"serviceId": SERVICE, "characteristicId": BATTERY, "encoding": "base64", "message": "ZA=="}
    sock.call("characteristicDidChange", pushed)
    await settle()
    assert received == [pushed]

    stop = asyncio.create_task(session.stop_notifications(SERVICE, BATTERY))
    await settle()
    sock.respond(sock.last_request("stopNotifications"))
    await stop

    sock.call("characteristicDidChange", pushed)
    await settle()
    assert received == [pushed]


@pytest.mark.asyncio
async def test_read_can_register_change_callback():
    owner, session, sock = await connected_session()
    received = []
    task = asyncio.create_task(session.read(SERVICE, BATTERY, True, received.append))
    await settle()
    sock.respond(sock.last_request("read"), result={"message": ""})
    await task

    sock.call("characteristicDidChange", {"serviceId": SERVICE.upper(), "characteristicId": BATTERY.upper(), "message": "AA=="})
    await settle()
    assert len(received) == 1


@pytest.mark.asyncio
async def test_unsubscribed_change_is_ignored():
    owner, session, sock = await connected_session()
    sock.call("characteristicDidChange", {"serviceId": SERVICE, "characteristicId": BATTERY, "message": "AA=="})
    await settle()
    assert owner.of("session_request_error") == []


@pytest.mark.asyncio
async def test_ping_is_answered():
    owner, session, sock = make_session()
    sock.call("ping", msg_id=11)
    await settle()
    assert {"jsonrpc": "2.0", "id": 11, "result": PING_RESULT} in sock.responses()
