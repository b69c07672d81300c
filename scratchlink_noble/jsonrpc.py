import asyncio
import inspect
import json
import logging
from typing import Any, Callable, Dict, Optional

from .errors import ChannelClosedError, ProtocolViolation, RemoteError, TransportError

JSONRPC_VERSION = "2.0"

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


class JSONRPCChannel:
    """JSON-RPC 2.0 over one Scratch Link socket.

    Outbound requests are matched to responses by id only, so responses may
    arrive in any order. Messages carrying a ``method`` are calls initiated by
    the remote side and go to the handler registered with ``on_call``; when the
    call carries an id the handler's (possibly awaited) return value is sent
    back as the ``result``.

    The socket's open/close/error transitions are forwarded to the owner
    through ``set_on_open``/``set_on_close``/``set_on_error``. Closing rejects
    every pending request with ``ChannelClosedError``.
    """

    def __init__(self, socket):
        self._socket = socket
        self._request_id = 0
        self._open_requests: Dict[int, asyncio.Future] = {}
        self._call_handler: Optional[Callable[[str, Any], Any]] = None
        self._tasks = set()
        self._closed = False
        self._on_open = None
        self._on_close = None
        self._on_error = None

        socket.set_on_open(self._handle_open)
        socket.set_on_close(self._handle_close)
        socket.set_on_error(self._handle_error)
        socket.set_handle_message(self._handle_message)

    def on_call(self, handler: Callable[[str, Any], Any]):
        self._call_handler = handler

    def set_on_open(self, fn):
        self._on_open = fn

    def set_on_close(self, fn):
        self._on_close = fn

    def set_on_error(self, fn):
        self._on_error = fn

    @property
    def pending_count(self) -> int:
        return len(self._open_requests)

    def open(self):
        self._closed = False
        self._socket.open()

    def is_open(self) -> bool:
        return self._socket.is_open()

    async def close(self):
        await self._socket.close()

    async def send_request(self, method: str, params: Any = None) -> Any:
        if self._closed:
            raise ChannelClosedError(f"channel closed, cannot send {method!r}")

        request_id = self._request_id
        self._request_id += 1

        stale = self._open_requests.pop(request_id, None)
        if stale is not None and not stale.done():
            stale.set_exception(ProtocolViolation(f"request id {request_id} reused while pending"))

        future = asyncio.get_running_loop().create_future()
        self._open_requests[request_id] = future
        try:
            await self._send_request(method, params, request_id)
        except TransportError as e:
            self._open_requests.pop(request_id, None)
            raise ChannelClosedError(f"could not send {method!r}: {e}") from e
        return await future

    async def send_notification(self, method: str, params: Any = None):
        try:
            await self._send_request(method, params)
        except TransportError as e:
            logging.warning(f"[RPC] notification {method!r} dropped: {e}")

    async def _send_request(self, method, params, request_id=None):
        request = {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params}
        if request_id is not None:
            request["id"] = request_id
        await self._socket.send(json.dumps(request))

    async def _send_response(self, msg_id, result=None, error=None):
        response = {"jsonrpc": JSONRPC_VERSION, "id": msg_id}
        if error is not None:
            response["error"] = error
        else:
            response["result"] = result
        try:
            await self._socket.send(json.dumps(response))
        except TransportError as e:
            logging.warning(f"[RPC] response to {msg_id} dropped: {e}")

    def _handle_message(self, raw: str):
        try:
            msg = self._parse(raw)
        except ProtocolViolation as e:
            logging.warning(f"[RPC] dropped message: {e}")
            return

        if "method" in msg:
            self._handle_call(msg)
        else:
            self._handle_response(msg)

    @staticmethod
    def _parse(raw) -> Dict[str, Any]:
        try:
            msg = json.loads(raw)
        except ValueError as e:
            raise ProtocolViolation(f"invalid JSON: {raw!r}") from e
        if not isinstance(msg, dict) or msg.get("jsonrpc") != JSONRPC_VERSION:
            raise ProtocolViolation(f"Bad or missing JSON-RPC version in message: {raw!r}")
        return msg

    def _handle_response(self, msg):
        msg_id = msg.get("id")
        future = self._open_requests.pop(msg_id, None) if isinstance(msg_id, int) else None
        if future is None:
            logging.warning(f"[RPC] response for unknown request id {msg_id!r} ignored")
            return
        if future.done():
            return
        error = msg.get("error")
        if error is not None:
            future.set_exception(RemoteError(error))
        else:
            future.set_result(msg.get("result"))

    def _handle_call(self, msg):
        task = asyncio.get_running_loop().create_task(
            self._dispatch_call(msg["method"], msg.get("params"), msg.get("id"))
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch_call(self, method, params, msg_id):
        if self._call_handler is None:
            logging.warning(f"[RPC] no handler for inbound call {method!r}")
            if msg_id is not None:
                await self._send_response(msg_id, error={"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"})
            return

        try:
            result = self._call_handler(method, params)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logging.exception(f"[RPC] inbound call {method!r} failed")
            if msg_id is not None:
                await self._send_response(msg_id, error={"code": INTERNAL_ERROR, "message": str(e)})
            return

        if msg_id is not None:
            await self._send_response(msg_id, result=result)

    def _handle_open(self):
        self._closed = False
        if self._on_open:
            self._on_open()

    def _handle_error(self, e):
        if self._on_error:
            self._on_error(e)

    def _handle_close(self):
        self._closed = True
        pending, self._open_requests = self._open_requests, {}
        for request_id, future in pending.items():
            if not future.done():
                future.set_exception(ChannelClosedError(f"channel closed before response to request {request_id}"))
        if self._on_close:
            self._on_close()
