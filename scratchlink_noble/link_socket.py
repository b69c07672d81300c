import asyncio
import logging
import os
from typing import Callable, Optional

from websockets import connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, ConnectionClosedOK, WebSocketException

from .errors import ConfigurationError, TransportError

SCRATCH_LINK_URL = os.getenv("SL_LINK_URL", "wss://device-manager.scratch.mit.edu:20110")


def link_url(type_: str, base_url: Optional[str] = None) -> str:
    base = (base_url or SCRATCH_LINK_URL).rstrip("/")
    if not base.startswith(("ws://", "wss://")):
        raise ConfigurationError(f"Scratch Link url must use ws:// or wss://, got {base!r}")
    return f"{base}/scratch/{type_.lower()}"


class ScratchLinkWebSocket:
    """One websocket connection to a Scratch Link endpoint.

    ``open`` schedules the connection on the running loop and returns at once.
    The registered handlers are plain callables invoked from the reader task:
    ``on_open()``, ``on_close()``, ``on_error(exc)`` and ``handle_message(text)``.
    ``on_close`` fires exactly once per ``open``, whether or not the connection
    was ever established.
    """

    def __init__(self, type_: str = "BLE", url: Optional[str] = None):
        self.type = type_
        self.url = url or link_url(type_)
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._on_open: Optional[Callable[[], None]] = None
        self._on_close: Optional[Callable[[], None]] = None
        self._on_error: Optional[Callable[[Exception], None]] = None
        self._handle_message: Optional[Callable[[str], None]] = None

    def set_on_open(self, fn):
        self._on_open = fn

    def set_on_close(self, fn):
        self._on_close = fn

    def set_on_error(self, fn):
        self._on_error = fn

    def set_handle_message(self, fn):
        self._handle_message = fn

    def open(self):
        if self._task and not self._task.done():
            logging.debug(f"[SOCKET] {self.url} already opening/open")
            return
        self._closing = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    async def send(self, text: str):
        if not self.is_open():
            raise TransportError(f"socket to {self.url} is not open")
        logging.debug("→ %s", text)
        try:
            await self._ws.send(text)
        except ConnectionClosed as e:
            raise TransportError(f"socket to {self.url} closed while sending") from e

    async def close(self):
        self._closing = True
        task = self._task
        if self._ws is not None:
            await self._ws.close()
        elif task and not task.done():
            task.cancel()
        if task and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        try:
            try:
                self._ws = await connect(self.url)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logging.warning(f"[SOCKET] could not connect to {self.url}: {e}")
                self._fire(self._on_error, e)
                return

            logging.info(f"[SOCKET] CONNECTED {self.url}")
            self._fire(self._on_open)
            try:
                async for raw in self._ws:
                    logging.debug("← %s", raw)
                    if isinstance(raw, bytes):
                        raw = raw.decode("utf-8")
                    self._fire(self._handle_message, raw)
            except ConnectionClosedError as e:
                logging.info(f"[SOCKET] connection lost: {e}")
                self._fire(self._on_error, e)
            except ConnectionClosedOK:
                pass
        finally:
            logging.info(f"[SOCKET] DISCONNECTED {self.url}")
            self._ws = None
            self._closing = False
            self._fire(self._on_close)

    @staticmethod
    def _fire(fn, *args):
        if fn is None:
            return
        try:
            fn(*args)
        except Exception:
            logging.exception("[SOCKET] handler failed")
