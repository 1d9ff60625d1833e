"""
WebSocket client gateway.

Forwards every gateway operation to a GatewayServer daemon that owns the
hardware, and routes the daemon's per-path notifications into a local
EventBus. Several sessions can share one WebSocketGateway; the daemon is
subscribed to a channel while at least one local subscriber needs it.

Example:
    >>> async with WebSocketGateway("ws://127.0.0.1:9877") as gateway:
    ...     port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
    ...     await port.open()
"""

import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from serialsession.errors import GatewayError
from serialsession.events import EventBus, NotificationCallback, ReadData, Subscription
from serialsession.gateway.base import TransportGateway
from serialsession.gateway.messages import MessageType, encode_request, error_from_frame, new_request_id
from serialsession.options import FlowControl, Parity, get_request_timeout
from serialsession.ports import PortInfo

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """A request awaiting its response frame.

    Attributes:
        request_id: Correlation id sent with the request
        message_type: Type of the request
        future: Resolved with the response data
        path: Port path the request concerns, if any
    """

    request_id: str
    message_type: MessageType
    future: asyncio.Future[dict[str, Any]]
    path: str | None = None


class WebSocketGateway(TransportGateway):
    """Transport gateway proxying to a remote GatewayServer.

    Connects lazily on the first request; connect() may also be called
    explicitly. The connection belongs to the event loop that opened it:
    when used from a different loop (e.g. a second asyncio.run() on the
    default gateway), the old connection is dropped and a new one is opened
    on the current loop. Listeners registered on the old loop stop
    receiving data.
    """

    def __init__(self, url: str, request_timeout: float | None = None):
        self.url = url
        self.request_timeout = request_timeout if request_timeout is not None else get_request_timeout()
        self.bus = EventBus(on_channel_empty=self._on_channel_empty)

        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws: ClientConnection | None = None
        self._receiver_task: asyncio.Task[None] | None = None
        self._pending: dict[str, PendingRequest] = {}
        self._connect_lock = asyncio.Lock()
        self._remote_channels: set[str] = set()
        self._unsubscribe_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    def _bind_loop(self) -> None:
        """Forget connection state created on another event loop."""
        loop = asyncio.get_running_loop()
        if self._loop is loop:
            return
        if self._loop is not None:
            logger.debug(f"Event loop changed, dropping connection to {self.url} from the previous loop")
        self._loop = loop
        self._ws = None
        self._receiver_task = None
        self._pending.clear()
        self._connect_lock = asyncio.Lock()
        self._remote_channels.clear()
        self._unsubscribe_tasks.clear()

    async def connect(self) -> None:
        """Open the WebSocket connection to the daemon.

        Raises:
            GatewayError: If the daemon cannot be reached
        """
        self._bind_loop()
        async with self._connect_lock:
            if self._ws is not None:
                return
            try:
                self._ws = await websockets.connect(self.url)
            except KeyboardInterrupt:  # noqa: KBI002
                raise
            except Exception as e:
                raise GatewayError(f"Failed to connect to gateway at {self.url}: {e}") from e
            self._receiver_task = asyncio.create_task(self._receive_messages())
            logger.info(f"Connected to gateway at {self.url}")

        # Channels subscribed locally before a reconnect
        self._remote_channels.clear()
        for channel in self.bus.channels():
            await self._subscribe_remote(channel)

    async def disconnect(self) -> None:
        """Close the WebSocket connection. Safe to call multiple times."""
        self._bind_loop()
        for task in list(self._unsubscribe_tasks.values()):
            task.cancel()
        self._unsubscribe_tasks.clear()

        if self._receiver_task:
            self._receiver_task.cancel()
            try:
                await self._receiver_task
            except asyncio.CancelledError:
                pass
            self._receiver_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
            logger.info(f"Disconnected from gateway at {self.url}")
        self._remote_channels.clear()
        self._fail_pending(GatewayError("Disconnected from gateway"))

    async def __aenter__(self) -> "WebSocketGateway":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.disconnect()

    # =========================================================================
    # Gateway operations
    # =========================================================================

    async def available_ports(self) -> list[PortInfo]:
        response = await self._request(MessageType.AVAILABLE_PORTS, {})
        return [PortInfo.from_dict(port) for port in response.get("ports", [])]

    async def open(
        self,
        path: str,
        baud_rate: int,
        data_bits: int,
        parity: Parity,
        flow_control: FlowControl,
        stop_bits: int,
        timeout: int,
    ) -> None:
        await self._request(
            MessageType.OPEN,
            {
                "path": path,
                "baud_rate": baud_rate,
                "data_bits": data_bits,
                "parity": parity.value,
                "flow_control": flow_control.value,
                "stop_bits": stop_bits,
                "timeout": timeout,
            },
            path=path,
        )

    async def close(self, path: str) -> None:
        await self._request(MessageType.CLOSE, {"path": path}, path=path)

    async def force_close(self, path: str) -> None:
        await self._request(MessageType.FORCE_CLOSE, {"path": path}, path=path)

    async def close_all(self) -> None:
        await self._request(MessageType.CLOSE_ALL, {})

    async def read(self, path: str, timeout: int, size: int) -> None:
        await self._request(MessageType.READ, {"path": path, "timeout": timeout, "size": size}, path=path)

    async def cancel_read(self, path: str) -> None:
        await self._request(MessageType.CANCEL_READ, {"path": path}, path=path)

    async def write(self, path: str, value: str) -> int:
        response = await self._request(MessageType.WRITE, {"path": path, "value": value}, path=path)
        return response.get("bytes_written", 0)

    async def write_binary(self, path: str, value: bytes) -> int:
        data_b64 = base64.b64encode(bytes(value)).decode("ascii")
        response = await self._request(MessageType.WRITE_BINARY, {"path": path, "value": data_b64}, path=path)
        return response.get("bytes_written", 0)

    async def listen(self, channel: str, callback: NotificationCallback) -> Subscription:
        self._bind_loop()
        subscription = self.bus.subscribe(channel, callback)
        try:
            await self._subscribe_remote(channel)
        except GatewayError:
            subscription.cancel()
            raise
        return subscription

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def _subscribe_remote(self, channel: str) -> None:
        pending_unsubscribe = self._unsubscribe_tasks.pop(channel, None)
        if pending_unsubscribe is not None:
            await pending_unsubscribe
        if self._ws is None:
            # connect() subscribes every channel the bus knows, this one included
            await self.connect()
        if channel in self._remote_channels:
            return
        self._remote_channels.add(channel)
        try:
            await self._request(MessageType.SUBSCRIBE, {"channel": channel})
        except GatewayError:
            self._remote_channels.discard(channel)
            raise

    def _on_channel_empty(self, channel: str) -> None:
        if channel not in self._remote_channels:
            return
        self._remote_channels.discard(channel)
        if self._ws is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop to unsubscribe {channel}")
            return
        self._unsubscribe_tasks[channel] = loop.create_task(self._unsubscribe_remote(channel))

    async def _unsubscribe_remote(self, channel: str) -> None:
        try:
            await self._request(MessageType.UNSUBSCRIBE, {"channel": channel})
        except GatewayError as e:
            logger.warning(f"Failed to unsubscribe from {channel}: {e}")
        finally:
            task = self._unsubscribe_tasks.get(channel)
            if task is asyncio.current_task():
                del self._unsubscribe_tasks[channel]

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request(self, msg_type: MessageType, data: dict[str, Any], path: str | None = None) -> dict[str, Any]:
        """Send a request and wait for its response.

        Raises:
            GatewayError: On error frames, timeouts, or connection loss
        """
        self._bind_loop()
        if self._ws is None:
            await self.connect()
        ws = self._ws
        if ws is None:
            raise GatewayError("Not connected to gateway")

        request_id = new_request_id()
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id=request_id, message_type=msg_type, future=future, path=path)

        try:
            try:
                await ws.send(encode_request(msg_type, request_id, data))
            except websockets.exceptions.ConnectionClosed as e:
                raise GatewayError(f"Connection to gateway lost: {e}") from e
            logger.debug(f"Sent {msg_type.value} request {request_id}")
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Request {msg_type.value} timed out after {self.request_timeout}s")
            raise GatewayError(f"Gateway request {msg_type.value} timed out after {self.request_timeout}s") from None
        finally:
            self._pending.pop(request_id, None)

    async def _receive_messages(self) -> None:
        """Background task routing response, error and event frames."""
        try:
            while self._ws is not None:
                try:
                    message_text = await self._ws.recv()
                    message = json.loads(message_text)
                except websockets.exceptions.ConnectionClosed:
                    logger.warning(f"Connection to gateway at {self.url} closed")
                    break
                except json.JSONDecodeError as e:
                    logger.warning(f"Invalid JSON from gateway: {e}")
                    continue
                self._handle_message(message)
        except asyncio.CancelledError:
            raise
        self._ws = None
        self._remote_channels.clear()
        self._fail_pending(GatewayError("Connection to gateway lost"))

    def _handle_message(self, message: dict[str, Any]) -> None:
        msg_type = message.get("type")

        if msg_type == MessageType.EVENT.value:
            channel = message.get("channel", "")
            self.bus.emit(channel, ReadData.from_dict(message.get("data", {})))
            return

        request_id = message.get("request_id")
        pending = self._pending.get(request_id) if request_id else None
        if pending is None:
            if msg_type == MessageType.ERROR.value:
                logger.error(f"Gateway error: {message.get('error', 'Unknown error')}")
            else:
                logger.warning(f"Received {msg_type} for unknown request: {request_id}")
            return
        if pending.future.done():
            return

        if msg_type == MessageType.RESPONSE.value:
            pending.future.set_result(message.get("data", {}))
        elif msg_type == MessageType.ERROR.value:
            pending.future.set_exception(error_from_frame(message, pending.path))
        else:
            logger.debug(f"Received message of type: {msg_type}")

    def _fail_pending(self, error: GatewayError) -> None:
        for request_id, pending in list(self._pending.items()):
            if not pending.future.done():
                pending.future.set_exception(error)
            self._pending.pop(request_id, None)
