"""
Gateway daemon - exposes a TransportGateway over WebSockets.

Each client connection gets its own outbound queue so responses and event
frames leave in the order they were produced. Notification subscriptions
belong to the connection that made them and are released when it
disconnects. Open ports are not closed on disconnect; force_close and
close_all exist to reclaim ports whose owner went away.

Example:
    >>> server = GatewayServer(LocalSerialGateway(), host="127.0.0.1", port=9877)
    >>> asyncio.run(server.serve_forever())
"""

import asyncio
import base64
import binascii
import json
import logging
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from serialsession.errors import SerialportError
from serialsession.events import ReadData, Subscription
from serialsession.gateway.base import TransportGateway
from serialsession.gateway.messages import (
    ErrorKind,
    MessageType,
    encode_error,
    encode_event,
    encode_response,
    error_kind_for,
)
from serialsession.options import DEFAULT_READ_SIZE, DEFAULT_TIMEOUT_MS, FlowControl, Parity

logger = logging.getLogger(__name__)

RequestHandler = Callable[["ClientState", dict[str, Any]], Coroutine[Any, Any, dict[str, Any]]]


@dataclass
class ClientState:
    """Per-connection state.

    Attributes:
        client_id: Unique identifier for the connection
        connection: WebSocket connection
        outbox: Frames waiting to be sent
        subscriptions: Active subscriptions by channel
    """

    client_id: str
    connection: ServerConnection
    outbox: asyncio.Queue[str] = field(default_factory=asyncio.Queue)
    subscriptions: dict[str, Subscription] = field(default_factory=dict)


class GatewayServer:
    """WebSocket front end for a TransportGateway."""

    def __init__(self, gateway: TransportGateway, host: str = "127.0.0.1", port: int = 9877):
        self.gateway = gateway
        self.host = host
        self.port = port
        self._server: Server | None = None
        self._clients: dict[str, ClientState] = {}

        self._handlers: dict[MessageType, RequestHandler] = {
            MessageType.AVAILABLE_PORTS: self._handle_available_ports,
            MessageType.OPEN: self._handle_open,
            MessageType.CLOSE: self._handle_close,
            MessageType.FORCE_CLOSE: self._handle_force_close,
            MessageType.CLOSE_ALL: self._handle_close_all,
            MessageType.READ: self._handle_read,
            MessageType.CANCEL_READ: self._handle_cancel_read,
            MessageType.WRITE: self._handle_write,
            MessageType.WRITE_BINARY: self._handle_write_binary,
            MessageType.SUBSCRIBE: self._handle_subscribe,
            MessageType.UNSUBSCRIBE: self._handle_unsubscribe,
        }

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def start(self) -> None:
        """Start listening. With port 0 the bound port is stored in self.port."""
        if self.is_running:
            return
        self._server = await serve(self._handle_connection, self.host, self.port)
        sockets = list(self._server.sockets)
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info(f"Gateway server listening on {self.url}")

    async def stop(self) -> None:
        if not self.is_running:
            return
        server, self._server = self._server, None
        server.close()
        await server.wait_closed()
        logger.info("Gateway server stopped")

    async def serve_forever(self) -> None:
        await self.start()
        server = self._server
        if server is None:
            raise RuntimeError("Gateway server is not running")
        try:
            await server.serve_forever()
        finally:
            await self.stop()

    async def __aenter__(self) -> "GatewayServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.stop()

    # =========================================================================
    # Connections
    # =========================================================================

    async def _handle_connection(self, connection: ServerConnection) -> None:
        client = ClientState(client_id=str(uuid.uuid4()), connection=connection)
        self._clients[client.client_id] = client
        logger.info(f"New connection from {connection.remote_address}, client_id: {client.client_id}")
        sender = asyncio.create_task(self._send_loop(client))

        try:
            async for message_text in connection:
                await self._process_message(client, message_text)
        except websockets.exceptions.ConnectionClosed:
            logger.debug(f"Client {client.client_id} closed connection")
        finally:
            for subscription in client.subscriptions.values():
                subscription.cancel()
            client.subscriptions.clear()
            self._clients.pop(client.client_id, None)
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            logger.info(f"Client {client.client_id} disconnected")

    async def _send_loop(self, client: ClientState) -> None:
        while True:
            frame = await client.outbox.get()
            try:
                await client.connection.send(frame)
            except websockets.exceptions.ConnectionClosed:
                return

    async def _process_message(self, client: ClientState, message_text: str | bytes) -> None:
        try:
            message = json.loads(message_text)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON from client {client.client_id}: {e}")
            client.outbox.put_nowait(encode_error(None, f"Invalid JSON: {e}", ErrorKind.BAD_REQUEST))
            return
        if not isinstance(message, dict):
            logger.error(f"Non-object frame from client {client.client_id}: {type(message).__name__}")
            client.outbox.put_nowait(encode_error(None, f"Expected a JSON object, got {type(message).__name__}", ErrorKind.BAD_REQUEST))
            return

        request_id = message.get("request_id")
        try:
            msg_type = MessageType(message.get("type"))
            handler = self._handlers[msg_type]
        except (ValueError, KeyError):
            client.outbox.put_nowait(encode_error(request_id, f"Unknown message type: {message.get('type')}", ErrorKind.BAD_REQUEST))
            return

        logger.debug(f"Processing {msg_type.value} from client {client.client_id}")
        try:
            response = await handler(client, message.get("data", {}))
        except KeyboardInterrupt:  # noqa: KBI002
            raise
        except SerialportError as e:
            logger.warning(f"{msg_type.value} failed for client {client.client_id}: {e}")
            client.outbox.put_nowait(encode_error(request_id, str(e), error_kind_for(e)))
            return
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            client.outbox.put_nowait(encode_error(request_id, f"Malformed {msg_type.value} request: {e}", ErrorKind.BAD_REQUEST))
            return
        except Exception as e:
            logger.error(f"Error processing {msg_type.value} from {client.client_id}: {e}", exc_info=True)
            client.outbox.put_nowait(encode_error(request_id, f"Error processing message: {e}", ErrorKind.GATEWAY))
            return
        client.outbox.put_nowait(encode_response(request_id, response))

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _handle_available_ports(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        ports = await self.gateway.available_ports()
        return {"ports": [port.to_dict() for port in ports]}

    async def _handle_open(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        await self.gateway.open(
            path=data["path"],
            baud_rate=int(data["baud_rate"]),
            data_bits=int(data.get("data_bits", 8)),
            parity=Parity.from_value(data.get("parity")),
            flow_control=FlowControl.from_value(data.get("flow_control")),
            stop_bits=int(data.get("stop_bits", 2)),
            timeout=int(data.get("timeout", DEFAULT_TIMEOUT_MS)),
        )
        return {}

    async def _handle_close(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        await self.gateway.close(data["path"])
        return {}

    async def _handle_force_close(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        await self.gateway.force_close(data["path"])
        return {}

    async def _handle_close_all(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        await self.gateway.close_all()
        return {}

    async def _handle_read(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        await self.gateway.read(
            data["path"],
            int(data.get("timeout", DEFAULT_TIMEOUT_MS)),
            int(data.get("size", DEFAULT_READ_SIZE)),
        )
        return {}

    async def _handle_cancel_read(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        await self.gateway.cancel_read(data["path"])
        return {}

    async def _handle_write(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        value = data["value"]
        if not isinstance(value, str):
            raise TypeError("value must be a string")
        return {"bytes_written": await self.gateway.write(data["path"], value)}

    async def _handle_write_binary(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        value = base64.b64decode(data["value"], validate=True)
        return {"bytes_written": await self.gateway.write_binary(data["path"], value)}

    async def _handle_subscribe(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        channel = data["channel"]
        if channel not in client.subscriptions:

            def forward(payload: ReadData) -> None:
                client.outbox.put_nowait(encode_event(channel, payload.to_dict()))

            client.subscriptions[channel] = await self.gateway.listen(channel, forward)
        return {"channel": channel}

    async def _handle_unsubscribe(self, client: ClientState, data: dict[str, Any]) -> dict[str, Any]:
        channel = data["channel"]
        subscription = client.subscriptions.pop(channel, None)
        if subscription is not None:
            subscription.cancel()
        return {"channel": channel}
