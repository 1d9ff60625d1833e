"""
Wire protocol between WebSocketGateway and GatewayServer.

Every frame is a JSON object with a "type" field:

- Request (client -> server): {"type": <request type>, "request_id": str, "data": {...}}
- Response (server -> client): {"type": "response", "request_id": str, "data": {...}}
- Error (server -> client): {"type": "error", "request_id": str, "error": str, "kind": str}
- Event (server -> client): {"type": "event", "channel": str, "data": {"size": int, "data": <base64>}}
"""

import json
import uuid
from enum import Enum
from typing import Any

from serialsession.errors import GatewayError, PortNotOpenError


class MessageType(Enum):
    """Frame types."""

    # Requests
    AVAILABLE_PORTS = "available_ports"
    OPEN = "open"
    CLOSE = "close"
    FORCE_CLOSE = "force_close"
    CLOSE_ALL = "close_all"
    READ = "read"
    CANCEL_READ = "cancel_read"
    WRITE = "write"
    WRITE_BINARY = "write_binary"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"

    # Server frames
    RESPONSE = "response"
    ERROR = "error"
    EVENT = "event"


class ErrorKind(Enum):
    """Error classification carried in error frames."""

    GATEWAY = "gateway"
    PORT_NOT_OPEN = "port_not_open"
    BAD_REQUEST = "bad_request"


def new_request_id() -> str:
    return uuid.uuid4().hex


def encode_request(msg_type: MessageType, request_id: str, data: dict[str, Any]) -> str:
    return json.dumps({"type": msg_type.value, "request_id": request_id, "data": data})


def encode_response(request_id: str, data: dict[str, Any] | None = None) -> str:
    return json.dumps({"type": MessageType.RESPONSE.value, "request_id": request_id, "data": data or {}})


def encode_error(request_id: str | None, error: str, kind: ErrorKind = ErrorKind.GATEWAY) -> str:
    return json.dumps({"type": MessageType.ERROR.value, "request_id": request_id, "error": error, "kind": kind.value})


def encode_event(channel: str, data: dict[str, Any]) -> str:
    return json.dumps({"type": MessageType.EVENT.value, "channel": channel, "data": data})


def error_kind_for(exc: Exception) -> ErrorKind:
    if isinstance(exc, PortNotOpenError):
        return ErrorKind.PORT_NOT_OPEN
    if isinstance(exc, GatewayError):
        return ErrorKind.GATEWAY
    return ErrorKind.BAD_REQUEST


def error_from_frame(message: dict[str, Any], path: str | None = None) -> GatewayError:
    """Rebuild the gateway exception an error frame describes."""
    error = message.get("error", "Unknown error")
    if message.get("kind") == ErrorKind.PORT_NOT_OPEN.value:
        return PortNotOpenError(path or "", error)
    return GatewayError(error)
