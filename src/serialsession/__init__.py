"""serialsession - asyncio serial port sessions.

A Serialport manages one serial connection: open/close, read/write, live
reconfiguration, and delivery of received data to a listener. Port I/O is
done by a transport gateway: in-process with pyserial (LocalSerialGateway)
or through a gateway daemon over WebSockets (WebSocketGateway).

Example:
    >>> import asyncio
    >>> from serialsession import Serialport
    >>>
    >>> async def main():
    ...     async with Serialport(path="/dev/ttyUSB0", baud_rate=9600) as port:
    ...         await port.listen(print)
    ...         await port.read()
    ...         await port.write("AT\\r\\n")
    ...         await asyncio.sleep(1.0)
"""

from serialsession.errors import (
    GatewayError,
    InvalidArgumentError,
    InvalidConfigError,
    NotOpenError,
    PortNotOpenError,
    SerialportError,
    SubscriptionError,
)
from serialsession.events import EventBus, ReadData, Subscription, read_event_name
from serialsession.gateway import LocalSerialGateway, TransportGateway, WebSocketGateway, get_default_gateway, set_default_gateway
from serialsession.options import FlowControl, Parity, SerialportOptions
from serialsession.ports import PortInfo
from serialsession.session import Serialport, available_ports, close_all, force_close

__all__ = [
    "EventBus",
    "FlowControl",
    "GatewayError",
    "InvalidArgumentError",
    "InvalidConfigError",
    "LocalSerialGateway",
    "NotOpenError",
    "Parity",
    "PortInfo",
    "PortNotOpenError",
    "ReadData",
    "SerialportError",
    "Serialport",
    "SerialportOptions",
    "Subscription",
    "SubscriptionError",
    "TransportGateway",
    "WebSocketGateway",
    "available_ports",
    "close_all",
    "force_close",
    "get_default_gateway",
    "read_event_name",
    "set_default_gateway",
]
