"""
Serial port sessions.

A Serialport owns one logical connection: its desired configuration, its
open/closed state and at most one data subscription. Port I/O is delegated
to a TransportGateway. Reading is split in two: read() asks the gateway to
start reading, listen() receives the data the gateway publishes for the
port's path.

Sessions are not safe for concurrent use: callers must not interleave
open/close/reconfiguration calls on the same instance.

Example:
    >>> async def main():
    ...     async with Serialport(path="COM3", baud_rate=9600) as port:
    ...         await port.listen(print)
    ...         await port.read()
    ...         await port.write("AT\\r\\n")
    ...         await asyncio.sleep(1.0)
    >>>
    >>> asyncio.run(main())
"""

import asyncio
import codecs
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from serialsession.errors import (
    InvalidArgumentError,
    InvalidConfigError,
    NotOpenError,
    PortNotOpenError,
    SerialportError,
    SubscriptionError,
)
from serialsession.events import ReadData, Subscription, read_event_name
from serialsession.gateway import TransportGateway, get_default_gateway
from serialsession.options import (
    DEFAULT_DATA_BITS,
    DEFAULT_ENCODING,
    DEFAULT_READ_SIZE,
    DEFAULT_STOP_BITS,
    DEFAULT_TIMEOUT_MS,
    FlowControl,
    Parity,
    SerialportOptions,
)
from serialsession.ports import PortInfo

logger = logging.getLogger(__name__)

# Handler receives decoded text, or raw bytes when listening with decode=False
DataHandler = Callable[[Any], None] | Callable[[Any], Awaitable[None]]


class Serialport:
    """One managed serial connection.

    Attributes:
        options: Current configuration
        is_open: True between a successful open() and the next close()
    """

    def __init__(
        self,
        path: str,
        baud_rate: int,
        encoding: str = DEFAULT_ENCODING,
        data_bits: int = DEFAULT_DATA_BITS,
        flow_control: FlowControl | str | None = None,
        parity: Parity | str | None = None,
        stop_bits: int = DEFAULT_STOP_BITS,
        timeout: int = DEFAULT_TIMEOUT_MS,
        size: int = DEFAULT_READ_SIZE,
        gateway: TransportGateway | None = None,
    ):
        """Initialize a closed session.

        Args:
            path: Serial port path (e.g., "COM3", "/dev/ttyUSB0")
            baud_rate: Baud rate
            encoding: Text encoding for decoded listeners (default: utf-8)
            data_bits: 5, 6, 7 or 8 (default: 8)
            flow_control: None, "Software" or "Hardware"
            parity: None, "Odd" or "Even"
            stop_bits: 1 or 2 (default: 2)
            timeout: Default read timeout in milliseconds (default: 200)
            size: Default read size in bytes (default: 1024)
            gateway: Transport gateway (default: the process-wide gateway)

        Raises:
            InvalidConfigError: If a line setting or the encoding is invalid
        """
        self.options = SerialportOptions(
            path=path,
            baud_rate=baud_rate,
            encoding=encoding,
            data_bits=data_bits,
            flow_control=FlowControl.from_value(flow_control),
            parity=Parity.from_value(parity),
            stop_bits=stop_bits,
            timeout=timeout,
            size=size,
        )
        self.is_open = False
        self._gateway = gateway
        self._subscription: Subscription | None = None
        self._handler_tasks: set[asyncio.Future[Any]] = set()

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"Serialport(path={self.options.path!r}, baud_rate={self.options.baud_rate}, {state})"

    @property
    def gateway(self) -> TransportGateway:
        if self._gateway is None:
            self._gateway = get_default_gateway()
        return self._gateway

    @property
    def path(self) -> str:
        return self.options.path

    @property
    def baud_rate(self) -> int:
        return self.options.baud_rate

    @property
    def encoding(self) -> str:
        return self.options.encoding

    @property
    def is_listening(self) -> bool:
        return self._subscription is not None

    async def __aenter__(self) -> "Serialport":
        await self.open()
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Registry operations
    # =========================================================================

    @staticmethod
    async def available_ports(gateway: TransportGateway | None = None) -> list[PortInfo]:
        """List the ports the gateway can see."""
        return await available_ports(gateway)

    @staticmethod
    async def force_close(path: str, gateway: TransportGateway | None = None) -> None:
        """Close path in the gateway regardless of which session owns it."""
        await force_close(path, gateway)

    @staticmethod
    async def close_all(gateway: TransportGateway | None = None) -> None:
        """Close every port open in the gateway."""
        await close_all(gateway)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        """Open the port with the current options. No-op if already open.

        Raises:
            InvalidConfigError: If path or baud rate is empty
            GatewayError: If the gateway fails to open the port
        """
        if not self.options.path:
            raise InvalidConfigError("path cannot be empty!")
        if not self.options.baud_rate:
            raise InvalidConfigError("baud_rate cannot be empty!")
        if self.is_open:
            return

        logger.debug(f"Opening with options {self.options.to_dict()}")
        await self.gateway.open(**self.options.open_params())
        self.is_open = True
        logger.info(f"Opened {self.options.path} @ {self.options.baud_rate} baud")

    async def close(self) -> None:
        """Close the port. No-op if not open.

        Cancels the in-flight read, closes the port in the gateway, then
        releases the data subscription. If the gateway fails to close the
        port (other than reporting it already closed), the session stays
        open with its subscription and the error is raised.
        """
        if not self.is_open:
            return

        path = self.options.path
        try:
            await self.cancel_read()
        except SerialportError as e:
            logger.warning(f"Failed to cancel read on {path} while closing: {e}")

        try:
            await self.gateway.close(path)
        except PortNotOpenError as e:
            logger.warning(f"Port {path} was already closed in the gateway: {e}")

        try:
            await self.cancel_listen()
        finally:
            self.is_open = False
        logger.info(f"Closed {path}")

    async def change(self, path: str | None = None, baud_rate: int | None = None) -> None:
        """Change path and/or baud rate, reopening if the port was open.

        Empty values are ignored.
        """
        await self._reconfigure(path=path or None, baud_rate=baud_rate or None)

    async def set_baud_rate(self, value: int) -> None:
        """Change the baud rate, reopening if the port was open."""
        await self._reconfigure(baud_rate=value, set_baud_rate=True)

    async def set_path(self, value: str) -> None:
        """Change the port path, reopening if the port was open."""
        await self._reconfigure(path=value, set_path=True)

    async def _reconfigure(
        self,
        path: str | None = None,
        baud_rate: int | None = None,
        set_path: bool = False,
        set_baud_rate: bool = False,
    ) -> None:
        was_open = self.is_open
        try:
            if was_open:
                await self.close()
        finally:
            # The stored configuration follows the request even if close failed
            if set_path or path is not None:
                self.options.path = path  # type: ignore[assignment]
            if set_baud_rate or baud_rate is not None:
                self.options.baud_rate = baud_rate  # type: ignore[assignment]
        if was_open:
            await self.open()

    # =========================================================================
    # Reading and writing
    # =========================================================================

    async def read(self, timeout: int | None = None, size: int | None = None) -> None:
        """Ask the gateway to read from the port.

        Data is not returned; it is delivered to the handler registered with
        listen().

        Args:
            timeout: Read timeout in milliseconds (default: session timeout)
            size: Read size in bytes (default: session size)

        Raises:
            NotOpenError: If the session is not open
        """
        self._require_open()
        await self._call_open_port(
            self.gateway.read(
                self.options.path,
                timeout if timeout is not None else self.options.timeout,
                size if size is not None else self.options.size,
            )
        )

    async def cancel_read(self) -> None:
        """Stop an in-flight read. Safe when no read is pending."""
        await self.gateway.cancel_read(self.options.path)

    async def write(self, value: str) -> int:
        """Write text to the port.

        Returns:
            Number of bytes written

        Raises:
            NotOpenError: If the session is not open
            InvalidArgumentError: If value is not a string
        """
        self._require_open()
        if not isinstance(value, str):
            raise InvalidArgumentError(f"value must be a string, got {type(value).__name__}")
        return await self._call_open_port(self.gateway.write(self.options.path, value))

    async def write_binary(self, value: bytes | bytearray | memoryview | Sequence[int]) -> int:
        """Write bytes to the port.

        Args:
            value: bytes-like object (single-byte items) or a sequence of ints in range 0..255

        Returns:
            Number of bytes written

        Raises:
            NotOpenError: If the session is not open
            InvalidArgumentError: If value is not a byte sequence
        """
        self._require_open()
        data = to_bytes(value)
        return await self._call_open_port(self.gateway.write_binary(self.options.path, data))

    def _require_open(self) -> None:
        if not self.is_open:
            raise NotOpenError(self.options.path)

    async def _call_open_port(self, operation: Awaitable[Any]) -> Any:
        try:
            return await operation
        except PortNotOpenError:
            # Closed behind our back, e.g. by force_close()
            logger.warning(f"Port {self.options.path} is no longer open in the gateway")
            self.is_open = False
            raise

    # =========================================================================
    # Listening
    # =========================================================================

    async def listen(self, handler: DataHandler, decode: bool = True) -> None:
        """Deliver data read from the port to handler.

        Replaces any previous listener. Errors raised while decoding or by
        the handler are logged and do not end the subscription.

        Args:
            handler: Called with decoded text (decode=True) or raw bytes.
                     May be a coroutine function.
            decode: Whether to decode bytes with the session encoding

        Raises:
            SubscriptionError: If the subscription cannot be established
        """
        await self.cancel_listen()

        channel = read_event_name(self.options.path)
        decoder = codecs.getincrementaldecoder(self.options.encoding)(errors="replace") if decode else None

        def on_data(payload: ReadData) -> None:
            try:
                if decoder is not None:
                    value: Any = decoder.decode(payload.data)
                    if not value and payload.data:
                        # Incomplete multi-byte sequence, wait for the rest
                        return
                else:
                    value = bytes(payload.data)
                result = handler(value)
                if inspect.isawaitable(result):
                    self._track_handler(result)
            except KeyboardInterrupt:  # noqa: KBI002
                raise
            except Exception as e:
                logger.error(f"Error in listener for {channel}: {e}", exc_info=True)

        try:
            self._subscription = await self.gateway.listen(channel, on_data)
        except SerialportError as e:
            raise SubscriptionError(f"Failed to listen to the serial port: {e}") from e
        logger.debug(f"Listening on {channel} (decode={decode})")

    async def cancel_listen(self) -> None:
        """Release the listener, if any. Idempotent.

        Raises:
            SubscriptionError: If the subscription fails to release
        """
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            subscription.cancel()
        except KeyboardInterrupt:  # noqa: KBI002
            raise
        except Exception as e:
            raise SubscriptionError(f"Failed to stop listening to the serial port: {e}") from e

    def _track_handler(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_done)

    def _handler_done(self, task: "asyncio.Future[Any]") -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Error in async listener for {self.options.path}: {error}", exc_info=error)


def to_bytes(value: Any) -> bytes:
    """Normalize a write_binary payload to bytes.

    Raises:
        InvalidArgumentError: If value is not bytes-like or a sequence of byte values
    """
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        raise InvalidArgumentError("value must be bytes or a sequence of ints, got str (use write() for text)")
    try:
        view = memoryview(value)
    except TypeError:
        view = None
    if view is not None:
        # Buffer objects such as array.array("B") or memoryview
        if view.itemsize != 1:
            raise InvalidArgumentError(f"value must be a buffer of single bytes, got item size {view.itemsize}")
        return view.tobytes()
    if isinstance(value, Sequence):
        if all(isinstance(item, int) and not isinstance(item, bool) and 0 <= item <= 255 for item in value):
            return bytes(value)
        raise InvalidArgumentError("value must contain only integers in range 0..255")
    raise InvalidArgumentError(f"value must be bytes-like or a sequence of ints, got {type(value).__name__}")


async def available_ports(gateway: TransportGateway | None = None) -> list[PortInfo]:
    """List the ports the gateway can see, sorted by name."""
    return await (gateway or get_default_gateway()).available_ports()


async def force_close(path: str, gateway: TransportGateway | None = None) -> None:
    """Close path in the gateway regardless of owner.

    Does not update any Serialport; a session whose port is force closed
    keeps is_open until its next operation reports the port gone.
    """
    logger.info(f"Force closing {path}")
    await (gateway or get_default_gateway()).force_close(path)


async def close_all(gateway: TransportGateway | None = None) -> None:
    """Close every port open in the gateway. Sessions are not updated."""
    logger.info("Closing all ports")
    await (gateway or get_default_gateway()).close_all()
